from renewal_engine.core.events import SupervisorInterventionData
from renewal_engine.core.states import EventType, RenewalState
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import escalate


class SupervisorInterventionHandler(BaseHandler):
    event_type = EventType.SUPERVISOR_INTERVENTION

    def __call__(self, ctx: TransitionContext) -> Decision:
        data: SupervisorInterventionData = ctx.data
        if data.supervisor_id:
            ctx.instance.metadata["escalated_by"] = data.supervisor_id

        if ctx.instance.state == RenewalState.ESCALATED:
            # Already with a supervisor; keep the original resume point and stay quiet
            ctx.instance.metadata["escalation_reason"] = data.reason
            return Decision(note=f"intervention while escalated: {data.reason}")

        return escalate(ctx, data.reason, notify=False)
