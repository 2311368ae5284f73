from renewal_engine.core.events import TimeoutFiredData
from renewal_engine.core.states import REMINDER_STATES, EventType
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import cancel, escalate, message


class TimeoutFiredHandler(BaseHandler):
    """Reminders for stalled instances, escalation once reminders run out."""

    event_type = EventType.TIMEOUT_FIRED

    def __call__(self, ctx: TransitionContext) -> Decision:
        instance = ctx.instance
        data: TimeoutFiredData = ctx.data

        if data.expired:
            return cancel(ctx, "expired", template="expired")

        if instance.state not in REMINDER_STATES:
            return Decision.ignore(f"no reminder for state {instance.state.value}")

        sent = instance.metadata.get("unanswered_reminders", 0)
        if sent >= ctx.rules.max_reminders:
            return escalate(ctx, f"no response after {sent} reminders in {instance.state.value}")

        instance.metadata["unanswered_reminders"] = sent + 1
        return Decision(
            effects=[message(f"reminder_{instance.state.value}")],
            note=f"reminder {sent + 1} of {ctx.rules.max_reminders}",
        )
