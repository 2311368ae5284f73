from renewal_engine.core.events import StepCompletedData
from renewal_engine.core.states import EventType
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext


class StepCompletedHandler(BaseHandler):
    """Step reported done from outside; no state change."""

    event_type = EventType.STEP_COMPLETED

    def __call__(self, ctx: TransitionContext) -> Decision:
        data: StepCompletedData = ctx.data
        if data.status != "completed":
            return Decision(note=f"step {data.step} reported {data.status}")
        if data.step in ctx.instance.completed_steps:
            return Decision.ignore(f"step {data.step} already completed")
        return Decision(completed_step=data.step, note=f"step {data.step} completed")
