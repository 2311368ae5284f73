from renewal_engine.core.events import SubmissionRecordedData
from renewal_engine.core.states import STEP_PORTAL_SUBMISSION, EventType, RenewalState
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import message

_SUBMITTABLE = (RenewalState.READY_FOR_SUBMISSION, RenewalState.AWAITING_SUBMISSION)


class SubmissionRecordedHandler(BaseHandler):
    event_type = EventType.SUBMISSION_RECORDED

    def __call__(self, ctx: TransitionContext) -> Decision:
        instance = ctx.instance
        data: SubmissionRecordedData = ctx.data

        if instance.state not in _SUBMITTABLE:
            return Decision.ignore(f"submission recorded in state {instance.state.value}")

        number = (data.confirmation_number or "").strip()
        if not number:
            return Decision(effects=[message("need_confirmation_number")], note="missing confirmation number")

        instance.confirmation_number = number
        instance.submitted_at = ctx.event.created_at
        instance.submitted_by = data.submitted_by
        return Decision(
            path=[RenewalState.SUBMITTED, RenewalState.AWAITING_APPROVAL],
            effects=[message("submission_received", confirmation_number=number)],
            completed_step=STEP_PORTAL_SUBMISSION,
            note=f"portal submission {number}",
        )
