from renewal_engine.core.events import WorkflowStartedData
from renewal_engine.core.states import STEP_PHOTO_UPLOAD, EventType, RenewalState
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import message


class WorkflowStartedHandler(BaseHandler):
    event_type = EventType.WORKFLOW_STARTED

    def __call__(self, ctx: TransitionContext) -> Decision:
        instance = ctx.instance
        data: WorkflowStartedData = ctx.data

        fresh = (
            instance.state == RenewalState.GENERAL_INQUIRY
            and STEP_PHOTO_UPLOAD not in instance.completed_steps
            and "pending_document" not in instance.metadata
        )
        if not fresh:
            return Decision.ignore(f"workflow already started (state={instance.state.value})")

        license_name = data.license_name or instance.metadata.get("license_name") or "security license"
        expiration_date = data.expiration_date or instance.metadata.get("license_expiration_date") or "soon"
        instance.metadata["license_name"] = license_name
        instance.metadata["license_expiration_date"] = expiration_date
        # The inquiry expiry stops once a renewal is underway
        instance.expires_at = None

        instructions = message(
            "initial_instructions",
            license_name=license_name,
            expiration_date=expiration_date,
        )
        # A caller-supplied opening message replaces the template text
        instructions.body = data.initial_message
        return Decision(
            path=[RenewalState.AWAITING_PHOTO],
            effects=[instructions],
            note="renewal started",
        )
