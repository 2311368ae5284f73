from renewal_engine.core.events import EmployeeMessageData
from renewal_engine.core.llm_responses import IntentOutcome, OutcomeKind
from renewal_engine.core.states import DocumentType, EventType, Intent, RenewalState
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import (
    cancel,
    confirm_photo,
    confirm_training,
    context_reply,
    document_label,
    message,
)


class EmployeeMessageHandler(BaseHandler):
    event_type = EventType.EMPLOYEE_MESSAGE

    def __call__(self, ctx: TransitionContext) -> Decision:
        data: EmployeeMessageData = ctx.data
        outcome = ctx.observation.intent or IntentOutcome(kind=OutcomeKind.TRANSIENT_ERROR)

        intent = outcome.intent
        if outcome.confidence < ctx.rules.intent_confidence_threshold:
            intent = Intent.UNKNOWN

        state = ctx.instance.state
        if intent == Intent.CANCEL:
            return cancel(ctx, "employee requested cancellation")
        if intent == Intent.CONFIRM:
            return self._confirm(ctx, state)
        if intent == Intent.REJECT:
            return self._reject(ctx, state, outcome)
        if intent == Intent.QUESTION and outcome.reply:
            return Decision(
                effects=[message("assistant_reply", reply=outcome.reply)],
                note="answered question",
            )
        if intent in (Intent.QUESTION, Intent.HELP):
            return Decision(effects=[message("help")], note=f"{intent.value} reply")

        return Decision(
            effects=[context_reply(state)],
            note=f"unrecognized message: {data.text[:40]!r}",
        )

    def _confirm(self, ctx: TransitionContext, state: RenewalState) -> Decision:
        if state == RenewalState.PHOTO_UPLOADED:
            return confirm_photo(ctx)
        if state == RenewalState.TRAINING_UPLOADED:
            return confirm_training(ctx)
        return Decision(effects=[context_reply(state)], note="nothing to confirm")

    def _reject(self, ctx: TransitionContext, state: RenewalState, outcome: IntentOutcome) -> Decision:
        if state == RenewalState.PHOTO_UPLOADED:
            back, doc_type = RenewalState.AWAITING_PHOTO, DocumentType.LICENSE_PHOTO
        elif state == RenewalState.TRAINING_UPLOADED:
            back, doc_type = RenewalState.AWAITING_TRAINING, DocumentType.TRAINING_CERTIFICATE
        else:
            return Decision(effects=[context_reply(state)], note="nothing to reject")

        # The rejected extraction stays on record; only the pointer is dropped
        rejected = ctx.instance.metadata.pop("pending_document", None)
        if rejected is not None:
            ctx.instance.metadata.setdefault("rejected_documents", []).append(rejected["document_id"])
        if outcome.extracted_info:
            ctx.instance.metadata["employee_correction"] = outcome.extracted_info

        return Decision(
            path=[back],
            effects=[message("request_new_photo", document_label=document_label(doc_type))],
            note=f"{document_label(doc_type)} rejected by employee",
        )
