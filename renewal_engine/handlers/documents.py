from renewal_engine.core.events import DocumentUploadedData
from renewal_engine.core.llm_responses import ExtractionOutcome, OutcomeKind
from renewal_engine.core.models import ExtractedDocument
from renewal_engine.core.states import (
    DocumentType,
    EventType,
    RenewalState,
    accepts_upload,
)
from renewal_engine.handlers.base import BaseHandler, Decision, TransitionContext
from renewal_engine.handlers.steps import confirm_message, document_label, message


class DocumentUploadedHandler(BaseHandler):
    """Photo and training-certificate uploads.

    Every upload creates a new ExtractedDocument. Only an extraction that
    succeeded with confidence at or above the threshold moves the instance to
    the matching ``*_uploaded`` state and becomes the pending document;
    anything else leaves it (or puts it back) in the awaiting state.
    """

    event_type = EventType.DOCUMENT_UPLOADED

    def __call__(self, ctx: TransitionContext) -> Decision:
        instance = ctx.instance
        data: DocumentUploadedData = ctx.data

        if not accepts_upload(instance.state, data.document_type):
            return Decision.ignore(
                f"{data.document_type.value} upload not expected in state {instance.state.value}"
            )

        extraction = ctx.observation.extraction or ExtractionOutcome(
            kind=OutcomeKind.TRANSIENT_ERROR, error="extraction not run"
        )
        threshold = ctx.rules.extraction_confidence_threshold
        accepted = extraction.kind == OutcomeKind.SUCCESS and extraction.confidence >= threshold

        document = ExtractedDocument(
            document_id=f"doc-{ctx.event.event_id}",
            instance_id=instance.instance_id,
            document_type=data.document_type,
            source_url=data.document_url,
            media_type=data.media_type,
            validation_result={
                "kind": extraction.kind.value,
                "confidence": extraction.confidence,
                "threshold": threshold,
                "accepted": accepted,
                "error": extraction.error,
            },
            extracted=extraction.fields,
            uploaded_at=ctx.event.created_at,
        )

        is_photo = data.document_type == DocumentType.LICENSE_PHOTO
        label = document_label(data.document_type)

        if not accepted:
            instance.metadata.pop("pending_document", None)
            awaiting = RenewalState.AWAITING_PHOTO if is_photo else RenewalState.AWAITING_TRAINING
            return Decision(
                path=[awaiting] if instance.state != awaiting else [],
                effects=[message("clearer_photo", document_label=label)],
                documents=[document],
                note=f"extraction {extraction.kind.value} (confidence {extraction.confidence:.2f})",
            )

        instance.metadata["pending_document"] = {
            "document_id": document.document_id,
            "document_type": data.document_type.value,
            "source_url": data.document_url,
        }
        if is_photo:
            instance.extracted_data = extraction.fields
            uploaded = RenewalState.PHOTO_UPLOADED
        else:
            instance.metadata["training_extracted"] = extraction.fields.model_dump(mode="json")
            uploaded = RenewalState.TRAINING_UPLOADED

        return Decision(
            path=[uploaded] if instance.state != uploaded else [],
            effects=[confirm_message(data.document_type, extraction.fields)],
            documents=[document],
            note=f"{label} extracted (confidence {extraction.confidence:.2f})",
        )
