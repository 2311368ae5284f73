"""Read projections of the canonical state.

Two status vocabularies exist for the same instance: the granular session
status used by the portal-submission flow and the terse conversation status
used by SMS-only confirm/reject deployments. Both are derived from
``WorkflowInstance.state`` and never stored.
"""
from renewal_engine.core.models import ExtractedDocument, PendingConfirmation, WorkflowInstance
from renewal_engine.core.states import DocumentType, RenewalState

_SESSION_STATUS = {
    RenewalState.GENERAL_INQUIRY: "active",
    RenewalState.READY_FOR_SUBMISSION: "ready_for_portal_submission",
    RenewalState.AWAITING_SUBMISSION: "awaiting_portal_submission",
    RenewalState.SUBMITTED: "portal_submitted",
}

_CONVERSATION_STATUS = {
    RenewalState.GENERAL_INQUIRY: "general_inquiry",
    RenewalState.AWAITING_PHOTO: "awaiting_photo",
    RenewalState.PHOTO_UPLOADED: "awaiting_confirmation",
    RenewalState.PHOTO_VALIDATED: "confirmed",
    RenewalState.AWAITING_TRAINING: "confirmed",
    RenewalState.TRAINING_UPLOADED: "confirmed",
    RenewalState.TRAINING_VALIDATED: "confirmed",
    RenewalState.READY_FOR_SUBMISSION: "confirmed",
    RenewalState.AWAITING_SUBMISSION: "confirmed",
    RenewalState.SUBMITTED: "confirmed",
    RenewalState.AWAITING_APPROVAL: "confirmed",
    RenewalState.ESCALATED: "processing",
    RenewalState.COMPLETED: "completed",
    RenewalState.FAILED: "failed",
    RenewalState.CANCELLED: "expired",
}

VIEWS = ("canonical", "session", "conversation")


def to_session_status(state: RenewalState) -> str:
    return _SESSION_STATUS.get(state, state.value)


def to_conversation_status(state: RenewalState) -> str:
    return _CONVERSATION_STATUS[state]


def project_status(state: RenewalState, view: str = "canonical") -> str:
    if view == "canonical":
        return state.value
    if view == "session":
        return to_session_status(state)
    if view == "conversation":
        return to_conversation_status(state)
    raise ValueError(f"Unknown status view: {view}")


def pending_confirmation(
    instance: WorkflowInstance, documents: list[ExtractedDocument]
) -> PendingConfirmation | None:
    """Latest license-photo extraction with its confirm / HR-sync status."""
    photos = [d for d in documents if d.document_type == DocumentType.LICENSE_PHOTO]
    if not photos:
        return None

    pending_id = (instance.metadata.get("pending_document") or {}).get("document_id")
    latest = next((d for d in photos if d.document_id == pending_id), None)
    if latest is None:
        latest = max(photos, key=lambda d: d.uploaded_at)

    hr_sync = instance.metadata.get("hr_sync") or {}
    return PendingConfirmation(
        instance_id=instance.instance_id,
        document_id=latest.document_id,
        source_url=latest.source_url,
        extracted=latest.extracted,
        confirmed=latest.validated,
        synced_to_external_system=hr_sync.get("status") == "synced",
        sync_error=hr_sync.get("error"),
    )
