"""Canonical renewal states, event types and the sets the state machine keys on."""
from enum import Enum


class RenewalState(str, Enum):
    GENERAL_INQUIRY = "general_inquiry"
    AWAITING_PHOTO = "awaiting_photo"
    PHOTO_UPLOADED = "photo_uploaded"
    PHOTO_VALIDATED = "photo_validated"
    AWAITING_TRAINING = "awaiting_training"
    TRAINING_UPLOADED = "training_uploaded"
    TRAINING_VALIDATED = "training_validated"
    READY_FOR_SUBMISSION = "ready_for_submission"
    AWAITING_SUBMISSION = "awaiting_submission"
    SUBMITTED = "submitted"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ESCALATED = "escalated"


class EventType(str, Enum):
    DOCUMENT_UPLOADED = "document_uploaded"
    EMPLOYEE_MESSAGE = "employee_message"
    TIMEOUT_FIRED = "timeout_fired"
    SUPERVISOR_INTERVENTION = "supervisor_intervention"
    SUBMISSION_RECORDED = "submission_recorded"
    APPROVAL_CHECK = "approval_check"
    WORKFLOW_STARTED = "workflow_started"
    STEP_COMPLETED = "step_completed"
    AGENT_ACTION = "agent_action"


class TriggeredBy(str, Enum):
    EMPLOYEE = "employee"
    AGENT = "agent"
    CRON = "cron"
    SUPERVISOR = "supervisor"
    SYSTEM = "system"


class Intent(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    QUESTION = "question"
    HELP = "help"
    CANCEL = "cancel"
    UNKNOWN = "unknown"


class DocumentType(str, Enum):
    LICENSE_PHOTO = "license_photo"
    TRAINING_CERTIFICATE = "training_certificate"
    FIREARMS_QUALIFICATION = "firearms_qualification"
    CPR_CERTIFICATION = "cpr_certification"
    BACKGROUND_CHECK = "background_check"
    OTHER = "other"


# Step labels tracked in completed_steps / pending_actions
STEP_PHOTO_UPLOAD = "photo_upload"
STEP_TRAINING_UPLOAD = "training_upload"
STEP_PORTAL_SUBMISSION = "portal_submission"
STEP_APPROVAL = "approval"

TERMINAL_STATES = frozenset({
    RenewalState.COMPLETED,
    RenewalState.FAILED,
    RenewalState.CANCELLED,
})

# States whose staleness produces a reminder instead of a no-op
REMINDER_STATES = frozenset({
    RenewalState.AWAITING_PHOTO,
    RenewalState.PHOTO_UPLOADED,
    RenewalState.AWAITING_TRAINING,
    RenewalState.TRAINING_UPLOADED,
    RenewalState.AWAITING_SUBMISSION,
    RenewalState.AWAITING_APPROVAL,
})

PHOTO_UPLOAD_STATES = frozenset({
    RenewalState.GENERAL_INQUIRY,
    RenewalState.AWAITING_PHOTO,
    RenewalState.PHOTO_UPLOADED,
})

TRAINING_UPLOAD_STATES = frozenset({
    RenewalState.AWAITING_TRAINING,
    RenewalState.TRAINING_UPLOADED,
})

# Step that becomes pending when an instance enters the state
PENDING_STEP_ON_ENTRY = {
    RenewalState.AWAITING_PHOTO: STEP_PHOTO_UPLOAD,
    RenewalState.AWAITING_TRAINING: STEP_TRAINING_UPLOAD,
    RenewalState.READY_FOR_SUBMISSION: STEP_PORTAL_SUBMISSION,
    RenewalState.AWAITING_APPROVAL: STEP_APPROVAL,
}


def is_terminal(state: RenewalState) -> bool:
    return state in TERMINAL_STATES


def expected_document_type(state: RenewalState) -> DocumentType:
    """Document type an untyped upload (e.g. MMS media) is taken to be in ``state``."""
    if state in TRAINING_UPLOAD_STATES:
        return DocumentType.TRAINING_CERTIFICATE
    return DocumentType.LICENSE_PHOTO


def accepts_upload(state: RenewalState, document_type: DocumentType) -> bool:
    """Whether an upload of ``document_type`` is expected in ``state``."""
    if document_type == DocumentType.LICENSE_PHOTO:
        return state in PHOTO_UPLOAD_STATES
    if document_type == DocumentType.TRAINING_CERTIFICATE:
        return state in TRAINING_UPLOAD_STATES
    return False
