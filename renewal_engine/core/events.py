"""Typed payloads for each event type.

``WorkflowEvent.event_data`` is persisted as a plain JSON dict; ``decode_event_data``
turns it back into the model registered for the event type. A payload that does
not validate raises ``pydantic.ValidationError``; ``parse_event_data`` reports it
instead so the state machine can record the event as ignored.
"""
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from renewal_engine.core.states import DocumentType, EventType


class WorkflowStartedData(BaseModel):
    initial_message: str | None = None
    license_name: str | None = None
    expiration_date: str | None = None


class DocumentUploadedData(BaseModel):
    document_url: str
    document_type: DocumentType = DocumentType.LICENSE_PHOTO
    media_type: str | None = None


class EmployeeMessageData(BaseModel):
    text: str


class TimeoutFiredData(BaseModel):
    hours_since_update: float = 0.0
    expired: bool = False


class SupervisorInterventionData(BaseModel):
    reason: str = "supervisor intervention"
    supervisor_id: str | None = None


class SubmissionRecordedData(BaseModel):
    confirmation_number: str | None = None
    submitted_by: str = "employee_self_service"


class ApprovalCheckData(BaseModel):
    approved: bool
    source: Literal["portal", "hr_sync"] = "portal"
    reason: str | None = None
    retries_remaining: int = 0


class StepCompletedData(BaseModel):
    step: str
    status: str = "completed"
    detail: dict[str, Any] = Field(default_factory=dict)


class AgentActionData(BaseModel):
    action: str
    reason: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


EVENT_DATA_MODELS: dict[EventType, type[BaseModel]] = {
    EventType.WORKFLOW_STARTED: WorkflowStartedData,
    EventType.DOCUMENT_UPLOADED: DocumentUploadedData,
    EventType.EMPLOYEE_MESSAGE: EmployeeMessageData,
    EventType.TIMEOUT_FIRED: TimeoutFiredData,
    EventType.SUPERVISOR_INTERVENTION: SupervisorInterventionData,
    EventType.SUBMISSION_RECORDED: SubmissionRecordedData,
    EventType.APPROVAL_CHECK: ApprovalCheckData,
    EventType.STEP_COMPLETED: StepCompletedData,
    EventType.AGENT_ACTION: AgentActionData,
}


def decode_event_data(event_type: EventType, data: dict[str, Any]) -> BaseModel:
    return EVENT_DATA_MODELS[event_type].model_validate(data or {})


def parse_event_data(event_type: EventType, data: dict[str, Any]) -> tuple[BaseModel | None, str | None]:
    """Like ``decode_event_data`` but returns ``(None, error)`` for a bad payload."""
    try:
        return decode_event_data(event_type, data), None
    except ValidationError as e:
        return None, f"{e.error_count()} validation error(s): {e.errors()[0]['msg']}"
