from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

from renewal_engine.core.states import (
    DocumentType,
    EventType,
    RenewalState,
    TriggeredBy,
    is_terminal,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolCall(BaseModel):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None


class ConversationTurn(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: datetime
    tool_calls: list[ToolCall] | None = None


class ExtractedData(BaseModel):
    """Structured fields pulled out of an uploaded license or certificate."""

    expiration_date: str | None = None   # ISO YYYY-MM-DD
    license_number: str | None = None
    license_type: str | None = None
    state: str | None = None             # two-letter code
    holder_name: str | None = None
    issuing_authority: str | None = None
    issue_date: str | None = None
    confidence: float = 0.0
    raw_response: dict[str, Any] = Field(default_factory=dict)


class SubmissionDocument(BaseModel):
    type: DocumentType
    url: str
    filename: str
    validated: bool = False


class Screenshot(BaseModel):
    name: str
    url: str


class SubmissionPackage(BaseModel):
    """Everything needed to file the renewal on the state portal."""

    portal_url: str
    instructions: list[str] = Field(default_factory=list)
    documents: list[SubmissionDocument] = Field(default_factory=list)
    form_data: dict[str, Any] = Field(default_factory=dict)
    estimated_time: str = "10-15 minutes"
    screenshots: list[Screenshot] = Field(default_factory=list)


class WorkflowInstance(BaseModel):
    """One employee's renewal attempt, persisted between events."""

    instance_id: str
    employee_id: str
    license_id: str | None = None
    phone_number: str | None = None

    state: RenewalState = RenewalState.GENERAL_INQUIRY
    current_step: str | None = None

    transcript: list[ConversationTurn] = Field(default_factory=list)
    completed_steps: list[str] = Field(default_factory=list)
    pending_actions: list[str] = Field(default_factory=list)

    extracted_data: ExtractedData | None = None
    submission_package: SubmissionPackage | None = None
    confirmation_number: str | None = None
    submitted_at: datetime | None = None
    submitted_by: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.state)


class WorkflowEvent(BaseModel):
    """Immutable fact appended to the event log."""

    event_id: str
    instance_id: str
    event_type: EventType
    event_data: dict[str, Any] = Field(default_factory=dict)
    triggered_by: TriggeredBy = TriggeredBy.SYSTEM
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None
    sequence: int = 0

    @property
    def is_processed(self) -> bool:
        return self.processed_at is not None


class ExtractedDocument(BaseModel):
    document_id: str
    instance_id: str
    document_type: DocumentType
    source_url: str
    media_type: str | None = None
    validated: bool = False
    validation_result: dict[str, Any] = Field(default_factory=dict)
    extracted: ExtractedData = Field(default_factory=ExtractedData)
    uploaded_at: datetime = Field(default_factory=utcnow)


class PendingConfirmation(BaseModel):
    """Terse projection used by confirm/reject-only SMS deployments."""

    instance_id: str
    document_id: str
    source_url: str
    extracted: ExtractedData
    confirmed: bool = False
    synced_to_external_system: bool = False
    sync_error: str | None = None


class DispatchRecord(BaseModel):
    """Outbox row for one scheduled side effect."""

    effect_id: str
    instance_id: str
    kind: str
    effect: dict[str, Any]
    # in_flight rows are claimed by one delivery pass; updated_at is the claim time
    status: Literal["pending", "in_flight", "succeeded", "failed"] = "pending"
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Employee(BaseModel):
    employee_id: str
    phone_number: str
    first_name: str = ""
    last_name: str = ""
    hr_employee_number: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
