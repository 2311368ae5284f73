"""Persistence contracts for the event log and the workflow state store."""
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, Field

from renewal_engine.core.models import (
    DispatchRecord,
    Employee,
    ExtractedDocument,
    WorkflowEvent,
    WorkflowInstance,
)
from renewal_engine.core.states import EventType, RenewalState, TriggeredBy


class EventDraft(BaseModel):
    """An event to be appended as part of a commit."""

    instance_id: str
    event_type: EventType
    event_data: dict[str, Any] = Field(default_factory=dict)
    triggered_by: TriggeredBy = TriggeredBy.SYSTEM
    created_at: datetime
    processed: bool = True


class TransitionCommit(BaseModel):
    """Everything one applied event writes, stored atomically.

    The commit is rejected with ``ConcurrencyConflictError`` when the stored
    instance is no longer at ``expected_version`` or ``event_id`` has already
    been processed.
    """

    instance: WorkflowInstance
    expected_version: int
    event_id: str
    processed_at: datetime
    documents: list[ExtractedDocument] = Field(default_factory=list)
    validated_document_ids: list[str] = Field(default_factory=list)
    events: list[EventDraft] = Field(default_factory=list)
    dispatches: list[DispatchRecord] = Field(default_factory=list)


class EventLog(Protocol):
    """Append-only per-instance event log."""

    def append(
        self,
        instance_id: str,
        event_type: EventType,
        event_data: dict[str, Any],
        triggered_by: TriggeredBy,
        *,
        created_at: datetime | None = None,
        processed: bool = False,
    ) -> WorkflowEvent:
        """Append an event. Raises EventLogError if it could not be stored."""

    def unprocessed(self, instance_id: str) -> list[WorkflowEvent]:
        """Unprocessed events in (created_at, sequence) order."""

    def mark_processed(self, event_id: str, processed_at: datetime | None = None) -> None:
        """Mark an event consumed without any other change."""

    def events(self, instance_id: str) -> list[WorkflowEvent]:
        """Full history of an instance in log order."""

    def get_event(self, event_id: str) -> WorkflowEvent | None:
        """Fetch a single event."""


class WorkflowStore(Protocol):
    """Durable workflow instances, documents, outbox and employee directory."""

    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new instance."""

    def create_unless_active(self, instance: WorkflowInstance) -> tuple[WorkflowInstance, bool]:
        """Create ``instance`` unless its employee already has an active one.

        Returns the stored instance and whether it was created. The check and
        the insert are atomic.
        """

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        """Load an instance. Raises InstanceNotFoundError."""

    def find_active_by_phone(self, phone_number: str) -> WorkflowInstance | None:
        """Most recent non-terminal instance for a phone number."""

    def find_active_for_employee(self, employee_id: str) -> WorkflowInstance | None:
        """Most recent non-terminal instance for an employee."""

    def find_stale(self, state: RenewalState, updated_before: datetime) -> list[WorkflowInstance]:
        """Instances in ``state`` not updated since ``updated_before``."""

    def find_expired(self, now: datetime) -> list[WorkflowInstance]:
        """Non-terminal instances whose ``expires_at`` has passed."""

    def commit(self, commit: TransitionCommit) -> WorkflowInstance:
        """Apply a transition atomically; returns the stored instance."""

    def list_documents(self, instance_id: str) -> list[ExtractedDocument]:
        """Documents of an instance in upload order."""

    def get_document(self, document_id: str) -> ExtractedDocument | None:
        """Fetch a single document."""

    def pending_dispatches(
        self, instance_id: str | None = None, stale_claims_before: datetime | None = None
    ) -> list[DispatchRecord]:
        """Outbox rows not yet delivered or given up on, oldest first.

        In-flight rows are included only when claimed before ``stale_claims_before``.
        """

    def claim_dispatch(self, effect_id: str, now: datetime, stale_claims_before: datetime) -> DispatchRecord | None:
        """Atomically mark a row in_flight for the caller.

        Succeeds for a pending row or one whose claim is older than
        ``stale_claims_before``; returns None when another pass holds it or it
        is already finished.
        """

    def get_dispatch(self, effect_id: str) -> DispatchRecord | None:
        """Fetch a single outbox row."""

    def update_dispatch(self, record: DispatchRecord) -> None:
        """Persist the outcome of a delivery attempt."""

    def upsert_employee(self, employee: Employee) -> None:
        """Add or replace a directory entry."""

    def find_employee_by_phone(self, phone_number: str) -> Employee | None:
        """Directory lookup by normalized phone number."""


class RenewalRepository(EventLog, WorkflowStore, Protocol):
    """Both halves in one backend, so a commit can span them."""
