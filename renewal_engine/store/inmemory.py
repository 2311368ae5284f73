"""In-memory repository, used for tests and single-process development."""
import itertools
import threading
import uuid
from datetime import datetime
from typing import Any

from renewal_engine.core.errors import ConcurrencyConflictError, InstanceNotFoundError
from renewal_engine.core.models import (
    DispatchRecord,
    Employee,
    ExtractedDocument,
    WorkflowEvent,
    WorkflowInstance,
    utcnow,
)
from renewal_engine.core.states import EventType, RenewalState, TriggeredBy
from renewal_engine.store.repository import TransitionCommit


class InMemoryRepository:
    """Keeps everything in dicts guarded by one re-entrant lock.

    Stored objects are deep-copied on the way in and out so callers can never
    mutate persisted state behind the store's back.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._instances: dict[str, WorkflowInstance] = {}
        self._events: dict[str, WorkflowEvent] = {}
        self._documents: dict[str, ExtractedDocument] = {}
        self._dispatches: dict[str, DispatchRecord] = {}
        self._employees: dict[str, Employee] = {}
        self._sequence = itertools.count(1)

    # ------------------------------------------------------------------
    # Event log
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
        with self._lock:
            if instance_id not in self._instances:
                raise InstanceNotFoundError(instance_id)
            event = self._new_event(instance_id, event_type, event_data, triggered_by, created_at, processed)
            self._events[event.event_id] = event
            return event.model_copy(deep=True)

    def unprocessed(self, instance_id: str) -> list[WorkflowEvent]:
        return [e for e in self.events(instance_id) if not e.is_processed]

    def mark_processed(self, event_id: str, processed_at: datetime | None = None) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if event is not None and event.processed_at is None:
                event.processed_at = processed_at or utcnow()

    def events(self, instance_id: str) -> list[WorkflowEvent]:
        with self._lock:
            found = [e.model_copy(deep=True) for e in self._events.values() if e.instance_id == instance_id]
        return sorted(found, key=lambda e: (e.created_at, e.sequence))

    def get_event(self, event_id: str) -> WorkflowEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event else None

    # ------------------------------------------------------------------
    # Instances
    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            if instance.instance_id in self._instances:
                raise ValueError(f"Instance already exists: {instance.instance_id}")
            self._instances[instance.instance_id] = instance.model_copy(deep=True)
            return instance.model_copy(deep=True)

    def create_unless_active(self, instance: WorkflowInstance) -> tuple[WorkflowInstance, bool]:
        with self._lock:
            existing = self.find_active_for_employee(instance.employee_id)
            if existing is not None:
                return existing, False
            return self.create_instance(instance), True

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                raise InstanceNotFoundError(instance_id)
            return instance.model_copy(deep=True)

    def find_active_by_phone(self, phone_number: str) -> WorkflowInstance | None:
        return self._latest_active(lambda i: i.phone_number == phone_number)

    def find_active_for_employee(self, employee_id: str) -> WorkflowInstance | None:
        return self._latest_active(lambda i: i.employee_id == employee_id)

    def find_stale(self, state: RenewalState, updated_before: datetime) -> list[WorkflowInstance]:
        with self._lock:
            return [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if i.state == state and i.updated_at < updated_before
            ]

    def find_expired(self, now: datetime) -> list[WorkflowInstance]:
        with self._lock:
            return [
                i.model_copy(deep=True)
                for i in self._instances.values()
                if not i.is_terminal and i.expires_at is not None and i.expires_at <= now
            ]

    def commit(self, commit: TransitionCommit) -> WorkflowInstance:
        with self._lock:
            instance_id = commit.instance.instance_id
            current = self._instances.get(instance_id)
            if current is None:
                raise InstanceNotFoundError(instance_id)
            if current.version != commit.expected_version:
                raise ConcurrencyConflictError(instance_id, commit.expected_version, current.version)
            event = self._events.get(commit.event_id)
            if event is None or event.processed_at is not None:
                raise ConcurrencyConflictError(instance_id, commit.expected_version, current.version)

            stored = commit.instance.model_copy(deep=True)
            stored.version = current.version + 1
            self._instances[instance_id] = stored
            event.processed_at = commit.processed_at

            for doc in commit.documents:
                self._documents.setdefault(doc.document_id, doc.model_copy(deep=True))
            for doc_id in commit.validated_document_ids:
                doc = self._documents.get(doc_id)
                if doc is not None and not doc.validated:
                    doc.validated = True
            for draft in commit.events:
                new = self._new_event(
                    draft.instance_id, draft.event_type, draft.event_data,
                    draft.triggered_by, draft.created_at, draft.processed,
                )
                self._events[new.event_id] = new
            for record in commit.dispatches:
                self._dispatches.setdefault(record.effect_id, record.model_copy(deep=True))

            return stored.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Documents
    def list_documents(self, instance_id: str) -> list[ExtractedDocument]:
        with self._lock:
            docs = [d.model_copy(deep=True) for d in self._documents.values() if d.instance_id == instance_id]
        return sorted(docs, key=lambda d: d.uploaded_at)

    def get_document(self, document_id: str) -> ExtractedDocument | None:
        with self._lock:
            doc = self._documents.get(document_id)
            return doc.model_copy(deep=True) if doc else None

    # ------------------------------------------------------------------
    # Outbox
    def pending_dispatches(
        self, instance_id: str | None = None, stale_claims_before: datetime | None = None
    ) -> list[DispatchRecord]:
        with self._lock:
            rows = [
                r.model_copy(deep=True)
                for r in self._dispatches.values()
                if _claimable(r, stale_claims_before) and (instance_id is None or r.instance_id == instance_id)
            ]
        return sorted(rows, key=lambda r: (r.created_at, r.effect_id))

    def claim_dispatch(self, effect_id: str, now: datetime, stale_claims_before: datetime) -> DispatchRecord | None:
        with self._lock:
            record = self._dispatches.get(effect_id)
            if record is None or not _claimable(record, stale_claims_before):
                return None
            record.status = "in_flight"
            record.updated_at = now
            return record.model_copy(deep=True)

    def get_dispatch(self, effect_id: str) -> DispatchRecord | None:
        with self._lock:
            record = self._dispatches.get(effect_id)
            return record.model_copy(deep=True) if record else None

    def update_dispatch(self, record: DispatchRecord) -> None:
        with self._lock:
            self._dispatches[record.effect_id] = record.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Employee directory
    def upsert_employee(self, employee: Employee) -> None:
        with self._lock:
            self._employees[employee.employee_id] = employee.model_copy(deep=True)

    def find_employee_by_phone(self, phone_number: str) -> Employee | None:
        with self._lock:
            for employee in self._employees.values():
                if employee.phone_number == phone_number:
                    return employee.model_copy(deep=True)
        return None

    # ------------------------------------------------------------------
    # Helpers
    def _new_event(self, instance_id, event_type, event_data, triggered_by, created_at, processed) -> WorkflowEvent:
        created = created_at or utcnow()
        return WorkflowEvent(
            event_id=uuid.uuid4().hex,
            instance_id=instance_id,
            event_type=event_type,
            event_data=dict(event_data or {}),
            triggered_by=triggered_by,
            created_at=created,
            processed_at=created if processed else None,
            sequence=next(self._sequence),
        )

    def _latest_active(self, predicate) -> WorkflowInstance | None:
        with self._lock:
            matches = [i for i in self._instances.values() if not i.is_terminal and predicate(i)]
            if not matches:
                return None
            return max(matches, key=lambda i: i.created_at).model_copy(deep=True)


def _claimable(record: DispatchRecord, stale_claims_before: datetime | None) -> bool:
    if record.status == "pending":
        return True
    return (
        record.status == "in_flight"
        and stale_claims_before is not None
        and record.updated_at < stale_claims_before
    )
