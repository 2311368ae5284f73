"""SQLite implementation of the renewal repository."""
import json
import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from renewal_engine.core.errors import ConcurrencyConflictError, EventLogError, InstanceNotFoundError
from renewal_engine.core.models import (
    DispatchRecord,
    Employee,
    ExtractedData,
    ExtractedDocument,
    WorkflowEvent,
    WorkflowInstance,
    utcnow,
)
from renewal_engine.core.states import TERMINAL_STATES, EventType, RenewalState, TriggeredBy
from renewal_engine.store.repository import TransitionCommit

logger = logging.getLogger(__name__)

_TERMINAL = tuple(s.value for s in TERMINAL_STATES)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS renewal_instances (
        instance_id TEXT PRIMARY KEY,
        employee_id TEXT NOT NULL,
        phone_number TEXT,
        state TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        expires_at TEXT,
        version INTEGER NOT NULL,
        body TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_instances_phone ON renewal_instances (phone_number, state)",
    "CREATE INDEX IF NOT EXISTS idx_instances_state ON renewal_instances (state, updated_at)",
    """
    CREATE TABLE IF NOT EXISTS renewal_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id TEXT UNIQUE NOT NULL,
        instance_id TEXT NOT NULL,
        event_type TEXT NOT NULL,
        event_data TEXT NOT NULL,
        triggered_by TEXT NOT NULL,
        created_at TEXT NOT NULL,
        processed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_instance ON renewal_events (instance_id, created_at, seq)",
    """
    CREATE TABLE IF NOT EXISTS renewal_documents (
        document_id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        document_type TEXT NOT NULL,
        source_url TEXT NOT NULL,
        media_type TEXT,
        validated INTEGER NOT NULL DEFAULT 0,
        validation_result TEXT NOT NULL,
        extracted TEXT NOT NULL,
        uploaded_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dispatches (
        effect_id TEXT PRIMARY KEY,
        instance_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        effect TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS employees (
        employee_id TEXT PRIMARY KEY,
        phone_number TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        hr_employee_number INTEGER
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_employees_phone ON employees (phone_number)",
]


def _ts(value: datetime | None) -> str | None:
    """UTC ISO timestamp with fixed precision so TEXT comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRepository:
    """Persist instances, events, documents and the outbox using SQLite.

    A single connection is shared across threads behind a lock; every
    ``commit`` runs in one transaction.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            for statement in _SCHEMA:
                cur.execute(statement)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _execute(self, query: str, *params: Any) -> None:
        with self._lock:
            with self._conn:
                self._conn.execute(query, params)

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
            if self._fetchone("SELECT 1 FROM renewal_instances WHERE instance_id = ?", instance_id) is None:
                raise InstanceNotFoundError(instance_id)
            try:
                with self._conn:
                    event_id = self._insert_event(
                        self._conn, instance_id, EventType(event_type), event_data,
                        TriggeredBy(triggered_by), created_at or utcnow(), processed,
                    )
            except sqlite3.Error as e:
                logger.error(f"Failed to append {event_type} for {instance_id}: {e}")
                raise EventLogError(f"Failed to append event for {instance_id}: {e}") from e
        return self.get_event(event_id)

    def unprocessed(self, instance_id: str) -> list[WorkflowEvent]:
        rows = self._fetchall(
            "SELECT * FROM renewal_events WHERE instance_id = ? AND processed_at IS NULL ORDER BY created_at, seq",
            instance_id,
        )
        return [self._event_from_row(r) for r in rows]

    def mark_processed(self, event_id: str, processed_at: datetime | None = None) -> None:
        self._execute(
            "UPDATE renewal_events SET processed_at = ? WHERE event_id = ? AND processed_at IS NULL",
            _ts(processed_at or utcnow()),
            event_id,
        )

    def events(self, instance_id: str) -> list[WorkflowEvent]:
        rows = self._fetchall(
            "SELECT * FROM renewal_events WHERE instance_id = ? ORDER BY created_at, seq",
            instance_id,
        )
        return [self._event_from_row(r) for r in rows]

    def get_event(self, event_id: str) -> WorkflowEvent | None:
        row = self._fetchone("SELECT * FROM renewal_events WHERE event_id = ?", event_id)
        return self._event_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Instances
    def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        with self._lock:
            try:
                with self._conn:
                    self._conn.execute(
                        """
                        INSERT INTO renewal_instances
                            (instance_id, employee_id, phone_number, state, created_at, updated_at,
                             expires_at, version, body)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        self._instance_columns(instance, instance.version),
                    )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Instance already exists: {instance.instance_id}") from e
        return self.get_instance(instance.instance_id)

    def create_unless_active(self, instance: WorkflowInstance) -> tuple[WorkflowInstance, bool]:
        with self._lock:
            existing = self.find_active_for_employee(instance.employee_id)
            if existing is not None:
                return existing, False
            return self.create_instance(instance), True

    def get_instance(self, instance_id: str) -> WorkflowInstance:
        row = self._fetchone("SELECT body, version FROM renewal_instances WHERE instance_id = ?", instance_id)
        if row is None:
            raise InstanceNotFoundError(instance_id)
        return self._instance_from_row(row)

    def find_active_by_phone(self, phone_number: str) -> WorkflowInstance | None:
        row = self._fetchone(
            f"""
            SELECT body, version FROM renewal_instances
            WHERE phone_number = ? AND state NOT IN ({_placeholders(_TERMINAL)})
            ORDER BY created_at DESC LIMIT 1
            """,
            phone_number, *_TERMINAL,
        )
        return self._instance_from_row(row) if row else None

    def find_active_for_employee(self, employee_id: str) -> WorkflowInstance | None:
        row = self._fetchone(
            f"""
            SELECT body, version FROM renewal_instances
            WHERE employee_id = ? AND state NOT IN ({_placeholders(_TERMINAL)})
            ORDER BY created_at DESC LIMIT 1
            """,
            employee_id, *_TERMINAL,
        )
        return self._instance_from_row(row) if row else None

    def find_stale(self, state: RenewalState, updated_before: datetime) -> list[WorkflowInstance]:
        rows = self._fetchall(
            "SELECT body, version FROM renewal_instances WHERE state = ? AND updated_at < ? ORDER BY updated_at",
            RenewalState(state).value,
            _ts(updated_before),
        )
        return [self._instance_from_row(r) for r in rows]

    def find_expired(self, now: datetime) -> list[WorkflowInstance]:
        rows = self._fetchall(
            f"""
            SELECT body, version FROM renewal_instances
            WHERE expires_at IS NOT NULL AND expires_at <= ? AND state NOT IN ({_placeholders(_TERMINAL)})
            ORDER BY expires_at
            """,
            _ts(now), *_TERMINAL,
        )
        return [self._instance_from_row(r) for r in rows]

    def commit(self, commit: TransitionCommit) -> WorkflowInstance:
        instance = commit.instance
        with self._lock:
            with self._conn:
                cur = self._conn.cursor()
                row = cur.execute(
                    "SELECT version FROM renewal_instances WHERE instance_id = ?", (instance.instance_id,)
                ).fetchone()
                if row is None:
                    raise InstanceNotFoundError(instance.instance_id)
                if row["version"] != commit.expected_version:
                    raise ConcurrencyConflictError(instance.instance_id, commit.expected_version, row["version"])

                marked = cur.execute(
                    "UPDATE renewal_events SET processed_at = ? WHERE event_id = ? AND processed_at IS NULL",
                    (_ts(commit.processed_at), commit.event_id),
                )
                if marked.rowcount != 1:
                    raise ConcurrencyConflictError(instance.instance_id, commit.expected_version, row["version"])

                new_version = commit.expected_version + 1
                cur.execute(
                    """
                    UPDATE renewal_instances
                    SET employee_id = ?, phone_number = ?, state = ?, created_at = ?, updated_at = ?,
                        expires_at = ?, version = ?, body = ?
                    WHERE instance_id = ? AND version = ?
                    """,
                    (*self._instance_columns(instance, new_version)[1:], instance.instance_id, commit.expected_version),
                )

                for doc in commit.documents:
                    cur.execute(
                        """
                        INSERT OR IGNORE INTO renewal_documents
                            (document_id, instance_id, document_type, source_url, media_type, validated,
                             validation_result, extracted, uploaded_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            doc.document_id, doc.instance_id, doc.document_type.value, doc.source_url,
                            doc.media_type, int(doc.validated), json.dumps(doc.validation_result),
                            doc.extracted.model_dump_json(), _ts(doc.uploaded_at),
                        ),
                    )
                for doc_id in commit.validated_document_ids:
                    cur.execute(
                        "UPDATE renewal_documents SET validated = 1 WHERE document_id = ? AND validated = 0",
                        (doc_id,),
                    )
                for draft in commit.events:
                    self._insert_event(
                        cur, draft.instance_id, draft.event_type, draft.event_data,
                        draft.triggered_by, draft.created_at, draft.processed,
                    )
                for record in commit.dispatches:
                    cur.execute(
                        """
                        INSERT OR IGNORE INTO dispatches
                            (effect_id, instance_id, kind, effect, status, attempts, last_error,
                             created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        self._dispatch_columns(record),
                    )
        return self.get_instance(instance.instance_id)

    # ------------------------------------------------------------------
    # Documents
    def list_documents(self, instance_id: str) -> list[ExtractedDocument]:
        rows = self._fetchall(
            "SELECT * FROM renewal_documents WHERE instance_id = ? ORDER BY uploaded_at", instance_id
        )
        return [self._document_from_row(r) for r in rows]

    def get_document(self, document_id: str) -> ExtractedDocument | None:
        row = self._fetchone("SELECT * FROM renewal_documents WHERE document_id = ?", document_id)
        return self._document_from_row(row) if row else None

    # ------------------------------------------------------------------
    # Outbox
    def pending_dispatches(
        self, instance_id: str | None = None, stale_claims_before: datetime | None = None
    ) -> list[DispatchRecord]:
        query = "SELECT * FROM dispatches WHERE (status = 'pending' OR (status = 'in_flight' AND updated_at < ?))"
        params: list[Any] = [_ts(stale_claims_before) if stale_claims_before else ""]
        if instance_id is not None:
            query += " AND instance_id = ?"
            params.append(instance_id)
        rows = self._fetchall(query + " ORDER BY created_at, effect_id", *params)
        return [self._dispatch_from_row(r) for r in rows]

    def claim_dispatch(self, effect_id: str, now: datetime, stale_claims_before: datetime) -> DispatchRecord | None:
        with self._lock:
            with self._conn:
                cur = self._conn.execute(
                    """
                    UPDATE dispatches SET status = 'in_flight', updated_at = ?
                    WHERE effect_id = ?
                      AND (status = 'pending' OR (status = 'in_flight' AND updated_at < ?))
                    """,
                    (_ts(now), effect_id, _ts(stale_claims_before)),
                )
                if cur.rowcount != 1:
                    return None
            return self.get_dispatch(effect_id)

    def get_dispatch(self, effect_id: str) -> DispatchRecord | None:
        row = self._fetchone("SELECT * FROM dispatches WHERE effect_id = ?", effect_id)
        return self._dispatch_from_row(row) if row else None

    def update_dispatch(self, record: DispatchRecord) -> None:
        self._execute(
            "INSERT OR REPLACE INTO dispatches "
            "(effect_id, instance_id, kind, effect, status, attempts, last_error, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            *self._dispatch_columns(record),
        )

    # ------------------------------------------------------------------
    # Employee directory
    def upsert_employee(self, employee: Employee) -> None:
        self._execute(
            "INSERT OR REPLACE INTO employees "
            "(employee_id, phone_number, first_name, last_name, hr_employee_number) VALUES (?, ?, ?, ?, ?)",
            employee.employee_id,
            employee.phone_number,
            employee.first_name,
            employee.last_name,
            employee.hr_employee_number,
        )

    def find_employee_by_phone(self, phone_number: str) -> Employee | None:
        row = self._fetchone("SELECT * FROM employees WHERE phone_number = ? LIMIT 1", phone_number)
        if row is None:
            return None
        return Employee(
            employee_id=row["employee_id"],
            phone_number=row["phone_number"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            hr_employee_number=row["hr_employee_number"],
        )

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _insert_event(conn, instance_id, event_type, event_data, triggered_by, created_at, processed) -> str:
        event_id = uuid.uuid4().hex
        conn.execute(
            """
            INSERT INTO renewal_events
                (event_id, instance_id, event_type, event_data, triggered_by, created_at, processed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event_id,
                instance_id,
                event_type.value,
                json.dumps(event_data or {}),
                triggered_by.value,
                _ts(created_at),
                _ts(created_at) if processed else None,
            ),
        )
        return event_id

    @staticmethod
    def _instance_columns(instance: WorkflowInstance, version: int) -> tuple:
        return (
            instance.instance_id,
            instance.employee_id,
            instance.phone_number,
            instance.state.value,
            _ts(instance.created_at),
            _ts(instance.updated_at),
            _ts(instance.expires_at),
            version,
            instance.model_dump_json(exclude={"version"}),
        )

    @staticmethod
    def _instance_from_row(row: sqlite3.Row) -> WorkflowInstance:
        instance = WorkflowInstance.model_validate_json(row["body"])
        instance.version = row["version"]
        return instance

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> WorkflowEvent:
        return WorkflowEvent(
            event_id=row["event_id"],
            instance_id=row["instance_id"],
            event_type=EventType(row["event_type"]),
            event_data=json.loads(row["event_data"]),
            triggered_by=TriggeredBy(row["triggered_by"]),
            created_at=_dt(row["created_at"]),
            processed_at=_dt(row["processed_at"]),
            sequence=row["seq"],
        )

    @staticmethod
    def _document_from_row(row: sqlite3.Row) -> ExtractedDocument:
        return ExtractedDocument(
            document_id=row["document_id"],
            instance_id=row["instance_id"],
            document_type=row["document_type"],
            source_url=row["source_url"],
            media_type=row["media_type"],
            validated=bool(row["validated"]),
            validation_result=json.loads(row["validation_result"]),
            extracted=ExtractedData.model_validate_json(row["extracted"]),
            uploaded_at=_dt(row["uploaded_at"]),
        )

    @staticmethod
    def _dispatch_columns(record: DispatchRecord) -> tuple:
        return (
            record.effect_id,
            record.instance_id,
            record.kind,
            json.dumps(record.effect),
            record.status,
            record.attempts,
            record.last_error,
            _ts(record.created_at),
            _ts(record.updated_at),
        )

    @staticmethod
    def _dispatch_from_row(row: sqlite3.Row) -> DispatchRecord:
        return DispatchRecord(
            effect_id=row["effect_id"],
            instance_id=row["instance_id"],
            kind=row["kind"],
            effect=json.loads(row["effect"]),
            status=row["status"],
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )


def _placeholders(values: tuple) -> str:
    return ", ".join("?" for _ in values)
