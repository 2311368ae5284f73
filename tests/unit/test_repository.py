"""Contract tests run against both repository backends."""
from datetime import datetime, timedelta, timezone

import pytest

from renewal_engine.core.errors import ConcurrencyConflictError, InstanceNotFoundError
from renewal_engine.core.models import (
    DispatchRecord,
    Employee,
    ExtractedData,
    ExtractedDocument,
    WorkflowInstance,
)
from renewal_engine.core.states import DocumentType, EventType, RenewalState, TriggeredBy
from renewal_engine.store.inmemory import InMemoryRepository
from renewal_engine.store.repository import EventDraft, TransitionCommit
from renewal_engine.store.sqlite import SQLiteRepository

T0 = datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)
PHONE = "+15551234567"


@pytest.fixture(params=["memory", "sqlite"])
def repo(request):
    if request.param == "memory":
        yield InMemoryRepository()
    else:
        repo = SQLiteRepository(":memory:")
        yield repo
        repo.close()


def make_instance(instance_id="inst-1", **kwargs) -> WorkflowInstance:
    defaults = dict(
        employee_id="emp-1",
        phone_number=PHONE,
        state=RenewalState.AWAITING_PHOTO,
        created_at=T0,
        updated_at=T0,
    )
    defaults.update(kwargs)
    return WorkflowInstance(instance_id=instance_id, **defaults)


def commit_for(repo, event, **changes) -> TransitionCommit:
    instance = repo.get_instance(event.instance_id)
    expected = instance.version
    updated = instance.model_copy(update=changes)
    return TransitionCommit(instance=updated, expected_version=expected, event_id=event.event_id, processed_at=T0)


class TestEventLog:
    def test_append_to_unknown_instance_raises(self, repo):
        with pytest.raises(InstanceNotFoundError):
            repo.append("missing", EventType.EMPLOYEE_MESSAGE, {"text": "hi"}, TriggeredBy.EMPLOYEE)

    def test_events_are_ordered_by_creation_time(self, repo):
        repo.create_instance(make_instance())
        late = repo.append(
            "inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "second"}, TriggeredBy.EMPLOYEE,
            created_at=T0 + timedelta(minutes=5),
        )
        early = repo.append(
            "inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "first"}, TriggeredBy.EMPLOYEE,
            created_at=T0 + timedelta(minutes=1),
        )

        assert [e.event_id for e in repo.events("inst-1")] == [early.event_id, late.event_id]
        assert [e.event_data["text"] for e in repo.unprocessed("inst-1")] == ["first", "second"]

    def test_same_timestamp_keeps_append_order(self, repo):
        repo.create_instance(make_instance())
        a = repo.append("inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "a"}, TriggeredBy.EMPLOYEE, created_at=T0)
        b = repo.append("inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "b"}, TriggeredBy.EMPLOYEE, created_at=T0)

        assert [e.event_id for e in repo.events("inst-1")] == [a.event_id, b.event_id]

    def test_mark_processed_is_idempotent(self, repo):
        repo.create_instance(make_instance())
        event = repo.append("inst-1", EventType.TIMEOUT_FIRED, {}, TriggeredBy.CRON, created_at=T0)

        repo.mark_processed(event.event_id, T0 + timedelta(hours=1))
        repo.mark_processed(event.event_id, T0 + timedelta(hours=2))

        stored = repo.get_event(event.event_id)
        assert stored.processed_at == T0 + timedelta(hours=1)
        assert repo.unprocessed("inst-1") == []

    def test_record_only_append(self, repo):
        repo.create_instance(make_instance())
        event = repo.append("inst-1", EventType.AGENT_ACTION, {"action": "x"}, TriggeredBy.AGENT, processed=True)

        assert repo.get_event(event.event_id).is_processed
        assert repo.unprocessed("inst-1") == []

    def test_unknown_event_is_none(self, repo):
        assert repo.get_event("nope") is None


class TestInstances:
    def test_create_and_get(self, repo):
        repo.create_instance(make_instance(metadata={"license_name": "Guard Card"}))

        stored = repo.get_instance("inst-1")
        assert stored.state == RenewalState.AWAITING_PHOTO
        assert stored.metadata == {"license_name": "Guard Card"}
        assert stored.version == 0

    def test_duplicate_create_raises(self, repo):
        repo.create_instance(make_instance())
        with pytest.raises(ValueError):
            repo.create_instance(make_instance())

    def test_get_missing_raises(self, repo):
        with pytest.raises(InstanceNotFoundError):
            repo.get_instance("missing")

    def test_find_active_by_phone_skips_terminal(self, repo):
        repo.create_instance(make_instance("old", state=RenewalState.COMPLETED))
        repo.create_instance(make_instance("new", created_at=T0 + timedelta(days=1)))

        assert repo.find_active_by_phone(PHONE).instance_id == "new"
        assert repo.find_active_by_phone("+15559999999") is None

    def test_find_active_for_employee(self, repo):
        repo.create_instance(make_instance("done", state=RenewalState.CANCELLED))
        assert repo.find_active_for_employee("emp-1") is None

        repo.create_instance(make_instance("live"))
        assert repo.find_active_for_employee("emp-1").instance_id == "live"

    def test_create_unless_active(self, repo):
        first, created = repo.create_unless_active(make_instance("first"))
        assert created
        assert first.instance_id == "first"

        again, created = repo.create_unless_active(make_instance("second"))
        assert not created
        assert again.instance_id == "first"
        with pytest.raises(InstanceNotFoundError):
            repo.get_instance("second")

    def test_find_stale(self, repo):
        repo.create_instance(make_instance("stale", updated_at=T0 - timedelta(hours=80)))
        repo.create_instance(make_instance("fresh", updated_at=T0 - timedelta(hours=1)))
        repo.create_instance(make_instance(
            "other", state=RenewalState.AWAITING_TRAINING, updated_at=T0 - timedelta(hours=80),
        ))

        found = repo.find_stale(RenewalState.AWAITING_PHOTO, T0 - timedelta(hours=72))

        assert [i.instance_id for i in found] == ["stale"]

    def test_find_expired_skips_terminal(self, repo):
        repo.create_instance(make_instance("expired", expires_at=T0 - timedelta(minutes=1)))
        repo.create_instance(make_instance("later", expires_at=T0 + timedelta(hours=1)))
        repo.create_instance(make_instance("never"))
        repo.create_instance(make_instance(
            "closed", state=RenewalState.FAILED, expires_at=T0 - timedelta(hours=1),
        ))

        assert [i.instance_id for i in repo.find_expired(T0)] == ["expired"]


class TestCommit:
    def test_commit_bumps_version_and_marks_event(self, repo):
        repo.create_instance(make_instance())
        event = repo.append("inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "hi"}, TriggeredBy.EMPLOYEE)

        stored = repo.commit(commit_for(repo, event, state=RenewalState.AWAITING_TRAINING))

        assert stored.version == 1
        assert stored.state == RenewalState.AWAITING_TRAINING
        assert repo.get_event(event.event_id).processed_at == T0

    def test_stale_version_is_rejected(self, repo):
        repo.create_instance(make_instance())
        first = repo.append("inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "a"}, TriggeredBy.EMPLOYEE)
        second = repo.append("inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "b"}, TriggeredBy.EMPLOYEE)
        stale = commit_for(repo, second, state=RenewalState.CANCELLED)
        repo.commit(commit_for(repo, first, state=RenewalState.AWAITING_TRAINING))

        with pytest.raises(ConcurrencyConflictError):
            repo.commit(stale)

        assert repo.get_instance("inst-1").state == RenewalState.AWAITING_TRAINING
        assert not repo.get_event(second.event_id).is_processed

    def test_processed_event_cannot_be_committed_twice(self, repo):
        repo.create_instance(make_instance())
        event = repo.append("inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "a"}, TriggeredBy.EMPLOYEE)
        repo.commit(commit_for(repo, event))

        with pytest.raises(ConcurrencyConflictError):
            repo.commit(commit_for(repo, event))

        assert repo.get_instance("inst-1").version == 1

    def test_commit_writes_side_records(self, repo):
        repo.create_instance(make_instance())
        event = repo.append("inst-1", EventType.DOCUMENT_UPLOADED, {"document_url": "u"}, TriggeredBy.EMPLOYEE)
        doc = ExtractedDocument(
            document_id="doc-1",
            instance_id="inst-1",
            document_type=DocumentType.LICENSE_PHOTO,
            source_url="https://media.example.com/license.jpg",
            extracted=ExtractedData(expiration_date="2027-03-15", confidence=0.9),
            uploaded_at=T0,
        )
        commit = commit_for(repo, event, state=RenewalState.PHOTO_UPLOADED)
        commit.documents = [doc]
        commit.events = [EventDraft(
            instance_id="inst-1", event_type=EventType.AGENT_ACTION,
            event_data={"action": "extracted"}, triggered_by=TriggeredBy.AGENT, created_at=T0,
        )]
        commit.dispatches = [DispatchRecord(
            effect_id=f"{event.event_id}:0", instance_id="inst-1", kind="send_message",
            effect={"kind": "send_message", "template": "help", "body": "Hi"}, created_at=T0,
        )]

        repo.commit(commit)

        assert repo.get_document("doc-1").extracted.expiration_date == "2027-03-15"
        assert [d.document_id for d in repo.list_documents("inst-1")] == ["doc-1"]
        actions = [e for e in repo.events("inst-1") if e.event_type == EventType.AGENT_ACTION]
        assert actions[0].is_processed
        assert [r.effect_id for r in repo.pending_dispatches("inst-1")] == [f"{event.event_id}:0"]

    def test_validated_document_ids(self, repo):
        repo.create_instance(make_instance())
        upload = repo.append("inst-1", EventType.DOCUMENT_UPLOADED, {}, TriggeredBy.EMPLOYEE)
        commit = commit_for(repo, upload)
        commit.documents = [ExtractedDocument(
            document_id="doc-1", instance_id="inst-1",
            document_type=DocumentType.LICENSE_PHOTO, source_url="u", uploaded_at=T0,
        )]
        repo.commit(commit)

        confirm = repo.append("inst-1", EventType.EMPLOYEE_MESSAGE, {"text": "YES"}, TriggeredBy.EMPLOYEE)
        commit = commit_for(repo, confirm)
        commit.validated_document_ids = ["doc-1"]
        repo.commit(commit)

        assert repo.get_document("doc-1").validated

    def test_committed_instance_is_a_copy(self, repo):
        repo.create_instance(make_instance())
        loaded = repo.get_instance("inst-1")
        loaded.metadata["scratch"] = True

        assert "scratch" not in repo.get_instance("inst-1").metadata


class TestOutbox:
    def test_update_dispatch_moves_row_out_of_pending(self, repo):
        repo.create_instance(make_instance())
        record = DispatchRecord(
            effect_id="e-1", instance_id="inst-1", kind="send_message",
            effect={"kind": "send_message", "template": "help", "body": "Hi"}, created_at=T0,
        )
        repo.update_dispatch(record)
        assert [r.effect_id for r in repo.pending_dispatches()] == ["e-1"]

        repo.update_dispatch(record.model_copy(update={"status": "succeeded", "attempts": 1}))

        assert repo.pending_dispatches() == []
        assert repo.get_dispatch("e-1").attempts == 1

    def test_pending_filter_by_instance(self, repo):
        for instance_id in ("inst-1", "inst-2"):
            repo.update_dispatch(DispatchRecord(
                effect_id=f"{instance_id}:0", instance_id=instance_id, kind="notify_supervisor",
                effect={"kind": "notify_supervisor", "reason": "stuck"}, created_at=T0,
            ))

        assert [r.effect_id for r in repo.pending_dispatches("inst-2")] == ["inst-2:0"]
        assert len(repo.pending_dispatches()) == 2

    def test_claim_is_exclusive_until_lease_expires(self, repo):
        repo.update_dispatch(DispatchRecord(
            effect_id="e-1", instance_id="inst-1", kind="send_message",
            effect={"kind": "send_message", "template": "help", "body": "Hi"}, created_at=T0,
        ))

        claimed = repo.claim_dispatch("e-1", T0, T0 - timedelta(minutes=5))
        assert claimed.status == "in_flight"
        assert repo.claim_dispatch("e-1", T0, T0 - timedelta(minutes=5)) is None
        assert repo.pending_dispatches() == []

        later = T0 + timedelta(minutes=10)
        assert [r.effect_id for r in repo.pending_dispatches(None, later - timedelta(minutes=5))] == ["e-1"]
        assert repo.claim_dispatch("e-1", later, later - timedelta(minutes=5)) is not None

    def test_finished_rows_cannot_be_claimed(self, repo):
        repo.update_dispatch(DispatchRecord(
            effect_id="e-1", instance_id="inst-1", kind="send_message",
            effect={"kind": "send_message", "template": "help", "body": "Hi"}, status="succeeded", created_at=T0,
        ))
        assert repo.claim_dispatch("e-1", T0, T0 + timedelta(days=1)) is None
        assert repo.claim_dispatch("missing", T0, T0) is None

    def test_missing_dispatch_is_none(self, repo):
        assert repo.get_dispatch("nope") is None


class TestEmployees:
    def test_upsert_and_find_by_phone(self, repo):
        repo.upsert_employee(Employee(employee_id="emp-1", phone_number=PHONE, first_name="Jane"))
        repo.upsert_employee(Employee(
            employee_id="emp-1", phone_number=PHONE, first_name="Janet", hr_employee_number=4411,
        ))

        employee = repo.find_employee_by_phone(PHONE)
        assert employee.first_name == "Janet"
        assert employee.hr_employee_number == 4411
        assert repo.find_employee_by_phone("+15559999999") is None
