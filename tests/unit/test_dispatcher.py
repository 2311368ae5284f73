"""Unit tests for OutboundDispatcher retry, outbox and reporting behavior."""
import threading
import time

import pytest

from renewal_engine.core.effects import NotifySupervisor, RequestSubmission, SendMessage, SyncExternal
from renewal_engine.core.models import DispatchRecord, SubmissionPackage, WorkflowInstance
from renewal_engine.core.states import EventType
from renewal_engine.engine.dispatcher import OutboundDispatcher
from renewal_engine.engine.retry import compute_backoff
from renewal_engine.services.hr.mock import MockHRClient
from renewal_engine.services.messaging.mock import MockMessageSender
from renewal_engine.store.inmemory import InMemoryRepository
from renewal_engine.store.sqlite import SQLiteRepository
from tests.mocks import FakeClock

PHONE = "+15551234567"
SUPERVISOR = "+15550000000"


@pytest.fixture
def repo():
    repo = InMemoryRepository()
    repo.create_instance(WorkflowInstance(instance_id="inst-1", employee_id="emp-1", phone_number=PHONE))
    return repo


class Sleeps:
    def __init__(self):
        self.delays: list[float] = []

    def __call__(self, seconds: float):
        self.delays.append(seconds)


def make_dispatcher(repo, sender=None, hr=None, sleep=None, **kwargs):
    return OutboundDispatcher(
        repo,
        sender or MockMessageSender(),
        hr or MockHRClient(),
        supervisor_phone=kwargs.pop("supervisor_phone", SUPERVISOR),
        sleep=sleep or Sleeps(),
        clock=kwargs.pop("clock", None) or FakeClock(),
        **kwargs,
    )


def actions(repo) -> list[str]:
    return [e.event_data.get("action") for e in repo.events("inst-1") if e.event_type == EventType.AGENT_ACTION]


class TestSendMessage:
    def test_sends_rendered_body(self, repo):
        sender = MockMessageSender()
        dispatcher = make_dispatcher(repo, sender)

        result = dispatcher.dispatch("inst-1", SendMessage(template="help", body="Hello"), effect_id="e-1")

        assert result.success
        assert result.attempts == 1
        assert sender.messages_to(PHONE) == ["Hello"]
        assert repo.get_dispatch("e-1").status == "succeeded"
        assert actions(repo) == ["dispatch_succeeded"]

    def test_missing_body_is_permanent(self, repo):
        dispatcher = make_dispatcher(repo)
        result = dispatcher.dispatch("inst-1", SendMessage(template="help"))

        assert not result.success
        assert result.attempts == 1
        assert "no rendered body" in result.error


class TestRetries:
    def test_transient_failures_back_off_then_succeed(self, repo):
        sleeps = Sleeps()
        sender = MockMessageSender(fail_times=2)
        dispatcher = make_dispatcher(repo, sender, sleep=sleeps, base_delay=2.0, jitter=0.0)

        result = dispatcher.dispatch("inst-1", SendMessage(template="help", body="Hi"))

        assert result.success
        assert result.attempts == 3
        assert sleeps.delays == [2.0, 4.0]

    def test_exhausted_retries_fail(self, repo):
        sender = MockMessageSender(fail_times=5)
        dispatcher = make_dispatcher(repo, sender, max_attempts=3)

        result = dispatcher.dispatch("inst-1", SendMessage(template="help", body="Hi"), effect_id="e-1")

        assert not result.success
        assert result.attempts == 3
        record = repo.get_dispatch("e-1")
        assert record.status == "failed"
        assert record.last_error == "mock transient failure"
        assert actions(repo) == ["dispatch_failed"]
        steps = [e for e in repo.events("inst-1") if e.event_type == EventType.STEP_COMPLETED]
        assert steps[0].event_data["status"] == "failed"
        assert all(e.is_processed for e in repo.events("inst-1"))

    def test_permanent_failure_is_not_retried(self, repo):
        sleeps = Sleeps()
        sender = MockMessageSender(reject=True)
        dispatcher = make_dispatcher(repo, sender, sleep=sleeps)

        result = dispatcher.dispatch("inst-1", SendMessage(template="help", body="Hi"))

        assert not result.success
        assert result.attempts == 1
        assert sleeps.delays == []

    def test_delivered_row_is_never_resent(self, repo):
        sender = MockMessageSender()
        dispatcher = make_dispatcher(repo, sender)
        dispatcher.dispatch("inst-1", SendMessage(template="help", body="Hi"), effect_id="e-1")

        again = dispatcher.dispatch("inst-1", SendMessage(template="help", body="Hi"), effect_id="e-1")

        assert again.skipped
        assert again.success
        assert len(sender.all_calls) == 1

    def test_drain_delivers_pending_rows(self, repo):
        repo.update_dispatch(DispatchRecord(
            effect_id="e-9",
            instance_id="inst-1",
            kind="send_message",
            effect=SendMessage(template="help", body="Queued").model_dump(mode="json"),
        ))
        sender = MockMessageSender()
        dispatcher = make_dispatcher(repo, sender)

        results = dispatcher.drain_all()

        assert [r.effect_id for r in results] == ["e-9"]
        assert sender.messages_to(PHONE) == ["Queued"]
        assert repo.pending_dispatches() == []


class SlowSender(MockMessageSender):
    def send_text(self, to: str, body: str) -> dict:
        time.sleep(0.2)
        return super().send_text(to, body)


def queued_hello(repo) -> None:
    repo.update_dispatch(DispatchRecord(
        effect_id="e-1",
        instance_id="inst-1",
        kind="send_message",
        effect=SendMessage(template="help", body="Hello").model_dump(mode="json"),
    ))


class TestConcurrentDelivery:
    @pytest.fixture(params=["memory", "sqlite"])
    def shared_repo(self, request):
        repo = InMemoryRepository() if request.param == "memory" else SQLiteRepository(":memory:")
        repo.create_instance(WorkflowInstance(instance_id="inst-1", employee_id="emp-1", phone_number=PHONE))
        yield repo
        if isinstance(repo, SQLiteRepository):
            repo.close()

    def test_parallel_drains_send_once(self, shared_repo):
        queued_hello(shared_repo)
        sender = SlowSender()
        dispatcher = make_dispatcher(shared_repo, sender)

        threads = [threading.Thread(target=dispatcher.drain, args=("inst-1",)) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sender.messages_to(PHONE) == ["Hello"]
        assert shared_repo.get_dispatch("e-1").status == "succeeded"

    def test_claimed_row_is_skipped(self, shared_repo):
        queued_hello(shared_repo)
        clock = FakeClock()
        shared_repo.claim_dispatch("e-1", clock.now, clock.now)
        sender = MockMessageSender()

        results = make_dispatcher(shared_repo, sender, clock=clock).drain_all()

        assert results == []
        assert sender.all_calls == []

    def test_abandoned_claim_is_retaken_after_lease(self, shared_repo):
        queued_hello(shared_repo)
        clock = FakeClock()
        shared_repo.claim_dispatch("e-1", clock.now, clock.now)
        clock.advance(minutes=6)
        sender = MockMessageSender()

        results = make_dispatcher(shared_repo, sender, clock=clock, claim_lease_seconds=300).drain("inst-1")

        assert [r.success for r in results] == [True]
        assert sender.messages_to(PHONE) == ["Hello"]


class TestEffectKinds:
    def test_notify_goes_to_supervisor(self, repo):
        sender = MockMessageSender()
        dispatcher = make_dispatcher(repo, sender)

        dispatcher.dispatch("inst-1", NotifySupervisor(reason="stuck", body="Renewal inst-1 is stuck."))

        assert sender.messages_to(SUPERVISOR) == ["Renewal inst-1 is stuck."]
        assert sender.messages_to(PHONE) == []

    def test_notify_without_supervisor_phone_fails(self, repo):
        dispatcher = make_dispatcher(repo, supervisor_phone=None)
        result = dispatcher.dispatch("inst-1", NotifySupervisor(reason="stuck"))
        assert not result.success
        assert "supervisor phone" in result.error

    def test_long_submission_request_is_split(self, repo):
        sender = MockMessageSender()
        dispatcher = make_dispatcher(repo, sender)
        body = " ".join(f"Step {n} of the portal submission is described in this sentence." for n in range(1, 6))

        result = dispatcher.dispatch(
            "inst-1",
            RequestSubmission(package=SubmissionPackage(portal_url="https://portal.example.gov"), body=body),
        )

        assert result.success
        assert result.response["segments"] == len(sender.messages_to(PHONE)) > 1
        assert all(len(m) <= 153 for m in sender.messages_to(PHONE))

    def test_failed_submission_request_reports_submission_failed(self, repo):
        dispatcher = make_dispatcher(repo, MockMessageSender(reject=True))

        dispatcher.dispatch(
            "inst-1",
            RequestSubmission(package=SubmissionPackage(portal_url="https://portal.example.gov"), body="Go"),
        )

        follow_up = repo.unprocessed("inst-1")
        assert len(follow_up) == 1
        assert follow_up[0].event_data["action"] == "submission_failed"

    def test_hr_sync_reported_as_approval(self, repo):
        hr = MockHRClient()
        dispatcher = make_dispatcher(repo, hr=hr)

        dispatcher.dispatch("inst-1", SyncExternal(payload={"expiration_date": "2027-03-15"}, report_as="approval"))

        assert hr.updates == [{"expiration_date": "2027-03-15"}]
        follow_up = repo.unprocessed("inst-1")
        assert follow_up[0].event_type == EventType.APPROVAL_CHECK
        assert follow_up[0].event_data == {"approved": True, "source": "hr_sync", "reason": None}

    def test_rejected_hr_sync_reports_rejection(self, repo):
        dispatcher = make_dispatcher(repo, hr=MockHRClient(reject=True))

        dispatcher.dispatch("inst-1", SyncExternal(payload={}, report_as="approval"))

        follow_up = repo.unprocessed("inst-1")[0]
        assert follow_up.event_data["approved"] is False
        assert follow_up.event_data["reason"] == "mock HR system rejected update"

    def test_record_sync_has_no_follow_up(self, repo):
        dispatcher = make_dispatcher(repo)
        dispatcher.dispatch("inst-1", SyncExternal(payload={}, report_as="record"))
        assert repo.unprocessed("inst-1") == []


class TestComputeBackoff:
    def test_grows_exponentially(self):
        assert compute_backoff(1, base=2.0, jitter=0.0) == 2.0
        assert compute_backoff(3, base=2.0, jitter=0.0) == 8.0

    def test_jitter_is_bounded(self):
        delay = compute_backoff(1, base=1.5, jitter=0.5)
        assert 1.5 <= delay <= 2.0
