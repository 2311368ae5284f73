import logging
import time
import uuid
from datetime import timedelta
from typing import Callable

import opik

from renewal_engine.core.effects import (
    DispatchResult,
    NotifySupervisor,
    RequestSubmission,
    SendMessage,
    SyncExternal,
    load_effect,
)
from renewal_engine.core.errors import DispatchError, PermanentDispatchError, TransientDispatchError
from renewal_engine.core.models import DispatchRecord, WorkflowInstance, utcnow
from renewal_engine.core.states import EventType, TriggeredBy
from renewal_engine.engine.retry import compute_backoff
from renewal_engine.services.hr.base import HRSystemClient
from renewal_engine.services.messaging.base import MessageSender
from renewal_engine.store.repository import RenewalRepository

logger = logging.getLogger(__name__)


class OutboundDispatcher:
    """Delivers outbox rows and reports the outcome back to the event log.

    Transient failures are retried with exponential backoff up to
    ``max_attempts``; permanent failures stop immediately. A row is delivered
    only by the pass that claims it, and never again once it has succeeded.
    A claim older than ``claim_lease_seconds`` is treated as abandoned.
    """

    def __init__(
        self,
        repository: RenewalRepository,
        sender: MessageSender,
        hr_client: HRSystemClient,
        supervisor_phone: str | None = None,
        max_attempts: int = 3,
        base_delay: float = 1.5,
        jitter: float = 0.5,
        claim_lease_seconds: float = 300.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.sender = sender
        self.hr_client = hr_client
        self.supervisor_phone = supervisor_phone
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.jitter = jitter
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self._sleep = sleep
        self._clock = clock

    def dispatch(self, instance_id: str, effect, effect_id: str | None = None) -> DispatchResult:
        """Store ``effect`` in the outbox (unless already there) and deliver it."""
        effect_id = effect_id or f"adhoc-{uuid.uuid4().hex}"
        record = self.repository.get_dispatch(effect_id)
        if record is None:
            now = self._clock()
            record = DispatchRecord(
                effect_id=effect_id,
                instance_id=instance_id,
                kind=effect.kind,
                effect=effect.model_dump(mode="json"),
                created_at=now,
                updated_at=now,
            )
            self.repository.update_dispatch(record)
        return self.deliver(record)

    def drain(self, instance_id: str) -> list[DispatchResult]:
        stale = self._clock() - self.claim_lease
        return [self.deliver(record) for record in self.repository.pending_dispatches(instance_id, stale)]

    def drain_all(self) -> list[DispatchResult]:
        stale = self._clock() - self.claim_lease
        return [self.deliver(record) for record in self.repository.pending_dispatches(None, stale)]

    @opik.track(name="dispatch_effect")
    def deliver(self, record: DispatchRecord) -> DispatchResult:
        now = self._clock()
        claimed = self.repository.claim_dispatch(record.effect_id, now, now - self.claim_lease)
        if claimed is None:
            current = self.repository.get_dispatch(record.effect_id) or record
            return DispatchResult(
                effect_id=current.effect_id,
                kind=current.kind,
                success=current.status == "succeeded",
                attempts=current.attempts,
                skipped=True,
                error=current.last_error,
            )
        current = claimed

        effect = load_effect(current.effect)
        instance = self.repository.get_instance(current.instance_id)

        attempts = current.attempts
        response: dict = {}
        error: str | None = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                response = self._send(instance, effect)
                error = None
                break
            except TransientDispatchError as e:
                error = str(e)
                logger.warning(f"Dispatch {current.effect_id} attempt {attempts}/{self.max_attempts} failed: {e}")
                if attempts < self.max_attempts:
                    self._sleep(compute_backoff(attempts, self.base_delay, self.jitter))
            except PermanentDispatchError as e:
                error = str(e)
                logger.error(f"Dispatch {current.effect_id} rejected: {e}")
                break

        if attempts == current.attempts:
            error = error or "max attempts exhausted"
        success = error is None
        current.attempts = attempts
        current.status = "succeeded" if success else "failed"
        current.last_error = error
        current.updated_at = self._clock()
        self.repository.update_dispatch(current)

        if success:
            logger.info(f"Dispatched {current.kind} {current.effect_id} after {attempts} attempt(s)")
        self._report(current, effect, success, response)
        return DispatchResult(
            effect_id=current.effect_id,
            kind=current.kind,
            success=success,
            attempts=attempts,
            error=error,
            response=response,
        )

    def _send(self, instance: WorkflowInstance, effect) -> dict:
        if isinstance(effect, SyncExternal):
            return self.hr_client.update_compliance_item(effect.payload)

        if isinstance(effect, NotifySupervisor):
            if not self.supervisor_phone:
                raise PermanentDispatchError("No supervisor phone configured")
            results = self.sender.send_long(self.supervisor_phone, effect.body or effect.reason)
            return {"status": "ok", "segments": len(results)}

        if not instance.phone_number:
            raise PermanentDispatchError(f"Instance {instance.instance_id} has no phone number")
        if isinstance(effect, RequestSubmission):
            results = self.sender.send_long(instance.phone_number, effect.body or effect.package.portal_url)
            return {"status": "ok", "segments": len(results)}
        if isinstance(effect, SendMessage):
            if not effect.body:
                raise PermanentDispatchError(f"Message {effect.template} has no rendered body")
            return self.sender.send_text(instance.phone_number, effect.body)
        raise DispatchError(f"Unknown effect type: {type(effect).__name__}")

    def _report(self, record: DispatchRecord, effect, success: bool, response: dict) -> None:
        """Append the audit trail and any state-changing follow-up event."""
        now = self._clock()
        detail = {"effect_id": record.effect_id, "kind": record.kind, "attempts": record.attempts}
        append = self.repository.append

        if success:
            append(record.instance_id, EventType.AGENT_ACTION,
                   {"action": "dispatch_succeeded", "detail": {**detail, "response": response}},
                   TriggeredBy.SYSTEM, created_at=now, processed=True)
        else:
            append(record.instance_id, EventType.AGENT_ACTION,
                   {"action": "dispatch_failed", "reason": record.last_error, "detail": detail},
                   TriggeredBy.SYSTEM, created_at=now, processed=True)
            append(record.instance_id, EventType.STEP_COMPLETED,
                   {"step": f"dispatch_{record.kind}", "status": "failed", "detail": detail},
                   TriggeredBy.SYSTEM, created_at=now, processed=True)

        if isinstance(effect, SyncExternal) and effect.report_as == "approval":
            append(record.instance_id, EventType.APPROVAL_CHECK,
                   {"approved": success, "source": "hr_sync", "reason": record.last_error},
                   TriggeredBy.SYSTEM, created_at=now)
        elif isinstance(effect, RequestSubmission) and not success:
            append(record.instance_id, EventType.AGENT_ACTION,
                   {"action": "submission_failed", "reason": record.last_error, "detail": detail},
                   TriggeredBy.SYSTEM, created_at=now)
