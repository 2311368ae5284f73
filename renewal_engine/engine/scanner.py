import logging
from datetime import timedelta
from typing import Callable, Iterable

import opik

from renewal_engine.core.models import WorkflowInstance, utcnow
from renewal_engine.core.states import EventType, RenewalState, TriggeredBy
from renewal_engine.store.repository import RenewalRepository

logger = logging.getLogger(__name__)

DEFAULT_STALE_STATES = (
    RenewalState.AWAITING_PHOTO,
    RenewalState.AWAITING_TRAINING,
    RenewalState.AWAITING_SUBMISSION,
)


class TimeoutScanner:
    """Turns wall-clock staleness into ``timeout_fired`` events.

    The scanner only appends events; the processor decides what a timeout
    means for each instance.
    """

    def __init__(
        self,
        repository: RenewalRepository,
        stale_states: Iterable[RenewalState] = DEFAULT_STALE_STATES,
        stale_after_hours: float = 72,
        clock: Callable = utcnow,
    ):
        self.repository = repository
        self.stale_states = [RenewalState(s) for s in stale_states]
        self.stale_after_hours = stale_after_hours
        self._clock = clock

    def find_stale(self, state: RenewalState, hours_threshold: float) -> list[WorkflowInstance]:
        cutoff = self._clock() - timedelta(hours=hours_threshold)
        return self.repository.find_stale(state, cutoff)

    @opik.track(name="scan_stale_renewals")
    def scan(self) -> list[str]:
        """Append timeouts for stale and expired instances; returns the affected ids."""
        now = self._clock()
        affected: list[str] = []

        for state in self.stale_states:
            for instance in self.find_stale(state, self.stale_after_hours):
                if self._timeout_pending(instance.instance_id, expired=False):
                    continue
                hours = (now - instance.updated_at).total_seconds() / 3600
                self.repository.append(
                    instance.instance_id,
                    EventType.TIMEOUT_FIRED,
                    {"hours_since_update": round(hours, 1), "expired": False},
                    TriggeredBy.CRON,
                    created_at=now,
                )
                affected.append(instance.instance_id)

        for instance in self.repository.find_expired(now):
            if self._timeout_pending(instance.instance_id, expired=True):
                continue
            hours = (now - instance.updated_at).total_seconds() / 3600
            self.repository.append(
                instance.instance_id,
                EventType.TIMEOUT_FIRED,
                {"hours_since_update": round(hours, 1), "expired": True},
                TriggeredBy.CRON,
                created_at=now,
            )
            if instance.instance_id not in affected:
                affected.append(instance.instance_id)

        if affected:
            logger.info(f"Timeout scan queued {len(affected)} instance(s)")
        return affected

    def _timeout_pending(self, instance_id: str, expired: bool) -> bool:
        return any(
            e.event_type == EventType.TIMEOUT_FIRED and bool(e.event_data.get("expired")) == expired
            for e in self.repository.unprocessed(instance_id)
        )
