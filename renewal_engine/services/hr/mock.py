from renewal_engine.core.errors import PermanentDispatchError, TransientDispatchError
from renewal_engine.services.hr.base import HRSystemClient


class MockHRClient(HRSystemClient):
    """Records compliance-item updates instead of calling an HR system."""

    def __init__(self, fail_times: int = 0, reject: bool = False):
        self._calls: list[dict] = []
        self._fail_times = fail_times
        self._reject = reject

    def update_compliance_item(self, payload: dict) -> dict:
        self._calls.append(dict(payload))
        if self._reject:
            raise PermanentDispatchError("mock HR system rejected update")
        if self._fail_times > 0:
            self._fail_times -= 1
            raise TransientDispatchError("mock HR system unavailable")
        return {"status": "ok", "mock": True}

    @property
    def updates(self) -> list[dict]:
        return list(self._calls)
