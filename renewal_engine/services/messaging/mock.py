from renewal_engine.core.errors import PermanentDispatchError, TransientDispatchError
from renewal_engine.services.messaging.base import MessageSender


class MockMessageSender(MessageSender):
    """Inspectable sender for tests and local runs. Captures all attempts.

    ``fail_times`` makes the next N sends raise a transient error;
    ``reject`` makes every send raise a permanent one.
    """

    def __init__(self, fail_times: int = 0, reject: bool = False):
        self._calls: list[dict] = []
        self._fail_times = fail_times
        self._reject = reject

    def send_text(self, to: str, body: str) -> dict:
        call = {"action": "send_text", "to": to, "body": body, "status": "ok"}
        self._calls.append(call)
        if self._reject:
            call["status"] = "rejected"
            raise PermanentDispatchError(f"mock rejected message to {to}")
        if self._fail_times > 0:
            self._fail_times -= 1
            call["status"] = "failed"
            raise TransientDispatchError("mock transient failure")
        return {"status": "ok", "sid": f"SM{len(self._calls):032d}", "mock": True}

    # --- Inspection API ---

    @property
    def messages_sent(self) -> list[dict]:
        return [c for c in self._calls if c["action"] == "send_text" and c["status"] == "ok"]

    def messages_to(self, number: str) -> list[str]:
        return [c["body"] for c in self.messages_sent if c["to"] == number]

    @property
    def all_calls(self) -> list[dict]:
        return list(self._calls)

    def reset(self):
        self._calls.clear()
