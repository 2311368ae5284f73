import logging

import httpx

from renewal_engine.core.errors import PermanentDispatchError, TransientDispatchError
from renewal_engine.services.messaging.base import MessageSender

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioSender(MessageSender):
    """Sends SMS through the Twilio Messages REST resource."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self._account_sid = account_sid
        self._from_number = from_number
        self._client = httpx.Client(
            base_url=TWILIO_API_BASE,
            auth=(account_sid, auth_token),
            timeout=timeout,
            transport=transport,
        )

    def send_text(self, to: str, body: str) -> dict:
        try:
            response = self._client.post(
                f"/Accounts/{self._account_sid}/Messages.json",
                data={"To": to, "From": self._from_number, "Body": body},
            )
        except httpx.TransportError as e:
            raise TransientDispatchError(f"Twilio unreachable: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientDispatchError(f"Twilio returned {response.status_code}")
        if response.status_code >= 400:
            detail = _error_message(response)
            raise PermanentDispatchError(f"Twilio rejected message to {to}: {detail}")

        payload = response.json()
        logger.info(f"SMS sent to {to}: sid={payload.get('sid')}")
        return {"status": "ok", "sid": payload.get("sid"), "to": to}

    def close(self) -> None:
        self._client.close()


def _error_message(response: httpx.Response) -> str:
    try:
        return response.json().get("message", response.text)
    except ValueError:
        return response.text
