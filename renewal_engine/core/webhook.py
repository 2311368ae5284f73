import re

from pydantic import BaseModel, ConfigDict


class InboundMessage(BaseModel):
    """Inbound SMS/MMS reduced to what the engine needs."""
    message_sid: str
    from_number: str
    to_number: str
    body: str = ""
    media_urls: list[str] = []
    media_types: list[str | None] = []

    @property
    def has_media(self) -> bool:
        return len(self.media_urls) > 0


# --- Twilio messaging webhook model ---


class TwilioWebhookPayload(BaseModel):
    """Form fields posted by Twilio for an incoming message.

    Media arrives as numbered fields (MediaUrl0, MediaContentType0, ...),
    so extra fields are kept and read back by index in ``parse_twilio_webhook``.
    """
    model_config = ConfigDict(extra="allow")

    MessageSid: str = ""
    AccountSid: str = ""
    From: str
    To: str = ""
    Body: str = ""
    NumMedia: int = 0


def normalize_phone_number(phone: str) -> str:
    """Normalize a phone number to E.164, assuming US for 10-digit numbers."""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return phone if phone.startswith("+") else f"+{digits}"


def parse_twilio_webhook(payload: TwilioWebhookPayload) -> InboundMessage:
    """Convert a validated Twilio webhook payload into our domain model."""
    extra = payload.model_extra or {}
    media_urls = []
    media_types = []
    for i in range(payload.NumMedia):
        url = extra.get(f"MediaUrl{i}")
        if url:
            media_urls.append(url)
            media_types.append(extra.get(f"MediaContentType{i}"))
    return InboundMessage(
        message_sid=payload.MessageSid,
        from_number=normalize_phone_number(payload.From),
        to_number=payload.To,
        body=payload.Body.strip(),
        media_urls=media_urls,
        media_types=media_types,
    )
