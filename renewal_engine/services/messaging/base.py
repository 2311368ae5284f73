import re
from abc import ABC, abstractmethod

SMS_SEGMENT_LENGTH = 153


def split_sms(body: str, max_length: int = SMS_SEGMENT_LENGTH) -> list[str]:
    """Split a long body into segments, breaking on sentence ends where possible."""
    trimmed = body.strip()
    if len(trimmed) <= max_length:
        return [trimmed]

    parts: list[str] = []
    current = ""
    for sentence in re.split(r"(?<=[.!?])\s+", trimmed):
        if not sentence:
            continue
        if len(sentence) > max_length:
            if current:
                parts.append(current.strip())
                current = ""
            parts.extend(
                sentence[i:i + max_length].strip() for i in range(0, len(sentence), max_length)
            )
            continue
        if not current:
            current = sentence
        elif len(current) + len(sentence) + 1 <= max_length:
            current = f"{current} {sentence}"
        else:
            parts.append(current.strip())
            current = sentence

    if current.strip():
        parts.append(current.strip())
    return parts or [trimmed]


class MessageSender(ABC):
    @abstractmethod
    def send_text(self, to: str, body: str) -> dict:
        """Send one SMS. Returns a result dict with at least {"status": "ok", "sid": ...}.

        Raises TransientDispatchError / PermanentDispatchError on failure.
        """
        ...

    def send_long(self, to: str, body: str, max_length: int = SMS_SEGMENT_LENGTH) -> list[dict]:
        """Send a long body as several segments, in order."""
        return [self.send_text(to, part) for part in split_sms(body, max_length)]
