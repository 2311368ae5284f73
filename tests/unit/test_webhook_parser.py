"""Unit tests for Twilio webhook payload parsing.

Twilio posts form fields: MessageSid, AccountSid, From, To, Body, NumMedia and
numbered MediaUrlN / MediaContentTypeN pairs for MMS attachments.
"""
import pytest
from pydantic import ValidationError

from renewal_engine.core.webhook import (
    InboundMessage,
    TwilioWebhookPayload,
    normalize_phone_number,
    parse_twilio_webhook,
)

SMS_FORM = {
    "MessageSid": "SM0001",
    "AccountSid": "AC123",
    "From": "+15551234567",
    "To": "+15557654321",
    "Body": "  YES ",
    "NumMedia": "0",
}

MMS_FORM = {
    **SMS_FORM,
    "Body": "",
    "NumMedia": "2",
    "MediaUrl0": "https://api.twilio.com/media/ME0",
    "MediaContentType0": "image/jpeg",
    "MediaUrl1": "https://api.twilio.com/media/ME1",
    "MediaContentType1": "image/png",
}


class TestTwilioWebhookPayload:
    def test_coerces_form_strings(self):
        payload = TwilioWebhookPayload(**MMS_FORM)
        assert payload.NumMedia == 2

    def test_requires_from(self):
        form = dict(SMS_FORM)
        del form["From"]
        with pytest.raises(ValidationError):
            TwilioWebhookPayload(**form)

    def test_rejects_non_numeric_media_count(self):
        with pytest.raises(ValidationError):
            TwilioWebhookPayload(**{**SMS_FORM, "NumMedia": "several"})

    def test_minimal_payload(self):
        payload = TwilioWebhookPayload(From="+15551234567")
        assert payload.Body == ""
        assert payload.NumMedia == 0


class TestParseTwilioWebhook:
    def test_text_message(self):
        message = parse_twilio_webhook(TwilioWebhookPayload(**SMS_FORM))

        assert isinstance(message, InboundMessage)
        assert message.message_sid == "SM0001"
        assert message.from_number == "+15551234567"
        assert message.body == "YES"
        assert not message.has_media

    def test_media_in_order(self):
        message = parse_twilio_webhook(TwilioWebhookPayload(**MMS_FORM))

        assert message.has_media
        assert message.media_urls == ["https://api.twilio.com/media/ME0", "https://api.twilio.com/media/ME1"]
        assert message.media_types == ["image/jpeg", "image/png"]

    def test_missing_media_field_is_skipped(self):
        form = {**SMS_FORM, "NumMedia": "2", "MediaUrl1": "https://api.twilio.com/media/ME1"}
        message = parse_twilio_webhook(TwilioWebhookPayload(**form))
        assert message.media_urls == ["https://api.twilio.com/media/ME1"]


class TestNormalizePhoneNumber:
    @pytest.mark.parametrize("raw, expected", [
        ("5551234567", "+15551234567"),
        ("(555) 123-4567", "+15551234567"),
        ("1-555-123-4567", "+15551234567"),
        ("+15551234567", "+15551234567"),
        ("+447700900123", "+447700900123"),
    ])
    def test_normalizes(self, raw, expected):
        assert normalize_phone_number(raw) == expected
