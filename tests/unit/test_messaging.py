"""Unit tests for SMS splitting, the mock sender and the Twilio sender."""
from urllib.parse import parse_qs

import httpx
import pytest

from renewal_engine.core.errors import PermanentDispatchError, TransientDispatchError
from renewal_engine.services.messaging.base import SMS_SEGMENT_LENGTH, split_sms
from renewal_engine.services.messaging.mock import MockMessageSender
from renewal_engine.services.messaging.twilio import TwilioSender

TO = "+15551234567"
FROM = "+15557654321"


class TestSplitSms:
    def test_short_body_is_one_segment(self):
        assert split_sms("  Reply YES to confirm.  ") == ["Reply YES to confirm."]

    def test_breaks_on_sentences(self):
        sentences = [f"Sentence number {n} explains one part of the renewal." for n in range(6)]
        parts = split_sms(" ".join(sentences))

        assert len(parts) > 1
        assert all(len(p) <= SMS_SEGMENT_LENGTH for p in parts)
        assert all(p.endswith(".") for p in parts)
        assert " ".join(parts) == " ".join(sentences)

    def test_hard_splits_a_long_sentence(self):
        body = "x" * 400
        parts = split_sms(body)

        assert [len(p) for p in parts] == [153, 153, 94]
        assert "".join(parts) == body

    def test_custom_length(self):
        assert split_sms("One. Two. Three.", max_length=9) == ["One. Two.", "Three."]


class TestMockMessageSender:
    def test_records_sent_messages(self):
        sender = MockMessageSender()
        result = sender.send_text(TO, "Hello")

        assert result["status"] == "ok"
        assert sender.messages_to(TO) == ["Hello"]

    def test_transient_failures_then_success(self):
        sender = MockMessageSender(fail_times=1)

        with pytest.raises(TransientDispatchError):
            sender.send_text(TO, "Hello")
        sender.send_text(TO, "Hello")

        assert len(sender.all_calls) == 2
        assert sender.messages_to(TO) == ["Hello"]

    def test_reject(self):
        sender = MockMessageSender(reject=True)
        with pytest.raises(PermanentDispatchError):
            sender.send_text(TO, "Hello")
        assert sender.messages_sent == []

    def test_send_long_sends_segments_in_order(self):
        sender = MockMessageSender()
        sender.send_long(TO, "First part. Second part.", max_length=12)
        assert sender.messages_to(TO) == ["First part.", "Second part."]

    def test_reset(self):
        sender = MockMessageSender()
        sender.send_text(TO, "Hello")
        sender.reset()
        assert sender.all_calls == []


def twilio(handler) -> TwilioSender:
    return TwilioSender("AC123", "secret", FROM, transport=httpx.MockTransport(handler))


class TestTwilioSender:
    def test_posts_form_to_messages_resource(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(201, json={"sid": "SM1", "status": "queued"})

        result = twilio(handler).send_text(TO, "Your renewal is complete.")

        assert result == {"status": "ok", "sid": "SM1", "to": TO}
        assert seen["url"] == "https://api.twilio.com/2010-04-01/Accounts/AC123/Messages.json"
        assert seen["auth"].startswith("Basic ")
        assert seen["form"] == {"To": [TO], "From": [FROM], "Body": ["Your renewal is complete."]}

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_statuses_are_transient(self, status):
        sender = twilio(lambda request: httpx.Response(status, json={"message": "busy"}))
        with pytest.raises(TransientDispatchError):
            sender.send_text(TO, "Hi")

    def test_client_error_is_permanent(self):
        sender = twilio(lambda request: httpx.Response(400, json={"message": "Invalid 'To' Phone Number"}))

        with pytest.raises(PermanentDispatchError, match="Invalid 'To' Phone Number"):
            sender.send_text(TO, "Hi")

    def test_non_json_error_body(self):
        sender = twilio(lambda request: httpx.Response(403, text="Forbidden"))
        with pytest.raises(PermanentDispatchError, match="Forbidden"):
            sender.send_text(TO, "Hi")

    def test_network_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientDispatchError):
            twilio(handler).send_text(TO, "Hi")
