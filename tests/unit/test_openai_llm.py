"""Unit tests for OpenAILLM service (mocked OpenAI client)."""
from unittest.mock import MagicMock, patch

import pytest

from renewal_engine.core.llm_responses import LicenseExtractionResponse
from renewal_engine.services.llm.base import image_message
from renewal_engine.services.llm.openai import OpenAILLM

VISION_MESSAGES = [
    {"role": "system", "content": "Read the license."},
    image_message("The employee uploaded a photo of their license.", "https://media.example.com/license.jpg"),
]


def test_image_message_shape():
    message = image_message("Read this.", "https://media.example.com/a.jpg")
    assert message["role"] == "user"
    assert message["content"][0] == {"type": "text", "text": "Read this."}
    assert message["content"][1]["image_url"] == {"url": "https://media.example.com/a.jpg"}


@pytest.fixture
def client():
    with patch("renewal_engine.services.llm.openai.OpenAI") as mock_cls:
        mock_client = MagicMock()
        mock_cls.return_value = mock_client
        mock_client.constructor = mock_cls
        yield mock_client


def parsed(value):
    return [MagicMock(message=MagicMock(parsed=value))]


class TestConstructor:
    def test_defaults(self, client):
        llm = OpenAILLM()

        assert llm._model == "gpt-4o-mini"
        client.constructor.assert_called_once_with(base_url=None, api_key=None, timeout=30.0, max_retries=1)

    def test_passes_connection_settings(self, client):
        OpenAILLM(model="gpt-4o", base_url="https://llm.internal/v1", api_key="sk-test", timeout=12.5)

        client.constructor.assert_called_once_with(
            base_url="https://llm.internal/v1", api_key="sk-test", timeout=12.5, max_retries=1,
        )


class TestStructuredOutput:
    def test_image_parts_are_passed_through(self, client):
        response = LicenseExtractionResponse(
            expiration_date="2027-03-15", license_number="G1234567", license_type=None,
            state="CA", holder_name=None, issuing_authority=None, issue_date=None, confidence=0.9,
        )
        client.beta.chat.completions.parse.return_value.choices = parsed(response)

        result = OpenAILLM(model="gpt-4o").structured_output(VISION_MESSAGES, LicenseExtractionResponse)

        client.beta.chat.completions.parse.assert_called_once_with(
            model="gpt-4o",
            messages=VISION_MESSAGES,
            response_format=LicenseExtractionResponse,
        )
        assert result is response

    def test_refusal_raises_value_error(self, client):
        client.beta.chat.completions.parse.return_value.choices = parsed(None)

        with pytest.raises(ValueError, match="LicenseExtractionResponse"):
            OpenAILLM().structured_output(VISION_MESSAGES, LicenseExtractionResponse)

    def test_client_errors_propagate(self, client):
        client.beta.chat.completions.parse.side_effect = RuntimeError("boom")

        with pytest.raises(RuntimeError):
            OpenAILLM().structured_output(VISION_MESSAGES, LicenseExtractionResponse)
