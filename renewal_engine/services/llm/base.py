from abc import ABC, abstractmethod
from typing import TypeVar
from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


def image_message(text: str, image_url: str) -> dict:
    """User message carrying a prompt and one image, in chat-completions format."""
    return {
        "role": "user",
        "content": [
            {"type": "text", "text": text},
            {"type": "image_url", "image_url": {"url": image_url}},
        ],
    }


class LLMService(ABC):
    """Chat model used for document reading and reply classification.

    Implementations raise their client's errors unchanged; the gateway decides
    which of them are worth retrying.
    """

    @abstractmethod
    def structured_output(self, messages: list[dict], response_model: type[T]) -> T:
        """Parse the model's answer into ``response_model``; ValueError on refusal."""
        ...
