from openai import OpenAI

from renewal_engine.services.llm.base import LLMService, T


class OpenAILLM(LLMService):
    """OpenAI-compatible LLM service with structured output support.

    Messages may carry image parts (``{"type": "image_url", ...}``) for
    vision-capable models; they are passed through unchanged.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 30.0,
        max_retries: int = 1,
    ):
        self._model = model
        self._client = OpenAI(base_url=base_url, api_key=api_key, timeout=timeout, max_retries=max_retries)

    def structured_output(self, messages: list[dict], response_model: type[T]) -> T:
        completion = self._client.beta.chat.completions.parse(
            model=self._model,
            messages=messages,
            response_format=response_model,
        )
        result = completion.choices[0].message.parsed
        if result is None:
            raise ValueError(f"LLM refused to respond or failed to parse into {response_model.__name__}")
        return result
