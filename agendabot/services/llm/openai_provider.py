from typing import List, Optional

import httpx

from agendabot.logging_config import get_logger
from agendabot.services.llm.base import ChatMessage, LLMProvider, LLMResponse

logger = get_logger("llm.openai")

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIProviderError(Exception):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"OpenAI API error: {status_code} - {body[:200]}")


def _first_choice_content(data: dict) -> str:
    choices = data.get("choices") or []
    if not choices:
        return ""
    return (choices[0].get("message") or {}).get("content") or ""


class OpenAIProvider(LLMProvider):
    """Chat-completions over plain httpx; any OpenAI-compatible base URL works."""

    def __init__(
        self,
        api_key: str,
        default_model: str = "gpt-5-mini",
        timeout_seconds: float = 60.0,
        base_url: str = DEFAULT_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.timeout_seconds = timeout_seconds
        self.endpoint = f"{base_url.rstrip('/')}/chat/completions"
        self._transport = transport

    async def generate(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse:
        model = model or self.default_model
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(
                self.endpoint,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": model,
                    "messages": messages,
                    "temperature": temperature,
                    "max_completion_tokens": max_tokens,
                },
            )

        if response.status_code != 200:
            logger.error(
                "Completion request rejected",
                extra={"context": {"model": model, "status": response.status_code, "body": response.text[:200]}},
            )
            raise OpenAIProviderError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as exc:
            raise OpenAIProviderError(response.status_code, f"invalid JSON body: {exc}") from exc

        usage = data.get("usage")
        logger.debug("Completion received", extra={"context": {"model": model, "usage": usage}})
        return LLMResponse(content=_first_choice_content(data), model=data.get("model", model), usage=usage)
