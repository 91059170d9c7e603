from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

ChatMessage = dict


def chat_messages(system: str, user: str) -> List[ChatMessage]:
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


@dataclass
class LLMResponse:
    content: str
    model: str
    usage: Optional[dict] = None

    @property
    def text(self) -> Optional[str]:
        """Stripped content, or None when the model returned nothing usable."""
        stripped = (self.content or "").strip()
        return stripped or None


class LLMProvider(ABC):
    """A chat-completion backend used to word booking replies."""

    @abstractmethod
    async def generate(
        self,
        messages: List[ChatMessage],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ) -> LLMResponse: ...
