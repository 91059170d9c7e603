from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

GROUP_SUFFIX = "@g.us"
TEXT_EVENT = "messages.upsert"


class EvolutionMessageKey(BaseModel):
    model_config = ConfigDict(extra="allow")

    remoteJid: Optional[str] = None
    fromMe: bool = False
    id: Optional[str] = None


class EvolutionMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    key: EvolutionMessageKey = Field(default_factory=EvolutionMessageKey)
    message: Optional[dict[str, Any]] = None
    pushName: Optional[str] = None
    messageTimestamp: Optional[Any] = None

    @property
    def is_group(self) -> bool:
        return (self.key.remoteJid or "").endswith(GROUP_SUFFIX)

    @property
    def sender(self) -> str:
        return (self.key.remoteJid or "").split("@", 1)[0]

    def text(self) -> str:
        """Plain text, extended text or an image/audio caption, in that order."""
        body = self.message or {}
        candidates = (
            body.get("conversation"),
            (body.get("extendedTextMessage") or {}).get("text"),
            (body.get("imageMessage") or {}).get("caption"),
            (body.get("audioMessage") or {}).get("caption"),
        )
        for candidate in candidates:
            if isinstance(candidate, str) and candidate.strip():
                return candidate.strip()
        return ""


class EvolutionWebhook(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: Optional[str] = None
    instance: Optional[Any] = None
    data: Optional[Any] = None

    def messages(self) -> list[EvolutionMessage]:
        if not isinstance(self.data, dict):
            return []
        raw = self.data.get("messages")
        items = raw if isinstance(raw, list) else [self.data]
        return [EvolutionMessage.model_validate(item) for item in items if isinstance(item, dict)]


class WebhookAck(BaseModel):
    success: bool
    enqueued: int = 0
    held: int = 0
    message: Optional[str] = None
