from agendabot.services.llm.base import ChatMessage, LLMProvider, LLMResponse, chat_messages
from agendabot.services.llm.openai_provider import OpenAIProvider, OpenAIProviderError

__all__ = ["ChatMessage", "LLMProvider", "LLMResponse", "OpenAIProvider", "OpenAIProviderError", "chat_messages"]
