from turnrelay.services.llm.base import ConversationEngine, Run, RunStatus
from turnrelay.services.llm.openai_provider import OpenAIAssistantEngine

__all__ = ["ConversationEngine", "Run", "RunStatus", "OpenAIAssistantEngine"]
