from meetflow.services.llm.base import BaseLLMProvider, LLMProvider, LLMProviderError
from meetflow.services.llm.openai_provider import OpenAIProvider
from meetflow.services.llm.anthropic_provider import AnthropicProvider

__all__ = [
    "BaseLLMProvider",
    "LLMProvider",
    "LLMProviderError",
    "OpenAIProvider",
    "AnthropicProvider",
]
