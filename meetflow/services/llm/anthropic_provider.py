from __future__ import annotations

import requests

from meetflow.services.llm.base import BaseLLMProvider, LLMProviderError
from meetflow.services.resilience import send


class AnthropicProvider(BaseLLMProvider):
    """LLM provider for the Anthropic messages API."""

    def __init__(
        self, api_key: str, model: str, base_url: str = "https://api.anthropic.com"
    ) -> None:
        super().__init__(logger_name="meetflow.llm.anthropic")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        max_tokens: int = 1024,
    ) -> str:
        # No JSON mode on this API; the prompts already ask for bare JSON.
        request_body = {
            "model": self._model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_prompt:
            request_body["system"] = system_prompt

        response = send(
            requests.post,
            "Anthropic",
            f"{self._base_url}/v1/messages",
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            json=request_body,
            timeout=timeout,
        )

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMProviderError("Anthropic returned invalid JSON") from exc
        content_blocks = data.get("content", [])
        if not content_blocks:
            raise LLMProviderError("Anthropic response missing content")
        return "".join(
            str(block.get("text", "")) for block in content_blocks if block.get("type", "text") == "text"
        ).strip()
