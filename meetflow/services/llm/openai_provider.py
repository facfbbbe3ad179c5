from __future__ import annotations

import requests

from meetflow.services.llm.base import BaseLLMProvider, LLMProviderError
from meetflow.services.resilience import send


class OpenAIProvider(BaseLLMProvider):
    """LLM provider for OpenAI and OpenAI-compatible APIs."""

    def __init__(
        self, api_key: str, model: str, base_url: str = "https://api.openai.com"
    ) -> None:
        super().__init__(logger_name="meetflow.llm.openai")
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
        """Make a call to the OpenAI chat completions API and return the response text."""
        messages = [
            {"role": "system", "content": system_prompt or "You are a helpful assistant."},
            {"role": "user", "content": prompt},
        ]

        request_body = {
            "model": self._model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        if json_mode:
            request_body["response_format"] = {"type": "json_object"}

        response = send(
            requests.post,
            "OpenAI",
            f"{self._base_url}/v1/chat/completions",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            json=request_body,
            timeout=timeout,
        )

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMProviderError("OpenAI returned invalid JSON") from exc
        choices = data.get("choices", [])
        if not choices:
            raise LLMProviderError("OpenAI response missing choices")

        content = choices[0].get("message", {}).get("content", "")
        return str(content).strip()
