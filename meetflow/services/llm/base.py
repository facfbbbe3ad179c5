from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod

from meetflow.services.resilience import GatewayError


class LLMProviderError(GatewayError):
    """The provider answered, but not with something we can use."""


class LLMProvider(ABC):
    @abstractmethod
    def extract_action_items(self, transcript: str, context: dict) -> list[dict]:
        raise NotImplementedError

    @abstractmethod
    def analyze_meeting(self, transcript: str, context: dict) -> dict:
        raise NotImplementedError


_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def snake_keys(value):
    """Recursively convert camelCase dict keys to snake_case."""
    if isinstance(value, dict):
        return {_CAMEL_BOUNDARY.sub("_", str(k)).lower(): snake_keys(v) for k, v in value.items()}
    if isinstance(value, list):
        return [snake_keys(v) for v in value]
    return value


class BaseLLMProvider(LLMProvider):
    """Base implementation with shared prompts, JSON parsing, and response handling.

    Subclasses only need to implement _call_api() for their specific API client.
    """

    # Shared prompts - single source of truth
    PROMPTS = {
        "extract_action_items_system": (
            "You extract action items from a short window of a live meeting transcript, "
            "not the full meeting.\n\n"
            "Return ONLY JSON of the form:\n"
            '{{"action_items": [{{"title": "short description (max 80 chars)", '
            '"description": "more detail if needed", "assignee": "person name or null", '
            '"due_date": "date if mentioned or null", "priority": "high|medium|low", '
            '"category": "task|follow-up|decision|research", "confidence": 0.0-1.0, '
            '"source_text": "the words that state the item"}}]}}\n\n'
            "Rules:\n"
            "- Only concrete items with a clear next step\n"
            "- Use the assignee's name only if it is stated\n"
            "- Ignore general discussion, questions and vague statements\n"
            "- Return an empty array when nothing qualifies"
        ),
        "extract_action_items": (
            "Meeting transcript window {chunk_index} (starting at {timestamp}s).\n"
            "Speakers: {speakers}\n\n"
            "{transcript}"
        ),
        "analyze_meeting_system": (
            "You are a meeting analyst. Return ONLY valid JSON, no markdown formatting."
        ),
        "analyze_meeting": (
            "Analyze this meeting transcript ({duration}s, {chunks} chunks).\n"
            "Speakers: {speakers}\n\n"
            "Return JSON with keys: summary (3-4 sentence string), key_points (array of "
            "strings), decisions (array of strings), topics (array of strings), "
            "action_items (array of objects with keys: title, description, assignee, "
            "due_date, priority, category), sentiment (object with keys: overall "
            "positive|neutral|negative, energy high|medium|low, collaboration "
            "excellent|good|fair|poor).\n\n"
            "Transcript:\n{transcript}"
        ),
    }

    def __init__(self, logger_name: str = "meetflow.llm") -> None:
        self._logger = logging.getLogger(logger_name)

    @abstractmethod
    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
        json_mode: bool = False,
        max_tokens: int = 1024,
    ) -> str:
        """Make an API call and return the raw response text.

        Args:
            prompt: The user prompt to send
            temperature: Sampling temperature (0.0-1.0)
            timeout: Request timeout in seconds
            system_prompt: Optional system prompt
            json_mode: Request JSON-formatted response if supported
            max_tokens: Upper bound on the response length

        Returns:
            The response text content
        """
        raise NotImplementedError

    @staticmethod
    def _strip_markdown_code_blocks(text: str) -> str:
        """Remove markdown code block wrappers from text."""
        text = text.strip()
        if not text.startswith("```"):
            return text

        lines = text.split("\n")
        json_lines = []
        in_block = False
        for line in lines:
            if line.startswith("```"):
                in_block = not in_block
                continue
            json_lines.append(line)
        return "\n".join(json_lines).strip()

    def _parse_json(self, content: str, what: str):
        text = self._strip_markdown_code_blocks(content)
        try:
            return snake_keys(json.loads(text))
        except json.JSONDecodeError as exc:
            self._logger.warning("Non-JSON response for %s: %s", what, text[:300])
            raise LLMProviderError(f"Non-JSON response for {what}") from exc

    @staticmethod
    def _speaker_line(context: dict) -> str:
        speakers = context.get("speakers") or []
        if not speakers:
            return "unknown"
        return ", ".join(
            f"{s.get('label')} ({float(s.get('speaking_time', 0.0)):.0f}s)" for s in speakers
        )

    def extract_action_items(self, transcript: str, context: dict) -> list[dict]:
        prompt = self.PROMPTS["extract_action_items"].format(
            chunk_index=context.get("chunk_index", ""),
            timestamp=context.get("timestamp", "unknown"),
            speakers=self._speaker_line(context),
            transcript=transcript,
        )
        content = self._call_api(
            prompt,
            temperature=0.1,
            timeout=60,
            system_prompt=self.PROMPTS["extract_action_items_system"].format(),
            json_mode=True,
            max_tokens=500,
        )
        parsed = self._parse_json(content, "action items")
        if isinstance(parsed, list):
            return parsed
        if isinstance(parsed, dict):
            items = parsed.get("action_items", [])
            return items if isinstance(items, list) else []
        raise LLMProviderError(f"Expected list or dict, got {type(parsed).__name__}")

    def analyze_meeting(self, transcript: str, context: dict) -> dict:
        prompt = self.PROMPTS["analyze_meeting"].format(
            duration=int(context.get("duration", 0) or 0),
            chunks=context.get("chunks_processed", "unknown"),
            speakers=self._speaker_line(context),
            transcript=transcript,
        )
        content = self._call_api(
            prompt,
            temperature=0.2,
            timeout=120,
            system_prompt=self.PROMPTS["analyze_meeting_system"],
            json_mode=True,
            max_tokens=2000,
        )
        parsed = self._parse_json(content, "meeting analysis")
        if not isinstance(parsed, dict):
            raise LLMProviderError("Meeting analysis was not a JSON object")
        return parsed
