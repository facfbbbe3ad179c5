import json
import logging
import os
from dataclasses import asdict, dataclass
from typing import Callable, Optional

from meetflow.services.llm import (
    AnthropicProvider,
    LLMProvider,
    LLMProviderError,
    OpenAIProvider,
)
from meetflow.services.resilience import GatewayError, ResilientInvoker


DEFAULT_MODEL = "openai:gpt-4o-mini"
MIN_TITLE_CHARS = 6
MAX_TITLE_CHARS = 80
_PRIORITIES = {"high", "medium", "low"}


class ExtractionFailed(RuntimeError):
    kind = "extraction_failed"


@dataclass
class ActionItem:
    title: str
    description: str = ""
    assignee: Optional[str] = None
    due_date: Optional[str] = None
    priority: str = "medium"
    category: str = "task"
    confidence: float = 0.7
    source_text: Optional[str] = None
    source_chunk: Optional[int] = None
    context_timestamp: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


def _clamp_confidence(value) -> float:
    try:
        confidence = float(value) if value is not None else 0.7
    except (TypeError, ValueError):
        confidence = 0.7
    if confidence == 0:
        confidence = 0.7
    return max(0.3, min(1.0, confidence))


def _optional_text(value) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a"):
        return None
    return text


def normalize_action_items(
    raw_items: list,
    source_chunk: Optional[int] = None,
    context_timestamp: Optional[float] = None,
) -> list[ActionItem]:
    """Validate LLM action items: drop short titles, cap length, clamp confidence."""
    items = []
    for raw in raw_items or []:
        if not isinstance(raw, dict):
            continue
        title = str(raw.get("title") or raw.get("description") or "").strip()
        if len(title) < MIN_TITLE_CHARS:
            continue
        priority = str(raw.get("priority") or "medium").lower()
        items.append(
            ActionItem(
                title=title[:MAX_TITLE_CHARS],
                description=str(raw.get("description") or "").strip(),
                assignee=_optional_text(raw.get("assignee")),
                due_date=_optional_text(raw.get("due_date")),
                priority=priority if priority in _PRIORITIES else "medium",
                category=_optional_text(raw.get("category")) or "task",
                confidence=_clamp_confidence(raw.get("confidence", raw.get("confidence_score"))),
                source_text=_optional_text(raw.get("source_text")),
                source_chunk=source_chunk,
                context_timestamp=context_timestamp,
            )
        )
    return items


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


class InsightExtractor:
    """Action items and meeting analysis from the user's selected LLM.

    Reads model selection from config.json on every call:
    - models.selected_model: format "provider:model_id" (e.g., "openai:gpt-4o")
    - providers.<provider>: contains api_key and base_url for each provider
    """

    def __init__(
        self,
        config_path: str,
        invoker: ResilientInvoker,
        provider_factory: Optional[Callable[[], LLMProvider]] = None,
    ) -> None:
        self._config_path = config_path
        self._invoker = invoker
        self._provider_factory = provider_factory
        self._logger = logging.getLogger("meetflow.insights")

    def _read_config(self) -> dict:
        """Read config from file, returning empty dict if not found."""
        if not os.path.exists(self._config_path):
            return {}
        with open(self._config_path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _get_selected_model(self, config: dict) -> tuple[str, str]:
        selected = config.get("models", {}).get("selected_model", "") or DEFAULT_MODEL
        if ":" not in selected:
            raise LLMProviderError(f"Invalid model format '{selected}'. Expected 'provider:model_id'.")
        provider, model_id = selected.split(":", 1)
        return provider.lower(), model_id

    def _get_provider(self) -> LLMProvider:
        if self._provider_factory is not None:
            return self._provider_factory()

        config = self._read_config()
        provider_name, model_id = self._get_selected_model(config)
        provider_config = config.get("providers", {}).get(provider_name, {})
        api_key = provider_config.get("api_key", "")
        base_url = provider_config.get("base_url", "")

        if provider_name == "openai":
            api_key = api_key or os.environ.get("OPENAI_API_KEY", "")
            if not api_key:
                raise LLMProviderError("Missing OpenAI API key")
            return OpenAIProvider(api_key=api_key, model=model_id, base_url=base_url or "https://api.openai.com")

        if provider_name == "anthropic":
            api_key = api_key or os.environ.get("ANTHROPIC_API_KEY", "")
            if not api_key:
                raise LLMProviderError("Missing Anthropic API key")
            return AnthropicProvider(api_key=api_key, model=model_id, base_url=base_url or "https://api.anthropic.com")

        raise LLMProviderError(f"Unknown provider: {provider_name}")

    def extract_action_items(
        self,
        text: str,
        speaker_context: Optional[list[dict]] = None,
        chunk_index: Optional[int] = None,
        context_timestamp: Optional[float] = None,
    ) -> list[ActionItem]:
        """Raises ExtractionFailed; callers treat that as a skipped side effect."""
        if not text or not text.strip():
            return []
        context = {
            "chunk_index": chunk_index if chunk_index is not None else "",
            "timestamp": context_timestamp if context_timestamp is not None else "unknown",
            "speakers": speaker_context or [],
        }
        try:
            provider = self._get_provider()
            raw = self._invoker.invoke(
                lambda: provider.extract_action_items(text, context), name="llm.action_items"
            )
        except (GatewayError, OSError, ValueError) as exc:
            raise ExtractionFailed(f"Action item extraction failed: {exc}") from exc
        items = normalize_action_items(raw, source_chunk=chunk_index, context_timestamp=context_timestamp)
        self._logger.info("Extracted %s action items (chunk=%s)", len(items), chunk_index)
        return items

    def analyze_meeting(self, text: str, context: Optional[dict] = None) -> dict:
        """Full-transcript pass: summary, key points, decisions, topics, sentiment, action items."""
        if not text or not text.strip():
            return {
                "summary": "",
                "key_points": [],
                "decisions": [],
                "topics": [],
                "sentiment": {"overall": "neutral"},
                "action_items": [],
            }
        try:
            provider = self._get_provider()
            parsed = self._invoker.invoke(
                lambda: provider.analyze_meeting(text, context or {}), name="llm.analysis"
            )
        except (GatewayError, OSError, ValueError) as exc:
            raise ExtractionFailed(f"Meeting analysis failed: {exc}") from exc

        sentiment = parsed.get("sentiment")
        if isinstance(sentiment, str):
            sentiment = {"overall": sentiment}
        if not isinstance(sentiment, dict):
            sentiment = {"overall": "neutral"}
        return {
            "summary": str(parsed.get("summary", "")).strip(),
            "key_points": _string_list(parsed.get("key_points")),
            "decisions": _string_list(parsed.get("decisions")),
            "topics": _string_list(parsed.get("topics")),
            "sentiment": sentiment,
            "action_items": normalize_action_items(parsed.get("action_items") or []),
        }

    def summarize(self, text: str, context: Optional[dict] = None) -> dict:
        analysis = self.analyze_meeting(text, context)
        analysis.pop("action_items", None)
        return analysis
