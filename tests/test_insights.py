import json

import pytest
import requests

from meetflow.services.insights import ExtractionFailed, InsightExtractor, normalize_action_items
from meetflow.services.llm.base import BaseLLMProvider
from meetflow.services.resilience import GatewayUnavailable


class CannedProvider(BaseLLMProvider):
    def __init__(self, responses):
        super().__init__()
        self.responses = list(responses)
        self.prompts = []

    def _call_api(self, prompt, temperature=0.2, timeout=120, system_prompt=None, json_mode=False, max_tokens=1024):
        self.prompts.append((system_prompt, prompt))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def test_normalization_drops_short_titles_and_clamps_confidence():
    items = normalize_action_items(
        [
            {"title": "Call", "confidence": 0.9},
            {"title": "x" * 120, "confidence": 5},
            {"title": "Draft the proposal", "confidence": 0.1, "priority": "urgent", "assignee": "null"},
            {"title": "Book the venue", "confidence": 0},
            "not a dict",
        ],
        source_chunk=3,
        context_timestamp=270.0,
    )
    assert len(items) == 3
    assert len(items[0].title) == 80
    assert items[0].confidence == 1.0
    assert items[1].confidence == 0.3
    assert items[1].priority == "medium"
    assert items[1].assignee is None
    assert items[2].confidence == 0.7
    assert all(i.source_chunk == 3 and i.context_timestamp == 270.0 for i in items)


def test_extraction_parses_fenced_camel_case_json(invoker):
    content = "```json\n" + json.dumps(
        {"actionItems": [{"title": "Send the budget", "dueDate": "Friday", "assignee": "Alice"}]}
    ) + "\n```"
    provider = CannedProvider([content])
    extractor = InsightExtractor("unused.json", invoker, provider_factory=lambda: provider)

    items = extractor.extract_action_items(
        "Alice will send the budget by Friday.",
        [{"label": "A", "speaking_time": 12.0, "word_count": 8}],
        chunk_index=2,
        context_timestamp=180.0,
    )

    assert [i.title for i in items] == ["Send the budget"]
    assert items[0].due_date == "Friday"
    system_prompt, prompt = provider.prompts[0]
    assert '"action_items"' in system_prompt
    assert "A (12s)" in prompt
    assert "window 2" in prompt


def test_extraction_failures_are_wrapped(invoker, sleeps):
    provider = CannedProvider([GatewayUnavailable("down")] * 3)
    extractor = InsightExtractor("unused.json", invoker, provider_factory=lambda: provider)
    with pytest.raises(ExtractionFailed):
        extractor.extract_action_items("Some meaningful text about tasks.")
    assert len(sleeps) == 2

    garbage = CannedProvider(["I could not find any items"])
    extractor = InsightExtractor("unused.json", invoker, provider_factory=lambda: garbage)
    with pytest.raises(ExtractionFailed):
        extractor.extract_action_items("Some meaningful text about tasks.")


def test_empty_transcript_skips_the_llm(invoker):
    provider = CannedProvider([])
    extractor = InsightExtractor("unused.json", invoker, provider_factory=lambda: provider)

    assert extractor.extract_action_items("   ") == []
    analysis = extractor.analyze_meeting("")
    assert analysis["summary"] == ""
    assert analysis["action_items"] == []
    assert provider.prompts == []


def test_analysis_normalizes_shape(invoker):
    content = json.dumps(
        {
            "summary": "We agreed on the plan.",
            "keyPoints": ["plan agreed", ""],
            "decisions": "not a list",
            "topics": ["planning"],
            "sentiment": "positive",
            "actionItems": [{"title": "Circulate the plan", "assignee": "Bob"}],
        }
    )
    provider = CannedProvider([content])
    extractor = InsightExtractor("unused.json", invoker, provider_factory=lambda: provider)

    analysis = extractor.analyze_meeting("transcript text", {"duration": 300, "chunks_processed": 4})
    assert analysis["key_points"] == ["plan agreed"]
    assert analysis["decisions"] == []
    assert analysis["sentiment"] == {"overall": "positive"}
    assert analysis["action_items"][0].assignee == "Bob"
    assert "300s, 4 chunks" in provider.prompts[0][1]

    summary = InsightExtractor("unused.json", invoker, provider_factory=lambda: CannedProvider([content])).summarize(
        "transcript text"
    )
    assert "action_items" not in summary


def test_provider_selection_from_config(tmp_path, invoker, monkeypatch):
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "models": {"selected_model": "openai:gpt-4o"},
                "providers": {"openai": {"api_key": "sk-config"}},
            }
        )
    )
    captured = {}

    class _Response:
        status_code = 200
        text = ""

        def json(self):
            return {"choices": [{"message": {"content": '{"action_items": []}'}}]}

    def fake_post(url, **kwargs):
        captured["url"] = url
        captured["body"] = kwargs["json"]
        return _Response()

    monkeypatch.setattr(requests, "post", fake_post)
    extractor = InsightExtractor(str(config_path), invoker)
    assert extractor.extract_action_items("We should plan the offsite soon.") == []
    assert captured["url"] == "https://api.openai.com/v1/chat/completions"
    assert captured["body"]["model"] == "gpt-4o"
    assert captured["body"]["response_format"] == {"type": "json_object"}


def test_missing_key_fails_extraction(tmp_path, invoker, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    extractor = InsightExtractor(str(tmp_path / "missing.json"), invoker)
    with pytest.raises(ExtractionFailed):
        extractor.extract_action_items("We should plan the offsite soon.")
