from __future__ import annotations

import pytest

from meeting_pipeline.common.config import get_settings
from meeting_pipeline.common.errors import ErrCode, ProviderError
from meeting_pipeline.llm.base import LLMProvider, LLMResult
from meeting_pipeline.llm.mock import MockLLMProvider
from meeting_pipeline.llm.orchestrator import LLMOrchestrator
from meeting_pipeline.processing import prompts


class _Scripted(LLMProvider):
    def __init__(self, replies: list) -> None:
        self.replies = list(replies)
        self.calls = 0

    def complete_text(self, *, system: str, user: str) -> LLMResult:
        self.calls += 1
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture()
def fast_retries(monkeypatch):
    s = get_settings()
    monkeypatch.setattr(s, "llm_retries", 2)
    monkeypatch.setattr(s, "llm_retry_backoff_ms", 0)
    monkeypatch.setattr(s, "llm_cost_per_1k_tokens", 0.5)


def test_json_in_code_fence_and_cost(fast_retries) -> None:
    provider = _Scripted(
        [LLMResult(text='```json\n{"decisions": []}\n```', model="m", usage={"total_tokens": 2000})]
    )

    res = LLMOrchestrator(provider).complete_json(system="s", user="u")

    assert res.data == {"decisions": []}
    assert res.tokens == 2000
    assert res.cost == 1.0


def test_bare_list_is_wrapped(fast_retries) -> None:
    provider = _Scripted([LLMResult(text='[{"description": "x"}]')])

    res = LLMOrchestrator(provider).complete_json(system="s", user="u")

    assert res.data == {"items": [{"description": "x"}]}


def test_invalid_json_is_invalid_result(fast_retries) -> None:
    provider = _Scripted([LLMResult(text="Sure! Here are the action items:")])

    with pytest.raises(ProviderError) as exc:
        LLMOrchestrator(provider).complete_json(system="s", user="u")
    assert exc.value.code == ErrCode.INVALID_RESULT
    assert provider.calls == 1


def test_provider_errors_are_retried(fast_retries) -> None:
    provider = _Scripted([RuntimeError("502"), LLMResult(text="{}", usage={"prompt_tokens": 3})])

    res = LLMOrchestrator(provider).complete_json(system="s", user="u")

    assert provider.calls == 2
    assert res.tokens == 3


def test_retries_exhausted(fast_retries) -> None:
    provider = _Scripted([RuntimeError("down")] * 3)

    with pytest.raises(ProviderError) as exc:
        LLMOrchestrator(provider).complete_text(system="s", user="u")
    assert exc.value.code == ErrCode.LLM_PROVIDER_ERROR
    assert provider.calls == 3


def test_mock_picks_response_by_task_line() -> None:
    mock = MockLLMProvider()
    llm = LLMOrchestrator(mock)

    llm.complete_json(system=prompts.SENTIMENT_SYSTEM, user="x")
    res = llm.complete_json(system=prompts.DECISIONS_SYSTEM, user="x")

    assert mock.calls == ["sentiment", "decisions"]
    assert "decisions" in res.data


def test_user_prompt_mentions_participants_and_duration() -> None:
    text = prompts.transcript_user_prompt(
        "hello", participants=["Alex", "Maria"], duration_sec=125
    )

    assert "Alex" in text
    assert "Maria" in text
    assert "hello" in text
