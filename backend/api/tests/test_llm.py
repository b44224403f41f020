from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from curator.config import Settings
from curator.errors import TransientError
from curator.llm import LLMClient, with_retries


def test_with_retries_backs_off_exponentially():
    sleeps = []
    outcomes = [TimeoutError("slow"), ConnectionError("reset"), "ok"]

    def fn():
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert with_retries(fn, "call", max_attempts=3, base_delay=2.0, sleep=sleeps.append) == "ok"
    assert sleeps == [2.0, 4.0]


def test_with_retries_gives_up_with_transient_error():
    sleeps = []

    def fn():
        raise TimeoutError("provider down")

    with pytest.raises(TransientError, match="after 3 attempt"):
        with_retries(fn, "call", max_attempts=3, base_delay=1.0, sleep=sleeps.append)
    assert sleeps == [1.0, 2.0]


def test_with_retries_does_not_retry_other_errors():
    sleeps = []

    def fn():
        raise KeyError("bad payload")

    with pytest.raises(KeyError):
        with_retries(fn, "call", sleep=sleeps.append)
    assert sleeps == []


def test_generate_uses_configured_model_and_timeout():
    client = MagicMock()
    client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="A short answer."))]
    )
    llm = LLMClient(Settings(openai_model="test-model", provider_timeout_sec=5.0), client=client)

    assert llm.generate("Explain TCP", system="Be brief") == "A short answer."

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "test-model"
    assert kwargs["timeout"] == 5.0
    assert kwargs["messages"] == [
        {"role": "system", "content": "Be brief"},
        {"role": "user", "content": "Explain TCP"},
    ]


def test_generate_retries_then_raises_transient():
    client = MagicMock()
    client.chat.completions.create.side_effect = TimeoutError("timed out")
    sleeps = []
    llm = LLMClient(Settings(provider_max_attempts=2, provider_backoff_sec=0.5), client=client, sleep=sleeps.append)

    with pytest.raises(TransientError):
        llm.generate("Explain TCP")
    assert client.chat.completions.create.call_count == 2
    assert sleeps == [0.5]
