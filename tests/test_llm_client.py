from types import SimpleNamespace

import pytest
from langchain_core.messages import HumanMessage, SystemMessage

from classes.app_config import estimate_cost_usd, get_plan, parse_model_name, plan_for_interval
from classes.llm_client import ChatLlmClient, MaxRetryErrorsException, call_with_retries_sync


class FakeResponses:
    def __init__(self):
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        usage = SimpleNamespace(input_tokens=1000, output_tokens=500, total_tokens=1500, input_tokens_details=None)
        return SimpleNamespace(output_text="  cube(5);  ", usage=usage)


def test_chat_client_maps_roles_and_tracks_usage():
    responses = FakeResponses()
    llm = ChatLlmClient("gpt-4o-mini", max_output_tokens=2500, temperature=0.6,
                        client=SimpleNamespace(responses=responses))

    assert llm.invoke([SystemMessage(content="rules"), HumanMessage(content="a cube")]) == "cube(5);"
    llm.invoke([HumanMessage(content="again")])

    call = responses.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["input"] == [{"role": "developer", "content": "rules"}, {"role": "user", "content": "a cube"}]
    assert call["max_output_tokens"] == 2500
    assert call["temperature"] == 0.6
    assert llm.get_total_tokens() == 3000
    assert llm.get_accrued_cost() == pytest.approx(2 * (0.15 * 0.001 + 0.60 * 0.0005))


def test_reasoning_models_drop_temperature():
    llm = ChatLlmClient("gpt-5.1_standard", temperature=0.6, client=SimpleNamespace(responses=FakeResponses()))
    assert "temperature" not in llm._openai_params
    assert llm.model_name == "gpt-5.1"


def test_unknown_provider_is_rejected():
    with pytest.raises(ValueError):
        ChatLlmClient("claude-x", client=SimpleNamespace())


def test_retries_recover_from_transient_failure():
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("connection reset")
        return "ok"

    assert call_with_retries_sync(flaky, retries=3) == "ok"
    assert len(attempts) == 2


def test_quota_errors_are_not_retried():
    attempts = []

    class QuotaError(Exception):
        code = "insufficient_quota"

    def no_quota():
        attempts.append(1)
        raise QuotaError("quota")

    with pytest.raises(MaxRetryErrorsException) as exc:
        call_with_retries_sync(no_quota, retries=3)
    assert len(attempts) == 1
    assert isinstance(exc.value.__cause__, QuotaError)


def test_parse_model_name_and_pricing():
    assert parse_model_name("gpt-4o-mini") == ("gpt-4o-mini", {})
    base, params = parse_model_name("gpt-5.1_fast-flex")
    assert base == "gpt-5.1"
    assert params == {"text": {"verbosity": "low"}, "reasoning": {"effort": "none"}, "service_tier": "flex"}
    with pytest.raises(ValueError):
        parse_model_name("gpt-5.1_turbo")

    assert estimate_cost_usd("gpt-5.1", 1_000_000, 0, service_tier="flex") == pytest.approx(0.625)
    assert estimate_cost_usd("mystery-model", 1000, 1000) == 0.0


def test_plan_lookup():
    assert get_plan("MONTHLY")["amount"] == 1000
    assert get_plan("weekly") is None
    assert plan_for_interval("year") == "yearly"
    assert plan_for_interval(None) == "monthly"
