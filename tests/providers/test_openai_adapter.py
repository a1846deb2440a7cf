"""Tests for the OpenAI Chat Completions adapter."""

from __future__ import annotations

import json
from decimal import Decimal

import pytest

from studyplan.calendar.tools import TOOL_CATALOG
from studyplan.errors import MalformedTurnError
from studyplan.models import Observation
from studyplan.providers.openai import OpenAIAdapter

pytestmark = pytest.mark.unit


def _response(tool_calls=None, content=None, usage=None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    return {
        "id": "chatcmpl-1",
        "choices": [{"index": 0, "message": message, "finish_reason": "tool_calls"}],
        "usage": usage or {"prompt_tokens": 900, "completion_tokens": 60},
    }


def _call(call_id: str, name: str, arguments: str) -> dict:
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


@pytest.fixture
def adapter() -> OpenAIAdapter:
    return OpenAIAdapter("gpt-4o-mini", "sk-openai")


def test_declare_tools(adapter):
    tools = adapter.declare_tools(TOOL_CATALOG)
    assert all(tool["type"] == "function" for tool in tools)
    assert tools[3]["function"]["name"] == "schedule_session"


def test_build_request(adapter):
    url, headers, body = adapter.build_request(adapter.open_conversation("plan"), [{"x": 1}])
    assert url == "https://api.openai.com/v1/chat/completions"
    assert headers["authorization"] == "Bearer sk-openai"
    assert body["tool_choice"] == "auto"
    assert body["tools"] == [{"x": 1}]


def test_parse_turn_decodes_json_string_arguments(adapter):
    slot = json.dumps({"date": "2026-03-02", "start_time": "09:00", "end_time": "10:00"})
    payload = _response(
        [
            _call("call_1", "check_time_slot", slot),
            _call("call_2", "get_conflicting_sessions", ""),
        ]
    )

    turn = adapter.parse_turn(payload)

    assert turn.actions[0].arguments == {
        "date": "2026-03-02",
        "start_time": "09:00",
        "end_time": "10:00",
    }
    assert turn.actions[1].arguments == {}
    assert turn.text is None
    assert turn.assistant_message["tool_calls"] == payload["choices"][0]["message"]["tool_calls"]


def test_text_only_turn(adapter):
    turn = adapter.parse_turn(_response(content="All sessions scheduled."))
    assert turn.actions == []
    assert turn.text == "All sessions scheduled."
    assert "tool_calls" not in turn.assistant_message


def test_length_cutoff_is_not_a_normal_stop(adapter):
    payload = _response(content="I will start by")
    payload["choices"][0]["finish_reason"] = "length"

    turn = adapter.parse_turn(payload)

    assert turn.stop_reason == "length"
    assert turn.stopped is False
    assert adapter.parse_turn(_response(content="Done.")).stopped is True


@pytest.mark.parametrize(
    "payload",
    [
        {"choices": []},
        {"choices": [{"message": "hi"}]},
        _response([_call("call_1", "check_time_slot", "{not json")]),
        _response([_call("call_1", "check_time_slot", "[1, 2]")]),
        _response([{"type": "function", "function": {"name": "get_busy_periods"}}]),
    ],
)
def test_malformed_turns(adapter, payload):
    with pytest.raises(MalformedTurnError):
        adapter.parse_turn(payload)


def test_inject_observations_one_tool_message_per_call(adapter):
    conversation = adapter.open_conversation("go")
    turn = adapter.parse_turn(
        _response([_call("call_1", "get_busy_periods", "{}"), _call("call_2", "x", "{}")])
    )
    observations = [
        Observation(call_id="call_1", tool_name="get_busy_periods", result=[]),
        Observation(call_id="call_2", tool_name="x", result={"error": "validation_error"}),
    ]

    adapter.inject_observations(conversation, turn, observations)

    assert [m["role"] for m in conversation] == ["user", "assistant", "tool", "tool"]
    assert [m["tool_call_id"] for m in conversation[2:]] == ["call_1", "call_2"]
    assert json.loads(conversation[3]["content"]) == {"error": "validation_error"}


def test_extract_usage_reads_reported_cost(adapter):
    usage = adapter.extract_usage(
        _response(usage={"prompt_tokens": 1800, "completion_tokens": 700, "cost": 0.01575})
    )
    assert usage.total_tokens == 2500
    assert usage.reported_cost_usd == Decimal("0.01575")


def test_extract_usage_ignores_bogus_cost(adapter):
    usage = adapter.extract_usage(
        _response(usage={"prompt_tokens": 10, "completion_tokens": 5, "cost": "free"})
    )
    assert usage.reported_cost_usd is None
    negative = adapter.extract_usage(
        _response(usage={"prompt_tokens": 10, "completion_tokens": 5, "cost": -1})
    )
    assert negative.reported_cost_usd is None
