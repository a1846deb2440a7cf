"""Tests for the Gemini generateContent adapter."""

from __future__ import annotations

import httpx
import pytest

from studyplan.calendar.tools import TOOL_CATALOG, ToolName
from studyplan.errors import MalformedTurnError
from studyplan.models import Observation
from studyplan.providers.gemini import GeminiAdapter

pytestmark = pytest.mark.unit

_RESPONSE = {
    "candidates": [
        {
            "content": {
                "role": "model",
                "parts": [
                    {"text": "Let me look at the calendar."},
                    {"functionCall": {"name": "get_busy_periods", "args": {"limit": 5}}},
                    {"functionCall": {"name": "get_conflicting_sessions"}},
                ],
            },
            "finishReason": "STOP",
        }
    ],
    "usageMetadata": {"promptTokenCount": 1200, "candidatesTokenCount": 80},
}


@pytest.fixture
def adapter() -> GeminiAdapter:
    return GeminiAdapter("gemini-2.5-flash", "g-test")


def test_declare_tools_wraps_function_declarations(adapter):
    tools = adapter.declare_tools(TOOL_CATALOG)

    assert len(tools) == 1
    declarations = {d["name"]: d for d in tools[0]["function_declarations"]}
    assert set(declarations) == set(ToolName)
    # No-argument tools carry no parameters schema at all.
    assert "parameters" not in declarations[ToolName.GET_CONFLICTING_SESSIONS]
    assert "limit" in declarations[ToolName.GET_BUSY_PERIODS]["parameters"]["properties"]


def test_build_request(adapter):
    url, headers, body = adapter.build_request(adapter.open_conversation("hello"), [])

    assert url.endswith("/v1beta/models/gemini-2.5-flash:generateContent")
    assert headers["x-goog-api-key"] == "g-test"
    assert body["contents"] == [{"role": "user", "parts": [{"text": "hello"}]}]
    assert body["generationConfig"] == {"maxOutputTokens": 4096}


def test_parse_turn(adapter):
    turn = adapter.parse_turn(_RESPONSE)

    assert turn.text == "Let me look at the calendar."
    assert [(a.call_id, a.tool_name, a.arguments) for a in turn.actions] == [
        ("call-1", "get_busy_periods", {"limit": 5}),
        ("call-2", "get_conflicting_sessions", {}),
    ]
    assert turn.assistant_message["role"] == "model"


def test_parse_turn_keeps_provider_call_ids(adapter):
    payload = {
        "candidates": [
            {"content": {"parts": [{"functionCall": {"id": "fc-9", "name": "get_busy_periods"}}]}}
        ]
    }
    assert adapter.parse_turn(payload).actions[0].call_id == "fc-9"


def test_parse_turn_reports_stop_reason(adapter):
    turn = adapter.parse_turn(_RESPONSE)
    assert (turn.stop_reason, turn.stopped) == ("STOP", True)

    truncated = {
        "candidates": [{"content": {"parts": [{"text": "Let me"}]}, "finishReason": "MAX_TOKENS"}]
    }
    turn = adapter.parse_turn(truncated)
    assert turn.actions == []
    assert (turn.stop_reason, turn.stopped) == ("MAX_TOKENS", False)


@pytest.mark.parametrize(
    "payload",
    [
        {"candidates": []},
        {"promptFeedback": {"blockReason": "SAFETY"}},
        {"candidates": [{"content": {"parts": "nope"}}]},
        {"candidates": [{"content": {"parts": [{"functionCall": {"args": {}}}]}}]},
        {"candidates": [{"content": {"parts": [{"functionCall": {"name": "x", "args": [1]}}]}}]},
        {"candidates": [{"finishReason": "MALFORMED_FUNCTION_CALL"}]},
        {"candidates": [{"content": {"role": "model"}, "finishReason": "STOP"}]},
        {"candidates": [{"content": {"parts": []}, "finishReason": "STOP"}]},
        {"candidates": [{"content": {"parts": [{"text": "..."}]}, "finishReason": "SAFETY"}]},
    ],
)
def test_malformed_turns(adapter, payload):
    with pytest.raises(MalformedTurnError):
        adapter.parse_turn(payload)


def test_inject_observations_single_user_content_in_call_order(adapter):
    conversation = adapter.open_conversation("go")
    turn = adapter.parse_turn(_RESPONSE)
    observations = [
        Observation(call_id="call-1", tool_name="get_busy_periods", result=[{"date": "x"}]),
        Observation(call_id="call-2", tool_name="get_conflicting_sessions", result=[]),
    ]

    adapter.inject_observations(conversation, turn, observations)

    assert [message["role"] for message in conversation] == ["user", "model", "user"]
    parts = conversation[2]["parts"]
    assert [part["functionResponse"]["name"] for part in parts] == [
        "get_busy_periods",
        "get_conflicting_sessions",
    ]
    assert parts[0]["functionResponse"]["response"]["content"] == [{"date": "x"}]


def test_inject_notice(adapter):
    conversation: list[dict] = []
    adapter.inject_notice(conversation, "try again")
    assert conversation == [{"role": "user", "parts": [{"text": "try again"}]}]


def test_extract_usage(adapter):
    usage = adapter.extract_usage(_RESPONSE)
    assert (usage.prompt_tokens, usage.completion_tokens) == (1200, 80)
    bogus = adapter.extract_usage({"usageMetadata": {"promptTokenCount": "many"}})
    assert bogus.total_tokens == 0


async def test_complete_round_trip():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1beta/models/gemini-2.5-flash:generateContent"
        return httpx.Response(200, json=_RESPONSE)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    adapter = GeminiAdapter("gemini-2.5-flash", "g-test", client=client)

    payload = await adapter.complete(adapter.open_conversation("hi"), [])

    assert len(adapter.parse_turn(payload).actions) == 2
    await client.aclose()


def test_inject_observations_echoes_issued_call_ids(adapter):
    payload = {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"functionCall": {"id": "fc-1", "name": "check_time_slot", "args": {}}},
                        {"functionCall": {"id": "fc-2", "name": "check_time_slot", "args": {}}},
                    ]
                },
                "finishReason": "STOP",
            }
        ]
    }
    turn = adapter.parse_turn(payload)
    observations = [
        Observation(call_id="fc-1", tool_name="check_time_slot", result={"has_conflict": True}),
        Observation(call_id="fc-2", tool_name="check_time_slot", result={"has_conflict": False}),
    ]
    conversation: list[dict] = []

    adapter.inject_observations(conversation, turn, observations)

    responses = [part["functionResponse"] for part in conversation[1]["parts"]]
    assert [response["id"] for response in responses] == ["fc-1", "fc-2"]
    assert responses[1]["response"]["content"] == {"has_conflict": False}


def test_inject_observations_without_issued_ids_omits_id(adapter):
    conversation: list[dict] = []
    turn = adapter.parse_turn(_RESPONSE)
    observations = [
        Observation(call_id="call-1", tool_name="get_busy_periods", result=[]),
        Observation(call_id="call-2", tool_name="get_conflicting_sessions", result=[]),
    ]

    adapter.inject_observations(conversation, turn, observations)

    assert all("id" not in part["functionResponse"] for part in conversation[1]["parts"])
