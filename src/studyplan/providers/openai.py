"""OpenAI adapter for the Chat Completions API.

Tools are declared as ``{"type": "function", "function": {...}}``. Tool call
arguments arrive as a JSON *string* that has to be decoded; a string that does
not decode to an object makes the whole turn malformed. Results go back as
one ``role: "tool"`` message per call, keyed by ``tool_call_id``.

OpenAI-compatible gateways may report the request cost as ``usage.cost``;
when present it is used instead of the pricing table.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from decimal import Decimal, InvalidOperation
from typing import Any

from studyplan.calendar.tools import ToolSpec
from studyplan.errors import MalformedTurnError
from studyplan.models import Observation, TokenUsage, ToolAction
from studyplan.providers.base import (
    ParsedTurn,
    ProviderAdapter,
    ProviderKind,
    coerce_token_count,
    register_adapter,
    require_dict,
    require_list,
    require_tool_name,
)

_TRUNCATED_FINISH_REASONS = frozenset({"length", "content_filter"})


def _decode_arguments(raw: Any, tool_name: str) -> dict[str, Any]:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        raise MalformedTurnError(f"Arguments for {tool_name!r} are neither string nor object")
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedTurnError(f"Arguments for {tool_name!r} are not valid JSON: {exc}") from exc
    if not isinstance(decoded, dict):
        raise MalformedTurnError(f"Arguments for {tool_name!r} must decode to an object")
    return decoded


def _reported_cost(usage: dict[str, Any]) -> Decimal | None:
    cost = usage.get("cost")
    if isinstance(cost, bool) or not isinstance(cost, int | float | str):
        return None
    try:
        value = Decimal(str(cost))
    except InvalidOperation:
        return None
    return value if value >= 0 else None


class OpenAIAdapter(ProviderAdapter):
    """Provider adapter for OpenAI chat models."""

    kind = ProviderKind.OPENAI
    default_base_url = "https://api.openai.com/v1"

    def declare_tools(self, catalog: Sequence[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": spec.name,
                    "description": spec.description,
                    "parameters": spec.parameters,
                },
            }
            for spec in catalog
        ]

    def open_conversation(self, opening_message: str) -> list[dict[str, Any]]:
        return [{"role": "user", "content": opening_message}]

    def build_request(
        self, conversation: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "authorization": f"Bearer {self._api_key}",
            "content-type": "application/json",
        }
        body = {
            "model": self.model,
            "messages": conversation,
            "tools": tools,
            "tool_choice": "auto",
            "max_tokens": self.max_output_tokens,
        }
        return f"{self.base_url}/chat/completions", headers, body

    def parse_turn(self, payload: dict[str, Any]) -> ParsedTurn:
        choices = require_list(payload.get("choices"), "choices")
        if not choices:
            raise MalformedTurnError("OpenAI returned no choices")
        message = require_dict(require_dict(choices[0], "choice").get("message"), "message")

        actions: list[ToolAction] = []
        for call in require_list(message.get("tool_calls") or [], "tool_calls"):
            call = require_dict(call, "tool call")
            function = require_dict(call.get("function"), "tool call function")
            name = require_tool_name(function.get("name"))
            call_id = call.get("id")
            if not isinstance(call_id, str) or not call_id:
                raise MalformedTurnError(f"Tool call {name!r} is missing its id")
            actions.append(
                ToolAction(
                    call_id=call_id,
                    tool_name=name,
                    arguments=_decode_arguments(function.get("arguments"), name),
                )
            )

        text = message.get("content") if isinstance(message.get("content"), str) else None
        assistant: dict[str, Any] = {"role": "assistant", "content": text}
        if message.get("tool_calls"):
            assistant["tool_calls"] = message["tool_calls"]
        finish_reason = choices[0].get("finish_reason")
        if not isinstance(finish_reason, str):
            finish_reason = None
        return ParsedTurn(
            text=text or None,
            actions=actions,
            assistant_message=assistant,
            stop_reason=finish_reason,
            stopped=finish_reason not in _TRUNCATED_FINISH_REASONS,
        )

    def inject_observations(
        self,
        conversation: list[dict[str, Any]],
        turn: ParsedTurn,
        observations: Sequence[Observation],
    ) -> None:
        conversation.append(turn.assistant_message)
        for observation in observations:
            conversation.append(
                {
                    "role": "tool",
                    "tool_call_id": observation.call_id,
                    "content": json.dumps(observation.result, default=str),
                }
            )

    def inject_notice(self, conversation: list[dict[str, Any]], text: str) -> None:
        conversation.append({"role": "user", "content": text})

    def extract_usage(self, payload: dict[str, Any]) -> TokenUsage:
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return TokenUsage()
        return TokenUsage(
            prompt_tokens=coerce_token_count(usage.get("prompt_tokens")),
            completion_tokens=coerce_token_count(usage.get("completion_tokens")),
            reported_cost_usd=_reported_cost(usage),
        )


register_adapter(ProviderKind.OPENAI, OpenAIAdapter)
