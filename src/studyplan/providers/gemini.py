"""Gemini adapter for the Generative Language ``generateContent`` API.

Tools are declared inside a single ``function_declarations`` entry. A
response's first candidate holds ``parts``; ``functionCall`` parts become
actions. Each observation goes back as a ``functionResponse`` part, in the
same order as the calls, inside one user content. Newer models issue a call
``id`` that is echoed on the response; older ones do not, and results are
matched by name and order.

A candidate that finished for any reason other than ``STOP`` or
``MAX_TOKENS`` (``MALFORMED_FUNCTION_CALL``, ``SAFETY`` and so on), or that
carries no parts, is a malformed turn.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
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

logger = logging.getLogger(__name__)

_ACCEPTED_FINISH_REASONS = frozenset({"STOP", "MAX_TOKENS"})


def _declaration(spec: ToolSpec) -> dict[str, Any]:
    declaration: dict[str, Any] = {"name": spec.name, "description": spec.description}
    # Gemini rejects an object schema with no properties; omit it instead.
    if spec.parameters.get("properties"):
        declaration["parameters"] = spec.parameters
    return declaration


class GeminiAdapter(ProviderAdapter):
    """Provider adapter for Gemini models."""

    kind = ProviderKind.GEMINI
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    def declare_tools(self, catalog: Sequence[ToolSpec]) -> list[dict[str, Any]]:
        return [{"function_declarations": [_declaration(spec) for spec in catalog]}]

    def open_conversation(self, opening_message: str) -> list[dict[str, Any]]:
        return [{"role": "user", "parts": [{"text": opening_message}]}]

    def build_request(
        self, conversation: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {"x-goog-api-key": self._api_key, "content-type": "application/json"}
        body = {
            "contents": conversation,
            "tools": tools,
            "generationConfig": {"maxOutputTokens": self.max_output_tokens},
        }
        return f"{self.base_url}/models/{self.model}:generateContent", headers, body

    def parse_turn(self, payload: dict[str, Any]) -> ParsedTurn:
        candidates = payload.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            feedback = payload.get("promptFeedback")
            raise MalformedTurnError(f"Gemini returned no candidates (promptFeedback={feedback})")
        candidate = require_dict(candidates[0], "candidate")
        finish_reason = candidate.get("finishReason")
        if finish_reason is not None and str(finish_reason) not in _ACCEPTED_FINISH_REASONS:
            raise MalformedTurnError(f"Gemini candidate finished with {finish_reason}")
        content = require_dict(candidate.get("content"), "candidate content")
        parts = require_list(content.get("parts"), "content parts")
        if not parts:
            raise MalformedTurnError("Gemini candidate has no content parts")

        texts: list[str] = []
        actions: list[ToolAction] = []
        for index, part in enumerate(parts):
            part = require_dict(part, "content part")
            if isinstance(part.get("text"), str):
                texts.append(part["text"])
            call = part.get("functionCall")
            if call is None:
                continue
            call = require_dict(call, "functionCall")
            arguments = call.get("args", {})
            if arguments is None:
                arguments = {}
            if not isinstance(arguments, dict):
                raise MalformedTurnError(
                    f"functionCall args for {call.get('name')!r} are not an object"
                )
            call_id = call.get("id") if isinstance(call.get("id"), str) else f"call-{index}"
            actions.append(
                ToolAction(
                    call_id=call_id,
                    tool_name=require_tool_name(call.get("name")),
                    arguments=arguments,
                )
            )

        return ParsedTurn(
            text="\n".join(texts) if texts else None,
            actions=actions,
            assistant_message={"role": "model", "parts": parts},
            stop_reason=finish_reason,
            stopped=finish_reason != "MAX_TOKENS",
        )

    def inject_observations(
        self,
        conversation: list[dict[str, Any]],
        turn: ParsedTurn,
        observations: Sequence[Observation],
    ) -> None:
        conversation.append(turn.assistant_message)
        issued_ids = {
            part["functionCall"]["id"]
            for part in turn.assistant_message.get("parts", [])
            if isinstance(part.get("functionCall"), dict)
            and isinstance(part["functionCall"].get("id"), str)
        }
        parts = []
        for observation in observations:
            response: dict[str, Any] = {
                "name": observation.tool_name,
                "response": {"name": observation.tool_name, "content": observation.result},
            }
            if observation.call_id in issued_ids:
                response["id"] = observation.call_id
            parts.append({"functionResponse": response})
        conversation.append({"role": "user", "parts": parts})

    def inject_notice(self, conversation: list[dict[str, Any]], text: str) -> None:
        conversation.append({"role": "user", "parts": [{"text": text}]})

    def extract_usage(self, payload: dict[str, Any]) -> TokenUsage:
        usage = payload.get("usageMetadata")
        if not isinstance(usage, dict):
            return TokenUsage()
        return TokenUsage(
            prompt_tokens=coerce_token_count(usage.get("promptTokenCount")),
            completion_tokens=coerce_token_count(usage.get("candidatesTokenCount")),
        )


register_adapter(ProviderKind.GEMINI, GeminiAdapter)
