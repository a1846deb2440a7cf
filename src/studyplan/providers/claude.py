"""Claude adapter for the Anthropic Messages API.

Tools are declared as ``{name, description, input_schema}``. A response is a
list of content blocks; ``tool_use`` blocks become actions, ``text`` blocks are
the model's reasoning. Tool results go back as one user message holding a
``tool_result`` block per call, keyed by the ``tool_use`` id the model issued.
"""

from __future__ import annotations

import json
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

ANTHROPIC_VERSION = "2023-06-01"

# Stop reasons where the model did not finish its turn on its own.
_TRUNCATED_STOP_REASONS = frozenset({"max_tokens", "refusal", "pause_turn"})


class ClaudeAdapter(ProviderAdapter):
    """Provider adapter for Claude models."""

    kind = ProviderKind.CLAUDE
    default_base_url = "https://api.anthropic.com/v1"

    def declare_tools(self, catalog: Sequence[ToolSpec]) -> list[dict[str, Any]]:
        return [
            {"name": spec.name, "description": spec.description, "input_schema": spec.parameters}
            for spec in catalog
        ]

    def open_conversation(self, opening_message: str) -> list[dict[str, Any]]:
        return [{"role": "user", "content": opening_message}]

    def build_request(
        self, conversation: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        body = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "messages": conversation,
            "tools": tools,
        }
        return f"{self.base_url}/messages", headers, body

    def parse_turn(self, payload: dict[str, Any]) -> ParsedTurn:
        blocks = require_list(payload.get("content"), "content")
        texts: list[str] = []
        actions: list[ToolAction] = []
        for block in blocks:
            block = require_dict(block, "content block")
            block_type = block.get("type")
            if block_type == "text":
                if isinstance(block.get("text"), str):
                    texts.append(block["text"])
            elif block_type == "tool_use":
                call_id = block.get("id")
                if not isinstance(call_id, str) or not call_id:
                    raise MalformedTurnError("tool_use block is missing its id")
                arguments = block.get("input", {})
                if not isinstance(arguments, dict):
                    raise MalformedTurnError(
                        f"tool_use input for {block.get('name')!r} is not an object"
                    )
                actions.append(
                    ToolAction(
                        call_id=call_id,
                        tool_name=require_tool_name(block.get("name")),
                        arguments=arguments,
                    )
                )
            else:
                logger.debug("Ignoring Claude content block of type %r", block_type)

        stop_reason = payload.get("stop_reason")
        if not isinstance(stop_reason, str):
            stop_reason = None
        return ParsedTurn(
            text="\n".join(texts) if texts else None,
            actions=actions,
            assistant_message={"role": "assistant", "content": blocks},
            stop_reason=stop_reason,
            stopped=stop_reason not in _TRUNCATED_STOP_REASONS,
        )

    def inject_observations(
        self,
        conversation: list[dict[str, Any]],
        turn: ParsedTurn,
        observations: Sequence[Observation],
    ) -> None:
        conversation.append(turn.assistant_message)
        results: list[dict[str, Any]] = []
        for observation in observations:
            block: dict[str, Any] = {
                "type": "tool_result",
                "tool_use_id": observation.call_id,
                "content": json.dumps(observation.result, default=str),
            }
            if observation.error is not None:
                block["is_error"] = True
            results.append(block)
        conversation.append({"role": "user", "content": results})

    def inject_notice(self, conversation: list[dict[str, Any]], text: str) -> None:
        conversation.append({"role": "user", "content": text})

    def extract_usage(self, payload: dict[str, Any]) -> TokenUsage:
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            return TokenUsage()
        return TokenUsage(
            prompt_tokens=coerce_token_count(usage.get("input_tokens")),
            completion_tokens=coerce_token_count(usage.get("output_tokens")),
        )


register_adapter(ProviderKind.CLAUDE, ClaudeAdapter)
