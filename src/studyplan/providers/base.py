"""ProviderAdapter ABC and adapter registry.

Defines the interface every model provider implements, plus a
registry/factory that maps provider kinds ('claude', 'gemini', 'openai') to
adapter classes. The executor only ever talks to this interface.

An adapter owns four translations:

- **declare_tools**: the tool catalog in the provider's native format
- **parse_turn**: a response envelope into zero-or-more normalized actions
- **inject_observations**: tool results back into the provider's
  conversation shape
- **extract_usage**: token counts (and cost, when reported) from the envelope

The conversation is a provider-native list of message dicts; the executor
treats it as opaque and only hands it back to the same adapter.
"""

from __future__ import annotations

import abc
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import httpx

from studyplan.calendar.tools import ToolSpec
from studyplan.errors import MalformedTurnError, ProviderRequestError, ProviderTimeoutError
from studyplan.models import Observation, TokenUsage, ToolAction

logger = logging.getLogger(__name__)

# Default HTTP timeout for one provider call (seconds)
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_OUTPUT_TOKENS = 4096

# HTTP statuses worth another turn: rate limiting and transient server errors.
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ProviderKind(StrEnum):
    CLAUDE = "claude"
    GEMINI = "gemini"
    OPENAI = "openai"


@dataclass
class ParsedTurn:
    """One provider response, normalized.

    ``assistant_message`` is the provider-native message to append to the
    conversation history so the next request carries the model's own turn.
    ``stop_reason`` is the provider's own finish signal, verbatim, and
    ``stopped`` is False when the response was cut short (output cap, content
    filter) rather than ended by the model.
    """

    text: str | None
    actions: list[ToolAction] = field(default_factory=list)
    assistant_message: dict[str, Any] = field(default_factory=dict)
    stop_reason: str | None = None
    stopped: bool = True


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return response.text[:500]


class ProviderAdapter(abc.ABC):
    """Abstract base class for model provider adapters.

    Parameters
    ----------
    model:
        Provider model ID (also the key into the pricing table).
    api_key:
        Credential for the provider API.
    client:
        Shared ``httpx.AsyncClient``. When omitted the adapter creates its
        own and closes it in :meth:`aclose`.
    base_url:
        Override for the provider API root (tests, proxies).
    max_output_tokens:
        Completion token cap sent with every request.
    """

    kind: ProviderKind
    default_base_url: str

    def __init__(
        self,
        model: str,
        api_key: str,
        *,
        client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=DEFAULT_TIMEOUT_SECONDS)
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.max_output_tokens = max_output_tokens

    # -- protocol translations ---------------------------------------------

    @abc.abstractmethod
    def declare_tools(self, catalog: Sequence[ToolSpec]) -> list[dict[str, Any]]:
        """Serialize the tool catalog into the provider's declaration format."""
        ...

    @abc.abstractmethod
    def open_conversation(self, opening_message: str) -> list[dict[str, Any]]:
        """Return a new conversation seeded with the opening user message."""
        ...

    @abc.abstractmethod
    def build_request(
        self, conversation: list[dict[str, Any]], tools: list[dict[str, Any]]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return ``(url, headers, json_body)`` for one model call."""
        ...

    @abc.abstractmethod
    def parse_turn(self, payload: dict[str, Any]) -> ParsedTurn:
        """Parse a response envelope into text plus zero-or-more actions.

        Raises
        ------
        MalformedTurnError
            If the envelope cannot be parsed into valid actions.
        """
        ...

    @abc.abstractmethod
    def inject_observations(
        self,
        conversation: list[dict[str, Any]],
        turn: ParsedTurn,
        observations: Sequence[Observation],
    ) -> None:
        """Append the model's turn and its tool results to *conversation*."""
        ...

    @abc.abstractmethod
    def inject_notice(self, conversation: list[dict[str, Any]], text: str) -> None:
        """Append a plain user message (e.g. after a malformed or failed turn)."""
        ...

    @abc.abstractmethod
    def extract_usage(self, payload: dict[str, Any]) -> TokenUsage:
        """Read token counts (and cost, when reported) from the envelope."""
        ...

    # -- transport ----------------------------------------------------------

    async def complete(
        self,
        conversation: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """POST one model call and return the decoded JSON envelope.

        Raises
        ------
        ProviderTimeoutError
            If the request times out.
        ProviderRequestError
            On an HTTP error status or a transport failure; ``retryable`` is
            set for rate limiting, transient server errors and connection
            failures.
        MalformedTurnError
            If the body is not a JSON object.
        """
        url, headers, body = self.build_request(conversation, tools)
        logger.debug(
            "Calling %s model %s (%d messages, %d tools)",
            self.kind,
            self.model,
            len(conversation),
            len(tools),
        )
        try:
            response = await self._client.post(
                url,
                headers=headers,
                json=body,
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(f"{self.kind} request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise ProviderRequestError(
                f"{self.kind} transport error: {exc}", status_code=0, retryable=True
            ) from exc

        if response.status_code >= 400:
            detail = _error_detail(response)
            raise ProviderRequestError(
                f"{self.kind} API error ({response.status_code}): {detail}",
                status_code=response.status_code,
                retryable=response.status_code in RETRYABLE_STATUS_CODES,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedTurnError(f"{self.kind} returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise MalformedTurnError(f"{self.kind} returned {type(payload).__name__}, not object")
        return payload

    async def aclose(self) -> None:
        """Close the HTTP client if this adapter created it."""
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Shared parsing helpers
# ---------------------------------------------------------------------------


def require_dict(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise MalformedTurnError(f"Expected {what} to be an object, got {type(value).__name__}")
    return value


def require_list(value: Any, what: str) -> list[Any]:
    if not isinstance(value, list):
        raise MalformedTurnError(f"Expected {what} to be an array, got {type(value).__name__}")
    return value


def require_tool_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise MalformedTurnError(f"Tool call is missing a name (got {value!r})")
    return value.strip()


def coerce_token_count(value: Any) -> int:
    """Token counts are non-negative integers; anything else reads as zero."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return 0
    return max(int(value), 0)


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

_ADAPTER_REGISTRY: dict[ProviderKind, type[ProviderAdapter]] = {}


def register_adapter(kind: ProviderKind, adapter_cls: type[ProviderAdapter]) -> None:
    """Register a provider adapter class under the given kind."""
    _ADAPTER_REGISTRY[kind] = adapter_cls


def get_adapter(kind: str) -> type[ProviderAdapter]:
    """Look up an adapter class by provider kind.

    Raises
    ------
    ValueError
        If no adapter is registered for the given kind.
    """
    try:
        key = ProviderKind(kind)
    except ValueError:
        key = None
    if key is None or key not in _ADAPTER_REGISTRY:
        available = ", ".join(sorted(_ADAPTER_REGISTRY)) or "(none)"
        raise ValueError(f"Unknown provider {kind!r}. Available adapters: {available}")
    return _ADAPTER_REGISTRY[key]
