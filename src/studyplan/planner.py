"""Planning entry point: route, run, and bill one scheduling request.

``generate_study_plan`` counts the user's existing events, picks the agent
or the legacy planner, runs it, and writes one token usage row for whatever
was spent, including runs that failed part-way.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import asyncpg
import httpx

from studyplan.calendar.store import EventStore
from studyplan.config import PlannerConfig, ProviderSettings, resolve_provider
from studyplan.core.cost import adjusted_tokens_or_fallback
from studyplan.core.executor import AgentExecutor
from studyplan.core.mode import PlanningMode, select_mode
from studyplan.core.pricing import PricingConfig
from studyplan.core.usage_log import AGENT_PURPOSE, LEGACY_PURPOSE, record_token_usage
from studyplan.errors import AgentRunFailed
from studyplan.models import PlanResult, SchedulingRequest
from studyplan.providers import ProviderAdapter, get_adapter

logger = logging.getLogger(__name__)

#: Bulk-prompt planner supplied by the caller for calendars too sparse to need the agent.
LegacyPlanner = Callable[[SchedulingRequest], Awaitable[PlanResult]]


@dataclass
class PlanOutcome:
    """What the entry point hands back: the plan plus how it was produced."""

    mode: PlanningMode
    result: PlanResult
    model: str
    provider: str
    existing_event_count: int
    usage_log_id: uuid.UUID | None = None


def build_adapter(
    settings: ProviderSettings, client: httpx.AsyncClient | None = None
) -> ProviderAdapter:
    """Instantiate the registered adapter for *settings*."""
    adapter_cls = get_adapter(settings.kind)
    return adapter_cls(
        settings.model,
        settings.api_key,
        client=client,
        base_url=settings.base_url,
        max_output_tokens=settings.max_output_tokens,
    )


def _usage_metadata(
    request: SchedulingRequest,
    result: PlanResult,
    mode: PlanningMode,
    *,
    failed: bool,
) -> dict[str, Any]:
    return {
        "subject_id": request.subject_id,
        "grade_id": request.grade_id,
        "chapters_included": len(request.chapters),
        "date_range": f"{request.date_range_start} to {request.date_range_end}",
        "agent_mode": mode is PlanningMode.AGENT,
        "reasoning_steps": result.reasoning_steps,
        "sessions_scheduled": len(result.scheduled_sessions),
        "target_session_count": request.target_session_count,
        "completed": result.completed,
        "state": str(result.state),
        "generation_failed": failed,
    }


async def _record_usage(
    pool: asyncpg.Pool | None,
    *,
    request: SchedulingRequest,
    result: PlanResult,
    mode: PlanningMode,
    model: str,
    provider: str,
    adjusted_tokens: int,
    failed: bool,
) -> uuid.UUID | None:
    """Write the usage row; a logging failure never masks the plan outcome."""
    usage = result.token_usage
    if usage.total_tokens == 0 and result.cost_usd == 0:
        logger.info("No tokens spent; skipping usage log")
        return None
    if pool is None:
        logger.info(
            "No database pool; usage not persisted (tokens=%d, adjusted=%d)",
            usage.total_tokens,
            adjusted_tokens,
        )
        return None
    try:
        return await record_token_usage(
            pool,
            user_id=request.user_id,
            model=model,
            provider=provider,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            estimated_cost=result.cost_usd,
            cost_adjusted_tokens=adjusted_tokens,
            purpose=AGENT_PURPOSE if mode is PlanningMode.AGENT else LEGACY_PURPOSE,
            metadata=_usage_metadata(request, result, mode, failed=failed),
        )
    except (asyncpg.PostgresError, OSError):
        logger.exception("Failed to record token usage for user %s", request.user_id)
        return None


async def generate_study_plan(
    request: SchedulingRequest,
    *,
    store: EventStore,
    pricing: PricingConfig,
    config: PlannerConfig,
    pool: asyncpg.Pool | None = None,
    use_agent_mode: bool = False,
    tier: str | None = None,
    legacy_planner: LegacyPlanner | None = None,
    adapter: ProviderAdapter | None = None,
    http_client: httpx.AsyncClient | None = None,
    cancel_event: asyncio.Event | None = None,
) -> PlanOutcome:
    """Plan sessions for *request* and bill the tokens spent.

    Parameters
    ----------
    request:
        The scheduling request.
    store:
        Event store holding the user's calendar.
    pricing:
        Pricing table for cost normalization.
    config:
        Planner configuration (model tiers, budgets, timeouts).
    pool:
        Pool for the usage log. Without one, usage is only logged.
    use_agent_mode:
        Explicit opt-in to the agent regardless of calendar size.
    tier:
        Subscription tier used to choose the model.
    legacy_planner:
        Bulk-prompt planner for the legacy route.
    adapter:
        Pre-built provider adapter; when omitted one is built from *config*.
    http_client:
        Shared HTTP client for a freshly built adapter.
    cancel_event:
        Cooperative cancellation for the agent run.

    Raises
    ------
    AgentRunFailed
        If the agent run fails fatally. Usage is recorded before re-raising.
    ValueError
        If the request routes to the legacy planner and none was supplied.
    ConfigError
        If the model cannot be resolved to a provider and API key.
    """
    existing = await store.count_events(
        user_id=request.user_id, start=request.date_range_start, end=request.date_range_end
    )
    mode = select_mode(existing, explicit=use_agent_mode, threshold=config.agent_threshold)
    model = adapter.model if adapter is not None else config.model_for_tier(tier)

    if mode is PlanningMode.LEGACY:
        if legacy_planner is None:
            raise ValueError(
                f"Request routed to the legacy planner ({existing} existing events) "
                "but no legacy planner was supplied"
            )
        result = await legacy_planner(request)
        usage = result.token_usage
        adjusted = usage.cost_adjusted_tokens or adjusted_tokens_or_fallback(
            usage.prompt_tokens, usage.completion_tokens, result.cost_usd, pricing.baseline
        )
        result = result.model_copy(
            update={"token_usage": usage.model_copy(update={"cost_adjusted_tokens": adjusted})}
        )
        provider = pricing.provider_for(model) or "unknown"
        log_id = await _record_usage(
            pool,
            request=request,
            result=result,
            mode=mode,
            model=model,
            provider=provider,
            adjusted_tokens=adjusted,
            failed=False,
        )
        return PlanOutcome(mode, result, model, provider, existing, log_id)

    owns_adapter = adapter is None
    if adapter is None:
        adapter = build_adapter(resolve_provider(config, pricing, model), client=http_client)
    provider = str(adapter.kind)
    executor = AgentExecutor(
        adapter,
        store,
        pricing,
        max_iterations=config.max_iterations,
        provider_timeout=config.provider_timeout_s,
        tool_timeout=config.tool_timeout_s,
        cancel_event=cancel_event,
    )

    failure: AgentRunFailed | None = None
    try:
        result = await executor.run(request)
    except AgentRunFailed as exc:
        failure = exc
        result = exc.result
    finally:
        if owns_adapter:
            await adapter.aclose()

    log_id = await _record_usage(
        pool,
        request=request,
        result=result,
        mode=mode,
        model=model,
        provider=provider,
        adjusted_tokens=result.token_usage.cost_adjusted_tokens,
        failed=failure is not None,
    )
    if failure is not None:
        raise failure

    logger.info(
        "Plan generated: %d/%d session(s), cost=$%s, adjusted_tokens=%d",
        len(result.scheduled_sessions),
        request.target_session_count,
        result.cost_usd.quantize(Decimal("0.000001")),
        result.token_usage.cost_adjusted_tokens,
    )
    return PlanOutcome(mode, result, model, provider, existing, log_id)
