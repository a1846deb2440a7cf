"""Agent executor: the bounded reason → act → observe loop.

One :class:`AgentExecutor` run negotiates with a provider adapter to place
the requested number of sessions. Turns are strictly sequential because each
turn's actions depend on the previous turn's observations.

State machine::

    INIT → REASONING → (DISPATCHING_TOOLS → REASONING)* →
        COMPLETE | BUDGET_EXHAUSTED | CANCELLED | FAILED

Every reasoning call counts against ``max_iterations``, including calls
that time out or come back malformed. Those become no-progress turns plus
a notice to the model; only fatal errors
(pricing, calendar store, non-retryable provider errors) end the run early,
as :class:`~studyplan.errors.AgentRunFailed` carrying the partial result.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Sequence
from decimal import Decimal

from studyplan.calendar.store import EventStore
from studyplan.calendar.surface import CalendarQuerySurface
from studyplan.calendar.tools import TOOL_CATALOG, ToolDispatcher, ToolName, ToolSpec
from studyplan.core.cost import CostLedger, price_turn
from studyplan.core.logging import plan_run_context
from studyplan.core.metrics import AgentMetrics
from studyplan.core.pricing import PricingConfig
from studyplan.core.prompts import (
    MALFORMED_TURN_NOTICE,
    PROVIDER_ERROR_NOTICE,
    PROVIDER_TIMEOUT_NOTICE,
    build_opening_message,
)
from studyplan.core.telemetry import get_tracer, record_span_error, tag_request_span
from studyplan.errors import (
    AgentRunFailed,
    MalformedTurnError,
    PricingComputationError,
    ProviderRequestError,
    ProviderTimeoutError,
    StudyPlanError,
    ValidationError,
)
from studyplan.models import (
    AgentTurn,
    Observation,
    PlanResult,
    PlanTokenUsage,
    RunState,
    SchedulingRequest,
    TokenUsage,
    ToolAction,
)
from studyplan.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 60.0
DEFAULT_TOOL_TIMEOUT_SECONDS = 15.0


class _RunState:
    """Mutable bookkeeping for one run."""

    def __init__(self, request: SchedulingRequest, ledger: CostLedger) -> None:
        self.request = request
        self.ledger = ledger
        self.state = RunState.INIT
        self.reasoning_steps = 0
        self.turns: list[AgentTurn] = []
        self.reasoning: list[str] = []
        self.unpriced: list[TokenUsage] = []


class AgentExecutor:
    """Drives one provider through the scheduling tool loop.

    Parameters
    ----------
    adapter:
        Provider adapter used for every reasoning call.
    store:
        Event store shared with other runs; reads are always live.
    pricing:
        Pricing table used to price turns and normalize them to the baseline.
    max_iterations:
        Hard cap on reasoning calls per run.
    provider_timeout:
        Seconds allowed for one reasoning call.
    tool_timeout:
        Seconds allowed for one tool dispatch.
    cancel_event:
        When set, the run stops before its next reasoning call. Sessions
        already committed stay committed.
    catalog:
        Tool catalog offered to the model.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: EventStore,
        pricing: PricingConfig,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        tool_timeout: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        cancel_event: asyncio.Event | None = None,
        catalog: Sequence[ToolSpec] = TOOL_CATALOG,
    ) -> None:
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        self._adapter = adapter
        self._store = store
        self._pricing = pricing
        self._max_iterations = max_iterations
        self._provider_timeout = provider_timeout
        self._tool_timeout = tool_timeout
        self._cancel_event = cancel_event
        self._catalog = tuple(catalog)
        self._metrics = AgentMetrics(provider=str(adapter.kind))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(self, request: SchedulingRequest) -> PlanResult:
        """Run the loop for *request* and return the plan.

        Raises
        ------
        AgentRunFailed
            On a fatal error; ``result`` holds the partial plan in state FAILED.
        """
        run_id = uuid.uuid4().hex[:12]
        dispatcher = ToolDispatcher(CalendarQuerySurface(self._store, request))
        run = _RunState(request, CostLedger(self._pricing.baseline))
        started = time.monotonic()

        with (
            plan_run_context(
                plan_run=run_id,
                user_id=request.user_id,
                subject_id=request.subject_id,
            ),
            get_tracer().start_as_current_span("studyplan.agent.run") as span,
        ):
            tag_request_span(span, request)
            span.set_attribute("studyplan.provider", str(self._adapter.kind))
            span.set_attribute("studyplan.model", self._adapter.model)
            logger.info(
                "Agent run started: provider=%s model=%s target=%d max_iterations=%d",
                self._adapter.kind,
                self._adapter.model,
                request.target_session_count,
                self._max_iterations,
            )
            try:
                await self._loop(run, dispatcher)
            except StudyPlanError as exc:
                if exc.recoverable:
                    raise
                run.state = RunState.FAILED
                record_span_error(span, exc)
                result = self._build_result(run, dispatcher)
                self._finish(run, result, started)
                logger.error("Agent run failed after %d turn(s): %s", run.reasoning_steps, exc)
                raise AgentRunFailed(exc, result) from exc

            result = self._build_result(run, dispatcher)
            span.set_attribute("studyplan.state", str(run.state))
            span.set_attribute("studyplan.sessions_scheduled", len(result.scheduled_sessions))
            self._finish(run, result, started)
            return result

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _loop(self, run: _RunState, dispatcher: ToolDispatcher) -> None:
        tools = self._adapter.declare_tools(self._catalog)
        conversation = self._adapter.open_conversation(build_opening_message(run.request))
        target = run.request.target_session_count

        while True:
            if self._cancel_event is not None and self._cancel_event.is_set():
                run.state = RunState.CANCELLED
                logger.info("Agent run cancelled after %d turn(s)", run.reasoning_steps)
                return
            if run.reasoning_steps >= self._max_iterations:
                run.state = RunState.BUDGET_EXHAUSTED
                logger.warning(
                    "Iteration budget exhausted: %d/%d session(s) scheduled",
                    len(dispatcher.committed),
                    target,
                )
                return

            run.state = RunState.REASONING
            turn_index = run.reasoning_steps
            run.reasoning_steps += 1

            with get_tracer().start_as_current_span("studyplan.agent.turn") as span:
                span.set_attribute("studyplan.turn_index", turn_index)
                done = await self._turn(run, dispatcher, conversation, tools, turn_index)

            if done or len(dispatcher.committed) >= target:
                run.state = RunState.COMPLETE
                return

    async def _turn(
        self,
        run: _RunState,
        dispatcher: ToolDispatcher,
        conversation: list[dict],
        tools: list[dict],
        turn_index: int,
    ) -> bool:
        """Run one turn; return True when the model signalled it is done."""
        try:
            payload = await asyncio.wait_for(
                self._adapter.complete(conversation, tools), timeout=self._provider_timeout
            )
        except (TimeoutError, ProviderTimeoutError):
            logger.warning("Turn %d: provider call timed out", turn_index)
            self._metrics.turn("timeout")
            run.turns.append(AgentTurn(turn_index=turn_index, error=ProviderTimeoutError.code))
            self._adapter.inject_notice(conversation, PROVIDER_TIMEOUT_NOTICE)
            return False
        except ProviderRequestError as exc:
            if not exc.retryable:
                raise
            logger.warning("Turn %d: transient provider error: %s", turn_index, exc)
            self._metrics.turn("error")
            run.turns.append(AgentTurn(turn_index=turn_index, error=exc.code))
            self._adapter.inject_notice(conversation, PROVIDER_ERROR_NOTICE.format(detail=exc))
            return False
        except MalformedTurnError as exc:
            return self._malformed(run, conversation, turn_index, TokenUsage(), Decimal("0"), exc)

        usage = self._adapter.extract_usage(payload)
        try:
            cost = self._charge(run, turn_index, usage)
        except PricingComputationError as exc:
            # Billed at raw token count; the run stops here.
            run.unpriced.append(usage)
            run.turns.append(AgentTurn(turn_index=turn_index, usage=usage, error=exc.code))
            raise

        try:
            parsed = self._adapter.parse_turn(payload)
        except MalformedTurnError as exc:
            return self._malformed(run, conversation, turn_index, usage, cost, exc)

        if parsed.text:
            run.reasoning.append(parsed.text)

        if not parsed.actions and not parsed.stopped:
            exc = MalformedTurnError(
                f"Response ended with {parsed.stop_reason} before any tool call"
            )
            return self._malformed(run, conversation, turn_index, usage, cost, exc)

        if not parsed.actions:
            logger.info("Turn %d: model returned no tool calls, finishing", turn_index)
            self._metrics.turn("done")
            run.turns.append(
                AgentTurn(
                    turn_index=turn_index, usage=usage, actual_cost_usd=cost, text=parsed.text
                )
            )
            return True

        run.state = RunState.DISPATCHING_TOOLS
        self._metrics.turn("actions")
        observations = [
            await self._dispatch(run, dispatcher, action) for action in parsed.actions
        ]
        self._adapter.inject_observations(conversation, parsed, observations)
        run.turns.append(
            AgentTurn(
                turn_index=turn_index,
                actions=parsed.actions,
                observations=observations,
                usage=usage,
                actual_cost_usd=cost,
                text=parsed.text,
            )
        )
        return False

    def _charge(self, run: _RunState, turn_index: int, usage: TokenUsage) -> Decimal:
        """Price the turn and append it to the ledger; return its actual cost."""
        cost = price_turn(self._pricing, self._adapter.model, usage)
        if usage.total_tokens == 0 and cost == 0:
            logger.warning("Turn %d: provider reported no token usage; nothing charged", turn_index)
            return cost
        entry = run.ledger.record(turn_index, usage.prompt_tokens, usage.completion_tokens, cost)
        self._metrics.adjusted_tokens(entry.adjusted_token_count)
        return cost

    def _malformed(
        self,
        run: _RunState,
        conversation: list[dict],
        turn_index: int,
        usage: TokenUsage,
        cost: Decimal,
        exc: MalformedTurnError,
    ) -> bool:
        logger.warning("Turn %d: malformed provider response: %s", turn_index, exc)
        self._metrics.turn("malformed")
        run.turns.append(
            AgentTurn(turn_index=turn_index, usage=usage, actual_cost_usd=cost, error=exc.code)
        )
        self._adapter.inject_notice(conversation, MALFORMED_TURN_NOTICE.format(detail=exc))
        return False

    async def _dispatch(
        self, run: _RunState, dispatcher: ToolDispatcher, action: ToolAction
    ) -> Observation:
        target = run.request.target_session_count
        with get_tracer().start_as_current_span(f"studyplan.tool.{action.tool_name}") as span:
            target_reached = len(dispatcher.committed) >= target
            if action.tool_name == ToolName.SCHEDULE_SESSION and target_reached:
                observation = dispatcher.record_failure(
                    action,
                    ValidationError(f"All {target} session(s) are already scheduled"),
                )
            else:
                committed_before = len(dispatcher.committed)
                try:
                    observation = await asyncio.wait_for(
                        dispatcher.dispatch(action), timeout=self._tool_timeout
                    )
                except TimeoutError:
                    logger.warning("Tool %s timed out", action.tool_name)
                    observation = dispatcher.record_failure(
                        action,
                        ProviderTimeoutError(
                            f"{action.tool_name} did not finish within {self._tool_timeout}s"
                        ),
                    )
                if len(dispatcher.committed) > committed_before:
                    self._metrics.session_scheduled()
            outcome = observation.error or "ok"
            span.set_attribute("studyplan.tool.outcome", outcome)
            self._metrics.tool_call(action.tool_name, outcome)
            logger.debug("Tool %s -> %s", action.tool_name, outcome)
            return observation

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _build_result(self, run: _RunState, dispatcher: ToolDispatcher) -> PlanResult:
        ledger = run.ledger
        prompt = ledger.total_prompt_tokens + sum(u.prompt_tokens for u in run.unpriced)
        completion = ledger.total_completion_tokens + sum(u.completion_tokens for u in run.unpriced)
        raw_unpriced = sum(u.total_tokens for u in run.unpriced)
        if raw_unpriced:
            logger.warning("Charging %d unpriced token(s) at raw count", raw_unpriced)
        sessions = list(dispatcher.committed)
        return PlanResult(
            scheduled_sessions=sessions,
            completed=len(sessions) >= run.request.target_session_count,
            state=run.state,
            reasoning_steps=run.reasoning_steps,
            token_usage=PlanTokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
                cost_adjusted_tokens=ledger.total_adjusted_tokens + raw_unpriced,
            ),
            cost_usd=ledger.total_cost_usd,
            turns=list(run.turns),
            ledger=list(ledger.entries),
            reasoning=list(run.reasoning),
        )

    def _finish(self, run: _RunState, result: PlanResult, started: float) -> None:
        duration_ms = (time.monotonic() - started) * 1000
        self._metrics.run_finished(str(run.state), duration_ms)
        logger.info(
            "Agent run finished: state=%s sessions=%d/%d turns=%d adjusted_tokens=%d cost=$%s",
            run.state,
            len(result.scheduled_sessions),
            run.request.target_session_count,
            run.reasoning_steps,
            result.token_usage.cost_adjusted_tokens,
            result.cost_usd,
        )
