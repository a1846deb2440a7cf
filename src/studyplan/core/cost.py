"""Cost normalization: baseline-equivalent ("adjusted") token counts.

A request served by an expensive model consumes proportionally more of a
user's token allocation than the same request served by the baseline model:

    baseline = prompt * baseline_in / 1M + completion * baseline_out / 1M
    ratio    = round(actual_cost / baseline, 4)
    adjusted = ceil((prompt + completion) * ratio)

The functions here are pure and carry no agent state; the agent ledger and
the ordinary single-shot billing path use the same primitive. Arithmetic is
done in :class:`~decimal.Decimal` so that a request priced exactly at the
baseline degenerates to its raw token count.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from studyplan.core.pricing import ModelPricing, PricingConfig
from studyplan.errors import PricingComputationError
from studyplan.models import CostLedgerEntry, TokenUsage

logger = logging.getLogger(__name__)

_RATIO_QUANTUM = Decimal("0.0001")


def _as_decimal(value: Decimal | float | int) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def baseline_equivalent_cost(
    prompt_tokens: int, completion_tokens: int, baseline: ModelPricing
) -> Decimal:
    """What the same token counts would have cost on the baseline model."""
    if prompt_tokens < 0 or completion_tokens < 0:
        raise PricingComputationError(
            f"Token counts must be non-negative (prompt={prompt_tokens}, "
            f"completion={completion_tokens})"
        )
    return baseline.cost(prompt_tokens, completion_tokens)


def cost_ratio(actual_cost_usd: Decimal | float, baseline_cost_usd: Decimal) -> Decimal:
    """Actual cost over baseline-equivalent cost, rounded to four places.

    Raises
    ------
    PricingComputationError
        If the baseline-equivalent cost is not positive.
    """
    actual = _as_decimal(actual_cost_usd)
    if baseline_cost_usd <= 0:
        raise PricingComputationError(
            f"Baseline-equivalent cost is {baseline_cost_usd}; cannot normalize cost {actual}"
        )
    if actual < 0:
        raise PricingComputationError(f"Actual cost must be non-negative, got {actual}")
    return (actual / baseline_cost_usd).quantize(_RATIO_QUANTUM, rounding=ROUND_HALF_UP)


def adjusted_token_count(
    prompt_tokens: int,
    completion_tokens: int,
    actual_cost_usd: Decimal | float,
    baseline: ModelPricing,
) -> int:
    """Scale the actual token count by the actual/baseline cost ratio.

    Raises
    ------
    PricingComputationError
        If the baseline-equivalent cost is zero (e.g. a zero-token turn).
    """
    baseline_cost = baseline_equivalent_cost(prompt_tokens, completion_tokens, baseline)
    ratio = cost_ratio(actual_cost_usd, baseline_cost)
    return math.ceil(Decimal(prompt_tokens + completion_tokens) * ratio)


def adjusted_tokens_or_fallback(
    prompt_tokens: int,
    completion_tokens: int,
    actual_cost_usd: Decimal | float,
    baseline: ModelPricing,
) -> int:
    """Adjusted token count, or the raw count when it cannot be computed.

    Billing must never block a user's request, so failures are logged and
    the raw actual token count is charged instead.
    """
    try:
        return adjusted_token_count(prompt_tokens, completion_tokens, actual_cost_usd, baseline)
    except PricingComputationError as exc:
        raw = prompt_tokens + completion_tokens
        logger.warning("Adjusted token computation failed, billing raw tokens (%d): %s", raw, exc)
        return raw


def price_turn(pricing: PricingConfig, model_id: str, usage: TokenUsage) -> Decimal:
    """Actual USD cost of one provider response.

    Uses the provider-reported cost when the envelope carries one, otherwise
    the pricing table.

    Raises
    ------
    PricingComputationError
        If the provider reported no cost and *model_id* is not priced.
    """
    if usage.reported_cost_usd is not None:
        return _as_decimal(usage.reported_cost_usd)
    cost = pricing.estimate_cost(model_id, usage.prompt_tokens, usage.completion_tokens)
    if cost is None:
        raise PricingComputationError(f"Model {model_id!r} has no pricing entry")
    return cost


@dataclass
class CostLedger:
    """Append-only per-run ledger of priced turns."""

    baseline: ModelPricing
    entries: list[CostLedgerEntry] = field(default_factory=list)

    def record(
        self,
        turn_index: int,
        prompt_tokens: int,
        completion_tokens: int,
        actual_cost_usd: Decimal | float,
    ) -> CostLedgerEntry:
        """Price one turn against the baseline and append it.

        Raises
        ------
        PricingComputationError
            If the turn cannot be normalized; nothing is appended.
        """
        actual = _as_decimal(actual_cost_usd)
        baseline_cost = baseline_equivalent_cost(prompt_tokens, completion_tokens, self.baseline)
        ratio = cost_ratio(actual, baseline_cost)
        entry = CostLedgerEntry(
            turn_index=turn_index,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            actual_cost_usd=actual,
            baseline_equivalent_cost_usd=baseline_cost,
            cost_ratio=ratio,
            adjusted_token_count=math.ceil(Decimal(prompt_tokens + completion_tokens) * ratio),
        )
        self.entries.append(entry)
        logger.debug(
            "Turn %d priced: tokens=%d cost=$%s baseline=$%s ratio=%s adjusted=%d",
            turn_index,
            entry.actual_tokens,
            actual,
            baseline_cost,
            ratio,
            entry.adjusted_token_count,
        )
        return entry

    @property
    def total_prompt_tokens(self) -> int:
        return sum(entry.prompt_tokens for entry in self.entries)

    @property
    def total_completion_tokens(self) -> int:
        return sum(entry.completion_tokens for entry in self.entries)

    @property
    def total_adjusted_tokens(self) -> int:
        return sum(entry.adjusted_token_count for entry in self.entries)

    @property
    def total_cost_usd(self) -> Decimal:
        return sum((entry.actual_cost_usd for entry in self.entries), Decimal("0"))
