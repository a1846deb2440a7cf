"""Token usage log: append-only accounting rows for billed model work.

One row is written per planning request that spent tokens, including
requests whose generation failed part-way, so that usage is always charged
for what was actually consumed.
"""

from __future__ import annotations

import json
import logging
import uuid
from decimal import Decimal
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

AGENT_PURPOSE = "study_plan_generation_agent"
LEGACY_PURPOSE = "study_plan_generation"

_JSONB_FIELDS = ("metadata",)


def _decode_row(row: asyncpg.Record) -> dict[str, Any]:
    """Convert an asyncpg Record to a dict, deserializing JSONB string fields."""
    d = dict(row)
    for field in _JSONB_FIELDS:
        if field in d and isinstance(d[field], str):
            d[field] = json.loads(d[field])
    return d


async def record_token_usage(
    pool: asyncpg.Pool,
    *,
    user_id: str,
    model: str,
    provider: str,
    prompt_tokens: int,
    completion_tokens: int,
    estimated_cost: Decimal,
    cost_adjusted_tokens: int,
    purpose: str = AGENT_PURPOSE,
    metadata: dict[str, Any] | None = None,
) -> uuid.UUID:
    """Insert one token usage row and return its id.

    Args:
        pool: asyncpg connection pool.
        user_id: The user the tokens are charged to.
        model: Provider model ID that served the request.
        provider: Provider kind (``claude``, ``gemini``, ``openai``).
        prompt_tokens: Total prompt tokens across all turns.
        completion_tokens: Total completion tokens across all turns.
        estimated_cost: Actual USD cost of the request.
        cost_adjusted_tokens: Baseline-equivalent tokens deducted from the
            user's allocation.
        purpose: What the tokens were spent on.
        metadata: Free-form JSON details (run outcome, request shape).

    Returns:
        The UUID of the new row.
    """
    row_id: uuid.UUID = await pool.fetchval(
        """
        INSERT INTO token_usage_logs (
            user_id, model, provider, prompt_tokens, completion_tokens,
            total_tokens, estimated_cost, cost_adjusted_tokens, purpose, metadata
        )
        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb)
        RETURNING id
        """,
        user_id,
        model,
        provider,
        prompt_tokens,
        completion_tokens,
        prompt_tokens + completion_tokens,
        estimated_cost,
        cost_adjusted_tokens,
        purpose,
        json.dumps(metadata or {}, default=str),
    )
    logger.info(
        "Token usage logged: %s (user=%s, model=%s, tokens=%d, adjusted=%d, cost=$%s)",
        row_id,
        user_id,
        model,
        prompt_tokens + completion_tokens,
        cost_adjusted_tokens,
        estimated_cost,
    )
    return row_id


async def list_token_usage(
    pool: asyncpg.Pool,
    user_id: str,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """Return the user's most recent usage rows, newest first."""
    rows = await pool.fetch(
        """
        SELECT id, user_id, model, provider, prompt_tokens, completion_tokens,
               total_tokens, estimated_cost, cost_adjusted_tokens, purpose,
               metadata, created_at
        FROM token_usage_logs
        WHERE user_id = $1
        ORDER BY created_at DESC
        LIMIT $2
        """,
        user_id,
        limit,
    )
    return [_decode_row(row) for row in rows]


async def total_adjusted_tokens(pool: asyncpg.Pool, user_id: str) -> int:
    """Return the sum of adjusted tokens charged to the user."""
    total = await pool.fetchval(
        "SELECT COALESCE(SUM(cost_adjusted_tokens), 0) FROM token_usage_logs WHERE user_id = $1",
        user_id,
    )
    return int(total)
