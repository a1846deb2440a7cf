"""Routing between the agent and the legacy bulk-prompt planner.

A calendar with many existing events would blow up a single bulk prompt, so
such requests go to the agent, which queries the calendar incrementally. A
request can also opt into the agent explicitly.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_AGENT_THRESHOLD = 50


class PlanningMode(StrEnum):
    AGENT = "agent"
    LEGACY = "legacy"


def should_use_agent_mode(
    existing_event_count: int, threshold: int = DEFAULT_AGENT_THRESHOLD
) -> bool:
    """Return True when the calendar is busy enough to warrant the agent."""
    return existing_event_count >= threshold


def is_agent_mode_enabled(request_data: Mapping[str, Any]) -> bool:
    """Return True only when the request explicitly sets ``use_agent_mode`` to true."""
    return request_data.get("use_agent_mode") is True


def select_mode(
    existing_event_count: int,
    *,
    explicit: bool = False,
    threshold: int = DEFAULT_AGENT_THRESHOLD,
) -> PlanningMode:
    """Pick the planning mode for one request."""
    automatic = should_use_agent_mode(existing_event_count, threshold)
    if explicit or automatic:
        logger.info(
            "Agent mode selected (explicit=%s, existing_events=%d, threshold=%d)",
            explicit,
            existing_event_count,
            threshold,
        )
        return PlanningMode.AGENT
    logger.info(
        "Legacy mode selected (existing_events=%d < threshold=%d)",
        existing_event_count,
        threshold,
    )
    return PlanningMode.LEGACY
