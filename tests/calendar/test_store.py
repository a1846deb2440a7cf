"""Unit tests for PostgresEventStore error translation (no database needed)."""

from __future__ import annotations

from datetime import date, time
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from studyplan.calendar.store import PostgresEventStore
from studyplan.errors import CalendarStoreUnavailable

pytestmark = pytest.mark.unit

MON = date(2026, 3, 2)


def _pool(**methods) -> MagicMock:
    pool = MagicMock()
    for name, side_effect in methods.items():
        setattr(pool, name, AsyncMock(side_effect=side_effect))
    return pool


@pytest.mark.parametrize(
    "exc",
    [
        asyncpg.QueryCanceledError("canceling statement due to statement timeout"),
        asyncpg.TooManyConnectionsError("sorry, too many clients already"),
        asyncpg.PostgresConnectionError("connection was closed"),
        asyncpg.InterfaceError("pool is closing"),
        ConnectionRefusedError("refused"),
    ],
)
async def test_list_events_driver_errors_become_unavailable(exc):
    store = PostgresEventStore(_pool(fetch=exc))

    with pytest.raises(CalendarStoreUnavailable, match="list_events") as exc_info:
        await store.list_events(user_id="user-1", start=MON, end=MON)

    assert exc_info.value.__cause__ is exc


async def test_count_events_statement_timeout_becomes_unavailable():
    store = PostgresEventStore(_pool(fetchval=asyncpg.QueryCanceledError("statement timeout")))

    with pytest.raises(CalendarStoreUnavailable, match="count_events"):
        await store.count_events(user_id="user-1", start=MON, end=MON)


async def test_insert_session_pool_exhaustion_becomes_unavailable():
    pool = MagicMock()
    pool.acquire.side_effect = asyncpg.TooManyConnectionsError("too many clients")
    store = PostgresEventStore(pool)

    with pytest.raises(CalendarStoreUnavailable, match="insert_session"):
        await store.insert_session(
            user_id="user-1",
            day=MON,
            start_time=time(9),
            end_time=time(10),
            subject_id="math",
            grade_id="g10",
            chapter_ref=1,
            title="Algebra",
        )


async def test_count_events_passes_through_result():
    store = PostgresEventStore(_pool(fetchval=[7]))
    assert await store.count_events(user_id="user-1", start=MON, end=MON) == 7
