"""Root conftest: shared fixtures and Postgres testcontainer helpers.

The in-memory fakes themselves live in :mod:`studyplan.testing.fakes`.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import pytest

from studyplan.core.pricing import ModelPricing, PricingConfig
from studyplan.models import ChapterRef, SchedulingRequest
from studyplan.testing.fakes import (
    BASELINE_MODEL,
    CLAUDE_MODEL,
    FakeEventStore,
    ScriptedAdapter,
)

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

logger = logging.getLogger(__name__)

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "no such container",
    "is already in progress",
    "is dead or marked for removal",
)


# ---------------------------------------------------------------------------
# Shared fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def pricing() -> PricingConfig:
    """Two-model pricing table: Gemini-class baseline and Claude-class premium."""
    return PricingConfig(
        {
            BASELINE_MODEL: ModelPricing(Decimal("0.075"), Decimal("0.30"), provider="gemini"),
            CLAUDE_MODEL: ModelPricing(Decimal("3.00"), Decimal("15.00"), provider="claude"),
        },
        baseline_model=BASELINE_MODEL,
        version="test",
    )


@pytest.fixture
def event_store() -> FakeEventStore:
    return FakeEventStore()


@pytest.fixture
def scripted_adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def make_request() -> Callable[..., SchedulingRequest]:
    """Factory for scheduling requests over Mon 2026-03-02 .. Sun 2026-03-08."""

    def _make(**overrides: Any) -> SchedulingRequest:
        fields: dict[str, Any] = {
            "user_id": "user-1",
            "subject_id": "math",
            "subject_name": "Mathematics",
            "grade_id": "g10",
            "grade_name": "Grade 10",
            "date_range_start": date(2026, 3, 2),
            "date_range_end": date(2026, 3, 8),
            "chapters": (ChapterRef(chapter_number=1, title="Algebra", topics=("equations",)),),
            "target_session_count": 3,
            "session_duration_minutes": 60,
        }
        fields.update(overrides)
        return SchedulingRequest(**fields)

    return _make


# ---------------------------------------------------------------------------
# Postgres (testcontainers)
# ---------------------------------------------------------------------------


def _is_transient_docker_teardown_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS)


def _retry_testcontainer_stop(
    stop_call: Callable[[], None],
    *,
    max_attempts: int = _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
    base_delay_seconds: float = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS,
) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    delay = base_delay_seconds
    for attempt in range(1, max_attempts + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= max_attempts or not _is_transient_docker_teardown_error(exc):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                max_attempts,
                exc,
            )
            time.sleep(delay)
            delay *= 2


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each helper call provisions a new database with a random name, so rows
    never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    pg = PostgresContainer("postgres:16")
    pg.start()
    try:
        yield pg
    finally:
        _retry_testcontainer_stop(pg.stop)


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, fully migrated database and asyncpg pool for one test.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from studyplan.db import DatabaseSettings, ensure_database, open_pool
    from studyplan.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        settings = DatabaseSettings(
            name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
        )
        await ensure_database(settings)
        await run_migrations(settings.dsn)
        async with open_pool(settings, min_size=min_pool_size, max_size=max_pool_size) as pool:
            yield pool

    return _provision
