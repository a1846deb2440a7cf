"""Event store boundary for the calendar query surface.

``EventStore`` is the persistence contract the agent relies on: range reads
of a user's events and an atomic "re-validate then insert" for new sessions.
``PostgresEventStore`` implements it on the ``study_plan_events`` table.
"""

from __future__ import annotations

import abc
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, time
from typing import Any

import asyncpg

from studyplan.errors import CalendarStoreUnavailable, ConflictError
from studyplan.models import CalendarEvent, ScheduledSession

logger = logging.getLogger(__name__)

# Any driver or server failure, including statement timeouts and connection
# limits, leaves the run without a usable store.
_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
)


def overlaps(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open overlap test: ``[s1,e1)`` and ``[s2,e2)`` conflict iff ``s1 < e2 and s2 < e1``."""
    return start_a < end_b and start_b < end_a


class EventStore(abc.ABC):
    """Persistence contract used by :class:`CalendarQuerySurface`."""

    @abc.abstractmethod
    async def list_events(self, *, user_id: str, start: date, end: date) -> list[CalendarEvent]:
        """Return all of the user's events with ``start <= date <= end``.

        Ordered by date, then start time.
        """
        ...

    @abc.abstractmethod
    async def insert_session(
        self,
        *,
        user_id: str,
        day: date,
        start_time: time,
        end_time: time,
        subject_id: str,
        grade_id: str,
        chapter_ref: int,
        title: str,
        topics: tuple[str, ...] = (),
        session_number: int | None = None,
    ) -> ScheduledSession:
        """Insert a session after re-checking for overlaps in the same transaction.

        Raises
        ------
        ConflictError
            If any of the user's events on ``day`` overlaps the new interval.
        CalendarStoreUnavailable
            If the store cannot be reached.
        """
        ...

    async def count_events(self, *, user_id: str, start: date, end: date) -> int:
        """Count the user's events in the range (used for mode selection)."""
        return len(await self.list_events(user_id=user_id, start=start, end=end))


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    """Translate driver and server failures into CalendarStoreUnavailable."""
    try:
        yield
    except _UNAVAILABLE_ERRORS as exc:
        logger.error("Calendar store unavailable during %s: %s", operation, exc)
        raise CalendarStoreUnavailable(
            f"Calendar store unavailable during {operation}: {exc}"
        ) from exc


def _row_to_event(row: asyncpg.Record | dict[str, Any]) -> CalendarEvent:
    return CalendarEvent(
        event_id=str(row["id"]),
        date=row["event_date"],
        start_time=row["start_time"],
        end_time=row["end_time"],
        title=row["title"] or "",
        subject_id=row["subject_id"],
        grade_id=row["grade_id"],
        chapter_ref=row["chapter_number"],
    )


_EVENT_COLUMNS = "id, event_date, start_time, end_time, title, subject_id, grade_id, chapter_number"


class PostgresEventStore(EventStore):
    """asyncpg-backed event store.

    Commits take a transaction-scoped advisory lock keyed on ``user_id`` and
    the event date, so two runs placing sessions for the same user on the same
    day serialize their re-validation and insert.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_events(self, *, user_id: str, start: date, end: date) -> list[CalendarEvent]:
        with _store_errors("list_events"):
            rows = await self._pool.fetch(
                f"""
                SELECT {_EVENT_COLUMNS}
                FROM study_plan_events
                WHERE user_id = $1 AND event_date BETWEEN $2 AND $3
                ORDER BY event_date, start_time
                """,
                user_id,
                start,
                end,
            )
        return [_row_to_event(row) for row in rows]

    async def count_events(self, *, user_id: str, start: date, end: date) -> int:
        with _store_errors("count_events"):
            count = await self._pool.fetchval(
                """
                SELECT count(*)
                FROM study_plan_events
                WHERE user_id = $1 AND event_date BETWEEN $2 AND $3
                """,
                user_id,
                start,
                end,
            )
        return int(count or 0)

    async def insert_session(
        self,
        *,
        user_id: str,
        day: date,
        start_time: time,
        end_time: time,
        subject_id: str,
        grade_id: str,
        chapter_ref: int,
        title: str,
        topics: tuple[str, ...] = (),
        session_number: int | None = None,
    ) -> ScheduledSession:
        with _store_errors("insert_session"):
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))",
                        f"{user_id}:{day.isoformat()}",
                    )
                    clash = await conn.fetchrow(
                        f"""
                        SELECT {_EVENT_COLUMNS}
                        FROM study_plan_events
                        WHERE user_id = $1
                          AND event_date = $2
                          AND start_time < $4
                          AND $3 < end_time
                        ORDER BY start_time
                        LIMIT 1
                        """,
                        user_id,
                        day,
                        start_time,
                        end_time,
                    )
                    if clash is not None:
                        existing = _row_to_event(clash)
                        raise ConflictError(
                            f"Slot {day} {start_time:%H:%M}-{end_time:%H:%M} overlaps "
                            f"event {existing.event_id}",
                            conflicting_event=existing.model_dump(mode="json"),
                        )
                    event_id = await conn.fetchval(
                        """
                        INSERT INTO study_plan_events (
                            user_id, event_date, start_time, end_time, title,
                            subject_id, grade_id, chapter_number, session_number,
                            topics, status
                        )
                        VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, 'scheduled')
                        RETURNING id
                        """,
                        user_id,
                        day,
                        start_time,
                        end_time,
                        title,
                        subject_id,
                        grade_id,
                        chapter_ref,
                        session_number,
                        json.dumps(list(topics)),
                    )
        logger.info(
            "Session committed: %s %s %s-%s (chapter %d)",
            event_id,
            day,
            start_time.strftime("%H:%M"),
            end_time.strftime("%H:%M"),
            chapter_ref,
        )
        return ScheduledSession(
            event_id=str(event_id),
            date=day,
            start_time=start_time,
            end_time=end_time,
            subject_id=subject_id,
            grade_id=grade_id,
            chapter_ref=chapter_ref,
            title=title,
            topics=topics,
            session_number=session_number,
        )
