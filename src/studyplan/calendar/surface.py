"""Calendar query surface: the four operations the agent may call.

The surface is bound to one scheduling request (user, subject, grade, date
range) and never holds agent state: every read goes back to the store, so a
run always sees the calendar as it is now rather than as a snapshot taken at
the start of the run.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, time, timedelta

from studyplan.calendar.store import EventStore, overlaps
from studyplan.errors import ValidationError
from studyplan.models import (
    BusyPeriodSummary,
    CalendarEvent,
    ConflictCheckResult,
    ConflictingSessionSummary,
    ScheduledSession,
    SchedulingRequest,
    TimeInterval,
    Weekday,
)

logger = logging.getLogger(__name__)

DEFAULT_BUSY_PERIOD_LIMIT = 20

_SAME_SUBJECT_SUGGESTION = "Same subject session exists - consider another slot for this chapter"
_OTHER_EVENT_SUGGESTION = "Try a different time on this day or choose another day"


def _summarize(event: CalendarEvent) -> ConflictingSessionSummary:
    return ConflictingSessionSummary(
        event_id=event.event_id,
        date=event.date,
        start_time=event.start_time,
        end_time=event.end_time,
        chapter_ref=event.chapter_ref,
        title=event.title,
    )


class CalendarQuerySurface:
    """Read/write operations against the event store for one request.

    Parameters
    ----------
    store:
        The event store shared by every run.
    request:
        The scheduling request this surface is scoped to.
    """

    def __init__(self, store: EventStore, request: SchedulingRequest) -> None:
        self._store = store
        self._request = request

    @property
    def request(self) -> SchedulingRequest:
        return self._request

    # -- validation ---------------------------------------------------------

    def _validate_slot(self, day: date, start_time: time, end_time: time) -> None:
        if not self._request.contains(day):
            raise ValidationError(
                f"Date {day} is outside the requested range "
                f"{self._request.date_range_start}..{self._request.date_range_end}"
            )
        if start_time >= end_time:
            raise ValidationError(
                f"start_time {start_time:%H:%M} must be before end_time {end_time:%H:%M}"
            )

    def _validate_chapter(self, chapter_ref: int) -> None:
        known = {ch.chapter_number for ch in self._request.chapters}
        if chapter_ref not in known:
            raise ValidationError(
                f"Unknown chapter {chapter_ref}; expected one of {sorted(known)}"
            )

    def _days(self) -> list[date]:
        """Every day of the request range, filtered to the preferred weekdays."""
        preferred = self._request.preferred_days
        days: list[date] = []
        current = self._request.date_range_start
        while current <= self._request.date_range_end:
            if not preferred or Weekday.of(current) in preferred:
                days.append(current)
            current += timedelta(days=1)
        return days

    # -- operations ---------------------------------------------------------

    async def get_busy_periods(
        self, limit: int = DEFAULT_BUSY_PERIOD_LIMIT
    ) -> list[BusyPeriodSummary]:
        """Count the user's events per day, least busy day first.

        Ties are broken chronologically so the ordering is deterministic.
        """
        if limit < 1:
            raise ValidationError(f"limit must be a positive integer, got {limit}")

        events = await self._store.list_events(
            user_id=self._request.user_id,
            start=self._request.date_range_start,
            end=self._request.date_range_end,
        )
        by_day: dict[date, list[TimeInterval]] = defaultdict(list)
        for event in events:
            by_day[event.date].append(TimeInterval(start=event.start_time, end=event.end_time))

        periods = [
            BusyPeriodSummary(date=day, event_count=len(by_day[day]), time_slots=by_day[day])
            for day in self._days()
        ]
        periods.sort(key=lambda period: (period.event_count, period.date))
        return periods[:limit]

    async def get_conflicting_sessions(self) -> list[ConflictingSessionSummary]:
        """Existing sessions for the same subject and grade in the range."""
        events = await self._store.list_events(
            user_id=self._request.user_id,
            start=self._request.date_range_start,
            end=self._request.date_range_end,
        )
        same = [
            event
            for event in events
            if event.subject_id == self._request.subject_id
            and event.grade_id == self._request.grade_id
        ]
        same.sort(key=lambda event: (event.date, event.start_time))
        return [_summarize(event) for event in same]

    async def check_time_slot(
        self, day: date, start_time: time, end_time: time
    ) -> ConflictCheckResult:
        """Test a slot against every event the user has on that date."""
        self._validate_slot(day, start_time, end_time)
        events = await self._store.list_events(user_id=self._request.user_id, start=day, end=day)
        clashes = [
            event
            for event in events
            if overlaps(start_time, end_time, event.start_time, event.end_time)
        ]
        if not clashes:
            return ConflictCheckResult(has_conflict=False)

        clashes.sort(key=lambda event: event.start_time)
        same_subject = any(
            event.subject_id == self._request.subject_id
            and event.grade_id == self._request.grade_id
            for event in clashes
        )
        return ConflictCheckResult(
            has_conflict=True,
            conflicting_event=_summarize(clashes[0]),
            conflict_count=len(clashes),
            is_same_subject=same_subject,
            suggestion=_SAME_SUBJECT_SUGGESTION if same_subject else _OTHER_EVENT_SUGGESTION,
        )

    async def schedule_session(
        self,
        day: date,
        start_time: time,
        end_time: time,
        chapter_ref: int,
        *,
        title: str | None = None,
        topics: tuple[str, ...] = (),
        session_number: int | None = None,
    ) -> ScheduledSession:
        """Commit a session; the store re-validates for overlaps at commit time."""
        self._validate_slot(day, start_time, end_time)
        self._validate_chapter(chapter_ref)
        if title is None or not title.strip():
            suffix = f": Session {session_number}" if session_number else ""
            title = f"{self._request.subject_name} - Chapter {chapter_ref}{suffix}"

        return await self._store.insert_session(
            user_id=self._request.user_id,
            day=day,
            start_time=start_time,
            end_time=end_time,
            subject_id=self._request.subject_id,
            grade_id=self._request.grade_id,
            chapter_ref=chapter_ref,
            title=title.strip(),
            topics=topics,
            session_number=session_number,
        )
