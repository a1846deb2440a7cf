"""Data model for the scheduling agent.

Request and result types are pydantic models so that they validate at the
boundary and serialize cleanly into tool observations. Clock times serialize
as ``HH:MM`` in JSON mode, which is the format the tool catalog advertises.
"""

from __future__ import annotations

from datetime import date, time
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, model_validator

ClockTime = Annotated[
    time,
    PlainSerializer(lambda value: value.strftime("%H:%M"), return_type=str, when_used="json"),
]


class Weekday(StrEnum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @classmethod
    def of(cls, day: date) -> Weekday:
        """Return the weekday of *day*."""
        return list(cls)[day.weekday()]


class TimeOfDay(StrEnum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"

    @property
    def window(self) -> tuple[time, time]:
        """Return the ``(start, end)`` clock window for this part of the day."""
        return _TIME_OF_DAY_WINDOWS[self]


_TIME_OF_DAY_WINDOWS: dict[TimeOfDay, tuple[time, time]] = {
    TimeOfDay.MORNING: (time(8, 0), time(12, 0)),
    TimeOfDay.AFTERNOON: (time(13, 0), time(17, 0)),
    TimeOfDay.EVENING: (time(18, 0), time(22, 0)),
}


class RunState(StrEnum):
    """Agent executor states."""

    INIT = "init"
    REASONING = "reasoning"
    DISPATCHING_TOOLS = "dispatching_tools"
    COMPLETE = "complete"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


class SessionStatus(StrEnum):
    SCHEDULED = "scheduled"


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class ChapterRef(BaseModel):
    """One chapter of the syllabus, in study order."""

    model_config = ConfigDict(frozen=True)

    chapter_number: int = Field(ge=1)
    title: str = Field(min_length=1)
    topics: tuple[str, ...] = ()
    session_count: int | None = Field(default=None, ge=1)


class SchedulingRequest(BaseModel):
    """Immutable input to one scheduling run."""

    model_config = ConfigDict(frozen=True)

    user_id: str = Field(min_length=1)
    subject_id: str = Field(min_length=1)
    subject_name: str = Field(min_length=1)
    grade_id: str = Field(min_length=1)
    grade_name: str = Field(min_length=1)
    date_range_start: date
    date_range_end: date
    preferred_days: frozenset[Weekday] = frozenset()
    preferred_times: frozenset[TimeOfDay] = frozenset()
    chapters: tuple[ChapterRef, ...] = Field(min_length=1)
    target_session_count: int = Field(ge=1)
    session_duration_minutes: int = Field(default=60, ge=1, le=24 * 60)

    @model_validator(mode="after")
    def _check_range(self) -> SchedulingRequest:
        if self.date_range_start > self.date_range_end:
            raise ValueError("date_range_start must not be after date_range_end")
        return self

    def contains(self, day: date) -> bool:
        """Return whether *day* falls inside the requested date range."""
        return self.date_range_start <= day <= self.date_range_end


def distribute_sessions(chapters: tuple[ChapterRef, ...], target: int) -> list[int]:
    """Split *target* sessions across *chapters* in order.

    Chapters that carry an explicit ``session_count`` keep it; the remaining
    sessions are spread evenly over the other chapters, earlier chapters
    receiving the remainder.
    """
    explicit = sum(ch.session_count or 0 for ch in chapters)
    open_chapters = [i for i, ch in enumerate(chapters) if ch.session_count is None]
    counts = [ch.session_count or 0 for ch in chapters]
    remaining = max(target - explicit, 0)
    if open_chapters:
        share, extra = divmod(remaining, len(open_chapters))
        for position, index in enumerate(open_chapters):
            counts[index] = share + (1 if position < extra else 0)
    return counts


# ---------------------------------------------------------------------------
# Calendar query results
# ---------------------------------------------------------------------------


class CalendarEvent(BaseModel):
    """An existing event in the user's calendar, as returned by the store."""

    event_id: str
    date: date
    start_time: ClockTime
    end_time: ClockTime
    title: str = ""
    subject_id: str | None = None
    grade_id: str | None = None
    chapter_ref: int | None = None


class TimeInterval(BaseModel):
    start: ClockTime
    end: ClockTime


class BusyPeriodSummary(BaseModel):
    date: date
    event_count: int = Field(ge=0)
    time_slots: list[TimeInterval] = Field(default_factory=list)


class ConflictingSessionSummary(BaseModel):
    event_id: str
    date: date
    start_time: ClockTime
    end_time: ClockTime
    chapter_ref: int | None = None
    title: str = ""


class TimeSlot(BaseModel):
    model_config = ConfigDict(frozen=True)

    date: date
    start_time: ClockTime
    end_time: ClockTime


class ConflictCheckResult(BaseModel):
    has_conflict: bool
    conflicting_event: ConflictingSessionSummary | None = None
    conflict_count: int = 0
    is_same_subject: bool = False
    suggestion: str | None = None


class ScheduledSession(BaseModel):
    """A committed placement."""

    event_id: str
    date: date
    start_time: ClockTime
    end_time: ClockTime
    subject_id: str
    grade_id: str
    chapter_ref: int
    title: str
    topics: tuple[str, ...] = ()
    session_number: int | None = None
    status: SessionStatus = SessionStatus.SCHEDULED


# ---------------------------------------------------------------------------
# Agent turns and results
# ---------------------------------------------------------------------------


class ToolAction(BaseModel):
    """One model-requested tool call, normalized across providers."""

    call_id: str | None = None
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Observation(BaseModel):
    """The result of dispatching one ToolAction.

    ``result`` is exactly what the model sees. For rejected actions it holds
    the error payload and ``error`` names the error code.
    """

    call_id: str | None = None
    tool_name: str
    result: Any = None
    error: str | None = None


class TokenUsage(BaseModel):
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    reported_cost_usd: Decimal | None = None

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class AgentTurn(BaseModel):
    turn_index: int
    actions: list[ToolAction] = Field(default_factory=list)
    observations: list[Observation] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    actual_cost_usd: Decimal = Decimal("0")
    text: str | None = None
    error: str | None = None


class CostLedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    turn_index: int
    prompt_tokens: int
    completion_tokens: int
    actual_cost_usd: Decimal
    baseline_equivalent_cost_usd: Decimal
    cost_ratio: Decimal
    adjusted_token_count: int

    @property
    def actual_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class PlanTokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_adjusted_tokens: int = 0


class PlanResult(BaseModel):
    """What one executor run hands back to its caller."""

    scheduled_sessions: list[ScheduledSession] = Field(default_factory=list)
    completed: bool = False
    state: RunState = RunState.INIT
    reasoning_steps: int = 0
    token_usage: PlanTokenUsage = Field(default_factory=PlanTokenUsage)
    cost_usd: Decimal = Decimal("0")
    turns: list[AgentTurn] = Field(default_factory=list)
    ledger: list[CostLedgerEntry] = Field(default_factory=list)
    reasoning: list[str] = Field(default_factory=list)
