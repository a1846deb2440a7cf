"""Tool catalog and dispatcher for the scheduling agent.

The catalog is the fixed set of four tools offered to every provider, with
JSON-schema argument specs. Provider adapters translate it into their native
declaration format.

The dispatcher turns a normalized :class:`ToolAction` into a call on the
calendar query surface and returns an :class:`Observation`. Recoverable
errors become observations; fatal ones propagate to the executor.
It also enforces check-before-commit: a ``schedule_session`` call is only
accepted for a slot whose most recent ``check_time_slot`` in this run came
back clean.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime, time
from enum import StrEnum
from typing import Any

from studyplan.calendar.surface import DEFAULT_BUSY_PERIOD_LIMIT, CalendarQuerySurface
from studyplan.errors import ConflictError, PrecedenceError, StudyPlanError, ValidationError
from studyplan.models import Observation, ScheduledSession, TimeSlot, ToolAction

logger = logging.getLogger(__name__)


class ToolName(StrEnum):
    GET_BUSY_PERIODS = "get_busy_periods"
    GET_CONFLICTING_SESSIONS = "get_conflicting_sessions"
    CHECK_TIME_SLOT = "check_time_slot"
    SCHEDULE_SESSION = "schedule_session"


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """Provider-neutral tool declaration."""

    name: str
    description: str
    parameters: dict[str, Any]


_SLOT_PROPERTIES: dict[str, Any] = {
    "date": {"type": "string", "description": "Date in YYYY-MM-DD format"},
    "start_time": {"type": "string", "description": "Start time in HH:MM format (24-hour)"},
    "end_time": {"type": "string", "description": "End time in HH:MM format (24-hour)"},
}

TOOL_CATALOG: tuple[ToolSpec, ...] = (
    ToolSpec(
        name=ToolName.GET_BUSY_PERIODS,
        description=(
            "Get the number of existing events per day in the date range. "
            "Days are sorted by event count, least busy first."
        ),
        parameters={
            "type": "object",
            "properties": {
                "limit": {
                    "type": "integer",
                    "description": "Maximum number of days to return (default: 20)",
                },
            },
        },
    ),
    ToolSpec(
        name=ToolName.GET_CONFLICTING_SESSIONS,
        description=(
            "Get the existing study sessions for the same subject and grade in the "
            "date range, ordered by date and start time. Use it to avoid re-covering "
            "chapters that are already scheduled."
        ),
        parameters={"type": "object", "properties": {}},
    ),
    ToolSpec(
        name=ToolName.CHECK_TIME_SLOT,
        description=(
            "Check whether a date and time slot overlaps any existing event. "
            "Call this before scheduling each session."
        ),
        parameters={
            "type": "object",
            "properties": dict(_SLOT_PROPERTIES),
            "required": ["date", "start_time", "end_time"],
        },
    ),
    ToolSpec(
        name=ToolName.SCHEDULE_SESSION,
        description=(
            "Schedule a study session. Only call this for a slot that check_time_slot "
            "reported as free."
        ),
        parameters={
            "type": "object",
            "properties": {
                **_SLOT_PROPERTIES,
                "chapter_number": {
                    "type": "integer",
                    "description": "Chapter number (1-based) covered by this session",
                },
                "session_number": {
                    "type": "integer",
                    "description": "Session number within the chapter (1-based)",
                },
                "title": {
                    "type": "string",
                    "description": 'Session title, e.g. "Mathematics - Chapter 1: Session 1"',
                },
                "topics": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Topics to cover in this session",
                },
            },
            "required": ["date", "start_time", "end_time", "chapter_number"],
        },
    ),
)


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def parse_date(value: Any, field: str = "date") -> date:
    """Parse a ``YYYY-MM-DD`` string into a date."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a YYYY-MM-DD string, got {value!r}")
    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise ValidationError(f"{field} must be a YYYY-MM-DD string, got {value!r}") from exc


def parse_clock(value: Any, field: str) -> time:
    """Parse an ``HH:MM`` (or ``HH:MM:SS``) string into a time."""
    if isinstance(value, time):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an HH:MM string, got {value!r}")
    text = value.strip()
    for fmt in ("%H:%M", "%H:%M:%S"):
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValidationError(f"{field} must be an HH:MM string, got {value!r}")


def parse_int(value: Any, field: str) -> int:
    """Parse an integer argument; JSON numbers such as ``2.0`` are accepted."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ValidationError(f"{field} must be an integer, got {value!r}")


def parse_slot(arguments: dict[str, Any]) -> TimeSlot:
    for key in ("date", "start_time", "end_time"):
        if key not in arguments:
            raise ValidationError(f"Missing required argument: {key}")
    return TimeSlot(
        date=parse_date(arguments["date"]),
        start_time=parse_clock(arguments["start_time"], "start_time"),
        end_time=parse_clock(arguments["end_time"], "end_time"),
    )


def _parse_topics(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ValidationError(f"topics must be a list of strings, got {value!r}")


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

_Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class ToolDispatcher:
    """Executes normalized tool actions against a calendar query surface.

    One dispatcher lives for exactly one executor run. It tracks which slots
    currently hold a clean ``check_time_slot`` result and the sessions that
    were committed during the run.
    """

    def __init__(self, surface: CalendarQuerySurface) -> None:
        self._surface = surface
        self._cleared_slots: set[TimeSlot] = set()
        self.committed: list[ScheduledSession] = []
        self._handlers: dict[str, _Handler] = {
            ToolName.GET_BUSY_PERIODS: self._get_busy_periods,
            ToolName.GET_CONFLICTING_SESSIONS: self._get_conflicting_sessions,
            ToolName.CHECK_TIME_SLOT: self._check_time_slot,
            ToolName.SCHEDULE_SESSION: self._schedule_session,
        }

    async def dispatch(self, action: ToolAction) -> Observation:
        """Run one action and return its observation.

        Raises
        ------
        StudyPlanError
            Only for non-recoverable errors (e.g. CalendarStoreUnavailable).
        """
        handler = self._handlers.get(action.tool_name)
        if handler is None:
            error = ValidationError(
                f"Unknown tool {action.tool_name!r}; available tools: {', '.join(ToolName)}"
            )
            return self._rejected(action, error)

        try:
            result = await handler(action.arguments)
        except StudyPlanError as exc:
            if not exc.recoverable:
                raise
            logger.info("Tool %s rejected: %s", action.tool_name, exc)
            return self._rejected(action, exc)
        return Observation(call_id=action.call_id, tool_name=action.tool_name, result=result)

    def record_failure(self, action: ToolAction, error: StudyPlanError) -> Observation:
        """Build the observation for an action that failed outside the handler (timeouts)."""
        if action.tool_name == ToolName.SCHEDULE_SESSION:
            try:
                self._cleared_slots.discard(parse_slot(action.arguments))
            except ValidationError:
                pass
        return self._rejected(action, error)

    @staticmethod
    def _rejected(action: ToolAction, error: StudyPlanError) -> Observation:
        return Observation(
            call_id=action.call_id,
            tool_name=action.tool_name,
            result=error.to_observation(),
            error=error.code,
        )

    # -- handlers -----------------------------------------------------------

    async def _get_busy_periods(self, arguments: dict[str, Any]) -> list[dict[str, Any]]:
        raw_limit = arguments.get("limit")
        limit = DEFAULT_BUSY_PERIOD_LIMIT if raw_limit is None else parse_int(raw_limit, "limit")
        periods = await self._surface.get_busy_periods(limit=limit)
        return [period.model_dump(mode="json") for period in periods]

    async def _get_conflicting_sessions(self, arguments: dict[str, Any]) -> list[dict[str, Any]]:
        sessions = await self._surface.get_conflicting_sessions()
        return [session.model_dump(mode="json") for session in sessions]

    async def _check_time_slot(self, arguments: dict[str, Any]) -> dict[str, Any]:
        slot = parse_slot(arguments)
        result = await self._surface.check_time_slot(slot.date, slot.start_time, slot.end_time)
        if result.has_conflict:
            self._cleared_slots.discard(slot)
        else:
            self._cleared_slots.add(slot)
        return result.model_dump(mode="json")

    async def _schedule_session(self, arguments: dict[str, Any]) -> dict[str, Any]:
        slot = parse_slot(arguments)
        raw_chapter = arguments.get("chapter_number", arguments.get("chapter_ref"))
        if raw_chapter is None:
            raise ValidationError("Missing required argument: chapter_number")
        chapter_ref = parse_int(raw_chapter, "chapter_number")
        raw_session = arguments.get("session_number")
        session_number = None if raw_session is None else parse_int(raw_session, "session_number")
        title = arguments.get("title")
        if title is not None and not isinstance(title, str):
            raise ValidationError(f"title must be a string, got {title!r}")
        topics = _parse_topics(arguments.get("topics"))

        if slot not in self._cleared_slots:
            raise PrecedenceError(
                f"No clean check_time_slot for {slot.date} "
                f"{slot.start_time:%H:%M}-{slot.end_time:%H:%M} in this run; "
                "call check_time_slot for this exact slot first"
            )

        try:
            session = await self._surface.schedule_session(
                slot.date,
                slot.start_time,
                slot.end_time,
                chapter_ref,
                title=title,
                topics=topics,
                session_number=session_number,
            )
        except ConflictError:
            self._cleared_slots.discard(slot)
            raise
        self._cleared_slots.discard(slot)
        self.committed.append(session)
        return {
            "success": True,
            "session": session.model_dump(mode="json"),
            "sessions_scheduled": len(self.committed),
        }
