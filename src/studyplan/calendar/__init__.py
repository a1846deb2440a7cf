"""Calendar query surface, event store boundary and agent tool catalog."""

from studyplan.calendar.store import EventStore, PostgresEventStore, overlaps
from studyplan.calendar.surface import CalendarQuerySurface
from studyplan.calendar.tools import TOOL_CATALOG, ToolDispatcher, ToolName, ToolSpec

__all__ = [
    "TOOL_CATALOG",
    "CalendarQuerySurface",
    "EventStore",
    "PostgresEventStore",
    "ToolDispatcher",
    "ToolName",
    "ToolSpec",
    "overlaps",
]
