"""Prompt text for the scheduling agent.

The opening message describes the request only. The calendar itself never
goes into the prompt; the model discovers it through the tools.
"""

from __future__ import annotations

from studyplan.models import SchedulingRequest, TimeOfDay, Weekday, distribute_sessions

MALFORMED_TURN_NOTICE = (
    "Your previous response could not be parsed into valid tool calls ({detail}). "
    "Reply again using the provided tools with JSON-object arguments."
)

PROVIDER_TIMEOUT_NOTICE = (
    "The previous request timed out before you responded. Continue scheduling "
    "from where you left off."
)

PROVIDER_ERROR_NOTICE = (
    "The previous request failed with a transient error ({detail}). Continue "
    "scheduling from where you left off."
)


def _format_days(request: SchedulingRequest) -> str:
    if not request.preferred_days:
        return "any day"
    return ", ".join(day.value.capitalize() for day in Weekday if day in request.preferred_days)


def _format_times(request: SchedulingRequest) -> str:
    if not request.preferred_times:
        return "any time between 08:00 and 22:00"
    parts = []
    for part in TimeOfDay:
        if part in request.preferred_times:
            start, end = part.window
            parts.append(f"{part.value} ({start:%H:%M}-{end:%H:%M})")
    return ", ".join(parts)


def build_opening_message(request: SchedulingRequest) -> str:
    """Render the first user message of a scheduling run."""
    counts = distribute_sessions(request.chapters, request.target_session_count)
    chapter_lines = []
    for chapter, count in zip(request.chapters, counts, strict=True):
        line = f"  {chapter.chapter_number}. {chapter.title} ({count} session(s))"
        if chapter.topics:
            line += f" - topics: {', '.join(chapter.topics)}"
        chapter_lines.append(line)

    return "\n".join(
        [
            f"Schedule {request.target_session_count} study session(s) of "
            f"{request.session_duration_minutes} minutes each for "
            f"{request.subject_name} ({request.grade_name}).",
            "",
            f"Date range: {request.date_range_start.isoformat()} to "
            f"{request.date_range_end.isoformat()} (inclusive)",
            f"Preferred days: {_format_days(request)}",
            f"Preferred times: {_format_times(request)}",
            "",
            "Chapters, in study order:",
            *chapter_lines,
            "",
            "How to work:",
            "1. First call get_busy_periods and get_conflicting_sessions. Do not "
            "schedule anything before you have seen both results.",
            "2. Prefer the least busy days and the preferred days and times. Spread "
            "sessions across the whole date range instead of clustering them.",
            "3. Cover chapters in order, finishing one chapter's sessions before "
            "starting the next. Skip chapters that already have sessions.",
            "4. Before every schedule_session call, call check_time_slot for exactly "
            "the same date, start_time and end_time. If it reports a conflict, pick "
            "a different slot and check again.",
            "5. When all sessions are scheduled, or no more can be placed, reply "
            "with a short summary and no tool calls.",
        ]
    )
