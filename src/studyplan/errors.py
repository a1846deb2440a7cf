"""Error taxonomy for the scheduling agent.

Recoverable errors (validation, conflicts, precedence, provider hiccups,
malformed turns) are turned into model-visible observations or no-progress
turns by the executor. Fatal errors (pricing failures, an unreachable calendar
store, non-retryable provider errors) stop the run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from studyplan.models import PlanResult


class StudyPlanError(Exception):
    """Base class for all scheduling-agent errors."""

    #: Short machine-readable code surfaced in observations.
    code = "error"
    #: Whether the executor resolves this error inside the loop.
    recoverable = True

    def to_observation(self) -> dict[str, Any]:
        """Render this error as a tool observation payload."""
        return {"error": self.code, "message": str(self)}


class ValidationError(StudyPlanError):
    """Malformed or out-of-range slot / request input."""

    code = "validation_error"


class ConflictError(StudyPlanError):
    """The target slot overlaps an existing event at commit time."""

    code = "conflict_error"

    def __init__(self, message: str, conflicting_event: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.conflicting_event = conflicting_event

    def to_observation(self) -> dict[str, Any]:
        payload = super().to_observation()
        if self.conflicting_event is not None:
            payload["conflicting_event"] = self.conflicting_event
        return payload


class PrecedenceError(StudyPlanError):
    """schedule_session was attempted without a preceding clean check."""

    code = "precedence_error"


class ProviderTimeoutError(StudyPlanError):
    """A provider or tool call exceeded its timeout."""

    code = "timeout"


class ProviderRequestError(StudyPlanError):
    """The provider answered with an HTTP error."""

    code = "provider_error"

    def __init__(self, message: str, *, status_code: int, retryable: bool) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    @property
    def recoverable(self) -> bool:  # type: ignore[override]
        return self.retryable


class MalformedTurnError(StudyPlanError):
    """A provider response could not be parsed into valid actions."""

    code = "malformed_turn"


class PricingComputationError(StudyPlanError):
    """A turn cannot be priced (unpriced model or zero baseline cost)."""

    code = "pricing_error"
    recoverable = False


class CalendarStoreUnavailable(StudyPlanError):
    """The calendar event store cannot be reached."""

    code = "calendar_store_unavailable"
    recoverable = False


class AgentRunFailed(StudyPlanError):
    """Raised by the executor when a run ends in the FAILED state.

    ``result`` carries everything accumulated before the failure, including
    sessions that were already committed (they are never rolled back).
    """

    code = "agent_run_failed"
    recoverable = False

    def __init__(self, cause: StudyPlanError, result: PlanResult) -> None:
        super().__init__(f"Agent run failed: {cause}")
        self.cause = cause
        self.result = result
