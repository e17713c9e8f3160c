"""Application-wide exception hierarchy for Ad Observatory.

All custom exceptions subclass ``AdObservatoryError``, enabling consistent
error handling and structured logging across the application.

Hierarchy::

    AdObservatoryError
    ├── ExtractionError
    │   ├── NavigationError
    │   ├── ExtractionParseError
    │   └── StallError
    ├── PersistenceError
    ├── MissionError
    │   ├── MissionNotFoundError
    │   ├── DuplicateWorkerError
    │   └── WorkerTimeoutError
    ├── ScheduleError
    │   ├── ScheduleNotFoundError
    │   ├── InvalidCronExpressionError
    │   └── SchedulerExecutionError
    ├── InvalidLimitsError
    └── OwnershipError          (also a builtin ``PermissionError``)
"""

from __future__ import annotations


class AdObservatoryError(Exception):
    """Base class for all Ad Observatory exceptions.

    All application-specific exceptions inherit from this class so that
    callers can catch the entire hierarchy with a single ``except`` clause
    when needed.
    """


# ---------------------------------------------------------------------------
# Extraction exceptions
# ---------------------------------------------------------------------------


class ExtractionError(AdObservatoryError):
    """Base class for failures inside one extraction worker run."""


class NavigationError(ExtractionError):
    """Raised when the search page cannot be loaded, even with the degraded wait strategy.

    Fatal to the worker run that raised it.

    Args:
        message: Human-readable description of the failure.
        url: The URL that failed to load.
    """

    def __init__(self, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.url = url


class ExtractionParseError(ExtractionError):
    """Raised when a single record element cannot be read.

    Always swallowed and counted by the engine; never aborts a batch.
    """


class StallError(ExtractionError):
    """Raised when the page stops producing new records and the reload budget is spent.

    Not a failure: the engine catches it and ends the mission as completed
    with the records gathered so far.

    Args:
        message: Description of the stall.
        reloads: Number of reloads attempted before giving up.
    """

    def __init__(self, message: str, reloads: int = 0) -> None:
        super().__init__(message)
        self.reloads = reloads


# ---------------------------------------------------------------------------
# Persistence exceptions
# ---------------------------------------------------------------------------


class PersistenceError(AdObservatoryError):
    """Raised when the store rejects a write for a reason other than deduplication.

    The engine logs it and treats the record as not saved.
    """


# ---------------------------------------------------------------------------
# Mission exceptions
# ---------------------------------------------------------------------------


class MissionError(AdObservatoryError):
    """Base class for mission lifecycle errors.

    Args:
        message: Human-readable description.
        mission_id: String form of the affected mission id.
    """

    def __init__(self, message: str, mission_id: str | None = None) -> None:
        super().__init__(message)
        self.mission_id = mission_id


class MissionNotFoundError(MissionError):
    """Raised when a mission id does not exist in the store."""

    def __init__(self, mission_id: str) -> None:
        super().__init__(f"Mission '{mission_id}' not found", mission_id=mission_id)


class DuplicateWorkerError(MissionError):
    """Raised when a second worker is registered for a mission that already has one."""


class WorkerTimeoutError(MissionError):
    """Raised when a scheduled execution exceeds its wall-clock limit.

    Args:
        mission_id: String form of the mission that timed out.
        timeout: The limit that was exceeded, in seconds.
    """

    def __init__(self, mission_id: str, timeout: float) -> None:
        super().__init__(
            f"Mission '{mission_id}' exceeded {timeout:.0f}s execution limit",
            mission_id=mission_id,
        )
        self.timeout = timeout


# ---------------------------------------------------------------------------
# Scheduler exceptions
# ---------------------------------------------------------------------------


class ScheduleError(AdObservatoryError):
    """Base class for recurring-schedule errors."""


class ScheduleNotFoundError(ScheduleError):
    """Raised when a schedule id does not exist in the store."""

    def __init__(self, schedule_id: str) -> None:
        super().__init__(f"Schedule '{schedule_id}' not found")
        self.schedule_id = schedule_id


class InvalidCronExpressionError(ScheduleError):
    """Raised when a cron expression is not valid 5-field cron syntax.

    Args:
        expression: The rejected expression.
        reason: Parser message explaining the rejection.
    """

    def __init__(self, expression: str, reason: str | None = None) -> None:
        msg = f"Invalid cron expression: {expression!r}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)
        self.expression = expression


class SchedulerExecutionError(ScheduleError):
    """Raised when one scheduled mission attempt does not complete successfully.

    Triggers an exponential-backoff retry until the attempt cap is reached.

    Args:
        message: Description of the failed attempt.
        mission_id: String form of the mission the attempt created, if any.
        status: Terminal mission status observed, if any.
    """

    def __init__(
        self,
        message: str,
        mission_id: str | None = None,
        status: str | None = None,
    ) -> None:
        super().__init__(message)
        self.mission_id = mission_id
        self.status = status


# ---------------------------------------------------------------------------
# Validation / authorization exceptions
# ---------------------------------------------------------------------------


class InvalidLimitsError(AdObservatoryError):
    """Raised when ``max_records`` or ``daily_quota`` falls outside the allowed range."""


class OwnershipError(AdObservatoryError, PermissionError):
    """Raised when an owner acts on a mission or schedule it does not own.

    No state is mutated when this is raised.

    Args:
        resource: Kind of resource (``"mission"`` or ``"schedule"``).
        resource_id: String form of the resource id.
        owner_id: The requesting owner.
    """

    def __init__(self, resource: str, resource_id: str, owner_id: str) -> None:
        super().__init__(
            f"Owner '{owner_id}' may not modify {resource} '{resource_id}'"
        )
        self.resource = resource
        self.resource_id = resource_id
        self.owner_id = owner_id
