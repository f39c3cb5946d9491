"""Error taxonomy shared by the engine, the roadmap service and the API."""

from typing import Optional


class WaypointError(Exception):
    """Base class for all Waypoint errors."""

    status_code = 500


class ValidationError(WaypointError):
    """A required field is missing or a value is out of range."""

    status_code = 400


class NotFoundError(WaypointError):
    """A referenced entity does not exist."""

    status_code = 404


class StoreError(WaypointError):
    """The underlying data store rejected an operation.

    The message of the original failure is passed through; ``operation`` and
    ``context`` identify what was being attempted (e.g. project or phase id).
    """

    def __init__(self, operation: str, message: str, context: Optional[dict] = None):
        self.operation = operation
        self.context = context or {}
        detail = ", ".join(f"{k}={v}" for k, v in self.context.items())
        super().__init__(f"{operation} failed ({detail}): {message}" if detail else f"{operation} failed: {message}")


class WatcherStateError(WaypointError):
    """The TODO watcher was used before it was initialized."""

    status_code = 409
