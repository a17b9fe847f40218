from __future__ import annotations

from enum import IntEnum
from typing import Any, Optional


class Status(IntEnum):
    """Exit status of a single task execution attempt."""

    # Exit code was not an integer
    INVALID_EXIT = -2
    # No exit code returned (callback returned None)
    NO_EXIT = -1
    OK = 0
    # Executing, no exit recorded yet
    RUNNING = 1
    # Failed to acquire the lock
    NO_LOCK = 2
    # Failed to start the execution
    NO_RUN = 3
    # Failed to release the lock or update the task row
    NO_RELEASE = 4
    # Unhandled exception inside the callback
    EXCEPTION = 5
    # Failure handled and reported by the callback itself
    ERROR = 6
    # The task has never run
    INITIAL_SCHEDULE = 100
    # The task has not finished; call it again a.s.a.p.
    WILL_RESUME = 123
    TIMEOUT = 124
    # The task row disappeared between selection and execution
    NO_TASK = 125
    # The task type is unknown
    NO_ROUTINE = 127

    @property
    def is_failure(self) -> bool:
        return self not in (Status.OK, Status.RUNNING, Status.WILL_RESUME, Status.INITIAL_SCHEDULE)

    def for_humans(self) -> str:
        return _DESCRIPTIONS[self]

    @classmethod
    def from_return(cls, value: Any) -> "Status":
        """Interpret whatever a task callback returned."""
        if value is None:
            return cls.NO_EXIT
        if isinstance(value, bool) or not isinstance(value, int):
            return cls.INVALID_EXIT
        try:
            return cls(value)
        except ValueError:
            return cls.INVALID_EXIT

    @classmethod
    def try_from(cls, value: Any) -> Optional["Status"]:
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return None


_DESCRIPTIONS = {
    Status.INVALID_EXIT: "Invalid exit code",
    Status.NO_EXIT: "No exit code",
    Status.OK: "OK",
    Status.RUNNING: "Running",
    Status.NO_LOCK: "Could not acquire lock",
    Status.NO_RUN: "Could not start",
    Status.NO_RELEASE: "Could not release lock",
    Status.EXCEPTION: "Unhandled exception",
    Status.ERROR: "Error",
    Status.INITIAL_SCHEDULE: "Never run",
    Status.WILL_RESUME: "Will resume",
    Status.TIMEOUT: "Timed out",
    Status.NO_TASK: "Task not found",
    Status.NO_ROUTINE: "Unknown task type",
}
