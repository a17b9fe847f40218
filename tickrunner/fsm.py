"""
Resumable finite state machine support.

A long-running task callback keeps an explicit state name (one of the
ordered `STATES`) plus whatever cursor data it needs in its storage bag.
Every invocation performs exactly one bounded step, persists itself and
returns WILL_RESUME, until the last state is reached and it returns OK.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, ClassVar, Dict, Optional, Sequence, Tuple

from tickrunner.core.kvbag import KVBag
from tickrunner.core.status import Status
from tickrunner.core.timer import Timer


# Safety cap for loops that keep re-invoking a resumable step in-process.
DEFAULT_MAX_ITERATIONS = 10000


class ResumableFSM:
    STATES: ClassVar[Sequence[str]] = ()
    # attributes saved to / restored from storage next to the state name
    PERSISTED: ClassVar[Sequence[str]] = ()

    def __init__(self, logger: Optional[logging.Logger] = None):
        if not self.STATES:
            raise TypeError(f"{type(self).__name__} defines no STATES")
        self.fsm_state: Optional[str] = None
        self.logger = logger or logging.getLogger("fsm")

    @property
    def current_state(self) -> str:
        if self.fsm_state not in self.STATES:
            self.fsm_state = self.STATES[0]
        return self.fsm_state

    def advance_state(self) -> str:
        idx = list(self.STATES).index(self.current_state)
        self.fsm_state = self.STATES[min(idx + 1, len(self.STATES) - 1)]
        return self.fsm_state

    def execute(self) -> bool:
        """Run one step of the current state. True while there is more work to do."""
        state = self.current_state
        handler = getattr(self, f"step_{state}", None)
        if handler is None:
            raise NotImplementedError(f"{type(self).__name__} has no handler for state '{state}'")
        handler()
        return state != self.STATES[-1]

    def dump(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"fsmState": self.fsm_state}
        for name in self.PERSISTED:
            data[name] = getattr(self, name)
        return data

    def restore(self, data: Optional[Dict[str, Any]]) -> None:
        data = data or {}
        state = data.get("fsmState")
        self.fsm_state = state if state in self.STATES else None
        for name in self.PERSISTED:
            if name in data:
                setattr(self, name, data[name])

    def step_into(self, storage: KVBag, key: str = "fsm") -> Status:
        """
        The task callback side of the contract: restore from `storage[key]`,
        run one step, save back, report WILL_RESUME or OK.
        """
        self.restore(storage.get(key))
        more = self.execute()
        if more:
            storage.set(key, self.dump())
            return Status.WILL_RESUME
        storage.remove(key)
        return Status.OK


def run_until_settled(
    step: Callable[[], Any],
    *,
    timer: Optional[Timer] = None,
    max_iterations: Optional[int] = DEFAULT_MAX_ITERATIONS,
    keep_going: Optional[Callable[[], bool]] = None,
) -> Tuple[Status, int]:
    """
    Re-invoke `step` while it answers WILL_RESUME.

    Stops on any other status, when `timer` runs out, after
    `max_iterations` calls or when `keep_going()` says no. Returns the
    last status and the number of calls made.
    """
    iterations = 0
    while True:
        status = Status.from_return(step())
        iterations += 1
        if status != Status.WILL_RESUME:
            return status, iterations
        if max_iterations is not None and iterations >= max_iterations:
            break
        if timer is not None and timer.expired():
            break
        if keep_going is not None and not keep_going():
            break
    return Status.WILL_RESUME, iterations
