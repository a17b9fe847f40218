from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from tickrunner.core.exceptions import UnknownTaskType
from tickrunner.core.kvbag import KVBag

# callback(storage, params) -> Status
TaskCallback = Callable[[KVBag, KVBag], Any]


@dataclass(frozen=True)
class TaskType:
    name: str
    callback: TaskCallback
    description: str = ""


def _key(task_type: str) -> str:
    return (task_type or "").strip().lower()


class TaskRegistry:
    """
    Maps a task type string to its callback.

    Populated once at bootstrap; afterwards it is only read, and reads of
    the underlying dict need no locking.
    """

    def __init__(self) -> None:
        self._types: Dict[str, TaskType] = {}
        self._write_lock = threading.Lock()

    def register(self, task_type: str, callback: TaskCallback, *, description: str = "") -> None:
        key = _key(task_type)
        if not key:
            raise ValueError("Registering a task callback requires a non-empty task type")
        if not callable(callback):
            raise TypeError(f"Task callback for '{key}' is not callable")
        with self._write_lock:
            self._types[key] = TaskType(name=key, callback=callback, description=description)

    def task(self, task_type: str, *, description: str = "") -> Callable[[TaskCallback], TaskCallback]:
        """Decorator form of `register`."""

        def decorator(fn: TaskCallback) -> TaskCallback:
            self.register(task_type, fn, description=description)
            return fn

        return decorator

    def remove(self, task_type: str) -> None:
        with self._write_lock:
            self._types.pop(_key(task_type), None)

    def has(self, task_type: str) -> bool:
        return _key(task_type) in self._types

    def resolve(self, task_type: str) -> TaskCallback:
        entry = self._types.get(_key(task_type))
        if entry is None:
            raise UnknownTaskType(task_type)
        return entry.callback

    def describe(self, task_type: str) -> str:
        entry = self._types.get(_key(task_type))
        if entry is None:
            return task_type
        return entry.description or entry.name

    def types(self) -> List[str]:
        return sorted(self._types)
