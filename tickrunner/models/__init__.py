from tickrunner.models.base import Base
from tickrunner.models.queue import CommonValue, QueueEntry
from tickrunner.models.task import Task

__all__ = [
    "Base",
    "Task",
    "QueueEntry",
    "CommonValue",
]
