class TickrunnerError(Exception):
    pass


class InvalidCronExpression(TickrunnerError, ValueError):
    def __init__(self, expression: str, reason: str = ""):
        self.expression = expression
        msg = f"Invalid CRON expression '{expression}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnknownTaskType(TickrunnerError, LookupError):
    def __init__(self, task_type: str):
        self.task_type = task_type
        super().__init__(f"Unknown task type '{task_type}'")


class TaskNotFound(TickrunnerError, LookupError):
    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task #{task_id} not found")
