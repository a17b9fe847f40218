from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException

from tickrunner.api.deps import get_container, require_api_token
from tickrunner.container import Container
from tickrunner.core.cron import to_utc_naive
from tickrunner.core.exceptions import InvalidCronExpression, TaskNotFound
from tickrunner.models.task import Task
from tickrunner.schemas.task import TaskCreate, TaskOut, TaskUpdate

router = APIRouter(prefix="/tasks", tags=["tasks"], dependencies=[Depends(require_api_token)])


def _as_utc_aware(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        # DB stores naive UTC; tag it so clients can interpret correctly
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _task_out(t: Task) -> TaskOut:
    return TaskOut(
        id=t.id,
        site_id=t.site_id,
        type=t.type,
        cron_expression=t.cron_expression,
        enabled=bool(t.enabled),
        priority=t.priority,
        last_exit_code=t.last_exit_code,
        status=t.status.for_humans(),
        last_execution=_as_utc_aware(t.last_execution),
        last_run_end=_as_utc_aware(t.last_run_end),
        next_execution=_as_utc_aware(t.next_execution),
        times_executed=t.times_executed,
        times_failed=t.times_failed,
        locked=t.locked_at is not None,
        params=t.params_bag().to_dict(),
        storage=t.storage_bag().to_dict(),
        created_at=_as_utc_aware(t.created_at),
        updated_at=_as_utc_aware(t.updated_at),
    )


def _check_type(container: Container, task_type: str) -> None:
    if not container.registry.has(task_type):
        raise HTTPException(status_code=400, detail=f"Unknown task type '{task_type}'")


@router.get("", response_model=List[TaskOut])
def list_tasks(
    site_id: Optional[int] = None,
    enabled: Optional[bool] = None,
    type: Optional[str] = None,
    container: Container = Depends(get_container),
):
    return [_task_out(t) for t in container.tasks.list(site_id=site_id, enabled=enabled, type=type)]


@router.get("/{task_id}", response_model=TaskOut)
def get_task(task_id: int, container: Container = Depends(get_container)):
    try:
        return _task_out(container.tasks.get(task_id))
    except TaskNotFound:
        raise HTTPException(status_code=404, detail="Task not found")


@router.post("", response_model=TaskOut)
def create_task(payload: TaskCreate, container: Container = Depends(get_container)):
    _check_type(container, payload.type)
    try:
        task = container.tasks.create(
            payload.type,
            payload.cron_expression,
            site_id=payload.site_id,
            enabled=payload.enabled,
            priority=payload.priority,
            params=payload.params,
            next_execution=to_utc_naive(payload.next_execution) if payload.next_execution else None,
        )
    except InvalidCronExpression as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _task_out(task)


@router.put("/{task_id}", response_model=TaskOut)
def update_task(task_id: int, payload: TaskUpdate, container: Container = Depends(get_container)):
    fields = payload.model_dump(exclude_unset=True)
    # explicit nulls mean "leave unchanged"
    fields = {k: v for k, v in fields.items() if v is not None}
    if "type" in fields:
        _check_type(container, fields["type"])
    if "next_execution" in fields:
        fields["next_execution"] = to_utc_naive(fields["next_execution"])
    try:
        task = container.tasks.update(task_id, **fields)
    except TaskNotFound:
        raise HTTPException(status_code=404, detail="Task not found")
    except InvalidCronExpression as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _task_out(task)


@router.delete("/{task_id}")
def delete_task(task_id: int, container: Container = Depends(get_container)):
    if not container.tasks.delete(task_id):
        raise HTTPException(status_code=404, detail="Task not found")
    return {"ok": True}


@router.post("/{task_id}/run", response_model=TaskOut)
def run_task_now(task_id: int, container: Container = Depends(get_container)):
    """Make the task due right away; the next tick picks it up."""
    try:
        return _task_out(container.tasks.run_now(task_id))
    except TaskNotFound:
        raise HTTPException(status_code=404, detail="Task not found")
