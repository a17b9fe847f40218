from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from tickrunner.api.deps import get_container
from tickrunner.container import Container
from tickrunner.schemas.task import TickOut

logger = logging.getLogger("webcron")

router = APIRouter(tags=["cron"])


@router.get("/cron", response_model=TickOut)
def web_cron(key: str = "", container: Container = Depends(get_container)):
    """Run one tick. For hosts that can only trigger an HTTP request every minute."""
    expected = container.settings.WEBCRON_KEY
    if not expected or not secrets.compare_digest(key, expected):
        raise HTTPException(status_code=403, detail="Invalid web cron key")

    try:
        res = container.runner.tick()
    except SQLAlchemyError as e:
        logger.exception("web cron tick failed")
        return JSONResponse(status_code=500, content={"ok": False, "error": f"storage error: {type(e).__name__}"})

    out = TickOut(
        ok=not res.any_failed,
        paused=res.paused,
        stuck_cleared=res.stuck_cleared,
        executed=res.executed,
        failed=res.failed,
        resumed=res.resumed,
        task_ids=[o.task_id for o in res.outcomes],
    )
    if res.any_failed:
        return JSONResponse(status_code=500, content=out.model_dump())
    return out
