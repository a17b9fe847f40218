from fastapi import APIRouter, Depends

from tickrunner.api.deps import get_container
from tickrunner.container import Container
from tickrunner.repositories.common import LAST_EXECUTION_KEY

router = APIRouter(tags=["health"])


@router.get("/health")
def health(container: Container = Depends(get_container)):
    return {
        "ok": True,
        "last_tick": container.common.get(LAST_EXECUTION_KEY),
        "paused": container.common.tasks_paused(),
    }
