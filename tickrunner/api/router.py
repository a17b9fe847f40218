from fastapi import APIRouter

from tickrunner.api.routes import cron, health, tasks

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(cron.router)
api_router.include_router(tasks.router)
