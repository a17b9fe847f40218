from typing import Optional

from fastapi import FastAPI

from tickrunner.api.router import api_router
from tickrunner.container import Container, build_container


def create_app(container: Optional[Container] = None) -> FastAPI:
    """
    ASGI entrypoint:
      uvicorn tickrunner.api.main:create_app --factory
    """
    container = container or build_container()
    app = FastAPI(title=container.settings.APP_NAME)
    app.state.container = container
    app.include_router(api_router)
    return app
