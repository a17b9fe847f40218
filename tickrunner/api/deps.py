import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from tickrunner.container import Container

bearer_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> Container:
    return request.app.state.container


def require_api_token(
    container: Container = Depends(get_container),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> None:
    expected = container.settings.API_TOKEN
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not expected:
        # no token configured: the admin API stays closed
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task API is disabled")
    if credentials is None or not secrets.compare_digest(credentials.credentials, expected):
        raise credentials_exception
