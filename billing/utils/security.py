from __future__ import annotations

import secrets

from fastapi import HTTPException, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from billing.config import Settings

_bearer_scheme = HTTPBearer(auto_error=False, scheme_name="BearerAuth")


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def verify_bearer_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer_scheme),
) -> None:
    """Validate Bearer token matches configured API token."""

    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )
    token = credentials.credentials.strip()
    if not token or not secrets.compare_digest(token, _settings(request).api_bearer_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def verify_admin_key(cfg: Settings, provided: str | None) -> None:
    """Validate the admin key sent in an admin request body."""

    # An unset admin key disables the admin surface entirely.
    if not cfg.admin_key or not provided or not secrets.compare_digest(provided, cfg.admin_key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
