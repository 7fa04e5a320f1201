from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request, WebSocket, status
from sqlalchemy.orm import Session

from auth.security import InvalidTokenError, verify_token
from db.database import get_db
from db.models import AppUser


def _extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return None

    return token.strip()


def extract_token_from_request(request: Request) -> str | None:
    return _extract_bearer_token(request.headers.get("authorization"))


def extract_token_from_websocket(websocket: WebSocket) -> str | None:
    return _extract_bearer_token(websocket.headers.get("authorization")) or websocket.query_params.get(
        "access_token"
    )


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    request: Request,
    db: Annotated[Session, Depends(get_db)],
) -> AppUser:
    token = extract_token_from_request(request)
    if not token:
        raise _unauthorized("Missing Bearer token")

    try:
        claims = verify_token(token)
    except InvalidTokenError as exc:
        raise _unauthorized("Invalid authentication token") from exc

    user = db.get(AppUser, claims.user_id)
    if user is None:
        raise _unauthorized("Invalid authentication")

    return user


def require_admin(
    current_user: Annotated[AppUser, Depends(get_current_user)],
) -> AppUser:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )
    return current_user


class WebSocketAuthError(Exception):
    """Token was presented on the detection socket but did not resolve to a user."""


def resolve_websocket_user(websocket: WebSocket, db: Session) -> AppUser | None:
    """Anonymous sockets are allowed; a bad token is not."""
    token = extract_token_from_websocket(websocket)
    if not token:
        return None

    try:
        claims = verify_token(token)
    except InvalidTokenError as exc:
        raise WebSocketAuthError(str(exc)) from exc

    user = db.get(AppUser, claims.user_id)
    if user is None:
        raise WebSocketAuthError("Unknown user")
    return user
