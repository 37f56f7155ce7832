"""Shared FastAPI dependencies."""

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Header, Request

from magnetic.core.config import get_settings
from magnetic.core.exceptions import ForbiddenError, UnauthorizedError
from magnetic.core.logging import bind_user_id
from magnetic.core.security import bearer_token, load_access_token, secrets_match
from magnetic.models.user import User


async def get_current_user(request: Request) -> User:
    """Dependency: load the signed bearer token and return User."""
    token = bearer_token(request.headers.get("Authorization"))
    if not token:
        raise UnauthorizedError("Not authenticated")
    payload = load_access_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    try:
        user = await User.get(PydanticObjectId(user_id))
    except InvalidId:
        user = None
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_user_id(str(user.id))
    return user


async def require_admin(request: Request) -> User:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if getattr(user, "role", "user") != "admin":
        raise ForbiddenError("Admin only")
    return user


async def require_cron_secret(
    authorization: str | None = Header(None),
    x_cron_secret: str | None = Header(None, alias="X-Cron-Secret"),
) -> None:
    """Dependency for scheduler endpoints: `Authorization: Bearer <secret>` or X-Cron-Secret.

    A bearer token, when sent, must be the cron secret. With no secret configured
    every call is refused.
    """
    secret = get_settings().cron_secret
    token = bearer_token(authorization)
    if token is not None:
        if not secrets_match(token, secret):
            raise UnauthorizedError("Invalid cron credentials")
        return
    if not secrets_match(x_cron_secret, secret):
        raise UnauthorizedError("Invalid cron credentials")


async def require_cron_header(x_cron_secret: str | None = Header(None, alias="X-Cron-Secret")) -> None:
    """Dependency: X-Cron-Secret is mandatory and must match the configured secret."""
    if not secrets_match(x_cron_secret, get_settings().cron_secret):
        raise UnauthorizedError("Invalid cron credentials")
