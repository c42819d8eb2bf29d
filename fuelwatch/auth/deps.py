import hmac

from fastapi import Header

from fuelwatch.core.errors import AuthorizationError
from fuelwatch.core.settings import settings


def secret_matches(provided: str | None, expected: str) -> bool:
    """Constant-time compare. An unset secret never matches."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


async def require_admin_secret(x_admin_secret: str | None = Header(default=None)) -> None:
    if not secret_matches(x_admin_secret, settings.ADMIN_SECRET):
        raise AuthorizationError("Invalid admin secret")


async def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    if not secret_matches(x_cron_secret, settings.CRON_SECRET):
        raise AuthorizationError("Invalid cron secret")


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # set by the identity layer in front of this service
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise AuthorizationError("Missing user identity")
    return user_id
