"""
FastAPI Dependencies - Authentication, authorization and service wiring.

NO DICTIONARIES - All dependencies return typed objects.

Bearer tokens are issued by the account service; this service only verifies
them (HS256, shared secret).
"""

from collections.abc import Awaitable, Callable
from functools import lru_cache
from uuid import UUID

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from fulfillment.config import settings
from fulfillment.exceptions import AuthenticationError, AuthorizationError
from fulfillment.models.api import UserRole
from fulfillment.models.domain import Principal
from fulfillment.observability.logging import get_logger
from fulfillment.services.content_store import ContentStore
from fulfillment.services.demo_provider import DemoPaymentProvider
from fulfillment.services.notifications import dispatch_outbox
from fulfillment.services.payment_provider import PaymentProvider
from fulfillment.services.stripe_provider import StripeProvider

logger = get_logger(__name__)

# Bearer token scheme; missing headers are reported as 401 by get_current_user
bearer_scheme = HTTPBearer(auto_error=False)


def decode_principal(token: str) -> Principal:
    """
    Verify a bearer JWT and turn its claims into a Principal.

    Raises:
        AuthenticationError: bad signature, expired, or malformed claims
    """
    if not settings.jwt_secret:
        raise AuthenticationError("JWT_SECRET is not configured")

    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except jwt.PyJWTError as exc:
        logger.warning("bearer_token_rejected", error=str(exc))
        raise AuthenticationError("Invalid token") from exc

    try:
        user_id = UUID(str(claims["sub"]))
        role = UserRole(claims.get("role", UserRole.BUYER.value))
    except ValueError as exc:
        raise AuthenticationError("Invalid token claims") from exc

    return Principal(user_id=user_id, role=role, email=claims.get("email"))


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    """
    FastAPI dependency for the authenticated caller.

    Accepts: Authorization: Bearer {jwt}
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing bearer token")
    return decode_principal(credentials.credentials)


async def require_admin(principal: Principal = Depends(get_current_user)) -> Principal:
    """FastAPI dependency that only lets admins through."""
    if not principal.is_admin:
        logger.warning("admin_access_denied", user_id=str(principal.user_id))
        raise AuthorizationError(UserRole.ADMIN.value)
    return principal


@lru_cache(maxsize=1)
def get_payment_provider() -> PaymentProvider:
    """Stripe when a real secret key is configured, the demo gateway otherwise."""
    if settings.demo_mode:
        logger.info("payment_provider_selected", provider="demo")
        return DemoPaymentProvider()
    logger.info("payment_provider_selected", provider="stripe")
    return StripeProvider(
        api_key=settings.stripe_api_key,
        webhook_secret=settings.stripe_webhook_secret,
    )


def get_content_store() -> ContentStore:
    return ContentStore(settings.content_root)


def get_outbox_dispatch() -> Callable[[], Awaitable[int]]:
    """Callable that flushes the outbox; scheduled as a background task after commits."""
    return dispatch_outbox
