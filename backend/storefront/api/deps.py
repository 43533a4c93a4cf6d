"""
FastAPI dependencies for authentication and service wiring.

Shoppers authenticate with a bearer JWT whose ``sub`` claim is their user
id; user storage lives elsewhere, so the id is trusted once the token
verifies. Services are built per request around the gateway registry and
session factory that the application lifespan stores on ``app.state``.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import Settings, get_settings
from storefront.core.logging import get_logger, set_user_id
from storefront.core.security import TokenError, get_token_user_id
from storefront.database.connection import get_db, get_session_factory
from storefront.services.checkout.service import CheckoutService
from storefront.services.payments.gateways.registry import GatewayRegistry
from storefront.services.payments.reconciliation import ReconciliationEngine
from storefront.services.payments.responder import OutcomeResponder

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> UUID:
    """
    Validate the bearer token and return the caller's user id.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "message": "Could not validate credentials",
            "code": "UNAUTHORIZED",
            "context": {},
        },
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        user_id = get_token_user_id(credentials.credentials)
    except TokenError as e:
        logger.warning(
            "Authentication failed: Token rejected",
            code=e.code,
            error=str(e),
        )
        raise credentials_exception

    set_user_id(str(user_id))
    return user_id


def get_app_settings() -> Settings:
    return get_settings()


def get_app_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    """Session factory created at startup, or the process-wide default."""
    factory = getattr(request.app.state, "session_factory", None)
    return factory if factory is not None else get_session_factory()


def get_gateway_registry(request: Request) -> GatewayRegistry:
    """
    Gateway registry built at startup.

    Raises:
        HTTPException: 503 if the application has not finished starting
    """
    registry = getattr(request.app.state, "gateway_registry", None)
    if registry is None:
        logger.error("Gateway registry requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "message": "Payment gateways are not available",
                "code": "GATEWAYS_UNAVAILABLE",
                "context": {},
            },
        )
    return registry


SettingsDep = Annotated[Settings, Depends(get_app_settings)]
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_app_session_factory)]
Registry = Annotated[GatewayRegistry, Depends(get_gateway_registry)]


def get_checkout_service(
    session_factory: SessionFactory,
    registry: Registry,
    settings: SettingsDep,
) -> CheckoutService:
    return CheckoutService(session_factory, registry, settings)


def get_reconciliation_engine(
    session_factory: SessionFactory,
    registry: Registry,
    settings: SettingsDep,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        session_factory,
        registry,
        verify_timeout=settings.gateway_verify_timeout_seconds,
        cart_ttl_days=settings.cart_ttl_days,
    )


def get_outcome_responder(request: Request, settings: SettingsDep) -> OutcomeResponder:
    """Outcome responder built at startup, created on first use when startup did not run."""
    responder = getattr(request.app.state, "outcome_responder", None)
    if responder is None:
        responder = OutcomeResponder(settings.frontend_url, settings.app_deep_link_scheme)
        request.app.state.outcome_responder = responder
    return responder


CurrentUserId = Annotated[UUID, Depends(get_current_user_id)]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
Checkout = Annotated[CheckoutService, Depends(get_checkout_service)]
Reconciler = Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)]
Responder = Annotated[OutcomeResponder, Depends(get_outcome_responder)]
