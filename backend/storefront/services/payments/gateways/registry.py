"""
Gateway registry.

The registry is built once at startup from settings and passed explicitly to
the checkout service, the reconciliation engine and the HTTP layer. Nothing
registers itself: a provider exists only if ``build_gateway_registry``
constructed its adapter.
"""

from typing import Iterable, Optional

from storefront.core.config import Settings
from storefront.core.logging import get_logger
from storefront.services.payments.gateways.base import (
    GatewayResult,
    InitiateRequest,
    InitiateResult,
    PaymentGateway,
    UnknownProviderError,
    VerifyRequest,
)
from storefront.services.payments.gateways.esewa import EsewaGateway
from storefront.services.payments.gateways.khalti import KhaltiGateway
from storefront.services.payments.gateways.stripe_checkout import StripeGateway

logger = get_logger(__name__)


class GatewayRegistry:
    """Maps provider names (case-insensitive) to adapters."""

    def __init__(self, adapters: Iterable[PaymentGateway]):
        self._adapters: dict[str, PaymentGateway] = {}
        for adapter in adapters:
            key = adapter.name.strip().lower()
            if key in self._adapters:
                raise ValueError(f"Duplicate gateway provider: {key}")
            self._adapters[key] = adapter

        logger.info("Gateway registry initialized", providers=self.providers())

    def get(self, provider: str) -> PaymentGateway:
        """
        Look up an adapter.

        Raises:
            UnknownProviderError: If no adapter is registered under ``provider``
        """
        adapter = self._adapters.get((provider or "").strip().lower())
        if adapter is None:
            raise UnknownProviderError(
                f"Unknown payment provider: {provider}",
                provider=provider,
                available=self.providers(),
            )
        return adapter

    def find(self, provider: str) -> Optional[PaymentGateway]:
        """Look up an adapter, returning None when it is not registered."""
        return self._adapters.get((provider or "").strip().lower())

    def providers(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, provider: str) -> bool:
        return self.find(provider) is not None

    async def initiate(self, provider: str, request: InitiateRequest) -> InitiateResult:
        return await self.get(provider).initiate(request)

    async def verify(self, provider: str, request: VerifyRequest) -> GatewayResult:
        return await self.get(provider).verify(request)

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()


def build_gateway_registry(settings: Settings) -> GatewayRegistry:
    """
    Construct every enabled and configured adapter.

    A provider whose flag is set but whose credentials are missing is
    skipped with a warning rather than failing startup.

    Args:
        settings: Application settings

    Returns:
        Registry holding the configured adapters
    """
    adapters: list[PaymentGateway] = []

    if settings.esewa_enabled:
        if settings.esewa_secret_key and settings.esewa_product_code:
            adapters.append(
                EsewaGateway(
                    product_code=settings.esewa_product_code,
                    secret_key=settings.esewa_secret_key,
                    success_url=settings.esewa_success_url,
                    failure_url=settings.esewa_failure_url,
                    test_mode=settings.esewa_test_mode,
                    verify_timeout=settings.gateway_verify_timeout_seconds,
                )
            )
        else:
            logger.warning("eSewa enabled without credentials, skipping")

    if settings.khalti_enabled:
        if settings.khalti_secret_key:
            adapters.append(
                KhaltiGateway(
                    secret_key=settings.khalti_secret_key,
                    return_url=settings.khalti_return_url,
                    website_url=settings.khalti_website_url,
                    test_mode=settings.khalti_test_mode,
                    initiate_timeout=settings.gateway_initiate_timeout_seconds,
                    verify_timeout=settings.gateway_verify_timeout_seconds,
                    max_retries=settings.gateway_max_retries,
                )
            )
        else:
            logger.warning("Khalti enabled without credentials, skipping")

    if settings.stripe_enabled:
        if settings.stripe_secret_key:
            adapters.append(
                StripeGateway(
                    api_key=settings.stripe_secret_key,
                    success_url=settings.stripe_success_url,
                    cancel_url=settings.stripe_cancel_url,
                    initiate_timeout=settings.gateway_initiate_timeout_seconds,
                    verify_timeout=settings.gateway_verify_timeout_seconds,
                    max_retries=settings.gateway_max_retries,
                )
            )
        else:
            logger.warning("Stripe enabled without credentials, skipping")

    return GatewayRegistry(adapters)
