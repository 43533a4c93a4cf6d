"""
Payment gateway contract shared by every provider adapter.

An adapter translates the generic initiate/verify contract into one
provider's wire protocol. Adapters know nothing about orders, carts or the
database: they receive amounts and references, talk to the provider and
return a ``GatewayResult``. The result's ``success``/``terminal``/``state``
triple is the only gateway output business logic reads; ``raw`` is kept for
the audit log.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from storefront.core.logging import get_logger

logger = get_logger(__name__)


class GatewayError(Exception):
    """Base exception for gateway adapter errors."""

    def __init__(self, message: str, provider: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.provider = provider
        self.context = context


class GatewayTransportError(GatewayError):
    """Timeout, connection failure, 5xx or undecodable response."""

    pass


class GatewayResponseError(GatewayError):
    """Well-formed rejection from the provider."""

    pass


class GatewayConfigurationError(GatewayError):
    """Adapter is missing credentials or endpoints."""

    pass


class UnknownProviderError(GatewayError):
    """No adapter is registered under the requested name."""

    pass


class InitiateRequest(BaseModel):
    """Generic payment initiation request."""

    payment_id: uuid.UUID
    order_id: uuid.UUID
    order_number: str
    amount_cents: int = Field(gt=0)
    currency: str = "NPR"
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None


class InitiateResult(BaseModel):
    """
    What the client needs to hand the user to the provider.

    ``payment_url`` is a redirect target, or a form action when
    ``form_fields`` is non-empty.
    """

    provider: str
    reference: str
    payment_url: Optional[str] = None
    form_fields: dict[str, str] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)


class VerifyRequest(BaseModel):
    """
    Generic verification request.

    ``amount_cents`` and ``currency`` come from the stored attempt, never
    from the untrusted redirect.
    """

    reference: str
    amount_cents: int
    currency: str = "NPR"
    data: dict[str, Any] = Field(default_factory=dict)


class GatewayResult(BaseModel):
    """Normalized verification result."""

    model_config = ConfigDict(frozen=True)

    success: bool
    terminal: bool
    state: str
    reference: Optional[str] = None
    raw: dict[str, Any] = Field(default_factory=dict)


def format_major_units(amount_cents: int) -> str:
    """Render minor units as a two-decimal major unit string (``1050`` -> ``"10.50"``)."""
    return f"{amount_cents // 100}.{amount_cents % 100:02d}"


class PaymentGateway(ABC):
    """Capability interface implemented by each provider adapter."""

    name: str = ""

    @abstractmethod
    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        """
        Start a payment with the provider.

        Raises:
            GatewayError: If the provider cannot be reached or rejects the request
        """

    @abstractmethod
    async def verify(self, request: VerifyRequest) -> GatewayResult:
        """
        Ask the provider for the authoritative state of an attempt.

        Raises:
            GatewayError: If the state cannot be determined
        """

    @abstractmethod
    def extract_reference(self, params: Mapping[str, Any]) -> Optional[str]:
        """Read this provider's reference field from untrusted input."""

    async def aclose(self) -> None:
        """Release adapter resources."""
        return None


class HttpGateway(PaymentGateway):
    """
    Base for adapters that speak HTTP through httpx.

    Initiation retries connection-establishment failures with exponential
    backoff. Verification never retries: a failed status check is reported
    as a transport error and the caller treats the attempt as pending.
    """

    def __init__(
        self,
        base_url: str,
        initiate_timeout: float = 15.0,
        verify_timeout: float = 10.0,
        max_retries: int = 2,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        backoff_multiplier: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.initiate_timeout = initiate_timeout
        self.verify_timeout = verify_timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self._transport = transport

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate exponential backoff delay.

        Args:
            attempt: Current retry attempt number (0-indexed)

        Returns:
            Backoff delay in seconds
        """
        return min(
            self.initial_backoff * (self.backoff_multiplier**attempt),
            self.max_backoff,
        )

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        url: str,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        async with self._client(timeout) as client:
            return await client.request(method, url, **kwargs)

    async def _request_once(
        self,
        operation: str,
        method: str,
        url: str,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a single request, mapping httpx failures to transport errors.

        Raises:
            GatewayTransportError: On timeout or network failure
        """
        try:
            return await self._send(operation, method, url, timeout, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(
                "Gateway request failed",
                provider=self.name,
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise GatewayTransportError(
                f"{self.name} {operation} request failed: {e}",
                provider=self.name,
                operation=operation,
            ) from e

    async def _request_with_retry(
        self,
        operation: str,
        method: str,
        url: str,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request, retrying only when the connection could not be made.

        A request that may have reached the provider is never replayed.

        Raises:
            GatewayTransportError: If every attempt failed
        """
        for attempt in range(self.max_retries + 1):
            try:
                response = await self._send(operation, method, url, timeout, **kwargs)
                if attempt > 0:
                    logger.info(
                        "Gateway request succeeded after retry",
                        provider=self.name,
                        operation=operation,
                        attempt=attempt,
                    )
                return response
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                if attempt >= self.max_retries:
                    logger.error(
                        "Gateway connection failed after all retries",
                        provider=self.name,
                        operation=operation,
                        max_retries=self.max_retries,
                        error=str(e),
                    )
                    raise GatewayTransportError(
                        f"{self.name} {operation} connection failed",
                        provider=self.name,
                        operation=operation,
                    ) from e

                backoff = self._calculate_backoff(attempt)
                logger.warning(
                    "Gateway connection error, retrying",
                    provider=self.name,
                    operation=operation,
                    attempt=attempt,
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
            except httpx.HTTPError as e:
                logger.warning(
                    "Gateway request failed",
                    provider=self.name,
                    operation=operation,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise GatewayTransportError(
                    f"{self.name} {operation} request failed: {e}",
                    provider=self.name,
                    operation=operation,
                ) from e

        raise GatewayTransportError(
            f"{self.name} {operation} failed", provider=self.name, operation=operation
        )

    def _decode_json(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        """
        Decode a JSON object body.

        Raises:
            GatewayTransportError: If the body is not a JSON object
        """
        try:
            body = response.json()
        except ValueError as e:
            raise GatewayTransportError(
                f"{self.name} {operation} returned an undecodable body",
                provider=self.name,
                operation=operation,
                http_status=response.status_code,
                body=response.text[:500],
            ) from e
        if not isinstance(body, dict):
            raise GatewayTransportError(
                f"{self.name} {operation} returned an unexpected body",
                provider=self.name,
                operation=operation,
                http_status=response.status_code,
            )
        return body
