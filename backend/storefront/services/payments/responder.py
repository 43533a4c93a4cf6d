"""
Outcome responder.

Maps a reconciliation outcome onto the page a browser lands on after a
gateway redirect: a small HTML document that opens the mobile app through
its deep link and falls back to the web frontend. The same module renders
the auto-submitting form used to (re)start an eSewa payment.
"""

from pathlib import Path
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from fastapi.responses import HTMLResponse
from jinja2 import Environment, FileSystemLoader, TemplateError, select_autoescape

from storefront.core.logging import get_logger
from storefront.services.payments.reconciliation import (
    AttemptNotFound,
    ReconcileResult,
    Reconciled,
)

logger = get_logger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "templates"

RESULTS = frozenset({"success", "failed", "pending"})
FALLBACK_DELAY_MS = 1200

REASON_CODES = frozenset(
    {
        "missing_data",
        "invalid_payload",
        "missing_reference",
        "invalid_total_amount",
        "payment_not_found",
        "bad_signature",
        "status_check_failed",
        "gateway_terminal",
        "already_paid",
        "lookup_failed",
        "internal_error",
    }
)

OUTCOME_HEADERS = {
    "Cache-Control": "no-store, max-age=0",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
}

_TITLES = {
    "success": "Payment successful",
    "failed": "Payment failed",
    "pending": "Payment processing",
}


class OutcomeResponder:
    """
    Renders payment outcome pages.

    Attributes:
        frontend_url: Web fallback base, without trailing slash
        deep_link_scheme: Mobile app URL scheme
    """

    def __init__(
        self,
        frontend_url: str,
        deep_link_scheme: str,
        template_dir: Optional[Path] = None,
    ):
        self.frontend_url = frontend_url.rstrip("/")
        self.deep_link_scheme = deep_link_scheme.rstrip(":/")
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir or TEMPLATE_DIR)),
            autoescape=select_autoescape(["html", "xml"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

        logger.info(
            "OutcomeResponder initialized",
            frontend_url=self.frontend_url,
            deep_link_scheme=self.deep_link_scheme,
        )

    @staticmethod
    def normalize(result: Optional[str]) -> str:
        """Collapse anything outside success/failed/pending to pending."""
        value = (result or "").strip().lower()
        return value if value in RESULTS else "pending"

    def build_query(self, result: Optional[str], **context: Any) -> str:
        """
        Build the outcome query string.

        Keys are emitted in a fixed order and empty values are omitted.
        """
        params: dict[str, str] = {"result": self.normalize(result)}
        for key in ("order_id", "payment_id", "provider", "ref", "gateway_state", "reason"):
            value = context.get(key)
            if value is None:
                continue
            value = str(value).strip()
            if value:
                params[key] = value
        return urlencode(params)

    def deep_link(self, query: str) -> str:
        return f"{self.deep_link_scheme}://payments/return?{query}"

    def web_url(self, query: str) -> str:
        return f"{self.frontend_url}/payments/return?{query}"

    def _html(self, template_name: str, status_code: int = 200, **context: Any) -> HTMLResponse:
        template = self.env.get_template(template_name)
        return HTMLResponse(
            content=template.render(**context),
            status_code=status_code,
            headers=dict(OUTCOME_HEADERS),
            media_type="text/html; charset=utf-8",
        )

    def render(
        self,
        result: Optional[str],
        order_id: Any = None,
        payment_id: Any = None,
        provider: Optional[str] = None,
        ref: Optional[str] = None,
        gateway_state: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> HTMLResponse:
        """
        Render the outcome page for a browser.

        Always answers 200; the outcome travels in the redirect query.
        """
        outcome = self.normalize(result)
        if reason is not None and reason not in REASON_CODES:
            logger.warning("Unknown outcome reason code", reason=reason)

        query = self.build_query(
            outcome,
            order_id=order_id,
            payment_id=payment_id,
            provider=provider,
            ref=ref,
            gateway_state=gateway_state,
            reason=reason,
        )
        deep_link = self.deep_link(query)
        web_url = self.web_url(query)

        logger.info(
            "Rendering payment outcome",
            result=outcome,
            provider=provider,
            payment_id=str(payment_id) if payment_id else None,
            reason=reason,
        )
        try:
            return self._html(
                "outcome.html",
                result=outcome,
                title=_TITLES[outcome],
                deep_link=deep_link,
                web_url=web_url,
                fallback_delay_ms=FALLBACK_DELAY_MS,
            )
        except TemplateError as e:
            logger.error(
                "Outcome template rendering failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            return HTMLResponse(
                content=f'<!doctype html><meta http-equiv="refresh" content="0;url={web_url}">',
                headers=dict(OUTCOME_HEADERS),
                media_type="text/html; charset=utf-8",
            )

    def from_result(
        self,
        outcome: ReconcileResult,
        reason: Optional[str] = None,
    ) -> HTMLResponse:
        """
        Render a reconciliation result.

        ``reason`` overrides the result's own reason code when given, except
        that a settled success always reports its own reason.
        """
        if isinstance(outcome, AttemptNotFound):
            return self.render(
                "failed",
                provider=outcome.provider,
                ref=outcome.reference,
                reason=reason or outcome.reason,
            )

        if not isinstance(outcome, Reconciled):
            raise TypeError(f"Cannot render outcome of type {type(outcome).__name__}")

        effective_reason = outcome.reason if outcome.success else (reason or outcome.reason)
        return self.render(
            outcome.status,
            order_id=outcome.order_id,
            payment_id=outcome.payment_id,
            provider=outcome.provider,
            ref=outcome.reference,
            gateway_state=outcome.gateway_state,
            reason=effective_reason,
        )

    def render_auto_post_form(self, action: str, fields: Mapping[str, Any]) -> HTMLResponse:
        """Render a form that POSTs ``fields`` to ``action`` as soon as it loads."""
        logger.info("Rendering gateway auto-post form", action=action, field_count=len(fields))
        return self._html(
            "esewa_form.html",
            action=action,
            fields={key: str(value) for key, value in fields.items()},
        )
