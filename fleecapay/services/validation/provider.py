"""Fleeca Bank API client: token validation and payment URL generation."""

import hmac
import re
from time import perf_counter

import httpx
from pydantic import ValidationError

from fleecapay.common.config import settings
from fleecapay.common.errors import (
    AuthKeyMismatch,
    InvalidFormat,
    MalformedResponse,
    ProviderRateLimited,
    TokenNotFound,
    TransportError,
    UnexpectedStatus,
)
from fleecapay.common.logging import logger, mask_token
from fleecapay.common.metrics import provider_latency_seconds, provider_requests_total
from fleecapay.common.tracing import tracer
from fleecapay.services.validation.schemas import ValidationResult


TOKEN_PATTERN = re.compile(r"[A-Za-z0-9_-]+")
# Type 0 is the standard transaction type of the gateway API.
TRANSACTION_TYPE = 0
MAX_DIAGNOSTIC_BODY = 2000


class ProviderClient:
    """Wraps the provider's token-validation endpoint and classifies responses."""

    def __init__(
        self,
        api_key: str,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        http_client: httpx.Client | None = None,
        client_version: str | None = None,
        service_name: str | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = (base_url or settings.provider_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.provider_timeout_seconds
        self.http_client = http_client
        self.user_agent = f"Fleeca-Reconciler/{client_version or settings.client_version}"
        self.service_name = service_name or settings.service_name

    def validation_url(self, token: str, strict: bool) -> str:
        url = f"{self.base_url}/gateway_token/{token}"
        return f"{url}/strict" if strict else url

    def payment_url(self, amount) -> str | None:
        """Build the customer redirect URL; None when no API key is configured."""

        if not self.api_key:
            logger.error("payment_url_missing_api_key")
            return None
        amount = max(1, int(amount))
        return f"{self.base_url}/gateway/{self.api_key}/{TRANSACTION_TYPE}/{amount}/"

    def _get(self, url: str) -> httpx.Response:
        headers = {"User-Agent": self.user_agent}
        if self.http_client is not None:
            return self.http_client.get(url, headers=headers, timeout=self.timeout_seconds)
        with httpx.Client(timeout=self.timeout_seconds) as client:
            return client.get(url, headers=headers)

    def validate(self, token: str, strict: bool = False) -> ValidationResult:
        """Ask the provider what `token` represents.

        Raises a `PaymentError` subclass for every non-success classification.
        Syntax is checked locally first so malformed tokens never leave the
        process.
        """

        if not token or not TOKEN_PATTERN.fullmatch(token):
            raise InvalidFormat("Token contains invalid characters")

        masked = mask_token(token)
        url = self.validation_url(token, strict)
        start = perf_counter()
        with tracer.start_as_current_span("fleeca.validate_token") as span:
            span.set_attribute("fleeca.strict", strict)
            try:
                resp = self._get(url)
            except httpx.HTTPError as exc:
                provider_requests_total.labels(service=self.service_name, result="transport_error").inc()
                logger.warning("token_validation_transport_error token=%s error=%s", masked, exc)
                raise TransportError(f"Token validation request failed: {exc.__class__.__name__}") from exc
            finally:
                provider_latency_seconds.labels(service=self.service_name, strict=str(strict).lower()).observe(
                    max(0.0, perf_counter() - start)
                )
            span.set_attribute("http.status_code", resp.status_code)
            return self._classify(resp, token)

    def _classify(self, resp: httpx.Response, token: str) -> ValidationResult:
        masked = mask_token(token)
        code = resp.status_code
        if 200 <= code < 300:
            try:
                payload = resp.json()
            except ValueError as exc:
                provider_requests_total.labels(service=self.service_name, result="malformed").inc()
                logger.error("token_validation_unparseable token=%s error=%s", masked, exc)
                raise MalformedResponse("Failed to parse API response") from exc
            if not isinstance(payload, dict):
                provider_requests_total.labels(service=self.service_name, result="malformed").inc()
                logger.error("token_validation_unexpected_shape token=%s", masked)
                raise MalformedResponse("Failed to parse API response")

            auth_key = payload.get("auth_key")
            if (
                not self.api_key
                or not isinstance(auth_key, str)
                or not hmac.compare_digest(auth_key.encode("utf-8"), self.api_key.encode("utf-8"))
            ):
                provider_requests_total.labels(service=self.service_name, result="auth_key_mismatch").inc()
                logger.error(
                    "token_validation_auth_key_mismatch token=%s auth_key_present=%s",
                    masked,
                    auth_key is not None,
                )
                raise AuthKeyMismatch("API key in response does not match stored key")

            try:
                result = ValidationResult.from_provider(payload)
            except ValidationError as exc:
                provider_requests_total.labels(service=self.service_name, result="malformed").inc()
                logger.error("token_validation_invalid_fields token=%s errors=%s", masked, exc.error_count())
                raise MalformedResponse("API response is missing required fields") from exc

            if result.is_expired:
                logger.warning("token_marked_expired_but_valid token=%s", masked)
            provider_requests_total.labels(service=self.service_name, result="success").inc()
            logger.info("token_validated token=%s payment=%s", masked, result.payment_amount)
            return result

        if code == 404:
            provider_requests_total.labels(service=self.service_name, result="not_found").inc()
            logger.warning("token_not_found token=%s", masked)
            raise TokenNotFound("Token not found or has expired")
        if code == 429:
            provider_requests_total.labels(service=self.service_name, result="rate_limited").inc()
            logger.warning("provider_rate_limited token=%s", masked)
            raise ProviderRateLimited("API rate limit exceeded. Please try again later.")

        provider_requests_total.labels(service=self.service_name, result="unexpected_status").inc()
        body = resp.text[:MAX_DIAGNOSTIC_BODY].replace(token, masked)
        logger.error("token_validation_unexpected_status token=%s status=%s body=%s", masked, code, body)
        raise UnexpectedStatus(code, body)
