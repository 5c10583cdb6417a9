"""Resilient HTTP client for webhook steps.

Wraps httpx with:
- URL validation (http/https only; loopback and private networks
  rejected outside development, before any network I/O)
- Payload size limits on the outbound body and JSON responses
- A per-attempt timeout that aborts the in-flight call
- Exponential-backoff retries (4xx responses are never retried)
- A per-hostname circuit breaker
- Optional HMAC signing of the outbound body
"""

import asyncio
import ipaddress
import json
import socket
from dataclasses import dataclass
from typing import Any, Optional, Union
from urllib.parse import urlsplit

import httpx
import structlog

from app.config import Settings, get_settings
from core.circuit_breaker import CircuitBreaker, CircuitBreakerState
from core.exceptions import (
    CircuitOpenError,
    EngineError,
    HttpError,
    ValidationError,
    WorkflowTimeoutError,
)
from core.webhook_signing import sign_webhook_payload
from workflow.retry_strategies import RetryStrategy, execute_with_retry

logger = structlog.get_logger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")


@dataclass
class HttpClientConfig:
    """Client limits. Durations are in milliseconds."""
    timeout_ms: int = 30000
    max_payload_bytes: int = 10 * 1024 * 1024
    retries: int = 3
    retry_delay_ms: int = 1000
    max_retry_delay_ms: int = 10000
    backoff_multiplier: float = 2.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_ms: int = 60000
    allow_private_networks: bool = False
    user_agent: str = "Workflow-Engine/1.0"

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "HttpClientConfig":
        settings = settings or get_settings()
        return cls(
            timeout_ms=settings.HTTP_TIMEOUT_MS,
            max_payload_bytes=settings.HTTP_MAX_PAYLOAD_BYTES,
            retries=settings.HTTP_RETRIES,
            retry_delay_ms=settings.HTTP_RETRY_DELAY_MS,
            max_retry_delay_ms=settings.HTTP_MAX_RETRY_DELAY_MS,
            backoff_multiplier=settings.HTTP_BACKOFF_MULTIPLIER,
            circuit_breaker_threshold=settings.HTTP_CIRCUIT_BREAKER_THRESHOLD,
            circuit_breaker_reset_ms=settings.HTTP_CIRCUIT_BREAKER_RESET_MS,
            allow_private_networks=settings.is_development,
            user_agent=settings.HTTP_USER_AGENT,
        )


def _parse_ip(host: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """IP literal in any form the system resolver accepts, else None.

    Besides canonical notation this covers the numeric IPv4 shorthands
    (``2130706433``, ``127.1``, ``0x7f000001``, ``017700000001``) that
    resolve to the same address.
    """
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    try:
        return ipaddress.ip_address(socket.inet_aton(host))
    except (OSError, ValueError):
        return None


def _is_private_host(hostname: str) -> bool:
    """Loopback, private, link-local, unspecified or reserved address (or localhost)."""
    host = hostname.lower().rstrip(".")
    if host == "localhost" or host.endswith(".localhost"):
        return True
    ip = _parse_ip(host)
    if ip is None:
        # Domain names are not resolved here
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_unspecified
        or ip.is_reserved
    )


def validate_url(url: str, allow_private_networks: bool = False) -> str:
    """Validate a webhook URL for SSRF safety.

    Returns:
        The URL's hostname (the circuit breaker key)

    Raises:
        ValidationError: Malformed URL, unsupported scheme, or a private
            destination when private networks are not allowed
    """
    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
        parsed.port  # raises ValueError on a malformed port
    except ValueError as e:
        raise ValidationError(f"Invalid URL: {url} ({e})")

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValidationError(
            f"Invalid protocol: {parsed.scheme or '(none)'}. Only HTTP/HTTPS allowed."
        )
    if not hostname:
        raise ValidationError(f"Invalid URL: {url} (missing hostname)")

    if not allow_private_networks and _is_private_host(hostname):
        raise ValidationError(
            f"Requests to private IP addresses or localhost are not allowed: {hostname}"
        )
    return hostname


class ResilientHttpClient:
    """HTTP client used by webhook steps."""

    def __init__(
        self,
        config: Optional[HttpClientConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Args:
            config: Client limits (defaults to values from settings)
            transport: httpx transport override (tests use httpx.MockTransport)
            circuit_breaker: Breaker instance (defaults to one built from config)
        """
        self.config = config or HttpClientConfig.from_settings()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.config.circuit_breaker_threshold,
            reset_timeout=self.config.circuit_breaker_reset_ms / 1000,
        )
        self._retry_strategy = RetryStrategy(
            max_retries=self.config.retries,
            base_delay=self.config.retry_delay_ms / 1000,
            max_delay=self.config.max_retry_delay_ms / 1000,
            multiplier=self.config.backoff_multiplier,
        )
        self._client = httpx.AsyncClient(
            transport=transport,
            follow_redirects=False,
            timeout=self.config.timeout_ms / 1000,
        )

    async def __aenter__(self) -> "ResilientHttpClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        url: str,
        method: str = "POST",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        signing_secret: Optional[str] = None,
    ) -> Any:
        """Send a request with validation, retries and circuit breaking.

        Returns:
            Parsed JSON for JSON responses, text otherwise

        Raises:
            ValidationError: Bad URL or oversized payload (never retried)
            CircuitOpenError: Breaker open for the destination host
            HttpError: Non-2xx response after retries (4xx immediately)
            WorkflowTimeoutError: Final attempt timed out
        """
        method = method.upper()
        hostname = validate_url(url, self.config.allow_private_networks)
        content = self._encode_body(body) if method in BODY_METHODS else None
        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": self.config.user_agent,
            **(headers or {}),
        }
        if signing_secret:
            request_headers.update(sign_webhook_payload(content or b"", signing_secret))

        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            self.circuit_breaker.check(hostname)
            logger.debug("HTTP request", method=method, url=url, attempt=attempts)
            return await self._attempt(method, url, hostname, request_headers, content)

        def on_retry(failures: int, error: Exception, delay: float) -> None:
            logger.warning(
                "HTTP request failed, retrying",
                method=method,
                hostname=hostname,
                attempt=failures,
                max_attempts=self.config.retries + 1,
                delay_ms=int(delay * 1000),
                error=str(error),
            )

        def should_retry(failures: int, error: Exception) -> bool:
            if isinstance(error, CircuitOpenError):
                return False
            return self._retry_strategy.should_retry(failures, error)

        try:
            return await execute_with_retry(
                attempt,
                self._retry_strategy,
                on_retry=on_retry,
                should_retry=should_retry,
            )
        except EngineError as e:
            logger.error(
                "HTTP request failed",
                method=method,
                hostname=hostname,
                attempts=attempts,
                error=str(e),
            )
            raise

    async def _attempt(
        self,
        method: str,
        url: str,
        hostname: str,
        headers: dict[str, str],
        content: Optional[bytes],
    ) -> Any:
        timeout = self.config.timeout_ms / 1000
        try:
            response = await asyncio.wait_for(
                self._client.request(method, url, headers=headers, content=content),
                timeout=timeout,
            )
        except asyncio.CancelledError:
            self.circuit_breaker.release(hostname)
            raise
        except (asyncio.TimeoutError, httpx.TimeoutException):
            self.circuit_breaker.record_failure(hostname, "timeout")
            raise WorkflowTimeoutError(f"Request timeout after {self.config.timeout_ms}ms")
        except httpx.TransportError as e:
            self.circuit_breaker.record_failure(hostname, str(e))
            raise EngineError(f"Connection to {hostname} failed: {e}", retryable=True) from e

        if response.status_code >= 500:
            self.circuit_breaker.record_failure(hostname, f"HTTP {response.status_code}")
            raise HttpError(response.status_code, response.reason_phrase)

        # The destination answered; a 4xx is the caller's fault, not the host's
        self.circuit_breaker.record_success(hostname)

        if response.status_code >= 400:
            raise HttpError(response.status_code, response.reason_phrase)

        return self._parse_response(response)

    def _encode_body(self, body: Any) -> Optional[bytes]:
        if body is None:
            return None
        if isinstance(body, bytes):
            content = body
        elif isinstance(body, str):
            content = body.encode()
        else:
            content = json.dumps(body, separators=(",", ":"), default=str).encode()
        self._check_size(len(content), "Payload")
        return content

    def _parse_response(self, response: httpx.Response) -> Any:
        content_type = response.headers.get("content-type", "")
        if "application/json" in content_type:
            self._check_size(len(response.content), "Response payload")
            return response.json()
        return response.text

    def _check_size(self, size: int, label: str) -> None:
        if size > self.config.max_payload_bytes:
            raise ValidationError(
                f"{label} size ({size} bytes) exceeds maximum allowed size "
                f"({self.config.max_payload_bytes} bytes)"
            )

    # ─── Circuit breaker introspection ────────────────────────

    def get_circuit_state(self, hostname: str) -> Optional[CircuitBreakerState]:
        return self.circuit_breaker.get_state(hostname)

    def reset_circuit_breaker(self, hostname: Optional[str] = None) -> None:
        self.circuit_breaker.reset(hostname)
