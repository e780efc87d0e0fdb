from __future__ import annotations

import asyncio
import errno
import logging
import socket
from dataclasses import dataclass, field
from typing import Awaitable, Iterator, List, Optional, TypeVar
from urllib.parse import urlparse

import httpx

from dashboard.schemas import Severity, ValidationOutcome, ValidationType

LOGGER = logging.getLogger("dashboard.validator")

T = TypeVar("T")

DEFAULT_USER_AGENT = "Backstop-Dashboard-Validator/1.0"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)

_DNS_ERRNOS = {
    getattr(socket, name)
    for name in ("EAI_NONAME", "EAI_AGAIN", "EAI_FAIL", "EAI_NODATA")
    if hasattr(socket, name)
}
_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo failed",
    "temporary failure in name resolution",
    "no address associated with hostname",
)


class OperationTimeout(TimeoutError):
    """Raised by :func:`with_timeout` when the timer wins the race."""


async def with_timeout(operation: Awaitable[T], seconds: float, *, label: str = "operation") -> T:
    """Await ``operation`` but give up after ``seconds`` whatever the transport does.

    Some transports do not reliably honour their own timeout settings, so the
    operation is raced against an explicit timer and cancelled when it loses.
    """
    try:
        return await asyncio.wait_for(operation, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise OperationTimeout(f"Manual timeout after {seconds:g} seconds ({label})") from exc


@dataclass
class ValidatorSettings:
    timeout_seconds: float = 8.0
    slow_timeout_seconds: float = 15.0
    slow_host_patterns: List[str] = field(default_factory=lambda: ["aem.enablementadobe.com"])
    max_redirects: int = 5


def _failure(kind: ValidationType, message: str, severity: Severity) -> ValidationOutcome:
    return ValidationOutcome(valid=False, type=kind, message=message, severity=severity)


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_transport_error(exc: BaseException) -> ValidationOutcome:
    """Map a transport failure onto a typed validation outcome."""
    chain = list(_exception_chain(exc))
    text = " ".join(str(item) for item in chain).lower()

    if any(isinstance(item, (OperationTimeout, httpx.TimeoutException, asyncio.TimeoutError)) for item in chain):
        if any(isinstance(item, OperationTimeout) for item in chain):
            message = f"Validation timeout - server took too long to respond ({exc})"
        else:
            message = "Request timeout - server not responding in time"
        return _failure(ValidationType.timeout, message, Severity.medium)
    if any(isinstance(item, ConnectionRefusedError) for item in chain) or "connection refused" in text:
        return _failure(
            ValidationType.connection_refused,
            "Connection refused - server not responding",
            Severity.high,
        )
    if any(isinstance(item, socket.gaierror) for item in chain) or any(
        getattr(item, "errno", None) in _DNS_ERRNOS for item in chain
    ) or any(marker in text for marker in _DNS_MARKERS):
        return _failure(
            ValidationType.dns_error,
            "DNS resolution failed - domain not found",
            Severity.high,
        )
    if any(isinstance(item, ConnectionResetError) for item in chain) or any(
        getattr(item, "errno", None) == errno.ECONNRESET for item in chain
    ) or "connection reset" in text:
        return _failure(ValidationType.connection_reset, "Connection reset by server", Severity.medium)
    if any(getattr(item, "errno", None) == errno.ETIMEDOUT for item in chain) or "timed out" in text:
        return _failure(
            ValidationType.timeout,
            "Request timeout - server not responding in time",
            Severity.medium,
        )
    return _failure(ValidationType.network_error, f"Network error: {exc}", Severity.high)


def classify_status(status_code: int, reason: str = "") -> ValidationOutcome:
    suffix = f"{status_code} {reason}".strip()
    if 200 <= status_code < 400:
        return ValidationOutcome(
            valid=True,
            type=ValidationType.success,
            message=f"URL accessible ({status_code})",
            severity=Severity.info,
            statusCode=status_code,
        )
    if 400 <= status_code < 500:
        return ValidationOutcome(
            valid=False,
            type=ValidationType.client_error,
            message=f"Client error: {suffix}",
            severity=Severity.high,
            statusCode=status_code,
        )
    if status_code >= 500:
        return ValidationOutcome(
            valid=False,
            type=ValidationType.server_error,
            message=f"Server error: {suffix}",
            severity=Severity.high,
            statusCode=status_code,
        )
    return ValidationOutcome(
        valid=False,
        type=ValidationType.network_error,
        message=f"Unexpected status: {suffix}",
        severity=Severity.high,
        statusCode=status_code,
    )


class UrlValidator:
    """Probe scenario URLs before a run and classify why a host is unusable."""

    def __init__(
        self,
        settings: Optional[ValidatorSettings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings or ValidatorSettings()
        self._transport = transport

    @property
    def settings(self) -> ValidatorSettings:
        return self._settings

    def is_slow_host(self, url: str) -> bool:
        return any(pattern and pattern in url for pattern in self._settings.slow_host_patterns)

    def timeout_for(self, url: str) -> float:
        if self.is_slow_host(url):
            return self._settings.slow_timeout_seconds
        return self._settings.timeout_seconds

    async def validate(self, url: str) -> ValidationOutcome:
        try:
            parsed = urlparse(url)
            if parsed.scheme not in {"http", "https"} or not parsed.hostname:
                raise ValueError(f"unsupported URL '{url}'")
            parsed.port  # raises ValueError on malformed ports
        except ValueError as exc:
            LOGGER.info("Invalid URL format: %s", url)
            return _failure(
                ValidationType.invalid_format,
                f"Invalid URL format: {exc}",
                Severity.high,
            )

        slow = self.is_slow_host(url)
        timeout_seconds = self.timeout_for(url)
        LOGGER.debug("Validating %s with %.1fs timeout%s", url, timeout_seconds, " (slow host)" if slow else "")
        try:
            status_code, reason = await with_timeout(
                self._fetch_status(url, timeout_seconds, slow=slow),
                timeout_seconds,
                label=url,
            )
        except Exception as exc:  # noqa: BLE001 - every transport failure is classified
            outcome = classify_transport_error(exc)
            LOGGER.info("Validation failed for %s: %s (%s)", url, outcome.type, exc)
            return outcome

        outcome = classify_status(status_code, reason)
        LOGGER.info("Validation for %s: %s (%s)", url, outcome.type, status_code)
        return outcome

    async def _fetch_status(self, url: str, timeout_seconds: float, *, slow: bool) -> tuple[int, str]:
        headers = {"User-Agent": BROWSER_USER_AGENT if slow else DEFAULT_USER_AGENT}
        async with httpx.AsyncClient(
            timeout=timeout_seconds,
            follow_redirects=True,
            max_redirects=self._settings.max_redirects,
            verify=not slow,
            transport=self._transport,
            headers=headers,
        ) as client:
            async with client.stream("GET", url) as response:
                return response.status_code, response.reason_phrase
