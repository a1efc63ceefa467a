"""HTTP reachability probe for monitored systems.

One GET per target, no retries. The shared client is built with TLS
verification disabled: a probe answers "is something serving at this URL",
it does not validate server identity. Certificate problems are only reported
when a client with verification enabled is passed in.
"""

import asyncio
import errno
import socket
import ssl
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import datetime

import httpx
import structlog

from govmon.config import Settings
from govmon.core.clock import utcnow
from govmon.schemas.monitoring import ProbeErrorCategory, ProbeOutcome, SystemStatus

logger = structlog.get_logger()

NO_URL_MESSAGE = "No URL configured"

ACCEPT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
}

# Response headers surfaced by probe_url
REPORTED_HEADERS = ("content-type", "content-length", "server")

# OpenSSL X509_V_ERR_CERT_HAS_EXPIRED
_X509_CERT_HAS_EXPIRED = 10

_CATEGORY_MESSAGES = {
    ProbeErrorCategory.CONNECTION_REFUSED: ("Connection refused", "ECONNREFUSED"),
    ProbeErrorCategory.TIMEOUT: ("Request timeout", "ETIMEDOUT"),
    ProbeErrorCategory.DNS_FAILURE: ("DNS resolution failed", "ENOTFOUND"),
    ProbeErrorCategory.CONNECTION_RESET: ("Connection reset", "ECONNRESET"),
    ProbeErrorCategory.CERTIFICATE_EXPIRED: ("SSL certificate expired", "CERT_HAS_EXPIRED"),
    ProbeErrorCategory.CERTIFICATE_VERIFICATION_FAILED: (
        "SSL certificate verification failed",
        "UNABLE_TO_VERIFY_LEAF_SIGNATURE",
    ),
}

_MESSAGE_FALLBACKS = (
    ("connection refused", ProbeErrorCategory.CONNECTION_REFUSED),
    ("timed out", ProbeErrorCategory.TIMEOUT),
    ("name or service not known", ProbeErrorCategory.DNS_FAILURE),
    ("nodename nor servname", ProbeErrorCategory.DNS_FAILURE),
    ("temporary failure in name resolution", ProbeErrorCategory.DNS_FAILURE),
    ("getaddrinfo", ProbeErrorCategory.DNS_FAILURE),
    ("connection reset", ProbeErrorCategory.CONNECTION_RESET),
    ("certificate has expired", ProbeErrorCategory.CERTIFICATE_EXPIRED),
    ("certificate verify failed", ProbeErrorCategory.CERTIFICATE_VERIFICATION_FAILED),
)


@dataclass(frozen=True)
class ProbeTarget:
    id: int | None
    name: str | None
    url: str | None
    status: str = SystemStatus.UP.value


@dataclass(frozen=True)
class ProbeError:
    category: ProbeErrorCategory
    message: str
    code: str


def build_probe_client(settings: Settings) -> httpx.AsyncClient:
    """Shared client for all probes.

    Certificate verification is off, so the probe does not validate server
    identity. Redirects are followed up to the configured limit.
    """
    return httpx.AsyncClient(
        verify=False,
        follow_redirects=True,
        max_redirects=settings.govmon_probe_max_redirects,
        timeout=httpx.Timeout(settings.govmon_probe_timeout_seconds),
        headers={"User-Agent": settings.govmon_probe_user_agent, **ACCEPT_HEADERS},
    )


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    """Depth-first walk of the cause chain, descending into exception groups.

    A host with several addresses fails with one error per address, wrapped
    in an ExceptionGroup under a generic "All connection attempts failed".
    """
    seen: set[int] = set()
    pending: list[BaseException] = [exc]
    while pending:
        current = pending.pop()
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        follow = current.__cause__ or current.__context__
        if follow is not None:
            pending.append(follow)
        if isinstance(current, BaseExceptionGroup):
            pending.extend(reversed(current.exceptions))


def _category_from_type(exc: BaseException) -> ProbeErrorCategory | None:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ProbeErrorCategory.TIMEOUT
    if isinstance(exc, ssl.SSLCertVerificationError):
        reason = f"{getattr(exc, 'verify_message', '')} {exc}".lower()
        if getattr(exc, "verify_code", None) == _X509_CERT_HAS_EXPIRED or "expired" in reason:
            return ProbeErrorCategory.CERTIFICATE_EXPIRED
        return ProbeErrorCategory.CERTIFICATE_VERIFICATION_FAILED
    if isinstance(exc, socket.gaierror):
        return ProbeErrorCategory.DNS_FAILURE
    if isinstance(exc, ConnectionRefusedError):
        return ProbeErrorCategory.CONNECTION_REFUSED
    if isinstance(exc, ConnectionResetError):
        return ProbeErrorCategory.CONNECTION_RESET
    if isinstance(exc, OSError):
        if exc.errno == errno.ECONNREFUSED:
            return ProbeErrorCategory.CONNECTION_REFUSED
        if exc.errno == errno.ECONNRESET:
            return ProbeErrorCategory.CONNECTION_RESET
        if exc.errno == errno.ETIMEDOUT:
            return ProbeErrorCategory.TIMEOUT
    return None


def classify_exception(exc: BaseException) -> ProbeError:
    """Map a transport failure onto the probe error taxonomy.

    Walks the cause chain looking for a known exception type or errno first,
    then falls back to matching well-known message fragments.
    """
    chain = list(_exception_chain(exc))

    category = None
    for link in chain:
        category = _category_from_type(link)
        if category is not None:
            break

    if category is None:
        text = " ".join(str(link).lower() for link in chain)
        for fragment, candidate in _MESSAGE_FALLBACKS:
            if fragment in text:
                category = candidate
                break

    if category is None:
        return ProbeError(
            category=ProbeErrorCategory.UNKNOWN,
            message=str(exc) or type(exc).__name__,
            code=type(exc).__name__,
        )

    message, code = _CATEGORY_MESSAGES[category]
    return ProbeError(category=category, message=message, code=code)


def is_up_status(status_code: int) -> bool:
    return 200 <= status_code < 400


class ProbeEngine:
    """Performs a single reachability probe per target."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._client = client
        self._timeout = timeout
        self._clock = clock

    async def probe(self, target: ProbeTarget) -> ProbeOutcome:
        """Probe one target. Never raises for network or HTTP failures."""
        checked_at = self._clock()

        if not target.url or not target.url.strip():
            return ProbeOutcome(
                system_id=target.id,
                system_name=target.name,
                status=target.status,
                error=NO_URL_MESSAGE,
                attempted=False,
                checked_at=checked_at,
            )

        url = target.url.strip()
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(self._client.get(url), timeout=self._timeout)
        except Exception as exc:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            failure = classify_exception(exc)
            logger.warning(
                "probe_failed",
                system_id=target.id,
                url=url,
                error_category=failure.category.value,
                error_code=failure.code,
                error=str(exc) or type(exc).__name__,
                elapsed_ms=elapsed_ms,
            )
            return ProbeOutcome(
                system_id=target.id,
                system_name=target.name,
                status=SystemStatus.DOWN.value,
                elapsed_ms=elapsed_ms,
                error=failure.message,
                error_category=failure.category,
                error_code=failure.code,
                checked_at=checked_at,
            )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        headers = {
            name: response.headers[name] for name in REPORTED_HEADERS if name in response.headers
        }
        outcome = ProbeOutcome(
            system_id=target.id,
            system_name=target.name,
            status=SystemStatus.UP.value,
            elapsed_ms=elapsed_ms,
            http_status=response.status_code,
            checked_at=checked_at,
            final_url=str(response.url),
            headers=headers,
        )
        if not is_up_status(response.status_code):
            outcome.status = SystemStatus.DOWN.value
            outcome.error = f"HTTP {response.status_code}"
            outcome.error_category = ProbeErrorCategory.HTTP_ERROR_STATUS

        logger.debug(
            "probe_completed",
            system_id=target.id,
            url=url,
            status=outcome.status,
            http_status=response.status_code,
            elapsed_ms=elapsed_ms,
        )
        return outcome

    async def probe_url(self, url: str) -> ProbeOutcome:
        """Probe an ad-hoc URL that is not tied to a stored system."""
        return await self.probe(
            ProbeTarget(id=None, name=None, url=url, status=SystemStatus.DOWN.value)
        )
