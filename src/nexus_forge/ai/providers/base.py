import ipaddress
import json
import logging
from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Protocol

import httpx

from nexus_forge import __version__
from nexus_forge.ai.types import Fragment, ProviderProfile, Request
from nexus_forge.errors import (
    AuthError,
    MalformedRequestError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    UnreachableError,
)

logger = logging.getLogger(__name__)

USER_AGENT = f"NEXUS-Forge/{__version__}"
HEALTH_TIMEOUT_SECONDS = 2.0


class Provider(Protocol):
    profile: ProviderProfile

    def stream(self, request: Request) -> AsyncIterator[Fragment]: ...

    async def health(self) -> bool: ...


def make_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(headers={"User-Agent": USER_AGENT}, follow_redirects=False)


def is_loopback_host(host: str) -> bool:
    if host in ("localhost", "localhost."):
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def ensure_secure_url(url: str, provider: str, allow_loopback_http: bool = False) -> httpx.URL:
    """Accept ``https`` URLs, and plain ``http`` only for loopback hosts when allowed."""
    parsed = httpx.URL(url)
    if parsed.scheme == "https":
        return parsed
    if parsed.scheme == "http" and allow_loopback_http and is_loopback_host(parsed.host):
        return parsed
    raise MalformedRequestError(
        f"Refusing insecure endpoint {url!r}; only https is allowed",
        provider=provider,
        hint="use an https:// URL",
    )


def ensure_prompt_size(request: Request, profile: ProviderProfile) -> None:
    if request.payload_bytes > profile.max_prompt_bytes:
        raise MalformedRequestError(
            f"Request is {request.payload_bytes} bytes; {profile.name} accepts at most {profile.max_prompt_bytes}",
            provider=profile.name,
            hint="narrow the input or lower --depth",
        )


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_for_status(status_code: int, message: str, provider: str, retry_after: float | None = None) -> ProviderError:
    if status_code in (401, 403):
        return AuthError(message, provider=provider)
    if status_code == 429:
        return RateLimitedError(message, provider=provider, retry_after=retry_after)
    if status_code in (408, 504):
        return ProviderTimeoutError(message, provider=provider)
    if status_code >= 500:
        return UnreachableError(message, provider=provider)
    return MalformedRequestError(message, provider=provider)


async def raise_for_status(response: httpx.Response, provider: str) -> None:
    if response.status_code < 400:
        return
    body = (await response.aread()).decode("utf-8", errors="replace").strip()
    message = f"{provider} returned HTTP {response.status_code}"
    if body:
        message = f"{message}: {body[:300]}"
    raise error_for_status(
        response.status_code,
        message,
        provider,
        retry_after=parse_retry_after(response.headers.get("retry-after")),
    )


@contextmanager
def transport_errors(provider: str) -> Iterator[None]:
    """Translate httpx transport failures into retryable provider errors."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(f"{provider} timed out: {exc}", provider=provider) from exc
    except httpx.TransportError as exc:
        raise UnreachableError(f"{provider} is unreachable: {exc}", provider=provider) from exc


def endpoint_url(base: httpx.URL, path: str) -> str:
    return str(base).rstrip("/") + path


def decode_json_event(data: str, provider: str) -> dict[str, Any]:
    try:
        payload = json.loads(data)
    except ValueError as exc:
        raise UnreachableError(f"{provider} sent a malformed stream event: {data[:120]!r}", provider=provider) from exc
    if not isinstance(payload, dict):
        raise UnreachableError(f"{provider} sent a non-object stream event", provider=provider)
    return payload
