import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from nexus_forge.ai.providers.base import (
    HEALTH_TIMEOUT_SECONDS,
    decode_json_event,
    endpoint_url,
    ensure_prompt_size,
    ensure_secure_url,
    error_for_status,
    raise_for_status,
    transport_errors,
)
from nexus_forge.ai.providers.sse import iter_sse
from nexus_forge.ai.types import EndpointSettings, Fragment, ProviderKind, ProviderProfile, Request
from nexus_forge.errors import MalformedRequestError, TruncatedStreamError

logger = logging.getLogger(__name__)

STREAM_PATH = "/api/stream"
HEALTH_PATH = "/health"
DONE_MARKER = "[DONE]"
DEFAULT_ERROR_STATUS = 502

PROXY_PROFILE = ProviderProfile(
    name="proxy",
    kind=ProviderKind.PROXY,
    requires_key=False,
    max_prompt_bytes=100_000,
    requests_per_minute=20,
)


def error_event_status(payload: dict[str, Any]) -> int:
    """HTTP-like status of an in-stream error event; anything non-numeric counts as a bad gateway."""
    status = payload.get("status")
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    if isinstance(status, str) and status.strip().isdigit():
        return int(status)
    return DEFAULT_ERROR_STATUS


class ProxyProvider:
    """Free-tier proxy; the upstream API keys live on the server."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: EndpointSettings,
        profile: ProviderProfile = PROXY_PROFILE,
    ) -> None:
        self._client = client
        self.endpoint = endpoint
        self.profile = profile

    def build_body(self, request: Request) -> dict[str, Any]:
        return {
            "operation": request.operation.value,
            "prompt": request.prompt,
            "context": request.context,
            "language": request.language,
            "history": [turn.model_dump() for turn in request.history],
            "resume_from": request.prefill or None,
        }

    async def stream(self, request: Request) -> AsyncIterator[Fragment]:
        name = self.profile.name
        base = ensure_secure_url(self.endpoint.base_url, name)
        ensure_prompt_size(request, self.profile)

        url = endpoint_url(base, STREAM_PATH)
        logger.debug("POST %s operation=%s resume=%s", url, request.operation.value, bool(request.prefill))
        with transport_errors(name):
            async with self._client.stream(
                "POST",
                url,
                json=self.build_body(request),
                headers={"accept": "text/event-stream"},
                timeout=httpx.Timeout(self.endpoint.timeout_seconds, connect=10.0),
            ) as response:
                await raise_for_status(response, name)
                async for event in iter_sse(response):
                    if event.data.strip() == DONE_MARKER:
                        return
                    if not event.data:
                        continue
                    payload = decode_json_event(event.data, name)
                    if "error" in payload:
                        raise error_for_status(error_event_status(payload), f"{name}: {payload['error']}", name)
                    text = payload.get("text")
                    if text:
                        yield Fragment(text=str(text))
        raise TruncatedStreamError(f"{name} stream ended before {DONE_MARKER}", provider=name)

    async def health(self) -> bool:
        try:
            base = ensure_secure_url(self.endpoint.base_url, self.profile.name)
            response = await self._client.get(endpoint_url(base, HEALTH_PATH), timeout=HEALTH_TIMEOUT_SECONDS)
        except (httpx.HTTPError, MalformedRequestError) as exc:
            logger.debug("Proxy health probe failed: %s", exc)
            return False
        return response.status_code == 200
