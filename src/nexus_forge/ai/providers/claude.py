import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from nexus_forge.ai.prompts import instruction_for, render_user_message
from nexus_forge.ai.providers.base import (
    decode_json_event,
    endpoint_url,
    ensure_prompt_size,
    ensure_secure_url,
    raise_for_status,
    transport_errors,
)
from nexus_forge.ai.providers.sse import iter_sse
from nexus_forge.ai.types import EndpointSettings, Fragment, ProviderKind, ProviderProfile, Request
from nexus_forge.errors import (
    AuthError,
    MalformedRequestError,
    ProviderError,
    RateLimitedError,
    TruncatedStreamError,
    UnreachableError,
)

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_PATH = "/v1/messages"

CLAUDE_PROFILE = ProviderProfile(
    name="claude",
    kind=ProviderKind.DIRECT,
    requires_key=True,
    max_prompt_bytes=600_000,
    requests_per_minute=50,
)

_ERROR_TYPES: dict[str, type[ProviderError]] = {
    "authentication_error": AuthError,
    "permission_error": AuthError,
    "invalid_request_error": MalformedRequestError,
    "not_found_error": MalformedRequestError,
    "request_too_large": MalformedRequestError,
    "rate_limit_error": RateLimitedError,
    "overloaded_error": UnreachableError,
    "api_error": UnreachableError,
}


class ClaudeProvider:
    """Direct Anthropic Messages API client, streamed over server-sent events."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_key: str | None,
        endpoint: EndpointSettings,
        profile: ProviderProfile = CLAUDE_PROFILE,
    ) -> None:
        self._client = client
        self._api_key = api_key
        self.endpoint = endpoint
        self.profile = profile

    def build_body(self, request: Request) -> dict[str, Any]:
        messages: list[dict[str, str]] = [{"role": t.role, "content": t.content} for t in request.history]
        messages.append({"role": "user", "content": render_user_message(request)})
        if request.prefill:
            # Assistant prefill must not end in whitespace.
            messages.append({"role": "assistant", "content": request.prefill.rstrip()})
        return {
            "model": self.endpoint.model,
            "max_tokens": self.endpoint.max_tokens,
            "system": instruction_for(request),
            "messages": messages,
            "stream": True,
        }

    async def stream(self, request: Request) -> AsyncIterator[Fragment]:
        name = self.profile.name
        base = ensure_secure_url(self.endpoint.base_url, name)
        if not (self._api_key and self._api_key.strip()):
            raise AuthError("No Anthropic API key configured", provider=name)
        ensure_prompt_size(request, self.profile)

        headers = {
            "x-api-key": self._api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }
        url = endpoint_url(base, MESSAGES_PATH)
        logger.debug("POST %s model=%s resume=%s", url, self.endpoint.model, bool(request.prefill))
        with transport_errors(name):
            async with self._client.stream(
                "POST",
                url,
                json=self.build_body(request),
                headers=headers,
                timeout=httpx.Timeout(self.endpoint.timeout_seconds, connect=10.0),
            ) as response:
                await raise_for_status(response, name)
                async for event in iter_sse(response):
                    if event.event == "ping" or not event.data:
                        continue
                    payload = decode_json_event(event.data, name)
                    kind = payload.get("type", event.event)
                    if kind == "content_block_delta":
                        delta = payload.get("delta", {})
                        if delta.get("type") == "text_delta" and delta.get("text"):
                            yield Fragment(text=delta["text"])
                    elif kind == "message_delta":
                        usage = payload.get("usage") or {}
                        if "output_tokens" in usage:
                            yield Fragment(output_tokens=int(usage["output_tokens"]))
                    elif kind == "message_stop":
                        return
                    elif kind == "error":
                        raise self._stream_error(payload.get("error") or {})
        raise TruncatedStreamError(f"{name} stream ended before message_stop", provider=name)

    def _stream_error(self, error: dict[str, Any]) -> ProviderError:
        error_type = str(error.get("type", "api_error"))
        message = f"{self.profile.name} {error_type}: {error.get('message', 'unknown error')}"
        error_cls = _ERROR_TYPES.get(error_type, UnreachableError)
        return error_cls(message, provider=self.profile.name)

    async def health(self) -> bool:
        return bool(self._api_key and self._api_key.strip())
