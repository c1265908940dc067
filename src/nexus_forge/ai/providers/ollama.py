import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx

from nexus_forge.ai.prompts import instruction_for, render_user_message
from nexus_forge.ai.providers.base import (
    HEALTH_TIMEOUT_SECONDS,
    decode_json_event,
    endpoint_url,
    ensure_prompt_size,
    ensure_secure_url,
    raise_for_status,
    transport_errors,
)
from nexus_forge.ai.types import EndpointSettings, Fragment, ProviderKind, ProviderProfile, Request
from nexus_forge.errors import MalformedRequestError, TruncatedStreamError, UnreachableError

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_MODEL = "codellama"
CHAT_PATH = "/api/chat"
TAGS_PATH = "/api/tags"

OLLAMA_PROFILE = ProviderProfile(
    name="ollama",
    kind=ProviderKind.LOCAL,
    requires_key=False,
    max_prompt_bytes=200_000,
)

# In-stream errors that another attempt cannot fix.
FATAL_ERROR_MARKERS = ("not found", "invalid model", "invalid request", "try pulling")


def stream_error(message: str, provider: str) -> MalformedRequestError | UnreachableError:
    lowered = message.lower()
    if any(marker in lowered for marker in FATAL_ERROR_MARKERS):
        return MalformedRequestError(f"{provider}: {message}", provider=provider)
    return UnreachableError(f"{provider}: {message}", provider=provider)


class OllamaProvider:
    """Local inference through an Ollama server, streamed as NDJSON."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        endpoint: EndpointSettings,
        profile: ProviderProfile = OLLAMA_PROFILE,
    ) -> None:
        self._client = client
        self.endpoint = endpoint
        self.profile = profile

    def build_body(self, request: Request) -> dict[str, Any]:
        messages: list[dict[str, str]] = [{"role": "system", "content": instruction_for(request)}]
        messages.extend({"role": t.role, "content": t.content} for t in request.history)
        messages.append({"role": "user", "content": render_user_message(request)})
        if request.prefill:
            messages.append({"role": "assistant", "content": request.prefill})
        return {
            "model": self.endpoint.model or DEFAULT_OLLAMA_MODEL,
            "messages": messages,
            "stream": True,
            "options": {"num_predict": self.endpoint.max_tokens},
        }

    async def stream(self, request: Request) -> AsyncIterator[Fragment]:
        name = self.profile.name
        base = ensure_secure_url(self.endpoint.base_url, name, allow_loopback_http=True)
        ensure_prompt_size(request, self.profile)

        with transport_errors(name):
            async with self._client.stream(
                "POST",
                endpoint_url(base, CHAT_PATH),
                json=self.build_body(request),
                timeout=httpx.Timeout(self.endpoint.timeout_seconds, connect=5.0),
            ) as response:
                await raise_for_status(response, name)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    payload = decode_json_event(line, name)
                    if "error" in payload:
                        raise stream_error(str(payload["error"]), name)
                    content = (payload.get("message") or {}).get("content")
                    if content:
                        yield Fragment(text=str(content))
                    if payload.get("done"):
                        if "eval_count" in payload:
                            yield Fragment(output_tokens=int(payload["eval_count"]))
                        return
        raise TruncatedStreamError(f"{name} stream ended before done=true", provider=name)

    async def health(self) -> bool:
        try:
            base = ensure_secure_url(self.endpoint.base_url, self.profile.name, allow_loopback_http=True)
            response = await self._client.get(endpoint_url(base, TAGS_PATH), timeout=HEALTH_TIMEOUT_SECONDS)
        except (httpx.HTTPError, MalformedRequestError) as exc:
            logger.debug("Ollama health probe failed: %s", exc)
            return False
        return response.status_code == 200
