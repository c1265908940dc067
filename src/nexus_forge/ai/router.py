"""Provider selection, retry and fallback for streamed AI requests.

Each request walks ``INIT -> SELECTING -> CALLING -> STREAMING`` and ends in
``COMPLETED``, ``FAILED`` or ``CANCELLED``; retryable failures pass through
``RETRYING`` back to ``CALLING``. Output from two providers is never mixed: a
retry after fragments were emitted resumes the same provider with the emitted
text as ``prefill``, and the one-time Direct to proxy fallback only happens
while nothing has been emitted.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import aclosing

import httpx

from nexus_forge.ai.providers import ClaudeProvider, OllamaProvider, Provider, ProxyProvider
from nexus_forge.ai.stream import ResponseStream
from nexus_forge.ai.types import ProviderKind, Request, Response, RouterConfig, RouterState
from nexus_forge.errors import NoProviderAvailable, ProviderError, RateLimitedError

logger = logging.getLogger(__name__)

MAX_RETRY_AFTER_SECONDS = 60.0

Sleep = Callable[[float], Awaitable[None]]


class RequestRateLimiter:
    """Sliding one-minute window of request start times."""

    def __init__(self, per_minute: int, sleep: Sleep, clock: Callable[[], float] = time.monotonic) -> None:
        self.per_minute = per_minute
        self._sleep = sleep
        self._clock = clock
        self._starts: deque[float] = deque()

    async def acquire(self) -> None:
        now = self._clock()
        while self._starts and now - self._starts[0] >= 60.0:
            self._starts.popleft()
        if len(self._starts) >= self.per_minute:
            wait = 60.0 - (now - self._starts[0])
            logger.info("Client-side rate limit reached, waiting %.1fs", wait)
            await self._sleep(wait)
            self._starts.popleft()
        self._starts.append(self._clock())


class ProviderRouter:
    def __init__(
        self,
        config: RouterConfig,
        providers: dict[ProviderKind, Provider],
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.providers = providers
        self._sleep = sleep
        self._limiters = {
            kind: RequestRateLimiter(provider.profile.requests_per_minute, sleep)
            for kind, provider in providers.items()
            if provider.profile.requests_per_minute
        }

    @classmethod
    def from_config(cls, config: RouterConfig, client: httpx.AsyncClient) -> "ProviderRouter":
        providers: dict[ProviderKind, Provider] = {
            ProviderKind.DIRECT: ClaudeProvider(client, config.api_key, config.claude),
            ProviderKind.PROXY: ProxyProvider(client, config.proxy),
            ProviderKind.LOCAL: OllamaProvider(client, config.ollama),
        }
        return cls(config, providers)

    async def select(self, request: Request) -> Provider:
        """Direct when a key is configured, else a preferred and healthy local server, else the proxy."""
        operation = request.operation
        direct = self.providers.get(ProviderKind.DIRECT)
        if self.config.has_direct_key and direct is not None and direct.profile.supports(operation):
            return direct

        chosen: Provider | None = None
        local = self.providers.get(ProviderKind.LOCAL)
        if self.config.default_provider == "ollama" and local is not None and await local.health():
            chosen = local
        else:
            chosen = self.providers.get(ProviderKind.PROXY)

        if chosen is None:
            raise NoProviderAvailable(f"No provider can serve '{operation.value}'")
        if not chosen.profile.supports(operation):
            raise NoProviderAvailable(f"{chosen.profile.name} does not support '{operation.value}'")
        return chosen

    def stream(self, request: Request) -> ResponseStream:
        return ResponseStream(request, lambda s: self._drive(request, s))

    async def complete(self, request: Request) -> Response:
        """Run ``request`` to completion; provider failures are reported in the response."""
        return await self.stream(request).collect()

    def backoff_delay(self, retry_number: int, error: ProviderError) -> float:
        delay = min(self.config.backoff_max_seconds, self.config.backoff_base_seconds * 2 ** (retry_number - 1))
        if isinstance(error, RateLimitedError) and error.retry_after is not None:
            delay = max(delay, min(error.retry_after, MAX_RETRY_AFTER_SECONDS))
        return delay

    def _fallback_for(self, provider: Provider, stream: ResponseStream, proxy_tried: bool) -> Provider | None:
        if provider.profile.kind is not ProviderKind.DIRECT or stream.emitted or proxy_tried:
            return None
        proxy = self.providers.get(ProviderKind.PROXY)
        if proxy is None or not proxy.profile.supports(stream.request.operation):
            return None
        return proxy

    async def _drive(self, request: Request, stream: ResponseStream) -> AsyncGenerator[str, None]:
        stream.state = RouterState.SELECTING
        provider = await self.select(request)
        proxy_tried = provider.profile.kind is ProviderKind.PROXY
        retries = 0
        current = request

        while True:
            limiter = self._limiters.get(provider.profile.kind)
            if limiter is not None:
                await limiter.acquire()
            stream.begin_attempt(provider.profile.name)
            logger.debug("Attempt %d on %s for %s", stream.attempts, provider.profile.name, request.operation.value)
            try:
                async with aclosing(provider.stream(current)) as fragments:
                    async for fragment in fragments:
                        if fragment.output_tokens is not None:
                            stream.record_tokens(fragment.output_tokens)
                        if fragment.text:
                            stream.state = RouterState.STREAMING
                            yield fragment.text
                return
            except ProviderError as exc:
                if not exc.retryable:
                    logger.info("%s failed with %s; not retrying", provider.profile.name, exc.kind)
                    raise
                if retries < self.config.max_retries:
                    retries += 1
                    delay = self.backoff_delay(retries, exc)
                    stream.state = RouterState.RETRYING
                    logger.warning(
                        "%s: %s (retry %d/%d in %.2fs)",
                        provider.profile.name,
                        exc,
                        retries,
                        self.config.max_retries,
                        delay,
                    )
                    await self._sleep(delay)
                    if stream.emitted:
                        current = request.resumed(stream.text)
                    continue
                fallback = self._fallback_for(provider, stream, proxy_tried)
                if fallback is None:
                    raise
                logger.warning("%s exhausted its retries; falling back to %s", provider.profile.name, fallback.profile.name)
                provider = fallback
                proxy_tried = True
                retries = 0
                current = request
