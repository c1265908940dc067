"""Tests for provider selection, retry, fallback and cancellation."""

import asyncio
from collections.abc import AsyncIterator

import pytest

from nexus_forge.ai.router import ProviderRouter, RequestRateLimiter
from nexus_forge.ai.types import (
    Fragment,
    OperationKind,
    ProviderKind,
    ProviderProfile,
    Request,
    ResponseStatus,
    RouterConfig,
    RouterState,
)
from nexus_forge.errors import (
    AuthError,
    NoProviderAvailable,
    ProviderError,
    RateLimitedError,
    TruncatedStreamError,
    UnreachableError,
)


class FakeProvider:
    """Replays a script: each attempt yields its fragments, then raises its error (if any)."""

    def __init__(
        self,
        kind: ProviderKind,
        script: list[tuple[list[str], ProviderError | None]] | None = None,
        healthy: bool = True,
        capabilities: frozenset[OperationKind] | None = None,
    ) -> None:
        self.profile = ProviderProfile(
            name=kind.value,
            kind=kind,
            requires_key=kind is ProviderKind.DIRECT,
            **({"capabilities": capabilities} if capabilities is not None else {}),
        )
        self.script = list(script or [(["ok"], None)])
        self.healthy = healthy
        self.requests: list[Request] = []
        self.closed = 0

    async def stream(self, request: Request) -> AsyncIterator[Fragment]:
        self.requests.append(request)
        fragments, error = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        try:
            for text in fragments:
                yield Fragment(text=text)
                await asyncio.sleep(0)
            if error is not None:
                raise error
            yield Fragment(output_tokens=len(fragments))
        finally:
            self.closed += 1

    async def health(self) -> bool:
        return self.healthy


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _router(
    providers: list[FakeProvider],
    api_key: str | None = None,
    default_provider: str = "claude",
    max_retries: int = 3,
) -> tuple[ProviderRouter, RecordingSleep]:
    sleep = RecordingSleep()
    config = RouterConfig(api_key=api_key, default_provider=default_provider, max_retries=max_retries)
    return ProviderRouter(config, {p.profile.kind: p for p in providers}, sleep=sleep), sleep


def _request(operation: OperationKind = OperationKind.GENERATE) -> Request:
    return Request(operation=operation, prompt="write a function")


def _all() -> tuple[FakeProvider, FakeProvider, FakeProvider]:
    return FakeProvider(ProviderKind.DIRECT), FakeProvider(ProviderKind.PROXY), FakeProvider(ProviderKind.LOCAL)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def test_key_selects_direct() -> None:
    router, _ = _router(list(_all()), api_key="sk-test", default_provider="ollama")
    provider = asyncio.run(router.select(_request()))
    assert provider.profile.kind is ProviderKind.DIRECT


def test_blank_key_is_no_key() -> None:
    router, _ = _router(list(_all()), api_key="   ")
    provider = asyncio.run(router.select(_request()))
    assert provider.profile.kind is ProviderKind.PROXY


def test_preferred_and_healthy_local_is_chosen_without_key() -> None:
    router, _ = _router(list(_all()), default_provider="ollama")
    provider = asyncio.run(router.select(_request()))
    assert provider.profile.kind is ProviderKind.LOCAL


def test_unhealthy_local_falls_through_to_proxy() -> None:
    direct, proxy, _ = _all()
    local = FakeProvider(ProviderKind.LOCAL, healthy=False)
    router, _ = _router([direct, proxy, local], default_provider="ollama")
    provider = asyncio.run(router.select(_request()))
    assert provider.profile.kind is ProviderKind.PROXY


def test_no_candidate_raises_no_provider_available() -> None:
    router, _ = _router([FakeProvider(ProviderKind.DIRECT)])
    with pytest.raises(NoProviderAvailable) as exc_info:
        asyncio.run(router.select(_request()))
    assert exc_info.value.hint == "set ANTHROPIC_API_KEY or check network"


def test_unsupported_operation_raises_no_provider_available() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, capabilities=frozenset({OperationKind.CHAT}))
    router, _ = _router([proxy])
    response = asyncio.run(router.complete(_request(OperationKind.COMMIT)))
    assert response.status is ResponseStatus.FAILED
    assert response.error_kind == "router.no_provider"
    assert response.attempts == 0


# ---------------------------------------------------------------------------
# Streaming, retry and fallback
# ---------------------------------------------------------------------------


def test_successful_stream_collects_text_and_tokens() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, [(["fn ", "main()"], None)])
    router, sleep = _router([proxy])
    response = asyncio.run(router.complete(_request()))

    assert response.ok
    assert response.text == "fn main()"
    assert response.byte_count == len(b"fn main()")
    assert response.token_count == 2
    assert response.backend == "proxy"
    assert response.attempts == 1
    assert sleep.delays == []


def test_fatal_error_is_not_retried() -> None:
    direct = FakeProvider(ProviderKind.DIRECT, [([], AuthError("bad key"))])
    proxy = FakeProvider(ProviderKind.PROXY)
    router, sleep = _router([direct, proxy], api_key="sk-test")
    response = asyncio.run(router.complete(_request()))

    assert response.status is ResponseStatus.FAILED
    assert response.error_kind == "provider.auth"
    assert response.attempts == 1
    assert proxy.requests == []
    assert sleep.delays == []


def test_retryable_error_is_retried_up_to_max_retries() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, [([], UnreachableError("down"))])
    router, sleep = _router([proxy], max_retries=2)
    response = asyncio.run(router.complete(_request()))

    assert response.status is ResponseStatus.FAILED
    assert response.error_kind == "provider.unreachable"
    assert response.attempts == 3
    assert sleep.delays == [0.5, 1.0]


def test_retry_recovers() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, [([], UnreachableError("blip")), (["done"], None)])
    router, _ = _router([proxy])
    response = asyncio.run(router.complete(_request()))
    assert response.ok
    assert response.text == "done"
    assert response.attempts == 2


def test_direct_falls_back_to_proxy_once_when_nothing_emitted() -> None:
    direct = FakeProvider(ProviderKind.DIRECT, [([], UnreachableError("down"))])
    proxy = FakeProvider(ProviderKind.PROXY, [(["from proxy"], None)])
    router, _ = _router([direct, proxy], api_key="sk-test", max_retries=1)
    response = asyncio.run(router.complete(_request()))

    assert response.ok
    assert response.text == "from proxy"
    assert response.backend == "proxy"
    assert response.backends_tried == ["direct", "proxy"]
    assert len(direct.requests) == 2
    assert len(proxy.requests) == 1


def test_no_fallback_after_output_was_emitted() -> None:
    direct = FakeProvider(ProviderKind.DIRECT, [(["partial "], UnreachableError("reset"))])
    proxy = FakeProvider(ProviderKind.PROXY)
    router, _ = _router([direct, proxy], api_key="sk-test", max_retries=1)
    response = asyncio.run(router.complete(_request()))

    assert response.status is ResponseStatus.FAILED
    assert proxy.requests == []
    assert response.backends_tried == ["direct"]
    assert response.text.startswith("partial ")


def test_mid_stream_retry_resumes_with_prefill() -> None:
    proxy = FakeProvider(
        ProviderKind.PROXY,
        [(["def add(a, b):"], TruncatedStreamError("closed early")), (["\n    return a + b"], None)],
    )
    router, sleep = _router([proxy])
    response = asyncio.run(router.complete(_request()))

    assert response.ok
    assert response.text == "def add(a, b):\n    return a + b"
    assert proxy.requests[0].prefill == ""
    assert proxy.requests[1].prefill == "def add(a, b):"
    assert len(sleep.delays) == 1


def test_rate_limit_honours_retry_after() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, [([], RateLimitedError("slow down", retry_after=5.0)), (["ok"], None)])
    router, sleep = _router([proxy])
    response = asyncio.run(router.complete(_request()))
    assert response.ok
    assert sleep.delays == [5.0]


def test_backoff_delay_is_capped() -> None:
    router, _ = _router([FakeProvider(ProviderKind.PROXY)])
    error = UnreachableError("down")
    assert [router.backoff_delay(n, error) for n in range(1, 7)] == [0.5, 1.0, 2.0, 4.0, 8.0, 8.0]
    assert router.backoff_delay(1, RateLimitedError("slow", retry_after=600)) == 60.0


# ---------------------------------------------------------------------------
# Streaming interface and cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stream_yields_fragments_incrementally() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, [(["a", "b", "c"], None)])
    router, _ = _router([proxy])
    seen = []
    async with router.stream(_request()) as stream:
        async for fragment in stream:
            seen.append(fragment)
            assert stream.state is RouterState.STREAMING
    assert seen == ["a", "b", "c"]
    assert stream.response is not None
    assert stream.response.status is ResponseStatus.COMPLETED
    assert stream.state is RouterState.COMPLETED


@pytest.mark.asyncio
async def test_stream_raises_typed_error() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, [([], AuthError("nope"))])
    router, _ = _router([proxy])
    stream = router.stream(_request())
    with pytest.raises(AuthError):
        async for _ in stream:
            pass
    assert stream.state is RouterState.FAILED


@pytest.mark.asyncio
async def test_cancel_releases_provider_stream() -> None:
    proxy = FakeProvider(ProviderKind.PROXY, [(["one", "two", "three"], None)])
    router, _ = _router([proxy])
    stream = router.stream(_request())

    assert await stream.__anext__() == "one"
    await stream.aclose()

    assert proxy.closed == 1
    assert stream.state is RouterState.CANCELLED
    assert stream.response is not None
    assert stream.response.status is ResponseStatus.CANCELLED
    assert stream.response.text == "one"
    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_rate_limiter_waits_for_window() -> None:
    now = [0.0]
    sleep = RecordingSleep()
    limiter = RequestRateLimiter(2, sleep, clock=lambda: now[0])

    await limiter.acquire()
    now[0] = 10.0
    await limiter.acquire()
    now[0] = 20.0
    await limiter.acquire()
    assert sleep.delays == [40.0]

    now[0] = 100.0
    await limiter.acquire()
    assert sleep.delays == [40.0]
