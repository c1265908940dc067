"""Tests for the HTTP provider adapters, driven through httpx.MockTransport."""

import json
from collections.abc import Callable

import httpx
import pytest

from nexus_forge.ai.providers import ClaudeProvider, OllamaProvider, ProxyProvider
from nexus_forge.ai.providers.base import ensure_secure_url, parse_retry_after
from nexus_forge.ai.types import EndpointSettings, Fragment, OperationKind, Request
from nexus_forge.errors import (
    AuthError,
    MalformedRequestError,
    RateLimitedError,
    TruncatedStreamError,
    UnreachableError,
)

CLAUDE = EndpointSettings(base_url="https://claude.test", model="claude-test", max_tokens=128)
PROXY = EndpointSettings(base_url="https://proxy.test")
OLLAMA = EndpointSettings(base_url="http://localhost:11434", model="codellama")


def _sse(*events: tuple[str, dict]) -> bytes:
    return "".join(f"event: {name}\ndata: {json.dumps(data)}\n\n" for name, data in events).encode()


def _client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _drain(fragments) -> list[Fragment]:
    return [fragment async for fragment in fragments]


def _request(**kwargs) -> Request:
    return Request(operation=OperationKind.GENERATE, prompt="add two numbers", language="python", **kwargs)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def test_ensure_secure_url() -> None:
    assert ensure_secure_url("https://example.com", "x").host == "example.com"
    assert ensure_secure_url("http://127.0.0.1:11434", "x", allow_loopback_http=True).port == 11434
    with pytest.raises(MalformedRequestError):
        ensure_secure_url("http://example.com", "x", allow_loopback_http=True)
    with pytest.raises(MalformedRequestError):
        ensure_secure_url("http://localhost:8080", "x")


def test_parse_retry_after() -> None:
    assert parse_retry_after("7") == 7.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


# ---------------------------------------------------------------------------
# Claude
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_claude_streams_text_deltas() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        body = _sse(
            ("message_start", {"type": "message_start"}),
            ("ping", {"type": "ping"}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "def "}}),
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "add"}}),
            ("message_delta", {"type": "message_delta", "usage": {"output_tokens": 2}}),
            ("message_stop", {"type": "message_stop"}),
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    async with _client(handler) as client:
        fragments = await _drain(ClaudeProvider(client, "sk-test", CLAUDE).stream(_request(prefill="# sum\n")))

    assert "".join(f.text for f in fragments) == "def add"
    assert fragments[-1].output_tokens == 2
    assert seen["url"] == "https://claude.test/v1/messages"
    assert seen["headers"]["x-api-key"] == "sk-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["body"]["stream"] is True
    assert seen["body"]["model"] == "claude-test"
    assert seen["body"]["messages"][-1] == {"role": "assistant", "content": "# sum"}


@pytest.mark.asyncio
async def test_claude_missing_message_stop_is_truncation() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            ("content_block_delta", {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "x"}}),
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        with pytest.raises(TruncatedStreamError):
            await _drain(ClaudeProvider(client, "sk-test", CLAUDE).stream(_request()))


@pytest.mark.asyncio
async def test_claude_error_event_is_typed() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(("error", {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}))
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        with pytest.raises(UnreachableError) as exc_info:
            await _drain(ClaudeProvider(client, "sk-test", CLAUDE).stream(_request()))
    assert exc_info.value.retryable


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "headers", "expected"),
    [
        (401, {}, AuthError),
        (429, {"retry-after": "3"}, RateLimitedError),
        (500, {}, UnreachableError),
        (400, {}, MalformedRequestError),
    ],
)
async def test_claude_status_mapping(status: int, headers: dict[str, str], expected: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": "nope"}, headers=headers)

    async with _client(handler) as client:
        with pytest.raises(expected) as exc_info:
            await _drain(ClaudeProvider(client, "sk-test", CLAUDE).stream(_request()))
    if expected is RateLimitedError:
        assert exc_info.value.retry_after == 3.0


@pytest.mark.asyncio
async def test_claude_without_key_is_auth_error() -> None:
    async with _client(lambda request: httpx.Response(200)) as client:
        provider = ClaudeProvider(client, None, CLAUDE)
        assert not await provider.health()
        with pytest.raises(AuthError):
            await _drain(provider.stream(_request()))


@pytest.mark.asyncio
async def test_claude_rejects_insecure_endpoint() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200)

    endpoint = EndpointSettings(base_url="http://claude.test")
    async with _client(handler) as client:
        with pytest.raises(MalformedRequestError):
            await _drain(ClaudeProvider(client, "sk-test", endpoint).stream(_request()))
    assert calls == []


@pytest.mark.asyncio
async def test_connect_error_is_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(UnreachableError):
            await _drain(ClaudeProvider(client, "sk-test", CLAUDE).stream(_request()))


# ---------------------------------------------------------------------------
# Proxy
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_proxy_streams_until_done_marker() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        body = b'data: {"text": "hello"}\n\ndata: {"text": " world"}\n\ndata: [DONE]\n\n'
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        fragments = await _drain(ProxyProvider(client, PROXY).stream(_request(prefill="he")))

    assert [f.text for f in fragments] == ["hello", " world"]
    assert seen["url"] == "https://proxy.test/api/stream"
    assert seen["body"]["operation"] == "generate"
    assert seen["body"]["language"] == "python"
    assert seen["body"]["resume_from"] == "he"


@pytest.mark.asyncio
async def test_proxy_error_payload_uses_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b'data: {"error": "quota", "status": 429}\n\n')

    async with _client(handler) as client:
        with pytest.raises(RateLimitedError):
            await _drain(ProxyProvider(client, PROXY).stream(_request()))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "expected"),
    [
        ('"rate_limited"', UnreachableError),
        ("null", UnreachableError),
        ('"401"', AuthError),
        ("400", MalformedRequestError),
    ],
)
async def test_proxy_error_payload_status_coercion(status: str, expected: type) -> None:
    body = f'data: {{"error": "quota", "status": {status}}}\n\n'.encode()

    async with _client(lambda request: httpx.Response(200, content=body)) as client:
        with pytest.raises(expected):
            await _drain(ProxyProvider(client, PROXY).stream(_request()))


@pytest.mark.asyncio
async def test_proxy_without_done_is_truncation() -> None:
    async with _client(lambda request: httpx.Response(200, content=b'data: {"text": "half"}\n\n')) as client:
        with pytest.raises(TruncatedStreamError):
            await _drain(ProxyProvider(client, PROXY).stream(_request()))


@pytest.mark.asyncio
async def test_proxy_rejects_oversized_prompt() -> None:
    async with _client(lambda request: httpx.Response(200)) as client:
        with pytest.raises(MalformedRequestError):
            await _drain(ProxyProvider(client, PROXY).stream(Request(operation=OperationKind.ASK, prompt="x" * 200_000)))


@pytest.mark.asyncio
async def test_proxy_health() -> None:
    async with _client(lambda request: httpx.Response(200 if request.url.path == "/health" else 404)) as client:
        assert await ProxyProvider(client, PROXY).health()
    async with _client(lambda request: httpx.Response(503)) as client:
        assert not await ProxyProvider(client, PROXY).health()


# ---------------------------------------------------------------------------
# Ollama
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_ollama_streams_ndjson() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        lines = [
            {"message": {"role": "assistant", "content": "return "}, "done": False},
            {"message": {"role": "assistant", "content": "a + b"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "eval_count": 5},
        ]
        return httpx.Response(200, content="\n".join(json.dumps(line) for line in lines).encode())

    async with _client(handler) as client:
        fragments = await _drain(OllamaProvider(client, OLLAMA).stream(_request()))

    assert "".join(f.text for f in fragments) == "return a + b"
    assert fragments[-1].output_tokens == 5
    assert seen["url"] == "http://localhost:11434/api/chat"
    assert seen["body"]["model"] == "codellama"
    assert seen["body"]["messages"][0]["role"] == "system"


@pytest.mark.asyncio
async def test_ollama_without_done_is_truncation() -> None:
    body = json.dumps({"message": {"content": "partial"}, "done": False}).encode()
    async with _client(lambda request: httpx.Response(200, content=body)) as client:
        with pytest.raises(TruncatedStreamError):
            await _drain(OllamaProvider(client, OLLAMA).stream(_request()))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("message", "expected", "retryable"),
    [
        ("model 'codellama' not found, try pulling it first", MalformedRequestError, False),
        ("invalid model name", MalformedRequestError, False),
        ("llama runner process has terminated", UnreachableError, True),
    ],
)
async def test_ollama_error_payload_classification(message: str, expected: type, retryable: bool) -> None:
    body = json.dumps({"error": message}).encode()
    async with _client(lambda request: httpx.Response(200, content=body)) as client:
        with pytest.raises(expected) as exc_info:
            await _drain(OllamaProvider(client, OLLAMA).stream(_request()))
    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_ollama_health() -> None:
    async with _client(lambda request: httpx.Response(200, json={"models": []})) as client:
        assert await OllamaProvider(client, OLLAMA).health()

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(refuse) as client:
        assert not await OllamaProvider(client, OLLAMA).health()
