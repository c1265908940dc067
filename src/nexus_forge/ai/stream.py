import asyncio
from collections.abc import AsyncGenerator, Callable
from types import TracebackType

from nexus_forge.ai.types import Request, Response, ResponseStatus, RouterState
from nexus_forge.errors import NexusError

_TERMINAL_STATES = {
    ResponseStatus.COMPLETED: RouterState.COMPLETED,
    ResponseStatus.FAILED: RouterState.FAILED,
    ResponseStatus.CANCELLED: RouterState.CANCELLED,
}


class ResponseStream:
    """Single-pass, cancellable sequence of text fragments for one request.

    Fragments are produced only when the consumer asks for the next one.
    Iteration raises the typed failure that ended the request; ``response``
    then holds the terminal state together with every fragment already
    emitted. ``aclose()`` (or cancelling the consuming task) stops the backend
    stream and releases its connection.
    """

    def __init__(self, request: Request, driver: Callable[["ResponseStream"], AsyncGenerator[str, None]]) -> None:
        self.request = request
        self.state = RouterState.INIT
        self.attempts = 0
        self.backend: str | None = None
        self.backends_tried: list[str] = []
        self.token_count: int | None = None
        self._parts: list[str] = []
        self._response: Response | None = None
        self._gen = driver(self)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def emitted(self) -> bool:
        return bool(self._parts)

    @property
    def response(self) -> Response | None:
        return self._response

    def begin_attempt(self, backend: str) -> None:
        self.attempts += 1
        self.backend = backend
        if not self.backends_tried or self.backends_tried[-1] != backend:
            self.backends_tried.append(backend)
        self.state = RouterState.CALLING

    def record_tokens(self, count: int) -> None:
        self.token_count = count

    def __aiter__(self) -> "ResponseStream":
        return self

    async def __anext__(self) -> str:
        if self._response is not None:
            raise StopAsyncIteration
        try:
            fragment = await self._gen.__anext__()
        except StopAsyncIteration:
            self._finish(ResponseStatus.COMPLETED)
            raise
        except asyncio.CancelledError:
            self._finish(ResponseStatus.CANCELLED)
            raise
        except NexusError as exc:
            self._finish(ResponseStatus.FAILED, exc)
            raise
        self._parts.append(fragment)
        return fragment

    async def aclose(self) -> None:
        if self._response is not None:
            return
        await self._gen.aclose()
        self._finish(ResponseStatus.CANCELLED)

    async def collect(self) -> Response:
        """Drain the stream; failures end up in the returned ``Response``."""
        try:
            async for _ in self:
                pass
        except NexusError:
            pass
        assert self._response is not None
        return self._response

    def _finish(self, status: ResponseStatus, error: NexusError | None = None) -> None:
        text = self.text
        self.state = _TERMINAL_STATES[status]
        self._response = Response(
            status=status,
            text=text,
            error=str(error) if error is not None else None,
            error_kind=error.kind if error is not None else None,
            hint=error.hint if error is not None else None,
            byte_count=len(text.encode("utf-8")),
            token_count=self.token_count,
            backend=self.backend,
            attempts=self.attempts,
            backends_tried=list(self.backends_tried),
        )

    async def __aenter__(self) -> "ResponseStream":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()
