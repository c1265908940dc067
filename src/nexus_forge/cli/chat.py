import asyncio
from typing import Annotated

import typer

from nexus_forge.ai.router import ProviderRouter
from nexus_forge.ai.types import ChatTurn, OperationKind, Request
from nexus_forge.cli.common import console, open_router, report_error, run, stream_request
from nexus_forge.errors import NexusError

EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}
CLEAR_COMMAND = "/clear"
# A turn is one user message plus its answer.
MAX_HISTORY_TURNS = 20


async def _read_line() -> str | None:
    try:
        return await asyncio.to_thread(console.input, "[bold cyan]you>[/bold cyan] ")
    except EOFError:
        return None


async def _chat_turn(router: ProviderRouter, history: list[ChatTurn], prompt: str) -> None:
    request = Request(operation=OperationKind.CHAT, prompt=prompt, history=tuple(history[-2 * MAX_HISTORY_TURNS :]))
    try:
        answer = await stream_request(router, request)
    except NexusError as exc:
        # A failed turn is reported and left out of the history; the session goes on.
        report_error(exc)
        return
    history.append(ChatTurn(role="user", content=prompt))
    history.append(ChatTurn(role="assistant", content=answer))


def chat(
    prompt: Annotated[str | None, typer.Argument(help="Optional first message.")] = None,
) -> None:
    """Interactive chat session (type /exit to leave, /clear to forget history)."""

    async def _run() -> None:
        history: list[ChatTurn] = []
        async with open_router() as router:
            pending = prompt
            while True:
                line = pending if pending is not None else await _read_line()
                pending = None
                if line is None:
                    break
                line = line.strip()
                if not line:
                    continue
                if line in EXIT_COMMANDS:
                    break
                if line == CLEAR_COMMAND:
                    history.clear()
                    console.print("[dim]history cleared[/dim]")
                    continue
                await _chat_turn(router, history, line)

    run(_run)
