"""Shared plumbing for CLI commands: settings, error rendering, routing."""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Coroutine, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

from nexus_forge.ai.providers import make_client
from nexus_forge.ai.router import ProviderRouter
from nexus_forge.ai.types import Request, RouterConfig
from nexus_forge.config import Settings, load_settings, router_config_from_settings
from nexus_forge.core.embedder import HashingEmbedder
from nexus_forge.core.git import GitError
from nexus_forge.errors import NexusError

console = Console()
err_console = Console(stderr=True)


@dataclass
class CliState:
    verbose: bool = False
    config_path: Path | None = None
    _settings: Settings | None = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = load_settings(self.config_path)
        return self._settings

    def router_config(self) -> RouterConfig:
        return router_config_from_settings(self.settings)

    def embedder(self) -> HashingEmbedder:
        return HashingEmbedder(self.settings.index.dimension)


state = CliState()


def configure(verbose: bool, config_path: Path | None) -> None:
    state.verbose = verbose
    state.config_path = config_path
    state._settings = None
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    root.addHandler(RichHandler(console=err_console, show_path=False, rich_tracebacks=False))
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.INFO if verbose else logging.WARNING)


def report_error(exc: Exception) -> None:
    kind = exc.kind if isinstance(exc, NexusError) else "git"
    line = Text("error", style="bold red")
    line.append(f"[{kind}]", style="bold red")
    line.append(f": {exc}")
    err_console.print(line, highlight=False)
    hint = exc.hint if isinstance(exc, NexusError) else None
    if hint:
        err_console.print(Text(f"  hint: {hint}", style="dim"))


@contextmanager
def handled_errors() -> Iterator[None]:
    """Turn domain errors into a one-line report and exit code 1."""
    try:
        yield
    except (NexusError, GitError) as exc:
        report_error(exc)
        raise typer.Exit(1) from None


def run(factory: Callable[[], Coroutine[Any, Any, None]]) -> None:
    try:
        with handled_errors():
            asyncio.run(factory())
    except KeyboardInterrupt:
        err_console.print("[yellow]interrupted[/yellow]")
        raise typer.Exit(130) from None


def read_input_file(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        err_console.print(f"[red]File not found:[/red] {path}")
        raise typer.Exit(1) from None
    except (OSError, UnicodeDecodeError) as exc:
        err_console.print(f"[red]Cannot read {path}:[/red] {exc}")
        raise typer.Exit(1) from None


def write_output(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
    err_console.print(f"[green]Wrote[/green] {path}")


@asynccontextmanager
async def open_router() -> AsyncIterator[ProviderRouter]:
    config = state.router_config()
    async with make_client() as client:
        yield ProviderRouter.from_config(config, client)


async def stream_request(router: ProviderRouter, request: Request, output: Path | None = None) -> str:
    """Print fragments as they arrive (or buffer them for ``output``) and return the full text."""
    async with router.stream(request) as stream:
        async for fragment in stream:
            if output is None:
                console.print(fragment, end="", markup=False, highlight=False, soft_wrap=True)
        if output is None:
            console.print()
        else:
            write_output(output, stream.text)
        if state.verbose and stream.response is not None:
            response = stream.response
            err_console.print(
                f"[dim]{response.backend} · {response.attempts} attempt(s) · {response.byte_count} bytes[/dim]"
            )
        return stream.text
