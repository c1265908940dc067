"""One-shot AI operations: each builds a ``Request`` and streams the answer."""

import logging
from enum import Enum
from pathlib import Path
from typing import Annotated

import typer

from nexus_forge.ai.context import ContextBuilder
from nexus_forge.ai.types import OperationKind, Request
from nexus_forge.cli.common import err_console, open_router, read_input_file, run, state, stream_request
from nexus_forge.cli.index import search_repository
from nexus_forge.core.discovery import discover_files
from nexus_forge.core.languages import detect_language_from_path
from nexus_forge.errors import SearchError

logger = logging.getLogger(__name__)

ASK_CONTEXT_HITS = 8
MAX_REVIEW_LINES = 2000

OutputOption = Annotated[Path | None, typer.Option("--output", "-o", help="Write the result to this file.")]


class Depth(str, Enum):
    BRIEF = "brief"
    DETAILED = "detailed"
    EXPERT = "expert"


def _language_of(path: Path) -> str | None:
    try:
        return detect_language_from_path(path)
    except ValueError:
        return None


def _file_block(path: Path) -> str:
    return f"// File: {path}\n{read_input_file(path)}"


def _execute(request: Request, output: Path | None = None) -> None:
    async def _run() -> None:
        async with open_router() as router:
            await stream_request(router, request, output)

    run(_run)


def generate(
    description: Annotated[str, typer.Argument(help="What the code should do.")],
    output: OutputOption = None,
    language: Annotated[str | None, typer.Option("--language", "-l", help="Target language.")] = None,
) -> None:
    """Generate code from a description."""
    if language is None and output is not None:
        language = _language_of(output)
    _execute(Request(operation=OperationKind.GENERATE, prompt=description, language=language), output)


def ask(
    question: Annotated[str, typer.Argument(help="Question about the codebase.")],
    no_context: Annotated[bool, typer.Option("--no-context", help="Do not attach indexed code excerpts.")] = False,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Number of excerpts to attach.", min=1)] = ASK_CONTEXT_HITS,
    repo: Annotated[Path, typer.Option(help="Repository root.")] = Path("."),
) -> None:
    """Ask a question, answered with excerpts from the semantic index."""

    async def _run() -> None:
        context: str | None = None
        if not no_context:
            try:
                hits = await search_repository(repo.resolve(), question, limit)
            except SearchError as exc:
                err_console.print(f"[yellow]Answering without code context:[/yellow] {exc}")
                hits = []
            builder = ContextBuilder()
            builder.add_hits(hits)
            context = builder.build() or None
            logger.debug("Attached %d excerpt(s) to the question", len(hits))
        request = Request(operation=OperationKind.ASK, prompt=question, context=context)
        async with open_router() as router:
            await stream_request(router, request)

    run(_run)


def explain(
    target: Annotated[str, typer.Argument(help="File to explain, or a code snippet.")],
    depth: Annotated[Depth, typer.Option("--depth", "-d", help="Level of detail.")] = Depth.DETAILED,
) -> None:
    """Explain a file or snippet."""
    path = Path(target)
    if path.is_file():
        code, language = _file_block(path), _language_of(path)
    else:
        code, language = target, None
    prompt = f"Explain this code. Depth: {depth.value}."
    _execute(Request(operation=OperationKind.EXPLAIN, prompt=prompt, context=code, language=language))


def _review_files(paths: list[Path]) -> list[Path]:
    """Expand directories into the indexable files beneath them."""
    options = state.settings.index_options()
    files: list[Path] = []
    for path in paths:
        if not path.is_dir():
            files.append(path)
            continue
        found = discover_files(path, options.exclude_patterns, options.max_file_size)
        files.extend(path / record.path for record in found.records)
    return files


def _review_context(files: list[Path]) -> str:
    blocks: list[str] = []
    total_lines = 0
    for file in files:
        content = read_input_file(file)
        total_lines += len(content.splitlines())
        if blocks and total_lines > MAX_REVIEW_LINES:
            err_console.print(f"[yellow]Limiting review to {len(blocks)} file(s) of {len(files)}[/yellow]")
            break
        blocks.append(f"// File: {file}\n{content}")
    return "\n\n".join(blocks)


def review(
    paths: Annotated[list[Path], typer.Argument(help="Files or directories to review.")],
    focus: Annotated[list[str] | None, typer.Option("--focus", "-f", help="Areas to focus on (repeatable).")] = None,
) -> None:
    """Review files for bugs, security issues and style."""
    files = _review_files(paths)
    if not files:
        err_console.print(f"[red]No supported source files under:[/red] {', '.join(str(p) for p in paths)}")
        raise typer.Exit(1)
    context = _review_context(files)
    prompt = "Review the following code."
    if focus:
        prompt += f" Focus on: {', '.join(focus)}."
    language = _language_of(files[0]) if len(files) == 1 else None
    _execute(Request(operation=OperationKind.REVIEW, prompt=prompt, context=context, language=language))


def fix(
    file: Annotated[Path, typer.Argument(help="File to fix.")],
    error: Annotated[str | None, typer.Option("--error", "-e", help="Error message or symptom.")] = None,
    output: OutputOption = None,
) -> None:
    """Fix bugs in a file."""
    prompt = f"Fix this error: {error}" if error else "Find and fix the bugs in this code."
    request = Request(operation=OperationKind.FIX, prompt=prompt, context=_file_block(file), language=_language_of(file))
    _execute(request, output)


def test(
    file: Annotated[Path, typer.Argument(help="File to write tests for.")],
    output: OutputOption = None,
) -> None:
    """Generate unit tests for a file."""
    request = Request(
        operation=OperationKind.TEST,
        prompt="Write thorough unit tests for this code.",
        context=_file_block(file),
        language=_language_of(file),
    )
    _execute(request, output)


def doc(
    file: Annotated[Path, typer.Argument(help="File to document.")],
    output: OutputOption = None,
    inline: Annotated[bool, typer.Option("--inline", help="Rewrite the file in place.")] = False,
) -> None:
    """Add documentation comments to a file."""
    request = Request(
        operation=OperationKind.DOC,
        prompt="Document every public item in this code.",
        context=read_input_file(file),
        language=_language_of(file),
    )
    _execute(request, file if inline else output)


def refactor(
    paths: Annotated[list[Path], typer.Argument(help="Files to refactor.")],
    description: Annotated[str, typer.Option("--description", "-d", help="The refactoring to perform.")],
    output: OutputOption = None,
) -> None:
    """Refactor files according to a description."""
    context = "\n\n".join(_file_block(p) for p in paths)
    language = _language_of(paths[0]) if len(paths) == 1 else None
    request = Request(operation=OperationKind.REFACTOR, prompt=description, context=context, language=language)
    _execute(request, output)


def convert(
    file: Annotated[Path, typer.Argument(help="File to convert.")],
    to: Annotated[str, typer.Option("--to", "-t", "--language", "-l", help="Target language.")],
    output: OutputOption = None,
) -> None:
    """Convert a file to another language."""
    source_language = _language_of(file) or "unknown"
    request = Request(
        operation=OperationKind.CONVERT,
        prompt=f"Convert this {source_language} code to {to}.",
        context=read_input_file(file),
        language=to,
    )
    _execute(request, output)


def optimize(
    file: Annotated[Path, typer.Argument(help="File to optimize.")],
    focus: Annotated[str | None, typer.Option("--focus", "-f", help="performance, memory, readability ...")] = None,
    output: OutputOption = None,
) -> None:
    """Optimize a file for speed, memory or readability."""
    prompt = f"Optimize this code for {focus}." if focus else "Optimize this code."
    request = Request(
        operation=OperationKind.OPTIMIZE,
        prompt=prompt,
        context=read_input_file(file),
        language=_language_of(file),
    )
    _execute(request, output)
