from pathlib import Path
from typing import Annotated

import typer

from nexus_forge.ai.types import OperationKind, Request
from nexus_forge.cli.common import console, err_console, open_router, run, stream_request
from nexus_forge.core.git import GitDiff, GitError, commit as git_commit, get_diff

MAX_DIFF_BYTES = 200_000


def clean_commit_message(text: str) -> str:
    """Strip code fences and surrounding blank lines from a generated message."""
    lines = [line for line in text.strip().splitlines() if not line.strip().startswith("```")]
    return "\n".join(lines).strip()


def _diff_context(diff: GitDiff) -> str:
    data = diff.text.encode("utf-8")
    if len(data) <= MAX_DIFF_BYTES:
        return diff.text
    return data[:MAX_DIFF_BYTES].decode("utf-8", errors="ignore") + "\n... (diff truncated)\n"


def commit(
    staged: Annotated[bool, typer.Option("--staged", "-s", help="Only use staged changes.")] = False,
    execute: Annotated[bool, typer.Option("--execute", "-x", help="Run `git commit` with the message.")] = False,
) -> None:
    """Write a commit message for the current changes."""

    async def _run() -> None:
        diff = get_diff(Path.cwd(), staged=True)
        if diff.is_empty and not staged:
            if execute:
                raise GitError("Nothing staged to commit; run `git add` first")
            diff = get_diff(Path.cwd(), staged=False)
        if diff.is_empty:
            console.print("No changes to describe.")
            return

        request = Request(
            operation=OperationKind.COMMIT,
            prompt=f"Write a commit message for changes to {len(diff.files)} file(s).",
            context=_diff_context(diff),
        )
        async with open_router() as router:
            message = clean_commit_message(await stream_request(router, request))

        if execute:
            if not message:
                raise GitError("Generated commit message is empty")
            revision = git_commit(diff.repo_root, message)
            err_console.print(f"[green]Committed[/green] {revision[:12]}")

    run(_run)


def diff(
    file: Annotated[str | None, typer.Argument(help="Limit the diff to this path.")] = None,
    staged: Annotated[bool, typer.Option("--staged", "-s", help="Explain staged changes.")] = False,
) -> None:
    """Summarise the working-tree (or staged) diff."""

    async def _run() -> None:
        changes = get_diff(Path.cwd(), staged=staged, paths=[file] if file else None)
        if changes.is_empty:
            console.print("No changes.")
            return
        request = Request(
            operation=OperationKind.DIFF,
            prompt="Explain these changes: " + ", ".join(changes.files),
            context=_diff_context(changes),
        )
        async with open_router() as router:
            await stream_request(router, request)

    run(_run)
