import asyncio
from pathlib import Path
from typing import Annotated

import typer
from rich.progress import BarColumn, MofNCompleteColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from nexus_forge.cli.common import console, err_console, run, state
from nexus_forge.core.indexer import Indexer
from nexus_forge.core.search import SemanticSearch
from nexus_forge.models import ChunkKind, IndexStats, SearchHit
from nexus_forge.store import SqliteIndexStore, index_dir
from nexus_forge.watcher.watchfiles_adapter import WatchfilesWatcher

MAX_PROBLEMS_SHOWN = 20


def _render_stats(stats: IndexStats) -> None:
    table = Table(title="Index summary", show_header=False)
    table.add_column("metric")
    table.add_column("value", justify="right")
    table.add_row("files scanned", str(stats.files_scanned))
    table.add_row("files indexed", str(stats.files_indexed))
    table.add_row("files unchanged", str(stats.files_unchanged))
    table.add_row("files removed", str(stats.files_removed))
    table.add_row("chunks written", str(stats.chunks_written))
    table.add_row("chunks removed", str(stats.chunks_removed))
    table.add_row("recoverable errors", str(stats.recoverable_errors))
    table.add_row("fatal errors", str(stats.fatal_errors))
    table.add_row("full rebuild", "yes" if stats.full_rebuild else "no")
    table.add_row("duration", f"{stats.duration_ms} ms")
    console.print(table)

    if stats.problems:
        problems = Table(title="Problems")
        problems.add_column("path")
        problems.add_column("kind")
        problems.add_column("message")
        for problem in stats.problems[:MAX_PROBLEMS_SHOWN]:
            problems.add_row(problem.path, problem.kind, problem.message)
        console.print(problems)
        if len(stats.problems) > MAX_PROBLEMS_SHOWN:
            console.print(f"... and {len(stats.problems) - MAX_PROBLEMS_SHOWN} more")


def _render_hits(hits: list[SearchHit]) -> None:
    table = Table(show_lines=False)
    table.add_column("score", justify="right")
    table.add_column("kind")
    table.add_column("symbol")
    table.add_column("location")
    for hit in hits:
        table.add_row(
            f"{hit.score:.3f}",
            hit.kind.value,
            hit.symbol,
            f"{hit.path}:{hit.start_line}-{hit.end_line}",
        )
    console.print(table)
    console.print(f"({len(hits)} results)")


async def _index_with_progress(indexer: Indexer, root: Path, force: bool) -> IndexStats:
    with Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=err_console,
        transient=True,
    ) as progress:
        task = progress.add_task("Indexing", total=None)

        def _update(path: str, done: int, total: int) -> None:
            progress.update(task, completed=done, total=total, description=f"Indexing {path}")

        return await indexer.index(root, force=force, progress=_update)


def index(
    path: Annotated[Path, typer.Argument(help="Repository root to index.")] = Path("."),
    force: Annotated[bool, typer.Option("--force", "-f", help="Discard the existing index and rebuild.")] = False,
    watch: Annotated[bool, typer.Option("--watch", "-w", help="Keep running and re-index on file changes.")] = False,
    workers: Annotated[int | None, typer.Option(help="Parallel parse workers.", min=1)] = None,
) -> None:
    """Build or incrementally update the semantic index."""
    root = path.resolve()
    if not root.is_dir():
        err_console.print(f"[red]Not a directory:[/red] {root}")
        raise typer.Exit(1)

    async def _run() -> None:
        options = state.settings.index_options(workers)
        store = SqliteIndexStore.for_repository(root)
        indexer = Indexer(store, state.embedder(), options)
        try:
            stats = await _index_with_progress(indexer, root, force)
            _render_stats(stats)
            if not watch:
                return

            async def _on_change(paths: set[Path]) -> None:
                changed = await indexer.index(root)
                console.print(
                    f"[green]Re-indexed[/green] {changed.files_indexed} file(s), "
                    f"removed {changed.files_removed}, {changed.chunks_written} chunk(s) written"
                )

            watcher = WatchfilesWatcher(root, _on_change, options.exclude_patterns)
            await watcher.start()
            console.print(f"Watching {root} for changes (Ctrl-C to stop)")
            try:
                await watcher.wait()
            except asyncio.CancelledError:
                pass
            finally:
                await watcher.stop()
        finally:
            await store.dispose()

    run(_run)


async def search_repository(
    root: Path,
    query: str,
    limit: int,
    path_prefix: str | None = None,
    kinds: list[ChunkKind] | None = None,
) -> list[SearchHit]:
    store = SqliteIndexStore.for_repository(root, create=False)
    try:
        await store.ensure_ready()
        searcher = SemanticSearch(store, state.embedder(), state.settings.search_options(), ann_dir=index_dir(root))
        return await searcher.query(query, limit=limit, path_prefix=path_prefix, kinds=kinds)
    finally:
        await store.dispose()


def search(
    query: Annotated[str, typer.Argument(help="Natural-language or identifier query.")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max results to return.", min=1)] = 10,
    kind: Annotated[list[ChunkKind] | None, typer.Option("--kind", "-k", help="Only return these chunk kinds.")] = None,
    path_prefix: Annotated[str | None, typer.Option("--path", help="Only search under this relative path.")] = None,
    repo: Annotated[Path, typer.Option(help="Repository root.")] = Path("."),
) -> None:
    """Semantic search over the indexed repository."""
    root = repo.resolve()

    async def _run() -> None:
        hits = await search_repository(root, query, limit, path_prefix, kind)
        if not hits:
            console.print("No matches.")
            return
        _render_hits(hits)

    run(_run)
