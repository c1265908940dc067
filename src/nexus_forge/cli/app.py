from pathlib import Path
from typing import Annotated

import typer

from nexus_forge import __version__
from nexus_forge.cli import ops
from nexus_forge.cli.chat import chat
from nexus_forge.cli.common import configure
from nexus_forge.cli.index import index, search
from nexus_forge.cli.manage import config_app, info, init, update
from nexus_forge.cli.vcs import commit, diff

app = typer.Typer(
    name="nexus",
    help="NEXUS AI Forge: AI-assisted code generation, review and semantic search.",
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"nexus-forge {__version__}")
        raise typer.Exit()


@app.callback()
def root(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Verbose logging on stderr.")] = False,
    config: Annotated[Path | None, typer.Option("--config", "-c", help="Path to a config.toml.")] = None,
    version: Annotated[
        bool, typer.Option("--version", callback=_version_callback, is_eager=True, help="Show version and exit.")
    ] = False,
) -> None:
    configure(verbose, config)


app.command("generate")(ops.generate)
app.command("chat")(chat)
app.command("ask")(ops.ask)
app.command("explain")(ops.explain)
app.command("review")(ops.review)
app.command("fix")(ops.fix)
app.command("test")(ops.test)
app.command("commit")(commit)
app.command("doc")(ops.doc)
app.command("refactor")(ops.refactor)
app.command("search")(search)
app.command("index")(index)
app.command("diff")(diff)
app.command("convert")(ops.convert)
app.command("optimize")(ops.optimize)
app.command("init")(init)
app.command("update")(update)
app.command("info")(info)
app.add_typer(config_app, name="config")


def main() -> None:
    app()
