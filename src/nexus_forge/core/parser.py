import hashlib
from pathlib import Path

from nexus_forge.core.grammars import get_grammar
from nexus_forge.core.languages import detect_language_from_path, normalize_language
from nexus_forge.errors import FatalParseError
from nexus_forge.models import ParseTree, SourceFile

_BINARY_SNIFF_BYTES = 8192


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def read_source(path: Path, root: Path | None = None, language: str | None = None) -> SourceFile:
    """Snapshot ``path`` as a ``SourceFile`` with a repo-relative POSIX path."""
    rel_path = path.relative_to(root).as_posix() if root is not None else path.as_posix()
    try:
        resolved_language = normalize_language(language) if language else detect_language_from_path(path)
    except ValueError as exc:
        raise FatalParseError(rel_path, str(exc)) from None

    try:
        stat = path.stat()
        content = path.read_bytes()
    except OSError as exc:
        raise FatalParseError(rel_path, f"unreadable: {exc.strerror or exc}") from None

    if b"\x00" in content[:_BINARY_SNIFF_BYTES]:
        raise FatalParseError(rel_path, "binary content")

    return SourceFile(
        path=rel_path,
        language=resolved_language,
        content=content,
        mtime_ns=stat.st_mtime_ns,
        content_hash=content_hash(content),
    )


def parse_source(source: SourceFile) -> ParseTree:
    try:
        grammar = get_grammar(source.language)
    except ValueError as exc:
        raise FatalParseError(source.path, str(exc)) from None

    try:
        root, error_count = grammar.parse(source.content)
    except RecursionError:
        raise FatalParseError(source.path, "syntax tree too deep") from None

    return ParseTree(source=source, root=root, error_count=error_count)


def parse_file(path: Path, root: Path | None = None, language: str | None = None) -> ParseTree:
    return parse_source(read_source(path, root, language))
