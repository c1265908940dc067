"""Slice parse trees into retrieval chunks.

Chunk identity is content-addressed: the id hashes the file path, the byte
range and the chunk text, so re-parsing unchanged bytes always yields the same
ids while any edit inside a range yields a new one.
"""

import hashlib
from pathlib import PurePosixPath

from nexus_forge.core.grammars import Grammar, get_grammar
from nexus_forge.models import Chunk, ChunkKind, ParseTree, SyntaxNode

DEFAULT_MIN_NESTED_LINES = 5
MIN_COMMENT_BLOCK_LINES = 3


def make_chunk_id(path: str, start_byte: int, end_byte: int, text: str) -> str:
    text_hash = hashlib.sha256(text.encode("utf-8")).hexdigest()
    h = hashlib.sha256()
    h.update(b"P|" + path.encode("utf-8"))
    h.update(f"|R|{start_byte}:{end_byte}".encode())
    h.update(b"|T|" + text_hash.encode("ascii"))
    return h.hexdigest()[:32]


def _last_row(node: SyntaxNode) -> int:
    # Nodes that swallow their trailing newline end at column 0 of the next row.
    if node.end_point.column == 0 and node.end_point.row > node.start_point.row:
        return node.end_point.row - 1
    return node.end_point.row


def _line_span(node: SyntaxNode) -> int:
    return _last_row(node) - node.start_point.row + 1


class _ChunkBuilder:
    def __init__(self, tree: ParseTree, grammar: Grammar, min_nested_lines: int) -> None:
        self.source = tree.source
        self.grammar = grammar
        self.min_nested_lines = min_nested_lines
        self.chunks: list[Chunk] = []
        self.declaration_count = 0

    def text(self, start_byte: int, end_byte: int) -> str:
        return self.source.content[start_byte:end_byte].decode("utf-8", errors="replace")

    def emit(
        self,
        symbol: str,
        kind: ChunkKind,
        start_byte: int,
        end_byte: int,
        start_row: int,
        end_row: int,
        parent_id: str | None = None,
    ) -> Chunk:
        text = self.text(start_byte, end_byte)
        chunk = Chunk(
            id=make_chunk_id(self.source.path, start_byte, end_byte, text),
            symbol=symbol,
            kind=kind,
            text=text,
            path=self.source.path,
            start_byte=start_byte,
            end_byte=end_byte,
            start_line=start_row + 1,
            end_line=end_row + 1,
            language=self.source.language,
            parent_id=parent_id,
        )
        self.chunks.append(chunk)
        return chunk

    def walk(self, nodes: list[SyntaxNode], parent_id: str | None, top_level: bool) -> None:
        for node in nodes:
            if node.type in self.grammar.comments:
                continue
            kind = self.grammar.classify(node.type)
            if kind is None:
                self.walk(node.children or [], parent_id, top_level)
                continue
            if node.has_error:
                continue
            if top_level or _line_span(node) >= self.min_nested_lines:
                chunk = self.emit(
                    node.name or f"<anonymous {node.type}>",
                    kind,
                    node.start_byte,
                    node.end_byte,
                    node.start_point.row,
                    _last_row(node),
                    parent_id,
                )
                self.declaration_count += 1
                self.walk(node.children or [], chunk.id, False)
            else:
                self.walk(node.children or [], parent_id, False)

    def comment_blocks(self, nodes: list[SyntaxNode]) -> None:
        run: list[SyntaxNode] = []
        for node in nodes:
            if node.type in self.grammar.comments:
                if run and node.start_point.row > _last_row(run[-1]) + 1:
                    self._flush_comments(run)
                    run = []
                run.append(node)
                continue
            self._flush_comments(run)
            run = []
            if self.grammar.classify(node.type) is None:
                self.comment_blocks(node.children or [])
        self._flush_comments(run)

    def _flush_comments(self, run: list[SyntaxNode]) -> None:
        if not run:
            return
        first, last = run[0], run[-1]
        if _last_row(last) - first.start_point.row + 1 < MIN_COMMENT_BLOCK_LINES:
            return
        self.emit(
            f"comment:L{first.start_point.row + 1}",
            ChunkKind.COMMENT_BLOCK,
            first.start_byte,
            last.end_byte,
            first.start_point.row,
            _last_row(last),
        )

    def module(self) -> None:
        content = self.source.content
        line_count = max(1, len(content.splitlines()))
        self.emit(PurePosixPath(self.source.path).name, ChunkKind.MODULE, 0, len(content), 0, line_count - 1)


def chunk(tree: ParseTree, min_nested_lines: int = DEFAULT_MIN_NESTED_LINES) -> list[Chunk]:
    """Return the chunks of ``tree`` ordered by start byte.

    Top-level declarations always become chunks; nested ones only when they
    span at least ``min_nested_lines`` lines, with ``parent_id`` pointing at
    the nearest emitted enclosing chunk. Declarations containing syntax errors
    are skipped. A clean file without declarations becomes one module chunk;
    a broken one yields nothing.
    """
    builder = _ChunkBuilder(tree, get_grammar(tree.source.language), min_nested_lines)
    top_nodes = tree.root.children or []
    builder.walk(top_nodes, None, True)

    if builder.declaration_count:
        builder.comment_blocks(top_nodes)
    elif tree.error_count == 0:
        builder.module()

    unique = {c.id: c for c in reversed(builder.chunks)}
    return sorted(unique.values(), key=lambda c: (c.start_byte, -c.end_byte, c.id))
