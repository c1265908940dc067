"""Tests for turning parse trees into retrieval chunks."""

from nexus_forge.core.chunker import chunk, make_chunk_id
from nexus_forge.core.parser import content_hash, parse_source
from nexus_forge.models import ChunkKind, ParseTree, SourceFile

_SERVICE = '''\
class Service:
    """A service."""

    def start(self):
        self.running = True
        self.log("start")
        self.notify()
        return self

    def stop(self):
        self.running = False


def main():
    Service().start()
'''


def _tree(code: str, language: str = "python", path: str = "pkg/service.py") -> ParseTree:
    data = code.encode("utf-8")
    return parse_source(SourceFile(path=path, language=language, content=data, content_hash=content_hash(data)))


class TestChunkIds:
    def test_ids_are_stable_and_short(self) -> None:
        first = make_chunk_id("a.py", 0, 10, "def f(): 1")
        assert first == make_chunk_id("a.py", 0, 10, "def f(): 1")
        assert len(first) == 32

    def test_any_component_changes_the_id(self) -> None:
        base = make_chunk_id("a.py", 0, 10, "text")
        assert make_chunk_id("b.py", 0, 10, "text") != base
        assert make_chunk_id("a.py", 1, 10, "text") != base
        assert make_chunk_id("a.py", 0, 10, "other") != base

    def test_reparsing_same_bytes_yields_same_chunks(self) -> None:
        assert chunk(_tree(_SERVICE)) == chunk(_tree(_SERVICE))


class TestDeclarations:
    def test_top_level_and_long_nested_declarations(self) -> None:
        chunks = chunk(_tree(_SERVICE))

        assert [(c.symbol, c.kind) for c in chunks] == [
            ("Service", ChunkKind.CLASS),
            ("start", ChunkKind.FUNCTION),
            ("main", ChunkKind.FUNCTION),
        ]
        service, start, main = chunks
        assert start.parent_id == service.id
        assert main.parent_id is None
        assert service.start_line == 1
        assert start.start_line == 4
        assert start.end_line == 8
        assert main.text.startswith("def main():")

    def test_min_nested_lines_controls_short_methods(self) -> None:
        symbols = [c.symbol for c in chunk(_tree(_SERVICE), min_nested_lines=1)]
        assert symbols == ["Service", "start", "stop", "main"]

    def test_chunks_are_ordered_by_start_byte(self) -> None:
        chunks = chunk(_tree(_SERVICE), min_nested_lines=1)
        starts = [c.start_byte for c in chunks]
        assert starts == sorted(starts)

    def test_chunk_text_matches_byte_range(self) -> None:
        data = _SERVICE.encode("utf-8")
        for c in chunk(_tree(_SERVICE)):
            assert c.text == data[c.start_byte : c.end_byte].decode("utf-8")
            assert c.path == "pkg/service.py"
            assert c.language == "python"


class TestCommentsAndModules:
    def test_comment_block_of_three_lines(self) -> None:
        code = "# Licensed under MIT.\n# Copyright someone.\n# All rights reserved.\n\ndef f():\n    pass\n"
        chunks = chunk(_tree(code))

        assert [(c.symbol, c.kind) for c in chunks] == [
            ("comment:L1", ChunkKind.COMMENT_BLOCK),
            ("f", ChunkKind.FUNCTION),
        ]
        assert chunks[0].end_line == 3

    def test_short_comment_runs_are_ignored(self) -> None:
        code = "# one\n# two\n\ndef f():\n    pass\n"
        assert [c.kind for c in chunk(_tree(code))] == [ChunkKind.FUNCTION]

    def test_file_without_declarations_is_one_module_chunk(self) -> None:
        code = "import os\nprint(os.getcwd())\n"
        (module,) = chunk(_tree(code, path="scripts/run.py"))

        assert module.kind is ChunkKind.MODULE
        assert module.symbol == "run.py"
        assert module.text == code
        assert (module.start_line, module.end_line) == (1, 2)

    def test_empty_file_is_one_empty_module_chunk(self) -> None:
        (module,) = chunk(_tree("", language="rust", path="src/empty.rs"))
        assert module.kind is ChunkKind.MODULE
        assert module.text == ""
        assert (module.start_byte, module.end_byte) == (0, 0)

    def test_broken_file_yields_no_chunks(self) -> None:
        tree = _tree("fn broken( {\n  let = ;\n", language="rust", path="src/broken.rs")
        assert tree.error_count > 0
        assert chunk(tree) == []

