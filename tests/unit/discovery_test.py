from pathlib import Path

from nexus_forge.core.discovery import detect_delta, discover_files, is_excluded, sha256_file
from nexus_forge.models import FileRecord


def _write(root: Path, rel: str, content: str = "x = 1\n") -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


class TestIsExcluded:
    def test_component_and_glob_patterns(self) -> None:
        patterns = ("node_modules", "*.lock", "build")
        assert is_excluded("web/node_modules/a.js", patterns)
        assert is_excluded("Cargo.lock", patterns)
        assert is_excluded("build", patterns)
        assert not is_excluded("src/builder.rs", patterns)


class TestDiscoverFiles:
    def test_finds_supported_files_sorted(self, tmp_path: Path) -> None:
        _write(tmp_path, "src/b.py")
        _write(tmp_path, "src/a.rs", "fn a() {}\n")
        _write(tmp_path, "README.md", "# readme\n")
        _write(tmp_path, ".hidden/secret.py")
        _write(tmp_path, "node_modules/dep/index.js", "module.exports = 1\n")
        _write(tmp_path, ".dotfile.py")

        result = discover_files(tmp_path)

        assert [r.path for r in result.records] == ["src/a.rs", "src/b.py"]
        assert [r.language for r in result.records] == ["rust", "python"]
        assert result.records[1].content_hash == sha256_file(tmp_path / "src/b.py")

    def test_oversized_files_are_skipped(self, tmp_path: Path) -> None:
        _write(tmp_path, "big.py", "x" * 100)
        _write(tmp_path, "small.py", "x\n")

        result = discover_files(tmp_path, max_file_size=10)

        assert [r.path for r in result.records] == ["small.py"]
        assert result.skipped_too_large == ["big.py"]

    def test_reuses_hash_when_size_and_mtime_match(self, tmp_path: Path) -> None:
        _write(tmp_path, "a.py")
        first = discover_files(tmp_path)
        previous = {r.path: r.model_copy(update={"content_hash": "cached"}) for r in first.records}

        second = discover_files(tmp_path, previous=previous)

        assert second.reused_hashes == 1
        assert second.records[0].content_hash == "cached"


def _record(path: str, content_hash: str) -> FileRecord:
    return FileRecord(path=path, size=1, mtime_ns=1, content_hash=content_hash)


def test_detect_delta() -> None:
    previous = {"a.py": _record("a.py", "1"), "b.py": _record("b.py", "2"), "c.py": _record("c.py", "3")}
    current = [_record("a.py", "1"), _record("b.py", "changed"), _record("d.py", "4")]

    delta = detect_delta(previous, current)

    assert delta.added == ("d.py",)
    assert delta.changed == ("b.py",)
    assert delta.unchanged == ("a.py",)
    assert delta.removed == ("c.py",)
    assert delta.to_index == ("b.py", "d.py")
