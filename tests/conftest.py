"""Shared fixtures and helpers for tests."""

from pathlib import Path

import pytest

from nexus_forge.core.embedder import HashingEmbedder
from nexus_forge.store import InMemoryIndexStore

_REPO_ROOT = Path(__file__).parent.parent


# ---------------------------------------------------------------------------
# Auto-marker: tag tests as "unit" or "integration" based on directory
# ---------------------------------------------------------------------------


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        test_path = Path(str(item.fspath))
        rel = test_path.relative_to(_REPO_ROOT / "tests")
        parts = rel.parts
        if parts and parts[0] == "integration":
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)


# ---------------------------------------------------------------------------
# Sample repositories
# ---------------------------------------------------------------------------

VALID_RUST = """\
pub struct Config {
    pub name: String,
    pub retries: u32,
}

pub fn load_config(path: &str) -> Config {
    let name = path.to_string();
    Config { name, retries: 3 }
}

fn handle_error(err: &str) -> String {
    format!("error: {}", err)
}
"""

BROKEN_RUST = "fn broken( {\n  let = ;\n"

PYTHON_SERVICE = '''\
import json


class RetryPolicy:
    """Decide how often a request is retried."""

    def __init__(self, attempts):
        self.attempts = attempts

    def should_retry(self, attempt):
        return attempt < self.attempts


def handle_error(exc):
    """Log the exception and convert it into a user message."""
    message = str(exc)
    return {"error": message}


def parse_config(raw):
    return json.loads(raw)


def render_table(rows):
    return "\\n".join(",".join(row) for row in rows)
'''


def write_files(root: Path, files: dict[str, str]) -> None:
    for rel_path, content in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


@pytest.fixture
def rust_repo(tmp_path: Path) -> Path:
    """One valid Rust file, one with a syntax error and one empty file."""
    repo = tmp_path / "repo"
    write_files(
        repo,
        {
            "src/valid.rs": VALID_RUST,
            "src/broken.rs": BROKEN_RUST,
            "src/empty.rs": "",
        },
    )
    return repo


@pytest.fixture
def python_repo(tmp_path: Path) -> Path:
    repo = tmp_path / "pyrepo"
    write_files(
        repo,
        {
            "app/service.py": PYTHON_SERVICE,
            "app/util.py": "def slugify(text):\n    return text.lower().replace(' ', '-')\n",
            "README.md": "# not indexed\n",
        },
    )
    return repo


@pytest.fixture
def in_memory_store() -> InMemoryIndexStore:
    return InMemoryIndexStore()


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder(256)
