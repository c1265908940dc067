import subprocess
from dataclasses import dataclass
from pathlib import Path


class GitError(RuntimeError):
    pass


@dataclass(frozen=True)
class GitDiff:
    repo_root: Path
    staged: bool
    text: str
    files: tuple[str, ...]

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


def _run_git(repo_root: Path, *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", "-C", str(repo_root), *args],
        check=False,
        capture_output=True,
        text=True,
    )


def get_git_repo_root(start_dir: Path) -> Path | None:
    result = _run_git(start_dir, "rev-parse", "--show-toplevel")
    if result.returncode != 0:
        return None
    root = result.stdout.strip()
    if not root:
        return None
    return Path(root)


def get_diff(start_dir: Path, staged: bool = False, paths: list[str] | None = None) -> GitDiff:
    repo_root = get_git_repo_root(start_dir)
    if repo_root is None:
        raise GitError(f"{start_dir} is not inside a git repository")
    base = ["diff", "--cached"] if staged else ["diff"]
    pathspec = ["--", *paths] if paths else []

    diff_result = _run_git(repo_root, *base, "--no-color", *pathspec)
    if diff_result.returncode != 0:
        raise GitError(diff_result.stderr.strip() or "git diff failed")
    names_result = _run_git(repo_root, *base, "--name-only", *pathspec)
    files = tuple(line for line in names_result.stdout.splitlines() if line.strip())
    return GitDiff(repo_root=repo_root, staged=staged, text=diff_result.stdout, files=files)


def commit(repo_root: Path, message: str) -> str:
    """Commit the staged changes with ``message`` and return the new commit hash."""
    result = _run_git(repo_root, "commit", "-m", message)
    if result.returncode != 0:
        raise GitError(result.stderr.strip() or result.stdout.strip() or "git commit failed")
    head = _run_git(repo_root, "rev-parse", "HEAD")
    return head.stdout.strip()
