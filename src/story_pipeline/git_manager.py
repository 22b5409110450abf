"""Git operations for checkpoint version history.

Commits checkpoint files so every state a run passed through can be
recovered with plain git tooling.
"""

import subprocess
from pathlib import Path
from typing import Optional


class GitError(Exception):
    """A git command failed."""


class GitManager:
    """Runs git commands in a repository."""

    def __init__(self, repo_path: Path):
        self.repo_path = Path(repo_path)

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command."""
        result = subprocess.run(
            ["git", *args],
            cwd=self.repo_path,
            capture_output=True,
            text=True,
        )
        if check and result.returncode != 0:
            raise GitError(f"git {' '.join(args)} failed: {result.stderr.strip() or result.stdout.strip()}")
        return result

    def is_git_repo(self) -> bool:
        """Check if the path is inside a git repository."""
        try:
            result = self._run("rev-parse", "--git-dir", check=False)
        except OSError:
            # git not installed
            return False
        return result.returncode == 0

    def stage(self, paths: list[Path]) -> None:
        """Stage specific files, leaving the rest of the index alone."""
        relative = [str(Path(p).resolve().relative_to(self.repo_path.resolve())) for p in paths]
        self._run("add", "--", *relative)

    def commit(self, message: str, paths: Optional[list[Path]] = None) -> Optional[str]:
        """Commit staged changes and return the hash, or None if nothing changed."""
        args = ["commit", "-m", message]
        if paths:
            args.append("--")
            args.extend(str(Path(p).resolve().relative_to(self.repo_path.resolve())) for p in paths)

        result = self._run(*args, check=False)
        if result.returncode != 0:
            if "nothing to commit" in result.stdout or "no changes added" in result.stdout:
                return None
            raise GitError(f"git commit failed: {result.stderr.strip() or result.stdout.strip()}")

        hash_result = self._run("rev-parse", "HEAD")
        return hash_result.stdout.strip()
