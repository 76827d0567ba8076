# git.py
# Small, focused wrapper around the Git CLI.
# This module centralizes all Git interactions so the rest of the codebase
# never needs to call subprocess("git ...") directly.

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import List, Optional

from relayci.errors import FetchError, IncompleteFetchError, RefNotFoundError
from relayci.model import RepoRef

# stderr fragments that mean "this ref does not exist" rather than
# "the network or credentials failed"
MISSING_REF_MARKERS = (
    "couldn't find remote ref",
    "not our ref",
    "no such remote ref",
    "unknown revision",
    "did not match any",
)


class GitError(Exception):
    """A git command exited non-zero."""

    def __init__(self, args: List[str], returncode: int, stderr: str):
        super().__init__(f"git {' '.join(args)} failed (exit={returncode}): {stderr.strip()}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr


def _git(args: list[str], cwd: Optional[str | Path] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    This is the single low-level entry point for all Git operations in this file.

    Args:
        args: List of git arguments (e.g. ["status", "--porcelain"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        GitError: git exited non-zero (stderr is attached)
        FileNotFoundError: git is not installed
    """
    proc = subprocess.run(
        ["git", *args],
        cwd=str(cwd) if cwd is not None else None,
        text=True,
        capture_output=True,
        check=False,
    )
    if proc.returncode != 0:
        raise GitError(args, proc.returncode, proc.stderr)
    return proc.stdout.strip()


def repo_root(cwd: Optional[str | Path] = None) -> Path:
    """Return the absolute path to the root of the current Git repository."""
    return Path(_git(["rev-parse", "--show-toplevel"], cwd=cwd))


def head_sha(cwd: Optional[str | Path] = None) -> str:
    """Return the full SHA hash of the current HEAD commit."""
    return _git(["rev-parse", "HEAD"], cwd=cwd)


def get_current_branch(cwd: Optional[str | Path] = None) -> Optional[str]:
    """Current branch name, or None on a detached HEAD."""
    try:
        return _git(["symbolic-ref", "--short", "HEAD"], cwd=cwd)
    except GitError:
        return None


def lfs_missing_objects(cwd: str | Path) -> List[str]:
    """
    Paths of LFS-tracked files that are still pointer files.

    `git lfs ls-files` marks materialised objects with '*' and pointers
    with '-': "<oid> * path" / "<oid> - path".
    """
    out = _git(["lfs", "ls-files"], cwd=cwd)
    missing = []
    for line in out.splitlines():
        parts = line.split(" ", 2)
        if len(parts) == 3 and parts[1] == "-":
            missing.append(parts[2])
    return missing


class GitSourceControl:
    """
    Source-control service backed by the git CLI.

    fetch() does a shallow fetch of exactly one ref into an empty
    directory, so the same call always produces the same tree.
    """

    def __init__(self, base_url: str = "https://github.com", default_ref: str = "HEAD"):
        self.base_url = base_url
        self.default_ref = default_ref

    def fetch(self, repo: RepoRef, destination: Path) -> Path:
        destination = Path(destination)
        url = repo.url(self.base_url)
        ref = repo.ref or self.default_ref

        if destination.exists():
            shutil.rmtree(destination)
        destination.mkdir(parents=True)

        try:
            _git(["init", "--quiet"], cwd=destination)
            _git(["remote", "add", "origin", url], cwd=destination)
            try:
                _git(["fetch", "--depth", "1", "origin", ref], cwd=destination)
            except GitError as e:
                if any(marker in e.stderr.lower() for marker in MISSING_REF_MARKERS):
                    raise RefNotFoundError(f"{repo.name}: ref {ref!r} not found") from e
                raise FetchError(f"{repo.name}: fetch failed: {e.stderr.strip()}") from e
            _git(["checkout", "--quiet", "FETCH_HEAD"], cwd=destination)

            if repo.lfs:
                try:
                    _git(["lfs", "pull"], cwd=destination)
                except GitError as e:
                    raise FetchError(f"{repo.name}: git lfs pull failed: {e.stderr.strip()}") from e
                missing = lfs_missing_objects(destination)
                if missing:
                    raise IncompleteFetchError(
                        f"{repo.name}: {len(missing)} large-media file(s) not materialized, e.g. {missing[0]}"
                    )
        except GitError as e:
            raise FetchError(f"{repo.name}: {e}") from e
        except FileNotFoundError as e:
            raise FetchError("git command not found. Please install Git.") from e

        return destination
