# workspace.py
from __future__ import annotations

import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Sequence

from .concurrency import CancellationToken, CancelledError
from .errors import (
    FatalAssemblyError,
    FetchError,
    RefNotFoundError,
    RetryableAssemblyError,
)
from .model import DependencyRepo, RepoRef
from .ui.console import get_console


class SourceControl(Protocol):
    def fetch(self, repo: RepoRef, destination: Path) -> Path:
        """Materialise `repo` at `destination`; raise FetchError / RefNotFoundError."""
        ...


@dataclass
class Workspace:
    """
    The assembled tree for one run.

      root/                  <- private to the run
        <primary>/           <- primary repository
        <primary>/../dep     <- dependencies wherever the definition put them
    """
    root: Path
    primary_path: Path
    primary: str
    repositories: Dict[str, Path] = field(default_factory=dict)

    def path_for(self, relpath: str) -> Path:
        """Resolve a path relative to the primary root, refusing to leave the workspace."""
        p = (self.primary_path / relpath).resolve()
        if not _is_within(p, self.root):
            raise ValueError(f"path {relpath!r} escapes the workspace")
        return p

    def contains(self, repository: str | None) -> bool:
        if repository is None:
            return self.primary_path.is_dir()
        path = self.repositories.get(repository)
        return path is not None and path.exists()

    def destroy(self) -> None:
        shutil.rmtree(self.root, ignore_errors=True)


def _is_within(path: Path, root: Path) -> bool:
    try:
        path.resolve().relative_to(root.resolve())
        return True
    except ValueError:
        return False


class WorkspaceAssembler:
    """
    Builds a Workspace from a primary repository and its dependencies.

    Dependencies are fetched into a scratch path first and then relocated
    to their declared location, strictly in the order given.
    """

    def __init__(
        self,
        source_control: SourceControl,
        root: str | Path,
        retries: int = 3,
        backoff: float = 1.0,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.source_control = source_control
        self.root = Path(root)
        self.retries = max(0, retries)
        self.backoff = backoff
        self.sleep = sleep

    def assemble(
        self,
        primary: RepoRef,
        dependencies: Sequence[DependencyRepo],
        run_id: str,
        token: Optional[CancellationToken] = None,
    ) -> Workspace:
        run_root = (self.root / run_id).resolve()
        if run_root.exists():
            shutil.rmtree(run_root)
        run_root.mkdir(parents=True)

        primary_path = run_root / primary.dirname
        workspace = Workspace(root=run_root, primary_path=primary_path, primary=primary.name)
        console = get_console()

        try:
            self._fetch_with_retry(primary, primary_path, token)
            console.print_assembly(run_id, primary.name, str(primary_path))

            for dep in dependencies:
                if token is not None:
                    token.raise_if_cancelled()
                scratch = workspace.primary_path / dep.scratch_path
                target = (workspace.primary_path / dep.target_path).resolve()
                if not _is_within(scratch, run_root) or not _is_within(target, run_root):
                    raise FatalAssemblyError(
                        f"{dep.repository}: path {dep.target_path!r} escapes the workspace"
                    )
                if scratch.exists():
                    raise FatalAssemblyError(
                        f"{dep.repository}: checkout path {dep.scratch_path!r} already exists"
                    )
                if target.exists():
                    raise FatalAssemblyError(
                        f"{dep.repository}: relocation target {dep.target_path!r} already exists"
                    )

                ref = RepoRef(name=dep.repository, ref=dep.ref, lfs=dep.lfs)
                self._fetch_with_retry(ref, scratch, token)
                self._relocate(dep, scratch, target)
                workspace.repositories[dep.repository] = target
                console.print_assembly(run_id, dep.repository, str(target))
        except CancelledError:
            workspace.destroy()
            raise
        except (FatalAssemblyError, OSError) as e:
            workspace.destroy()
            if isinstance(e, FatalAssemblyError):
                raise
            raise FatalAssemblyError(f"workspace assembly failed: {e}") from e

        return workspace

    def _fetch_with_retry(self, repo: RepoRef, destination: Path, token: Optional[CancellationToken]) -> None:
        attempt = 0
        while True:
            if token is not None:
                token.raise_if_cancelled()
            try:
                self.source_control.fetch(repo, destination)
                return
            except RefNotFoundError as e:
                raise FatalAssemblyError(str(e)) from e
            except FetchError as e:
                # never leave a half-written tree behind for the next attempt
                if destination.exists():
                    shutil.rmtree(destination, ignore_errors=True)
                attempt += 1
                failure = RetryableAssemblyError(repo.name, attempt, e)
                if attempt > self.retries:
                    raise FatalAssemblyError(
                        f"{repo.name}: giving up after {attempt} attempt(s): {e}"
                    ) from failure
                get_console().print_debug(str(failure))
                self._pause(self.backoff * (2 ** (attempt - 1)), token)

    def _pause(self, delay: float, token: Optional[CancellationToken]) -> None:
        if self.sleep is not None:
            self.sleep(delay)
        elif token is None:
            time.sleep(delay)
        elif token.wait(delay):
            raise CancelledError(token.reason or "cancelled")

    def _relocate(self, dep: DependencyRepo, scratch: Path, target: Path) -> None:
        if target == scratch.resolve():
            return
        if target.exists():
            raise FatalAssemblyError(
                f"{dep.repository}: relocation target {dep.target_path!r} already exists"
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(scratch), str(target))
