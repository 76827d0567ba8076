from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DEFAULT_TOOLCHAIN_COMMAND = (
    "rustup toolchain install {channel} --profile minimal --no-self-update"
    " && rustup default {channel}"
)


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class EngineConfig:
    work_dir: Path = Path(".relayci/work")
    cache_dir: Path = Path(".relayci/cache")
    fetch_retries: int = 3
    fetch_backoff: float = 2.0
    max_job_workers: Optional[int] = None
    max_runs: int = 4
    keep_workspaces: bool = False
    git_base_url: str = "https://github.com"
    default_branch: str = "main"
    toolchain_command: str = DEFAULT_TOOLCHAIN_COMMAND

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineConfig":
        env = os.environ if environ is None else environ
        workers = env.get("RELAYCI_MAX_JOB_WORKERS")
        return cls(
            work_dir=Path(env.get("RELAYCI_WORK_DIR", ".relayci/work")),
            cache_dir=Path(env.get("RELAYCI_CACHE_DIR", ".relayci/cache")),
            fetch_retries=int(env.get("RELAYCI_FETCH_RETRIES", "3")),
            fetch_backoff=float(env.get("RELAYCI_FETCH_BACKOFF", "2.0")),
            max_job_workers=int(workers) if workers else None,
            max_runs=int(env.get("RELAYCI_MAX_RUNS", "4")),
            keep_workspaces=_bool(env.get("RELAYCI_KEEP_WORKSPACES", "false")),
            git_base_url=env.get("RELAYCI_GIT_BASE_URL", "https://github.com"),
            default_branch=env.get("RELAYCI_DEFAULT_BRANCH", "main"),
            toolchain_command=env.get("RELAYCI_TOOLCHAIN_COMMAND", DEFAULT_TOOLCHAIN_COMMAND),
        )
