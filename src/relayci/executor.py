# executor.py
# Step Executor: the boundary between the engine and the outside world.
# Everything a step does to the machine (processes, files, caches) lives
# here; the job runner only sees StepResult values.

from __future__ import annotations

import os
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set, Tuple

from .cache import CacheStore, render_key
from .concurrency import CancellationToken
from .model import (
    CacheStep,
    CheckoutStep,
    Job,
    MoveStep,
    RunStep,
    Step,
    ToolchainStep,
)
from .settings import DEFAULT_TOOLCHAIN_COMMAND
from .ui.console import get_console
from .workspace import Workspace

# keep failure output readable
OUTPUT_LIMIT = 64_000


@dataclass
class StepResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    note: str = ""


@dataclass
class StepContext:
    """Everything a step may need to know about where it runs."""
    run_id: str
    definition: str
    job: Job
    workspace: Workspace
    ref: str = ""
    sha: str | None = None
    env: Dict[str, str] = field(default_factory=dict)
    # cache paths to save once the job succeeds: (key, paths)
    pending_caches: List[Tuple[str, Tuple[str, ...]]] = field(default_factory=list)

    @property
    def cwd(self) -> Path:
        return self.workspace.primary_path

    def step_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update({
            "CI": "true",
            "RELAYCI": "true",
            "RELAYCI_RUN_ID": self.run_id,
            "RELAYCI_DEFINITION": self.definition,
            "RELAYCI_JOB": self.job.name,
            "RELAYCI_RUNNER": self.job.runs_on,
            "RELAYCI_REF": self.ref,
            "RELAYCI_SHA": self.sha or "",
            "RELAYCI_WORKSPACE": str(self.workspace.primary_path),
        })
        env.update(self.job.env)
        env.update(self.env)
        return env


class Toolchain(Protocol):
    def execute(self, command: str, cwd: Path, env: Dict[str, str]) -> StepResult:
        ...


class SubprocessToolchain:
    """Runs commands through bash (-e -o pipefail) when available, else the default shell."""

    def __init__(self, shell: Optional[str] = None):
        self.shell = shell if shell is not None else shutil.which("bash")

    def execute(self, command: str, cwd: Path, env: Dict[str, str]) -> StepResult:
        if self.shell:
            argv = [self.shell, "--noprofile", "--norc", "-e", "-o", "pipefail", "-c", command]
            proc = subprocess.run(argv, cwd=str(cwd), env=env, text=True, capture_output=True)
        else:
            proc = subprocess.run(command, shell=True, cwd=str(cwd), env=env, text=True, capture_output=True)
        return StepResult(
            exit_code=proc.returncode,
            stdout=proc.stdout[-OUTPUT_LIMIT:],
            stderr=proc.stderr[-OUTPUT_LIMIT:],
        )


class StepExecutor(Protocol):
    def execute(self, step: Step, context: StepContext, token: CancellationToken) -> StepResult:
        ...

    def finish(self, context: StepContext, succeeded: bool) -> None:
        ...


class ShellStepExecutor:
    """
    Default executor.

    checkout/move steps are satisfied by workspace assembly and only
    verified here; toolchain installs run once per channel; cache steps
    restore now and save when the job succeeds.
    """

    def __init__(
        self,
        toolchain: Optional[Toolchain] = None,
        cache: Optional[CacheStore] = None,
        toolchain_command: str = DEFAULT_TOOLCHAIN_COMMAND,
    ):
        self.toolchain = toolchain or SubprocessToolchain()
        self.cache = cache
        self.toolchain_command = toolchain_command
        self._installed: Set[str] = set()
        self._install_lock = threading.Lock()

    def execute(self, step: Step, context: StepContext, token: CancellationToken) -> StepResult:
        if isinstance(step, RunStep):
            return self._run(step, context)
        if isinstance(step, CheckoutStep):
            return self._checkout(step, context)
        if isinstance(step, MoveStep):
            return self._move(step, context)
        if isinstance(step, ToolchainStep):
            return self._install(step, context)
        if isinstance(step, CacheStep):
            return self._restore_cache(step, context)
        raise TypeError(f"Unknown step type: {type(step).__name__}")

    def finish(self, context: StepContext, succeeded: bool) -> None:
        if not succeeded or self.cache is None:
            return
        console = get_console()
        for key, paths in context.pending_caches:
            try:
                self.cache.save(key, paths, context.cwd)
                console.print_cache_saved(key)
            except OSError as e:
                console.print_warning(f"cache save failed for {key}: {e}")

    # ------------------------------------------------------------------

    def _run(self, step: RunStep, context: StepContext) -> StepResult:
        cwd = context.cwd
        if step.working_directory:
            try:
                cwd = context.workspace.path_for(step.working_directory)
            except ValueError as e:
                return StepResult(exit_code=1, stderr=str(e))
            if not cwd.is_dir():
                return StepResult(exit_code=1, stderr=f"working directory not found: {cwd}")
        return self.toolchain.execute(step.command, cwd, context.step_env())

    def _checkout(self, step: CheckoutStep, context: StepContext) -> StepResult:
        name = step.repository or context.workspace.primary
        if context.workspace.contains(step.repository):
            return StepResult(exit_code=0, note=f"{name} present in workspace")
        return StepResult(exit_code=1, stderr=f"{name} was not assembled into the workspace")

    def _move(self, step: MoveStep, context: StepContext) -> StepResult:
        try:
            src = context.workspace.path_for(step.source)
            dst = context.workspace.path_for(step.destination)
        except ValueError as e:
            return StepResult(exit_code=1, stderr=str(e))

        if dst.exists() and not src.exists():
            return StepResult(exit_code=0, note="already relocated")
        if not src.exists():
            return StepResult(exit_code=1, stderr=f"move source not found: {step.source}")
        if dst.exists():
            return StepResult(exit_code=1, stderr=f"move target already exists: {step.destination}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(src), str(dst))
        return StepResult(exit_code=0)

    def _install(self, step: ToolchainStep, context: StepContext) -> StepResult:
        # serialised so parallel jobs do not race the same installation
        with self._install_lock:
            if step.channel in self._installed:
                return StepResult(exit_code=0, note=f"toolchain {step.channel} already installed")
            command = self.toolchain_command.format(channel=step.channel)
            result = self.toolchain.execute(command, context.cwd, context.step_env())
            if result.exit_code == 0:
                self._installed.add(step.channel)
            return result

    def _restore_cache(self, step: CacheStep, context: StepContext) -> StepResult:
        key = render_key(step.key, {
            "defName": context.definition,
            "workflow": context.definition,
            "job": context.job.name,
            "runner": context.job.runs_on,
            "ref": context.ref,
        })
        if self.cache is None:
            return StepResult(exit_code=0, note="caching disabled")

        context.pending_caches.append((key, step.paths))
        hit = self.cache.restore(key, context.cwd)
        console = get_console()
        if hit.hit:
            console.print_cache_hit(key)
        else:
            console.print_cache_miss(key)
        return StepResult(exit_code=0, note=hit.reason)
