# model.py
from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .concurrency import CancellationToken
from .errors import UnknownEventError


# ----------------------------------------------------------------------
# Triggers
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class PushTrigger:
    """Push to a branch. Empty `branches` means every branch."""
    branches: Tuple[str, ...] = ()
    branches_ignore: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PullRequestTrigger:
    """Any pull request, optionally filtered by base branch."""
    branches: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ManualTrigger:
    pass


@dataclass(frozen=True)
class ScheduleTrigger:
    cron: str


Trigger = Union[PushTrigger, PullRequestTrigger, ManualTrigger, ScheduleTrigger]


# ----------------------------------------------------------------------
# Steps
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class CheckoutStep:
    """Check out a repository. `repository=None` is the primary repository."""
    name: str
    repository: str | None = None
    path: str = ""
    lfs: bool = False
    ref: str | None = None


@dataclass(frozen=True)
class MoveStep:
    name: str
    source: str
    destination: str


@dataclass(frozen=True)
class ToolchainStep:
    name: str
    channel: str


@dataclass(frozen=True)
class CacheStep:
    name: str
    key: str
    paths: Tuple[str, ...] = ("target",)


@dataclass(frozen=True)
class RunStep:
    name: str
    command: str
    working_directory: str | None = None


Step = Union[CheckoutStep, MoveStep, ToolchainStep, CacheStep, RunStep]


def step_kind(step: Step) -> str:
    if isinstance(step, CheckoutStep):
        return "checkout"
    if isinstance(step, MoveStep):
        return "move"
    if isinstance(step, ToolchainStep):
        return "install_toolchain"
    if isinstance(step, CacheStep):
        return "cache"
    if isinstance(step, RunStep):
        return "run"
    raise TypeError(f"Unknown step type: {type(step).__name__}")


# ----------------------------------------------------------------------
# Definition
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Job:
    """A CI job: an ordered list of steps bound to a runner class."""
    name: str
    runs_on: str
    steps: Tuple[Step, ...]
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    timeout_minutes: float | None = None
    display_name: str | None = None


@dataclass(frozen=True)
class ConcurrencySpec:
    group: str
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class DependencyRepo:
    """
    A repository fetched next to the primary one.

    It is checked out under `scratch_path` and then relocated to
    `target_path`; both are relative to the primary repository root.
    """
    repository: str
    scratch_path: str
    target_path: str
    lfs: bool = False
    ref: str | None = None


@dataclass(frozen=True)
class WorkspaceLayout:
    dependencies: Tuple[DependencyRepo, ...] = ()


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    triggers: Tuple[Trigger, ...]
    jobs: Tuple[Job, ...]
    concurrency: ConcurrencySpec | None = None
    layout: WorkspaceLayout = field(default_factory=WorkspaceLayout)
    source: str | None = None


@dataclass(frozen=True)
class RepoRef:
    """
    A repository reference as understood by the source-control service.

    `name` is either a bare "owner/repo" slug (resolved against a base URL)
    or anything git can clone directly (URL, absolute or relative path).
    """
    name: str
    ref: str | None = None
    lfs: bool = False

    @property
    def dirname(self) -> str:
        tail = self.name.rstrip("/").split("/")[-1]
        return tail[:-4] if tail.endswith(".git") else tail

    def url(self, base_url: str) -> str:
        n = self.name
        if "://" in n or n.startswith(("/", ".", "git@", "file:")) or n.endswith(".git"):
            return n
        return f"{base_url.rstrip('/')}/{n}.git"


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------

class EventKind(Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"
    MANUAL = "workflow_dispatch"
    SCHEDULE = "schedule"

    @classmethod
    def parse(cls, value: str) -> "EventKind":
        normalized = (value or "").strip().lower().replace("-", "_")
        aliases = {
            "push": cls.PUSH,
            "pull_request": cls.PULL_REQUEST,
            "pr": cls.PULL_REQUEST,
            "workflow_dispatch": cls.MANUAL,
            "manual": cls.MANUAL,
            "schedule": cls.SCHEDULE,
            "scheduled": cls.SCHEDULE,
        }
        try:
            return aliases[normalized]
        except KeyError:
            raise UnknownEventError(f"Unknown event kind: {value!r}") from None


@dataclass
class Event:
    """An incoming trigger event. `kind` is validated by the router."""
    kind: str
    repository: str = ""
    branch: str | None = None
    ref: str | None = None
    sha: str | None = None
    pr_number: int | None = None
    base_branch: str | None = None
    fired_at: datetime | None = None
    cron: str | None = None
    inputs: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class TriggerContext:
    kind: EventKind
    ref: str
    repository: str
    trigger: Trigger
    sha: str | None = None
    inputs: Tuple[Tuple[str, str], ...] = ()


# ----------------------------------------------------------------------
# Statuses
# ----------------------------------------------------------------------

class RunStatus(Enum):
    PENDING = "pending"
    ASSEMBLING = "assembling"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# ----------------------------------------------------------------------
# Results
# ----------------------------------------------------------------------

@dataclass
class StepLog:
    index: int
    name: str
    kind: str
    status: StepStatus = StepStatus.PENDING
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    note: str = ""

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


@dataclass
class JobResult:
    name: str
    status: JobStatus = JobStatus.PENDING
    steps: List[StepLog] = field(default_factory=list)
    error: str | None = None

    @property
    def failed_step(self) -> Optional[StepLog]:
        for s in self.steps:
            if s.status == StepStatus.FAILED:
                return s
        return None


@dataclass(frozen=True)
class FailureInfo:
    """Where a run failed. `job` is None when assembly failed."""
    job: str | None
    step_index: int | None
    step_name: str | None
    exit_code: int | None = None
    output: str = ""

    def describe(self) -> str:
        if self.job is None:
            return f"workspace assembly: {self.output}"
        return f"job '{self.job}' step {self.step_index + 1 if self.step_index is not None else '?'} '{self.step_name}'"


@dataclass
class RunResult:
    run_id: str
    definition: str
    status: RunStatus
    ref: str
    group_key: str | None = None
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    failure: FailureInfo | None = None
    superseded_by: str | None = None
    error: str | None = None

    @property
    def exit_code(self) -> int:
        if self.status == RunStatus.SUCCEEDED:
            return 0
        if self.status == RunStatus.CANCELLED:
            return 2
        return 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "definition": self.definition,
            "status": self.status.value,
            "ref": self.ref,
            "group_key": self.group_key,
            "jobs": {
                name: {
                    "status": jr.status.value,
                    "error": jr.error,
                    "steps": [
                        {"name": s.name, "kind": s.kind, "status": s.status.value, "exit_code": s.exit_code}
                        for s in jr.steps
                    ],
                }
                for name, jr in self.jobs.items()
            },
            "failure": None if self.failure is None else {
                "job": self.failure.job,
                "step_index": self.failure.step_index,
                "step_name": self.failure.step_name,
                "exit_code": self.failure.exit_code,
                "output": self.failure.output,
            },
            "superseded_by": self.superseded_by,
            "error": self.error,
        }


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------

def _new_run_id() -> str:
    return uuid.uuid4().hex


@dataclass(eq=False)
class Run:
    """
    One execution of a definition for one routed event.

    Status changes go through transition()/cancel(); once terminal the
    status is frozen, so a superseded run that finishes late cannot
    overwrite anything.
    """
    definition: PipelineDefinition
    context: TriggerContext
    group_key: str | None = None
    id: str = field(default_factory=_new_run_id)
    status: RunStatus = RunStatus.PENDING
    token: CancellationToken = field(default_factory=CancellationToken)
    workspace: Any = None
    superseded_by: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: RunStatus) -> bool:
        """Move to `status` unless already terminal. Returns whether it applied."""
        with self._lock:
            if self.status.is_terminal:
                return False
            self.status = status
            return True

    def cancel(self, superseded_by: str | None = None, reason: str | None = None) -> bool:
        with self._lock:
            if self.status.is_terminal:
                return False
            self.status = RunStatus.CANCELLED
            self.superseded_by = superseded_by
        if reason is None:
            reason = f"superseded by run {superseded_by}" if superseded_by else "cancelled"
        self.token.cancel(reason)
        return True
