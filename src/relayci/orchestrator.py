# orchestrator.py
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Set

from .concurrency import CancelledError, ConcurrencyGroupManager
from .errors import AssemblyError, FatalAssemblyError
from .executor import StepContext, StepExecutor
from .model import (
    Event,
    FailureInfo,
    JobResult,
    JobStatus,
    PipelineDefinition,
    RepoRef,
    Run,
    RunResult,
    RunStatus,
)
from .report import Reporter
from .router import SCHEDULE_REF, EventRouter
from .runner import JobRunner
from .settings import EngineConfig
from .ui.console import get_console
from .workspace import SourceControl, WorkspaceAssembler


class PipelineOrchestrator:
    """
    Top-level coordinator.

    on_event() routes and admits synchronously, in arrival order, then
    hands each admitted run to a worker thread:

      PENDING -> ASSEMBLING -> RUNNING -> SUCCEEDED | FAILED
                         (any non-terminal) -> CANCELLED

    Every run is reported exactly once. Superseded runs are reported as
    CANCELLED at the moment they are superseded; whatever their worker
    produces afterwards is discarded.
    """

    def __init__(
        self,
        definitions: Iterable[PipelineDefinition],
        source_control: SourceControl,
        executor: StepExecutor,
        reporter: Reporter,
        config: Optional[EngineConfig] = None,
        assembler: Optional[WorkspaceAssembler] = None,
    ):
        self.config = config or EngineConfig()
        self.router = EventRouter(definitions, default_branch=self.config.default_branch)
        self.groups = ConcurrencyGroupManager()
        self.assembler = assembler or WorkspaceAssembler(
            source_control,
            root=self.config.work_dir,
            retries=self.config.fetch_retries,
            backoff=self.config.fetch_backoff,
        )
        self.executor = executor
        self.job_runner = JobRunner(executor)
        self.reporter = reporter

        self._admit_lock = threading.Lock()
        self._state = threading.Condition()
        self._runs: Dict[str, Run] = {}
        self._started: Set[str] = set()
        self._pool = ThreadPoolExecutor(max_workers=max(1, self.config.max_runs), thread_name_prefix="relayci-run")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def on_event(self, event: Event) -> List[Run]:
        """Route `event`, admit the resulting runs and start them. Returns the new runs."""
        created: List[Run] = []
        with self._admit_lock:
            for match in self.router.route(event):
                run = Run(definition=match.definition, context=match.context, group_key=match.group_key)
                self._track(run)
                created.append(run)

                if match.group_key is None:
                    self._submit(run)
                    continue

                cancel = match.definition.concurrency.cancel_in_progress
                admission = self.groups.admit(match.group_key, run, cancel_in_progress=cancel)
                for superseded in admission.cancelled:
                    self._report(self._cancelled_result(superseded))
                    self._forget_if_idle(superseded)
                if admission.admitted:
                    self._submit(run)
                else:
                    get_console().print_info(f"Run {run.id} queued behind group {match.group_key}")
        return created

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until no run is being tracked. Returns False on timeout."""
        with self._state:
            return self._state.wait_for(lambda: not self._runs, timeout=timeout)

    def active_runs(self) -> List[Run]:
        with self._state:
            return list(self._runs.values())

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._state:
            return self._runs.get(run_id)

    def cancel_all(self, reason: str = "orchestrator shutting down") -> None:
        for run in self.active_runs():
            if run.cancel(reason=reason):
                self._report(self._cancelled_result(run))
                self._forget_if_idle(run)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "PipelineOrchestrator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            self.cancel_all()
        self.wait()
        self.shutdown()

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _track(self, run: Run) -> None:
        with self._state:
            self._runs[run.id] = run

    def _untrack(self, run: Run) -> None:
        with self._state:
            self._runs.pop(run.id, None)
            self._started.discard(run.id)
            self._state.notify_all()

    def _submit(self, run: Run) -> Future:
        with self._state:
            self._started.add(run.id)
        return self._pool.submit(self._execute, run)

    def _forget_if_idle(self, run: Run) -> None:
        """Queued runs cancelled before they ever started have no worker to clean up after them."""
        with self._state:
            if run.id in self._started:
                return
        self._untrack(run)

    def _execute(self, run: Run) -> None:
        result: Optional[RunResult] = None
        try:
            result = self._drive(run)
        except Exception as e:
            # never leave a concurrency group occupied by a crashed run
            get_console().print_exception(e)
            if run.transition(RunStatus.FAILED):
                result = self._result(run, error=f"internal error: {e}")
        finally:
            self._finalize(run, result)

    def _drive(self, run: Run) -> Optional[RunResult]:
        """Assemble and run; returns None when the run was cancelled meanwhile."""
        definition = run.definition
        if not run.transition(RunStatus.ASSEMBLING):
            return None
        get_console().print_run_started(run.id, definition.name, run.context.ref, len(definition.jobs))

        try:
            workspace = self.assembler.assemble(
                self._primary_ref(run),
                definition.layout.dependencies,
                run.id,
                run.token,
            )
        except CancelledError:
            return None
        except AssemblyError as e:
            if not run.transition(RunStatus.FAILED):
                return None
            return self._result(
                run,
                failure=FailureInfo(job=None, step_index=None, step_name=None, output=str(e)),
                error=str(e),
            )

        run.workspace = workspace
        if not run.transition(RunStatus.RUNNING):
            return None

        results = self._run_jobs(run)
        failed = [results[j.name] for j in definition.jobs if results[j.name].status != JobStatus.SUCCEEDED]
        status = RunStatus.FAILED if failed else RunStatus.SUCCEEDED
        if not run.transition(status):
            return None
        return self._result(run, jobs=results, failure=self._failure_of(failed[0]) if failed else None)

    def _run_jobs(self, run: Run) -> Dict[str, JobResult]:
        jobs = run.definition.jobs
        max_workers = self.config.max_job_workers or len(jobs)
        env = {f"INPUT_{k.upper()}": v for k, v in run.context.inputs}
        results: Dict[str, JobResult] = {}

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"relayci-{run.id[:8]}") as pool:
            futures = {}
            for job in jobs:
                context = StepContext(
                    run_id=run.id,
                    definition=run.definition.name,
                    job=job,
                    workspace=run.workspace,
                    ref=run.context.ref,
                    sha=run.context.sha,
                    env=dict(env),
                )
                futures[pool.submit(self.job_runner.run, job, context, run.token)] = job.name

            for future in as_completed(futures):
                name = futures[future]
                try:
                    results[name] = future.result()
                except Exception as e:
                    results[name] = JobResult(name=name, status=JobStatus.FAILED, error=str(e))
        return results

    def _finalize(self, run: Run, result: Optional[RunResult]) -> None:
        try:
            if result is not None:
                self._report(result)
            if run.workspace is not None and not self.config.keep_workspaces:
                run.workspace.destroy()
        finally:
            promoted = self.groups.release(run.group_key, run) if run.group_key else None
            self._untrack(run)
            if promoted is not None:
                self._submit(promoted)

    def _report(self, result: RunResult) -> None:
        try:
            self.reporter.report(result)
        except Exception as e:
            get_console().print_error("Reporting failed", f"Could not report run {result.run_id}", details=[str(e)])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _primary_ref(self, run: Run) -> RepoRef:
        ctx = run.context
        if ctx.sha:
            ref = ctx.sha
        elif ctx.ref == SCHEDULE_REF:
            ref = None
        else:
            ref = ctx.ref
        if not ctx.repository:
            raise FatalAssemblyError(f"event for {run.definition.name} carries no repository")
        return RepoRef(name=ctx.repository, ref=ref)

    @staticmethod
    def _failure_of(job: JobResult) -> FailureInfo:
        step = job.failed_step
        if step is None:
            return FailureInfo(job=job.name, step_index=None, step_name=None, output=job.error or job.status.value)
        return FailureInfo(
            job=job.name,
            step_index=step.index,
            step_name=step.name,
            exit_code=step.exit_code,
            output=step.output,
        )

    def _result(self, run: Run, jobs=None, failure=None, error=None) -> RunResult:
        return RunResult(
            run_id=run.id,
            definition=run.definition.name,
            status=run.status,
            ref=run.context.ref,
            group_key=run.group_key,
            jobs=jobs or {},
            failure=failure,
            superseded_by=run.superseded_by,
            error=error,
        )

    def _cancelled_result(self, run: Run) -> RunResult:
        return self._result(run, error=run.token.reason)
