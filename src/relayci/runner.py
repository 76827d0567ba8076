# runner.py
from __future__ import annotations

from typing import Optional

from .concurrency import CancellationToken
from .errors import StepExecutionError
from .executor import StepContext, StepExecutor
from .model import Job, JobResult, JobStatus, RunStep, StepLog, StepStatus, step_kind
from .ui.console import Console, get_console


def _command_of(step) -> str:
    return step.command if isinstance(step, RunStep) else step_kind(step)


class JobRunner:
    """
    Runs one job's steps strictly in order.

      PENDING -> RUNNING -> SUCCEEDED | FAILED | CANCELLED

    The first failing step stops the job (fail-fast); later steps are
    marked SKIPPED. Cancellation is cooperative and checked between steps:
    a step that already started is allowed to finish.
    """

    def __init__(self, executor: StepExecutor, console: Optional[Console] = None):
        self.executor = executor
        self.console = console

    def run(self, job: Job, context: StepContext, token: CancellationToken) -> JobResult:
        console = self.console or get_console()
        result = JobResult(
            name=job.name,
            steps=[StepLog(index=i, name=s.name, kind=step_kind(s)) for i, s in enumerate(job.steps)],
        )

        timeout = job.timeout_minutes * 60 if job.timeout_minutes else None
        job_token = token.child(timeout=timeout)
        try:
            if job_token.cancelled:
                return self._cancel(result, 0, job_token, console)

            result.status = JobStatus.RUNNING
            console.print_job_start(job.name, job.runs_on)

            for index, step in enumerate(job.steps):
                if job_token.cancelled:
                    return self._cancel(result, index, job_token, console)

                log = result.steps[index]
                log.status = StepStatus.RUNNING
                console.print_step(job.name, step.name)
                try:
                    self._run_step(job, index, step, context, job_token, log)
                except StepExecutionError as e:
                    log.status = StepStatus.FAILED
                    result.status = JobStatus.FAILED
                    result.error = str(e)
                    self._skip_rest(result, index + 1, "previous step failed", console)
                    console.print_failure(step.name, e.stderr or str(e), exit_code=e.exit_code)
                    break
                except Exception as e:
                    # executor bugs and OS errors fail this job only
                    log.status = StepStatus.FAILED
                    log.stderr = f"{type(e).__name__}: {e}"
                    result.status = JobStatus.FAILED
                    result.error = log.stderr
                    self._skip_rest(result, index + 1, "previous step failed", console)
                    console.print_failure(step.name, log.stderr)
                    break
                log.status = StepStatus.SUCCEEDED
            else:
                if job_token.cancelled:
                    # the last step finished but nobody wants its result
                    result.status = JobStatus.CANCELLED
                    result.error = job_token.reason
                else:
                    result.status = JobStatus.SUCCEEDED

            self.executor.finish(context, result.status == JobStatus.SUCCEEDED)
            console.print_job_finished(job.name, result.status.value)
            return result
        finally:
            job_token.close()

    def _run_step(self, job, index, step, context, token, log: StepLog) -> None:
        outcome = self.executor.execute(step, context, token)
        log.exit_code = outcome.exit_code
        log.stdout = outcome.stdout
        log.stderr = outcome.stderr
        log.note = outcome.note
        if outcome.exit_code != 0:
            raise StepExecutionError(
                job=job.name,
                index=index,
                step=step.name,
                command=_command_of(step),
                exit_code=outcome.exit_code,
                stdout=outcome.stdout,
                stderr=outcome.stderr,
            )

    def _cancel(self, result: JobResult, start: int, token: CancellationToken, console: Console) -> JobResult:
        result.status = JobStatus.CANCELLED
        result.error = token.reason
        self._skip_rest(result, start, token.reason or "cancelled", console)
        console.print_job_finished(result.name, result.status.value)
        return result

    @staticmethod
    def _skip_rest(result: JobResult, start: int, reason: str, console: Console) -> None:
        for log in result.steps[start:]:
            log.status = StepStatus.SKIPPED
            log.note = reason
            console.print_step_skipped(result.name, log.name, reason)
