import threading

from conftest import ScriptedExecutor
from relayci.concurrency import CancellationToken
from relayci.executor import StepContext
from relayci.model import Job, JobStatus, RunStep, StepStatus
from relayci.runner import JobRunner
from relayci.workspace import Workspace


def _job(*names, timeout=None):
    return Job(
        name="build",
        runs_on="local",
        steps=tuple(RunStep(name=n, command=f"./{n}.sh") for n in names),
        timeout_minutes=timeout,
    )


def _context(job, tmp_path):
    ws = Workspace(root=tmp_path, primary_path=tmp_path / "app", primary="org/app")
    return StepContext(run_id="run1", definition="ci", job=job, workspace=ws)


class TestJobRunner:
    def test_all_steps_succeed(self, tmp_path):
        executor = ScriptedExecutor()
        job = _job("s1", "s2", "s3")
        result = JobRunner(executor).run(job, _context(job, tmp_path), CancellationToken())
        assert result.status == JobStatus.SUCCEEDED
        assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED] * 3
        assert executor.steps_for() == ["s1", "s2", "s3"]
        assert executor.finished == [("build", True)]

    def test_fail_fast(self, tmp_path):
        executor = ScriptedExecutor(fail={"s2"})
        job = _job("s1", "s2", "s3")
        result = JobRunner(executor).run(job, _context(job, tmp_path), CancellationToken())

        assert result.status == JobStatus.FAILED
        assert executor.steps_for() == ["s1", "s2"]
        assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.FAILED, StepStatus.SKIPPED]
        failed = result.failed_step
        assert (failed.index, failed.name, failed.exit_code) == (1, "s2", 1)
        assert "s2: boom" in failed.output
        assert "exit=1" in result.error
        assert executor.finished == [("build", False)]

    def test_skipped_steps_are_printed(self, tmp_path, capsys):
        executor = ScriptedExecutor(fail={"s1"})
        job = _job("s1", "s2")
        JobRunner(executor).run(job, _context(job, tmp_path), CancellationToken())
        assert "[build] STEP: s2 (skipped: previous step failed)" in capsys.readouterr().out

    def test_executor_exception_fails_only_this_job(self, tmp_path):
        executor = ScriptedExecutor(raise_on={"s1"})
        job = _job("s1", "s2")
        result = JobRunner(executor).run(job, _context(job, tmp_path), CancellationToken())
        assert result.status == JobStatus.FAILED
        assert "executor blew up" in result.failed_step.stderr
        assert result.steps[1].status == StepStatus.SKIPPED

    def test_cancelled_before_start(self, tmp_path):
        executor = ScriptedExecutor()
        token = CancellationToken()
        token.cancel("superseded by run 2")
        job = _job("s1", "s2")
        result = JobRunner(executor).run(job, _context(job, tmp_path), token)
        assert result.status == JobStatus.CANCELLED
        assert executor.steps_for() == []
        assert all(s.status == StepStatus.SKIPPED for s in result.steps)

    def test_cancel_between_steps(self, tmp_path):
        release = threading.Event()
        executor = ScriptedExecutor(block={"s2": release})
        token = CancellationToken()
        job = _job("s1", "s2", "s3")
        holder = {}

        t = threading.Thread(target=lambda: holder.setdefault("r", JobRunner(executor).run(
            job, _context(job, tmp_path), token,
        )))
        t.start()
        assert executor.wait_started("s2")
        token.cancel("superseded")
        release.set()
        t.join(5)

        result = holder["r"]
        assert result.status == JobStatus.CANCELLED
        # the step in flight finished; nothing after it started
        assert executor.steps_for() == ["s1", "s2"]
        assert result.steps[1].status == StepStatus.SUCCEEDED
        assert result.steps[2].status == StepStatus.SKIPPED

    def test_cancel_during_last_step(self, tmp_path):
        release = threading.Event()
        executor = ScriptedExecutor(block={"s1": release})
        token = CancellationToken()
        job = _job("s1")
        holder = {}
        t = threading.Thread(target=lambda: holder.setdefault("r", JobRunner(executor).run(
            job, _context(job, tmp_path), token,
        )))
        t.start()
        assert executor.wait_started("s1")
        token.cancel("superseded")
        release.set()
        t.join(5)
        assert holder["r"].status == JobStatus.CANCELLED
        assert executor.finished == [("build", False)]

    def test_timeout(self, tmp_path):
        release = threading.Event()
        executor = ScriptedExecutor(block={"s1": release})
        job = _job("s1", "s2", timeout=0.001)  # 60ms
        token = CancellationToken()

        timer = threading.Timer(0.5, release.set)
        timer.start()
        try:
            result = JobRunner(executor).run(job, _context(job, tmp_path), token)
        finally:
            timer.cancel()
        assert result.status == JobStatus.CANCELLED
        assert "timed out" in result.error
        assert executor.steps_for() == ["s1"]
        # the run-level token is untouched
        assert not token.cancelled
