import pytest

from relayci.cache import CacheStore
from relayci.concurrency import CancellationToken
from relayci.executor import ShellStepExecutor, StepContext, StepResult
from relayci.model import CacheStep, CheckoutStep, Job, MoveStep, RunStep, ToolchainStep
from relayci.workspace import Workspace


class RecordingToolchain:
    def __init__(self, exit_code=0):
        self.commands = []
        self.exit_code = exit_code

    def execute(self, command, cwd, env):
        self.commands.append((command, cwd))
        return StepResult(exit_code=self.exit_code)


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / "run1"
    primary = root / "app"
    primary.mkdir(parents=True)
    dep = root / "penumbra"
    dep.mkdir()
    return Workspace(root=root.resolve(), primary_path=primary.resolve(), primary="org/app",
                     repositories={"penumbra-zone/penumbra": dep.resolve()})


def _context(workspace, job_name="build", env=None):
    job = Job(name=job_name, runs_on="local", steps=(), env={"JOB_VAR": "from_job"})
    return StepContext(run_id="run1", definition="ci", job=job, workspace=workspace, ref="refs/heads/main",
                       env=env or {})


def _execute(executor, step, ctx):
    return executor.execute(step, ctx, CancellationToken())


class TestRunSteps:
    def test_echo(self, workspace):
        ctx = _context(workspace, env={"INPUT_LEVEL": "debug"})
        result = _execute(ShellStepExecutor(), RunStep(name="env", command='echo "$RELAYCI_JOB $JOB_VAR $INPUT_LEVEL $CI"'), ctx)
        assert result.exit_code == 0
        assert result.stdout.strip() == "build from_job debug true"

    def test_exit_code_and_stderr(self, workspace):
        result = _execute(ShellStepExecutor(), RunStep(name="fail", command="echo nope >&2; exit 3"), _context(workspace))
        assert result.exit_code == 3
        assert "nope" in result.stderr

    def test_runs_in_primary_root(self, workspace):
        result = _execute(ShellStepExecutor(), RunStep(name="pwd", command="pwd"), _context(workspace))
        assert result.stdout.strip() == str(workspace.primary_path)

    def test_working_directory(self, workspace):
        (workspace.primary_path / "src").mkdir()
        step = RunStep(name="pwd", command="pwd", working_directory="src")
        result = _execute(ShellStepExecutor(), step, _context(workspace))
        assert result.stdout.strip() == str(workspace.primary_path / "src")

    def test_missing_working_directory(self, workspace):
        step = RunStep(name="pwd", command="pwd", working_directory="nope")
        assert _execute(ShellStepExecutor(), step, _context(workspace)).exit_code == 1

    def test_working_directory_outside_workspace(self, workspace):
        step = RunStep(name="pwd", command="pwd", working_directory="../../..")
        result = _execute(ShellStepExecutor(), step, _context(workspace))
        assert result.exit_code == 1
        assert "escapes" in result.stderr


class TestCheckoutAndMove:
    def test_assembled_checkouts_are_verified(self, workspace):
        executor = ShellStepExecutor(toolchain=RecordingToolchain())
        ctx = _context(workspace)
        assert _execute(executor, CheckoutStep(name="primary"), ctx).exit_code == 0
        assert _execute(executor, CheckoutStep(name="dep", repository="penumbra-zone/penumbra"), ctx).exit_code == 0
        assert _execute(executor, CheckoutStep(name="other", repository="org/other"), ctx).exit_code == 1

    def test_move_already_done_by_assembly(self, workspace):
        step = MoveStep(name="mv", source="penumbra-repo", destination="../penumbra")
        result = _execute(ShellStepExecutor(), step, _context(workspace))
        assert result.exit_code == 0
        assert result.note == "already relocated"

    def test_move_inside_workspace(self, workspace):
        (workspace.primary_path / "out").write_text("x")
        step = MoveStep(name="mv", source="out", destination="../artifacts/out")
        assert _execute(ShellStepExecutor(), step, _context(workspace)).exit_code == 0
        assert (workspace.root / "artifacts" / "out").read_text() == "x"

    def test_move_missing_source(self, workspace):
        step = MoveStep(name="mv", source="nothing", destination="somewhere")
        assert _execute(ShellStepExecutor(), step, _context(workspace)).exit_code == 1


class TestToolchain:
    def test_installed_once_per_channel(self, workspace):
        toolchain = RecordingToolchain()
        executor = ShellStepExecutor(toolchain=toolchain, toolchain_command="install {channel}")
        _execute(executor, ToolchainStep(name="tc", channel="stable"), _context(workspace, "build"))
        second = _execute(executor, ToolchainStep(name="tc", channel="stable"), _context(workspace, "check"))
        _execute(executor, ToolchainStep(name="tc", channel="nightly"), _context(workspace, "fmt"))

        assert [c for c, _ in toolchain.commands] == ["install stable", "install nightly"]
        assert "already installed" in second.note

    def test_failed_install_is_retried_next_time(self, workspace):
        toolchain = RecordingToolchain(exit_code=1)
        executor = ShellStepExecutor(toolchain=toolchain)
        step = ToolchainStep(name="tc", channel="stable")
        assert _execute(executor, step, _context(workspace)).exit_code == 1
        _execute(executor, step, _context(workspace))
        assert len(toolchain.commands) == 2


class TestCacheSteps:
    def test_restore_then_save_on_success(self, workspace, tmp_path):
        store = CacheStore(tmp_path / "cache")
        executor = ShellStepExecutor(toolchain=RecordingToolchain(), cache=store)
        step = CacheStep(name="cache", key="{defName}-{job}-{runner}", paths=("target",))

        first = _context(workspace)
        result = _execute(executor, step, first)
        assert result.note == "cache miss"
        (workspace.primary_path / "target").mkdir()
        (workspace.primary_path / "target" / "lib.rlib").write_text("built")
        executor.finish(first, succeeded=True)
        assert store.artifact_path("ci-build-local").exists()

        (workspace.primary_path / "target" / "lib.rlib").unlink()
        second = _context(workspace)
        assert _execute(executor, step, second).note.startswith("cache hit")
        assert (workspace.primary_path / "target" / "lib.rlib").read_text() == "built"

    def test_nothing_saved_when_job_failed(self, workspace, tmp_path):
        store = CacheStore(tmp_path / "cache")
        executor = ShellStepExecutor(toolchain=RecordingToolchain(), cache=store)
        ctx = _context(workspace)
        _execute(executor, CacheStep(name="cache", key="k"), ctx)
        (workspace.primary_path / "target").mkdir()
        executor.finish(ctx, succeeded=False)
        assert not store.artifact_path("k").exists()

    def test_caching_disabled(self, workspace):
        result = _execute(ShellStepExecutor(), CacheStep(name="cache", key="k"), _context(workspace))
        assert result.exit_code == 0
        assert result.note == "caching disabled"
