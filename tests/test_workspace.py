import threading
import time

import pytest

from conftest import FakeSourceControl
from relayci.concurrency import CancellationToken, CancelledError
from relayci.errors import FatalAssemblyError, RetryableAssemblyError
from relayci.model import DependencyRepo, RepoRef
from relayci.workspace import WorkspaceAssembler

PRIMARY = RepoRef("org/galileo", ref="refs/heads/main")
PENUMBRA = DependencyRepo(
    repository="penumbra-zone/penumbra", scratch_path="penumbra-repo", target_path="../penumbra", lfs=True,
)


@pytest.fixture
def sleeps():
    return []


def _assembler(tmp_path, source_control, sleeps, retries=3):
    return WorkspaceAssembler(source_control, tmp_path / "work", retries=retries, backoff=0.5, sleep=sleeps.append)


class TestAssembly:
    def test_primary_and_relocated_dependency(self, tmp_path, sleeps):
        sc = FakeSourceControl(repos={"penumbra-zone/penumbra": {"Cargo.toml": "[workspace]"}})
        ws = _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [PENUMBRA], "run1")

        assert ws.primary_path == (tmp_path / "work" / "run1" / "galileo").resolve()
        assert (ws.primary_path / "README.md").read_text() == "org/galileo"
        relocated = ws.root / "penumbra"
        assert (relocated / "Cargo.toml").exists()
        assert not (ws.primary_path / "penumbra-repo").exists()
        assert ws.contains(None)
        assert ws.contains("penumbra-zone/penumbra")
        assert not ws.contains("org/unknown")

    def test_dependency_fetch_uses_declared_ref_and_lfs(self, tmp_path, sleeps):
        sc = FakeSourceControl()
        dep = DependencyRepo(repository="org/tools", scratch_path="t", target_path="../tools", ref="v1")
        _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [dep], "run1")
        assert [(name, ref) for name, ref, _ in sc.calls] == [("org/galileo", "refs/heads/main"), ("org/tools", "v1")]

    def test_dependencies_in_declared_order(self, tmp_path, sleeps):
        sc = FakeSourceControl()
        deps = [
            DependencyRepo(repository=f"org/d{i}", scratch_path=f"s{i}", target_path=f"../d{i}")
            for i in range(4)
        ]
        ws = _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, deps, "run1")
        assert sc.fetched() == ["org/galileo", "org/d0", "org/d1", "org/d2", "org/d3"]
        assert list(ws.repositories) == ["org/d0", "org/d1", "org/d2", "org/d3"]

    def test_relocation_collision_is_fatal(self, tmp_path, sleeps):
        sc = FakeSourceControl()
        deps = [
            DependencyRepo(repository="org/one", scratch_path="a", target_path="../shared"),
            DependencyRepo(repository="org/two", scratch_path="b", target_path="../shared"),
        ]
        with pytest.raises(FatalAssemblyError, match="already exists"):
            _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, deps, "run1")
        assert not (tmp_path / "work" / "run1").exists()

    def test_target_clashing_with_primary_content_is_fatal(self, tmp_path, sleeps):
        sc = FakeSourceControl(repos={"org/galileo": {"vendor/lib/x": "1"}})
        dep = DependencyRepo(repository="org/lib", scratch_path="tmp-lib", target_path="vendor/lib")
        with pytest.raises(FatalAssemblyError):
            _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [dep], "run1")

    def test_escaping_path_is_fatal(self, tmp_path, sleeps):
        dep = DependencyRepo(repository="org/lib", scratch_path="lib", target_path="../../../outside")
        with pytest.raises(FatalAssemblyError, match="escapes"):
            _assembler(tmp_path, FakeSourceControl(), sleeps).assemble(PRIMARY, [dep], "run1")
        assert not (tmp_path / "outside").exists()

    def test_stale_run_directory_is_replaced(self, tmp_path, sleeps):
        stale = tmp_path / "work" / "run1" / "junk"
        stale.mkdir(parents=True)
        _assembler(tmp_path, FakeSourceControl(), sleeps).assemble(PRIMARY, [], "run1")
        assert not stale.exists()

    def test_destroy(self, tmp_path, sleeps):
        ws = _assembler(tmp_path, FakeSourceControl(), sleeps).assemble(PRIMARY, [PENUMBRA], "run1")
        ws.destroy()
        assert not ws.root.exists()

    def test_path_for_refuses_to_escape(self, tmp_path, sleeps):
        ws = _assembler(tmp_path, FakeSourceControl(), sleeps).assemble(PRIMARY, [], "run1")
        assert ws.path_for("../penumbra") == ws.root / "penumbra"
        with pytest.raises(ValueError):
            ws.path_for("../../elsewhere")


class TestRetries:
    def test_transient_failures_are_retried_with_backoff(self, tmp_path, sleeps):
        sc = FakeSourceControl(failures={"penumbra-zone/penumbra": 2})
        ws = _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [PENUMBRA], "run1")
        assert sc.fetched().count("penumbra-zone/penumbra") == 3
        assert sleeps == [0.5, 1.0]
        assert ws.contains("penumbra-zone/penumbra")

    def test_retried_fetch_is_idempotent(self, tmp_path, sleeps):
        clean = _assembler(tmp_path / "a", FakeSourceControl(), sleeps).assemble(PRIMARY, [PENUMBRA], "run1")
        flaky = _assembler(
            tmp_path / "b", FakeSourceControl(failures={"penumbra-zone/penumbra": 2}), sleeps,
        ).assemble(PRIMARY, [PENUMBRA], "run1")

        def tree(root):
            return sorted(str(p.relative_to(root)) for p in root.rglob("*"))

        assert tree(flaky.root) == tree(clean.root)
        assert not (flaky.root / "penumbra" / "partial.pack").exists()

    def test_incomplete_large_media_is_retried(self, tmp_path, sleeps):
        sc = FakeSourceControl(incomplete={"penumbra-zone/penumbra": 1})
        ws = _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [PENUMBRA], "run1")
        assert not (ws.root / "penumbra" / "model.bin").exists()
        assert len(sleeps) == 1

    def test_retries_exhausted(self, tmp_path, sleeps):
        sc = FakeSourceControl(failures={"penumbra-zone/penumbra": 10})
        with pytest.raises(FatalAssemblyError, match="giving up after 3") as excinfo:
            _assembler(tmp_path, sc, sleeps, retries=2).assemble(PRIMARY, [PENUMBRA], "run1")
        assert isinstance(excinfo.value.__cause__, RetryableAssemblyError)
        assert excinfo.value.__cause__.attempt == 3
        assert sc.fetched().count("penumbra-zone/penumbra") == 3
        assert not (tmp_path / "work" / "run1").exists()

    def test_missing_ref_is_not_retried(self, tmp_path, sleeps):
        sc = FakeSourceControl(missing_refs={"penumbra-zone/penumbra"})
        with pytest.raises(FatalAssemblyError, match="not found"):
            _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [PENUMBRA], "run1")
        assert sc.fetched().count("penumbra-zone/penumbra") == 1
        assert sleeps == []


def test_cancelled_before_dependencies(tmp_path, sleeps):
    token = CancellationToken()
    token.cancel("superseded")
    sc = FakeSourceControl()
    with pytest.raises(CancelledError):
        _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [PENUMBRA], "run1", token)
    assert "penumbra-zone/penumbra" not in sc.fetched()
    assert not (tmp_path / "work" / "run1").exists()


class TestCancellationDuringFetch:
    def test_cancelled_token_stops_before_primary_fetch(self, tmp_path, sleeps):
        token = CancellationToken()
        token.cancel("superseded")
        sc = FakeSourceControl(failures={"org/galileo": 3})
        with pytest.raises(CancelledError):
            _assembler(tmp_path, sc, sleeps).assemble(PRIMARY, [], "run1", token)
        assert sc.calls == []
        assert sleeps == []

    def test_cancel_during_backoff_stops_retrying(self, tmp_path):
        token = CancellationToken()
        sc = FakeSourceControl(failures={"org/galileo": 3})
        assembler = WorkspaceAssembler(
            sc, tmp_path / "work", retries=3, backoff=0.1, sleep=lambda delay: token.cancel("superseded"),
        )
        with pytest.raises(CancelledError):
            assembler.assemble(PRIMARY, [], "run1", token)
        assert sc.fetched() == ["org/galileo"]
        assert not (tmp_path / "work" / "run1").exists()

    def test_backoff_wakes_up_on_cancel(self, tmp_path):
        token = CancellationToken()
        sc = FakeSourceControl(failures={"org/galileo": 3})
        assembler = WorkspaceAssembler(sc, tmp_path / "work", retries=3, backoff=30)
        threading.Timer(0.05, token.cancel, args=("superseded",)).start()

        started = time.monotonic()
        with pytest.raises(CancelledError):
            assembler.assemble(PRIMARY, [], "run1", token)
        assert time.monotonic() - started < 5
        assert sc.fetched() == ["org/galileo"]
