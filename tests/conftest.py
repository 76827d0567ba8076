import os
import threading
from pathlib import Path

import pytest

from relayci.errors import FetchError, IncompleteFetchError, RefNotFoundError
from relayci.executor import StepResult
from relayci.model import (
    ConcurrencySpec,
    EventKind,
    Job,
    PipelineDefinition,
    PushTrigger,
    Run,
    RunStep,
    TriggerContext,
    WorkspaceLayout,
)
from relayci.ui.console import Console, set_console

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


class FakeSourceControl:
    """
    In-memory source control.

    `repos` maps repository name -> {relative file path: content}.
    `failures` maps name -> number of FetchErrors to raise before succeeding;
    each failing attempt leaves a partial file behind, like a real
    interrupted clone would.
    """

    def __init__(self, repos=None, failures=None, missing_refs=(), incomplete=None, gate=None):
        self.repos = repos or {}
        self.failures = dict(failures or {})
        self.incomplete = dict(incomplete or {})
        self.missing_refs = set(missing_refs)
        self.gate = gate
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, repo, destination):
        destination = Path(destination)
        with self._lock:
            self.calls.append((repo.name, repo.ref, destination))
        if self.gate is not None:
            self.gate.wait(5)

        if repo.name in self.missing_refs:
            raise RefNotFoundError(f"{repo.name}: ref {repo.ref!r} not found")

        destination.mkdir(parents=True, exist_ok=True)
        if self.failures.get(repo.name, 0) > 0:
            self.failures[repo.name] -= 1
            (destination / "partial.pack").write_text("garbage")
            raise FetchError(f"{repo.name}: connection reset")
        if self.incomplete.get(repo.name, 0) > 0:
            self.incomplete[repo.name] -= 1
            (destination / "model.bin").write_text("version https://git-lfs.github.com/spec/v1")
            raise IncompleteFetchError(f"{repo.name}: 1 large-media file(s) not materialized")

        files = self.repos.get(repo.name, {"README.md": repo.name})
        for rel, content in files.items():
            p = destination / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(content)
        return destination

    def fetched(self):
        return [name for name, _, _ in self.calls]


class ScriptedExecutor:
    """
    Step executor that never touches the machine.

    Steps named in `fail` exit 1. Steps named in `block` wait for their
    event to be set before returning; `started[name]` is set on entry.
    """

    def __init__(self, fail=(), block=None, raise_on=()):
        self.fail = set(fail)
        self.block = dict(block or {})
        self.raise_on = set(raise_on)
        self.started = {}
        self.calls = []
        self.finished = []
        self._lock = threading.Lock()

    def _started(self, name):
        with self._lock:
            return self.started.setdefault(name, threading.Event())

    def execute(self, step, context, token):
        with self._lock:
            self.calls.append((context.run_id, context.job.name, step.name))
        self._started(step.name).set()
        if step.name in self.block:
            self.block[step.name].wait(5)
        if step.name in self.raise_on:
            raise RuntimeError(f"executor blew up on {step.name}")
        if step.name in self.fail:
            return StepResult(exit_code=1, stdout="building...", stderr=f"{step.name}: boom")
        return StepResult(exit_code=0, stdout=f"{step.name}: ok")

    def finish(self, context, succeeded):
        with self._lock:
            self.finished.append((context.job.name, succeeded))

    def steps_for(self, run_id=None, job=None):
        with self._lock:
            return [s for r, j, s in self.calls if (run_id is None or r == run_id) and (job is None or j == job)]

    def wait_started(self, name, timeout=5):
        return self._started(name).wait(timeout)


@pytest.fixture(autouse=True)
def fresh_console():
    set_console(Console(debug=True))
    yield


@pytest.fixture
def fixture_path():
    return lambda name: os.path.join(FIXTURES, name)


@pytest.fixture
def make_definition():
    def factory(
        name="ci",
        jobs=None,
        triggers=(PushTrigger(branches=("main",)),),
        concurrency=ConcurrencySpec(group="{defName}-{ref}", cancel_in_progress=True),
        layout=WorkspaceLayout(),
    ):
        if jobs is None:
            jobs = (Job(name="build", runs_on="local", steps=(RunStep(name="make", command="make"),)),)
        return PipelineDefinition(
            name=name,
            triggers=tuple(triggers),
            jobs=tuple(jobs),
            concurrency=concurrency,
            layout=layout,
        )

    return factory


@pytest.fixture
def make_run(make_definition):
    definition = make_definition()

    def factory(group_key="ci-refs/heads/main"):
        context = TriggerContext(
            kind=EventKind.PUSH,
            ref="refs/heads/main",
            repository="example/app",
            trigger=definition.triggers[0],
        )
        return Run(definition=definition, context=context, group_key=group_key)

    return factory
