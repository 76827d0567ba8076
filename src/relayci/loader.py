# loader.py
from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from .cron import CronExpression
from .errors import DefinitionError
from .model import (
    CacheStep,
    CheckoutStep,
    ConcurrencySpec,
    DependencyRepo,
    Job,
    ManualTrigger,
    MoveStep,
    PipelineDefinition,
    PullRequestTrigger,
    PushTrigger,
    RunStep,
    ScheduleTrigger,
    Step,
    ToolchainStep,
    Trigger,
    WorkspaceLayout,
)
from .router import DEFAULT_GROUP_TEMPLATE, validate_group_template
from .ui.console import get_console

DEFINITION_SUFFIXES = (".yml", ".yaml")


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def load_definition(path: str | Path) -> PipelineDefinition:
    """Load one pipeline definition from a YAML file."""
    p = Path(path)
    if not p.is_file():
        raise DefinitionError(f"Definition file not found: {p}")
    try:
        with p.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML in {p}: {e}") from e
    return parse_definition(raw, name=None, source=str(p), fallback_name=p.stem)


def load_definitions(paths: Iterable[str | Path]) -> List[PipelineDefinition]:
    """
    Load every definition under the given files/directories.

    Directories are scanned (non-recursively) for *.yml / *.yaml.
    Definition names must be unique because they form group keys.
    """
    files: List[Path] = []
    for entry in paths:
        p = Path(entry)
        if p.is_dir():
            files.extend(sorted(f for f in p.iterdir() if f.suffix in DEFINITION_SUFFIXES))
        else:
            files.append(p)

    definitions = [load_definition(f) for f in files]
    names = [d.name for d in definitions]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise DefinitionError(f"Duplicate definition names found: {dupes}")
    return definitions


def parse_definition(
    raw: Any,
    name: Optional[str] = None,
    source: Optional[str] = None,
    fallback_name: str = "pipeline",
) -> PipelineDefinition:
    if not isinstance(raw, dict):
        raise DefinitionError(f"Invalid definition: expected YAML mapping, got {type(raw).__name__}")

    # PyYAML parses bare `on:` as boolean True — normalize it
    if True in raw:
        raw = dict(raw)
        raw["on"] = raw.pop(True)

    def_name = name or str(raw.get("name") or fallback_name)

    triggers = _parse_triggers(raw.get("on", raw.get("triggers")))
    concurrency = _parse_concurrency(raw.get("concurrency"))

    jobs_raw = raw.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise DefinitionError(f"Definition {def_name!r}: no 'jobs' section found")

    workflow_env = _str_dict(raw.get("env") or {})
    jobs = tuple(
        _parse_job(str(job_id), job_raw, workflow_env)
        for job_id, job_raw in jobs_raw.items()
    )

    return PipelineDefinition(
        name=def_name,
        triggers=triggers,
        jobs=jobs,
        concurrency=concurrency,
        layout=derive_layout(jobs),
        source=source,
    )


# ----------------------------------------------------------------------
# Triggers / concurrency
# ----------------------------------------------------------------------

def _str_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _parse_triggers(raw: Any) -> Tuple[Trigger, ...]:
    if raw is None:
        raise DefinitionError("Definition has no triggers ('on:' section)")
    if isinstance(raw, str):
        raw = {raw: None}
    elif isinstance(raw, list):
        raw = {str(k): None for k in raw}
    elif not isinstance(raw, dict):
        raise DefinitionError(f"Invalid 'on:' section: {raw!r}")

    triggers: List[Trigger] = []
    for key, body in raw.items():
        kind = str(key).replace("-", "_")
        body = body or {}
        if kind == "push":
            triggers.append(PushTrigger(
                branches=_str_list(body.get("branches")),
                branches_ignore=_str_list(body.get("branches-ignore", body.get("branches_ignore"))),
            ))
        elif kind == "pull_request":
            triggers.append(PullRequestTrigger(branches=_str_list(body.get("branches"))))
        elif kind in ("workflow_dispatch", "manual"):
            triggers.append(ManualTrigger())
        elif kind == "schedule":
            entries = body if isinstance(body, list) else [body]
            for entry in entries:
                cron = entry.get("cron") if isinstance(entry, dict) else entry
                if not cron:
                    raise DefinitionError(f"Schedule entry without cron: {entry!r}")
                CronExpression.parse(str(cron))
                triggers.append(ScheduleTrigger(cron=" ".join(str(cron).split())))
        else:
            get_console().print_warning(f"Trigger '{key}' is not routable and will be ignored")

    if not triggers:
        raise DefinitionError("Definition has no routable triggers")
    return tuple(triggers)


def _parse_concurrency(raw: Any) -> Optional[ConcurrencySpec]:
    if raw is None:
        return None
    if isinstance(raw, str):
        spec = ConcurrencySpec(group=raw)
    elif isinstance(raw, dict):
        group = raw.get("group") or DEFAULT_GROUP_TEMPLATE
        cancel = raw.get("cancel-in-progress", raw.get("cancel_in_progress", False))
        spec = ConcurrencySpec(group=str(group), cancel_in_progress=bool(cancel))
    else:
        raise DefinitionError(f"Invalid concurrency section: {raw!r}")
    validate_group_template(spec.group)
    return spec


# ----------------------------------------------------------------------
# Jobs / steps
# ----------------------------------------------------------------------

def _parse_job(job_id: str, raw: Any, workflow_env: Dict[str, str]) -> Job:
    if not isinstance(raw, dict):
        raise DefinitionError(f"Job {job_id!r}: expected a mapping")

    runs_on = raw.get("runs-on", raw.get("runs_on"))
    if not runs_on:
        raise DefinitionError(f"Job {job_id!r}: 'runs-on' is required")
    if isinstance(runs_on, list):
        runs_on = ",".join(str(r) for r in runs_on)

    steps_raw = raw.get("steps") or []
    if not steps_raw:
        raise DefinitionError(f"Job {job_id!r} has no steps")
    steps = tuple(_parse_step(job_id, i, s) for i, s in enumerate(steps_raw))

    timeout = raw.get("timeout-minutes", raw.get("timeout_minutes"))
    return Job(
        name=job_id,
        runs_on=str(runs_on),
        steps=steps,
        env={**workflow_env, **_str_dict(raw.get("env") or {})},
        timeout_minutes=float(timeout) if timeout is not None else None,
        display_name=raw.get("name"),
    )


def _action_name(uses: str) -> Tuple[str, str]:
    """'dtolnay/rust-toolchain@stable' -> ('rust-toolchain', 'stable')"""
    ref = ""
    if "@" in uses:
        uses, ref = uses.split("@", 1)
    return uses.rstrip("/").split("/")[-1].lower(), ref


def _parse_step(job_id: str, index: int, raw: Any) -> Step:
    if not isinstance(raw, dict):
        raise DefinitionError(f"Job {job_id!r} step {index + 1}: expected a mapping")
    label = raw.get("name")

    if "uses" in raw:
        return _parse_action(job_id, index, label, str(raw["uses"]), raw.get("with") or {})

    if "checkout" in raw:
        body = raw["checkout"] or {}
        return _checkout(label, body.get("repo", body.get("repository")), body)
    if "move" in raw:
        body = raw["move"] or {}
        src, dst = body.get("from"), body.get("to")
        if not src or not dst:
            raise DefinitionError(f"Job {job_id!r} step {index + 1}: move needs 'from' and 'to'")
        return MoveStep(name=label or f"Move {src} to {dst}", source=str(src), destination=str(dst))
    if "install_toolchain" in raw:
        body = raw["install_toolchain"]
        channel = body.get("channel") if isinstance(body, dict) else body
        return ToolchainStep(name=label or f"Install toolchain {channel}", channel=str(channel or "stable"))
    if "cache" in raw:
        body = raw["cache"]
        if isinstance(body, str):
            body = {"key": body}
        return _cache(label, body or {})

    if "run" in raw:
        command = raw["run"]
        if not isinstance(command, str) or not command.strip():
            raise DefinitionError(f"Job {job_id!r} step {index + 1}: 'run' must be a non-empty string")
        command = command.strip()
        move = _as_move(command)
        if move is not None:
            src, dst = move
            return MoveStep(name=label or command, source=src, destination=dst)
        return RunStep(
            name=label or command.split("\n")[0],
            command=command,
            working_directory=raw.get("working-directory", raw.get("working_directory")),
        )

    raise DefinitionError(f"Job {job_id!r} step {index + 1}: unrecognised step {sorted(raw)}")


def _parse_action(job_id: str, index: int, label: Optional[str], uses: str, with_: dict) -> Step:
    action, ref = _action_name(uses)
    if action == "checkout":
        return _checkout(label, with_.get("repository"), with_)
    if action.endswith("toolchain"):
        channel = with_.get("toolchain") or ref or "stable"
        return ToolchainStep(name=label or f"Install toolchain {channel}", channel=str(channel))
    if action.endswith("cache"):
        return _cache(label, with_)
    raise DefinitionError(f"Job {job_id!r} step {index + 1}: unsupported action {uses!r}")


def _checkout(label: Optional[str], repository: Any, body: dict) -> CheckoutStep:
    path = str(body.get("path") or "")
    ref = body.get("ref")
    return CheckoutStep(
        name=label or f"Checkout {repository or 'primary repository'}",
        repository=str(repository) if repository else None,
        path=path,
        lfs=bool(body.get("lfs", False)),
        ref=str(ref) if ref else None,
    )


def _cache(label: Optional[str], body: dict) -> CacheStep:
    key = body.get("key") or body.get("shared-key") or "{defName}-{job}-{runner}"
    paths = body.get("path", body.get("paths"))
    if isinstance(paths, str):
        paths = [p for p in paths.splitlines() if p.strip()]
    return CacheStep(
        name=label or f"Cache {key}",
        key=str(key),
        paths=tuple(str(p).strip() for p in paths) if paths else ("target",),
    )


def _as_move(command: str) -> Optional[Tuple[str, str]]:
    """Recognise a plain `mv SRC DST`; anything fancier stays a shell step."""
    if "\n" in command:
        return None
    try:
        argv = shlex.split(command)
    except ValueError:
        return None
    if len(argv) != 3 or argv[0] != "mv":
        return None
    if any(a.startswith("-") or any(c in a for c in "*?$`;&|<>") for a in argv[1:]):
        return None
    return argv[1], argv[2]


# ----------------------------------------------------------------------
# Workspace layout
# ----------------------------------------------------------------------

def _norm(path: str) -> str:
    parts = [p for p in path.replace("\\", "/").split("/") if p not in ("", ".")]
    return "/".join(parts)


def derive_layout(jobs: Iterable[Job]) -> WorkspaceLayout:
    """
    Collect dependency repositories from checkout/move step pairs.

    A dependency checkout followed (in the same job) by a move of its path
    is placed at the move destination; without a move it stays where it
    was checked out. Order is first declaration across jobs.
    """
    deps: List[DependencyRepo] = []
    by_scratch: Dict[str, DependencyRepo] = {}

    for job in jobs:
        pending: Dict[str, CheckoutStep] = {}
        placed: List[Tuple[CheckoutStep, str]] = []
        for step in job.steps:
            if isinstance(step, CheckoutStep) and step.repository:
                pending[_norm(step.path or _repo_dirname(step.repository))] = step
            elif isinstance(step, MoveStep) and _norm(step.source) in pending:
                placed.append((pending.pop(_norm(step.source)), _norm(step.destination)))
        for path, checkout in pending.items():
            placed.append((checkout, path))

        for checkout, target in placed:
            scratch = _norm(checkout.path or _repo_dirname(checkout.repository))
            dep = DependencyRepo(
                repository=checkout.repository,
                scratch_path=scratch,
                target_path=target,
                lfs=checkout.lfs,
                ref=checkout.ref,
            )
            existing = by_scratch.get(scratch)
            if existing is None:
                by_scratch[scratch] = dep
                deps.append(dep)
            elif existing != dep:
                raise DefinitionError(
                    f"Jobs disagree about the dependency checked out at {scratch!r}: "
                    f"{existing.repository}->{existing.target_path} vs {dep.repository}->{dep.target_path}"
                )

    return WorkspaceLayout(dependencies=tuple(deps))


def _repo_dirname(repository: str) -> str:
    tail = repository.rstrip("/").split("/")[-1]
    return tail[:-4] if tail.endswith(".git") else tail


def _str_dict(d: dict) -> dict:
    result = {}
    for k, v in d.items():
        if v is None:
            result[str(k)] = ""
        elif isinstance(v, bool):
            result[str(k)] = str(v).lower()
        else:
            result[str(k)] = str(v)
    return result
