# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from relayci.cache import CacheStore
from relayci.errors import DefinitionError, RelayCIError
from relayci.executor import ShellStepExecutor
from relayci.git_facts.git import GitError, GitSourceControl, get_current_branch, head_sha, repo_root
from relayci.loader import load_definitions
from relayci.model import Event, EventKind, PipelineDefinition, RunStatus
from relayci.orchestrator import PipelineOrchestrator
from relayci.report import ConsoleReporter, MemoryReporter, MultiReporter
from relayci.router import EventRouter
from relayci.settings import EngineConfig
from relayci.ui.console import Console, get_console, set_console

EVENT_CHOICES = [k.value for k in EventKind] + ["manual", "pr"]


def discover_definitions(paths: tuple[str, ...]) -> list[Path]:
    """
    Resolve definition paths, defaulting to .github/workflows when none are given.

    Raises:
        SystemExit: if nothing can be found
    """
    console = get_console()
    if paths:
        return [Path(p) for p in paths]

    default = Path(".github") / "workflows"
    if default.is_dir():
        return [default]

    console.print_error(
        "No pipeline definitions found",
        "No definition files were given and .github/workflows does not exist.",
        suggestion="Pass definition files explicitly:\n  relayci run ci.yml --event push --branch main",
    )
    sys.exit(1)


def _load_or_exit(ctx, paths: tuple[str, ...]) -> list[PipelineDefinition]:
    console = get_console()
    try:
        return load_definitions(discover_definitions(paths))
    except DefinitionError as e:
        console.print_error("Invalid pipeline definition", str(e))
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


def _build_event(event, branch, ref, sha, repo, pr, base, cron, inputs) -> Event:
    return Event(
        kind=event,
        repository=repo or "",
        branch=branch,
        ref=ref,
        sha=sha,
        pr_number=pr,
        base_branch=base,
        cron=cron,
        inputs=_parse_inputs(inputs),
    )


def _parse_inputs(inputs: tuple[str, ...]) -> dict[str, str]:
    parsed = {}
    for item in inputs:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--input")
        parsed[key] = value
    return parsed


def event_options(f):
    """Options shared by `route` and `run` that describe the incoming event."""
    options = [
        click.option("--event", "event", type=click.Choice(EVENT_CHOICES), default="push", show_default=True,
                     help="Event kind"),
        click.option("--branch", default=None, help="Branch for push/manual events"),
        click.option("--ref", default=None, help="Fully qualified ref (overrides --branch)"),
        click.option("--pr", default=None, type=int, help="Pull request number"),
        click.option("--base", default=None, help="Pull request base branch"),
        click.option("--cron", default=None, help="Cron expression that fired (schedule events)"),
        click.option("--input", "inputs", multiple=True, help="Manual event input KEY=VALUE (repeatable)"),
    ]
    for option in reversed(options):
        f = option(f)
    return f


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """relayci: event-driven CI pipeline orchestration."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("files", nargs=-1)
@click.pass_context
def validate(ctx, files):
    """Validate pipeline definitions and print what was understood."""
    console = get_console()
    definitions = _load_or_exit(ctx, files)

    for d in definitions:
        console.print_header(d.name)
        console.print_info(f"Source: {d.source}")
        console.print_info("Triggers:")
        for t in d.triggers:
            console.print_info(f"  {type(t).__name__}: {t}")
        if d.concurrency is None:
            console.print_info("Concurrency: none")
        else:
            console.print_info(
                f"Concurrency: {d.concurrency.group} "
                f"(cancel-in-progress: {str(d.concurrency.cancel_in_progress).lower()})"
            )
        console.print_info("Jobs:")
        for job in d.jobs:
            console.print_info(f"  {job.name} (runs-on: {job.runs_on}, {len(job.steps)} step(s))")
        if d.layout.dependencies:
            console.print_info("Workspace:")
            for dep in d.layout.dependencies:
                lfs = " [lfs]" if dep.lfs else ""
                console.print_info(f"  {dep.repository}: {dep.scratch_path} -> {dep.target_path}{lfs}")

    console.print_info(f"\n{len(definitions)} definition(s) OK")


@cli.command()
@click.argument("files", nargs=-1)
@event_options
@click.pass_context
def route(ctx, files, event, branch, ref, pr, base, cron, inputs):
    """Show which definitions an event would start, and their group keys."""
    console = get_console()
    definitions = _load_or_exit(ctx, files)
    router = EventRouter(definitions, default_branch=EngineConfig.from_env().default_branch)

    matches = router.route(_build_event(event, branch, ref, None, None, pr, base, cron, inputs))
    if not matches:
        console.print_info("No definition matches this event")
        return
    for m in matches:
        console.print_info(f"{m.definition.name}: ref={m.context.ref} group={m.group_key or '-'}")


@cli.command()
@click.argument("files", nargs=-1)
@event_options
@click.option("--sha", default=None, help="Commit to build (defaults to local HEAD)")
@click.option("--repo", default=None, help="Primary repository (defaults to the local repository root)")
@click.option("--work-dir", default=None, help="Where run workspaces are assembled")
@click.option("--cache-dir", default=None, help="Cache directory")
@click.option("--retries", default=None, type=int, help="Fetch retries per repository")
@click.option("--workers", default=None, type=int, help="Parallel jobs per run")
@click.option("--keep-workspaces", is_flag=True, default=False, help="Do not delete workspaces after the run")
@click.option("--no-cache", is_flag=True, default=False, help="Disable cache steps")
@click.pass_context
def run(ctx, files, event, branch, ref, pr, base, cron, inputs, sha, repo, work_dir, cache_dir, retries,
        workers, keep_workspaces, no_cache):
    """Route one event and execute the matching pipelines locally."""
    console = get_console()
    definitions = _load_or_exit(ctx, files)

    config = EngineConfig.from_env()
    if work_dir:
        config.work_dir = Path(work_dir)
    if cache_dir:
        config.cache_dir = Path(cache_dir)
    if retries is not None:
        config.fetch_retries = retries
    if workers is not None:
        config.max_job_workers = workers
    config.keep_workspaces = config.keep_workspaces or keep_workspaces

    if not repo:
        try:
            repo = str(repo_root())
            sha = sha or head_sha()
            branch = branch or (get_current_branch() if EventKind.parse(event) == EventKind.PUSH else None)
            console.print_debug(f"Using local repository {repo} @ {sha}")
        except (GitError, FileNotFoundError):
            console.print_error(
                "Could not determine the repository",
                "No --repo specified and the current directory is not a git repository.",
                suggestion="Please specify --repo explicitly:\n  relayci run ci.yml --repo owner/name",
            )
            sys.exit(1)

    memory = MemoryReporter()
    orchestrator = PipelineOrchestrator(
        definitions,
        source_control=GitSourceControl(base_url=config.git_base_url),
        executor=ShellStepExecutor(
            cache=None if no_cache else CacheStore(config.cache_dir),
            toolchain_command=config.toolchain_command,
        ),
        reporter=MultiReporter([ConsoleReporter(), memory]),
        config=config,
    )

    try:
        with orchestrator:
            runs = orchestrator.on_event(_build_event(event, branch, ref, sha, repo, pr, base, cron, inputs))
            if not runs:
                console.print_info("No definition matches this event")
                return
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except RelayCIError as e:
        console.print_exception(e)
        sys.exit(1)

    statuses = {r.status for r in memory.results}
    if RunStatus.FAILED in statuses:
        sys.exit(1)
    if RunStatus.CANCELLED in statuses:
        sys.exit(2)


@cli.command()
@click.argument("files", nargs=-1)
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", default=8000, type=int, show_default=True, help="Bind port")
@click.pass_context
def serve(ctx, files, host, port):
    """Start the HTTP control plane."""
    import uvicorn

    from relayci.cloud.main import create_app

    definitions = _load_or_exit(ctx, files)
    app = create_app(definitions=definitions)
    uvicorn.run(app, host=host, port=port, log_level="debug" if ctx.obj.get("debug") else "info")


if __name__ == "__main__":
    cli()
