# router.py
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from fnmatch import fnmatch
from typing import Iterable, List, Optional, Sequence

from .cron import CronExpression
from .errors import DefinitionError, UnknownEventError
from .model import (
    Event,
    EventKind,
    ManualTrigger,
    PipelineDefinition,
    PullRequestTrigger,
    PushTrigger,
    ScheduleTrigger,
    Trigger,
    TriggerContext,
)
from .ui.console import get_console

# Scheduled runs have no git ref. Every other event ref is qualified
# ("refs/..."), so this marker keeps their group keys disjoint.
SCHEDULE_REF = "schedule"
DEFAULT_GROUP_TEMPLATE = "{defName}-{ref}"

_ACTIONS_EXPR = re.compile(r"\$\{\{\s*github\.([A-Za-z_]+)\s*\}\}")
_PLACEHOLDER = re.compile(r"\{([A-Za-z_]+)\}")
_ACTIONS_NAMES = {"workflow": "defName", "ref": "ref", "event_name": "event"}
GROUP_PLACEHOLDERS = ("defName", "workflow", "ref", "event")


def _normalize_template(template: str) -> str:
    def sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in _ACTIONS_NAMES:
            raise DefinitionError(f"Unsupported expression in concurrency group: {m.group(0)!r}")
        return "{" + _ACTIONS_NAMES[name] + "}"

    return _ACTIONS_EXPR.sub(sub, template)


def validate_group_template(template: str) -> None:
    for name in _PLACEHOLDER.findall(_normalize_template(template)):
        if name not in GROUP_PLACEHOLDERS:
            raise DefinitionError(
                f"Unknown placeholder {{{name}}} in concurrency group {template!r}. "
                f"Known: {list(GROUP_PLACEHOLDERS)}"
            )


def render_group_key(template: str, definition: str, ref: str, event: EventKind) -> str:
    values = {"defName": definition, "workflow": definition, "ref": ref, "event": event.value}
    return _PLACEHOLDER.sub(lambda m: values[m.group(1)], _normalize_template(template))


@dataclass(frozen=True)
class RouteMatch:
    definition: PipelineDefinition
    group_key: Optional[str]
    context: TriggerContext


def _branch_allowed(branch: str, include: Sequence[str], exclude: Sequence[str] = ()) -> bool:
    if include and not any(fnmatch(branch, p) for p in include):
        return False
    return not any(fnmatch(branch, p) for p in exclude)


def qualify_ref(ref: str) -> str:
    """Bare names are branches: `main` becomes `refs/heads/main`."""
    if ref.startswith("refs/"):
        return ref
    return f"refs/heads/{ref}"


def _branch_of(event: Event) -> Optional[str]:
    if event.branch:
        return event.branch
    if not event.ref:
        return None
    ref = qualify_ref(event.ref)
    if ref.startswith("refs/heads/"):
        return ref[len("refs/heads/"):]
    return None


class EventRouter:
    """
    Maps events to (definition, group key, context) triples.

    Pure: routing never mutates the router or the definitions.
    """

    def __init__(self, definitions: Iterable[PipelineDefinition], default_branch: str = "main"):
        self.definitions = list(definitions)
        self.default_branch = default_branch

    def route(self, event: Event) -> List[RouteMatch]:
        try:
            kind = EventKind.parse(event.kind)
        except UnknownEventError as e:
            get_console().print_warning(f"Rejected event: {e}")
            return []

        matches: List[RouteMatch] = []
        for definition in self.definitions:
            for trigger in definition.triggers:
                ref = self._match(trigger, kind, event)
                if ref is None:
                    continue
                context = TriggerContext(
                    kind=kind,
                    ref=ref,
                    repository=event.repository,
                    trigger=trigger,
                    sha=event.sha,
                    inputs=tuple(sorted((str(k), str(v)) for k, v in event.inputs.items())),
                )
                matches.append(RouteMatch(definition, self._group_key(definition, ref, kind), context))
                break
        return matches

    def _group_key(self, definition: PipelineDefinition, ref: str, kind: EventKind) -> Optional[str]:
        if definition.concurrency is None:
            return None
        return render_group_key(definition.concurrency.group, definition.name, ref, kind)

    def _match(self, trigger: Trigger, kind: EventKind, event: Event) -> Optional[str]:
        """Return the trigger-derived ref when `trigger` accepts the event."""
        if isinstance(trigger, PushTrigger):
            if kind != EventKind.PUSH:
                return None
            branch = _branch_of(event)
            if branch is None:
                # tag pushes and other refs only match unfiltered push triggers
                if trigger.branches or not event.ref:
                    return None
                return event.ref
            if not _branch_allowed(branch, trigger.branches, trigger.branches_ignore):
                return None
            return f"refs/heads/{branch}"

        if isinstance(trigger, PullRequestTrigger):
            if kind != EventKind.PULL_REQUEST:
                return None
            if trigger.branches and not _branch_allowed(event.base_branch or "", trigger.branches):
                return None
            if event.pr_number is not None:
                return f"refs/pull/{event.pr_number}/merge"
            if event.ref:
                return qualify_ref(event.ref)
            return f"refs/heads/{event.branch or self.default_branch}"

        if isinstance(trigger, ManualTrigger):
            if kind != EventKind.MANUAL:
                return None
            if event.ref:
                return qualify_ref(event.ref)
            return f"refs/heads/{event.branch or self.default_branch}"

        if isinstance(trigger, ScheduleTrigger):
            if kind != EventKind.SCHEDULE:
                return None
            if event.cron is not None:
                if event.cron.split() != trigger.cron.split():
                    return None
            else:
                fired_at = event.fired_at or datetime.now(timezone.utc)
                if not CronExpression.parse(trigger.cron).matches(fired_at):
                    return None
            return SCHEDULE_REF

        raise TypeError(f"Unknown trigger type: {type(trigger).__name__}")
