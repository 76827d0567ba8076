# errors.py
from __future__ import annotations

from dataclasses import dataclass


class RelayCIError(Exception):
    """Base class for every error raised by relayci."""


class DefinitionError(RelayCIError):
    """A pipeline definition could not be loaded or is invalid."""


class CronError(DefinitionError):
    """A schedule trigger carries an invalid cron expression."""


class UnknownEventError(RelayCIError):
    """An incoming event has a kind no trigger understands."""


# ----------------------------------------------------------------------
# Source control / workspace assembly
# ----------------------------------------------------------------------

class FetchError(RelayCIError):
    """Network or auth failure while fetching a repository (retryable)."""


class IncompleteFetchError(FetchError):
    """The fetch finished but large-media content is still missing."""


class RefNotFoundError(RelayCIError):
    """The requested ref does not exist in the repository (not retryable)."""


class AssemblyError(RelayCIError):
    """Workspace assembly failed."""


class RetryableAssemblyError(AssemblyError):
    """A fetch failed but attempts remain."""

    def __init__(self, repository: str, attempt: int, cause: Exception):
        super().__init__(f"fetch of {repository} failed (attempt {attempt}): {cause}")
        self.repository = repository
        self.attempt = attempt
        self.cause = cause


class FatalAssemblyError(AssemblyError):
    """Assembly cannot succeed: missing ref, collision, or retries exhausted."""


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

@dataclass
class StepExecutionError(Exception):
    """
    Structured step failure with enough context for:
      - clean CLI output
      - the run report (which job, which step, what it printed)
    """
    job: str
    index: int
    step: str
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        lines = [
            f"[{self.job}] step {self.index + 1} '{self.step}' failed (exit={self.exit_code})",
            f"command={self.command}",
        ]
        if self.stderr.strip():
            lines.append(f"stderr={self.stderr.strip()[-2000:]}")
        return "\n".join(lines)
