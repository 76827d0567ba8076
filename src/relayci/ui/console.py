"""Console output formatting utilities for relayci."""

from __future__ import annotations

import sys
import threading
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from relayci.model import RunResult


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
        """
        self.debug = debug
        # jobs print from worker threads; keep lines from interleaving
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        run_id: str,
        definition: str,
        ref: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Run: {run_id}",
            f"Definition: {definition}",
            f"Ref: {ref}",
            f"Jobs: {job_count}",
        )

    def print_run_cancelled(self, run_id: str, superseded_by: Optional[str]) -> None:
        """Print a superseded-run notice."""
        by = f" (superseded by {superseded_by})" if superseded_by else ""
        self._out(f"RUN CANCELLED: {run_id}{by}")

    def print_assembly(self, run_id: str, repository: str, path: str) -> None:
        self._out(f"[{run_id[:8]}] fetched {repository} -> {path}")

    def print_job_start(self, name: str, runs_on: str) -> None:
        """Print job start message."""
        self._out(f"\nJOB STARTED: {name} (runs-on: {runs_on})")

    def print_step(self, job: str, name: str) -> None:
        """Print step start message."""
        self._out(f"[{job}] STEP: {name}")

    def print_step_skipped(self, job: str, name: str, reason: str) -> None:
        self._out(f"[{job}] STEP: {name} (skipped: {reason})")

    def print_job_finished(self, name: str, status: str) -> None:
        self._out(f"[{name}] STATUS: {status}")

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        is_job: bool = False,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Job or step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            is_job: If True, print "JOB FAILED", otherwise "STEP FAILED"
        """
        prefix = "JOB FAILED" if is_job else "STEP FAILED"
        lines = [f"{prefix}: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            lines.append(f"Error: {error_line}")
        self._out(*lines)

    def print_cache_hit(self, key: str) -> None:
        self._out(f"CACHE: hit ({key})")

    def print_cache_miss(self, key: str) -> None:
        self._out(f"CACHE: miss ({key})")

    def print_cache_saved(self, key: str) -> None:
        self._out(f"CACHE: saved ({key})")

    def print_results(self, result: "RunResult") -> None:
        """Print final results summary for one run."""
        lines = [
            "\n" + "=" * 40,
            f"RESULT {result.definition} @ {result.ref}: {result.status.value.upper()}",
            f"Run: {result.run_id}",
            "=" * 40,
        ]
        for job, jr in result.jobs.items():
            lines.append(f"  {job}: {jr.status.value.upper()}")
        if result.failure is not None:
            lines.append(f"Failed at: {result.failure.describe()}")
            if result.failure.output:
                tail = result.failure.output.strip().splitlines()[-20:]
                lines.extend(f"  | {line}" for line in tail)
        if result.superseded_by:
            lines.append(f"Superseded by: {result.superseded_by}")
        if result.error and result.failure is None:
            lines.append(f"Error: {result.error}")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
