# report.py
from __future__ import annotations

import threading
from typing import Callable, Iterable, List, Optional, Protocol

from .model import RunResult, RunStatus
from .ui.console import Console, get_console


class Reporter(Protocol):
    def report(self, result: RunResult) -> None:
        ...


class ConsoleReporter:
    """Prints every terminal run result."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console

    def report(self, result: RunResult) -> None:
        console = self.console or get_console()
        if result.status == RunStatus.CANCELLED:
            console.print_run_cancelled(result.run_id, result.superseded_by)
            return
        console.print_results(result)


class MemoryReporter:
    """Keeps results in report order. Handy for tests and the HTTP API."""

    def __init__(
        self,
        on_report: Optional[Callable[[RunResult], None]] = None,
        limit: Optional[int] = None,
    ):
        self._lock = threading.Lock()
        self._results: List[RunResult] = []
        self._on_report = on_report
        self.limit = limit

    def report(self, result: RunResult) -> None:
        with self._lock:
            self._results.append(result)
            if self.limit is not None and len(self._results) > self.limit:
                del self._results[: len(self._results) - self.limit]
        if self._on_report is not None:
            self._on_report(result)

    @property
    def results(self) -> List[RunResult]:
        with self._lock:
            return list(self._results)

    def for_run(self, run_id: str) -> List[RunResult]:
        return [r for r in self.results if r.run_id == run_id]


class MultiReporter:
    def __init__(self, reporters: Iterable[Reporter]):
        self.reporters = list(reporters)

    def report(self, result: RunResult) -> None:
        for reporter in self.reporters:
            reporter.report(result)
