from .errors import (
    AssemblyError,
    DefinitionError,
    FatalAssemblyError,
    FetchError,
    RelayCIError,
    StepExecutionError,
)
from .loader import load_definition, load_definitions, parse_definition
from .model import Event, EventKind, PipelineDefinition, Run, RunResult, RunStatus
from .orchestrator import PipelineOrchestrator
from .report import ConsoleReporter, MemoryReporter
from .router import EventRouter
from .settings import EngineConfig

__version__ = "0.3.0"

__all__ = [
    "AssemblyError",
    "ConsoleReporter",
    "DefinitionError",
    "EngineConfig",
    "Event",
    "EventKind",
    "EventRouter",
    "FatalAssemblyError",
    "FetchError",
    "MemoryReporter",
    "PipelineDefinition",
    "PipelineOrchestrator",
    "RelayCIError",
    "Run",
    "RunResult",
    "RunStatus",
    "StepExecutionError",
    "load_definition",
    "load_definitions",
    "parse_definition",
]
