"""
Conversion execution.

Runs admitted jobs against external vips processes with supervision,
retry, fallback and progress reporting.
"""

from .errors import (
    ConversionCancelled,
    ConversionError,
    EngineExecutionError,
    EngineTimeoutError,
    OutputVerificationError,
    PreFlightCheckError,
    StructuralIncompatibilityError,
)
from .base import (
    ConversionEngine,
    ConversionRequest,
    EngineStage,
    EngineType,
    is_structural_failure,
)
from .process import ProcessResult, ProcessSupervisor
from .progress import ProgressReporter, ProgressSnapshot, ProgressTracker, expected_tile_count
from .artifacts import JobArtifacts
from .vips import DirectDzsaveEngine, DzsaveOptions, VipsEngine, build_engines
from .worker import ConversionWorker
from .scheduler import WorkerPool

__all__ = [
    # Errors
    "ConversionError",
    "PreFlightCheckError",
    "EngineExecutionError",
    "EngineTimeoutError",
    "StructuralIncompatibilityError",
    "OutputVerificationError",
    "ConversionCancelled",
    # Engines
    "ConversionEngine",
    "ConversionRequest",
    "EngineStage",
    "EngineType",
    "is_structural_failure",
    "DzsaveOptions",
    "VipsEngine",
    "DirectDzsaveEngine",
    "build_engines",
    # Runtime
    "ProcessSupervisor",
    "ProcessResult",
    "ProgressTracker",
    "ProgressReporter",
    "ProgressSnapshot",
    "expected_tile_count",
    "JobArtifacts",
    "ConversionWorker",
    "WorkerPool",
]
