"""
Conversion engine abstraction layer.

An engine is a recipe for turning one source slide into a Deep Zoom
pyramid with external processes. It builds command lines; it never spawns
anything itself. ProcessSupervisor runs the stages and the worker decides
what a failure means.

Design rules:
- Engines are stateless, all context is passed per call
- Each stage is one child process
- Exit code is the only completion signal
- Stages report a progress band so percentages stay monotonic across stages
"""

import re
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class EngineType(str, Enum):
    """Supported conversion engines."""

    VIPS = "vips"
    VIPS_DIRECT = "vips-direct"


# Loader failures that no amount of retrying will fix
STRUCTURAL_FAILURE_PATTERNS = [
    re.compile(r"is not a known file format", re.IGNORECASE),
    re.compile(r"\bunsupported\b", re.IGNORECASE),
    re.compile(r"\bload(?:er)?\b.*\b(?:error|failed)\b", re.IGNORECASE),
    re.compile(r"unable to (?:load|open|read)", re.IGNORECASE),
    re.compile(r"not a (?:TIFF|JPEG|JP2|valid) (?:file|image)", re.IGNORECASE),
]


def is_structural_failure(stderr_text: str) -> bool:
    """Whether engine stderr says the source cannot be decoded at all."""
    return any(p.search(stderr_text) for p in STRUCTURAL_FAILURE_PATTERNS)


@dataclass(frozen=True)
class ConversionRequest:
    """
    Inputs for one attempt.

    output_prefix is the staging prefix: the engine writes
    <output_prefix>.dzi and <output_prefix>_files/.
    """

    job_id: str
    source_path: str
    output_prefix: str
    intermediate_path: str


@dataclass(frozen=True)
class EngineStage:
    """
    One child process of an engine pipeline.

    band: (start, end) percent range this stage's own 0-100% maps onto.
    tiles_dir: Directory whose tile count measures this stage, if any.
    """

    name: str
    argv: List[str]
    band: Tuple[float, float] = (0.0, 100.0)
    tiles_dir: Optional[str] = None

    def scale(self, percent: float) -> float:
        start, end = self.band
        percent = min(100.0, max(0.0, percent))
        return start + (end - start) * percent / 100.0


class ConversionEngine(ABC):
    """
    Abstract base class for conversion engines.

    All engines must implement:
    - engine_type
    - build_stages: Command lines for one attempt
    """

    def __init__(self, binary: str = "vips"):
        self.binary = binary

    @property
    @abstractmethod
    def engine_type(self) -> EngineType:
        """Return the engine type identifier."""
        pass

    @property
    def name(self) -> str:
        """Engine name for logs and events."""
        return self.engine_type.value

    @property
    def available(self) -> bool:
        """Whether the engine binary can be found."""
        if Path(self.binary).is_absolute():
            return Path(self.binary).is_file()
        return shutil.which(self.binary) is not None

    @abstractmethod
    def build_stages(self, request: ConversionRequest) -> List[EngineStage]:
        """
        Build the stage command lines for one attempt.

        Args:
            request: Paths for this attempt

        Returns:
            Stages, run in order; the attempt fails at the first failing stage
        """
        pass

    def is_structural_failure(self, stderr_text: str) -> bool:
        return is_structural_failure(stderr_text)
