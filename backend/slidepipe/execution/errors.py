"""
Conversion-specific errors.

All errors are non-fatal to the service.
They indicate a conversion failure for one job; the pipeline keeps running.

Retry classification:
- PreFlightCheckError is permanent (no retry)
- EngineExecutionError and OutputVerificationError are transient
- ConversionCancelled ends the job immediately
"""

from typing import Optional


class ConversionError(Exception):
    """
    Base exception for conversion failures.

    All conversion errors inherit from this.
    """

    pass


class PreFlightCheckError(ConversionError):
    """
    Pre-flight validation failed.

    Raised before the engine is invoked when retrying cannot help:
    - Source file missing
    - Source file zero bytes
    - Unsupported extension
    """

    pass


class EngineExecutionError(ConversionError):
    """
    Engine execution failed.

    Raised when the engine process cannot produce output:
    - Non-zero exit
    - Spawn failure (binary missing, permission denied)
    - Timeout exceeded (EngineTimeoutError)
    """

    def __init__(
        self,
        engine: str,
        message: str,
        exit_code: Optional[int] = None,
        stderr_tail: str = "",
    ):
        self.engine = engine
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        detail = f"{engine}: {message}"
        if stderr_tail:
            detail = f"{detail}: {stderr_tail.strip().splitlines()[-1]}"
        super().__init__(detail)


class EngineTimeoutError(EngineExecutionError):
    """Engine did not finish within the conversion timeout."""

    def __init__(self, engine: str, timeout: float):
        self.timeout = timeout
        super().__init__(engine, f"timed out after {timeout:.0f}s")


class StructuralIncompatibilityError(EngineExecutionError):
    """
    The engine cannot read this source at all.

    Triggers the fallback engine (once per job) instead of a plain retry.
    """

    pass


class OutputVerificationError(ConversionError):
    """
    Output verification failed.

    Raised when the engine exits 0 but the output is unusable:
    - .dzi descriptor missing
    - .dzi descriptor zero bytes
    - Promotion into the output directory failed
    """

    pass


class ConversionCancelled(ConversionError):
    """The job's cancellation token fired during the attempt."""

    pass
