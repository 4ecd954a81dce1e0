"""
Pipeline configuration.

All settings use Pydantic with strict validation and no silent coercion.
Settings are immutable once the pipeline starts; components receive the
values they need at construction time.

Environment overrides:
    Every field can be supplied as SLIDEPIPE_<FIELD_NAME> (upper case).
    Retry policy fields use SLIDEPIPE_MAX_ATTEMPTS, SLIDEPIPE_BACKOFF_MS
    and SLIDEPIPE_BACKOFF_MULTIPLIER.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


ENV_PREFIX = "SLIDEPIPE_"

# Six hours. Multi-gigabyte slides routinely take tens of minutes.
DEFAULT_CONVERSION_TIMEOUT_MS = 6 * 60 * 60 * 1000


class RetryPolicy(BaseModel):
    """
    Retry configuration shared by all conversion jobs.

    Backoff before retry N (1-indexed attempt that just failed) is:
        backoff_ms * backoff_multiplier ** (N - 1)
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: int = Field(default=3, ge=1, description="Total attempts per job")
    backoff_ms: int = Field(default=5000, ge=0, description="Delay before first retry")
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, description="Growth factor applied per retry"
    )

    def delay_ms(self, attempt: int) -> float:
        """Backoff to wait after `attempt` failed."""
        return self.backoff_ms * (self.backoff_multiplier ** max(0, attempt - 1))


class PipelineSettings(BaseModel):
    """
    Configuration surface consumed by the ingestion pipeline.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    watch_root: str = Field(..., description="Absolute path of the monitored directory")
    output_dir: Optional[str] = Field(
        default=None,
        description="Where .dzi output lands (default: 'dzi' next to watch_root)",
    )

    # Stability detection
    stability_threshold: int = Field(default=3, ge=1)
    poll_interval_ms: int = Field(default=1000, ge=10)

    # Job admission
    max_concurrency: int = Field(default=2, ge=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)

    # Process supervision
    conversion_timeout_ms: int = Field(default=DEFAULT_CONVERSION_TIMEOUT_MS, ge=1)
    kill_grace_ms: int = Field(default=2000, ge=0)
    progress_interval_ms: int = Field(default=3000, ge=10)

    # Engine options (passed through to vips)
    vips_binary: str = "vips"
    fallback_binary: Optional[str] = Field(
        default=None, description="Executable for the fallback engine (default: vips_binary)"
    )
    tile_size: int = Field(default=256, ge=1)
    overlap: int = Field(default=1, ge=0)
    tile_format: str = "jpg"
    jpeg_quality: int = Field(default=90, ge=1, le=100)
    vips_concurrency: Optional[int] = Field(default=None, ge=1)
    icc_transform: bool = False
    temp_dir: Optional[str] = None

    # Ingestion behaviour
    process_existing: bool = Field(
        default=True, description="Queue files already present when watching starts"
    )
    skip_converted: bool = Field(
        default=True, description="Ignore files whose .dzi descriptor already exists"
    )

    @field_validator("watch_root")
    @classmethod
    def validate_absolute_path(cls, v: str) -> str:
        """Ensure path is absolute."""
        if not Path(v).is_absolute():
            raise ValueError(f"watch_root must be absolute: {v}")
        return v

    @model_validator(mode="after")
    def validate_output_dir(self) -> "PipelineSettings":
        if self.output_dir is not None and not Path(self.output_dir).is_absolute():
            raise ValueError(f"output_dir must be absolute: {self.output_dir}")
        return self

    @property
    def resolved_output_dir(self) -> Path:
        """Output directory, defaulting to a 'dzi' sibling of the watch root."""
        if self.output_dir:
            return Path(self.output_dir)
        return Path(self.watch_root).parent / "dzi"

    @property
    def poll_interval(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def conversion_timeout(self) -> float:
        return self.conversion_timeout_ms / 1000.0

    @property
    def progress_interval(self) -> float:
        return self.progress_interval_ms / 1000.0

    @property
    def kill_grace(self) -> float:
        return self.kill_grace_ms / 1000.0

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        **overrides: Any,
    ) -> "PipelineSettings":
        """
        Build settings from SLIDEPIPE_* environment variables.

        Explicit keyword overrides win over the environment. Pydantic does
        the type conversion; invalid values raise ValidationError.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            **overrides: Field values that take precedence

        Returns:
            Validated PipelineSettings
        """
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        retry: Dict[str, Any] = {}

        for name in cls.model_fields:
            if name == "retry_policy":
                continue
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                data[name] = raw

        for name in RetryPolicy.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                retry[name] = raw
        if retry:
            data["retry_policy"] = RetryPolicy.model_validate(retry)

        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(data)
