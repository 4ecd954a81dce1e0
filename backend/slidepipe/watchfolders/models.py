"""
Watch folder data models.

All models use Pydantic with strict validation and no silent coercion.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ChangeKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    MOVED = "moved"


class ChangeEvent(BaseModel):
    """Raw filesystem notification for a single file."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    path: str
    kind: ChangeKind

    @field_validator("path")
    @classmethod
    def validate_absolute_path(cls, v: str) -> str:
        """Ensure path is absolute."""
        if not Path(v).is_absolute():
            raise ValueError(f"Change event path must be absolute: {v}")
        return v


class IngestionCandidate(BaseModel):
    """
    A path observed but not yet confirmed stable.

    Created on the first change event for a path, updated on every poll,
    dropped once promoted or once the file disappears.
    """

    model_config = ConfigDict(extra="forbid")

    path: str
    first_seen_at: datetime = Field(default_factory=datetime.now)
    last_size: Optional[int] = None
    last_modified_at: Optional[float] = None
    consecutive_stable_checks: int = 0


class FileStabilityCheck(BaseModel):
    """
    Result of polling one candidate.

    Files are considered stable when size and mtime have not changed for a
    configured number of consecutive checks.
    """

    model_config = ConfigDict(extra="forbid")

    path: str = Field(..., description="Absolute path to checked file")
    is_stable: bool = Field(..., description="Whether file is stable")
    size_bytes: Optional[int] = Field(
        None, description="Current file size in bytes (None if file inaccessible)"
    )
    check_count: int = Field(
        default=0, description="Number of consecutive stable checks"
    )
    reason: Optional[str] = Field(
        None, description="Human-readable explanation if unstable or inaccessible"
    )
