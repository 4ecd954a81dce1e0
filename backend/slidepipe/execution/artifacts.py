"""
Output and intermediate file handling for one job.

Layout:
    <output_dir>/<name>.dzi                 final descriptor
    <output_dir>/<name>_files/              final tiles
    <output_dir>/.partial/<name>.dzi        staging descriptor
    <output_dir>/.partial/<name>_files/     staging tiles
    <output_dir>/.partial/.previous/        prior output, only during promotion
    <temp_dir>/<name>_intermediate.v        decode stage output

Rules:
- Engines only ever write to staging
- Staging is promoted only after verification
- A previous completed conversion stays untouched until promotion
- Intermediates are removed after every attempt, success or not
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

from .errors import OutputVerificationError

logger = logging.getLogger(__name__)


STAGING_DIRNAME = ".partial"
BACKUP_DIRNAME = ".previous"


class JobArtifacts:
    """
    Paths and file operations for one job's output.

    Args:
        output_dir: Final output directory
        output_name: Output base name (no extension)
        temp_dir: Directory for intermediates (default: system temp)
    """

    def __init__(self, output_dir: Path, output_name: str, temp_dir: Optional[str] = None):
        self.output_dir = Path(output_dir)
        self.output_name = output_name
        self.temp_dir = Path(temp_dir) if temp_dir else Path(tempfile.gettempdir())

    # =========================================================================
    # Paths
    # =========================================================================

    @property
    def staging_dir(self) -> Path:
        return self.output_dir / STAGING_DIRNAME

    @property
    def staging_prefix(self) -> Path:
        return self.staging_dir / self.output_name

    @property
    def staging_descriptor(self) -> Path:
        return self.staging_dir / f"{self.output_name}.dzi"

    @property
    def staging_tiles(self) -> Path:
        return self.staging_dir / f"{self.output_name}_files"

    @property
    def final_descriptor(self) -> Path:
        return self.output_dir / f"{self.output_name}.dzi"

    @property
    def final_tiles(self) -> Path:
        return self.output_dir / f"{self.output_name}_files"

    @property
    def backup_dir(self) -> Path:
        return self.staging_dir / BACKUP_DIRNAME

    @property
    def backup_descriptor(self) -> Path:
        return self.backup_dir / f"{self.output_name}.dzi"

    @property
    def backup_tiles(self) -> Path:
        return self.backup_dir / f"{self.output_name}_files"

    @property
    def intermediate(self) -> Path:
        return self.temp_dir / f"{self.output_name}_intermediate.v"

    # =========================================================================
    # Operations
    # =========================================================================

    def prepare(self) -> None:
        """Create directories and clear leftovers from an earlier attempt."""
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.discard_staging()
        self.remove_intermediates()

    def verify_staging(self) -> Path:
        """
        Check the engine produced a usable descriptor.

        Raises:
            OutputVerificationError: If the descriptor is missing or empty,
                or the tile directory is missing
        """
        descriptor = self.staging_descriptor
        if not descriptor.is_file():
            raise OutputVerificationError(f"Descriptor was not created: {descriptor.name}")
        if descriptor.stat().st_size == 0:
            raise OutputVerificationError(f"Descriptor is zero bytes: {descriptor.name}")
        if not self.staging_tiles.is_dir():
            raise OutputVerificationError(f"Tile directory was not created: {self.staging_tiles.name}")
        return descriptor

    def promote(self) -> Path:
        """
        Move verified staging output into place.

        The previous output is moved aside first and only deleted once the
        new descriptor is in place; on any error it is put back. Tiles move
        before the descriptor, so a present .dzi always refers to a
        complete tile tree.

        Returns:
            Final descriptor path

        Raises:
            OutputVerificationError: If staging is incomplete or a move fails
        """
        self.verify_staging()

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        _remove(self.backup_descriptor)
        _remove(self.backup_tiles)

        moved_aside = []
        tiles_promoted = False
        try:
            if self.final_descriptor.exists():
                os.replace(self.final_descriptor, self.backup_descriptor)
                moved_aside.append((self.backup_descriptor, self.final_descriptor))
            if self.final_tiles.exists():
                os.replace(self.final_tiles, self.backup_tiles)
                moved_aside.append((self.backup_tiles, self.final_tiles))
            os.replace(self.staging_tiles, self.final_tiles)
            tiles_promoted = True
            os.replace(self.staging_descriptor, self.final_descriptor)
        except OSError as e:
            if tiles_promoted:
                _remove(self.final_tiles)
            self._restore(moved_aside)
            raise OutputVerificationError(f"Failed to promote output: {e}") from e

        _remove(self.backup_descriptor)
        _remove(self.backup_tiles)
        logger.info(f"[Artifacts] Promoted {self.final_descriptor}")
        return self.final_descriptor

    def _restore(self, moved_aside) -> None:
        for backup, final in moved_aside:
            try:
                os.replace(backup, final)
            except OSError as e:
                logger.error(f"[Artifacts] Could not restore {final} from {backup}: {e}")

    def discard_staging(self) -> None:
        """Remove partial output. Never touches the final output."""
        _remove(self.staging_descriptor)
        _remove(self.staging_tiles)

    def remove_intermediates(self) -> None:
        _remove(self.intermediate)


def _remove(path: Path) -> None:
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        elif path.exists() or path.is_symlink():
            path.unlink()
    except OSError as e:
        logger.warning(f"[Artifacts] Failed to remove {path}: {e}")
