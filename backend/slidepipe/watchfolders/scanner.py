"""
Filesystem scanner for watch folders.

Extension filtering, ignore rules for in-flight downloads, the startup scan
of files already present, and output name derivation for files in
subfolders.
"""

import re
from pathlib import Path
from typing import List, Optional, Union

PathLike = Union[str, Path]


class FileScanner:
    """
    Filesystem scanner for slide ingestion.

    Scans directories for slide files matching a whitelist of extensions.
    Skips hidden files, partial downloads, directories, and symlinks.
    """

    # Whole-slide formats the conversion engine accepts
    SLIDE_EXTENSIONS = {".svs", ".ndpi", ".tif", ".tiff", ".jp2", ".vms", ".vmu", ".scn"}

    # Suffixes used by copy tools and browsers for files still in flight
    IGNORED_SUFFIXES = {".tmp", ".temp", ".part", ".crdownload", ".download"}

    def __init__(self, skip_hidden: bool = True, follow_symlinks: bool = False):
        """
        Initialize file scanner.

        Args:
            skip_hidden: Skip files/dirs starting with '.' (default: True)
            follow_symlinks: Follow symbolic links (default: False for safety)
        """
        self.skip_hidden = skip_hidden
        self.follow_symlinks = follow_symlinks

    def accepts(self, path: PathLike, root: Optional[PathLike] = None) -> bool:
        """
        Whether a path is a slide file this pipeline should consider.

        Hidden components are checked relative to `root` when given, so a
        watch root that itself lives under a dot directory still works.
        """
        p = Path(path)
        suffix = p.suffix.lower()

        if suffix in self.IGNORED_SUFFIXES:
            return False
        if suffix not in self.SLIDE_EXTENSIONS:
            return False

        if self.skip_hidden:
            parts = p.parts
            if root is not None:
                try:
                    parts = p.relative_to(Path(root)).parts
                except ValueError:
                    pass
            if any(part.startswith(".") for part in parts):
                return False

        return True

    def scan(self, root: PathLike, recursive: bool = True) -> List[Path]:
        """
        Scan a directory for slide files.

        Returns:
            Absolute candidate paths (not yet stability-checked), sorted
        """
        root_path = Path(root)
        if not root_path.is_dir():
            return []

        candidates = []
        iterator = root_path.rglob("*") if recursive else root_path.iterdir()

        try:
            for item in iterator:
                if item.is_symlink() and not self.follow_symlinks:
                    continue
                if not item.is_file():
                    continue
                if self.accepts(item, root_path):
                    candidates.append(item.resolve())
        except OSError:
            # Directory became inaccessible during scan. Return what we have.
            pass

        return sorted(candidates)


_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9._-]+")


def output_name_for(root: PathLike, path: PathLike) -> str:
    """
    Unique output base name for a source file.

    Files directly under the root keep their stem. Files in subfolders are
    prefixed with their relative directory, separators replaced by '_', so
    'caseA/slide1.svs' and 'caseB/slide1.svs' do not collide.
    """
    p = Path(path)
    stem = p.stem
    try:
        relative_dir = p.parent.relative_to(Path(root))
    except ValueError:
        relative_dir = Path(".")

    if str(relative_dir) in ("", "."):
        name = stem
    else:
        name = "_".join(relative_dir.parts + (stem,))

    return _UNSAFE_NAME.sub("_", name)
