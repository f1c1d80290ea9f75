"""
Output gallery: listing, deletion and parameter lookup for generated files.

Every client-supplied name is resolved against the output directory and
rejected if it escapes it.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from flaxeo.backend.errors import NotFoundError, ValidationError
from flaxeo.backend.services.png_params import parse_parameters, read_png_text

logger = logging.getLogger(__name__)

GALLERY_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".mp4"}


def is_path_safe(path: Path, allowed_roots: Optional[List[Path]] = None) -> bool:
    """
    Validate that a path is safe to access.

    Prevents directory traversal by ensuring the resolved path is under one of
    the allowed root directories.

    Args:
        path: Path to validate
        allowed_roots: Allowed root directories (if None, any path is allowed)

    Returns:
        True if path is safe, False otherwise
    """
    try:
        resolved = path.resolve()
        if not allowed_roots:
            return True
        for root in allowed_roots:
            try:
                resolved.relative_to(root.resolve())
                return True
            except ValueError:
                continue
        return False
    except (OSError, RuntimeError):
        return False


class GalleryService:
    """Read and prune the output directory."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)

    def resolve(self, name: Optional[str]) -> Path:
        """
        Map a gallery file name to its absolute path.

        Raises:
            ValidationError: if the name is empty or points outside the gallery
        """
        if not name:
            raise ValidationError("Filename required", code="FILENAME_REQUIRED")
        path = self.output_dir / name
        if not is_path_safe(path, [self.output_dir]) or path.resolve() == self.output_dir.resolve():
            raise ValidationError("Access denied", code="ACCESS_DENIED")
        return path

    def list_files(self) -> List[str]:
        """Media files, newest first."""
        if not self.output_dir.is_dir():
            return []
        entries = []
        for path in self.output_dir.iterdir():
            if not path.is_file() or path.suffix.lower() not in GALLERY_EXTENSIONS:
                continue
            try:
                entries.append((path.stat().st_mtime, path.name))
            except OSError:
                continue
        entries.sort(key=lambda entry: entry[0], reverse=True)
        return [name for _, name in entries]

    def delete(self, name: Optional[str]) -> bool:
        """Delete one output file. Returns False when it was already gone."""
        path = self.resolve(name)
        if not path.exists():
            return False
        if not path.is_file():
            raise ValidationError("Not a file", code="ACCESS_DENIED")
        path.unlink()
        logger.info(f"Deleted {path}")
        return True

    def read_parameters(self, name: Optional[str]) -> Dict[str, Any]:
        """Parsed generation parameters of a gallery PNG (empty if it has none)."""
        path = self.resolve(name)
        if not path.is_file():
            raise NotFoundError(f"File not found: {name}")
        return parse_parameters(read_png_text(path))
