"""
Request-scoped temporary files and directories.

Each request opens its own TempResourceSet; everything acquired through it is
deleted when the set is released, whether the request succeeded, failed or
was cancelled. Deletion problems are logged and never reach the caller.
"""

import logging
import shutil
import time
import uuid
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class UploadedFile(Protocol):
    """What an upload needs to expose (starlette's UploadFile fits)."""

    filename: Optional[str]
    file: BinaryIO


def unique_name(kind: str, suffix: str = "") -> str:
    """Collision-resistant name: <kind>_<ms timestamp>_<random hex><suffix>."""
    return f"{kind}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}{suffix}"


def safe_filename(name: Optional[str], default: str = "upload.png") -> str:
    """Strip any directory part a client may have sent."""
    base = Path(name or "").name
    return base or default


class TempResourceSet:
    """Paths owned by one request."""

    def __init__(self, root: Path):
        self._root = Path(root)
        self._paths: List[Path] = []
        self._released = False

    @property
    def root(self) -> Path:
        return self._root

    @property
    def paths(self) -> List[Path]:
        return list(self._paths)

    @property
    def released(self) -> bool:
        return self._released

    def _track(self, path: Path) -> Path:
        if self._released:
            raise RuntimeError("Resource set already released")
        self._paths.append(path)
        return path

    def acquire_dir(self, kind: str) -> Path:
        """Create and track a fresh empty directory."""
        self._root.mkdir(parents=True, exist_ok=True)
        directory = self._track(self._root / unique_name(kind))
        directory.mkdir()
        return directory

    def acquire_file(self, kind: str, suffix: str = ".png") -> Path:
        """Reserve and track a destination path (the file is not created)."""
        self._root.mkdir(parents=True, exist_ok=True)
        return self._track(self._root / unique_name(kind, suffix))

    def save_upload(self, kind: str, upload: UploadedFile) -> Path:
        """Write a single upload (mask, init image, reference) to a tracked file."""
        suffix = Path(safe_filename(upload.filename)).suffix or ".png"
        destination = self.acquire_file(kind, suffix)
        _copy_stream(upload, destination)
        return destination

    def save_upload_into(self, directory: Path, upload: UploadedFile) -> Path:
        """Write an upload into an already acquired directory."""
        destination = directory / f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}_{safe_filename(upload.filename)}"
        _copy_stream(upload, destination)
        return destination

    def copy_into(self, directory: Path, sources: Iterable[Path]) -> List[Path]:
        """
        Copy existing files into an acquired directory.

        Missing sources are skipped with a warning.

        Returns:
            Paths of the copies that were made
        """
        copied = []
        for source in sources:
            source = Path(source)
            if not source.is_file():
                logger.warning(f"Skipping missing file: {source}")
                continue
            destination = directory / f"{uuid.uuid4().hex[:8]}_{source.name}"
            shutil.copyfile(source, destination)
            copied.append(destination)
        return copied

    def release(self) -> List[Tuple[Path, str]]:
        """
        Delete every tracked path.

        Returns:
            (path, error) pairs for deletions that failed
        """
        failures = []
        for path in reversed(self._paths):
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                elif path.exists():
                    path.unlink()
            except OSError as e:
                logger.warning(f"Cleanup failed for {path}: {e}")
                failures.append((path, str(e)))
        self._paths.clear()
        self._released = True
        return failures

    def __enter__(self) -> "TempResourceSet":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    async def __aenter__(self) -> "TempResourceSet":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class TempResourceManager:
    """Hands out independent resource sets rooted in the temp directory."""

    def __init__(self, root: Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def scope(self) -> TempResourceSet:
        return TempResourceSet(self._root)


def _copy_stream(upload: UploadedFile, destination: Path) -> None:
    stream = upload.file
    if hasattr(stream, "seek"):
        stream.seek(0)
    with open(destination, "wb") as f:
        shutil.copyfileobj(stream, f)
