"""
Engine binary selection and installation.

The active backend is either the user's own build in backend/custom/ or a
release extracted under backend/releases/<tag>/. The choice is persisted in
backend-config.json; writes are read-modify-write and last write wins.
"""

import asyncio
import json
import logging
import os
import platform
import shutil
import subprocess
import sys
import tarfile
import time
import zipfile
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from flaxeo.backend.config import AppPaths, executable_name
from flaxeo.backend.errors import UpstreamError, ValidationError
from flaxeo.backend.models import BackendConfig
from flaxeo.backend.services.gallery import is_path_safe

logger = logging.getLogger(__name__)

GITHUB_RELEASES_URL = "https://api.github.com/repos/leejet/stable-diffusion.cpp/releases"
RELEASES_CACHE_TTL = 5 * 60
MAX_RELEASES = 10
USER_AGENT = "FlaxeoUI"

CUSTOM_VERSION = "custom"
SERVER_BINARY = "sd-server"
CLI_BINARY = "sd-cli"
EXECUTABLES = ("sd", SERVER_BINARY, CLI_BINARY)


def has_binary(directory: Path, name: str) -> bool:
    return (directory / name).exists() or (directory / f"{name}.exe").exists()


def has_engine(directory: Path) -> bool:
    """Both sd-server and sd-cli are present."""
    return has_binary(directory, SERVER_BINARY) and has_binary(directory, CLI_BINARY)


def _validate_version(version: Optional[str]) -> str:
    if not version:
        raise ValidationError("Version required", code="VERSION_REQUIRED")
    if version in (".", "..") or "/" in version or "\\" in version:
        raise ValidationError(f"Invalid version: {version}", code="INVALID_VERSION")
    return version


class BackendService:
    """Persisted backend selection plus release download and install."""

    def __init__(
        self,
        paths: AppPaths,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.paths = paths
        self._transport = transport
        self._clock = clock
        self._releases_cache: Optional[List[Dict[str, Any]]] = None
        self._releases_cached_at = 0.0
        self._config = self.load_config()

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def load_config(self) -> BackendConfig:
        config_file = self.paths.config_file
        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    config = BackendConfig.model_validate(json.load(f))
                _validate_version(config.active_version)
                return config
            except (OSError, ValueError, PydanticValidationError, ValidationError) as e:
                logger.error(f"Error loading {config_file}: {e}")
        return BackendConfig()

    def save_config(self) -> None:
        self.paths.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.paths.config_file, "w", encoding="utf-8") as f:
            json.dump(self._config.model_dump(by_alias=True), f, indent=2)

    @property
    def config(self) -> BackendConfig:
        return self._config

    def update_config(self, values: Dict[str, Any]) -> Dict[str, Any]:
        """Merge arbitrary keys into the stored config and persist it."""
        merged = {**self._config.model_dump(by_alias=True), **values}
        try:
            config = BackendConfig.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid backend config: {e.errors()[0]['msg']}") from e
        _validate_version(config.active_version)
        self._config = config
        self.save_config()
        return self._config.model_dump(by_alias=True)

    # ------------------------------------------------------------------
    # Path resolution
    # ------------------------------------------------------------------

    def active_path(self) -> Path:
        version = self._config.active_version
        if version == CUSTOM_VERSION:
            return self.paths.custom_dir
        return self.paths.releases_dir / version

    def executable(self, name: str) -> Path:
        return self.active_path() / executable_name(name)

    def installed_versions(self) -> List[str]:
        releases_dir = self.paths.releases_dir
        if not releases_dir.is_dir():
            return []
        return sorted(d.name for d in releases_dir.iterdir() if d.is_dir() and has_engine(d))

    def status(self) -> Dict[str, Any]:
        active = self.active_path()
        return {
            "activeVersion": self._config.active_version,
            "customBinaryExists": has_engine(self.paths.custom_dir),
            "installedVersions": self.installed_versions(),
            "activeBackendPath": str(active),
            "activeBackendValid": has_engine(active),
            "customDir": str(self.paths.custom_dir),
            "releasesDir": str(self.paths.releases_dir),
        }

    def use_custom(self) -> Dict[str, Any]:
        self._config.active_version = CUSTOM_VERSION
        self.save_config()
        logger.info("Backend switched to custom build")
        return {"success": True, "activeVersion": CUSTOM_VERSION}

    def set_active(self, version: Optional[str]) -> Dict[str, Any]:
        version = _validate_version(version)
        if version != CUSTOM_VERSION and not has_binary(self.paths.releases_dir / version, SERVER_BINARY):
            raise ValidationError(f"Version {version} not found", code="VERSION_NOT_FOUND")
        self._config.active_version = version
        self.save_config()
        logger.info(f"Backend switched to {version}")
        return {"success": True, "activeVersion": version}

    # ------------------------------------------------------------------
    # Releases
    # ------------------------------------------------------------------

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
            **kwargs,
        )

    async def fetch_releases(self, force: bool = False) -> List[Dict[str, Any]]:
        """Latest releases with their .zip assets, cached for five minutes."""
        now = self._clock()
        if not force and self._releases_cache is not None and now - self._releases_cached_at < RELEASES_CACHE_TTL:
            return self._releases_cache

        try:
            async with self._client(timeout=30.0) as client:
                response = await client.get(GITHUB_RELEASES_URL)
                response.raise_for_status()
                releases = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Releases fetch error: {e}")
            raise UpstreamError("Failed to fetch releases", code="RELEASES_UNAVAILABLE") from e

        processed = [
            {
                "tag": release.get("tag_name"),
                "name": release.get("name"),
                "published": release.get("published_at"),
                "assets": [
                    {"name": a.get("name"), "size": a.get("size"), "url": a.get("browser_download_url")}
                    for a in release.get("assets", [])
                    if str(a.get("name", "")).endswith(".zip")
                ],
            }
            for release in releases[:MAX_RELEASES]
        ]
        self._releases_cache = processed
        self._releases_cached_at = now
        return processed

    async def download(self, url: Optional[str], version: Optional[str], variant: Optional[str] = None) -> Dict[str, Any]:
        """Download a release archive, extract it and make it the active backend."""
        if not url or not version:
            raise ValidationError("Download URL and version required", code="DOWNLOAD_PARAMS_REQUIRED")
        version = _validate_version(version)

        version_dir = self.paths.releases_dir / version
        is_tar = url.endswith(".tar.gz") or url.endswith(".tgz")
        archive_path = self.paths.releases_dir / ("download.tar.gz" if is_tar else "download.zip")

        logger.info(f"[Backend] Downloading {version} ({variant}) from {url}")
        version_dir.mkdir(parents=True, exist_ok=True)
        try:
            await self._download_file(url, archive_path)
            logger.info("[Backend] Download complete, extracting...")
            await asyncio.to_thread(extract_archive, archive_path, version_dir, is_tar)
        except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
            logger.error(f"[Backend] Install error: {e}")
            raise UpstreamError(f"Install failed: {e}", code="INSTALL_FAILED") from e
        finally:
            if archive_path.exists():
                archive_path.unlink()

        if sys.platform != "win32":
            for name in EXECUTABLES:
                binary = version_dir / name
                if binary.exists():
                    os.chmod(binary, 0o755)

        self._config.active_version = version
        if version not in self._config.installed_versions:
            self._config.installed_versions.append(version)
        self.save_config()
        logger.info(f"[Backend] Installed {version} at {version_dir}")
        return {"success": True, "version": version, "path": str(version_dir)}

    async def _download_file(self, url: str, destination: Path) -> None:
        try:
            async with self._client(timeout=httpx.Timeout(60.0, read=300.0)) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise UpstreamError(f"Download failed: {response.status_code}", code="DOWNLOAD_FAILED")
                    with open(destination, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Download failed: {e}", code="DOWNLOAD_FAILED") from e

    # ------------------------------------------------------------------
    # Platform detection
    # ------------------------------------------------------------------

    def detect(self) -> Dict[str, Any]:
        """Recommend a release variant for this machine."""
        machine = platform.machine().lower()
        arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
        recommendation: Dict[str, Any] = {
            "platform": sys.platform,
            "arch": arch,
            "variant": None,
            "note": None,
        }

        if sys.platform.startswith("linux"):
            recommendation["variant"] = "Linux-Ubuntu"
            recommendation["note"] = (
                "The official Ubuntu build is CPU-only. For Vulkan/ROCm support on Linux, "
                "compile from source and place the binaries in backend/custom/."
            )
        elif sys.platform == "darwin":
            recommendation["variant"] = "Darwin-macOS"
            recommendation["note"] = "macOS build uses Metal acceleration."
        elif sys.platform == "win32":
            gpu_type, note = _detect_windows_gpu()
            recommendation["variant"] = f"win-{gpu_type}-x64"
            recommendation["note"] = note
        return recommendation


def _detect_windows_gpu():
    if shutil.which("nvidia-smi"):
        try:
            subprocess.run(["nvidia-smi"], capture_output=True, check=True, timeout=10)
            return "cuda12", "NVIDIA GPU detected. Recommend CUDA 12 build."
        except (OSError, subprocess.SubprocessError):
            pass
    try:
        result = subprocess.run(
            ["powershell", "-Command",
             "Get-CimInstance Win32_VideoController | Select-Object -ExpandProperty Name"],
            capture_output=True, text=True, timeout=15,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.info(f"GPU detection failed: {e}")
        return "vulkan", "Could not detect GPU. Vulkan is recommended as universal fallback."

    names = result.stdout or ""
    if "Radeon" in names or "AMD" in names:
        return "rocm", "AMD GPU detected. Recommend ROCM or Vulkan build."
    if any(token in names for token in ("NVIDIA", "GeForce", "Quadro")):
        return "cuda12", "NVIDIA GPU detected. Recommend CUDA 12 build."
    return "vulkan", "Vulkan is recommended as universal fallback."


def extract_archive(archive_path: Path, destination: Path, is_tar: bool) -> None:
    """Extract a release archive, refusing members that escape destination."""
    if is_tar:
        with tarfile.open(archive_path, "r:*") as archive:
            for member in archive.getmembers():
                if not is_path_safe(destination / member.name, [destination]):
                    raise tarfile.TarError(f"Unsafe path in archive: {member.name}")
            if hasattr(tarfile, "data_filter"):
                archive.extractall(destination, filter="data")
            else:
                archive.extractall(destination)
    else:
        with zipfile.ZipFile(archive_path) as archive:
            for name in archive.namelist():
                if not is_path_safe(destination / name, [destination]):
                    raise zipfile.BadZipFile(f"Unsafe path in archive: {name}")
            archive.extractall(destination)
