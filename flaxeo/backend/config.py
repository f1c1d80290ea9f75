"""Application configuration and on-disk layout."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List


# Fixed subfolder names under models/, one per model category
MODEL_SUBDIRS = [
    "diffusion",
    "vae",
    "llm",
    "t5xxl",
    "clip",
    "clip_vision",
    "loras",
    "controlnet",
    "photomaker",
    "upscale",
    "taesd",
    "embeddings",
]


class AppConfig:
    """Environment-driven settings."""

    DEFAULT_LOG_LEVEL = "INFO"
    DEFAULT_LOG_CAPACITY = 1000
    DEFAULT_READY_TIMEOUT = 30.0
    DEFAULT_INFERENCE_PORT = 1234
    DEFAULT_PORT = 3000

    @classmethod
    def get_resources_path(cls) -> Path:
        """Root directory for backend binaries, models, outputs and temp files."""
        env_path = os.environ.get("FLAXEO_RESOURCES_PATH")
        if env_path:
            return Path(env_path)
        return Path.cwd()

    @classmethod
    def is_packaged(cls) -> bool:
        return os.environ.get("FLAXEO_PACKAGED", "0") == "1"

    @classmethod
    def get_log_level(cls) -> str:
        return os.environ.get("FLAXEO_LOG_LEVEL", cls.DEFAULT_LOG_LEVEL).upper()

    @classmethod
    def get_log_capacity(cls) -> int:
        try:
            return int(os.environ.get("FLAXEO_LOG_CAPACITY", cls.DEFAULT_LOG_CAPACITY))
        except ValueError:
            return cls.DEFAULT_LOG_CAPACITY

    @classmethod
    def get_ready_timeout(cls) -> float:
        try:
            return float(os.environ.get("FLAXEO_SERVER_READY_TIMEOUT", cls.DEFAULT_READY_TIMEOUT))
        except ValueError:
            return cls.DEFAULT_READY_TIMEOUT

    @classmethod
    def get_ngrok_token(cls) -> str:
        return os.environ.get("NGROK_AUTHTOKEN", "")

    @classmethod
    def get_port(cls) -> int:
        """Port the HTTP API is served on (set by the launcher)."""
        try:
            return int(os.environ.get("FLAXEO_PORT", cls.DEFAULT_PORT))
        except ValueError:
            return cls.DEFAULT_PORT

    @classmethod
    def is_local_enabled(cls) -> bool:
        return os.environ.get("FLAXEO_LOCAL", "0") == "1"

    @classmethod
    def get_startup_tunnels(cls) -> List[str]:
        """Tunnels to open at startup, from FLAXEO_TUNNELS="ngrok,cloudflare"."""
        raw = os.environ.get("FLAXEO_TUNNELS", "")
        return [name.strip() for name in raw.split(",") if name.strip()]


@dataclass(frozen=True)
class AppPaths:
    """Writable directory layout rooted at the resources path."""

    root: Path

    @classmethod
    def from_env(cls) -> "AppPaths":
        return cls(AppConfig.get_resources_path().resolve())

    @property
    def backend_dir(self) -> Path:
        return self.root / "backend"

    @property
    def custom_dir(self) -> Path:
        return self.backend_dir / "custom"

    @property
    def releases_dir(self) -> Path:
        return self.backend_dir / "releases"

    @property
    def models_dir(self) -> Path:
        return self.root / "models"

    @property
    def output_dir(self) -> Path:
        return self.root / "output"

    @property
    def temp_dir(self) -> Path:
        return self.root / "temp"

    @property
    def config_file(self) -> Path:
        return self.root / "backend-config.json"

    @property
    def preview_path(self) -> Path:
        return self.temp_dir / "preview.png"

    def model_dir(self, category: str) -> Path:
        return self.models_dir / category

    def ensure(self) -> None:
        """Create every directory the server writes to."""
        for subdir in MODEL_SUBDIRS:
            (self.models_dir / subdir).mkdir(parents=True, exist_ok=True)
        for directory in (self.output_dir, self.backend_dir, self.custom_dir,
                          self.releases_dir, self.temp_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def list_models(self, category: str) -> List[str]:
        """Visible files in one model category folder."""
        directory = self.model_dir(category)
        try:
            return sorted(p.name for p in directory.iterdir() if not p.name.startswith("."))
        except OSError:
            return []

    def models_catalog(self) -> Dict[str, List[str]]:
        clip = self.list_models("clip")
        return {
            "diffusion": self.list_models("diffusion"),
            "loras": self.list_models("loras"),
            "vae": self.list_models("vae"),
            "llm": self.list_models("llm"),
            "t5xxl": self.list_models("t5xxl"),
            "clip": clip,
            # CLIP-G files share the clip folder
            "clipG": clip,
            "clipVision": self.list_models("clip_vision"),
            "controlnet": self.list_models("controlnet"),
            "photomaker": self.list_models("photomaker"),
            "upscale": self.list_models("upscale"),
            "taesd": self.list_models("taesd"),
            "embeddings": self.list_models("embeddings"),
        }


def executable_name(name: str) -> str:
    """Platform-specific file name for an engine executable."""
    return f"{name}.exe" if sys.platform == "win32" else name
