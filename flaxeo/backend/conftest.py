"""Shared fixtures: a scriptable stand-in for the stable-diffusion.cpp executables."""

import os
import sys
from pathlib import Path

import pytest

from flaxeo.backend.config import AppPaths

# Behaviours, selected by the FAKE_ENGINE_MODE baked into each script:
#   ok        write the -o artifact and exit 0
#   fail      print to stderr and exit 3
#   no_output exit 0 without writing anything
#   sleep     wait to be signalled
#   stubborn  ignore SIGTERM, then wait to be killed
#   server    announce a listen port, then wait to be signalled
#   tunnel    print a quick-tunnel URL, then wait to be signalled
FAKE_ENGINE = """#!{python}
import signal
import sys
import time

mode = "{mode}"
args = sys.argv[1:]
output = args[args.index("-o") + 1] if "-o" in args else None
print("fake engine: " + " ".join(args), flush=True)

if mode == "ok":
    with open(output, "wb") as f:
        f.write(b"artifact")
    sys.exit(0)
if mode == "fail":
    print("boom: model failed to load", file=sys.stderr, flush=True)
    sys.exit(3)
if mode == "no_output":
    sys.exit(0)
if mode == "server":
    print("listening on: 127.0.0.1:4321", flush=True)
if mode == "tunnel":
    print("Your quick Tunnel: https://quiet-river-42.trycloudflare.com", flush=True)
if mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("ignoring SIGTERM", flush=True)
time.sleep(60)
"""


def write_fake_engine(path: Path, mode: str = "ok") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(FAKE_ENGINE.format(python=sys.executable, mode=mode))
    os.chmod(path, 0o755)
    return path


@pytest.fixture
def app_paths(tmp_path):
    paths = AppPaths(tmp_path / "resources")
    paths.ensure()
    return paths


@pytest.fixture
def fake_engine(tmp_path):
    """Factory: fake_engine(mode, name) writes an executable script and returns its path."""
    def make(mode: str = "ok", name: str = "sd-cli", directory: Path = None) -> Path:
        return write_fake_engine((directory or tmp_path / "bin") / name, mode)
    return make


@pytest.fixture
def install_engine(app_paths):
    """Factory: put fake sd-cli / sd-server scripts in backend/custom."""
    def install(cli_mode: str = "ok", server_mode: str = "server") -> Path:
        write_fake_engine(app_paths.custom_dir / "sd-cli", cli_mode)
        write_fake_engine(app_paths.custom_dir / "sd-server", server_mode)
        return app_paths.custom_dir
    return install
