"""
API endpoints for the Flaxeo server.

This package contains all REST API routers for the backend:
- catalog: model files per category
- server: persistent sd-server lifecycle and server-mode generation
- generation: sd-cli text2image, inpaint, video, conversion, live preview
- gallery: output listing, deletion, PNG parameters, folder opening
- logs: log buffer paging
- backend: engine binary releases, detection and selection
- network: LAN access and tunnels

Usage:
    from flaxeo.backend.api import catalog, server, generation

    app.include_router(catalog.router, prefix="/api")
"""

from . import catalog
from . import server
from . import generation
from . import gallery
from . import logs
from . import backend
from . import network

__all__ = ["catalog", "server", "generation", "gallery", "logs", "backend", "network"]
