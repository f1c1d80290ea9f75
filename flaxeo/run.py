#!/usr/bin/env python3
"""
Flaxeo server entry point.

Starts the FastAPI application with uvicorn. Launch options that the app
factory needs are handed over through the environment so that reload mode
(which re-imports the app in a child process) sees them too.

Usage:
    flaxeo-server                      # localhost:3000, or the next free port
    flaxeo-server --local              # reachable from the LAN
    flaxeo-server --ngrok --cloudflare # open tunnels at startup
    flaxeo-server --dev                # auto-reload on file changes
"""
import argparse
import logging
import os
import socket
import sys
from pathlib import Path

import uvicorn

from flaxeo.backend.config import AppConfig

PORT_SEARCH_LIMIT = 100

package_dir = Path(__file__).parent


def is_port_in_use(port: int, host: str = "localhost") -> bool:
    """Check if a port is in use"""
    if port == 0:
        return False
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex((host, port)) == 0


def find_free_port(start: int, host: str = "localhost") -> int:
    """First port at or above start that nothing is listening on."""
    for port in range(start, start + PORT_SEARCH_LIMIT):
        if not is_port_in_use(port, host):
            return port
    raise RuntimeError(f"No free port in {start}-{start + PORT_SEARCH_LIMIT - 1}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Flaxeo Server")
    parser.add_argument("--dev", action="store_true",
                        help="Enable development mode with auto-reload (running generations are lost on reload)")
    parser.add_argument("--host", default="localhost", help="Host to bind to")
    parser.add_argument("--port", type=int, default=AppConfig.DEFAULT_PORT,
                        help="Preferred port; the next free one is used if taken")
    parser.add_argument("--local", action="store_true", help="Bind to 0.0.0.0 for LAN access")
    parser.add_argument("--ngrok", action="store_true", help="Open an ngrok tunnel at startup")
    parser.add_argument("--cloudflare", action="store_true", help="Open a Cloudflare quick tunnel at startup")
    return parser


def main(argv=None):
    """Run the Flaxeo server."""
    args = build_parser().parse_args(argv)

    log_level = AppConfig.get_log_level()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    host = "0.0.0.0" if args.local else args.host
    port = find_free_port(args.port)
    tunnels = [name for name, wanted in (("ngrok", args.ngrok), ("cloudflare", args.cloudflare)) if wanted]

    os.environ["FLAXEO_PORT"] = str(port)
    os.environ["FLAXEO_LOCAL"] = "1" if args.local else "0"
    os.environ["FLAXEO_TUNNELS"] = ",".join(tunnels)

    mode = "DEVELOPMENT" if args.dev else "PRODUCTION"

    print("=" * 60)
    print("Flaxeo Server")
    print("=" * 60)
    print(f"Mode: {mode}")
    if args.dev:
        print("  - Auto-reload ENABLED (file changes restart server)")
    print(f"Resources: {AppConfig.get_resources_path()}")
    print(f"Server: http://{host}:{port}")
    if port != args.port:
        print(f"  - Port {args.port} is busy, using {port}")
    if tunnels:
        print(f"Tunnels: {', '.join(tunnels)}")
    print("=" * 60)
    # Read by the desktop shell to find the port
    print(f"[Server] Running on port: {port}")
    sys.stdout.flush()

    uvicorn.run(
        "flaxeo.backend.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=args.dev,
        reload_dirs=[str(package_dir)] if args.dev else None,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
