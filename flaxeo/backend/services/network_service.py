"""
Network exposure: LAN address reporting plus ngrok and Cloudflare quick tunnels.

Tunnels are the vendors' own command-line clients run under a
ProcessSupervisor; the public URL is read from their output.
"""

import logging
import shutil
import socket
from typing import Any, Dict, Optional

from flaxeo.backend.config import AppConfig
from flaxeo.backend.errors import SpawnError, ValidationError
from flaxeo.backend.services.log_buffer import LogBuffer
from flaxeo.backend.services.process_supervisor import ProcessListener, ProcessState, ProcessSupervisor

logger = logging.getLogger(__name__)

NGROK_URL_PATTERN = r"https://[A-Za-z0-9.-]+\.ngrok(?:-free)?\.(?:app|io|dev)"
CLOUDFLARE_URL_PATTERN = r"https://[A-Za-z0-9-]+\.trycloudflare\.com"

NGROK_READY_TIMEOUT = 15.0
TUNNEL_SERVICES = ("ngrok", "cloudflare")


def get_local_ip() -> str:
    """Address of the interface used for outbound traffic, or "localhost"."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects a route
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "localhost"
    finally:
        sock.close()


class NetworkService:
    """Tracks LAN exposure and owns the tunnel processes."""

    def __init__(
        self,
        log_buffer: LogBuffer,
        port: int = 3000,
        local_enabled: bool = False,
        listener: Optional[ProcessListener] = None,
    ):
        self.port = port
        self.local_enabled = local_enabled
        self._errors: Dict[str, Optional[str]] = {name: None for name in TUNNEL_SERVICES}
        self.tunnels: Dict[str, ProcessSupervisor] = {
            "ngrok": ProcessSupervisor("ngrok", log_buffer, listener, ready_pattern=NGROK_URL_PATTERN),
            "cloudflare": ProcessSupervisor("cloudflare", log_buffer, listener, ready_pattern=CLOUDFLARE_URL_PATTERN),
        }

    def local_url(self) -> str:
        return f"http://{get_local_ip()}:{self.port}"

    def _tunnel_status(self, name: str) -> Dict[str, Any]:
        supervisor = self.tunnels[name]
        current = supervisor.current
        error = self._errors[name]
        outcome = supervisor.last_outcome
        if error is None and current is None and outcome is not None and outcome.state is ProcessState.FAILED:
            error = f"Tunnel exited with code {outcome.return_code}"
        return {
            "enabled": supervisor.is_active,
            "url": current.announcement if current else None,
            "error": error,
        }

    def status(self) -> Dict[str, Any]:
        return {
            "local": {
                "enabled": self.local_enabled,
                "url": self.local_url() if self.local_enabled else None,
            },
            "ngrok": self._tunnel_status("ngrok"),
            "cloudflare": self._tunnel_status("cloudflare"),
        }

    def set_local(self, enabled: bool) -> Dict[str, Any]:
        """
        Record whether LAN access is wanted.

        Binding is decided at launch (--local); this only updates what is
        reported to the UI.
        """
        self.local_enabled = bool(enabled)
        url = self.local_url() if self.local_enabled else None
        return {"success": True, "enabled": self.local_enabled, "url": url}

    async def start_ngrok(self, token: Optional[str] = None) -> Optional[str]:
        token = token or AppConfig.get_ngrok_token()
        if not token:
            raise ValidationError(
                "Ngrok requires an auth token. Get yours from "
                "https://dashboard.ngrok.com/get-started/your-authtoken",
                code="NGROK_TOKEN_REQUIRED",
            )
        supervisor = self.tunnels["ngrok"]
        if supervisor.is_active:
            return supervisor.current.announcement

        binary = shutil.which("ngrok") or "ngrok"
        await self._start("ngrok", [
            binary, "http", str(self.port), "--log", "stdout", "--log-format", "logfmt",
        ], env={"NGROK_AUTHTOKEN": token})

        await supervisor.wait_ready(NGROK_READY_TIMEOUT)
        current = supervisor.current
        url = current.announcement if current else None
        if url:
            logger.info(f"[Ngrok] Tunnel active: {url}")
        return url

    async def start_cloudflare(self, wait: float = 0) -> Optional[str]:
        """
        Start a quick tunnel.

        The URL shows up in status() once announced; pass wait to give the
        client a few seconds to print it.
        """
        supervisor = self.tunnels["cloudflare"]
        if not supervisor.is_active:
            binary = shutil.which("cloudflared") or "cloudflared"
            await self._start("cloudflare", [binary, "tunnel", "--url", f"http://localhost:{self.port}"])
        if wait > 0:
            await supervisor.wait_ready(wait)
        current = supervisor.current
        return current.announcement if current else None

    async def _start(self, name: str, command, env: Optional[Dict[str, str]] = None) -> None:
        self._errors[name] = None
        try:
            await self.tunnels[name].start(command, env=env)
        except SpawnError as e:
            self._errors[name] = e.message
            logger.error(f"[{name}] Failed to start: {e.message}")
            raise

    async def stop(self, name: str) -> None:
        await self.tunnels[name].stop()
        self._errors[name] = None

    async def toggle(self, service: Optional[str], action: Optional[str], token: Optional[str] = None) -> Dict[str, Any]:
        if service not in TUNNEL_SERVICES:
            raise ValidationError("Invalid service", code="INVALID_SERVICE")
        if action == "start":
            if service == "ngrok":
                return {"success": True, "url": await self.start_ngrok(token)}
            await self.start_cloudflare()
            return {"success": True, "message": "Tunnel starting..."}
        await self.stop(service)
        return {"success": True}

    async def shutdown(self) -> None:
        for name in TUNNEL_SERVICES:
            if self.tunnels[name].is_active:
                await self.stop(name)
