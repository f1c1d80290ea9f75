"""
Network exposure endpoints.

- Report LAN and tunnel status
- Toggle LAN reporting, ngrok and Cloudflare quick tunnels
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from flaxeo.backend.api.deps import get_services
from flaxeo.backend.models import NetworkToggleRequest, TunnelRequest
from flaxeo.backend.services.container import Services

router = APIRouter()

# Cloudflare prints its URL a moment after starting
CLOUDFLARE_URL_WAIT = 3.0


@router.get("/status", summary="LAN and tunnel status")
async def get_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.network.status()


@router.post("/local", summary="Toggle LAN access reporting")
async def set_local(request: TunnelRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.network.set_local(request.enabled)


@router.post("/ngrok", summary="Start or stop the ngrok tunnel")
async def toggle_ngrok(request: TunnelRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if request.enabled:
        url = await services.network.start_ngrok(request.token)
        return {"success": True, "url": url}
    await services.network.stop("ngrok")
    return {"success": True}


@router.post("/cloudflare", summary="Start or stop the Cloudflare quick tunnel")
async def toggle_cloudflare(request: TunnelRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if request.enabled:
        url = await services.network.start_cloudflare(wait=CLOUDFLARE_URL_WAIT)
        return {"success": True, "url": url}
    await services.network.stop("cloudflare")
    return {"success": True}


@router.post("/toggle", summary="Start or stop a tunnel by name")
async def toggle(request: NetworkToggleRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.network.toggle(request.service, request.action, request.token)
