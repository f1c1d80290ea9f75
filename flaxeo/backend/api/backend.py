"""
Engine binary management endpoints.

- Browse stable-diffusion.cpp releases (cached)
- Recommend a release asset for this machine
- Read and update the persisted backend selection
- Download a release or switch between installed/custom binaries
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query, Request

from flaxeo.backend.api.deps import get_services, read_payload
from flaxeo.backend.models import BackendDownloadRequest, SetActiveRequest
from flaxeo.backend.services.container import Services

router = APIRouter()


@router.get("/releases", summary="Available engine releases")
async def list_releases(
    force: bool = Query(False, description="Bypass the release cache"),
    services: Services = Depends(get_services),
) -> List[Dict[str, Any]]:
    return await services.backend.fetch_releases(force=force)


@router.get("/detect", summary="Platform and GPU recommendation")
async def detect(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.backend.detect()


@router.get("/config", summary="Backend selection and installed versions")
async def get_config(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.backend.status()


@router.post("/config", summary="Update backend selection")
async def update_config(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    fields, _ = await read_payload(request)
    return services.backend.update_config(fields)


@router.post("/download", summary="Download and install a release")
async def download(request: BackendDownloadRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.backend.download(request.url, request.version, request.variant)


@router.post("/use-custom", summary="Use the binary in backend/custom")
async def use_custom(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.backend.use_custom()


@router.post("/set-active", summary="Activate an installed release")
async def set_active(request: SetActiveRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.backend.set_active(request.version)
