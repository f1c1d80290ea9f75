"""
One-shot sd-cli endpoints.

Each request runs a single sd-cli process in the cli slot and answers once
it has exited:
- text2image (optionally with PhotoMaker, Kontext reference, ControlNet)
- inpaint / img2img
- video
- model conversion
- cancellation and the live preview image
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import FileResponse

from flaxeo.backend.api.deps import get_services, parse_generation, parse_model, read_payload
from flaxeo.backend.errors import NotFoundError
from flaxeo.backend.models import CancelRequest, GenerationResponse
from flaxeo.backend.services.container import Services

router = APIRouter()

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


@router.post(
    "/generate-cli",
    response_model=GenerationResponse,
    response_model_exclude_none=True,
    summary="Text to image",
    description="Run sd-cli once. Accepts JSON or multipart with reference image uploads.",
)
async def generate_cli(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    fields, uploads = await read_payload(request)
    generation = parse_generation(fields, "text2image")
    return await services.dispatcher.generate_cli(generation, uploads)


@router.post(
    "/inpaint",
    response_model=GenerationResponse,
    response_model_exclude_none=True,
    summary="Inpaint / img2img",
)
async def inpaint(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    fields, uploads = await read_payload(request)
    generation = parse_generation(fields, "inpaint")
    return await services.dispatcher.inpaint(generation, uploads)


@router.post(
    "/generate-video",
    response_model=GenerationResponse,
    response_model_exclude_none=True,
    summary="Image or text to video",
)
async def generate_video(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    fields, uploads = await read_payload(request)
    generation = parse_generation(fields, "video")
    return await services.dispatcher.generate_video(generation, uploads)


@router.post("/convert", summary="Convert a model file to another weight format")
async def convert(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    fields, _ = await read_payload(request)
    conversion = parse_generation(fields, "convert")
    return await services.dispatcher.convert(conversion)


@router.post("/cancel-cli", summary="Cancel the running sd-cli process")
async def cancel_cli(
    request: Request,
    force: bool = Query(False, description="Kill the process instead of terminating it"),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    fields, _ = await read_payload(request)
    cancel = parse_model(CancelRequest, fields)
    return await services.dispatcher.cancel_cli(force=force or cancel.force)


@router.get("/preview-image", summary="Latest live preview frame")
async def preview_image(services: Services = Depends(get_services)):
    preview = services.paths.preview_path
    if not preview.is_file():
        raise NotFoundError("No preview available", code="NO_PREVIEW")
    return FileResponse(preview, media_type="image/png", headers=NO_CACHE_HEADERS)
