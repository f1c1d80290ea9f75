"""
Persistent inference server endpoints.

- Start/stop the sd-server process
- Report server and cli slot status with the last log lines
- Generate through the server's OpenAI-style images API
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from flaxeo.backend.api.deps import get_services, parse_model, read_payload
from flaxeo.backend.models import GenerationResponse, ServerGenerateRequest, ServerStartRequest
from flaxeo.backend.services.container import Services

router = APIRouter()


@router.post(
    "/start",
    summary="Start inference server",
    description="Spawn sd-server with the selected models and wait until it listens.",
)
async def start_server(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    fields, _ = await read_payload(request)
    start_request = parse_model(ServerStartRequest, fields)
    return await services.dispatcher.start_server(start_request)


@router.post("/stop", summary="Stop inference server")
async def stop_server(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return await services.dispatcher.stop_server()


@router.get("/status", summary="Server status")
async def get_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.dispatcher.status()


@router.post(
    "/generate",
    response_model=GenerationResponse,
    response_model_exclude_none=True,
    summary="Generate with the running server",
    description="Send one request per image to the inference server and save the results.",
)
async def generate(request: Request, services: Services = Depends(get_services)) -> Dict[str, Any]:
    fields, _ = await read_payload(request)
    generate_request = parse_model(ServerGenerateRequest, fields)
    return await services.dispatcher.generate_server(generate_request)
