"""Log buffer endpoints: paging by index and clearing."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Query

from flaxeo.backend.api.deps import get_services
from flaxeo.backend.models import LogsResponse
from flaxeo.backend.services.container import Services

router = APIRouter()


@router.get("/logs", response_model=LogsResponse, summary="Page through engine output")
async def get_logs(
    since: int = Query(0, ge=0, description="Index of the first entry to return"),
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return services.log_buffer.since(since, limit)


@router.post("/logs/clear", summary="Clear the log buffer")
async def clear_logs(services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.log_buffer.clear()
    return {"success": True}
