"""Model catalog endpoint: model files available per category."""

from typing import Dict, List

from fastapi import APIRouter, Depends

from flaxeo.backend.api.deps import get_services
from flaxeo.backend.services.container import Services

router = APIRouter()


@router.get(
    "/models",
    summary="List models",
    description="Model files found in each fixed subfolder of the models directory.",
)
async def list_models(services: Services = Depends(get_services)) -> Dict[str, List[str]]:
    return services.paths.models_catalog()
