"""
Gallery REST API endpoints.

- List generated files, newest first
- Delete a generated file
- Read the generation parameters embedded in a PNG
- Open the models or output folder in the native file explorer
"""

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from flaxeo.backend.api.deps import get_services
from flaxeo.backend.errors import ValidationError
from flaxeo.backend.models import DeleteRequest, ImageParamsRequest, OpenFolderRequest
from flaxeo.backend.services.container import Services

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/gallery", summary="List generated files")
async def list_gallery(services: Services = Depends(get_services)) -> List[str]:
    return services.gallery.list_files()


@router.post("/delete", summary="Delete a generated file")
async def delete_file(request: DeleteRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.gallery.delete(request.filename)
    return {"message": "Deleted"}


@router.post("/image/params", summary="Generation parameters stored in a PNG")
async def image_params(request: ImageParamsRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if not request.path:
        raise ValidationError("Path required", code="PATH_REQUIRED")
    return services.gallery.read_parameters(request.path)


async def open_in_file_explorer(path: Path) -> None:
    """Ask the desktop to show a folder. Raises OSError when that fails."""
    if sys.platform == "win32":
        os.startfile(str(path))
        return
    opener = "open" if sys.platform == "darwin" else "xdg-open"
    process = await asyncio.create_subprocess_exec(
        opener, str(path),
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )
    return_code = await process.wait()
    if return_code != 0:
        raise OSError(f"{opener} exited with code {return_code}")


@router.post("/open-folder", summary="Open models or output folder")
async def open_folder(request: OpenFolderRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    folders = {
        "models": services.paths.models_dir,
        "output": services.paths.output_dir,
    }
    folder = folders.get(request.folder or "")
    if folder is None:
        raise ValidationError("Invalid folder", code="INVALID_FOLDER")

    folder.mkdir(parents=True, exist_ok=True)
    try:
        await open_in_file_explorer(folder.resolve())
    except OSError as e:
        logger.error(f"Failed to open folder {folder}: {e}")
        return {"success": False, "error": str(e)}
    return {"success": True}
