"""Request-level helpers shared by the routers."""

import json
from typing import Any, Dict, List, Tuple, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.datastructures import UploadFile

from flaxeo.backend.errors import ValidationError
from flaxeo.backend.models import generation_request_adapter
from flaxeo.backend.services.container import Services

ModelT = TypeVar("ModelT", bound=BaseModel)

FORM_CONTENT_TYPES = ("multipart/form-data", "application/x-www-form-urlencoded")


def get_services(request: Request) -> Services:
    """Services built by create_app for this application instance."""
    return request.app.state.services


def describe_errors(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ()) if part != "body")
        parts.append(f"{location}: {item.get('msg')}" if location else str(item.get("msg")))
    return "Invalid request: " + "; ".join(parts)


async def read_payload(request: Request) -> Tuple[Dict[str, Any], Dict[str, List[UploadFile]]]:
    """
    Read a JSON or form body.

    Returns the plain fields and the uploaded files grouped by field name.
    Repeated form fields become lists.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        fields: Dict[str, Any] = {}
        uploads: Dict[str, List[UploadFile]] = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                if value.filename:
                    uploads.setdefault(key, []).append(value)
                continue
            if key in fields:
                existing = fields[key]
                fields[key] = existing + [value] if isinstance(existing, list) else [existing, value]
            else:
                fields[key] = value
        return fields, uploads

    raw = await request.body()
    if not raw.strip():
        return {}, {}
    try:
        body = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"Malformed JSON body: {e}", code="INVALID_REQUEST") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", code="INVALID_REQUEST")
    return body, {}


def parse_generation(fields: Dict[str, Any], mode: str):
    """Validate fields as the generation request of the given mode."""
    try:
        return generation_request_adapter.validate_python({**fields, "mode": mode})
    except PydanticValidationError as e:
        raise ValidationError(describe_errors(e), code="INVALID_REQUEST") from e


def parse_model(model: Type[ModelT], fields: Dict[str, Any]) -> ModelT:
    try:
        return model.model_validate(fields)
    except PydanticValidationError as e:
        raise ValidationError(describe_errors(e), code="INVALID_REQUEST") from e
