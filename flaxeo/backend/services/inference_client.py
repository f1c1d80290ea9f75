"""HTTP client for a running sd-server (OpenAI-style image endpoint)."""

import base64
import binascii
import logging
from typing import Any, Dict, Optional

import httpx

from flaxeo.backend.errors import UpstreamError
from flaxeo.backend.services.arguments import IMAGE_MULTIPLE, round_to_multiple

logger = logging.getLogger(__name__)

GENERATIONS_PATH = "/v1/images/generations"

# A single image on a slow GPU can take minutes
DEFAULT_TIMEOUT = httpx.Timeout(600.0, connect=10.0)


def build_payload(
    prompt: str,
    negative_prompt: Optional[str] = None,
    steps: Optional[int] = None,
    cfg_scale: Optional[float] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    seed: Optional[int] = None,
    guidance: Optional[float] = None,
    clip_skip: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Request body for one image.

    Batching is done by the caller, so n is always 1. The step count is sent
    under every name sd-server versions have accepted.
    """
    steps = steps or 20
    width = round_to_multiple(width or 1024, IMAGE_MULTIPLE)
    height = round_to_multiple(height or 1024, IMAGE_MULTIPLE)
    payload: Dict[str, Any] = {
        "prompt": prompt,
        "negative_prompt": negative_prompt or "",
        "n": 1,
        "size": f"{width}x{height}",
        "response_format": "b64_json",
        "steps": steps,
        "sample_steps": steps,
        "num_inference_steps": steps,
        "cfg_scale": cfg_scale if cfg_scale is not None else 7.0,
        "seed": seed if seed is not None else -1,
    }
    if guidance:
        payload["guidance"] = guidance
    if clip_skip:
        payload["clip_skip"] = clip_skip
    return payload


class InferenceClient:
    """Talks to sd-server on the loopback interface."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
    ):
        self.host = host
        self._transport = transport
        self._timeout = timeout

    def base_url(self, port: int) -> str:
        return f"http://{self.host}:{port}"

    async def generate_image(self, port: int, payload: Dict[str, Any]) -> bytes:
        """
        POST one generation and return the decoded image bytes.

        Raises:
            UpstreamError: on connection errors, non-2xx replies or a reply
                without image data
        """
        url = self.base_url(port) + GENERATIONS_PATH
        logger.info(f"[server] POST {url} seed={payload.get('seed')} size={payload.get('size')}")
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
                response = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise UpstreamError(f"Inference server unreachable: {e}", code="SERVER_UNREACHABLE") from e

        if response.status_code >= 400:
            raise UpstreamError(
                f"Inference server returned {response.status_code}",
                code="SERVER_ERROR",
                output=response.text,
            )

        try:
            data = response.json()
            encoded = data["data"][0]["b64_json"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamError("No image data received", code="NO_DATA") from e

        try:
            return base64.b64decode(encoded)
        except (binascii.Error, TypeError) as e:
            raise UpstreamError("Image data is not valid base64", code="NO_DATA") from e
