"""
Tests for the sd-server HTTP client.

Run with: pytest flaxeo/backend/services/test_inference_client.py
"""

import base64
import json

import httpx
import pytest

from flaxeo.backend.errors import UpstreamError

from .inference_client import GENERATIONS_PATH, InferenceClient, build_payload


def test_build_payload_defaults():
    payload = build_payload(prompt="a fox")

    assert payload["prompt"] == "a fox"
    assert payload["negative_prompt"] == ""
    assert payload["n"] == 1
    assert payload["size"] == "1024x1024"
    assert payload["response_format"] == "b64_json"
    assert payload["steps"] == payload["sample_steps"] == payload["num_inference_steps"] == 20
    assert payload["cfg_scale"] == 7.0
    assert payload["seed"] == -1
    assert "guidance" not in payload
    assert "clip_skip" not in payload


def test_build_payload_rounds_size_and_keeps_seed_zero():
    payload = build_payload(prompt="x", width=1000, height=700, seed=0, guidance=3.5, clip_skip=2)

    assert payload["size"] == "1024x704"
    assert payload["seed"] == 0
    assert payload["guidance"] == 3.5
    assert payload["clip_skip"] == 2


@pytest.mark.asyncio
async def test_generate_image_decodes_response():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"b64_json": base64.b64encode(b"png").decode()}]})

    client = InferenceClient(transport=httpx.MockTransport(handler))
    image = await client.generate_image(4321, build_payload(prompt="x"))

    assert image == b"png"
    assert seen["url"] == f"http://127.0.0.1:4321{GENERATIONS_PATH}"
    assert seen["body"]["prompt"] == "x"


@pytest.mark.asyncio
@pytest.mark.parametrize("response,code", [
    (httpx.Response(500, text="CUDA error"), "SERVER_ERROR"),
    (httpx.Response(200, json={"data": []}), "NO_DATA"),
    (httpx.Response(200, text="not json"), "NO_DATA"),
])
async def test_generate_image_errors(response, code):
    client = InferenceClient(transport=httpx.MockTransport(lambda request: response))

    with pytest.raises(UpstreamError) as excinfo:
        await client.generate_image(1234, build_payload(prompt="x"))

    assert excinfo.value.code == code


@pytest.mark.asyncio
async def test_unreachable_server():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = InferenceClient(transport=httpx.MockTransport(handler))

    with pytest.raises(UpstreamError) as excinfo:
        await client.generate_image(1234, build_payload(prompt="x"))

    assert excinfo.value.code == "SERVER_UNREACHABLE"
    assert excinfo.value.status_code == 502
