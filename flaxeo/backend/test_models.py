"""
Tests for request coercion of JSON and multipart field values.

Run with: pytest flaxeo/backend/test_models.py
"""

import pytest
from pydantic import ValidationError

from flaxeo.backend.models import (
    BackendConfig,
    ConvertRequest,
    InpaintRequest,
    LoraSpec,
    Text2ImageRequest,
    VideoRequest,
    coerce_flag,
    coerce_list,
    generation_request_adapter,
)


@pytest.mark.parametrize("value,expected", [
    (True, True),
    ("true", True),
    ("TRUE", True),
    (False, False),
    ("false", False),
    ("1", False),
    (1, False),
    ("", False),
    (None, False),
])
def test_coerce_flag(value, expected):
    assert coerce_flag(value) is expected


def test_coerce_list():
    assert coerce_list(None) == []
    assert coerce_list("") == []
    assert coerce_list("undefined") == []
    assert coerce_list('["a.png", "b.png"]') == ["a.png", "b.png"]
    assert coerce_list("a.png") == ["a.png"]
    assert coerce_list(["a.png", "", '["b.png"]']) == ["a.png", "b.png"]


def test_form_strings_are_coerced():
    request = Text2ImageRequest.model_validate({
        "diffusionModel": "sd15.safetensors",
        "steps": "25",
        "cfgScale": "4.5",
        "seed": "",
        "width": "768.0",
        "vae": "null",
        "vaeTiling": "true",
        "clipOnCpu": "on",
    })

    assert request.steps == 25
    assert request.cfg_scale == 4.5
    assert request.seed is None
    assert request.width == 768
    assert request.vae is None
    assert request.vae_tiling is True
    assert request.clip_on_cpu is False


def test_snake_case_names_are_accepted():
    request = Text2ImageRequest.model_validate({"diffusion_model": "a.gguf", "negative_prompt": "blurry"})
    assert request.diffusion_model == "a.gguf"
    assert request.negative_prompt == "blurry"


def test_non_numeric_steps_rejected():
    with pytest.raises(ValidationError):
        Text2ImageRequest.model_validate({"steps": "many"})


def test_missing_model_is_allowed_at_parse_time():
    request = Text2ImageRequest.model_validate({"prompt": "a cat"})
    assert request.has_model is False


def test_load_mode_defaults():
    assert Text2ImageRequest().load_mode == "standard"
    assert VideoRequest().load_mode == "split"
    assert Text2ImageRequest.model_validate({"loadMode": "whatever"}).load_mode == "standard"


def test_lora_spec_forms():
    assert LoraSpec.model_validate("detail.safetensors:0.6").tag() == "<lora:detail:0.6>"
    assert LoraSpec.model_validate("detail").tag() == "<lora:detail:1>"
    assert LoraSpec.model_validate({"name": "x.gguf", "strength": 1.25}).tag() == "<lora:x:1.25>"


def test_full_prompt():
    request = Text2ImageRequest.model_validate({
        "prompt": "portrait",
        "loras": '[{"name": "face.safetensors", "strength": 0.7}]',
        "embeddings": ["neg.pt"],
    })
    assert request.full_prompt() == "portrait <lora:face:0.7> neg"


def test_generation_union_picks_mode():
    assert isinstance(generation_request_adapter.validate_python({"mode": "text2image"}), Text2ImageRequest)
    assert isinstance(generation_request_adapter.validate_python({"mode": "inpaint"}), InpaintRequest)
    assert isinstance(generation_request_adapter.validate_python({"mode": "video"}), VideoRequest)
    assert isinstance(generation_request_adapter.validate_python({"mode": "convert"}), ConvertRequest)
    with pytest.raises(ValidationError):
        generation_request_adapter.validate_python({"mode": "train"})


def test_backend_config_keeps_unknown_keys():
    config = BackendConfig.model_validate({"activeVersion": "master-abc", "theme": "dark"})
    dumped = config.model_dump(by_alias=True)
    assert dumped["activeVersion"] == "master-abc"
    assert dumped["theme"] == "dark"
    assert dumped["installedVersions"] == []
