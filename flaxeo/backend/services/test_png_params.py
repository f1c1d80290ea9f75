"""
Tests for PNG parameter chunks.

Run with: pytest flaxeo/backend/services/test_png_params.py
"""

import io

from PIL import Image

from .png_params import format_parameters, parse_parameters, read_png_text, save_png_with_parameters


def png_bytes(size=(8, 8)):
    buffer = io.BytesIO()
    Image.new("RGB", size, (200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()


def test_format_parameters_layout():
    text = format_parameters(
        prompt="a cat on a sofa",
        negative_prompt="blurry",
        steps=20,
        cfg_scale=7.0,
        seed=42,
        width=1024,
        height=768,
        sampler="euler_a",
    )
    assert text == (
        "a cat on a sofa\n"
        "Negative prompt: blurry\n"
        "Steps: 20, Sampler: euler_a, CFG scale: 7, Seed: 42, Size: 1024x768"
    )


def test_parse_parameters():
    parsed = parse_parameters(
        "a cat\non a sofa\nNegative prompt: blurry\n"
        "Steps: 30, Sampler: euler, Scheduler: karras, CFG scale: 4.5, Seed: 7, Size: 512x640, Model: sd15.safetensors"
    )
    assert parsed == {
        "prompt": "a cat\non a sofa",
        "negativePrompt": "blurry",
        "steps": 30,
        "sampler": "euler",
        "scheduler": "karras",
        "cfgScale": 4.5,
        "seed": 7,
        "width": 512,
        "height": 640,
        "diffusionModel": "sd15.safetensors",
    }


def test_parse_parameters_empty():
    assert parse_parameters(None) == {}
    assert parse_parameters("") == {}


def test_saved_png_can_be_read_back(tmp_path):
    text = format_parameters(prompt="lighthouse", steps=12, seed=-1, width=8, height=8)
    destination = save_png_with_parameters(png_bytes(), tmp_path / "out.png", text)

    assert read_png_text(destination) == text
    assert parse_parameters(read_png_text(destination))["steps"] == 12
    with Image.open(destination) as image:
        assert image.size == (8, 8)


def test_non_latin_text_round_trips(tmp_path):
    text = format_parameters(prompt="東京の夜景", steps=20)
    destination = save_png_with_parameters(png_bytes(), tmp_path / "jp.png", text)
    assert read_png_text(destination) == text


def test_read_png_text_without_chunk(tmp_path):
    path = tmp_path / "plain.png"
    path.write_bytes(png_bytes())
    assert read_png_text(path) is None


def test_read_png_text_tolerates_bad_input(tmp_path):
    not_png = tmp_path / "fake.png"
    not_png.write_bytes(b"GIF89a....")
    truncated = tmp_path / "cut.png"
    truncated.write_bytes(png_bytes()[:20])

    assert read_png_text(not_png) is None
    assert read_png_text(truncated) is None
    assert read_png_text(tmp_path / "missing.png") is None
