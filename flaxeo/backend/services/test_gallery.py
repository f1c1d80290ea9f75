"""
Tests for the output gallery.

Run with: pytest flaxeo/backend/services/test_gallery.py
"""

import os

import pytest

from flaxeo.backend.errors import NotFoundError, ValidationError

from .gallery import GalleryService, is_path_safe
from .png_params import format_parameters, save_png_with_parameters
from .test_png_params import png_bytes


@pytest.fixture
def gallery(tmp_path):
    output = tmp_path / "output"
    output.mkdir()
    return GalleryService(output)


def touch(path, mtime):
    path.write_bytes(b"x")
    os.utime(path, (mtime, mtime))
    return path


def test_is_path_safe(tmp_path):
    assert is_path_safe(tmp_path / "a" / "b.png", [tmp_path])
    assert not is_path_safe(tmp_path / ".." / "escape.png", [tmp_path])
    assert is_path_safe(tmp_path / ".." / "anything")


def test_list_files_newest_first(gallery):
    touch(gallery.output_dir / "old.png", 1_000)
    touch(gallery.output_dir / "new.mp4", 3_000)
    touch(gallery.output_dir / "mid.webp", 2_000)
    touch(gallery.output_dir / "notes.txt", 4_000)
    (gallery.output_dir / "folder.png").mkdir()

    assert gallery.list_files() == ["new.mp4", "mid.webp", "old.png"]


def test_list_files_without_directory(tmp_path):
    assert GalleryService(tmp_path / "missing").list_files() == []


def test_delete(gallery):
    path = touch(gallery.output_dir / "gen_1.png", 1_000)

    assert gallery.delete("gen_1.png") is True
    assert not path.exists()
    assert gallery.delete("gen_1.png") is False


@pytest.mark.parametrize("name,code", [
    ("", "FILENAME_REQUIRED"),
    (None, "FILENAME_REQUIRED"),
    ("../secret.json", "ACCESS_DENIED"),
    ("/etc/passwd", "ACCESS_DENIED"),
    (".", "ACCESS_DENIED"),
])
def test_delete_rejects_bad_names(gallery, name, code):
    with pytest.raises(ValidationError) as excinfo:
        gallery.delete(name)
    assert excinfo.value.code == code


def test_read_parameters(gallery):
    text = format_parameters(prompt="harbour at dawn", negative_prompt="people", steps=25, seed=9, width=64, height=64)
    save_png_with_parameters(png_bytes(), gallery.output_dir / "gen_2.png", text)

    params = gallery.read_parameters("gen_2.png")

    assert params["prompt"] == "harbour at dawn"
    assert params["negativePrompt"] == "people"
    assert params["steps"] == 25
    assert params["width"] == 64


def test_read_parameters_missing_file(gallery):
    with pytest.raises(NotFoundError):
        gallery.read_parameters("nope.png")


def test_read_parameters_without_metadata(gallery):
    (gallery.output_dir / "plain.png").write_bytes(png_bytes())
    assert gallery.read_parameters("plain.png") == {}
