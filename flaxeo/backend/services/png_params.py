"""
Generation parameters stored in a PNG "parameters" tEXt chunk.

The text follows the common A1111 layout:

    a cat on a sofa
    Negative prompt: blurry
    Steps: 20, Sampler: euler_a, CFG scale: 7, Seed: 42, Size: 1024x768, Model: sd15.safetensors
"""

import io
import logging
import struct
from pathlib import Path
from typing import Any, Dict, Optional, Union

from PIL import Image
from PIL.PngImagePlugin import PngInfo

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PARAMETERS_KEY = "parameters"

# Metadata chunks sit before the image data; no need to read the whole file
MAX_SCAN_BYTES = 1024 * 1024


def read_png_text(path: Union[str, Path], keyword: str = PARAMETERS_KEY) -> Optional[str]:
    """
    Return the text of the first tEXt chunk named keyword, or None.

    Missing files, non-PNG data and truncated chunks all yield None.
    """
    try:
        with open(path, "rb") as f:
            data = f.read(MAX_SCAN_BYTES)
    except OSError as e:
        logger.warning(f"Cannot read {path}: {e}")
        return None

    if not data.startswith(PNG_SIGNATURE):
        return None

    offset = len(PNG_SIGNATURE)
    while offset + 8 <= len(data):
        length, chunk_type = struct.unpack(">I4s", data[offset:offset + 8])
        body = data[offset + 8:offset + 8 + length]
        if len(body) < length:
            break
        if chunk_type == b"tEXt":
            name, sep, text = body.partition(b"\x00")
            if sep and name.decode("latin-1") == keyword:
                return text.decode("utf-8", errors="replace")
        elif chunk_type == b"iTXt":
            # Pillow writes non latin-1 text as uncompressed iTXt
            name, sep, rest = body.partition(b"\x00")
            if sep and name.decode("latin-1") == keyword and rest[:1] == b"\x00":
                parts = rest[2:].split(b"\x00", 2)
                if len(parts) == 3:
                    return parts[2].decode("utf-8", errors="replace")
        elif chunk_type == b"IEND":
            break
        # length + type + data + crc
        offset += 12 + length
    return None


def format_parameters(
    prompt: str,
    negative_prompt: Optional[str] = None,
    steps: Optional[int] = None,
    cfg_scale: Optional[float] = None,
    seed: Optional[int] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    sampler: Optional[str] = None,
    scheduler: Optional[str] = None,
    model: Optional[str] = None,
) -> str:
    lines = [prompt]
    if negative_prompt:
        lines.append(f"Negative prompt: {negative_prompt}")

    fields = []
    if steps is not None:
        fields.append(f"Steps: {steps}")
    if sampler:
        fields.append(f"Sampler: {sampler}")
    if scheduler:
        fields.append(f"Scheduler: {scheduler}")
    if cfg_scale is not None:
        fields.append(f"CFG scale: {cfg_scale:g}")
    if seed is not None:
        fields.append(f"Seed: {seed}")
    if width and height:
        fields.append(f"Size: {width}x{height}")
    if model:
        fields.append(f"Model: {model}")
    if fields:
        lines.append(", ".join(fields))
    return "\n".join(lines)


def parse_parameters(text: Optional[str]) -> Dict[str, Any]:
    """Turn a parameters block back into the UI's field names."""
    result: Dict[str, Any] = {}
    if not text:
        return result

    lines = text.split("\n")
    prompt = lines[0]
    negative_prompt = ""
    settings = ""
    for line in lines[1:]:
        if line.startswith("Negative prompt:"):
            negative_prompt = line[len("Negative prompt:"):].strip()
        elif line.startswith("Steps:"):
            settings = line
        elif not negative_prompt and not settings:
            prompt += "\n" + line

    result["prompt"] = prompt.strip()
    result["negativePrompt"] = negative_prompt

    for pair in settings.split(", ") if settings else []:
        key, sep, value = pair.partition(": ")
        if not sep:
            continue
        value = value.strip()
        try:
            if key == "Steps":
                result["steps"] = int(value)
            elif key == "CFG scale":
                result["cfgScale"] = float(value)
            elif key == "Seed":
                result["seed"] = int(value)
            elif key == "Size":
                width, _, height = value.partition("x")
                result["width"] = int(width)
                result["height"] = int(height)
            elif key == "Sampler":
                result["sampler"] = value
            elif key == "Scheduler":
                result["scheduler"] = value
            elif key == "Model":
                result["diffusionModel"] = value
        except ValueError:
            logger.debug(f"Ignoring malformed parameter {pair!r}")
    return result


def save_png_with_parameters(image_bytes: bytes, destination: Path, parameters: str) -> Path:
    """Re-encode image bytes as PNG with the parameters chunk attached."""
    info = PngInfo()
    info.add_text(PARAMETERS_KEY, parameters)
    with Image.open(io.BytesIO(image_bytes)) as image:
        image.save(destination, format="PNG", pnginfo=info)
    return destination
