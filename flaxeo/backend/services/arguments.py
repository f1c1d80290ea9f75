"""
Command-line construction for sd-cli and sd-server.

Pure functions: they join paths but never touch the filesystem. The caller
validates the request and resolves uploads before building.

Token order is fixed:

1. mode selector (-M vid_gen / -M convert)
2. model loading (-m, or --diffusion-model plus split components)
3. auxiliary directories (--lora-model-dir, --embd-dir)
4. generation parameters (-p -n -W -H --steps -s --cfg-scale, tuning, hardware)
5. feature blocks (upscale, preview, PhotoMaker, ControlNet, Kontext, init image, video)
6. -o <output>
7. -v
"""

import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

from flaxeo.backend.models import (
    ConvertRequest,
    InpaintRequest,
    ModelSelection,
    SamplingRequest,
    ServerStartRequest,
    Text2ImageRequest,
    VideoRequest,
)

LORA_TAG = "<lora:"

IMAGE_MULTIPLE = 64
VIDEO_MULTIPLE = 16

DEFAULT_STEPS = 20
DEFAULT_CFG_SCALE = 7.0
DEFAULT_VIDEO_CFG_SCALE = 6.0
DEFAULT_SEED = -1
DEFAULT_IMAGE_SIZE = (1024, 1024)
DEFAULT_VIDEO_SIZE = (832, 480)
DEFAULT_VIDEO_FRAMES = 33
DEFAULT_FLOW_SHIFT = 3.0
DEFAULT_INPAINT_STRENGTH = 0.75
DEFAULT_LORA_APPLY_MODE = "auto"
DEFAULT_VIDEO_PROMPT = "a beautiful scene"


@dataclass(frozen=True)
class ModelLayout:
    """Where model files live: one fixed subfolder per category."""

    models_dir: Path

    def path(self, category: str, name: str) -> str:
        return str(Path(self.models_dir) / category / name)

    @property
    def loras_dir(self) -> str:
        return str(Path(self.models_dir) / "loras")

    @property
    def embeddings_dir(self) -> str:
        return str(Path(self.models_dir) / "embeddings")


@dataclass
class ResolvedInputs:
    """Absolute paths of the images a request brings along."""

    init_image: Optional[Path] = None
    mask: Optional[Path] = None
    pm_images_dir: Optional[Path] = None
    control_image: Optional[Path] = None
    reference_image: Optional[Path] = None
    preview_path: Optional[Path] = None


@dataclass
class BuiltCommand:
    """Ordered arguments plus where the engine should run and write."""

    args: List[str]
    output_path: Path
    cwd: Optional[Path] = None

    def command(self, executable: Union[str, Path]) -> List[str]:
        return [str(executable), *self.args]


def round_to_multiple(value: Union[int, float], multiple: int) -> int:
    """Nearest multiple (halves round up), never below one multiple."""
    rounded = int(math.floor(value / multiple + 0.5)) * multiple
    return max(multiple, rounded)


def format_number(value: Union[int, float]) -> str:
    """7.0 -> "7", 0.75 -> "0.75"."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ============================================================================
# Blocks
# ============================================================================

def _load_flags(
    request: ModelSelection,
    layout: ModelLayout,
    include_clip_vision: bool = True,
    force_split: bool = False,
) -> List[str]:
    args: List[str] = []
    if force_split or request.load_mode == "split":
        if request.diffusion_model:
            args += ["--diffusion-model", layout.path("diffusion", request.diffusion_model)]
        if request.clip_l:
            args += ["--clip_l", layout.path("clip", request.clip_l)]
        if request.clip_g:
            args += ["--clip_g", layout.path("clip", request.clip_g)]
        if include_clip_vision and request.clip_vision:
            args += ["--clip_vision", layout.path("clip_vision", request.clip_vision)]
        if request.t5xxl:
            args += ["--t5xxl", layout.path("t5xxl", request.t5xxl)]
        if request.llm:
            args += ["--llm", layout.path("llm", request.llm)]
    elif request.diffusion_model:
        args += ["-m", layout.path("diffusion", request.diffusion_model)]
    if request.vae:
        args += ["--vae", layout.path("vae", request.vae)]
    return args


def _aux_dirs(request: SamplingRequest, prompt: str, layout: ModelLayout) -> List[str]:
    args: List[str] = []
    if LORA_TAG in prompt:
        args += ["--lora-model-dir", layout.loras_dir]
    if request.embeddings or request.embd_dir:
        args += ["--embd-dir", layout.embeddings_dir]
    return args


def _prompt_block(request: SamplingRequest, prompt: str) -> List[str]:
    args = ["-p", prompt]
    if request.negative_prompt:
        args += ["-n", request.negative_prompt]
    return args


def _sampling_block(request: SamplingRequest, default_cfg: float) -> List[str]:
    steps = request.steps if request.steps is not None else DEFAULT_STEPS
    seed = request.seed if request.seed is not None else DEFAULT_SEED
    cfg_scale = request.cfg_scale if request.cfg_scale is not None else default_cfg
    return [
        "--steps", str(steps),
        "-s", str(seed),
        "--cfg-scale", format_number(cfg_scale),
    ]


def _tuning_block(request: SamplingRequest) -> List[str]:
    args: List[str] = []
    if request.guidance is not None:
        args += ["--guidance", format_number(request.guidance)]
    if request.clip_skip is not None and request.clip_skip != -1:
        args += ["--clip-skip", str(request.clip_skip)]
    if request.scheduler:
        args += ["--scheduler", request.scheduler]
    if request.sampling_method:
        args += ["--sampling-method", request.sampling_method]
    if request.rng_type:
        args += ["--rng", request.rng_type]
    if request.lora_apply_mode:
        args += ["--lora-apply-mode", request.lora_apply_mode]
    if request.vae_tile_size:
        args += ["--vae-tile-size", request.vae_tile_size]
    if request.quantization_type:
        args += ["--type", request.quantization_type]
    return args


def _hardware_block(request: SamplingRequest, prompt: str) -> List[str]:
    args: List[str] = []
    # sd.cpp fails to apply LoRAs with flash attention enabled
    if request.diffusion_fa and LORA_TAG not in prompt:
        args.append("--diffusion-fa")
    if request.vae_tiling:
        args.append("--vae-tiling")
    if request.clip_on_cpu:
        args.append("--clip-on-cpu")
    if request.vae_on_cpu:
        args.append("--vae-on-cpu")
    if request.offload_to_cpu:
        args.append("--offload-to-cpu")
    if request.diffusion_conv_direct:
        args.append("--diffusion-conv-direct")
    if request.vae_conv_direct:
        args.append("--vae-conv-direct")
    if request.force_sdxl_vae_conv_scale:
        args.append("--force-sdxl-vae-conv-scale")
    return args


def _size_block(width: int, height: int) -> List[str]:
    return ["-W", str(width), "-H", str(height)]


def _finish(args: List[str], output_path: Path) -> List[str]:
    return args + ["-o", str(output_path), "-v"]


# ============================================================================
# Public builders
# ============================================================================

def build_text2image_command(
    request: Text2ImageRequest,
    layout: ModelLayout,
    inputs: ResolvedInputs,
    output_path: Path,
    cwd: Optional[Path] = None,
) -> BuiltCommand:
    prompt = request.full_prompt()
    width = round_to_multiple(request.width or DEFAULT_IMAGE_SIZE[0], IMAGE_MULTIPLE)
    height = round_to_multiple(request.height or DEFAULT_IMAGE_SIZE[1], IMAGE_MULTIPLE)

    args = _load_flags(request, layout)
    args += _aux_dirs(request, prompt, layout)
    args += _prompt_block(request, prompt)
    args += _size_block(width, height)
    args += _sampling_block(request, DEFAULT_CFG_SCALE)
    args += _tuning_block(request)
    if request.batch_count is not None and request.batch_count > 1:
        args += ["-b", str(request.batch_count)]
    args += _hardware_block(request, prompt)

    if request.upscale_model:
        args += ["--upscale-model", layout.path("upscale", request.upscale_model)]
    if request.taesd_model:
        args += ["--taesd", layout.path("taesd", request.taesd_model)]
    if request.live_preview_method and request.live_preview_method != "none" and inputs.preview_path:
        args += [
            "--preview", request.live_preview_method,
            "--preview-path", str(inputs.preview_path),
            "--preview-interval", "1",
        ]

    if request.photo_maker:
        args += ["--photo-maker", layout.path("photomaker", request.photo_maker)]
        if inputs.pm_images_dir is not None:
            args += ["--pm-id-images-dir", str(inputs.pm_images_dir)]
        if request.pm_style_strength is not None:
            args += ["--pm-style-strength", format_number(request.pm_style_strength)]
        if request.pm_id_embeds_path:
            args += ["--pm-id-embed-path", request.pm_id_embeds_path]

    if request.control_net:
        args += ["--control-net", layout.path("controlnet", request.control_net)]
        if inputs.control_image is not None:
            args += ["--control-image", str(inputs.control_image)]
        if request.control_strength is not None:
            args += ["--control-strength", format_number(request.control_strength)]
        if request.apply_canny:
            args.append("--canny")

    if inputs.reference_image is not None:
        args += ["-r", str(inputs.reference_image)]

    return BuiltCommand(args=_finish(args, output_path), output_path=Path(output_path), cwd=cwd)


def build_inpaint_command(
    request: InpaintRequest,
    layout: ModelLayout,
    inputs: ResolvedInputs,
    output_path: Path,
    cwd: Optional[Path] = None,
) -> BuiltCommand:
    prompt = request.full_prompt()

    args = _load_flags(request, layout)
    args += _aux_dirs(request, prompt, layout)
    args += _prompt_block(request, prompt)
    # Without explicit dimensions the engine follows the init image
    if request.width and request.height:
        args += _size_block(
            round_to_multiple(request.width, IMAGE_MULTIPLE),
            round_to_multiple(request.height, IMAGE_MULTIPLE),
        )
    args += _sampling_block(request, DEFAULT_CFG_SCALE)
    args += _tuning_block(request)
    args += _hardware_block(request, prompt)

    if inputs.init_image is not None:
        args += ["-i", str(inputs.init_image)]
    # A mask makes it inpainting; without one it is plain img2img
    if inputs.mask is not None:
        args += ["--mask", str(inputs.mask)]
    strength = request.strength if request.strength is not None else DEFAULT_INPAINT_STRENGTH
    args += ["--strength", format_number(strength)]

    return BuiltCommand(args=_finish(args, output_path), output_path=Path(output_path), cwd=cwd)


def build_video_command(
    request: VideoRequest,
    layout: ModelLayout,
    inputs: ResolvedInputs,
    output_path: Path,
    cwd: Optional[Path] = None,
) -> BuiltCommand:
    prompt = request.full_prompt() or DEFAULT_VIDEO_PROMPT
    width = round_to_multiple(request.width or DEFAULT_VIDEO_SIZE[0], VIDEO_MULTIPLE)
    height = round_to_multiple(request.height or DEFAULT_VIDEO_SIZE[1], VIDEO_MULTIPLE)

    args = ["-M", "vid_gen"]
    # Video models always load as separate components
    args += _load_flags(request, layout, force_split=True)
    if request.high_noise_diffusion_model:
        args += ["--high-noise-diffusion-model", layout.path("diffusion", request.high_noise_diffusion_model)]
    args += _aux_dirs(request, prompt, layout)
    args += _prompt_block(request, prompt)
    args += _size_block(width, height)
    args += _sampling_block(request, DEFAULT_VIDEO_CFG_SCALE)
    args += _tuning_block(request)
    args += _hardware_block(request, prompt)

    if inputs.init_image is not None:
        args += ["-i", str(inputs.init_image)]
    frames = request.video_frames if request.video_frames is not None else DEFAULT_VIDEO_FRAMES
    flow_shift = request.flow_shift if request.flow_shift is not None else DEFAULT_FLOW_SHIFT
    args += ["--video-frames", str(frames), "--flow-shift", format_number(flow_shift)]
    if request.high_noise_diffusion_model:
        if request.high_noise_cfg is not None:
            args += ["--high-noise-cfg-scale", format_number(request.high_noise_cfg)]
        if request.high_noise_steps is not None:
            args += ["--high-noise-steps", str(request.high_noise_steps)]
        if request.high_noise_sampler:
            args += ["--high-noise-sampling-method", request.high_noise_sampler]

    return BuiltCommand(args=_finish(args, output_path), output_path=Path(output_path), cwd=cwd)


def build_generation_command(
    request: SamplingRequest,
    layout: ModelLayout,
    inputs: Optional[ResolvedInputs] = None,
    output_path: Optional[Path] = None,
    cwd: Optional[Path] = None,
) -> BuiltCommand:
    """Dispatch on the request's mode."""
    inputs = inputs or ResolvedInputs()
    if output_path is None:
        raise ValueError("output_path is required")
    if isinstance(request, VideoRequest):
        return build_video_command(request, layout, inputs, output_path, cwd)
    if isinstance(request, InpaintRequest):
        return build_inpaint_command(request, layout, inputs, output_path, cwd)
    if isinstance(request, Text2ImageRequest):
        return build_text2image_command(request, layout, inputs, output_path, cwd)
    raise TypeError(f"Unsupported request type: {type(request).__name__}")


def build_convert_command(
    source_path: Path,
    output_path: Path,
    output_format: str,
    cwd: Optional[Path] = None,
) -> BuiltCommand:
    args = ["-M", "convert", "-m", str(source_path), "--type", output_format]
    return BuiltCommand(args=_finish(args, output_path), output_path=Path(output_path), cwd=cwd)


def convert_paths(request: ConvertRequest, layout: ModelLayout) -> Tuple[Path, Path]:
    """Source and destination of a conversion, both inside the source category."""
    source = Path(layout.path(request.source_type, request.source_model))
    output = Path(layout.path(request.source_type, request.output_name))
    return source, output


def build_server_command(
    request: ServerStartRequest,
    layout: ModelLayout,
    port: int,
) -> List[str]:
    """Arguments for sd-server; the listen port goes just before -v."""
    args = _load_flags(request, layout, include_clip_vision=False)
    if request.lora_dir:
        args += ["--lora-model-dir", layout.loras_dir]
    args += ["--lora-apply-mode", request.lora_apply_mode or DEFAULT_LORA_APPLY_MODE]
    if request.scheduler:
        args += ["--scheduler", request.scheduler]
    if request.sampling_method:
        args += ["--sampling-method", request.sampling_method]
    if request.rng_type:
        args += ["--rng", request.rng_type]

    if request.diffusion_fa:
        args.append("--diffusion-fa")
    if request.vae_tiling:
        args.append("--vae-tiling")
    if request.clip_on_cpu:
        args.append("--clip-on-cpu")
    if request.vae_on_cpu:
        args.append("--vae-on-cpu")
    if request.offload_to_cpu:
        args.append("--offload-to-cpu")
    if request.diffusion_conv_direct:
        args.append("--diffusion-conv-direct")
    if request.vae_conv_direct:
        args.append("--vae-conv-direct")
    if request.vae_tile_size:
        args += ["--vae-tile-size", request.vae_tile_size]

    if request.control_net:
        args += ["--control-net", layout.path("controlnet", request.control_net)]
    if request.photo_maker:
        args += ["--photo-maker", layout.path("photomaker", request.photo_maker)]
    if request.default_steps:
        args += ["--steps", str(request.default_steps)]
    if request.default_cfg:
        args += ["--cfg-scale", format_number(request.default_cfg)]

    return args + ["--listen-port", str(port), "-v"]
