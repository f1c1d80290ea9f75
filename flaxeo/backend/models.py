"""
Pydantic models for the Flaxeo API.

Generation requests arrive either as JSON or as multipart form data, so every
scalar field goes through an explicit coercion step before validation:

- flags are true only for a native True or the string "true"
- "", "null", "undefined" and "none" mean "not provided"
- numbers may arrive as strings ("20", "7.5")
- list fields accept a JSON-encoded array, a single string, or a list
"""

import json
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    model_validator,
)
from pydantic.alias_generators import to_camel


# ============================================================================
# Coercion helpers
# ============================================================================

_ABSENT = {"", "null", "undefined", "none"}


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and value.strip().lower() in _ABSENT:
        return None
    return value


def coerce_flag(value: Any) -> bool:
    """True only for a native True or the string "true" (any case)."""
    if value is True:
        return True
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _parse_int(value: Any) -> Any:
    value = _blank_to_none(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return value
    if isinstance(value, float):
        return int(value)
    return value


def _parse_float(value: Any) -> Any:
    value = _blank_to_none(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _parse_str(value: Any) -> Any:
    value = _blank_to_none(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _parse_text(value: Any) -> Any:
    return "" if value is None else value


def coerce_list(value: Any) -> List[Any]:
    """Normalise list-ish input from JSON bodies and form fields."""
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.lower() in _ABSENT:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                return [text]
            return parsed if isinstance(parsed, list) else [parsed]
        return [text]
    if isinstance(value, (list, tuple)):
        items: List[Any] = []
        for item in value:
            if isinstance(item, str) and item.strip().startswith("["):
                items.extend(coerce_list(item))
            elif item is not None and item != "":
                items.append(item)
        return items
    return [value]


def _parse_load_mode(value: Any) -> Any:
    value = _blank_to_none(value)
    return "split" if value == "split" else "standard"


Flag = Annotated[bool, BeforeValidator(coerce_flag)]
OptionalInt = Annotated[Optional[int], BeforeValidator(_parse_int)]
OptionalFloat = Annotated[Optional[float], BeforeValidator(_parse_float)]
OptionalStr = Annotated[Optional[str], BeforeValidator(_parse_str)]
Text = Annotated[str, BeforeValidator(_parse_text)]
StrList = Annotated[List[str], BeforeValidator(coerce_list)]
LoadMode = Annotated[Literal["standard", "split"], BeforeValidator(_parse_load_mode)]


class ApiModel(BaseModel):
    """Accepts both snake_case names and the UI's camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ============================================================================
# Generation requests
# ============================================================================

MODEL_FILE_SUFFIXES = (".safetensors", ".ckpt", ".gguf", ".pt", ".bin")


class LoraSpec(BaseModel):
    """A LoRA file name and its strength, rendered as a prompt tag."""

    name: str
    strength: float = 1.0

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, value: Any) -> Any:
        # "name" or "name:0.8"
        if isinstance(value, str):
            name, _, strength = value.rpartition(":")
            if name and strength:
                try:
                    return {"name": name, "strength": float(strength)}
                except ValueError:
                    pass
            return {"name": value}
        return value

    def tag(self) -> str:
        name = self.name
        if name.lower().endswith(MODEL_FILE_SUFFIXES):
            name = Path(name).stem
        return f"<lora:{name}:{self.strength:g}>"


LoraList = Annotated[List[LoraSpec], BeforeValidator(coerce_list)]


class ModelSelection(ApiModel):
    """Exactly one load strategy: one fused checkpoint, or split components."""

    load_mode: LoadMode = "standard"
    diffusion_model: OptionalStr = Field(
        default=None,
        validation_alias=AliasChoices("diffusionModel", "standardModel", "diffusion_model", "standard_model"),
    )
    clip_l: OptionalStr = None
    clip_g: OptionalStr = None
    t5xxl: OptionalStr = None
    llm: OptionalStr = None
    vae: OptionalStr = None
    clip_vision: OptionalStr = None

    @property
    def has_model(self) -> bool:
        return bool(self.diffusion_model)


class HardwareOptions(ApiModel):
    diffusion_fa: Flag = False
    vae_tiling: Flag = False
    clip_on_cpu: Flag = False
    vae_on_cpu: Flag = False
    offload_to_cpu: Flag = False
    diffusion_conv_direct: Flag = False
    vae_conv_direct: Flag = False
    force_sdxl_vae_conv_scale: Flag = Field(default=False, alias="forceSDXLVaeConvScale")


class SamplingRequest(ModelSelection, HardwareOptions):
    """Fields shared by every sd-cli generation mode."""

    prompt: Text = ""
    negative_prompt: OptionalStr = None
    steps: OptionalInt = None
    cfg_scale: OptionalFloat = None
    width: OptionalInt = None
    height: OptionalInt = None
    seed: OptionalInt = None
    guidance: OptionalFloat = None
    clip_skip: OptionalInt = None
    scheduler: OptionalStr = None
    sampling_method: OptionalStr = None
    rng_type: OptionalStr = None
    quantization_type: OptionalStr = None
    lora_apply_mode: OptionalStr = None
    vae_tile_size: OptionalStr = None
    loras: LoraList = Field(default_factory=list)
    embeddings: StrList = Field(default_factory=list)
    embd_dir: Flag = False

    def full_prompt(self) -> str:
        """Prompt with LoRA tags and embedding tokens appended."""
        parts = [self.prompt] if self.prompt else []
        parts.extend(lora.tag() for lora in self.loras)
        parts.extend(embedding_token(name) for name in self.embeddings)
        return " ".join(parts)


def embedding_token(name: str) -> str:
    if name.lower().endswith(MODEL_FILE_SUFFIXES):
        return Path(name).stem
    return name


class Text2ImageRequest(SamplingRequest):
    mode: Literal["text2image"] = "text2image"
    batch_count: OptionalInt = None
    upscale_model: OptionalStr = None
    taesd_model: OptionalStr = None
    live_preview_method: OptionalStr = None
    # PhotoMaker
    photo_maker: OptionalStr = None
    pm_style_strength: OptionalFloat = None
    pm_id_embeds_path: OptionalStr = None
    pm_gallery_images: StrList = Field(default_factory=list)
    photo_maker_images: StrList = Field(default_factory=list)
    # Kontext reference image
    kontext_ref_path: OptionalStr = None
    kontext_ref_gallery: OptionalStr = None
    # ControlNet
    control_net: OptionalStr = None
    control_strength: OptionalFloat = None
    apply_canny: Flag = False
    control_image_path: OptionalStr = None
    control_net_image_gallery: OptionalStr = None


class InpaintRequest(SamplingRequest):
    mode: Literal["inpaint"] = "inpaint"
    strength: OptionalFloat = None
    init_image_path: OptionalStr = None


class VideoRequest(SamplingRequest):
    mode: Literal["video"] = "video"
    # Accepted for compatibility; video always loads split components
    load_mode: LoadMode = "split"
    init_image_path: OptionalStr = None
    video_frames: OptionalInt = None
    flow_shift: OptionalFloat = None
    high_noise_diffusion_model: OptionalStr = None
    high_noise_cfg: OptionalFloat = None
    high_noise_steps: OptionalInt = None
    high_noise_sampler: OptionalStr = None


class ConvertRequest(ApiModel):
    mode: Literal["convert"] = "convert"
    source_type: OptionalStr = None
    source_model: OptionalStr = None
    output_format: OptionalStr = None
    output_name: OptionalStr = None


GenerationRequest = Annotated[
    Union[Text2ImageRequest, InpaintRequest, VideoRequest, ConvertRequest],
    Field(discriminator="mode"),
]

generation_request_adapter: TypeAdapter = TypeAdapter(GenerationRequest)


# ============================================================================
# Persistent server requests
# ============================================================================

class ServerStartRequest(ModelSelection, HardwareOptions):
    """Startup options for the long-lived sd-server."""

    port: OptionalInt = None
    lora_dir: Flag = False
    lora_apply_mode: OptionalStr = None
    scheduler: OptionalStr = None
    sampling_method: OptionalStr = None
    rng_type: OptionalStr = None
    vae_tile_size: OptionalStr = None
    control_net: OptionalStr = None
    photo_maker: OptionalStr = None
    default_steps: OptionalInt = None
    default_cfg: OptionalFloat = None


class ServerGenerateRequest(ApiModel):
    """One server-mode generation, looped batch_size times."""

    prompt: Text = ""
    negative_prompt: OptionalStr = None
    steps: OptionalInt = None
    cfg_scale: OptionalFloat = None
    width: OptionalInt = None
    height: OptionalInt = None
    seed: OptionalInt = None
    batch_size: OptionalInt = None
    guidance: OptionalFloat = None
    clip_skip: OptionalInt = None


# ============================================================================
# Responses and small bodies
# ============================================================================

class CommandResponse(BaseModel):
    """Generic response for command operations."""
    success: bool = Field(..., description="Whether the command was successful")
    message: str = Field(..., description="Human-readable message about the result")


class GenerationResponse(BaseModel):
    """Terminal result of a generation request."""
    message: str = Field(..., description="'Complete' or 'Cancelled'")
    filenames: Optional[List[str]] = Field(None, description="Artifacts written to the output directory")


class LogsResponse(BaseModel):
    logs: List[str]
    entries: List[Dict[str, Any]]
    total: int
    next: int
    hasMore: bool


class DeleteRequest(BaseModel):
    filename: Optional[str] = None


class ImageParamsRequest(BaseModel):
    path: Optional[str] = None


class OpenFolderRequest(BaseModel):
    folder: Optional[str] = None


class BackendConfig(ApiModel):
    """Persisted backend selection (backend-config.json)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    active_version: str = "custom"
    installed_versions: List[str] = Field(default_factory=list)
    custom_binary_exists: bool = False


class BackendDownloadRequest(BaseModel):
    url: Optional[str] = None
    variant: Optional[str] = None
    version: Optional[str] = None


class CancelRequest(ApiModel):
    # Kill instead of terminate
    force: Flag = False


class SetActiveRequest(BaseModel):
    version: Optional[str] = None


class TunnelRequest(BaseModel):
    enabled: bool = False
    token: Optional[str] = None


class NetworkToggleRequest(BaseModel):
    service: Optional[str] = None
    action: Optional[str] = None
    token: Optional[str] = None
