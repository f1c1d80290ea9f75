"""
Request dispatcher: validates a generation request, materialises its inputs,
builds the engine command and maps the process outcome to a response.

Responses:
    completed -> {"message": "Complete", "filenames": [...]}
    cancelled -> {"message": "Cancelled"}
    failed    -> ExecutionFailure carrying the tail of the process output

Validation happens before any temp file is written or process spawned, and
every temp resource is released before the response is returned.
"""

import logging
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from flaxeo.backend.config import MODEL_SUBDIRS, AppConfig, AppPaths
from flaxeo.backend.errors import ExecutionFailure, ResourceBusyError, ValidationError
from flaxeo.backend.models import (
    ConvertRequest,
    InpaintRequest,
    ModelSelection,
    ServerGenerateRequest,
    ServerStartRequest,
    Text2ImageRequest,
    VideoRequest,
)
from flaxeo.backend.services.arguments import (
    BuiltCommand,
    ModelLayout,
    ResolvedInputs,
    build_convert_command,
    build_generation_command,
    build_server_command,
    convert_paths,
)
from flaxeo.backend.services.backend_service import CLI_BINARY, SERVER_BINARY, BackendService
from flaxeo.backend.services.gallery import GalleryService
from flaxeo.backend.services.inference_client import InferenceClient, build_payload
from flaxeo.backend.services.log_buffer import LogBuffer
from flaxeo.backend.services.png_params import format_parameters, save_png_with_parameters
from flaxeo.backend.services.process_supervisor import ProcessOutcome, ProcessSupervisor
from flaxeo.backend.services.temp_resources import TempResourceManager, TempResourceSet, UploadedFile

logger = logging.getLogger(__name__)

Uploads = Mapping[str, Sequence[UploadedFile]]

MAX_PHOTOMAKER_IMAGES = 4
OUTPUT_TAIL_CHARS = 4000

MODEL_REQUIRED_MESSAGE = (
    "No model selected. Please select a model in the sidebar (Model Configuration section)."
)


def _timestamp() -> int:
    return int(time.time() * 1000)


def _first(uploads: Optional[Uploads], field: str) -> Optional[UploadedFile]:
    files = (uploads or {}).get(field) or []
    return files[0] if files else None


class GenerationDispatcher:
    """Per-endpoint orchestration over the cli and server slots."""

    def __init__(
        self,
        paths: AppPaths,
        cli: ProcessSupervisor,
        server: ProcessSupervisor,
        temp: TempResourceManager,
        backend: BackendService,
        gallery: GalleryService,
        log_buffer: LogBuffer,
        client: Optional[InferenceClient] = None,
        default_port: int = AppConfig.DEFAULT_INFERENCE_PORT,
    ):
        self.paths = paths
        self.cli = cli
        self.server = server
        self.temp = temp
        self.backend = backend
        self.gallery = gallery
        self.log_buffer = log_buffer
        self.client = client or InferenceClient()
        self.default_port = default_port
        self.layout = ModelLayout(paths.models_dir)
        self.server_args: Optional[List[str]] = None

    # ------------------------------------------------------------------
    # Validation and input resolution
    # ------------------------------------------------------------------

    @staticmethod
    def _require_model(request: ModelSelection) -> None:
        if not request.has_model:
            raise ValidationError(MODEL_REQUIRED_MESSAGE, code="MODEL_REQUIRED")

    def _gallery_file(self, name: Optional[str]) -> Optional[Path]:
        if not name:
            return None
        return self.gallery.resolve(name)

    def _pick_image(
        self,
        resources: TempResourceSet,
        kind: str,
        upload: Optional[UploadedFile],
        local_path: Optional[str],
        gallery_name: Optional[str],
    ) -> Optional[Path]:
        """Upload first, then an explicit local path, then a gallery file."""
        if upload is not None:
            return resources.save_upload(kind, upload)
        candidate = Path(local_path) if local_path else self._gallery_file(gallery_name)
        if candidate is None:
            return None
        if not candidate.is_file():
            logger.warning(f"Ignoring missing {kind} image: {candidate}")
            return None
        return candidate

    def _photomaker_dir(
        self,
        request: Text2ImageRequest,
        uploads: Optional[Uploads],
        resources: TempResourceSet,
    ) -> Optional[Path]:
        """Merge uploaded, gallery and local ID images into one directory."""
        uploaded = list((uploads or {}).get("pmImages") or [])[:MAX_PHOTOMAKER_IMAGES]
        if not (uploaded or request.pm_gallery_images or request.photo_maker_images):
            return None

        directory = resources.acquire_dir("pm")
        for upload in uploaded:
            resources.save_upload_into(directory, upload)
        gallery_files = [self._gallery_file(name) for name in request.pm_gallery_images]
        resources.copy_into(directory, [p for p in gallery_files if p is not None])
        resources.copy_into(directory, [Path(p) for p in request.photo_maker_images])

        if not any(directory.iterdir()):
            logger.warning("No PhotoMaker ID images could be collected")
            return None
        return directory

    # ------------------------------------------------------------------
    # CLI runs
    # ------------------------------------------------------------------

    async def _run_cli(self, built: BuiltCommand) -> ProcessOutcome:
        executable = self.backend.executable(CLI_BINARY)
        return await self.cli.run(
            built.command(executable),
            cwd=built.cwd,
            expected_artifact=built.output_path,
        )

    def _result(self, outcome: ProcessOutcome, filenames: List[str], label: str) -> Dict[str, Any]:
        if outcome.completed:
            return {"message": "Complete", "filenames": filenames}
        if outcome.cancelled:
            return {"message": "Cancelled"}
        if outcome.return_code == 0:
            raise ExecutionFailure(
                f"{label} failed - no output file",
                code="NO_OUTPUT",
                output=outcome.output_tail(OUTPUT_TAIL_CHARS),
            )
        raise ExecutionFailure(
            f"{label} failed: process exited with code {outcome.return_code}",
            output=outcome.output_tail(OUTPUT_TAIL_CHARS),
        )

    @staticmethod
    def _batch_outputs(output_path: Path) -> List[str]:
        """The requested file plus any numbered siblings a -b run produced."""
        names = [output_path.name] if output_path.exists() else []
        pattern = re.compile(rf"^{re.escape(output_path.stem)}_(\d+){re.escape(output_path.suffix)}$")
        siblings = []
        for path in output_path.parent.glob(f"{output_path.stem}_*{output_path.suffix}"):
            match = pattern.match(path.name)
            if match:
                siblings.append((int(match.group(1)), path.name))
        names.extend(name for _, name in sorted(siblings))
        return names

    async def generate_cli(self, request: Text2ImageRequest, uploads: Optional[Uploads] = None) -> Dict[str, Any]:
        """Text-to-image through one sd-cli invocation."""
        self._require_model(request)
        output_path = self.paths.output_dir / f"gen_{_timestamp()}.png"

        async with self.temp.scope() as resources:
            inputs = ResolvedInputs(
                reference_image=self._pick_image(
                    resources, "kontext", _first(uploads, "kontextRefImage"),
                    request.kontext_ref_path, request.kontext_ref_gallery,
                ),
                preview_path=self.paths.preview_path if request.live_preview_method else None,
            )
            if request.control_net:
                inputs.control_image = self._pick_image(
                    resources, "control", _first(uploads, "controlNetImage"),
                    request.control_image_path, request.control_net_image_gallery,
                )
            if request.photo_maker:
                inputs.pm_images_dir = self._photomaker_dir(request, uploads, resources)

            built = build_generation_command(
                request, self.layout, inputs, output_path, cwd=self.backend.active_path(),
            )
            outcome = await self._run_cli(built)

        return self._result(outcome, self._batch_outputs(output_path), "Generation")

    async def inpaint(self, request: InpaintRequest, uploads: Optional[Uploads] = None) -> Dict[str, Any]:
        """Inpainting with a mask, or img2img without one."""
        self._require_model(request)
        init_upload = _first(uploads, "initImage")
        init_path = None
        if init_upload is None:
            init_path = self._gallery_file(request.init_image_path)
            if init_path is None or not init_path.is_file():
                raise ValidationError("Init image required", code="INIT_IMAGE_REQUIRED")

        output_path = self.paths.output_dir / f"inpaint_{_timestamp()}.png"
        async with self.temp.scope() as resources:
            inputs = ResolvedInputs(
                init_image=resources.save_upload("init", init_upload) if init_upload else init_path,
            )
            mask_upload = _first(uploads, "mask")
            if mask_upload is not None:
                inputs.mask = resources.save_upload("mask", mask_upload)

            built = build_generation_command(
                request, self.layout, inputs, output_path, cwd=self.backend.active_path(),
            )
            outcome = await self._run_cli(built)

        return self._result(outcome, [output_path.name], "Inpainting")

    async def generate_video(self, request: VideoRequest, uploads: Optional[Uploads] = None) -> Dict[str, Any]:
        """Text- or image-to-video."""
        self._require_model(request)
        output_path = self.paths.output_dir / f"video_{_timestamp()}.mp4"

        async with self.temp.scope() as resources:
            inputs = ResolvedInputs(
                init_image=self._pick_image(
                    resources, "video_init", _first(uploads, "initImage"),
                    None, request.init_image_path,
                ),
            )
            built = build_generation_command(
                request, self.layout, inputs, output_path, cwd=self.backend.active_path(),
            )
            outcome = await self._run_cli(built)

        return self._result(outcome, [output_path.name], "Video generation")

    async def convert(self, request: ConvertRequest) -> Dict[str, Any]:
        """Convert a model file to another quantization inside its own category."""
        if not (request.source_type and request.source_model and request.output_format and request.output_name):
            raise ValidationError("Missing required parameters", code="CONVERT_PARAMS_REQUIRED")

        if request.source_type not in MODEL_SUBDIRS:
            raise ValidationError(f"Unknown model category: {request.source_type}", code="INVALID_CATEGORY")

        source_path, output_path = convert_paths(request, self.layout)
        category_dir = self.layout.models_dir / request.source_type
        for path in (source_path, output_path):
            if path.resolve().parent != category_dir.resolve():
                raise ValidationError("Access denied", code="ACCESS_DENIED")
        if not source_path.is_file():
            raise ValidationError("Source model not found", code="SOURCE_NOT_FOUND")
        if output_path.exists():
            raise ValidationError("Output file already exists", code="OUTPUT_EXISTS")

        built = build_convert_command(source_path, output_path, request.output_format, cwd=self.backend.active_path())
        outcome = await self._run_cli(built)

        if outcome.completed:
            logger.info(f"Converted {source_path} -> {output_path}")
            return {
                "success": True,
                "message": "Complete",
                "outputPath": request.output_name,
                "output": outcome.output_tail(OUTPUT_TAIL_CHARS),
            }
        if outcome.cancelled:
            return {"success": False, "message": "Cancelled"}
        raise ExecutionFailure(
            f"Conversion failed with code {outcome.return_code}",
            output=outcome.output_tail(OUTPUT_TAIL_CHARS),
        )

    async def cancel_cli(self, force: bool = False) -> Dict[str, Any]:
        if await self.cli.cancel(force=force):
            return {"message": "Cancelled"}
        return {"message": "No CLI process running"}

    # ------------------------------------------------------------------
    # Persistent server
    # ------------------------------------------------------------------

    async def start_server(self, request: ServerStartRequest) -> Dict[str, Any]:
        """Spawn sd-server and wait for its port announcement."""
        self._require_model(request)
        if self.server.is_active:
            raise ResourceBusyError("Server already running", code="SERVER_RUNNING")
        port = request.port or self.default_port
        args = build_server_command(request, self.layout, port)
        self.log_buffer.clear()

        managed = await self.server.start(
            [str(self.backend.executable(SERVER_BINARY)), *args],
            cwd=self.backend.active_path(),
        )
        # Until the server announces otherwise, assume it took the requested port
        managed.port = port
        ready = await self.server.wait_ready()
        if not ready:
            outcome = await self.server.wait(managed)
            raise ExecutionFailure(
                f"Server exited during startup with code {outcome.return_code}",
                code="SERVER_START_FAILED",
                output=outcome.output_tail(OUTPUT_TAIL_CHARS),
            )

        self.server_args = args
        return {"message": "Server started", "args": args, "port": managed.port}

    async def stop_server(self) -> Dict[str, Any]:
        outcome = await self.server.stop()
        if outcome is None:
            raise ValidationError("Not running", code="SERVER_NOT_RUNNING")
        return {"message": "Stopped"}

    async def generate_server(self, request: ServerGenerateRequest) -> Dict[str, Any]:
        """Loop batch_size single-image requests against the running server."""
        managed = self.server.current
        if managed is None or not self.server.is_active:
            raise ValidationError("Server not running", code="SERVER_NOT_RUNNING")
        port = managed.port or self.default_port

        payload = build_payload(
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            steps=request.steps,
            cfg_scale=request.cfg_scale,
            width=request.width,
            height=request.height,
            seed=request.seed,
            guidance=request.guidance,
            clip_skip=request.clip_skip,
        )
        batch_size = max(request.batch_size or 1, 1)
        logger.info(f"[GEN] Steps: {payload['sample_steps']} | Batch: {batch_size}")

        filenames = []
        for i in range(batch_size):
            # A random seed (-1) stays random for every image
            if payload["seed"] != -1 and i > 0:
                payload["seed"] += 1
            image_bytes = await self.client.generate_image(port, payload)

            filename = f"gen_{_timestamp()}_{i}.png"
            width, _, height = payload["size"].partition("x")
            parameters = format_parameters(
                prompt=payload["prompt"],
                negative_prompt=payload["negative_prompt"],
                steps=payload["steps"],
                cfg_scale=payload["cfg_scale"],
                seed=payload["seed"],
                width=int(width),
                height=int(height),
            )
            save_png_with_parameters(image_bytes, self.paths.output_dir / filename, parameters)
            filenames.append(filename)

        return {"message": "Complete", "filenames": filenames}

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.server.is_active,
            "ready": self.server.is_ready,
            "server": self.server.get_status(),
            "cli": self.cli.get_status(),
            "logs": [entry.text for entry in self.log_buffer.tail(50)],
        }
