"""SD.cpp Backend - Facade tying the pipeline together.

One generation request flows through:
1. ArchitectureClassifier   - family tag from model metadata
2. ComponentResolver        - local paths for every required artifact
3. HardwareProfiler         - free accelerator memory
4. MemoryPolicyEvaluator    - memory-saving toggles
5. ParameterCompiler        - immutable job descriptor
6. ProcessSupervisor        - run the engine, collect outputs

This is the only place a ProvisionError is turned into a status value
instead of propagating; the backend then reports itself as disabled.
"""
from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config.config import AppConfig, get_config
from utils.project_paths import SCRATCH_DIR_NAME, resolve_dlbackend_dir, resolve_models_root

from .compilation.job_descriptor import JobDescriptor
from .compilation.parameter_compiler import ParameterCompiler
from .errors import ProvisionError
from .execution.command_line import EngineCapabilities, probe_capabilities
from .execution.gguf_converter import GGUFConverter
from .execution.process_supervisor import (
    GenerationJob,
    GenerationResult,
    PreviewCallback,
    ProcessSupervisor,
    ProgressCallback,
)
from .orchestration.architecture_classifier import (
    ArchitectureClassifier,
    ClassificationResult,
    ModelMetadata,
    get_classifier,
    is_dit,
    is_video,
)
from .orchestration.hardware_profiler import HardwareProfiler, get_profiler
from .orchestration.memory_policy import MemoryPolicyDecision, MemoryPolicyEvaluator
from .provisioning.binary_provisioner import BackgroundUpdateTask, BinaryInstallation, BinaryProvisioner
from .request import GenerationRequest
from .resolution.artifact_index import LocalArtifactIndex
from .resolution.component_resolver import ComponentResolver, ResolvedComponents

logger = logging.getLogger(__name__)

BACKEND_ID = "sdcpp"
BACKEND_NAME = "stable-diffusion.cpp"

Executable = Union[Path, Sequence[str]]


class BackendStatus(Enum):
    UNINITIALIZED = "uninitialized"
    READY = "ready"
    DISABLED = "disabled"


@dataclass
class LoadedModel:
    """The model most recently selected by the host."""

    path: Path
    metadata: ModelMetadata
    classification: ClassificationResult

    @property
    def architecture(self) -> str:
        return self.classification.tag


@dataclass
class JobPlan:
    """Everything decided before the engine is launched."""

    architecture: str
    resolved: ResolvedComponents
    decision: MemoryPolicyDecision
    descriptor: JobDescriptor
    scratch_dir: Path

    def summary(self) -> str:
        lines = [
            f"Job Plan ({self.architecture})",
            f"  Scratch: {self.scratch_dir}",
            "",
            self.decision.summary(),
            "",
            self.descriptor.summary(),
        ]
        return "\n".join(lines)


class SDcppBackend:
    """Image/video generation through the stable-diffusion.cpp engine."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        provisioner: Optional[BinaryProvisioner] = None,
        classifier: Optional[ArchitectureClassifier] = None,
        index: Optional[LocalArtifactIndex] = None,
        resolver: Optional[ComponentResolver] = None,
        profiler: Optional[HardwareProfiler] = None,
        executable: Optional[Executable] = None,
    ):
        """Initialize backend (nothing is downloaded or launched here).

        Args:
            config: Settings; defaults to the global config.
            provisioner: Engine installer; built from config when omitted.
            classifier: Architecture classifier.
            index: Local model index; built over the models root when omitted.
            resolver: Component resolver.
            profiler: Hardware profiler.
            executable: Engine path or argv prefix, bypassing provisioning.
        """
        self.config = config or get_config()
        self.models_root = resolve_models_root(self.config.models_root)
        self.profiler = profiler or get_profiler()
        self.classifier = classifier or get_classifier()
        self.index = index or LocalArtifactIndex([self.models_root])
        self.resolver = resolver or ComponentResolver(
            self.models_root,
            auto_download=self.config.auto_download,
            overrides=self.config.component_overrides(),
        )
        self.evaluator = MemoryPolicyEvaluator(self.config.policy)
        self.compiler = ParameterCompiler(self.config)
        self._provisioner = provisioner

        self.executable: Optional[Executable] = executable
        self.capabilities = EngineCapabilities()
        self.status = BackendStatus.UNINITIALIZED
        self.status_message = ""
        self.current_model: Optional[LoadedModel] = None
        self._updater: Optional[BackgroundUpdateTask] = None

    @property
    def provisioner(self) -> BinaryProvisioner:
        if self._provisioner is None:
            self._provisioner = BinaryProvisioner(
                resolve_dlbackend_dir(self.config.dlbackend_root),
                cpu_tier=self.profiler.host_profile().cpu_tier,
            )
        return self._provisioner

    @property
    def ready(self) -> bool:
        return self.status is BackendStatus.READY

    # -- lifecycle ------------------------------------------------------

    def init(self, background_updates: bool = False) -> bool:
        """Locate or install the engine and index local models.

        Args:
            background_updates: Start periodic update checks on a daemon thread.

        Returns:
            True when the backend is ready; otherwise ``status_message`` says why.
        """
        for issue in self.config.config_issues():
            logger.warning(issue)

        try:
            if self.executable is None:
                self.executable = self._locate_executable()
        except ProvisionError as e:
            logger.error("SD.cpp backend disabled: %s", e)
            self.status = BackendStatus.DISABLED
            self.status_message = str(e)
            return False

        if isinstance(self.executable, Path):
            self.capabilities = probe_capabilities(self.executable)
        count = self.index.scan()
        logger.info("Indexed %d model files under %s", count, self.models_root)

        if background_updates and self.config.auto_update and self.config.executable_path is None:
            self._updater = BackgroundUpdateTask(self.provisioner, self.config.device_key)
            self._updater.start()

        self.status = BackendStatus.READY
        self.status_message = ""
        return True

    def shutdown(self) -> None:
        if self._updater is not None:
            self._updater.stop()
            self._updater = None

    def _locate_executable(self) -> Path:
        if self.config.executable_path:
            path = Path(self.config.executable_path)
            if not path.is_file():
                raise ProvisionError(f"SDCPP_EXECUTABLE not found: {path}", device=self.config.device_key)
            return path
        # Update checks are left to the background task so startup never blocks on them
        return self.provisioner.ensure_available(self.config.device_key, auto_update=False)

    def _require_ready(self) -> None:
        if self.status is BackendStatus.UNINITIALIZED:
            self.init()
        if self.status is not BackendStatus.READY:
            raise ProvisionError(self.status_message or "SD.cpp backend is not available", device=self.config.device_key)

    # -- models ---------------------------------------------------------

    def load_model(
        self,
        path: Union[str, Path],
        class_id: str = "",
        name: Optional[str] = None,
        resolution: Optional[Tuple[int, int]] = None,
    ) -> LoadedModel:
        """Select a model and classify it. Nothing is loaded into memory."""
        path = Path(path)
        metadata = ModelMetadata.from_path(path, class_id=class_id, name=name, resolution=resolution)
        classification = self.classifier.explain(metadata)
        self.index.scan_near(path)
        self.current_model = LoadedModel(path=path, metadata=metadata, classification=classification)
        logger.info("Selected %s (%s)", path.name, classification.tag)
        return self.current_model

    def architecture_for(self, request: GenerationRequest) -> str:
        current = self.current_model
        if current is not None and current.path == request.model_path and not request.model_class:
            return current.architecture
        metadata = ModelMetadata.from_path(request.model_path, class_id=request.model_class, name=request.model_name)
        return self.classifier.classify(metadata)

    def list_models(self) -> List[Dict[str, Any]]:
        """Main models found in the index, with their classification."""
        models = []
        for entry in self.index.model_entries():
            tag = self.classifier.classify(ModelMetadata.from_path(entry.path))
            models.append({
                "name": entry.name,
                "title": entry.path.stem,
                "path": str(entry.path),
                "architecture": tag,
                "type": "video" if is_video(tag) else ("diffusion" if is_dit(tag) else "checkpoint"),
            })
        return models

    # -- generation -----------------------------------------------------

    def new_scratch_dir(self) -> Path:
        base = Path(self.config.working_directory) if self.config.working_directory else Path(tempfile.gettempdir())
        scratch = base / SCRATCH_DIR_NAME / uuid.uuid4().hex
        scratch.mkdir(parents=True, exist_ok=False)
        return scratch

    def prepare(self, request: GenerationRequest, scratch_dir: Path) -> JobPlan:
        """Classify, resolve, evaluate memory and compile; no process is started.

        Raises:
            ResolutionError: Required components are missing.
        """
        architecture = self.architecture_for(request)
        self.index.scan_near(request.model_path)
        resolved = self.resolver.resolve(architecture, request, self.index)

        stats = self.profiler.accelerator_stats(self.config.device)
        decision = self.evaluator.evaluate(
            stats, resolved.sizes(), request.width, request.height, max(1, request.batch_count)
        )
        descriptor = self.compiler.compile(request, resolved, decision, scratch_dir)
        return JobPlan(architecture, resolved, decision, descriptor, Path(scratch_dir))

    def supervisor(self) -> ProcessSupervisor:
        return ProcessSupervisor(
            timeout_seconds=self.config.process_timeout_seconds,
            kill_grace_seconds=self.config.kill_grace_seconds,
            device=self.config.device,
            capabilities=self.capabilities,
        )

    async def generate(
        self,
        request: GenerationRequest,
        on_progress: Optional[ProgressCallback] = None,
        on_preview: Optional[PreviewCallback] = None,
        job: Optional[GenerationJob] = None,
    ) -> GenerationResult:
        """Run one generation request end to end.

        Args:
            request: What to generate.
            on_progress: Called with a fraction in [0, 1] as steps complete.
            on_preview: Called with preview image bytes when they change.
            job: Handle for cancellation; created when omitted.

        Returns:
            Result with the output files read into memory.
        """
        self._require_ready()
        scratch = self.new_scratch_dir()
        try:
            # Resolution may download; keep it off the event loop
            plan = await asyncio.to_thread(self.prepare, request, scratch)
        except BaseException:
            shutil.rmtree(scratch, ignore_errors=True)
            raise

        logger.info(
            "Generating with %s (%s, %dx%d)",
            request.display_name, plan.architecture, request.width, request.height,
        )
        return await self.supervisor().run(
            self.executable,
            plan.descriptor,
            scratch,
            on_progress=on_progress,
            on_preview=on_preview,
            job=job,
        )

    async def convert(self, source: Union[str, Path], quantization: str = "q8_0",
                      output_dir: Optional[Path] = None) -> Path:
        """Quantize a checkpoint to GGUF with the installed engine."""
        self._require_ready()
        converter = GGUFConverter(self.executable, self.supervisor())
        return await converter.convert(Path(source), quantization, output_dir)

    # -- reporting ------------------------------------------------------

    def installed_versions(self) -> List[BinaryInstallation]:
        return self.provisioner.installed_versions()

    def info(self) -> Dict[str, Any]:
        """Backend status for hosts and the status API."""
        current = self.current_model
        return {
            "id": BACKEND_ID,
            "name": BACKEND_NAME,
            "status": self.status.value,
            "message": self.status_message,
            "device": self.config.device_key,
            "executable": None if self.executable is None else str(self.executable),
            "current_model": str(current.path) if current else None,
            "architecture": current.architecture if current else None,
            "features": list(current.classification.features) if current else [],
        }


_backend: Optional[SDcppBackend] = None


def get_backend() -> SDcppBackend:
    """Get global backend instance."""
    global _backend
    if _backend is None:
        _backend = SDcppBackend()
    return _backend
