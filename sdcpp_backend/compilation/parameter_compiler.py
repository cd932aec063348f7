"""Parameter Compiler - Request + components + policy -> job descriptor.

Merge priority (low -> high):
1. Architecture defaults (sampler, CFG, steps, guidance)
2. User request values
3. Resolved artifact paths
4. Memory-policy toggles (never weakening a user's own toggle)

Flux always runs with the euler sampler; a different requested sampler
is replaced with a warning. Other architecture-aware checks (CFG on flux,
long step counts on distilled families) warn and carry on; they never
block a request.
"""
from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from config.config import AppConfig, get_config

from ..orchestration.architecture_classifier import base_family, is_dit, is_distilled, is_video
from ..orchestration.memory_policy import MemoryPolicyDecision
from ..request import GenerationRequest
from ..resolution.component_resolver import ResolvedComponents
from .image_inputs import save_image_input
from .job_descriptor import JobDescriptor, JobDescriptorBuilder, JobParam

logger = logging.getLogger(__name__)

OUTPUT_PATTERN = "generated_%03d.png"
PREVIEW_FILENAME = "preview.png"
DISTILLED_MAX_STEPS = 8


@dataclass(frozen=True)
class ArchitectureDefaults:
    """Generation defaults for a family."""

    sampler: str = "euler_a"
    cfg_scale: float = 7.0
    steps: int = 20
    guidance: Optional[float] = None
    flow_shift: Optional[float] = None


def architecture_defaults(architecture: str, config: AppConfig) -> ArchitectureDefaults:
    """Defaults for ``architecture``, with flux step counts taken from config."""
    if architecture == "flux-schnell":
        return ArchitectureDefaults(sampler="euler", cfg_scale=1.0, steps=config.flux_schnell_steps, guidance=3.5)
    family = base_family(architecture)
    if family == "flux":
        return ArchitectureDefaults(sampler="euler", cfg_scale=1.0, steps=config.flux_dev_steps, guidance=3.5)
    if architecture in ("sdxl-turbo", "sd15-turbo"):
        return ArchitectureDefaults(sampler="euler_a", cfg_scale=1.0, steps=4)
    if architecture == "lcm":
        return ArchitectureDefaults(sampler="lcm", cfg_scale=1.0, steps=4)
    if family == "wan":
        return ArchitectureDefaults(sampler="euler", cfg_scale=6.0, steps=20, flow_shift=3.0)
    if is_dit(architecture):
        return ArchitectureDefaults(sampler="euler", cfg_scale=4.5, steps=20)
    return ArchitectureDefaults()


# Resolver slot -> descriptor key
_COMPONENT_PARAMS: Dict[str, JobParam] = {
    "clip_g": JobParam.CLIP_G,
    "clip_l": JobParam.CLIP_L,
    "t5xxl": JobParam.T5XXL,
    "llm": JobParam.LLM,
    "clip_vision": JobParam.CLIP_VISION,
    "vae": JobParam.VAE,
    "high_noise": JobParam.HIGH_NOISE_DIFFUSION_MODEL,
}

_TOGGLE_PARAMS: Dict[str, JobParam] = {
    "vae_tiling": JobParam.VAE_TILING,
    "clip_on_cpu": JobParam.CLIP_ON_CPU,
    "vae_on_cpu": JobParam.VAE_ON_CPU,
    "offload_to_cpu": JobParam.OFFLOAD_TO_CPU,
}


def _warn(message: str) -> None:
    logger.warning(message)
    warnings.warn(message, UserWarning, stacklevel=3)


class ParameterCompiler:
    """Compiles a generation request into an engine job descriptor."""

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config or get_config()

    def compile(
        self,
        request: GenerationRequest,
        resolved: ResolvedComponents,
        decision: MemoryPolicyDecision,
        scratch_dir: Path,
    ) -> JobDescriptor:
        """Build the job descriptor.

        Args:
            request: The user's generation request.
            resolved: Artifact paths from the component resolver.
            decision: Memory-policy decision for this job.
            scratch_dir: Per-request directory; image inputs and outputs go here.

        Returns:
            Immutable job descriptor.
        """
        architecture = resolved.architecture
        scratch_dir = Path(scratch_dir)
        b = JobDescriptorBuilder()

        self._apply_defaults(b, architecture)
        self._apply_request(b, architecture, request)
        self._apply_components(b, architecture, resolved)
        self._apply_images(b, request, scratch_dir)
        self._apply_video(b, architecture, request)
        self._apply_performance(b, architecture)
        self._apply_memory(b, request, decision)
        self._apply_output(b, request, scratch_dir)
        b.extend_args(request.extra_args)

        descriptor = b.build()
        self._check(architecture, descriptor)
        if self.config.debug_mode:
            logger.debug(descriptor.summary())
        return descriptor

    # -- stages ---------------------------------------------------------

    def _apply_defaults(self, b: JobDescriptorBuilder, architecture: str) -> None:
        defaults = architecture_defaults(architecture, self.config)
        b.set(JobParam.SAMPLER, defaults.sampler)
        b.set(JobParam.CFG_SCALE, defaults.cfg_scale)
        b.set(JobParam.STEPS, defaults.steps)
        b.set(JobParam.GUIDANCE, defaults.guidance)
        b.set(JobParam.FLOW_SHIFT, defaults.flow_shift)
        if self.config.threads > 0:
            b.set(JobParam.THREADS, self.config.threads)

    def _apply_request(self, b: JobDescriptorBuilder, architecture: str, r: GenerationRequest) -> None:
        b.set(JobParam.PROMPT, r.prompt)
        if r.negative_prompt:
            b.set(JobParam.NEGATIVE_PROMPT, r.negative_prompt)
        b.set(JobParam.WIDTH, int(r.width))
        b.set(JobParam.HEIGHT, int(r.height))
        if r.steps and r.steps > 0:
            b.set(JobParam.STEPS, int(r.steps))
        if r.cfg_scale is not None:
            b.set(JobParam.CFG_SCALE, r.cfg_scale)
        if r.guidance is not None:
            b.set(JobParam.GUIDANCE, r.guidance)
        b.set(JobParam.SEED, int(r.seed))
        if r.sampler:
            if base_family(architecture) == "flux" and r.sampler != "euler":
                _warn(f"Flux models require the euler sampler; ignoring requested sampler {r.sampler}")
            else:
                b.set(JobParam.SAMPLER, r.sampler)
        if r.scheduler and r.scheduler != "default":
            b.set(JobParam.SCHEDULER, r.scheduler)
        if abs(r.clip_skip) > 1:
            b.set(JobParam.CLIP_SKIP, abs(r.clip_skip))
        if r.batch_count > 1:
            b.set(JobParam.BATCH_COUNT, int(r.batch_count))
        b.set(JobParam.RNG, r.rng)
        b.set(JobParam.ETA, r.eta)
        if "<lora:" in r.prompt:
            lora_dir = r.lora_model_dir or str(Path(self.config.models_root) / "Lora")
            b.set(JobParam.LORA_MODEL_DIR, lora_dir)
        b.set(JobParam.TAESD, r.taesd_model)
        if r.upscale_model:
            b.set(JobParam.UPSCALE_MODEL, r.upscale_model)
            if r.upscale_repeats > 1:
                b.set(JobParam.UPSCALE_REPEATS, int(r.upscale_repeats))
        if r.color:
            b.set(JobParam.COLOR, True)

    def _apply_components(self, b: JobDescriptorBuilder, architecture: str, resolved: ResolvedComponents) -> None:
        main = resolved.main_model
        if resolved.main_slot == "diffusion":
            b.set(JobParam.DIFFUSION_MODEL, main)
        else:
            b.set(JobParam.MODEL, main)
        for slot, param in _COMPONENT_PARAMS.items():
            path = resolved.get(slot)
            if path is not None:
                b.set(param, path)
        if base_family(architecture) == "flux" and main.suffix.lower() != ".gguf":
            b.set(JobParam.WEIGHT_TYPE, self.config.weight_type)

    def _apply_images(self, b: JobDescriptorBuilder, r: GenerationRequest, scratch: Path) -> None:
        if r.init_image is not None:
            b.set(JobParam.INIT_IMG, save_image_input(r.init_image, scratch / "init.png"))
            b.set(JobParam.STRENGTH, r.strength)
        if r.mask_image is not None:
            b.set(JobParam.MASK, save_image_input(r.mask_image, scratch / "mask.png", mode="L"))
        if r.end_image is not None:
            b.set(JobParam.END_IMG, save_image_input(r.end_image, scratch / "end.png"))
        if r.reference_image is not None:
            b.set(JobParam.REF_IMAGE, save_image_input(r.reference_image, scratch / "ref.png"))
        if r.control_images:
            if not r.controlnet_model:
                _warn("Control image supplied without a ControlNet model; ignoring it")
                return
            if len(r.control_images) > 1:
                logger.info("Only the first of %d control images is used", len(r.control_images))
            b.set(JobParam.CONTROL_NET, r.controlnet_model)
            b.set(JobParam.CONTROL_IMAGE, save_image_input(r.control_images[0], scratch / "control0.png"))
            b.set(JobParam.CONTROL_STRENGTH, r.control_strength)

    def _apply_video(self, b: JobDescriptorBuilder, architecture: str, r: GenerationRequest) -> None:
        if not is_video(architecture):
            b.set(JobParam.FLOW_SHIFT, None)
            return
        b.set(JobParam.MODE, "vid_gen")
        if r.video_frames > 0:
            b.set(JobParam.VIDEO_FRAMES, int(r.video_frames))
        if r.fps > 0:
            b.set(JobParam.FPS, int(r.fps))
        if r.flow_shift is not None:
            b.set(JobParam.FLOW_SHIFT, r.flow_shift)
        if architecture == "wan-2.2" and r.video_swap_percent is not None:
            b.set(JobParam.VIDEO_SWAP_PERCENT, r.video_swap_percent)

    def _apply_performance(self, b: JobDescriptorBuilder, architecture: str) -> None:
        b.set(JobParam.FLASH_ATTENTION, bool(self.config.flash_attention))
        b.set(JobParam.DIFFUSION_CONV_DIRECT, True)
        b.set(JobParam.VAE_CONV_DIRECT, True)
        b.set(JobParam.MMAP, True)
        if is_dit(architecture):
            b.set(JobParam.CACHE_MODE, "cache-dit")
            b.set(JobParam.CACHE_PRESET, "ultra")
        else:
            b.set(JobParam.CACHE_MODE, "ucache")
            sampler = b.get(JobParam.SAMPLER)
            b.set(JobParam.CACHE_OPTION, "reset=0" if sampler == "euler_a" else "reset=1")

    def _apply_memory(self, b: JobDescriptorBuilder, r: GenerationRequest, decision: MemoryPolicyDecision) -> None:
        user = dict(r.user_toggles)
        # Config-level toggles count as user-forced
        for name in ("vae_tiling", "vae_on_cpu", "clip_on_cpu"):
            if user.get(name) is None and getattr(self.config, name):
                user[name] = True
        merged = decision.apply_to(user)
        for name, param in _TOGGLE_PARAMS.items():
            b.set(param, merged[name])
        if merged["offload_to_cpu"] and JobParam.CONTROL_NET in b:
            b.set(JobParam.CONTROL_NET_CPU, True)

    def _apply_output(self, b: JobDescriptorBuilder, r: GenerationRequest, scratch: Path) -> None:
        if r.enable_preview:
            b.set(JobParam.PREVIEW, r.preview_method or "tae")
            b.set(JobParam.PREVIEW_PATH, scratch / PREVIEW_FILENAME)
            b.set(JobParam.PREVIEW_INTERVAL, max(1, int(r.preview_interval)))
            if r.preview_noisy:
                b.set(JobParam.PREVIEW_NOISY, True)
            if r.taesd_preview_only:
                b.set(JobParam.TAESD_PREVIEW_ONLY, True)
        b.set(JobParam.OUTPUT, scratch / OUTPUT_PATTERN)
        if self.config.debug_mode:
            b.set(JobParam.VERBOSE, True)

    # -- checks ---------------------------------------------------------

    def _check(self, architecture: str, descriptor: JobDescriptor) -> None:
        family = base_family(architecture)
        cfg = descriptor.get(JobParam.CFG_SCALE)
        if family == "flux" and cfg is not None and cfg != 1.0:
            _warn(f"Flux models are guidance-distilled; cfg_scale {cfg} != 1.0 may degrade output")
        steps = descriptor.get(JobParam.STEPS, 0)
        if is_distilled(architecture) and steps > DISTILLED_MAX_STEPS:
            _warn(f"{architecture} is a few-step distilled model; {steps} steps is unusually high")
