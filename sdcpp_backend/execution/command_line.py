"""Job descriptor -> engine argv and environment.

The flag table maps each :class:`JobParam` to its ``sd-cli`` long flag.
Boolean params become bare flags when true and vanish when false; every
other param becomes ``--flag value``. Flags come out in descriptor order.
"""
from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from ..compilation.job_descriptor import JobDescriptor, JobParam

logger = logging.getLogger(__name__)

FLAGS: Dict[JobParam, str] = {
    JobParam.MODE: "-M",
    JobParam.THREADS: "--threads",
    JobParam.WEIGHT_TYPE: "--type",
    JobParam.DIFFUSION_MODEL: "--diffusion-model",
    JobParam.MODEL: "--model",
    JobParam.HIGH_NOISE_DIFFUSION_MODEL: "--high-noise-diffusion-model",
    JobParam.CLIP_G: "--clip_g",
    JobParam.CLIP_L: "--clip_l",
    JobParam.T5XXL: "--t5xxl",
    JobParam.LLM: "--llm",
    JobParam.CLIP_VISION: "--clip_vision",
    JobParam.VAE: "--vae",
    JobParam.TAESD: "--taesd",
    JobParam.CONTROL_NET: "--control-net",
    JobParam.UPSCALE_MODEL: "--upscale-model",
    JobParam.UPSCALE_REPEATS: "--upscale-repeats",
    JobParam.LORA_MODEL_DIR: "--lora-model-dir",
    JobParam.PROMPT: "--prompt",
    JobParam.NEGATIVE_PROMPT: "--negative-prompt",
    JobParam.WIDTH: "--width",
    JobParam.HEIGHT: "--height",
    JobParam.STEPS: "--steps",
    JobParam.CFG_SCALE: "--cfg-scale",
    JobParam.GUIDANCE: "--guidance",
    JobParam.SEED: "--seed",
    JobParam.SAMPLER: "--sampling-method",
    JobParam.SCHEDULER: "--scheduler",
    JobParam.CLIP_SKIP: "--clip-skip",
    JobParam.BATCH_COUNT: "--batch-count",
    JobParam.RNG: "--rng",
    JobParam.ETA: "--eta",
    JobParam.INIT_IMG: "--init-img",
    JobParam.END_IMG: "--end-img",
    JobParam.STRENGTH: "--strength",
    JobParam.MASK: "--mask",
    JobParam.REF_IMAGE: "--ref-image",
    JobParam.CONTROL_IMAGE: "--control-image",
    JobParam.CONTROL_STRENGTH: "--control-strength",
    JobParam.VIDEO_FRAMES: "--video-frames",
    JobParam.FPS: "--fps",
    JobParam.FLOW_SHIFT: "--flow-shift",
    JobParam.VIDEO_SWAP_PERCENT: "--video-swap-percent",
    JobParam.VAE_TILING: "--vae-tiling",
    JobParam.CLIP_ON_CPU: "--clip-on-cpu",
    JobParam.VAE_ON_CPU: "--vae-on-cpu",
    JobParam.OFFLOAD_TO_CPU: "--offload-to-cpu",
    JobParam.CONTROL_NET_CPU: "--control-net-cpu",
    JobParam.FLASH_ATTENTION: "--diffusion-fa",
    JobParam.DIFFUSION_CONV_DIRECT: "--diffusion-conv-direct",
    JobParam.VAE_CONV_DIRECT: "--vae-conv-direct",
    JobParam.MMAP: "--mmap",
    JobParam.CACHE_MODE: "--cache-mode",
    JobParam.CACHE_OPTION: "--cache-option",
    JobParam.CACHE_PRESET: "--cache-preset",
    JobParam.COLOR: "--color",
    JobParam.PREVIEW: "--preview",
    JobParam.PREVIEW_PATH: "--preview-path",
    JobParam.PREVIEW_INTERVAL: "--preview-interval",
    JobParam.PREVIEW_NOISY: "--preview-noisy",
    JobParam.TAESD_PREVIEW_ONLY: "--taesd-preview-only",
    JobParam.OUTPUT: "--output",
    JobParam.VERBOSE: "--verbose",
}

PREVIEW_PARAMS = frozenset({
    JobParam.PREVIEW,
    JobParam.PREVIEW_PATH,
    JobParam.PREVIEW_INTERVAL,
    JobParam.PREVIEW_NOISY,
    JobParam.TAESD_PREVIEW_ONLY,
})

# Forced on for CPU-only runs, in this order
CPU_DEVICE_FLAGS = ("--vae-on-cpu", "--clip-on-cpu", "--vae-tiling")

GPU_BACKEND_ENV = ("GGML_USE_VULKAN", "GGML_USE_CUDA", "GGML_USE_METAL", "GGML_USE_OPENCL", "GGML_USE_SYCL")


@dataclass(frozen=True)
class EngineCapabilities:
    """Optional flag groups the installed executable understands."""

    preview: bool = False
    output: bool = True


_capability_cache: Dict[str, EngineCapabilities] = {}


def probe_capabilities(executable: Path, timeout: float = 15.0) -> EngineCapabilities:
    """Run ``--help`` once per executable and look for optional flags."""
    key = str(executable)
    cached = _capability_cache.get(key)
    if cached is not None:
        return cached
    try:
        proc = subprocess.run(
            [key, "--help"],
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout,
            cwd=str(Path(executable).parent),
        )
        text = proc.stdout + proc.stderr
        caps = EngineCapabilities(preview="--preview" in text, output="--output" in text)
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Could not probe %s for capabilities: %s", executable, e)
        return EngineCapabilities()
    _capability_cache[key] = caps
    logger.debug("Engine capabilities for %s: %s", executable, caps)
    return caps


def _format(value) -> str:
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def build_command_line(
    executable: Union[Path, Sequence[str]],
    descriptor: JobDescriptor,
    device: str = "cpu",
    capabilities: Optional[EngineCapabilities] = None,
) -> List[str]:
    """Serialize ``descriptor`` into an argv list.

    Args:
        executable: Engine path, or an argv prefix such as
            ``[interpreter, script]`` for wrapped engines.
        descriptor: Compiled job.
        device: "cpu" appends the CPU-only flags not already present.
        capabilities: Optional flag groups the engine supports.
    """
    caps = capabilities or EngineCapabilities()
    if isinstance(executable, (list, tuple)):
        argv: List[str] = [str(a) for a in executable]
    else:
        argv = [str(executable)]
    emitted = set()

    if not caps.preview and any(p in descriptor for p in PREVIEW_PARAMS):
        logger.warning("Preview requested but the executable does not support --preview")

    for param, value in descriptor.items():
        if param in PREVIEW_PARAMS and not caps.preview:
            continue
        if param is JobParam.OUTPUT and not caps.output:
            continue
        flag = FLAGS[param]
        if param.kind is bool:
            if value:
                argv.append(flag)
                emitted.add(flag)
            continue
        argv.extend([flag, _format(value)])
        emitted.add(flag)

    if device == "cpu":
        argv.extend(f for f in CPU_DEVICE_FLAGS if f not in emitted)

    argv.extend(descriptor.extra_args)
    return argv


def build_environment(device: str, base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Process environment; GPU backends are disabled for CPU runs."""
    env = dict(os.environ if base is None else base)
    if device == "cpu":
        for name in GPU_BACKEND_ENV:
            env[name] = "0"
    return env
