"""Job descriptor - the fully compiled parameter set for one engine run.

Keys come from the closed :class:`JobParam` enum, each declaring the value
type it accepts, so a misspelled or mistyped parameter fails when the
descriptor is built rather than when the engine rejects its flags. The
descriptor keeps entries in enum declaration order and is immutable once
built.
"""
from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple, Union

Value = Union[str, int, float, bool, Path]


class JobParam(Enum):
    """Every parameter the engine invocation can carry."""

    def __init__(self, key: str, kind: type):
        self.key = key
        self.kind = kind

    # Run mode & runtime
    MODE = ("mode", str)
    THREADS = ("threads", int)
    WEIGHT_TYPE = ("weight_type", str)

    # Model components
    DIFFUSION_MODEL = ("diffusion_model", Path)
    MODEL = ("model", Path)
    HIGH_NOISE_DIFFUSION_MODEL = ("high_noise_diffusion_model", Path)
    CLIP_G = ("clip_g", Path)
    CLIP_L = ("clip_l", Path)
    T5XXL = ("t5xxl", Path)
    LLM = ("llm", Path)
    CLIP_VISION = ("clip_vision", Path)
    VAE = ("vae", Path)
    TAESD = ("taesd", Path)
    CONTROL_NET = ("control_net", Path)
    UPSCALE_MODEL = ("upscale_model", Path)
    UPSCALE_REPEATS = ("upscale_repeats", int)
    LORA_MODEL_DIR = ("lora_model_dir", Path)

    # Sampling
    PROMPT = ("prompt", str)
    NEGATIVE_PROMPT = ("negative_prompt", str)
    WIDTH = ("width", int)
    HEIGHT = ("height", int)
    STEPS = ("steps", int)
    CFG_SCALE = ("cfg_scale", float)
    GUIDANCE = ("guidance", float)
    SEED = ("seed", int)
    SAMPLER = ("sampling_method", str)
    SCHEDULER = ("scheduler", str)
    CLIP_SKIP = ("clip_skip", int)
    BATCH_COUNT = ("batch_count", int)
    RNG = ("rng", str)
    ETA = ("eta", float)

    # Image inputs
    INIT_IMG = ("init_img", Path)
    END_IMG = ("end_img", Path)
    STRENGTH = ("strength", float)
    MASK = ("mask", Path)
    REF_IMAGE = ("ref_image", Path)
    CONTROL_IMAGE = ("control_image", Path)
    CONTROL_STRENGTH = ("control_strength", float)

    # Video
    VIDEO_FRAMES = ("video_frames", int)
    FPS = ("fps", int)
    FLOW_SHIFT = ("flow_shift", float)
    VIDEO_SWAP_PERCENT = ("video_swap_percent", float)

    # Memory & performance
    VAE_TILING = ("vae_tiling", bool)
    CLIP_ON_CPU = ("clip_on_cpu", bool)
    VAE_ON_CPU = ("vae_on_cpu", bool)
    OFFLOAD_TO_CPU = ("offload_to_cpu", bool)
    CONTROL_NET_CPU = ("control_net_cpu", bool)
    FLASH_ATTENTION = ("flash_attention", bool)
    DIFFUSION_CONV_DIRECT = ("diffusion_conv_direct", bool)
    VAE_CONV_DIRECT = ("vae_conv_direct", bool)
    MMAP = ("mmap", bool)
    CACHE_MODE = ("cache_mode", str)
    CACHE_OPTION = ("cache_option", str)
    CACHE_PRESET = ("cache_preset", str)

    # Output & diagnostics
    COLOR = ("color", bool)
    PREVIEW = ("preview", str)
    PREVIEW_PATH = ("preview_path", Path)
    PREVIEW_INTERVAL = ("preview_interval", int)
    PREVIEW_NOISY = ("preview_noisy", bool)
    TAESD_PREVIEW_ONLY = ("taesd_preview_only", bool)
    OUTPUT = ("output", Path)
    VERBOSE = ("verbose", bool)

    @classmethod
    def from_key(cls, key: str) -> "JobParam":
        for param in cls:
            if param.key == key:
                return param
        raise KeyError(f"Unknown job parameter: {key!r}")


_ORDER = {param: i for i, param in enumerate(JobParam)}


def _coerce(param: JobParam, value: Any) -> Value:
    """Validate/normalize ``value`` for ``param``; raises TypeError on mismatch."""
    kind = param.kind
    if kind is bool:
        if not isinstance(value, bool):
            raise TypeError(f"{param.key} expects bool, got {type(value).__name__}")
        return value
    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"{param.key} expects int, got {type(value).__name__}")
        return value
    if kind is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"{param.key} expects float, got {type(value).__name__}")
        return float(value)
    if kind is Path:
        if not isinstance(value, (str, Path)):
            raise TypeError(f"{param.key} expects a path, got {type(value).__name__}")
        return Path(value)
    if not isinstance(value, str):
        raise TypeError(f"{param.key} expects str, got {type(value).__name__}")
    return value


class JobDescriptor(Mapping):
    """Immutable, ordered JobParam -> value mapping."""

    __slots__ = ("_items", "_index", "extra_args")

    def __init__(self, items: Dict[JobParam, Value], extra_args: Tuple[str, ...] = ()):
        ordered = sorted(items.items(), key=lambda kv: _ORDER[kv[0]])
        self._items: Tuple[Tuple[JobParam, Value], ...] = tuple(ordered)
        self._index: Dict[JobParam, Value] = dict(ordered)
        self.extra_args: Tuple[str, ...] = tuple(extra_args)

    def __getitem__(self, param: JobParam) -> Value:
        return self._index[param]

    def __iter__(self) -> Iterator[JobParam]:
        return (param for param, _ in self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        inner = ", ".join(f"{p.key}={v!r}" for p, v in self._items)
        return f"JobDescriptor({inner})"

    def flag(self, param: JobParam) -> bool:
        """True only when a boolean param is present and set."""
        return self._index.get(param) is True

    def to_dict(self) -> Dict[str, Value]:
        return {param.key: value for param, value in self._items}

    def summary(self) -> str:
        lines = ["Job Descriptor:"]
        for param, value in self._items:
            text = value if param is not JobParam.PROMPT else f"{str(value)[:80]!r}"
            lines.append(f"  {param.key}: {text}")
        if self.extra_args:
            lines.append(f"  extra_args: {' '.join(self.extra_args)}")
        return "\n".join(lines)


class JobDescriptorBuilder:
    """Mutable staging area; later ``set`` calls override earlier ones."""

    def __init__(self):
        self._items: Dict[JobParam, Value] = {}
        self._extra_args: list[str] = []

    def set(self, param: JobParam, value: Optional[Any]) -> "JobDescriptorBuilder":
        """Set ``param``; ``None`` removes it."""
        if value is None:
            self._items.pop(param, None)
        else:
            self._items[param] = _coerce(param, value)
        return self

    def get(self, param: JobParam, default: Optional[Value] = None) -> Optional[Value]:
        return self._items.get(param, default)

    def __contains__(self, param: JobParam) -> bool:
        return param in self._items

    def extend_args(self, args) -> "JobDescriptorBuilder":
        self._extra_args.extend(str(a) for a in args)
        return self

    def build(self) -> JobDescriptor:
        return JobDescriptor(dict(self._items), tuple(self._extra_args))
