"""Generation request - what the host asks the backend to produce.

Everything is optional except the model; unset values fall back to
architecture defaults during compilation. Memory toggles are tri-state:
``None`` lets the memory policy decide, ``True`` forces the mitigation on,
``False`` is a preference the policy may override under pressure.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np
from PIL import Image

# Raw encoded bytes, a file path, a PIL image or an HxW[xC] uint8 array
ImageInput = Union[bytes, str, Path, Image.Image, np.ndarray]


@dataclass
class GenerationRequest:
    """One text/image-to-image or video generation request."""

    model_path: Path
    model_class: str = ""                     # host-declared class id
    model_name: Optional[str] = None          # display name

    # Prompting
    prompt: str = ""
    negative_prompt: str = ""

    # Core sampling
    width: int = 512
    height: int = 512
    steps: int = 0                            # 0 = architecture default
    cfg_scale: Optional[float] = None
    guidance: Optional[float] = None          # flux distilled guidance
    seed: int = -1
    sampler: Optional[str] = None
    scheduler: Optional[str] = None
    clip_skip: int = 0
    batch_count: int = 1
    rng: Optional[str] = None                 # "std_default" | "cuda"
    eta: Optional[float] = None

    # Explicit component selections, slot -> path or index name
    components: Dict[str, str] = field(default_factory=dict)

    # Image inputs
    init_image: Optional[ImageInput] = None
    strength: float = 0.75
    mask_image: Optional[ImageInput] = None
    end_image: Optional[ImageInput] = None    # last frame for flf2v
    reference_image: Optional[ImageInput] = None
    control_images: List[ImageInput] = field(default_factory=list)
    controlnet_model: Optional[str] = None
    control_strength: float = 0.9

    # Extras
    lora_model_dir: Optional[str] = None
    taesd_model: Optional[str] = None
    upscale_model: Optional[str] = None
    upscale_repeats: int = 1
    color: bool = False

    # Video
    video_frames: int = 0
    fps: int = 0
    flow_shift: Optional[float] = None
    video_swap_percent: Optional[float] = None

    # Memory toggles (tri-state)
    vae_tiling: Optional[bool] = None
    clip_on_cpu: Optional[bool] = None
    vae_on_cpu: Optional[bool] = None
    offload_to_cpu: Optional[bool] = None

    # Live preview
    enable_preview: bool = False
    preview_method: str = "tae"
    preview_interval: int = 1
    preview_noisy: bool = False
    taesd_preview_only: bool = False

    # Passed through verbatim after every generated flag
    extra_args: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.model_path = Path(self.model_path)

    @property
    def user_toggles(self) -> Dict[str, Optional[bool]]:
        return {
            "vae_tiling": self.vae_tiling,
            "clip_on_cpu": self.clip_on_cpu,
            "vae_on_cpu": self.vae_on_cpu,
            "offload_to_cpu": self.offload_to_cpu,
        }

    @property
    def display_name(self) -> str:
        return self.model_name if self.model_name is not None else self.model_path.name
