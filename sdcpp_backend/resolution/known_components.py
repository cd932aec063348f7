"""Known auxiliary components: where to look for them and where to fetch them.

Each resolver slot has:
- a naming heuristic used against the local index
- optionally, a pinned download (URL + sha256) into a well-known path
  under the models root
- a placement hint shown when the slot cannot be resolved
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .artifact_index import IndexedArtifact


@dataclass(frozen=True)
class KnownComponent:
    """A pinned, auto-downloadable component."""

    slot: str
    relative_path: str      # under the models root
    url: str
    sha256: Optional[str] = None
    size_bytes: int = 0
    label: str = ""


KNOWN_COMPONENTS: Dict[str, KnownComponent] = {
    "vae": KnownComponent(
        slot="vae",
        relative_path="VAE/Flux/ae.safetensors",
        url="https://huggingface.co/mcmonkey/swarm-vaes/resolve/main/flux_ae.safetensors",
        sha256="afc8e28272cd15db3919bacdb6918ce9c1ed22e96cb12c4d5ed0fba823529e38",
        label="Flux VAE",
    ),
    "clip_g": KnownComponent(
        slot="clip_g",
        relative_path="clip/clip_g.safetensors",
        url="https://huggingface.co/stabilityai/stable-diffusion-xl-base-1.0/resolve/main/text_encoder_2/model.fp16.safetensors",
        sha256="ec310df2af79c318e24d20511b601a591ca8cd4f1fce1d8dff822a356bcdb1f4",
        label="CLIP-G",
    ),
    "clip_l": KnownComponent(
        slot="clip_l",
        relative_path="clip/clip_l.safetensors",
        url="https://huggingface.co/stabilityai/stable-diffusion-xl-base-1.0/resolve/main/text_encoder/model.fp16.safetensors",
        sha256="660c6f5b1abae9dc498ac2d21e1347d2abdb0cf6c0c0c8576cd796491d9a6cdd",
        label="CLIP-L",
    ),
    "t5xxl": KnownComponent(
        slot="t5xxl",
        relative_path="clip/t5xxl_fp8_e4m3fn.safetensors",
        url="https://huggingface.co/mcmonkey/google_t5-v1_1-xxl_encoderonly/resolve/main/t5xxl_fp8_e4m3fn.safetensors",
        sha256="7d330da4816157540d6bb7838bf63a0f02f573fc48ca4d8de34bb0cbfd514f09",
        label="T5-XXL (fp8)",
    ),
    "llm": KnownComponent(
        slot="llm",
        relative_path="clip/qwen_3_4b.safetensors",
        url="https://huggingface.co/Comfy-Org/z_image_turbo/resolve/main/split_files/text_encoders/qwen_3_4b.safetensors",
        sha256="6c671498573ac2f7a5501502ccce8d2b08ea6ca2f661c458e708f36b36edfc5a",
        label="Qwen3 4B text encoder",
    ),
}


# Folders (any level of the relative name) a slot's index match must sit in
SLOT_FOLDERS: Dict[str, frozenset] = {
    "vae": frozenset({"vae"}),
    "clip_l": frozenset({"clip", "text_encoders"}),
    "clip_g": frozenset({"clip", "text_encoders"}),
    "t5xxl": frozenset({"clip", "text_encoders"}),
    "llm": frozenset({"clip", "text_encoders"}),
}


def _is_flux_vae(e: IndexedArtifact) -> bool:
    name = e.filename
    return name in ("ae.safetensors", "ae.sft") or name.endswith("ae.safetensors") or ("flux" in name and "ae" in name)


def _contains(*needles: str) -> Callable[[IndexedArtifact], bool]:
    return lambda e: any(n in e.filename for n in needles)


def _in_folders(slot: str, test: Callable[[IndexedArtifact], bool]) -> Callable[[IndexedArtifact], bool]:
    folders = SLOT_FOLDERS[slot]
    return lambda e: bool(folders & e.folders) and test(e)


SLOT_MATCHERS: Dict[str, Callable[[IndexedArtifact], bool]] = {
    "vae": _in_folders("vae", _is_flux_vae),
    "clip_l": _in_folders("clip_l", _contains("clip_l")),
    "clip_g": _in_folders("clip_g", _contains("clip_g")),
    "t5xxl": _in_folders("t5xxl", _contains("t5xxl")),
    "llm": _in_folders("llm", _contains("qwen")),
}


SLOT_LABELS: Dict[str, str] = {
    "diffusion": "Diffusion model",
    "model": "Model",
    "vae": "VAE (ae.safetensors)",
    "clip_l": "CLIP-L (clip_l.safetensors)",
    "clip_g": "CLIP-G (clip_g.safetensors)",
    "t5xxl": "T5-XXL (t5xxl_fp16.safetensors or t5xxl_fp8_e4m3fn.safetensors)",
    "llm": "LLM text encoder (qwen_3_4b.safetensors)",
    "clip_vision": "CLIP vision encoder",
    "high_noise": "High-noise diffusion model",
}

PLACEMENT_HINTS: Dict[str, str] = {
    "vae": "Models/VAE/",
    "clip_l": "Models/clip/",
    "clip_g": "Models/clip/",
    "t5xxl": "Models/clip/",
    "llm": "Models/clip/",
    "clip_vision": "Models/clip_vision/",
}


def describe_missing(slot: str, detail: str = "") -> str:
    """One line of a ResolutionError: what is missing and where it goes."""
    text = SLOT_LABELS.get(slot, slot)
    if detail:
        text += f": {detail}"
    hint = PLACEMENT_HINTS.get(slot)
    if hint:
        text += f" (place in {hint})"
    return text
