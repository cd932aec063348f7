"""Architecture Classifier - Model family detection from metadata.

Maps what the host knows about a model file (filename, declared class id,
display name, standard resolution) to an architecture tag such as
``flux``, ``sdxl-turbo`` or ``wan-2.2``. The tag drives every downstream
branch: required components, sampler defaults, cache mode, video flags.

Classification is an ordered table of (predicate, tag) rules. Derived or
distilled families are listed before their generic parent, otherwise
``sdxl-turbo`` would be caught by the ``sdxl`` rule. The table order is the
precedence; tests pin it down rule by rule.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import ClassificationAmbiguity

logger = logging.getLogger(__name__)

UNKNOWN = "unknown"


@dataclass(frozen=True)
class ModelMetadata:
    """What the host model registry tells us about a model."""

    filename: str = ""          # without extension
    class_id: str = ""          # host-declared model class, e.g. "stable-diffusion-xl-v1-base"
    name: str = ""              # display name
    standard_width: int = 0
    standard_height: int = 0

    @classmethod
    def from_path(
        cls,
        path: str | Path,
        class_id: str = "",
        name: Optional[str] = None,
        resolution: Optional[Tuple[int, int]] = None,
    ) -> "ModelMetadata":
        """Build metadata from a model file path."""
        p = Path(path)
        width, height = resolution or (0, 0)
        return cls(
            filename=p.stem,
            class_id=class_id or "",
            name=name if name is not None else p.name,
            standard_width=width,
            standard_height=height,
        )


@dataclass(frozen=True)
class _Signals:
    """Lower-cased view of the metadata the rules test against."""

    filename: str
    class_id: str
    name: str
    width: int
    height: int

    @classmethod
    def of(cls, metadata: ModelMetadata) -> "_Signals":
        return cls(
            filename=(metadata.filename or "").lower(),
            class_id=(metadata.class_id or "").lower(),
            name=(metadata.name or "").lower(),
            width=metadata.standard_width or 0,
            height=metadata.standard_height or 0,
        )

    def any_field(self, *needles: str) -> bool:
        return any(n in s for n in needles for s in (self.filename, self.name, self.class_id))

    def file_or_name(self, *needles: str) -> bool:
        return any(n in s for n in needles for s in (self.filename, self.name))

    def class_has(self, *needles: str) -> bool:
        return any(n in self.class_id for n in needles)


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table."""

    tag: str
    predicate: Callable[[_Signals], bool]
    description: str


def _is_wan(s: _Signals) -> bool:
    return s.any_field("wan")


def _is_sdxl(s: _Signals) -> bool:
    return s.class_has("sdxl") or "sdxl" in s.filename


def _is_sd15(s: _Signals) -> bool:
    return s.class_has("stable-diffusion-v1", "stable-diffusion-1")


CLASSIFICATION_RULES: List[ClassificationRule] = [
    ClassificationRule(
        "flux-schnell",
        lambda s: s.any_field("flux") and s.file_or_name("schnell"),
        "flux + schnell (4-step distilled)",
    ),
    ClassificationRule("flux", lambda s: s.any_field("flux"), "flux keyword"),
    ClassificationRule("sd3", lambda s: s.any_field("sd3"), "sd3 / sd3.5 keyword"),
    ClassificationRule("z-image", lambda s: s.any_field("z_image", "z-image"), "z-image keyword"),
    ClassificationRule(
        "wan-2.2",
        lambda s: _is_wan(s) and s.file_or_name("2.2", "2_2"),
        "wan + version 2.2",
    ),
    ClassificationRule(
        "wan-2.1",
        lambda s: _is_wan(s) and s.file_or_name("2.1", "2_1"),
        "wan + version 2.1",
    ),
    ClassificationRule("wan", _is_wan, "wan keyword"),
    ClassificationRule(
        "video",
        lambda s: (
            s.class_has("-i2v", "image2video", "-ti2v", "-flf2v", "video2world")
            or any(k in s.filename for k in ("i2v", "ti2v", "flf2v"))
        ),
        "image-to-video class or filename marker",
    ),
    ClassificationRule(
        "sdxl-turbo",
        lambda s: _is_sdxl(s) and s.file_or_name("turbo"),
        "sdxl + turbo",
    ),
    ClassificationRule("sdxl", _is_sdxl, "sdxl class or filename"),
    ClassificationRule(
        "sd2",
        lambda s: s.class_has("stable-diffusion-v2", "stable-diffusion-2"),
        "stable-diffusion v2 class",
    ),
    ClassificationRule(
        "sd15-turbo",
        lambda s: _is_sd15(s) and s.file_or_name("turbo"),
        "stable-diffusion v1 class + turbo",
    ),
    ClassificationRule("sd15", _is_sd15, "stable-diffusion v1 class"),
    ClassificationRule("lcm", lambda s: s.file_or_name("lcm"), "lcm keyword"),
    ClassificationRule(
        "sdxl",
        lambda s: s.width == 1024 and s.height == 1024,
        "1024x1024 standard resolution",
    ),
    ClassificationRule(
        "sd15",
        lambda s: s.width == 512 and s.height == 512,
        "512x512 standard resolution",
    ),
]


# Derived tag -> family sharing its components and defaults
BASE_FAMILY: Dict[str, str] = {
    "flux-schnell": "flux",
    "sdxl-turbo": "sdxl",
    "sd15-turbo": "sd15",
    "wan-2.1": "wan",
    "wan-2.2": "wan",
}

DIT_FAMILIES = frozenset({"flux", "sd3", "z-image", "wan"})
VIDEO_FAMILIES = frozenset({"wan", "video"})
DISTILLED_TAGS = frozenset({"flux-schnell", "sdxl-turbo", "sd15-turbo", "lcm"})

_FEATURES: Dict[str, List[str]] = {
    "flux-schnell": ["flux", "lora", "controlnet"],
    "flux": ["flux", "flux-dev", "lora", "controlnet"],
    "sd3": ["sd3", "sd3.5", "lora"],
    "sdxl": ["sdxl", "lora", "controlnet"],
    "sdxl-turbo": ["sdxl", "lora", "controlnet", "turbo"],
    "sd15": ["lora", "controlnet"],
    "sd15-turbo": ["lora", "controlnet", "turbo"],
    "sd2": ["lora", "controlnet"],
    "lcm": ["lcm", "lora", "controlnet"],
    "z-image": ["z-image", "lora"],
    "wan": ["video", "wan", "txt2vid", "img2vid"],
    "wan-2.1": ["video", "wan", "txt2vid", "img2vid", "wan-2.1"],
    "wan-2.2": ["video", "wan", "txt2vid", "img2vid", "wan-2.2"],
    "video": ["video", "img2vid"],
}
_DEFAULT_FEATURES = ["lora", "controlnet"]


def base_family(tag: str) -> str:
    """Collapse a derived tag onto the family it inherits components from."""
    return BASE_FAMILY.get(tag, tag)


def is_dit(tag: str) -> bool:
    return base_family(tag) in DIT_FAMILIES


def is_video(tag: str) -> bool:
    return base_family(tag) in VIDEO_FAMILIES


def is_distilled(tag: str) -> bool:
    return tag in DISTILLED_TAGS


def features_for(tag: str) -> List[str]:
    """Host-facing feature flags for an architecture tag."""
    return list(_FEATURES.get(tag, _DEFAULT_FEATURES))


@dataclass
class ClassificationResult:
    """Tag plus the rule that produced it (for diagnostics)."""

    tag: str = UNKNOWN
    matched_rule: Optional[str] = None
    features: List[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            f"Architecture: {self.tag}",
            f"  Matched: {self.matched_rule or 'no rule (generic default)'}",
            f"  Features: {', '.join(self.features) or '-'}",
            f"  DiT: {'✓' if is_dit(self.tag) else '✗'}  Video: {'✓' if is_video(self.tag) else '✗'}",
        ]
        return "\n".join(lines)


class ArchitectureClassifier:
    """Classifies model metadata against an ordered rule table."""

    def __init__(self, rules: Optional[List[ClassificationRule]] = None):
        self.rules = list(rules if rules is not None else CLASSIFICATION_RULES)

    def match(self, metadata: ModelMetadata) -> ClassificationResult:
        """Return the first matching rule's tag.

        Raises:
            ClassificationAmbiguity: No rule matched.
        """
        signals = _Signals.of(metadata)
        for rule in self.rules:
            if rule.predicate(signals):
                return ClassificationResult(
                    tag=rule.tag,
                    matched_rule=rule.description,
                    features=features_for(rule.tag),
                )
        raise ClassificationAmbiguity(
            f"No architecture rule matched filename={signals.filename!r} "
            f"class={signals.class_id!r} name={signals.name!r}"
        )

    def explain(self, metadata: ModelMetadata) -> ClassificationResult:
        """Total variant of :meth:`match`; falls back to ``unknown``."""
        try:
            return self.match(metadata)
        except ClassificationAmbiguity as e:
            logger.debug("%s; using generic defaults", e)
            return ClassificationResult(tag=UNKNOWN, features=features_for(UNKNOWN))

    def classify(self, metadata: ModelMetadata) -> str:
        return self.explain(metadata).tag


_classifier: Optional[ArchitectureClassifier] = None


def get_classifier() -> ArchitectureClassifier:
    """Get global classifier instance."""
    global _classifier
    if _classifier is None:
        _classifier = ArchitectureClassifier()
    return _classifier


def classify(metadata: ModelMetadata) -> str:
    """Convenience function to classify model metadata."""
    return get_classifier().classify(metadata)
