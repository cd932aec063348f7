"""Memory-Fit Policy - Graduated memory mitigation for a generation job.

Decision Logic:
1. Sum the sizes of every artifact the engine will load
2. Scale by the runtime overhead factor and add resolution overhead
   (latent tensor + per-megapixel activation estimate)
3. fit_ratio = estimate / (free accelerator memory x safety margin)
4. Walk the mitigation ladder; each rung enables a superset of the
   toggles of the rung below it
5. Merge onto the user's own toggles without ever weakening them

The policy never raises: a host without an accelerator gets ``no_gpu`` and
an internal failure gets ``error``, both with no toggles.
"""
from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Union

from config.policy_config import MemoryPolicyConfig

from ..errors import PolicyEvaluationFailure
from .hardware_profiler import AcceleratorMemoryStats

logger = logging.getLogger(__name__)

GB = 1024 ** 3
MB = 1024 ** 2

# Ordered from least to most disruptive
TOGGLES = ("vae_tiling", "clip_on_cpu", "vae_on_cpu", "offload_to_cpu")


@dataclass
class MemoryPolicyDecision:
    """Outcome of one policy evaluation."""

    toggles: Dict[str, bool] = field(default_factory=lambda: {t: False for t in TOGGLES})
    fit_ratio: float = 0.0
    decision_class: str = "unknown"
    rationale: List[str] = field(default_factory=list)

    # Inputs kept for diagnostics
    estimated_bytes: int = 0
    free_bytes: int = 0
    total_bytes: int = 0

    @property
    def enabled(self) -> List[str]:
        """Names of the toggles this decision turns on."""
        return [t for t in TOGGLES if self.toggles.get(t)]

    def apply_to(self, user_toggles: Mapping[str, Optional[bool]]) -> Dict[str, bool]:
        """Merge policy toggles onto user-set toggles.

        A user ``True`` always survives. A user ``False`` or an unset value
        takes the policy's recommendation.

        Args:
            user_toggles: Toggle name -> user value (None = not set).

        Returns:
            Effective value for every toggle.
        """
        merged: Dict[str, bool] = {}
        for name in TOGGLES:
            user_value = user_toggles.get(name)
            policy_value = bool(self.toggles.get(name, False))
            if user_value is True:
                merged[name] = True
            else:
                merged[name] = policy_value
        return merged

    def summary(self) -> str:
        ratio = "inf" if math.isinf(self.fit_ratio) else f"{self.fit_ratio:.2f}"
        lines = [
            f"Memory Policy: {self.decision_class}",
            f"  Fit ratio: {ratio}",
            f"  Estimated: {self.estimated_bytes / GB:.2f} GB, "
            f"Free: {self.free_bytes / GB:.2f} GB, Total: {self.total_bytes / GB:.2f} GB",
            f"  Toggles: {', '.join(self.enabled) or 'none'}",
        ]
        if self.rationale:
            lines.append("  Rationale:")
            lines.extend(f"    • {reason}" for reason in self.rationale)
        return "\n".join(lines)


def _toggles_up_to(rung: int) -> Dict[str, bool]:
    return {name: i < rung for i, name in enumerate(TOGGLES)}


SizeSource = Union[int, str, Path, None]


def artifact_size(source: SizeSource) -> int:
    """File size in bytes; 0 for a missing path or None."""
    if source is None:
        return 0
    if isinstance(source, int):
        return source
    try:
        return os.path.getsize(source)
    except OSError:
        return 0


class MemoryPolicyEvaluator:
    """Evaluates whether a job fits in accelerator memory."""

    def __init__(self, config: Optional[MemoryPolicyConfig] = None):
        self.config = config or MemoryPolicyConfig()

    def resolution_overhead(self, width: int, height: int, batch_size: int = 1) -> int:
        """Latent tensor bytes plus the per-megapixel activation estimate."""
        batch_size = max(1, batch_size)
        latent = (width // 8) * (height // 8) * 4 * 2 * batch_size
        megapixels = (width * height) / (1024.0 * 1024.0)
        activations = int(megapixels * self.config.activation_bytes_per_megapixel) * batch_size
        return latent + activations

    def estimate(self, artifact_sizes: Iterable[SizeSource], width: int, height: int, batch_size: int = 1) -> int:
        """Estimated working set in bytes."""
        sizes = [artifact_size(s) for s in artifact_sizes]
        if any(s < 0 for s in sizes):
            raise PolicyEvaluationFailure(f"Negative artifact size in {sizes}")
        footprint = sum(sizes)
        return int(footprint * self.config.runtime_factor) + self.resolution_overhead(width, height, batch_size)

    def evaluate(
        self,
        stats: AcceleratorMemoryStats,
        artifact_sizes: Iterable[SizeSource],
        width: int,
        height: int,
        batch_size: int = 1,
    ) -> MemoryPolicyDecision:
        """Pick memory-saving toggles for a job.

        Args:
            stats: Accelerator memory measurement.
            artifact_sizes: Byte counts or paths of every artifact the engine loads.
            width: Output width in pixels.
            height: Output height in pixels.
            batch_size: Images generated per run.

        Returns:
            Policy decision. Never raises.
        """
        decision = MemoryPolicyDecision()
        try:
            if stats is None or not stats.has_accelerator:
                decision.decision_class = "no_gpu"
                decision.rationale.append("No accelerator detected, skipping memory policy")
                return decision

            decision.total_bytes = stats.total_bytes
            decision.free_bytes = stats.free_bytes
            decision.estimated_bytes = self.estimate(artifact_sizes, width, height, batch_size)
            if stats.free_bytes > 0:
                decision.fit_ratio = decision.estimated_bytes / (stats.free_bytes * self.config.safety_margin)
            else:
                decision.fit_ratio = math.inf

            self._walk_ladder(decision)
        except (PolicyEvaluationFailure, ArithmeticError, TypeError, ValueError) as e:
            logger.warning("Error evaluating memory policy: %s", e)
            decision = MemoryPolicyDecision(decision_class="error")
            decision.rationale.append(f"Memory policy evaluation failed: {e}")
            return decision

        logger.info(
            "Memory policy: %s (fit ratio %.2f, estimated %.2f GB, free %.2f GB)",
            decision.decision_class,
            decision.fit_ratio,
            decision.estimated_bytes / GB,
            decision.free_bytes / GB,
        )
        for reason in decision.rationale:
            logger.debug("  - %s", reason)
        return decision

    def _walk_ladder(self, decision: MemoryPolicyDecision) -> None:
        cfg = self.config
        ratio = decision.fit_ratio
        total_gb = decision.total_bytes / GB

        if decision.total_bytes < cfg.aggressive_below_bytes:
            decision.toggles = _toggles_up_to(len(TOGGLES))
            decision.decision_class = "aggressive_low_vram"
            decision.rationale.append(
                f"Accelerator has only {total_gb:.1f} GB total "
                f"(< {cfg.aggressive_below_bytes / GB:.1f} GB threshold)"
            )
            decision.rationale.append("Enabling every mitigation for maximum memory savings")
            return

        if decision.total_bytes >= cfg.comfortable_from_bytes and ratio <= cfg.no_mitigation_max:
            decision.decision_class = "comfortable_fit"
            decision.rationale.append(
                f"Accelerator has {total_gb:.1f} GB and the job fits comfortably (ratio: {ratio:.2f})"
            )
            return

        ladder = [
            (cfg.no_mitigation_max, 0, "fits_no_offload", "Job fits with good margin"),
            (cfg.tiling_max, 1, "tight_fit_tiling", "Job fits but tight; tiled VAE decode"),
            (cfg.clip_offload_max, 2, "moderate_pressure", "Approaching limit; text encoders to CPU"),
            (cfg.vae_offload_max, 3, "high_pressure", "At the limit; VAE to CPU"),
        ]
        for upper, rung, name, reason in ladder:
            if ratio <= upper:
                decision.toggles = _toggles_up_to(rung)
                decision.decision_class = name
                decision.rationale.append(f"{reason} (ratio: {ratio:.2f} <= {upper:.2f})")
                return

        decision.toggles = _toggles_up_to(len(TOGGLES))
        decision.decision_class = "over_capacity"
        decision.rationale.append(
            f"Job exceeds available memory (ratio: {ratio:.2f} > {cfg.vae_offload_max:.2f})"
        )
        decision.rationale.append(
            f"Estimated: {decision.estimated_bytes / GB:.2f} GB, Free: {decision.free_bytes / GB:.2f} GB"
        )
        decision.rationale.append("Enabling full model offload to prevent OOM")
