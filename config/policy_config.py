"""Memory-fit policy tuning values.

Empirical thresholds from stable-diffusion.cpp runs on consumer GPUs.
Override per machine via ``SDCPP_POLICY='{"runtime_factor": 1.7}'`` or a
JSON file.
"""
from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, model_validator

GB = 1024 ** 3
MB = 1024 ** 2


class MemoryPolicyConfig(BaseModel):
    """Thresholds for the graduated memory-mitigation ladder."""

    # Working-set estimate
    runtime_factor: float = Field(default=1.5, ge=1.0)
    safety_margin: float = Field(default=0.95, gt=0.0, le=1.0)
    activation_bytes_per_megapixel: int = Field(default=100 * MB, ge=0)

    # Accelerator size classes
    aggressive_below_bytes: int = Field(default=6 * GB, ge=0)
    comfortable_from_bytes: int = Field(default=12 * GB, ge=0)

    # Fit-ratio bands (inclusive upper bounds)
    no_mitigation_max: float = Field(default=0.70, gt=0.0)
    tiling_max: float = Field(default=0.85, gt=0.0)
    clip_offload_max: float = Field(default=0.95, gt=0.0)
    vae_offload_max: float = Field(default=1.05, gt=0.0)

    model_config = {"extra": "forbid"}  # Catch typos in tuning files

    @model_validator(mode="after")
    def validate_bands(self) -> "MemoryPolicyConfig":
        bands = [self.no_mitigation_max, self.tiling_max, self.clip_offload_max, self.vae_offload_max]
        if bands != sorted(bands):
            raise ValueError(f"fit-ratio bands must be non-decreasing, got {bands}")
        if self.aggressive_below_bytes > self.comfortable_from_bytes:
            raise ValueError("aggressive_below_bytes cannot exceed comfortable_from_bytes")
        return self

    def to_dict(self) -> dict:
        return self.model_dump()

    @classmethod
    def from_json(cls, path: Path) -> "MemoryPolicyConfig":
        with open(path, "r") as f:
            return cls(**json.load(f))

    def save_json(self, path: Path) -> None:
        with open(path, "w") as f:
            json.dump(self.model_dump(), f, indent=2)
