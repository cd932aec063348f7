"""Orchestration Layer - Decisions made before the engine runs.

- Architecture classification (model family from metadata)
- Hardware profiling (accelerator memory, host CPU tier)
- Memory-fit policy (memory-saving toggles)
"""
from .architecture_classifier import (
    ArchitectureClassifier,
    ClassificationResult,
    ModelMetadata,
    UNKNOWN,
    base_family,
    classify,
    features_for,
    get_classifier,
    is_dit,
    is_distilled,
    is_video,
)
from .hardware_profiler import AcceleratorMemoryStats, HardwareProfiler, HostProfile, get_profiler
from .memory_policy import MemoryPolicyDecision, MemoryPolicyEvaluator

__all__ = [
    # Architecture Classifier
    "ArchitectureClassifier",
    "ClassificationResult",
    "ModelMetadata",
    "UNKNOWN",
    "base_family",
    "classify",
    "features_for",
    "get_classifier",
    "is_dit",
    "is_distilled",
    "is_video",
    # Hardware Profiler
    "AcceleratorMemoryStats",
    "HardwareProfiler",
    "HostProfile",
    "get_profiler",
    # Memory Policy
    "MemoryPolicyDecision",
    "MemoryPolicyEvaluator",
]
