"""Hardware Profiler - Accelerator and host capability detection.

Detects what the memory policy and the binary provisioner need to know:
- Accelerator: presence, name, total and currently free memory
- CPU: core count and SIMD tier (picks the right prebuilt CPU binary)
- Memory: total and available RAM

Free accelerator memory is volatile, so it is re-read on every call.
Static facts (CPU tier, core count) are profiled once per process.
"""
from __future__ import annotations

import logging
import platform
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import psutil
import torch

logger = logging.getLogger(__name__)


@dataclass
class AcceleratorMemoryStats:
    """Point-in-time accelerator memory measurement."""

    has_accelerator: bool = False
    device_name: str = ""
    device_index: int = 0
    total_bytes: int = 0
    free_bytes: int = 0

    @property
    def total_gb(self) -> float:
        return self.total_bytes / (1024 ** 3)

    @property
    def free_gb(self) -> float:
        return self.free_bytes / (1024 ** 3)

    @classmethod
    def none(cls) -> "AcceleratorMemoryStats":
        """Stats for a host with no usable accelerator."""
        return cls(has_accelerator=False)


@dataclass
class HostProfile:
    """Static host facts."""

    os_name: str
    machine: str
    physical_cores: int
    logical_cores: int
    cpu_tier: str               # "avx512", "avx2", "avx" or "noavx"
    total_ram_bytes: int
    available_ram_bytes: int
    torch_version: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        lines = [
            "Host Profile",
            f"  OS: {self.os_name} ({self.machine})",
            f"  CPU: {self.physical_cores}c/{self.logical_cores}t, tier {self.cpu_tier}",
            f"  RAM: {self.available_ram_bytes / 1024**3:.1f}/{self.total_ram_bytes / 1024**3:.1f} GB",
            f"  PyTorch: {self.torch_version}",
        ]
        return "\n".join(lines)


def _cpu_tier() -> str:
    """Map torch's detected CPU capability onto a prebuilt-binary tier."""
    try:
        capability = torch.backends.cpu.get_cpu_capability().upper()
    except (AttributeError, RuntimeError):
        return "avx2" if platform.machine().lower() in ("x86_64", "amd64") else "noavx"
    if "AVX512" in capability:
        return "avx512"
    if "AVX2" in capability:
        return "avx2"
    if "AVX" in capability:
        return "avx"
    return "noavx"


class HardwareProfiler:
    """Reads accelerator memory and host capabilities."""

    def __init__(self):
        self._host: Optional[HostProfile] = None

    def host_profile(self, force_refresh: bool = False) -> HostProfile:
        """Get (cached) static host profile."""
        if self._host is not None and not force_refresh:
            return self._host
        vm = psutil.virtual_memory()
        self._host = HostProfile(
            os_name=platform.system(),
            machine=platform.machine(),
            physical_cores=psutil.cpu_count(logical=False) or 1,
            logical_cores=psutil.cpu_count(logical=True) or 1,
            cpu_tier=_cpu_tier(),
            total_ram_bytes=vm.total,
            available_ram_bytes=vm.available,
            torch_version=torch.__version__,
        )
        return self._host

    def accelerator_stats(self, device: str = "cuda", index: int = 0) -> AcceleratorMemoryStats:
        """Measure free/total memory of the accelerator the engine will use.

        Args:
            device: Configured engine device ("cpu", "cuda", "vulkan").
            index: Accelerator index.

        Returns:
            Stats with ``has_accelerator=False`` when no accelerator is usable.
        """
        if device == "cpu":
            return AcceleratorMemoryStats.none()

        # Vulkan has no torch-side probe; CUDA stats are used when present
        try:
            if not torch.cuda.is_available() or index >= torch.cuda.device_count():
                logger.debug("No CUDA device visible for memory probing (device=%s)", device)
                return AcceleratorMemoryStats.none()
            free_bytes, total_bytes = torch.cuda.mem_get_info(index)
            device_name = torch.cuda.get_device_name(index)
        except (RuntimeError, AssertionError) as e:
            logger.warning("Accelerator memory probe failed, continuing without memory policy: %s", e)
            return AcceleratorMemoryStats.none()

        return AcceleratorMemoryStats(
            has_accelerator=True,
            device_name=device_name,
            device_index=index,
            total_bytes=int(total_bytes),
            free_bytes=int(free_bytes),
        )

    def default_threads(self) -> int:
        """Thread count used when the configured count is 0 (auto)."""
        return self.host_profile().physical_cores


_profiler: Optional[HardwareProfiler] = None


def get_profiler() -> HardwareProfiler:
    """Get global profiler instance."""
    global _profiler
    if _profiler is None:
        _profiler = HardwareProfiler()
    return _profiler
