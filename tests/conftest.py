"""Pytest configuration and shared fixtures for SD.cpp backend tests.

This file provides reusable fixtures and test configuration that can be used
across all test modules.
"""
from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import List

import pytest
import torch
from safetensors.torch import save_file

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from config.config import AppConfig
from sdcpp_backend.orchestration.hardware_profiler import AcceleratorMemoryStats

GB = 1024 ** 3

FAKE_ENGINE = textwrap.dedent(
    '''
    """Stand-in for sd-cli: prints progress, writes outputs, obeys FAKE_ENGINE_MODE."""
    import json
    import os
    import sys
    import time

    args = sys.argv[1:]


    def value(flag, default=None):
        return args[args.index(flag) + 1] if flag in args else default


    record = os.environ.get("FAKE_ENGINE_ARGV")
    if record:
        with open(record, "w") as f:
            json.dump({"argv": args, "cwd": os.getcwd()}, f)

    mode = os.environ.get("FAKE_ENGINE_MODE", "ok")
    if mode == "hang":
        print("loading model", flush=True)
        time.sleep(60)
        sys.exit(0)
    if mode == "fail":
        sys.stderr.write("\\x1b[31merror: failed to load model\\x1b[0m\\n")
        sys.exit(3)

    if "convert" in args:
        with open(value("-o"), "wb") as f:
            if mode == "partial":
                f.write(b"PART")
                f.flush()
                time.sleep(60)
            f.write(b"GGUF")
        sys.exit(0)

    steps = int(value("--steps", "4"))
    for i in range(1, steps + 1):
        sys.stdout.write("\\r  |%s| %d/%d - 0.10s/it" % ("=" * i, i, steps))
        sys.stdout.flush()
    sys.stdout.write("\\n")
    if mode == "empty":
        sys.exit(0)

    preview = value("--preview-path")
    if preview:
        from PIL import Image
        Image.new("RGB", (8, 8), "red").save(preview)
        time.sleep(1.0)

    output = value("--output")
    for i in range(int(value("--batch-count", "1"))):
        with open(output % i if "%" in output else output, "wb") as f:
            f.write(b"\\x89PNG\\r\\n\\x1a\\n" + bytes([i]) * 16)
    '''
)


def write_safetensors(path: Path, numel: int = 4) -> Path:
    """Write a tiny but valid safetensors file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    save_file({"weight": torch.zeros(numel)}, str(path))
    return path


def safetensors_bytes(tmp_path: Path, numel: int = 4) -> bytes:
    """Bytes of a valid safetensors file (for mocked downloads)."""
    return write_safetensors(tmp_path / "payload.safetensors", numel).read_bytes()


# ============================================================================
# Function-level Fixtures (run once per test function)
# ============================================================================

@pytest.fixture
def models_root(tmp_path: Path) -> Path:
    """Empty models root."""
    root = tmp_path / "Models"
    root.mkdir()
    return root


@pytest.fixture
def model_tree(models_root: Path) -> Path:
    """Models root with an SD1.5 checkpoint, a flux model and its components."""
    write_safetensors(models_root / "Stable-Diffusion" / "v1-5-pruned-emaonly.safetensors")
    write_safetensors(models_root / "diffusion_models" / "flux1-schnell.safetensors")
    write_safetensors(models_root / "VAE" / "Flux" / "ae.safetensors")
    write_safetensors(models_root / "clip" / "clip_l.safetensors")
    write_safetensors(models_root / "clip" / "t5xxl_fp8_e4m3fn.safetensors")
    return models_root


@pytest.fixture
def app_config(tmp_path: Path, models_root: Path) -> AppConfig:
    """Isolated config: cpu device, temp roots, no .env."""
    return AppConfig(
        _env_file=None,
        device="cpu",
        models_root=str(models_root),
        dlbackend_root=str(tmp_path / "dlbackend"),
        working_directory=str(tmp_path / "work"),
        process_timeout_seconds=30,
        kill_grace_seconds=1,
        auto_update=False,
        auto_download=False,
    )


@pytest.fixture
def fake_engine(tmp_path: Path) -> List[str]:
    """Argv prefix running the fake engine with the current interpreter."""
    script = tmp_path / "fake_sd_cli.py"
    script.write_text(FAKE_ENGINE)
    return [sys.executable, str(script)]


@pytest.fixture
def gpu_stats():
    """Factory for accelerator stats with the given free/total GB."""
    def _make(free_gb: float, total_gb: float = 24.0) -> AcceleratorMemoryStats:
        return AcceleratorMemoryStats(
            has_accelerator=True,
            device_name="Fake GPU",
            device_index=0,
            total_bytes=int(total_gb * GB),
            free_bytes=int(free_gb * GB),
        )
    return _make


# ============================================================================
# Markers
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line(
        "markers", "unit: fast tests without subprocesses or network"
    )
    config.addinivalue_line(
        "markers", "integration: tests that launch the fake engine subprocess"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow"
    )
    config.addinivalue_line(
        "markers", "requires_gpu: mark test as requiring GPU acceleration"
    )
    config.addinivalue_line(
        "markers", "online: mark test as requiring network/API access"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers based on test names."""
    skip_online = pytest.mark.skip(reason="Online tests skipped by default. Use -m online to run.")

    for item in items:
        # Auto-mark slow tests
        if "timeout" in item.nodeid.lower() or "slow" in item.nodeid.lower():
            item.add_marker(pytest.mark.slow)

        # Skip online tests by default unless explicitly requested
        if "online" in item.keywords:
            if not config.getoption("-m") or "online" not in config.getoption("-m"):
                item.add_marker(skip_online)


# ============================================================================
# Skip Conditions
# ============================================================================

skip_if_no_gpu = pytest.mark.skipif(
    not torch.cuda.is_available(),
    reason="CUDA not available"
)
