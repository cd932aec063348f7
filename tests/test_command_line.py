"""Tests for argv construction and progress parsing."""
from __future__ import annotations

from pathlib import Path

import pytest

from sdcpp_backend.compilation.job_descriptor import JobDescriptorBuilder, JobParam
from sdcpp_backend.execution.command_line import (
    CPU_DEVICE_FLAGS,
    FLAGS,
    EngineCapabilities,
    build_command_line,
    build_environment,
    probe_capabilities,
)
from sdcpp_backend.execution.progress_parser import ProgressLineParser, ProgressTracker
from utils.logging_setup import sanitize_log


def basic_descriptor(**extra):
    b = (
        JobDescriptorBuilder()
        .set(JobParam.MODEL, "/models/sd15.safetensors")
        .set(JobParam.PROMPT, "a cat")
        .set(JobParam.CFG_SCALE, 7.0)
        .set(JobParam.STEPS, 20)
        .set(JobParam.OUTPUT, "/tmp/out/generated_%03d.png")
    )
    for key, value in extra.items():
        b.set(JobParam.from_key(key), value)
    return b


@pytest.mark.unit
class TestBuildCommandLine:
    """Tests for descriptor serialization."""

    def test_every_param_has_a_flag(self):
        """Test the flag table covers the whole parameter enum."""
        assert set(FLAGS) == set(JobParam)

    def test_basic_argv(self):
        """Test values serialize in descriptor order after the executable."""
        argv = build_command_line(Path("/opt/sd-cli"), basic_descriptor().build(), device="cuda")
        assert argv == [
            "/opt/sd-cli",
            "--model", "/models/sd15.safetensors",
            "--prompt", "a cat",
            "--steps", "20",
            "--cfg-scale", "7",
            "--output", "/tmp/out/generated_%03d.png",
        ]

    def test_argv_prefix(self):
        """Test a list executable is used as an argv prefix."""
        argv = build_command_line(["python", "engine.py"], basic_descriptor().build(), device="cuda")
        assert argv[:3] == ["python", "engine.py", "--model"]

    def test_bool_flags(self):
        """Test true booleans are bare flags and false ones vanish."""
        d = basic_descriptor(vae_tiling=True, clip_on_cpu=False, mmap=True).build()
        argv = build_command_line(Path("sd"), d, device="cuda")
        assert "--vae-tiling" in argv
        assert "--mmap" in argv
        assert "--clip-on-cpu" not in argv
        assert "True" not in argv and "False" not in argv

    def test_cpu_flags_appended_once(self):
        """Test CPU runs get the CPU-only flags without duplicates."""
        d = basic_descriptor(vae_tiling=True).build()
        argv = build_command_line(Path("sd"), d, device="cpu")
        for flag in CPU_DEVICE_FLAGS:
            assert argv.count(flag) == 1
        assert argv[-2:] == ["--vae-on-cpu", "--clip-on-cpu"]

    def test_extra_args_last(self):
        """Test pass-through args follow every generated flag."""
        d = basic_descriptor().extend_args(["--foo", "bar"]).build()
        argv = build_command_line(Path("sd"), d, device="cpu")
        assert argv[-2:] == ["--foo", "bar"]

    def test_preview_dropped_without_support(self):
        """Test preview flags are omitted when the engine lacks them."""
        d = basic_descriptor(preview="tae", preview_path="/tmp/out/preview.png", preview_interval=1).build()
        assert "--preview" not in build_command_line(Path("sd"), d, capabilities=EngineCapabilities(preview=False))
        argv = build_command_line(Path("sd"), d, capabilities=EngineCapabilities(preview=True))
        assert argv[argv.index("--preview") + 1] == "tae"
        assert "--preview-path" in argv

    def test_output_dropped_without_support(self):
        """Test --output is omitted for engines without it."""
        argv = build_command_line(Path("sd"), basic_descriptor().build(), capabilities=EngineCapabilities(output=False))
        assert "--output" not in argv

    def test_float_formatting(self):
        """Test floats are written compactly."""
        argv = build_command_line(Path("sd"), basic_descriptor(strength=0.75, guidance=3.5).build(), device="cuda")
        assert argv[argv.index("--strength") + 1] == "0.75"
        assert argv[argv.index("--guidance") + 1] == "3.5"


@pytest.mark.unit
class TestEnvironment:
    """Tests for the process environment."""

    def test_cpu_disables_gpu_backends(self):
        """Test CPU runs turn GPU backends off."""
        env = build_environment("cpu", base={"PATH": "/bin"})
        assert env["GGML_USE_CUDA"] == "0"
        assert env["GGML_USE_VULKAN"] == "0"
        assert env["PATH"] == "/bin"

    def test_gpu_env_untouched(self):
        """Test GPU runs inherit the environment as is."""
        assert build_environment("cuda", base={"PATH": "/bin"}) == {"PATH": "/bin"}

    def test_probe_missing_executable(self, tmp_path):
        """Test probing a missing executable falls back to defaults."""
        caps = probe_capabilities(tmp_path / "does-not-exist")
        assert caps == EngineCapabilities()


@pytest.mark.unit
class TestProgressParser:
    """Tests for progress marker extraction."""

    @pytest.mark.parametrize(
        "line,expected",
        [
            ("|==========>          | 7/20 - 1.52s/it", (7, 20)),
            ("  |====| 20/20 - 0.10s/it", (20, 20)),
            ("[INFO ] sampling completed [1/1]", (1, 1)),
            ("1/4", (1, 4)),
        ],
    )
    def test_markers(self, line, expected):
        """Test well-formed markers are found."""
        marker = ProgressLineParser().parse(line)
        assert (marker.current, marker.total) == expected

    @pytest.mark.parametrize(
        "line",
        [
            "",
            "loading model from /models/sd15.safetensors",
            "speed 1.52s/it",
            "step 5/0",
            "step 21/20",
            "date 2024/05/01",
        ],
    )
    def test_non_markers(self, line):
        """Test lines without a valid marker yield nothing."""
        assert ProgressLineParser().parse(line) is None

    def test_last_marker_wins(self):
        """Test the last marker on a line is used."""
        marker = ProgressLineParser().parse("batch 1/2 step 3/20")
        assert (marker.current, marker.total) == (3, 20)

    def test_tracker_monotonic(self):
        """Test progress never goes backwards."""
        tracker = ProgressTracker()
        assert tracker.feed("5/10") == 0.5
        assert tracker.feed("3/10") is None
        assert tracker.feed("5/10") is None
        assert tracker.value == 0.5
        assert tracker.feed("10/10") == 1.0

    def test_sanitized_engine_output(self):
        """Test ANSI colors and carriage returns are normalized before parsing."""
        raw = "\x1b[32m  |===| 2/4\x1b[0m\r  |=====| 3/4"
        lines = sanitize_log(raw).split("\n")
        assert lines[0].strip() == "|===| 2/4"
        tracker = ProgressTracker()
        values = [tracker.feed(line) for line in lines]
        assert values == [0.5, 0.75]
