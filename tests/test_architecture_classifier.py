"""Tests for architecture classification."""
from __future__ import annotations

import pytest

from sdcpp_backend.errors import ClassificationAmbiguity
from sdcpp_backend.orchestration.architecture_classifier import (
    UNKNOWN,
    ArchitectureClassifier,
    ModelMetadata,
    base_family,
    classify,
    features_for,
    is_dit,
    is_distilled,
    is_video,
)


@pytest.mark.unit
class TestClassificationRules:
    """Tests for the ordered rule table."""

    @pytest.mark.parametrize(
        "filename,expected",
        [
            ("flux1-dev-Q8_0", "flux"),
            ("flux1-schnell-fp8", "flux-schnell"),
            ("sd3.5_large", "sd3"),
            ("z_image_turbo_bf16", "z-image"),
            ("wan2.2_ti2v_5B_fp16", "wan-2.2"),
            ("Wan2.1-I2V-14B-480P", "wan-2.1"),
            ("wan_t2v", "wan"),
            ("ltx-i2v-distilled", "video"),
            ("sdxl_turbo_1.0", "sdxl-turbo"),
            ("sd_xl_base_1.0_sdxl", "sdxl"),
            ("dreamshaper_lcm_v7", "lcm"),
        ],
    )
    def test_filename_rules(self, filename, expected):
        """Test families detected from the filename alone."""
        assert classify(ModelMetadata(filename=filename)) == expected

    @pytest.mark.parametrize(
        "class_id,expected",
        [
            ("stable-diffusion-v1", "sd15"),
            ("stable-diffusion-v2-768-v", "sd2"),
            ("stable-diffusion-xl-v1-base-sdxl", "sdxl"),
            ("wan-2_1-image2video", "wan-2.1"),
            ("cosmos-predict2-video2world", "video"),
        ],
    )
    def test_class_id_rules(self, class_id, expected):
        """Test families detected from the host model class."""
        assert classify(ModelMetadata(filename="model", class_id=class_id)) == expected

    def test_sd15_turbo_needs_class_and_name(self):
        """Test sd15-turbo is derived from the sd15 class plus a turbo name."""
        meta = ModelMetadata(filename="sd-turbo", class_id="stable-diffusion-v1")
        assert classify(meta) == "sd15-turbo"
        assert classify(ModelMetadata(filename="sd-turbo")) == UNKNOWN

    def test_flux_wins_over_later_rules(self):
        """Test earlier rules take precedence (flux + sdxl keywords)."""
        assert classify(ModelMetadata(filename="flux_sdxl_merge")) == "flux"

    def test_resolution_fallback(self):
        """Test standard resolution is used only when nothing else matched."""
        assert classify(ModelMetadata(filename="mystery", standard_width=1024, standard_height=1024)) == "sdxl"
        assert classify(ModelMetadata(filename="mystery", standard_width=512, standard_height=512)) == "sd15"
        assert classify(ModelMetadata(filename="mystery", standard_width=768, standard_height=768)) == UNKNOWN

    def test_empty_metadata_is_unknown(self):
        """Test empty inputs classify as unknown."""
        assert classify(ModelMetadata()) == UNKNOWN

    def test_case_insensitive(self):
        """Test matching ignores case."""
        assert classify(ModelMetadata(filename="FLUX1-DEV")) == "flux"

    def test_deterministic(self):
        """Test the same metadata always yields the same tag."""
        meta = ModelMetadata(filename="wan2.2_t2v", name="Wan 2.2")
        assert len({classify(meta) for _ in range(10)}) == 1


@pytest.mark.unit
class TestArchitectureClassifier:
    """Tests for the classifier object."""

    def test_match_raises_on_no_rule(self):
        """Test match() reports ambiguity instead of guessing."""
        with pytest.raises(ClassificationAmbiguity):
            ArchitectureClassifier().match(ModelMetadata(filename="mystery"))

    def test_explain_falls_back(self):
        """Test explain() returns unknown with default features."""
        result = ArchitectureClassifier().explain(ModelMetadata(filename="mystery"))
        assert result.tag == UNKNOWN
        assert result.matched_rule is None
        assert "lora" in result.features

    def test_explain_records_rule(self):
        """Test the matched rule description is kept for diagnostics."""
        result = ArchitectureClassifier().explain(ModelMetadata(filename="flux1-dev"))
        assert result.tag == "flux"
        assert "flux" in result.matched_rule
        assert "Architecture: flux" in result.summary()

    def test_from_path(self):
        """Test metadata built from a path drops the extension."""
        meta = ModelMetadata.from_path("/models/flux1-schnell-q4_0.gguf", resolution=(1024, 1024))
        assert meta.filename == "flux1-schnell-q4_0"
        assert meta.name == "flux1-schnell-q4_0.gguf"
        assert meta.standard_width == 1024

    def test_custom_rules(self):
        """Test a classifier can be built with its own rule table."""
        classifier = ArchitectureClassifier(rules=[])
        assert classifier.classify(ModelMetadata(filename="flux1-dev")) == UNKNOWN


@pytest.mark.unit
class TestFamilyHelpers:
    """Tests for per-tag helpers."""

    def test_base_family(self):
        """Test derived tags collapse onto their parent family."""
        assert base_family("flux-schnell") == "flux"
        assert base_family("wan-2.2") == "wan"
        assert base_family("sdxl") == "sdxl"

    def test_dit_and_video(self):
        """Test DiT and video membership."""
        assert is_dit("flux-schnell") and is_dit("sd3") and is_dit("z-image") and is_dit("wan-2.1")
        assert not is_dit("sdxl")
        assert is_video("wan-2.2") and is_video("video")
        assert not is_video("flux")

    def test_distilled(self):
        """Test few-step distilled tags."""
        assert is_distilled("flux-schnell")
        assert is_distilled("sdxl-turbo")
        assert not is_distilled("flux")

    def test_features(self):
        """Test host-facing feature sets."""
        assert features_for("flux") == ["flux", "flux-dev", "lora", "controlnet"]
        assert "video" in features_for("wan")
        features = features_for("sdxl")
        features.append("mutated")
        assert "mutated" not in features_for("sdxl")
