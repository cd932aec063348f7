"""Configuration management with .env support and validation.

Centralized config for the SD.cpp backend, its CLI and status API.
Every field can be set from the environment (``SDCPP_*``) or from a
``.env`` file at the project root.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from config.policy_config import MemoryPolicyConfig

PROJECT_ROOT = Path(__file__).resolve().parent.parent
ENV_FILE = PROJECT_ROOT / ".env"

SUPPORTED_DEVICES = ("cpu", "cuda", "vulkan")
SUPPORTED_WEIGHT_TYPES = (
    "f32", "f16", "q8_0", "q4_0", "q4_1", "q5_0", "q5_1",
    "q2_k", "q3_k", "q4_k", "q5_k", "q6_k",
)


class AppConfig(BaseSettings):
    """Unified configuration with validation."""
    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Device & runtime
    device: str = Field(default="cpu", alias="SDCPP_DEVICE")
    cuda_version: str = Field(default="12", alias="SDCPP_CUDA_VERSION")
    threads: int = Field(default=0, ge=0, alias="SDCPP_THREADS")  # 0 = auto
    weight_type: str = Field(default="f16", alias="SDCPP_WEIGHT_TYPE")
    flux_dev_steps: int = Field(default=20, ge=1, alias="SDCPP_FLUX_DEV_STEPS")
    flux_schnell_steps: int = Field(default=4, ge=1, alias="SDCPP_FLUX_SCHNELL_STEPS")

    # Memory toggles the user forces regardless of policy
    vae_tiling: bool = Field(default=False, alias="SDCPP_VAE_TILING")
    vae_on_cpu: bool = Field(default=False, alias="SDCPP_VAE_ON_CPU")
    clip_on_cpu: bool = Field(default=False, alias="SDCPP_CLIP_ON_CPU")
    flash_attention: bool = Field(default=True, alias="SDCPP_FLASH_ATTENTION")

    # Process supervision
    process_timeout_seconds: float = Field(default=600, gt=0, alias="SDCPP_PROCESS_TIMEOUT")
    kill_grace_seconds: float = Field(default=5, ge=0, alias="SDCPP_KILL_GRACE_SECONDS")
    debug_mode: bool = Field(default=False, alias="SDCPP_DEBUG")
    working_directory: Optional[str] = Field(default=None, alias="SDCPP_WORKING_DIRECTORY")

    # Binary provisioning
    executable_path: Optional[str] = Field(default=None, alias="SDCPP_EXECUTABLE")
    auto_update: bool = Field(default=True, alias="SDCPP_AUTO_UPDATE")
    dlbackend_root: str = Field(default="dlbackend", alias="SDCPP_DLBACKEND_ROOT")

    # Models & components
    models_root: str = Field(default="Models", alias="SDCPP_MODELS_ROOT")
    auto_download: bool = Field(default=True, alias="SDCPP_AUTO_DOWNLOAD")
    vae_path: Optional[str] = Field(default=None, alias="SDCPP_VAE_PATH")
    clip_l_path: Optional[str] = Field(default=None, alias="SDCPP_CLIP_L_PATH")
    clip_g_path: Optional[str] = Field(default=None, alias="SDCPP_CLIP_G_PATH")
    t5xxl_path: Optional[str] = Field(default=None, alias="SDCPP_T5XXL_PATH")
    llm_path: Optional[str] = Field(default=None, alias="SDCPP_LLM_PATH")

    # Memory-fit policy tuning
    policy: MemoryPolicyConfig = Field(default_factory=MemoryPolicyConfig, alias="SDCPP_POLICY")

    # Server Configuration
    api_host: str = Field(default="127.0.0.1", alias="API_HOST")
    api_port: int = Field(default=7801, ge=1024, le=65535, alias="API_PORT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, alias="LOG_FILE")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in allowed:
            raise ValueError(f"log_level must be one of {allowed}")
        return v

    @field_validator("device")
    @classmethod
    def validate_device(cls, v: str) -> str:
        v = v.lower()
        if v not in SUPPORTED_DEVICES:
            raise ValueError(f"device must be one of {SUPPORTED_DEVICES}")
        return v

    @field_validator("cuda_version")
    @classmethod
    def validate_cuda_version(cls, v: str) -> str:
        # "12.4" -> "12"; anything unrecognised falls back to the current major
        major = str(v).strip().split(".")[0]
        return major if major in ("11", "12") else "12"

    @field_validator("weight_type")
    @classmethod
    def validate_weight_type(cls, v: str) -> str:
        v = v.lower()
        if v not in SUPPORTED_WEIGHT_TYPES:
            raise ValueError(f"weight_type must be one of {SUPPORTED_WEIGHT_TYPES}")
        return v

    @property
    def device_key(self) -> str:
        """Install directory name for the configured device."""
        if self.device == "cuda":
            return f"cuda{self.cuda_version}"
        return self.device

    def component_overrides(self) -> dict[str, str]:
        """Explicit component paths keyed by resolver slot name."""
        overrides = {
            "vae": self.vae_path,
            "clip_l": self.clip_l_path,
            "clip_g": self.clip_g_path,
            "t5xxl": self.t5xxl_path,
            "llm": self.llm_path,
        }
        return {slot: path for slot, path in overrides.items() if path}

    def config_issues(self) -> list[str]:
        """Return human-readable configuration issues (non-fatal)."""
        issues = []
        if self.executable_path and not Path(self.executable_path).exists():
            issues.append(f"SDCPP_EXECUTABLE points to a missing file: {self.executable_path}")
        if self.device == "cpu" and (self.vae_on_cpu or self.clip_on_cpu):
            issues.append("vae_on_cpu/clip_on_cpu have no effect on the cpu device")
        return issues


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = AppConfig()
    return _config


def reload_config() -> AppConfig:
    global _config
    _config = AppConfig()
    return _config
