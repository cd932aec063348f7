"""Tests for the backend facade and its status API."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from sdcpp_backend.api.server import create_app
from sdcpp_backend.backend import BackendStatus, SDcppBackend
from sdcpp_backend.compilation.job_descriptor import JobParam
from sdcpp_backend.errors import ProvisionError, ResolutionError
from sdcpp_backend.provisioning.binary_provisioner import BinaryInstallation, BinaryProvisioner, SIDECAR_NAME
from sdcpp_backend.request import GenerationRequest
from utils.project_paths import SCRATCH_DIR_NAME


@pytest.fixture
def provisioner(tmp_path) -> BinaryProvisioner:
    return BinaryProvisioner(tmp_path / "dlbackend", os_name="linux")


@pytest.fixture
def backend(app_config, model_tree, fake_engine, provisioner) -> SDcppBackend:
    backend = SDcppBackend(config=app_config, provisioner=provisioner, executable=fake_engine)
    assert backend.init()
    yield backend
    backend.shutdown()


def flux_request(models_root: Path, **kwargs) -> GenerationRequest:
    return GenerationRequest(
        model_path=models_root / "diffusion_models" / "flux1-schnell.safetensors",
        prompt="a lighthouse",
        **kwargs,
    )


def scratch_root(app_config) -> Path:
    return Path(app_config.working_directory) / SCRATCH_DIR_NAME


@pytest.mark.unit
class TestBackendLifecycle:
    """Tests for init and status reporting."""

    def test_ready_with_executable(self, backend, model_tree):
        """Test an explicit executable makes the backend ready and indexes models."""
        assert backend.status is BackendStatus.READY
        assert len(backend.index) == 5

    def test_missing_configured_executable_disables(self, app_config, provisioner):
        """Test a bad SDCPP_EXECUTABLE disables the backend instead of raising."""
        config = app_config.model_copy(update={"executable_path": "/nowhere/sd-cli"})
        backend = SDcppBackend(config=config, provisioner=provisioner)

        assert backend.init() is False
        assert backend.status is BackendStatus.DISABLED
        assert "SDCPP_EXECUTABLE" in backend.status_message
        with pytest.raises(ProvisionError):
            asyncio.run(backend.generate(GenerationRequest(model_path="x.safetensors")))

    def test_provision_failure_disables(self, app_config):
        """Test a provisioning failure is reported as a disabled status."""
        provisioner = MagicMock()
        provisioner.ensure_available.side_effect = ProvisionError("no build for this device", device="cpu")
        backend = SDcppBackend(config=app_config, provisioner=provisioner)

        assert backend.init() is False
        assert backend.info()["status"] == "disabled"
        assert backend.info()["message"] == "no build for this device"

    def test_startup_does_not_check_updates(self, app_config, tmp_path):
        """Test startup asks the provisioner for an install without an update check."""
        exe = tmp_path / "sd-cli"
        exe.write_text("")
        provisioner = MagicMock()
        provisioner.ensure_available.return_value = exe
        backend = SDcppBackend(config=app_config, provisioner=provisioner)

        assert backend.init()
        provisioner.ensure_available.assert_called_once_with("cpu", auto_update=False)
        assert backend.executable == exe

    def test_background_updates_started(self, app_config, fake_engine):
        """Test background update checks run when auto-update is on."""
        config = app_config.model_copy(update={"auto_update": True})
        provisioner = MagicMock()
        backend = SDcppBackend(config=config, provisioner=provisioner, executable=fake_engine)
        backend.init(background_updates=True)
        try:
            assert backend._updater is not None and backend._updater.running
        finally:
            backend.shutdown()
        assert backend._updater is None

    def test_load_model_and_info(self, backend, model_tree):
        """Test selecting a model classifies it and shows in the status."""
        loaded = backend.load_model(model_tree / "diffusion_models" / "flux1-schnell.safetensors")
        assert loaded.architecture == "flux-schnell"
        info = backend.info()
        assert info["architecture"] == "flux-schnell"
        assert "flux" in info["features"]
        assert info["device"] == "cpu"

    def test_class_id_drives_classification(self, backend, model_tree):
        """Test the host model class is used when the name says nothing."""
        loaded = backend.load_model(
            model_tree / "Stable-Diffusion" / "v1-5-pruned-emaonly.safetensors",
            class_id="stable-diffusion-v1",
        )
        assert loaded.architecture == "sd15"

    def test_list_models(self, backend):
        """Test listing skips component folders and types each model."""
        models = {m["name"]: m for m in backend.list_models()}
        assert set(models) == {
            "Stable-Diffusion/v1-5-pruned-emaonly.safetensors",
            "diffusion_models/flux1-schnell.safetensors",
        }
        assert models["diffusion_models/flux1-schnell.safetensors"]["type"] == "diffusion"
        assert models["Stable-Diffusion/v1-5-pruned-emaonly.safetensors"]["type"] == "checkpoint"


@pytest.mark.unit
class TestPrepare:
    """Tests for planning without launching."""

    def test_plan_flux_schnell(self, backend, model_tree, tmp_path):
        """Test a plan carries resolved components and the compiled job."""
        scratch = tmp_path / "plan"
        scratch.mkdir()
        plan = backend.prepare(flux_request(model_tree), scratch)

        assert plan.architecture == "flux-schnell"
        assert plan.decision.decision_class == "no_gpu"
        assert plan.descriptor[JobParam.STEPS] == 4
        assert plan.descriptor[JobParam.VAE] == model_tree / "VAE" / "Flux" / "ae.safetensors"
        assert "Job Plan (flux-schnell)" in plan.summary()

    def test_plan_survives_accelerator_errors(self, app_config, model_tree, fake_engine, provisioner, tmp_path):
        """Test a failing CUDA memory query still yields a plan without memory mitigation."""
        config = app_config.model_copy(update={"device": "cuda"})
        backend = SDcppBackend(config=config, provisioner=provisioner, executable=fake_engine)
        assert backend.init()
        with patch("torch.cuda.is_available", return_value=True), \
                patch("torch.cuda.device_count", return_value=1), \
                patch("torch.cuda.mem_get_info", side_effect=RuntimeError("CUDA error: device busy")):
            plan = backend.prepare(flux_request(model_tree), tmp_path)

        assert plan.decision.decision_class == "no_gpu"
        assert plan.decision.enabled == []
        assert plan.descriptor[JobParam.STEPS] == 4

    def test_plan_missing_component(self, backend, model_tree, tmp_path):
        """Test missing components surface as a resolution error."""
        (model_tree / "clip" / "t5xxl_fp8_e4m3fn.safetensors").unlink()
        backend.index.scan()
        with pytest.raises(ResolutionError) as exc_info:
            backend.prepare(flux_request(model_tree), tmp_path)
        assert "T5-XXL" in str(exc_info.value)


@pytest.mark.integration
class TestGenerate:
    """End-to-end generation through the fake engine."""

    def test_generate_flux_schnell(self, backend, model_tree, app_config, tmp_path, monkeypatch):
        """Test a flux-schnell job runs with every component and cleans up."""
        record = tmp_path / "argv.json"
        monkeypatch.setenv("FAKE_ENGINE_ARGV", str(record))
        progress = []

        result = asyncio.run(backend.generate(flux_request(model_tree, seed=7), on_progress=progress.append))

        assert len(result.outputs) == 1
        assert progress[-1] == 1.0
        argv = json.loads(record.read_text())["argv"]
        for flag in ("--diffusion-model", "--vae", "--clip_l", "--t5xxl"):
            assert flag in argv
        assert argv[argv.index("--steps") + 1] == "4"
        assert argv[argv.index("--seed") + 1] == "7"
        assert list(scratch_root(app_config).iterdir()) == []

    def test_generate_batch(self, backend, model_tree):
        """Test batch count produces that many outputs."""
        request = GenerationRequest(
            model_path=model_tree / "Stable-Diffusion" / "v1-5-pruned-emaonly.safetensors",
            model_class="stable-diffusion-v1",
            prompt="a cat",
            steps=2,
            batch_count=2,
        )
        result = asyncio.run(backend.generate(request))
        assert [o.name for o in result.outputs] == ["generated_000.png", "generated_001.png"]

    def test_resolution_failure_cleans_scratch(self, backend, model_tree, app_config):
        """Test a failed plan removes its scratch directory."""
        (model_tree / "VAE" / "Flux" / "ae.safetensors").unlink()
        backend.index.scan()
        with pytest.raises(ResolutionError):
            asyncio.run(backend.generate(flux_request(model_tree)))
        assert list(scratch_root(app_config).iterdir()) == []

    def test_convert(self, backend, model_tree):
        """Test GGUF conversion through the backend."""
        source = model_tree / "Stable-Diffusion" / "v1-5-pruned-emaonly.safetensors"
        target = asyncio.run(backend.convert(source, "q4_0"))
        assert target.name == "v1-5-pruned-emaonly-q4_0.gguf"
        assert target.is_file()


@pytest.mark.unit
class TestStatusAPI:
    """Tests for the read-only HTTP endpoints."""

    @pytest.fixture
    def client(self, backend):
        return TestClient(create_app(backend))

    def test_health(self, client):
        """Test the health endpoint reports backend status."""
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "backend": "ready", "version": "1.0.0"}

    def test_status(self, client, backend, model_tree):
        """Test status reflects the selected model."""
        backend.load_model(model_tree / "diffusion_models" / "flux1-schnell.safetensors")
        data = client.get("/api/sdcpp/status").json()
        assert data["status"] == "ready"
        assert data["architecture"] == "flux-schnell"

    def test_models(self, client):
        """Test the model listing."""
        data = client.get("/api/sdcpp/models").json()
        assert {m["architecture"] for m in data} >= {"flux-schnell"}

    def test_settings(self, client):
        """Test effective settings are exposed."""
        data = client.get("/api/sdcpp/settings").json()
        assert data["device"] == "cpu"
        assert data["auto_update"] is False

    def test_installations(self, client, provisioner):
        """Test installed builds are listed."""
        assert client.get("/api/sdcpp/installations").json() == []
        target = provisioner.install_dir("cpu")
        target.mkdir(parents=True)
        BinaryInstallation("master-480", "cpu", str(target / "sd-cli"), 1.0, 2.0).save(target / SIDECAR_NAME)
        data = client.get("/api/sdcpp/installations").json()
        assert [i["tag"] for i in data] == ["master-480"]
