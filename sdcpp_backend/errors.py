"""Error taxonomy for the SD.cpp backend.

Errors fall into three groups:
- Absorbed locally with a safe default (classification, policy evaluation)
- Fatal to a single request (resolution, download, process errors)
- Fatal at backend-startup granularity (provisioning)

Every message is meant to be shown verbatim to the user by the host, so it
says what is missing and where to put it, or what timed out.
"""
from __future__ import annotations

from typing import List, Optional


class SDcppError(Exception):
    """Base class for all backend errors."""


class ClassificationAmbiguity(SDcppError):
    """Model metadata matched no family; callers fall back to ``unknown``."""


class PolicyEvaluationFailure(SDcppError):
    """The memory policy could not be computed; degrades to no mitigation."""


class DownloadFailure(SDcppError):
    """A single artifact fetch failed. Partial files have been removed."""

    def __init__(self, url: str, target: str, reason: str):
        self.url = url
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to download {url} -> {target}: {reason}")


class ResolutionError(SDcppError):
    """One or more required model components could not be resolved."""

    def __init__(self, architecture: str, missing_components: List[str]):
        self.architecture = architecture
        self.missing_components = list(missing_components)
        lines = [f"{architecture} model requires additional components:"]
        lines.extend(f"  - {item}" for item in self.missing_components)
        super().__init__("\n".join(lines))


class ProcessLaunchFailure(SDcppError):
    """The engine executable could not be started at all."""


class ProcessExecutionFailure(SDcppError):
    """The engine exited with a non-zero code."""

    def __init__(self, exit_code: int, stdout: str = "", stderr: str = ""):
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout).strip()
        message = f"SD.cpp process failed with exit code {exit_code}"
        if detail:
            message += f"\n{detail[-2000:]}"
        super().__init__(message)


class ProcessTimeout(SDcppError):
    """The engine did not exit within the configured timeout and was killed."""

    def __init__(self, timeout_seconds: float, stdout: str = "", stderr: str = ""):
        self.timeout_seconds = timeout_seconds
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Process timed out after {timeout_seconds:g}s "
            "(raise SDCPP_PROCESS_TIMEOUT for large models or slow devices)"
        )


class ProcessCancelled(SDcppError):
    """The job was cancelled by the caller and the engine was terminated."""


class NoOutputsProduced(SDcppError):
    """The engine exited cleanly but wrote no output files."""

    def __init__(self, directory: str, stdout: str = "", stderr: str = ""):
        self.directory = directory
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"No images were generated in {directory} (engine exited with code 0)")


class ProvisionError(SDcppError):
    """No usable engine executable could be provided for the device."""

    def __init__(self, message: str, device: Optional[str] = None):
        self.device = device
        super().__init__(message)
