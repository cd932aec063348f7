"""GGUF conversion through the engine's ``convert`` mode."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional, Sequence, Union

from ..errors import ProcessExecutionFailure
from .process_supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

QUANTIZATIONS = ("f32", "f16", "q8_0", "q5_0", "q5_1", "q4_0", "q4_1", "q3_k", "q2_k")


def converted_name(source: Path, quantization: str) -> str:
    return f"{Path(source).stem}-{quantization}.gguf"


class GGUFConverter:
    """Quantizes checkpoints into GGUF files."""

    def __init__(self, executable: Union[Path, Sequence[str]], supervisor: Optional[ProcessSupervisor] = None):
        self.executable = executable
        self.supervisor = supervisor or ProcessSupervisor()

    def build_command(self, source: Path, target: Path, quantization: str):
        prefix = list(self.executable) if isinstance(self.executable, (list, tuple)) else [str(self.executable)]
        return prefix + ["-M", "convert", "-m", str(source), "-o", str(target), "--type", quantization, "-v"]

    async def convert(
        self,
        source: Path,
        quantization: str = "q8_0",
        output_dir: Optional[Path] = None,
        timeout_seconds: Optional[float] = None,
    ) -> Path:
        """Convert ``source`` to GGUF.

        Args:
            source: Checkpoint to convert.
            quantization: One of ``QUANTIZATIONS``.
            output_dir: Destination directory (defaults to the source's).
            timeout_seconds: Override for the supervisor timeout.

        Returns:
            Path to the GGUF file. An existing file is returned untouched.
        """
        quantization = quantization.lower()
        if quantization not in QUANTIZATIONS:
            raise ValueError(f"Unknown quantization {quantization!r}; expected one of {', '.join(QUANTIZATIONS)}")
        source = Path(source)
        if not source.is_file():
            raise FileNotFoundError(f"Model not found: {source}")

        output_dir = Path(output_dir) if output_dir else source.parent
        target = output_dir / converted_name(source, quantization)
        if target.exists():
            logger.info("GGUF file already exists: %s", target)
            return target
        output_dir.mkdir(parents=True, exist_ok=True)

        # The engine writes beside the target; only a clean exit is promoted
        partial = target.with_name(target.name + ".tmp")
        if partial.exists():
            logger.warning("Removing stale partial conversion %s", partial)
            partial.unlink()

        logger.info("Converting %s to %s", source.name, target.name)
        try:
            outcome = await self.supervisor.run_command(
                self.build_command(source, partial, quantization),
                cwd=output_dir,
                timeout_seconds=timeout_seconds,
            )
            if outcome.exit_code != 0 or not partial.is_file():
                raise ProcessExecutionFailure(outcome.exit_code, outcome.stdout, outcome.stderr)
            os.replace(partial, target)
        finally:
            if partial.exists():
                partial.unlink()
        logger.info("Conversion finished in %.1fs: %s", outcome.duration_seconds, target)
        return target
