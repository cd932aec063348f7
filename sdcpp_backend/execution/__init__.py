"""Engine execution: command lines, progress parsing, process supervision."""
from .command_line import EngineCapabilities, build_command_line, build_environment, probe_capabilities
from .gguf_converter import GGUFConverter, QUANTIZATIONS
from .process_supervisor import (
    GeneratedOutput,
    GenerationJob,
    GenerationResult,
    JobState,
    ProcessOutcome,
    ProcessSupervisor,
)
from .progress_parser import ProgressLineParser, ProgressMarker, ProgressTracker

__all__ = [
    # Command line
    "EngineCapabilities",
    "build_command_line",
    "build_environment",
    "probe_capabilities",
    # Conversion
    "GGUFConverter",
    "QUANTIZATIONS",
    # Supervision
    "GeneratedOutput",
    "GenerationJob",
    "GenerationResult",
    "JobState",
    "ProcessOutcome",
    "ProcessSupervisor",
    # Progress
    "ProgressLineParser",
    "ProgressMarker",
    "ProgressTracker",
]
