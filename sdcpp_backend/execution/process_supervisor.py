"""Process Supervisor - Runs the engine and watches it until it is done.

State machine::

    IDLE -> LAUNCHING -> RUNNING -> SUCCEEDED | FAILED | TIMED_OUT | CANCELLED

While RUNNING, three things happen concurrently on the event loop:
- stdout/stderr are drained into buffers and scanned for progress markers
- the live-preview file (if requested) is polled and re-emitted on change
- natural exit races the timeout and the caller's cancel signal

A result is produced only after the process has exited and both streams
are fully drained. The scratch directory is removed on every exit path.
"""
from __future__ import annotations

import asyncio
import io
import logging
import re
import shutil
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import psutil
from PIL import Image, UnidentifiedImageError

from utils.logging_setup import sanitize_log

from ..compilation.job_descriptor import JobDescriptor, JobParam
from ..errors import (
    NoOutputsProduced,
    ProcessCancelled,
    ProcessExecutionFailure,
    ProcessLaunchFailure,
    ProcessTimeout,
)
from .command_line import EngineCapabilities, build_command_line, build_environment
from .progress_parser import ProgressTracker

logger = logging.getLogger(__name__)

OUTPUT_EXTENSIONS = (".png", ".jpg", ".jpeg", ".webp", ".gif", ".avi", ".mp4")
PREVIEW_POLL_SECONDS = 0.25

ProgressCallback = Callable[[float], None]
PreviewCallback = Callable[[bytes], None]

_LINE_SPLIT_RE = re.compile(r"[\r\n]")


class JobState(Enum):
    """Lifecycle of one engine process."""
    IDLE = "idle"
    LAUNCHING = "launching"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT, JobState.CANCELLED)


@dataclass
class GeneratedOutput:
    """One output file, read into memory before the scratch dir is removed."""

    name: str
    data: bytes

    @property
    def suffix(self) -> str:
        return Path(self.name).suffix.lower()


@dataclass
class ProcessOutcome:
    """How a process ended (before output collection)."""

    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_seconds: float


@dataclass
class GenerationResult:
    """Successful generation."""

    outputs: List[GeneratedOutput]
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float


class GenerationJob:
    """Handle the caller keeps to observe or cancel a running job."""

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id or uuid.uuid4().hex[:12]
        self.state = JobState.IDLE
        self.handle: Optional[asyncio.subprocess.Process] = None
        self.start_time: Optional[float] = None
        self.stdout_lines: List[str] = []
        self.stderr_lines: List[str] = []
        self.tracker = ProgressTracker()
        self.cancel_requested = False
        self._cancel_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def last_progress(self) -> float:
        return self.tracker.value

    @property
    def stdout(self) -> str:
        return "\n".join(self.stdout_lines)

    @property
    def stderr(self) -> str:
        return "\n".join(self.stderr_lines)

    def _bind(self, loop: asyncio.AbstractEventLoop) -> asyncio.Event:
        self._loop = loop
        self._cancel_event = asyncio.Event()
        if self.cancel_requested:
            self._cancel_event.set()
        return self._cancel_event

    def cancel(self) -> None:
        """Request termination. Safe to call from any thread, any time."""
        self.cancel_requested = True
        if self._loop is not None and self._cancel_event is not None:
            self._loop.call_soon_threadsafe(self._cancel_event.set)

    def __repr__(self) -> str:
        return f"GenerationJob({self.job_id}, state={self.state.value}, progress={self.last_progress:.2f})"


def collect_outputs(
    directory: Path,
    prefix: Optional[str] = None,
    exclude: Sequence[Path] = (),
) -> List[Path]:
    """Output files in ``directory`` by known extension, sorted by name.

    Files named with ``prefix`` are preferred; when none exist every
    non-excluded file with a known extension counts.
    """
    if not directory.is_dir():
        return []
    excluded = {Path(p).resolve() for p in exclude}
    candidates = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in OUTPUT_EXTENSIONS and p.resolve() not in excluded
    )
    if prefix:
        preferred = [p for p in candidates if p.name.startswith(prefix)]
        if preferred:
            return preferred
    return candidates


def kill_process_tree(pid: int) -> None:
    """Kill ``pid`` and all of its descendants."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    procs = parent.children(recursive=True) + [parent]
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    psutil.wait_procs(procs, timeout=5)


class ProcessSupervisor:
    """Launches engine processes and supervises them to completion."""

    def __init__(
        self,
        timeout_seconds: float = 600.0,
        kill_grace_seconds: float = 5.0,
        device: str = "cpu",
        capabilities: Optional[EngineCapabilities] = None,
    ):
        """Initialize supervisor.

        Args:
            timeout_seconds: Wall-clock limit per process.
            kill_grace_seconds: Time allowed for a graceful exit before a hard kill.
            device: Engine device; "cpu" adds CPU-only flags and env.
            capabilities: Optional flags supported by the executable.
        """
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.device = device
        self.capabilities = capabilities or EngineCapabilities()

    async def run(
        self,
        executable: Path,
        descriptor: JobDescriptor,
        scratch_dir: Path,
        on_progress: Optional[ProgressCallback] = None,
        on_preview: Optional[PreviewCallback] = None,
        job: Optional[GenerationJob] = None,
        timeout_seconds: Optional[float] = None,
    ) -> GenerationResult:
        """Run one generation job to completion.

        Raises:
            ProcessLaunchFailure: The executable could not be started.
            ProcessTimeout: The process outlived the timeout and was killed.
            ProcessCancelled: ``job.cancel()`` was called.
            ProcessExecutionFailure: Non-zero exit code.
            NoOutputsProduced: Exit code 0 but no output files.
        """
        job = job or GenerationJob()
        scratch_dir = Path(scratch_dir)
        try:
            argv = build_command_line(executable, descriptor, self.device, self.capabilities)
            preview_path = descriptor.get(JobParam.PREVIEW_PATH) if self.capabilities.preview else None
            outcome = await self.run_command(
                argv,
                cwd=scratch_dir,
                job=job,
                on_progress=on_progress,
                on_preview=on_preview,
                preview_path=preview_path,
                timeout_seconds=timeout_seconds,
            )
            return self._finish(job, descriptor, scratch_dir, outcome)
        finally:
            self._cleanup(scratch_dir)

    async def run_command(
        self,
        argv: Sequence[str],
        cwd: Path,
        job: Optional[GenerationJob] = None,
        on_progress: Optional[ProgressCallback] = None,
        on_preview: Optional[PreviewCallback] = None,
        preview_path: Optional[Path] = None,
        timeout_seconds: Optional[float] = None,
    ) -> ProcessOutcome:
        """Launch ``argv`` and supervise it; no output collection, no cleanup.

        Returns:
            Outcome with exit code and captured output. A non-zero exit code
            is returned, not raised.
        """
        job = job or GenerationJob()
        timeout = timeout_seconds or self.timeout_seconds
        cancel_event = job._bind(asyncio.get_running_loop())

        job.state = JobState.LAUNCHING
        logger.info("Launching engine job %s", job.job_id)
        logger.debug("Command line: %s", " ".join(str(a) for a in argv))
        try:
            proc = await asyncio.create_subprocess_exec(
                *[str(a) for a in argv],
                cwd=str(cwd),
                env=build_environment(self.device),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            job.state = JobState.FAILED
            raise ProcessLaunchFailure(f"Failed to launch {argv[0]}: {e}") from e

        job.handle = proc
        job.start_time = time.monotonic()
        job.state = JobState.RUNNING

        drains = [
            asyncio.create_task(self._drain(proc.stdout, job.stdout_lines, job, on_progress)),
            asyncio.create_task(self._drain(proc.stderr, job.stderr_lines, job, on_progress)),
        ]
        preview_task = None
        if preview_path is not None and on_preview is not None:
            preview_task = asyncio.create_task(self._watch_preview(Path(preview_path), on_preview))
        exit_task = asyncio.create_task(proc.wait())
        cancel_task = asyncio.create_task(cancel_event.wait())

        verdict = None
        try:
            done, _ = await asyncio.wait(
                {exit_task, cancel_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if exit_task not in done:
                verdict = JobState.CANCELLED if cancel_task in done else JobState.TIMED_OUT
                logger.warning(
                    "Engine job %s %s; terminating",
                    job.job_id, "cancelled" if verdict is JobState.CANCELLED else f"timed out after {timeout:g}s",
                )
                await self._terminate(proc)
        except asyncio.CancelledError:
            # Caller's own task was cancelled: do not leave the engine running
            await self._terminate(proc)
            job.state = JobState.CANCELLED
            raise
        finally:
            cancel_task.cancel()
            await asyncio.gather(*drains, return_exceptions=True)
            await exit_task
            if preview_task is not None:
                preview_task.cancel()
                await asyncio.gather(preview_task, return_exceptions=True)

        outcome = ProcessOutcome(
            exit_code=proc.returncode,
            stdout=job.stdout,
            stderr=job.stderr,
            duration_seconds=time.monotonic() - job.start_time,
        )
        if verdict is JobState.TIMED_OUT:
            job.state = JobState.TIMED_OUT
            raise ProcessTimeout(timeout, outcome.stdout, outcome.stderr)
        if verdict is JobState.CANCELLED:
            job.state = JobState.CANCELLED
            raise ProcessCancelled(f"Job {job.job_id} was cancelled")
        logger.info(
            "Engine job %s exited with code %s after %.1fs",
            job.job_id, outcome.exit_code, outcome.duration_seconds,
        )
        return outcome

    def _finish(
        self,
        job: GenerationJob,
        descriptor: JobDescriptor,
        scratch_dir: Path,
        outcome: ProcessOutcome,
    ) -> GenerationResult:
        if outcome.exit_code != 0:
            job.state = JobState.FAILED
            logger.error("Engine stderr:\n%s", outcome.stderr[-4000:])
            raise ProcessExecutionFailure(outcome.exit_code, outcome.stdout, outcome.stderr)

        output_param = descriptor.get(JobParam.OUTPUT)
        prefix = Path(output_param).name.split("%")[0] if output_param else None
        inputs = [
            descriptor[p] for p in (
                JobParam.INIT_IMG, JobParam.END_IMG, JobParam.MASK,
                JobParam.REF_IMAGE, JobParam.CONTROL_IMAGE, JobParam.PREVIEW_PATH,
            ) if p in descriptor
        ]
        paths = collect_outputs(scratch_dir, prefix=prefix, exclude=inputs)
        if not paths:
            job.state = JobState.FAILED
            raise NoOutputsProduced(str(scratch_dir), outcome.stdout, outcome.stderr)

        outputs = [GeneratedOutput(name=p.name, data=p.read_bytes()) for p in paths]
        job.state = JobState.SUCCEEDED
        logger.info("Engine job %s produced %d output(s)", job.job_id, len(outputs))
        return GenerationResult(
            outputs=outputs,
            exit_code=0,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            duration_seconds=outcome.duration_seconds,
        )

    async def _drain(
        self,
        stream: Optional[asyncio.StreamReader],
        sink: List[str],
        job: GenerationJob,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        """Read ``stream`` to EOF, splitting on CR and LF."""
        if stream is None:
            return
        pending = ""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = _LINE_SPLIT_RE.split(pending)
            for line in lines:
                self._handle_line(line, sink, job, on_progress)
        if pending:
            self._handle_line(pending, sink, job, on_progress)

    @staticmethod
    def _handle_line(
        raw: str,
        sink: List[str],
        job: GenerationJob,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        line = sanitize_log(raw).strip()
        if not line:
            return
        sink.append(line)
        logger.debug("[sd-cli] %s", line)
        value = job.tracker.feed(line)
        if value is not None and on_progress is not None:
            try:
                on_progress(value)
            except Exception:
                logger.exception("Progress callback failed")

    async def _watch_preview(self, path: Path, on_preview: PreviewCallback) -> None:
        """Emit the preview file whenever it changes; read errors are retried."""
        last_signature = None
        while True:
            await asyncio.sleep(PREVIEW_POLL_SECONDS)
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.debug("Preview stat failed: %s", e)
                continue
            signature = (stat.st_mtime_ns, stat.st_size)
            if signature == last_signature or stat.st_size == 0:
                continue
            try:
                data = path.read_bytes()
                with Image.open(io.BytesIO(data)) as image:
                    image.verify()
            except (OSError, UnidentifiedImageError, SyntaxError, ValueError) as e:
                # Writer is mid-update; try again next tick
                logger.debug("Preview not readable yet: %s", e)
                continue
            last_signature = signature
            try:
                on_preview(data)
            except Exception:
                logger.exception("Preview callback failed")

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """Graceful terminate, then kill the whole process tree."""
        if proc.returncode is not None:
            return
        try:
            children = psutil.Process(proc.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Engine pid %s ignored terminate; killing process tree", proc.pid)
            await asyncio.to_thread(kill_process_tree, proc.pid)
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                continue

    @staticmethod
    def _cleanup(scratch_dir: Path) -> None:
        try:
            if scratch_dir.exists():
                shutil.rmtree(scratch_dir)
        except OSError as e:
            logger.warning("Failed to clean up scratch directory %s: %s", scratch_dir, e)
