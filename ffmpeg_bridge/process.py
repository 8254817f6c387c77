"""
FFmpeg process lifecycle.

Spawns FFmpeg, decodes its machine-readable progress from stdout, consumes
its diagnostics from stderr, and maps abort/pause/resume/kill to the process.
"""

import asyncio
import logging
import math
import os
import re
import signal
import subprocess
import sys
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence, Union

import psutil

from ffmpeg_bridge.conduit import ConduitManager
from ffmpeg_bridge.config import LOG_LEVEL_NUMBERS, BridgeConfig, LogLevel, get_config
from ffmpeg_bridge.errors import (
    LEVEL_PREFIX,
    ConduitError,
    ConfigurationError,
    FFmpegBridgeError,
    ProcessExitError,
    SpawnError,
    exit_error_message,
)
from ffmpeg_bridge.log_parser import DiagnosticLogParser, Logs
from ffmpeg_bridge.stringify import stringify_object_colon_separated

logger = logging.getLogger(__name__)

# FFmpeg's own diagnostic lines are logged here.
ffmpeg_logger = logging.getLogger("ffmpeg_bridge.ffmpeg")

FFMPEG_LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "verbose": logging.DEBUG,
    "info": logging.DEBUG,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}

PROGRESS_LINE_MATCH = re.compile(
    r"^(frame|fps|bitrate|total_size|out_time_us|dup_frames|drop_frames|speed|progress)=(.*)$"
)

# Graceful quit sequence read by FFmpeg from stdin.
QUIT_SEQUENCE = b"q\n"

# Line length limit of the stdout/stderr readers.
STREAM_LIMIT = 1024 * 1024


async def read_line(stream: asyncio.StreamReader) -> bytes:
    """
    Read one line, or the next chunk of a line longer than the reader's limit.

    Returns b"" at EOF. A final line without a newline is returned as is.
    """
    try:
        return await stream.readuntil(b"\n")
    except asyncio.IncompleteReadError as e:
        return e.partial
    except asyncio.LimitOverrunError as e:
        return await stream.read(e.consumed)


class ProcessState(str, Enum):
    """FFmpeg process states."""

    RUNNING = "running"
    EXITED = "exited"
    ERRORED = "errored"


@dataclass(frozen=True)
class Progress:
    """One self-contained snapshot of FFmpeg's progress."""

    frames: int = 0
    fps: float = 0.0
    bitrate: float = 0.0  # kbits/s
    size: int = 0  # bytes
    time: int = 0  # ms
    frames_duplicated: int = 0
    frames_dropped: int = 0
    speed: float = 0.0


@dataclass
class ReportOptions:
    """Options for FFmpeg's FFREPORT log file."""

    file: Optional[str] = None
    level: Optional[LogLevel] = None


def _parse_int(value: str) -> int:
    return int(value)


def _parse_float(value: str) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"Not a finite number: {value}")
    return number


# progress key -> (Progress field, parser)
PROGRESS_FIELDS = {
    "frame": ("frames", _parse_int),
    "fps": ("fps", _parse_float),
    "bitrate": ("bitrate", lambda v: _parse_float(v.rstrip("kbits/s"))),
    "total_size": ("size", _parse_int),
    "out_time_us": ("time", lambda v: _parse_int(v) // 1000),
    "dup_frames": ("frames_duplicated", _parse_int),
    "drop_frames": ("frames_dropped", _parse_int),
    "speed": ("speed", lambda v: _parse_float(v.rstrip("x"))),
}


async def iter_progress(stdout: asyncio.StreamReader) -> AsyncIterator[Progress]:
    """
    Decode `key=value` progress records from FFmpeg's stdout.

    A `progress=...` line ends a record and yields a snapshot;
    `progress=end` ends the sequence. Unparseable values are skipped.
    """
    fields: Dict[str, Union[int, float]] = {}
    while True:
        raw = await read_line(stdout)
        if not raw:
            return
        match = PROGRESS_LINE_MATCH.match(raw.decode("ascii", errors="replace").strip())
        if match is None:
            continue
        key, value = match.groups()
        value = value.strip()

        if key == "progress":
            yield Progress(**fields)
            fields = {}
            if value == "end":
                return
            continue

        name, parse = PROGRESS_FIELDS[key]
        try:
            fields[name] = parse(value)
        except ValueError:
            # N/A and other malformed values
            logger.debug(f"Skipping progress field {key}={value!r}")


class _SignalSuspender:
    """Pause and resume with SIGSTOP/SIGCONT."""

    def pause(self, pid: int) -> bool:
        return self._send(pid, signal.SIGSTOP)

    def resume(self, pid: int) -> bool:
        return self._send(pid, signal.SIGCONT)

    def _send(self, pid: int, sig: int) -> bool:
        try:
            os.kill(pid, sig)
        except ProcessLookupError:
            return False
        return True


class _PsutilSuspender:
    """Pause and resume by suspending the process's threads (Windows)."""

    def pause(self, pid: int) -> bool:
        try:
            psutil.Process(pid).suspend()
        except psutil.NoSuchProcess:
            return False
        return True

    def resume(self, pid: int) -> bool:
        try:
            psutil.Process(pid).resume()
        except psutil.NoSuchProcess:
            return False
        return True


def _select_suspender():
    return _PsutilSuspender() if sys.platform == "win32" else _SignalSuspender()


def _forward_log_line(line: str) -> None:
    match = LEVEL_PREFIX.match(line)
    level = FFMPEG_LOG_LEVELS[match.group(1)] if match else logging.DEBUG
    ffmpeg_logger.log(level, line)


class FFmpegProcess:
    """
    Handle to one spawned FFmpeg process.

    Created by `spawn()`. The handle starts RUNNING and ends EXITED (the
    process returned an exit code) or ERRORED (it could not be started).
    """

    def __init__(
        self,
        process: Optional[asyncio.subprocess.Process],
        ffmpeg_path: str,
        args: Sequence[str],
        conduits: ConduitManager,
        config: BridgeConfig,
        parse_logs: bool = False,
        error: Optional[FFmpegBridgeError] = None,
    ):
        """
        Initialize process handle and start consuming stderr.

        Args:
            process: The asyncio subprocess, None if spawning failed
            ffmpeg_path: Executable used
            args: Final argument vector
            conduits: Conduits bridged to this process
            config: Bridge configuration
            parse_logs: Feed stderr into a DiagnosticLogParser
            error: Spawn error to report from `complete()`
        """
        self.ffmpeg_path = ffmpeg_path
        self.args: List[str] = list(args)
        self.config = config
        self._process = process
        self._conduits = conduits
        self._error = error
        self._exited = process is None
        self._stdout_claimed = False
        self._suspender = _select_suspender()
        self._stderr_tail: Deque[str] = deque(maxlen=config.stderr_tail_lines)
        self._log_parser = DiagnosticLogParser() if parse_logs else None

        self._watch_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        if process is not None:
            self._watch_task = asyncio.create_task(self._watch())
            if process.stderr is not None:
                self._stderr_task = asyncio.create_task(self._read_stderr(process.stderr))

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process is not None else None

    @property
    def exited(self) -> bool:
        return self._exited or self.returncode is not None

    @property
    def state(self) -> ProcessState:
        if self._process is None:
            return ProcessState.ERRORED
        return ProcessState.EXITED if self.exited else ProcessState.RUNNING

    @property
    def conduit_errors(self) -> List[ConduitError]:
        return self._conduits.errors

    def unwrap(self) -> Optional[asyncio.subprocess.Process]:
        """Return the underlying asyncio subprocess."""
        return self._process

    async def _watch(self) -> None:
        try:
            code = await self._process.wait()
            logger.debug(f"FFmpeg process {self.pid} exited with code {code}")
            await self._conduits.settle()
        finally:
            self._exited = True
            self._conduits.close_all()

    async def _read_stderr(self, stderr: asyncio.StreamReader) -> None:
        while True:
            raw = await read_line(stderr)
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            self._stderr_tail.append(line)
            _forward_log_line(line)
            if self._log_parser is not None:
                self._log_parser.feed(line)

    async def _drain_stdout(self, stdout: asyncio.StreamReader) -> None:
        while await stdout.read(STREAM_LIMIT):
            pass

    def progress(self) -> AsyncIterator[Progress]:
        """
        Iterate over progress snapshots decoded from stdout.

        The iterator is lazy and can only be obtained once.

        Raises:
            ConfigurationError: If stdout was already consumed or is not readable
        """
        stdout = self._process.stdout if self._process is not None else None
        if self._stdout_claimed or stdout is None:
            raise ConfigurationError("Cannot parse progress, stdout is not readable")
        self._stdout_claimed = True
        return iter_progress(stdout)

    async def logs(self) -> Logs:
        """
        Wait for stderr to end and return the parsed input metadata.

        Raises:
            ConfigurationError: If the process was spawned without log parsing
        """
        if self._log_parser is None:
            raise ConfigurationError("Cannot parse logs, spawn with parse_logs=True")
        if self._stderr_task is not None:
            await asyncio.shield(self._stderr_task)
        return self._log_parser.logs

    async def complete(self) -> None:
        """
        Wait for FFmpeg to exit.

        Safe to call more than once: a failure is computed once and the same
        error is raised on every call.

        Raises:
            SpawnError: If FFmpeg could not be started
            ProcessExitError: If FFmpeg exited with a non-zero code
        """
        if self._error is not None:
            raise self._error

        # Nobody reads progress: discard it so FFmpeg cannot block on a full pipe.
        stdout = self._process.stdout
        if not self._stdout_claimed and stdout is not None:
            self._stdout_claimed = True
            self._drain_task = asyncio.create_task(self._drain_stdout(stdout))

        await asyncio.shield(self._watch_task)
        if self._stderr_task is not None:
            await asyncio.shield(self._stderr_task)
        await self._conduits.wait_sinks()

        code = self._process.returncode
        if code == 0:
            return

        if self._error is None:
            message = exit_error_message(code, self._stderr_tail)
            self._error = ProcessExitError(
                message,
                exit_code=code,
                ffmpeg_path=self.ffmpeg_path,
                args=self.args,
                stderr=self._stderr_tail,
            )
            conduit_errors = self.conduit_errors
            if conduit_errors:
                self._error.__cause__ = conduit_errors[0]
            logger.error(f"FFmpeg process {self.pid} failed: {message}")
        raise self._error

    async def abort(self) -> None:
        """
        Ask FFmpeg to quit gracefully, then wait for it to exit.

        Raises:
            ConfigurationError: If the process already exited or stdin is not writable
        """
        stdin = self._process.stdin if self._process is not None else None
        if self.exited or stdin is None or stdin.is_closing():
            raise ConfigurationError("Cannot abort FFmpeg process, stdin is not writable")

        logger.info(f"Aborting FFmpeg process {self.pid}")
        try:
            stdin.write(QUIT_SEQUENCE)
            await stdin.drain()
        except ConnectionError as e:
            logger.debug(f"FFmpeg process {self.pid} closed stdin before abort: {e}")
        await self.complete()

    def pause(self) -> bool:
        """Suspend the process. Returns False if it already exited."""
        if self.exited:
            return False
        return self._suspender.pause(self.pid)

    def resume(self) -> bool:
        """Resume a paused process. Returns False if it already exited."""
        if self.exited:
            return False
        return self._suspender.resume(self.pid)

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """
        Send a signal to the process, bypassing graceful abort.

        Returns:
            True if the signal was delivered
        """
        if self.exited:
            return False
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            return False
        return True


def _report_env(report: Union[bool, ReportOptions]) -> Dict[str, str]:
    # FFREPORT is either `key=value` pairs (`file`, `level`) or any non-empty string.
    ffreport = "true"
    if isinstance(report, ReportOptions):
        level = LOG_LEVEL_NUMBERS[LogLevel(report.level)] if report.level is not None else None
        ffreport = stringify_object_colon_separated({"file": report.file, "level": level}) or "true"
    return {**os.environ, "FFREPORT": ffreport}


async def spawn(
    args: Sequence[str],
    ffmpeg_path: Optional[str] = None,
    conduits: Optional[ConduitManager] = None,
    parse_logs: bool = False,
    report: Union[bool, ReportOptions] = False,
    config: Optional[BridgeConfig] = None,
) -> FFmpegProcess:
    """
    Start FFmpeg with the given arguments.

    Conduits must already be listening; `PipelineBuilder.spawn()` takes care
    of that. A failure to start the executable is reported by `complete()`.

    Args:
        args: Argument vector, without the executable
        ffmpeg_path: Executable (defaults to config.ffmpeg_binary)
        conduits: Conduits referenced by the arguments
        parse_logs: Parse input metadata from stderr, see `FFmpegProcess.logs()`
        report: Enable FFREPORT, optionally with file and level
        config: Bridge configuration (creates default if not provided)

    Returns:
        FFmpegProcess handle
    """
    if config is None:
        config = get_config()
    if conduits is None:
        conduits = ConduitManager(config)
    ffmpeg_path = ffmpeg_path or config.ffmpeg_binary
    env = _report_env(report) if report else None

    logger.debug(f"Spawning FFmpeg: {ffmpeg_path} {' '.join(args)}")
    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            *args,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            limit=STREAM_LIMIT,
        )
    except OSError as e:
        logger.error(f"Failed to spawn FFmpeg ({ffmpeg_path}): {e}")
        conduits.close_all()
        error = SpawnError(f"Cannot spawn {ffmpeg_path}: {e}", ffmpeg_path, args)
        error.__cause__ = e
        return FFmpegProcess(None, ffmpeg_path, args, conduits, config, parse_logs, error=error)

    logger.info(f"FFmpeg process started (PID: {process.pid})")
    return FFmpegProcess(process, ffmpeg_path, args, conduits, config, parse_logs)
