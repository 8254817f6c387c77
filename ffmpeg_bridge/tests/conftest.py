"""
Pytest configuration and fixtures for FFmpeg bridge tests.
"""

import asyncio
import tempfile
from pathlib import Path
from typing import Generator, List, Optional
from unittest.mock import MagicMock

import pytest

from ffmpeg_bridge.config import BridgeConfig, LogLevel
from ffmpeg_bridge.log_parser import DiagnosticLogParser
from ffmpeg_bridge.pipeline import PipelineBuilder


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a short temporary directory (Unix socket paths are length limited)."""
    with tempfile.TemporaryDirectory(prefix="fb") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir: Path) -> BridgeConfig:
    """Create a test configuration."""
    return BridgeConfig(
        ffmpeg_binary="ffmpeg",
        log_level=LogLevel.INFO,
        overwrite=True,
        progress=True,
        conduit_dir=str(temp_dir),
        conduit_prefix="test",
        conduit_bind_attempts=3,
        source_chunk_size=1024,
        stderr_tail_lines=16,
    )


@pytest.fixture
def pipeline(test_config: BridgeConfig) -> PipelineBuilder:
    """Create a pipeline builder for testing."""
    return PipelineBuilder(config=test_config)


@pytest.fixture
def log_parser() -> DiagnosticLogParser:
    """Create a log parser for testing."""
    return DiagnosticLogParser()


@pytest.fixture
def sample_ffmpeg_logs() -> List[str]:
    """Sample FFmpeg stderr while opening two inputs."""
    return """\
[info] Input #0, matroska,webm, from 'video0.mkv':
[info]   Metadata:
[info]     ENCODER         : Lavf58.58.100
[info]     key             : multiline
[info]                     : value
[info]   Duration: 00:01:00.02, start: 0.000000, bitrate: 168 kb/s
[info]     Chapter #0:0: start 0.000000, end 30.000000
[info]     Metadata:
[info]       title           : Intro
[info]     Stream #0:0: Video: h264 (High), yuv420p(progressive), 1280x720, 25 fps (default)
[info]     Stream #0:1: Audio: aac (LC), 44100 Hz, mono, fltp (default)
[info]     Metadata:
[info]       ENCODER         : Lavc58.106.100 aac
[info]       DURATION        : 00:01:00.023000000
[info] Input #1, matroska,webm, from 'video1.mkv':
[info]   Duration: 00:01:00.02, start: -0.120000, bitrate: 168 kb/s
[info]     Stream #1:0: Video: h264 (High), yuv420p(progressive), 1280x720, 25 fps (default)
""".splitlines()


def make_stream_reader(data: bytes = b"") -> asyncio.StreamReader:
    """Create a StreamReader that yields `data` and then EOF."""
    reader = asyncio.StreamReader()
    if data:
        reader.feed_data(data)
    reader.feed_eof()
    return reader


class FakeStdin:
    """Minimal stand-in for a subprocess stdin StreamWriter."""

    def __init__(self):
        self.written = bytearray()
        self.closing = False
        self.on_write = None

    def write(self, data: bytes) -> None:
        self.written.extend(data)
        if self.on_write is not None:
            self.on_write()

    async def drain(self) -> None:
        pass

    def is_closing(self) -> bool:
        return self.closing


def make_fake_process(
    returncode: int = 0,
    stdout: bytes = b"",
    stderr: bytes = b"",
    pid: int = 12345,
    exit_event: Optional[asyncio.Event] = None,
) -> MagicMock:
    """
    Create a mock asyncio subprocess.

    The process exits with `returncode` once `exit_event` is set, or
    immediately if no event is given.
    """
    process = MagicMock()
    process.pid = pid
    process.returncode = None
    process.stdin = FakeStdin()
    process.stdout = make_stream_reader(stdout)
    process.stderr = make_stream_reader(stderr)

    async def wait():
        if exit_event is not None:
            await exit_event.wait()
        process.returncode = returncode
        return returncode

    process.wait = wait
    return process


@pytest.fixture
def fake_process():
    """Factory fixture for mock FFmpeg subprocesses."""
    return make_fake_process


@pytest.fixture
def stream_reader():
    """Factory fixture for StreamReaders fed with fixed data."""
    return make_stream_reader
