"""
FFmpeg Bridge

Drive FFmpeg from asyncio: build its arguments, stream in-process bytes to
and from it through one-shot local sockets, supervise the process and parse
its progress and diagnostic logs.

Version: 1.0.0
"""

__version__ = "1.0.0"

from ffmpeg_bridge.conduit import BufferSink, Conduit, ConduitManager, Direction, Sink
from ffmpeg_bridge.config import BridgeConfig, LogLevel, get_config
from ffmpeg_bridge.errors import (
    ConduitError,
    ConfigurationError,
    FFmpegBridgeError,
    ProcessExitError,
    SpawnError,
)
from ffmpeg_bridge.info import Version, get_version
from ffmpeg_bridge.log_parser import (
    DiagnosticLogParser,
    LoggedChapter,
    LoggedFormat,
    LoggedInput,
    LoggedStream,
    Logs,
    parse_logs,
)
from ffmpeg_bridge.pipeline import ConcatSource, InputSpec, OutputSpec, PipelineBuilder
from ffmpeg_bridge.process import FFmpegProcess, Progress, ProcessState, ReportOptions, spawn

__all__ = [
    "BridgeConfig",
    "BufferSink",
    "ConcatSource",
    "Conduit",
    "ConduitError",
    "ConduitManager",
    "ConfigurationError",
    "DiagnosticLogParser",
    "Direction",
    "FFmpegBridgeError",
    "FFmpegProcess",
    "InputSpec",
    "LogLevel",
    "LoggedChapter",
    "LoggedFormat",
    "LoggedInput",
    "LoggedStream",
    "Logs",
    "OutputSpec",
    "PipelineBuilder",
    "ProcessExitError",
    "ProcessState",
    "Progress",
    "ReportOptions",
    "Sink",
    "SpawnError",
    "Version",
    "get_config",
    "get_version",
    "parse_logs",
    "spawn",
]
