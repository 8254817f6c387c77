"""
FFmpeg bridge configuration.

Settings for the ffmpeg binary, the default argument prefix and the local
conduits used to stream bytes in and out of the process.
"""

import tempfile
from enum import Enum

from pydantic import ConfigDict, Field
from pydantic_settings import BaseSettings


class LogLevel(str, Enum):
    """FFmpeg log levels."""

    QUIET = "quiet"
    PANIC = "panic"
    FATAL = "fatal"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    VERBOSE = "verbose"
    DEBUG = "debug"
    TRACE = "trace"


# Numeric values used by FFREPORT's `level` key.
LOG_LEVEL_NUMBERS = {
    LogLevel.QUIET: -8,
    LogLevel.PANIC: 0,
    LogLevel.FATAL: 8,
    LogLevel.ERROR: 16,
    LogLevel.WARNING: 24,
    LogLevel.INFO: 32,
    LogLevel.VERBOSE: 40,
    LogLevel.DEBUG: 48,
    LogLevel.TRACE: 56,
}


class BridgeConfig(BaseSettings):
    """FFmpeg bridge configuration from environment variables."""

    # FFmpeg binary
    ffmpeg_binary: str = Field(
        default="ffmpeg",
        description="Path to FFmpeg binary",
    )

    # Global arguments
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="FFmpeg log level, info or higher is needed to parse input metadata",
    )

    overwrite: bool = Field(
        default=True,
        description="Overwrite output files (-y) instead of failing (-n)",
    )

    progress: bool = Field(
        default=True,
        description="Write machine-readable progress to stdout (-progress pipe:1)",
    )

    # Conduits
    conduit_dir: str = Field(
        default_factory=tempfile.gettempdir,
        description="Directory for Unix domain socket conduits",
    )

    conduit_prefix: str = Field(
        default="ffmpeg-bridge",
        description="Prefix of generated conduit addresses",
        min_length=1,
    )

    conduit_bind_attempts: int = Field(
        default=3,
        description="Attempts to bind a conduit listener before giving up",
        ge=1,
        le=10,
    )

    source_chunk_size: int = Field(
        default=65536,
        description="Chunk size in bytes when reading file-like sources",
        ge=1024,
        le=16 * 1024 * 1024,
    )

    # Diagnostics
    stderr_tail_lines: int = Field(
        default=32,
        description="Trailing stderr lines kept to classify a failed exit",
        ge=1,
        le=1000,
    )

    model_config = ConfigDict(
        env_prefix="FFMPEG_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra fields from environment
    )


def get_config() -> BridgeConfig:
    """
    Get FFmpeg bridge configuration from environment variables.

    Returns:
        BridgeConfig: Configuration instance
    """
    return BridgeConfig()
