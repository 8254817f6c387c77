"""
Exceptions raised by the FFmpeg bridge and the failure message classifier.
"""

import re
from typing import Iterable, Optional, Sequence

# Matches the `[level] ` prefix added by `-loglevel level+...`.
LEVEL_PREFIX = re.compile(r"^\[(trace|debug|verbose|info|warning|error|fatal|panic)\] ")

ERROR_LEVELS = frozenset({"error", "fatal", "panic"})


class FFmpegBridgeError(Exception):
    """Base class for all FFmpeg bridge errors."""

    pass


class ConfigurationError(FFmpegBridgeError, ValueError):
    """Raised synchronously when the bridge is used incorrectly."""

    pass


class SpawnError(FFmpegBridgeError):
    """Raised when the FFmpeg executable cannot be started."""

    def __init__(self, message: str, ffmpeg_path: str, args: Sequence[str]):
        super().__init__(message)
        self.ffmpeg_path = ffmpeg_path
        self.ffmpeg_args = list(args)


class ConduitError(FFmpegBridgeError):
    """Raised when a conduit cannot bind or a bridged transfer fails."""

    def __init__(self, message: str, address: Optional[str] = None):
        super().__init__(message)
        self.address = address


class ProcessExitError(FFmpegBridgeError):
    """Raised when FFmpeg exits with a non-zero code."""

    def __init__(
        self,
        message: str,
        exit_code: Optional[int],
        ffmpeg_path: str,
        args: Sequence[str],
        stderr: Sequence[str] = (),
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.ffmpeg_path = ffmpeg_path
        self.ffmpeg_args = list(args)
        self.stderr = list(stderr)


def extract_message(stderr: Iterable[str]) -> Optional[str]:
    """
    Find the most specific human-readable failure message in stderr lines.

    Only `error`, `fatal` and `panic` lines are considered, plus unprefixed
    lines that are not indented. A line starting with `[NULL @ ...] ` wins
    over the first `label: detail` line. If neither exists, the text of the
    first error-level line is used as is.

    Args:
        stderr: Diagnostic lines in arrival order

    Returns:
        The message, or None if no line qualifies
    """
    message = None
    first_error = None
    for line in stderr:
        line = line.rstrip("\r\n")
        match = LEVEL_PREFIX.match(line)
        level = match.group(1) if match else None
        if level is not None:
            if level not in ERROR_LEVELS:
                continue
            line = line[match.end():]
        elif line[:1].isspace():
            continue
        if not line:
            continue

        if line.startswith("[NULL @ ") and "] " in line:
            return line[line.index("] ") + 2:]
        if message is None and ": " in line:
            message = line[line.index(": ") + 2:]
        if first_error is None and level is not None:
            first_error = line
    return message if message is not None else first_error


def exit_error_message(exit_code: Optional[int], stderr: Iterable[str]) -> str:
    """Build the message attached to a ProcessExitError."""
    message = extract_message(stderr)
    if message:
        return message
    if exit_code is None or exit_code < 0:
        return "FFmpeg exited prematurely, was it killed?"
    return f"FFmpeg exited with code {exit_code}"
