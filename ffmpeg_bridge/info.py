"""
FFmpeg build information.
"""

import asyncio
import logging
import re
import subprocess
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ffmpeg_bridge.config import BridgeConfig, get_config
from ffmpeg_bridge.errors import ProcessExitError, SpawnError

logger = logging.getLogger(__name__)

VERSION_MATCH = re.compile(r"^ffmpeg version (\S+)(?: (.*))?$")
LIBRARY_MATCH = re.compile(r"^(lib\w+)\s+(\d+)\.\s*(\d+)\.\s*(\d+)")


@dataclass
class Version:
    """Output of `ffmpeg -version`."""

    version: str
    copyright: str = ""
    configuration: List[str] = field(default_factory=list)
    libraries: Dict[str, str] = field(default_factory=dict)

    @property
    def libavcodec(self) -> Optional[str]:
        return self.libraries.get("libavcodec")

    @property
    def libavformat(self) -> Optional[str]:
        return self.libraries.get("libavformat")

    @property
    def libavfilter(self) -> Optional[str]:
        return self.libraries.get("libavfilter")


def parse_version(output: str) -> Version:
    """
    Parse the text printed by `ffmpeg -version`.

    Args:
        output: Complete stdout of `ffmpeg -version`

    Returns:
        Version with library versions as `major.minor.micro`

    Raises:
        ValueError: If the first line is not an FFmpeg version banner
    """
    lines = output.splitlines()
    match = VERSION_MATCH.match(lines[0].strip()) if lines else None
    if match is None:
        raise ValueError("Not an FFmpeg version banner")

    version = Version(version=match.group(1), copyright=match.group(2) or "")
    for line in lines[1:]:
        if line.startswith("configuration:"):
            version.configuration = line[len("configuration:"):].split()
            continue
        library = LIBRARY_MATCH.match(line)
        if library:
            name, major, minor, micro = library.groups()
            version.libraries[name] = f"{major}.{minor}.{micro}"
    return version


async def get_version(
    ffmpeg_path: Optional[str] = None,
    config: Optional[BridgeConfig] = None,
) -> Version:
    """
    Run `ffmpeg -version` and parse its output.

    Args:
        ffmpeg_path: Executable (defaults to config.ffmpeg_binary)
        config: Bridge configuration (creates default if not provided)

    Raises:
        SpawnError: If the executable cannot be started
        ProcessExitError: If it exits with a non-zero code
    """
    if config is None:
        config = get_config()
    ffmpeg_path = ffmpeg_path or config.ffmpeg_binary
    args = ["-version"]

    try:
        process = await asyncio.create_subprocess_exec(
            ffmpeg_path,
            *args,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise SpawnError(f"Cannot spawn {ffmpeg_path}: {e}", ffmpeg_path, args) from e

    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        stderr_lines = stderr.decode("utf-8", errors="replace").splitlines()
        raise ProcessExitError(
            f"FFmpeg exited with code {process.returncode}",
            exit_code=process.returncode,
            ffmpeg_path=ffmpeg_path,
            args=args,
            stderr=stderr_lines,
        )

    version = parse_version(stdout.decode("utf-8", errors="replace"))
    logger.debug(f"Detected FFmpeg {version.version} at {ffmpeg_path}")
    return version
