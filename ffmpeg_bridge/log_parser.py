"""
FFmpeg log parser.

Rebuilds per-input format, stream and chapter metadata from the human-readable
diagnostic lines FFmpeg prints on stderr while opening its inputs.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterable, Dict, Iterable, List, Optional, Union

from ffmpeg_bridge.stringify import parse_timestamp

logger = logging.getLogger(__name__)


@dataclass
class LoggedFormat:
    """Container-level information of one input."""

    file: str
    name: str
    start: int = 0  # ms
    duration: Optional[int] = None  # ms
    bitrate: Optional[int] = None  # bits/s
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class LoggedStream:
    """One stream of an input."""

    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class LoggedChapter:
    """One chapter of an input, start and end in milliseconds."""

    start: int
    end: int
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class LoggedInput:
    format: LoggedFormat
    streams: List[LoggedStream] = field(default_factory=list)
    chapters: List[LoggedChapter] = field(default_factory=list)


@dataclass
class Logs:
    inputs: List[LoggedInput] = field(default_factory=list)


class ParserState(str, Enum):
    """States of the diagnostic log automaton."""

    DEFAULT = "default"
    FORMAT = "format"
    FORMAT_METADATA = "format_metadata"
    CHAPTER = "chapter"
    CHAPTER_METADATA = "chapter_metadata"
    STREAM = "stream"
    STREAM_METADATA = "stream_metadata"


_PREFIX = r"^(?:\[info\] )?"

INPUT_MATCH = re.compile(_PREFIX + r"Input #(\d+), (.+?), from '(.*?)':$")
OUTPUT_MATCH = re.compile(_PREFIX + r"Output #\d+, .+, to '.*':$")
FORMAT_METADATA_HEADER = re.compile(_PREFIX + r" {2}Metadata:")
SECTION_METADATA_HEADER = re.compile(_PREFIX + r" {4}Metadata:")
FORMAT_METADATA_MATCH = re.compile(_PREFIX + r" {4}(.*?) *: (.*)$")
SECTION_METADATA_MATCH = re.compile(_PREFIX + r" {6}(.*?) *: (.*)$")
DURATION_MATCH = re.compile(
    _PREFIX
    + r" {2}Duration: (\d{2}:\d{2}:\d{2}\.\d{2}|N/A), "
    r"start: (-?\d*\.\d+), "
    r"bitrate: (?:(\d+(?:\.\d+)?) kb/s|N/A)"
)
CHAPTER_MATCH = re.compile(
    _PREFIX + r" {4}Chapter #\d+:\d+: start (-?\d*\.\d+), end (-?\d*\.\d+)"
)
STREAM_MATCH = re.compile(_PREFIX + r" {4}Stream #\d+:\d+")


def _seconds_to_ms(value: str) -> int:
    return round(float(value) * 1000)


class DiagnosticLogParser:
    """
    Line-oriented state machine over FFmpeg's diagnostic output.

    Feed lines in arrival order with `feed()`; the parsed inputs accumulate
    in `logs`. Unrecognised lines are ignored.
    """

    def __init__(self):
        """Initialize log parser."""
        self.logs = Logs()
        self.state = ParserState.DEFAULT
        self._input: Optional[LoggedInput] = None
        self._metadata: Dict[str, str] = {}
        self._last_key: Optional[str] = None

    def feed(self, line: str) -> None:
        """
        Parse a single diagnostic line.

        Args:
            line: Line of FFmpeg stderr output, with or without line ending
        """
        line = line.rstrip("\r\n")
        state = self.state

        if state is ParserState.FORMAT and FORMAT_METADATA_HEADER.match(line):
            self._enter_metadata(self._input.format.metadata, ParserState.FORMAT_METADATA)
            return

        if state in (ParserState.FORMAT, ParserState.FORMAT_METADATA):
            if self._read_duration(line) or self._read_input(line):
                return
            if state is ParserState.FORMAT_METADATA:
                self._read_metadata(FORMAT_METADATA_MATCH.match(line))
            return

        if state is ParserState.CHAPTER and SECTION_METADATA_HEADER.match(line):
            # A metadata block with no chapter before it has nowhere to go.
            if self._input.chapters:
                self._enter_metadata(
                    self._input.chapters[-1].metadata, ParserState.CHAPTER_METADATA
                )
            return

        if state in (ParserState.CHAPTER, ParserState.CHAPTER_METADATA) and self._read_chapter(line):
            return

        if state is ParserState.STREAM and SECTION_METADATA_HEADER.match(line):
            self._enter_metadata(self._input.streams[-1].metadata, ParserState.STREAM_METADATA)
            return

        if state is not ParserState.DEFAULT and STREAM_MATCH.match(line):
            self._input.streams.append(LoggedStream())
            self.state = ParserState.STREAM
            return

        if self._read_input(line):
            return

        # Output sections list streams too, they belong to no input.
        if OUTPUT_MATCH.match(line):
            self.state = ParserState.DEFAULT
            return

        if state in (ParserState.CHAPTER_METADATA, ParserState.STREAM_METADATA):
            self._read_metadata(SECTION_METADATA_MATCH.match(line))

    def _enter_metadata(self, metadata: Dict[str, str], state: ParserState) -> None:
        self._metadata = metadata
        self._last_key = None
        self.state = state

    def _read_input(self, line: str) -> bool:
        match = INPUT_MATCH.match(line)
        if match is None:
            return False
        _, name, file = match.groups()
        self._input = LoggedInput(format=LoggedFormat(file=file, name=name))
        self.logs.inputs.append(self._input)
        self._metadata = self._input.format.metadata
        self._last_key = None
        self.state = ParserState.FORMAT
        logger.debug(f"Parsing input #{len(self.logs.inputs) - 1}: {file} ({name})")
        return True

    def _read_duration(self, line: str) -> bool:
        match = DURATION_MATCH.match(line)
        if match is None:
            return False
        duration, start, bitrate = match.groups()
        fmt = self._input.format
        if duration != "N/A":
            fmt.duration = parse_timestamp(duration)
        if bitrate is not None:
            fmt.bitrate = round(float(bitrate) * 1000)
        fmt.start = _seconds_to_ms(start)
        self.state = ParserState.CHAPTER
        return True

    def _read_chapter(self, line: str) -> bool:
        match = CHAPTER_MATCH.match(line)
        if match is None:
            return False
        start, end = match.groups()
        self._input.chapters.append(
            LoggedChapter(start=_seconds_to_ms(start), end=_seconds_to_ms(end))
        )
        self.state = ParserState.CHAPTER
        return True

    def _read_metadata(self, match: Optional[re.Match]) -> None:
        if match is None:
            return
        key, value = match.groups()
        if key == "" and self._last_key is not None:
            self._metadata[self._last_key] += f"\n{value}"
        elif key != "":
            self._metadata[key] = value
            self._last_key = key


async def parse_logs(lines: Union[AsyncIterable[str], Iterable[str]]) -> Logs:
    """
    Parse every line of an FFmpeg diagnostic stream.

    Args:
        lines: Lines in arrival order, sync or async

    Returns:
        Logs with one record per input
    """
    parser = DiagnosticLogParser()
    if hasattr(lines, "__aiter__"):
        async for line in lines:
            parser.feed(line)
    else:
        for line in lines:
            parser.feed(line)
    return parser.logs
