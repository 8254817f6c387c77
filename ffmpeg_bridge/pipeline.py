"""
FFmpeg pipeline builder.

Assembles FFmpeg's argument vector from global options, inputs and outputs,
allocating a conduit wherever a source or destination is an in-process
stream rather than a path or URL.
"""

import logging
import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from ffmpeg_bridge.conduit import (
    CONDUIT_PROTOCOL,
    Conduit,
    ConduitManager,
    Direction,
    check_source,
    is_literal,
    to_sink,
)
from ffmpeg_bridge.config import BridgeConfig, LogLevel, get_config
from ffmpeg_bridge.errors import ConfigurationError
from ffmpeg_bridge.process import FFmpegProcess, ReportOptions, spawn
from ffmpeg_bridge.stringify import (
    escape_concat_file,
    escape_tee_component,
    stringify_filter_description,
    stringify_milliseconds,
    stringify_value,
)

logger = logging.getLogger(__name__)

NULL_DEVICE = "NUL" if sys.platform == "win32" else "/dev/null"


@dataclass
class ConcatSource:
    """One entry of a concat input; times are in milliseconds."""

    file: Any
    duration: Optional[int] = None
    inpoint: Optional[int] = None
    outpoint: Optional[int] = None


class _Spec:
    """Arguments and address shared by inputs and outputs."""

    def __init__(self):
        self._args: List[str] = []
        self._literal: Optional[str] = None
        self._conduit: Optional[Conduit] = None

    @property
    def address(self) -> str:
        """The path, URL or conduit URL FFmpeg will open."""
        if self._conduit is not None:
            return self._conduit.url
        return self._literal

    @property
    def is_stream(self) -> bool:
        return self._conduit is not None

    def args(self, *args: Any) -> "_Spec":
        self._args.extend(str(arg) for arg in args)
        return self

    def format(self, name: str) -> "_Spec":
        return self.args("-f", name)

    def codec(self, name: str) -> "_Spec":
        return self.args("-c", name)

    def video_codec(self, name: str) -> "_Spec":
        return self.args("-c:V", name)

    def audio_codec(self, name: str) -> "_Spec":
        return self.args("-c:a", name)

    def subtitle_codec(self, name: str) -> "_Spec":
        return self.args("-c:s", name)

    def duration(self, ms: int) -> "_Spec":
        return self.args("-t", stringify_milliseconds(ms))

    def start(self, ms: int) -> "_Spec":
        return self.args("-ss", stringify_milliseconds(ms))


class InputSpec(_Spec):
    """One FFmpeg input."""

    def __init__(self, literal: Optional[str] = None, conduit: Optional[Conduit] = None):
        super().__init__()
        self._literal = literal
        self._conduit = conduit

    def offset(self, ms: int) -> "InputSpec":
        return self.args("-itsoffset", stringify_milliseconds(ms))

    def get_args(self) -> List[str]:
        return [*self._args, "-i", self.address]


class OutputSpec(_Spec):
    """One FFmpeg output, possibly fanned out to several destinations."""

    def __init__(self, literals: Sequence[str] = (), conduit: Optional[Conduit] = None):
        super().__init__()
        self._literals = list(literals)
        self._conduit = conduit
        self._video_filters: List[str] = []
        self._audio_filters: List[str] = []

    @property
    def address(self) -> str:
        components = list(self._literals)
        if self._conduit is not None:
            components.insert(0, self._conduit.url)
        if not components:
            return NULL_DEVICE
        if len(components) == 1:
            return components[0]
        return "tee:" + "|".join(escape_tee_component(c) for c in components)

    def video_filter(
        self,
        name: str,
        options: Optional[Union[Mapping[str, Any], Sequence[Any]]] = None,
    ) -> "OutputSpec":
        self._video_filters.append(stringify_filter_description(name, options))
        return self

    def audio_filter(
        self,
        name: str,
        options: Optional[Union[Mapping[str, Any], Sequence[Any]]] = None,
    ) -> "OutputSpec":
        self._audio_filters.append(stringify_filter_description(name, options))
        return self

    def map(self, *streams: str) -> "OutputSpec":
        for stream in streams:
            self.args("-map", stream)
        return self

    def metadata(self, tags: Mapping[str, Any], specifier: Optional[str] = None) -> "OutputSpec":
        """Set metadata tags, optionally for a stream specifier such as `s:0`."""
        option = f"-metadata:{specifier}" if specifier else "-metadata"
        for key, value in tags.items():
            self.args(option, f"{key}={stringify_value(value)}")
        return self

    def get_args(self) -> List[str]:
        args: List[str] = []
        if self._video_filters:
            args.extend(["-filter:V", ",".join(self._video_filters)])
        if self._audio_filters:
            args.extend(["-filter:a", ",".join(self._audio_filters)])
        return [*args, *self._args, self.address]


class PipelineBuilder:
    """
    Builds an FFmpeg invocation from inputs and outputs.

    Paths and URLs are passed to FFmpeg verbatim; bytes, iterables, async
    iterables, readers and writers are bridged through local conduits that
    start listening on `spawn()`.

    Example:
        >>> pipeline = PipelineBuilder()
        >>> pipeline.add_input(video_bytes)
        >>> pipeline.add_output("out.mkv").codec("copy")
        >>> process = await pipeline.spawn()
        >>> await process.complete()
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        log_level: Optional[LogLevel] = None,
        overwrite: Optional[bool] = None,
        progress: Optional[bool] = None,
    ):
        """
        Initialize pipeline builder.

        Args:
            config: Bridge configuration (creates default if not provided)
            log_level: Overrides config.log_level
            overwrite: Overrides config.overwrite
            progress: Overrides config.progress
        """
        if config is None:
            config = get_config()

        self.config = config
        self.log_level = LogLevel(log_level if log_level is not None else config.log_level)
        self.overwrite = config.overwrite if overwrite is None else overwrite
        self.progress = config.progress if progress is None else progress

        self.conduits = ConduitManager(config)
        self._args: List[str] = []
        self._inputs: List[InputSpec] = []
        self._outputs: List[OutputSpec] = []
        self._spawned = False

    def args(self, *args: Any) -> "PipelineBuilder":
        """Append global arguments."""
        self._args.extend(str(arg) for arg in args)
        return self

    def add_input(self, source: Any) -> InputSpec:
        """
        Add an input.

        Args:
            source: Path or URL, or bytes, an (async) iterable of bytes, an
                asyncio.StreamReader or a readable file-like object

        Returns:
            The new InputSpec
        """
        if is_literal(source):
            spec = InputSpec(literal=os.fspath(source))
        else:
            check_source(source)
            spec = InputSpec(conduit=self.conduits.allocate(Direction.SOURCE, source=source))
        self._inputs.append(spec)
        return spec

    def add_concat_input(
        self,
        sources: Iterable[Union[Any, ConcatSource, Dict[str, Any]]],
        safe: bool = False,
        protocols: Optional[Sequence[str]] = None,
    ) -> InputSpec:
        """
        Add an input concatenating several sources with the concat demuxer.

        Args:
            sources: Paths, streams, or ConcatSource entries (or equivalent
                dicts) with optional duration/inpoint/outpoint in ms
            safe: Restrict file names the demuxer accepts (-safe 1)
            protocols: Protocols the listed files may use; defaults to the
                conduit protocol only, an empty list omits the whitelist

        Returns:
            The new InputSpec
        """
        lines = ["ffconcat version 1.0"]
        for entry in sources:
            if isinstance(entry, dict):
                entry = ConcatSource(**entry)
            elif not isinstance(entry, ConcatSource):
                entry = ConcatSource(file=entry)

            if is_literal(entry.file):
                location = os.fspath(entry.file)
            else:
                check_source(entry.file)
                location = self.conduits.allocate(Direction.SOURCE, source=entry.file).url
            lines.append(f"file {escape_concat_file(location)}")

            for directive in ("duration", "inpoint", "outpoint"):
                value = getattr(entry, directive)
                if value is not None:
                    lines.append(f"{directive} {stringify_milliseconds(value)}")

        document = ("\n".join(lines) + "\n").encode("utf-8")
        spec = InputSpec(conduit=self.conduits.allocate(Direction.SOURCE, source=document))
        spec.args("-f", "concat", "-safe", "1" if safe else "0")

        whitelist = [CONDUIT_PROTOCOL] if protocols is None else list(protocols)
        if whitelist:
            spec.args("-protocol_whitelist", ",".join(whitelist))

        self._inputs.append(spec)
        return spec

    def add_output(self, *destinations: Any) -> OutputSpec:
        """
        Add an output.

        No destination discards the output (the null device); one path or
        URL is used verbatim; in-process writers, generators or sinks share
        one conduit, and several destinations are joined with the tee
        protocol.

        Returns:
            The new OutputSpec
        """
        literals: List[str] = []
        sinks = []
        for destination in destinations:
            if is_literal(destination):
                literals.append(os.fspath(destination))
            else:
                sinks.append(to_sink(destination))

        conduit = None
        if sinks:
            conduit = self.conduits.allocate(Direction.SINK, sinks=sinks)

        spec = OutputSpec(literals=literals, conduit=conduit)
        self._outputs.append(spec)
        return spec

    def _build_global_options(self) -> List[str]:
        options = ["-y" if self.overwrite else "-n", "-hide_banner"]
        if self.progress:
            options.extend(["-progress", "pipe:1", "-nostats"])
        options.extend(["-loglevel", f"level+{self.log_level.value}"])
        return [*options, *self._args]

    def materialize_arguments(self) -> List[str]:
        """
        Build the complete argument vector, without the executable.

        Raises:
            ConfigurationError: If no input or no output was added
        """
        if not self._inputs:
            raise ConfigurationError("No input specified")
        if not self._outputs:
            raise ConfigurationError("No output specified")

        args = self._build_global_options()
        for spec in self._inputs:
            args.extend(spec.get_args())
        for spec in self._outputs:
            args.extend(spec.get_args())
        return args

    async def spawn(
        self,
        ffmpeg_path: Optional[str] = None,
        parse_logs: bool = False,
        report: Union[bool, ReportOptions] = False,
    ) -> FFmpegProcess:
        """
        Start every conduit listening, then spawn FFmpeg.

        Args:
            ffmpeg_path: Executable (defaults to config.ffmpeg_binary)
            parse_logs: Parse input metadata from stderr
            report: Enable FFREPORT

        Raises:
            ConfigurationError: If no input or no output was added, or the pipeline
                was already spawned
            ConduitError: If a conduit could not be bound
        """
        if self._spawned:
            raise ConfigurationError("Pipeline was already spawned")
        # Fail before binding anything.
        self.materialize_arguments()

        if parse_logs and self.log_level in (
            LogLevel.QUIET,
            LogLevel.PANIC,
            LogLevel.FATAL,
            LogLevel.ERROR,
            LogLevel.WARNING,
        ):
            logger.warning(
                f"Log level {self.log_level.value} hides input metadata, parsed logs will be empty"
            )

        self._spawned = True
        await self.conduits.listen_all()
        # Addresses may have changed while binding.
        args = self.materialize_arguments()

        return await spawn(
            args,
            ffmpeg_path=ffmpeg_path,
            conduits=self.conduits,
            parse_logs=parse_logs,
            report=report,
            config=self.config,
        )

    def get_command_string(self, ffmpeg_path: Optional[str] = None) -> str:
        """
        Get the FFmpeg command as a single string (useful for logging).

        Returns:
            Space-separated command string
        """
        binary = ffmpeg_path or self.config.ffmpeg_binary
        return " ".join([binary, *self.materialize_arguments()])
