"""
Local conduits.

A conduit is an ephemeral local endpoint that FFmpeg opens as if it were a
file. On POSIX it is a Unix domain socket (`unix:/tmp/...sock`), on Windows a
named pipe (`file:\\\\.\\pipe\\...`). Each conduit accepts exactly one
connection and bridges it to in-process byte sources or sinks.
"""

import asyncio
import inspect
import logging
import os
import select
import sys
import uuid
from abc import ABC, abstractmethod
from contextlib import suppress
from enum import Enum
from typing import Any, AsyncIterator, Iterable, List, Optional

from ffmpeg_bridge.config import BridgeConfig
from ffmpeg_bridge.errors import ConduitError

logger = logging.getLogger(__name__)

IS_WIN32 = sys.platform == "win32"

# Protocol FFmpeg uses to open a conduit, also the default concat whitelist.
CONDUIT_PROTOCOL = "file" if IS_WIN32 else "unix"

# Event loop iterations `ConduitManager.settle()` waits for queued connections.
# Accepting a connection and creating its protocol takes two iterations.
SETTLE_IDLE_ITERATIONS = 3
SETTLE_MAX_ITERATIONS = 100


class Direction(str, Enum):
    """Which side of a conduit produces the bytes."""

    SOURCE = "source"  # process reads
    SINK = "sink"  # process writes


def generate_address(directory: str, prefix: str) -> str:
    """Generate a unique local endpoint address."""
    name = f"{prefix}-{uuid.uuid4().hex}"
    if IS_WIN32:
        return f"\\\\.\\pipe\\{name}"
    return os.path.join(directory, f"{name}.sock")


def address_to_url(address: str) -> str:
    """Turn a conduit address into the URL passed to FFmpeg."""
    return f"{CONDUIT_PROTOCOL}:{address}"


class _UnixListener:
    """Listens on a Unix domain socket path."""

    async def start(self, address: str, protocol_factory) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.create_unix_server(protocol_factory, path=address)

    def has_backlog(self, server: Any) -> bool:
        readable, _, _ = select.select(server.sockets, [], [], 0)
        return bool(readable)

    def cleanup(self, address: str) -> None:
        with suppress(FileNotFoundError):
            os.unlink(address)


class _PipeListener:
    """Listens on a Windows named pipe (requires the proactor event loop)."""

    async def start(self, address: str, protocol_factory) -> Any:
        loop = asyncio.get_running_loop()
        servers = await loop.start_serving_pipe(protocol_factory, address)
        return servers[0]

    def has_backlog(self, server: Any) -> bool:
        return False

    def cleanup(self, address: str) -> None:
        pass


_LISTENER = _PipeListener() if IS_WIN32 else _UnixListener()


def is_literal(value: Any) -> bool:
    """Return True if a source or destination is a plain path or URL."""
    return isinstance(value, (str, os.PathLike))


def check_source(source: Any) -> None:
    """
    Validate that a source can be streamed.

    Raises:
        TypeError: If the source is neither bytes, an iterable of bytes, nor readable
    """
    if isinstance(source, (bytes, bytearray, memoryview, asyncio.StreamReader)):
        return
    if hasattr(source, "read") or hasattr(source, "__aiter__") or hasattr(source, "__iter__"):
        return
    raise TypeError(f"Unsupported input source: {type(source).__name__}")


async def iter_source(source: Any, chunk_size: int) -> AsyncIterator[bytes]:
    """Normalize any supported source into an async iterator of byte chunks."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        yield bytes(source)
    elif isinstance(source, asyncio.StreamReader):
        while True:
            chunk = await source.read(chunk_size)
            if not chunk:
                break
            yield chunk
    elif hasattr(source, "read"):
        while True:
            chunk = source.read(chunk_size)
            if inspect.isawaitable(chunk):
                chunk = await chunk
            if not chunk:
                break
            yield bytes(chunk)
    elif hasattr(source, "__aiter__"):
        async for chunk in source:
            yield bytes(chunk)
    else:
        for chunk in source:
            yield bytes(chunk)


class Sink(ABC):
    """A destination for bytes written by FFmpeg, closed at most once."""

    def __init__(self):
        self.closed = False

    @abstractmethod
    async def write(self, chunk: bytes) -> None:
        """Deliver one chunk of FFmpeg output."""

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._close()

    async def _close(self) -> None:
        pass


class BufferSink(Sink):
    """Collects every chunk in memory; read them with `getvalue()`."""

    def __init__(self):
        super().__init__()
        self._chunks: List[bytes] = []

    async def write(self, chunk: bytes) -> None:
        self._chunks.append(chunk)

    def getvalue(self) -> bytes:
        return b"".join(self._chunks)


class _WritableSink(Sink):
    """Wraps file-like objects, asyncio stream writers and async writers."""

    def __init__(self, target: Any):
        super().__init__()
        self._target = target

    async def write(self, chunk: bytes) -> None:
        result = self._target.write(chunk)
        if inspect.isawaitable(result):
            await result
        if hasattr(self._target, "drain"):
            await self._target.drain()

    async def _close(self) -> None:
        target = self._target
        if hasattr(target, "flush") and not hasattr(target, "drain"):
            result = target.flush()
            if inspect.isawaitable(result):
                await result
        if hasattr(target, "close"):
            result = target.close()
            if inspect.isawaitable(result):
                await result
        if hasattr(target, "wait_closed"):
            with suppress(ConnectionError):
                await target.wait_closed()


class _GeneratorSink(Sink):
    """Sends chunks into a (sync or async) generator."""

    def __init__(self, generator: Any):
        super().__init__()
        self._generator = generator
        self._is_async = inspect.isasyncgen(generator)
        self._started = False
        self._finished = False

    async def _send(self, value: Optional[bytes]) -> None:
        try:
            if self._is_async:
                await self._generator.asend(value)
            else:
                self._generator.send(value)
        except (StopIteration, StopAsyncIteration):
            self._finished = True
            logger.debug("Generator sink finished before the end of the stream")

    async def write(self, chunk: bytes) -> None:
        if not self._started:
            self._started = True
            await self._send(None)
        if not self._finished:
            await self._send(chunk)

    async def _close(self) -> None:
        if self._is_async:
            await self._generator.aclose()
        else:
            self._generator.close()


def to_sink(destination: Any) -> Sink:
    """
    Adapt an output destination to a Sink.

    Raises:
        TypeError: If the destination cannot receive bytes
    """
    if isinstance(destination, Sink):
        return destination
    if inspect.isasyncgen(destination) or inspect.isgenerator(destination):
        return _GeneratorSink(destination)
    if hasattr(destination, "write"):
        return _WritableSink(destination)
    raise TypeError(f"Unsupported output destination: {type(destination).__name__}")


class Conduit:
    """
    One-shot local endpoint bridging one FFmpeg connection to in-process streams.

    The conduit listens from `listen()` until its first connection, then stops
    accepting. It is closed after that connection is bridged or when `close()`
    is called, whichever comes first.
    """

    def __init__(
        self,
        direction: Direction,
        config: BridgeConfig,
        source: Any = None,
        sinks: Iterable[Sink] = (),
    ):
        self.direction = direction
        self.config = config
        self.address = generate_address(config.conduit_dir, config.conduit_prefix)
        self.source = source
        self.sinks: List[Sink] = list(sinks)
        self.error: Optional[ConduitError] = None

        self._server: Optional[Any] = None
        self._accepted = False
        self._closed = False
        self._done = asyncio.Event()

    @property
    def url(self) -> str:
        return address_to_url(self.address)

    @property
    def listening(self) -> bool:
        return self._server is not None

    @property
    def closed(self) -> bool:
        return self._closed

    async def listen(self) -> None:
        """
        Start listening, regenerating the address on bind failures.

        Raises:
            ConduitError: If no address could be bound
        """
        if self._closed:
            raise ConduitError("Conduit is closed", self.address)

        attempts = self.config.conduit_bind_attempts
        last_error: Optional[OSError] = None
        for attempt in range(1, attempts + 1):
            try:
                self._server = await _LISTENER.start(self.address, self._protocol_factory)
                logger.debug(f"Conduit listening on {self.address} ({self.direction.value})")
                return
            except OSError as e:
                last_error = e
                logger.warning(
                    f"Failed to bind conduit {self.address} (attempt {attempt}/{attempts}): {e}"
                )
                self.address = generate_address(self.config.conduit_dir, self.config.conduit_prefix)

        raise ConduitError(
            f"Could not bind a conduit after {attempts} attempts: {last_error}",
            self.address,
        ) from last_error

    def _claim(self) -> bool:
        if self._accepted or self._closed:
            return False
        self._accepted = True
        return True

    def _protocol_factory(self) -> asyncio.StreamReaderProtocol:
        # Runs when the loop accepts a connection, before the bridge task starts.
        callback = self._serve if self._claim() else self._refuse
        return asyncio.StreamReaderProtocol(asyncio.StreamReader(), callback)

    def _refuse(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    async def bridge(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Bridge the first accepted connection, refuse any later one."""
        if not self._claim():
            self._refuse(reader, writer)
            return
        await self._serve(reader, writer)

    def has_backlog(self) -> bool:
        """Return True while a connection is queued on the listener."""
        if self._server is None or self._accepted:
            return False
        return _LISTENER.has_backlog(self._server)

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._stop_listening()
        logger.debug(f"Conduit {self.address} accepted a connection")

        try:
            if self.direction is Direction.SOURCE:
                await self._feed(writer)
            else:
                await self._fan_out(reader, writer)
        finally:
            self._closed = True
            self._done.set()

    async def _feed(self, writer: asyncio.StreamWriter) -> None:
        try:
            async for chunk in iter_source(self.source, self.config.source_chunk_size):
                writer.write(chunk)
                await writer.drain()
        except ConnectionError as e:
            # FFmpeg may stop reading early, e.g. when an output duration is reached.
            logger.debug(f"Conduit {self.address} closed by FFmpeg: {e}")
            writer.transport.abort()
            return
        except Exception as e:
            self._fail(f"Reading source for {self.address} failed: {e}", e)
            writer.transport.abort()
            return

        writer.close()
        with suppress(ConnectionError):
            await writer.wait_closed()

    async def _fan_out(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            while True:
                chunk = await reader.read(self.config.source_chunk_size)
                if not chunk:
                    break
                for sink in self.sinks:
                    await sink.write(chunk)
        except Exception as e:
            self._fail(f"Writing output from {self.address} failed: {e}", e)
        finally:
            for sink in self.sinks:
                try:
                    await sink.close()
                except Exception as e:
                    self._fail(f"Closing output sink of {self.address} failed: {e}", e)
            writer.close()

    def _fail(self, message: str, cause: BaseException) -> None:
        logger.warning(message)
        if self.error is None:
            self.error = ConduitError(message, self.address)
            self.error.__cause__ = cause

    def _stop_listening(self) -> None:
        if self._server is not None:
            self._server.close()
            self._server = None
            _LISTENER.cleanup(self.address)

    def close(self) -> None:
        """Stop listening. Safe to call more than once."""
        self._stop_listening()
        if not self._accepted:
            self._closed = True
            self._done.set()

    async def wait_closed(self) -> None:
        """Wait until the conduit is closed and its connection fully bridged."""
        await self._done.wait()


class ConduitManager:
    """Allocates conduits for one pipeline and manages their lifetime."""

    def __init__(self, config: BridgeConfig):
        self.config = config
        self.conduits: List[Conduit] = []

    def allocate(
        self,
        direction: Direction,
        source: Any = None,
        sinks: Iterable[Sink] = (),
    ) -> Conduit:
        """Create a conduit with a fresh address; it listens on `listen_all()`."""
        conduit = Conduit(direction, self.config, source=source, sinks=sinks)
        self.conduits.append(conduit)
        logger.debug(f"Allocated {direction.value} conduit {conduit.address}")
        return conduit

    async def listen_all(self) -> None:
        """
        Start every conduit listening.

        Raises:
            ConduitError: If any conduit fails to bind; all conduits are closed
        """
        try:
            for conduit in self.conduits:
                await conduit.listen()
        except ConduitError:
            self.close_all()
            raise

    async def settle(self) -> None:
        """
        Give queued connections a chance to be accepted.

        Called after the process exits and before `close_all()`. A process may
        connect, write its output and exit before the event loop accepted the
        connection. Closing the listener at that point would discard the data.
        """
        idle = 0
        for _ in range(SETTLE_MAX_ITERATIONS):
            await asyncio.sleep(0)
            if any(c.has_backlog() for c in self.conduits):
                idle = 0
            else:
                idle += 1
            if idle >= SETTLE_IDLE_ITERATIONS:
                return
        logger.warning("Conduit listeners still had queued connections when closing")

    def close_all(self) -> None:
        for conduit in self.conduits:
            conduit.close()

    async def wait_sinks(self) -> None:
        """Wait for every sink conduit to finish delivering its output."""
        await asyncio.gather(
            *(c.wait_closed() for c in self.conduits if c.direction is Direction.SINK)
        )

    @property
    def errors(self) -> List[ConduitError]:
        return [c.error for c in self.conduits if c.error is not None]
