"""
Tests for local conduits.

Socket tests bind real Unix domain sockets in a temporary directory.
"""

import asyncio
import io
import os
import socket
import sys
from pathlib import Path
from typing import List
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from ffmpeg_bridge.conduit import (
    BufferSink,
    Conduit,
    ConduitManager,
    Direction,
    Sink,
    address_to_url,
    check_source,
    generate_address,
    is_literal,
    iter_source,
    to_sink,
)
from ffmpeg_bridge.config import BridgeConfig
from ffmpeg_bridge.errors import ConduitError

unix_only = pytest.mark.skipif(sys.platform == "win32", reason="Unix domain sockets")


class RecordingSink(Sink):
    """Sink that records every write and close."""

    def __init__(self):
        super().__init__()
        self.events: List = []

    async def write(self, chunk: bytes) -> None:
        self.events.append(chunk)

    async def _close(self) -> None:
        self.events.append("close")


class FailingSink(RecordingSink):
    async def write(self, chunk: bytes) -> None:
        raise IOError("disk full")


class ChunkReader:
    """Reader returning fixed chunks, then EOF."""

    def __init__(self, chunks: List[bytes]):
        self._chunks = list(chunks)

    async def read(self, n: int = -1) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


def make_writer() -> MagicMock:
    writer = MagicMock()
    writer.drain = AsyncMock()
    writer.wait_closed = AsyncMock()
    return writer


async def collect(source, chunk_size: int = 1024) -> List[bytes]:
    return [chunk async for chunk in iter_source(source, chunk_size)]


class TestAddresses:
    """Test address generation."""

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX socket paths")
    def test_generate_address(self, temp_dir: Path):
        """Test addresses live in the directory and carry the prefix."""
        address = generate_address(str(temp_dir), "test")

        assert os.path.dirname(address) == str(temp_dir)
        assert os.path.basename(address).startswith("test-")
        assert address.endswith(".sock")
        assert address_to_url(address) == f"unix:{address}"

    def test_addresses_are_unique(self, temp_dir: Path):
        """Test every call yields a new address."""
        addresses = {generate_address(str(temp_dir), "test") for _ in range(100)}
        assert len(addresses) == 100

    def test_is_literal(self, temp_dir: Path):
        """Test paths and strings are literal, streams are not."""
        assert is_literal("input.mkv")
        assert is_literal(temp_dir / "input.mkv")
        assert not is_literal(b"bytes")
        assert not is_literal(io.BytesIO())


class TestSources:
    """Test source normalization."""

    def test_check_source_rejects_unsupported(self):
        """Test unsupported sources raise TypeError."""
        with pytest.raises(TypeError):
            check_source(42)

    def test_check_source_accepts_streams(self):
        """Test supported sources pass."""
        check_source(b"data")
        check_source(io.BytesIO(b"data"))
        check_source([b"a", b"b"])

    @pytest.mark.asyncio
    async def test_bytes_source(self):
        """Test bytes-like sources are sent whole."""
        assert await collect(bytearray(b"abc")) == [b"abc"]

    @pytest.mark.asyncio
    async def test_file_like_source(self):
        """Test file-like sources are read in chunks."""
        chunks = await collect(io.BytesIO(b"x" * 2500), chunk_size=1024)
        assert [len(c) for c in chunks] == [1024, 1024, 452]

    @pytest.mark.asyncio
    async def test_async_read_source(self):
        """Test objects with a coroutine read() are awaited."""

        class AsyncFile:
            def __init__(self):
                self._data = [b"one", b"two"]

            async def read(self, n: int) -> bytes:
                return self._data.pop(0) if self._data else b""

        assert await collect(AsyncFile()) == [b"one", b"two"]

    @pytest.mark.asyncio
    async def test_stream_reader_source(self, stream_reader):
        """Test asyncio StreamReaders are read until EOF."""
        chunks = await collect(stream_reader(b"stream data"))
        assert b"".join(chunks) == b"stream data"

    @pytest.mark.asyncio
    async def test_iterable_sources(self):
        """Test sync and async iterables of bytes."""

        async def agen():
            yield b"a"
            yield b"b"

        assert await collect([b"a", b"b"]) == [b"a", b"b"]
        assert await collect(agen()) == [b"a", b"b"]


class TestSinks:
    """Test sink adapters."""

    def test_to_sink_rejects_unsupported(self):
        """Test destinations without write are rejected."""
        with pytest.raises(TypeError):
            to_sink(42)

    def test_sink_requires_write(self):
        """Test Sink cannot be used without a write implementation."""
        with pytest.raises(TypeError):
            Sink()

        class NoWrite(Sink):
            pass

        with pytest.raises(TypeError):
            NoWrite()

    @pytest.mark.asyncio
    async def test_buffer_sink(self):
        """Test BufferSink collects chunks."""
        sink = BufferSink()
        await sink.write(b"A")
        await sink.write(b"B")
        await sink.close()

        assert sink.getvalue() == b"AB"
        assert sink.closed

    @pytest.mark.asyncio
    async def test_close_once(self):
        """Test closing a sink twice closes it once."""
        sink = RecordingSink()
        await sink.close()
        await sink.close()

        assert sink.events == ["close"]

    @pytest.mark.asyncio
    async def test_file_like_sink(self):
        """Test file-like destinations are written, flushed and closed."""
        target = MagicMock(spec=["write", "flush", "close"])
        sink = to_sink(target)

        await sink.write(b"A")
        await sink.close()

        target.write.assert_called_once_with(b"A")
        target.flush.assert_called_once()
        target.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_async_writer_sink(self):
        """Test writers with coroutine write/close are awaited."""
        received = []

        class AsyncWriter:
            closed = False

            async def write(self, chunk: bytes) -> None:
                received.append(chunk)

            async def close(self) -> None:
                self.closed = True

        writer = AsyncWriter()
        sink = to_sink(writer)
        await sink.write(b"A")
        await sink.close()

        assert received == [b"A"]
        assert writer.closed

    @pytest.mark.asyncio
    async def test_async_generator_sink(self):
        """Test chunks are sent into async generators."""
        received = []

        async def consumer():
            while True:
                chunk = yield
                received.append(chunk)

        sink = to_sink(consumer())
        await sink.write(b"A")
        await sink.write(b"B")
        await sink.close()

        assert received == [b"A", b"B"]

    @pytest.mark.asyncio
    async def test_generator_sink_finishing_early(self):
        """Test a generator that returns stops receiving chunks."""
        received = []

        def take_one():
            chunk = yield
            received.append(chunk)

        sink = to_sink(take_one())
        await sink.write(b"A")
        await sink.write(b"B")
        await sink.close()

        assert received == [b"A"]


class TestBridge:
    """Test bridging one accepted connection."""

    @pytest.mark.asyncio
    async def test_fan_out_to_all_sinks(self, test_config: BridgeConfig):
        """Test every sink receives every chunk in order, then closes once."""
        first, second = RecordingSink(), RecordingSink()
        conduit = Conduit(Direction.SINK, test_config, sinks=[first, second])
        writer = make_writer()

        await conduit.bridge(ChunkReader([b"A", b"B"]), writer)

        assert first.events == [b"A", b"B", "close"]
        assert second.events == [b"A", b"B", "close"]
        assert conduit.closed
        assert conduit.error is None
        writer.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_failing_sink_records_error(self, test_config: BridgeConfig):
        """Test a sink failure is recorded and every sink is still closed."""
        failing, recording = FailingSink(), RecordingSink()
        conduit = Conduit(Direction.SINK, test_config, sinks=[failing, recording])

        await conduit.bridge(ChunkReader([b"A"]), make_writer())

        assert isinstance(conduit.error, ConduitError)
        assert isinstance(conduit.error.__cause__, IOError)
        assert failing.closed
        assert recording.closed

    @pytest.mark.asyncio
    async def test_feed_source(self, test_config: BridgeConfig):
        """Test a source is written to the connection, then closed."""
        conduit = Conduit(Direction.SOURCE, test_config, source=[b"A", b"B"])
        writer = make_writer()

        await conduit.bridge(ChunkReader([]), writer)

        assert [c.args[0] for c in writer.write.call_args_list] == [b"A", b"B"]
        writer.close.assert_called_once()
        writer.transport.abort.assert_not_called()

    @pytest.mark.asyncio
    async def test_failing_source_aborts_connection(self, test_config: BridgeConfig):
        """Test a read error aborts the connection and is recorded."""

        def broken():
            yield b"A"
            raise IOError("read failed")

        conduit = Conduit(Direction.SOURCE, test_config, source=broken())
        writer = make_writer()

        await conduit.bridge(ChunkReader([]), writer)

        writer.transport.abort.assert_called_once()
        assert isinstance(conduit.error, ConduitError)
        assert "read failed" in str(conduit.error)

    @pytest.mark.asyncio
    async def test_process_closing_source_early(self, test_config: BridgeConfig):
        """Test FFmpeg hanging up mid-transfer is not an error."""
        conduit = Conduit(Direction.SOURCE, test_config, source=[b"A", b"B"])
        writer = make_writer()
        writer.drain.side_effect = BrokenPipeError()

        await conduit.bridge(ChunkReader([]), writer)

        writer.transport.abort.assert_called_once()
        assert conduit.error is None

    @pytest.mark.asyncio
    async def test_second_connection_refused(self, test_config: BridgeConfig):
        """Test only the first connection is bridged."""
        sink = RecordingSink()
        conduit = Conduit(Direction.SINK, test_config, sinks=[sink])
        await conduit.bridge(ChunkReader([b"A"]), make_writer())

        late_writer = make_writer()
        await conduit.bridge(ChunkReader([b"B"]), late_writer)

        late_writer.close.assert_called_once()
        assert sink.events == [b"A", "close"]


@unix_only
class TestConduitSockets:
    """Test conduits over real Unix domain sockets."""

    @pytest.mark.asyncio
    async def test_source_conduit(self, test_config: BridgeConfig):
        """Test a client reads the whole source, then the socket is gone."""
        data = b"0123456789" * 1000
        conduit = Conduit(Direction.SOURCE, test_config, source=data)
        await conduit.listen()
        assert conduit.listening
        assert os.path.exists(conduit.address)

        reader, writer = await asyncio.open_unix_connection(conduit.address)
        received = await reader.read()
        writer.close()
        await conduit.wait_closed()

        assert received == data
        assert conduit.closed
        assert not conduit.listening
        assert not os.path.exists(conduit.address)

    @pytest.mark.asyncio
    async def test_sink_conduit(self, test_config: BridgeConfig):
        """Test bytes written by a client reach every sink."""
        first, second = BufferSink(), BufferSink()
        conduit = Conduit(Direction.SINK, test_config, sinks=[first, second])
        await conduit.listen()

        reader, writer = await asyncio.open_unix_connection(conduit.address)
        writer.write(b"A")
        writer.write(b"B")
        await writer.drain()
        writer.close()
        await conduit.wait_closed()

        assert first.getvalue() == b"AB"
        assert second.getvalue() == b"AB"
        assert first.closed and second.closed

    @pytest.mark.asyncio
    async def test_one_shot(self, test_config: BridgeConfig):
        """Test the conduit stops listening after its first connection."""
        conduit = Conduit(Direction.SOURCE, test_config, source=b"once")
        await conduit.listen()

        reader, writer = await asyncio.open_unix_connection(conduit.address)
        assert await reader.read() == b"once"
        writer.close()

        with pytest.raises(OSError):
            await asyncio.open_unix_connection(conduit.address)

    @pytest.mark.asyncio
    async def test_close_before_connection(self, test_config: BridgeConfig):
        """Test close() stops listening and is idempotent."""
        conduit = Conduit(Direction.SOURCE, test_config, source=b"unused")
        await conduit.listen()

        conduit.close()
        conduit.close()
        await asyncio.wait_for(conduit.wait_closed(), timeout=1)

        assert conduit.closed
        assert not os.path.exists(conduit.address)

        with pytest.raises(ConduitError):
            await conduit.listen()

    @pytest.mark.asyncio
    async def test_bind_retry_with_new_address(self, test_config: BridgeConfig):
        """Test a taken address is replaced by a fresh one."""
        conduit = Conduit(Direction.SOURCE, test_config, source=b"data")
        taken = conduit.address
        Path(taken).touch()

        await conduit.listen()

        assert conduit.address != taken
        assert conduit.listening
        conduit.close()

    @pytest.mark.asyncio
    async def test_bind_failure(self, test_config: BridgeConfig, temp_dir: Path):
        """Test ConduitError after every bind attempt fails."""
        config = test_config.model_copy(update={"conduit_dir": str(temp_dir / "missing")})
        conduit = Conduit(Direction.SOURCE, config, source=b"data")

        with pytest.raises(ConduitError) as exc_info:
            await conduit.listen()

        assert "3 attempts" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, OSError)


class TestConduitManager:
    """Test conduit allocation and lifetime."""

    def test_allocate(self, test_config: BridgeConfig):
        """Test allocation registers conduits with distinct addresses."""
        manager = ConduitManager(test_config)
        source = manager.allocate(Direction.SOURCE, source=b"data")
        sink = manager.allocate(Direction.SINK, sinks=[BufferSink()])

        assert manager.conduits == [source, sink]
        assert source.address != sink.address
        assert not source.listening

    @pytest.mark.asyncio
    async def test_listen_all_failure_closes_all(self, test_config: BridgeConfig):
        """Test a bind failure closes every conduit before raising."""
        manager = ConduitManager(test_config)
        first = manager.allocate(Direction.SOURCE, source=b"a")
        second = manager.allocate(Direction.SOURCE, source=b"b")

        listener = MagicMock()
        listener.start = AsyncMock(side_effect=OSError("address in use"))
        with patch("ffmpeg_bridge.conduit._LISTENER", listener):
            with pytest.raises(ConduitError):
                await manager.listen_all()

        assert listener.start.await_count == test_config.conduit_bind_attempts
        assert first.closed
        assert second.closed

    @pytest.mark.asyncio
    async def test_wait_sinks_and_errors(self, test_config: BridgeConfig):
        """Test wait_sinks returns once sink conduits finish, errors are collected."""
        manager = ConduitManager(test_config)
        manager.allocate(Direction.SOURCE, source=b"never connected")
        sink = manager.allocate(Direction.SINK, sinks=[FailingSink()])

        await sink.bridge(ChunkReader([b"A"]), make_writer())
        await asyncio.wait_for(manager.wait_sinks(), timeout=1)

        assert manager.errors == [sink.error]

        manager.close_all()
        manager.close_all()
        assert all(c.closed for c in manager.conduits)

    @unix_only
    @pytest.mark.asyncio
    async def test_queued_connection_survives_close(self, test_config: BridgeConfig):
        """Test output sent before the listener accepted is delivered after settle()."""
        manager = ConduitManager(test_config)
        sink = BufferSink()
        conduit = manager.allocate(Direction.SINK, sinks=[sink])
        await manager.listen_all()

        # A blocking client connects without yielding to the event loop.
        client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        client.connect(conduit.address)
        client.sendall(b"late output")
        client.close()
        assert conduit.has_backlog()

        await manager.settle()
        manager.close_all()
        await asyncio.wait_for(manager.wait_sinks(), timeout=1)

        assert sink.getvalue() == b"late output"
        assert sink.closed
        assert not os.path.exists(conduit.address)

    @pytest.mark.asyncio
    async def test_settle_without_listeners(self, test_config: BridgeConfig):
        """Test settle() returns at once when nothing is listening."""
        manager = ConduitManager(test_config)
        manager.allocate(Direction.SOURCE, source=b"data")

        await asyncio.wait_for(manager.settle(), timeout=1)
