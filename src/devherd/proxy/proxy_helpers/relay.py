"""Byte relays between client and upstream streams; nothing is buffered whole."""

from __future__ import annotations

import asyncio
import logging

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


class BodyTooLarge(Exception):
    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"request body exceeds {limit} bytes")


class BadChunk(ValueError):
    pass


async def _drain(writer: asyncio.StreamWriter, data: bytes) -> None:
    writer.write(data)
    await writer.drain()


async def relay_fixed(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, length: int) -> int:
    """Copy exactly *length* bytes."""
    remaining = length
    while remaining > 0:
        chunk = await reader.read(min(CHUNK_SIZE, remaining))
        if not chunk:
            raise asyncio.IncompleteReadError(b"", remaining)
        await _drain(writer, chunk)
        remaining -= len(chunk)
    return length


async def relay_chunked(reader: asyncio.StreamReader, writer: asyncio.StreamWriter, limit: int) -> int:
    """Copy a chunked body verbatim, counting decoded bytes against *limit*.

    Raises:
        BodyTooLarge: More than *limit* payload bytes were announced
        BadChunk: The chunk framing is invalid
    """
    total = 0
    while True:
        size_line = await reader.readuntil(b"\r\n")
        size_text = size_line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError as exc:
            raise BadChunk(f"bad chunk size {size_text!r}") from exc
        total += size
        if total > limit:
            raise BodyTooLarge(limit)
        await _drain(writer, size_line)
        if size == 0:
            # Trailer section, terminated by an empty line.
            while True:
                line = await reader.readuntil(b"\r\n")
                await _drain(writer, line)
                if line == b"\r\n":
                    return total
        await relay_fixed(reader, writer, size + 2)


async def relay_until_eof(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> int:
    total = 0
    while True:
        chunk = await reader.read(CHUNK_SIZE)
        if not chunk:
            return total
        await _drain(writer, chunk)
        total += len(chunk)


async def _pipe(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    try:
        await relay_until_eof(reader, writer)
    except (ConnectionError, asyncio.IncompleteReadError):  # policy_guard: allow-silent-handler
        logger.debug("Tunnel side closed abruptly")
    finally:
        if writer.can_write_eof():
            try:
                writer.write_eof()
            except (OSError, RuntimeError):  # Best-effort cleanup operation  # policy_guard: allow-silent-handler
                logger.debug("Could not half-close tunnel side")


async def tunnel(
    client_reader: asyncio.StreamReader,
    client_writer: asyncio.StreamWriter,
    upstream_reader: asyncio.StreamReader,
    upstream_writer: asyncio.StreamWriter,
) -> None:
    """Relay raw bytes both ways after an upgrade until both directions finish."""
    await asyncio.gather(
        _pipe(client_reader, upstream_writer),
        _pipe(upstream_reader, client_writer),
    )
