"""Newline-delimited JSON-RPC transport over standard input/output."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, Dict, Optional

from .adapter import AcpAdapter

logger = logging.getLogger(__name__)

CLOSE_WAIT = 2.0


class StdioWriter:
    """Write one JSON document per line to the protocol stream.

    ``send`` hands each line to a non-blocking pipe transport, which keeps
    messages in the order they are produced; ``drain`` waits for a slow reader.
    """

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer
        self._closed = False

    def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            logger.debug("Protocol stream closed, dropping message", extra={"method": message.get("method")})
            return
        if self._writer.transport.is_closing():
            self._closed = True
            logger.error("Protocol stream closed by peer")
            return
        data = json.dumps(message, ensure_ascii=False, separators=(",", ":"))
        self._writer.write(data.encode("utf-8") + b"\n")

    async def drain(self) -> None:
        try:
            await self._writer.drain()
        except ConnectionError as exc:
            self._closed = True
            logger.error("Protocol stream closed by peer", extra={"error": str(exc)})

    async def close(self) -> None:
        """Flush what is buffered, bounded by ``CLOSE_WAIT``, then close the pipe."""
        if not self._writer.transport.is_closing():
            try:
                await asyncio.wait_for(self.drain(), timeout=CLOSE_WAIT)
            except asyncio.TimeoutError:
                logger.warning("Protocol stream did not drain before close")
        self._closed = True
        self._writer.close()


async def open_stdout_writer(stream: Optional[Any] = None) -> StdioWriter:
    loop = asyncio.get_running_loop()
    transport, protocol = await loop.connect_write_pipe(
        asyncio.streams.FlowControlMixin, stream or sys.stdout
    )
    return StdioWriter(asyncio.StreamWriter(transport, protocol, None, loop))


async def open_stdin_reader(limit: int, stream: Optional[Any] = None) -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=limit)
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, stream or sys.stdin)
    return reader


async def serve(
    adapter: AcpAdapter,
    reader: asyncio.StreamReader,
    writer: Optional[StdioWriter] = None,
) -> None:
    """Feed inbound lines to the adapter, in arrival order, until EOF."""
    logger.info("Server started, waiting for messages")
    while True:
        try:
            raw = await reader.readline()
        except ValueError as exc:
            logger.warning("Dropping oversized line", extra={"error": str(exc)})
            continue
        if not raw:
            logger.info("Input stream closed")
            return
        await adapter.handle_line(raw.decode("utf-8", errors="replace"))
        if writer is not None:
            await writer.drain()
