"""
qodo-acp entry point

Runs the adapter as a long-lived stdio process: Zed (or any ACP client) spawns
it and speaks newline-delimited JSON-RPC over stdin/stdout.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from contextlib import suppress
from typing import BinaryIO, Optional

from .adapter import AcpAdapter
from .logging_config import configure_logging
from .process_bridge import ProcessBridge
from .server import StdioWriter, open_stdin_reader, open_stdout_writer, serve
from .settings import Settings, get_settings
from .tool_parser import ToolCallParser, ToolVocabularyError, load_tool_vocabulary

logger = logging.getLogger(__name__)


def claim_protocol_stream() -> BinaryIO:
    """Take exclusive ownership of stdout for the protocol.

    The original stdout descriptor is duplicated for the transport; descriptor 1
    and ``sys.stdout`` are then pointed at stderr so that nothing else can write
    to the protocol channel.
    """
    sys.stdout.flush()
    protocol_fd = os.dup(sys.stdout.fileno())
    os.dup2(sys.stderr.fileno(), sys.stdout.fileno())
    sys.stdout = sys.stderr
    return os.fdopen(protocol_fd, "wb")


def build_adapter(settings: Settings, writer: StdioWriter) -> AcpAdapter:
    vocabulary = load_tool_vocabulary(settings.tools_file)
    bridge = ProcessBridge.from_settings(settings)
    return AcpAdapter(
        bridge,
        writer.send,
        parser=ToolCallParser(vocabulary),
        error_profile=settings.error_profile,
    )


async def run(
    settings: Settings,
    protocol_out: BinaryIO,
    *,
    reader: Optional[asyncio.StreamReader] = None,
    writer: Optional[StdioWriter] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> int:
    if writer is None:
        writer = await open_stdout_writer(protocol_out)
    adapter = build_adapter(settings, writer)
    loop = asyncio.get_running_loop()
    stop = stop_event or asyncio.Event()

    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError, RuntimeError, ValueError):
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)

    if reader is None:
        reader = await open_stdin_reader(settings.read_limit)

    serve_task = asyncio.create_task(serve(adapter, reader, writer))
    stop_task = asyncio.create_task(stop.wait())
    try:
        done, pending = await asyncio.wait(
            {serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if stop_task in done:
            logger.info("Termination signal received")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        if serve_task in done and serve_task.exception() is not None:
            logger.error("Server loop failed", exc_info=serve_task.exception())
    finally:
        await adapter.shutdown()
        await writer.close()
        for sig in installed:
            loop.remove_signal_handler(sig)

    return 0


def main() -> int:
    configure_logging()
    try:
        settings = get_settings()
        # Fail before touching stdout if the vocabulary file is broken.
        load_tool_vocabulary(settings.tools_file)
    except (ValueError, ToolVocabularyError) as exc:
        logger.error("Invalid configuration", extra={"error": str(exc)})
        return 2

    protocol_out = claim_protocol_stream()
    try:
        return asyncio.run(run(settings, protocol_out))
    finally:
        with suppress(OSError):
            protocol_out.close()


