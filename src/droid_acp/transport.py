"""
Newline-delimited JSON framing over asyncio streams.

Used for the droid's stdin/stdout pipes. The ACP side of the bridge is framed by
the ``acp`` SDK itself.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator

from .errors import DroidProcessError

logger = logging.getLogger(__name__)

# Droid messages can carry whole file contents; asyncio's 64 KiB default is too small.
STREAM_LIMIT = 16 * 1024 * 1024


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize a message as one JSON line."""
    return (json.dumps(message, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


def decode_line(line: bytes | str) -> dict[str, Any] | None:
    """
    Decode one line into a JSON object.

    Returns None for blank or malformed lines; malformed ones are logged.
    """
    raw = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    raw = raw.strip()
    if not raw:
        return None

    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Dropping malformed line ({e}): {raw[:200]}")
        return None

    if not isinstance(message, dict):
        logger.warning(f"Dropping non-object message: {raw[:200]}")
        return None

    return message


class LineTransport:
    """Reads and writes JSON objects, one per line."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter | None = None,
    ):
        self._reader = reader
        self._writer = writer
        self._closed = False

    @property
    def writable(self) -> bool:
        return (
            self._writer is not None
            and not self._closed
            and not self._writer.is_closing()
        )

    async def send(self, message: dict[str, Any]) -> None:
        """Write a message and wait for the pipe to drain."""
        if not self.writable:
            raise DroidProcessError("Output stream is closed")

        assert self._writer is not None
        try:
            self._writer.write(encode_message(message))
            await self._writer.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._closed = True
            raise DroidProcessError(f"Output stream broken: {e}") from e

    async def messages(self) -> AsyncIterator[dict[str, Any]]:
        """Yield decoded messages in arrival order until EOF."""
        while True:
            try:
                line = await self._reader.readline()
            except ValueError as e:
                # Over-long line; the reader has already discarded it.
                logger.warning(f"Dropping over-long line: {e}")
                continue

            if not line:
                break

            message = decode_line(line)
            if message is not None:
                yield message

    def close(self) -> None:
        """Close the output stream. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True

        if self._writer is None:
            return
        try:
            if self._writer.can_write_eof():
                self._writer.write_eof()
        except (OSError, RuntimeError) as e:
            logger.debug(f"write_eof failed (ignored): {e}")
        self._writer.close()


__all__ = ["LineTransport", "STREAM_LIMIT", "decode_line", "encode_message"]
