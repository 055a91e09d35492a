# src/tunnel_backend/control.py
from __future__ import annotations

import asyncio
import os
import struct
from pathlib import Path
from typing import Callable, Optional

from .errors import IPCError
from .logging_utils import get_logger
from .messages import TunnelMessage, encode_message

FRAME_HEAD_LEN = 4  # longueur u32 big-endian
MAX_FRAME_LEN = 64 * 1024
SOCKET_NAME = "control.sock"

Handler = Callable[[bytes], Optional[bytes]]

log = get_logger("ptun.control")


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    """Format : | len (u32 BE) | payload |. Une trame vide = pas de donnée."""
    try:
        head = await reader.readexactly(FRAME_HEAD_LEN)
    except asyncio.IncompleteReadError as e:
        raise IPCError("Connection closed while reading header") from e
    length = struct.unpack(">I", head)[0]
    if length > MAX_FRAME_LEN:
        raise IPCError(f"Frame too large: {length} > {MAX_FRAME_LEN}")
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise IPCError("Connection closed while reading body") from e


async def write_frame(writer: asyncio.StreamWriter, data: Optional[bytes]) -> None:
    payload = data or b""
    if len(payload) > MAX_FRAME_LEN:
        raise IPCError(f"Frame too large: {len(payload)} > {MAX_FRAME_LEN}")
    writer.write(struct.pack(">I", len(payload)) + payload)
    await writer.drain()


async def _close(writer: asyncio.StreamWriter) -> None:
    writer.close()
    try:
        await writer.wait_closed()
    except (ConnectionError, OSError):
        pass


class ControlServer:
    """Côté runtime : une requête, une réponse par connexion."""

    def __init__(self, handler: Handler, socket_path: Path):
        self.handler = handler
        self.socket_path = socket_path
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> "ControlServer":
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        if self.socket_path.exists():
            self.socket_path.unlink()
        self._server = await asyncio.start_unix_server(self._handle, path=str(self.socket_path))
        os.chmod(self.socket_path, 0o600)
        log.info("control channel listening", extra={"socket": str(self.socket_path)})
        return self

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request = await read_frame(reader)
            # message illisible : trame vide plutôt qu'une erreur de canal
            response = self.handler(request) if request else None
            await write_frame(writer, response)
        except (IPCError, ConnectionError) as e:
            log.debug("control request dropped", extra={"error": str(e)})
        finally:
            await _close(writer)

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass


class ControlClient:
    """
    Côté controller. send() ne lève jamais : canal absent, runtime pas encore
    prêt ou réponse vide donnent tous None.
    """

    def __init__(self, socket_path: Path):
        self.socket_path = socket_path

    async def request(self, data: bytes) -> Optional[bytes]:
        try:
            reader, writer = await asyncio.open_unix_connection(str(self.socket_path))
        except OSError as e:
            raise IPCError(f"Control channel unavailable: {e}") from e
        try:
            await write_frame(writer, data)
            response = await read_frame(reader)
        except ConnectionError as e:
            raise IPCError(f"Control channel reset: {e}") from e
        finally:
            await _close(writer)
        return response or None

    async def send(self, data: bytes) -> Optional[bytes]:
        try:
            return await self.request(data)
        except IPCError as e:
            log.debug("IPC send failed", extra={"error": str(e)})
            return None

    async def send_message(self, message: TunnelMessage) -> Optional[bytes]:
        return await self.send(encode_message(message))
