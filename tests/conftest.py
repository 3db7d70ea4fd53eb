"""Pytest fixtures: fake clamd daemon, clients and pipelines wired to it."""
import asyncio
import socket
import struct
from typing import Callable, List, Optional

import pytest

from services.clam_av import ClamAVService
from services.scan_policy import ScanPolicyConfig, ScanPolicyEngine
from workflows.upload_pipeline import UploadPipeline

EICAR = b'X5O!P%@AP[4\\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*'


class FakeClamd:
    """
    Minimal clamd speaking the z-command protocol on 127.0.0.1.

    Records every command and the raw INSTREAM frames it received. The reply
    to INSTREAM comes from ``responder(content)``; returning None makes the
    daemon hang without answering.
    """

    def __init__(self) -> None:
        self.commands: List[bytes] = []
        self.frames: List[bytes] = []
        self.raw_streams: List[bytes] = []
        self.responder: Callable[[bytes], Optional[bytes]] = lambda content: b"stream: OK\0"
        self.server: Optional[asyncio.AbstractServer] = None
        self.port = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()

    @property
    def contents(self) -> List[bytes]:
        return [b"".join(self._payloads(raw)) for raw in self.raw_streams]

    def _payloads(self, raw: bytes) -> List[bytes]:
        payloads = []
        offset = 0
        while offset < len(raw):
            (length,) = struct.unpack(">I", raw[offset:offset + 4])
            offset += 4
            if length == 0:
                break
            payloads.append(raw[offset:offset + length])
            offset += length
        return payloads

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            command = await reader.readuntil(b"\0")
            self.commands.append(command)

            if command == b"zPING\0":
                writer.write(b"PONG\0")
            elif command == b"zVERSION\0":
                writer.write(b"ClamAV 1.3.1/27400/Mon Oct 19 08:00:00 2026\0")
            elif command == b"zSTATS\0":
                writer.write(b"POOLS: 1\n\nSTATE: VALID PRIMARY\nTHREADS: live 1  idle 0 max 10\nEND\0")
            elif command == b"zINSTREAM\0":
                raw = bytearray()
                content = bytearray()
                while True:
                    prefix = await reader.readexactly(4)
                    raw += prefix
                    self.frames.append(prefix)
                    (length,) = struct.unpack(">I", prefix)
                    if length == 0:
                        break
                    chunk = await reader.readexactly(length)
                    raw += chunk
                    content += chunk
                self.raw_streams.append(bytes(raw))

                reply = self.responder(bytes(content))
                if reply is None:
                    # hold the connection open until the client gives up
                    await reader.read()
                    return
                writer.write(reply)

            await writer.drain()
        finally:
            writer.close()


@pytest.fixture
async def clamd():
    daemon = FakeClamd()
    await daemon.start()
    yield daemon
    await daemon.stop()


@pytest.fixture
def eicar_responder():
    def respond(content: bytes) -> bytes:
        if EICAR in content:
            return b"stream: EICAR-STANDARD-ANTIVIRUS-TEST-FILE FOUND\0"
        return b"stream: OK\0"
    return respond


@pytest.fixture
def closed_port() -> int:
    """A local port with nothing listening on it"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


@pytest.fixture
def make_pipeline():
    def build(port: int, strictness: str = "fail-closed", skip_scanning: bool = False,
              timeout: float = 2.0) -> UploadPipeline:
        config = ScanPolicyConfig(
            daemon_host="127.0.0.1",
            daemon_port=port,
            timeout_seconds=timeout,
            strictness=strictness,
            skip_scanning=skip_scanning,
        )
        return UploadPipeline(ScanPolicyEngine(config))
    return build


@pytest.fixture
def client_for():
    def build(port: int, timeout: float = 2.0, **kwargs) -> ClamAVService:
        return ClamAVService(daemon_host="127.0.0.1", daemon_port=port, timeout=timeout, **kwargs)
    return build
