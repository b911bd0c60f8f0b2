"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from typing import Any

from holdline.audio.source import AudioSource
from holdline.rtp.socket import MediaSocket, MediaSocketPair


class FakeTransport(asyncio.DatagramTransport):
    """Captures sendto() calls for test assertions."""

    def __init__(self, sockname: tuple[str, int] = ("10.0.0.2", 5060)) -> None:
        super().__init__(extra={"sockname": sockname})
        self.sent: list[tuple[bytes, tuple[str, int]]] = []
        self.closed = False
        self.close_calls = 0
        self.fail_with: OSError | None = None

    def sendto(self, data: Any, addr: Any = None) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if addr is not None:
            self.sent.append((bytes(data), addr))

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True


def make_media_socket(port: int = 40000) -> tuple[MediaSocket, FakeTransport]:
    """A MediaSocket wired to a FakeTransport instead of a real socket."""
    transport = FakeTransport(sockname=("10.0.0.2", port))
    sock = MediaSocket()
    sock.connection_made(transport)
    return sock, transport


def make_media_pair(port: int = 40000) -> tuple[MediaSocketPair, FakeTransport, FakeTransport]:
    rtp, rtp_transport = make_media_socket(port)
    control, control_transport = make_media_socket(port + 1)
    return MediaSocketPair(rtp, control), rtp_transport, control_transport


class ChunkSource(AudioSource):
    """Hands out fixed-size chunks of one byte value, then reports exhaustion."""

    def __init__(self, frames: int, frame_size: int = 320, fill: int = 0xFF) -> None:
        self._remaining = frames * frame_size
        self._fill = fill
        self.reads = 0
        self.closed = False

    def read(self, buffer: bytearray) -> int:
        self.reads += 1
        n = min(len(buffer), self._remaining)
        buffer[:n] = bytes([self._fill]) * n
        self._remaining -= n
        return n

    def close(self) -> None:
        self.closed = True


class FakePool:
    """Records execute() calls the way an asyncpg pool would receive them."""

    def __init__(self, fail_with: BaseException | None = None) -> None:
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_with = fail_with

    async def execute(self, query: str, *args: Any) -> str:
        if self.fail_with is not None:
            raise self.fail_with
        self.executed.append((query, args))
        return "OK"


async def wait_until(predicate: Any, timeout: float = 2.0) -> None:
    """Poll *predicate* on the loop until it holds, failing after *timeout*."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)
