"""UDP socket pairs for RTP media and its control channel."""

from __future__ import annotations

import asyncio
import logging
from typing import NamedTuple

from holdline.errors import PortAllocationError, TransmissionFault

logger = logging.getLogger(__name__)

# Datagrams beyond this many unread ones are dropped, oldest first
RECV_QUEUE_SIZE = 256


class MediaAddress(NamedTuple):
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.host}:{self.port}"


class MediaSocket(asyncio.DatagramProtocol):
    """A bound UDP endpoint with an awaitable ``recv``.

    ``recv`` returns None once the socket is closed, which wakes any task
    blocked on it. ``close`` may be called any number of times.
    """

    def __init__(self) -> None:
        self._transport: asyncio.DatagramTransport | None = None
        self._queue: asyncio.Queue[tuple[bytes, tuple[str, int]] | None] = asyncio.Queue()
        self._error: Exception | None = None
        self._closed = False
        self.packets_sent = 0

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        if self._closed:
            return
        if self._queue.qsize() >= RECV_QUEUE_SIZE:
            self._queue.get_nowait()
        self._queue.put_nowait((data, (addr[0], addr[1])))

    def error_received(self, exc: Exception) -> None:
        # ICMP errors from an earlier sendto surface here
        logger.debug("Media socket %s error: %s", self.address, exc)
        self._error = exc

    def connection_lost(self, exc: Exception | None) -> None:
        self._closed = True
        self._queue.put_nowait(None)

    @property
    def address(self) -> MediaAddress:
        sockname = None
        if self._transport is not None:
            sockname = self._transport.get_extra_info("sockname")
        if not sockname:
            return MediaAddress("0.0.0.0", 0)
        return MediaAddress(sockname[0], sockname[1])

    @property
    def closed(self) -> bool:
        return self._closed

    async def recv(self) -> tuple[bytes, tuple[str, int]] | None:
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is None:
            # Leave the sentinel for any other waiter
            self._queue.put_nowait(None)
        return item

    def sendto(self, data: bytes, addr: tuple[str, int]) -> None:
        if self._closed or self._transport is None:
            raise TransmissionFault(f"media socket closed, cannot send to {addr}")
        if self._error is not None:
            exc, self._error = self._error, None
            raise TransmissionFault(f"sending to {addr} failed: {exc}") from exc
        try:
            self._transport.sendto(data, addr)
        except OSError as exc:
            raise TransmissionFault(f"sending to {addr} failed: {exc}") from exc
        self.packets_sent += 1

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            self._transport.close()
        self._queue.put_nowait(None)


class MediaSocketPair:
    """The RTP data socket and its control (RTCP) companion."""

    def __init__(self, rtp: MediaSocket, control: MediaSocket) -> None:
        self.rtp = rtp
        self.control = control
        self._closed = False

    @property
    def address(self) -> MediaAddress:
        return self.rtp.address

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.rtp.close()
        self.control.close()
        logger.debug("Closed media sockets on %s", self.rtp.address)


async def _bind(host: str, port: int) -> MediaSocket | None:
    loop = asyncio.get_running_loop()
    try:
        _, protocol = await loop.create_datagram_endpoint(MediaSocket, local_addr=(host, port))
    except OSError:
        return None
    return protocol


async def create_media_sockets(
    host: str,
    port_min: int,
    port_max: int,
    *,
    strict: bool = False,
) -> MediaSocketPair:
    """Bind an RTP socket on an even port and a control socket next to it.

    With *strict* the control socket must sit on RTP port + 1; otherwise any
    free port in the range is accepted. ``port_min == 0`` asks the OS for
    ephemeral ports. Raises PortAllocationError when nothing fits.
    """
    if port_min == 0:
        return await _create_ephemeral(host, strict=strict)

    start = port_min + (port_min % 2)
    for port in range(start, port_max, 2):
        rtp = await _bind(host, port)
        if rtp is None:
            continue
        control = await _bind(host, port + 1)
        if control is None and not strict:
            control = await _first_free(host, port_min, port_max, exclude={port, port + 1})
        if control is None:
            rtp.close()
            continue
        logger.debug("Allocated media ports %d/%d", port, control.address.port)
        return MediaSocketPair(rtp, control)

    raise PortAllocationError(
        f"No free {'adjacent ' if strict else ''}media ports in {port_min}-{port_max} on {host}"
    )


async def _first_free(
    host: str, port_min: int, port_max: int, *, exclude: set[int]
) -> MediaSocket | None:
    for port in range(port_min, port_max + 1):
        if port in exclude:
            continue
        sock = await _bind(host, port)
        if sock is not None:
            return sock
    return None


async def _create_ephemeral(host: str, *, strict: bool, attempts: int = 20) -> MediaSocketPair:
    for _ in range(attempts):
        rtp = await _bind(host, 0)
        if rtp is None:
            break
        port = rtp.address.port
        if port % 2:
            rtp.close()
            continue
        control = await _bind(host, port + 1)
        if control is None and not strict:
            control = await _bind(host, 0)
        if control is None:
            rtp.close()
            continue
        return MediaSocketPair(rtp, control)
    raise PortAllocationError(f"Could not bind an ephemeral media port pair on {host}")
