"""Learning the caller's media address from its first RTP packet."""

from __future__ import annotations

import logging

from holdline.rtp.packet import parse_rtp_header
from holdline.rtp.socket import MediaSocket
from holdline.session import CallSession

logger = logging.getLogger(__name__)


async def run_endpoint_discovery(session: CallSession, sock: MediaSocket) -> int:
    """Receive on *sock* until the call ends; return the datagram count.

    The first datagram's source becomes the session's remote media
    address. Later datagrams are only logged; the address is never
    replaced. Closing the socket ends a pending receive.
    """
    received = 0
    logger.debug("Call %s: listening for media on %s", session.call_id, sock.address)
    while not session.is_terminated:
        datagram = await sock.recv()
        if datagram is None:
            break
        data, addr = datagram
        received += 1
        if session.set_remote_media(addr):
            logger.info("Call %s: remote media address is %s:%d", session.call_id, *addr)

        header = parse_rtp_header(data)
        if header is None:
            logger.debug("Call %s: %d non-RTP bytes from %s", session.call_id, len(data), addr)
        else:
            logger.debug(
                "Call %s: RTP pt=%d seq=%d, %d bytes from %s",
                session.call_id,
                header.payload_type,
                header.sequence,
                len(data),
                addr,
            )
    logger.debug("Call %s: discovery stopped after %d datagrams", session.call_id, received)
    return received
