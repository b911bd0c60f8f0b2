"""RTP fixed header (RFC 3550 §5.1) encoding and decoding."""

from __future__ import annotations

import dataclasses
import struct

RTP_VERSION = 2
HEADER = struct.Struct("!BBHII")


@dataclasses.dataclass(frozen=True)
class RtpHeader:
    payload_type: int
    sequence: int
    timestamp: int
    ssrc: int
    marker: bool


def build_rtp_packet(
    seq: int,
    timestamp: int,
    ssrc: int,
    payload: bytes,
    *,
    payload_type: int = 0,
    marker: bool = False,
) -> bytes:
    """Prepend a 12-byte RTP header (no padding, extension or CSRCs)."""
    header = HEADER.pack(
        RTP_VERSION << 6,
        (0x80 if marker else 0) | (payload_type & 0x7F),
        seq & 0xFFFF,
        timestamp & 0xFFFFFFFF,
        ssrc & 0xFFFFFFFF,
    )
    return header + payload


def parse_rtp_header(data: bytes) -> RtpHeader | None:
    """Decode the fixed header, or None if *data* is not RTP version 2."""
    if len(data) < HEADER.size:
        return None
    first, second, seq, timestamp, ssrc = HEADER.unpack_from(data)
    if first >> 6 != RTP_VERSION:
        return None
    return RtpHeader(
        payload_type=second & 0x7F,
        sequence=seq,
        timestamp=timestamp,
        ssrc=ssrc,
        marker=bool(second & 0x80),
    )
