"""SDP answer construction and offer parsing."""

from __future__ import annotations

import dataclasses
import random

from holdline.rtp.socket import MediaAddress

SESSION_NAME = "holdline"


@dataclasses.dataclass(frozen=True)
class AudioFormat:
    """One RTP/AVP payload format (RFC 3551)."""

    payload_type: int
    encoding: str
    clock_rate: int


PCMU = AudioFormat(payload_type=0, encoding="PCMU", clock_rate=8000)


@dataclasses.dataclass(frozen=True)
class MediaDescriptor:
    """Negotiated media for one call, rendered as an SDP answer."""

    session_id: int
    address: str
    port: int
    audio_format: AudioFormat
    ptime: int | None = None
    session_name: str = SESSION_NAME

    def to_sdp(self) -> str:
        fmt = self.audio_format
        lines = [
            "v=0",
            # RFC 4566 §5.2: the version may start at the session id
            f"o={SESSION_NAME} {self.session_id} {self.session_id} IN IP4 {self.address}",
            f"s={self.session_name}",
            f"c=IN IP4 {self.address}",
            "t=0 0",
            f"m=audio {self.port} RTP/AVP {fmt.payload_type}",
            f"a=rtpmap:{fmt.payload_type} {fmt.encoding}/{fmt.clock_rate}",
        ]
        if self.ptime is not None:
            lines.append(f"a=ptime:{self.ptime}")
        lines.append("a=sendrecv")
        lines.append("")
        return "\r\n".join(lines)


def new_session_id() -> int:
    return random.randint(1, 0xFFFFFFFF)


def build_media_descriptor(
    local: MediaAddress,
    *,
    session_id: int | None = None,
    audio_format: AudioFormat = PCMU,
    ptime: int | None = None,
) -> MediaDescriptor:
    """Describe a single audio stream received on *local*."""
    if not local.host:
        raise ValueError("Local media address has no host")
    if not 0 < local.port < 65536:
        raise ValueError(f"Invalid local media port {local.port}")
    return MediaDescriptor(
        session_id=new_session_id() if session_id is None else session_id,
        address=local.host,
        port=local.port,
        audio_format=audio_format,
        ptime=ptime,
    )


@dataclasses.dataclass
class SdpOffer:
    """Audio endpoint advertised in an SDP offer."""

    audio_port: int
    connection_address: str


def parse_sdp_offer(sdp: str) -> SdpOffer:
    audio_port = 0
    connection_address = "0.0.0.0"
    for line in sdp.splitlines():
        line = line.strip()
        if line.startswith("m=audio "):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                audio_port = int(parts[1])
        elif line.startswith("c=IN IP4 "):
            # c=IN IP4 <address>[/<ttl>]
            connection_address = line[len("c=IN IP4 ") :].split("/")[0].strip()
    return SdpOffer(audio_port=audio_port, connection_address=connection_address)
