"""End-to-end call tests over real UDP sockets."""

from __future__ import annotations

import asyncio
import functools

import pytest
import pytest_asyncio

from holdline.audio.source import BufferAudioSource
from holdline.rtp.packet import build_rtp_packet, parse_rtp_header
from holdline.rtp.socket import create_media_sockets
from holdline.server import CallServer
from holdline.sip.message import SipMessage, header_tag, parse_message
from holdline.sip.sdp import parse_sdp_offer
from holdline.sip.transport import start_transport

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _ClientProtocol(asyncio.DatagramProtocol):
    """Collects incoming datagrams in a queue."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue[bytes] = asyncio.Queue()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self.queue.put_nowait(data)


async def _recv(queue: asyncio.Queue[bytes], timeout: float = 2.0) -> SipMessage:
    """Receive and parse one datagram, raising TimeoutError to avoid hangs."""
    return parse_message(await asyncio.wait_for(queue.get(), timeout=timeout))


_SDP_BODY = (
    "v=0\r\n"
    "o=test 0 0 IN IP4 127.0.0.1\r\n"
    "s=test\r\n"
    "c=IN IP4 127.0.0.1\r\n"
    "t=0 0\r\n"
    "m=audio 0 RTP/AVP 0\r\n"
)


def _build_request(
    method: str,
    server_port: int,
    client_port: int,
    *,
    call_id: str = "e2e-invite",
    branch: str = "z9hG4bKinv",
    cseq: str = "1",
    body: str = "",
    to_tag: str | None = None,
) -> bytes:
    to = "<sip:holdline@127.0.0.1>"
    if to_tag:
        to = f"{to};tag={to_tag}"
    lines = [
        f"{method} sip:holdline@127.0.0.1:{server_port} SIP/2.0",
        f"Via: SIP/2.0/UDP 127.0.0.1:{client_port};branch={branch}",
        "From: <sip:test@127.0.0.1>;tag=fromtag1",
        f"To: {to}",
        f"Call-ID: {call_id}",
        f"CSeq: {cseq} {method}",
        f"Contact: <sip:test@127.0.0.1:{client_port}>",
        "Max-Forwards: 70",
    ]
    body_bytes = body.encode()
    if body:
        lines.append("Content-Type: application/sdp")
    lines.append(f"Content-Length: {len(body_bytes)}")
    lines += ["", ""]
    return "\r\n".join(lines).encode() + body_bytes


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def call_server():
    """A CallServer on an OS-assigned port streaming two 40ms frames per call."""
    transport = await start_transport("127.0.0.1", 0)
    server = CallServer(
        transport,
        server_ip="127.0.0.1",
        allocate_media=functools.partial(create_media_sockets, "127.0.0.1", 0, 0),
        open_source=lambda: BufferAudioSource(b"\x7f" * 640),
    )
    yield server, transport.local_addr[1]
    await server.shutdown()
    transport.close()


@pytest_asyncio.fixture
async def sip_client(call_server):
    """UDP client connected to the test SIP server."""
    _server, server_port = call_server
    loop = asyncio.get_running_loop()
    proto = _ClientProtocol()
    client_transport, _ = await loop.create_datagram_endpoint(
        lambda: proto,
        remote_addr=("127.0.0.1", server_port),
    )
    client_port = client_transport.get_extra_info("sockname")[1]
    yield client_transport, proto.queue, server_port, client_port
    client_transport.close()


async def _establish(sip_client) -> tuple[int, str]:
    """INVITE and ACK; returns the answered media port and our To tag."""
    transport, queue, server_port, client_port = sip_client
    transport.sendto(_build_request("INVITE", server_port, client_port, body=_SDP_BODY))
    trying, ringing, ok = [await _recv(queue) for _ in range(3)]
    assert [trying.status_code, ringing.status_code, ok.status_code] == [100, 180, 200]
    to_tag = header_tag(ok.header("To") or "")
    assert to_tag is not None
    transport.sendto(
        _build_request("ACK", server_port, client_port, branch="z9hG4bKack", to_tag=to_tag)
    )
    return parse_sdp_offer(ok.body).audio_port, to_tag


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_answer_advertises_bound_media_port(sip_client):
    media_port, _ = await _establish(sip_client)
    assert media_port > 0
    assert media_port % 2 == 0


@pytest.mark.asyncio
async def test_rtp_flows_after_first_inbound_packet_then_bye(sip_client):
    _transport, queue, _server_port, _client_port = sip_client
    media_port, to_tag = await _establish(sip_client)

    loop = asyncio.get_running_loop()
    rtp = _ClientProtocol()
    rtp_transport, _ = await loop.create_datagram_endpoint(
        lambda: rtp, remote_addr=("127.0.0.1", media_port)
    )
    try:
        await asyncio.sleep(0.1)
        assert rtp.queue.empty()

        rtp_transport.sendto(build_rtp_packet(1, 0, 42, b"\xff" * 160))
        packets = [await asyncio.wait_for(rtp.queue.get(), 2.0) for _ in range(2)]
        headers = [parse_rtp_header(p) for p in packets]
        assert [h.timestamp for h in headers if h is not None] == [0, 320]
        assert all(len(p) == 12 + 320 for p in packets)

        # Audio runs out, so the server hangs up
        bye = await _recv(queue)
        assert bye.method == "BYE"
        assert header_tag(bye.header("From") or "") == to_tag
        assert header_tag(bye.header("To") or "") == "fromtag1"
    finally:
        rtp_transport.close()


@pytest.mark.asyncio
async def test_caller_bye_is_acknowledged_twice(sip_client):
    transport, queue, server_port, client_port = sip_client
    _, to_tag = await _establish(sip_client)

    for _ in range(2):
        transport.sendto(
            _build_request(
                "BYE", server_port, client_port, branch="z9hG4bKbye", cseq="2", to_tag=to_tag
            )
        )
        ok = await _recv(queue)
        assert ok.status_code == 200
        assert ok.header("CSeq") == "2 BYE"


@pytest.mark.asyncio
async def test_bye_for_unknown_call(sip_client):
    transport, queue, server_port, client_port = sip_client
    transport.sendto(
        _build_request("BYE", server_port, client_port, call_id="never-seen", cseq="2")
    )
    ok = await _recv(queue)
    assert ok.status_code == 200
