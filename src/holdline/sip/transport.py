"""SIP over UDP: datagram handling, per-method dispatch and INVITE transactions."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import socket
from collections.abc import Callable

from holdline.sip.message import (
    SipMessage,
    build_request,
    build_response,
    extract_branch,
    parse_message,
    parse_via_params,
)
from holdline.sip.transaction import InviteServerTxn

logger = logging.getLogger(__name__)

RequestHandler = Callable[["IncomingRequest"], None]


@dataclasses.dataclass
class IncomingRequest:
    """A request together with where it came from and where to answer."""

    message: SipMessage
    local_addr: tuple[str, int]
    remote_addr: tuple[str, int]
    response_addr: tuple[str, int]
    transport: SipTransport

    def respond(
        self,
        status_code: int,
        reason: str,
        body: str = "",
        *,
        to_tag: str | None = None,
        extra_headers: list[tuple[str, str]] | None = None,
    ) -> bytes:
        response = build_response(
            self.message,
            status_code,
            reason,
            body,
            to_tag=to_tag,
            extra_headers=extra_headers,
        )
        self.transport.send(response, self.response_addr)
        return response


def get_server_ip() -> str:
    """Address of the interface holding the default route."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # connect() on UDP only selects a route, nothing is sent
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


def _tag_top_via(msg: SipMessage, addr: tuple[str, int]) -> None:
    """Record the observed source on the topmost Via.

    RFC 3261 §18.2.1 adds ``received``; RFC 3581 §4 fills in ``rport`` when
    the client asked for it with an empty ``rport`` parameter.
    """
    for i, (key, value) in enumerate(msg.headers):
        if key.lower() != "via":
            continue
        wants_rport = "rport" in parse_via_params(value)
        if wants_rport:
            value = ";".join(
                p for p in value.split(";") if p.strip().partition("=")[0] != "rport"
            )
        value = f"{value};received={addr[0]}"
        if wants_rport:
            value = f"{value};rport={addr[1]}"
        msg.headers[i] = (key, value)
        return


def _response_addr(msg: SipMessage, addr: tuple[str, int]) -> tuple[str, int]:
    """Where to send responses (RFC 3261 §18.2.2, RFC 3581 §4)."""
    via = msg.header("Via")
    if via is None:
        return addr
    rport = parse_via_params(via).get("rport")
    if rport:
        try:
            return (addr[0], int(rport))
        except ValueError:
            pass

    sent_by = via.split(";", 1)[0].split(None, 1)
    if len(sent_by) < 2:
        return addr
    host_port = sent_by[1].strip()
    port = 5060
    if ":" in host_port:
        try:
            port = int(host_port.rsplit(":", 1)[1])
        except ValueError:
            return addr
    return (addr[0], port)


class SipTransport(asyncio.DatagramProtocol):
    """Receives SIP datagrams and hands requests to registered handlers.

    ACKs are matched to the dialog's INVITE transaction by Call-ID before
    being passed on; retransmitted INVITEs are absorbed by their
    transaction. Unregistered methods get 405 with an Allow header.
    """

    def __init__(self) -> None:
        self._transport: asyncio.DatagramTransport | None = None
        self._handlers: dict[str, RequestHandler] = {}
        self._invite_txns: dict[str, InviteServerTxn] = {}
        self._dialog_branches: dict[str, str] = {}

    # -- asyncio.DatagramProtocol ------------------------------------------

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self._transport = transport  # type: ignore[assignment]
        logger.info("SIP transport listening on %s", self.local_addr)

    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning("SIP transport lost: %s", exc)
        self._transport = None
        for txn in list(self._invite_txns.values()):
            txn.terminate()

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        # RFC 5626 §4.4.1 keepalive: answer a bare CRLF burst with CRLF
        if not data.strip(b"\r\n "):
            self.send(b"\r\n", addr)
            return

        try:
            msg = parse_message(data)
        except ValueError:
            logger.exception("Unparseable SIP datagram from %s", addr)
            return

        if msg.is_response:
            logger.debug("Response %s %s from %s", msg.uri, msg.version, addr)
            return

        logger.debug("%s from %s (Call-ID %s)", msg.method, addr, msg.call_id)
        _tag_top_via(msg, addr)
        request = IncomingRequest(
            message=msg,
            local_addr=self.local_addr,
            remote_addr=addr,
            response_addr=_response_addr(msg, addr),
            transport=self,
        )

        # RFC 3261 §8.2.2.3: no extensions are supported
        require = msg.header("Require")
        if require and msg.method not in ("ACK", "CANCEL"):
            request.respond(420, "Bad Extension", extra_headers=[("Unsupported", require)])
            return

        if msg.method == "INVITE":
            branch = extract_branch(msg)
            if branch is not None and branch in self._invite_txns:
                self._invite_txns[branch].receive_retransmit()
                return

        if msg.method == "ACK":
            branch = self._dialog_branches.get(msg.call_id)
            txn = self._invite_txns.get(branch) if branch is not None else None
            if txn is not None:
                txn.receive_ack()

        handler = self._handlers.get(msg.method)
        if handler is not None:
            handler(request)
        elif msg.method != "ACK":
            # RFC 3261 §8.2.1: 405 MUST list the supported methods
            request.respond(405, "Method Not Allowed", extra_headers=[("Allow", self.allow)])

    # -- public API ----------------------------------------------------------

    @property
    def local_addr(self) -> tuple[str, int]:
        sockname = None
        if self._transport is not None:
            sockname = self._transport.get_extra_info("sockname")
        if not sockname:
            return ("0.0.0.0", 0)
        return (sockname[0], sockname[1])

    @property
    def allow(self) -> str:
        methods = dict.fromkeys(["ACK", *self._handlers])
        return ", ".join(methods)

    def register_handler(self, method: str, handler: RequestHandler) -> None:
        self._handlers[method.upper()] = handler

    def send(self, data: bytes, addr: tuple[str, int]) -> None:
        if self._transport is None or self._transport.is_closing():
            logger.debug("Dropping %d bytes to %s: transport closed", len(data), addr)
            return
        self._transport.sendto(data, addr)

    def send_request(
        self,
        method: str,
        uri: str,
        addr: tuple[str, int],
        *,
        headers: list[tuple[str, str]],
    ) -> None:
        self.send(build_request(method, uri, headers=headers), addr)

    def create_invite_transaction(
        self, request: IncomingRequest, on_timeout: Callable[[], None]
    ) -> InviteServerTxn:
        """Start the server transaction for an INVITE."""
        msg = request.message
        branch = extract_branch(msg) or f"call:{msg.call_id}"
        old = self._invite_txns.pop(branch, None)
        if old is not None:
            old.terminate()
        txn = InviteServerTxn(
            branch=branch,
            transport=self,
            loop=asyncio.get_running_loop(),
            on_timeout=on_timeout,
            on_terminated=self._remove_txn,
        )
        self._invite_txns[branch] = txn
        self._dialog_branches[msg.call_id] = branch
        return txn

    def sendto(self, data: bytes, addr: tuple[str, int]) -> None:
        # Lets transactions use the protocol itself as their sender
        self.send(data, addr)

    def close(self) -> None:
        for txn in list(self._invite_txns.values()):
            txn.terminate()
        if self._transport is not None:
            self._transport.close()

    def _remove_txn(self, branch: str) -> None:
        self._invite_txns.pop(branch, None)
        for call_id, known in list(self._dialog_branches.items()):
            if known == branch:
                del self._dialog_branches[call_id]


async def start_transport(host: str, port: int) -> SipTransport:
    """Bind a SipTransport to ``host:port`` on the running loop."""
    loop = asyncio.get_running_loop()
    protocol = SipTransport()
    await loop.create_datagram_endpoint(lambda: protocol, local_addr=(host, port))
    logger.info("Listening for SIP on %s:%d", *protocol.local_addr)
    return protocol
