"""Server side of one INVITE dialog."""

from __future__ import annotations

import logging
from collections.abc import Callable

from holdline.sip.message import (
    build_response,
    generate_branch,
    generate_tag,
    header_tag,
    header_uri,
    strip_tag,
)
from holdline.sip.transport import IncomingRequest, SipTransport

logger = logging.getLogger(__name__)


class ServerUserAgent:
    """Sends the responses for an incoming INVITE and owns its dialog.

    Mirrors what a SIP stack's server user agent offers the application:
    ``progress`` for 1xx, ``answer``/``reject`` for the final response,
    ``cancel`` for an inbound CANCEL and ``hangup`` to send a BYE.
    """

    def __init__(
        self,
        transport: SipTransport,
        request: IncomingRequest,
        *,
        contact_host: str,
        on_ack_timeout: Callable[[], None],
    ) -> None:
        msg = request.message
        self._transport = transport
        self._request = request
        self._contact_host = contact_host
        self.call_id = msg.call_id
        self.to_tag = generate_tag()

        from_value = msg.header("From") or ""
        self.from_tag = header_tag(from_value) or ""
        self.remote_from = strip_tag(from_value)
        self.local_uri = header_uri(msg.header("To") or msg.uri)

        contact = msg.header("Contact")
        self.remote_target = header_uri(contact) if contact else msg.uri

        self.is_cancelled = False
        self.is_hung_up = False
        self._answered = False
        self._txn = transport.create_invite_transaction(request, on_ack_timeout)

    @property
    def answered(self) -> bool:
        """True once a 2xx was sent."""
        return self._answered

    @property
    def final_sent(self) -> bool:
        return self._txn.final_sent

    @property
    def uri(self) -> str:
        return self._request.message.uri

    @property
    def local_addr(self) -> tuple[str, int]:
        return self._request.local_addr

    @property
    def remote_addr(self) -> tuple[str, int]:
        return self._request.remote_addr

    @property
    def offer(self) -> str:
        return self._request.message.body

    def progress(self, status_code: int, reason: str) -> None:
        # RFC 3261 §17.2.1: 100 Trying SHOULD NOT carry a To tag
        to_tag = None if status_code == 100 else self.to_tag
        self._txn.send_provisional(self._build(status_code, reason, to_tag=to_tag), self._dest)

    def answer(self, sdp: str) -> None:
        response = self._build(
            200,
            "OK",
            sdp,
            to_tag=self.to_tag,
            extra_headers=[
                ("Contact", f"<{self._contact_uri}>"),
                ("Allow", self._transport.allow),
            ],
        )
        self._txn.send_final(response, self._dest, success=True)
        self._answered = True

    def reject(self, status_code: int, reason: str) -> None:
        if self.final_sent:
            return
        self._txn.send_final(
            self._build(status_code, reason, to_tag=self.to_tag), self._dest, success=False
        )

    def cancel(self, request: IncomingRequest) -> bool:
        """Handle a CANCEL for this INVITE; True if the call was cancelled.

        RFC 3261 §9.2: the CANCEL itself always gets 200. Only an INVITE that
        has not received a final response is terminated with 487.
        """
        request.respond(200, "OK", to_tag=self.to_tag)
        if self.final_sent:
            return False
        self.is_cancelled = True
        self.reject(487, "Request Terminated")
        return True

    def hangup(self) -> None:
        """Send a BYE to the caller once; later calls do nothing."""
        if self.is_hung_up or not self.answered:
            return
        self.is_hung_up = True
        host = self._contact_host
        # RFC 3261 §12.2.1.1: in-dialog requests target the remote Contact,
        # with From/To swapped relative to the INVITE
        self._transport.send_request(
            "BYE",
            self.remote_target,
            self._dest,
            headers=[
                ("Via", f"SIP/2.0/UDP {host}:{self._sip_port};branch={generate_branch()}"),
                ("From", f"<{self.local_uri}>;tag={self.to_tag}"),
                ("To", f"{self.remote_from};tag={self.from_tag}"),
                ("Call-ID", self.call_id),
                ("CSeq", "1 BYE"),
                ("Max-Forwards", "70"),
            ],
        )
        logger.info("Sent BYE for call %s", self.call_id)

    def close(self) -> None:
        """Stop retransmitting; the dialog is over."""
        self._txn.terminate()

    @property
    def _dest(self) -> tuple[str, int]:
        return self._request.response_addr

    @property
    def _sip_port(self) -> int:
        return self._request.local_addr[1] or 5060

    @property
    def _contact_uri(self) -> str:
        return f"sip:holdline@{self._contact_host}:{self._sip_port}"

    def _build(
        self,
        status_code: int,
        reason: str,
        body: str = "",
        *,
        to_tag: str | None,
        extra_headers: list[tuple[str, str]] | None = None,
    ) -> bytes:
        return build_response(
            self._request.message,
            status_code,
            reason,
            body,
            to_tag=to_tag,
            extra_headers=extra_headers,
        )
