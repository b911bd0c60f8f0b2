"""Answers incoming calls and supervises each call's media tasks."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from holdline.audio.source import AudioSource
from holdline.database import CallRecorder
from holdline.errors import SetupFailure
from holdline.rtp.discovery import run_endpoint_discovery
from holdline.rtp.sender import DEFAULT_FRAME_SIZE, MediaSender
from holdline.rtp.socket import MediaAddress, MediaSocketPair
from holdline.session import REMOTE_REASONS, CallSession, TerminationReason
from holdline.sip.sdp import PCMU, build_media_descriptor, parse_sdp_offer
from holdline.sip.transport import IncomingRequest, SipTransport
from holdline.sip.uas import ServerUserAgent

logger = logging.getLogger(__name__)

MediaAllocator = Callable[[], Awaitable[MediaSocketPair]]
SourceOpener = Callable[[], AudioSource]

# No BYE is sent for these: the caller ended the dialog or a new INVITE took it over
_NO_BYE = REMOTE_REASONS | {TerminationReason.REPLACED}


@dataclasses.dataclass
class Call:
    session: CallSession
    uas: ServerUserAgent
    task: asyncio.Task[None] | None = None


class CallServer:
    """Per-call supervisor on top of a SipTransport.

    Each INVITE gets a CallSession and a supervisor task that sends the
    provisional responses, allocates media sockets, starts endpoint
    discovery and the media sender, answers with SDP and then waits for
    both media tasks to finish.
    """

    def __init__(
        self,
        transport: SipTransport,
        *,
        server_ip: str,
        allocate_media: MediaAllocator,
        open_source: SourceOpener,
        frame_size: int = DEFAULT_FRAME_SIZE,
        recorder: CallRecorder | None = None,
    ) -> None:
        self._transport = transport
        self._server_ip = server_ip
        self._allocate_media = allocate_media
        self._open_source = open_source
        self._frame_size = frame_size
        self._recorder = recorder
        self._calls: dict[str, Call] = {}
        transport.register_handler("INVITE", self._handle_invite)
        transport.register_handler("BYE", self._handle_bye)
        transport.register_handler("CANCEL", self._handle_cancel)
        transport.register_handler("OPTIONS", self._handle_options)

    @property
    def calls(self) -> dict[str, Call]:
        return self._calls

    # -- request handlers ----------------------------------------------------

    def _handle_invite(self, request: IncomingRequest) -> None:
        call_id = request.message.call_id
        if not call_id:
            request.respond(400, "Bad Request")
            return

        existing = self._calls.pop(call_id, None)
        if existing is not None:
            existing.session.terminate(TerminationReason.REPLACED)

        session = CallSession(call_id)
        uas = ServerUserAgent(
            self._transport,
            request,
            contact_host=self._server_ip,
            on_ack_timeout=lambda: session.terminate(TerminationReason.ACK_TIMEOUT),
        )
        call = Call(session=session, uas=uas)
        session.add_termination_callback(lambda _s, reason: self._on_terminated(call, reason))
        self._calls[call_id] = call
        call.task = asyncio.get_running_loop().create_task(self._run_call(call))

    def _handle_bye(self, request: IncomingRequest) -> None:
        call_id = request.message.call_id
        call = self._calls.get(call_id)
        if call is None:
            # Already torn down or never known: still a successful hangup
            logger.info("BYE for unknown or finished call %s", call_id)
            request.respond(200, "OK")
            return
        logger.info("Call %s hung up by caller", call_id)
        if not call.session.terminate(TerminationReason.REMOTE_HANGUP):
            logger.debug("Call %s: duplicate BYE", call_id)
        request.respond(200, "OK", to_tag=call.uas.to_tag)

    def _handle_cancel(self, request: IncomingRequest) -> None:
        call = self._calls.get(request.message.call_id)
        if call is None:
            # RFC 3261 §9.2: no matching transaction
            request.respond(481, "Call/Transaction Does Not Exist")
            return
        if call.uas.cancel(request):
            logger.info("Call %s cancelled by caller", call.session.call_id)
            call.session.terminate(TerminationReason.CANCELLED)

    def _handle_options(self, request: IncomingRequest) -> None:
        request.respond(
            200,
            "OK",
            extra_headers=[("Allow", self._transport.allow), ("Accept", "application/sdp")],
        )

    # -- call lifecycle ------------------------------------------------------

    async def _run_call(self, call: Call) -> None:
        session, uas = call.session, call.uas
        call_id = session.call_id
        logger.info(
            "Incoming call request: %s:%d<-%s:%d %s",
            *uas.local_addr,
            *uas.remote_addr,
            uas.uri,
        )
        if uas.offer:
            offer = parse_sdp_offer(uas.offer)
            logger.debug(
                "Call %s: offered media %s:%d", call_id, offer.connection_address, offer.audio_port
            )
        if self._recorder is not None:
            self._recorder.call_started(call_id, uas.remote_from)

        uas.progress(100, "Trying")
        uas.progress(180, "Ringing")

        tasks: list[asyncio.Task[Any]] = []
        try:
            try:
                media = await self._allocate_media()
            except SetupFailure as exc:
                logger.error("Call %s: media allocation failed: %s", call_id, exc)
                uas.reject(503, "Service Unavailable")
                session.terminate(TerminationReason.SETUP_FAILURE)
                return

            session.attach_media(media)
            if session.is_terminated:
                return

            loop = asyncio.get_running_loop()
            sender = MediaSender(
                session,
                media.rtp,
                self._open_source,
                frame_size=self._frame_size,
                payload_type=PCMU.payload_type,
                clock_rate=PCMU.clock_rate,
            )
            tasks.append(loop.create_task(run_endpoint_discovery(session, media.rtp)))
            tasks.append(loop.create_task(sender.run()))

            if self._answer(call, media.address.port):
                session.mark_answered()
                session.mark_media_active()
                if self._recorder is not None:
                    self._recorder.call_answered(call_id, media.address.port)

            for result in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(result, Exception):
                    logger.error("Call %s: media task failed: %r", call_id, result)
        except asyncio.CancelledError:
            session.terminate(TerminationReason.SHUTDOWN)
            raise
        finally:
            for task in tasks:
                task.cancel()
            uas.close()
            if self._calls.get(call_id) is call:
                del self._calls[call_id]

    def _answer(self, call: Call, local_port: int) -> bool:
        """Send the 200 OK with our SDP; on failure reject and end the call."""
        session, uas = call.session, call.uas
        try:
            descriptor = build_media_descriptor(
                MediaAddress(self._server_ip, local_port),
                ptime=self._frame_size * 1000 // PCMU.clock_rate,
            )
            uas.answer(descriptor.to_sdp())
        except (ValueError, OSError) as exc:
            logger.error("Call %s: could not answer: %s", session.call_id, exc)
            uas.reject(500, "Server Internal Error")
            session.terminate(TerminationReason.SETUP_FAILURE)
            return False
        logger.info(
            "Call %s answered, media on %s:%d", session.call_id, self._server_ip, local_port
        )
        return True

    def _on_terminated(self, call: Call, reason: TerminationReason) -> None:
        session = call.session
        if reason not in _NO_BYE and session.answered_before_termination:
            call.uas.hangup()
        if self._recorder is not None:
            remote = session.remote_media
            self._recorder.call_ended(
                session.call_id, str(reason), str(remote) if remote is not None else None
            )

    async def shutdown(self, timeout: float = 2.0) -> None:
        """End every call (BYE to answered callers) and wait for their tasks."""
        calls = list(self._calls.values())
        for call in calls:
            call.session.terminate(TerminationReason.SHUTDOWN)
        tasks = [call.task for call in calls if call.task is not None]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        if self._recorder is not None:
            await self._recorder.flush()
        logger.info("Call server stopped (%d calls ended)", len(calls))
