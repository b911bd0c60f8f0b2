"""Per-call state shared by the signaling path and the two media tasks.

Field ownership:

- ``state`` and ``termination_reason`` are written only through
  ``mark_answered``/``mark_media_active``/``terminate``.
- ``remote_media`` is written once, by endpoint discovery, through
  ``set_remote_media``; the sender only reads it after ``remote_ready``
  fires.
- The media socket pair is attached once by the call supervisor and closed
  only by ``terminate``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum

from holdline.errors import InvalidStateTransition
from holdline.rtp.socket import MediaAddress, MediaSocketPair

logger = logging.getLogger(__name__)


class CallState(StrEnum):
    RINGING = "ringing"
    ANSWERED = "answered"
    MEDIA_ACTIVE = "media_active"
    TERMINATED = "terminated"


class TerminationReason(StrEnum):
    REMOTE_HANGUP = "remote_hangup"
    CANCELLED = "cancelled"
    SHUTDOWN = "shutdown"
    SOURCE_EXHAUSTED = "source_exhausted"
    TRANSMISSION_FAULT = "transmission_fault"
    SETUP_FAILURE = "setup_failure"
    ACK_TIMEOUT = "ack_timeout"
    REPLACED = "replaced"


# Reasons that originate at the caller; no BYE is owed to them
REMOTE_REASONS = frozenset({TerminationReason.REMOTE_HANGUP, TerminationReason.CANCELLED})

_FORWARD = {
    CallState.RINGING: CallState.ANSWERED,
    CallState.ANSWERED: CallState.MEDIA_ACTIVE,
}

TerminationCallback = Callable[["CallSession", TerminationReason], None]


class CallSession:
    """Lifecycle and shared media state of one call."""

    def __init__(self, call_id: str) -> None:
        self.call_id = call_id
        self.state = CallState.RINGING
        self.termination_reason: TerminationReason | None = None
        self.answered_before_termination = False
        self._media: MediaSocketPair | None = None
        self._remote_media: MediaAddress | None = None
        self._remote_ready = asyncio.Event()
        self._terminated = asyncio.Event()
        self._callbacks: list[TerminationCallback] = []

    def __repr__(self) -> str:
        return f"<CallSession {self.call_id} {self.state}>"

    # -- state --------------------------------------------------------------

    @property
    def is_terminated(self) -> bool:
        return self._terminated.is_set()

    @property
    def is_hung_up(self) -> bool:
        return self.termination_reason == TerminationReason.REMOTE_HANGUP

    @property
    def is_cancelled(self) -> bool:
        return self.termination_reason == TerminationReason.CANCELLED

    def mark_answered(self) -> None:
        self._advance(CallState.ANSWERED)

    def mark_media_active(self) -> None:
        self._advance(CallState.MEDIA_ACTIVE)

    def _advance(self, target: CallState) -> None:
        if self.state == CallState.TERMINATED:
            raise InvalidStateTransition(f"call {self.call_id} already terminated")
        if _FORWARD.get(self.state) != target:
            raise InvalidStateTransition(
                f"call {self.call_id}: cannot move from {self.state} to {target}"
            )
        logger.debug("Call %s: %s -> %s", self.call_id, self.state, target)
        self.state = target

    def add_termination_callback(self, callback: TerminationCallback) -> None:
        self._callbacks.append(callback)

    def terminate(self, reason: TerminationReason) -> bool:
        """Move to TERMINATED; only the first call has any effect.

        Closes the media sockets, wakes both media tasks and runs the
        termination callbacks. Returns False when already terminated.
        """
        if self.is_terminated:
            logger.debug(
                "Call %s: already terminated (%s), ignoring %s",
                self.call_id,
                self.termination_reason,
                reason,
            )
            return False

        self.answered_before_termination = self.state in (
            CallState.ANSWERED,
            CallState.MEDIA_ACTIVE,
        )
        self.state = CallState.TERMINATED
        self.termination_reason = reason
        self._terminated.set()
        if self._media is not None:
            self._media.close()
        logger.info("Call %s terminated: %s", self.call_id, reason)

        for callback in self._callbacks:
            try:
                callback(self, reason)
            except Exception:
                logger.exception("Termination callback failed for call %s", self.call_id)
        self._callbacks.clear()
        return True

    # -- media --------------------------------------------------------------

    @property
    def media(self) -> MediaSocketPair | None:
        return self._media

    @property
    def local_media(self) -> MediaAddress | None:
        return self._media.address if self._media is not None else None

    def attach_media(self, media: MediaSocketPair) -> None:
        if self._media is not None:
            raise InvalidStateTransition(f"call {self.call_id} already has media sockets")
        self._media = media
        if self.is_terminated:
            # Lost the race with a hangup during allocation
            media.close()

    @property
    def remote_media(self) -> MediaAddress | None:
        return self._remote_media

    def set_remote_media(self, addr: tuple[str, int]) -> bool:
        """Record the peer's media address; True only for the first call."""
        if self._remote_media is not None:
            return False
        self._remote_media = MediaAddress(addr[0], addr[1])
        self._remote_ready.set()
        return True

    async def wait_for_remote_media(self) -> MediaAddress | None:
        """Block until the remote address is known or the call ends.

        Returns None when termination comes first (or both are ready).
        """
        if self._remote_media is None and not self.is_terminated:
            ready = asyncio.ensure_future(self._remote_ready.wait())
            ended = asyncio.ensure_future(self._terminated.wait())
            try:
                await asyncio.wait({ready, ended}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                ready.cancel()
                ended.cancel()
        if self.is_terminated:
            return None
        return self._remote_media

    async def wait_terminated(self, timeout: float | None = None) -> bool:
        """Sleep up to *timeout* seconds; True if the call ended meanwhile."""
        if self.is_terminated:
            return True
        if timeout is not None and timeout <= 0:
            # Still yield so a late sender cannot starve the loop
            await asyncio.sleep(0)
            return self.is_terminated
        try:
            await asyncio.wait_for(self._terminated.wait(), timeout)
        except TimeoutError:
            return False
        return True
