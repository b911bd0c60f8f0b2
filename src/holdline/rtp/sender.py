"""Paced RTP transmission of an audio source."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable

from holdline.audio.source import AudioSource
from holdline.rtp.packet import build_rtp_packet
from holdline.rtp.pcmu import SAMPLE_RATE
from holdline.rtp.socket import MediaAddress, MediaSocket
from holdline.session import CallSession, TerminationReason

logger = logging.getLogger(__name__)

DEFAULT_FRAME_SIZE = 320  # 40ms of PCMU


class MediaSender:
    """Streams one audio source to the call's remote media address.

    Nothing is sent until endpoint discovery has recorded the remote
    address. RTP timestamps start at 0 and advance by each frame's sample
    count, so playback timing does not depend on when packets leave.
    Whatever ends the stream, the session is terminated on exit.
    """

    def __init__(
        self,
        session: CallSession,
        sock: MediaSocket,
        open_source: Callable[[], AudioSource],
        *,
        frame_size: int = DEFAULT_FRAME_SIZE,
        payload_type: int = 0,
        clock_rate: int = SAMPLE_RATE,
    ) -> None:
        if frame_size <= 0:
            raise ValueError(f"frame_size must be positive, got {frame_size}")
        self._session = session
        self._sock = sock
        self._open_source = open_source
        self._frame_size = frame_size
        self._payload_type = payload_type
        self._clock_rate = clock_rate
        self._ssrc = random.randint(0, 0xFFFFFFFF)
        self._initial_seq = random.randint(0, 0xFFFF)
        self.packets_sent = 0

    @property
    def frame_interval(self) -> float:
        """Seconds of audio in one full frame (1 byte per sample)."""
        return self._frame_size / self._clock_rate

    async def run(self) -> TerminationReason | None:
        """Wait for the remote address, stream, then end the call."""
        call_id = self._session.call_id
        reason = TerminationReason.SOURCE_EXHAUSTED
        try:
            remote = await self._session.wait_for_remote_media()
            if remote is None:
                logger.debug("Call %s: ended before remote media was known", call_id)
                return self._session.termination_reason
            logger.info("Call %s: sending RTP to %s", call_id, remote)
            # Opening may decode a file; keep that off the event loop
            loop = asyncio.get_running_loop()
            source = await loop.run_in_executor(None, self._open_source)
            with source:
                await self._stream(source, remote)
        except asyncio.CancelledError:
            reason = TerminationReason.SHUTDOWN
            raise
        except Exception:
            logger.exception("Call %s: error sending RTP", call_id)
            reason = TerminationReason.TRANSMISSION_FAULT
        finally:
            logger.info("Call %s: RTP sender finished (%d packets)", call_id, self.packets_sent)
            self._session.terminate(reason)
        return self._session.termination_reason

    async def _stream(self, source: AudioSource, remote: MediaAddress) -> None:
        buffer = bytearray(self._frame_size)
        seq = self._initial_seq
        timestamp = 0
        next_send = time.monotonic()

        while not self._session.is_terminated:
            n = source.read(buffer)
            if n <= 0:
                logger.debug("Call %s: audio source exhausted", self._session.call_id)
                return
            packet = build_rtp_packet(
                seq,
                timestamp,
                self._ssrc,
                bytes(buffer[:n]),
                payload_type=self._payload_type,
                marker=self.packets_sent == 0,
            )
            self._sock.sendto(packet, remote)
            self.packets_sent += 1
            seq = (seq + 1) & 0xFFFF
            timestamp = (timestamp + n) & 0xFFFFFFFF

            # Absolute deadlines keep the cadence when a send runs late
            next_send += self.frame_interval
            if await self._session.wait_terminated(next_send - time.monotonic()):
                return
