"""INVITE server transaction.

RFC 3261 §17.2.1 with the RFC 6026 §7.1 "Accepted" state:

    Proceeding --1xx--> Proceeding
    Proceeding --2xx--> Accepted  --ACK--> Confirmed --Timer I--> Terminated
    Proceeding --3xx-6xx--> Completed --ACK--> Confirmed --Timer I--> Terminated

Final responses are retransmitted on Timer G until the ACK arrives; Timer H
gives up and reports a failure to the owner.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import StrEnum
from typing import Protocol

logger = logging.getLogger(__name__)

# RFC 3261 Appendix A, Table 4
T1 = 0.5
T2 = 4.0
T4 = 5.0
TIMER_H_DURATION = 64 * T1


class _Sender(Protocol):
    def sendto(self, data: bytes, addr: tuple[str, int]) -> None: ...


class TxnState(StrEnum):
    PROCEEDING = "proceeding"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    CONFIRMED = "confirmed"
    TERMINATED = "terminated"


class InviteServerTxn:
    """Retransmission and ACK bookkeeping for one INVITE.

    ``on_timeout`` runs when Timer H expires without an ACK;
    ``on_terminated`` runs once with the branch when the transaction ends.
    """

    def __init__(
        self,
        branch: str,
        transport: _Sender,
        loop: asyncio.AbstractEventLoop,
        on_timeout: Callable[[], None],
        on_terminated: Callable[[str], None],
    ) -> None:
        self.branch = branch
        self.state = TxnState.PROCEEDING
        self._transport = transport
        self._loop = loop
        self._on_timeout = on_timeout
        self._on_terminated = on_terminated
        self._last_response: bytes | None = None
        self._response_addr: tuple[str, int] | None = None
        self._timer_g: asyncio.TimerHandle | None = None
        self._timer_g_interval = T1
        self._timer_h: asyncio.TimerHandle | None = None
        self._timer_i: asyncio.TimerHandle | None = None

    @property
    def final_sent(self) -> bool:
        return self.state != TxnState.PROCEEDING

    def send_provisional(self, response: bytes, addr: tuple[str, int]) -> None:
        """Send a 1xx; it is re-sent when the INVITE is retransmitted."""
        if self.state != TxnState.PROCEEDING:
            logger.debug("INVITE txn %s: 1xx after final response dropped", self.branch)
            return
        self._last_response = response
        self._response_addr = addr
        self._transport.sendto(response, addr)

    def send_final(self, response: bytes, addr: tuple[str, int], *, success: bool) -> None:
        """Send the final response and start Timers G and H.

        A 2xx moves to Accepted (RFC 6026 §7.1), anything else to Completed.
        """
        if self.state != TxnState.PROCEEDING:
            logger.warning(
                "INVITE txn %s: second final response ignored (state %s)",
                self.branch,
                self.state,
            )
            return
        self._last_response = response
        self._response_addr = addr
        self.state = TxnState.ACCEPTED if success else TxnState.COMPLETED
        self._transport.sendto(response, addr)
        self._timer_g_interval = T1
        self._timer_g = self._loop.call_later(self._timer_g_interval, self._fire_g)
        self._timer_h = self._loop.call_later(TIMER_H_DURATION, self._fire_h)
        logger.debug("INVITE txn %s: %s, awaiting ACK", self.branch, self.state)

    def receive_retransmit(self) -> None:
        """Re-send the most recent response for a retransmitted INVITE."""
        if self.state in (TxnState.CONFIRMED, TxnState.TERMINATED):
            return
        if self._last_response is not None and self._response_addr is not None:
            logger.debug("INVITE txn %s: retransmitted INVITE", self.branch)
            self._transport.sendto(self._last_response, self._response_addr)

    def receive_ack(self) -> None:
        if self.state not in (TxnState.ACCEPTED, TxnState.COMPLETED):
            return
        self.state = TxnState.CONFIRMED
        _cancel(self._timer_g)
        _cancel(self._timer_h)
        self._timer_g = None
        self._timer_h = None
        # Timer I absorbs ACK retransmissions before the txn goes away
        self._timer_i = self._loop.call_later(T4, self._fire_i)
        logger.debug("INVITE txn %s: confirmed", self.branch)

    def terminate(self) -> None:
        if self.state == TxnState.TERMINATED:
            return
        self._do_terminate()

    def _fire_g(self) -> None:
        if self.state not in (TxnState.ACCEPTED, TxnState.COMPLETED):
            return
        if self._last_response is not None and self._response_addr is not None:
            self._transport.sendto(self._last_response, self._response_addr)
        self._timer_g_interval = min(self._timer_g_interval * 2, T2)
        self._timer_g = self._loop.call_later(self._timer_g_interval, self._fire_g)

    def _fire_h(self) -> None:
        if self.state not in (TxnState.ACCEPTED, TxnState.COMPLETED):
            return
        logger.warning("INVITE txn %s: no ACK after %.0fs", self.branch, TIMER_H_DURATION)
        self._do_terminate()
        self._on_timeout()

    def _fire_i(self) -> None:
        if self.state == TxnState.CONFIRMED:
            self._do_terminate()

    def _do_terminate(self) -> None:
        self.state = TxnState.TERMINATED
        for handle in (self._timer_g, self._timer_h, self._timer_i):
            _cancel(handle)
        self._timer_g = None
        self._timer_h = None
        self._timer_i = None
        self._on_terminated(self.branch)


def _cancel(handle: asyncio.TimerHandle | None) -> None:
    if handle is not None:
        handle.cancel()
