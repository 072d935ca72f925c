"""Concurrency gate bounding simultaneous compile-and-run jobs.

A single asyncio.Condition guards every piece of gate state: the in-flight
counter and the FIFO of waiting tickets. Admission is strictly first-come,
first-served: a waiter is admitted only when it is at the head of the queue
and a slot is free, so a later arrival can never overtake an earlier one.

Two modes:
- "queue": excess requests wait, bounded by max_queue_length, each with its
  own wait deadline; a full queue or an expired wait raises BusyError
- "reject": excess requests fail immediately with BusyError

Nothing is ever dropped silently: every request either gets a slot or a
BusyError.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Literal
from uuid import uuid4

from compile_sandbox._logging import get_logger
from compile_sandbox.exceptions import BusyError
from compile_sandbox.resource_cleanup import run_uncancellable

logger = get_logger(__name__)

AdmissionMode = Literal["queue", "reject"]


@dataclass(frozen=True)
class SlotLease:
    """A held slot. Returned by acquire(), handed back to release()."""

    label: str
    lease_id: str = field(default_factory=lambda: uuid4().hex)


@dataclass(frozen=True)
class GateSnapshot:
    """Point-in-time view of the gate."""

    capacity: int
    in_flight: int
    queued: int
    max_queue_length: int
    mode: AdmissionMode
    admitted_total: int = 0
    rejected_total: int = 0

    @property
    def available(self) -> int:
        return max(0, self.capacity - self.in_flight)


class AdmissionGate:
    """FIFO admission gate with capacity N and a bounded wait queue."""

    def __init__(
        self,
        capacity: int,
        *,
        mode: AdmissionMode = "queue",
        max_queue_length: int = 0,
        queue_timeout: float | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._mode: AdmissionMode = mode
        self._max_queue_length = max_queue_length
        self._queue_timeout = queue_timeout

        # Protected by _condition's lock
        self._in_flight = 0
        self._leases: dict[str, SlotLease] = {}
        self._waiters: deque[object] = deque()
        self._admitted_total = 0
        self._rejected_total = 0

        self._condition = asyncio.Condition()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued(self) -> int:
        return len(self._waiters)

    def _reject(self, message: str, label: str) -> BusyError:
        self._rejected_total += 1
        logger.info(
            "Admission rejected",
            extra={"label": label, "in_flight": self._in_flight, "queued": len(self._waiters), "reason": message},
        )
        return BusyError(
            message,
            in_flight=self._in_flight,
            queued=len(self._waiters),
            context={"label": label, "capacity": self._capacity, "mode": self._mode},
        )

    def _grant(self, label: str) -> SlotLease:
        lease = SlotLease(label=label)
        self._in_flight += 1
        self._admitted_total += 1
        self._leases[lease.lease_id] = lease
        logger.debug(
            "Slot acquired",
            extra={"label": label, "in_flight": self._in_flight, "queued": len(self._waiters)},
        )
        return lease

    async def acquire(self, label: str = "", timeout: float | None = None) -> SlotLease:
        """Take a slot, waiting in FIFO order if the gate is full.

        Args:
            label: Caller identifier for logging (job id)
            timeout: Wait deadline override; defaults to the gate's queue_timeout

        Returns:
            SlotLease to pass to release()

        Raises:
            BusyError: Reject mode and no free slot, queue full, or wait expired
        """
        wait_timeout = self._queue_timeout if timeout is None else timeout

        async with self._condition:
            # Fast path: free slot and nobody ahead of us
            if self._in_flight < self._capacity and not self._waiters:
                return self._grant(label)

            if self._mode == "reject":
                raise self._reject(f"Server busy: {self._in_flight}/{self._capacity} jobs in flight", label)
            if len(self._waiters) >= self._max_queue_length:
                raise self._reject(
                    f"Server busy: admission queue full ({len(self._waiters)}/{self._max_queue_length} waiting)",
                    label,
                )

            ticket = object()
            self._waiters.append(ticket)
            logger.debug(
                "Queued for admission",
                extra={"label": label, "position": len(self._waiters), "in_flight": self._in_flight},
            )
            try:
                async with asyncio.timeout(wait_timeout):
                    await self._condition.wait_for(
                        lambda: self._waiters[0] is ticket and self._in_flight < self._capacity
                    )
            except TimeoutError:
                self._waiters.remove(ticket)
                # The head may have changed; let the next waiter re-check
                self._condition.notify_all()
                raise self._reject(f"Server busy: no slot freed within {wait_timeout}s", label) from None
            except BaseException:
                # Cancelled while waiting
                self._waiters.remove(ticket)
                self._condition.notify_all()
                raise

            self._waiters.popleft()
            lease = self._grant(label)
            # More slots may be free for the new head
            self._condition.notify_all()
            return lease

    async def release(self, lease: SlotLease) -> None:
        """Free a slot and wake the head of the queue. Idempotent per lease."""
        async with self._condition:
            if self._leases.pop(lease.lease_id, None) is None:
                logger.debug("Slot already released (idempotent)", extra={"label": lease.label})
                return
            self._in_flight -= 1
            logger.debug(
                "Slot released",
                extra={"label": lease.label, "in_flight": self._in_flight, "queued": len(self._waiters)},
            )
            self._condition.notify_all()

    @asynccontextmanager
    async def slot(self, label: str = "") -> AsyncIterator[SlotLease]:
        """Hold a slot for the duration of the block."""
        lease = await self.acquire(label)
        try:
            yield lease
        finally:
            await run_uncancellable(self.release(lease))

    def snapshot(self) -> GateSnapshot:
        """Return a point-in-time snapshot of gate state.

        SYNC-ONLY: No await points. Atomicity relies on asyncio single-thread
        cooperative scheduling.
        """
        return GateSnapshot(
            capacity=self._capacity,
            in_flight=self._in_flight,
            queued=len(self._waiters),
            max_queue_length=self._max_queue_length,
            mode=self._mode,
            admitted_total=self._admitted_total,
            rejected_total=self._rejected_total,
        )
