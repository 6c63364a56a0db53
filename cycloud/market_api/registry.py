"""
In-memory auctioneer.

The registry maps each resource under auction to an AuctionSlot holding the
current leading bid. A bidder waits on its BidHandle's gate; whoever decides
the outcome sets the status first and then releases the gate.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .models import Bid, BidStatus, outbids
from .streams import EventStream

logger = logging.getLogger(__name__)

UNAVAILABLE_REASON = "resource is no longer available"


def better_bid_reason(amount: float, duration: int) -> str:
    return "A better bid with amount: %f and duration: %d" % (amount, duration)


@dataclass
class BidHandle:
    """A bid descriptor paired with the gate its bidder blocks on."""

    bid: int
    uid: int
    rid: int
    amount: float
    duration: int
    status: str = BidStatus.PENDING.value
    reason: Optional[str] = None
    better_amount: Optional[float] = None
    better_duration: Optional[int] = None
    stream: Optional[EventStream] = None
    _gate: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @classmethod
    def from_bid(cls, bid: Bid, stream: Optional[EventStream] = None) -> "BidHandle":
        return cls(
            bid=bid.bid,
            uid=bid.uid,
            rid=bid.rid,
            amount=bid.amount,
            duration=bid.duration,
            stream=stream,
        )

    @property
    def released(self) -> bool:
        return self._gate.is_set()

    def outbids(self, other: "BidHandle") -> bool:
        return outbids(self.amount, self.duration, other.amount, other.duration)

    async def wait(self) -> str:
        """Block until the outcome is decided and return the status."""
        await self._gate.wait()
        return self.status

    def reject(self, reason: str, better: Optional["BidHandle"] = None) -> bool:
        if self.released:
            return False
        self.status = BidStatus.REJECTED.value
        self.reason = reason
        if better is not None:
            self.better_amount = better.amount
            self.better_duration = better.duration
        self._gate.set()
        if self.stream is not None:
            self.stream.publish({"data": "rejected", "reason": reason})
            self.stream.close()
        return True

    def accept(self) -> bool:
        if self.released:
            return False
        self.status = BidStatus.ACCEPTED.value
        self._gate.set()
        if self.stream is not None:
            self.stream.publish({"data": "starting connection"})
        return True

    def finish(self):
        """Tell the bidder its compute phase is over."""
        if self.stream is not None:
            self.stream.publish({"data": "connection ended"})
            self.stream.close()


@dataclass
class AuctionSlot:
    """Auction state of one resource."""

    rid: int
    loaner_uid: Optional[int] = None
    loaner_stream: Optional[EventStream] = None
    leader: Optional[BidHandle] = None
    winner: Optional[BidHandle] = None


class AuctionRegistry:
    """
    Arbitrates bid preemption per resource.

    The lock guards only the slot map and slot fields; gates are released
    after it is dropped and it is never held across an await.
    """

    def __init__(self):
        self._slots: Dict[int, AuctionSlot] = {}
        self._lock = threading.Lock()

    def _slot(self, rid: int) -> AuctionSlot:
        slot = self._slots.get(rid)
        if slot is None:
            slot = self._slots[rid] = AuctionSlot(rid=rid)
        return slot

    def open_slot(self, rid: int, loaner_uid: int, loaner_stream: Optional[EventStream] = None) -> AuctionSlot:
        with self._lock:
            slot = self._slot(rid)
            slot.loaner_uid = loaner_uid
            if loaner_stream is not None:
                slot.loaner_stream = loaner_stream
            return slot

    def close_slot(self, rid: int) -> Optional[AuctionSlot]:
        with self._lock:
            return self._slots.pop(rid, None)

    def get_slot(self, rid: int) -> Optional[AuctionSlot]:
        with self._lock:
            return self._slots.get(rid)

    def active_resources(self) -> List[int]:
        with self._lock:
            return sorted(self._slots)

    def leader(self, rid: int) -> Optional[BidHandle]:
        with self._lock:
            slot = self._slots.get(rid)
            return slot.leader if slot else None

    def take_loaner_stream(self, rid: int) -> Optional[EventStream]:
        """Detach the loaner's stream so that exactly one outcome reaches it."""
        with self._lock:
            slot = self._slots.get(rid)
            if slot is None:
                return None
            stream, slot.loaner_stream = slot.loaner_stream, None
            return stream

    def place_leader(self, handle: BidHandle) -> Optional[BidHandle]:
        """
        Install a bid as the resource's leader.

        The previous leader, if any, is rejected with the new bid's values as
        context. If the previous leader is at least as good (placements that
        reached the registry out of order) the new bid is the one rejected.

        Returns:
            The rejected handle, or None if nobody lost.
        """
        with self._lock:
            slot = self._slot(handle.rid)
            previous = slot.leader
            if previous is not None and not handle.outbids(previous):
                loser, better = handle, previous
            else:
                slot.leader = handle
                loser, better = previous, handle

        if loser is not None:
            loser.reject(better_bid_reason(better.amount, better.duration), better=better)
            logger.info("Bid %s on resource %s rejected by bid %s", loser.bid, handle.rid, better.bid)
        return loser

    def award(self, rid: int, bid_id: int) -> Optional[BidHandle]:
        """Accept the leader if it is the store's winner and release its gate."""
        with self._lock:
            slot = self._slots.get(rid)
            leader = slot.leader if slot else None
            if slot is not None:
                slot.leader = None
                if leader is not None and leader.bid == bid_id:
                    slot.winner = leader

        if leader is None:
            logger.warning("Resource %s awarded bid %s with no waiting bidder", rid, bid_id)
            return None
        if leader.bid != bid_id:
            logger.error("Resource %s: leader %s differs from winner %s", rid, leader.bid, bid_id)
            leader.reject("bid was not selected")
            return None
        leader.accept()
        return leader

    def force_reject(self, rid: int, reason: str = UNAVAILABLE_REASON) -> Optional[BidHandle]:
        with self._lock:
            slot = self._slots.get(rid)
            leader = slot.leader if slot else None
            if slot is not None:
                slot.leader = None
        if leader is not None:
            leader.reject(reason)
            logger.info("Bid %s on resource %s force-rejected: %s", leader.bid, rid, reason)
        return leader

    def withdraw(self, rid: int, bid_id: int) -> Optional[BidHandle]:
        """Drop a deleted bid from its slot if it is leading."""
        with self._lock:
            slot = self._slots.get(rid)
            if slot is None or slot.leader is None or slot.leader.bid != bid_id:
                return None
            leader, slot.leader = slot.leader, None
        leader.reject("bid withdrawn")
        return leader

    def finish(self, rid: int) -> Optional[BidHandle]:
        with self._lock:
            slot = self._slots.get(rid)
            winner = slot.winner if slot else None
            if slot is not None:
                slot.winner = None
        if winner is not None:
            winner.finish()
        return winner

    def peer(self, rid: int, uid: int) -> Optional[int]:
        """The other side of a resource's connection: renter for the loaner and vice versa."""
        with self._lock:
            slot = self._slots.get(rid)
            if slot is None:
                return None
            if uid == slot.loaner_uid:
                current = slot.winner or slot.leader
                return current.uid if current else None
            return slot.loaner_uid
