"""
Per-resource auction state machine.

Each resource under auction gets a ResourceAuction task that consumes
commands from its queue. Timers only enqueue commands, so all work for one
resource is serial while different resources proceed independently:

    Idle -> Open -> Awarding -> Computing -> Settling -> Open ...
              \\-> Idle (availability revoked)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import Request

from .errors import MarketError, ResourceNotBiddable
from .ledger import CreditLedger, check_terms
from .metrics import record_auction, set_active_auctions
from .models import Bid
from .registry import UNAVAILABLE_REASON, AuctionRegistry, BidHandle
from .store import Store
from .streams import EventStream

logger = logging.getLogger(__name__)

SETTLE_RETRY_MAX_SECONDS = 60.0


class AuctionState(str, Enum):
    IDLE = "idle"
    OPEN = "open"
    AWARDING = "awarding"
    COMPUTING = "computing"
    SETTLING = "settling"


class CommandKind(str, Enum):
    OPENED = "opened"
    PLACE = "place"
    WINDOW_CLOSED = "window_closed"
    REVOKED = "revoked"
    COMPUTE_DONE = "compute_done"
    SHUTDOWN = "shutdown"


@dataclass
class Command:
    kind: CommandKind
    stream: Optional[EventStream] = None
    payload: Any = None
    reply: Optional[asyncio.Future] = None
    # Timer commands carry the generation of the timer that sent them
    generation: int = 0


@dataclass
class Placement:
    uid: int
    amount: float
    duration: int


class ResourceAuction:
    """Drives the auction of a single resource."""

    def __init__(self, coordinator: "AuctionCoordinator", rid: int, loaner_uid: int):
        self.coordinator = coordinator
        self.rid = rid
        self.loaner_uid = loaner_uid
        self.state = AuctionState.IDLE
        self.commands: asyncio.Queue = asyncio.Queue()
        self.winner: Optional[Bid] = None
        self.task: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._compute_started: Optional[float] = None
        self._generation = 0
        self._settle_failures = 0

    @property
    def store(self) -> Store:
        return self.coordinator.store

    @property
    def registry(self) -> AuctionRegistry:
        return self.coordinator.registry

    def send(self, command: Command):
        self.commands.put_nowait(command)

    def start(self):
        self.task = asyncio.create_task(self.run(), name=f"auction-{self.rid}")

    def _arm(self, delay: float, kind: CommandKind):
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.send, Command(kind, generation=self._generation))

    def _cancel_timer(self):
        # Commands already queued by the old timer become stale
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def run(self):
        logger.info("Auction coordinator for resource %s started", self.rid)
        try:
            while True:
                command = await self.commands.get()
                if command.kind is CommandKind.SHUTDOWN:
                    await self._on_shutdown()
                    break
                await self._dispatch(command)
                if self.state is AuctionState.IDLE and self.commands.empty():
                    break
        finally:
            self._cancel_timer()
            self._fail_pending_placements()
            self.coordinator._forget(self)
            logger.info("Auction coordinator for resource %s stopped", self.rid)

    async def _dispatch(self, command: Command):
        timed = command.kind in (CommandKind.WINDOW_CLOSED, CommandKind.COMPUTE_DONE)
        if timed and command.generation != self._generation:
            logger.debug("Resource %s: dropping stale %s", self.rid, command.kind.value)
            return
        handler = {
            CommandKind.OPENED: self._on_opened,
            CommandKind.PLACE: self._on_place,
            CommandKind.WINDOW_CLOSED: self._on_window_closed,
            CommandKind.REVOKED: self._on_revoked,
            CommandKind.COMPUTE_DONE: self._on_compute_done,
        }[command.kind]
        try:
            await handler(command)
        except Exception:
            logger.exception("Auction for resource %s failed handling %s", self.rid, command.kind.value)
            if command.reply is not None and not command.reply.done():
                command.reply.set_exception(ResourceNotBiddable("auction failed, try again"))
            if self.state is AuctionState.AWARDING:
                self.registry.force_reject(self.rid)
                self._open_window()

    def _open_window(self):
        self.state = AuctionState.OPEN
        self._arm(self.coordinator.window_seconds, CommandKind.WINDOW_CLOSED)
        logger.debug("Resource %s: auction window open for %.1fs", self.rid, self.coordinator.window_seconds)

    async def _on_opened(self, command: Command):
        if command.stream is not None:
            self.registry.open_slot(self.rid, self.loaner_uid, command.stream)
        if self.state is AuctionState.IDLE:
            self._open_window()

    async def _on_place(self, command: Command):
        placement: Placement = command.payload
        try:
            bid = await asyncio.to_thread(
                self.coordinator.ledger.admit_bid,
                placement.uid,
                self.rid,
                placement.amount,
                placement.duration,
            )
        except MarketError as exc:
            command.reply.set_exception(exc)
            return

        handle = BidHandle.from_bid(bid, command.stream)
        if self.state is not AuctionState.OPEN:
            # Not reachable while the store refuses bids outside a window
            handle.reject(UNAVAILABLE_REASON)
            await self._persist_rejection(handle)
            command.reply.set_result(handle)
            return

        loser = self.registry.place_leader(handle)
        command.reply.set_result(handle)
        if loser is not None:
            await self._persist_rejection(loser)

    async def _persist_rejection(self, handle: BidHandle):
        try:
            await asyncio.to_thread(self.store.mark_bid_rejected, handle.bid)
        except MarketError:
            # The bid stays pending; window resolution rejects it with the other losers
            logger.exception("Could not persist rejection of bid %s", handle.bid)

    async def _on_window_closed(self, command: Command):
        if self.state is not AuctionState.OPEN:
            return
        self._timer = None
        self.state = AuctionState.AWARDING
        try:
            winner = await asyncio.to_thread(self.store.pick_max_bid, self.rid)
        except MarketError:
            logger.exception("Resource %s: window resolution failed, aborting window", self.rid)
            self.registry.force_reject(self.rid)
            record_auction("failed")
            self._open_window()
            return

        if winner is None:
            leftover = self.registry.force_reject(self.rid)
            if leftover is not None:
                await self._persist_rejection(leftover)
            if not await asyncio.to_thread(self.store.is_available, self.rid):
                # Revoked while the window was resolving
                self._abort_window()
                return
            record_auction("no_bids")
            loaner_stream = self.registry.take_loaner_stream(self.rid)
            if loaner_stream is not None:
                loaner_stream.publish({"data": "no bids for resource"})
                loaner_stream.close()
            logger.info("Resource %s: no bids, re-opening window", self.rid)
            self._open_window()
            return

        record_auction("awarded")
        self.registry.award(self.rid, winner.bid)
        slot = self.registry.get_slot(self.rid)
        if slot is not None and slot.loaner_stream is not None:
            slot.loaner_stream.publish({"data": "starting connection"})
        self.start_computing(winner, winner.duration * self.coordinator.minute_seconds)
        logger.info(
            "Resource %s awarded to bid %s (user %s, %.2f x %d)",
            self.rid, winner.bid, winner.uid, winner.amount, winner.duration,
        )

    def start_computing(self, winner: Bid, seconds: float, elapsed_seconds: float = 0.0):
        self.winner = winner
        self.state = AuctionState.COMPUTING
        self._compute_started = asyncio.get_running_loop().time() - elapsed_seconds
        self._arm(seconds, CommandKind.COMPUTE_DONE)

    async def _on_compute_done(self, command: Command):
        if self.state is not AuctionState.COMPUTING or self.winner is None:
            return
        self._timer = None
        self.state = AuctionState.SETTLING
        winner = self.winner
        elapsed = self._elapsed_minutes()
        try:
            # Settlement completes even if the coordinator is cancelled meanwhile
            await asyncio.shield(
                asyncio.to_thread(self.coordinator.ledger.settle, winner, self.loaner_uid, elapsed)
            )
        except MarketError:
            self._settle_failures += 1
            delay = min(
                self.coordinator.settle_retry_seconds * 2 ** (self._settle_failures - 1),
                SETTLE_RETRY_MAX_SECONDS,
            )
            logger.exception(
                "Resource %s: settlement of bid %s failed, retrying in %.1fs", self.rid, winner.bid, delay
            )
            record_auction("settlement_failed")
            # The bid is still computing in the database; keep it until settled
            self.state = AuctionState.COMPUTING
            self._arm(delay, CommandKind.COMPUTE_DONE)
            return

        self._settle_failures = 0
        self.winner = None
        self.registry.finish(self.rid)
        loaner_stream = self.registry.take_loaner_stream(self.rid)
        if loaner_stream is not None:
            loaner_stream.publish({"data": "connection ended"})
            loaner_stream.close()
        record_auction("settled")
        if await asyncio.to_thread(self.store.is_available, self.rid):
            self._open_window()
        else:
            self.state = AuctionState.IDLE

    def _elapsed_minutes(self) -> float:
        if self._compute_started is None:
            return float(self.winner.duration)
        seconds = asyncio.get_running_loop().time() - self._compute_started
        return seconds / self.coordinator.minute_seconds

    async def _on_revoked(self, command: Command):
        if self.state is AuctionState.IDLE:
            logger.debug("Resource %s: already idle, nothing to revoke", self.rid)
            return
        if self.state is not AuctionState.OPEN:
            logger.warning("Resource %s: revocation ignored in state %s", self.rid, self.state.value)
            return
        self._abort_window()

    def _abort_window(self):
        self._cancel_timer()
        self.registry.force_reject(self.rid)
        loaner_stream = self.registry.take_loaner_stream(self.rid)
        if loaner_stream is not None:
            loaner_stream.publish({"data": "availability revoked"})
            loaner_stream.close()
        record_auction("revoked")
        self.state = AuctionState.IDLE
        logger.info("Resource %s: auction revoked by owner", self.rid)

    async def _on_shutdown(self):
        self._cancel_timer()
        if self.state is AuctionState.OPEN:
            self.registry.force_reject(self.rid)
            try:
                await asyncio.to_thread(self.store.reject_pending_bids, self.rid)
            except MarketError:
                logger.exception("Resource %s: could not reject pending bids on shutdown", self.rid)
        elif self.state is AuctionState.COMPUTING:
            logger.warning("Resource %s: shutting down while computing, settlement resumes on restart", self.rid)
        loaner_stream = self.registry.take_loaner_stream(self.rid)
        if loaner_stream is not None:
            loaner_stream.close()
        self.state = AuctionState.IDLE

    def _fail_pending_placements(self):
        while not self.commands.empty():
            command = self.commands.get_nowait()
            if command.reply is not None and not command.reply.done():
                command.reply.set_exception(ResourceNotBiddable("resource is not available for bidding"))


class AuctionCoordinator:
    """Owns the ResourceAuction tasks of every resource under auction."""

    def __init__(
        self,
        store: Store,
        ledger: CreditLedger,
        registry: AuctionRegistry,
        window_seconds: float = 60.0,
        minute_seconds: float = 60.0,
        settle_retry_seconds: float = 1.0,
    ):
        self.store = store
        self.ledger = ledger
        self.registry = registry
        self.window_seconds = window_seconds
        self.minute_seconds = minute_seconds
        self.settle_retry_seconds = settle_retry_seconds
        self._auctions: Dict[int, ResourceAuction] = {}
        self._closing = False

    def auction(self, rid: int) -> Optional[ResourceAuction]:
        return self._auctions.get(rid)

    def active_auctions(self) -> List[int]:
        return sorted(self._auctions)

    def _ensure(self, rid: int, loaner_uid: int) -> ResourceAuction:
        auction = self._auctions.get(rid)
        if auction is None:
            self.registry.open_slot(rid, loaner_uid)
            auction = self._auctions[rid] = ResourceAuction(self, rid, loaner_uid)
            auction.start()
            set_active_auctions(len(self._auctions))
        return auction

    def _forget(self, auction: ResourceAuction):
        if self._auctions.get(auction.rid) is auction:
            del self._auctions[auction.rid]
            self.registry.close_slot(auction.rid)
            set_active_auctions(len(self._auctions))

    def open(self, rid: int, loaner_uid: int, loaner_stream: Optional[EventStream] = None) -> ResourceAuction:
        """Start (or keep) the auction of a resource its owner just offered."""
        if self._closing:
            raise ResourceNotBiddable("server is shutting down")
        auction = self._ensure(rid, loaner_uid)
        auction.send(Command(CommandKind.OPENED, stream=loaner_stream))
        return auction

    def revoke(self, rid: int):
        """The owner withdrew the resource; abort its open window."""
        auction = self._auctions.get(rid)
        if auction is None:
            self.registry.force_reject(rid)
            return
        auction.send(Command(CommandKind.REVOKED))

    async def place_bid(
        self, uid: int, rid: int, amount: float, duration: int, stream: Optional[EventStream] = None
    ) -> BidHandle:
        """
        Admit a bid and install it as the resource's leader.

        Admission runs inside the resource's task, so it cannot interleave
        with the resolution of the window.
        """
        check_terms(amount, duration)
        auction = self._auctions.get(rid)
        if auction is None or self._closing:
            resource = await asyncio.to_thread(self.store.get_resource, rid)
            if resource.computing:
                raise ResourceNotBiddable("resource is currently computing")
            raise ResourceNotBiddable("resource is not available for bidding")

        reply = asyncio.get_running_loop().create_future()
        auction.send(
            Command(
                CommandKind.PLACE,
                stream=stream,
                payload=Placement(uid=uid, amount=amount, duration=duration),
                reply=reply,
            )
        )
        return await reply

    def withdraw_bid(self, bid: Bid) -> Optional[BidHandle]:
        return self.registry.withdraw(bid.rid, bid.bid)

    async def recover(self):
        """Resume computations and re-open auctions persisted by a previous run."""
        running = await asyncio.to_thread(self.store.list_computing_bids)
        now = datetime.utcnow()
        for bid, loaner_uid in running:
            elapsed = (now - bid.started_at).total_seconds() if bid.started_at else 0.0
            remaining = max(0.0, bid.duration * self.minute_seconds - elapsed)
            auction = self._ensure(bid.rid, loaner_uid)
            auction.start_computing(bid, remaining, elapsed_seconds=elapsed)
            logger.info("Resumed compute of bid %s on resource %s, %.1fs left", bid.bid, bid.rid, remaining)

        for resource in await asyncio.to_thread(self.store.list_available_resources):
            if resource.rid not in self._auctions:
                self.open(resource.rid, resource.uid)
        logger.info("Recovered %d auctions", len(self._auctions))

    async def shutdown(self, timeout: float = 10.0):
        """Abort open windows, let running settlements finish, stop every task."""
        self._closing = True
        tasks = []
        for auction in list(self._auctions.values()):
            auction.send(Command(CommandKind.SHUTDOWN))
            if auction.task is not None:
                tasks.append(auction.task)
        if not tasks:
            return
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        logger.info("Auction coordinators stopped (%d clean, %d cancelled)", len(done), len(pending))


def get_coordinator(request: Request) -> AuctionCoordinator:
    return request.app.state.coordinator
