"""
Auction monitor: drives every active auction forward in time.

One asyncio task owns the watch table. Ingress paths never touch the table
directly; ``register`` and ``deregister`` leave a message in the inbox and
the monitor task applies it, right away when it is idle or at the start of
its next tick otherwise.

Per watched auction a tick:
    1. reloads the auction and stops watching it once it is no longer active
    2. finalizes it when its end time has passed
    3. emits time warnings (60/30/15/5/1 minutes), once per end time
    4. polls the linked post for new comments
    5. emits an auction-update with the remaining time and tip

A slower sweep closes anything the ticks missed.
"""

import asyncio
import contextlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional, Set

from comment_auction.bidding import BidEngine, RejectionKind
from comment_auction.comments import Comment, CommentSource
from comment_auction.exceptions import AuctionEngineError, CommentSourceError
from comment_auction.hub import BroadcastHub, Event, EventKind
from comment_auction.logger import get_logger
from comment_auction.models import Auction, AuctionStatus, iso, money, utcnow
from comment_auction.repository import Repository

logger = get_logger("monitor")

WARNING_MINUTES = (60, 30, 15, 5, 1)

REGISTER = "register"
DEREGISTER = "deregister"


@dataclass
class WatchState:
    auction_id: str
    cursor: Optional[datetime] = None
    # comments already processed at exactly ``cursor``
    cursor_ids: Set[str] = field(default_factory=set)
    end_time: Optional[datetime] = None
    fired: Set[int] = field(default_factory=set)


class AuctionMonitor:
    def __init__(
        self,
        repository: Repository,
        engine: BidEngine,
        hub: BroadcastHub,
        ingestor=None,
        source: Optional[CommentSource] = None,
        poll_interval: float = 60,
        sweep_interval: float = 300,
        fetch_timeout: float = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._engine = engine
        self._hub = hub
        self._ingestor = ingestor
        self._source = source
        self._poll_interval = poll_interval
        self._sweep_interval = sweep_interval
        self._fetch_timeout = fetch_timeout
        self._clock = clock

        self._watch: Dict[str, WatchState] = {}
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.last_tick: Optional[datetime] = None
        self.last_sweep: Optional[datetime] = None

    # =========================================================================
    # Registration
    # =========================================================================

    def register(self, auction_id: str):
        self._inbox.put_nowait((REGISTER, auction_id))

    def deregister(self, auction_id: str):
        self._inbox.put_nowait((DEREGISTER, auction_id))

    async def process_inbox(self) -> int:
        """Apply every pending registration message; returns how many."""
        applied = 0
        while not self._inbox.empty():
            await self._apply(self._inbox.get_nowait())
            applied += 1
        return applied

    async def _apply(self, message):
        action, auction_id = message
        if action == DEREGISTER:
            if self._watch.pop(auction_id, None) is not None:
                logger.info(f"Stopped monitoring auction {auction_id}")
            return

        if auction_id in self._watch:
            return
        auction = await self._repository.get_auction(auction_id)
        if auction is None or auction.status != AuctionStatus.ACTIVE:
            logger.debug(f"Not monitoring {auction_id}: not an active auction")
            return
        self._watch[auction_id] = WatchState(auction_id, cursor=auction.created_at, end_time=auction.end_time)
        logger.info(f"Monitoring auction {auction_id} until {iso(auction.end_time)}")

    def is_monitored(self, auction_id: str) -> bool:
        return auction_id in self._watch

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Watch every active auction and start the monitor task."""
        if self.running:
            return
        for auction in await self._repository.list_active_auctions():
            self.register(auction.id)
        await self.process_inbox()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(
            f"Auction monitor started: {len(self._watch)} auctions, "
            f"tick every {self._poll_interval}s, sweep every {self._sweep_interval}s"
        )

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Auction monitor stopped")

    async def _run(self):
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        next_sweep = loop.time() + self._sweep_interval

        while True:
            # ticks start every poll_interval however long each one takes
            if loop.time() >= next_tick:
                await self.tick()
                next_tick = max(next_tick + self._poll_interval, loop.time())
            if loop.time() >= next_sweep:
                await self.sweep()
                next_sweep = max(next_sweep + self._sweep_interval, loop.time())

            timeout = max(min(next_tick, next_sweep) - loop.time(), 0)
            try:
                message = await asyncio.wait_for(self._inbox.get(), timeout)
            except asyncio.TimeoutError:
                continue
            try:
                await self._apply(message)
                await self.process_inbox()
            except Exception:
                logger.exception("Failed to apply monitor registration")

    # =========================================================================
    # Tick
    # =========================================================================

    async def tick(self):
        await self.process_inbox()
        self.last_tick = self._clock()
        for auction_id in list(self._watch):
            state = self._watch.get(auction_id)
            if state is None:
                continue
            try:
                await self._tick_auction(state)
            except Exception:
                logger.exception(f"Monitor tick failed for auction {auction_id}")

    async def _tick_auction(self, state: WatchState):
        auction = await self._repository.get_auction(state.auction_id)
        if auction is None or auction.status != AuctionStatus.ACTIVE:
            self._watch.pop(state.auction_id, None)
            logger.info(f"Auction {state.auction_id} no longer active; monitoring stopped")
            return

        now = self._clock()
        if now >= auction.end_time:
            if await self._engine.close_auction(auction.id) is not None:
                self._watch.pop(auction.id, None)
            return

        self._warn(state, auction, now)

        if auction.external_post_id and self._source is not None and self._ingestor is not None:
            if await self._poll(state, auction):
                auction = await self._repository.get_auction(auction.id) or auction

        self._hub.publish(
            Event(
                EventKind.AUCTION_UPDATE,
                auction.id,
                {
                    "timeRemaining": auction.time_remaining(self._clock()),
                    "currentBid": money(auction.current_bid),
                    "totalBids": auction.total_bids,
                },
            )
        )

    def _warn(self, state: WatchState, auction: Auction, now: datetime):
        if state.end_time != auction.end_time:
            # soft close moved the end; the warning ladder starts over
            state.end_time = auction.end_time
            state.fired.clear()

        minutes = int((auction.end_time - now).total_seconds() // 60)
        if minutes not in WARNING_MINUTES or minutes in state.fired:
            return
        state.fired.add(minutes)
        logger.info(f"Auction {auction.id}: {minutes} minute(s) remaining")
        self._hub.publish(
            Event(
                EventKind.TIME_WARNING,
                auction.id,
                {"minutesRemaining": minutes, "endTime": iso(auction.end_time)},
            )
        )

    async def _poll(self, state: WatchState, auction: Auction) -> int:
        """Feed new comments of the auction's post to the ingestor; returns how many."""
        try:
            comments, _ = await asyncio.wait_for(
                self._source.fetch_comments_since(auction.external_post_id, state.cursor),
                timeout=self._fetch_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Comment fetch for post {auction.external_post_id} timed out after {self._fetch_timeout}s")
            return 0
        except CommentSourceError as exc:
            logger.warning(f"Comment fetch for post {auction.external_post_id} failed: {exc}")
            return 0

        processed = 0
        for comment in comments:
            if comment.created_at == state.cursor and comment.comment_id in state.cursor_ids:
                continue
            try:
                result = await self._ingestor.handle_comment(comment, auction_id=auction.id)
            except AuctionEngineError as exc:
                logger.warning(f"Comment {comment.comment_id} not processed, will retry: {exc}")
                break
            if not result.ok and result.kind == RejectionKind.STORAGE_ERROR:
                logger.warning(f"Comment {comment.comment_id} hit a storage error, will retry")
                break
            self._advance(state, comment)
            processed += 1
        return processed

    @staticmethod
    def _advance(state: WatchState, comment: Comment):
        if state.cursor is None or comment.created_at > state.cursor:
            state.cursor = comment.created_at
            state.cursor_ids = {comment.comment_id}
        else:
            state.cursor_ids.add(comment.comment_id)

    # =========================================================================
    # Sweep
    # =========================================================================

    async def sweep(self) -> int:
        """Close every active auction past its end time; returns how many."""
        self.last_sweep = self._clock()
        try:
            expired = await self._repository.list_expired_auctions(self.last_sweep)
        except AuctionEngineError as exc:
            logger.error(f"Backup sweep could not list auctions: {exc}")
            return 0

        closed = 0
        for auction in expired:
            try:
                if await self._engine.close_auction(auction.id) is not None:
                    closed += 1
                    self._watch.pop(auction.id, None)
            except Exception:
                logger.exception(f"Backup sweep failed to close auction {auction.id}")
        if closed:
            logger.info(f"Backup sweep closed {closed} auction(s)")
        return closed

    # =========================================================================
    # Status
    # =========================================================================

    def status(self) -> dict:
        return {
            "running": self.running,
            "monitoredAuctions": len(self._watch),
            "pollIntervalSeconds": self._poll_interval,
            "sweepIntervalSeconds": self._sweep_interval,
            "lastTick": iso(self.last_tick),
            "lastSweep": iso(self.last_sweep),
            "auctions": [
                {
                    "auctionId": state.auction_id,
                    "endTime": iso(state.end_time),
                    "cursor": iso(state.cursor),
                    "warningsFired": sorted(state.fired, reverse=True),
                }
                for state in self._watch.values()
            ],
        }
