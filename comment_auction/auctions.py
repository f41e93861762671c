from datetime import datetime
from typing import Callable, List, Optional

from comment_auction.bidding import BidEngine, auction_summary
from comment_auction.exceptions import AuctionNotFoundError, AuctionStateError
from comment_auction.hub import BroadcastHub, Event, EventKind
from comment_auction.logger import get_logger
from comment_auction.models import (
    Auction,
    AuctionCreate,
    AuctionStatus,
    Bid,
    money,
    utcnow,
)
from comment_auction.repository import Repository

logger = get_logger("auctions")

EDITABLE_STATUSES = (AuctionStatus.DRAFT, AuctionStatus.ACTIVE)


class AuctionService:
    def __init__(
        self,
        repository: Repository,
        engine: BidEngine,
        hub: BroadcastHub,
        monitor=None,
        default_extension_minutes: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._repository = repository
        self._engine = engine
        self._hub = hub
        self._monitor = monitor
        self._default_extension_minutes = default_extension_minutes
        self._clock = clock

    async def get(self, auction_id: str) -> Auction:
        auction = await self._repository.get_auction(auction_id)
        if auction is None:
            raise AuctionNotFoundError(auction_id)
        return auction

    async def list_auctions(self, status: Optional[AuctionStatus] = None, limit: int = 50) -> List[Auction]:
        return await self._repository.list_auctions(status=status, limit=limit)

    async def create(self, data: AuctionCreate) -> Auction:
        auction = Auction(
            title=data.title,
            description=data.description,
            starting_bid=data.starting_bid,
            bid_increment=data.bid_increment,
            reserve_price=data.reserve_price,
            buy_now_price=data.buy_now_price,
            end_time=data.end_time,
            auto_extend=data.auto_extend,
            extension_minutes=data.extension_minutes or self._default_extension_minutes,
            external_post_id=data.external_post_id,
            status=AuctionStatus.DRAFT,
            created_at=self._clock(),
        )
        await self._repository.save_auction(auction)
        logger.info(f"Created auction {auction.id} '{auction.title}' starting at ${money(auction.starting_bid)}")
        return auction

    async def publish(self, auction_id: str) -> Auction:
        """Open a draft auction for bidding and start monitoring it."""
        async with self._engine.locks.hold(auction_id):
            auction = await self.get(auction_id)
            if auction.status != AuctionStatus.DRAFT:
                raise AuctionStateError(auction_id, auction.status.value, "publish")
            if auction.end_time <= self._clock():
                raise AuctionStateError(auction_id, "past its end time", "publish")

            auction.status = AuctionStatus.ACTIVE
            await self._repository.save_auction(auction)

        logger.info(f"Auction {auction_id} is live until {auction.end_time.isoformat()}")
        if self._monitor is not None:
            self._monitor.register(auction_id)
        return auction

    async def cancel(self, auction_id: str) -> Auction:
        async with self._engine.locks.hold(auction_id):
            auction = await self.get(auction_id)
            if auction.status not in EDITABLE_STATUSES:
                raise AuctionStateError(auction_id, auction.status.value, "cancel")

            was_active = auction.status == AuctionStatus.ACTIVE
            auction.status = AuctionStatus.CANCELLED
            await self._repository.save_auction(auction)

            if was_active:
                self._hub.publish(
                    Event(
                        EventKind.AUCTION_ENDED,
                        auction.id,
                        {
                            "winnerId": None,
                            "winnerName": None,
                            "finalAmount": None,
                            "reserveMet": False,
                            "reason": "cancelled",
                        },
                    )
                )

        if self._monitor is not None:
            self._monitor.deregister(auction_id)
        self._engine.locks.release(auction_id)
        logger.info(f"Auction {auction_id} cancelled")
        return auction

    async def connect_post(self, auction_id: str, external_post_id: str) -> Auction:
        """Link an auction to the external post whose comments carry its bids."""
        async with self._engine.locks.hold(auction_id):
            auction = await self.get(auction_id)
            if auction.status not in EDITABLE_STATUSES:
                raise AuctionStateError(auction_id, auction.status.value, "connect a post to")
            auction.external_post_id = external_post_id
            await self._repository.save_auction(auction)

        logger.info(f"Auction {auction_id} connected to post {external_post_id}")
        return auction

    async def bids(self, auction_id: str, order: str = "amount", limit: Optional[int] = None) -> List[Bid]:
        await self.get(auction_id)
        return await self._repository.list_bids(auction_id, order=order, limit=limit)

    async def statistics(self, auction_id: str) -> dict:
        auction = await self.get(auction_id)
        stats = await self._repository.bid_statistics(auction_id)
        return {
            "auction": auction_summary(auction, self._clock()),
            "totalBids": stats["totalBids"],
            "averageBid": money(stats["averageBid"]),
            "highestBid": money(stats["highestBid"]),
            "lowestBid": money(stats["lowestBid"]),
            "uniqueBidders": stats["uniqueBidders"],
            "reserveMet": auction.reserve_met,
        }
