import asyncio
import enum
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, ClassVar, Optional, Union

from comment_auction.exceptions import (
    AuctionStateError,
    BidNotFoundError,
    DuplicateExternalComment,
    StorageError,
)
from comment_auction.hub import BroadcastHub, Event, EventKind
from comment_auction.logger import get_logger
from comment_auction.models import (
    Auction,
    AuctionStatus,
    Bid,
    BidSource,
    iso,
    money,
    utcnow,
)
from comment_auction.parser import to_money
from comment_auction.repository import Repository

logger = get_logger("engine")

STORAGE_ATTEMPTS = 2


class RejectionKind(str, enum.Enum):
    AUCTION_NOT_FOUND = "AuctionNotFound"
    AUCTION_NOT_ACTIVE = "AuctionNotActive"
    AUCTION_EXPIRED = "AuctionExpired"
    BIDDER_NOT_FOUND = "BidderNotFound"
    BIDDER_INACTIVE = "BidderInactive"
    DUPLICATE_COMMENT = "DuplicateComment"
    BELOW_MINIMUM = "BelowMinimum"
    STORAGE_ERROR = "StorageError"
    PARSER_MISS = "ParserMiss"


# client faults: reported back to whoever placed the bid
VALIDATION_KINDS = frozenset({RejectionKind.BELOW_MINIMUM, RejectionKind.PARSER_MISS})
# expected on comment ingress; ignored there
STATE_KINDS = frozenset(
    {
        RejectionKind.AUCTION_NOT_FOUND,
        RejectionKind.AUCTION_NOT_ACTIVE,
        RejectionKind.AUCTION_EXPIRED,
        RejectionKind.BIDDER_NOT_FOUND,
        RejectionKind.BIDDER_INACTIVE,
        RejectionKind.DUPLICATE_COMMENT,
    }
)


@dataclass(frozen=True)
class Accepted:
    bid: Bid
    auction: Auction
    extended: bool = False
    buy_now: bool = False

    ok: ClassVar[bool] = True


@dataclass(frozen=True)
class Rejected:
    kind: RejectionKind
    detail: str

    ok: ClassVar[bool] = False


BidResult = Union[Accepted, Rejected]


class AuctionLocks:
    """
    One asyncio.Lock per auction id. An entry lives only while some
    coroutine holds or waits on its lock.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def __len__(self):
        return len(self._locks)

    def hold(self, auction_id: str) -> asyncio.Lock:
        lock = self._locks.get(auction_id)
        if lock is None:
            lock = self._locks[auction_id] = asyncio.Lock()
        return lock

    def release(self, auction_id: str):
        lock = self._locks.get(auction_id)
        if lock is not None and not lock.locked():
            del self._locks[auction_id]


def auction_summary(auction: Auction, now: Optional[datetime] = None) -> dict:
    data = {
        "id": auction.id,
        "status": auction.status.value,
        "currentBid": money(auction.current_bid),
        "minimumBid": money(auction.minimum_bid),
        "totalBids": auction.total_bids,
        "uniqueBidders": auction.unique_bidders,
        "endTime": iso(auction.end_time),
        "winnerBidderId": auction.winner_bidder_id,
    }
    if now is not None:
        data["timeRemaining"] = auction.time_remaining(now)
    return data


class BidEngine:
    def __init__(
        self,
        repository: Repository,
        hub: BroadcastHub,
        clock: Callable[[], datetime] = utcnow,
        locks: Optional[AuctionLocks] = None,
    ):
        self._repository = repository
        self._hub = hub
        self._clock = clock
        self.locks = locks or AuctionLocks()

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Bids
    # =========================================================================

    async def place_bid(
        self,
        auction_id: str,
        bidder_id: str,
        amount,
        source: BidSource,
        external_comment_id: Optional[str] = None,
        comment_ref: Optional[str] = None,
    ) -> BidResult:
        amount = to_money(amount)
        if amount <= 0:
            return Rejected(RejectionKind.BELOW_MINIMUM, "Bid amount must be positive")
        if comment_ref is None:
            comment_ref = external_comment_id

        async with self.locks.hold(auction_id):
            for attempt in range(1, STORAGE_ATTEMPTS + 1):
                try:
                    return await self._place(auction_id, bidder_id, amount, source, external_comment_id, comment_ref)
                except StorageError as exc:
                    logger.warning(f"Bid on {auction_id} hit storage error (attempt {attempt}): {exc}")
        return Rejected(RejectionKind.STORAGE_ERROR, "Storage temporarily unavailable, retry later")

    async def _place(self, auction_id, bidder_id, amount, source, external_comment_id, comment_ref) -> BidResult:
        now = self._clock()

        auction = await self._repository.get_auction(auction_id)
        if auction is None:
            return Rejected(RejectionKind.AUCTION_NOT_FOUND, f"Auction {auction_id} not found")
        if auction.status != AuctionStatus.ACTIVE:
            return Rejected(RejectionKind.AUCTION_NOT_ACTIVE, f"Auction is {auction.status.value}")
        if now >= auction.end_time:
            return Rejected(RejectionKind.AUCTION_EXPIRED, "Auction has ended")

        bidder = await self._repository.get_bidder(bidder_id)
        if bidder is None:
            return Rejected(RejectionKind.BIDDER_NOT_FOUND, f"Bidder {bidder_id} not found")
        if not bidder.is_active:
            return Rejected(RejectionKind.BIDDER_INACTIVE, "Bidder account is inactive")

        if external_comment_id is not None:
            if await self._repository.find_bid_by_external_comment(external_comment_id) is not None:
                return Rejected(RejectionKind.DUPLICATE_COMMENT, "Bid already placed for this comment")

        minimum = auction.minimum_bid
        if amount < minimum:
            return Rejected(RejectionKind.BELOW_MINIMUM, f"Minimum bid is ${money(minimum)}")

        bid = Bid(
            auction_id=auction.id,
            bidder_id=bidder.id,
            bidder_name=bidder.name,
            amount=amount,
            source=source,
            external_comment_id=external_comment_id,
            comment_ref=comment_ref,
            winning=True,
            created_at=now,
        )

        if auction.buy_now_price is not None and amount >= auction.buy_now_price:
            return await self._buy_now(auction, bid)

        auction.current_bid = amount
        auction.winner_bidder_id = bidder.id

        old_end = auction.end_time
        window = timedelta(minutes=auction.extension_minutes)
        extended = auction.auto_extend and old_end - now < window
        if extended:
            auction.end_time = old_end + window

        try:
            await self._repository.record_bid(auction, bid)
        except DuplicateExternalComment:
            return Rejected(RejectionKind.DUPLICATE_COMMENT, "Bid already placed for this comment")

        logger.info(f"Bid ${money(amount)} by {bidder.name} accepted on {auction.id} ({source.value})")

        if extended:
            logger.info(f"Auction {auction.id} extended to {iso(auction.end_time)}")
            self._hub.publish(
                Event(
                    EventKind.AUCTION_EXTENDED,
                    auction.id,
                    {
                        "oldEnd": iso(old_end),
                        "newEnd": iso(auction.end_time),
                        "extensionMinutes": auction.extension_minutes,
                    },
                )
            )
        self._hub.publish(
            Event(EventKind.NEW_BID, auction.id, {"bid": bid.to_dict(), "auction": auction_summary(auction, now)})
        )
        return Accepted(bid=bid, auction=auction, extended=extended)

    async def _buy_now(self, auction: Auction, bid: Bid) -> BidResult:
        bid.source = BidSource.BUY_NOW
        auction.status = AuctionStatus.ENDED
        auction.current_bid = bid.amount
        auction.winner_bidder_id = bid.bidder_id

        try:
            await self._repository.record_bid(auction, bid)
        except DuplicateExternalComment:
            return Rejected(RejectionKind.DUPLICATE_COMMENT, "Bid already placed for this comment")

        logger.info(f"Auction {auction.id} bought now by {bid.bidder_name} for ${money(bid.amount)}")
        self._hub.publish(self._ended_event(auction, bid.bidder_name, "buy-now"))
        return Accepted(bid=bid, auction=auction, buy_now=True)

    async def invalidate_bid(self, bid_id: str) -> Auction:
        """
        Mark a bid invalid and recompute the auction tip from the remaining
        valid bids. Only bids of active auctions can be invalidated.
        """
        bid = await self._repository.get_bid(bid_id)
        if bid is None:
            raise BidNotFoundError(bid_id)

        async with self.locks.hold(bid.auction_id):
            bid = await self._repository.get_bid(bid_id)
            auction = await self._repository.get_auction(bid.auction_id)
            if not bid.valid:
                return auction
            if auction.status != AuctionStatus.ACTIVE:
                raise AuctionStateError(auction.id, auction.status.value, "invalidate bids on")

            await self._repository.settle_tip(auction, invalidated_bid_id=bid.id)

            now = self._clock()
            logger.info(f"Bid {bid.id} invalidated; {auction.id} tip is now ${money(auction.current_bid)}")
            self._hub.publish(
                Event(
                    EventKind.AUCTION_UPDATE,
                    auction.id,
                    {
                        "timeRemaining": auction.time_remaining(now),
                        "currentBid": money(auction.current_bid),
                        "totalBids": auction.total_bids,
                        "invalidatedBidId": bid.id,
                    },
                )
            )
            return auction

    # =========================================================================
    # Finalization
    # =========================================================================

    async def close_auction(self, auction_id: str) -> Optional[Auction]:
        """End an active auction whose end_time has passed; None if there was nothing to close."""
        async with self.locks.hold(auction_id):
            auction = await self._repository.get_auction(auction_id)
            if auction is None or auction.status != AuctionStatus.ACTIVE:
                return None
            if self._clock() < auction.end_time:
                return None

            auction.status = AuctionStatus.ENDED
            top = await self._repository.settle_tip(auction)

            winner_name = top.bidder_name if top is not None else None
            logger.info(
                f"Auction {auction.id} ended - winner: {winner_name or 'none'}"
                + (f", final bid ${money(top.amount)}" if top is not None else "")
            )
            self._hub.publish(self._ended_event(auction, winner_name, "time-expired"))

        self.locks.release(auction_id)
        return auction

    def _ended_event(self, auction: Auction, winner_name: Optional[str], reason: str) -> Event:
        has_winner = auction.winner_bidder_id is not None
        final_amount: Optional[Decimal] = auction.current_bid if has_winner else None
        return Event(
            EventKind.AUCTION_ENDED,
            auction.id,
            {
                "winnerId": auction.winner_bidder_id,
                "winnerName": winner_name,
                "finalAmount": money(final_amount),
                "reserveMet": auction.reserve_met,
                "reason": reason,
            },
        )
