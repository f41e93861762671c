from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comment_auction.exceptions import DuplicateExternalComment, StorageError
from comment_auction.logger import get_logger
from comment_auction.models import Auction, AuctionStatus, Bid, Bidder
from comment_auction.parser import CENT

logger = get_logger("repository")

BID_ORDERS = ("amount", "recent", "chronological")
ZERO = Decimal("0.00")


def _top_valid_bid(auction_id: str):
    # ties go to the earliest bid
    return (
        select(Bid)
        .where(Bid.auction_id == auction_id, Bid.valid.is_(True))
        .order_by(Bid.amount.desc(), Bid.created_at, Bid.id)
        .limit(1)
    )


class Repository(ABC):
    """Storage surface used by the engine, monitor and ingress."""

    # Auctions

    @abstractmethod
    async def get_auction(self, auction_id: str) -> Optional[Auction]: ...

    @abstractmethod
    async def get_auction_by_post(self, post_id: str) -> Optional[Auction]:
        """Active auction linked to an external post, if any."""

    @abstractmethod
    async def list_auctions(self, status: Optional[AuctionStatus] = None, limit: int = 50) -> List[Auction]: ...

    @abstractmethod
    async def list_active_auctions(self) -> List[Auction]: ...

    @abstractmethod
    async def list_expired_auctions(self, now: datetime) -> List[Auction]:
        """Active auctions whose end_time is at or before ``now``."""

    @abstractmethod
    async def save_auction(self, auction: Auction) -> Auction: ...

    # Bids

    @abstractmethod
    async def append_bid(self, bid: Bid) -> Bid:
        """Insert a bid; raises DuplicateExternalComment on id collision."""

    @abstractmethod
    async def record_bid(self, auction: Auction, bid: Bid) -> Bid:
        """
        Insert ``bid``, refresh the auction's bid counters, save the auction
        and, when the bid is winning, make it the auction's only winning bid.
        """

    @abstractmethod
    async def get_bid(self, bid_id: str) -> Optional[Bid]: ...

    @abstractmethod
    async def find_bid_by_external_comment(self, external_comment_id: str) -> Optional[Bid]: ...

    @abstractmethod
    async def list_comment_bids(self, comment_ref: str) -> List[Bid]:
        """Bids that came from one external comment, oldest first."""

    @abstractmethod
    async def list_bids(
        self, auction_id: str, order: str = "amount", limit: Optional[int] = None, valid_only: bool = False
    ) -> List[Bid]: ...

    @abstractmethod
    async def highest_valid_bid(self, auction_id: str) -> Optional[Bid]:
        """Maximum-amount valid bid; ties go to the earliest."""

    @abstractmethod
    async def distinct_bidders(self, auction_id: str) -> List[str]: ...

    @abstractmethod
    async def bid_statistics(self, auction_id: str) -> dict:
        """Count, average, highest and lowest amount, unique bidders (all bids)."""

    @abstractmethod
    async def mark_winning(self, auction_id: str, bid_id: Optional[str]): ...

    @abstractmethod
    async def set_bid_valid(self, bid_id: str, valid: bool): ...

    @abstractmethod
    async def settle_tip(self, auction: Auction, invalidated_bid_id: Optional[str] = None) -> Optional[Bid]:
        """
        Invalidate ``invalidated_bid_id`` (when given), point the auction's
        tip at its highest valid bid and save both in one transaction.
        Returns the new top bid.
        """

    # Bidders

    @abstractmethod
    async def get_bidder(self, bidder_id: str) -> Optional[Bidder]: ...

    @abstractmethod
    async def get_bidder_by_external_id(self, external_id: str) -> Optional[Bidder]: ...

    @abstractmethod
    async def add_bidder(self, bidder: Bidder) -> Bidder:
        """Insert a bidder, or return the stored one with the same external id."""

    # Health

    @abstractmethod
    async def ping(self) -> bool: ...


class SqlRepository(Repository):
    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _transaction(self):
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as exc:
            logger.warning(f"Storage failure: {exc}")
            raise StorageError(str(exc)) from exc

    # =========================================================================
    # Auctions
    # =========================================================================

    async def get_auction(self, auction_id):
        async with self._transaction() as session:
            return await session.get(Auction, auction_id)

    async def get_auction_by_post(self, post_id):
        async with self._transaction() as session:
            result = await session.execute(
                select(Auction)
                .where(Auction.external_post_id == post_id, Auction.status == AuctionStatus.ACTIVE)
                .order_by(Auction.created_at.desc())
                .limit(1)
            )
            return result.scalar()

    async def list_auctions(self, status=None, limit=50):
        query = select(Auction).order_by(Auction.created_at.desc()).limit(limit)
        if status is not None:
            query = query.where(Auction.status == status)
        async with self._transaction() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_active_auctions(self):
        async with self._transaction() as session:
            result = await session.execute(
                select(Auction).where(Auction.status == AuctionStatus.ACTIVE).order_by(Auction.end_time)
            )
            return list(result.scalars().all())

    async def list_expired_auctions(self, now):
        async with self._transaction() as session:
            result = await session.execute(
                select(Auction)
                .where(Auction.status == AuctionStatus.ACTIVE, Auction.end_time <= now)
                .order_by(Auction.end_time)
            )
            return list(result.scalars().all())

    async def save_auction(self, auction):
        async with self._transaction() as session:
            await session.merge(auction)
        return auction

    # =========================================================================
    # Bids
    # =========================================================================

    async def _insert_bid(self, session: AsyncSession, bid: Bid):
        if bid.external_comment_id is not None:
            existing = await session.execute(
                select(Bid.id).where(Bid.external_comment_id == bid.external_comment_id)
            )
            if existing.scalar() is not None:
                raise DuplicateExternalComment(bid.external_comment_id)

        session.add(bid)
        try:
            await session.flush()
        except IntegrityError:
            if bid.external_comment_id is not None:
                raise DuplicateExternalComment(bid.external_comment_id)
            raise

    async def _mark_winning(self, session: AsyncSession, auction_id: str, bid_id: Optional[str]):
        await session.execute(
            update(Bid).where(Bid.auction_id == auction_id, Bid.winning.is_(True)).values(winning=False)
        )
        if bid_id is not None:
            await session.execute(update(Bid).where(Bid.id == bid_id).values(winning=True))

    async def append_bid(self, bid):
        async with self._transaction() as session:
            await self._insert_bid(session, bid)
        return bid

    async def record_bid(self, auction, bid):
        async with self._transaction() as session:
            await self._insert_bid(session, bid)

            counts = await session.execute(
                select(func.count(Bid.id), func.count(func.distinct(Bid.bidder_id))).where(
                    Bid.auction_id == auction.id
                )
            )
            total, unique = counts.one()
            auction.total_bids = total
            auction.unique_bidders = unique
            await session.merge(auction)

            if bid.winning:
                await self._mark_winning(session, auction.id, bid.id)
        return bid

    async def get_bid(self, bid_id):
        async with self._transaction() as session:
            return await session.get(Bid, bid_id)

    async def find_bid_by_external_comment(self, external_comment_id):
        async with self._transaction() as session:
            result = await session.execute(
                select(Bid).where(Bid.external_comment_id == external_comment_id)
            )
            return result.scalar()

    async def list_comment_bids(self, comment_ref):
        async with self._transaction() as session:
            result = await session.execute(
                select(Bid).where(Bid.comment_ref == comment_ref).order_by(Bid.created_at, Bid.id)
            )
            return list(result.scalars().all())

    async def list_bids(self, auction_id, order="amount", limit=None, valid_only=False):
        if order not in BID_ORDERS:
            raise ValueError(f"Unknown bid order {order!r}")

        query = select(Bid).where(Bid.auction_id == auction_id)
        if valid_only:
            query = query.where(Bid.valid.is_(True))
        if order == "amount":
            query = query.order_by(Bid.amount.desc(), Bid.created_at, Bid.id)
        elif order == "recent":
            query = query.order_by(Bid.created_at.desc(), Bid.id)
        else:
            query = query.order_by(Bid.created_at, Bid.id)
        if limit is not None:
            query = query.limit(limit)

        async with self._transaction() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def highest_valid_bid(self, auction_id):
        async with self._transaction() as session:
            result = await session.execute(_top_valid_bid(auction_id))
            return result.scalar()

    async def distinct_bidders(self, auction_id):
        async with self._transaction() as session:
            result = await session.execute(
                select(Bid.bidder_id).where(Bid.auction_id == auction_id).distinct()
            )
            return list(result.scalars().all())

    async def bid_statistics(self, auction_id):
        async with self._transaction() as session:
            result = await session.execute(
                select(
                    func.count(Bid.id),
                    func.sum(Bid.amount),
                    func.max(Bid.amount),
                    func.min(Bid.amount),
                    func.count(func.distinct(Bid.bidder_id)),
                ).where(Bid.auction_id == auction_id)
            )
            total, amount_sum, highest, lowest, unique = result.one()

        if not total:
            return {"totalBids": 0, "averageBid": ZERO, "highestBid": ZERO, "lowestBid": ZERO, "uniqueBidders": 0}
        return {
            "totalBids": total,
            "averageBid": (Decimal(amount_sum) / total).quantize(CENT, rounding=ROUND_HALF_UP),
            "highestBid": highest,
            "lowestBid": lowest,
            "uniqueBidders": unique,
        }

    async def mark_winning(self, auction_id, bid_id):
        async with self._transaction() as session:
            await self._mark_winning(session, auction_id, bid_id)

    async def set_bid_valid(self, bid_id, valid):
        values = {"valid": valid}
        if not valid:
            values["winning"] = False
        async with self._transaction() as session:
            await session.execute(update(Bid).where(Bid.id == bid_id).values(**values))

    async def settle_tip(self, auction, invalidated_bid_id=None):
        async with self._transaction() as session:
            if invalidated_bid_id is not None:
                await session.execute(
                    update(Bid).where(Bid.id == invalidated_bid_id).values(valid=False, winning=False)
                )
            result = await session.execute(_top_valid_bid(auction.id))
            top = result.scalar()

            if top is not None:
                auction.current_bid = top.amount
                auction.winner_bidder_id = top.bidder_id
            else:
                auction.current_bid = auction.starting_bid
                auction.winner_bidder_id = None
            await session.merge(auction)
            await self._mark_winning(session, auction.id, top.id if top is not None else None)
        return top

    # =========================================================================
    # Bidders
    # =========================================================================

    async def get_bidder(self, bidder_id):
        async with self._transaction() as session:
            return await session.get(Bidder, bidder_id)

    async def get_bidder_by_external_id(self, external_id):
        async with self._transaction() as session:
            result = await session.execute(select(Bidder).where(Bidder.external_id == external_id))
            return result.scalar()

    async def add_bidder(self, bidder):
        try:
            async with self._transaction() as session:
                session.add(bidder)
            return bidder
        except StorageError as exc:
            if not isinstance(exc.__cause__, IntegrityError) or bidder.external_id is None:
                raise
        existing = await self.get_bidder_by_external_id(bidder.external_id)
        if existing is None:
            raise StorageError(f"Bidder {bidder.external_id} vanished after conflict")
        return existing

    # =========================================================================
    # Health
    # =========================================================================

    async def ping(self):
        async with self._transaction() as session:
            await session.execute(text("SELECT 1"))
        return True
