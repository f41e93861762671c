import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.types import TypeDecorator

from comment_auction.parser import CENT, format_amount, to_money

Base = declarative_base()


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value is not None else None


def money(value: Optional[Decimal]) -> Optional[str]:
    return format_amount(value) if value is not None else None


# =========================
# COLUMN TYPES
# =========================

class Cents(TypeDecorator):
    """Monetary amount stored as integer cents, exposed as Decimal."""

    impl = Integer
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return int(to_money(value) / CENT)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(value) * CENT).quantize(CENT)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return as_utc(value).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class AuctionStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"


class BidSource(str, enum.Enum):
    OPERATOR = "operator"
    EXTERNAL_COMMENT = "external-comment"
    BUY_NOW = "buy-now"
    TEST = "test"


def _enum_column(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=20,
        values_callable=lambda members: [m.value for m in members],
    )


# =========================
# DATABASE MODELS
# =========================

class Bidder(Base):
    __tablename__ = "bidders"

    id = Column(String(32), primary_key=True)
    name = Column(String, nullable=False)
    external_id = Column(String, unique=True, index=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, nullable=False)

    def __init__(self, **kwargs):
        kwargs.setdefault("id", new_id())
        kwargs.setdefault("is_active", True)
        kwargs.setdefault("created_at", utcnow())
        super().__init__(**kwargs)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "externalId": self.external_id,
            "isActive": self.is_active,
        }


class Auction(Base):
    __tablename__ = "auctions"

    id = Column(String(32), primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    starting_bid = Column(Cents, nullable=False)
    bid_increment = Column(Cents, nullable=False)
    current_bid = Column(Cents, nullable=False)
    reserve_price = Column(Cents)
    buy_now_price = Column(Cents)
    end_time = Column(UTCDateTime, nullable=False)
    status = Column(_enum_column(AuctionStatus), nullable=False, default=AuctionStatus.DRAFT)
    auto_extend = Column(Boolean, nullable=False, default=True)
    extension_minutes = Column(Integer, nullable=False, default=5)
    external_post_id = Column(String, index=True)
    winner_bidder_id = Column(String(32), ForeignKey("bidders.id"))
    total_bids = Column(Integer, nullable=False, default=0)
    unique_bidders = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("idx_auction_status_end", "status", "end_time"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("id", new_id())
        kwargs.setdefault("status", AuctionStatus.DRAFT)
        kwargs.setdefault("auto_extend", True)
        kwargs.setdefault("extension_minutes", 5)
        kwargs.setdefault("total_bids", 0)
        kwargs.setdefault("unique_bidders", 0)
        kwargs.setdefault("created_at", utcnow())
        if kwargs.get("current_bid") is None:
            kwargs["current_bid"] = kwargs.get("starting_bid")
        super().__init__(**kwargs)

    @property
    def minimum_bid(self) -> Decimal:
        """Lowest acceptable amount for the next bid."""
        if self.winner_bidder_id is None:
            return self.starting_bid
        return max(self.starting_bid, self.current_bid + self.bid_increment)

    @property
    def reserve_met(self) -> bool:
        if self.reserve_price is None:
            return True
        return self.winner_bidder_id is not None and self.current_bid >= self.reserve_price

    def time_remaining(self, now: datetime) -> float:
        """Seconds until end_time, never negative."""
        if self.status != AuctionStatus.ACTIVE:
            return 0.0
        return max((self.end_time - now).total_seconds(), 0.0)

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "startingBid": money(self.starting_bid),
            "bidIncrement": money(self.bid_increment),
            "currentBid": money(self.current_bid),
            "minimumBid": money(self.minimum_bid),
            "reservePrice": money(self.reserve_price),
            "reserveMet": self.reserve_met,
            "buyNowPrice": money(self.buy_now_price),
            "endTime": iso(self.end_time),
            "autoExtend": self.auto_extend,
            "extensionMinutes": self.extension_minutes,
            "externalPostId": self.external_post_id,
            "winnerBidderId": self.winner_bidder_id,
            "totalBids": self.total_bids,
            "uniqueBidders": self.unique_bidders,
            "createdAt": iso(self.created_at),
        }
        if now is not None:
            data["timeRemaining"] = self.time_remaining(now)
        return data


class Bid(Base):
    __tablename__ = "bids"

    id = Column(String(32), primary_key=True)
    auction_id = Column(String(32), ForeignKey("auctions.id"), nullable=False, index=True)
    bidder_id = Column(String(32), ForeignKey("bidders.id"), nullable=False, index=True)
    bidder_name = Column(String, nullable=False)
    amount = Column(Cents, nullable=False)
    source = Column(_enum_column(BidSource), nullable=False)
    external_comment_id = Column(String)
    # comment a bid came from; shared by every revision of an edited comment
    comment_ref = Column(String, index=True)
    valid = Column(Boolean, nullable=False, default=True)
    winning = Column(Boolean, nullable=False, default=False)
    created_at = Column(UTCDateTime, nullable=False)

    def __init__(self, **kwargs):
        kwargs.setdefault("id", new_id())
        kwargs.setdefault("valid", True)
        kwargs.setdefault("winning", False)
        kwargs.setdefault("created_at", utcnow())
        super().__init__(**kwargs)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "auctionId": self.auction_id,
            "bidderId": self.bidder_id,
            "bidderName": self.bidder_name,
            "amount": money(self.amount),
            "source": self.source.value,
            "externalCommentId": self.external_comment_id,
            "valid": self.valid,
            "winning": self.winning,
            "createdAt": iso(self.created_at),
        }


Index(
    "uq_bid_external_comment",
    Bid.external_comment_id,
    unique=True,
    sqlite_where=Bid.external_comment_id.isnot(None),
    postgresql_where=Bid.external_comment_id.isnot(None),
)
Index("idx_bid_auction_amount", Bid.auction_id, Bid.amount.desc())
Index("idx_bid_auction_created", Bid.auction_id, Bid.created_at)


# =========================
# PYDANTIC SCHEMAS
# =========================

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class OperatorBidCreate(CamelModel):
    auction_id: str = Field(alias="auctionId")
    bidder_name: str = Field(alias="bidderName", min_length=1, max_length=100)
    amount: Decimal = Field(gt=0, decimal_places=2)
    source: Literal["operator", "test"] = "operator"

    @field_validator("bidder_name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("bidderName must not be blank")
        return value


class AuctionCreate(CamelModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    starting_bid: Decimal = Field(alias="startingBid", gt=0, decimal_places=2)
    bid_increment: Decimal = Field(alias="bidIncrement", gt=0, decimal_places=2)
    reserve_price: Optional[Decimal] = Field(None, alias="reservePrice", gt=0, decimal_places=2)
    buy_now_price: Optional[Decimal] = Field(None, alias="buyNowPrice", gt=0, decimal_places=2)
    end_time: datetime = Field(alias="endTime")
    auto_extend: bool = Field(True, alias="autoExtend")
    extension_minutes: Optional[int] = Field(None, alias="extensionMinutes", gt=0)
    external_post_id: Optional[str] = Field(None, alias="externalPostId")

    @field_validator("end_time")
    @classmethod
    def normalize_end_time(cls, value: datetime) -> datetime:
        return as_utc(value)

    @model_validator(mode="after")
    def check_prices(self):
        if self.buy_now_price is not None and self.buy_now_price <= self.starting_bid:
            raise ValueError("buyNowPrice must exceed startingBid")
        return self


class PostConnect(CamelModel):
    external_post_id: str = Field(alias="externalPostId", min_length=1)


class CommentCheck(CamelModel):
    auction_id: str = Field(alias="auctionId")
    comment_text: str = Field(alias="commentText")
    user_name: str = Field("Test User", alias="userName", min_length=1)


class ManualCommentCreate(CamelModel):
    post_id: str = Field(alias="postId", min_length=1)
    author_name: str = Field(alias="authorName", min_length=1)
    text: str
    comment_id: Optional[str] = Field(None, alias="commentId")
    author_id: Optional[str] = Field(None, alias="authorId")
