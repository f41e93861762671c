"""
Shared fixtures: in-memory SQLite repository, fake clock, and the engine
components wired together the way the app wires them.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from comment_auction.bidders import BidderDirectory
from comment_auction.bidding import BidEngine
from comment_auction.comments import Comment, ManualCommentSource
from comment_auction.database import create_engine, create_schema, create_sessionmaker
from comment_auction.hub import BroadcastHub
from comment_auction.ingest import CommentIngestor
from comment_auction.models import Auction, AuctionStatus
from comment_auction.monitor import AuctionMonitor
from comment_auction.repository import SqlRepository

IN_MEMORY_DB = "sqlite+aiosqlite://"
START = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


# =============================================================================
# Infrastructure
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def db_engine():
    engine = create_engine(IN_MEMORY_DB)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def repository(db_engine):
    return SqlRepository(create_sessionmaker(db_engine))


@pytest.fixture
def hub():
    return BroadcastHub(queue_size=10)


@pytest.fixture
def events(hub):
    """Every event the hub publishes, in order."""
    published = []
    hub.add_listener(published.append)
    return published


# =============================================================================
# Components
# =============================================================================


@pytest.fixture
def engine(repository, hub, clock):
    return BidEngine(repository, hub, clock=clock)


@pytest.fixture
def directory(repository):
    return BidderDirectory(repository)


@pytest.fixture
def source():
    return ManualCommentSource()


@pytest.fixture
def ingestor(repository, engine, directory, source):
    return CommentIngestor(repository, engine, directory, source, reply_to_comments=True, entry_budget=5)


@pytest.fixture
def monitor(repository, engine, hub, ingestor, source, clock):
    return AuctionMonitor(
        repository,
        engine,
        hub,
        ingestor=ingestor,
        source=source,
        poll_interval=60,
        sweep_interval=300,
        fetch_timeout=1,
        clock=clock,
    )


# =============================================================================
# Factories
# =============================================================================


@pytest.fixture
def make_auction(repository, clock):
    async def make(**overrides) -> Auction:
        fields = {
            "title": "Vintage Stratocaster",
            "starting_bid": Decimal("10.00"),
            "bid_increment": Decimal("1.00"),
            "end_time": clock.now + timedelta(hours=1),
            "status": AuctionStatus.ACTIVE,
            "extension_minutes": 5,
            "created_at": clock.now,
        }
        fields.update(overrides)
        auction = Auction(**fields)
        await repository.save_auction(auction)
        return auction

    return make


@pytest.fixture
def make_bidder(directory):
    async def make(name: str):
        return await directory.resolve_or_create(f"fb:{name.lower()}", name)

    return make


@pytest.fixture
def make_comment(clock):
    def make(comment_id: str, text: str, author: str = "Bob", post_id: str = "post-1", **overrides) -> Comment:
        fields = {
            "comment_id": comment_id,
            "post_id": post_id,
            "author_id": f"fb:{author.lower()}",
            "author_name": author,
            "text": text,
            "created_at": clock.now,
        }
        fields.update(overrides)
        return Comment(**fields)

    return make
