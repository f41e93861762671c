import asyncio
from decimal import Decimal

from comment_auction.bidding import RejectionKind
from comment_auction.hub import EventKind
from comment_auction.ingest import CommentIngestor, comment_from_webhook, revision_key
from comment_auction.models import BidSource


def webhook(*values, obj="page"):
    """Envelope with one entry per change value."""
    return {
        "object": obj,
        "entry": [{"id": "page-1", "changes": [{"field": "feed", "value": value}]} for value in values],
    }


def comment_change(comment_id, message=None, verb="add", post_id="post-1", author=("fb:bob", "Bob")):
    value = {
        "item": "comment",
        "verb": verb,
        "comment_id": comment_id,
        "post_id": post_id,
        "from": {"id": author[0], "name": author[1]},
        "created_time": 1772366400,
    }
    if message is not None:
        value["message"] = message
    return value


# =============================================================================
# Comment arrival
# =============================================================================


class TestHandleComment:
    async def test_parse_then_place(self, ingestor, engine, repository, make_auction, make_bidder, make_comment, source):
        auction = await make_auction(external_post_id="post-1")
        carol = await make_bidder("Carol")
        await engine.place_bid(auction.id, carol.id, "11.00", BidSource.OPERATOR)

        result = await ingestor.handle_comment(make_comment("c-1", "I bid $25"))

        assert result.ok
        assert result.bid.external_comment_id == "c-1"
        assert result.bid.source == BidSource.EXTERNAL_COMMENT
        assert (await repository.get_auction(auction.id)).current_bid == Decimal("25.00")
        assert source.replies == [("c-1", "Bid confirmed: $25.00")]

    async def test_duplicate_comment_ignored(self, ingestor, repository, make_auction, make_comment, source, events):
        auction = await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "I bid $25"))
        events.clear()

        replay = await ingestor.handle_comment(make_comment("c-1", "I bid $25"))

        assert replay.kind == RejectionKind.DUPLICATE_COMMENT
        assert events == []
        assert len(source.replies) == 1
        assert (await repository.get_auction(auction.id)).current_bid == Decimal("25.00")

    async def test_comment_without_amount(self, ingestor, make_auction, make_comment, source, events):
        await make_auction(external_post_id="post-1")

        result = await ingestor.handle_comment(make_comment("c-1", "what a beauty"))

        assert result.kind == RejectionKind.PARSER_MISS
        assert source.replies == []
        assert events == []

    async def test_unlinked_post(self, ingestor, make_comment, source):
        result = await ingestor.handle_comment(make_comment("c-1", "$25", post_id="post-404"))
        assert result.kind == RejectionKind.AUCTION_NOT_FOUND
        assert source.replies == []

    async def test_below_minimum_gets_reply(self, ingestor, make_auction, make_comment, source):
        await make_auction(external_post_id="post-1")

        result = await ingestor.handle_comment(make_comment("c-1", "$5"))

        assert result.kind == RejectionKind.BELOW_MINIMUM
        assert source.replies == [("c-1", "Bid failed: Minimum bid is $10.00")]

    async def test_replies_can_be_disabled(self, repository, engine, directory, source, make_auction, make_comment):
        quiet = CommentIngestor(repository, engine, directory, source, reply_to_comments=False)
        await make_auction(external_post_id="post-1")

        assert (await quiet.handle_comment(make_comment("c-1", "$25"))).ok
        assert source.replies == []

    async def test_same_author_resolves_to_one_bidder(self, ingestor, repository, make_auction, make_comment):
        auction = await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "$11"))
        await ingestor.handle_comment(make_comment("c-2", "$12"))

        assert len(await repository.distinct_bidders(auction.id)) == 1

    async def test_check_comment_targets_auction(self, ingestor, make_auction, source):
        auction = await make_auction()

        result = await ingestor.check_comment(auction.id, "bid 15", "Test User")

        assert result.ok
        assert result.bid.amount == Decimal("15.00")
        assert result.bid.external_comment_id.startswith("test-comment-")
        assert source.replies == []

    async def test_socket_comment_loaded_from_source(self, ingestor, make_auction, make_comment, source):
        auction = await make_auction(external_post_id="post-1")
        source.push(make_comment("c-7", "$30", post_id=None))

        result = await ingestor.handle_socket_comment("post-1", "c-7")

        assert result.ok
        assert result.auction.id == auction.id

    async def test_socket_comment_unknown(self, ingestor):
        assert await ingestor.handle_socket_comment("post-1", "missing") is None


# =============================================================================
# Edits and removals
# =============================================================================


class TestEdits:
    async def test_edit_to_higher_amount(self, ingestor, repository, make_auction, make_comment, clock):
        auction = await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "$20"))
        clock.advance(seconds=10)

        result = await ingestor.handle_edit(make_comment("c-1", "make that $30"))

        assert result.ok
        assert result.bid.external_comment_id == revision_key("c-1", 1)
        bids = await repository.list_comment_bids("c-1")
        assert [(b.amount, b.valid) for b in bids] == [(Decimal("20.00"), False), (Decimal("30.00"), True)]
        stored = await repository.get_auction(auction.id)
        assert stored.current_bid == Decimal("30.00")
        assert stored.total_bids == 2

    async def test_edit_to_lower_amount_replaces_bid(
        self, ingestor, engine, repository, make_auction, make_bidder, make_comment, clock
    ):
        auction = await make_auction(external_post_id="post-1")
        alice = await make_bidder("Alice")
        await engine.place_bid(auction.id, alice.id, "20", BidSource.OPERATOR)
        await ingestor.handle_comment(make_comment("c-1", "$30"))
        clock.advance(seconds=10)

        result = await ingestor.handle_edit(make_comment("c-1", "$25"))

        assert result.ok
        stored = await repository.get_auction(auction.id)
        assert stored.current_bid == Decimal("25.00")
        assert [b.valid for b in await repository.list_comment_bids("c-1")] == [False, True]

    async def test_edit_below_minimum_leaves_previous_leader(
        self, ingestor, engine, repository, make_auction, make_bidder, make_comment, source
    ):
        auction = await make_auction(external_post_id="post-1")
        alice = await make_bidder("Alice")
        await engine.place_bid(auction.id, alice.id, "20", BidSource.OPERATOR)
        await ingestor.handle_comment(make_comment("c-1", "$30"))

        result = await ingestor.handle_edit(make_comment("c-1", "$18"))

        assert result.kind == RejectionKind.BELOW_MINIMUM
        stored = await repository.get_auction(auction.id)
        assert stored.current_bid == Decimal("20.00")
        assert stored.winner_bidder_id == alice.id
        assert source.replies[-1] == ("c-1", "Bid failed: Minimum bid is $21.00")

    async def test_edit_without_amount_invalidates(self, ingestor, repository, make_auction, make_comment, events):
        auction = await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "$20"))
        events.clear()

        result = await ingestor.handle_edit(make_comment("c-1", "never mind"))

        assert result.kind == RejectionKind.PARSER_MISS
        stored = await repository.get_auction(auction.id)
        assert stored.current_bid == Decimal("10.00")
        assert stored.winner_bidder_id is None
        assert [e.kind for e in events] == [EventKind.AUCTION_UPDATE]

    async def test_edit_same_amount_is_noop(self, ingestor, repository, make_auction, make_comment, events):
        await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "$20"))
        events.clear()

        result = await ingestor.handle_edit(make_comment("c-1", "$20.00 final"))

        assert result.kind == RejectionKind.DUPLICATE_COMMENT
        assert events == []
        assert len(await repository.list_comment_bids("c-1")) == 1

    async def test_edit_back_to_earlier_amount(self, ingestor, repository, make_auction, make_comment, clock):
        """Should place a fresh bid when an edit returns to an amount used before"""
        auction = await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "$20"))

        for text in ("$30", "$20", "$30"):
            clock.advance(seconds=10)
            result = await ingestor.handle_edit(make_comment("c-1", text))
            assert result.ok

        stored = await repository.get_auction(auction.id)
        assert stored.current_bid == Decimal("30.00")
        bids = await repository.list_comment_bids("c-1")
        assert [b.external_comment_id for b in bids] == ["c-1", "c-1#1", "c-1#2", "c-1#3"]
        assert [b.valid for b in bids] == [False, False, False, True]

    async def test_redelivered_edit_is_noop(self, ingestor, repository, make_auction, make_comment, clock):
        await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "$20"))
        clock.advance(seconds=10)
        await ingestor.handle_edit(make_comment("c-1", "$30"))

        result = await ingestor.handle_edit(make_comment("c-1", "$30"))

        assert result.kind == RejectionKind.DUPLICATE_COMMENT
        assert len(await repository.list_comment_bids("c-1")) == 2

    async def test_edit_of_unknown_comment_counts_as_new(self, ingestor, repository, make_auction, make_comment):
        await make_auction(external_post_id="post-1")

        result = await ingestor.handle_edit(make_comment("c-9", "$15"))

        assert result.ok
        assert result.bid.external_comment_id == "c-9"

    async def test_remove_invalidates_bid(self, ingestor, engine, repository, make_auction, make_bidder, make_comment):
        auction = await make_auction(external_post_id="post-1")
        alice = await make_bidder("Alice")
        await engine.place_bid(auction.id, alice.id, "15", BidSource.OPERATOR)
        await ingestor.handle_comment(make_comment("c-1", "$20"))

        assert await ingestor.handle_remove("c-1") == 1

        stored = await repository.get_auction(auction.id)
        assert stored.current_bid == Decimal("15.00")
        assert stored.winner_bidder_id == alice.id
        assert await ingestor.handle_remove("c-1") == 0

    async def test_remove_after_end_keeps_bid(self, ingestor, engine, repository, make_auction, make_comment, clock):
        auction = await make_auction(external_post_id="post-1")
        await ingestor.handle_comment(make_comment("c-1", "$20"))
        clock.now = auction.end_time
        await engine.close_auction(auction.id)

        assert await ingestor.handle_remove("c-1") == 0
        assert (await repository.list_comment_bids("c-1"))[0].valid


# =============================================================================
# Webhook envelopes
# =============================================================================


class TestWebhook:
    async def test_add_event(self, ingestor, repository, make_auction):
        auction = await make_auction(external_post_id="post-1")

        dispatched = await ingestor.handle_webhook(webhook(comment_change("c-1", "I bid $25")))

        assert dispatched == 1
        assert (await repository.get_auction(auction.id)).current_bid == Decimal("25.00")

    async def test_same_delivery_twice_counts_once(self, ingestor, repository, make_auction):
        auction = await make_auction(external_post_id="post-1")
        payload = webhook(comment_change("c-1", "$25"))

        await ingestor.handle_webhook(payload)
        await ingestor.handle_webhook(payload)

        stored = await repository.get_auction(auction.id)
        assert stored.total_bids == 1
        assert stored.current_bid == Decimal("25.00")

    async def test_edit_and_remove_events(self, ingestor, repository, make_auction):
        auction = await make_auction(external_post_id="post-1")
        await ingestor.handle_webhook(webhook(comment_change("c-1", "$20")))
        await ingestor.handle_webhook(webhook(comment_change("c-1", "$35", verb="edited")))
        assert (await repository.get_auction(auction.id)).current_bid == Decimal("35.00")

        await ingestor.handle_webhook(webhook(comment_change("c-1", verb="remove")))
        stored = await repository.get_auction(auction.id)
        assert stored.current_bid == Decimal("10.00")
        assert stored.winner_bidder_id is None

    async def test_ignores_other_objects_and_fields(self, ingestor):
        assert await ingestor.handle_webhook(webhook(comment_change("c-1", "$25"), obj="user")) == 0

        payload = {
            "object": "page",
            "entry": [
                {"changes": [{"field": "photos", "value": {}}]},
                {"changes": [{"field": "feed", "value": {"item": "like", "verb": "add"}}]},
            ],
        }
        assert await ingestor.handle_webhook(payload) == 0

    async def test_failing_change_does_not_stop_envelope(self, ingestor, repository, make_auction, monkeypatch):
        auction = await make_auction(external_post_id="post-1")
        original = ingestor.handle_comment

        async def flaky(comment, auction_id=None, acknowledge=True):
            if comment.comment_id == "c-1":
                raise RuntimeError("boom")
            return await original(comment, auction_id=auction_id, acknowledge=acknowledge)

        monkeypatch.setattr(ingestor, "handle_comment", flaky)
        dispatched = await ingestor.handle_webhook(webhook(comment_change("c-1", "$20"), comment_change("c-2", "$30")))

        assert dispatched == 1
        assert (await repository.get_auction(auction.id)).current_bid == Decimal("30.00")

    async def test_entry_budget_abandons_rest(self, repository, engine, directory, source):
        seen = []

        class SlowIngestor(CommentIngestor):
            async def handle_comment(self, comment, auction_id=None, acknowledge=True):
                seen.append(comment.comment_id)
                await asyncio.sleep(1)

        slow = SlowIngestor(repository, engine, directory, source, entry_budget=0.05)
        dispatched = await slow.handle_webhook(webhook(comment_change("c-1", "$20"), comment_change("c-2", "$30")))

        assert dispatched == 0
        assert seen == ["c-1"]


class TestCommentFromWebhook:
    def test_fields(self):
        comment = comment_from_webhook(comment_change("c-1", "$25"))

        assert comment.comment_id == "c-1"
        assert comment.post_id == "post-1"
        assert comment.author_id == "fb:bob"
        assert comment.author_name == "Bob"
        assert comment.text == "$25"
        assert comment.created_at.isoformat() == "2026-03-01T12:00:00+00:00"

    def test_missing_message_and_author(self):
        comment = comment_from_webhook({"comment_id": "c-2", "post_id": "post-1"})
        assert comment.text == ""
        assert comment.author_name == "Unknown"
        assert comment.author_id == ""
