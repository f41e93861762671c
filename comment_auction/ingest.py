"""
Comment ingestion: turns external comments into bids.

Webhook deliveries, monitor polling and subscriber-reported comments all end
up in ``handle_comment`` and share one dedup key, the external comment id.
"""

import asyncio
import dataclasses
from typing import Optional

from comment_auction.bidders import BidderDirectory
from comment_auction.bidding import (
    VALIDATION_KINDS,
    BidEngine,
    BidResult,
    Rejected,
    RejectionKind,
)
from comment_auction.comments import Comment, CommentSource, parse_platform_time
from comment_auction.exceptions import AuctionStateError
from comment_auction.logger import get_logger
from comment_auction.models import Bid, BidSource, money, new_id
from comment_auction.parser import parse_bid_amount
from comment_auction.repository import Repository

logger = get_logger("ingest")


def revision_key(comment_id: str, revision: int) -> str:
    """Dedup key of the bid produced by the ``revision``-th edit of a comment."""
    return f"{comment_id}#{revision}"


def comment_from_webhook(value: dict) -> Comment:
    author = value.get("from") or {}
    return Comment(
        comment_id=str(value["comment_id"]),
        post_id=value.get("post_id"),
        author_id=str(author.get("id") or ""),
        author_name=author.get("name") or "Unknown",
        text=value.get("message") or "",
        created_at=parse_platform_time(value.get("created_time")),
    )


class CommentIngestor:
    def __init__(
        self,
        repository: Repository,
        engine: BidEngine,
        directory: BidderDirectory,
        source: CommentSource,
        reply_to_comments: bool = True,
        entry_budget: float = 5.0,
    ):
        self._repository = repository
        self._engine = engine
        self._directory = directory
        self._source = source
        self._reply_to_comments = reply_to_comments
        self._entry_budget = entry_budget

    # =========================================================================
    # Comment arrival
    # =========================================================================

    async def handle_comment(
        self, comment: Comment, auction_id: Optional[str] = None, acknowledge: bool = True
    ) -> BidResult:
        """Parse a comment and place the bid it contains; the auction defaults to the post's."""
        amount = parse_bid_amount(comment.text)
        if amount is None:
            logger.debug(f"Comment {comment.comment_id} from {comment.author_name}: no bid detected")
            return Rejected(RejectionKind.PARSER_MISS, "No bid amount found in comment")

        if auction_id is None:
            auction = await self._repository.get_auction_by_post(comment.post_id) if comment.post_id else None
            if auction is None:
                logger.debug(f"Comment {comment.comment_id}: no active auction for post {comment.post_id}")
                return Rejected(RejectionKind.AUCTION_NOT_FOUND, f"No active auction for post {comment.post_id}")
            auction_id = auction.id

        logger.info(f"Bid detected: ${money(amount)} from {comment.author_name} ({comment.comment_id})")
        bidder = await self._directory.resolve_or_create(self._author_identity(comment), comment.author_name)
        result = await self._engine.place_bid(
            auction_id,
            bidder.id,
            amount,
            BidSource.EXTERNAL_COMMENT,
            external_comment_id=comment.comment_id,
        )
        self._log_result(comment, result)
        if acknowledge:
            await self._acknowledge(comment.comment_id, result)
        return result

    async def check_comment(self, auction_id: str, text: str, user_name: str) -> BidResult:
        """Run operator-supplied text through the comment pipeline."""
        comment = Comment(
            comment_id=f"test-comment-{new_id()}",
            post_id=None,
            author_id=f"test:{' '.join(user_name.split()).casefold()}",
            author_name=user_name,
            text=text,
            created_at=self._engine_clock(),
        )
        return await self.handle_comment(comment, auction_id=auction_id, acknowledge=False)

    async def handle_socket_comment(self, post_id: Optional[str], comment_id: str) -> Optional[BidResult]:
        """A subscriber reported a comment id; load it from the platform and ingest it."""
        comment = await self._source.get_comment(comment_id, post_id)
        if comment is None:
            logger.warning(f"Comment {comment_id} could not be loaded from the platform")
            return None
        if comment.post_id is None and post_id is not None:
            comment = dataclasses.replace(comment, post_id=post_id)
        return await self.handle_comment(comment)

    # =========================================================================
    # Edits and removals
    # =========================================================================

    async def handle_edit(self, comment: Comment) -> BidResult:
        bids = await self._repository.list_comment_bids(comment.comment_id)
        if not bids:
            return await self.handle_comment(comment)

        valid = [b for b in bids if b.valid]
        prior = valid[-1] if valid else None
        amount = parse_bid_amount(comment.text)

        if amount is None:
            for bid in valid:
                await self._retract(bid)
            if valid and self._reply_to_comments:
                await self._source.reply_to_comment(comment.comment_id, "Bid is no longer valid due to edit.")
            return Rejected(RejectionKind.PARSER_MISS, "Edited comment no longer contains a bid")

        if prior is not None and amount == prior.amount:
            return Rejected(RejectionKind.DUPLICATE_COMMENT, "Edit does not change the bid amount")

        if prior is not None and amount < prior.amount:
            await self._retract(prior)

        result = await self._engine.place_bid(
            bids[0].auction_id,
            bids[0].bidder_id,
            amount,
            BidSource.EXTERNAL_COMMENT,
            external_comment_id=revision_key(comment.comment_id, len(bids)),
            comment_ref=comment.comment_id,
        )
        self._log_result(comment, result)

        if result.ok and prior is not None and amount > prior.amount:
            await self._retract(prior)
        await self._acknowledge(comment.comment_id, result, edited=True)
        return result

    async def handle_remove(self, comment_id: str) -> int:
        """Invalidate every valid bid of a removed comment; returns how many."""
        removed = 0
        for bid in await self._repository.list_comment_bids(comment_id):
            if bid.valid and await self._retract(bid):
                removed += 1
        if removed:
            logger.info(f"Comment {comment_id} removed; {removed} bid(s) invalidated")
        return removed

    async def _retract(self, bid: Bid) -> bool:
        try:
            await self._engine.invalidate_bid(bid.id)
            return True
        except AuctionStateError as exc:
            logger.info(f"Bid {bid.id} kept: {exc.message}")
            return False

    # =========================================================================
    # Webhook envelopes
    # =========================================================================

    async def handle_webhook(self, payload: dict) -> int:
        """
        Dispatch every comment change in a webhook envelope; returns how many.
        An entry that runs past its budget abandons the rest of the envelope.
        """
        if payload.get("object") != "page":
            logger.warning(f"Ignoring webhook for object {payload.get('object')!r}")
            return 0

        entries = payload.get("entry") or []
        dispatched = 0
        for index, entry in enumerate(entries):
            try:
                dispatched += await asyncio.wait_for(self._handle_entry(entry), timeout=self._entry_budget)
            except asyncio.TimeoutError:
                logger.error(
                    f"Webhook entry {index} exceeded {self._entry_budget}s; "
                    f"abandoning {len(entries) - index} remaining entries"
                )
                break
        return dispatched

    async def _handle_entry(self, entry: dict) -> int:
        dispatched = 0
        for change in entry.get("changes") or []:
            if change.get("field") != "feed":
                continue
            value = change.get("value") or {}
            if value.get("item") != "comment" or "comment_id" not in value:
                continue

            verb = value.get("verb")
            try:
                if verb == "add":
                    await self.handle_comment(comment_from_webhook(value))
                elif verb == "edited":
                    await self.handle_edit(comment_from_webhook(value))
                elif verb == "remove":
                    await self.handle_remove(str(value["comment_id"]))
                else:
                    logger.debug(f"Ignoring comment verb {verb!r}")
                    continue
            except Exception:
                logger.exception(f"Failed to process {verb} of comment {value.get('comment_id')}")
                continue
            dispatched += 1
        return dispatched

    # =========================================================================
    # Helpers
    # =========================================================================

    def _engine_clock(self):
        return self._engine.now()

    @staticmethod
    def _author_identity(comment: Comment) -> str:
        if comment.author_id:
            return comment.author_id
        return f"anonymous:{comment.comment_id}"

    @staticmethod
    def _log_result(comment: Comment, result: BidResult):
        if result.ok:
            return
        if result.kind in VALIDATION_KINDS:
            logger.info(f"Comment {comment.comment_id} bid rejected: {result.detail}")
        else:
            logger.debug(f"Comment {comment.comment_id} ignored: {result.kind.value}")

    async def _acknowledge(self, comment_id: str, result: BidResult, edited: bool = False):
        if not self._reply_to_comments:
            return
        if result.ok:
            amount = money(result.bid.amount)
            if result.buy_now:
                text = f"Buy now accepted: ${amount}"
            elif edited:
                text = f"Bid updated: ${amount}"
            else:
                text = f"Bid confirmed: ${amount}"
        elif result.kind in VALIDATION_KINDS:
            text = f"Bid failed: {result.detail}"
        else:
            return
        await self._source.reply_to_comment(comment_id, text)
