import asyncio
import contextlib
import json
from datetime import datetime
from typing import Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect

from comment_auction.exceptions import AuctionEngineError
from comment_auction.hub import BroadcastHub, Event, EventKind, Subscription
from comment_auction.logger import get_logger
from comment_auction.models import money, utcnow
from comment_auction.repository import Repository

logger = get_logger("ws")


def _auction_id_of(data) -> Optional[str]:
    if isinstance(data, str):
        return data or None
    if isinstance(data, dict):
        value = data.get("auctionId")
        return str(value) if value else None
    return None


def _error(message: str) -> dict:
    return {"event": "error", "data": {"message": message}}


class SubscriberChannel:
    """
    Bidirectional subscriber connection.

    Outbound traffic (hub events and direct replies) goes through the
    subscription's bounded queue and a single pump task, so a slow client
    only ever loses its own oldest messages.

    Inbound messages are ``{"event": name, "data": payload}``:
        join-auction / leave-auction: data is the auction id or {"auctionId": id}
        external-comment: {"postId": ..., "commentId": ...}
    """

    def __init__(
        self,
        hub: BroadcastHub,
        repository: Repository,
        ingestor,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._hub = hub
        self._repository = repository
        self._ingestor = ingestor
        self._clock = clock

    async def serve(self, websocket: WebSocket, auction_id: Optional[str] = None):
        await websocket.accept()
        subscription = self._hub.subscribe()
        pump = asyncio.create_task(self._pump(websocket, subscription))
        logger.info(f"Subscriber {subscription.id} connected")

        try:
            if auction_id is not None:
                await self._join(subscription, auction_id)

            while True:
                raw = await websocket.receive_text()
                await self._dispatch(subscription, raw)
        except WebSocketDisconnect:
            pass
        finally:
            self._hub.unsubscribe(subscription)
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
            logger.info(f"Subscriber {subscription.id} disconnected")

    async def _pump(self, websocket: WebSocket, subscription: Subscription):
        try:
            while True:
                message = await subscription.get()
                await websocket.send_text(json.dumps(message))
        except (WebSocketDisconnect, RuntimeError) as exc:
            logger.debug(f"Subscriber {subscription.id} send loop ended: {exc}")

    async def _dispatch(self, subscription: Subscription, raw: str):
        try:
            message = json.loads(raw)
        except ValueError:
            subscription.offer(_error("Messages must be JSON"))
            return
        if not isinstance(message, dict) or "event" not in message:
            subscription.offer(_error("Messages must look like {\"event\": ..., \"data\": ...}"))
            return

        event = message["event"]
        data = message.get("data")

        if event == "join-auction":
            auction_id = _auction_id_of(data)
            if auction_id is None:
                subscription.offer(_error("join-auction needs an auction id"))
                return
            await self._join(subscription, auction_id)

        elif event == "leave-auction":
            auction_id = _auction_id_of(data)
            if auction_id is None:
                subscription.offer(_error("leave-auction needs an auction id"))
                return
            self._hub.leave(subscription, auction_id)
            subscription.offer({"event": "left-auction", "data": {"auctionId": auction_id}})

        elif event == "external-comment":
            await self._external_comment(subscription, data)

        else:
            subscription.offer(_error(f"Unknown event {event!r}"))

    async def _join(self, subscription: Subscription, auction_id: str):
        self._hub.join(subscription, auction_id)
        subscription.offer({"event": "joined-auction", "data": {"auctionId": auction_id}})

        try:
            auction = await self._repository.get_auction(auction_id)
        except AuctionEngineError as exc:
            logger.warning(f"Could not load auction {auction_id} for subscriber {subscription.id}: {exc}")
            return
        if auction is None:
            subscription.offer(_error(f"Auction {auction_id} not found"))
            return

        state = Event(
            EventKind.AUCTION_UPDATE,
            auction.id,
            {
                "timeRemaining": auction.time_remaining(self._clock()),
                "currentBid": money(auction.current_bid),
                "totalBids": auction.total_bids,
                "status": auction.status.value,
            },
        )
        subscription.offer(state.to_message())

    async def _external_comment(self, subscription: Subscription, data):
        if not isinstance(data, dict) or not data.get("commentId"):
            subscription.offer(_error("external-comment needs a commentId"))
            return

        comment_id = str(data["commentId"])
        post_id = data.get("postId")
        try:
            result = await self._ingestor.handle_socket_comment(post_id, comment_id)
        except AuctionEngineError as exc:
            logger.warning(f"external-comment {comment_id} failed: {exc}")
            subscription.offer(_error(f"Comment {comment_id} could not be processed"))
            return

        reply = {"commentId": comment_id, "found": result is not None}
        if result is not None:
            reply["accepted"] = result.ok
            if not result.ok:
                reply["kind"] = result.kind.value
        subscription.offer({"event": "comment-processed", "data": reply})
