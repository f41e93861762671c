from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Literal, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from comment_auction.auctions import AuctionService
from comment_auction.bidders import BidderDirectory
from comment_auction.bidding import BidEngine, RejectionKind
from comment_auction.comments import (
    Comment,
    CommentSource,
    GraphCommentSource,
    ManualCommentSource,
)
from comment_auction.config import Settings
from comment_auction.database import create_engine, create_schema, create_sessionmaker
from comment_auction.exceptions import (
    AuctionEngineError,
    AuctionNotFoundError,
    AuctionStateError,
    BidNotFoundError,
    StorageError,
)
from comment_auction.hub import BroadcastHub
from comment_auction.ingest import CommentIngestor
from comment_auction.logger import get_logger, setup_logging
from comment_auction.models import (
    AuctionCreate,
    AuctionStatus,
    BidSource,
    CommentCheck,
    ManualCommentCreate,
    OperatorBidCreate,
    PostConnect,
    money,
    new_id,
    utcnow,
)
from comment_auction.monitor import AuctionMonitor
from comment_auction.parser import parse_bid_amount
from comment_auction.redis_client import RedisRelay, create_client
from comment_auction.repository import SqlRepository
from comment_auction.websocket import SubscriberChannel

logger = get_logger("api")


@dataclass
class Services:
    settings: Settings
    db_engine: AsyncEngine
    repository: SqlRepository
    hub: BroadcastHub
    engine: BidEngine
    directory: BidderDirectory
    source: CommentSource
    ingestor: CommentIngestor
    monitor: AuctionMonitor
    auctions: AuctionService
    channel: SubscriberChannel
    relay: Optional[RedisRelay] = None
    healthy: bool = True
    clock: Callable[[], datetime] = utcnow


def build_comment_source(settings: Settings) -> CommentSource:
    if settings.polling_enabled:
        return GraphCommentSource(
            settings.external_platform_token,
            settings.graph_api_url,
            timeout=settings.fetch_timeout_seconds,
        )
    if settings.integration_mode == "auto":
        logger.warning("INTEGRATION_MODE=auto without EXTERNAL_PLATFORM_TOKEN; using manual comment source")
    return ManualCommentSource()


async def build_services(settings: Settings, clock: Callable[[], datetime] = utcnow) -> Services:
    db_engine = create_engine(settings.database_url)
    repository = SqlRepository(create_sessionmaker(db_engine))

    healthy = True
    try:
        await create_schema(db_engine)
        await repository.ping()
    except (SQLAlchemyError, OSError, StorageError) as exc:
        logger.critical(f"Repository unreachable at startup, refusing to serve: {exc}")
        healthy = False

    hub = BroadcastHub(settings.subscriber_queue_size)
    relay = None
    if settings.redis_url:
        relay = RedisRelay(create_client(settings.redis_url))
        hub.add_listener(relay)
        logger.info("Relaying auction events to Redis")

    source = build_comment_source(settings)
    engine = BidEngine(repository, hub, clock=clock)
    directory = BidderDirectory(repository)
    ingestor = CommentIngestor(
        repository,
        engine,
        directory,
        source,
        reply_to_comments=settings.reply_to_comments,
        entry_budget=settings.webhook_entry_budget_seconds,
    )
    monitor = AuctionMonitor(
        repository,
        engine,
        hub,
        ingestor=ingestor,
        source=source,
        poll_interval=settings.poll_interval_seconds,
        sweep_interval=settings.backup_sweep_minutes * 60,
        fetch_timeout=settings.fetch_timeout_seconds,
        clock=clock,
    )
    auctions = AuctionService(
        repository,
        engine,
        hub,
        monitor=monitor,
        default_extension_minutes=settings.soft_close_default_minutes,
        clock=clock,
    )
    channel = SubscriberChannel(hub, repository, ingestor, clock=clock)

    return Services(
        settings=settings,
        db_engine=db_engine,
        repository=repository,
        hub=hub,
        engine=engine,
        directory=directory,
        source=source,
        ingestor=ingestor,
        monitor=monitor,
        auctions=auctions,
        channel=channel,
        relay=relay,
        healthy=healthy,
        clock=clock,
    )


def get_services(request: Request) -> Services:
    services = request.app.state.services
    if services is None or not services.healthy:
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return services


def _failure(status_code: int, message: str, kind: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message, "kind": kind})


router = APIRouter()


# =========================================================================
# Webhook
# =========================================================================

@router.get("/api/webhook")
async def verify_webhook(
    request: Request,
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    expected = request.app.state.settings.webhook_verify_token
    if mode == "subscribe" and expected and token == expected:
        logger.info("Webhook verified")
        return PlainTextResponse(challenge or "")
    logger.warning("Webhook verification failed")
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("/api/webhook")
async def receive_webhook(request: Request):
    # always 200: the platform retries anything else
    services = request.app.state.services
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Webhook body is not JSON")
        return {"status": "ok"}

    if services is None or not services.healthy:
        logger.error("Webhook received while storage is unavailable; dropped")
        return {"status": "ok"}
    if not isinstance(payload, dict):
        logger.warning("Webhook body is not an object")
        return {"status": "ok"}

    try:
        dispatched = await services.ingestor.handle_webhook(payload)
        logger.debug(f"Webhook dispatched {dispatched} comment change(s)")
    except Exception:
        logger.exception("Webhook processing failed")
    return {"status": "ok"}


# =========================================================================
# Bids and comments
# =========================================================================

@router.post("/api/bids", status_code=201)
async def operator_bid(body: OperatorBidCreate, services: Services = Depends(get_services)):
    bidder = await services.directory.resolve_operator(body.bidder_name)
    result = await services.engine.place_bid(body.auction_id, bidder.id, body.amount, BidSource(body.source))

    if not result.ok:
        status_code = 503 if result.kind == RejectionKind.STORAGE_ERROR else 400
        return _failure(status_code, result.detail, result.kind.value)

    return {
        "success": True,
        "bid": result.bid.to_dict(),
        "auction": result.auction.to_dict(services.clock()),
    }


@router.post("/api/comments/test")
async def check_comment(body: CommentCheck, services: Services = Depends(get_services)):
    """Run text through the comment pipeline without replying to anyone."""
    amount = parse_bid_amount(body.comment_text)
    result = await services.ingestor.check_comment(body.auction_id, body.comment_text, body.user_name)

    response = {"success": result.ok, "parsedAmount": money(amount)}
    if result.ok:
        response["bid"] = result.bid.to_dict()
        response["auction"] = result.auction.to_dict(services.clock())
    else:
        response["message"] = result.detail
        response["kind"] = result.kind.value
    return response


@router.post("/api/comments/manual", status_code=202)
async def push_manual_comment(body: ManualCommentCreate, services: Services = Depends(get_services)):
    """Queue a comment for the monitor when running without platform access."""
    if not isinstance(services.source, ManualCommentSource):
        return _failure(409, "Manual comments are only accepted in manual integration mode", "ModeMismatch")

    comment = Comment(
        comment_id=body.comment_id or f"manual-{new_id()}",
        post_id=body.post_id,
        author_id=body.author_id or f"manual:{' '.join(body.author_name.split()).casefold()}",
        author_name=body.author_name,
        text=body.text,
        created_at=services.clock(),
    )
    services.source.push(comment)
    return {"success": True, "commentId": comment.comment_id}


# =========================================================================
# Auctions
# =========================================================================

@router.get("/auctions")
async def list_auctions(
    status: Optional[AuctionStatus] = None,
    limit: int = Query(50, ge=1, le=500),
    services: Services = Depends(get_services),
):
    auctions = await services.auctions.list_auctions(status=status, limit=limit)
    now = services.clock()
    return {"auctions": [auction.to_dict(now) for auction in auctions]}


@router.get("/auctions/{auction_id}")
async def get_auction(auction_id: str, services: Services = Depends(get_services)):
    auction = await services.auctions.get(auction_id)
    return {"auction": auction.to_dict(services.clock())}


@router.get("/auctions/{auction_id}/bids")
async def list_bids(
    auction_id: str,
    order: Literal["amount", "recent", "chronological"] = "amount",
    limit: Optional[int] = Query(None, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    bids = await services.auctions.bids(auction_id, order=order, limit=limit)
    return {"bids": [bid.to_dict() for bid in bids]}


@router.get("/auctions/{auction_id}/stats")
async def auction_stats(auction_id: str, services: Services = Depends(get_services)):
    return await services.auctions.statistics(auction_id)


# =========================================================================
# Administration
# =========================================================================

@router.post("/admin/auctions", status_code=201)
async def create_auction(body: AuctionCreate, services: Services = Depends(get_services)):
    auction = await services.auctions.create(body)
    return {"success": True, "auction": auction.to_dict(services.clock())}


@router.post("/admin/auctions/{auction_id}/publish")
async def publish_auction(auction_id: str, services: Services = Depends(get_services)):
    auction = await services.auctions.publish(auction_id)
    return {"success": True, "auction": auction.to_dict(services.clock())}


@router.post("/admin/auctions/{auction_id}/cancel")
async def cancel_auction(auction_id: str, services: Services = Depends(get_services)):
    auction = await services.auctions.cancel(auction_id)
    return {"success": True, "auction": auction.to_dict(services.clock())}


@router.put("/admin/auctions/{auction_id}/post")
async def connect_post(auction_id: str, body: PostConnect, services: Services = Depends(get_services)):
    auction = await services.auctions.connect_post(auction_id, body.external_post_id)
    return {"success": True, "auction": auction.to_dict(services.clock())}


@router.post("/admin/bids/{bid_id}/invalidate")
async def invalidate_bid(bid_id: str, services: Services = Depends(get_services)):
    auction = await services.engine.invalidate_bid(bid_id)
    return {"success": True, "auction": auction.to_dict(services.clock())}


# =========================================================================
# Status
# =========================================================================

@router.get("/monitor")
async def monitor_status(services: Services = Depends(get_services)):
    return services.monitor.status()


@router.get("/health")
async def health(request: Request):
    services = request.app.state.services
    storage = False
    if services is not None and services.healthy:
        try:
            storage = await services.repository.ping()
        except StorageError as exc:
            logger.error(f"Health check ping failed: {exc}")

    settings = request.app.state.settings
    content = {
        "status": "healthy" if storage else "unhealthy",
        "storage": storage,
        "monitor": services.monitor.running if services is not None else False,
        "integrationMode": settings.integration_mode,
        "polling": settings.polling_enabled,
    }
    return JSONResponse(status_code=200 if storage else 503, content=content)


# =========================================================================
# Subscribers
# =========================================================================

async def _serve_subscriber(websocket: WebSocket, auction_id: Optional[str]):
    services = websocket.app.state.services
    if services is None or not services.healthy:
        await websocket.close(code=1011)
        return
    await services.channel.serve(websocket, auction_id)


@router.websocket("/ws")
async def subscriber_ws(websocket: WebSocket):
    await _serve_subscriber(websocket, None)


@router.websocket("/ws/{auction_id}")
async def auction_ws(websocket: WebSocket, auction_id: str):
    await _serve_subscriber(websocket, auction_id)


# =========================================================================
# App
# =========================================================================

def _register_error_handlers(app: FastAPI):
    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return _failure(400, message, "ValidationError")

    @app.exception_handler(AuctionNotFoundError)
    async def auction_not_found(request: Request, exc: AuctionNotFoundError):
        return _failure(404, exc.message, "AuctionNotFound")

    @app.exception_handler(BidNotFoundError)
    async def bid_not_found(request: Request, exc: BidNotFoundError):
        return _failure(404, exc.message, "BidNotFound")

    @app.exception_handler(AuctionStateError)
    async def auction_state(request: Request, exc: AuctionStateError):
        return _failure(409, exc.message, "AuctionStateError")

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        logger.error(f"{request.method} {request.url.path} failed on storage: {exc}")
        return _failure(503, "Storage temporarily unavailable, retry later", "StorageError")

    @app.exception_handler(AuctionEngineError)
    async def engine_error(request: Request, exc: AuctionEngineError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return _failure(500, exc.message, type(exc).__name__)


def create_app(settings: Optional[Settings] = None, clock: Callable[[], datetime] = utcnow) -> FastAPI:
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, settings.log_file)

    app = FastAPI(title="Comment Auction Engine API")
    app.state.settings = settings
    app.state.services = None

    @app.on_event("startup")
    async def startup():
        services = await build_services(settings, clock=clock)
        app.state.services = services
        if services.healthy and settings.monitor_enabled:
            await services.monitor.start()
        logger.info(
            f"Comment auction engine ready (mode={settings.integration_mode}, "
            f"polling={'on' if settings.polling_enabled else 'off'})"
        )

    @app.on_event("shutdown")
    async def shutdown():
        services = app.state.services
        if services is None:
            return
        await services.monitor.stop()
        if services.relay is not None:
            await services.relay.close()
        await services.db_engine.dispose()
        logger.info("Comment auction engine stopped")

    _register_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def run():
    settings = app.state.settings
    uvicorn.run(app, host=settings.host, port=settings.port)
