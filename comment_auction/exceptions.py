class AuctionEngineError(Exception):
    """Base class for engine errors"""

    def __init__(self, message: str = "Auction engine error"):
        self.message = message
        super().__init__(self.message)


class ConfigError(AuctionEngineError):
    """Invalid environment configuration"""


# =============================================================================
# Storage
# =============================================================================


class StorageError(AuctionEngineError):
    """Transient repository failure; the caller may retry"""


class DuplicateExternalComment(AuctionEngineError):
    """A bid with this external comment id is already recorded"""

    def __init__(self, external_comment_id: str):
        self.external_comment_id = external_comment_id
        super().__init__(f"Bid already recorded for comment {external_comment_id}")


# =============================================================================
# Auction administration
# =============================================================================


class AuctionNotFoundError(AuctionEngineError):
    def __init__(self, auction_id: str):
        self.auction_id = auction_id
        super().__init__(f"Auction not found: {auction_id}")


class BidNotFoundError(AuctionEngineError):
    def __init__(self, bid_id: str):
        self.bid_id = bid_id
        super().__init__(f"Bid not found: {bid_id}")


class AuctionStateError(AuctionEngineError):
    """Lifecycle transition not allowed from the auction's current status"""

    def __init__(self, auction_id: str, status: str, action: str):
        self.auction_id = auction_id
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} auction {auction_id} while {status}")


# =============================================================================
# External platform
# =============================================================================


class CommentSourceError(AuctionEngineError):
    """The external platform could not be reached or answered with an error"""
