from comment_auction.logger import get_logger
from comment_auction.models import Bidder
from comment_auction.repository import Repository

logger = get_logger("bidders")

OPERATOR_PREFIX = "operator:"


def operator_identity(display_name: str) -> str:
    """External id for bidders an operator enters by name."""
    return OPERATOR_PREFIX + " ".join(display_name.split()).casefold()


class BidderDirectory:
    """Resolves external identities to bidder records, creating them on first sighting."""

    def __init__(self, repository: Repository):
        self._repository = repository

    async def resolve_or_create(self, external_id: str, display_name: str) -> Bidder:
        bidder = await self._repository.get_bidder_by_external_id(external_id)
        if bidder is not None:
            return bidder

        bidder = await self._repository.add_bidder(
            Bidder(name=display_name.strip() or external_id, external_id=external_id)
        )
        logger.info(f"Created bidder {bidder.name} ({external_id})")
        return bidder

    async def resolve_operator(self, display_name: str) -> Bidder:
        return await self.resolve_or_create(operator_identity(display_name), display_name)
