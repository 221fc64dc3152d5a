from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from reward_board.schemas.listings import ListingCreate
from reward_board.services.repository import RepositoryValidationError

logger = logging.getLogger(__name__)


class ListingValidationError(RepositoryValidationError):
    """Raised when listing input is missing or malformed; nothing is persisted."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


class ListingProducer:
    """Request-path entry point: persists a listing and defers its review to the queue."""

    def __init__(self, repository: Any, *, channel: str) -> None:
        self.repository = repository
        self.channel = channel

    async def create_listing(self, payload: ListingCreate | dict[str, Any]) -> dict[str, str]:
        listing = self._validate(payload)
        fields = listing.model_dump()
        if fields.get("state"):
            fields["state"] = fields["state"].upper()

        row = await self.repository.create_listing_and_enqueue_review(listing=fields, channel=self.channel)
        logger.info("listing created id=%s status=%s channel=%s", row["id"], row["status"], self.channel)
        return {"id": row["id"], "status": row["status"]}

    @staticmethod
    def _validate(payload: ListingCreate | dict[str, Any]) -> ListingCreate:
        if isinstance(payload, ListingCreate):
            return payload
        if not isinstance(payload, dict):
            raise ListingValidationError("listing payload must be an object")
        try:
            return ListingCreate.model_validate(payload)
        except ValidationError as exc:
            errors = exc.errors(include_url=False, include_context=False)
            raise ListingValidationError("invalid listing payload", errors=errors) from exc
