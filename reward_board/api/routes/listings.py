from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from reward_board.core.config import Settings, get_settings
from reward_board.schemas.listings import ListingAccepted, ListingCreate, ListingFeedOut, ListingScope
from reward_board.services.producer import ListingProducer, ListingValidationError
from reward_board.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


def get_producer(
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> ListingProducer:
    return ListingProducer(repository, channel=settings.moderation_channel)


@router.post("", response_model=ListingAccepted, status_code=http_status.HTTP_202_ACCEPTED)
async def create_listing(payload: ListingCreate, producer: ListingProducer = Depends(get_producer)) -> ListingAccepted:
    try:
        created = await producer.create_listing(payload)
    except ListingValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return ListingAccepted(**created)


@router.get("", response_model=list[ListingFeedOut])
async def list_published_listings(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    category: str | None = Query(default=None, min_length=1),
    scope: ListingScope | None = Query(default=None),
    state: str | None = Query(default=None, min_length=2, max_length=2),
    municipality_code: str | None = Query(default=None, min_length=1),
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
) -> list[ListingFeedOut]:
    # region filters only narrow the feed for the scope they belong to
    try:
        rows = await repository.list_published_listings(
            limit=min(limit, settings.feed_max_limit),
            offset=offset,
            category=category,
            scope=scope,
            state=state if scope == "STATE" else None,
            municipality_code=municipality_code if scope == "MUNICIPALITY" else None,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return [ListingFeedOut(**row) for row in rows]
