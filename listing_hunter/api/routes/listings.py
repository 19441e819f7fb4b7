from fastapi import APIRouter, Depends, HTTPException, Query, status as http_status

from listing_hunter.schemas.listings import (
    Listing,
    ListingFilter,
    ListingPage,
    ListingSort,
    RateListingRequest,
    RateListingResponse,
)
from listing_hunter.services.hunter import get_hunter
from listing_hunter.services.repository import (
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)

router = APIRouter()


@router.get("", response_model=ListingPage)
async def list_listings(
    listing_filter: ListingFilter = Query(default="new", alias="filter"),
    sort: ListingSort = Query(default="rating"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    hunter=Depends(get_hunter),
) -> ListingPage:
    try:
        return await hunter.listings.query(listing_filter, sort=sort, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("/{listing_id}", response_model=Listing)
async def get_listing(listing_id: str, hunter=Depends(get_hunter)) -> Listing:
    try:
        return await hunter.listings.require(listing_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post("/{listing_id}/rating", response_model=RateListingResponse)
async def rate_listing(
    listing_id: str,
    payload: RateListingRequest,
    hunter=Depends(get_hunter),
) -> RateListingResponse:
    try:
        return await hunter.rate_listing_by_id(listing_id, payload.rating, payload.note)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.post("/{listing_id}/archive", response_model=Listing)
async def archive_listing(listing_id: str, hunter=Depends(get_hunter)) -> Listing:
    try:
        await hunter.listings.archive(listing_id)
        return await hunter.listings.require(listing_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=http_status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
