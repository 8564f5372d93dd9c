"""Rating routes."""

from fastapi import APIRouter, Depends, Query, Request

from helpdispatch.auth import CurrentUser
from helpdispatch.config import settings
from helpdispatch.database import get_db_session
from helpdispatch.db_models import User
from helpdispatch.models import (
    ErrorResponse,
    HelperRatingsResponse,
    MyRatingsResponse,
    PendingRatingsResponse,
    RatingCreate,
    RatingDeleteResponse,
    RatingResponse,
    RatingUpdate,
)
from helpdispatch.rate_limit import limiter
from helpdispatch.services.ratings import (
    create_rating,
    delete_rating,
    get_helper_ratings,
    list_my_ratings,
    list_pending_ratings,
    update_rating,
)

router = APIRouter()


@router.post(
    "/v1/ratings",
    response_model=RatingResponse,
    status_code=201,
    responses={
        400: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
    },
)
@limiter.limit(settings.rate_limit_write)
async def post_rating(
    request: Request,
    body: RatingCreate,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    """Rate the helper of a completed match. One rating per match."""
    return await create_rating(session, body.match_id, user.id, body.score, body.comment)


# Static paths before /v1/ratings/{rating_id} style routes.
@router.get("/v1/ratings/pending", response_model=PendingRatingsResponse)
@limiter.limit(settings.rate_limit_read)
async def pending_ratings(
    request: Request,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    pending = await list_pending_ratings(session, user.id)
    return {"pending": pending, "total": len(pending)}


@router.get("/v1/ratings/mine", response_model=MyRatingsResponse)
@limiter.limit(settings.rate_limit_read)
async def my_ratings(
    request: Request,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    return await list_my_ratings(session, user.id)


@router.get(
    "/v1/ratings/helper/{helper_id}",
    response_model=HelperRatingsResponse,
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_read)
async def helper_ratings(
    request: Request,
    helper_id: int,
    session=Depends(get_db_session),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    return await get_helper_ratings(session, helper_id, limit=limit, offset=offset)


@router.put(
    "/v1/ratings/{rating_id}",
    response_model=RatingResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def put_rating(
    request: Request,
    rating_id: int,
    body: RatingUpdate,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    return await update_rating(session, rating_id, user.id, body.score, body.comment)


@router.delete(
    "/v1/ratings/{rating_id}",
    response_model=RatingDeleteResponse,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def remove_rating(
    request: Request,
    rating_id: int,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    return await delete_rating(session, rating_id, user.id)
