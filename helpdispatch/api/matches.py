"""Match completion route."""

from fastapi import APIRouter, Depends, Request

from helpdispatch.auth import CurrentUser
from helpdispatch.config import settings
from helpdispatch.database import get_db_session
from helpdispatch.db_models import User
from helpdispatch.models import CompleteResponse, ErrorResponse
from helpdispatch.rate_limit import limiter
from helpdispatch.services.completion import complete_match

router = APIRouter()


@router.post(
    "/v1/matches/{match_id}/complete",
    response_model=CompleteResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def post_complete(
    request: Request,
    match_id: int,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    """Mark a match completed. Callable by its helper or the requester."""
    return await complete_match(session, match_id, user.id)
