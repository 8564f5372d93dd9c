"""Help request routes: intake, lookup, cancellation and admin assignment."""

from fastapi import APIRouter, Depends, Request

from helpdispatch.auth import CurrentUser, verify_admin_key
from helpdispatch.config import settings
from helpdispatch.database import get_db_session
from helpdispatch.db_models import User
from helpdispatch.errors import QueueUnavailableError
from helpdispatch.models import (
    AssignRequest,
    AssignResponse,
    ErrorResponse,
    RequestCreate,
    RequestResponse,
)
from helpdispatch.rate_limit import limiter
from helpdispatch.services.assignment import assign_helper
from helpdispatch.services.dispatch import DispatchPublisher
from helpdispatch.services.requests import cancel_request, create_request, get_request

router = APIRouter()


def get_publisher(request: Request) -> DispatchPublisher:
    publisher = getattr(request.app.state, "publisher", None)
    if publisher is None:
        raise QueueUnavailableError("Dispatch publisher is not configured")
    return publisher


@router.post(
    "/v1/requests",
    response_model=RequestResponse,
    status_code=201,
    responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def post_request(
    request: Request,
    body: RequestCreate,
    user: User = CurrentUser,
    session=Depends(get_db_session),
    publisher: DispatchPublisher = Depends(get_publisher),
):
    """Create a help request and queue it for dispatch by urgency."""
    return await create_request(
        session,
        publisher,
        user.id,
        body.category,
        body.description,
        urgency=body.urgency,
        title=body.title,
    )


@router.get(
    "/v1/requests/{request_id}",
    response_model=RequestResponse,
    responses={404: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_read)
async def read_request(
    request: Request,
    request_id: int,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    return await get_request(session, request_id)


@router.post(
    "/v1/requests/{request_id}/cancel",
    response_model=RequestResponse,
    responses={403: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_write)
async def post_cancel(
    request: Request,
    request_id: int,
    user: User = CurrentUser,
    session=Depends(get_db_session),
):
    return await cancel_request(session, request_id, user.id)


@router.post(
    "/v1/admin/requests/{request_id}/assign",
    response_model=AssignResponse,
    dependencies=[Depends(verify_admin_key)],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
@limiter.limit(settings.rate_limit_admin)
async def admin_assign(
    request: Request,
    request_id: int,
    body: AssignRequest,
    session=Depends(get_db_session),
):
    """Assign a specific helper directly, without going through the queue."""
    return await assign_helper(session, request_id, body.helper_id)
