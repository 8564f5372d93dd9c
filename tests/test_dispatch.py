import pytest
from sqlmodel import select

from helpdispatch.db_models import HelpRequest, Match, RequestStatus, UserRole
from helpdispatch.queue.messages import DispatchMessage, Disposition
from helpdispatch.services.dispatch import Dispatcher
from tests.conftest import make_match, make_request, make_user


@pytest.mark.asyncio
async def test_dispatch_assigns_best_helper(db):
    senior = await make_user(db, UserRole.senior)
    helper = await make_user(db, UserRole.caregiver)
    request = await make_request(db, senior)

    disposition = await Dispatcher(db)(DispatchMessage(request_id=request.id))

    assert disposition is Disposition.processed
    async with db() as session:
        match = (await session.execute(select(Match))).scalar_one()
        assert match.helper_id == helper.id
        assert (await session.get(HelpRequest, request.id)).status == RequestStatus.matched


@pytest.mark.asyncio
async def test_redelivery_of_handled_request_is_acked_without_new_match(db):
    senior = await make_user(db, UserRole.senior)
    helper = await make_user(db, UserRole.volunteer)
    await make_user(db, UserRole.volunteer)
    request = await make_request(db, senior)
    await make_match(db, request, helper)

    disposition = await Dispatcher(db)(DispatchMessage(request_id=request.id))

    assert disposition is Disposition.processed
    async with db() as session:
        assert len((await session.execute(select(Match))).scalars().all()) == 1


@pytest.mark.asyncio
async def test_unknown_request_is_fatal(db):
    assert await Dispatcher(db)(DispatchMessage(request_id=424242)) is Disposition.business_fatal


@pytest.mark.asyncio
async def test_explicit_helper_skips_selection(db):
    senior = await make_user(db, UserRole.senior)
    await make_user(db, UserRole.volunteer, rating=5.0)
    chosen = await make_user(db, UserRole.volunteer, rating=1.0)
    request = await make_request(db, senior)

    disposition = await Dispatcher(db)(
        DispatchMessage(request_id=request.id, helper_id=chosen.id)
    )

    assert disposition is Disposition.processed
    async with db() as session:
        assert (await session.execute(select(Match))).scalar_one().helper_id == chosen.id


@pytest.mark.asyncio
async def test_explicit_ineligible_or_missing_helper_is_fatal(db):
    senior = await make_user(db, UserRole.senior)
    inactive = await make_user(db, UserRole.volunteer, is_active=False)
    request = await make_request(db, senior)
    dispatcher = Dispatcher(db)

    assert (
        await dispatcher(DispatchMessage(request_id=request.id, helper_id=inactive.id))
        is Disposition.business_fatal
    )
    assert (
        await dispatcher(DispatchMessage(request_id=request.id, helper_id=9999))
        is Disposition.business_fatal
    )
