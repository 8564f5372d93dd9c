import random

import pytest

from helpdispatch.db_models import MatchStatus, UserRole
from helpdispatch.services.matching import eligible_helpers, find_best_helper, is_eligible
from tests.conftest import make_match, make_request, make_user


@pytest.mark.asyncio
async def test_only_active_volunteers_and_caregivers_are_eligible(db):
    senior = await make_user(db, UserRole.senior)
    volunteer = await make_user(db, UserRole.volunteer)
    caregiver = await make_user(db, UserRole.caregiver)
    await make_user(db, UserRole.volunteer, is_active=False)
    await make_user(db, UserRole.admin)

    async with db() as session:
        candidates = await eligible_helpers(session)

    ids = {c.helper.id for c in candidates}
    assert ids == {volunteer.id, caregiver.id}
    assert not is_eligible(senior)
    assert is_eligible(volunteer)
    assert not is_eligible(None)


@pytest.mark.asyncio
async def test_fewest_active_matches_wins_over_rating(db):
    senior = await make_user(db, UserRole.senior)
    busy = await make_user(db, UserRole.volunteer, rating=5.0)
    idle = await make_user(db, UserRole.caregiver, rating=3.0)
    earlier = await make_request(db, senior)
    await make_match(db, earlier, busy)

    request = await make_request(db, senior)
    async with db() as session:
        chosen = await find_best_helper(session, request)

    assert chosen.id == idle.id


@pytest.mark.asyncio
async def test_completed_matches_do_not_count_as_load(db):
    senior = await make_user(db, UserRole.senior)
    veteran = await make_user(db, UserRole.volunteer, rating=4.9)
    newcomer = await make_user(db, UserRole.volunteer, rating=4.0)
    done = await make_request(db, senior)
    await make_match(db, done, veteran, status=MatchStatus.completed)

    request = await make_request(db, senior)
    async with db() as session:
        candidates = {c.helper.id: c.active_matches for c in await eligible_helpers(session)}
        chosen = await find_best_helper(session, request)

    assert candidates == {veteran.id: 0, newcomer.id: 0}
    assert chosen.id == veteran.id


@pytest.mark.asyncio
async def test_equal_load_prefers_higher_rating(db):
    senior = await make_user(db, UserRole.senior)
    await make_user(db, UserRole.volunteer, rating=3.5)
    best = await make_user(db, UserRole.volunteer, rating=4.8)
    await make_user(db, UserRole.caregiver, rating=4.1)

    request = await make_request(db, senior)
    async with db() as session:
        chosen = await find_best_helper(session, request)

    assert chosen.id == best.id


@pytest.mark.asyncio
async def test_full_ties_are_broken_randomly(db):
    senior = await make_user(db, UserRole.senior)
    a = await make_user(db, UserRole.volunteer, rating=4.5)
    b = await make_user(db, UserRole.volunteer, rating=4.5)
    await make_user(db, UserRole.volunteer, rating=2.0)

    request = await make_request(db, senior)
    seen = set()
    async with db() as session:
        for seed in range(40):
            chosen = await find_best_helper(session, request, rng=random.Random(seed))
            seen.add(chosen.id)

    assert seen == {a.id, b.id}


@pytest.mark.asyncio
async def test_requester_is_never_their_own_helper(db):
    volunteer_requester = await make_user(db, UserRole.volunteer, rating=5.0)
    other = await make_user(db, UserRole.volunteer, rating=1.0)

    request = await make_request(db, volunteer_requester)
    async with db() as session:
        chosen = await find_best_helper(session, request)

    assert chosen.id == other.id


@pytest.mark.asyncio
async def test_no_candidates_returns_none(db):
    senior = await make_user(db, UserRole.senior)
    await make_user(db, UserRole.volunteer, is_active=False)

    request = await make_request(db, senior)
    async with db() as session:
        assert await find_best_helper(session, request) is None
