"""Test fixtures: in-memory SQLite via SQLModel, file-backed SQLite for races, broker fakes."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest
from aio_pika.exceptions import ChannelInvalidStateError
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from helpdispatch.api.requests import get_publisher
from helpdispatch.database import get_db_session
from helpdispatch.db_models import (  # noqa: F401
    HelpRequest,
    Match,
    MatchStatus,
    Rating,
    RequestStatus,
    Urgency,
    User,
    UserRole,
)
from helpdispatch.errors import QueueUnavailableError
from helpdispatch.main import app
from helpdispatch.queue.messages import DispatchMessage
from helpdispatch.rate_limit import limiter


@pytest.fixture
async def db():
    engine = create_async_engine(
        "sqlite+aiosqlite://", echo=False, connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]

    async def override_get_db_session():
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session

    yield factory

    app.dependency_overrides.clear()
    await engine.dispose()


@pytest.fixture
async def file_db(tmp_path):
    """File-backed database so concurrent sessions really contend for locks."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'race.db'}",
        echo=False,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)  # type: ignore[call-overload]
    yield factory
    await engine.dispose()


class FakePublisher:
    """Records dispatch publishes; ``fail=True`` simulates a broker outage."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[DispatchMessage] = []

    async def publish(self, request: HelpRequest) -> DispatchMessage:
        if self.fail:
            raise QueueUnavailableError("Broker is disconnected")
        message = DispatchMessage(request_id=request.id, urgency=request.urgency)
        self.published.append(message)
        return message


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
async def client(db, publisher):
    app.dependency_overrides[get_publisher] = lambda: publisher
    limiter.reset()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def user_header(user_id: int) -> dict:
    return {"X-User-Id": str(user_id), "Accept": "application/json"}


_email_seq = iter(range(1, 1_000_000))


async def make_user(
    factory,
    role: UserRole = UserRole.volunteer,
    *,
    rating: float = 5.0,
    is_active: bool = True,
    first_name: str | None = None,
) -> User:
    async with factory() as session:
        user = User(
            email=f"user{next(_email_seq)}@example.org",
            first_name=first_name,
            role=role,
            rating=rating,
            is_active=is_active,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


async def make_request(
    factory,
    requester: User,
    urgency: Urgency = Urgency.medium,
    status: RequestStatus = RequestStatus.pending,
    category: str = "groceries",
) -> HelpRequest:
    async with factory() as session:
        request = HelpRequest(
            requester_id=requester.id,
            category=category,
            description="Pick up groceries from the corner shop",
            urgency=urgency,
            status=status,
        )
        session.add(request)
        await session.commit()
        await session.refresh(request)
        return request


async def make_match(
    factory,
    request: HelpRequest,
    helper: User,
    status: MatchStatus = MatchStatus.active,
) -> Match:
    """Insert a match directly and move the request to the matching state."""
    async with factory() as session:
        match = Match(request_id=request.id, helper_id=helper.id, status=status)
        session.add(match)
        req = await session.get(HelpRequest, request.id)
        req.status = (
            RequestStatus.fulfilled if status == MatchStatus.completed else RequestStatus.matched
        )
        session.add(req)
        await session.commit()
        await session.refresh(match)
        return match


# ---------------------------------------------------------------------------
# aio-pika fakes
# ---------------------------------------------------------------------------


class FakeIncomingMessage:
    def __init__(
        self,
        body: bytes,
        priority: int | None = None,
        message_id: str | None = None,
    ) -> None:
        self.body = body
        self.priority = priority
        self.message_id = message_id
        self.delivery_channel = FakeChannel()
        self.acked = False
        self.rejected = False
        self.nacked = False
        self.requeue: bool | None = None

    @classmethod
    def for_envelope(cls, envelope: DispatchMessage) -> FakeIncomingMessage:
        return cls(envelope.to_body(), priority=envelope.priority, message_id=envelope.message_id)

    @property
    def channel(self) -> FakeChannel:
        # aio-pika raises instead of returning a closed channel
        if self.delivery_channel.is_closed:
            raise ChannelInvalidStateError
        return self.delivery_channel

    @property
    def settled(self) -> bool:
        return self.acked or self.rejected or self.nacked

    async def ack(self) -> None:
        self.acked = True

    async def reject(self, requeue: bool = False) -> None:
        self.rejected = True
        self.requeue = requeue

    async def nack(self, requeue: bool = True) -> None:
        self.nacked = True
        self.requeue = requeue


class FakeBroker:
    """Stands in for QueueConnection in consumer tests."""

    def __init__(self) -> None:
        self.declared: list = []
        self.subscriptions: dict[str, Callable[..., Awaitable[None]]] = {}
        self.published: list[dict] = []
        self.fail_publish = False
        self.fail_subscribe = False

    async def declare(self, topology) -> None:
        self.declared.append(topology)

    async def subscribe(self, queue_name: str, callback) -> None:
        if self.fail_subscribe:
            raise QueueUnavailableError("Broker unreachable, reconnect attempts exhausted")
        self.subscriptions[queue_name] = callback

    async def publish(self, queue_name, body, *, priority=None, message_id=None, headers=None):
        if self.fail_publish:
            raise QueueUnavailableError("Broker unreachable")
        self.published.append(
            {"queue": queue_name, "body": body, "priority": priority, "message_id": message_id}
        )


@pytest.fixture
def broker():
    return FakeBroker()


class FakeExchange:
    def __init__(self) -> None:
        self.published: list[tuple] = []

    async def publish(self, message, routing_key: str):
        self.published.append((message, routing_key))


class FakeQueue:
    def __init__(self, name: str, arguments: dict | None = None) -> None:
        self.name = name
        self.arguments = arguments or {}
        self.consumers: list[tuple] = []

    async def consume(self, callback, no_ack: bool = False, consumer_tag: str | None = None):
        self.consumers.append((callback, no_ack, consumer_tag))
        return consumer_tag


class FakeChannel:
    def __init__(self) -> None:
        self.is_closed = False
        self.close_callbacks = FakeCallbacks()
        self.prefetch_count: int | None = None
        self.default_exchange = FakeExchange()
        self.queues: dict[str, FakeQueue] = {}
        self.declare_calls: list[tuple] = []

    def drop(self, exc: BaseException | None = None) -> None:
        """Simulate a channel-level close from the broker (e.g. PRECONDITION_FAILED)."""
        self.is_closed = True
        for cb in self.close_callbacks.callbacks:
            cb(self, exc)

    async def set_qos(self, prefetch_count: int) -> None:
        self.prefetch_count = prefetch_count

    async def declare_queue(self, name, durable=False, arguments=None, passive=False):
        self.declare_calls.append((name, durable, arguments, passive))
        queue = self.queues.get(name)
        if queue is None:
            queue = FakeQueue(name, arguments)
            self.queues[name] = queue
        return queue


class FakeCallbacks:
    def __init__(self) -> None:
        self.callbacks: list = []

    def add(self, callback) -> None:
        self.callbacks.append(callback)


class FakeConnection:
    def __init__(self) -> None:
        self.is_closed = False
        self.channels: list[FakeChannel] = []
        self.close_callbacks = FakeCallbacks()

    async def channel(self) -> FakeChannel:
        ch = FakeChannel()
        self.channels.append(ch)
        return ch

    async def close(self) -> None:
        self.is_closed = True

    def drop(self, exc: BaseException | None = None) -> None:
        """Simulate the broker closing the connection under us."""
        self.is_closed = True
        for ch in self.channels:
            ch.is_closed = True
        for cb in self.close_callbacks.callbacks:
            cb(self, exc)


class ConnectFactory:
    """``connect_factory`` stand-in: fails ``failures`` times, then hands out FakeConnections."""

    def __init__(self, failures: int = 0, delay: float = 0) -> None:
        self.failures = failures
        self.delay = delay
        self.calls = 0
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str) -> FakeConnection:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.calls <= self.failures:
            raise ConnectionRefusedError("connection refused")
        conn = FakeConnection()
        self.connections.append(conn)
        return conn
