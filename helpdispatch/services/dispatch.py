"""Dispatch callback (queue message -> matching -> assignment) and its publisher."""

from __future__ import annotations

import logging
import random
from typing import Protocol

from sqlalchemy.orm import sessionmaker

from helpdispatch.db_models import HelpRequest
from helpdispatch.errors import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    QueueUnavailableError,
)
from helpdispatch.queue.connection import QueueConnection
from helpdispatch.queue.messages import DispatchMessage, Disposition
from helpdispatch.queue.topology import QueueTopology
from helpdispatch.services.assignment import assign_helper
from helpdispatch.services.matching import find_best_helper
from helpdispatch.utils import status_str

logger = logging.getLogger("helpdispatch.dispatch")


class DispatchPublisher(Protocol):
    async def publish(self, request: HelpRequest) -> DispatchMessage: ...


class QueueDispatchPublisher:
    """Publishes dispatch messages for new requests onto the main queue.

    With ``require_connected`` (the API default) a publish while the broker is
    down fails fast with QueueUnavailableError instead of waiting out the
    reconnect backoff; the re-enqueue sweep picks the request up later.
    """

    def __init__(
        self,
        connection: QueueConnection,
        topology: QueueTopology,
        *,
        require_connected: bool = True,
    ) -> None:
        self._connection = connection
        self._topology = topology
        self._require_connected = require_connected

    async def publish(self, request: HelpRequest) -> DispatchMessage:
        if self._require_connected and not self._connection.is_connected:
            raise QueueUnavailableError(f"Broker is {self._connection.state.value}")
        message = DispatchMessage(request_id=request.id, urgency=request.urgency)
        await self._connection.publish(
            self._topology.name,
            message.to_body(),
            priority=message.priority,
            message_id=message.message_id,
        )
        logger.info(
            "Enqueued request %s as %s (priority %d)",
            request.id,
            message.message_id,
            message.priority,
        )
        return message


class Dispatcher:
    """Consumer handler: turn one dispatch message into at most one match."""

    def __init__(self, session_factory: sessionmaker, rng: random.Random | None = None) -> None:
        self._session_factory = session_factory
        self._rng = rng

    async def __call__(self, message: DispatchMessage) -> Disposition:
        async with self._session_factory() as session:
            request = await session.get(HelpRequest, message.request_id)
            if request is None:
                logger.warning(
                    "Message %s: request %s does not exist",
                    message.message_id,
                    message.request_id,
                )
                return Disposition.business_fatal

            status = status_str(request.status)
            if status != "pending":
                # Redelivery of an already handled message
                logger.info("Request %s is %s, nothing to dispatch", request.id, status)
                return Disposition.processed

            explicit = message.helper_id is not None
            if explicit:
                helper_id = message.helper_id
            else:
                helper = await find_best_helper(session, request, self._rng)
                if helper is None:
                    logger.info(
                        "No helper available for request %s (attempt %d)",
                        request.id,
                        message.attempt,
                    )
                    return Disposition.business_retryable
                helper_id = helper.id

            try:
                await assign_helper(session, request.id, helper_id)
            except ConflictError as exc:
                logger.info("Request %s: %s", request.id, exc.detail)
                return Disposition.business_retryable
            except NotFoundError as exc:
                logger.warning("Request %s: %s", request.id, exc.detail)
                return Disposition.business_fatal
            except InvalidStateError as exc:
                logger.warning("Request %s: %s", request.id, exc.detail)
                # a chosen helper may have gone inactive since selection
                return Disposition.business_fatal if explicit else Disposition.business_retryable

        return Disposition.processed
