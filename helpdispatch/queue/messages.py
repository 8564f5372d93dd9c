"""Queue message envelope, schema validation and handler dispositions."""

from __future__ import annotations

import enum
import json

from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError

from helpdispatch.db_models import Urgency
from helpdispatch.errors import SchemaError
from helpdispatch.ids import message_id as make_message_id

# Broker priority per urgency (queue declared with x-max-priority=10).
URGENCY_PRIORITY: dict[Urgency, int] = {
    Urgency.low: 1,
    Urgency.medium: 3,
    Urgency.high: 6,
    Urgency.urgent: 9,
}


def priority_for(urgency: Urgency | str | None) -> int:
    if urgency is None:
        return URGENCY_PRIORITY[Urgency.low]
    try:
        return URGENCY_PRIORITY[Urgency(urgency)]
    except ValueError:
        return URGENCY_PRIORITY[Urgency.low]


class Disposition(str, enum.Enum):
    """What a handler decided about a message; the consumer maps it to ack/DLQ/retry."""

    processed = "processed"
    schema_invalid = "schema_invalid"
    business_retryable = "business_retryable"
    business_fatal = "business_fatal"


class DispatchMessage(BaseModel):
    """Envelope published to ``request_created`` and the retry lane.

    ``helper_id`` is set when the helper was chosen up front; without it the
    consumer runs helper selection. Unknown domain fields ride along.
    """

    model_config = ConfigDict(extra="allow")

    request_id: StrictInt = Field(gt=0)
    helper_id: StrictInt | None = Field(default=None, gt=0)
    urgency: Urgency | None = None
    attempt: int = Field(default=0, ge=0)
    message_id: str = Field(default_factory=make_message_id)

    @property
    def priority(self) -> int:
        return priority_for(self.urgency)

    def to_body(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")

    def next_attempt(self) -> DispatchMessage:
        return self.model_copy(update={"attempt": self.attempt + 1})


def parse_message(body: bytes) -> DispatchMessage:
    """Decode and validate a delivered body. Raises SchemaError on any problem."""
    try:
        data = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SchemaError(f"Message body is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise SchemaError("Message body must be a JSON object")

    try:
        return DispatchMessage.model_validate(data)
    except ValidationError as exc:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        raise SchemaError(f"Message failed schema check: {fields}") from exc
