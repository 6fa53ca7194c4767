from __future__ import annotations

import json
from datetime import datetime
from typing import Annotated, Any, Literal, Mapping, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from crmsync.core.errors import EventPayloadError


EVENT_CREATED = "organization.assignment.created"
EVENT_UPDATED = "organization.assignment.updated"
EVENT_DELETED = "organization.assignment.deleted"
EVENT_DEACTIVATED = "organization.assignment.deactivated"
EVENT_ACTIVATED = "organization.assignment.activated"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AssignmentChanges(_CamelModel):
    assignment_type: str | None = None
    is_active: bool | None = None
    priority: int | None = None


class AssignmentPayload(_CamelModel):
    assignment_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    assignment_type: str | None = None
    is_active: bool | None = None
    assigned_at: datetime | None = None
    priority: int | None = None
    metadata: dict[str, Any] | None = None
    changes: AssignmentChanges | None = None
    assigned_by: str | None = None
    deactivated_by: str | None = None
    activated_by: str | None = None


class _AssignmentEvent(BaseModel):
    event_id: str | None = None
    tenant_id: str = Field(min_length=1)
    data: AssignmentPayload


class AssignmentCreated(_AssignmentEvent):
    event_type: Literal["organization.assignment.created"]


class AssignmentUpdated(_AssignmentEvent):
    event_type: Literal["organization.assignment.updated"]


class AssignmentDeleted(_AssignmentEvent):
    event_type: Literal["organization.assignment.deleted"]


class AssignmentDeactivated(_AssignmentEvent):
    event_type: Literal["organization.assignment.deactivated"]


class AssignmentActivated(_AssignmentEvent):
    event_type: Literal["organization.assignment.activated"]


AssignmentEvent = Annotated[
    Union[
        AssignmentCreated,
        AssignmentUpdated,
        AssignmentDeleted,
        AssignmentDeactivated,
        AssignmentActivated,
    ],
    Field(discriminator="event_type"),
]

_event_adapter: TypeAdapter[Any] = TypeAdapter(AssignmentEvent)


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    return str(value)


def _strip_quotes(value: str) -> str:
    # Producers sometimes JSON-quote scalar fields.
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return value[1:-1]
    return value


def decode_stream_fields(raw: Mapping[Any, Any] | Sequence[Any]) -> dict[str, str]:
    """Decode a stream entry's fields into a plain string mapping.

    Accepts the flat alternating name/value list of the raw protocol or the mapping
    that redis-py returns, with bytes or str values.
    """
    if isinstance(raw, Mapping):
        items = list(raw.items())
    else:
        values = list(raw)
        if len(values) % 2:
            raise EventPayloadError("stream entry has an odd number of field elements")
        items = list(zip(values[0::2], values[1::2]))
    return {_text(name): _strip_quotes(_text(value)) for name, value in items}


def parse_assignment_event(fields: Mapping[str, str]) -> AssignmentEvent:
    raw_data = fields.get("data")
    if not raw_data:
        raise EventPayloadError("event has no data field")
    try:
        data = json.loads(raw_data)
    except json.JSONDecodeError as exc:
        raise EventPayloadError(f"event data is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise EventPayloadError("event data must be a JSON object")
    try:
        return _event_adapter.validate_python(
            {
                "event_id": fields.get("eventId"),
                "event_type": fields.get("eventType"),
                "tenant_id": fields.get("tenantId"),
                "data": data,
            }
        )
    except ValidationError as exc:
        raise EventPayloadError(f"invalid assignment event: {exc.error_count()} error(s)") from exc
