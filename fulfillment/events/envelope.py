"""Event envelope and payload schemas.

Every event on the log is a JSON envelope with camelCase keys:

    {eventId, correlationId, type, source, version, emittedAt, payload}

The envelope itself accepts any ``type`` string so that unknown types can be
told apart from malformed envelopes; payloads are validated per type.
"""

import json
import uuid
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from fulfillment.core.exceptions import MalformedEventError, UnknownEventTypeError

SCHEMA_VERSION = "1.0.0"

# Namespace for deterministic event ids derived from idempotency keys
EVENT_ID_NAMESPACE = uuid.UUID("6f1c5a0e-2d4b-4b8e-9a53-0c6f1f2d7e41")


class EventType(StrEnum):
    PURCHASE_CONFIRMED = "PurchaseConfirmed"
    PURCHASE_CREATED = "PurchaseCreated"
    TRAINER_ALLOCATED = "TrainerAllocated"
    SESSIONS_GENERATED = "SessionsGenerated"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PurchaseConfirmedPayload(CamelModel):
    payment_id: str = Field(min_length=1)
    student_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    tier: int | None = Field(default=None, gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class PurchaseCreatedPayload(CamelModel):
    purchase_id: uuid.UUID
    student_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    tier: int = Field(gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrainerAllocatedPayload(CamelModel):
    allocation_id: uuid.UUID
    student_id: str = Field(min_length=1)
    course_id: str = Field(min_length=1)
    tutor_id: str = Field(min_length=1)
    session_count: int = Field(gt=0)
    start_date: date | None = None


class SessionsGeneratedPayload(CamelModel):
    allocation_id: uuid.UUID
    session_ids: list[uuid.UUID] = Field(min_length=1)
    student_id: str | None = None
    course_id: str | None = None
    tutor_id: str | None = None


PAYLOAD_MODELS: dict[EventType, type[CamelModel]] = {
    EventType.PURCHASE_CONFIRMED: PurchaseConfirmedPayload,
    EventType.PURCHASE_CREATED: PurchaseCreatedPayload,
    EventType.TRAINER_ALLOCATED: TrainerAllocatedPayload,
    EventType.SESSIONS_GENERATED: SessionsGeneratedPayload,
}


class EventEnvelope(CamelModel):
    event_id: str = Field(min_length=1)
    correlation_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    source: str
    version: str = SCHEMA_VERSION
    emitted_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def event_type(self) -> EventType:
        try:
            return EventType(self.type)
        except ValueError:
            raise UnknownEventTypeError(self.type) from None

    # Quoted: the ``type`` field shadows the builtin inside this class body
    def payload_as(self, model: "type[CamelModel]"):
        """Validate the payload against ``model``; malformed payloads are permanent failures."""
        try:
            return model.model_validate(self.payload)
        except ValidationError as exc:
            raise MalformedEventError(f"Invalid {self.type} payload: {exc}") from exc

    def typed_payload(self):
        return self.payload_as(PAYLOAD_MODELS[self.event_type])

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def derive_event_id(correlation_id: str, event_type: str, *parts: str) -> str:
    """Deterministic event id so a re-executed emit maps onto the same outbox row."""
    name = "|".join([correlation_id, event_type, *parts])
    return str(uuid.uuid5(EVENT_ID_NAMESPACE, name))


def new_envelope(
    event_type: EventType,
    payload: CamelModel,
    correlation_id: str,
    source: str,
    event_id: str | None = None,
    emitted_at: datetime | None = None,
) -> EventEnvelope:
    return EventEnvelope(
        event_id=event_id or str(uuid.uuid4()),
        correlation_id=correlation_id,
        type=event_type.value,
        source=source,
        version=SCHEMA_VERSION,
        emitted_at=emitted_at or datetime.now(UTC),
        payload=payload.model_dump(mode="json", by_alias=True),
    )


def parse_envelope(raw: bytes | str | dict[str, Any]) -> EventEnvelope:
    """Parse a wire message into an envelope.

    Raises MalformedEventError for undecodable JSON or a missing/invalid
    envelope field. The type is not checked here (see ``event_type``).
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedEventError(f"Event is not valid UTF-8: {exc}") from exc
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise MalformedEventError(f"Event is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise MalformedEventError(f"Event must be a JSON object, got {type(raw).__name__}")
    try:
        return EventEnvelope.model_validate(raw)
    except ValidationError as exc:
        raise MalformedEventError(f"Invalid event envelope: {exc}") from exc


def raw_to_dict(raw: bytes | str | dict[str, Any]) -> dict[str, Any]:
    """Best-effort conversion of a wire message for dead-letter storage."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}
    return decoded if isinstance(decoded, dict) else {"raw": decoded}
