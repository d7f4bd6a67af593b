"""Test envelope parsing, payload validation and deterministic event ids."""

import json
import uuid

import pytest

from fulfillment.core.exceptions import MalformedEventError, UnknownEventTypeError
from fulfillment.events.envelope import (
    EventType,
    PurchaseConfirmedPayload,
    PurchaseCreatedPayload,
    SessionsGeneratedPayload,
    TrainerAllocatedPayload,
    derive_event_id,
    new_envelope,
    parse_envelope,
    raw_to_dict,
)

pytestmark = pytest.mark.unit


def _wire(**overrides) -> dict:
    envelope = {
        "eventId": "evt-001",
        "correlationId": "corr-001",
        "type": "PurchaseConfirmed",
        "source": "payment-service",
        "version": "1.0.0",
        "emittedAt": "2026-10-18T10:00:00Z",
        "payload": {"paymentId": "P1", "studentId": "S1", "courseId": "C1", "tier": 10, "metadata": {}},
    }
    envelope.update(overrides)
    return envelope


class TestParseEnvelope:
    def test_parses_bytes(self):
        envelope = parse_envelope(json.dumps(_wire()).encode("utf-8"))

        assert envelope.event_id == "evt-001"
        assert envelope.correlation_id == "corr-001"
        assert envelope.event_type is EventType.PURCHASE_CONFIRMED

        payload = envelope.payload_as(PurchaseConfirmedPayload)
        assert payload.payment_id == "P1"
        assert payload.tier == 10

    def test_invalid_json_is_malformed(self):
        with pytest.raises(MalformedEventError):
            parse_envelope(b"{not json")

    def test_non_object_is_malformed(self):
        with pytest.raises(MalformedEventError):
            parse_envelope("[1, 2, 3]")

    def test_missing_correlation_id_is_malformed(self):
        wire = _wire()
        del wire["correlationId"]
        with pytest.raises(MalformedEventError):
            parse_envelope(wire)

    def test_unknown_type_parses_but_is_rejected_on_dispatch(self):
        envelope = parse_envelope(_wire(type="RefundIssued"))
        with pytest.raises(UnknownEventTypeError) as exc_info:
            _ = envelope.event_type
        assert exc_info.value.event_type == "RefundIssued"

    def test_invalid_payload_is_malformed(self):
        envelope = parse_envelope(_wire(payload={"paymentId": "P1", "studentId": "", "courseId": "C1"}))
        with pytest.raises(MalformedEventError):
            envelope.typed_payload()


class TestTypedPayload:
    PURCHASE_ID = "6f1c2a3e-0000-4000-8000-000000000001"
    ALLOCATION_ID = "6f1c2a3e-0000-4000-8000-000000000002"
    SESSION_ID = "6f1c2a3e-0000-4000-8000-000000000003"

    @pytest.mark.parametrize(
        "event_type,payload,model",
        [
            (
                "PurchaseConfirmed",
                {"paymentId": "P1", "studentId": "S1", "courseId": "C1", "tier": 10},
                PurchaseConfirmedPayload,
            ),
            (
                "PurchaseCreated",
                {"purchaseId": PURCHASE_ID, "studentId": "S1", "courseId": "C1", "tier": 10},
                PurchaseCreatedPayload,
            ),
            (
                "TrainerAllocated",
                {
                    "allocationId": ALLOCATION_ID,
                    "studentId": "S1",
                    "courseId": "C1",
                    "tutorId": "T1",
                    "sessionCount": 10,
                },
                TrainerAllocatedPayload,
            ),
            (
                "SessionsGenerated",
                {"allocationId": ALLOCATION_ID, "sessionIds": [SESSION_ID]},
                SessionsGeneratedPayload,
            ),
        ],
    )
    def test_typed_payload_picks_model_for_type(self, event_type, payload, model):
        envelope = parse_envelope(_wire(type=event_type, payload=payload))
        assert isinstance(envelope.typed_payload(), model)

    def test_payload_as_validates_against_given_model(self):
        envelope = parse_envelope(_wire())
        payload = envelope.payload_as(PurchaseConfirmedPayload)
        assert payload.payment_id == "P1"
        assert payload.tier == 10

    def test_payload_as_wrong_model_is_malformed(self):
        envelope = parse_envelope(_wire())
        with pytest.raises(MalformedEventError):
            envelope.payload_as(PurchaseCreatedPayload)


class TestNewEnvelope:
    def test_wire_format_is_camel_case(self):
        purchase_id = uuid.uuid4()
        envelope = new_envelope(
            EventType.PURCHASE_CREATED,
            PurchaseCreatedPayload(purchase_id=purchase_id, student_id="S1", course_id="C1", tier=10),
            correlation_id="corr-001",
            source="purchase-materializer",
        )
        wire = envelope.to_wire()

        assert set(wire) == {"eventId", "correlationId", "type", "source", "version", "emittedAt", "payload"}
        assert wire["type"] == "PurchaseCreated"
        assert wire["payload"]["purchaseId"] == str(purchase_id)
        assert wire["payload"]["studentId"] == "S1"

        # Round trip through the parser
        assert parse_envelope(json.dumps(wire)).payload_as(PurchaseCreatedPayload).purchase_id == purchase_id

    def test_derived_event_ids_are_stable(self):
        first = derive_event_id("corr-001", EventType.PURCHASE_CREATED)
        again = derive_event_id("corr-001", EventType.PURCHASE_CREATED)
        other_type = derive_event_id("corr-001", EventType.TRAINER_ALLOCATED)

        assert first == again
        assert first != other_type
        uuid.UUID(first)


def test_raw_to_dict_keeps_undecodable_payload():
    assert raw_to_dict(b"\xff\xfe garbage") == {"raw": "\ufffd\ufffd garbage"}
    assert raw_to_dict(b'{"eventId": "e1"}') == {"eventId": "e1"}
