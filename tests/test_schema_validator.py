from __future__ import annotations

import pytest

from supportdesk.core.errors import ValidationError
from supportdesk.core.validation import SchemaValidator
from supportdesk.orchestration.router import ClassificationReply

REFUND_SCHEMA = {
    "type": "object",
    "properties": {
        "invoice_id": {"type": "string", "pattern": "^INV-[0-9]+$"},
        "amount": {"type": "number", "exclusiveMinimum": 0},
        "reason": {"type": "string", "maxLength": 10},
    },
    "required": ["invoice_id", "amount"],
    "additionalProperties": False,
}


def test_valid_payload_is_returned_as_plain_dict() -> None:
    validator = SchemaValidator()
    payload = validator.validate_payload("processRefund", {"invoice_id": "INV-1001", "amount": 20}, REFUND_SCHEMA)

    assert payload == {"invoice_id": "INV-1001", "amount": 20}


def test_all_schema_violations_are_reported_together() -> None:
    validator = SchemaValidator()

    with pytest.raises(ValidationError) as excinfo:
        validator.validate_payload(
            "processRefund",
            {"invoice_id": "1001", "amount": 0, "reason": "x" * 11, "note": "extra"},
            REFUND_SCHEMA,
        )

    errors = excinfo.value.errors
    assert "invoice_id does not match pattern ^INV-[0-9]+$" in errors
    assert "amount must be > 0" in errors
    assert "reason exceeds 10 characters" in errors
    assert "note is not a supported parameter" in errors
    assert excinfo.value.kind == "validation"


def test_missing_and_null_required_fields_are_rejected() -> None:
    validator = SchemaValidator()

    with pytest.raises(ValidationError) as excinfo:
        validator.validate_payload("processRefund", {"invoice_id": None}, REFUND_SCHEMA)

    assert "invoice_id is required" in excinfo.value.errors
    assert "amount is required" in excinfo.value.errors


def test_booleans_are_not_numbers() -> None:
    validator = SchemaValidator()

    with pytest.raises(ValidationError) as excinfo:
        validator.validate_payload("processRefund", {"invoice_id": "INV-1", "amount": True}, REFUND_SCHEMA)

    assert "amount must be of type number" in excinfo.value.errors


def test_string_length_guard_applies_without_schema() -> None:
    validator = SchemaValidator(max_string_length=8)

    with pytest.raises(ValidationError) as excinfo:
        validator.validate_payload("free", {"nested": {"text": "abcdefghij"}}, None)

    assert excinfo.value.errors == ["nested.text exceeds maximum length of 8 characters"]


def test_non_mapping_payload_is_rejected() -> None:
    with pytest.raises(ValidationError):
        SchemaValidator().validate_payload("getOrderDetails", ["ORD-1"], {"type": "object"})


def test_parse_model_accepts_fenced_json() -> None:
    raw = '```json\n{"agent": "order", "confidence": 0.9, "reasoning": "tracking"}\n```'

    reply = SchemaValidator().parse_model(ClassificationReply, raw)

    assert reply.agent == "order"
    assert reply.confidence == pytest.approx(0.9)
    assert reply.entities.order_id is None


def test_parse_model_extracts_object_from_surrounding_prose() -> None:
    raw = 'Sure! {"agent": "billing", "confidence": 0.7} Hope that helps.'

    reply = SchemaValidator().parse_model(ClassificationReply, raw)

    assert reply.agent == "billing"


def test_parse_model_accepts_mapping() -> None:
    reply = SchemaValidator().parse_model(ClassificationReply, {"agent": "support", "confidence": 0.5})

    assert reply.agent == "support"


@pytest.mark.parametrize(
    "raw",
    [
        "no json here",
        '{"agent": "order", "confidence": 1.7}',
        '{"agent": "shipping", "confidence": 0.9}',
        '{"agent": "order", "confidence": 0.9',
    ],
)
def test_parse_model_rejects_malformed_replies(raw: str) -> None:
    with pytest.raises(ValidationError):
        SchemaValidator().parse_model(ClassificationReply, raw)
