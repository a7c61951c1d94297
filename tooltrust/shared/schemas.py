"""JSON Schema contracts for payloads received from external parties."""

import jsonschema
import structlog

from tooltrust.shared.errors import ValidationError

logger = structlog.get_logger()

PROCESSOR_DISPUTE_WEBHOOK: dict = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["disputeId", "eventType"],
    "properties": {
        "disputeId": {"type": "string", "minLength": 1},
        "eventType": {"type": "string", "minLength": 1},
        "eventId": {"type": ["string", "null"]},
        "eventTime": {"type": ["string", "null"]},
        "status": {"type": ["string", "null"]},
        "reason": {"type": ["string", "null"]},
        "amount": {"type": ["string", "number", "null"]},
        "currency": {"type": ["string", "null"], "maxLength": 3},
    },
}

EVIDENCE_SCAN_CALLBACK: dict = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["storage_reference", "is_safe"],
    "properties": {
        "storage_reference": {"type": "string", "minLength": 1},
        "is_safe": {"type": "boolean"},
    },
}


def validate_payload(payload: dict, schema: dict, source: str) -> dict:
    """Validate a raw payload, raising ValidationError with the failing path."""
    try:
        jsonschema.validate(instance=payload, schema=schema)
    except jsonschema.ValidationError as exc:
        path = ".".join(str(p) for p in exc.absolute_path) or "<root>"
        logger.warning("payload_rejected", source=source, path=path, error=exc.message)
        raise ValidationError(f"Invalid {source} payload: {exc.message}", path=path) from exc
    return payload
