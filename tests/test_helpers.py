from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any

import pytest

from marathon_api.helpers import (
    RECORD_NOT_FOUND,
    ApiError,
    JsonResponse,
    RecordNotFoundError,
    RequestContext,
    ValidationError,
    decode_and_validate,
    decode_and_validate_many,
    parse_uuid,
    with_segment,
)


@dataclass
class Widget:
    name: str = ""
    bundle_id: str = ""
    count: int = 0
    ratio: float = 0.0
    enabled: bool = False
    filters: dict[str, Any] = field(default_factory=dict)
    owner: uuid.UUID | None = None
    label: str = field(default="", metadata={"json": "displayLabel"})

    def validate(self, context):
        if not self.name:
            raise ValidationError("invalid name")
        self.checked_by = context.get("user-email")


class FakeSegment:
    def __init__(self, name):
        self.name = name
        self.ended = False

    def end(self):
        self.ended = True


class FakeTransaction:
    def __init__(self):
        self.segments = []

    def start_segment(self, name):
        segment = FakeSegment(name)
        self.segments.append(segment)
        return segment


def make_context(payload):
    body = payload if isinstance(payload, (bytes, str)) else json.dumps(payload)
    context = RequestContext(method="POST", path="/apps", body=body)
    context.set("user-email", "someone@example.com")
    return context


def test_context_values_round_trip():
    context = RequestContext()
    context.set("user-email", "someone@example.com")
    assert context.get("user-email") == "someone@example.com"
    assert context.get("missing") is None


def test_context_headers_are_case_insensitive():
    context = RequestContext(headers={"X-Forwarded-Email": "someone@example.com"})
    assert context.headers.get("x-forwarded-email") == "someone@example.com"


def test_query_param_returns_first_value():
    context = RequestContext(query={"template": ["a", "b"], "single": "x"})
    assert context.query_param("template") == "a"
    assert context.query_param("single") == "x"
    assert context.query_param("absent") == ""


def test_json_records_status_and_response():
    context = RequestContext()
    response = context.json(201, {"ok": True})
    assert response.status == 201
    assert context.status == 201
    assert context.response is response


def test_api_error_serialization():
    response = JsonResponse(422, ApiError("boom"))
    assert json.loads(response.body) == {"reason": "boom", "value": None}


def test_uuid_payload_round_trips():
    identifier = uuid.uuid4()
    response = JsonResponse(200, {"id": identifier, "items": [identifier]})
    decoded = json.loads(response.body)
    assert uuid.UUID(decoded["id"]) == identifier
    assert uuid.UUID(decoded["items"][0]) == identifier


def test_record_not_found_message():
    assert str(RecordNotFoundError()) == RECORD_NOT_FOUND


def test_with_segment_without_transaction_returns_result():
    assert with_segment("db-select", RequestContext(), lambda: 42) == 42


def test_with_segment_ends_segment_even_on_error():
    context = RequestContext()
    transaction = FakeTransaction()
    context.set("txn", transaction)

    def fail():
        raise RuntimeError("db down")

    with pytest.raises(RuntimeError):
        with_segment("db-insert", context, fail)
    assert [s.name for s in transaction.segments] == ["db-insert"]
    assert transaction.segments[0].ended is True


def test_decode_and_validate_fills_fields():
    owner = uuid.uuid4()
    payload = {
        "name": "widget",
        "bundleId": "com.example.app",
        "count": 3,
        "ratio": 1,
        "enabled": True,
        "filters": {"locale": "en"},
        "owner": str(owner),
        "displayLabel": "Label",
        "unknown": 1,
    }
    widget = decode_and_validate(make_context(payload), Widget())
    assert widget.name == "widget"
    assert widget.bundle_id == "com.example.app"
    assert widget.count == 3
    assert widget.ratio == 1.0 and isinstance(widget.ratio, float)
    assert widget.enabled is True
    assert widget.filters == {"locale": "en"}
    assert widget.owner == owner
    assert widget.label == "Label"
    assert widget.checked_by == "someone@example.com"


def test_decode_matches_keys_case_insensitively():
    widget = decode_and_validate(make_context({"NAME": "widget"}), Widget())
    assert widget.name == "widget"


def test_decode_null_keeps_current_value():
    widget = decode_and_validate(make_context({"name": "w", "count": None}), Widget(count=7))
    assert widget.count == 7


def test_decode_type_mismatch_raises():
    with pytest.raises(ValidationError, match="cannot unmarshal string"):
        decode_and_validate(make_context({"name": "w", "filters": "not-json"}), Widget())


def test_decode_rejects_fraction_for_int():
    with pytest.raises(ValidationError):
        decode_and_validate(make_context({"name": "w", "count": 1.5}), Widget())


def test_decode_rejects_bool_for_int():
    with pytest.raises(ValidationError):
        decode_and_validate(make_context({"name": "w", "count": True}), Widget())


def test_decode_empty_body_raises():
    with pytest.raises(ValidationError):
        decode_and_validate(make_context(b""), Widget())


def test_decode_array_body_for_single_target_raises():
    with pytest.raises(ValidationError):
        decode_and_validate(make_context([{"name": "w"}]), Widget())


def test_validation_error_propagates():
    with pytest.raises(ValidationError, match="invalid name"):
        decode_and_validate(make_context({"count": 2}), Widget())


def test_decode_many_returns_each_item():
    items = decode_and_validate_many(make_context([{"name": "a"}, {"name": "b"}]), Widget)
    assert [item.name for item in items] == ["a", "b"]


def test_decode_many_validates_every_item():
    with pytest.raises(ValidationError, match="invalid name"):
        decode_and_validate_many(make_context([{"name": "a"}, {"count": 1}]), Widget)


def test_parse_uuid_length_error():
    with pytest.raises(ValidationError, match="uuid: incorrect UUID length: not-uuid"):
        parse_uuid("not-uuid")


def test_parse_uuid_round_trip():
    identifier = uuid.uuid4()
    assert parse_uuid(str(identifier)) == identifier
    assert parse_uuid(identifier.hex) == identifier