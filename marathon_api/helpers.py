"""Request context, JSON responses and body decoding shared by the API handlers."""

from __future__ import annotations

import dataclasses
import json
import types
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar, Union, get_args, get_origin

from werkzeug.datastructures import Headers

RECORD_NOT_FOUND = "pg: no rows in result set"

T = TypeVar("T")

_NAMED_TYPES: dict[str, Any] = {
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "UUID": uuid.UUID,
    "dict": dict,
    "Dict": dict,
    "Mapping": Mapping,
    "list": list,
    "List": list,
}


class ApiError(Exception):
    """An error reported to the client as ``{"reason": ..., "value": ...}``."""

    def __init__(self, reason: str, value: Any = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        return {"reason": self.reason, "value": _jsonable(self.value)}


class RecordNotFoundError(LookupError):
    """Raised by a store when a looked-up record does not exist."""

    def __init__(self, message: str = RECORD_NOT_FOUND) -> None:
        super().__init__(message)


class DuplicateKeyError(Exception):
    """Raised by a store when a unique constraint is violated."""


class ValidationError(ValueError):
    """Raised when a request body cannot be decoded or is invalid."""


def _jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict") and not isinstance(value, type):
        return _jsonable(value.to_dict())
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    return value


@dataclass(frozen=True)
class JsonResponse:
    """A status code and a payload to be written as JSON."""

    status: int
    payload: Any = None

    @property
    def data(self) -> Any:
        return _jsonable(self.payload)

    @property
    def body(self) -> bytes:
        return json.dumps(self.data).encode("utf-8")


@dataclass
class RequestContext:
    """One request as seen by middlewares and handlers."""

    method: str = "GET"
    path: str = ""
    uri: str = ""
    params: dict[str, str] = field(default_factory=dict)
    query: dict[str, list[str]] = field(default_factory=dict)
    headers: Headers = field(default_factory=Headers)
    body: bytes = b""
    remote_addr: str = ""
    status: int = 200
    response_headers: Headers = field(default_factory=Headers)
    response: JsonResponse | None = None
    _values: dict[str, Any] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if not isinstance(self.headers, Headers):
            self.headers = Headers(self.headers or {})
        if not isinstance(self.response_headers, Headers):
            self.response_headers = Headers(self.response_headers or {})
        self.query = {
            key: list(value) if isinstance(value, (list, tuple)) else [value]
            for key, value in self.query.items()
        }
        if not self.uri:
            self.uri = self.path

    def get(self, key: str) -> Any:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def param(self, name: str) -> str:
        return self.params.get(name, "")

    def query_param(self, name: str) -> str:
        values = self.query.get(name)
        return values[0] if values else ""

    def json(self, status: int, payload: Any) -> JsonResponse:
        response = JsonResponse(status, payload)
        self.status = status
        self.response = response
        return response


def with_segment(name: str, context: RequestContext, func: Callable[[], T]) -> T:
    """Run ``func`` inside a named segment of the request's transaction, if any."""
    transaction = context.get("txn")
    if transaction is None:
        return func()
    segment = transaction.start_segment(name)
    try:
        return func()
    finally:
        segment.end()


def parse_uuid(text: str) -> uuid.UUID:
    """Parse a UUID from its textual forms, raising ValidationError on failure."""
    if len(text) not in (32, 36, 38, 45):
        raise ValidationError(f"uuid: incorrect UUID length: {text}")
    try:
        return uuid.UUID(text)
    except ValueError:
        raise ValidationError(f"uuid: incorrect UUID format {text}") from None


def _json_kind(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return f"number {value}"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "null"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part[:1].upper() + part[1:] for part in rest)


def _split_top_level(text: str, separator: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current = ""
    for char in text:
        if char == "[":
            depth += 1
        elif char == "]":
            depth -= 1
        if char == separator and depth == 0:
            parts.append(current)
            current = ""
        else:
            current += char
    parts.append(current)
    return [part.strip() for part in parts]


def _hint_from_text(text: str) -> Any:
    text = text.strip().strip("'\"")
    members = [part for part in _split_top_level(text, "|") if part != "None"]
    if len(members) != 1:
        return Any
    member = members[0]
    for wrapper in ("Optional[", "typing.Optional["):
        if member.startswith(wrapper) and member.endswith("]"):
            return _hint_from_text(member[len(wrapper):-1])
    base = member.split("[", 1)[0].strip().rsplit(".", 1)[-1]
    return _NAMED_TYPES.get(base, Any)


def _resolve_hint(annotation: Any) -> Any:
    if isinstance(annotation, str):
        return _hint_from_text(annotation)
    return annotation


def _json_fields(cls: type) -> dict[str, tuple[str, Any]]:
    if not dataclasses.is_dataclass(cls):
        raise TypeError(f"{cls.__name__} is not a dataclass")
    result: dict[str, tuple[str, Any]] = {}
    for item in dataclasses.fields(cls):
        if not item.init:
            continue
        json_name = item.metadata.get("json") or _camel(item.name)
        result[json_name.lower()] = (item.name, _resolve_hint(item.type))
    return result


def _unwrap_optional(hint: Any) -> Any:
    origin = get_origin(hint)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(hint) if arg is not type(None)]
        return args[0] if len(args) == 1 else Any
    return hint


def _convert(raw: Any, hint: Any, where: str) -> Any:
    hint = _unwrap_optional(hint)
    if hint is Any:
        return raw
    base = get_origin(hint) or hint

    def mismatch() -> ValidationError:
        type_name = getattr(base, "__name__", str(base))
        return ValidationError(
            f"json: cannot unmarshal {_json_kind(raw)} into field {where} of type {type_name}"
        )

    if base is bool:
        if not isinstance(raw, bool):
            raise mismatch()
        return raw
    if base is int:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise mismatch()
        return raw
    if base is float:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise mismatch()
        return float(raw)
    if base is str:
        if not isinstance(raw, str):
            raise mismatch()
        return raw
    if base is uuid.UUID:
        if not isinstance(raw, str):
            raise mismatch()
        return parse_uuid(raw)
    if base in (dict, Mapping):
        if not isinstance(raw, dict):
            raise mismatch()
        return dict(raw)
    if base is list:
        if not isinstance(raw, list):
            raise mismatch()
        return list(raw)
    return raw


def _read_json(context: RequestContext) -> Any:
    body = context.body
    text = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else str(body or "")
    text = text.lstrip()
    if not text:
        raise ValidationError("EOF")
    try:
        value, _ = json.JSONDecoder().raw_decode(text)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"invalid JSON: {exc.msg}") from None
    return value


def _apply(target: Any, data: Any) -> None:
    cls = type(target)
    if not isinstance(data, dict):
        raise ValidationError(
            f"json: cannot unmarshal {_json_kind(data)} into value of type {cls.__name__}"
        )
    fields = _json_fields(cls)
    for key, raw in data.items():
        match = fields.get(key.lower())
        if match is None or raw is None:
            continue
        attr, hint = match
        setattr(target, attr, _convert(raw, hint, f"{cls.__name__}.{key}"))


def decode_and_validate(context: RequestContext, target: T) -> T:
    """Fill ``target`` from the JSON body, then call its ``validate(context)``."""
    _apply(target, _read_json(context))
    target.validate(context)
    return target


def decode_and_validate_many(context: RequestContext, factory: Callable[[], T]) -> list[T]:
    """Decode a JSON array body into fresh targets from ``factory`` and validate each."""
    data = _read_json(context)
    if not isinstance(data, list):
        raise ValidationError(f"json: cannot unmarshal {_json_kind(data)} into value of type list")
    items = []
    for element in data:
        item = factory()
        _apply(item, element)
        items.append(item)
    for item in items:
        item.validate(context)
    return items