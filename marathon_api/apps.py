"""App records and the handlers behind /apps.

The handlers expect ``app.db`` to offer ``list_apps()``, ``insert_app(record)``,
``get_app(app_id)``, ``update_app(record)`` and ``delete_app(app_id)``. Lookups of
missing records raise RecordNotFoundError, unique violations DuplicateKeyError.
``update_app`` stores name, bundle id and update time and returns the full record.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from dataclasses import dataclass
from typing import Any

from marathon_api.helpers import (
    ApiError,
    DuplicateKeyError,
    JsonResponse,
    RecordNotFoundError,
    RequestContext,
    ValidationError,
    decode_and_validate,
    parse_uuid,
    with_segment,
)

MAX_NAME_LENGTH = 255
_BUNDLE_ID = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)+$")


@dataclass
class App:
    """An application that push jobs are sent for."""

    id: uuid.UUID | None = None
    name: str = ""
    bundle_id: str = ""
    created_by: str = ""
    created_at: int = 0
    updated_at: int = 0

    def validate(self, context: RequestContext | None = None) -> None:
        """Raise ValidationError when the name or bundle id is unusable."""
        if not self.name or len(self.name) > MAX_NAME_LENGTH:
            raise ValidationError("invalid name")
        if not self.bundle_id or not _BUNDLE_ID.match(self.bundle_id):
            raise ValidationError("invalid bundleId")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id) if self.id is not None else None,
            "name": self.name,
            "bundleId": self.bundle_id,
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def _logger(app: Any, operation: str) -> logging.LoggerAdapter:
    base = getattr(app, "logger", None) or logging.getLogger(__name__)
    return logging.LoggerAdapter(base, {"source": "appHandler", "operation": operation})


def _is_duplicate(exc: Exception) -> bool:
    return isinstance(exc, DuplicateKeyError) or "duplicate key" in str(exc)


def list_apps_handler(app: Any, context: RequestContext) -> JsonResponse:
    """List every app."""
    log = _logger(app, "listApps")
    try:
        apps = with_segment("db-select", context, app.db.list_apps)
    except Exception as exc:
        log.error("Failed to list apps: %s", exc)
        return context.json(500, ApiError(str(exc)))
    log.debug("Listed apps successfully.")
    return context.json(200, list(apps))


def post_app_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Create an app from the request body."""
    log = _logger(app, "postApp")
    now = time.time_ns()
    record = App(
        id=uuid.uuid4(),
        created_by=context.get("user-email") or "",
        created_at=now,
        updated_at=now,
    )
    try:
        with_segment("decodeAndValidate", context, lambda: decode_and_validate(context, record))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc), record))
    try:
        with_segment("db-insert", context, lambda: app.db.insert_app(record))
    except Exception as exc:
        if _is_duplicate(exc):
            return context.json(409, ApiError(str(exc), record))
        log.error("Failed to create app: %s", exc)
        return context.json(500, ApiError(str(exc), record))
    log.debug("Created app successfully.")
    return context.json(201, record)


def get_app_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Return the app named by the ``aid`` route parameter."""
    log = _logger(app, "getApp")
    try:
        app_id = parse_uuid(context.param("aid"))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    try:
        record = with_segment("db-select", context, lambda: app.db.get_app(app_id))
    except RecordNotFoundError:
        return context.json(404, {})
    except Exception as exc:
        log.error("Failed to retrieve app: %s", exc)
        return context.json(500, ApiError(str(exc), App(id=app_id)))
    log.debug("Retrieved app successfully.")
    return context.json(200, record)


def put_app_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Update the name and bundle id of an app."""
    log = _logger(app, "putApp")
    record = App(created_by=context.get("user-email") or "", updated_at=time.time_ns())
    try:
        with_segment("decodeAndValidate", context, lambda: decode_and_validate(context, record))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc), record))
    try:
        record.id = parse_uuid(context.param("aid"))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    try:
        updated = with_segment("db-update", context, lambda: app.db.update_app(record))
    except Exception as exc:
        if _is_duplicate(exc):
            return context.json(409, ApiError(str(exc), record))
        log.error("Failed to update app: %s", exc)
        return context.json(500, ApiError(str(exc), record))
    log.debug("Updated app successfully.")
    return context.json(200, updated if updated is not None else record)


def delete_app_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Delete the app named by the ``aid`` route parameter."""
    log = _logger(app, "deleteApp")
    try:
        app_id = parse_uuid(context.param("aid"))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    try:
        with_segment("db-delete", context, lambda: app.db.delete_app(app_id))
    except RecordNotFoundError:
        return context.json(404, {})
    except Exception as exc:
        log.error("Failed to delete app: %s", exc)
        return context.json(500, ApiError(str(exc), App(id=app_id)))
    log.debug("Deleted app successfully.")
    return context.json(204, "")