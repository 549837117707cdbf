"""Request middlewares: version headers, error reporting, recovery, logging, auth."""

from __future__ import annotations

import json
import logging
import time
import traceback
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from werkzeug.exceptions import HTTPException

from marathon_api.helpers import (
    ApiError,
    JsonResponse,
    RecordNotFoundError,
    RequestContext,
    ValidationError,
    parse_uuid,
    with_segment,
)

Handler = Callable[[RequestContext], JsonResponse]

UNAUTHORIZED = {"status": "Unauthorized."}
FORBIDDEN = {"status": "Forbidden."}


class VersionMiddleware:
    """Adds the server version to every response."""

    def __init__(self, version: str) -> None:
        self.version = version

    def serve(self, next_handler: Handler) -> Handler:
        def handler(context: RequestContext) -> JsonResponse:
            value = f"Marathon/v{self.version}"
            context.response_headers["Server"] = value
            context.response_headers["Marathon-Server"] = value
            return next_handler(context)

        return handler


def http_params(context: RequestContext) -> tuple[str, dict[str, str], str]:
    """Return the query string as JSON, the response headers and the cookies."""
    query = ""
    if context.query:
        query = json.dumps(context.query, sort_keys=True, separators=(",", ":"))
    headers: dict[str, str] = {}
    for key, value in context.response_headers.items():
        headers.setdefault(key, value)
    cookies = context.response_headers.get("Cookie", "")
    return query, headers, cookies


class ErrorReportingMiddleware:
    """Reports server errors raised by handlers to an error reporter."""

    def __init__(self, reporter: Callable[[BaseException, dict, dict], Any] | None = None) -> None:
        self.reporter = reporter

    def serve(self, next_handler: Handler) -> Handler:
        def handler(context: RequestContext) -> JsonResponse:
            try:
                return next_handler(context)
            except Exception as exc:
                if isinstance(exc, HTTPException) and (exc.code or 500) < 500:
                    raise
                if self.reporter is not None:
                    tags = {
                        "source": "app",
                        "type": "Internal server error",
                        "url": context.uri,
                        "status": str(context.status),
                    }
                    query, headers, cookies = http_params(context)
                    http = {
                        "method": context.method,
                        "cookies": cookies,
                        "query": query,
                        "url": context.uri,
                        "headers": headers,
                    }
                    self.reporter(exc, tags, http)
                raise

        return handler


class RecoveryMiddleware:
    """Turns unhandled exceptions into error responses."""

    def __init__(self, on_error: Callable[[BaseException, str], Any] | None = None) -> None:
        self.on_error = on_error

    def serve(self, next_handler: Handler) -> Handler:
        def handler(context: RequestContext) -> JsonResponse:
            try:
                return next_handler(context)
            except HTTPException as exc:
                return context.json(exc.code or 500, {"message": exc.description})
            except Exception as exc:
                if self.on_error is not None:
                    self.on_error(exc, traceback.format_exc())
                return context.json(500, {"message": "Internal Server Error"})

        return handler


class LoggerMiddleware:
    """Logs every request with its route, status and latency."""

    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger

    def _log(self, context: RequestContext, method: str, path: str, status: int, start: float) -> None:
        latency = time.monotonic() - start
        fields = {
            "source": "request",
            "route": context.path,
            "endTime": datetime.now(timezone.utc).isoformat(),
            "statusCode": status,
            "latency": latency,
            "ip": context.remote_addr,
            "method": method,
            "path": path,
        }
        if 399 < status < 500:
            self.logger.warning("Request failed.", extra=fields)
        elif status > 499:
            self.logger.error("Response failed.", extra=fields)
        else:
            self.logger.info("Request successful.", extra=fields)

    def serve(self, next_handler: Handler) -> Handler:
        def handler(context: RequestContext) -> JsonResponse:
            path = context.path
            method = context.method
            start = time.monotonic()
            try:
                response = next_handler(context)
            except HTTPException as exc:
                self._log(context, method, path, exc.code or 500, start)
                raise
            except Exception:
                self._log(context, method, path, 500, start)
                raise
            self._log(context, method, path, context.status, start)
            return response

        return handler


class TransactionMiddleware:
    """Wraps each request in a tracing transaction stored under ``txn``."""

    def __init__(self, tracer: Any = None) -> None:
        self.tracer = tracer

    def serve(self, next_handler: Handler) -> Handler:
        def handler(context: RequestContext) -> JsonResponse:
            if self.tracer is None:
                return next_handler(context)
            transaction = self.tracer.start_transaction(f"{context.method} {context.path}")
            context.set("txn", transaction)
            try:
                return next_handler(context)
            except Exception as exc:
                transaction.notice_error(exc)
                raise
            finally:
                context.set("txn", None)
                transaction.end()

        return handler


def _as_uuid(value: Any) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class _AuthMiddleware:
    """Looks up the user named by ``x-forwarded-email`` before authorizing."""

    def __init__(self, find_user: Callable[[str], Any]) -> None:
        self.find_user = find_user

    def _authorize(self, context: RequestContext, user: Any, next_handler: Handler) -> JsonResponse:
        return next_handler(context)

    def _wrap(self, next_handler: Handler) -> Handler:
        def handler(context: RequestContext) -> JsonResponse:
            email = context.headers.get("x-forwarded-email", "")
            if not email:
                return context.json(401, dict(UNAUTHORIZED))
            context.set("user-email", email)
            try:
                user = with_segment("db-select", context, lambda: self.find_user(email))
            except RecordNotFoundError:
                return context.json(401, dict(UNAUTHORIZED))
            except Exception as exc:
                return context.json(500, ApiError(str(exc)))
            if user is None:
                return context.json(401, dict(UNAUTHORIZED))
            return self._authorize(context, user, next_handler)

        return handler


class AppAuthMiddleware(_AuthMiddleware):
    """Allows admins everywhere and other users only on their allowed apps."""

    def _authorize(self, context: RequestContext, user: Any, next_handler: Handler) -> JsonResponse:
        if context.path == "/apps" or getattr(user, "is_admin", False):
            return next_handler(context)
        try:
            app_id = parse_uuid(context.param("aid"))
        except ValidationError as exc:
            return context.json(422, ApiError(str(exc)))
        allowed = (_as_uuid(item) for item in getattr(user, "allowed_apps", None) or ())
        if app_id in allowed:
            return next_handler(context)
        return context.json(403, dict(FORBIDDEN))

    def serve(self, next_handler: Handler) -> Handler:
        return self._wrap(next_handler)


class UserAuthMiddleware(_AuthMiddleware):
    """Allows listing users to anyone known, everything else to admins only."""

    def _authorize(self, context: RequestContext, user: Any, next_handler: Handler) -> JsonResponse:
        if context.path == "/users" or getattr(user, "is_admin", False):
            return next_handler(context)
        return context.json(403, dict(FORBIDDEN))

    def serve(self, next_handler: Handler) -> Handler:
        return self._wrap(next_handler)


class UploadAuthMiddleware(_AuthMiddleware):
    """Allows any known user."""

    def serve(self, next_handler: Handler) -> Handler:
        return self._wrap(next_handler)