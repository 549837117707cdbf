"""The API application: configuration, routing, the WSGI entry point and the command.

Collaborators are supplied by the caller:

``connect(name, config)``
    Returns the database for ``"db"`` and for ``"push.db"``. Besides what the
    handlers need, the main database offers ``get_user_by_email(email)``, which
    returns an object with ``is_admin`` and ``allowed_apps``, or raises
    RecordNotFoundError.
``worker``, ``mailer``, ``tracer`` and ``reporter``
    The job worker, the e-mail sender, the tracing service and the error
    reporter. The mailer is used only when ``sendgrid.key`` is configured and
    the tracer only when ``newrelic.key`` is configured.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlsplit

import yaml
from werkzeug.datastructures import Headers
from werkzeug.exceptions import HTTPException, MethodNotAllowed, NotFound
from werkzeug.routing import Map, Rule
from werkzeug.wrappers import Request, Response

from marathon_api.apps import (
    delete_app_handler,
    get_app_handler,
    list_apps_handler,
    post_app_handler,
    put_app_handler,
)
from marathon_api.healthcheck import healthcheck_handler
from marathon_api.helpers import JsonResponse, RequestContext
from marathon_api.jobs import (
    get_job_handler,
    list_jobs_handler,
    pause_job_handler,
    post_job_handler,
    resume_job_handler,
    stop_job_handler,
)
from marathon_api.middleware import (
    AppAuthMiddleware,
    ErrorReportingMiddleware,
    LoggerMiddleware,
    RecoveryMiddleware,
    TransactionMiddleware,
    VersionMiddleware,
)

VERSION = "1.0.0"
ENV_PREFIX = "marathon"
CONTENT_TYPE = "application/json; charset=UTF-8"

Handler = Callable[[RequestContext], JsonResponse]
AppHandler = Callable[[Any, RequestContext], JsonResponse]


class ConfigurationError(RuntimeError):
    """Raised when the application cannot be configured."""


@dataclass
class Config:
    """Settings read from a YAML file, overridable through environment variables.

    ``db.host`` is overridden by ``MARATHON_DB_HOST``.
    """

    data: dict[str, Any] = field(default_factory=dict)
    environ: Mapping[str, str] = field(default_factory=dict)
    path: str = ""
    prefix: str = ENV_PREFIX

    def _env_name(self, key: str) -> str:
        return f"{self.prefix}_{key.replace('.', '_')}".upper()

    def get(self, key: str, default: Any = None) -> Any:
        env_name = self._env_name(key)
        if env_name in self.environ:
            return self.environ[env_name]
        node: Any = self.data
        for part in key.lower().split("."):
            if not isinstance(node, Mapping):
                return default
            lowered = {str(name).lower(): value for name, value in node.items()}
            if part not in lowered:
                return default
            node = lowered[part]
        return node


def load_configuration(path: str, environ: Mapping[str, str] | None = None) -> Config:
    """Read the YAML file at ``path`` into a Config."""
    try:
        with open(path, encoding="utf-8") as stream:
            data = yaml.safe_load(stream)
    except (OSError, yaml.YAMLError):
        raise ConfigurationError(f"Could not load configuration file from: {path}") from None
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Could not load configuration file from: {path}")
    return Config(data=data, environ=dict(os.environ if environ is None else environ), path=path)


def _rule_path(pattern: str) -> str:
    parts = [f"<{part[1:]}>" if part.startswith(":") else part for part in pattern.split("/")]
    return "/".join(parts)


class Application:
    """The configured API: routes requests through middlewares to handlers."""

    def __init__(
        self,
        host: str,
        port: int,
        debug: bool,
        logger: logging.Logger | None,
        config_path: str,
        *,
        environ: Mapping[str, str] | None = None,
        connect: Callable[[str, Config], Any] | None = None,
        worker: Any = None,
        mailer: Any = None,
        tracer: Any = None,
        reporter: Callable[[BaseException, dict, dict], Any] | None = None,
    ) -> None:
        self.host = host
        self.port = port
        self.debug = debug
        self.logger = logger or logging.getLogger("marathon_api")
        self.config_path = config_path
        self.db: Any = None
        self.push_db: Any = None
        self.worker = worker
        self.mailer: Any = None
        self.tracer: Any = None
        self.reporter = reporter
        try:
            self.config = load_configuration(config_path, environ)
            self.logger.info("Loaded config file.", extra={"configFile": config_path})
            if connect is not None:
                self.db = connect("db", self.config)
                self.logger.info("successfully connected to the marathon database")
                self.push_db = connect("push.db", self.config)
                self.logger.info("successfully connected to the push database")
        except Exception as exc:
            self.logger.critical("cannot configure application: %s", exc)
            raise ConfigurationError("cannot configure application") from exc
        if self.config.get("sendgrid.key"):
            self.mailer = mailer
        if self.config.get("newrelic.key"):
            self.tracer = tracer
        self._routes: dict[str, tuple[str, Handler]] = {}
        self._map = Map(strict_slashes=False)
        self._configure_routes()

    def _app_middlewares(self) -> list[Any]:
        return [
            AppAuthMiddleware(lambda email: self.db.get_user_by_email(email)),
            LoggerMiddleware(self.logger),
            RecoveryMiddleware(self.on_error_handler),
            VersionMiddleware(VERSION),
            ErrorReportingMiddleware(self.reporter),
            TransactionMiddleware(self.tracer),
        ]

    def _add(self, method: str, pattern: str, handler: AppHandler, middlewares: list[Any]) -> None:
        def base(context: RequestContext) -> JsonResponse:
            return handler(self, context)

        chain: Handler = base
        for middleware in reversed(middlewares):
            chain = middleware.serve(chain)
        endpoint = f"{method} {pattern}"
        self._routes[endpoint] = (pattern, chain)
        self._map.add(Rule(_rule_path(pattern), methods=[method], endpoint=endpoint))

    def _configure_routes(self) -> None:
        self._add("GET", "/healthcheck", healthcheck_handler, [])
        app_routes = [
            ("POST", "/apps", post_app_handler),
            ("GET", "/apps", list_apps_handler),
            ("GET", "/apps/:aid", get_app_handler),
            ("PUT", "/apps/:aid", put_app_handler),
            ("DELETE", "/apps/:aid", delete_app_handler),
            ("POST", "/apps/:aid/jobs", post_job_handler),
            ("GET", "/apps/:aid/jobs", list_jobs_handler),
            ("GET", "/apps/:aid/jobs/:jid", get_job_handler),
            ("PUT", "/apps/:aid/jobs/:jid/pause", pause_job_handler),
            ("PUT", "/apps/:aid/jobs/:jid/stop", stop_job_handler),
            ("PUT", "/apps/:aid/jobs/:jid/resume", resume_job_handler),
        ]
        for method, pattern, handler in app_routes:
            self._add(method, pattern, handler, self._app_middlewares())

    def on_error_handler(self, error: BaseException, stack: str | bytes) -> None:
        """Log an unhandled error and pass it to the error reporter."""
        if isinstance(stack, bytes):
            stack = stack.decode("utf-8", "replace")
        self.logger.error(
            "Panic occurred.",
            extra={"operation": "OnErrorHandler", "panicText": str(error), "stack": stack},
        )
        if self.reporter is not None:
            self.reporter(error, {"source": "app", "type": "panic"}, {})

    def _dispatch(
        self,
        method: str,
        target: str,
        headers: Any,
        body: bytes,
        remote_addr: str,
    ) -> Response:
        parts = urlsplit(target)
        path = parts.path or "/"
        if len(path) > 1:
            path = path.rstrip("/") or "/"
        method = method.upper()
        adapter = self._map.bind("localhost")
        try:
            endpoint, params = adapter.match(path, method=method)
        except MethodNotAllowed:
            return self._response(Headers(), JsonResponse(405, {"message": "Method Not Allowed"}))
        except NotFound:
            return self._response(Headers(), JsonResponse(404, {"message": "Not Found"}))
        pattern, chain = self._routes[endpoint]
        context = RequestContext(
            method=method,
            path=pattern,
            uri=path + (f"?{parts.query}" if parts.query else ""),
            params={key: str(value) for key, value in params.items()},
            query=parse_qs(parts.query, keep_blank_values=True),
            headers=Headers(headers or {}),
            body=body or b"",
            remote_addr=remote_addr,
        )
        try:
            result = chain(context)
        except HTTPException as exc:
            result = context.json(exc.code or 500, {"message": exc.description})
        except Exception as exc:
            self.logger.error("Unhandled error: %s", exc)
            result = context.json(500, {"message": "Internal Server Error"})
        if result is None:
            result = context.response or JsonResponse(context.status, None)
        return self._response(context.response_headers, result)

    @staticmethod
    def _response(headers: Headers, result: JsonResponse) -> Response:
        body = b"" if result.status == 204 else result.body
        return Response(
            body,
            status=result.status,
            headers=list(headers.items()),
            content_type=CONTENT_TYPE,
        )

    def handle(
        self,
        method: str,
        path: str,
        headers: Any = None,
        body: bytes = b"",
    ) -> Response:
        """Serve one request; ``path`` may carry a query string."""
        return self._dispatch(method, path, headers, body, "")

    def wsgi_app(self, environ: dict, start_response: Callable) -> Any:
        """The WSGI entry point."""
        request = Request(environ)
        target = request.path
        query = request.query_string.decode("latin-1")
        if query:
            target = f"{target}?{query}"
        response = self._dispatch(
            request.method,
            target,
            list(request.headers.items()),
            request.get_data(),
            request.remote_addr or "",
        )
        return response(environ, start_response)

    def __call__(self, environ: dict, start_response: Callable) -> Any:
        return self.wsgi_app(environ, start_response)

    def start(self) -> None:
        """Serve the API on the configured host and port until interrupted."""
        from werkzeug.serving import run_simple

        self.logger.info("Starting api on %s:%d", self.host, self.port)
        try:
            run_simple(self.host, self.port, self.wsgi_app, use_debugger=False, use_reloader=False)
        except Exception as exc:
            self.logger.critical("Cannot start api: %s", exc)
            raise


def main(argv: list[str] | None = None) -> int:
    """Start the API server."""
    parser = argparse.ArgumentParser(prog="marathon-api", description="Start the API server.")
    parser.add_argument("--host", default="0.0.0.0", help="host to bind to")
    parser.add_argument("--port", type=int, default=8080, help="port to bind to")
    parser.add_argument("--debug", action="store_true", help="log debug messages")
    parser.add_argument(
        "--config", default="./config/local.yaml", help="path of the configuration file"
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO)
    logger = logging.getLogger("marathon_api")
    try:
        application = Application(args.host, args.port, args.debug, logger, args.config)
    except ConfigurationError as exc:
        cause = f": {exc.__cause__}" if exc.__cause__ else ""
        print(f"{exc}{cause}", file=sys.stderr)
        return 1
    application.start()
    return 0