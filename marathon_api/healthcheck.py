"""The healthcheck handler."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from marathon_api.helpers import JsonResponse, RequestContext

HEALTH_QUERY = "SELECT 1"


@dataclass(frozen=True)
class Health:
    """The body of a healthcheck response."""

    healthy: bool

    def to_dict(self) -> dict[str, bool]:
        return {"healthy": self.healthy}


def _logger(app: Any) -> logging.Logger:
    return getattr(app, "logger", None) or logging.getLogger(__name__)


def healthcheck_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Answer 200 when both databases respond to a trivial query, 500 otherwise."""
    logger = _logger(app)
    checks = (("Postgres", app.db), ("PushDB", app.push_db))
    for label, database in checks:
        try:
            database.execute(HEALTH_QUERY)
        except Exception as exc:
            logger.error(
                "Failed %s healthcheck.",
                label,
                extra={"source": "healthcheckHandler", "operation": "healthcheck", "error": str(exc)},
            )
            return context.json(500, Health(healthy=False))
    return context.json(200, Health(healthy=True))