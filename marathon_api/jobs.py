"""Job records and the handlers behind /apps/:aid/jobs.

The handlers expect these collaborators on the application object:

``app.db``
    ``get_app(app_id)``, ``find_template(app_id, name, locale=None)``,
    ``insert_job_group(group_id, app_id)``, ``insert_job(job)``,
    ``list_jobs(app_id, template_name)``, ``get_job(job_id)``,
    ``get_status_events(job_id)`` and ``update_job_status(job_id, status, updated_at)``.
    The last one returns the updated record, or None when no job matched.
    Lookups of missing records raise RecordNotFoundError.
``app.push_db``
    ``sample_locale_region(app_name, service)`` returns one ``(locale, region)``
    pair stored for the app's users, or None.
``app.worker``
    ``schedule_csv_split_job(job, at)``, ``schedule_direct_batches_job(job, at)``,
    ``create_csv_split_job(job)``, ``create_direct_batches_job(job)`` and
    ``create_resume_job(job_ids)``, which returns the worker job id.
``app.mailer`` (optional)
    ``send_created_job_email(job, app_record)``,
    ``send_paused_job_email(job, app_name, expire_at)`` and
    ``send_stopped_job_email(job, app_name, email)``.
"""

from __future__ import annotations

import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from marathon_api.apps import App
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
from marathon_api.job_rules import (
    localized_schedule,
    needs_filter_check,
    normalize_filter_case,
    timezone_offsets,
)

VALID_SERVICES = ("apns", "gcm")
PAUSED = "paused"
STOPPED = "stopped"
CIRCUIT_BREAK = "circuitbreak"
PAUSED_JOB_TTL_NS = 7 * 24 * 3600 * 1_000_000_000

APP_NOT_FOUND = "App not found with given id."
TEMPLATE_REQUIRED = "template name must be specified"
LOCALIZED_WITHOUT_START = "Job can not be localized and don't have an start time"
NO_EN_TEMPLATE = "Cannot create job if there is no template for locale 'en'."
FILTER_CHECK_FAILED = "Failed to check filters in Push DB"
RESUME_FORBIDDEN = "cannot resume job with status other than paused/circuitbreak"


@dataclass
class Job:
    """A push notification job for one app and one or more templates."""

    id: uuid.UUID | None = None
    app_id: uuid.UUID | None = None
    template_name: str = ""
    total_batches: int = 0
    completed_batches: int = 0
    expires_at: int = 0
    starts_at: int = 0
    csv_path: str = ""
    control_group: float = 0.0
    control_group_csv_path: str = ""
    service: str = ""
    filters: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str = ""
    created_at: int = 0
    updated_at: int = 0
    status: str = ""
    localized: bool = False
    past_time_strategy: str = ""
    job_group_id: uuid.UUID | None = None
    app: App | None = None
    status_events: list[Any] = field(default_factory=list)

    def validate(self, context: RequestContext | None = None) -> None:
        """Raise ValidationError when the job cannot be sent as described."""
        if self.service not in VALID_SERVICES:
            raise ValidationError("invalid service")
        if bool(self.filters) == bool(self.csv_path):
            raise ValidationError("invalid filters or csvPath must exist, not both")
        if "s3://" in self.csv_path:
            raise ValidationError("invalid csvPath: cannot contain s3 protocol")
        if not 0.0 <= self.control_group <= 1.0:
            raise ValidationError("invalid controlGroup")
        if self.starts_at and self.starts_at < time.time_ns():
            raise ValidationError("invalid startsAt")

    def to_dict(self) -> dict[str, Any]:
        def text(value: uuid.UUID | None) -> str | None:
            return str(value) if value is not None else None

        return {
            "id": text(self.id),
            "appId": text(self.app_id),
            "templateName": self.template_name,
            "totalBatches": self.total_batches,
            "completedBatches": self.completed_batches,
            "expiresAt": self.expires_at,
            "startsAt": self.starts_at,
            "csvPath": self.csv_path,
            "controlGroup": self.control_group,
            "controlGroupCsvPath": self.control_group_csv_path,
            "service": self.service,
            "filters": dict(self.filters),
            "context": dict(self.context),
            "metadata": dict(self.metadata),
            "createdBy": self.created_by,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "status": self.status,
            "localized": self.localized,
            "pastTimeStrategy": self.past_time_strategy,
            "jobGroupId": text(self.job_group_id),
            "app": self.app.to_dict() if self.app is not None else None,
            "statusEvents": [
                event.to_dict() if hasattr(event, "to_dict") else event
                for event in self.status_events
            ],
        }


class _Rejected(Exception):
    """Stops a handler early with a ready response."""

    def __init__(self, status: int, payload: Any) -> None:
        super().__init__(status)
        self.status = status
        self.payload = payload


def _logger(app: Any, operation: str) -> logging.LoggerAdapter:
    base = getattr(app, "logger", None) or logging.getLogger(__name__)
    return logging.LoggerAdapter(base, {"source": "jobHandler", "operation": operation})


def _parse_ids(context: RequestContext) -> tuple[uuid.UUID, uuid.UUID]:
    return parse_uuid(context.param("aid")), parse_uuid(context.param("jid"))


def list_jobs_handler(app: Any, context: RequestContext) -> JsonResponse:
    """List the jobs of an app, optionally only those of one template."""
    log = _logger(app, "listJobs")
    try:
        app_id = parse_uuid(context.param("aid"))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    template_name = context.query_param("template") or None
    try:
        jobs = with_segment(
            "db-select", context, lambda: app.db.list_jobs(app_id, template_name)
        )
    except Exception as exc:
        log.error("Failed to list jobs: %s", exc)
        return context.json(500, ApiError(str(exc)))
    log.debug("Listed jobs successfully.")
    return context.json(200, list(jobs))


def _check_filters(app: Any, job: Job) -> None:
    if not needs_filter_check(job.filters):
        return
    app_name = job.app.name if job.app is not None else ""
    try:
        sample = app.push_db.sample_locale_region(app_name, job.service)
    except Exception:
        sample = None
    if not sample:
        raise _Rejected(500, ApiError(FILTER_CHECK_FAILED))
    locale, region = sample
    try:
        job.filters = normalize_filter_case(job.filters, locale or "", region or "")
    except ApiError as exc:
        raise _Rejected(500, ApiError(exc.reason)) from None
    except ValidationError as exc:
        raise _Rejected(422, ApiError(str(exc), job)) from None


def _check_templates(app: Any, context: RequestContext, job: Job) -> None:
    for name in job.template_name.split(","):
        try:
            with_segment(
                "db-select", context, lambda: app.db.find_template(job.app_id, name)
            )
        except RecordNotFoundError as exc:
            raise _Rejected(422, ApiError(str(exc), job)) from None
        except Exception as exc:
            raise _Rejected(500, ApiError(str(exc), job)) from None
        try:
            with_segment(
                "db-select",
                context,
                lambda: app.db.find_template(job.app_id, name, locale="en"),
            )
        except RecordNotFoundError:
            raise _Rejected(422, ApiError(NO_EN_TEMPLATE, job)) from None
        except Exception as exc:
            raise _Rejected(500, ApiError(str(exc), job)) from None


def _start_workers(app: Any, job: Job) -> None:
    worker = app.worker
    if job.starts_at:
        if job.csv_path:
            worker.schedule_csv_split_job(job, job.starts_at)
        else:
            worker.schedule_direct_batches_job(job, job.starts_at)
    elif job.csv_path:
        worker.create_csv_split_job(job)
    else:
        worker.create_direct_batches_job(job)


def _create_job(app: Any, context: RequestContext, job: Job) -> None:
    snapshot = dataclasses.replace(job, filters=dict(job.filters))
    with_segment("db-insert", context, lambda: app.db.insert_job(snapshot))
    _start_workers(app, snapshot)


def _create_jobs(app: Any, context: RequestContext, job: Job, log: logging.LoggerAdapter) -> None:
    group_id = uuid.uuid4()
    with_segment(
        "create-group", context, lambda: app.db.insert_job_group(group_id, job.app_id)
    )
    job.job_group_id = group_id
    if not job.starts_at or not job.localized:
        log.info("Will create a simple job.")
        _create_job(app, context, job)
        return
    job.filters = dict(job.filters)
    schedule = localized_schedule(job.starts_at, time.time_ns(), job.past_time_strategy)
    for hour, send_at in schedule:
        job.starts_at = send_at
        job.filters["tz"] = ",".join(timezone_offsets(hour))
        job.id = uuid.uuid4()
        log.info("Create a timezone job.")
        _create_job(app, context, job)


def post_job_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Create a job, or one job per timezone for localized jobs, and start its workers."""
    log = _logger(app, "postJob")
    try:
        app_id = parse_uuid(context.param("aid"))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    try:
        app_record = with_segment("db-select", context, lambda: app.db.get_app(app_id))
    except RecordNotFoundError:
        return context.json(422, ApiError(APP_NOT_FOUND))
    except Exception as exc:
        log.error("Failed to retrieve app: %s", exc)
        return context.json(500, ApiError(str(exc), App(id=app_id)))

    template_name = context.query_param("template")
    if not template_name:
        return context.json(422, ApiError(TEMPLATE_REQUIRED))
    now = time.time_ns()
    job = Job(
        id=uuid.uuid4(),
        app_id=app_id,
        template_name=template_name,
        created_by=context.get("user-email") or "",
        created_at=now,
        updated_at=now,
        app=app_record,
    )
    try:
        with_segment("decodeAndValidate", context, lambda: decode_and_validate(context, job))
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc), job))

    try:
        _check_filters(app, job)
        _check_templates(app, context, job)
    except _Rejected as rejected:
        return context.json(rejected.status, rejected.payload)

    if not job.starts_at and job.localized:
        return context.json(422, ApiError(LOCALIZED_WITHOUT_START, job))

    try:
        with_segment("create-job", context, lambda: _create_jobs(app, context, job, log))
    except Exception as exc:
        log.error("Failed to send job to create_batches_worker: %s", exc)
        message = str(exc)
        if isinstance(exc, DuplicateKeyError) or "duplicate key" in message:
            return context.json(409, job)
        if "violates foreign key constraint" in message:
            return context.json(422, ApiError(message, job))
        return context.json(500, ApiError(message, job))

    mailer = getattr(app, "mailer", None)
    if mailer is not None:
        try:
            mailer.send_created_job_email(job, app.db.get_app(app_id))
            log.info("Successfully sent email with job info.")
        except Exception as exc:
            log.error("Failed to send email with job info: %s", exc)
    return context.json(201, job)


def get_job_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Return one job with its status events."""
    log = _logger(app, "getJob")
    try:
        app_id, job_id = _parse_ids(context)
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    job = Job(id=job_id, app_id=app_id)
    try:
        found = with_segment("db-select", context, lambda: app.db.get_job(job_id))
    except RecordNotFoundError:
        return context.json(404, job)
    except Exception as exc:
        log.error("Failed to retrieve job: %s", exc)
        return context.json(500, ApiError(str(exc), job))
    try:
        found.status_events = list(app.db.get_status_events(job_id))
    except Exception as exc:
        log.warning("Failed to retrieve status events: %s", exc)
    log.debug("Retrieved job successfully.")
    return context.json(200, found)


def pause_job_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Pause a job that has no status yet."""
    log = _logger(app, "pauseJob")
    try:
        app_id, job_id = _parse_ids(context)
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    email = context.get("user-email") or ""
    job = Job(
        id=job_id, app_id=app_id, created_by=email, status=PAUSED, updated_at=time.time_ns()
    )
    try:
        previous = with_segment("db-select", context, lambda: app.db.get_job(job_id))
    except RecordNotFoundError:
        return context.json(404, job)
    except Exception as exc:
        log.error("Failed to retrieve job: %s", exc)
        return context.json(500, ApiError(str(exc), Job()))
    if previous.status:
        return context.json(403, ApiError(f"cannot pause {previous.status} job"))
    try:
        updated = with_segment(
            "db-update",
            context,
            lambda: app.db.update_job_status(job_id, PAUSED, job.updated_at),
        )
    except Exception as exc:
        log.error("Failed to pause job: %s", exc)
        return context.json(500, ApiError(str(exc), job))
    if updated is not None:
        job = updated
    log.debug("Updated job successfully.")

    mailer = getattr(app, "mailer", None)
    if mailer is not None:
        try:
            app_name = app.db.get_app(app_id).name
            expire_at = time.time_ns() + PAUSED_JOB_TTL_NS
            mailer.send_paused_job_email(job, app_name, expire_at)
            log.info("Successfully sent email with paused job info.")
        except Exception as exc:
            log.error("Failed to send email with paused job info: %s", exc)
    return context.json(200, job)


def stop_job_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Stop a job."""
    log = _logger(app, "stopJob")
    try:
        app_id, job_id = _parse_ids(context)
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    email = context.get("user-email") or ""
    job = Job(
        id=job_id, app_id=app_id, created_by=email, status=STOPPED, updated_at=time.time_ns()
    )
    try:
        updated = with_segment(
            "db-update",
            context,
            lambda: app.db.update_job_status(job_id, STOPPED, job.updated_at),
        )
    except Exception as exc:
        log.error("Failed to stop job: %s", exc)
        return context.json(500, ApiError(str(exc), job))
    if updated is None:
        return context.json(404, {})
    job = updated
    log.debug("Updated job successfully.")

    mailer = getattr(app, "mailer", None)
    if mailer is not None:
        try:
            app_name = app.db.get_app(app_id).name
            mailer.send_stopped_job_email(job, app_name, email)
            log.info("Successfully sent email with stopped job info.")
        except Exception as exc:
            log.error("Failed to send email with stopped job info: %s", exc)
    return context.json(200, job)


def resume_job_handler(app: Any, context: RequestContext) -> JsonResponse:
    """Resume a paused or circuit-broken job."""
    log = _logger(app, "resumeJob")
    try:
        app_id, job_id = _parse_ids(context)
    except ValidationError as exc:
        return context.json(422, ApiError(str(exc)))
    email = context.get("user-email") or ""
    try:
        previous = with_segment("db-select", context, lambda: app.db.get_job(job_id))
    except RecordNotFoundError:
        return context.json(404, Job())
    except Exception as exc:
        log.error("Failed to retrieve job: %s", exc)
        return context.json(500, ApiError(str(exc), Job()))
    if previous.status not in (PAUSED, CIRCUIT_BREAK):
        return context.json(403, ApiError(RESUME_FORBIDDEN))

    try:
        worker_job_id = with_segment(
            "resume-job", context, lambda: app.worker.create_resume_job([str(previous.id)])
        )
    except Exception as exc:
        log.error("Failed to send job to resume_job_worker: %s", exc)
        return context.json(500, ApiError(str(exc)))
    log.info("Job successfully sent to resume_job_worker: %s", worker_job_id)

    job = Job(id=job_id, app_id=app_id, created_by=email, status="", updated_at=time.time_ns())
    try:
        updated = with_segment(
            "db-update",
            context,
            lambda: app.db.update_job_status(job_id, "", job.updated_at),
        )
    except Exception as exc:
        log.error("Failed to resume job: %s", exc)
        return context.json(500, ApiError(str(exc), job))
    if updated is not None:
        job = updated
    log.debug("Resumed job successfully.")
    return context.json(200, job)