# marathon-api

A JSON HTTP API for managing applications and the push notification jobs sent
for them. It is a WSGI application built on Werkzeug. Every request to `/apps`
is checked against the user named in the `x-forwarded-email` header.

## Installing

```
pip install .
```

Add the `test` extra to get the test runner:

```
pip install ".[test]"
```

## What the package does not do

The package holds the routing, validation, authorization and job-scheduling
rules, but no storage, queue or mail code of its own. The databases, the job
worker, the mailer, the tracer and the error reporter are all passed in to
`Application` (see below). The `marathon-api` command passes none of them, so
the server it starts answers every route except unknown paths with `500` until
it is given a store. Template and user management are not served.

## Running the server

```
marathon-api --config config/local.yaml --host 0.0.0.0 --port 8080
```

Options: `--host` (default `0.0.0.0`), `--port` (default `8080`), `--debug`
(log debug messages) and `--config` (default `./config/local.yaml`). The
server is Werkzeug's development server, started by `Application.start()`.

The configuration is a YAML file, read by
`marathon_api.application.load_configuration` into a `Config`. Any key can be
overridden by an environment variable prefixed with `MARATHON_`, with dots
written as underscores: `db.host` becomes `MARATHON_DB_HOST`. A file that
cannot be read makes `Application` raise `ConfigurationError`, and the command
exits with status 1.

## Routes

| Method | Path | Purpose |
| --- | --- | --- |
| GET | `/healthcheck` | `{"healthy": true}` when both databases answer `SELECT 1` |
| GET, POST | `/apps` | list or create apps |
| GET, PUT, DELETE | `/apps/<aid>` | read, update or delete an app |
| GET, POST | `/apps/<aid>/jobs` | list jobs (optionally `?template=`) or create one (`?template=` required) |
| GET | `/apps/<aid>/jobs/<jid>` | read a job with its status events |
| PUT | `/apps/<aid>/jobs/<jid>/pause` | pause a job that has no status |
| PUT | `/apps/<aid>/jobs/<jid>/stop` | stop a job |
| PUT | `/apps/<aid>/jobs/<jid>/resume` | resume a paused or circuit-broken job |

Requests under `/apps` without an `x-forwarded-email` header, or naming an
unknown user, get `401`. Non-admin users may list apps but reach a single app
only if it is among their allowed apps; otherwise they get `403`.

Errors come back as `{"reason": "...", "value": ...}`: `422` for invalid input
or ids that are not UUIDs, `409` for duplicates, `403` for forbidden state
changes and `500` for anything else. Missing records give `404`.

## Using it from Python

```python
from marathon_api.application import Application

app = Application(
    "127.0.0.1", 8080, False, None, "config/local.yaml",
    connect=connect,   # connect(name, config) -> store for "db" and "push.db"
    worker=worker,
)

response = app.handle("GET", "/apps", {"x-forwarded-email": "someone@example.com"})
print(response.status_code, response.get_json())
```

`Application.handle` returns a Werkzeug `Response`; `Application.wsgi_app`
(also the instance itself) is a WSGI callable for any WSGI server.

The objects passed in must offer these methods:

- main database: `get_user_by_email`, `list_apps`, `insert_app`, `get_app`,
  `update_app`, `delete_app`, `find_template`, `insert_job_group`,
  `insert_job`, `list_jobs`, `get_job`, `get_status_events`,
  `update_job_status` and `execute`; missing records raise
  `marathon_api.helpers.RecordNotFoundError`, unique violations
  `DuplicateKeyError`;
- push database: `sample_locale_region` and `execute`;
- worker: `schedule_csv_split_job`, `schedule_direct_batches_job`,
  `create_csv_split_job`, `create_direct_batches_job`, `create_resume_job`;
- mailer (used only when `sendgrid.key` is set): `send_created_job_email`,
  `send_paused_job_email`, `send_stopped_job_email`;
- tracer (used only when `newrelic.key` is set): `start_transaction`.

The docstrings of `marathon_api.apps` and `marathon_api.jobs` give the
arguments of each.

## Localized jobs

A job created with `localized: true` and a `startsAt` is fanned out into one
job per time-zone hour, from UTC-12 to UTC+14, each with a `tz` filter. Send
times already past are moved one day later, or dropped when
`pastTimeStrategy` is `"skip"`. The helpers that work this out,
`timezone_offsets` and `localized_schedule`, live in `marathon_api.job_rules`
together with the filter case rules.