import json
import logging
import uuid
from dataclasses import dataclass, field

import pytest
from werkzeug.exceptions import InternalServerError, NotFound

from marathon_api.helpers import RecordNotFoundError, RequestContext
from marathon_api.middleware import (
    AppAuthMiddleware,
    ErrorReportingMiddleware,
    LoggerMiddleware,
    RecoveryMiddleware,
    TransactionMiddleware,
    UploadAuthMiddleware,
    UserAuthMiddleware,
    VersionMiddleware,
    http_params,
)

LOGGER_NAME = "marathon_api.tests.requests"
ADMIN = "admin@example.com"
MEMBER = "member@example.com"


@dataclass
class FakeUser:
    email: str
    is_admin: bool = False
    allowed_apps: list = field(default_factory=list)


def make_store(*users):
    by_email = {user.email: user for user in users}

    def find_user(email):
        if email not in by_email:
            raise RecordNotFoundError()
        return by_email[email]

    return find_user


def ok_handler(context):
    return context.json(200, {"ok": True})


def make_context(path="/apps", email="", params=None, method="GET"):
    headers = {"x-forwarded-email": email} if email else {}
    return RequestContext(method=method, path=path, params=params or {}, headers=headers)


class FakeSegment:
    def __init__(self, name):
        self.name = name

    def end(self):
        pass


class FakeTransaction:
    def __init__(self, name):
        self.name = name
        self.ended = False
        self.errors = []
        self.segments = []

    def start_segment(self, name):
        self.segments.append(name)
        return FakeSegment(name)

    def notice_error(self, error):
        self.errors.append(error)

    def end(self):
        self.ended = True


class FakeTracer:
    def __init__(self):
        self.transactions = []

    def start_transaction(self, name):
        transaction = FakeTransaction(name)
        self.transactions.append(transaction)
        return transaction


def test_version_headers():
    context = make_context()
    response = VersionMiddleware("1.2.3").serve(ok_handler)(context)
    assert response.status == 200
    assert context.response_headers["Server"] == "Marathon/v1.2.3"
    assert context.response_headers["Marathon-Server"] == "Marathon/v1.2.3"


def test_app_auth_requires_email():
    handler = AppAuthMiddleware(make_store()).serve(ok_handler)
    response = handler(make_context())
    assert response.status == 401
    assert json.loads(response.body) == {"status": "Unauthorized."}


def test_app_auth_unknown_user_is_unauthorized():
    handler = AppAuthMiddleware(make_store(FakeUser(ADMIN, True))).serve(ok_handler)
    assert handler(make_context(email=MEMBER)).status == 401


def test_app_auth_store_failure_is_500():
    def broken(email):
        raise RuntimeError("connection refused")

    response = AppAuthMiddleware(broken).serve(ok_handler)(make_context(email=ADMIN))
    assert response.status == 500
    assert json.loads(response.body)["reason"] == "connection refused"


def test_app_auth_listing_allowed_for_any_user():
    context = make_context(email=MEMBER)
    response = AppAuthMiddleware(make_store(FakeUser(MEMBER))).serve(ok_handler)(context)
    assert response.status == 200
    assert context.get("user-email") == MEMBER


def test_app_auth_admin_passes():
    params = {"aid": str(uuid.uuid4())}
    context = make_context("/apps/:aid", ADMIN, params)
    response = AppAuthMiddleware(make_store(FakeUser(ADMIN, True))).serve(ok_handler)(context)
    assert response.status == 200


def test_app_auth_member_with_allowed_app():
    app_id = uuid.uuid4()
    store = make_store(FakeUser(MEMBER, allowed_apps=[app_id]))
    context = make_context("/apps/:aid", MEMBER, {"aid": str(app_id)})
    assert AppAuthMiddleware(store).serve(ok_handler)(context).status == 200


def test_app_auth_member_without_app_is_forbidden():
    store = make_store(FakeUser(MEMBER))
    context = make_context("/apps/:aid", MEMBER, {"aid": str(uuid.uuid4())})
    response = AppAuthMiddleware(store).serve(ok_handler)(context)
    assert response.status == 403
    assert json.loads(response.body) == {"status": "Forbidden."}


def test_app_auth_invalid_app_id():
    store = make_store(FakeUser(MEMBER))
    context = make_context("/apps/:aid", MEMBER, {"aid": "not-uuid"})
    response = AppAuthMiddleware(store).serve(ok_handler)(context)
    assert response.status == 422
    assert "uuid: incorrect UUID length: not-uuid" in json.loads(response.body)["reason"]


def test_user_auth_listing_for_member():
    handler = UserAuthMiddleware(make_store(FakeUser(MEMBER))).serve(ok_handler)
    assert handler(make_context("/users", MEMBER)).status == 200


def test_user_auth_detail_requires_admin():
    store = make_store(FakeUser(MEMBER), FakeUser(ADMIN, True))
    handler = UserAuthMiddleware(store).serve(ok_handler)
    assert handler(make_context("/users/:uid", MEMBER)).status == 403
    assert handler(make_context("/users/:uid", ADMIN)).status == 200


def test_upload_auth_accepts_known_user():
    handler = UploadAuthMiddleware(make_store(FakeUser(MEMBER))).serve(ok_handler)
    assert handler(make_context("/uploadurl", MEMBER)).status == 200
    assert handler(make_context("/uploadurl")).status == 401


def test_recovery_turns_exception_into_500():
    seen = []

    def boom(context):
        raise RuntimeError("exploded")

    handler = RecoveryMiddleware(lambda err, stack: seen.append((err, stack))).serve(boom)
    response = handler(make_context())
    assert response.status == 500
    assert str(seen[0][0]) == "exploded"
    assert "RuntimeError" in seen[0][1]


def test_recovery_keeps_http_error_code():
    def missing(context):
        raise NotFound()

    response = RecoveryMiddleware().serve(missing)(make_context())
    assert response.status == 404


def test_error_reporting_reports_server_errors():
    reports = []

    def boom(context):
        raise InternalServerError()

    context = make_context("/apps")
    handler = ErrorReportingMiddleware(lambda e, tags, http: reports.append((tags, http))).serve(boom)
    with pytest.raises(InternalServerError):
        handler(context)
    tags, http = reports[0]
    assert tags["source"] == "app"
    assert tags["type"] == "Internal server error"
    assert tags["url"] == "/apps"
    assert http["method"] == "GET"


def test_error_reporting_skips_client_errors():
    reports = []

    def missing(context):
        raise NotFound()

    handler = ErrorReportingMiddleware(lambda *args: reports.append(args)).serve(missing)
    with pytest.raises(NotFound):
        handler(make_context())
    assert reports == []


def test_http_params():
    context = RequestContext(query={"template": ["a"]})
    context.response_headers["Cookie"] = "session=token"
    context.response_headers["Server"] = "Marathon/v1"
    query, headers, cookies = http_params(context)
    assert json.loads(query) == {"template": ["a"]}
    assert headers["Server"] == "Marathon/v1"
    assert cookies == "session=token"
    assert http_params(RequestContext())[0] == ""


@pytest.mark.parametrize(
    "status, level, message",
    [
        (200, logging.INFO, "Request successful."),
        (404, logging.WARNING, "Request failed."),
        (500, logging.ERROR, "Response failed."),
    ],
)
def test_logger_levels(caplog, status, level, message):
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    handler = LoggerMiddleware(logging.getLogger(LOGGER_NAME)).serve(
        lambda context: context.json(status, {})
    )
    handler(make_context("/apps"))
    records = [r for r in caplog.records if r.name == LOGGER_NAME]
    assert len(records) == 1
    assert records[0].levelno == level
    assert records[0].getMessage() == message
    assert records[0].statusCode == status
    assert records[0].route == "/apps"


def test_transaction_wraps_request():
    tracer = FakeTracer()
    seen = []

    def handler(context):
        seen.append(context.get("txn"))
        return context.json(200, {})

    context = make_context("/apps")
    TransactionMiddleware(tracer).serve(handler)(context)
    transaction = tracer.transactions[0]
    assert transaction.name == "GET /apps"
    assert seen == [transaction]
    assert context.get("txn") is None
    assert transaction.ended is True


def test_transaction_notices_errors_and_segments():
    tracer = FakeTracer()

    def boom(context):
        raise RuntimeError("bad")

    auth = AppAuthMiddleware(make_store(FakeUser(ADMIN, True)))
    handler = TransactionMiddleware(tracer).serve(auth.serve(boom))
    with pytest.raises(RuntimeError):
        handler(make_context("/apps", ADMIN))
    transaction = tracer.transactions[0]
    assert transaction.segments == ["db-select"]
    assert [str(e) for e in transaction.errors] == ["bad"]
    assert transaction.ended is True