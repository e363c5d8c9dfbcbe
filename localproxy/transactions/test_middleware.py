import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.testclient import TestClient

from localproxy.transactions import (
    TRANSACTION_ERROR_KEY,
    TRANSACTION_ID_KEY,
    TransactionCaptureMiddleware,
)
from localproxy.vars import CLIENT_ADDR_HEADER


@pytest.fixture
def app(store):
    app = FastAPI()

    @app.post("/echo")
    async def echo(request: Request):
        body = await request.body()
        return PlainTextResponse(body, status_code=201, headers={"x-echo": "1"})

    @app.get("/in-flight")
    async def in_flight(request: Request):
        transaction_id = getattr(request.state, TRANSACTION_ID_KEY)
        return {"id": transaction_id, "active": transaction_id in store}

    @app.get("/failed")
    async def failed(request: Request):
        setattr(request.state, TRANSACTION_ERROR_KEY, "upstream refused")
        return JSONResponse(status_code=502, content={})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("handler exploded")

    app.add_middleware(TransactionCaptureMiddleware, store=store, max_body_bytes=8)
    return app


def test_records_request_and_response(app, completed_transactions):
    client = TestClient(app)

    response = client.post(
        "/echo?x=1", content=b"hello", headers={"user-agent": "pytest-agent"}
    )

    assert response.status_code == 201
    assert len(completed_transactions) == 1
    transaction = completed_transactions[0]
    assert transaction.request.method == "POST"
    assert transaction.request.url == "/echo?x=1"
    assert transaction.request.body == "hello"
    assert transaction.request.userAgent == "pytest-agent"
    assert transaction.response.statusCode == 201
    assert transaction.response.body == "hello"
    assert transaction.response.headers["x-echo"] == "1"
    assert transaction.response.responseTime >= 0
    assert transaction.error is None


def test_transaction_is_active_while_handler_runs(app, store):
    client = TestClient(app)

    payload = client.get("/in-flight").json()

    assert payload["active"] is True
    assert payload["id"] not in store


def test_captured_body_is_truncated_to_limit(app, completed_transactions):
    client = TestClient(app)

    response = client.post("/echo", content=b"0123456789abcdef")

    assert response.text == "0123456789abcdef"
    assert completed_transactions[0].request.body == "01234567"
    assert completed_transactions[0].response.body == "01234567"


def test_route_error_is_recorded(app, completed_transactions):
    client = TestClient(app)

    response = client.get("/failed")

    assert response.status_code == 502
    assert completed_transactions[0].error == "upstream refused"
    assert completed_transactions[0].response.statusCode == 502


def test_unhandled_exception_completes_once_with_error(app, completed_transactions):
    client = TestClient(app, raise_server_exceptions=False)

    response = client.get("/boom")

    assert response.status_code == 500
    assert len(completed_transactions) == 1
    assert completed_transactions[0].error == "handler exploded"


def test_source_ip_prefers_listener_header(app, completed_transactions):
    client = TestClient(app)

    client.post("/echo", content=b"", headers={CLIENT_ADDR_HEADER: "10.0.0.7"})

    assert completed_transactions[0].request.sourceIp == "10.0.0.7"


def test_source_ip_falls_back_to_socket_peer(app, completed_transactions):
    client = TestClient(app)

    client.post("/echo", content=b"")

    assert completed_transactions[0].request.sourceIp == "testclient"
