import asyncio
import json

from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from gas_relayer.obs.context import request_id_var
from gas_relayer.obs.middleware import RequestInstrumentationMiddleware


def build_app(registry):
    app = FastAPI()

    @app.get("/ok")
    async def ok():
        return {"value": "untouched", "request_id": request_id_var.get()}

    @app.get("/teapot")
    async def teapot():
        raise HTTPException(status_code=418, detail="short and stout")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("handler failed")

    app.add_middleware(RequestInstrumentationMiddleware, metrics=registry)
    return app


def test_every_request_is_counted_and_timed(registry):
    client = TestClient(build_app(registry), raise_server_exceptions=False)

    assert client.get("/ok").status_code == 200
    assert client.get("/teapot").status_code == 418
    assert client.get("/missing").status_code == 404
    assert client.get("/boom").status_code == 500

    assert registry.http_requests_total.get() == 4
    assert registry.http_request_errors_total.get() == 3
    assert registry.http_request_duration.get_count() == 4
    assert registry.http_requests_cancelled_total.get() == 0


def test_response_body_is_not_modified(registry):
    client = TestClient(build_app(registry))

    r = client.get("/ok")

    assert r.json()["value"] == "untouched"
    # request id is visible to the handler
    assert r.json()["request_id"]


def test_one_structured_log_line_per_request(registry, capsys):
    client = TestClient(build_app(registry))

    client.get("/ok")

    records = [json.loads(l) for l in capsys.readouterr().out.strip().splitlines()]
    http_records = [r for r in records if r["event"] == "http_request"]
    assert len(http_records) == 1
    rec = http_records[0]
    assert rec["method"] == "GET"
    assert rec["path"] == "/ok"
    assert rec["status"] == 200
    assert rec["duration_ms"] >= 0
    assert rec["request_id"]


async def test_cancelled_request_is_recorded_as_cancelled(registry):
    entered = asyncio.Event()

    async def hanging_app(scope, receive, send):
        entered.set()
        await asyncio.Event().wait()

    middleware = RequestInstrumentationMiddleware(hanging_app, metrics=registry)

    async def receive():
        return {"type": "http.request", "body": b""}

    async def send(message):
        pass

    scope = {"type": "http", "method": "GET", "path": "/slow"}
    task = asyncio.ensure_future(middleware(scope, receive, send))
    await entered.wait()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    else:
        raise AssertionError("cancellation was swallowed")

    assert registry.http_requests_cancelled_total.get() == 1
    assert registry.http_requests_total.get() == 0
    assert registry.http_request_errors_total.get() == 0
    assert registry.http_request_duration.get_count() == 1


async def test_non_http_scopes_pass_through(registry):
    seen = []

    async def app(scope, receive, send):
        seen.append(scope["type"])

    middleware = RequestInstrumentationMiddleware(app, metrics=registry)

    await middleware({"type": "lifespan"}, None, None)

    assert seen == ["lifespan"]
    assert registry.http_requests_total.get() == 0


async def test_request_id_is_reset_after_request(registry):
    async def app(scope, receive, send):
        await send({"type": "http.response.start", "status": 204, "headers": []})
        await send({"type": "http.response.body", "body": b""})

    middleware = RequestInstrumentationMiddleware(app, metrics=registry)
    sent = []

    async def send(message):
        sent.append(message)

    await middleware({"type": "http", "method": "DELETE", "path": "/x"}, None, send)

    assert request_id_var.get() is None
    assert [m["type"] for m in sent] == ["http.response.start", "http.response.body"]
    assert registry.http_requests_total.get() == 1
    assert registry.http_request_errors_total.get() == 0
