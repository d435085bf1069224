from __future__ import annotations

import contextvars
import json
import logging

from fastapi import FastAPI
from fastapi.testclient import TestClient

from tableside_shared import RequestIDMiddleware, add_standard_health, bind_actor
from tableside_shared.logging import JsonFormatter


def _record(msg: str, **extra) -> logging.LogRecord:
    rec = logging.LogRecord("tableside.pos", logging.INFO, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


def test_json_formatter_carries_actor_and_event():
    def _format():
        bind_actor("w-1", "bistro")
        return json.loads(JsonFormatter().format(_record("placed", event="order.placed")))

    data = contextvars.copy_context().run(_format)
    assert data["message"] == "placed"
    assert data["actor_id"] == "w-1"
    assert data["tenant_id"] == "bistro"
    assert data["event"] == "order.placed"
    assert data["request_id"]


def test_json_formatter_skips_empty_actor():
    data = contextvars.copy_context().run(lambda: json.loads(JsonFormatter().format(_record("tick"))))
    assert "actor_id" not in data
    assert "event" not in data


def _tiny_app(checks=None) -> FastAPI:
    app = FastAPI(title="station-health")
    app.add_middleware(RequestIDMiddleware)
    add_standard_health(app, checks=checks)
    return app


def test_request_id_is_echoed_or_generated():
    client = TestClient(_tiny_app())
    r = client.get("/health", headers={"X-Request-ID": "rid-42"})
    assert r.headers["X-Request-ID"] == "rid-42"
    assert client.get("/health").headers["X-Request-ID"]


def test_failing_check_degrades_health():
    def broken():
        raise RuntimeError("db gone")

    r = TestClient(_tiny_app({"db": broken, "queue": lambda: 3})).get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "degraded"
    assert body["service"] == "station-health"
    assert body["checks"]["queue"] == 3
    assert "db gone" in body["checks"]["db"]["error"]


def test_origin_parsing():
    from tableside_shared.cors import DEV_ORIGINS, parse_origins

    assert parse_origins(None) == (list(DEV_ORIGINS), True)
    assert parse_origins("https://till.bistro.local/, https://kds.bistro.local") == (
        ["https://kds.bistro.local", "https://till.bistro.local"],
        True,
    )
    assert parse_origins("https://till.bistro.local,*") == (["*"], False)
