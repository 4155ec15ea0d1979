"""Unit tests for the request context middleware."""

import structlog
from fastapi import FastAPI
from fastapi.testclient import TestClient
from structlog.testing import capture_logs

from prolocal.middleware import REQUEST_ID_HEADER, RequestContextMiddleware


def _app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(RequestContextMiddleware)

    @app.get("/ctx")
    async def ctx() -> dict:
        return dict(structlog.contextvars.get_contextvars())

    return app


class TestRequestContextMiddleware:
    def test_generates_request_id(self):
        response = TestClient(_app()).get("/ctx")

        request_id = response.headers[REQUEST_ID_HEADER]
        assert request_id
        assert response.json()["request_id"] == request_id
        assert response.json()["method"] == "GET"
        assert response.json()["path"] == "/ctx"

    def test_reuses_inbound_request_id(self):
        response = TestClient(_app()).get("/ctx", headers={REQUEST_ID_HEADER: "req-abc"})

        assert response.headers[REQUEST_ID_HEADER] == "req-abc"
        assert response.json()["request_id"] == "req-abc"

    def test_context_cleared_after_request(self):
        TestClient(_app()).get("/ctx")

        assert "request_id" not in structlog.contextvars.get_contextvars()

    def test_logs_completion_with_status(self):
        with capture_logs() as logs:
            TestClient(_app()).get("/missing")

        completed = [entry for entry in logs if entry["event"] == "request_completed"]
        assert completed == [
            {"event": "request_completed", "log_level": "info", "status_code": 404}
        ]
