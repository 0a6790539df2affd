"""Tests for request ID middleware."""

from unittest.mock import patch

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from coupons.app.middleware.request_id import RequestIdMiddleware, get_request_id


class TestRequestIdMiddleware:
    @pytest.fixture
    def app(self):
        app = FastAPI()
        app.add_middleware(RequestIdMiddleware)

        @app.get("/test")
        async def test_endpoint(request: Request):
            return {"request_id": get_request_id(request)}

        return app

    @pytest.fixture
    def client(self, app):
        return TestClient(app)

    def test_request_id_generation(self, client):
        response = client.get("/test")

        assert response.status_code == 200
        assert response.json()["request_id"] != "unknown"
        assert len(response.json()["request_id"]) > 0

    def test_request_id_from_header(self, client):
        response = client.get("/test", headers={"X-Request-ID": "my-custom-request-id"})

        assert response.json()["request_id"] == "my-custom-request-id"
        assert response.headers["X-Request-ID"] == "my-custom-request-id"

    def test_request_id_in_response(self, client):
        response = client.get("/test")

        assert response.headers["X-Request-ID"] == response.json()["request_id"]

    def test_access_log_written(self, client):
        with patch("coupons.app.middleware.request_id.logger") as mock_logger:
            client.get("/test", headers={"X-Request-ID": "req-42"})

        mock_logger.info.assert_called_once()
        extra = mock_logger.info.call_args.kwargs["extra"]
        assert extra["request_id"] == "req-42"
        assert extra["path"] == "/test"
        assert extra["status_code"] == 200


def test_get_request_id_without_middleware():
    app = FastAPI()

    @app.get("/bare")
    async def bare(request: Request):
        return {"request_id": get_request_id(request)}

    assert TestClient(app).get("/bare").json()["request_id"] == "unknown"
