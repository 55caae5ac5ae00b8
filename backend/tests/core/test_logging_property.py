"""Tests for structured logging and correlation scopes."""

import json
import logging
import sys

from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core.logging import StructuredFormatter, correlation_id_var, correlation_scope, get_correlation_id
from app.core.middleware import CorrelationIdMiddleware


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("app.billing", logging.INFO, __file__, 1, "Invoice %s created", ("42",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestCorrelationScope:
    """Tests for correlation_scope."""

    def test_generated_id_uses_prefix(self) -> None:
        with correlation_scope(prefix="sched") as correlation_id:
            assert correlation_id.startswith("sched-")
            assert get_correlation_id() == correlation_id

    def test_scope_restores_previous_id(self) -> None:
        with correlation_scope("outer"):
            with correlation_scope("inner"):
                assert get_correlation_id() == "inner"
            assert get_correlation_id() == "outer"

    def test_scope_resets_on_error(self) -> None:
        before = correlation_id_var.get()
        try:
            with correlation_scope("failing"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert correlation_id_var.get() == before


class TestStructuredFormatter:
    """Tests for JSON output."""

    def test_billing_ids_are_top_level(self) -> None:
        with correlation_scope("req-1"):
            output = json.loads(StructuredFormatter().format(
                _record(subscription_id="sub-1", payment_id=5077125051, cycle=3)
            ))

        assert output["message"] == "Invoice 42 created"
        assert output["correlation_id"] == "req-1"
        assert output["subscription_id"] == "sub-1"
        assert output["payment_id"] == "5077125051"
        assert output["extra"] == {"cycle": 3}

    def test_exception_included(self) -> None:
        try:
            raise ValueError("bad amount")
        except ValueError:
            record = logging.LogRecord("app", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        output = json.loads(StructuredFormatter().format(record))

        assert output["exception"]["type"] == "ValueError"
        assert output["exception"]["message"] == "bad amount"


class TestCorrelationIdMiddleware:
    """Tests for the X-Correlation-ID header."""

    def _client(self) -> TestClient:
        app = FastAPI()
        app.add_middleware(CorrelationIdMiddleware)

        @app.get("/ping")
        async def ping():
            return {"correlation_id": get_correlation_id()}

        return TestClient(app)

    def test_incoming_header_is_echoed(self) -> None:
        response = self._client().get("/ping", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"
        assert response.json() == {"correlation_id": "abc-123"}

    def test_missing_header_gets_generated_id(self) -> None:
        response = self._client().get("/ping")

        assert response.headers["X-Correlation-ID"]
        assert response.json()["correlation_id"] == response.headers["X-Correlation-ID"]
