"""
Tests for the lower service endpoint and its bootstrap.
"""
import re
import sys

import pytest
from fastapi.testclient import TestClient
from opentelemetry.trace import SpanKind

import lower_service
from conftest import make_traceparent, metric_points


@pytest.fixture
def client(tracer_provider, meter_provider):
    return TestClient(lower_service.create_app(tracer_provider=tracer_provider, meter_provider=meter_provider))


def spans_by_kind(span_exporter, kind):
    return [span for span in span_exporter.get_finished_spans() if span.kind == kind]


def test_root_returns_single_lowercase_char(client, span_exporter):
    response = client.get("/")

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/json"
    body = response.json()
    assert re.fullmatch(r"[a-z]", body["char"])
    assert response.text == '{"char":"%s"}' % body["char"]

    (server_span,) = spans_by_kind(span_exporter, SpanKind.SERVER)
    assert server_span.name == "/"
    assert server_span.parent is None
    assert server_span.attributes["http.status_code"] == 200


def test_choice_span_is_child_of_request_span(client, span_exporter):
    char = client.get("/").json()["char"]

    (server_span,) = spans_by_kind(span_exporter, SpanKind.SERVER)
    (choice_span,) = spans_by_kind(span_exporter, SpanKind.INTERNAL)
    assert choice_span.name == "choose_char"
    assert choice_span.parent.span_id == server_span.context.span_id
    assert choice_span.context.trace_id == server_span.context.trace_id
    assert choice_span.attributes["lower.char"] == char


def test_propagated_trace_is_continued(client, span_exporter):
    trace_id = 0x0AF7651916CD43DD8448EB211C80319C
    client.get("/", headers={"traceparent": make_traceparent(trace_id, 0xB7AD6B7169203331)})

    spans = span_exporter.get_finished_spans()
    assert len(spans) == 2
    assert {span.context.trace_id for span in spans} == {trace_id}


def test_all_chars_are_lowercase_letters():
    assert len(lower_service.CHARS) == 26
    assert "".join(lower_service.CHARS) == "abcdefghijklmnopqrstuvwxyz"


def test_served_chars_are_counted(client, metric_reader):
    for _ in range(3):
        client.get("/")

    points = metric_points(metric_reader, "lower.chars.served.total")
    assert sum(point.value for point in points) == 3
    assert all(re.fullmatch(r"[a-z]", point.attributes["char"]) for point in points)


def test_default_app_owns_telemetry_lifecycle(monkeypatch):
    calls = []
    monkeypatch.setattr(lower_service, "initialize_opentelemetry", lambda: calls.append("init"))
    monkeypatch.setattr(lower_service, "shutdown_opentelemetry", lambda: calls.append("shutdown"))

    app = lower_service.create_app()
    assert app.state.owns_telemetry

    with TestClient(app):
        assert calls == ["init"]

    assert calls == ["init", "shutdown"]


def test_injected_providers_skip_global_setup(monkeypatch, tracer_provider, meter_provider):
    calls = []
    monkeypatch.setattr(lower_service, "initialize_opentelemetry", lambda: calls.append("init"))
    monkeypatch.setattr(lower_service, "shutdown_opentelemetry", lambda: calls.append("shutdown"))

    app = lower_service.create_app(tracer_provider=tracer_provider, meter_provider=meter_provider)
    with TestClient(app) as client:
        assert client.get("/").status_code == 200

    assert calls == []


def test_main_binds_configured_address(monkeypatch):
    captured = {}
    monkeypatch.setattr(lower_service.uvicorn, "run", lambda app, host, port: captured.update(host=host, port=port))
    monkeypatch.delenv("SERVER_HOST", raising=False)
    monkeypatch.delenv("SERVER_PORT", raising=False)
    monkeypatch.setattr(sys, "argv", ["lower_service"])

    lower_service.main()

    assert captured == {"host": "0.0.0.0", "port": 5000}


def test_main_accepts_overrides(monkeypatch):
    captured = {}
    monkeypatch.setattr(lower_service.uvicorn, "run", lambda app, host, port: captured.update(host=host, port=port))
    monkeypatch.setenv("SERVER_HOST", "127.0.0.1")
    monkeypatch.setattr(sys, "argv", ["lower_service", "--port", "6001"])

    lower_service.main()

    assert captured == {"host": "127.0.0.1", "port": 6001}
