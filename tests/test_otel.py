from typing import Any

import pytest
from conftest import MockHTTPProtocol, mock_scope
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode

from segmux import Next, Request, RSGIApp, Router
from segmux.middleware.otel import otel
from segmux.rsgi import HTTPProtocol, HTTPScope, RSGIHTTPHandler


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def provider(exporter: InMemorySpanExporter) -> TracerProvider:
    tp = TracerProvider()
    tp.add_span_processor(SimpleSpanProcessor(exporter))
    return tp


@pytest.fixture
def metric_reader() -> InMemoryMetricReader:
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader: InMemoryMetricReader) -> MeterProvider:
    return MeterProvider(metric_readers=[metric_reader])


def _reply(status: int, body: str = "ok"):
    def handler(request: Request) -> None:
        request["proto"].response_str(status, [("content-type", "text/plain")], body)

    return handler


def _app(router: Router, provider: TracerProvider, meter_provider=None) -> RSGIApp:
    app = RSGIApp(router)
    app.use(otel(tracer_provider=provider, meter_provider=meter_provider))
    return app


def _get_metric(metric_reader: InMemoryMetricReader, name: str) -> Any:
    data = metric_reader.get_metrics_data()
    assert data is not None
    for resource_metric in data.resource_metrics:
        for scope_metric in resource_metric.scope_metrics:
            for metric in scope_metric.metrics:
                if metric.name == name:
                    return metric
    msg = f"Metric {name!r} not found"
    raise AssertionError(msg)


# --- Spans --------------------------------------------------------------------
@pytest.mark.asyncio
async def test_span_named_after_route_pattern(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    router = Router()
    router.get("/users/:id/posts/:post", _reply(200))
    app = _app(router, provider)

    await app.__rsgi__(mock_scope("/users/42/posts/7"), MockHTTPProtocol())

    (span,) = exporter.get_finished_spans()
    assert span.name == "GET /users/:id/posts/:post"
    assert span.kind == SpanKind.SERVER
    assert span.attributes is not None
    assert span.attributes["http.route"] == "/users/:id/posts/:post"
    assert span.attributes["url.path"] == "/users/42/posts/7"
    assert span.attributes["http.route.param.id"] == "42"
    assert span.attributes["http.route.param.post"] == "7"
    assert span.attributes["http.response.status_code"] == 200


@pytest.mark.asyncio
async def test_unmatched_span_named_after_status(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    app = _app(Router(), provider)

    await app.__rsgi__(mock_scope("/missing"), MockHTTPProtocol())

    (span,) = exporter.get_finished_spans()
    assert span.name == "GET 404"
    assert span.attributes is not None
    assert "http.route" not in span.attributes
    assert span.status.status_code == StatusCode.UNSET


@pytest.mark.asyncio
async def test_halted_request_records_middleware_status(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    def deny(request: Request, nxt: Next) -> None:
        request["proto"].response_str(403, [], "Forbidden")

    router = Router()
    router.get("/admin", deny, _reply(200))
    app = _app(router, provider)

    await app.__rsgi__(mock_scope("/admin"), MockHTTPProtocol())

    (span,) = exporter.get_finished_spans()
    assert span.name == "GET /admin"
    assert span.attributes is not None
    assert span.attributes["http.response.status_code"] == 403


@pytest.mark.asyncio
async def test_attributes_populated(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    router = Router()
    router.post("/search", _reply(201))
    app = _app(router, provider)

    scope = mock_scope(
        "/search",
        method="POST",
        headers={"user-agent": "test-agent/1.0"},
        query_string="q=hello",
    )
    await app.__rsgi__(scope, MockHTTPProtocol())

    (span,) = exporter.get_finished_spans()
    attrs = span.attributes
    assert attrs is not None
    assert attrs["http.request.method"] == "POST"
    assert attrs["url.scheme"] == "http"
    assert attrs["url.query"] == "q=hello"
    assert attrs["network.protocol.version"] == "1.1"
    assert attrs["server.address"] == "localhost"
    assert attrs["client.address"] == "127.0.0.1"
    assert attrs["user_agent.original"] == "test-agent/1.0"
    assert attrs["http.response.status_code"] == 201


@pytest.mark.asyncio
async def test_5xx_sets_error_status(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    router = Router()
    router.get("/", _reply(500, "internal server error"))
    app = _app(router, provider)

    await app.__rsgi__(mock_scope("/"), MockHTTPProtocol())

    (span,) = exporter.get_finished_spans()
    assert span.status.status_code == StatusCode.ERROR


@pytest.mark.asyncio
async def test_exception_recorded_and_raised(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    def handler(request: Request) -> None:
        msg = "boom"
        raise RuntimeError(msg)

    router = Router()
    router.get("/", handler)
    app = _app(router, provider)

    with pytest.raises(RuntimeError, match="boom"):
        await app.__rsgi__(mock_scope("/"), MockHTTPProtocol())

    (span,) = exporter.get_finished_spans()
    assert span.status.status_code == StatusCode.ERROR
    exception_event = next(e for e in span.events if e.name == "exception")
    assert exception_event.attributes is not None
    assert exception_event.attributes["exception.type"] == "RuntimeError"


@pytest.mark.asyncio
async def test_distributed_tracing_propagation(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    router = Router()
    router.get("/", _reply(200))
    app = _app(router, provider)

    trace_id = "0af7651916cd43dd8448eb211c80319c"
    parent_span_id = "b7ad6b7169203331"
    scope = mock_scope(headers={"traceparent": f"00-{trace_id}-{parent_span_id}-01"})
    await app.__rsgi__(scope, MockHTTPProtocol())

    (span,) = exporter.get_finished_spans()
    assert span.context is not None
    assert f"{span.context.trace_id:032x}" == trace_id
    assert span.parent is not None
    assert f"{span.parent.span_id:016x}" == parent_span_id


@pytest.mark.asyncio
async def test_status_recorder_forwards_body_reads(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    captured: list[Request] = []
    router = Router()
    router.post("/form", captured.append)
    app = _app(router, provider)

    scope = mock_scope(
        "/form",
        method="POST",
        headers={"content-type": "application/x-www-form-urlencoded"},
    )
    proto = MockHTTPProtocol(body=b"a=1")
    await app.__rsgi__(scope, proto)

    assert proto.reads == 1
    assert captured[0]["a"] == "1"
    assert proto.response_status is None


@pytest.mark.asyncio
async def test_status_recorder_supports_async_iteration(
    provider: TracerProvider, exporter: InMemorySpanExporter
) -> None:
    chunks: list[bytes] = []

    def stream_body(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def wrapped(scope: HTTPScope, proto: HTTPProtocol) -> None:
            async for chunk in proto:
                chunks.append(chunk)
            await handler(scope, proto)

        return wrapped

    router = Router()
    router.put("/upload", _reply(204, ""))
    app = _app(router, provider)
    app.use(stream_body)

    proto = MockHTTPProtocol(body=b"payload")
    await app.__rsgi__(mock_scope("/upload", method="PUT"), proto)

    assert chunks == [b"payload"]
    assert proto.response_status == 204
    (span,) = exporter.get_finished_spans()
    assert span.attributes is not None
    assert span.attributes["http.response.status_code"] == 204


# --- Metrics ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_request_duration_recorded(
    provider: TracerProvider,
    meter_provider: MeterProvider,
    metric_reader: InMemoryMetricReader,
) -> None:
    router = Router()
    router.get("/hello", _reply(200))
    app = _app(router, provider, meter_provider)

    await app.__rsgi__(mock_scope("/hello"), MockHTTPProtocol())

    metric = _get_metric(metric_reader, "http.server.request.duration")
    assert metric.unit == "s"
    (dp,) = list(metric.data.data_points)
    assert dp.count == 1
    assert dp.attributes["http.request.method"] == "GET"
    assert dp.attributes["http.response.status_code"] == 200
    assert dp.attributes["http.route"] == "/hello"


@pytest.mark.asyncio
async def test_active_requests_back_to_zero(
    provider: TracerProvider,
    meter_provider: MeterProvider,
    metric_reader: InMemoryMetricReader,
) -> None:
    router = Router()
    router.get("/", _reply(200))
    app = _app(router, provider, meter_provider)

    await app.__rsgi__(mock_scope("/"), MockHTTPProtocol())

    metric = _get_metric(metric_reader, "http.server.active_requests")
    assert metric.unit == "{request}"
    (dp,) = list(metric.data.data_points)
    assert dp.value == 0
