"""OpenTelemetry tracing and metrics for an RSGIApp.

One HTTP server span per request, named after the matched route pattern.

Install with: pip install "segmux[otel]"
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from segmux.rsgi import (
        HTTPProtocol,
        HTTPScope,
        HTTPStreamTransport,
        RSGIHTTPHandler,
        Wrapper,
    )

try:
    from opentelemetry import metrics, trace
    from opentelemetry.propagate import extract
    from opentelemetry.trace import SpanKind, StatusCode, TracerProvider
except ImportError as e:
    msg = (
        "OpenTelemetry middleware requires the 'otel' extra. "
        "Install with: pip install 'segmux[otel]'"
    )
    raise ImportError(msg) from e

from segmux.tree import http_route, path_params

_DURATION_BUCKETS = (
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
    10.0,
)


class _StatusRecorder:
    """Forwards to the real protocol, remembering the response status."""

    __slots__ = ("_proto", "status")

    def __init__(self, proto: HTTPProtocol) -> None:
        self._proto = proto
        self.status: int | None = None

    def __getattr__(self, name: str) -> object:
        return getattr(self._proto, name)

    async def __call__(self) -> bytes:
        return await self._proto()

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._proto.__aiter__()

    async def client_disconnect(self) -> None:
        await self._proto.client_disconnect()

    def response_empty(self, status: int, headers: list[tuple[str, str]]) -> None:
        self.status = status
        self._proto.response_empty(status, headers)

    def response_str(
        self, status: int, headers: list[tuple[str, str]], body: str
    ) -> None:
        self.status = status
        self._proto.response_str(status, headers, body)

    def response_bytes(
        self, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> None:
        self.status = status
        self._proto.response_bytes(status, headers, body)

    def response_file(
        self, status: int, headers: list[tuple[str, str]], file: str
    ) -> None:
        self.status = status
        self._proto.response_file(status, headers, file)

    def response_stream(
        self, status: int, headers: list[tuple[str, str]]
    ) -> HTTPStreamTransport:
        self.status = status
        return self._proto.response_stream(status, headers)


def otel(
    *,
    tracer_provider: TracerProvider | None = None,
    meter_provider: metrics.MeterProvider | None = None,
) -> Wrapper:
    """Create OpenTelemetry tracing and metrics wrapper for `RSGIApp.use`.

    Span name is "METHOD /route/:param" when a route matched, otherwise
    "METHOD <status>" once the response status is known. Trace context is
    extracted from the request headers (``traceparent``). Only depends on
    ``opentelemetry-api``; bring your own SDK and exporters.

    Metrics emitted:
        - ``http.server.request.duration`` (histogram, seconds)
        - ``http.server.active_requests`` (up-down counter)

    Example:
        app = RSGIApp(router)
        app.use(otel())
    """
    tracer = trace.get_tracer("segmux", tracer_provider=tracer_provider)
    meter = metrics.get_meter("segmux", meter_provider=meter_provider)
    duration_histogram = meter.create_histogram(
        "http.server.request.duration",
        unit="s",
        description="Duration of HTTP server requests.",
        explicit_bucket_boundaries_advisory=_DURATION_BUCKETS,
    )
    active_requests_counter = meter.create_up_down_counter(
        "http.server.active_requests",
        unit="{request}",
        description="Number of active HTTP server requests.",
    )

    def wrapper(handler: RSGIHTTPHandler) -> RSGIHTTPHandler:
        async def traced_handler(scope: HTTPScope, proto: HTTPProtocol) -> None:
            route = http_route.get("")
            method = scope.method

            attributes: dict[str, str | int] = {
                "http.request.method": method,
                "url.path": scope.path,
                "url.scheme": scope.scheme,
                "network.protocol.version": scope.http_version,
                "server.address": scope.server,
                "client.address": scope.client,
            }
            if route:
                attributes["http.route"] = route
            if scope.query_string:
                attributes["url.query"] = scope.query_string
            user_agent = scope.headers.get("user-agent")
            if user_agent is not None:
                attributes["user_agent.original"] = user_agent
            for key, value in path_params.get({}).items():
                attributes[f"http.route.param.{key}"] = value

            metric_attrs: dict[str, str | int] = {
                "http.request.method": method,
                "url.scheme": scope.scheme,
            }
            if route:
                metric_attrs["http.route"] = route

            active_requests_counter.add(1, metric_attrs)
            start = time.perf_counter()
            recorder = _StatusRecorder(proto)
            with tracer.start_as_current_span(
                f"{method} {route}" if route else method,
                context=extract(scope.headers),
                kind=SpanKind.SERVER,
                attributes=attributes,
                record_exception=True,
                set_status_on_exception=True,
            ) as span:
                try:
                    await handler(scope, recorder)  # type: ignore[arg-type]
                finally:
                    active_requests_counter.add(-1, metric_attrs)
                    duration_attrs = dict(metric_attrs)
                    if recorder.status is not None:
                        span.set_attribute("http.response.status_code", recorder.status)
                        duration_attrs["http.response.status_code"] = recorder.status
                        if not route:
                            span.update_name(f"{method} {recorder.status}")
                        if recorder.status >= 500:
                            span.set_status(StatusCode.ERROR)
                    duration_histogram.record(
                        time.perf_counter() - start, duration_attrs
                    )

        return traced_handler

    return wrapper
