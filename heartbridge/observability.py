"""Lightweight observability helpers (logging + metrics)."""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from contextvars import ContextVar
from threading import Lock
from typing import Iterable, Iterator, Protocol

from fastapi import FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from heartbridge.core.config import get_settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
logger = logging.getLogger(__name__)

DEFAULT_BUCKETS_MS = [50, 100, 250, 500, 1000, 2500, 5000, 10000]


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_request_id() -> str | None:
    """Return the current request id if set by middleware."""
    return request_id_ctx.get()


class MetricsBackend(Protocol):
    """Metrics backend interface."""

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        ...

    def observe_chat(
        self,
        outcome: str,
        retrieved_count: int,
        duration_ms: float,
    ) -> None:
        ...

    def render_prometheus(self) -> str:
        ...


class MetricsCollector:
    """In-process metrics collector with Prometheus text output."""

    def __init__(self, buckets_ms: Iterable[int] | None = None) -> None:
        self._lock = Lock()
        self._request_counts: dict[tuple[str, str, str], int] = defaultdict(int)
        self._duration_sum_ms: dict[tuple[str, str], float] = defaultdict(float)
        self._duration_count: dict[tuple[str, str], int] = defaultdict(int)
        self._duration_buckets: dict[tuple[str, str], dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._external_counts: dict[tuple[str, str, str], int] = defaultdict(int)
        self._external_duration_sum_ms: dict[tuple[str, str], float] = defaultdict(float)
        self._external_duration_count: dict[tuple[str, str], int] = defaultdict(int)
        self._external_duration_buckets: dict[tuple[str, str], dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._chat_counts: dict[str, int] = defaultdict(int)
        self._chat_grounded: dict[str, int] = defaultdict(int)
        self._chat_duration_sum_ms: dict[str, float] = defaultdict(float)
        self._chat_duration_count: dict[str, int] = defaultdict(int)
        self._buckets_ms = list(buckets_ms or DEFAULT_BUCKETS_MS)

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record a single request observation."""
        count_key = (method, path, str(status_code))
        duration_key = (method, path)
        bucket_key = self._bucket_for(duration_ms)

        with self._lock:
            self._request_counts[count_key] += 1
            self._duration_sum_ms[duration_key] += duration_ms
            self._duration_count[duration_key] += 1
            self._duration_buckets[duration_key][bucket_key] += 1

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        """Record an external API call observation."""
        duration_key = (provider, operation)
        bucket_key = self._bucket_for(duration_ms)
        status = str(status_code)

        with self._lock:
            self._external_counts[(provider, operation, status)] += 1
            self._external_duration_sum_ms[duration_key] += duration_ms
            self._external_duration_count[duration_key] += 1
            self._external_duration_buckets[duration_key][bucket_key] += 1

    def observe_chat(
        self,
        outcome: str,
        retrieved_count: int,
        duration_ms: float,
    ) -> None:
        """Record a chat request outcome ("success" | "error" | "rejected")."""
        grounded = "grounded" if retrieved_count > 0 else "ungrounded"
        with self._lock:
            self._chat_counts[outcome] += 1
            if outcome == "success":
                self._chat_grounded[grounded] += 1
            self._chat_duration_sum_ms[outcome] += duration_ms
            self._chat_duration_count[outcome] += 1

    def render_prometheus(self) -> str:
        """Render metrics in Prometheus text format."""
        lines: list[str] = [
            "# HELP http_requests_total Total HTTP requests",
            "# TYPE http_requests_total counter",
        ]
        with self._lock:
            for (method, path, status), count in sorted(self._request_counts.items()):
                lines.append(
                    f'http_requests_total{{method="{method}",path="{path}",status="{status}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP http_request_duration_ms Request duration in milliseconds",
                    "# TYPE http_request_duration_ms histogram",
                ]
            )
            for (method, path), total in sorted(self._duration_sum_ms.items()):
                lines.extend(
                    self._render_histogram(
                        "http_request_duration_ms",
                        f'method="{method}",path="{path}"',
                        self._duration_buckets[(method, path)],
                        total,
                        self._duration_count[(method, path)],
                    )
                )

            lines.extend(
                [
                    "# HELP external_api_requests_total External API requests",
                    "# TYPE external_api_requests_total counter",
                ]
            )
            for (provider, operation, status), count in sorted(self._external_counts.items()):
                lines.append(
                    "external_api_requests_total"
                    f'{{provider="{provider}",operation="{operation}",status="{status}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP external_api_duration_ms External API duration in milliseconds",
                    "# TYPE external_api_duration_ms histogram",
                ]
            )
            for (provider, operation), total in sorted(self._external_duration_sum_ms.items()):
                lines.extend(
                    self._render_histogram(
                        "external_api_duration_ms",
                        f'provider="{provider}",operation="{operation}"',
                        self._external_duration_buckets[(provider, operation)],
                        total,
                        self._external_duration_count[(provider, operation)],
                    )
                )

            lines.extend(
                [
                    "# HELP chat_requests_total Chat requests by outcome",
                    "# TYPE chat_requests_total counter",
                ]
            )
            for outcome, count in sorted(self._chat_counts.items()):
                lines.append(f'chat_requests_total{{outcome="{outcome}"}} {count}')

            lines.extend(
                [
                    "# HELP chat_answers_total Successful answers by grounding",
                    "# TYPE chat_answers_total counter",
                ]
            )
            for grounding, count in sorted(self._chat_grounded.items()):
                lines.append(f'chat_answers_total{{grounding="{grounding}"}} {count}')

            lines.extend(
                [
                    "# HELP chat_duration_ms Chat processing time in milliseconds",
                    "# TYPE chat_duration_ms summary",
                ]
            )
            for outcome, total in sorted(self._chat_duration_sum_ms.items()):
                lines.append(f'chat_duration_ms_sum{{outcome="{outcome}"}} {total:.2f}')
                lines.append(
                    f'chat_duration_ms_count{{outcome="{outcome}"}} '
                    f"{self._chat_duration_count[outcome]}"
                )
        return "\n".join(lines) + "\n"

    def _render_histogram(
        self,
        name: str,
        labels: str,
        buckets: dict[str, int],
        total: float,
        count: int,
    ) -> list[str]:
        lines: list[str] = []
        cumulative = 0
        for bound in self._buckets_ms:
            cumulative += buckets.get(str(bound), 0)
            lines.append(f'{name}_bucket{{{labels},le="{bound}"}} {cumulative}')
        cumulative += buckets.get("+Inf", 0)
        lines.append(f'{name}_bucket{{{labels},le="+Inf"}} {cumulative}')
        lines.append(f"{name}_sum{{{labels}}} {total:.2f}")
        lines.append(f"{name}_count{{{labels}}} {count}")
        return lines

    def _bucket_for(self, duration_ms: float) -> str:
        for bound in self._buckets_ms:
            if duration_ms <= bound:
                return str(bound)
        return "+Inf"


class PrometheusMetrics:
    """Prometheus client-based metrics backend."""

    def __init__(self, buckets_ms: Iterable[int]) -> None:
        from prometheus_client import CollectorRegistry, Counter, Histogram

        self._registry = CollectorRegistry()
        self._buckets_ms = list(buckets_ms)

        self._http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "path", "status"],
            registry=self._registry,
        )
        self._http_request_duration_ms = Histogram(
            "http_request_duration_ms",
            "Request duration in milliseconds",
            ["method", "path"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._external_api_requests_total = Counter(
            "external_api_requests_total",
            "External API requests",
            ["provider", "operation", "status"],
            registry=self._registry,
        )
        self._external_api_duration_ms = Histogram(
            "external_api_duration_ms",
            "External API duration in milliseconds",
            ["provider", "operation"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._chat_requests_total = Counter(
            "chat_requests_total",
            "Chat requests by outcome",
            ["outcome"],
            registry=self._registry,
        )
        self._chat_answers_total = Counter(
            "chat_answers_total",
            "Successful answers by grounding",
            ["grounding"],
            registry=self._registry,
        )
        self._chat_duration_ms = Histogram(
            "chat_duration_ms",
            "Chat processing time in milliseconds",
            ["outcome"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )

    def observe_request(
        self,
        method: str,
        path: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._http_requests_total.labels(method, path, str(status_code)).inc()
        self._http_request_duration_ms.labels(method, path).observe(duration_ms)

    def observe_external_api(
        self,
        provider: str,
        operation: str,
        status_code: int,
        duration_ms: float,
    ) -> None:
        self._external_api_requests_total.labels(
            provider, operation, str(status_code)
        ).inc()
        self._external_api_duration_ms.labels(provider, operation).observe(duration_ms)

    def observe_chat(
        self,
        outcome: str,
        retrieved_count: int,
        duration_ms: float,
    ) -> None:
        self._chat_requests_total.labels(outcome).inc()
        if outcome == "success":
            grounding = "grounded" if retrieved_count > 0 else "ungrounded"
            self._chat_answers_total.labels(grounding).inc()
        self._chat_duration_ms.labels(outcome).observe(duration_ms)

    def render_prometheus(self) -> str:
        from prometheus_client import generate_latest

        return generate_latest(self._registry).decode("utf-8")


_metrics_backend: MetricsBackend | None = None


def get_metrics_backend() -> MetricsBackend:
    """Return a cached metrics backend instance."""
    global _metrics_backend
    if _metrics_backend is None:
        settings = get_settings()
        _metrics_backend = _build_metrics_backend(settings.metrics_backend)
    return _metrics_backend


def _build_metrics_backend(backend: str) -> MetricsBackend:
    if backend == "prometheus":
        return PrometheusMetrics(DEFAULT_BUCKETS_MS)
    if backend != "inmemory":
        logger.warning(f"Unknown metrics backend '{backend}', using in-memory metrics.")
    return MetricsCollector(DEFAULT_BUCKETS_MS)


@contextmanager
def track_external_call(
    metrics: MetricsBackend | None,
    provider: str,
    operation: str,
) -> Iterator[None]:
    """Time an external call and report it; status 200 on success, 500 on error."""
    start = time.perf_counter()
    status_code = 500
    try:
        yield
        status_code = 200
    finally:
        if metrics is not None:
            duration_ms = (time.perf_counter() - start) * 1000
            metrics.observe_external_api(provider, operation, status_code, duration_ms)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Attach request_id, log request/response, and emit metrics."""

    def __init__(
        self,
        app: ASGIApp,
        metrics: MetricsBackend | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(app)
        self.metrics = metrics or get_metrics_backend()
        self.logger = logger or logging.getLogger("heartbridge.request")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)
        request.state.request_id = request_id

        start = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            status_code = response.status_code if response else 500

            if response is not None:
                response.headers["X-Request-ID"] = request_id

            route = request.scope.get("route")
            route_path = getattr(route, "path", None)
            # Normalize unmatched paths to avoid label cardinality explosion
            path = route_path or "/__unknown__"

            if self.metrics:
                self.metrics.observe_request(
                    request.method,
                    path,
                    status_code,
                    duration_ms,
                )

            log_payload = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "route": route_path,
                "status_code": status_code,
                "elapsed_ms": round(duration_ms, 2),
                "client": request.client.host if request.client else None,
            }
            self.logger.info(json.dumps(log_payload))
            request_id_ctx.reset(token)


def setup_tracing(app: FastAPI, settings=None) -> None:
    """Configure OpenTelemetry tracing if enabled."""
    settings = settings or get_settings()
    if not settings.otel_enabled:
        return

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError:
        logger.warning(
            "OpenTelemetry enabled but required packages are not installed. "
            "Install with: pip install 'heartbridge-rag[otel]'"
        )
        return

    resource = Resource.create({"service.name": settings.otel_service_name})
    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    exporter_kwargs = {}
    if settings.otel_exporter_otlp_endpoint:
        exporter_kwargs["endpoint"] = settings.otel_exporter_otlp_endpoint
    exporter = OTLPSpanExporter(**exporter_kwargs)
    provider.add_span_processor(BatchSpanProcessor(exporter))

    FastAPIInstrumentor.instrument_app(app)
