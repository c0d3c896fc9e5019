from __future__ import annotations

"""Prometheus metrics for the scaffolder FastAPI backend.

Adds an HTTP middleware that records request latency per method/path/status
and counters for the orchestration core (status delivery, generation
outcomes, directive executions).
"""

import time
from typing import Callable, Awaitable

from prometheus_client import Counter, Histogram
from starlette.requests import Request
from starlette.responses import Response

# Histogram buckets chosen for web latencies (seconds)
REQUEST_LATENCY = Histogram(
    "scaffolder_request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path", "status"),
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)

STATUS_EVENTS = Counter(
    "scaffolder_status_events_total",
    "Status events handled by the event bus",
    labelnames=("delivery",),
)

GENERATION_RUNS = Counter(
    "scaffolder_generation_runs_total",
    "Generation pipeline runs by outcome",
    labelnames=("outcome",),
)

GENERATION_DURATION = Histogram(
    "scaffolder_generation_duration_seconds",
    "Wall time of one generation pipeline run",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

DIRECTIVE_EXECUTIONS = Counter(
    "scaffolder_directive_executions_total",
    "Agent directives processed by result",
    labelnames=("tool", "result"),
)


def sanitize_path(path: str) -> str:
    """Reduce high-cardinality paths (e.g., /scaffolder/conversations/{id}) to a coarse label.

    Keeps the first two static segments only.
    """
    if not path:
        return "/"
    segs = [s for s in path.split("?")[0].split("/") if s]
    if not segs:
        return "/"
    return "/" + "/".join(segs[:2])


def metrics_middleware_factory() -> Callable[[Request, Callable[[Request], Awaitable[Response]]], Awaitable[Response]]:
    async def middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
        # Avoid observing the metrics endpoint itself
        if request.url.path.startswith("/metrics"):
            return await call_next(request)
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        try:
            REQUEST_LATENCY.labels(
                method=request.method,
                path=sanitize_path(request.url.path),
                status=str(response.status_code),
            ).observe(elapsed)
        except Exception:
            # Never block the request due to metrics
            pass
        return response

    return middleware
