from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from threading import Lock

from fastapi import Request

logger = logging.getLogger("campaign_dispatch")


@dataclass
class MetricsSnapshot:
    requests_total: int
    requests_5xx: int
    total_latency_ms: float
    events: dict[str, int] = field(default_factory=dict)


class MetricsRegistry:
    """HTTP request counters plus named domain events (admissions, callbacks, cascades)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._requests_total = 0
        self._requests_5xx = 0
        self._total_latency_ms = 0.0
        self._by_route_status: dict[tuple[str, int], int] = {}
        self._events: dict[str, int] = {}

    def record(self, *, route: str, status_code: int, latency_ms: float) -> None:
        with self._lock:
            self._requests_total += 1
            if status_code >= 500:
                self._requests_5xx += 1
            self._total_latency_ms += latency_ms
            key = (route, status_code)
            self._by_route_status[key] = self._by_route_status.get(key, 0) + 1

    def increment(self, event: str, amount: int = 1) -> None:
        with self._lock:
            self._events[event] = self._events.get(event, 0) + amount

    def event_count(self, event: str) -> int:
        with self._lock:
            return self._events.get(event, 0)

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                requests_total=self._requests_total,
                requests_5xx=self._requests_5xx,
                total_latency_ms=self._total_latency_ms,
                events=dict(self._events),
            )

    def to_prometheus(self) -> str:
        snap = self.snapshot()
        avg_latency = (
            snap.total_latency_ms / snap.requests_total if snap.requests_total else 0.0
        )
        lines = [
            "# HELP campaign_dispatch_requests_total Total HTTP requests",
            "# TYPE campaign_dispatch_requests_total counter",
            f"campaign_dispatch_requests_total {snap.requests_total}",
            "# HELP campaign_dispatch_requests_5xx_total Total 5xx HTTP requests",
            "# TYPE campaign_dispatch_requests_5xx_total counter",
            f"campaign_dispatch_requests_5xx_total {snap.requests_5xx}",
            "# HELP campaign_dispatch_request_avg_latency_ms Average request latency ms",
            "# TYPE campaign_dispatch_request_avg_latency_ms gauge",
            f"campaign_dispatch_request_avg_latency_ms {avg_latency:.2f}",
        ]
        with self._lock:
            for (route, status_code), count in sorted(self._by_route_status.items()):
                lines.append(
                    'campaign_dispatch_route_requests_total'
                    f'{{route="{route}",status="{status_code}"}} {count}'
                )
        if snap.events:
            lines.append("# HELP campaign_dispatch_events_total Domain events by name")
            lines.append("# TYPE campaign_dispatch_events_total counter")
            for event, count in sorted(snap.events.items()):
                lines.append(f'campaign_dispatch_events_total{{event="{event}"}} {count}')
        return "\n".join(lines) + "\n"


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def observe_request(
    request: Request,
    call_next,
    *,
    metrics: MetricsRegistry,
):
    start = time.perf_counter()
    path = request.url.path
    try:
        response = await call_next(request)
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=response.status_code, latency_ms=latency_ms)
        logger.info(
            "request_complete method=%s path=%s status=%s latency_ms=%.2f",
            request.method,
            path,
            response.status_code,
            latency_ms,
        )
        return response
    except Exception:
        latency_ms = (time.perf_counter() - start) * 1000.0
        metrics.record(route=path, status_code=500, latency_ms=latency_ms)
        logger.exception(
            "request_failed method=%s path=%s latency_ms=%.2f",
            request.method,
            path,
            latency_ms,
        )
        raise
