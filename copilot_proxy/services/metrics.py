"""
Request Metrics Module

Counts request outcomes and observes request latency with prometheus_client.
Each application owns its own CollectorRegistry so several apps (and test
cases) never share counters.
"""

from dataclasses import dataclass
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    GCCollector,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

REQUESTS_METRIC = "excel_ai_requests"
DURATION_METRIC = "excel_ai_request_duration_seconds"
DURATION_BUCKETS = (0.5, 1, 2, 5, 10, 20, 30, 60)


@dataclass(frozen=True)
class RequestOutcome:
    """Terminal classification of one request."""

    status_code: int
    request_type: str  # "stream" or "sync"
    duration_seconds: float


class MetricsRegistry:
    """Process-wide request counters and latency histogram."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None, default_collectors: bool = True):
        """
        Initialize the metrics registry.

        Args:
            registry: Registry to register metrics in; a fresh one by default
            default_collectors: Also export process, platform and GC metrics
        """
        self.registry = registry if registry is not None else CollectorRegistry()

        if default_collectors:
            ProcessCollector(registry=self.registry)
            PlatformCollector(registry=self.registry)
            GCCollector(registry=self.registry)

        self.requests = Counter(
            REQUESTS_METRIC,
            "Total number of requests from the Excel add-in",
            ["status", "type"],
            registry=self.registry,
        )
        self.duration = Histogram(
            DURATION_METRIC,
            "Time spent handling AI requests",
            buckets=DURATION_BUCKETS,
            registry=self.registry,
        )

    def observe(self, outcome: RequestOutcome) -> None:
        """
        Record the terminal outcome of one request.

        Args:
            outcome: Status code, request type and duration of the request
        """
        self.requests.labels(status=str(outcome.status_code), type=outcome.request_type).inc()
        self.duration.observe(outcome.duration_seconds)

    def render(self) -> bytes:
        """Current snapshot in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def request_count(self, status: int, request_type: str) -> float:
        value = self.registry.get_sample_value(
            f"{REQUESTS_METRIC}_total", {"status": str(status), "type": request_type}
        )
        return value or 0.0

    def total_requests(self) -> float:
        total = 0.0
        for metric in self.requests.collect():
            for sample in metric.samples:
                if sample.name == f"{REQUESTS_METRIC}_total":
                    total += sample.value
        return total

    def observation_count(self) -> float:
        return self.registry.get_sample_value(f"{DURATION_METRIC}_count") or 0.0
