"""Lightweight observability helpers (logging + metrics)."""

from __future__ import annotations

import json
import logging
import sys
import uuid
from collections import defaultdict
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterable, Iterator, Protocol

from coach_rag.core.config import get_settings

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
logger = logging.getLogger(__name__)

DEFAULT_BUCKETS_MS = [10, 50, 100, 250, 500, 1000, 2500, 5000, 10000]


def get_request_id() -> str | None:
    """Return the current request id if set by ``retrieval_scope``."""
    return request_id_ctx.get()


@contextmanager
def retrieval_scope(tenant_id: str | None = None, request_id: str | None = None) -> Iterator[str]:
    """Tag log records emitted inside the block with a request and tenant id."""
    request_id = request_id or request_id_ctx.get() or str(uuid.uuid4())
    request_token = request_id_ctx.set(request_id)
    tenant_token = tenant_id_ctx.set(tenant_id)
    try:
        yield request_id
    finally:
        tenant_id_ctx.reset(tenant_token)
        request_id_ctx.reset(request_token)


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, carrying the request and tenant id."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = request_id_ctx.get()
        if request_id:
            payload["request_id"] = request_id
        tenant_id = tenant_id_ctx.get()
        if tenant_id:
            payload["tenant_id"] = tenant_id
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Install a root handler using settings defaults."""
    settings = get_settings()
    level = level or settings.log_level
    json_output = settings.log_json if json_output is None else json_output

    handler = logging.StreamHandler(sys.stdout)
    if json_output:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
        )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())


class MetricsBackend(Protocol):
    """Metrics backend interface."""

    def observe_retrieval(
        self,
        strategy: str,
        success: bool,
        duration_ms: float,
        candidates: int = 0,
    ) -> None:
        ...

    def observe_embedding(self, provider: str, success: bool, duration_ms: float) -> None:
        ...

    def observe_sub_query_failure(self, role: str) -> None:
        ...

    def observe_malformed_vectors(self, count: int) -> None:
        ...

    def render_prometheus(self) -> str:
        ...


class MetricsCollector:
    """In-process metrics collector with Prometheus text output."""

    def __init__(self, buckets_ms: Iterable[int] | None = None) -> None:
        self._lock = Lock()
        self._retrieval_counts: dict[tuple[str, str], int] = defaultdict(int)
        self._retrieval_duration_sum_ms: dict[str, float] = defaultdict(float)
        self._retrieval_duration_count: dict[str, int] = defaultdict(int)
        self._retrieval_duration_buckets: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._retrieval_candidates: dict[str, int] = defaultdict(int)
        self._embedding_counts: dict[tuple[str, str], int] = defaultdict(int)
        self._embedding_duration_sum_ms: dict[str, float] = defaultdict(float)
        self._embedding_duration_count: dict[str, int] = defaultdict(int)
        self._sub_query_failures: dict[str, int] = defaultdict(int)
        self._malformed_vectors = 0
        self._buckets_ms = list(buckets_ms or DEFAULT_BUCKETS_MS)

    def observe_retrieval(
        self,
        strategy: str,
        success: bool,
        duration_ms: float,
        candidates: int = 0,
    ) -> None:
        """Record one retrieve_context call."""
        status = "success" if success else "error"
        bucket_key = self._bucket_for(duration_ms)

        with self._lock:
            self._retrieval_counts[(strategy, status)] += 1
            self._retrieval_duration_sum_ms[strategy] += duration_ms
            self._retrieval_duration_count[strategy] += 1
            self._retrieval_duration_buckets[strategy][bucket_key] += 1
            self._retrieval_candidates[strategy] += candidates

    def observe_embedding(self, provider: str, success: bool, duration_ms: float) -> None:
        """Record one embedding provider call."""
        status = "success" if success else "error"
        with self._lock:
            self._embedding_counts[(provider, status)] += 1
            self._embedding_duration_sum_ms[provider] += duration_ms
            self._embedding_duration_count[provider] += 1

    def observe_sub_query_failure(self, role: str) -> None:
        with self._lock:
            self._sub_query_failures[role] += 1

    def observe_malformed_vectors(self, count: int) -> None:
        if count <= 0:
            return
        with self._lock:
            self._malformed_vectors += count

    def snapshot(self) -> dict[str, Any]:
        """Plain counters, mainly for tests and debug scripts."""
        with self._lock:
            return {
                "retrievals": dict(self._retrieval_counts),
                "embeddings": dict(self._embedding_counts),
                "sub_query_failures": dict(self._sub_query_failures),
                "malformed_vectors": self._malformed_vectors,
            }

    def render_prometheus(self) -> str:
        """Render metrics in Prometheus text format."""
        lines: list[str] = [
            "# HELP rag_retrievals_total Total retrieval calls",
            "# TYPE rag_retrievals_total counter",
        ]
        with self._lock:
            for (strategy, status), count in sorted(self._retrieval_counts.items()):
                lines.append(
                    f'rag_retrievals_total{{strategy="{strategy}",status="{status}"}} {count}'
                )

            lines.extend(
                [
                    "# HELP rag_retrieval_duration_ms Retrieval duration in milliseconds",
                    "# TYPE rag_retrieval_duration_ms histogram",
                ]
            )
            for strategy, total in sorted(self._retrieval_duration_sum_ms.items()):
                buckets = self._retrieval_duration_buckets[strategy]
                cumulative = 0
                for bound in self._buckets_ms:
                    cumulative += buckets.get(str(bound), 0)
                    lines.append(
                        "rag_retrieval_duration_ms_bucket"
                        f'{{strategy="{strategy}",le="{bound}"}} {cumulative}'
                    )
                cumulative += buckets.get("+Inf", 0)
                lines.append(
                    f'rag_retrieval_duration_ms_bucket{{strategy="{strategy}",le="+Inf"}} {cumulative}'
                )
                count = self._retrieval_duration_count[strategy]
                lines.append(f'rag_retrieval_duration_ms_sum{{strategy="{strategy}"}} {total:.2f}')
                lines.append(f'rag_retrieval_duration_ms_count{{strategy="{strategy}"}} {count}')

            lines.extend(
                [
                    "# HELP rag_candidates_returned_total Candidates returned to the generator",
                    "# TYPE rag_candidates_returned_total counter",
                ]
            )
            for strategy, count in sorted(self._retrieval_candidates.items()):
                lines.append(f'rag_candidates_returned_total{{strategy="{strategy}"}} {count}')

            lines.extend(
                [
                    "# HELP rag_embedding_requests_total Embedding provider calls",
                    "# TYPE rag_embedding_requests_total counter",
                ]
            )
            for (provider, status), count in sorted(self._embedding_counts.items()):
                lines.append(
                    f'rag_embedding_requests_total{{provider="{provider}",status="{status}"}} {count}'
                )
            for provider, total in sorted(self._embedding_duration_sum_ms.items()):
                count = self._embedding_duration_count[provider]
                lines.append(f'rag_embedding_duration_ms_sum{{provider="{provider}"}} {total:.2f}')
                lines.append(f'rag_embedding_duration_ms_count{{provider="{provider}"}} {count}')

            lines.extend(
                [
                    "# HELP rag_sub_query_failures_total Skipped sub-queries",
                    "# TYPE rag_sub_query_failures_total counter",
                ]
            )
            for role, count in sorted(self._sub_query_failures.items()):
                lines.append(f'rag_sub_query_failures_total{{role="{role}"}} {count}')

            lines.extend(
                [
                    "# HELP rag_malformed_vectors_total Stored vectors skipped while scoring",
                    "# TYPE rag_malformed_vectors_total counter",
                    f"rag_malformed_vectors_total {self._malformed_vectors}",
                ]
            )
        return "\n".join(lines) + "\n"

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

        self._retrievals_total = Counter(
            "rag_retrievals_total",
            "Total retrieval calls",
            ["strategy", "status"],
            registry=self._registry,
        )
        self._retrieval_duration_ms = Histogram(
            "rag_retrieval_duration_ms",
            "Retrieval duration in milliseconds",
            ["strategy"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._candidates_total = Counter(
            "rag_candidates_returned_total",
            "Candidates returned to the generator",
            ["strategy"],
            registry=self._registry,
        )
        self._embedding_requests_total = Counter(
            "rag_embedding_requests_total",
            "Embedding provider calls",
            ["provider", "status"],
            registry=self._registry,
        )
        self._embedding_duration_ms = Histogram(
            "rag_embedding_duration_ms",
            "Embedding duration in milliseconds",
            ["provider"],
            buckets=self._buckets_ms,
            registry=self._registry,
        )
        self._sub_query_failures_total = Counter(
            "rag_sub_query_failures_total",
            "Skipped sub-queries",
            ["role"],
            registry=self._registry,
        )
        self._malformed_vectors_total = Counter(
            "rag_malformed_vectors_total",
            "Stored vectors skipped while scoring",
            registry=self._registry,
        )

    def observe_retrieval(
        self,
        strategy: str,
        success: bool,
        duration_ms: float,
        candidates: int = 0,
    ) -> None:
        status = "success" if success else "error"
        self._retrievals_total.labels(strategy, status).inc()
        self._retrieval_duration_ms.labels(strategy).observe(duration_ms)
        if candidates:
            self._candidates_total.labels(strategy).inc(candidates)

    def observe_embedding(self, provider: str, success: bool, duration_ms: float) -> None:
        status = "success" if success else "error"
        self._embedding_requests_total.labels(provider, status).inc()
        self._embedding_duration_ms.labels(provider).observe(duration_ms)

    def observe_sub_query_failure(self, role: str) -> None:
        self._sub_query_failures_total.labels(role).inc()

    def observe_malformed_vectors(self, count: int) -> None:
        if count > 0:
            self._malformed_vectors_total.inc(count)

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
        logger.warning(f"Unknown metrics backend '{backend}', using in-memory metrics")
    return MetricsCollector(DEFAULT_BUCKETS_MS)
