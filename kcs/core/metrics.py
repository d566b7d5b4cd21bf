"""
Prometheus metrics for pipeline stages and print finishing.

Celery workers run in several processes; set PROMETHEUS_MULTIPROC_DIR so the
API's /metrics endpoint can aggregate what every worker recorded.
"""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    multiprocess,
)

STORY_JOBS_TOTAL = Counter(
    "story_jobs_total", "Pipeline jobs by stage and outcome", ["job", "status"]
)
STORY_JOB_DURATION = Histogram(
    "story_jobs_duration_seconds", "Pipeline job duration", ["job"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
)

PRINT_COVER_SECONDS = Histogram(
    "print_cover_generation_seconds", "Cover generation duration", ["provider"],
    buckets=[1, 5, 10, 30, 60, 120],
)
PRINT_INTERIOR_SECONDS = Histogram(
    "print_interior_batch_seconds", "Interior generation duration", ["page_count"],
    buckets=[10, 30, 60, 120, 300, 600],
)
PRINT_CMYK_SECONDS = Histogram(
    "print_cmyk_conversion_seconds", "CMYK conversion duration", ["image_count"],
    buckets=[5, 10, 30, 60, 120],
)
PRINT_ASSEMBLY_SECONDS = Histogram(
    "print_assembly_seconds", "Book assembly duration", ["page_count"],
    buckets=[10, 30, 60, 120, 300],
)
PRINT_HANDOFF_TOTAL = Counter(
    "print_handoff_total", "Handoff outcomes", ["status", "has_drive", "has_webhook"]
)

PROVIDER_CALLS_TOTAL = Counter(
    "provider_calls_total", "Provider calls", ["provider", "model", "operation", "status"]
)
PROVIDER_CALL_SECONDS = Histogram(
    "provider_call_duration_seconds", "Provider call duration",
    ["provider", "model", "operation"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
)


def record_job(job: str, status: str, seconds: float) -> None:
    STORY_JOBS_TOTAL.labels(job=job, status=status).inc()
    STORY_JOB_DURATION.labels(job=job).observe(seconds)


def record_handoff(status: str, has_drive: bool, has_webhook: bool) -> None:
    PRINT_HANDOFF_TOTAL.labels(
        status=status,
        has_drive=str(has_drive).lower(),
        has_webhook=str(has_webhook).lower(),
    ).inc()


def record_provider_call(
    provider: str, model: str, operation: str, status: str, seconds: float
) -> None:
    PROVIDER_CALLS_TOTAL.labels(
        provider=provider, model=model, operation=operation, status=status
    ).inc()
    PROVIDER_CALL_SECONDS.labels(
        provider=provider, model=model, operation=operation
    ).observe(seconds)


def render_latest() -> tuple[bytes, str]:
    """Exposition payload and content type for the /metrics endpoint."""
    if os.environ.get("PROMETHEUS_MULTIPROC_DIR"):
        registry = CollectorRegistry()
        multiprocess.MultiProcessCollector(registry)
        return generate_latest(registry), CONTENT_TYPE_LATEST
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
