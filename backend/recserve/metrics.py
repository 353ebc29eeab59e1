"""Prometheus instrumentation for the serving core.

Metrics are registered only when ENABLE_PROMETHEUS_METRICS=true; otherwise
every ``record_*`` helper is a no-op, so call sites never need to check.

Metrics:
- recserve_serving_requests_total{source}: responses by batch/realtime/merged
- recserve_batch_runs_total{status}: batch runs by success/failure
- recserve_batch_duration_seconds: wall-clock time of successful batch runs
- recserve_batch_precompute_failures_total: users skipped during precompute
- recserve_speed_layer_events_total{action,status}: speed layer handler outcomes
- recserve_bandit_selections_total{arm}: arms chosen by the bandit
"""

import logging
from typing import Optional

from prometheus_client import Counter, Histogram, REGISTRY, CONTENT_TYPE_LATEST, generate_latest

from recserve.config import settings

logger = logging.getLogger(__name__)

_serving_counter: Optional[Counter] = None
_batch_runs_counter: Optional[Counter] = None
_batch_duration_histogram: Optional[Histogram] = None
_precompute_failures_counter: Optional[Counter] = None
_speed_events_counter: Optional[Counter] = None
_bandit_selection_counter: Optional[Counter] = None


def _get_or_create(factory, name: str, *args, **kwargs):
    try:
        return factory(name, *args, **kwargs)
    except ValueError:
        # Metrics already registered (module reloaded in tests)
        return REGISTRY._names_to_collectors.get(name)


def _init_prometheus_metrics() -> None:
    """Initialize Prometheus metrics if enabled."""
    global _serving_counter, _batch_runs_counter, _batch_duration_histogram
    global _precompute_failures_counter, _speed_events_counter, _bandit_selection_counter

    if not settings.enable_prometheus_metrics:
        return

    _serving_counter = _get_or_create(
        Counter,
        "recserve_serving_requests_total",
        "Recommendation responses by source",
        ["source"],
    )
    _batch_runs_counter = _get_or_create(
        Counter,
        "recserve_batch_runs_total",
        "Batch layer runs by outcome",
        ["status"],
    )
    _batch_duration_histogram = _get_or_create(
        Histogram,
        "recserve_batch_duration_seconds",
        "Duration of successful batch runs",
        buckets=(1, 5, 15, 30, 60, 120, 300, 600, 1200, 3600),
    )
    _precompute_failures_counter = _get_or_create(
        Counter,
        "recserve_batch_precompute_failures_total",
        "Users skipped during batch precomputation",
    )
    _speed_events_counter = _get_or_create(
        Counter,
        "recserve_speed_layer_events_total",
        "Speed layer handler outcomes",
        ["action", "status"],
    )
    _bandit_selection_counter = _get_or_create(
        Counter,
        "recserve_bandit_selections_total",
        "Bandit arm selections",
        ["arm"],
    )
    logger.info("Prometheus metrics registered")


_init_prometheus_metrics()


def record_serving(source: str) -> None:
    if _serving_counter is not None:
        _serving_counter.labels(source=source).inc()


def record_batch_run(status: str, duration_seconds: Optional[float] = None, failed_users: int = 0) -> None:
    if _batch_runs_counter is not None:
        _batch_runs_counter.labels(status=status).inc()
    if duration_seconds is not None and _batch_duration_histogram is not None:
        _batch_duration_histogram.observe(duration_seconds)
    if failed_users and _precompute_failures_counter is not None:
        _precompute_failures_counter.inc(failed_users)


def record_speed_event(action: str, status: str) -> None:
    if _speed_events_counter is not None:
        _speed_events_counter.labels(action=action, status=status).inc()


def record_bandit_selection(arm: str) -> None:
    if _bandit_selection_counter is not None:
        _bandit_selection_counter.labels(arm=arm).inc()


def prometheus_enabled() -> bool:
    return _serving_counter is not None


def render_latest() -> tuple:
    """Exposition payload and content type for the /metrics endpoint."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
