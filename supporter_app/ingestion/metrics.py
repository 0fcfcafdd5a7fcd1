"""Prometheus metrics helpers for ingestion and the scheduled jobs."""

from __future__ import annotations

from typing import Literal

try:
    from prometheus_client import Counter, Gauge, Histogram

    _PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover - metrics optional in some deployments
    Counter = Gauge = Histogram = None  # type: ignore
    _PROMETHEUS_AVAILABLE = False


if _PROMETHEUS_AVAILABLE:
    _messages_processed = Counter(
        "ingestion_messages_processed_total",
        "Inbound source messages processed by source and outcome.",
        ["source_system", "outcome"],
    )
    _reconciliation_recovered = Counter(
        "ingestion_reconciliation_recovered_total",
        "Events recovered by the reconciliation job per source.",
        ["source_system"],
    )
    _reconciliation_last_status = Gauge(
        "ingestion_reconciliation_alert",
        "Whether the last reconciliation run crossed the alert threshold (1) or not (0).",
    )
    _classifier_changes = Counter(
        "ingestion_classifier_type_changes_total",
        "Supporter type changes written by the classifier.",
        ["new_type"],
    )
    _tag_sync_pushes = Counter(
        "ingestion_tag_sync_pushes_total",
        "Mailchimp tag pushes by outcome.",
        ["outcome"],
    )
    _job_duration = Histogram(
        "ingestion_job_duration_seconds",
        "Duration of scheduled ingestion jobs in seconds.",
        ["job"],
        buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600),
    )
    _merge_outcomes = Counter(
        "ingestion_merge_total",
        "Supporter merges by outcome.",
        ["outcome"],
    )
else:  # pragma: no cover - fallbacks when prometheus_client missing
    _messages_processed = None
    _reconciliation_recovered = None
    _reconciliation_last_status = None
    _classifier_changes = None
    _tag_sync_pushes = None
    _job_duration = None
    _merge_outcomes = None


def record_message_processed(source_system: str, outcome: str) -> None:
    if _messages_processed is None:
        return
    _messages_processed.labels(source_system=source_system, outcome=outcome).inc()


def record_reconciliation(recovered_by_source: dict[str, int], *, alert: bool) -> None:
    """Capture per-source recoveries and the alert flag for one reconciliation run."""

    if _reconciliation_recovered is not None:
        for source_system, recovered in recovered_by_source.items():
            if recovered:
                _reconciliation_recovered.labels(source_system=source_system).inc(recovered)
    if _reconciliation_last_status is not None:
        _reconciliation_last_status.set(1 if alert else 0)


def record_classifier_change(new_type: str) -> None:
    if _classifier_changes is None:
        return
    _classifier_changes.labels(new_type=new_type).inc()


def record_tag_push(outcome: Literal["success", "failure", "unchanged"]) -> None:
    if _tag_sync_pushes is None:
        return
    _tag_sync_pushes.labels(outcome=outcome).inc()


def record_job_duration(job: str, duration_seconds: float) -> None:
    if _job_duration is None:
        return
    _job_duration.labels(job=job).observe(duration_seconds)


def record_merge(outcome: Literal["success", "conflict", "not_found", "failure"]) -> None:
    if _merge_outcomes is None:
        return
    _merge_outcomes.labels(outcome=outcome).inc()
