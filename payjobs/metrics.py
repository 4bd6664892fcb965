"""Prometheus instrumentation for job execution and collaborator calls."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

jobs_executed = Counter(
    "payjobs_jobs_executed_total",
    "Executed scheduled jobs by type and outcome.",
    ["job_type", "outcome"],
)

batch_duration = Histogram(
    "payjobs_batch_duration_seconds",
    "Wall time spent processing one batch of ready jobs.",
    ["batch"],
)

collaborator_latency = Histogram(
    "payjobs_collaborator_latency_seconds",
    "Latency of payment gateway and notification calls.",
    ["operation"],
)

claim_conflicts = Counter(
    "payjobs_claim_conflicts_total",
    "Jobs another invocation claimed first.",
)
