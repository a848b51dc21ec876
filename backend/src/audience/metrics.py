"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Histogram

# Daily unique-user snapshots
snapshot_days_backfilled_total = Counter(
    "snapshot_days_backfilled_total",
    "Days whose five segment snapshots were all upserted",
)

segment_computations_total = Counter(
    "segment_computations_total",
    "Segment computations by outcome",
    labelnames=["segment", "status"],  # status: success, failed, timeout
)

segment_computation_seconds = Histogram(
    "segment_computation_seconds",
    "Duration of a single day/segment computation",
    labelnames=["segment"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

degraded_resolutions_total = Counter(
    "degraded_resolutions_total",
    "Computations that ran without the identity link table",
)

# Weekly pipeline
pipeline_runs_total = Counter(
    "pipeline_runs_total",
    "Weekly metrics pipeline runs by terminal state",
    labelnames=["state"],  # done, failed
)

metric_snapshots_upserted_total = Counter(
    "metric_snapshots_upserted_total",
    "Period metric snapshots written",
    labelnames=["period_type"],
)

# Notifications
digest_notifications_total = Counter(
    "digest_notifications_total",
    "Digest and alert notifications by outcome",
    labelnames=["kind", "status"],  # kind: digest, alert; status: sent, deduped, skipped, failed
)
