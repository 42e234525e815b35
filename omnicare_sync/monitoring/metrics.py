"""Prometheus metrics for the offline sync subsystem."""

from prometheus_client import Counter, Gauge

operations_queued_total = Counter(
    "offline_sync_operations_queued_total",
    "Local mutations queued for push",
    ["resource_type", "operation"],
)

push_outcomes_total = Counter(
    "offline_sync_push_outcomes_total",
    "Push attempts by outcome",
    ["outcome"],
)

conflicts_total = Counter(
    "offline_sync_conflicts_total",
    "Conflicts detected",
    ["conflict_type"],
)

records_purged_total = Counter(
    "offline_store_records_purged_total",
    "Expired records purged from the offline store",
    ["classification"],
)

retry_queue_depth = Gauge(
    "offline_sync_retry_queue_depth",
    "Items currently held by the retry queue",
)

network_online = Gauge(
    "offline_sync_network_online",
    "1 when the monitor considers the network online",
)
