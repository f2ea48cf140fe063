# File: metrics.py

from prometheus_client import Counter, Gauge, Histogram

METRICS = {
    "drills_total": Counter(
        "azfailover_drills_total",
        "Failover and restore runs by outcome",
        ["operation", "outcome"],
    ),
    "evicted_instances_total": Counter(
        "azfailover_evicted_instances_total",
        "Instances force-stopped because they sat in the excluded AZ",
    ),
    "poll_ticks_total": Counter(
        "azfailover_poll_ticks_total",
        "Convergence poll ticks",
        ["operation"],
    ),
    "convergence_duration_seconds": Histogram(
        "azfailover_convergence_duration_seconds",
        "Time from first poll tick to a terminal convergence state",
        ["operation"],
        buckets=(10, 30, 60, 120, 300, 600, 900, 1800),
    ),
    "unresolved_placements": Gauge(
        "azfailover_unresolved_placements",
        "Running instances whose placement could not be resolved on the last tick",
    ),
    "api_requests": Counter(
        "azfailover_api_requests_total",
        "Total REST API requests",
        ["method", "endpoint"],
    ),
}
