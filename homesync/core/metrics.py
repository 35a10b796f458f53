"""Prometheus metrics definitions and helpers for index synchronization.

Metric Naming Conventions:
- All metrics are prefixed with 'hsync_'
- Counters end with '_total'
- Histograms/durations end with '_seconds'

Usage:
    from homesync.core.metrics import (
        record_index_operation,
        record_index_convergence_failure,
        observe_convergence_duration,
    )

    record_index_operation("device-by-home-id", "add_member")
    observe_convergence_duration("home_updated", 0.012)
"""

from prometheus_client import REGISTRY, Counter, Histogram

_registry = REGISTRY

# =============================================================================
# Index Operation Counters
# =============================================================================

INDEX_OPERATIONS_TOTAL = Counter(
    "hsync_index_operations_total",
    "Total number of index cache operations issued by the synchronization engine",
    labelnames=["family", "operation"],
    registry=_registry,
)

INDEX_CONVERGENCE_FAILURES_TOTAL = Counter(
    "hsync_index_convergence_failures_total",
    "Total number of index cache operations that failed during convergence",
    labelnames=["family", "operation"],
    registry=_registry,
)

# =============================================================================
# Convergence Duration Histogram
# =============================================================================

# Covers 1ms to 10s; index writes are usually a handful of Redis round-trips
CONVERGENCE_DURATION_BUCKETS = (
    0.001,
    0.005,
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    10.0,
)

INDEX_CONVERGENCE_DURATION_SECONDS = Histogram(
    "hsync_index_convergence_duration_seconds",
    "Time spent converging index cache state after a relational mutation",
    labelnames=["mutation"],
    buckets=CONVERGENCE_DURATION_BUCKETS,
    registry=_registry,
)


def record_index_operation(family: str, operation: str) -> None:
    """Record an index cache operation issued by the engine.

    Args:
        family: Index family name (e.g., "device-by-home-id")
        operation: Operation name (add_member, remove_member, delete_key)
    """
    INDEX_OPERATIONS_TOTAL.labels(family=family, operation=operation).inc()


def record_index_convergence_failure(family: str, operation: str) -> None:
    """Record a failed index cache operation.

    Args:
        family: Index family name
        operation: Operation name that failed
    """
    INDEX_CONVERGENCE_FAILURES_TOTAL.labels(family=family, operation=operation).inc()


def observe_convergence_duration(mutation: str, duration_seconds: float) -> None:
    """Observe how long one mutation's index convergence took.

    Args:
        mutation: Mutation name (e.g., "home_updated", "bulk_link")
        duration_seconds: Elapsed wall-clock time in seconds
    """
    INDEX_CONVERGENCE_DURATION_SECONDS.labels(mutation=mutation).observe(duration_seconds)
