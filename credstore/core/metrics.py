"""Store metrics using the Prometheus client library.

All metrics are defined here: a single inventory of everything the
store layer measures.  Modules import specific metrics and increment or
observe them at the point of action.

  credential_store_operations_total    COUNTER   one per store call, by outcome
  credential_store_operation_duration  HISTOGRAM latency per store call
  permission_checks_total              COUNTER   gate decisions
  id_generator_reservations_total      COUNTER   global id reservations

OUTCOME LABELS
--------------
Every store call ends in exactly one outcome:

  ok                 - returned normally
  permission_denied  - the gate refused the actor
  not_found          - get() of an unknown id
  duplicate          - unique index rejected the insert
  error              - anything else (driver failures, bugs)

Keeping the label set small and closed matters: every distinct label
value is a separate time series in Prometheus.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Histogram

STORE_OPERATIONS = Counter(
    "credential_store_operations_total",
    "Credential store operations by store, operation and outcome",
    ["store", "operation", "outcome"],
)

STORE_OPERATION_DURATION = Histogram(
    "credential_store_operation_duration_seconds",
    "Credential store operation duration in seconds",
    ["store", "operation"],
    # Buckets:
    #   1ms   - in-memory backends, cached permission decisions
    #   5ms   - single indexed lookup
    #   25ms  - small filtered scans
    #   100ms - get_all with many per-record permission checks
    #   1s+   - unbounded scans; look at the query
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

PERMISSION_CHECKS = Counter(
    "permission_checks_total",
    "Permission gate decisions by permission and result",
    ["permission", "result"],  # result: "allow" or "deny"
)

ID_RESERVATIONS = Counter(
    "id_generator_reservations_total",
    "Global id reservations made by distributed id generators",
    ["backend"],  # "memory" or "redis"
)


def _outcome_for(exc: BaseException) -> str:
    # Imported lazily: errors.py has no dependency on metrics and should stay so.
    from credstore.core.errors import (
        DuplicateCredential,
        NotFound,
        PermissionDenied,
    )

    if isinstance(exc, PermissionDenied):
        return "permission_denied"
    if isinstance(exc, NotFound):
        return "not_found"
    if isinstance(exc, DuplicateCredential):
        return "duplicate"
    return "error"


@contextmanager
def track_operation(store: str, operation: str) -> Iterator[None]:
    """Count and time one store operation.

    Usage::

        with track_operation(self.name, "insert"):
            ...
    """
    start = time.monotonic()
    outcome = "ok"
    try:
        yield
    except BaseException as e:
        outcome = _outcome_for(e)
        raise
    finally:
        STORE_OPERATION_DURATION.labels(store=store, operation=operation).observe(
            time.monotonic() - start
        )
        STORE_OPERATIONS.labels(store=store, operation=operation, outcome=outcome).inc()
