"""
Metrics Collection for the Billing Core

Collects and exposes metrics for:
- Document numbering (allocations, collisions, exhausted retry budgets)
- Reconciliation (promoted, cancelled, skipped, failed payments)
- External payment ingestion (new vs duplicate events)
- Maintenance activities (started, completed, failed)
- Processing times (average, p95)

Metrics are held in memory per process and exposed at GET /metrics.
"""

import statistics
from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Any


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class NumberingMetrics:
    """Metrics for the sequence allocator."""
    allocated: int = 0
    collisions: int = 0
    exhausted: int = 0

    # By document kind
    by_kind: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: {"allocated": 0, "collisions": 0, "exhausted": 0}))


@dataclass
class ReconciliationMetrics:
    """Metrics for settlement and reconciliation."""
    reconciled: int = 0
    cancelled: int = 0
    skipped: int = 0
    failed: int = 0
    invoices_settled: int = 0
    events_ingested: int = 0
    duplicate_events: int = 0


@dataclass
class ActivityMetrics:
    """Metrics for maintenance activity execution."""
    started: int = 0
    completed: int = 0
    failed: int = 0

    # By activity name
    by_name: Dict[str, Dict[str, int]] = field(default_factory=lambda: defaultdict(lambda: {"started": 0, "completed": 0, "failed": 0}))


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    # Raw timing samples (keep last N for percentile calculations)
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    # By stage
    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for the billing core.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_allocation("invoice")
        metrics.record_reconciliation("reconciled")
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.numbering = NumberingMetrics()
        self.reconciliation = ReconciliationMetrics()
        self.activities = ActivityMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    # =========================================================================
    # Numbering Metrics
    # =========================================================================

    def record_allocation(self, kind: str):
        """Record a number issued."""
        with self._lock:
            self.numbering.allocated += 1
            self.numbering.by_kind[kind]["allocated"] += 1

    def record_collision(self, kind: str):
        """Record a candidate number that already existed."""
        with self._lock:
            self.numbering.collisions += 1
            self.numbering.by_kind[kind]["collisions"] += 1

    def record_allocation_exhausted(self, kind: str):
        """Record a creation that ran out of retry budget."""
        with self._lock:
            self.numbering.exhausted += 1
            self.numbering.by_kind[kind]["exhausted"] += 1

    # =========================================================================
    # Reconciliation Metrics
    # =========================================================================

    def record_reconciliation(self, outcome: str, count: int = 1):
        """Record a reconciliation outcome: reconciled, cancelled, skipped or failed."""
        with self._lock:
            current = getattr(self.reconciliation, outcome)
            setattr(self.reconciliation, outcome, current + count)

    def record_invoice_settled(self):
        """Record an invoice flipping to paid."""
        with self._lock:
            self.reconciliation.invoices_settled += 1

    def record_ingestion(self, duplicate: bool):
        """Record an inbound provider event."""
        with self._lock:
            if duplicate:
                self.reconciliation.duplicate_events += 1
            else:
                self.reconciliation.events_ingested += 1

    # =========================================================================
    # Activity Metrics
    # =========================================================================

    def record_activity_started(self, activity_name: str):
        """Record an activity start."""
        with self._lock:
            self.activities.started += 1
            self.activities.by_name[activity_name]["started"] += 1

    def record_activity_completed(self, activity_name: str, duration_ms: float = None):
        """Record an activity completion."""
        with self._lock:
            self.activities.completed += 1
            self.activities.by_name[activity_name]["completed"] += 1

            if duration_ms:
                self.timings.add_sample(duration_ms, f"activity.{activity_name}")

    def record_activity_failed(self, activity_name: str, error: str = None):
        """Record an activity failure."""
        with self._lock:
            self.activities.failed += 1
            self.activities.by_name[activity_name]["failed"] += 1

    # =========================================================================
    # Timing Metrics
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "numbering": {
                    "allocated": self.numbering.allocated,
                    "collisions": self.numbering.collisions,
                    "exhausted": self.numbering.exhausted,
                    "by_kind": {k: dict(v) for k, v in self.numbering.by_kind.items()},
                },
                "reconciliation": {
                    "reconciled": self.reconciliation.reconciled,
                    "cancelled": self.reconciliation.cancelled,
                    "skipped": self.reconciliation.skipped,
                    "failed": self.reconciliation.failed,
                    "invoices_settled": self.reconciliation.invoices_settled,
                    "events_ingested": self.reconciliation.events_ingested,
                    "duplicate_events": self.reconciliation.duplicate_events,
                },
                "activities": {
                    "started": self.activities.started,
                    "completed": self.activities.completed,
                    "failed": self.activities.failed,
                    "by_name": {k: dict(v) for k, v in self.activities.by_name.items()},
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


# =============================================================================
# Module-level convenience functions
# =============================================================================

def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_activity_started(activity_name: str):
    """Record an activity start."""
    get_metrics().record_activity_started(activity_name)


def record_activity_completed(activity_name: str, duration_ms: float = None):
    """Record an activity completion."""
    get_metrics().record_activity_completed(activity_name, duration_ms)


def record_activity_failed(activity_name: str, error: str = None):
    """Record an activity failure."""
    get_metrics().record_activity_failed(activity_name, error)


def record_processing_time(stage: str, duration_ms: float):
    """Record a processing time sample."""
    get_metrics().record_processing_time(stage, duration_ms)
