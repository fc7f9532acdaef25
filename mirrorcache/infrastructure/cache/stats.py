"""Replication cache statistics (per coordinator instance)."""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any


@dataclass
class ReplicationStats:
    """Counters of read routing decisions.

    hits counts reads the cache considered, used the ones served from a
    replica, missed the ones delegated after a relevant check, errors the
    cache-side failures. Per-ref counters are keyed by entity name.
    """

    hits: int = 0
    used: int = 0
    missed: int = 0
    errors: int = 0
    measure_total: float = 0.0
    measure_count: int = 0
    counts: Counter[str] = field(default_factory=Counter)
    search: Counter[str] = field(default_factory=Counter)
    localized: Counter[str] = field(default_factory=Counter)
    projections: Counter[str] = field(default_factory=Counter)
    not_relevant: Counter[str] = field(default_factory=Counter)

    @property
    def ratio(self) -> float:
        """Share of considered reads served from a replica."""
        return round(self.used / self.hits, 2) if self.hits else 0.0

    @property
    def measure_ratio(self) -> float:
        """Mean latency improvement in percent over measured reads."""
        return round(self.measure_total / self.measure_count, 2) if self.measure_count else 0.0

    def record_measure(self, percent: float) -> None:
        self.measure_total += percent
        self.measure_count += 1

    def snapshot(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "used": self.used,
            "missed": self.missed,
            "errors": self.errors,
            "ratio": self.ratio,
            "measure_total": round(self.measure_total, 2),
            "measure_count": self.measure_count,
            "measure_ratio": self.measure_ratio,
            "counts": dict(self.counts),
            "search": dict(self.search),
            "localized": dict(self.localized),
            "projections": dict(self.projections),
            "not_relevant": dict(self.not_relevant),
        }

    def reset(self) -> None:
        self.hits = self.used = self.missed = self.errors = 0
        self.measure_total = 0.0
        self.measure_count = 0
        for counter in (self.counts, self.search, self.localized, self.projections, self.not_relevant):
            counter.clear()
