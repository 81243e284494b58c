"""
In-process Prometheus metrics for campaign delivery.

Counters:
- campaign_messages_sent_total{provider, status}: provider send attempts
- campaign_receipts_total{outcome, result}: delivery receipts and what the
  reconciler did with them (applied, duplicate, conflict, expired)
- campaigns_total{event}: created, dispatched, completed, failed
- segment_resolutions_total{kind}: preview, page, full

Histogram:
- campaign_dispatch_seconds: wall time from dispatch start until every
  provider call for the campaign has returned

Usage:
    metrics = get_metrics_collector()
    metrics.increment_receipts(outcome="delivered", result="applied")
    text = metrics.export_prometheus()
"""
from bisect import bisect_left
from threading import Lock
from typing import Dict, List, Tuple

LabelSet = Tuple[Tuple[str, str], ...]

COUNTER_HELP = {
    "campaign_messages_sent_total": "Total number of provider send attempts by outcome",
    "campaign_receipts_total": "Total number of delivery receipts processed",
    "campaigns_total": "Total number of campaign lifecycle events",
    "segment_resolutions_total": "Total number of audience resolutions",
}

DISPATCH_SECONDS = "campaign_dispatch_seconds"
DISPATCH_BUCKETS = (0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0)


class _Histogram:
    def __init__(self, buckets: Tuple[float, ...]):
        self.buckets = buckets
        self.counts = [0] * (len(buckets) + 1)  # last slot is +Inf
        self.total = 0.0
        self.observations = 0

    def observe(self, value: float) -> None:
        self.counts[bisect_left(self.buckets, value)] += 1
        self.total += value
        self.observations += 1

    def lines(self, name: str) -> List[str]:
        lines = []
        cumulative = 0
        for bound, count in zip(self.buckets + (float("inf"),), self.counts):
            cumulative += count
            le = "+Inf" if bound == float("inf") else f"{bound:g}"
            lines.append(f'{name}_bucket{{le="{le}"}} {cumulative}')
        lines.append(f"{name}_sum {self.total:g}")
        lines.append(f"{name}_count {self.observations}")
        return lines


class MetricsCollector:
    """Thread-safe counters and the dispatch-duration histogram."""

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, Dict[LabelSet, int]] = {}
        self._dispatch_seconds = _Histogram(DISPATCH_BUCKETS)

    def _increment(self, metric_name: str, amount: int = 1, **labels: str) -> None:
        label_set = tuple(sorted((key, value.lower()) for key, value in labels.items()))
        with self._lock:
            samples = self._counters.setdefault(metric_name, {})
            samples[label_set] = samples.get(label_set, 0) + amount

    def increment_sends(self, provider: str, status: str, amount: int = 1):
        self._increment("campaign_messages_sent_total", amount, provider=provider, status=status)

    def increment_receipts(self, outcome: str, result: str, amount: int = 1):
        self._increment("campaign_receipts_total", amount, outcome=outcome, result=result)

    def increment_campaigns(self, event: str, amount: int = 1):
        self._increment("campaigns_total", amount, event=event)

    def increment_resolutions(self, kind: str, amount: int = 1):
        self._increment("segment_resolutions_total", amount, kind=kind)

    def observe_dispatch_duration(self, seconds: float) -> None:
        with self._lock:
            self._dispatch_seconds.observe(seconds)

    def get_counter_value(self, metric_name: str, labels: Dict[str, str]) -> int:
        label_set = tuple(sorted(labels.items()))
        with self._lock:
            return self._counters.get(metric_name, {}).get(label_set, 0)

    def get_dispatch_count(self) -> int:
        with self._lock:
            return self._dispatch_seconds.observations

    def export_prometheus(self) -> str:
        """Prometheus text exposition; families sorted by name, empty ones omitted."""
        families: Dict[str, List[str]] = {}

        with self._lock:
            for name, samples in self._counters.items():
                lines = [f"# HELP {name} {COUNTER_HELP.get(name, 'Counter metric')}", f"# TYPE {name} counter"]
                for label_set, value in sorted(samples.items()):
                    labels = ",".join(f'{key}="{val}"' for key, val in label_set)
                    lines.append(f"{name}{{{labels}}} {value}")
                families[name] = lines

            if self._dispatch_seconds.observations:
                families[DISPATCH_SECONDS] = [
                    f"# HELP {DISPATCH_SECONDS} Time to hand every message of a campaign to the provider",
                    f"# TYPE {DISPATCH_SECONDS} histogram",
                    *self._dispatch_seconds.lines(DISPATCH_SECONDS),
                ]

        return "".join("\n".join(families[name]) + "\n\n" for name in sorted(families))

    def reset_all(self):
        with self._lock:
            self._counters.clear()
            self._dispatch_seconds = _Histogram(DISPATCH_BUCKETS)


_metrics_collector: MetricsCollector | None = None
_metrics_lock = Lock()


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector singleton."""
    global _metrics_collector
    if _metrics_collector is None:
        with _metrics_lock:
            if _metrics_collector is None:
                _metrics_collector = MetricsCollector()
    return _metrics_collector


def reset_metrics():
    """Reset global metrics collector (for testing)."""
    with _metrics_lock:
        if _metrics_collector is not None:
            _metrics_collector.reset_all()
