"""
Integration metrics.

Prometheus counters for governed provider calls, rate-limit rejections, sync
passes and webhook deliveries, all labelled by provider. Each
`IntegrationMetrics` owns its own CollectorRegistry so several runtimes (or
tests) in one process never share counts.

Usage:
    metrics = IntegrationMetrics()
    metrics.track_api_call("hubspot", "sync.contacts", "success", 0.12)
    metrics.snapshot("hubspot")
    metrics.export()  # Prometheus text exposition
"""

from typing import Any

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from .types import SyncResult

# call outcomes
SUCCESS = "success"
ERROR = "error"
UNAUTHENTICATED = "unauthenticated"
RATE_LIMITED = "rate_limited"
CIRCUIT_OPEN = "circuit_open"

# metric family -> (snapshot field, label folded into that field)
_SNAPSHOT_FIELDS: dict[str, tuple[str, str | None]] = {
    "bridgeport_api_calls": ("api_calls", "outcome"),
    "bridgeport_rate_limit_rejections": ("rate_limited", None),
    "bridgeport_sync_passes": ("sync_passes", "state"),
    "bridgeport_sync_items": ("sync_items", "result"),
    "bridgeport_webhooks": ("webhooks", "status"),
}


def _empty_entry() -> dict[str, Any]:
    return {
        "api_calls": {},
        "rate_limited": 0,
        "sync_passes": {},
        "sync_items": {},
        "webhooks": {},
    }


class IntegrationMetrics:
    """Per-provider integration counters on a private CollectorRegistry."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.api_calls = Counter(
            "bridgeport_api_calls",
            "Governed provider calls by outcome",
            ["provider", "operation_key", "outcome"],
            registry=self.registry,
        )
        self.api_call_duration = Histogram(
            "bridgeport_api_call_duration_seconds",
            "Latency of governed provider calls that reached the provider",
            ["provider"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
            registry=self.registry,
        )
        self.rate_limit_rejections = Counter(
            "bridgeport_rate_limit_rejections",
            "Calls refused by the local rate limiter or answered 429 by the provider",
            ["provider", "operation_key"],
            registry=self.registry,
        )
        self.sync_passes = Counter(
            "bridgeport_sync_passes",
            "Sync passes by terminal state",
            ["provider", "state"],
            registry=self.registry,
        )
        self.sync_items = Counter(
            "bridgeport_sync_items",
            "Records seen by sync passes",
            ["provider", "result"],
            registry=self.registry,
        )
        self.webhooks = Counter(
            "bridgeport_webhooks",
            "Webhook deliveries by response status",
            ["provider", "status"],
            registry=self.registry,
        )

    def track_api_call(
        self,
        provider: str,
        operation_key: str,
        outcome: str,
        duration: float | None = None,
    ) -> None:
        self.api_calls.labels(provider=provider, operation_key=operation_key, outcome=outcome).inc()
        if duration is not None:
            self.api_call_duration.labels(provider=provider).observe(duration)

    def track_rate_limit(self, provider: str, operation_key: str) -> None:
        self.rate_limit_rejections.labels(provider=provider, operation_key=operation_key).inc()

    def track_sync(self, provider: str, state: str, result: SyncResult | None = None) -> None:
        """Count one pass; `state` is the terminal state, or "aborted"."""
        self.sync_passes.labels(provider=provider, state=state).inc()
        if result is not None:
            self.sync_items.labels(provider=provider, result="processed").inc(result.items_processed)
            self.sync_items.labels(provider=provider, result="skipped").inc(result.items_skipped)

    def track_webhook(self, provider: str, status_code: int) -> None:
        self.webhooks.labels(provider=provider, status=str(status_code)).inc()

    def snapshot(self, provider: str | None = None) -> dict[str, dict[str, Any]]:
        """
        Counter totals per provider.

        Returns:
            {provider: {"api_calls": {outcome: n}, "rate_limited": n,
            "sync_passes": {state: n}, "sync_items": {result: n},
            "webhooks": {status: n}}}
        """
        report: dict[str, dict[str, Any]] = {}
        for family in self.registry.collect():
            field = _SNAPSHOT_FIELDS.get(family.name)
            if field is None:
                continue
            name, label = field
            for sample in family.samples:
                if not sample.name.endswith("_total"):
                    continue
                sample_provider = sample.labels["provider"]
                if provider is not None and sample_provider != provider:
                    continue
                entry = report.setdefault(sample_provider, _empty_entry())
                count = int(sample.value)
                if label is None:
                    entry[name] += count
                else:
                    bucket = sample.labels[label]
                    entry[name][bucket] = entry[name].get(bucket, 0) + count
        return report

    def export(self) -> bytes:
        """Prometheus text exposition of every counter."""
        return generate_latest(self.registry)
