"""Prometheus metrics exposed by the relay portal."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest

class PortalMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("rlp_relayed_total", "Total relayed messages", ["account_id"], registry=self.registry)
        self.errors = Counter("rlp_relay_errors_total", "Total relay failures", ["account_id"], registry=self.registry)
        self.denied = Counter(
            "rlp_denied_total", "Sends refused by the quota engine", ["account_id", "reason"], registry=self.registry
        )
        self.purchases = Counter("rlp_purchases_total", "Quota purchases", ["account_id"], registry=self.registry)
        self.accounts = Gauge("rlp_accounts", "Registered accounts", registry=self.registry)

    def inc_sent(self, account_id: str):
        """Increase the ``sent`` counter for the given account."""
        self.sent.labels(account_id=account_id or "unknown").inc()

    def inc_error(self, account_id: str):
        """Increase the ``errors`` counter for the given account."""
        self.errors.labels(account_id=account_id or "unknown").inc()

    def inc_denied(self, account_id: str, reason: str):
        self.denied.labels(account_id=account_id or "unknown", reason=reason).inc()

    def inc_purchase(self, account_id: str):
        self.purchases.labels(account_id=account_id or "unknown").inc()

    def set_accounts(self, value: int):
        """Update the gauge tracking registered accounts."""
        self.accounts.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
