"""Prometheus metrics shared by the store adapters, services and websocket feeds."""

from prometheus_client import Counter, Gauge


ISSUE_REPORTS = Counter(
    "issue_reports_total",
    "Issue reports handled by the consolidation service, by outcome",
    ["outcome"],
)
STORE_TRANSACTION_RETRIES = Counter(
    "store_transaction_retries_total",
    "Document store transactions re-run after a conflicting concurrent commit",
)
STORE_TRANSACTION_ABORTS = Counter(
    "store_transaction_aborts_total",
    "Document store transactions that exhausted their retry budget",
)
ACTIVE_FEED_CONNECTIONS = Gauge(
    "websocket_connections_active",
    "Number of active WebSocket feed connections",
    ["feed"],
)
