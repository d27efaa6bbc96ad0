"""
Operational metrics for payment provisioning.

Prometheus counters/histograms consumed by the ops dashboards.
"""

from prometheus_client import Counter, Histogram

API_ERRORS_TOTAL = Counter(
    "hotspot_api_errors_total",
    "Total API errors by path, method and status code",
    ["path", "method", "status_code"],
)

WEBHOOK_EVENTS_TOTAL = Counter(
    "hotspot_paystack_webhook_events_total",
    "Paystack webhook deliveries by event type and outcome",
    ["event", "outcome"],
)

PROVISIONING_OUTCOMES_TOTAL = Counter(
    "hotspot_provisioning_outcomes_total",
    "Provisioning runs by intent and final ledger status",
    ["intent", "status"],
)

LEDGER_CLAIMS_TOTAL = Counter(
    "hotspot_ledger_claims_total",
    "Ledger claim attempts by result",
    ["result"],
)

RADIUS_CALL_DURATION = Histogram(
    "hotspot_radius_call_duration_seconds",
    "Latency of subscriber backend calls",
    ["operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 20),
)
