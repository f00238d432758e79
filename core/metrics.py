"""
Prometheus metrics for the payment flow.

Collectors are process-global; the ASGI app exposes them on ``/metrics``.
"""
from __future__ import annotations

from prometheus_client import Counter, Histogram


orders_total = Counter(
    "payment_orders_total",
    "Orders by provider and resulting status",
    ["provider", "status"],
)

order_value = Histogram(
    "payment_order_value_minor",
    "Order totals in minor currency units",
    ["currency"],
    buckets=(100, 500, 1_000, 5_000, 10_000, 50_000, 100_000, 500_000),
)

refunds_total = Counter(
    "payment_refunds_total",
    "Refunds by provider and status",
    ["provider", "status"],
)

webhooks_total = Counter(
    "payment_webhooks_total",
    "Webhook deliveries by provider and outcome",
    ["provider", "outcome"],
)

gateway_latency = Histogram(
    "payment_gateway_latency_ms",
    "Gateway call latency in ms",
    ["provider", "operation"],
    buckets=(10, 50, 100, 250, 500, 1000, 2500, 5000),
)
