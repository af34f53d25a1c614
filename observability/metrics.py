"""
Prometheus metrics collection for the storefront backend.

Business counters for the order pipeline and the coin ledger. Labels are
kept low-cardinality (no user or order ids).
"""

from prometheus_client import (
    Counter,
    Histogram,
    REGISTRY,
)

# Use the default registry
metrics_registry = REGISTRY

# HTTP Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
    registry=metrics_registry,
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=metrics_registry,
)

# Order pipeline
order_transitions_total = Counter(
    "order_transitions_total",
    "Committed order status transitions",
    ["status"],  # Pending (placed), Shipped, Delivered, Cancelled
    registry=metrics_registry,
)

stock_reservation_failures_total = Counter(
    "stock_reservation_failures_total",
    "Reservations rejected for insufficient stock",
    registry=metrics_registry,
)

delivery_otp_verifications_total = Counter(
    "delivery_otp_verifications_total",
    "Delivery OTP verification outcomes",
    ["outcome"],  # success, invalid, locked, already_used, bad_format
    registry=metrics_registry,
)

# Wallet ledger
wallet_coins_total = Counter(
    "wallet_coins_total",
    "Coins moved through the wallet ledger",
    ["transaction_type", "direction"],  # direction: credit, debit
    registry=metrics_registry,
)

notification_failures_total = Counter(
    "notification_failures_total",
    "Best-effort notifications that failed to send",
    ["kind"],
    registry=metrics_registry,
)
