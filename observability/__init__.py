"""
Observability infrastructure for the storefront backend.

Provides:
- Structured logging with correlation IDs
- Prometheus business metrics for orders, OTP checks and the coin ledger
"""

from .logging import get_logger, setup_logging, correlation_id_context, get_correlation_id
from .middleware import ObservabilityMiddleware
from .metrics import (
    metrics_registry,
    http_requests_total,
    http_request_duration_seconds,
    order_transitions_total,
    stock_reservation_failures_total,
    delivery_otp_verifications_total,
    wallet_coins_total,
    notification_failures_total,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "correlation_id_context",
    "get_correlation_id",
    "ObservabilityMiddleware",
    "metrics_registry",
    "http_requests_total",
    "http_request_duration_seconds",
    "order_transitions_total",
    "stock_reservation_failures_total",
    "delivery_otp_verifications_total",
    "wallet_coins_total",
    "notification_failures_total",
]
