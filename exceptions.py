"""
Custom exception hierarchy for the storefront backend.

All business-rule failures raised by the order, inventory, OTP and wallet
services inherit from StorefrontError so the HTTP layer can render them
uniformly. Infrastructure failures (store unreachable, lost optimistic
update) are DatabaseError subclasses and are flagged as retryable.

Exception Hierarchy:
    StorefrontError (base)
    ├── ValidationError
    │   ├── OtpBadFormatError
    │   ├── OtpInvalidError
    │   ├── OtpAlreadyUsedError
    │   ├── InsufficientBalanceError
    │   └── RedemptionRuleViolation
    ├── AuthenticationError
    ├── AuthorizationError
    ├── ResourceNotFoundError
    ├── ConflictError
    │   ├── InsufficientStockError
    │   ├── InvalidTransitionError
    │   └── DuplicateTransactionError
    ├── OtpLockedError
    └── DatabaseError
        └── ConcurrentUpdateError

Usage:
    from exceptions import InsufficientStockError

    raise InsufficientStockError(
        "Insufficient stock for Basmati Rice",
        detail={"product_id": 4, "available": 1, "requested": 2},
    )
"""

from typing import Optional, Dict, Any, List


class StorefrontError(Exception):
    """
    Base exception for all storefront application errors.

    Attributes:
        message: Human-readable error message
        detail: Optional dict with additional error context
        status_code: Suggested HTTP status code (for API errors)
    """

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        status_code: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for JSON serialization."""
        result = {
            "error": self.__class__.__name__,
            "message": self.message,
        }
        if self.detail:
            result["detail"] = self.detail
        return result


class ValidationError(StorefrontError):
    """
    Raised when input validation fails.

    Examples:
        raise ValidationError("Items are required")
        raise ValidationError("Variant required", detail={"product_id": 3})
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=400)


class AuthenticationError(StorefrontError):
    """Raised when the bearer session is missing or invalid."""

    def __init__(self, message: str = "Not authenticated", *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=401)


class AuthorizationError(StorefrontError):
    """Raised when user lacks permissions for an action."""

    def __init__(self, message: str = "Admin access required", *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=403)


class ResourceNotFoundError(StorefrontError):
    """
    Raised when a requested resource doesn't exist.

    Examples:
        raise ResourceNotFoundError("Order not found", detail={"order_id": 12})
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=404)


class ConflictError(StorefrontError):
    """Raised when a request conflicts with the current state of a resource."""

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail, status_code=409)


class InsufficientStockError(ConflictError):
    """Requested quantity exceeds the stock available for a product or variant."""

    def __init__(
        self,
        message: str,
        *,
        product_id: Optional[int] = None,
        variant_id: Optional[int] = None,
        available: Optional[int] = None,
        requested: Optional[int] = None,
    ):
        super().__init__(
            message,
            detail={
                "product_id": product_id,
                "variant_id": variant_id,
                "available": available,
                "requested": requested,
            },
        )
        self.product_id = product_id
        self.variant_id = variant_id
        self.available = available
        self.requested = requested


class InvalidTransitionError(ConflictError):
    """Raised when an order status change is not an edge of the state machine."""

    def __init__(self, current: str, target: str, *, order_id: Optional[int] = None):
        super().__init__(
            f"Cannot move order from {current} to {target}",
            detail={"order_id": order_id, "current_status": current, "target_status": target},
        )
        self.current = current
        self.target = target


class DuplicateTransactionError(ConflictError):
    """
    Raised when a ledger entry with the same idempotency key already exists
    (an OrderReward for the same order, a ReferralBonus for the same
    referred user).
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message, detail=detail)


class OtpBadFormatError(ValidationError):
    def __init__(self):
        super().__init__(
            "Invalid verification code format. Please enter a 6-digit code.",
            detail={"requires_otp": True},
        )


class OtpInvalidError(ValidationError):
    def __init__(self, attempts_remaining: int):
        super().__init__(
            f"Invalid verification code. {attempts_remaining} attempts remaining.",
            detail={"requires_otp": True, "attempts_remaining": attempts_remaining},
        )
        self.attempts_remaining = attempts_remaining


class OtpAlreadyUsedError(ValidationError):
    def __init__(self):
        super().__init__(
            "This delivery verification code has already been used.",
            detail={"requires_otp": True},
        )


class OtpLockedError(StorefrontError):
    """Too many wrong delivery codes; the order is locked for a while."""

    def __init__(self, lockout_minutes: int):
        super().__init__(
            f"Too many failed attempts. Please try again in {lockout_minutes} minutes.",
            detail={"requires_otp": True, "lockout_minutes": lockout_minutes},
            status_code=429,
        )
        self.lockout_minutes = lockout_minutes


class InsufficientBalanceError(ValidationError):
    def __init__(self, available: int, requested: int):
        super().__init__(
            f"Insufficient wallet balance. Available: {available}, Requested: {requested}",
            detail={"available": available, "requested": requested},
        )
        self.available = available
        self.requested = requested


class RedemptionRuleViolation(ValidationError):
    """Carries every violated redemption rule, not just the first one."""

    def __init__(self, errors: List[str]):
        super().__init__(", ".join(errors), detail={"errors": list(errors)})
        self.errors = list(errors)


class DatabaseError(StorefrontError):
    """
    Raised when database operations fail.

    Examples:
        raise DatabaseError("Failed to save order")
        raise DatabaseError("Store unreachable", detail={"retryable": True})
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None, status_code: int = 500):
        super().__init__(message, detail=detail, status_code=status_code)


class ConcurrentUpdateError(DatabaseError):
    """
    Raised when a conditional (version-checked) write matched no row because
    another request changed the entity first. Safe for the caller to retry.
    """

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None):
        detail = dict(detail or {})
        detail["retryable"] = True
        super().__init__(message, detail=detail, status_code=409)
