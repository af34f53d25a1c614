"""Delivery OTP: generation, lockout and verification for a single order.

The functions here are pure: they take the OTP state and a clock reading and
return new state plus an outcome. OrderService persists the result with a
version-checked write, so concurrent submissions for one order serialize.

Rules:
    - a 6-digit code (100000-999999) is generated once at checkout
    - a wrong code is recorded; 3 wrong codes inside a trailing 10-minute
      window lock the order for 30 minutes
    - while locked every submission fails, even the right code
    - the code can be consumed exactly once
"""

import json
import math
import re
import secrets
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

MAX_FAILED_ATTEMPTS = 3
ATTEMPT_WINDOW = timedelta(minutes=10)
LOCKOUT_DURATION = timedelta(minutes=30)

_OTP_PATTERN = re.compile(r"[0-9]{6}")


class OtpOutcome:
    SUCCESS = "success"
    LOCKED = "locked"
    ALREADY_USED = "already_used"
    BAD_FORMAT = "bad_format"
    INVALID = "invalid"


@dataclass(frozen=True)
class FailedAttempt:
    attempted_at: datetime
    attempted_code: str
    ip_address: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "attempted_at": self.attempted_at.isoformat(),
            "attempted_code": self.attempted_code,
            "ip_address": self.ip_address,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailedAttempt":
        return cls(
            attempted_at=datetime.fromisoformat(data["attempted_at"]),
            attempted_code=data.get("attempted_code", ""),
            ip_address=data.get("ip_address"),
        )


@dataclass(frozen=True)
class DeliveryOtp:
    code: str
    generated_at: datetime
    used: bool = False
    failed_attempts: Tuple[FailedAttempt, ...] = field(default_factory=tuple)
    lockout_until: Optional[datetime] = None

    def failed_attempts_json(self) -> str:
        return json.dumps([a.to_dict() for a in self.failed_attempts])

    @staticmethod
    def parse_failed_attempts(raw: Optional[str]) -> Tuple[FailedAttempt, ...]:
        if not raw:
            return tuple()
        return tuple(FailedAttempt.from_dict(item) for item in json.loads(raw))


@dataclass(frozen=True)
class OtpVerification:
    outcome: str
    otp: DeliveryOtp
    attempts_remaining: Optional[int] = None
    lockout_minutes: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.outcome == OtpOutcome.SUCCESS

    @property
    def state_changed(self) -> bool:
        """Only a wrong code or a successful match mutate the stored OTP."""
        return self.outcome in (OtpOutcome.SUCCESS, OtpOutcome.INVALID) or (
            self.outcome == OtpOutcome.LOCKED and self.attempts_remaining == 0
        )


def generate_delivery_otp() -> str:
    """Uniformly random 6-digit code in 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def new_delivery_otp(now: Optional[datetime] = None) -> DeliveryOtp:
    return DeliveryOtp(code=generate_delivery_otp(), generated_at=now or datetime.utcnow())


def is_valid_otp_format(code: Optional[str]) -> bool:
    # ASCII digits only, and no trailing newline
    return isinstance(code, str) and _OTP_PATTERN.fullmatch(code) is not None


def is_locked(otp: DeliveryOtp, now: datetime) -> bool:
    return otp.lockout_until is not None and now < otp.lockout_until


def recent_failed_attempts(otp: DeliveryOtp, now: datetime) -> int:
    """Failed attempts made within the trailing attempt window."""
    window_start = now - ATTEMPT_WINDOW
    return sum(1 for a in otp.failed_attempts if a.attempted_at > window_start)


def remaining_lockout_minutes(otp: DeliveryOtp, now: datetime) -> int:
    if not is_locked(otp, now):
        return 0
    return max(0, math.ceil((otp.lockout_until - now).total_seconds() / 60))


def verify(
    otp: DeliveryOtp,
    submitted_code: Optional[str],
    origin_ip: Optional[str] = None,
    now: Optional[datetime] = None,
) -> OtpVerification:
    """
    Check a submitted delivery code.

    Order of checks: lockout, already used, format, match. Only a wrong
    (well-formed) code or a match changes state.
    """
    now = now or datetime.utcnow()

    if is_locked(otp, now):
        return OtpVerification(
            OtpOutcome.LOCKED, otp, lockout_minutes=remaining_lockout_minutes(otp, now)
        )

    if otp.used:
        return OtpVerification(OtpOutcome.ALREADY_USED, otp)

    if not is_valid_otp_format(submitted_code):
        return OtpVerification(OtpOutcome.BAD_FORMAT, otp)

    if not secrets.compare_digest(submitted_code, otp.code):
        attempts: List[FailedAttempt] = list(otp.failed_attempts)
        attempts.append(FailedAttempt(attempted_at=now, attempted_code=submitted_code, ip_address=origin_ip))
        updated = replace(otp, failed_attempts=tuple(attempts))

        recent = recent_failed_attempts(updated, now)
        if recent >= MAX_FAILED_ATTEMPTS:
            updated = replace(updated, lockout_until=now + LOCKOUT_DURATION)
            return OtpVerification(
                OtpOutcome.LOCKED,
                updated,
                attempts_remaining=0,
                lockout_minutes=int(LOCKOUT_DURATION.total_seconds() // 60),
            )
        return OtpVerification(
            OtpOutcome.INVALID, updated, attempts_remaining=MAX_FAILED_ATTEMPTS - recent
        )

    return OtpVerification(OtpOutcome.SUCCESS, replace(otp, used=True))
