"""Tests for the delivery OTP state machine (pure functions, no database)."""
from datetime import datetime, timedelta

import pytest

from services.delivery_otp import (
    DeliveryOtp,
    FailedAttempt,
    OtpOutcome,
    generate_delivery_otp,
    is_locked,
    is_valid_otp_format,
    new_delivery_otp,
    recent_failed_attempts,
    remaining_lockout_minutes,
    verify,
)

T0 = datetime(2026, 3, 1, 12, 0, 0)


def _otp(**overrides) -> DeliveryOtp:
    fields = {"code": "482913", "generated_at": T0}
    fields.update(overrides)
    return DeliveryOtp(**fields)


def test_generated_codes_are_six_digits_in_range():
    for _ in range(200):
        code = generate_delivery_otp()
        assert len(code) == 6
        assert 100000 <= int(code) <= 999999


def test_new_delivery_otp_starts_unused_without_attempts():
    otp = new_delivery_otp(T0)
    assert otp.generated_at == T0
    assert otp.used is False
    assert otp.failed_attempts == ()
    assert otp.lockout_until is None


@pytest.mark.parametrize("code,expected", [
    ("123456", True),
    ("12345", False),
    ("1234567", False),
    ("12a456", False),
    (" 23456", False),
    ("482913\n", False),
    ("٤٨٢٩١٣", False),
    ("", False),
    (None, False),
])
def test_otp_format(code, expected):
    assert is_valid_otp_format(code) is expected


def test_correct_code_succeeds_and_marks_used():
    result = verify(_otp(), "482913", now=T0)
    assert result.success
    assert result.otp.used is True
    assert result.state_changed


def test_wrong_code_records_attempt_with_origin():
    result = verify(_otp(), "111111", origin_ip="10.0.0.7", now=T0)
    assert result.outcome == OtpOutcome.INVALID
    assert result.attempts_remaining == 2
    assert len(result.otp.failed_attempts) == 1
    attempt = result.otp.failed_attempts[0]
    assert attempt.attempted_code == "111111"
    assert attempt.ip_address == "10.0.0.7"
    assert attempt.attempted_at == T0


def test_three_wrong_codes_lock_for_thirty_minutes():
    otp = _otp()
    otp = verify(otp, "111111", now=T0).otp
    second = verify(otp, "222222", now=T0 + timedelta(minutes=1))
    assert second.attempts_remaining == 1

    third = verify(second.otp, "333333", now=T0 + timedelta(minutes=2))
    assert third.outcome == OtpOutcome.LOCKED
    assert third.lockout_minutes == 30
    assert third.otp.lockout_until == T0 + timedelta(minutes=32)
    assert third.state_changed

    # Locked even for the right code
    fourth = verify(third.otp, "482913", now=T0 + timedelta(minutes=3))
    assert fourth.outcome == OtpOutcome.LOCKED
    assert fourth.lockout_minutes == 29
    assert not fourth.state_changed


def test_old_failures_fall_out_of_the_window():
    otp = _otp(failed_attempts=(
        FailedAttempt(T0, "111111"),
        FailedAttempt(T0 + timedelta(minutes=1), "222222"),
    ))
    # Ten and a half minutes on, only the second failure is still recent
    result = verify(otp, "333333", now=T0 + timedelta(minutes=10, seconds=30))
    assert result.outcome == OtpOutcome.INVALID
    assert result.attempts_remaining == 1
    assert len(result.otp.failed_attempts) == 3


def test_lockout_expires():
    otp = _otp(lockout_until=T0 + timedelta(minutes=30))
    assert is_locked(otp, T0 + timedelta(minutes=29))
    assert not is_locked(otp, T0 + timedelta(minutes=30))
    assert verify(otp, "482913", now=T0 + timedelta(minutes=31)).success


def test_remaining_lockout_minutes_rounds_up():
    otp = _otp(lockout_until=T0 + timedelta(minutes=30))
    assert remaining_lockout_minutes(otp, T0 + timedelta(minutes=10, seconds=1)) == 20
    assert remaining_lockout_minutes(otp, T0 + timedelta(minutes=29, seconds=59)) == 1
    assert remaining_lockout_minutes(otp, T0 + timedelta(minutes=31)) == 0


def test_used_code_is_rejected_even_when_correct():
    result = verify(_otp(used=True), "482913", now=T0)
    assert result.outcome == OtpOutcome.ALREADY_USED
    assert not result.state_changed


def test_bad_format_does_not_count_as_attempt():
    result = verify(_otp(), "12ab", now=T0)
    assert result.outcome == OtpOutcome.BAD_FORMAT
    assert result.otp.failed_attempts == ()


@pytest.mark.parametrize("code", ["482913\n", "٤٨٢٩١٣", "４８２９１３"])
def test_non_ascii_or_padded_codes_are_bad_format(code):
    result = verify(_otp(), code, now=T0)
    assert result.outcome == OtpOutcome.BAD_FORMAT
    assert result.otp.failed_attempts == ()
    assert not result.state_changed


def test_lock_is_checked_before_used_flag():
    otp = _otp(used=True, lockout_until=T0 + timedelta(minutes=5))
    assert verify(otp, "482913", now=T0).outcome == OtpOutcome.LOCKED


def test_failed_attempts_json_roundtrip_keeps_window_count():
    otp = verify(_otp(), "111111", now=T0).otp
    restored = DeliveryOtp.parse_failed_attempts(otp.failed_attempts_json())
    assert recent_failed_attempts(_otp(failed_attempts=restored), T0 + timedelta(minutes=5)) == 1
    assert DeliveryOtp.parse_failed_attempts("[]") == ()
    assert DeliveryOtp.parse_failed_attempts(None) == ()
