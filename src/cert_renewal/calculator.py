"""
Renewal fee calculator — pure functions, no I/O.

    renewal + education + delivery  = subtotal
    subtotal - Σ(applicable discounts) = total   (clamped at 0)

Discounts are additive, never compounded:
  - early renewal: days until expiry >= 60 → renewal_fee × early rate
  - online education: education mode is online → education_fee × online rate

Each discount amount is rounded half-up to whole currency units before
summing. The schedule is passed in as a snapshot, so a refresh running
concurrently can never change the numbers mid-calculation.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from railway import ErrorCode
from railway.result import Result

from cert_renewal.domain.models import (
    AppliedDiscount,
    Certificate,
    DeliveryMode,
    DiscountKind,
    EducationMode,
    FeeBreakdown,
    FeeSchedule,
    FeeScheduleEntry,
)

EARLY_RENEWAL_DAYS = 60
RENEWAL_WINDOW_DAYS = 90

_ONE_DAY = timedelta(days=1)


def days_until_expiry(expires_at: datetime, now: datetime) -> int:
    """Whole days until expiry, rounded up. Negative once expired."""
    return math.ceil((expires_at - now) / _ONE_DAY)


def is_renewal_due(
    certificate: Certificate,
    now: datetime,
    window_days: int = RENEWAL_WINDOW_DAYS,
) -> bool:
    """True when the certificate expires within the window or already has."""
    return (
        certificate.status.renewable
        and days_until_expiry(certificate.expires_at, now) <= window_days
    )


def round_half_up(amount: Decimal) -> int:
    return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _percent(rate: Decimal) -> int:
    return round_half_up(rate * 100)


def compute_fees(
    schedule: FeeSchedule,
    cert_type: str,
    education_mode: EducationMode,
    delivery_mode: DeliveryMode,
    expires_at: datetime,
    now: datetime,
    early_renewal_days: int = EARLY_RENEWAL_DAYS,
) -> Result[FeeBreakdown]:
    """
    Compute the renewal fee breakdown for one certificate.

    Returns NOT_FOUND when the schedule has no entry for ``cert_type`` and
    VALIDATION_ERROR when the entry has no fee for ``education_mode``.
    """
    entry = schedule.entries.get(cert_type)
    if entry is None:
        return Result.failure(
            ErrorCode.NOT_FOUND,
            f"No renewal fee schedule for certificate type {cert_type!r}",
        )
    education_fee = entry.education_fees.get(education_mode)
    if education_fee is None:
        return Result.failure(
            ErrorCode.VALIDATION_ERROR,
            f"Unknown education mode {education_mode!r} for {cert_type!r}",
            details={"education_mode": "Unsupported education mode"},
        )
    return Result.success(
        _breakdown(entry, cert_type, education_mode, education_fee, delivery_mode,
                   expires_at, now, early_renewal_days)
    )


def _breakdown(
    entry: FeeScheduleEntry,
    cert_type: str,
    education_mode: EducationMode,
    education_fee: int,
    delivery_mode: DeliveryMode,
    expires_at: datetime,
    now: datetime,
    early_renewal_days: int,
) -> FeeBreakdown:
    renewal_fee = entry.renewal_fee
    delivery_fee = entry.delivery_fee if delivery_mode is DeliveryMode.BOTH else 0
    days_left = days_until_expiry(expires_at, now)

    discounts: list[AppliedDiscount] = []
    if days_left >= early_renewal_days:
        rate = entry.early_discount_rate
        discounts.append(
            AppliedDiscount(
                kind=DiscountKind.EARLY_RENEWAL,
                rate=rate,
                amount=round_half_up(renewal_fee * rate),
                reason=(
                    f"Early renewal discount ({_percent(rate)}% of renewal fee, "
                    f"{days_left} days before expiry)"
                ),
            )
        )
    if education_mode is EducationMode.ONLINE:
        rate = entry.online_discount_rate
        discounts.append(
            AppliedDiscount(
                kind=DiscountKind.ONLINE_EDUCATION,
                rate=rate,
                amount=round_half_up(education_fee * rate),
                reason=f"Online education discount ({_percent(rate)}% of education fee)",
            )
        )

    discount_amount = sum(d.amount for d in discounts)
    subtotal = renewal_fee + education_fee + delivery_fee
    return FeeBreakdown(
        cert_type=cert_type,
        renewal_fee=renewal_fee,
        education_fee=education_fee,
        delivery_fee=delivery_fee,
        discount_amount=discount_amount,
        total_amount=max(0, subtotal - discount_amount),
        days_until_expiry=days_left,
        calculated_at=now,
        discounts=tuple(discounts),
    )
