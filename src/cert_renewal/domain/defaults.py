"""
Built-in fee table used when the remote settings document is unavailable.

Values are in KRW. Rates are fractions (0.1 == 10%).
"""

from __future__ import annotations

from decimal import Decimal
from types import MappingProxyType

from cert_renewal.domain.models import (
    EducationMode,
    FeeSchedule,
    FeeScheduleEntry,
    ScheduleOrigin,
)

CERT_TYPE_NAMES = MappingProxyType(
    {
        "health-exercise": "Health Exercise Specialist",
        "rehabilitation": "Exercise Rehabilitation Specialist",
        "pilates": "Pilates Specialist",
        "recreation": "Recreation Instructor",
    }
)


def cert_type_name(cert_type: str) -> str:
    return CERT_TYPE_NAMES.get(cert_type, cert_type)


def _entry(renewal: int, online: int, offline: int) -> FeeScheduleEntry:
    return FeeScheduleEntry(
        renewal_fee=renewal,
        delivery_fee=5000,
        education_fees=MappingProxyType(
            {
                EducationMode.ONLINE: online,
                EducationMode.OFFLINE: offline,
                EducationMode.ALREADY_COMPLETED: 0,
            }
        ),
        early_discount_rate=Decimal("0.1"),
        online_discount_rate=Decimal("0.2"),
    )


DEFAULT_FEE_SCHEDULE = FeeSchedule(
    entries=MappingProxyType(
        {
            "health-exercise": _entry(50000, online=80000, offline=100000),
            "rehabilitation": _entry(50000, online=96000, offline=120000),
            "pilates": _entry(40000, online=64000, offline=80000),
            "recreation": _entry(30000, online=56000, offline=70000),
        }
    ),
    origin=ScheduleOrigin.DEFAULT,
)
