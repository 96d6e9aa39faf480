"""
Fee schedule provider — resolves, caches and refreshes renewal fees.

The remote settings document is validated with pydantic before it is
trusted. Anything going wrong on the way (transport failure, no document,
malformed payload) is logged and the built-in default table is served
instead, flagged ScheduleOrigin.DEFAULT so the UI can say so.

The cache belongs to the provider instance, which belongs to one
RenewalSession. Components read ``provider.current`` and see a refreshed
schedule as soon as the refresh resolves; a calculation already running
keeps the snapshot it was handed.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal
from types import MappingProxyType
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from railway import ErrorCode
from railway.result import Result

from cert_renewal.domain.defaults import DEFAULT_FEE_SCHEDULE
from cert_renewal.domain.models import (
    EducationMode,
    FeeSchedule,
    FeeScheduleEntry,
    ScheduleOrigin,
)
from cert_renewal.domain.ports import FeeScheduleSource

log = structlog.get_logger()

SETTINGS_VERSION = "1.0"

# Keys stored next to the entries in the settings document.
_METADATA_KEYS = frozenset({"lastUpdated", "updatedBy", "version"})

# The settings document historically used "completed".
_EDUCATION_ALIASES = {"completed": EducationMode.ALREADY_COMPLETED.value}


class _EntryPayload(BaseModel):
    """Shape of one certificate type in the settings document."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    renewal: int = Field(ge=0)
    delivery_fee: int = Field(default=0, ge=0, alias="deliveryFee")
    education: dict[EducationMode, int]
    early_discount_rate: Decimal = Field(default=Decimal(0), ge=0, alias="earlyDiscountRate")
    online_discount_rate: Decimal = Field(default=Decimal(0), ge=0, alias="onlineDiscountRate")

    @field_validator("education", mode="before")
    @classmethod
    def normalize_modes(cls, value: Any) -> Any:
        if isinstance(value, Mapping):
            return {_EDUCATION_ALIASES.get(k, k): v for k, v in value.items()}
        return value

    @field_validator("education")
    @classmethod
    def fees_not_negative(cls, value: dict[EducationMode, int]) -> dict[EducationMode, int]:
        negative = [mode.value for mode, fee in value.items() if fee < 0]
        if negative:
            raise ValueError(f"Education fees must be non-negative: {', '.join(negative)}")
        return value

    def to_entry(self) -> FeeScheduleEntry:
        return FeeScheduleEntry(
            renewal_fee=self.renewal,
            delivery_fee=self.delivery_fee,
            education_fees=MappingProxyType(dict(self.education)),
            early_discount_rate=self.early_discount_rate,
            online_discount_rate=self.online_discount_rate,
        )


def parse_fee_schedule(data: Mapping[str, Any]) -> Result[FeeSchedule]:
    """
    Validate a raw settings document into a FeeSchedule.

    Metadata keys are skipped. An empty document is a failure: a schedule
    with no entries would make every calculation fail.
    """
    entries: dict[str, FeeScheduleEntry] = {}
    for cert_type, raw in data.items():
        if cert_type in _METADATA_KEYS:
            continue
        try:
            entries[cert_type] = _EntryPayload.model_validate(raw).to_entry()
        except ValidationError as e:
            return Result.failure(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid fee settings for {cert_type!r}",
                e,
                details={cert_type: str(e.errors()[0]["msg"])},
            )
    if not entries:
        return Result.failure(ErrorCode.VALIDATION_ERROR, "Fee settings contain no certificate types")
    return Result.success(FeeSchedule(entries=MappingProxyType(entries), origin=ScheduleOrigin.REMOTE))


class FeeScheduleProvider:
    """
    Session-scoped fee schedule cache.

    ``load`` fetches once; ``refresh`` always fetches. Neither fails: the
    default table stands in for any remote problem.
    """

    def __init__(
        self,
        source: FeeScheduleSource,
        default: FeeSchedule = DEFAULT_FEE_SCHEDULE,
    ) -> None:
        self._source = source
        self._default = default
        self._current: FeeSchedule | None = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> FeeSchedule:
        """The cached schedule, or the default table before the first load."""
        return self._current if self._current is not None else self._default

    @property
    def loaded(self) -> bool:
        return self._current is not None

    async def load(self) -> FeeSchedule:
        """Return the cached schedule, fetching it on first use."""
        if self._current is not None:
            return self._current
        async with self._lock:
            if self._current is None:
                self._current = await self._fetch()
            return self._current

    async def refresh(self) -> FeeSchedule:
        """Fetch the remote schedule again and replace the cache."""
        async with self._lock:
            self._current = await self._fetch()
            return self._current

    def entry_for(self, cert_type: str) -> Result[FeeScheduleEntry]:
        return Result.from_optional(
            self.current.entries.get(cert_type),
            f"No renewal fee schedule for certificate type {cert_type!r}",
            ErrorCode.NOT_FOUND,
        )

    async def save(self, schedule: FeeSchedule, updated_by: str) -> Result[FeeSchedule]:
        """
        Write a schedule to the remote settings document and cache it.

        The stored document carries lastUpdated, updatedBy and version
        alongside the entries.
        """
        document = {
            **schedule.to_settings(),
            "lastUpdated": datetime.now(UTC).isoformat(),
            "updatedBy": updated_by or "admin",
            "version": SETTINGS_VERSION,
        }
        result = await self._source.save_fee_schedule_settings(document)
        if result.is_failure():
            log.error("fee_schedule.save_failed", error=str(result.error()))
            return Result.failure_from(result.error())
        async with self._lock:
            self._current = FeeSchedule(entries=schedule.entries, origin=ScheduleOrigin.REMOTE)
            log.info(
                "fee_schedule.saved",
                cert_types=sorted(schedule.entries),
                updated_by=document["updatedBy"],
            )
            return Result.success(self._current)

    async def _fetch(self) -> FeeSchedule:
        fetched = await Result.from_computation_async(
            self._source.get_fee_schedule_settings,
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Fee settings source crashed",
        )
        result = fetched.flat_map(lambda inner: inner).flat_map(parse_fee_schedule)
        if result.is_failure():
            log.warning(
                "fee_schedule.fallback",
                reason=str(result.error()),
                origin=ScheduleOrigin.DEFAULT.value,
            )
            return self._default
        schedule = result.value()
        log.info(
            "fee_schedule.loaded",
            origin=schedule.origin.value,
            cert_types=sorted(schedule.entries),
        )
        return schedule
