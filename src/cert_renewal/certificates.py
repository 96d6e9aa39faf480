"""
Certificate directory — read-only view of a subject's issued certificates.

Certificates live in the ``certificates`` collection of the document store.
Records written by older tooling use camelCase keys (certType, expiryDate,
...); both spellings are accepted. Records that fail validation are logged
and skipped rather than failing the whole listing.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from railway import ErrorCode, ResultFailures
from railway.result import Result

from cert_renewal.calculator import RENEWAL_WINDOW_DAYS, is_renewal_due
from cert_renewal.domain.defaults import cert_type_name
from cert_renewal.domain.models import Certificate, CertificateStatus, CurrentUser
from cert_renewal.domain.ports import DocumentStore

log = structlog.get_logger()

CERTIFICATES_COLLECTION = "certificates"

_HOLDER_KEYS = ("user_id", "userId")


def _unique_by_id(batches: list[list[dict[str, Any]]]) -> list[dict[str, Any]]:
    seen: dict[str, dict[str, Any]] = {}
    for batch in batches:
        for record in batch:
            seen.setdefault(str(record.get("id")), record)
    return list(seen.values())


class _CertificateRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"))
    cert_type: str = Field(
        validation_alias=AliasChoices("cert_type", "certType", "certificateType")
    )
    cert_name: str = Field(
        default="", validation_alias=AliasChoices("cert_name", "certName", "certificateName")
    )
    certificate_number: str = Field(
        default="", validation_alias=AliasChoices("certificate_number", "certificateNumber")
    )
    issued_at: datetime = Field(validation_alias=AliasChoices("issued_at", "issueDate"))
    expires_at: datetime = Field(validation_alias=AliasChoices("expires_at", "expiryDate"))
    status: CertificateStatus = CertificateStatus.ACTIVE

    @field_validator("issued_at", "expires_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    def to_certificate(self) -> Certificate:
        return Certificate(
            id=self.id,
            user_id=self.user_id,
            cert_type=self.cert_type,
            cert_name=self.cert_name or cert_type_name(self.cert_type),
            certificate_number=self.certificate_number,
            issued_at=self.issued_at,
            expires_at=self.expires_at,
            status=self.status,
        )


def parse_certificate(record: dict[str, Any]) -> Result[Certificate]:
    try:
        return Result.success(_CertificateRecord.model_validate(record).to_certificate())
    except ValidationError as e:
        return ResultFailures.validation_error(
            f"Malformed certificate record {record.get('id', '<no id>')}: {e.error_count()} error(s)"
        )


class CertificateDirectory:
    def __init__(self, documents: DocumentStore) -> None:
        self._documents = documents

    async def list_for(self, user: CurrentUser) -> Result[list[Certificate]]:
        """
        All certificates held by ``user``, soonest expiry first.

        Legacy records name the holder ``userId``, so both keys are queried.
        """
        fetched = Result.all_of(
            [
                await self._documents.get_documents(CERTIFICATES_COLLECTION, {key: user.id})
                for key in _HOLDER_KEYS
            ]
        )
        return fetched.map(lambda batches: self._parse_all(_unique_by_id(batches)))

    async def get(self, user: CurrentUser, certificate_id: str) -> Result[Certificate]:
        """
        One certificate held by ``user``.

        A certificate held by someone else is reported as NOT_FOUND.
        """
        listed = await self.list_for(user)
        return listed.flat_map(
            lambda certificates: Result.from_optional(
                next((c for c in certificates if c.id == certificate_id), None),
                f"Certificate not found with identifier: {certificate_id}",
                ErrorCode.NOT_FOUND,
            )
        )

    async def renewable_for(
        self,
        user: CurrentUser,
        now: datetime,
        window_days: int = RENEWAL_WINDOW_DAYS,
    ) -> Result[list[Certificate]]:
        """Certificates of ``user`` expiring within the window or already expired."""
        listed = await self.list_for(user)
        return listed.map(
            lambda certificates: [c for c in certificates if is_renewal_due(c, now, window_days)]
        )

    @staticmethod
    def _parse_all(records: list[dict[str, Any]]) -> list[Certificate]:
        certificates: list[Certificate] = []
        for record in records:
            parsed = parse_certificate(record)
            if parsed.is_failure():
                log.warning("certificates.malformed_record", error=parsed.error().message)
                continue
            certificates.append(parsed.value())
        return sorted(certificates, key=lambda c: c.expires_at)
