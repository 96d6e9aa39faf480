"""
Renewal application persister — uploads, then a single record write.

    generate id → upload_all(staged files) → assemble record → add_document
                        │ Failure                                 │ Failure
                        └→ uploads rolled back                    └→ rollback(id) → Failure

No document is written unless every upload succeeded, and the record is
written exactly once. A process killed between the uploads and the write
leaves blobs with no record; the reconciliation sweep collects those.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, datetime

import structlog
from railway import ResultFailures
from railway.result import Result

from cert_renewal.domain.defaults import cert_type_name
from cert_renewal.domain.models import (
    CurrentUser,
    RenewalApplication,
    RenewalDraft,
    UploadedFile,
)
from cert_renewal.domain.ports import DocumentStore
from cert_renewal.intake import FileIntake

log = structlog.get_logger()

APPLICATIONS_COLLECTION = "applications"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def new_application_id() -> str:
    return uuid.uuid4().hex


class RenewalApplicationPersister:
    """Turns a reviewed draft into a stored application record."""

    def __init__(
        self,
        intake: FileIntake,
        documents: DocumentStore,
        clock: Callable[[], datetime] = _utcnow,
        id_factory: Callable[[], str] = new_application_id,
    ) -> None:
        self._intake = intake
        self._documents = documents
        self._clock = clock
        self._id_factory = id_factory

    async def submit(self, draft: RenewalDraft, subject: CurrentUser) -> Result[str]:
        """Persist ``draft`` for ``subject`` and return the new application id."""
        if (
            draft.education_mode is None
            or draft.delivery_mode is None
            or draft.recipient is None
            or draft.fees is None
        ):
            return ResultFailures.validation_error("Renewal draft is incomplete")

        application_id = self._id_factory()
        bound = log.bind(application_id=application_id, certificate_id=draft.certificate.id)
        bound.info("persister.submit_started", files=len(draft.staged_files))

        uploaded = await self._intake.upload_all(draft.staged_files, application_id, subject)
        if uploaded.is_failure():
            bound.warning("persister.upload_failed", error=str(uploaded.error()))
            return Result.failure_from(uploaded.error())

        application = self._assemble(application_id, draft, subject, uploaded.value())
        written = await self._documents.add_document(
            APPLICATIONS_COLLECTION, application.to_document(), document_id=application_id
        )
        if written.is_failure():
            bound.error("persister.write_failed", error=str(written.error()))
            await self._intake.rollback(application_id, [f.path for f in uploaded.value()])
            return Result.failure_from(written.error())

        bound.info(
            "persister.submitted",
            total_amount=application.fees.total_amount,
            status=application.status.value,
        )
        return Result.success(application_id)

    def _assemble(
        self,
        application_id: str,
        draft: RenewalDraft,
        subject: CurrentUser,
        files: list[UploadedFile],
    ) -> RenewalApplication:
        certificate = draft.certificate
        return RenewalApplication(
            id=application_id,
            user_id=subject.id,
            user_email=subject.email,
            certificate_id=certificate.id,
            cert_type=certificate.cert_type,
            cert_name=certificate.cert_name or cert_type_name(certificate.cert_type),
            certificate_number=certificate.certificate_number,
            education_mode=draft.education_mode,  # type: ignore[arg-type]
            delivery_mode=draft.delivery_mode,  # type: ignore[arg-type]
            recipient=draft.recipient,  # type: ignore[arg-type]
            fees=draft.fees,  # type: ignore[arg-type]
            files=tuple(files),
            created_at=self._clock(),
        )
