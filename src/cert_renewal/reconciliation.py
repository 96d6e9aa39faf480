"""
Orphaned-upload reconciliation.

Submission uploads files first and writes the application record second.
A process killed in between leaves blobs under
``renewal-applications/{application_id}/`` that no record references.

The sweep groups blobs by application id and deletes a group only when
  - its newest blob is older than the grace period, and
  - no document in ``applications`` carries that application id.

The grace period keeps the sweep away from submissions still in flight.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog
from railway.result import Result

from cert_renewal.domain.models import StoredBlob
from cert_renewal.domain.ports import DocumentStore, ObjectStorage
from cert_renewal.intake import UPLOAD_ROOT, FileIntake
from cert_renewal.persister import APPLICATIONS_COLLECTION

log = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class ReconciliationReport:
    """Outcome of one sweep."""

    scanned_applications: int
    deleted_applications: tuple[str, ...] = ()
    deleted_blobs: int = 0
    failed_applications: tuple[str, ...] = field(default=())

    @property
    def clean(self) -> bool:
        return not self.failed_applications


def _group_by_application(blobs: list[StoredBlob]) -> dict[str, list[StoredBlob]]:
    groups: dict[str, list[StoredBlob]] = defaultdict(list)
    prefix = f"{UPLOAD_ROOT}/"
    for blob in blobs:
        if not blob.path.startswith(prefix):
            continue
        application_id = blob.path[len(prefix):].split("/", 1)[0]
        if application_id:
            groups[application_id].append(blob)
    return groups


async def reconcile_orphaned_uploads(
    storage: ObjectStorage,
    documents: DocumentStore,
    now: datetime,
    grace_period: timedelta = timedelta(hours=24),
) -> Result[ReconciliationReport]:
    """Delete upload groups older than ``grace_period`` that have no application record."""
    listed = await storage.list_blobs(f"{UPLOAD_ROOT}/")
    if listed.is_failure():
        return Result.failure_from(listed.error())

    groups = _group_by_application(listed.value())
    intake = FileIntake(storage)
    cutoff = now - grace_period
    deleted: list[str] = []
    failed: list[str] = []
    deleted_blobs = 0

    for application_id, blobs in sorted(groups.items()):
        if max(b.updated_at for b in blobs) > cutoff:
            continue
        existing = await documents.get_documents(
            APPLICATIONS_COLLECTION, {"application_id": application_id}
        )
        if existing.is_failure():
            # Without an answer from the store nothing is provably orphaned.
            log.warning(
                "reconciliation.lookup_failed",
                application_id=application_id,
                error=str(existing.error()),
            )
            failed.append(application_id)
            continue
        if existing.value():
            continue

        removed = await intake.rollback(application_id, [b.path for b in blobs])
        if removed.is_failure():
            failed.append(application_id)
            continue
        deleted.append(application_id)
        deleted_blobs += removed.value()

    report = ReconciliationReport(
        scanned_applications=len(groups),
        deleted_applications=tuple(deleted),
        deleted_blobs=deleted_blobs,
        failed_applications=tuple(failed),
    )
    log.info(
        "reconciliation.completed",
        scanned=report.scanned_applications,
        deleted=len(report.deleted_applications),
        deleted_blobs=report.deleted_blobs,
        failed=len(report.failed_applications),
    )
    return Result.success(report)
