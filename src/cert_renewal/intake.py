"""
File intake — validation, upload and rollback of renewal evidence.

Validation runs before any network call:
  - size ≤ 5 MiB
  - MIME type in {PDF, JPEG, PNG}
  - filename free of  < > : " / \\ | ? *
  - at most 5 evidence files per batch; a larger batch is rejected whole

Uploads for one submission fan out concurrently and are joined before the
caller continues. If any upload fails, every upload that did succeed is
deleted before the failure is returned.

Blob layout:
  renewal-applications/{application_id}/{role}/{index}-{filename}
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

import structlog
from railway import ErrorCode, ResultFailures
from railway.result import Result

from cert_renewal.config import IntakeSettings
from cert_renewal.domain.models import (
    CandidateFile,
    CurrentUser,
    FileRole,
    StagedFile,
    UploadedFile,
)
from cert_renewal.domain.ports import ObjectStorage

log = structlog.get_logger()

UPLOAD_ROOT = "renewal-applications"

_FORBIDDEN_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')


def application_namespace(application_id: str) -> str:
    return f"{UPLOAD_ROOT}/{application_id}/"


def blob_path(application_id: str, role: FileRole, index: int, filename: str) -> str:
    return f"{application_namespace(application_id)}{role.value}/{index}-{filename}"


class FileIntake:
    """Validates candidate files and moves accepted ones into object storage."""

    def __init__(self, storage: ObjectStorage, settings: IntakeSettings | None = None) -> None:
        self._storage = storage
        self._settings = settings or IntakeSettings()

    @property
    def max_evidence_files(self) -> int:
        return self._settings.max_evidence_files

    # ─────────────────────── Validation ───────────────────────

    def validate(self, file: CandidateFile) -> Result[CandidateFile]:
        """Accept the file or reject it with a reason."""
        reason = self._rejection_reason(file)
        if reason is not None:
            return ResultFailures.validation_error(
                f"{file.name or '<unnamed>'}: {reason}", {file.name or "file": reason}
            )
        return Result.success(file)

    def validate_batch(
        self,
        files: Sequence[CandidateFile],
        minimum: int = 1,
    ) -> Result[list[CandidateFile]]:
        """
        Validate an evidence batch as a unit.

        Over the cap → one explicit error, nothing truncated. Any invalid
        file → the batch is rejected with one detail entry per bad file.
        """
        if len(files) > self._settings.max_evidence_files:
            return ResultFailures.validation_error(
                f"At most {self._settings.max_evidence_files} evidence files may be "
                f"attached, got {len(files)}",
                {"evidence": "Too many files"},
            )
        if len(files) < minimum:
            return ResultFailures.validation_error(
                "At least one continuing-education evidence file is required",
                {"evidence": "Required"},
            )
        problems = {
            file.name or f"file-{i}": reason
            for i, file in enumerate(files)
            if (reason := self._rejection_reason(file)) is not None
        }
        if problems:
            return ResultFailures.validation_error(
                f"{len(problems)} of {len(files)} evidence files were rejected", problems
            )
        return Result.success(list(files))

    def _rejection_reason(self, file: CandidateFile) -> str | None:
        if not file.name.strip():
            return "File name is empty"
        if _FORBIDDEN_NAME_CHARS.search(file.name):
            return 'File name must not contain any of < > : " / \\ | ? *'
        if file.size > self._settings.max_file_size_bytes:
            limit_mib = self._settings.max_file_size_bytes / (1024 * 1024)
            return f"File is larger than {limit_mib:g} MiB"
        if file.content_type not in self._settings.allowed_content_types:
            return "Only PDF, JPG and PNG files are accepted"
        return None

    # ─────────────────────── Upload ───────────────────────

    async def upload(
        self,
        file: CandidateFile,
        application_id: str,
        uploader: CurrentUser,
        role: FileRole = FileRole.EVIDENCE,
        index: int = 0,
    ) -> Result[UploadedFile]:
        """
        Store one file under the application's namespace.

        The reference is returned only after the store confirmed the write
        and produced a download URL.
        """
        path = blob_path(application_id, role, index, file.name)
        metadata = {
            "uploaded_by": uploader.id,
            "uploaded_at": datetime.now(UTC).isoformat(),
            "original_name": file.name,
            "content_type": file.content_type,
        }
        stored = await self._storage.put_blob(path, file.content, file.content_type, metadata)
        result = (await stored.flat_map_async(self._storage.get_download_url)).map(
            lambda url: UploadedFile(
                name=file.name,
                size=file.size,
                content_type=file.content_type,
                role=role,
                path=path,
                download_url=url,
            )
        )
        if result.is_success():
            log.info("intake.uploaded", path=path, size_bytes=file.size)
        elif stored.is_success():
            # The blob exists even though no locator could be produced.
            await self._delete_quietly([path])
        return result

    async def upload_all(
        self,
        staged: Sequence[StagedFile],
        application_id: str,
        uploader: CurrentUser,
    ) -> Result[list[UploadedFile]]:
        """
        Upload every staged file concurrently and join the results.

        Already-issued uploads are allowed to finish; if any of them failed,
        the successful ones are rolled back and the first failure returned.
        """
        results = await asyncio.gather(
            *(
                self.upload(item.file, application_id, uploader, item.role, index)
                for index, item in enumerate(staged)
            )
        )
        combined = Result.all_of(results)
        if combined.is_failure():
            written = [r.value().path for r in results if r.is_success()]
            log.warning(
                "intake.batch_failed",
                application_id=application_id,
                failed=sum(1 for r in results if r.is_failure()),
                written=len(written),
                error=str(combined.error()),
            )
            await self.rollback(application_id, written)
        return combined

    # ─────────────────────── Rollback ───────────────────────

    async def rollback(
        self,
        application_id: str,
        known_paths: Iterable[str] = (),
    ) -> Result[int]:
        """
        Delete every blob written under the application's namespace.

        The namespace listing is unioned with ``known_paths`` so a failed
        listing still removes what this process wrote. Returns the number of
        deleted blobs; any blob that could not be deleted is logged as
        orphaned and turns the result into a failure.
        """
        paths = set(known_paths)
        listed = await self._storage.list_blobs(application_namespace(application_id))
        if listed.is_success():
            paths.update(blob.path for blob in listed.value())
        else:
            log.warning(
                "intake.rollback_listing_failed",
                application_id=application_id,
                error=str(listed.error()),
            )

        orphaned = await self._delete_quietly(sorted(paths))
        if orphaned:
            log.error(
                "intake.rollback_incomplete",
                application_id=application_id,
                orphaned_paths=orphaned,
            )
            return Result.failure(
                ErrorCode.EXTERNAL_SERVICE_ERROR,
                f"Rollback left {len(orphaned)} orphaned file(s) for application {application_id}",
                details={path: "not deleted" for path in orphaned},
            )
        log.info("intake.rolled_back", application_id=application_id, deleted=len(paths))
        return Result.success(len(paths))

    async def _delete_quietly(self, paths: Sequence[str]) -> list[str]:
        """Delete ``paths`` concurrently and return the ones that failed."""
        results = await asyncio.gather(*(self._storage.delete_blob(p) for p in paths))
        return [path for path, r in zip(paths, results) if r.is_failure()]
