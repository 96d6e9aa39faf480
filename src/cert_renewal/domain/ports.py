"""
Ports — Protocol-based interfaces for the renewal engine's collaborators.

These define WHAT the engine needs without saying HOW it is done. Following
hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (implementations)

Every port is async and returns Result[T]; adapters catch their own
exceptions at the boundary so nothing raises into the workflow.

Collaborators:
  1. IdentityProvider   → who is acting
  2. DocumentStore      → certificates and renewal applications
  3. ObjectStorage      → uploaded evidence files
  4. FeeScheduleSource  → the remote renewal-fee settings document
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from railway.result import Result

from cert_renewal.domain.models import CurrentUser, StoredBlob


@runtime_checkable
class IdentityProvider(Protocol):
    """
    Port: resolve the subject of the current session.

    Returns Result.failure(AUTHENTICATION_ERROR) when nobody is signed in.
    """

    async def get_current_user(self) -> Result[CurrentUser]: ...


@runtime_checkable
class DocumentStore(Protocol):
    """
    Port: schemaless document collections.

    Documents are plain dicts; the store adds an ``id`` key on reads.
    """

    async def get_documents(
        self, collection: str, filters: Mapping[str, Any]
    ) -> Result[list[dict[str, Any]]]:
        """Return every document whose fields equal all ``filters`` (may be empty list)."""
        ...

    async def add_document(
        self,
        collection: str,
        record: Mapping[str, Any],
        document_id: str | None = None,
    ) -> Result[str]:
        """Create a single document and return its id. Never overwrites."""
        ...

    async def update_document(
        self, collection: str, document_id: str, patch: Mapping[str, Any]
    ) -> Result[str]:
        """Shallow-merge ``patch`` into an existing document and return its id."""
        ...


@runtime_checkable
class ObjectStorage(Protocol):
    """
    Port: blob storage for uploaded files.

    ``put_blob`` returns a storage reference only after the write is
    confirmed; ``get_download_url`` turns that reference into a locator.
    """

    async def put_blob(
        self,
        path: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> Result[str]: ...

    async def get_download_url(self, ref: str) -> Result[str]: ...

    async def delete_blob(self, path: str) -> Result[str]:
        """Delete a blob and return its path. Deleting a missing blob succeeds."""
        ...

    async def list_blobs(self, prefix: str) -> Result[list[StoredBlob]]: ...


@runtime_checkable
class FeeScheduleSource(Protocol):
    """
    Port: the remote renewal-fee settings document.

    ``get_fee_schedule_settings`` returns the raw settings mapping keyed by
    certificate type; NOT_FOUND when no settings were ever saved.
    """

    async def get_fee_schedule_settings(self) -> Result[dict[str, Any]]: ...

    async def save_fee_schedule_settings(
        self, data: Mapping[str, Any]
    ) -> Result[dict[str, Any]]: ...
