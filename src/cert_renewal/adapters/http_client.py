"""
HTTP adapters — identity, fee settings and object storage via httpx.

Adapter layer — implements the IdentityProvider, FeeScheduleSource and
ObjectStorage ports using httpx.AsyncClient.

Endpoints:
  1. GET  {userinfo_url}                 → OpenID Connect claims (sub, email, name)
  2. GET  {fee_schedule_url}             → renewal-fee settings document
     PUT  {fee_schedule_url}             → replace the settings document
  3. PUT  {storage}/o/{path}             → upload a blob
     GET  {storage}/o/{path}?alt=url     → download locator
     DELETE {storage}/o/{path}           → delete a blob
     GET  {storage}/o?prefix={prefix}    → list blobs

Retry/backoff via tenacity on transient errors (network, timeout).
All HTTP errors are captured into Result failures — no exceptions
leak to the business logic layer.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any
from urllib.parse import quote

import httpx
import structlog
from railway import ErrorCode, FailureDescription, ResultFailures
from railway.result import Result
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cert_renewal.domain.models import CurrentUser, StoredBlob

log = structlog.get_logger()

_transient_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=0.1, max=30),
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
    reraise=True,
)


def _bearer(token: str | None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _status_of(error: FailureDescription) -> int | None:
    if isinstance(error.exception, httpx.HTTPStatusError):
        return error.exception.response.status_code
    return None


class HttpIdentityProvider:
    """
    Resolve the subject behind a bearer token via the userinfo endpoint.

    Implements the IdentityProvider port. 401/403 from the endpoint and a
    missing token both map to AUTHENTICATION_ERROR.
    """

    def __init__(self, userinfo_url: str, access_token: str | None, timeout: int = 30) -> None:
        self._userinfo_url = userinfo_url
        self._access_token = access_token
        self._timeout = timeout

    async def get_current_user(self) -> Result[CurrentUser]:
        if not self._access_token:
            return ResultFailures.authentication_error("No signed-in user")
        fetched = await Result.from_computation_async(
            self._fetch_claims,
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Userinfo request failed",
        )
        return fetched.map_failure(self._rejected_token).flat_map(self._to_user)

    @_transient_retry
    async def _fetch_claims(self) -> dict[str, Any]:
        """HTTP call with retry — exceptions caught by from_computation_async."""
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(self._userinfo_url, headers=_bearer(self._access_token))
            response.raise_for_status()
            claims: dict[str, Any] = response.json()
            return claims

    @staticmethod
    def _rejected_token(error: FailureDescription) -> FailureDescription:
        if _status_of(error) in (401, 403):
            return FailureDescription.create(
                ErrorCode.AUTHENTICATION_ERROR, "Access token was rejected", error.exception
            )
        return error

    @staticmethod
    def _to_user(claims: dict[str, Any]) -> Result[CurrentUser]:
        subject = claims.get("sub")
        if not subject:
            return ResultFailures.authentication_error("Userinfo response has no subject")
        user = CurrentUser(
            id=str(subject),
            email=str(claims.get("email", "")),
            display_name=str(claims.get("name", "")),
        )
        log.info("identity.resolved", user_id=user.id)
        return Result.success(user)


class HttpFeeScheduleSource:
    """
    Read and write the renewal-fee settings document.

    Implements the FeeScheduleSource port. A 404 means no settings were
    ever saved and is reported as NOT_FOUND.
    """

    def __init__(self, url: str, token: str | None = None, timeout: int = 30) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout

    async def get_fee_schedule_settings(self) -> Result[dict[str, Any]]:
        fetched = await Result.from_computation_async(
            self._get,
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Fee settings request failed",
        )
        return fetched.map_failure(self._missing_document).flat_map(self._require_object)

    async def save_fee_schedule_settings(self, data: Mapping[str, Any]) -> Result[dict[str, Any]]:
        return await Result.from_computation_async(
            lambda: self._put(data),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            "Fee settings update failed",
        )

    @_transient_retry
    async def _get(self) -> Any:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(self._url, headers=_bearer(self._token))
            response.raise_for_status()
            return response.json()

    @_transient_retry
    async def _put(self, data: Mapping[str, Any]) -> dict[str, Any]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.put(self._url, json=dict(data), headers=_bearer(self._token))
            response.raise_for_status()
            log.info("fee_settings.saved", url=self._url)
            return dict(data)

    @staticmethod
    def _missing_document(error: FailureDescription) -> FailureDescription:
        if _status_of(error) == 404:
            return FailureDescription.create(
                ErrorCode.NOT_FOUND, "No renewal fee settings have been saved", error.exception
            )
        return error

    @staticmethod
    def _require_object(payload: Any) -> Result[dict[str, Any]]:
        if not isinstance(payload, dict):
            return ResultFailures.validation_error("Fee settings document is not a JSON object")
        return Result.success(payload)


class HttpObjectStorage:
    """
    REST object storage for uploaded files.

    Implements the ObjectStorage port. Blob metadata travels as
    ``X-Object-Meta-*`` headers with percent-encoded values.
    """

    def __init__(self, base_url: str, token: str | None = None, timeout: int = 30) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout

    def _object_url(self, path: str) -> str:
        return f"{self._base_url}/o/{quote(path, safe='/')}"

    async def put_blob(
        self,
        path: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> Result[str]:
        return await Result.from_computation_async(
            lambda: self._put(path, content, content_type, metadata),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            f"Upload of {path} failed",
        )

    async def get_download_url(self, ref: str) -> Result[str]:
        return await Result.from_computation_async(
            lambda: self._download_url(ref),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            f"Download URL for {ref} could not be resolved",
        )

    async def delete_blob(self, path: str) -> Result[str]:
        return await Result.from_computation_async(
            lambda: self._delete(path),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            f"Delete of {path} failed",
        )

    async def list_blobs(self, prefix: str) -> Result[list[StoredBlob]]:
        return await Result.from_computation_async(
            lambda: self._list(prefix),
            ErrorCode.EXTERNAL_SERVICE_ERROR,
            f"Listing of {prefix} failed",
        )

    @_transient_retry
    async def _put(
        self,
        path: str,
        content: bytes,
        content_type: str,
        metadata: Mapping[str, str],
    ) -> str:
        headers = {
            **_bearer(self._token),
            "Content-Type": content_type,
            **{f"X-Object-Meta-{key}": quote(value) for key, value in metadata.items()},
        }
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.put(self._object_url(path), content=content, headers=headers)
            response.raise_for_status()
            log.info("storage.put", path=path, size_bytes=len(content))
            return path

    @_transient_retry
    async def _download_url(self, ref: str) -> str:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(
                self._object_url(ref), params={"alt": "url"}, headers=_bearer(self._token)
            )
            response.raise_for_status()
            url: str = response.json()["url"]
            return url

    @_transient_retry
    async def _delete(self, path: str) -> str:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.delete(self._object_url(path), headers=_bearer(self._token))
            if response.status_code != 404:
                response.raise_for_status()
            log.info("storage.deleted", path=path, existed=response.status_code != 404)
            return path

    @_transient_retry
    async def _list(self, prefix: str) -> list[StoredBlob]:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.get(
                f"{self._base_url}/o", params={"prefix": prefix}, headers=_bearer(self._token)
            )
            response.raise_for_status()
            return [
                StoredBlob(path=item["path"], updated_at=_parse_timestamp(item["updated_at"]))
                for item in response.json().get("items", [])
            ]
