"""
FastAPI + Uvicorn ASGI application — the renewal workflow over HTTP.

Each request carries a bearer token. The token is resolved to a subject
through the identity userinfo endpoint, and the subject's RenewalSession
handles the intent. Failures are rendered with railway.http_support, so
ErrorCode decides the HTTP status (VALIDATION_ERROR → 400, wrong step →
409, ...).

When RECONCILIATION__ENABLED is set, the orphaned-upload sweep runs in a
background scheduler thread next to the web server.

Entry point for production: uvicorn cert_renewal.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, Any

import structlog
from fastapi import Depends, FastAPI, File, Header, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from railway import ErrorCode
from railway.http_support import build_fastapi_response
from railway.result import Result

from cert_renewal import __version__
from cert_renewal.config import AppSettings
from cert_renewal.domain.models import (
    CandidateFile,
    Certificate,
    DeliveryMode,
    EducationMode,
    FeeBreakdown,
    FeeSchedule,
    RecipientInfo,
    RenewalDraft,
    SubmissionReceipt,
)
from cert_renewal.main import RenewalServices, _create_adapters, build_services, configure_structlog
from cert_renewal.scheduler import create_scheduler
from cert_renewal.session import RenewalSession

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager — runs on startup and shutdown.

    Startup: load settings, create adapters, ensure the documents table and
    optionally start the sweep scheduler in a background thread.
    Shutdown: stop the scheduler and join its thread.
    """
    log.info("asgi.startup", event="lifespan_startup")

    try:
        settings = AppSettings()
    except Exception as e:
        app.state.error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=app.state.error_message)
        raise

    configure_structlog(settings.log_level)
    documents, storage, fee_source = _create_adapters(settings)
    schema = await documents.ensure_schema()
    if schema.is_failure():
        app.state.error_message = str(schema.error())
        log.error("asgi.schema_failed", error=app.state.error_message)

    app.state.services = build_services(settings, documents, storage, fee_source)

    scheduler = None
    if settings.reconciliation.enabled:
        scheduler = create_scheduler(
            sweep_fn=app.state.services.sweep,
            cron=settings.reconciliation.cron,
            handle_signals=False,
        )
        thread = threading.Thread(target=scheduler.start, daemon=True)
        thread.start()
        app.state.scheduler_thread = thread

    log.info(
        "asgi.startup_complete",
        version=__version__,
        reconciliation_enabled=settings.reconciliation.enabled,
    )

    yield

    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    if scheduler is not None:
        try:
            scheduler.shutdown(wait=True)
        except Exception as e:
            log.warning("asgi.scheduler_shutdown_error", error=str(e))
        app.state.scheduler_thread.join(timeout=5.0)
    log.info("asgi.shutdown_complete")


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="cert-renewal",
    description="Certificate renewal workflow — fees, intake, files and submission",
    version=__version__,
    lifespan=lifespan,
)
app.state.services = None
app.state.error_message = None
app.state.scheduler_thread = None


# ─────────────────────── Request bodies ───────────────────────


class RecipientPayload(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    cpe_hours: int = Field(default=0, ge=0)
    agreed_to_terms: bool = False
    zipcode: str = ""
    address1: str = ""
    address2: str = ""

    def to_recipient(self) -> RecipientInfo:
        return RecipientInfo(**self.model_dump())


class OptionsRequest(BaseModel):
    education_mode: EducationMode
    delivery_mode: DeliveryMode
    recipient: RecipientPayload


class SubmitRequest(BaseModel):
    confirmed: bool = False


# ─────────────────────── Serializers ───────────────────────


def _certificate_body(certificate: Certificate) -> dict[str, Any]:
    return {
        "id": certificate.id,
        "cert_type": certificate.cert_type,
        "cert_name": certificate.cert_name,
        "certificate_number": certificate.certificate_number,
        "issued_at": certificate.issued_at.isoformat(),
        "expires_at": certificate.expires_at.isoformat(),
        "status": certificate.status.value,
    }


def _fees_body(fees: FeeBreakdown) -> dict[str, Any]:
    return fees.to_document()


def _draft_body(draft: RenewalDraft) -> dict[str, Any]:
    return {
        "step": draft.step.value,
        "progress": draft.progress,
        "certificate": _certificate_body(draft.certificate),
        "education_mode": draft.education_mode.value if draft.education_mode else None,
        "delivery_mode": draft.delivery_mode.value if draft.delivery_mode else None,
        "fees": _fees_body(draft.fees) if draft.fees else None,
        "fees_frozen": draft.fees_frozen,
        "files": [
            {"name": s.file.name, "size": s.file.size, "role": s.role.value}
            for s in draft.staged_files
        ],
    }


def _session_body(session: RenewalSession) -> dict[str, Any]:
    draft = session.draft
    receipt = session.receipt
    return {
        "step": session.step.value,
        "progress": session.progress,
        "draft": _draft_body(draft) if draft is not None else None,
        "receipt": _receipt_body(receipt) if receipt is not None else None,
        "schedule_origin": session.fee_schedule.origin.value,
    }


def _receipt_body(receipt: SubmissionReceipt) -> dict[str, Any]:
    return {
        "application_id": receipt.application_id,
        "product": receipt.product,
        "total_amount": receipt.total_amount,
    }


def _schedule_body(schedule: FeeSchedule) -> dict[str, Any]:
    return {"origin": schedule.origin.value, "entries": schedule.to_settings()}


# ─────────────────────── Dependencies ───────────────────────


def _services(request: Request) -> RenewalServices | None:
    return request.app.state.services


def _bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def _resolve_session(
    request: Request,
    authorization: Annotated[str | None, Header()] = None,
) -> Result[RenewalSession]:
    services = _services(request)
    if services is None:
        return Result.failure(ErrorCode.CONFIGURATION_ERROR, "Service is not initialized")
    user = await services.resolve_user(_bearer_token(authorization))
    return user.map(services.session_for)


SessionResult = Annotated[Result[RenewalSession], Depends(_resolve_session)]


# ─────────────────────── Probes ───────────────────────


@app.get("/health")
async def health(request: Request) -> JSONResponse:
    """
    Kubernetes liveness probe.

    Returns 503 when startup failed or an enabled scheduler thread died.
    """
    error_message = request.app.state.error_message
    if error_message:
        log.warning("health.check_failed", error=error_message)
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": error_message})

    thread = request.app.state.scheduler_thread
    if thread is not None and not thread.is_alive():
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "reason": "scheduler thread not running"},
        )
    return JSONResponse(status_code=200, content={"status": "healthy"})


@app.get("/ready")
async def ready(request: Request) -> JSONResponse:
    """Kubernetes readiness probe — ready once adapters are wired."""
    if request.app.state.error_message:
        return JSONResponse(
            status_code=503,
            content={"status": "error", "error": request.app.state.error_message},
        )
    if request.app.state.services is None:
        return JSONResponse(status_code=202, content={"status": "starting"})
    return JSONResponse(status_code=200, content={"status": "ready"})


@app.get("/info")
async def info(request: Request) -> dict[str, Any]:
    """Application metadata for debugging and monitoring."""
    services = request.app.state.services
    thread = request.app.state.scheduler_thread
    return {
        "name": "cert-renewal",
        "version": __version__,
        "active_sessions": len(services.sessions) if services is not None else 0,
        "reconciliation_running": thread is not None and thread.is_alive(),
        "has_error": request.app.state.error_message is not None,
    }


# ─────────────────────── Fee schedule ───────────────────────


@app.post("/fee-schedule/refresh")
async def refresh_fee_schedule(session: SessionResult) -> JSONResponse:
    result = await session.flat_map_async(lambda s: s.refresh_fee_schedule())
    return build_fastapi_response(result, serializer=_schedule_body)


# ─────────────────────── Renewal workflow ───────────────────────


@app.get("/renewals/eligible")
async def eligible_certificates(session: SessionResult) -> JSONResponse:
    result = await session.flat_map_async(lambda s: s.list_renewable_certificates())
    return build_fastapi_response(
        result, serializer=lambda certificates: [_certificate_body(c) for c in certificates]
    )


@app.get("/renewals/current")
async def current_renewal(session: SessionResult) -> JSONResponse:
    return build_fastapi_response(session, serializer=_session_body)


@app.post("/renewals/open/{certificate_id}")
async def open_renewal(certificate_id: str, session: SessionResult) -> JSONResponse:
    result = await session.flat_map_async(lambda s: s.open_renewal_modal(certificate_id))
    return build_fastapi_response(result, serializer=_draft_body)


@app.post("/renewals/options")
async def select_options(body: OptionsRequest, session: SessionResult) -> JSONResponse:
    result = await session.flat_map_async(
        lambda s: s.select_renewal_options(
            body.education_mode, body.delivery_mode, body.recipient.to_recipient()
        )
    )
    return build_fastapi_response(result, serializer=_fees_body)


async def _candidate(upload: UploadFile) -> CandidateFile:
    return CandidateFile(
        name=upload.filename or "",
        content_type=upload.content_type or "application/octet-stream",
        content=await upload.read(),
    )


@app.post("/renewals/files")
async def attach_files(
    session: SessionResult,
    evidence: Annotated[list[UploadFile], File()],
    completion_certificate: Annotated[UploadFile | None, File()] = None,
) -> JSONResponse:
    candidates = await asyncio.gather(*(_candidate(u) for u in evidence))
    certificate = await _candidate(completion_certificate) if completion_certificate else None
    result = await session.flat_map_async(
        lambda s: s.attach_renewal_files(candidates, certificate)
    )
    return build_fastapi_response(result, serializer=lambda count: {"staged_files": count})


@app.post("/renewals/review")
async def review(session: SessionResult) -> JSONResponse:
    result = await session.flat_map_async(lambda s: s.review_renewal())
    return build_fastapi_response(result, serializer=_fees_body)


@app.post("/renewals/submit")
async def submit(body: SubmitRequest, session: SessionResult) -> JSONResponse:
    result = await session.flat_map_async(
        lambda s: s.submit_renewal_application(body.confirmed)
    )
    return build_fastapi_response(result, success_status=201, serializer=_receipt_body)


@app.delete("/renewals/current")
async def close_renewal(session: SessionResult) -> JSONResponse:
    result = await session.flat_map_async(lambda s: s.close_renewal_modal())
    return build_fastapi_response(result, serializer=lambda step: {"step": step.value})


if __name__ == "__main__":
    # For local testing: python -m uvicorn cert_renewal.asgi:app --reload
    import uvicorn

    uvicorn.run(
        "cert_renewal.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
