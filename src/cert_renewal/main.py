"""
Application entry point — wires dependencies and starts the sweep scheduler.

Composition root: creates concrete adapters and hands them to renewal
sessions (per subject) and to the reconciliation sweep.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog
  2. Load and validate configuration from environment
  3. Create concrete adapter instances
  4. Build RenewalServices, used by the ASGI app to open sessions
  5. Create and start the reconciliation scheduler (console entry point)
"""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog
from pydantic import SecretStr
from railway.result import Result

from cert_renewal import __version__
from cert_renewal.adapters.http_client import (
    HttpFeeScheduleSource,
    HttpIdentityProvider,
    HttpObjectStorage,
)
from cert_renewal.adapters.identity import StaticIdentityProvider
from cert_renewal.adapters.repository import PsycopgDocumentStore
from cert_renewal.config import AppSettings, IntakeSettings, RenewalSettings
from cert_renewal.domain.models import CurrentUser
from cert_renewal.domain.ports import DocumentStore, FeeScheduleSource, ObjectStorage
from cert_renewal.reconciliation import ReconciliationReport, reconcile_orphaned_uploads
from cert_renewal.scheduler import create_scheduler
from cert_renewal.session import RenewalSession


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Colored, human-readable console output with ISO timestamps; events
    below ``log_level`` are dropped before any processor runs.
    """
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.INFO))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


UserResolver = Callable[[str | None], Awaitable[Result[CurrentUser]]]


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class RenewalServices:
    """
    Shared adapters plus one RenewalSession per subject.

    ``resolve_user`` turns a bearer token into a subject; each subject gets
    its own session so drafts and fee caches never mix. Sessions unused for
    ``renewal_settings.session_idle_minutes`` are closed and dropped the
    next time any session is requested.
    """

    documents: DocumentStore
    storage: ObjectStorage
    fee_source: FeeScheduleSource
    resolve_user: UserResolver
    renewal_settings: RenewalSettings = field(default_factory=RenewalSettings)
    intake_settings: IntakeSettings = field(default_factory=IntakeSettings)
    grace_period: timedelta = timedelta(hours=24)
    sessions: dict[str, RenewalSession] = field(default_factory=dict)
    clock: Callable[[], datetime] = _utcnow
    _last_used: dict[str, datetime] = field(default_factory=dict, init=False, repr=False)

    def session_for(self, user: CurrentUser) -> RenewalSession:
        now = self.clock()
        self.evict_idle(now)
        self._last_used[user.id] = now
        session = self.sessions.get(user.id)
        if session is None:
            session = RenewalSession(
                identity=StaticIdentityProvider(user),
                documents=self.documents,
                storage=self.storage,
                fee_source=self.fee_source,
                renewal_settings=self.renewal_settings,
                intake_settings=self.intake_settings,
            )
            self.sessions[user.id] = session
        return session

    def evict_idle(self, now: datetime) -> list[str]:
        """
        Close and drop sessions idle since before the configured limit.

        Closing releases the draft's staged file bytes. A session whose
        submission is still in flight refuses to close and is kept.
        """
        cutoff = now - timedelta(minutes=self.renewal_settings.session_idle_minutes)
        evicted: list[str] = []
        for subject, last_used in list(self._last_used.items()):
            if last_used > cutoff:
                continue
            session = self.sessions.get(subject)
            if session is not None and session.discard().is_failure():
                continue
            self.sessions.pop(subject, None)
            del self._last_used[subject]
            evicted.append(subject)
        if evicted:
            structlog.get_logger().info("services.sessions_evicted", count=len(evicted))
        return evicted

    async def sweep(self) -> Result[ReconciliationReport]:
        return await reconcile_orphaned_uploads(
            self.storage, self.documents, datetime.now(UTC), self.grace_period
        )


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


def _create_adapters(
    settings: AppSettings,
) -> tuple[PsycopgDocumentStore, HttpObjectStorage, HttpFeeScheduleSource]:
    """
    Instantiate all concrete adapters from application settings.

    Identity adapters are per request (they carry the caller's token) and
    are created by ``_user_resolver`` instead.
    """
    documents = PsycopgDocumentStore(
        dsn=settings.document_store.get_dsn(),
        table=settings.document_store.table,
    )
    storage = HttpObjectStorage(
        base_url=settings.object_storage.url,
        token=_secret(settings.object_storage.token),
        timeout=settings.http_timeout_seconds,
    )
    fee_source = HttpFeeScheduleSource(
        url=settings.fee_schedule.url,
        token=_secret(settings.fee_schedule.token),
        timeout=settings.http_timeout_seconds,
    )
    return documents, storage, fee_source


def _user_resolver(settings: AppSettings) -> UserResolver:
    async def resolve(token: str | None) -> Result[CurrentUser]:
        provider = HttpIdentityProvider(
            userinfo_url=settings.identity.userinfo_url,
            access_token=token,
            timeout=settings.http_timeout_seconds,
        )
        return await provider.get_current_user()

    return resolve


def build_services(
    settings: AppSettings,
    documents: DocumentStore,
    storage: ObjectStorage,
    fee_source: FeeScheduleSource,
) -> RenewalServices:
    return RenewalServices(
        documents=documents,
        storage=storage,
        fee_source=fee_source,
        resolve_user=_user_resolver(settings),
        renewal_settings=settings.renewal,
        intake_settings=settings.intake,
        grace_period=timedelta(hours=settings.reconciliation.grace_period_hours),
    )


def main() -> None:
    """Wire dependencies and launch the scheduled reconciliation sweep."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()

    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        reconciliation_enabled=settings.reconciliation.enabled,
        cron=settings.reconciliation.cron,
    )

    if not settings.reconciliation.enabled:
        log.info("app.reconciliation_disabled", hint="set RECONCILIATION__ENABLED=true")
        return

    documents, storage, fee_source = _create_adapters(settings)
    schema = asyncio.run(documents.ensure_schema())
    if schema.is_failure():
        log.error("app.schema_failed", error=str(schema.error()))
        sys.exit(1)

    services = build_services(settings, documents, storage, fee_source)
    scheduler = create_scheduler(
        sweep_fn=services.sweep,
        cron=settings.reconciliation.cron,
    )

    log.info("app.scheduler_starting", cron=settings.reconciliation.cron)

    try:
        scheduler.start()
    except KeyboardInterrupt:
        log.info("app.shutdown", reason="signal received")
    except SystemExit:
        log.info("app.shutdown", reason="signal received")
        raise
    except Exception as e:
        log.error("app.fatal_error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
