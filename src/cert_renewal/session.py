"""
Renewal session — the object the UI layer talks to.

A session owns everything that used to be page-global: the fee schedule
cache, the workflow and its draft, and the components they use. Nothing is
module-level, so two sessions never see each other's state.

Readiness is a single awaited initialization (resolve the subject, load the
fee schedule) bounded by ``init_timeout_seconds``. Every intent awaits it
first; a failed initialization is retried on the next call.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

import structlog
from railway import ResultFailures
from railway.result import Result

from cert_renewal.certificates import CertificateDirectory
from cert_renewal.config import IntakeSettings, RenewalSettings
from cert_renewal.domain.models import (
    CandidateFile,
    Certificate,
    CurrentUser,
    DeliveryMode,
    EducationMode,
    FeeBreakdown,
    FeeSchedule,
    RecipientInfo,
    RenewalDraft,
    SubmissionReceipt,
    WorkflowStep,
)
from cert_renewal.domain.ports import (
    DocumentStore,
    FeeScheduleSource,
    IdentityProvider,
    ObjectStorage,
)
from cert_renewal.fee_schedule import FeeScheduleProvider
from cert_renewal.intake import FileIntake
from cert_renewal.persister import RenewalApplicationPersister
from cert_renewal.workflow import RenewalWorkflow, WorkflowListener

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(UTC)


class RenewalSession:
    def __init__(
        self,
        identity: IdentityProvider,
        documents: DocumentStore,
        storage: ObjectStorage,
        fee_source: FeeScheduleSource,
        renewal_settings: RenewalSettings | None = None,
        intake_settings: IntakeSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._identity = identity
        self._settings = renewal_settings or RenewalSettings()
        self._clock = clock
        self._fee_schedule = FeeScheduleProvider(fee_source)
        self._certificates = CertificateDirectory(documents)
        intake = FileIntake(storage, intake_settings)
        self._workflow = RenewalWorkflow(
            identity=identity,
            certificates=self._certificates,
            fee_schedule=self._fee_schedule,
            intake=intake,
            persister=RenewalApplicationPersister(intake, documents, clock=clock),
            settings=self._settings,
            clock=clock,
        )
        self._init_task: asyncio.Task[Result[CurrentUser]] | None = None

    # ─────────────────────── Readiness ───────────────────────

    async def initialize(self) -> Result[CurrentUser]:
        """
        Resolve the subject and load the fee schedule, once.

        Concurrent callers share the same in-flight task. A failure clears
        the task so a later call can try again.
        """
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._initialize())
        task = self._init_task
        result = await task
        if result.is_failure() and self._init_task is task:
            self._init_task = None
        return result

    async def _initialize(self) -> Result[CurrentUser]:
        timeout = self._settings.init_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                user = await self._identity.get_current_user()
                if user.is_success():
                    await self._fee_schedule.load()
        except TimeoutError:
            log.error("session.init_timeout", timeout_seconds=timeout)
            return ResultFailures.timeout_error(
                f"Renewal session was not ready within {timeout:g}s"
            )
        if user.is_failure():
            log.warning("session.init_failed", error=str(user.error()))
        else:
            log.info(
                "session.ready",
                user_id=user.value().id,
                schedule_origin=self._fee_schedule.current.origin.value,
            )
        return user

    @property
    def ready(self) -> bool:
        return (
            self._init_task is not None
            and self._init_task.done()
            and self._init_task.result().is_success()
        )

    # ─────────────────────── Read-only state ───────────────────────

    @property
    def step(self) -> WorkflowStep:
        return self._workflow.step

    @property
    def progress(self) -> int:
        return self._workflow.progress

    @property
    def fee_breakdown(self) -> FeeBreakdown | None:
        return self._workflow.fee_breakdown

    @property
    def draft(self) -> RenewalDraft | None:
        return self._workflow.draft

    @property
    def receipt(self) -> SubmissionReceipt | None:
        return self._workflow.receipt

    @property
    def fee_schedule(self) -> FeeSchedule:
        return self._fee_schedule.current

    def subscribe(self, listener: WorkflowListener) -> Callable[[], None]:
        return self._workflow.subscribe(listener)

    # ─────────────────────── Intents ───────────────────────

    async def open_renewal_modal(self, certificate_id: str) -> Result[RenewalDraft]:
        ready = await self.initialize()
        if ready.is_failure():
            return Result.failure_from(ready.error())
        return await self._workflow.open(certificate_id)

    async def close_renewal_modal(self) -> Result[WorkflowStep]:
        return self.discard()

    def discard(self) -> Result[WorkflowStep]:
        """Close the workflow without awaiting; fails while a submission is in flight."""
        return self._workflow.close()

    async def select_renewal_options(
        self,
        education_mode: EducationMode,
        delivery_mode: DeliveryMode,
        recipient: RecipientInfo,
    ) -> Result[FeeBreakdown]:
        return self._workflow.select_options(education_mode, delivery_mode, recipient)

    async def attach_renewal_files(
        self,
        evidence: Sequence[CandidateFile],
        completion_certificate: CandidateFile | None = None,
    ) -> Result[int]:
        return self._workflow.attach_files(evidence, completion_certificate)

    async def review_renewal(self) -> Result[FeeBreakdown]:
        return self._workflow.review()

    async def submit_renewal_application(self, confirmed: bool) -> Result[SubmissionReceipt]:
        ready = await self.initialize()
        if ready.is_failure():
            return Result.failure_from(ready.error())
        return await self._workflow.submit(confirmed)

    async def refresh_fee_schedule(self) -> Result[FeeSchedule]:
        """Reload the schedule and reprice an open, unfrozen draft."""
        schedule = await self._fee_schedule.refresh()
        if self._workflow.fee_breakdown is not None:
            repriced = self._workflow.refresh_fees()
            if repriced.is_failure():
                log.warning("session.reprice_failed", error=str(repriced.error()))
        return Result.success(schedule)

    async def list_renewable_certificates(self) -> Result[list[Certificate]]:
        """The subject's certificates that are due for renewal."""
        ready = await self.initialize()
        return await ready.flat_map_async(
            lambda user: self._certificates.renewable_for(
                user, self._clock(), self._settings.renewal_window_days
            )
        )
