"""
Renewal workflow — the state machine behind the renewal modal.

    CLOSED ─open→ CERTIFICATE_SELECTED ─select_options→ OPTIONS_ENTERED
        ─attach_files→ FILES_ATTACHED ─review→ REVIEWING ─submit→ SUBMITTING
                                                   ↑                │
                                                   └──── ERROR ←────┤
                                                                    ↓
                                                                COMPLETED

Every intent returns a Result. A failed validation leaves the step where it
was; a failed submission moves to ERROR with the draft intact so it can be
resubmitted without re-entering anything. COMPLETED accepts no further
mutation until ``open`` creates a fresh draft.

Step changes are published as WorkflowEvent to subscribers instead of being
read from shared state.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from railway import ErrorCode, FailureDescription, LoggingExecutionContext, ResultFailures
from railway.result import Result

from cert_renewal.calculator import compute_fees
from cert_renewal.certificates import CertificateDirectory
from cert_renewal.config import RenewalSettings
from cert_renewal.domain.models import (
    CandidateFile,
    Certificate,
    DeliveryMode,
    EducationMode,
    FeeBreakdown,
    FileRole,
    RecipientInfo,
    RenewalDraft,
    StagedFile,
    SubmissionReceipt,
    WorkflowStep,
)
from cert_renewal.domain.ports import IdentityProvider
from cert_renewal.fee_schedule import FeeScheduleProvider
from cert_renewal.intake import FileIntake
from cert_renewal.persister import RenewalApplicationPersister

log = structlog.get_logger()

_EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_PATTERN = re.compile(r"^01[0-9]-[0-9]{3,4}-[0-9]{4}$")

_EDITABLE_OPTIONS = frozenset(
    {
        WorkflowStep.CERTIFICATE_SELECTED,
        WorkflowStep.OPTIONS_ENTERED,
        WorkflowStep.FILES_ATTACHED,
        WorkflowStep.REVIEWING,
        WorkflowStep.ERROR,
    }
)
_ATTACHABLE = frozenset({WorkflowStep.OPTIONS_ENTERED, WorkflowStep.FILES_ATTACHED})
_REVIEWABLE = frozenset({WorkflowStep.FILES_ATTACHED, WorkflowStep.ERROR})
_SUBMITTABLE = frozenset({WorkflowStep.REVIEWING, WorkflowStep.ERROR})


@dataclass(frozen=True, slots=True)
class WorkflowEvent:
    """Published on every step change."""

    previous: WorkflowStep
    current: WorkflowStep
    progress: int
    error: FailureDescription | None = None


WorkflowListener = Callable[[WorkflowEvent], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def validate_recipient(
    recipient: RecipientInfo,
    delivery_mode: DeliveryMode,
    min_cpe_hours: int = 10,
) -> Result[RecipientInfo]:
    """
    Check the options-step form. All problems are reported at once, keyed
    by field name. Address fields are only required when something is
    physically delivered.
    """
    problems: dict[str, str] = {}
    if not recipient.name.strip():
        problems["name"] = "Name is required"
    if not recipient.email.strip():
        problems["email"] = "Email is required"
    elif not _EMAIL_PATTERN.match(recipient.email.strip()):
        problems["email"] = "Enter a valid email address"
    if not recipient.phone.strip():
        problems["phone"] = "Phone number is required"
    elif not _PHONE_PATTERN.match(recipient.phone.strip()):
        problems["phone"] = "Use the format 010-1234-5678"
    if recipient.cpe_hours < min_cpe_hours:
        problems["cpe_hours"] = f"At least {min_cpe_hours} continuing-education hours are required"
    if not recipient.agreed_to_terms:
        problems["agreed_to_terms"] = "You must agree to the terms"

    match delivery_mode:
        case DeliveryMode.PHYSICAL | DeliveryMode.BOTH:
            for field_name in ("zipcode", "address1", "address2"):
                if not getattr(recipient, field_name).strip():
                    problems[field_name] = "Required for physical delivery"
        case DeliveryMode.DIGITAL:
            pass

    if problems:
        return ResultFailures.validation_error("Renewal form has invalid fields", problems)
    return Result.success(recipient)


class RenewalWorkflow:
    """
    One renewal modal's worth of state.

    Collaborators are injected; the workflow owns only its draft and its
    listeners.
    """

    def __init__(
        self,
        identity: IdentityProvider,
        certificates: CertificateDirectory,
        fee_schedule: FeeScheduleProvider,
        intake: FileIntake,
        persister: RenewalApplicationPersister,
        settings: RenewalSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._identity = identity
        self._certificates = certificates
        self._fee_schedule = fee_schedule
        self._intake = intake
        self._persister = persister
        self._settings = settings or RenewalSettings()
        self._clock = clock
        self._step = WorkflowStep.CLOSED
        self._draft: RenewalDraft | None = None
        self._receipt: SubmissionReceipt | None = None
        self._listeners: list[WorkflowListener] = []
        # open and submit await I/O mid-intent; one of them runs at a time
        self._intent_lock = asyncio.Lock()

    # ─────────────────────── Read-only state ───────────────────────

    @property
    def step(self) -> WorkflowStep:
        return self._step

    @property
    def progress(self) -> int:
        return self._step.progress

    @property
    def draft(self) -> RenewalDraft | None:
        return self._draft

    @property
    def fee_breakdown(self) -> FeeBreakdown | None:
        return self._draft.fees if self._draft is not None else None

    @property
    def receipt(self) -> SubmissionReceipt | None:
        """Set once the last submission completed."""
        return self._receipt

    def subscribe(self, listener: WorkflowListener) -> Callable[[], None]:
        """Register ``listener`` and return a function that removes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    # ─────────────────────── Intents ───────────────────────

    async def open(self, certificate_id: str) -> Result[RenewalDraft]:
        """
        Start a renewal for ``certificate_id`` with a fresh draft.

        Allowed from every step except SUBMITTING. Any previous draft is
        discarded, including one that reached COMPLETED or ERROR. A submit
        issued while this is still loading waits for it and then sees the
        new draft.
        """
        if self._step is WorkflowStep.SUBMITTING:
            return self._submission_in_progress()
        async with self._intent_lock:
            return await self._open(certificate_id)

    async def _open(self, certificate_id: str) -> Result[RenewalDraft]:
        user = await self._identity.get_current_user()
        if user.is_failure():
            return Result.failure_from(user.error())

        certificate = (await self._certificates.get(user.value(), certificate_id)).flat_map(
            self._check_renewable
        )
        if certificate.is_failure():
            log.info("workflow.open_rejected", certificate_id=certificate_id,
                     error=str(certificate.error()))
            return Result.failure_from(certificate.error())

        schedule = await self._fee_schedule.refresh()
        cert = certificate.value()
        if cert.cert_type not in schedule.entries:
            return Result.failure(
                ErrorCode.NOT_FOUND,
                f"No renewal fee schedule for certificate type {cert.cert_type!r}",
            )

        self._discard_draft()
        self._draft = RenewalDraft(certificate=cert)
        self._transition(WorkflowStep.CERTIFICATE_SELECTED)
        log.info(
            "workflow.opened",
            certificate_id=cert.id,
            cert_type=cert.cert_type,
            schedule_origin=schedule.origin.value,
        )
        return Result.success(self._draft)

    def select_options(
        self,
        education_mode: EducationMode,
        delivery_mode: DeliveryMode,
        recipient: RecipientInfo,
    ) -> Result[FeeBreakdown]:
        """Record the options-step form and recompute fees."""
        guard = self._require(_EDITABLE_OPTIONS, "select options")
        if guard.is_failure():
            return Result.failure_from(guard.error())
        draft = guard.value()

        validated = validate_recipient(recipient, delivery_mode, self._settings.min_cpe_hours)
        fees = validated.flat_map(
            lambda _: self._compute(draft.certificate, education_mode, delivery_mode)
        )
        if fees.is_failure():
            return fees

        draft.education_mode = education_mode
        draft.delivery_mode = delivery_mode
        draft.recipient = recipient
        draft.fees = fees.value()
        draft.fees_frozen = False
        self._transition(WorkflowStep.OPTIONS_ENTERED)
        return fees

    def attach_files(
        self,
        evidence: Sequence[CandidateFile],
        completion_certificate: CandidateFile | None = None,
    ) -> Result[int]:
        """
        Stage the evidence set, replacing anything staged before.

        Returns the number of staged files. Nothing is uploaded until submit.
        """
        guard = self._require(_ATTACHABLE, "attach files")
        if guard.is_failure():
            return Result.failure_from(guard.error())
        draft = guard.value()

        batch = self._intake.validate_batch(evidence)
        if batch.is_failure():
            return Result.failure_from(batch.error())

        staged = [StagedFile(file=f, role=FileRole.EVIDENCE) for f in batch.value()]
        if completion_certificate is not None:
            checked = self._intake.validate(completion_certificate)
            if checked.is_failure():
                return Result.failure_from(checked.error())
            staged.append(StagedFile(file=checked.value(), role=FileRole.COMPLETION_CERTIFICATE))

        requirement = self._check_completion_certificate(draft.education_mode, staged)
        if requirement.is_failure():
            return Result.failure_from(requirement.error())

        draft.release_files()
        draft.staged_files.extend(staged)
        self._transition(WorkflowStep.FILES_ATTACHED)
        return Result.success(len(staged))

    def review(self) -> Result[FeeBreakdown]:
        """Re-check files, then recompute and freeze the fee breakdown."""
        guard = self._require(_REVIEWABLE, "review")
        if guard.is_failure():
            return Result.failure_from(guard.error())
        fees = self._freeze(guard.value())
        if fees.is_success():
            self._transition(WorkflowStep.REVIEWING)
        return fees

    async def submit(self, confirmed: bool) -> Result[SubmissionReceipt]:
        """
        Persist the reviewed draft.

        Submission is irreversible, so ``confirmed`` must be True. From ERROR
        the draft passes back through REVIEWING with its frozen fees.
        """
        if self._step is WorkflowStep.SUBMITTING:
            return self._submission_in_progress()
        async with self._intent_lock:
            return await self._submit(confirmed)

    async def _submit(self, confirmed: bool) -> Result[SubmissionReceipt]:
        guard = self._require(_SUBMITTABLE, "submit")
        if guard.is_failure():
            return Result.failure_from(guard.error())
        draft = guard.value()
        if not confirmed:
            return ResultFailures.validation_error(
                "Confirm the renewal application before submitting",
                {"confirmed": "Confirmation is required"},
            )

        if self._step is WorkflowStep.ERROR:
            frozen = self._freeze(draft)
            if frozen.is_failure():
                return Result.failure_from(frozen.error())
            self._transition(WorkflowStep.REVIEWING)

        self._transition(WorkflowStep.SUBMITTING)
        user = await self._identity.get_current_user()
        if user.is_failure():
            self._transition(WorkflowStep.ERROR, user.error())
            return Result.failure_from(user.error())

        context = LoggingExecutionContext(operation="RenewalSubmit")
        submitted = await context.execute_async(
            lambda: self._persister.submit(draft, user.value())
        )
        if submitted.is_failure():
            self._transition(WorkflowStep.ERROR, submitted.error())
            return Result.failure_from(submitted.error())

        self._receipt = SubmissionReceipt(
            application_id=submitted.value(),
            product=f"{draft.certificate.cert_name} renewal",
            total_amount=draft.fees.total_amount,  # type: ignore[union-attr]
        )
        draft.release_files()
        self._transition(WorkflowStep.COMPLETED)
        return Result.success(self._receipt)

    def close(self) -> Result[WorkflowStep]:
        """Discard the draft. Rejected only while a submission is in flight."""
        if self._step is WorkflowStep.SUBMITTING:
            return self._submission_in_progress()
        self._discard_draft()
        if self._step is not WorkflowStep.CLOSED:
            self._transition(WorkflowStep.CLOSED)
        return Result.success(self._step)

    def refresh_fees(self) -> Result[FeeBreakdown]:
        """
        Recompute the draft's fees against the current schedule.

        Frozen fees (after review) are returned unchanged.
        """
        draft = self._draft
        if draft is None or draft.fees is None:
            return ResultFailures.business_rule_error("No renewal options have been entered yet")
        if draft.fees_frozen:
            return Result.success(draft.fees)
        fees = self._compute(draft.certificate, draft.education_mode, draft.delivery_mode)  # type: ignore[arg-type]
        return fees.peek(lambda f: setattr(draft, "fees", f))

    # ─────────────────────── Internals ───────────────────────

    @staticmethod
    def _submission_in_progress() -> Result:
        return ResultFailures.business_rule_error(
            "A renewal submission is in progress; wait for it to finish"
        )

    def _require(self, allowed: frozenset[WorkflowStep], action: str) -> Result[RenewalDraft]:
        if self._step is WorkflowStep.COMPLETED:
            return ResultFailures.business_rule_error(
                "This renewal application was already submitted; open a new renewal to continue"
            )
        if self._step not in allowed or self._draft is None:
            return ResultFailures.business_rule_error(
                f"Cannot {action} while the renewal is {self._step.value}"
            )
        return Result.success(self._draft)

    @staticmethod
    def _check_renewable(certificate: Certificate) -> Result[Certificate]:
        if certificate.status.renewable:
            return Result.success(certificate)
        return ResultFailures.business_rule_error(
            f"Certificate {certificate.certificate_number or certificate.id} is "
            f"{certificate.status.value} and cannot be renewed"
        )

    @staticmethod
    def _check_completion_certificate(
        education_mode: EducationMode | None,
        staged: Sequence[StagedFile],
    ) -> Result[int]:
        has_certificate = any(s.role is FileRole.COMPLETION_CERTIFICATE for s in staged)
        if education_mode is EducationMode.ALREADY_COMPLETED and not has_certificate:
            return ResultFailures.validation_error(
                "An education completion certificate is required when education is already completed",
                {"completion_certificate": "Required"},
            )
        return Result.success(len(staged))

    def _check_files(self, draft: RenewalDraft) -> Result[int]:
        evidence = draft.files_with_role(FileRole.EVIDENCE)
        if not evidence:
            return ResultFailures.validation_error(
                "At least one continuing-education evidence file is required",
                {"evidence": "Required"},
            )
        if len(evidence) > self._intake.max_evidence_files:
            return ResultFailures.validation_error(
                f"At most {self._intake.max_evidence_files} evidence files may be attached",
                {"evidence": "Too many files"},
            )
        return self._check_completion_certificate(draft.education_mode, draft.staged_files)

    def _freeze(self, draft: RenewalDraft) -> Result[FeeBreakdown]:
        if draft.fees_frozen and draft.fees is not None:
            return self._check_files(draft).map(lambda _: draft.fees)
        fees = self._check_files(draft).flat_map(
            lambda _: self._compute(draft.certificate, draft.education_mode, draft.delivery_mode)  # type: ignore[arg-type]
        )
        if fees.is_success():
            draft.fees = fees.value()
            draft.fees_frozen = True
        return fees

    def _compute(
        self,
        certificate: Certificate,
        education_mode: EducationMode,
        delivery_mode: DeliveryMode,
    ) -> Result[FeeBreakdown]:
        return compute_fees(
            self._fee_schedule.current,
            certificate.cert_type,
            education_mode,
            delivery_mode,
            certificate.expires_at,
            self._clock(),
            self._settings.early_renewal_days,
        )

    def _discard_draft(self) -> None:
        if self._draft is not None:
            self._draft.release_files()
        self._draft = None
        self._receipt = None

    def _transition(self, current: WorkflowStep, error: FailureDescription | None = None) -> None:
        previous, self._step = self._step, current
        if self._draft is not None:
            self._draft.step = current
        event = WorkflowEvent(previous=previous, current=current, progress=current.progress, error=error)
        log.info(
            "workflow.transition",
            previous=previous.value,
            current=current.value,
            progress=event.progress,
            error=str(error) if error is not None else None,
        )
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("workflow.listener_failed", current=current.value)
