"""
Unit tests for the renewal workflow state machine.

Test categories:
  - Happy path: open → options → files → review → submit → COMPLETED
  - open: unknown, foreign, revoked and unpriced certificates; reopen discards the draft
  - Options form: per-field validation, address only for physical delivery
  - Files: completion certificate required for already-completed education
  - Submit: confirmation, ERROR with draft intact, resubmission from ERROR
  - Guards: COMPLETED blocks mutation, close/open/submit rejected while SUBMITTING,
    submit serialized behind a reopen that is still loading
  - Events: progress sequence, failing listeners, unsubscribe
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from railway import ErrorCode, ResultAssertions
from railway.result import Result

from cert_renewal.adapters.identity import StaticIdentityProvider
from cert_renewal.certificates import CERTIFICATES_COLLECTION, CertificateDirectory
from cert_renewal.domain.models import (
    CurrentUser,
    DeliveryMode,
    EducationMode,
    FileRole,
    WorkflowStep,
)
from cert_renewal.fee_schedule import FeeScheduleProvider
from cert_renewal.intake import FileIntake
from cert_renewal.persister import APPLICATIONS_COLLECTION, RenewalApplicationPersister
from cert_renewal.workflow import RenewalWorkflow, WorkflowEvent, validate_recipient
from tests.builders import (
    OTHER_USER,
    USER,
    certificate_record,
    clock,
    pdf,
    png,
    recipient,
)
from tests.fakes import InMemoryDocumentStore, InMemoryObjectStorage, StubFeeScheduleSource


def _workflow(
    documents: InMemoryDocumentStore,
    storage: InMemoryObjectStorage,
    fee_source: StubFeeScheduleSource,
    user: CurrentUser | None = USER,
    persister: RenewalApplicationPersister | None = None,
) -> RenewalWorkflow:
    intake = FileIntake(storage)
    return RenewalWorkflow(
        identity=StaticIdentityProvider(user),
        certificates=CertificateDirectory(documents),
        fee_schedule=FeeScheduleProvider(fee_source),
        intake=intake,
        persister=persister or RenewalApplicationPersister(intake, documents, clock=clock),
        clock=clock,
    )


class _GatedFeeSource(StubFeeScheduleSource):
    """Blocks fee settings reads on ``gate`` once one is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def get_fee_schedule_settings(self) -> Result[dict]:
        if self.gate is not None:
            self.entered.set()
            await self.gate.wait()
        return await super().get_fee_schedule_settings()


@pytest.fixture()
def workflow(
    documents: InMemoryDocumentStore,
    storage: InMemoryObjectStorage,
    fee_source: StubFeeScheduleSource,
) -> RenewalWorkflow:
    documents.seed(CERTIFICATES_COLLECTION, "cert-1", certificate_record("cert-1"))
    return _workflow(documents, storage, fee_source)


async def _reviewed(workflow: RenewalWorkflow) -> None:
    ResultAssertions.assert_success(await workflow.open("cert-1"))
    ResultAssertions.assert_success(
        workflow.select_options(EducationMode.ONLINE, DeliveryMode.BOTH, recipient())
    )
    ResultAssertions.assert_success(workflow.attach_files([pdf("cpe.pdf"), png("scan.png")]))
    ResultAssertions.assert_success(workflow.review())


# ─────────────────────── Happy path ───────────────────────


class TestHappyPath:
    @pytest.mark.asyncio
    async def test_full_renewal_reaches_completed(
        self, workflow: RenewalWorkflow, documents: InMemoryDocumentStore
    ) -> None:
        """
        GIVEN a pilates certificate expiring in 70 days
        WHEN the subject walks every step and confirms the submission
        THEN the workflow completes and the receipt carries the 92200 total.
        """
        await _reviewed(workflow)

        receipt = ResultAssertions.assert_success(await workflow.submit(confirmed=True))

        assert workflow.step is WorkflowStep.COMPLETED
        assert workflow.progress == 100
        assert receipt.total_amount == 92200
        assert receipt.product == "Pilates Specialist renewal"
        assert receipt.application_id in documents.collections[APPLICATIONS_COLLECTION]
        assert workflow.receipt == receipt

    @pytest.mark.asyncio
    async def test_progress_follows_each_step(self, workflow: RenewalWorkflow) -> None:
        events: list[WorkflowEvent] = []
        workflow.subscribe(events.append)

        await _reviewed(workflow)
        await workflow.submit(confirmed=True)

        assert [(e.current, e.progress) for e in events] == [
            (WorkflowStep.CERTIFICATE_SELECTED, 25),
            (WorkflowStep.OPTIONS_ENTERED, 50),
            (WorkflowStep.FILES_ATTACHED, 75),
            (WorkflowStep.REVIEWING, 90),
            (WorkflowStep.SUBMITTING, 90),
            (WorkflowStep.COMPLETED, 100),
        ]
        assert events[0].previous is WorkflowStep.CLOSED

    @pytest.mark.asyncio
    async def test_staged_files_released_after_submit(self, workflow: RenewalWorkflow) -> None:
        await _reviewed(workflow)
        draft = workflow.draft

        await workflow.submit(confirmed=True)

        assert draft is not None
        assert draft.staged_files == []
        assert draft.step is WorkflowStep.COMPLETED


# ─────────────────────── open ───────────────────────


class TestOpen:
    @pytest.mark.asyncio
    async def test_unknown_certificate_is_not_found(self, workflow: RenewalWorkflow) -> None:
        result = await workflow.open("missing")

        ResultAssertions.assert_failure(result, ErrorCode.NOT_FOUND)
        assert workflow.step is WorkflowStep.CLOSED

    @pytest.mark.asyncio
    async def test_certificate_of_another_user_is_not_found(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        """
        GIVEN a certificate held by another user
        WHEN it is opened
        THEN the result is NOT_FOUND, indistinguishable from a missing certificate.
        """
        documents.seed(
            CERTIFICATES_COLLECTION, "cert-9", certificate_record("cert-9", user_id=OTHER_USER.id)
        )
        workflow = _workflow(documents, storage, fee_source)

        result = await workflow.open("cert-9")

        ResultAssertions.assert_failure(result, ErrorCode.NOT_FOUND)

    @pytest.mark.asyncio
    async def test_revoked_certificate_cannot_be_renewed(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        documents.seed(
            CERTIFICATES_COLLECTION, "cert-r", certificate_record("cert-r", status="revoked")
        )
        workflow = _workflow(documents, storage, fee_source)

        result = await workflow.open("cert-r")

        ResultAssertions.assert_failure(result, ErrorCode.BUSINESS_RULE_ERROR)
        ResultAssertions.assert_failure_message_contains(result, "revoked")

    @pytest.mark.asyncio
    async def test_certificate_type_without_fees_is_not_found(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        documents.seed(
            CERTIFICATES_COLLECTION, "cert-y", certificate_record("cert-y", cert_type="yoga")
        )
        workflow = _workflow(documents, storage, fee_source)

        result = await workflow.open("cert-y")

        ResultAssertions.assert_failure(result, ErrorCode.NOT_FOUND)
        assert workflow.step is WorkflowStep.CLOSED

    @pytest.mark.asyncio
    async def test_signed_out_user_is_rejected(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        workflow = _workflow(documents, storage, fee_source, user=None)

        result = await workflow.open("cert-1")

        ResultAssertions.assert_failure(result, ErrorCode.AUTHENTICATION_ERROR)

    @pytest.mark.asyncio
    async def test_reopen_discards_previous_draft(self, workflow: RenewalWorkflow) -> None:
        """
        GIVEN a draft with options and files
        WHEN the same certificate is opened again
        THEN a fresh draft replaces it and the old staged files are released.
        """
        await workflow.open("cert-1")
        workflow.select_options(EducationMode.ONLINE, DeliveryMode.BOTH, recipient())
        workflow.attach_files([pdf()])
        old = workflow.draft

        ResultAssertions.assert_success(await workflow.open("cert-1"))

        assert workflow.draft is not old
        assert old is not None and old.staged_files == []
        assert workflow.step is WorkflowStep.CERTIFICATE_SELECTED
        assert workflow.fee_breakdown is None

    @pytest.mark.asyncio
    async def test_open_refreshes_fee_schedule(
        self, workflow: RenewalWorkflow, fee_source: StubFeeScheduleSource
    ) -> None:
        await workflow.open("cert-1")
        await workflow.open("cert-1")

        assert fee_source.calls == 2


# ─────────────────────── Options form ───────────────────────


class TestSelectOptions:
    def test_valid_form_for_digital_delivery_needs_no_address(self) -> None:
        form = recipient(zipcode="", address1="", address2="")

        assert validate_recipient(form, DeliveryMode.DIGITAL).is_success()

    @pytest.mark.parametrize("delivery", [DeliveryMode.PHYSICAL, DeliveryMode.BOTH])
    def test_physical_delivery_requires_address(self, delivery: DeliveryMode) -> None:
        form = recipient(zipcode="", address1="", address2="")

        error = ResultAssertions.assert_failure(
            validate_recipient(form, delivery), ErrorCode.VALIDATION_ERROR
        )

        assert set(error.details) == {"zipcode", "address1", "address2"}

    def test_every_invalid_field_is_reported(self) -> None:
        form = recipient(
            name=" ", email="not-an-email", phone="1234", cpe_hours=9, agreed_to_terms=False
        )

        error = ResultAssertions.assert_failure(validate_recipient(form, DeliveryMode.DIGITAL))

        assert set(error.details) == {"name", "email", "phone", "cpe_hours", "agreed_to_terms"}
        assert error.details["phone"] == "Use the format 010-1234-5678"

    def test_ten_cpe_hours_is_enough(self) -> None:
        assert validate_recipient(recipient(cpe_hours=10), DeliveryMode.BOTH).is_success()

    @pytest.mark.asyncio
    async def test_invalid_form_keeps_step(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")

        result = workflow.select_options(
            EducationMode.ONLINE, DeliveryMode.BOTH, recipient(phone="")
        )

        ResultAssertions.assert_failure_details_contain(result, "phone")
        assert workflow.step is WorkflowStep.CERTIFICATE_SELECTED
        assert workflow.fee_breakdown is None

    @pytest.mark.asyncio
    async def test_options_compute_fees(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")

        fees = ResultAssertions.assert_success(
            workflow.select_options(EducationMode.OFFLINE, DeliveryMode.DIGITAL, recipient())
        )

        assert fees.total_amount == 40000 + 80000 - 4000
        assert workflow.fee_breakdown == fees
        assert workflow.step is WorkflowStep.OPTIONS_ENTERED

    @pytest.mark.asyncio
    async def test_options_rejected_before_open(self, workflow: RenewalWorkflow) -> None:
        result = workflow.select_options(EducationMode.ONLINE, DeliveryMode.BOTH, recipient())

        ResultAssertions.assert_failure(result, ErrorCode.BUSINESS_RULE_ERROR)

    @pytest.mark.asyncio
    async def test_editing_options_after_review_returns_to_options_step(
        self, workflow: RenewalWorkflow
    ) -> None:
        """
        GIVEN a reviewed draft with frozen fees
        WHEN the options are edited
        THEN fees are recomputed and unfrozen, files stay staged, and the step is OPTIONS_ENTERED.
        """
        await _reviewed(workflow)

        fees = ResultAssertions.assert_success(
            workflow.select_options(EducationMode.OFFLINE, DeliveryMode.BOTH, recipient())
        )

        assert workflow.step is WorkflowStep.OPTIONS_ENTERED
        assert workflow.draft is not None
        assert not workflow.draft.fees_frozen
        assert len(workflow.draft.staged_files) == 2
        assert fees.education_fee == 80000


# ─────────────────────── Files ───────────────────────


class TestAttachFiles:
    @pytest.mark.asyncio
    async def test_already_completed_without_certificate_cannot_reach_review(
        self, workflow: RenewalWorkflow
    ) -> None:
        """
        GIVEN education mode already-completed
        WHEN evidence is attached without a completion certificate
        THEN attachment fails with a completion_certificate detail and review is refused.
        """
        await workflow.open("cert-1")
        workflow.select_options(EducationMode.ALREADY_COMPLETED, DeliveryMode.DIGITAL, recipient())

        attached = workflow.attach_files([pdf("cpe.pdf")])
        reviewed = workflow.review()

        ResultAssertions.assert_failure_details_contain(attached, "completion_certificate")
        ResultAssertions.assert_failure(reviewed, ErrorCode.BUSINESS_RULE_ERROR)
        assert workflow.step is WorkflowStep.OPTIONS_ENTERED

    @pytest.mark.asyncio
    async def test_already_completed_with_certificate_is_accepted(
        self, workflow: RenewalWorkflow
    ) -> None:
        await workflow.open("cert-1")
        workflow.select_options(EducationMode.ALREADY_COMPLETED, DeliveryMode.DIGITAL, recipient())

        count = workflow.attach_files([pdf("cpe.pdf")], completion_certificate=pdf("done.pdf"))

        assert ResultAssertions.assert_success(count) == 2
        assert workflow.draft is not None
        assert [s.role for s in workflow.draft.staged_files] == [
            FileRole.EVIDENCE,
            FileRole.COMPLETION_CERTIFICATE,
        ]
        assert ResultAssertions.assert_success(workflow.review()).education_fee == 0

    @pytest.mark.asyncio
    async def test_switching_to_already_completed_requires_reattach(
        self, workflow: RenewalWorkflow
    ) -> None:
        await workflow.open("cert-1")
        workflow.select_options(EducationMode.ONLINE, DeliveryMode.DIGITAL, recipient())
        workflow.attach_files([pdf("cpe.pdf")])

        workflow.select_options(EducationMode.ALREADY_COMPLETED, DeliveryMode.DIGITAL, recipient())

        ResultAssertions.assert_failure(workflow.review(), ErrorCode.BUSINESS_RULE_ERROR)
        ResultAssertions.assert_failure_details_contain(
            workflow.attach_files([pdf("cpe.pdf")]), "completion_certificate"
        )

    @pytest.mark.asyncio
    async def test_six_files_rejected_and_step_kept(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")
        workflow.select_options(EducationMode.ONLINE, DeliveryMode.BOTH, recipient())

        result = workflow.attach_files([pdf(f"e{i}.pdf") for i in range(6)])

        ResultAssertions.assert_failure(result, ErrorCode.VALIDATION_ERROR)
        assert workflow.step is WorkflowStep.OPTIONS_ENTERED
        assert workflow.draft is not None and workflow.draft.staged_files == []

    @pytest.mark.asyncio
    async def test_reattach_replaces_staged_set(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")
        workflow.select_options(EducationMode.ONLINE, DeliveryMode.BOTH, recipient())
        workflow.attach_files([pdf("a.pdf"), pdf("b.pdf")])

        workflow.attach_files([pdf("c.pdf")])

        assert workflow.draft is not None
        assert [s.file.name for s in workflow.draft.staged_files] == ["c.pdf"]

    @pytest.mark.asyncio
    async def test_attach_before_options_is_rejected(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")

        result = workflow.attach_files([pdf()])

        ResultAssertions.assert_failure(result, ErrorCode.BUSINESS_RULE_ERROR)
        ResultAssertions.assert_failure_message_contains(result, "certificate_selected")


# ─────────────────────── Submit ───────────────────────


class TestSubmit:
    @pytest.mark.asyncio
    async def test_unconfirmed_submit_is_rejected(self, workflow: RenewalWorkflow) -> None:
        await _reviewed(workflow)

        result = await workflow.submit(confirmed=False)

        ResultAssertions.assert_failure_details_contain(result, "confirmed")
        assert workflow.step is WorkflowStep.REVIEWING

    @pytest.mark.asyncio
    async def test_submit_before_review_is_rejected(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")

        result = await workflow.submit(confirmed=True)

        ResultAssertions.assert_failure(result, ErrorCode.BUSINESS_RULE_ERROR)

    @pytest.mark.asyncio
    async def test_failed_submission_moves_to_error_with_draft_intact(
        self, workflow: RenewalWorkflow, storage: InMemoryObjectStorage
    ) -> None:
        """
        GIVEN an upload that fails during submission
        WHEN the draft is submitted
        THEN the workflow is in ERROR, the event carries the failure and the draft is unchanged.
        """
        events: list[WorkflowEvent] = []
        workflow.subscribe(events.append)
        await _reviewed(workflow)
        storage.fail_put_names.add("scan.png")

        result = await workflow.submit(confirmed=True)

        ResultAssertions.assert_failure(result, ErrorCode.EXTERNAL_SERVICE_ERROR)
        assert workflow.step is WorkflowStep.ERROR
        assert workflow.progress == 90
        assert events[-1].current is WorkflowStep.ERROR
        assert events[-1].error is not None
        assert workflow.draft is not None
        assert len(workflow.draft.staged_files) == 2
        assert workflow.draft.fees_frozen
        assert workflow.receipt is None

    @pytest.mark.asyncio
    async def test_resubmit_from_error_passes_through_review(
        self, workflow: RenewalWorkflow, storage: InMemoryObjectStorage
    ) -> None:
        await _reviewed(workflow)
        storage.fail_put_names.add("scan.png")
        await workflow.submit(confirmed=True)
        storage.fail_put_names.clear()
        events: list[WorkflowEvent] = []
        workflow.subscribe(events.append)

        receipt = ResultAssertions.assert_success(await workflow.submit(confirmed=True))

        assert [e.current for e in events] == [
            WorkflowStep.REVIEWING,
            WorkflowStep.SUBMITTING,
            WorkflowStep.COMPLETED,
        ]
        assert receipt.total_amount == 92200

    @pytest.mark.asyncio
    async def test_review_allowed_from_error(
        self, workflow: RenewalWorkflow, storage: InMemoryObjectStorage
    ) -> None:
        await _reviewed(workflow)
        storage.fail_put_names.add("cpe.pdf")
        await workflow.submit(confirmed=True)

        ResultAssertions.assert_success(workflow.review())

        assert workflow.step is WorkflowStep.REVIEWING

    @pytest.mark.asyncio
    async def test_crashing_persister_becomes_technical_error(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        documents.seed(CERTIFICATES_COLLECTION, "cert-1", certificate_record("cert-1"))
        persister = MagicMock()
        persister.submit = AsyncMock(side_effect=RuntimeError("boom"))
        workflow = _workflow(documents, storage, fee_source, persister=persister)
        await _reviewed(workflow)

        result = await workflow.submit(confirmed=True)

        ResultAssertions.assert_failure(result, ErrorCode.TECHNICAL_ERROR)
        assert workflow.step is WorkflowStep.ERROR


# ─────────────────────── Guards ───────────────────────


class TestGuards:
    @pytest.mark.asyncio
    async def test_completed_rejects_every_mutation(self, workflow: RenewalWorkflow) -> None:
        """
        GIVEN a completed submission
        WHEN any mutating intent other than open is issued
        THEN each is rejected with a business-rule error telling the user to open a new renewal.
        """
        await _reviewed(workflow)
        await workflow.submit(confirmed=True)

        results = [
            workflow.select_options(EducationMode.ONLINE, DeliveryMode.BOTH, recipient()),
            workflow.attach_files([pdf()]),
            workflow.review(),
            await workflow.submit(confirmed=True),
        ]

        for result in results:
            ResultAssertions.assert_failure(result, ErrorCode.BUSINESS_RULE_ERROR)
            ResultAssertions.assert_failure_message_contains(result, "already submitted")
        assert workflow.step is WorkflowStep.COMPLETED

    @pytest.mark.asyncio
    async def test_open_after_completed_starts_fresh(self, workflow: RenewalWorkflow) -> None:
        await _reviewed(workflow)
        await workflow.submit(confirmed=True)

        ResultAssertions.assert_success(await workflow.open("cert-1"))

        assert workflow.step is WorkflowStep.CERTIFICATE_SELECTED
        assert workflow.receipt is None

    @pytest.mark.asyncio
    async def test_close_rejected_while_submitting(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        """
        GIVEN a submission blocked inside the persister
        WHEN close and open are requested
        THEN both are rejected and the submission completes afterwards.
        """
        documents.seed(CERTIFICATES_COLLECTION, "cert-1", certificate_record("cert-1"))
        release = asyncio.Event()

        async def blocked_submit(draft, subject):
            await release.wait()
            return Result.success("app-blocked")

        persister = MagicMock()
        persister.submit = blocked_submit
        workflow = _workflow(documents, storage, fee_source, persister=persister)
        await _reviewed(workflow)

        task = asyncio.create_task(workflow.submit(confirmed=True))
        for _ in range(10):
            if workflow.step is WorkflowStep.SUBMITTING:
                break
            await asyncio.sleep(0)

        assert workflow.step is WorkflowStep.SUBMITTING
        ResultAssertions.assert_failure(workflow.close(), ErrorCode.BUSINESS_RULE_ERROR)
        ResultAssertions.assert_failure(await workflow.open("cert-1"), ErrorCode.BUSINESS_RULE_ERROR)

        release.set()
        receipt = ResultAssertions.assert_success(await task)
        assert receipt.application_id == "app-blocked"

    @pytest.mark.asyncio
    async def test_submit_waits_for_open_still_loading(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
    ) -> None:
        """
        GIVEN a reviewed draft and a reopen suspended while loading fee settings
        WHEN submit is issued before the reopen finishes
        THEN the reopen wins, the new draft stays editable and nothing is persisted.
        """
        documents.seed(CERTIFICATES_COLLECTION, "cert-1", certificate_record("cert-1"))
        fee_source = _GatedFeeSource()
        workflow = _workflow(documents, storage, fee_source)
        await _reviewed(workflow)
        old = workflow.draft

        fee_source.gate = asyncio.Event()
        reopening = asyncio.create_task(workflow.open("cert-1"))
        await fee_source.entered.wait()
        submitting = asyncio.create_task(workflow.submit(confirmed=True))
        for _ in range(10):
            await asyncio.sleep(0)

        assert workflow.step is WorkflowStep.REVIEWING
        fee_source.gate.set()
        reopened = ResultAssertions.assert_success(await reopening)
        submitted = await submitting

        ResultAssertions.assert_failure(submitted, ErrorCode.BUSINESS_RULE_ERROR)
        assert reopened is workflow.draft
        assert reopened is not old
        assert workflow.step is WorkflowStep.CERTIFICATE_SELECTED
        assert workflow.receipt is None
        stored = ResultAssertions.assert_success(
            await documents.get_documents(APPLICATIONS_COLLECTION, {})
        )
        assert stored == []

    @pytest.mark.asyncio
    async def test_second_submit_while_submitting_is_rejected(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        documents.seed(CERTIFICATES_COLLECTION, "cert-1", certificate_record("cert-1"))
        release = asyncio.Event()
        calls: list[str] = []

        async def blocked_submit(draft, subject):
            calls.append(subject.id)
            await release.wait()
            return Result.success("app-once")

        persister = MagicMock()
        persister.submit = blocked_submit
        workflow = _workflow(documents, storage, fee_source, persister=persister)
        await _reviewed(workflow)

        first = asyncio.create_task(workflow.submit(confirmed=True))
        for _ in range(10):
            if calls:
                break
            await asyncio.sleep(0)
        second = await workflow.submit(confirmed=True)
        release.set()

        ResultAssertions.assert_failure(second, ErrorCode.BUSINESS_RULE_ERROR)
        ResultAssertions.assert_success(await first)
        assert calls == [USER.id]
        assert workflow.step is WorkflowStep.COMPLETED

    @pytest.mark.asyncio
    async def test_signed_out_during_submit_moves_to_error(
        self,
        documents: InMemoryDocumentStore,
        storage: InMemoryObjectStorage,
        fee_source: StubFeeScheduleSource,
    ) -> None:
        documents.seed(CERTIFICATES_COLLECTION, "cert-1", certificate_record("cert-1"))
        identity = MagicMock()
        identity.get_current_user = AsyncMock(
            side_effect=[
                Result.success(USER),
                Result.failure(ErrorCode.AUTHENTICATION_ERROR, "Session expired"),
            ]
        )
        workflow = _workflow(documents, storage, fee_source)
        workflow._identity = identity
        await _reviewed(workflow)

        result = await workflow.submit(confirmed=True)

        ResultAssertions.assert_failure(result, ErrorCode.AUTHENTICATION_ERROR)
        assert workflow.step is WorkflowStep.ERROR
        assert workflow.draft is not None
        assert len(workflow.draft.staged_files) == 2

    @pytest.mark.asyncio
    async def test_close_discards_draft(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")

        step = ResultAssertions.assert_success(workflow.close())

        assert step is WorkflowStep.CLOSED
        assert workflow.draft is None
        assert workflow.progress == 0

    def test_close_when_closed_is_a_no_op(self, workflow: RenewalWorkflow) -> None:
        events: list[WorkflowEvent] = []
        workflow.subscribe(events.append)

        assert ResultAssertions.assert_success(workflow.close()) is WorkflowStep.CLOSED
        assert events == []


# ─────────────────────── Fees and events ───────────────────────


class TestFeesAndEvents:
    @pytest.mark.asyncio
    async def test_frozen_fees_are_not_recomputed(self, workflow: RenewalWorkflow) -> None:
        await _reviewed(workflow)
        frozen = workflow.fee_breakdown

        assert ResultAssertions.assert_success(workflow.refresh_fees()) is frozen

    @pytest.mark.asyncio
    async def test_unfrozen_fees_are_recomputed(self, workflow: RenewalWorkflow) -> None:
        await workflow.open("cert-1")
        workflow.select_options(EducationMode.ONLINE, DeliveryMode.BOTH, recipient())
        before = workflow.fee_breakdown

        refreshed = ResultAssertions.assert_success(workflow.refresh_fees())

        assert refreshed is not before
        assert refreshed == workflow.fee_breakdown

    def test_refresh_without_options_is_rejected(self, workflow: RenewalWorkflow) -> None:
        ResultAssertions.assert_failure(workflow.refresh_fees(), ErrorCode.BUSINESS_RULE_ERROR)

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_transition(
        self, workflow: RenewalWorkflow
    ) -> None:
        received: list[WorkflowEvent] = []

        def broken(event: WorkflowEvent) -> None:
            raise RuntimeError("listener bug")

        workflow.subscribe(broken)
        workflow.subscribe(received.append)

        ResultAssertions.assert_success(await workflow.open("cert-1"))

        assert [e.current for e in received] == [WorkflowStep.CERTIFICATE_SELECTED]

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, workflow: RenewalWorkflow) -> None:
        received: list[WorkflowEvent] = []
        unsubscribe = workflow.subscribe(received.append)

        unsubscribe()
        await workflow.open("cert-1")

        assert received == []
