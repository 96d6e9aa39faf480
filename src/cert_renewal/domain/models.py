"""
Domain models — certificates, fee schedules, renewal drafts and applications.

Value objects are frozen dataclasses. The only mutable structure is the
RenewalDraft, which lives for exactly one open workflow and is owned by the
RenewalWorkflow that created it.

Status and step vocabularies are closed enums; anything the outside world
sends as a string is parsed into one of them at the boundary.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum, unique
from typing import Any


@unique
class EducationMode(Enum):
    """How the continuing education was (or will be) completed."""

    ONLINE = "online"
    OFFLINE = "offline"
    ALREADY_COMPLETED = "already-completed"


@unique
class DeliveryMode(Enum):
    """How the renewed certificate is delivered."""

    PHYSICAL = "physical"
    DIGITAL = "digital"
    BOTH = "both"


@unique
class CertificateStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    SUPERSEDED = "superseded"
    REVOKED = "revoked"

    @property
    def renewable(self) -> bool:
        match self:
            case CertificateStatus.ACTIVE | CertificateStatus.EXPIRED:
                return True
            case CertificateStatus.SUPERSEDED | CertificateStatus.REVOKED:
                return False


@unique
class ApplicationStatus(Enum):
    """Lifecycle of a persisted application. Only PAYMENT_PENDING is set here."""

    PAYMENT_PENDING = "payment_pending"
    UNDER_REVIEW = "under_review"
    PROCESSING = "processing"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"

    @property
    def label(self) -> str:
        match self:
            case ApplicationStatus.PAYMENT_PENDING:
                return "Awaiting payment"
            case ApplicationStatus.UNDER_REVIEW:
                return "Under review"
            case ApplicationStatus.PROCESSING:
                return "Processing"
            case ApplicationStatus.APPROVED:
                return "Approved"
            case ApplicationStatus.REJECTED:
                return "Rejected"
            case ApplicationStatus.COMPLETED:
                return "Completed"


@unique
class WorkflowStep(Enum):
    """Steps of the renewal intake workflow."""

    CLOSED = "closed"
    CERTIFICATE_SELECTED = "certificate_selected"
    OPTIONS_ENTERED = "options_entered"
    FILES_ATTACHED = "files_attached"
    REVIEWING = "reviewing"
    SUBMITTING = "submitting"
    ERROR = "error"
    COMPLETED = "completed"

    @property
    def progress(self) -> int:
        """Percentage shown in the progress bar for this step."""
        match self:
            case WorkflowStep.CLOSED:
                return 0
            case WorkflowStep.CERTIFICATE_SELECTED:
                return 25
            case WorkflowStep.OPTIONS_ENTERED:
                return 50
            case WorkflowStep.FILES_ATTACHED:
                return 75
            case WorkflowStep.REVIEWING | WorkflowStep.SUBMITTING | WorkflowStep.ERROR:
                return 90
            case WorkflowStep.COMPLETED:
                return 100


@unique
class ScheduleOrigin(Enum):
    """Where the active fee schedule came from."""

    REMOTE = "remote"
    DEFAULT = "default"


@unique
class DiscountKind(Enum):
    EARLY_RENEWAL = "early"
    ONLINE_EDUCATION = "online"


@unique
class FileRole(Enum):
    EVIDENCE = "evidence"
    COMPLETION_CERTIFICATE = "completion-certificate"


# ─────────────────────── Subjects and certificates ───────────────────────


@dataclass(frozen=True, slots=True)
class CurrentUser:
    """The authenticated subject acting in a session."""

    id: str
    email: str
    display_name: str = ""


@dataclass(frozen=True, slots=True)
class Certificate:
    """
    An issued credential held by a subject.

    Created by the issuance process; read-only to the renewal engine.
    """

    id: str
    user_id: str
    cert_type: str
    cert_name: str
    certificate_number: str
    issued_at: datetime
    expires_at: datetime
    status: CertificateStatus = CertificateStatus.ACTIVE


# ─────────────────────── Fee schedule ───────────────────────


@dataclass(frozen=True, slots=True)
class FeeScheduleEntry:
    """Fees and discount rates for one certificate type."""

    renewal_fee: int
    delivery_fee: int
    education_fees: Mapping[EducationMode, int]
    early_discount_rate: Decimal
    online_discount_rate: Decimal

    def to_settings(self) -> dict[str, Any]:
        """Serialize using the settings-document key layout."""
        return {
            "renewal": self.renewal_fee,
            "deliveryFee": self.delivery_fee,
            "education": {mode.value: fee for mode, fee in self.education_fees.items()},
            "earlyDiscountRate": float(self.early_discount_rate),
            "onlineDiscountRate": float(self.online_discount_rate),
        }


@dataclass(frozen=True, slots=True)
class FeeSchedule:
    """Per-certificate-type fee table plus its origin."""

    entries: Mapping[str, FeeScheduleEntry]
    origin: ScheduleOrigin = ScheduleOrigin.REMOTE

    @property
    def is_default(self) -> bool:
        return self.origin is ScheduleOrigin.DEFAULT

    def to_settings(self) -> dict[str, Any]:
        return {cert_type: entry.to_settings() for cert_type, entry in self.entries.items()}


@dataclass(frozen=True, slots=True)
class AppliedDiscount:
    """A discount whose condition held, with the reason shown to the user."""

    kind: DiscountKind
    rate: Decimal
    amount: int
    reason: str


@dataclass(frozen=True, slots=True)
class FeeBreakdown:
    """Output of the fee calculator."""

    cert_type: str
    renewal_fee: int
    education_fee: int
    delivery_fee: int
    discount_amount: int
    total_amount: int
    days_until_expiry: int
    calculated_at: datetime
    discounts: tuple[AppliedDiscount, ...] = ()

    @property
    def subtotal(self) -> int:
        return self.renewal_fee + self.education_fee + self.delivery_fee

    def to_document(self) -> dict[str, Any]:
        return {
            "renewal_fee": self.renewal_fee,
            "education_fee": self.education_fee,
            "delivery_fee": self.delivery_fee,
            "subtotal": self.subtotal,
            "discount_amount": self.discount_amount,
            "total_amount": self.total_amount,
            "days_until_expiry": self.days_until_expiry,
            "calculated_at": self.calculated_at.isoformat(),
            "discounts": [
                {
                    "kind": d.kind.value,
                    "rate": str(d.rate),
                    "amount": d.amount,
                    "reason": d.reason,
                }
                for d in self.discounts
            ],
        }


# ─────────────────────── Files ───────────────────────


@dataclass(frozen=True, slots=True)
class CandidateFile:
    """A file offered by the user, not yet validated or uploaded."""

    name: str
    content_type: str
    content: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True, slots=True)
class StagedFile:
    """A validated file waiting in the draft for submission."""

    file: CandidateFile
    role: FileRole


@dataclass(frozen=True, slots=True)
class UploadedFile:
    """A file confirmed by object storage."""

    name: str
    size: int
    content_type: str
    role: FileRole
    path: str
    download_url: str

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "content_type": self.content_type,
            "role": self.role.value,
            "path": self.path,
            "download_url": self.download_url,
        }


@dataclass(frozen=True, slots=True)
class StoredBlob:
    """A blob listed from object storage."""

    path: str
    updated_at: datetime


# ─────────────────────── Draft and application ───────────────────────


@dataclass(frozen=True, slots=True)
class RecipientInfo:
    """Contact and delivery details entered on the options step."""

    name: str
    email: str
    phone: str
    cpe_hours: int
    agreed_to_terms: bool
    zipcode: str = ""
    address1: str = ""
    address2: str = ""

    def to_document(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "zipcode": self.zipcode,
            "address1": self.address1,
            "address2": self.address2,
        }


@dataclass(slots=True)
class RenewalDraft:
    """In-progress renewal form state. One per open workflow."""

    certificate: Certificate
    step: WorkflowStep = WorkflowStep.CERTIFICATE_SELECTED
    education_mode: EducationMode | None = None
    delivery_mode: DeliveryMode | None = None
    recipient: RecipientInfo | None = None
    staged_files: list[StagedFile] = field(default_factory=list)
    fees: FeeBreakdown | None = None
    fees_frozen: bool = False

    @property
    def progress(self) -> int:
        return self.step.progress

    def files_with_role(self, role: FileRole) -> list[StagedFile]:
        return [staged for staged in self.staged_files if staged.role is role]

    def release_files(self) -> None:
        self.staged_files.clear()


@dataclass(frozen=True, slots=True)
class RenewalApplication:
    """The persisted renewal application record."""

    id: str
    user_id: str
    user_email: str
    certificate_id: str
    cert_type: str
    cert_name: str
    certificate_number: str
    education_mode: EducationMode
    delivery_mode: DeliveryMode
    recipient: RecipientInfo
    fees: FeeBreakdown
    files: tuple[UploadedFile, ...]
    created_at: datetime
    status: ApplicationStatus = ApplicationStatus.PAYMENT_PENDING
    progress: int = 25

    @property
    def product_name(self) -> str:
        return f"{self.cert_name} renewal"

    def to_document(self) -> dict[str, Any]:
        return {
            "application_id": self.id,
            "type": "renewal",
            "user_id": self.user_id,
            "user_email": self.user_email,
            "certificate_id": self.certificate_id,
            "cert_type": self.cert_type,
            "cert_name": self.cert_name,
            "certificate_number": self.certificate_number,
            "product": self.product_name,
            "education_mode": self.education_mode.value,
            "delivery_mode": self.delivery_mode.value,
            "cpe_hours": self.recipient.cpe_hours,
            "recipient": self.recipient.to_document(),
            "fees": self.fees.to_document(),
            "total_amount": self.fees.total_amount,
            "files": [f.to_document() for f in self.files],
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class SubmissionReceipt:
    """What the caller needs to redirect the subject toward payment."""

    application_id: str
    product: str
    total_amount: int
