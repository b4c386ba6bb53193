"""
Pipeline state models.

ClassificationRecord and JobEntity are explicit typed records with a fixed
field set. Stage transitions and status changes go through methods that
enforce ordering rather than ad-hoc attribute writes.
"""
from pydantic import BaseModel, Field
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, List
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Application status, ordered by priority"""
    APPLIED = "Applied"
    INTERVIEW = "Interview"
    OFFER = "Offer"
    DECLINED = "Declined"

    @property
    def priority(self) -> int:
        return _STATUS_PRIORITY[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["JobStatus"]:
        """Lenient parse of model/rule output ('rejected' -> Declined)."""
        if not value:
            return None
        key = str(value).strip().lower()
        return _STATUS_ALIASES.get(key)


_STATUS_PRIORITY = {
    JobStatus.APPLIED: 1,
    JobStatus.INTERVIEW: 2,
    JobStatus.OFFER: 3,
    JobStatus.DECLINED: 4,
}

_STATUS_ALIASES = {
    "applied": JobStatus.APPLIED,
    "application": JobStatus.APPLIED,
    "submitted": JobStatus.APPLIED,
    "interview": JobStatus.INTERVIEW,
    "interviewing": JobStatus.INTERVIEW,
    "screening": JobStatus.INTERVIEW,
    "offer": JobStatus.OFFER,
    "offered": JobStatus.OFFER,
    "declined": JobStatus.DECLINED,
    "rejected": JobStatus.DECLINED,
    "rejection": JobStatus.DECLINED,
    "withdrawn": JobStatus.DECLINED,
}


class PipelineStage(str, Enum):
    """Per-message pipeline stage, in processing order"""
    FETCHED = "fetched"
    CLASSIFIED = "classified"
    READY_FOR_EXTRACTION = "ready_for_extraction"
    EXTRACTED = "extracted"
    IN_JOB = "in_job"

    @property
    def order(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = [
    PipelineStage.FETCHED,
    PipelineStage.CLASSIFIED,
    PipelineStage.READY_FOR_EXTRACTION,
    PipelineStage.EXTRACTED,
    PipelineStage.IN_JOB,
]


class ClassificationMethod(str, Enum):
    DIGEST_FILTER = "digest_filter"
    FAST_PRECLASSIFIER = "fast_preclassifier"
    STAGED_MODEL = "staged_model"
    HUMAN = "human"


class ExitReason(str, Enum):
    """Why a message left the pipeline before reaching a job"""
    DIGEST = "digest"
    LOW_CONFIDENCE = "low_confidence"
    NOT_JOB = "not_job"
    ERROR = "error"


class ConfidenceTier(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    CORRECTED = "corrected"


class InvalidStageTransition(ValueError):
    """Raised when a record would move backwards through the pipeline"""
    pass


class ClassificationRecord(BaseModel):
    """Per-message pipeline state. One record per (message_id, account)."""
    message_id: str
    account: str = "default"
    conversation_id: Optional[str] = None
    subject: str = ""
    sender: str = ""
    received_at: Optional[datetime] = None
    body_excerpt: str = Field("", description="Leading body text kept for review and training export")

    stage: PipelineStage = PipelineStage.FETCHED
    method: Optional[ClassificationMethod] = None
    probability: float = Field(0.0, ge=0.0, le=1.0)
    needs_review: bool = False
    review_reason: Optional[str] = None
    exit_reason: Optional[ExitReason] = None

    is_digest: bool = False
    digest_reason: Optional[str] = None
    digest_confidence: Optional[float] = None

    is_job: Optional[bool] = None
    employer: Optional[str] = None
    role: Optional[str] = None
    status: Optional[JobStatus] = None
    fallback_used: bool = False
    confidence_tier: Optional[ConfidenceTier] = None
    job_id: Optional[str] = None
    inherited_from: Optional[str] = Field(None, description="Representative message id for thread members")

    review_decision: Optional[ReviewDecision] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    updated_at: datetime = Field(default_factory=utcnow)

    def advance(self, stage: PipelineStage) -> None:
        """Move forward to `stage`. Staying put is allowed, moving back is not."""
        if stage.order < self.stage.order:
            raise InvalidStageTransition(
                f"{self.message_id}: cannot move from {self.stage.value} to {stage.value}"
            )
        self.stage = stage
        self.updated_at = utcnow()

    def exit(self, reason: ExitReason, review_reason: Optional[str] = None) -> None:
        self.exit_reason = reason
        if review_reason:
            self.needs_review = True
            self.review_reason = review_reason
        self.updated_at = utcnow()

    @property
    def is_terminal(self) -> bool:
        return self.exit_reason is not None or self.stage == PipelineStage.IN_JOB


class StatusObservation(BaseModel):
    """One status seen on one message, whether or not it advanced the entity"""
    status: JobStatus
    message_id: str
    observed_at: datetime
    applied: bool = Field(..., description="True when this observation advanced the entity status")


class JobMember(BaseModel):
    message_id: str
    received_at: datetime


class JobEntity(BaseModel):
    """A deduplicated job application built from one or more messages."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    account: str = "default"
    employer: Optional[str] = None
    employer_key: Optional[str] = None
    role: Optional[str] = None
    status: JobStatus = JobStatus.APPLIED
    conversation_id: Optional[str] = None
    members: List[JobMember] = Field(default_factory=list)
    status_history: List[StatusObservation] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def message_ids(self) -> List[str]:
        return [m.message_id for m in self.members]

    def has_message(self, message_id: str) -> bool:
        return any(m.message_id == message_id for m in self.members)

    def add_message(self, message_id: str, received_at: datetime) -> bool:
        """Insert keeping time order. Returns False if already a member."""
        if self.has_message(message_id):
            return False
        self.members.append(JobMember(message_id=message_id, received_at=received_at))
        self.members.sort(key=lambda m: m.received_at)
        self.updated_at = utcnow()
        return True

    def observe_status(self, status: Optional[JobStatus], message_id: str, observed_at: datetime) -> bool:
        """
        Record a status seen on a message.

        The entity status only moves forward by priority. Lower-priority
        observations are kept in history with applied=False.

        Returns:
            True if the entity status advanced
        """
        if status is None:
            return False
        advanced = status.priority > self.status.priority
        if advanced:
            self.status = status
            self.updated_at = utcnow()
        self.status_history.append(StatusObservation(
            status=status,
            message_id=message_id,
            observed_at=observed_at,
            applied=advanced or (not self.status_history and status == self.status),
        ))
        return advanced


class ProgressEvent(BaseModel):
    stage: str
    processed_count: int
    total_count: int


class ActivityEvent(BaseModel):
    message: str
    level: str = "info"


class SyncSummary(BaseModel):
    total: int = 0
    classified: int = 0
    digest_filtered: int = 0
    needs_review: int = 0
    skipped_duplicate: int = 0
    not_job: int = 0
    errors: int = 0
    fallback_used: int = 0
    job_entities_created: int = 0
    job_entities_updated: int = 0
    cancelled: bool = False
