"""
Human review of pipeline decisions.

approve / reject / correct are the only writes to a ClassificationRecord
outside the pipeline stages. Reviewed records are the training feedback for
the fast preclassifier.
"""
from typing import List, Optional
import logging

from jobmail.core.ai.preclassifier_training import TrainingSample
from .job_registry import JobRegistry
from .models import (
    ClassificationMethod,
    ClassificationRecord,
    ExitReason,
    JobStatus,
    PipelineStage,
    ReviewDecision,
    utcnow,
)
from .orphan_matcher import employer_key
from .state_store import PipelineStateStore

logger = logging.getLogger(__name__)


class RecordNotFound(LookupError):
    pass


class ReviewService:
    """Review queue operations for one account."""

    def __init__(self, store: PipelineStateStore, account: str = "default"):
        self.store = store
        self.account = account
        self._registry: Optional[JobRegistry] = None

    @property
    def registry(self) -> JobRegistry:
        if self._registry is None:
            self._registry = JobRegistry.load(self.store, self.account)
        return self._registry

    def pending(self) -> List[ClassificationRecord]:
        return self.store.list_needs_review(self.account)

    def approve(self, message_id: str, reviewer: str) -> ClassificationRecord:
        """Confirm the pipeline's decision as is."""
        record = self._load(message_id)
        self._mark(record, ReviewDecision.APPROVED, reviewer)
        self.store.upsert_classification(record)
        logger.info(f"Review: {reviewer} approved {message_id}")
        return record

    def reject(self, message_id: str, reviewer: str) -> ClassificationRecord:
        """
        Mark the message as not job-related.

        A job entity the message already belongs to keeps it; entities are
        never deleted.
        """
        record = self._load(message_id)
        record.is_job = False
        record.method = ClassificationMethod.HUMAN
        if record.job_id is None:
            record.exit_reason = ExitReason.NOT_JOB
        self._mark(record, ReviewDecision.REJECTED, reviewer)
        self.store.upsert_classification(record)
        logger.info(f"Review: {reviewer} rejected {message_id}")
        return record

    def correct(
        self,
        message_id: str,
        reviewer: str,
        employer: Optional[str] = None,
        role: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> ClassificationRecord:
        """
        Mark the message as job-related with the given extracted fields.

        A message without a job entity gets one; an existing entity takes the
        corrected employer and role, and the status is observed monotonically.
        """
        record = self._load(message_id)
        record.is_job = True
        record.method = ClassificationMethod.HUMAN
        record.probability = 1.0
        record.exit_reason = None
        record.employer = employer or record.employer
        record.role = role or record.role
        record.status = status or record.status or JobStatus.APPLIED

        received_at = record.received_at or utcnow()
        key = employer_key(record.employer, record.sender)
        entity = (self.registry.get(record.job_id) if record.job_id else None) or self.registry.owner_of(message_id)
        if entity is None:
            entity = self.registry.create(
                message_id,
                received_at,
                employer=record.employer,
                role=record.role,
                status=record.status,
                employer_key=key,
                conversation_id=record.conversation_id,
            )
        else:
            entity = self.registry.update_details(entity, employer=employer, role=role, employer_key=key)
            if status is not None:
                entity = self.registry.observe_status(entity, status, message_id, received_at)

        # Human review may place a record at any stage
        record.job_id = entity.id
        record.stage = PipelineStage.IN_JOB
        self._mark(record, ReviewDecision.CORRECTED, reviewer)
        self.store.upsert_classification(record)
        logger.info(f"Review: {reviewer} corrected {message_id} -> {record.employer} / {record.role}")
        return record

    def export_feedback(self) -> List[TrainingSample]:
        """Reviewed records as labelled samples for train_preclassifier."""
        samples = []
        for record in self.store.list_classifications(self.account):
            if record.review_decision is None:
                continue
            if record.review_decision == ReviewDecision.REJECTED:
                label = False
            else:
                label = bool(record.is_job)
            samples.append(TrainingSample(
                subject=record.subject,
                body=record.body_excerpt,
                sender=record.sender,
                is_job=label,
            ))
        logger.info(f"Exported {len(samples)} review samples for {self.account}")
        return samples

    def _load(self, message_id: str) -> ClassificationRecord:
        record = self.store.get_classification(message_id, self.account)
        if record is None:
            raise RecordNotFound(f"No classification for {message_id} in {self.account}")
        return record

    @staticmethod
    def _mark(record: ClassificationRecord, decision: ReviewDecision, reviewer: str) -> None:
        record.review_decision = decision
        record.reviewed_by = reviewer
        record.reviewed_at = utcnow()
        record.needs_review = False
        record.updated_at = utcnow()
