"""
Test human review operations and feedback export.
"""
import pytest

from jobmail.core.pipeline.job_registry import JobRegistry
from jobmail.core.pipeline.models import (
    ClassificationMethod,
    ClassificationRecord,
    ExitReason,
    JobStatus,
    PipelineStage,
    ReviewDecision,
)
from jobmail.core.pipeline.review import RecordNotFound, ReviewService

from conftest import ts


def _record(message_id, **kwargs):
    defaults = dict(
        message_id=message_id,
        subject="Your application to Acme",
        sender="Acme Careers <careers@acme.com>",
        received_at=ts(1),
        body_excerpt="Thank you for applying to Acme.",
        probability=0.65,
        needs_review=True,
        review_reason="preclassifier_uncertain",
    )
    defaults.update(kwargs)
    return ClassificationRecord(**defaults)


class TestReviewService:
    @pytest.fixture
    def service(self, memory_store):
        return ReviewService(memory_store)

    def test_pending_lists_unreviewed(self, service, memory_store):
        memory_store.upsert_classification(_record("m1"))
        memory_store.upsert_classification(_record("m2", needs_review=False))

        assert [r.message_id for r in service.pending()] == ["m1"]

    def test_approve(self, service, memory_store):
        memory_store.upsert_classification(_record("m1"))

        record = service.approve("m1", "alex")

        stored = memory_store.get_classification("m1", "default")
        assert stored.review_decision == ReviewDecision.APPROVED
        assert stored.reviewed_by == "alex"
        assert stored.reviewed_at is not None
        assert stored.needs_review is False
        assert record.review_decision == ReviewDecision.APPROVED
        assert service.pending() == []

    def test_reject_marks_not_job(self, service, memory_store):
        memory_store.upsert_classification(_record("m1", stage=PipelineStage.EXTRACTED, is_job=True))

        service.reject("m1", "alex")

        stored = memory_store.get_classification("m1", "default")
        assert stored.is_job is False
        assert stored.method == ClassificationMethod.HUMAN
        assert stored.exit_reason == ExitReason.NOT_JOB
        assert stored.review_decision == ReviewDecision.REJECTED

    def test_reject_keeps_entity_membership(self, service, memory_store):
        entity = JobRegistry(memory_store).create("m1", ts(1), employer="Acme")
        memory_store.upsert_classification(_record("m1", job_id=entity.id, stage=PipelineStage.IN_JOB))

        service.reject("m1", "alex")

        stored = memory_store.get_classification("m1", "default")
        assert stored.job_id == entity.id
        assert stored.exit_reason is None
        assert memory_store.list_job_entities("default")[0].message_ids == ["m1"]

    def test_correct_creates_entity(self, service, memory_store):
        not_job = _record("m1", is_job=False, exit_reason=ExitReason.NOT_JOB)
        memory_store.upsert_classification(not_job)

        record = service.correct("m1", "alex", employer="Acme", role="Data Engineer", status=JobStatus.INTERVIEW)

        entities = memory_store.list_job_entities("default")
        assert len(entities) == 1
        assert entities[0].employer == "Acme"
        assert entities[0].employer_key == "acme"
        assert entities[0].status == JobStatus.INTERVIEW
        assert record.job_id == entities[0].id
        assert record.is_job is True
        assert record.method == ClassificationMethod.HUMAN
        assert record.probability == 1.0
        assert record.exit_reason is None
        assert record.stage == PipelineStage.IN_JOB
        assert record.review_decision == ReviewDecision.CORRECTED

    def test_correct_updates_existing_entity(self, service, memory_store):
        registry = JobRegistry(memory_store)
        entity = registry.create("m1", ts(1), employer="Acme", role="Engineer", employer_key="acme")
        registry.merge_message(entity, "m2", ts(2), JobStatus.INTERVIEW)
        memory_store.upsert_classification(_record("m2", job_id=entity.id, stage=PipelineStage.IN_JOB))

        service.correct("m2", "alex", role="Backend Engineer", status=JobStatus.APPLIED)

        updated = memory_store.list_job_entities("default")[0]
        assert updated.role == "Backend Engineer"
        assert updated.status == JobStatus.INTERVIEW
        assert updated.status_history[-1].status == JobStatus.APPLIED
        assert updated.status_history[-1].applied is False

    def test_unknown_message(self, service):
        with pytest.raises(RecordNotFound):
            service.approve("missing", "alex")

    def test_export_feedback(self, service, memory_store):
        memory_store.upsert_classification(_record("approved", is_job=True))
        memory_store.upsert_classification(_record("rejected", is_job=True))
        memory_store.upsert_classification(_record("unreviewed", is_job=True))
        service.approve("approved", "alex")
        service.reject("rejected", "alex")

        samples = service.export_feedback()

        assert sorted((s.subject, s.is_job) for s in samples) == [
            ("Your application to Acme", False),
            ("Your application to Acme", True),
        ]
        assert all(s.body == "Thank you for applying to Acme." for s in samples)
