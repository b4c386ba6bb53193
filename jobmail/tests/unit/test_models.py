"""
Test pipeline record models: stage ordering and status monotonicity.
"""
import pytest

from jobmail.core.pipeline.models import (
    ClassificationRecord,
    ExitReason,
    InvalidStageTransition,
    JobEntity,
    JobStatus,
    PipelineStage,
)

from conftest import ts


class TestJobStatus:
    def test_priority_order(self):
        ordered = sorted(JobStatus, key=lambda s: s.priority)

        assert ordered == [JobStatus.APPLIED, JobStatus.INTERVIEW, JobStatus.OFFER, JobStatus.DECLINED]

    @pytest.mark.parametrize("value,expected", [
        ("Applied", JobStatus.APPLIED),
        ("interviewing", JobStatus.INTERVIEW),
        (" Rejected ", JobStatus.DECLINED),
        ("offer", JobStatus.OFFER),
        ("ghosted", None),
        (None, None),
    ])
    def test_parse(self, value, expected):
        assert JobStatus.parse(value) == expected


class TestClassificationRecord:
    def test_advance_forward(self):
        record = ClassificationRecord(message_id="m1")

        record.advance(PipelineStage.CLASSIFIED)
        record.advance(PipelineStage.CLASSIFIED)
        record.advance(PipelineStage.EXTRACTED)

        assert record.stage == PipelineStage.EXTRACTED

    def test_advance_backwards_rejected(self):
        record = ClassificationRecord(message_id="m1", stage=PipelineStage.EXTRACTED)

        with pytest.raises(InvalidStageTransition):
            record.advance(PipelineStage.CLASSIFIED)

    def test_exit_with_review_reason(self):
        record = ClassificationRecord(message_id="m1")

        record.exit(ExitReason.DIGEST, review_reason="uncertain_digest")

        assert record.is_terminal
        assert record.needs_review is True
        assert record.review_reason == "uncertain_digest"

    def test_in_job_is_terminal(self):
        record = ClassificationRecord(message_id="m1")
        assert not record.is_terminal

        record.advance(PipelineStage.IN_JOB)

        assert record.is_terminal

    def test_probability_bounds(self):
        with pytest.raises(ValueError):
            ClassificationRecord(message_id="m1", probability=1.2)


class TestJobEntityStatus:
    """Status only moves forward; every observation is kept"""

    def test_status_never_regresses(self):
        entity = JobEntity()
        entity.add_message("m1", ts(1))
        entity.observe_status(JobStatus.APPLIED, "m1", ts(1))

        assert entity.observe_status(JobStatus.INTERVIEW, "m2", ts(2)) is True
        assert entity.observe_status(JobStatus.APPLIED, "m3", ts(3)) is False
        assert entity.observe_status(JobStatus.DECLINED, "m4", ts(4)) is True
        assert entity.observe_status(JobStatus.OFFER, "m5", ts(5)) is False

        assert entity.status == JobStatus.DECLINED
        assert [h.applied for h in entity.status_history] == [True, True, False, True, False]

    def test_none_status_ignored(self):
        entity = JobEntity()

        assert entity.observe_status(None, "m1", ts(1)) is False
        assert entity.status_history == []

    def test_members_kept_in_time_order(self):
        entity = JobEntity()

        entity.add_message("late", ts(5))
        entity.add_message("early", ts(1))
        added_again = entity.add_message("late", ts(5))

        assert entity.message_ids == ["early", "late"]
        assert added_again is False
