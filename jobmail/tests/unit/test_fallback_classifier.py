"""
Test rule-based fallbacks used when the model times out or fails.
"""
import pytest

from jobmail.core.ai.fallback_classifier import FallbackClassifier
from jobmail.core.ai.models import JobDescriptor
from jobmail.core.pipeline.models import ConfidenceTier, JobStatus


class TestFallbackClassify:
    @pytest.fixture
    def fallback(self):
        return FallbackClassifier()

    def test_strong_signal_is_high_tier(self, fallback):
        result = fallback.classify("Thank you for applying", "We will review your resume.", error="timeout")

        assert result.is_job is True
        assert result.confidence_tier == ConfidenceTier.HIGH
        assert result.fallback_used is True
        assert result.error == "timeout"

    def test_keywords_only_is_medium(self, fallback):
        result = fallback.classify("Recruiter call", "Let's talk about the role.")

        assert result.is_job is True
        assert result.confidence_tier == ConfidenceTier.MEDIUM

    def test_marketing_is_not_job(self, fallback):
        result = fallback.classify("Spring sale", "Huge discount, unsubscribe anytime.")

        assert result.is_job is False
        assert result.confidence_tier == ConfidenceTier.MEDIUM

    def test_nothing_recognizable_is_low(self, fallback):
        result = fallback.classify("Lunch?", "Are you free on Friday?")

        assert result.is_job is False
        assert result.confidence_tier == ConfidenceTier.LOW


class TestFallbackExtract:
    @pytest.fixture
    def fallback(self):
        return FallbackClassifier()

    def test_company_from_sender_domain(self, fallback):
        result = fallback.extract(
            "Application for Data Engineer",
            "Thank you for applying.",
            "Stripe Recruiting <jobs@mail.stripe.com>",
        )

        assert result.employer == "Stripe"
        assert result.role == "Data Engineer"
        assert result.status == JobStatus.APPLIED
        assert result.confidence_tier == ConfidenceTier.HIGH

    def test_company_from_subject_when_sender_is_platform(self, fallback):
        result = fallback.extract(
            "Interview with Initech",
            "We'd like to schedule an interview.",
            "no-reply@greenhouse.io",
        )

        assert result.employer == "Initech"
        assert result.status == JobStatus.INTERVIEW

    def test_status_defaults_to_applied(self, fallback):
        result = fallback.extract("Hello", "Some text", "friend@gmail.com")

        assert result.status == JobStatus.APPLIED
        assert result.employer is None
        assert result.role is None
        assert result.confidence_tier == ConfidenceTier.LOW

    def test_rejection_status(self, fallback):
        result = fallback.extract(
            "Your application",
            "We regret to inform you that we will not move forward.",
            "careers@acme.com",
        )

        assert result.status == JobStatus.DECLINED


class TestFallbackMatch:
    @pytest.fixture
    def fallback(self):
        return FallbackClassifier()

    def test_abbreviation_matches(self, fallback):
        result = fallback.match(
            JobDescriptor(employer="Google", role="Software Engineer"),
            JobDescriptor(employer="Google LLC", role="SWE"),
        )

        assert result.same_job is True
        assert result.confidence_tier == ConfidenceTier.HIGH

    def test_different_companies_never_match(self, fallback):
        result = fallback.match(
            JobDescriptor(employer="Google", role="Software Engineer"),
            JobDescriptor(employer="Amazon", role="Software Engineer"),
        )

        assert result.same_job is False

    def test_different_roles_do_not_match(self, fallback):
        result = fallback.match(
            JobDescriptor(employer="Acme", role="Software Engineer"),
            JobDescriptor(employer="Acme", role="Account Manager"),
        )

        assert result.same_job is False

    def test_both_roles_unknown_match(self, fallback):
        result = fallback.match(JobDescriptor(employer="Acme"), JobDescriptor(employer="Acme"))

        assert result.same_job is True
        assert result.confidence_tier == ConfidenceTier.LOW

    def test_one_role_unknown_does_not_match(self, fallback):
        result = fallback.match(
            JobDescriptor(employer="Acme", role="Data Analyst"),
            JobDescriptor(employer="Acme"),
        )

        assert result.same_job is False
