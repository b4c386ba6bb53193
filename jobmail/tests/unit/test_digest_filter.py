"""
Test digest / newsletter detection.
"""
import pytest

from jobmail.core.email.digest_filter import DigestFilter


class TestDigestDetection:
    """Reliable digest patterns must never slip through"""

    @pytest.fixture
    def digest_filter(self):
        return DigestFilter()

    @pytest.mark.parametrize("subject,sender", [
        ("Weekly Job Alert: 10 new jobs", "alerts@jobsite.example"),
        ("Your Job Alert matched 5 new jobs", "alerts@careers.example"),
        ("25 new jobs for Software Engineer", "noreply@boards.example"),
        ("Recommended jobs for you", "hello@talent.example"),
        ("Jobs you might be interested in", "team@example.org"),
        ("Acme is hiring: Senior Data Scientist", "noreply@example.net"),
        ("The Weekly Roundup", "editor@news.example"),
    ])
    def test_digest_subjects(self, digest_filter, subject, sender):
        decision = digest_filter.detect(subject, sender, "")

        assert decision.is_digest is True
        assert decision.confidence >= 0.8

    @pytest.mark.parametrize("sender", [
        "LinkedIn <notifications-noreply@linkedin.com>",
        "jobalerts-noreply@linkedin.com",
        "Indeed <donotreply@match.indeed.com>",
    ])
    def test_special_senders(self, digest_filter, sender):
        decision = digest_filter.detect("Thank you for your application", sender, "")

        assert decision.is_digest is True
        assert decision.reason.startswith("special_sender:")
        assert decision.confidence == 0.99

    def test_application_confirmation_whitelisted(self, digest_filter):
        decision = digest_filter.detect(
            "Thank you for applying to Acme",
            "Acme Careers <careers@acme.com>",
            "We received your application for the Software Engineer role.",
        )

        assert decision.is_digest is False
        assert decision.reason == "application_confirmation"

    def test_job_board_domain(self, digest_filter):
        decision = digest_filter.detect("Top picks this week", "alerts@ziprecruiter.com", "")

        assert decision.is_digest is True
        assert decision.reason == "digest_domain:ziprecruiter.com"

    def test_job_board_application_mail_kept(self, digest_filter):
        decision = digest_filter.detect(
            "Update from Acme",
            "noreply@dice.com",
            "Acme uses Greenhouse to manage applicants. A recruiter will reach out.",
        )

        assert decision.is_digest is False
        assert decision.reason == "application_email_from_job_board"

    def test_mixed_domain_digest_pattern(self, digest_filter):
        decision = digest_filter.detect("Jobs near you", "jobs-listings@linkedin.com", "")

        assert decision.is_digest is True
        assert decision.reason == "mixed_domain_digest_pattern"

    def test_mixed_domain_personal_mail_kept(self, digest_filter):
        decision = digest_filter.detect(
            "Your application was sent to Acme",
            "jobs-noreply@linkedin.com",
            "",
        )

        assert decision.is_digest is False

    def test_newsletter_platform(self, digest_filter):
        decision = digest_filter.detect("Thoughts on remote work", "author@writer.substack.com", "")

        assert decision.is_digest is True
        assert decision.reason == "newsletter_platform"

    def test_body_patterns(self, digest_filter):
        body = (
            "Here are the latest jobs picked for you.\n"
            "View all jobs on our site.\n"
            "Unsubscribe | Manage your alerts"
        )

        decision = digest_filter.detect("Hello from the team", "team@example.org", body)

        assert decision.is_digest is True
        assert decision.reason == "digest_body_patterns"

    def test_ordinary_mail_not_digest(self, digest_filter):
        decision = digest_filter.detect("Lunch on Friday?", "friend@example.org", "Are you free?")

        assert decision == (False, "no_digest_signals", 0.0)

    def test_missing_fields_never_raise(self, digest_filter):
        decision = digest_filter.detect(None, None, None)

        assert decision.is_digest is False


class TestDigestBatch:
    """Test batch statistics"""

    def test_detect_batch_counts(self):
        digest_filter = DigestFilter()
        messages = [
            ("Weekly Job Alert: 10 new jobs", "alerts@jobsite.example", ""),
            ("Thank you for applying", "careers@acme.com", ""),
            ("Deals", "alerts@ziprecruiter.com", ""),
            ("Lunch?", "friend@example.org", ""),
        ]

        decisions, stats = digest_filter.detect_batch(messages)

        assert [d.is_digest for d in decisions] == [True, False, True, False]
        assert stats.total == 4
        assert stats.digests == 2
        assert stats.kept == 2
        assert stats.by_reason["digest_domain"] == 1
        assert stats.by_reason["digest_subject_pattern"] == 1

    def test_empty_batch(self):
        decisions, stats = DigestFilter().detect_batch([])

        assert decisions == []
        assert stats.total == 0
