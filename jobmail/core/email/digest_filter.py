"""
Digest / newsletter detection.

Rule-based pre-filter that removes job-alert digests, newsletters and
marketing mail before any inference runs. Rules are ordered by reliability
and the first match wins. Application mail (confirmations, interviews,
offers, rejections) is whitelisted ahead of every domain rule.
"""
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, NamedTuple, Tuple
import logging

from jobmail.core.ai.config_constants import DIGEST_BODY_SCAN_CHARS

logger = logging.getLogger(__name__)


class DigestDecision(NamedTuple):
    is_digest: bool
    reason: str
    confidence: float


# Senders that never carry a personal application
SPECIAL_DIGEST_SENDERS = (
    "notifications-noreply@linkedin.com",
    "donotreply@match.indeed.com",
    "jobalerts-noreply@linkedin.com",
)

# Job boards and aggregators that only send digests
DIGEST_DOMAINS = [
    "monster.com", "ziprecruiter.com", "careerbuilder.com", "dice.com",
    "angel.co", "angellist.com", "hired.com", "stackoverflow.email",
    "remoteok.io", "weworkremotely.com", "flexjobs.com", "themuse.com",
    "idealist.org", "usajobs.gov", "simplyhired.com", "snagajob.com",
    "builtin.com", "tldrnewsletter.com", "match.indeed.com",
]

# Send both digests and genuine application mail
MIXED_DOMAINS = ["linkedin.com", "indeed.com", "glassdoor.com"]

NEWSLETTER_PLATFORMS = [
    "substack.com", "beehiiv.com", "convertkit.com", "mailchimp.com",
    "sendgrid.net", "ccsend.com", "klaviyo.com", "getresponse.com",
    "constantcontact.com", "mailerlite.com",
]

DIGEST_SUBJECT_PATTERNS = [re.compile(p, re.IGNORECASE) for p in [
    # Bulk job listings
    r"^\d+ (new )?jobs?",
    r"new jobs(?! (at|with) (the|my|our|your))",
    r"and \d+ more (new )?jobs?",
    r"new (positions|openings)",
    r"(available|open) positions",
    r"job openings",
    r"recommended jobs?",
    r"jobs? (you might|you may) (like|be interested)",
    r"jobs? (that match|matching your|based on your|for you)",
    r"matched jobs?",
    r"similar jobs?",
    r"jobs? alerts?",
    r"job digest",
    r"(weekly|daily) jobs?",
    r"jobs? (newsletter|roundup)",
    r"latest jobs?",
    r"(new|available|career) opportunities",
    r"new jobs? in",
    r"jobs? near",
    # Newsletters
    r"newsletter",
    r"(weekly|daily|monthly) digest",
    r"\bweekly\b",
    r"career (insights?|tips|advice|growth)",
    r"job search (tips|advice|strategies)",
    r"salary (negotiation|insights?)",
    # Marketing and visibility notifications
    r"(unlock|boost) your",
    r"don.?t miss (this|out)",
    r"(last chance|limited time)",
    r"(companies|.+) (are|is) hiring",
    r"is looking for",
    r"profile.?views?",
    r"who.?s viewed your",
    r"you appeared in \d+ search",
    r"apply now to",
    r"(see|view) jobs at",
    r"explore opportunities at",
    r"check out (these |the )?jobs",
]]

DIGEST_BODY_PATTERNS = [re.compile(p, re.IGNORECASE) for p in [
    r"view all jobs?",
    r"see more jobs?",
    r"browse (more|all)",
    r"explore (opportunities|jobs)",
    r"view \d+ (more|similar)",
    r"unsubscribe",
    r"manage (your )?(job |email )?alerts?",
    r"update your preferences",
    r"email preferences",
    r"(job )?recommendations based on",
    r"we found \d+ (jobs?|opportunities)",
    r"here are (some |the )?(latest |new )?jobs?",
    r"check out these",
    r"top picks for",
    r"curated (for you|based on)",
    r"personalized (recommendations|jobs)",
    r"matches your (profile|skills|experience)",
    r"discover more opportunities",
    r"view (this )?(email )?in (your )?browser",
    r"forward this (email|newsletter)",
    r"why did (i|you) (get|receive) this",
]]

# Strong subject-only signals of a personal application thread
APPLICATION_SUBJECT_PATTERNS = [re.compile(p, re.IGNORECASE) for p in [
    r"your application",
    r"application (to|for|at|was|has been|status|update)",
    r"thank you for (your )?(application|applying|interest)",
    r"regarding your (application|candidacy)",
    r"interview",
    r"(job |employment )?offer\b",
    r"next steps",
    r"assessment",
    r"coding challenge",
    r"take.?home",
    r"(background|reference) check",
    r"we (have )?received your",
]]

# Subject + body signals (body limited to the first 1000 chars)
APPLICATION_PATTERNS = [re.compile(p, re.IGNORECASE) for p in [
    r"application (was |has been )?(sent|submitted|received)",
    r"thank you for (your )?application",
    r"thank you for applying",
    r"we (have )?received your (application|resume|submission)",
    r"successfully applied",
    r"status of your application",
    r"reviewed your (application|resume)",
    r"schedule.{0,20}interview",
    r"invite you to interview",
    r"confirm your interview",
    r"\byour interview\b",
    r"offer letter",
    r"advanced to the next",
    r"regret to inform",
    r"(not|won.?t) (be )?(selected|moving forward|proceeding)",
    r"position has been filled",
    r"decided to (move|go|proceed)",
]]

ATS_PATTERNS = [re.compile(p, re.IGNORECASE) for p in [
    r"greenhouse", r"\blever\b", r"workday", r"taleo", r"icims", r"jobvite",
    r"bamboohr", r"smartrecruiters", r"ashbyhq", r"breezy", r"recruitee",
]]


@dataclass
class DigestBatchStats:
    """Counts for a batch of digest decisions"""
    total: int = 0
    digests: int = 0
    kept: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)


class DigestFilter:
    """Rule-based digest detector. Never raises."""

    def __init__(self, body_scan_chars: int = DIGEST_BODY_SCAN_CHARS):
        self.body_scan_chars = body_scan_chars

    def detect(self, subject: str, sender: str, body: str) -> DigestDecision:
        """
        Decide whether a message is a digest.

        Args:
            subject: Message subject
            sender: Sender header or bare address
            body: Plaintext body

        Returns:
            DigestDecision(is_digest, reason, confidence)
        """
        try:
            return self._detect(subject or "", (sender or "").lower(), body or "")
        except Exception as e:
            logger.warning(f"Digest detection failed for subject '{(subject or '')[:60]}': {e}")
            return DigestDecision(False, "error", 0.0)

    def _detect(self, subject: str, sender: str, body: str) -> DigestDecision:
        for special in SPECIAL_DIGEST_SENDERS:
            if special in sender:
                return DigestDecision(True, f"special_sender:{special}", 0.99)

        if self.is_application_email(subject, body):
            return DigestDecision(False, "application_confirmation", 1.0)

        domain = self._extract_domain(sender)

        if self._matches_domain(domain, NEWSLETTER_PLATFORMS) and not self.has_application_signals(subject, body):
            return DigestDecision(True, "newsletter_platform", 0.95)

        if self._matches_domain(domain, MIXED_DOMAINS):
            pattern = self._first_subject_pattern(subject)
            if pattern and not self.has_application_signals(subject, body):
                logger.debug(f"Mixed domain {domain} matched digest pattern {pattern}")
                return DigestDecision(True, "mixed_domain_digest_pattern", 0.85)

        if self._matches_domain(domain, DIGEST_DOMAINS):
            if self.has_application_signals(subject, body):
                return DigestDecision(False, "application_email_from_job_board", 1.0)
            return DigestDecision(True, f"digest_domain:{domain}", 0.95)

        if self._first_subject_pattern(subject):
            return DigestDecision(True, "digest_subject_pattern", 0.9)

        scanned = body[:self.body_scan_chars]
        body_hits = sum(1 for p in DIGEST_BODY_PATTERNS if p.search(scanned))
        if body_hits >= 2:
            return DigestDecision(True, "digest_body_patterns", 0.85)

        return DigestDecision(False, "no_digest_signals", 0.0)

    def detect_batch(self, messages: Iterable[Tuple[str, str, str]]) -> Tuple[List[DigestDecision], DigestBatchStats]:
        """Run detect over (subject, sender, body) triples and collect counts."""
        decisions = [self.detect(*message) for message in messages]
        by_reason = Counter(d.reason.split(":", 1)[0] for d in decisions)
        digests = sum(1 for d in decisions if d.is_digest)
        stats = DigestBatchStats(
            total=len(decisions),
            digests=digests,
            kept=len(decisions) - digests,
            by_reason=dict(by_reason),
        )
        return decisions, stats

    def is_application_email(self, subject: str, body: str) -> bool:
        if any(p.search(subject) for p in APPLICATION_SUBJECT_PATTERNS):
            return True
        content = f"{subject} {body[:1000]}"
        return any(p.search(content) for p in APPLICATION_PATTERNS)

    def has_application_signals(self, subject: str, body: str) -> bool:
        content = f"{subject} {body[:500]}"
        if any(p.search(content) for p in ATS_PATTERNS):
            return True
        return self.is_application_email(subject, body)

    @staticmethod
    def _first_subject_pattern(subject: str):
        for pattern in DIGEST_SUBJECT_PATTERNS:
            if pattern.search(subject):
                return pattern.pattern
        return None

    @staticmethod
    def _extract_domain(sender: str) -> str:
        match = re.search(r"<([^>]+)>", sender)
        address = (match.group(1) if match else sender).strip()
        return address.split("@", 1)[1].strip(" >") if "@" in address else ""

    @staticmethod
    def _matches_domain(domain: str, candidates: List[str]) -> bool:
        if not domain:
            return False
        return any(domain == c or domain.endswith("." + c) for c in candidates)
