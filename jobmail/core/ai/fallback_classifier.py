"""
Rule-based fallbacks for the staged inference engine.

Used when a model call times out or fails. Every result is marked
fallback_used=True and carries a confidence tier.
"""
import re
from typing import Optional
import logging

from jobmail.core.email.job_signals import (
    clean_position_title,
    domain_to_company,
    extract_company_domain,
    normalize_company,
    normalize_job_title,
    status_hint,
    title_similarity,
)
from jobmail.core.pipeline.models import ConfidenceTier, JobStatus
from .config_constants import TITLE_SIMILARITY_THRESHOLD
from .models import ClassifyResult, ExtractResult, JobDescriptor, MatchResult

logger = logging.getLogger(__name__)

JOB_KEYWORDS = [
    "application", "interview", "position", "job", "career", "hiring",
    "resume", "candidate", "recruitment", "recruiter", "offer", "role",
    "employment", "opportunity", "screening", "onsite", "phone screen",
]

NON_JOB_KEYWORDS = [
    "newsletter", "unsubscribe", "marketing", "promotion", "sale",
    "discount", "webinar", "conference", "announcement", "blog", "article",
]

_STRONG_JOB = re.compile(
    r"thank(s| you) for applying|your application|application (received|submitted)|"
    r"regret to inform|offer letter|interview (invitation|request)|invite you to interview",
    re.IGNORECASE,
)

_SUBJECT_COMPANY = [re.compile(p, re.IGNORECASE) for p in [
    r"^(.+?)\s*[-:|]\s*(?:job|position|application|interview)",
    r"application (?:at|to|with)\s+(.+?)$",
    r"position at\s+(.+?)$",
    r"interview with\s+(.+?)$",
    r"thank you for (?:applying|your interest) (?:to|in|at)\s+(.+?)$",
]]

_BODY_COMPANY = [re.compile(p, re.IGNORECASE) for p in [
    r"thank you for applying to\s+(.+?)\s+for",
    r"thank you for your interest in\s+(.+?)[.,!\n]",
    r"position at\s+(.+?)[\s.,]",
    r"join\s+(.+?)\s+as",
    r"opportunity at\s+(.+?)[\s.,]",
    r"^\s*(?:the\s+)?(.+?)\s+(?:recruiting|talent acquisition|hiring) team\s*$",
]]

_SUBJECT_POSITION = [re.compile(p, re.IGNORECASE) for p in [
    r"application for\s+(?:the\s+)?(.+?)(?:\s+(?:at|with)\s+.+)?$",
    r"re:\s*(.+?)\s*[-–—]\s*application",
    r"(?:position|role):\s*(.+?)$",
    r"^(.+?)\s*[-–—]\s*(?:application|interview|position)",
]]

_BODY_POSITION = [re.compile(p, re.IGNORECASE) for p in [
    r"applying for (?:the\s+)?(.+?)\s+(?:position|role)",
    r"application for (?:the\s+)?(.+?)\s+(?:position|role)",
    r"interested in (?:the\s+)?(.+?)\s+(?:position|role)",
    r"for the (.+?) (?:position|role)",
]]


class FallbackClassifier:
    """Keyword, signature and domain-pattern rules standing in for the model."""

    def __init__(self, title_similarity_threshold: float = TITLE_SIMILARITY_THRESHOLD):
        self.title_similarity_threshold = title_similarity_threshold

    def classify(self, subject: str, body: str, sender: str = "", error: Optional[str] = None) -> ClassifyResult:
        combined = f"{subject} {body}".lower()
        job_hits = sum(1 for k in JOB_KEYWORDS if k in combined)
        non_job_hits = sum(1 for k in NON_JOB_KEYWORDS if k in combined)
        strong = bool(_STRONG_JOB.search(combined))

        if strong:
            is_job, tier = True, ConfidenceTier.HIGH
        elif job_hits and not non_job_hits:
            is_job = True
            tier = ConfidenceTier.MEDIUM if job_hits >= 2 else ConfidenceTier.LOW
        else:
            is_job = False
            tier = ConfidenceTier.MEDIUM if non_job_hits else ConfidenceTier.LOW

        logger.debug(f"Fallback classify: is_job={is_job} tier={tier.value} (job={job_hits}, non_job={non_job_hits})")
        return ClassifyResult(is_job=is_job, fallback_used=True, confidence_tier=tier, error=error)

    def extract(self, subject: str, body: str, sender: str = "", error: Optional[str] = None) -> ExtractResult:
        employer = self.extract_company(subject, body, sender)
        role = self.extract_position(subject, body)
        status = status_hint(subject, body) or JobStatus.APPLIED

        if employer and role:
            tier = ConfidenceTier.HIGH if status_hint(subject, body) else ConfidenceTier.MEDIUM
        elif employer or role:
            tier = ConfidenceTier.MEDIUM
        else:
            tier = ConfidenceTier.LOW

        return ExtractResult(
            employer=employer,
            role=role,
            status=status,
            fallback_used=True,
            confidence_tier=tier,
            error=error,
        )

    def match(self, job_a: JobDescriptor, job_b: JobDescriptor, error: Optional[str] = None) -> MatchResult:
        company_a = normalize_company(job_a.employer)
        company_b = normalize_company(job_b.employer)
        if company_a and company_b and company_a != company_b:
            return MatchResult(same_job=False, fallback_used=True, confidence_tier=ConfidenceTier.MEDIUM, error=error)

        title_a = normalize_job_title(job_a.role)
        title_b = normalize_job_title(job_b.role)
        if not title_a and not title_b:
            return MatchResult(same_job=True, fallback_used=True, confidence_tier=ConfidenceTier.LOW, error=error)
        if not title_a or not title_b:
            return MatchResult(same_job=False, fallback_used=True, confidence_tier=ConfidenceTier.LOW, error=error)

        if title_a == title_b:
            return MatchResult(same_job=True, fallback_used=True, confidence_tier=ConfidenceTier.HIGH, error=error)

        similarity = title_similarity(job_a.role, job_b.role)
        same = similarity > self.title_similarity_threshold
        tier = ConfidenceTier.MEDIUM if same or similarity < 0.3 else ConfidenceTier.LOW
        return MatchResult(same_job=same, fallback_used=True, confidence_tier=tier, error=error)

    @staticmethod
    def extract_company(subject: str, body: str, sender: str) -> Optional[str]:
        domain = extract_company_domain(sender)
        if domain:
            return domain_to_company(domain)

        for pattern in _SUBJECT_COMPANY:
            match = pattern.search(subject or "")
            if match:
                company = match.group(1).strip(" .,!-")
                if 1 < len(company) < 50:
                    return company

        for pattern in _BODY_COMPANY:
            match = pattern.search(body or "")
            if match:
                company = match.group(1).strip(" .,!-")
                if 1 < len(company) < 50:
                    return company
        return None

    @staticmethod
    def extract_position(subject: str, body: str) -> Optional[str]:
        for pattern in _SUBJECT_POSITION:
            match = pattern.search(subject or "")
            if match:
                position = match.group(1).strip()
                if 2 < len(position) < 100:
                    return clean_position_title(position)

        for pattern in _BODY_POSITION:
            match = pattern.search(body or "")
            if match:
                position = match.group(1).strip()
                if 2 < len(position) < 100:
                    return clean_position_title(position)
        return None
