"""
Job signal helpers shared by the filter, fallback and matching layers.

- Company domain extraction from sender addresses
- Company name and job title normalization
- Title similarity (token Jaccard after normalization)
- Status hints and decision-phrase indicators
"""
import re
from typing import Optional

from jobmail.core.pipeline.models import JobStatus

# Free-mail providers never identify an employer
FREE_MAIL_DOMAINS = {
    "gmail.com", "googlemail.com", "yahoo.com", "outlook.com", "hotmail.com",
    "live.com", "icloud.com", "me.com", "aol.com", "proton.me", "protonmail.com",
}

# Job boards and applicant tracking systems send on behalf of many employers
HIRING_PLATFORM_DOMAINS = {
    "linkedin.com", "indeed.com", "glassdoor.com", "ziprecruiter.com",
    "greenhouse.io", "lever.co", "myworkday.com", "myworkdayjobs.com",
    "workday.com", "smartrecruiters.com", "icims.com", "jobvite.com",
    "ashbyhq.com", "bamboohr.com", "taleo.net", "successfactors.com",
    "recruitee.com", "workable.com", "breezy.hr", "jazzhr.com",
    "dice.com", "monster.com", "wellfound.com", "hired.com",
}

_MAIL_SUBDOMAINS = {"mail", "email", "careers", "jobs", "recruiting", "hire", "talent", "hr", "us", "notifications"}

_COMPANY_SUFFIX = re.compile(
    r"[,\s]+(inc|incorporated|llc|l\.l\.c|ltd|limited|corp|corporation|co|company|gmbh|ag|plc|sa)\.?$",
    re.IGNORECASE,
)

_SENIORITY = re.compile(r"\b(sr|jr|senior|junior|lead|principal|staff|intern)\b")
_ROMAN = re.compile(r"\b(i{1,3}|iv|v|vi{1,3}|ix|x)\b")
_NUMBERS = re.compile(r"\b\d+\b")
_PUNCT = re.compile(r"[^\w\s]")

# Abbreviations expanded before title comparison
TITLE_ABBREVIATIONS = {
    "swe": "software engineer",
    "sde": "software engineer",
    "sre": "site reliability engineer",
    "sw": "software",
    "eng": "engineer",
    "engr": "engineer",
    "dev": "developer",
    "mgr": "manager",
    "pm": "product manager",
    "tpm": "technical program manager",
    "em": "engineering manager",
    "ds": "data scientist",
    "ml": "machine learning",
    "mle": "machine learning engineer",
    "ai": "artificial intelligence",
    "qa": "quality assurance",
    "ux": "user experience",
    "fe": "frontend",
}

STATUS_PHRASES = {
    JobStatus.OFFER: [
        r"pleased to offer",
        r"offer letter",
        r"job offer",
        r"extend(ing)? (you )?an offer",
        r"compensation package",
    ],
    JobStatus.DECLINED: [
        r"regret to inform",
        r"not (be )?mov(e|ing) forward",
        r"moving forward with other candidates",
        r"pursue other candidates",
        r"decided to move forward with",
        r"decided not to proceed",
        r"not been selected",
        r"not selected",
        r"position has been filled",
        r"no longer under consideration",
        r"unfortunately",
    ],
    JobStatus.INTERVIEW: [
        r"interview",
        r"phone screen",
        r"schedule a (call|time|meeting)",
        r"your availability",
        r"next steps?",
        r"video call",
        r"passed.*assessment",
        r"meet with",
    ],
    JobStatus.APPLIED: [
        r"received your application",
        r"thanks? (you )?for applying",
        r"submitted your application",
        r"application (was )?(received|submitted)",
        r"application confirmation",
        r"your application",
    ],
}

_COMPILED_STATUS = {
    status: [re.compile(p, re.IGNORECASE) for p in patterns]
    for status, patterns in STATUS_PHRASES.items()
}

# Phrases that indicate a decision or substantive application content
DECISION_PATTERNS = [re.compile(p, re.IGNORECASE) for p in [
    r"unfortunately",
    r"regret to inform",
    r"not (be )?mov(e|ing) forward",
    r"other candidates",
    r"decided (not )?to",
    r"not been selected",
    r"position has been filled",
    r"pleased to (offer|inform)",
    r"offer letter",
    r"congratulations",
    r"next steps?",
    r"interview",
    r"thank you for (applying|your interest|your application)",
    r"your application",
    r"after careful (consideration|review)",
    r"we will keep your (resume|cv|information)",
]]

_SUBJECT_DECISION = re.compile(
    r"\b(application|applying|applied|candidacy|update on|status|decision|regarding|your interest|"
    r"thank you|interview|offer|unfortunately|position|role)\b",
    re.IGNORECASE,
)


def extract_company_domain(sender: str) -> Optional[str]:
    """
    Extract the employer domain from a sender address.

    'Jane <jobs@mail.acme.com>' -> 'acme.com'. Free-mail and hiring platform
    domains return None since they do not identify an employer.
    """
    if not sender:
        return None

    match = re.search(r"<([^>]+)>", sender)
    address = (match.group(1) if match else sender).strip().lower()
    if "@" not in address:
        return None

    domain = address.split("@", 1)[1].strip(". ")
    if not domain or domain in FREE_MAIL_DOMAINS:
        return None

    parts = domain.split(".")
    while len(parts) > 2 and parts[0] in _MAIL_SUBDOMAINS:
        parts = parts[1:]
    domain = ".".join(parts)

    if is_hiring_platform(domain):
        return None
    return domain


def is_hiring_platform(domain: str) -> bool:
    domain = (domain or "").lower()
    return any(domain == d or domain.endswith("." + d) for d in HIRING_PLATFORM_DOMAINS)


def normalize_company(name: Optional[str]) -> Optional[str]:
    """Lowercase, trim and strip legal suffixes. 'Acme, Inc.' -> 'acme'."""
    if not name:
        return None
    cleaned = re.sub(r"\s+", " ", name.strip().lower())
    previous = None
    while previous != cleaned:
        previous = cleaned
        cleaned = _COMPANY_SUFFIX.sub("", cleaned).strip(" ,.")
    return cleaned or None


def domain_to_company(domain: Optional[str]) -> Optional[str]:
    """'acme-robotics.com' -> 'Acme-robotics'"""
    if not domain:
        return None
    label = domain.split(".")[0]
    return label[:1].upper() + label[1:] if label else None


def normalize_job_title(title: Optional[str]) -> str:
    """Lowercase, expand abbreviations, drop seniority words, roman numerals and numbers."""
    if not title:
        return ""
    text = _PUNCT.sub(" ", title.lower())
    tokens = []
    for token in text.split():
        tokens.extend(TITLE_ABBREVIATIONS.get(token, token).split())
    text = " ".join(tokens)
    text = _SENIORITY.sub(" ", text)
    text = _ROMAN.sub(" ", text)
    text = _NUMBERS.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Token Jaccard similarity of two normalized titles (0.0-1.0)."""
    norm_a = normalize_job_title(a)
    norm_b = normalize_job_title(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    tokens_a, tokens_b = set(norm_a.split()), set(norm_b.split())
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def clean_position_title(position: Optional[str]) -> Optional[str]:
    """Strip requisition codes and stray punctuation from a position title."""
    if not position:
        return None
    cleaned = position.strip()
    cleaned = re.sub(r"\b[A-Z]_?\d{4,}\b", "", cleaned)
    cleaned = re.sub(r"\b[A-Z]{2,}\d{4,}\b", "", cleaned)
    cleaned = re.sub(r"-\d{6,}$", "", cleaned)
    cleaned = re.sub(r"\(\d+\)$", "", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = cleaned.strip(" -–—:,")
    return cleaned if len(cleaned) > 1 else None


def status_hint(subject: str, body: str = "") -> Optional[JobStatus]:
    """
    Infer application status from phrasing.

    Priority: Offer > Declined > Interview > Applied. Rejections frequently
    mention a past interview, so Declined is checked before Interview.
    """
    haystack = f"{subject or ''}\n{body or ''}"[:4000]
    for status in (JobStatus.OFFER, JobStatus.DECLINED, JobStatus.INTERVIEW, JobStatus.APPLIED):
        if any(p.search(haystack) for p in _COMPILED_STATUS[status]):
            return status
    return None


def count_decision_indicators(text: str) -> int:
    """Number of distinct decision/application phrases present in text."""
    if not text:
        return 0
    return sum(1 for p in DECISION_PATTERNS if p.search(text))


def has_decision_phrasing(subject: str) -> bool:
    return bool(subject and _SUBJECT_DECISION.search(subject))
