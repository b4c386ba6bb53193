"""
Prompts for the three model-backed stages.

Kept short: the classify and match stages run with a 15-token budget, so the
model must answer with a bare JSON object.
"""
from langchain_core.prompts import ChatPromptTemplate

CLASSIFY_SYSTEM = """Classify this email as job-related or not.
Job-related: applications, interviews, recruiting, offers, rejections about the recipient's own candidacy.
Not job-related: job alerts, newsletters, marketing, social notifications.
Output only: {{"is_job": true}} or {{"is_job": false}}"""

EXTRACT_SYSTEM = """Extract job details from this email.

Examples:
- "Thank you for applying to Google for Software Engineer" -> {{"company": "Google", "position": "Software Engineer", "status": "Applied"}}
- "Interview scheduled for Data Analyst role at Meta" -> {{"company": "Meta", "position": "Data Analyst", "status": "Interview"}}
- "We're pleased to offer you the position at Amazon" -> {{"company": "Amazon", "position": null, "status": "Offer"}}
- "Unfortunately, we won't be moving forward" -> {{"company": null, "position": null, "status": "Declined"}}

Output JSON only: {{"company": string|null, "position": string|null, "status": "Applied"|"Interview"|"Declined"|"Offer"|null}}"""

MATCH_SYSTEM = """Compare these two job applications and determine if they refer to the same position.

Consider:
- Same company and position title = same job
- Same company, similar titles (e.g. "Software Engineer" vs "SWE") = same job
- Different companies = different jobs
- Same company, very different roles = different jobs

Output only: {{"same_job": true}} or {{"same_job": false}}"""

EMAIL_USER = "Subject: {subject}\nBody: {body}"

MATCH_USER = """Job 1:
Company: {company_a}
Position: {position_a}

Job 2:
Company: {company_b}
Position: {position_b}"""


CLASSIFY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", CLASSIFY_SYSTEM),
    ("user", EMAIL_USER),
])

EXTRACT_PROMPT = ChatPromptTemplate.from_messages([
    ("system", EXTRACT_SYSTEM),
    ("user", EMAIL_USER),
])

MATCH_PROMPT = ChatPromptTemplate.from_messages([
    ("system", MATCH_SYSTEM),
    ("user", MATCH_USER),
])

STAGE_PROMPTS = {
    "classify": CLASSIFY_PROMPT,
    "extract": EXTRACT_PROMPT,
    "match": MATCH_PROMPT,
}
