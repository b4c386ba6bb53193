"""
Fast pre-classification.

Low-latency job-relatedness probability used to triage messages before the
staged model engine. Two modes:
- Trained: a joblib bundle (TF-IDF subject/body vectorizers + probabilistic
  classifier) fitted from human review feedback, see preclassifier_training.py
- Heuristic: weighted phrase and sender features squashed through a logistic

Both are pure functions of (subject, body, sender) at inference time.
"""
import os
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging

import joblib
import numpy as np
from scipy.sparse import csr_matrix, hstack

from .confidence import ConfidenceLevel, ConfidencePolicy

logger = logging.getLogger(__name__)

ATS_SENDER_DOMAINS = (
    "greenhouse.io", "lever.co", "myworkday.com", "myworkdayjobs.com",
    "smartrecruiters.com", "icims.com", "jobvite.com", "ashbyhq.com",
    "bamboohr.com", "taleo.net", "workable.com", "recruitee.com",
)


@dataclass(frozen=True)
class Feature:
    """One weighted signal. Pattern is searched in subject + body[:2000]."""
    name: str
    pattern: str
    weight: float
    sender_only: bool = False

    def compiled(self):
        return re.compile(self.pattern, re.IGNORECASE)


FEATURES: List[Feature] = [
    Feature("ats_sender", "|".join(re.escape(d) for d in ATS_SENDER_DOMAINS), 2.0, sender_only=True),
    Feature("recruiter_sender", r"(recruit|talent|careers|hiring|jobs)[^@]*@", 0.8, sender_only=True),
    Feature("application", r"thank(s| you) for applying|your application|application (received|submitted|confirmation)|received your (application|resume)", 2.5),
    Feature("interview", r"interview|phone screen|your availability|schedule a (call|time)", 2.0),
    Feature("rejection", r"regret to inform|not (be )?mov(e|ing) forward|other candidates|position has been filled|not been selected", 2.0),
    Feature("offer", r"offer letter|pleased to offer|job offer|extend(ing)? (you )?an offer", 2.0),
    Feature("job_terms", r"\b(position|role|candidate|candidacy|resume|recruiter|hiring manager)\b", 0.8),
    Feature("assessment", r"assessment|coding challenge|take.?home", 1.2),
    Feature("unsubscribe", r"unsubscribe", -1.0),
    Feature("newsletter", r"newsletter|digest|view (this )?in (your )?browser", -1.5),
    Feature("marketing", r"\b(sale|discount|promo|webinar|coupon|% off)\b", -1.5),
    Feature("job_alert", r"job alert|jobs? (you may|you might|matching|for you)|recommended jobs", -2.0),
]

_COMPILED = [(f, f.compiled()) for f in FEATURES]
HEURISTIC_BIAS = -2.0


def feature_vector(subject: str, body: str, sender: str) -> np.ndarray:
    """Binary indicators for FEATURES plus a scaled length feature."""
    text = f"{subject or ''}\n{(body or '')[:2000]}"
    sender = (sender or "").lower()
    values = [
        1.0 if pattern.search(sender if feature.sender_only else text) else 0.0
        for feature, pattern in _COMPILED
    ]
    values.append(min(len(body or ""), 10000) / 10000.0)
    return np.array(values, dtype=float)


_WEIGHTS = np.array([f.weight for f in FEATURES] + [0.0], dtype=float)


@dataclass
class PreclassifierResult:
    probability: float
    needs_review: bool
    auto_approve: bool
    storable: bool
    confidence_level: ConfidenceLevel
    method: str  # "ml" or "heuristic"


class FastPreclassifier:
    """Job-relatedness triage. Pure function at inference time."""

    def __init__(
        self,
        policy: Optional[ConfidencePolicy] = None,
        model_path: Optional[str] = None,
        bundle: Optional[dict] = None,
    ):
        """
        Args:
            policy: Threshold policy (defaults from config constants)
            model_path: Optional joblib bundle from train_preclassifier
            bundle: Already loaded bundle (takes precedence over model_path)
        """
        self.policy = policy or ConfidencePolicy()
        self.bundle = bundle
        if self.bundle is None and model_path:
            self.bundle = self._load_bundle(model_path)

        mode = "ml" if self.bundle else "heuristic"
        logger.info(f"FastPreclassifier initialized in {mode} mode")

    @staticmethod
    def _load_bundle(model_path: str) -> Optional[dict]:
        if not os.path.exists(model_path):
            logger.warning(f"Preclassifier model not found at {model_path}, using heuristic mode")
            return None
        bundle = joblib.load(model_path)
        required = {"model", "subject_vectorizer", "body_vectorizer"}
        missing = required - set(bundle)
        if missing:
            logger.warning(f"Preclassifier bundle {model_path} missing {sorted(missing)}, using heuristic mode")
            return None
        return bundle

    @property
    def is_trained(self) -> bool:
        return self.bundle is not None

    def predict(self, subject: str, body: str, sender: str) -> PreclassifierResult:
        """
        Score one message.

        Returns:
            PreclassifierResult with probability and the derived routing flags
        """
        probability, method = self._probability(subject or "", body or "", sender or "")
        probability = float(np.clip(probability, 0.0, 1.0))
        return PreclassifierResult(
            probability=probability,
            needs_review=self.policy.needs_review(probability),
            auto_approve=self.policy.can_auto_approve(probability),
            storable=self.policy.should_store_as_job(probability),
            confidence_level=self.policy.level(probability),
            method=method,
        )

    def _probability(self, subject: str, body: str, sender: str) -> Tuple[float, str]:
        if self.bundle is not None:
            return self._ml_probability(subject, body, sender), "ml"
        return self._heuristic_probability(subject, body, sender), "heuristic"

    def _heuristic_probability(self, subject: str, body: str, sender: str) -> float:
        score = HEURISTIC_BIAS + float(np.dot(_WEIGHTS, feature_vector(subject, body, sender)))
        return float(1.0 / (1.0 + np.exp(-score)))

    def _ml_probability(self, subject: str, body: str, sender: str) -> float:
        bundle = self.bundle
        X = hstack([
            bundle["subject_vectorizer"].transform([subject]),
            bundle["body_vectorizer"].transform([body]),
            csr_matrix(feature_vector(subject, body, sender).reshape(1, -1)),
        ]).tocsr()
        model = bundle["model"]
        proba = model.predict_proba(X)[0]
        classes = list(model.classes_)
        positive = classes.index(1) if 1 in classes else len(classes) - 1
        return float(proba[positive])
