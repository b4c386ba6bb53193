"""
Training loop for the fast preclassifier.

Fits TF-IDF subject/body vectorizers and a logistic regression on human
review feedback and writes a joblib bundle that FastPreclassifier loads.
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence
import logging

import joblib
import numpy as np
from scipy.sparse import csr_matrix, hstack
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.linear_model import LogisticRegression
from sklearn.model_selection import train_test_split

from .preclassifier import feature_vector

logger = logging.getLogger(__name__)

MIN_TRAINING_SAMPLES = 10


@dataclass
class TrainingSample:
    subject: str
    body: str
    sender: str
    is_job: bool


def _features(samples: Sequence[TrainingSample], subject_vec, body_vec):
    meta = np.vstack([feature_vector(s.subject, s.body, s.sender) for s in samples])
    return hstack([
        subject_vec.transform([s.subject for s in samples]),
        body_vec.transform([s.body for s in samples]),
        csr_matrix(meta),
    ]).tocsr()


def train_preclassifier(
    samples: List[TrainingSample],
    output_path: Optional[str] = None,
    holdout: float = 0.2,
) -> Dict:
    """
    Fit a preclassifier bundle.

    Args:
        samples: Labelled messages (both classes required)
        output_path: Where to joblib.dump the bundle (optional)
        holdout: Fraction held out for accuracy when there is enough data

    Returns:
        Bundle dict with model, vectorizers and training stats

    Raises:
        ValueError: Too few samples or a single class
    """
    if len(samples) < MIN_TRAINING_SAMPLES:
        raise ValueError(f"Need at least {MIN_TRAINING_SAMPLES} samples, got {len(samples)}")

    labels = np.array([1 if s.is_job else 0 for s in samples])
    if len(set(labels.tolist())) < 2:
        raise ValueError("Training data must contain both job and non-job samples")

    max_df = 0.95 if len(samples) >= 50 else 1.0
    subject_vec = TfidfVectorizer(lowercase=True, ngram_range=(1, 2), max_df=max_df, min_df=1, max_features=10000)
    body_vec = TfidfVectorizer(lowercase=True, ngram_range=(1, 2), max_df=max_df, min_df=1, max_features=40000)

    train, test = list(samples), []
    positives = int(labels.sum())
    if len(samples) >= 5 * MIN_TRAINING_SAMPLES and min(positives, len(samples) - positives) >= 2:
        train, test = train_test_split(list(samples), test_size=holdout, stratify=labels, random_state=42)

    subject_vec.fit([s.subject for s in train])
    body_vec.fit([s.body for s in train])

    model = LogisticRegression(max_iter=1000, class_weight="balanced")
    model.fit(_features(train, subject_vec, body_vec), [1 if s.is_job else 0 for s in train])

    accuracy = None
    if test:
        predictions = model.predict(_features(test, subject_vec, body_vec))
        accuracy = float(np.mean(predictions == np.array([1 if s.is_job else 0 for s in test])))

    bundle = {
        "model": model,
        "subject_vectorizer": subject_vec,
        "body_vectorizer": body_vec,
        "stats": {
            "total_samples": len(samples),
            "job_samples": positives,
            "non_job_samples": len(samples) - positives,
            "accuracy": accuracy,
        },
    }
    logger.info(
        f"Trained preclassifier on {len(train)} samples "
        f"({positives} job / {len(samples) - positives} non-job), accuracy={accuracy}"
    )

    if output_path:
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        joblib.dump(bundle, output_path)
        logger.info(f"Saved preclassifier bundle to {output_path}")

    return bundle
