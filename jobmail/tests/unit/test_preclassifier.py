"""
Test the fast preclassifier (heuristic and trained modes) and its training loop.
"""
import joblib
import pytest

from jobmail.core.ai.confidence import ConfidencePolicy
from jobmail.core.ai.preclassifier import FastPreclassifier, feature_vector, FEATURES
from jobmail.core.ai.preclassifier_training import TrainingSample, train_preclassifier


def _samples(count: int = 30):
    job = [
        TrainingSample(
            subject=f"Thank you for applying to Company{i}",
            body="We received your application and will review your resume shortly.",
            sender=f"careers@company{i}.com",
            is_job=True,
        )
        for i in range(count // 2)
    ]
    not_job = [
        TrainingSample(
            subject=f"Weekend sale {i}: 20% off everything",
            body="Shop now and save. Unsubscribe from promotional emails here.",
            sender=f"deals@shop{i}.com",
            is_job=False,
        )
        for i in range(count - count // 2)
    ]
    return job + not_job


class TestHeuristicMode:
    """Weighted phrase features through a logistic"""

    @pytest.fixture
    def preclassifier(self):
        return FastPreclassifier()

    def test_feature_vector_shape(self):
        vector = feature_vector("Your application", "body", "jobs@acme.com")

        assert vector.shape == (len(FEATURES) + 1,)

    def test_ats_application_auto_approves(self, preclassifier):
        result = preclassifier.predict(
            "Thank you for applying to Acme",
            "We received your application for the Software Engineer position.",
            "Acme <no-reply@greenhouse.io>",
        )

        assert result.method == "heuristic"
        assert result.auto_approve is True
        assert result.storable is True
        assert result.needs_review is False

    def test_marketing_is_not_storable(self, preclassifier):
        result = preclassifier.predict(
            "Weekend sale: 20% off",
            "Big discount on everything. Unsubscribe at any time.",
            "deals@shop.example",
        )

        assert result.probability < 0.6
        assert result.storable is False

    def test_pure_function(self, preclassifier):
        args = ("Interview invitation", "Please share your availability.", "talent@acme.com")

        assert preclassifier.predict(*args) == preclassifier.predict(*args)

    def test_missing_bundle_falls_back_to_heuristic(self, tmp_path):
        preclassifier = FastPreclassifier(model_path=str(tmp_path / "missing.joblib"))

        assert preclassifier.is_trained is False


class TestTraining:
    """Test train_preclassifier and the trained mode"""

    def test_too_few_samples(self):
        with pytest.raises(ValueError, match="at least"):
            train_preclassifier(_samples(4))

    def test_single_class_rejected(self):
        samples = [s for s in _samples(40) if s.is_job]

        with pytest.raises(ValueError, match="both job and non-job"):
            train_preclassifier(samples)

    def test_small_set_trains_without_holdout(self):
        bundle = train_preclassifier(_samples(20))

        assert bundle["stats"] == {
            "total_samples": 20,
            "job_samples": 10,
            "non_job_samples": 10,
            "accuracy": None,
        }

    def test_holdout_accuracy_reported(self):
        bundle = train_preclassifier(_samples(60))

        assert bundle["stats"]["accuracy"] is not None
        assert bundle["stats"]["accuracy"] >= 0.9

    def test_trained_bundle_round_trip(self, tmp_path):
        path = tmp_path / "models" / "preclassifier.joblib"
        train_preclassifier(_samples(30), output_path=str(path))

        preclassifier = FastPreclassifier(policy=ConfidencePolicy(), model_path=str(path))
        job = preclassifier.predict(
            "Thank you for applying to Initech",
            "We received your application and will review your resume shortly.",
            "careers@initech.com",
        )
        not_job = preclassifier.predict(
            "Weekend sale: 20% off everything",
            "Shop now and save. Unsubscribe from promotional emails here.",
            "deals@store.com",
        )

        assert preclassifier.is_trained is True
        assert job.method == "ml"
        assert job.probability > not_job.probability

    def test_incomplete_bundle_ignored(self, tmp_path):
        path = tmp_path / "broken.joblib"
        joblib.dump({"model": None}, path)

        preclassifier = FastPreclassifier(model_path=str(path))

        assert preclassifier.is_trained is False
