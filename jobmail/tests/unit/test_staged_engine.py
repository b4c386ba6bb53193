"""
Test the staged inference engine: per-call contexts, timeouts, fallbacks and caching.
"""
import asyncio
import time

import pytest

from jobmail.core.ai.config_loader import PipelineConfig, StageConfig
from jobmail.core.ai.inference_cache import InferenceCache
from jobmail.core.ai.models import JobDescriptor
from jobmail.core.ai.staged_engine import StagedInferenceEngine
from jobmail.core.pipeline.models import ConfidenceTier, JobStatus

from conftest import FakeProvider


def _fast_timeout_config(seconds: float = 0.05) -> PipelineConfig:
    stage = StageConfig(timeout_seconds=seconds, max_body_chars=800, max_tokens=15, context_size=512)
    return PipelineConfig(classify=stage, match=stage.model_copy(update={"max_body_chars": 0}))


class TestClassify:
    """Binary job-relatedness through the model"""

    @pytest.mark.asyncio
    async def test_model_answer(self, model_engine, fake_provider):
        result = await model_engine.classify("Your application", "Thanks for applying")

        assert result.is_job is True
        assert result.fallback_used is False
        assert fake_provider.contexts_created == 1
        assert fake_provider.closed == 1
        assert model_engine.stats["model_calls"] == 1

    @pytest.mark.asyncio
    async def test_body_truncated_to_stage_limit(self, model_engine, fake_provider):
        await model_engine.classify("Subject", "x" * 5000)

        sent = fake_provider.stage_calls("classify")[0]
        assert len(sent["body"]) == 800

    @pytest.mark.asyncio
    async def test_bare_boolean_answer_parsed(self, pipeline_config):
        provider = FakeProvider(responses={"classify": 'Answer: "is_job": false'})
        engine = StagedInferenceEngine(provider, pipeline_config)

        result = await engine.classify("Weekend sale", "Big discounts")

        assert result.is_job is False
        assert result.fallback_used is False

    @pytest.mark.asyncio
    async def test_unparseable_output_uses_fallback(self, pipeline_config):
        provider = FakeProvider(responses={"classify": "I am not sure."})
        engine = StagedInferenceEngine(provider, pipeline_config)

        result = await engine.classify("Thank you for applying", "We got your resume.")

        assert result.fallback_used is True
        assert result.error == "invocation_error"
        assert result.is_job is True
        assert engine.stats["invocation_errors"] == 1
        assert provider.closed == 1

    @pytest.mark.asyncio
    async def test_timeout_returns_fallback_within_budget(self):
        provider = FakeProvider(delay=2.0)
        engine = StagedInferenceEngine(provider, _fast_timeout_config(0.05))

        start = time.monotonic()
        result = await engine.classify("Thank you for applying", "We received your application.")
        elapsed = time.monotonic() - start

        assert result.fallback_used is True
        assert result.error == "timeout"
        assert elapsed < 0.05 + 0.5
        assert engine.stats["timeouts"] == 1
        assert provider.closed == 1

    @pytest.mark.asyncio
    async def test_provider_error_uses_fallback(self, pipeline_config):
        provider = FakeProvider(error=ConnectionError("connection refused"))
        engine = StagedInferenceEngine(provider, pipeline_config)

        result = await engine.classify("Spring sale", "Unsubscribe here")

        assert result.fallback_used is True
        assert result.is_job is False
        assert result.error == "invocation_error"
        assert provider.closed == 1

    @pytest.mark.asyncio
    async def test_rules_only_engine_never_creates_contexts(self, rules_engine):
        result = await rules_engine.classify("Thank you for applying", "")

        assert rules_engine.enabled is False
        assert result.fallback_used is True
        assert result.error == "model_disabled"


class TestCaching:
    """A cache hit never touches the model"""

    @pytest.mark.asyncio
    async def test_cache_hit_creates_no_context(self, model_engine, fake_provider):
        await model_engine.classify("Your application", "Thanks for applying")
        second = await model_engine.classify("your  application", "thanks for applying")

        assert second.cached is True
        assert second.is_job is True
        assert fake_provider.contexts_created == 1
        assert model_engine.stats["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_fallback_results_are_not_cached(self, pipeline_config):
        provider = FakeProvider(responses={"classify": "???"})
        engine = StagedInferenceEngine(provider, pipeline_config, InferenceCache())

        await engine.classify("Subject", "Body")
        await engine.classify("Subject", "Body")

        assert provider.contexts_created == 2
        assert engine.stats["cache_hits"] == 0

    @pytest.mark.asyncio
    async def test_match_key_is_order_independent(self, model_engine, fake_provider):
        google_swe = JobDescriptor(employer="Google", role="SWE")
        google_se = JobDescriptor(employer="Google", role="Software Engineer")

        await model_engine.match(google_swe, google_se)
        reversed_result = await model_engine.match(google_se, google_swe)

        assert reversed_result.cached is True
        assert fake_provider.contexts_created == 1


class TestExtract:
    @pytest.mark.asyncio
    async def test_structured_fields(self, model_engine):
        result = await model_engine.extract("Thank you for applying", "Software Engineer at Acme")

        assert result.employer == "Acme"
        assert result.role == "Software Engineer"
        assert result.status == JobStatus.APPLIED
        assert result.confidence_tier == ConfidenceTier.HIGH

    @pytest.mark.asyncio
    async def test_null_like_values_cleaned(self, pipeline_config):
        provider = FakeProvider(responses={
            "extract": '```json\n{"company": "Unknown", "position": "Data Analyst", "status": "rejected"}\n```'
        })
        engine = StagedInferenceEngine(provider, pipeline_config)

        result = await engine.extract("Update", "Unfortunately...")

        assert result.employer is None
        assert result.role == "Data Analyst"
        assert result.status == JobStatus.DECLINED
        assert result.confidence_tier == ConfidenceTier.MEDIUM

    @pytest.mark.asyncio
    async def test_invalid_shape_uses_fallback(self, pipeline_config):
        provider = FakeProvider(responses={"extract": '{"company": ["a", "b"]}'})
        engine = StagedInferenceEngine(provider, pipeline_config)

        result = await engine.extract("Interview with Initech", "Please pick a time.", "no-reply@greenhouse.io")

        assert result.fallback_used is True
        assert result.employer == "Initech"
        assert result.status == JobStatus.INTERVIEW


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_semaphore_limits_simultaneous_calls(self):
        in_flight = 0
        peak = 0

        provider = FakeProvider(delay=0.02)
        original = provider._create_context

        def tracking_context(stage, budget):
            context = original(stage, budget)
            generate = context._generate_impl

            async def wrapped(prompt, variables):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                try:
                    return await generate(prompt, variables)
                finally:
                    in_flight -= 1

            context._generate_impl = wrapped
            return context

        provider._create_context = tracking_context
        engine = StagedInferenceEngine(provider, PipelineConfig(max_concurrent_model_calls=2))

        await asyncio.gather(*[engine.classify(f"Subject {i}", "body") for i in range(6)])

        assert peak == 2
        assert provider.closed == 6

    @pytest.mark.asyncio
    async def test_timeout_includes_wait_for_model_slot(self):
        provider = FakeProvider()
        semaphore = asyncio.Semaphore(1)
        engine = StagedInferenceEngine(provider, _fast_timeout_config(0.05), semaphore=semaphore)
        await semaphore.acquire()

        try:
            start = time.monotonic()
            result = await engine.classify("Thank you for applying", "We received your application.")
            elapsed = time.monotonic() - start
        finally:
            semaphore.release()

        assert result.fallback_used is True
        assert result.error == "timeout"
        assert elapsed < 0.05 + 0.5
        assert provider.contexts_created == 0
        assert engine.stats["timeouts"] == 1

    @pytest.mark.asyncio
    async def test_queued_call_times_out_behind_slow_call(self):
        provider = FakeProvider(delay=2.0)
        engine = StagedInferenceEngine(provider, _fast_timeout_config(0.2), semaphore=asyncio.Semaphore(1))

        start = time.monotonic()
        first, second = await asyncio.gather(
            engine.classify("Your application", "Thanks for applying"),
            engine.classify("Interview invitation", "Let's talk"),
        )
        elapsed = time.monotonic() - start

        assert first.error == second.error == "timeout"
        # Queued behind the slow call, the second one still falls back within its own budget
        assert elapsed < 0.35
        assert provider.closed == provider.contexts_created
