"""
Staged Inference Engine

Three independent model-backed operations:
1. classify(subject, body) -> is_job            (small budget, short timeout)
2. extract(subject, body) -> employer/role/status (larger budget, longer timeout)
3. match(job_a, job_b) -> same_job              (small budget, short timeout)

Every call:
- checks the injected cache first (a hit never touches the model)
- acquires the global model-call semaphore, within the stage timeout
- creates a fresh model context and closes it in `finally`
- races the call against a hard wall-clock timeout
- on timeout or any model-layer failure, runs the rule-based fallback
"""

import asyncio
import re
import time
from typing import Dict, Optional, Tuple
import logging

from langchain_core.output_parsers import JsonOutputParser
from langchain_core.exceptions import OutputParserException
from pydantic import ValidationError

from jobmail.core.errors import ModelInvocationError, ModelTimeout
from jobmail.core.pipeline.models import ConfidenceTier, JobStatus
from .config_loader import PipelineConfig, StageConfig
from .fallback_classifier import FallbackClassifier
from .inference_cache import InferenceCache
from .models import (
    ClassifyOutput,
    ClassifyResult,
    ExtractOutput,
    ExtractResult,
    JobDescriptor,
    MatchOutput,
    MatchResult,
)
from .prompts import STAGE_PROMPTS
from .providers.base import BaseModelProvider, GenerationBudget

logger = logging.getLogger(__name__)

_NULL_VALUES = {"", "unknown", "null", "none", "n/a", "na"}
_BOOL_IN_TEXT = {
    "classify": re.compile(r'"?is_job"?\s*:\s*(true|false)', re.IGNORECASE),
    "match": re.compile(r'"?same_job"?\s*:\s*(true|false)', re.IGNORECASE),
}


def _clean_field(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return None if value.lower() in _NULL_VALUES else value


class StagedInferenceEngine:
    """
    Stateless-per-call model orchestration with timeouts and fallbacks.

    Features:
    - Fresh disposable context per call (no session reuse across calls)
    - Global concurrency limit on simultaneous model invocations
    - Timeout and invocation errors degrade to rule-based results
    - Injected TTL cache keyed by normalized stage inputs
    """

    def __init__(
        self,
        provider: Optional[BaseModelProvider],
        config: Optional[PipelineConfig] = None,
        cache: Optional[InferenceCache] = None,
        fallback: Optional[FallbackClassifier] = None,
        semaphore: Optional[asyncio.Semaphore] = None,
        enabled: bool = True,
    ):
        """
        Initialize the engine.

        Args:
            provider: Factory for per-call model contexts (None = rules only)
            config: Pipeline config with stage budgets and timeouts
            cache: Injected inference cache (None disables caching)
            fallback: Rule-based fallback classifier
            semaphore: Shared limiter for model calls (created from config if omitted)
            enabled: False forces the rule-based path for every call
        """
        self.provider = provider
        self.config = config or PipelineConfig()
        self.cache = cache
        self.fallback = fallback or FallbackClassifier(self.config.title_similarity_threshold)
        self.semaphore = semaphore or asyncio.Semaphore(self.config.max_concurrent_model_calls)
        self.enabled = enabled and provider is not None
        self.stats: Dict[str, int] = {
            "model_calls": 0,
            "cache_hits": 0,
            "fallbacks": 0,
            "timeouts": 0,
            "invocation_errors": 0,
        }
        self._parser = JsonOutputParser()

        logger.info(
            f"StagedInferenceEngine initialized: enabled={self.enabled}, "
            f"max_concurrent={self.config.max_concurrent_model_calls}, "
            f"timeouts=({self.config.classify.timeout_seconds}s, "
            f"{self.config.extract.timeout_seconds}s, {self.config.match.timeout_seconds}s)"
        )

    # ------------------------------------------------------------------
    # Stage operations
    # ------------------------------------------------------------------

    async def classify(self, subject: str, body: str, sender: str = "") -> ClassifyResult:
        """Binary job-relatedness with a minimal budget."""
        stage_cfg = self.config.classify
        truncated = self._truncate(body, stage_cfg)

        cached = self._cache_get("classify", subject, truncated)
        if cached is not None:
            return ClassifyResult(is_job=cached["is_job"], cached=True)

        def fallback(error: str) -> ClassifyResult:
            return self.fallback.classify(subject, body, sender, error=error)

        outcome = await self._invoke("classify", stage_cfg, {"subject": subject, "body": truncated})
        if isinstance(outcome, str):
            return fallback(outcome)

        data, latency_ms = outcome
        try:
            parsed = ClassifyOutput(**data)
        except (ValidationError, TypeError) as e:
            logger.warning(f"classify output failed validation: {e}")
            self.stats["invocation_errors"] += 1
            return self._count_fallback(fallback("invocation_error"))

        self._cache_set("classify", {"is_job": parsed.is_job}, subject, truncated)
        return ClassifyResult(is_job=parsed.is_job, latency_ms=latency_ms)

    async def extract(self, subject: str, body: str, sender: str = "") -> ExtractResult:
        """Structured employer / role / status extraction."""
        stage_cfg = self.config.extract
        truncated = self._truncate(body, stage_cfg)

        cached = self._cache_get("extract", subject, truncated)
        if cached is not None:
            return self._extract_result(cached, cached=True)

        outcome = await self._invoke("extract", stage_cfg, {"subject": subject, "body": truncated})
        if isinstance(outcome, str):
            return self.fallback.extract(subject, body, sender, error=outcome)

        data, latency_ms = outcome
        try:
            parsed = ExtractOutput(**data)
        except (ValidationError, TypeError) as e:
            logger.warning(f"extract output failed validation: {e}")
            self.stats["invocation_errors"] += 1
            return self._count_fallback(self.fallback.extract(subject, body, sender, error="invocation_error"))

        value = {
            "employer": _clean_field(parsed.company),
            "role": _clean_field(parsed.position),
            "status": (JobStatus.parse(parsed.status) or JobStatus.APPLIED).value,
        }
        self._cache_set("extract", value, subject, truncated)
        return self._extract_result(value, latency_ms=latency_ms)

    async def match(self, job_a: JobDescriptor, job_b: JobDescriptor) -> MatchResult:
        """Do two extracted (employer, role) pairs denote the same position?"""
        stage_cfg = self.config.match
        key_parts = sorted([
            f"{job_a.employer or ''}|{job_a.role or ''}",
            f"{job_b.employer or ''}|{job_b.role or ''}",
        ])

        cached = self._cache_get("match", *key_parts)
        if cached is not None:
            return MatchResult(same_job=cached["same_job"], cached=True)

        outcome = await self._invoke("match", stage_cfg, {
            "company_a": job_a.employer or "Unknown",
            "position_a": job_a.role or "Unknown",
            "company_b": job_b.employer or "Unknown",
            "position_b": job_b.role or "Unknown",
        })
        if isinstance(outcome, str):
            return self.fallback.match(job_a, job_b, error=outcome)

        data, latency_ms = outcome
        try:
            parsed = MatchOutput(**data)
        except (ValidationError, TypeError) as e:
            logger.warning(f"match output failed validation: {e}")
            self.stats["invocation_errors"] += 1
            return self._count_fallback(self.fallback.match(job_a, job_b, error="invocation_error"))

        self._cache_set("match", {"same_job": parsed.same_job}, *key_parts)
        return MatchResult(same_job=parsed.same_job, latency_ms=latency_ms)

    # ------------------------------------------------------------------
    # Model invocation
    # ------------------------------------------------------------------

    async def _invoke(self, stage: str, stage_cfg: StageConfig, variables: Dict[str, str]):
        """
        Run one model call, returning (parsed_json, latency_ms) or an error
        code string when the fallback should run instead.
        """
        if not self.enabled:
            self.stats["fallbacks"] += 1
            return "model_disabled"

        try:
            return await self._call_model(stage, stage_cfg, variables)
        except ModelTimeout as e:
            logger.warning(f"{e}; using rule-based fallback")
            self.stats["timeouts"] += 1
            self.stats["fallbacks"] += 1
            return "timeout"
        except ModelInvocationError as e:
            logger.warning(f"{stage} model call failed: {e}; using rule-based fallback")
            self.stats["invocation_errors"] += 1
            self.stats["fallbacks"] += 1
            return "invocation_error"

    async def _call_model(self, stage: str, stage_cfg: StageConfig, variables: Dict[str, str]) -> Tuple[dict, int]:
        budget = GenerationBudget(
            max_tokens=stage_cfg.max_tokens,
            context_size=stage_cfg.context_size,
            temperature=self.config.temperature,
        )

        start = time.time()
        try:
            # The timeout covers the wait for a free model slot as well as the call
            response = await asyncio.wait_for(
                self._generate(stage, budget, variables),
                timeout=stage_cfg.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise ModelTimeout(stage, stage_cfg.timeout_seconds)
        except ModelInvocationError:
            raise
        except Exception as e:
            raise ModelInvocationError(f"{type(e).__name__}: {e}") from e

        latency_ms = int((time.time() - start) * 1000)
        return self._parse(stage, response.text), latency_ms

    async def _generate(self, stage: str, budget: GenerationBudget, variables: Dict[str, str]):
        async with self.semaphore:
            context = self.provider.create_context(stage, budget)
            self.stats["model_calls"] += 1
            try:
                return await context.generate(STAGE_PROMPTS[stage], variables)
            finally:
                await context.close()

    def _parse(self, stage: str, text: str) -> dict:
        """Parse JSON from model text, accepting bare boolean answers for binary stages."""
        try:
            data = self._parser.parse(text)
            if isinstance(data, dict):
                return data
        except (OutputParserException, ValueError):
            pass

        pattern = _BOOL_IN_TEXT.get(stage)
        if pattern:
            match = pattern.search(text)
            if match:
                key = "is_job" if stage == "classify" else "same_job"
                return {key: match.group(1).lower() == "true"}

        raise ModelInvocationError(f"unparseable {stage} output: {text[:80]!r}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _truncate(body: str, stage_cfg: StageConfig) -> str:
        body = body or ""
        if stage_cfg.max_body_chars and len(body) > stage_cfg.max_body_chars:
            return body[:stage_cfg.max_body_chars]
        return body

    def _extract_result(self, value: dict, cached: bool = False, latency_ms: int = 0) -> ExtractResult:
        employer, role = value.get("employer"), value.get("role")
        tier = ConfidenceTier.HIGH if employer and role else ConfidenceTier.MEDIUM
        return ExtractResult(
            employer=employer,
            role=role,
            status=JobStatus.parse(value.get("status")),
            confidence_tier=tier,
            cached=cached,
            latency_ms=latency_ms,
        )

    def _count_fallback(self, result):
        self.stats["fallbacks"] += 1
        return result

    def _cache_get(self, stage: str, *parts: str) -> Optional[dict]:
        if self.cache is None:
            return None
        value = self.cache.get(stage, *parts)
        if value is not None:
            self.stats["cache_hits"] += 1
            logger.debug(f"{stage} cache hit")
        return value

    def _cache_set(self, stage: str, value: dict, *parts: str) -> None:
        if self.cache is not None:
            self.cache.set(stage, value, *parts)
