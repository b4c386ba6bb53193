"""
Result models for the staged inference engine.

Model-backed and rule-based results share these types. `fallback_used`
marks results produced without the model; `error` says why.
"""
from pydantic import BaseModel, Field
from typing import Optional

from jobmail.core.pipeline.models import ConfidenceTier, JobStatus


class StageResult(BaseModel):
    fallback_used: bool = False
    confidence_tier: ConfidenceTier = ConfidenceTier.HIGH
    cached: bool = False
    error: Optional[str] = Field(None, description="timeout, invocation_error, ... when the model path was bypassed")
    latency_ms: int = 0


class ClassifyResult(StageResult):
    is_job: bool


class ExtractResult(StageResult):
    employer: Optional[str] = None
    role: Optional[str] = None
    status: Optional[JobStatus] = None


class MatchResult(StageResult):
    same_job: bool


class JobDescriptor(BaseModel):
    """An already-extracted (employer, role) pair to compare."""
    employer: Optional[str] = None
    role: Optional[str] = None


# Structured model outputs (parsed from local model JSON)

class ClassifyOutput(BaseModel):
    is_job: bool


class ExtractOutput(BaseModel):
    company: Optional[str] = None
    position: Optional[str] = None
    status: Optional[str] = None


class MatchOutput(BaseModel):
    same_job: bool
