"""
Shared fixtures for pipeline tests.
Model calls go to a fake provider so every test runs offline.
"""
# Load .env BEFORE any other imports (settings read the environment at first use)
import os
from pathlib import Path
from dotenv import load_dotenv

# Load from repo root .env
_repo_root = Path(__file__).parent.parent.parent
load_dotenv(_repo_root / ".env")

# Never touch a real model server or database from tests
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("MODEL_ENABLED", "false")

import asyncio
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Dict, Optional

import pytest

from jobmail.core.ai.config_loader import PipelineConfig
from jobmail.core.ai.inference_cache import InferenceCache
from jobmail.core.ai.providers.base import BaseModelContext, BaseModelProvider, GenerationBudget
from jobmail.core.ai.staged_engine import StagedInferenceEngine
from jobmail.core.email.models import PayloadFormat, RawMessage
from jobmail.core.pipeline.state_store import InMemoryStateStore


def ts(day: int, hour: int = 9) -> datetime:
    """Aware UTC timestamp in March 2024."""
    return datetime(2024, 3, day, hour, 0, tzinfo=timezone.utc)


DEFAULT_RESPONSES = {
    "classify": '{"is_job": true}',
    "extract": '{"company": "Acme", "position": "Software Engineer", "status": "Applied"}',
    "match": '{"same_job": true}',
}


class FakeContext(BaseModelContext):
    """Answers from the provider's canned responses; records every call."""

    def __init__(self, provider: "FakeProvider", stage: str, budget: GenerationBudget):
        super().__init__("fake-model", stage, budget)
        self.provider = provider

    async def _generate_impl(self, prompt, variables):
        self.provider.calls.append((self.stage, dict(variables)))
        if self.provider.delay:
            await asyncio.sleep(self.provider.delay)
        if self.provider.error is not None:
            raise self.provider.error
        response = self.provider.responses[self.stage]
        return response(variables) if callable(response) else response

    async def _close_impl(self):
        self.provider.closed += 1


class FakeProvider(BaseModelProvider):
    """Offline stand-in for LocalModelProvider."""

    def __init__(
        self,
        responses: Optional[Dict] = None,
        delay: float = 0.0,
        error: Optional[Exception] = None,
    ):
        super().__init__()
        self.responses = {**DEFAULT_RESPONSES, **(responses or {})}
        self.delay = delay
        self.error = error
        self.calls = []
        self.closed = 0

    def _create_context(self, stage, budget):
        return FakeContext(self, stage, budget)

    def stage_calls(self, stage: str):
        return [variables for called, variables in self.calls if called == stage]


def build_mime(
    subject: str,
    body: str,
    sender: str = "Recruiting <jobs@acme.com>",
    message_id: str = "<m1@example.com>",
    html: Optional[str] = None,
) -> bytes:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "me@example.com"
    msg["Subject"] = subject
    msg["Message-ID"] = message_id
    msg["Date"] = "Fri, 01 Mar 2024 09:00:00 +0000"
    msg.set_content(body)
    if html is not None:
        msg.add_alternative(html, subtype="html")
    return msg.as_bytes()


@pytest.fixture
def make_message():
    """Factory for MIME RawMessages."""
    def _make(
        message_id: str,
        subject: str,
        body: str,
        sender: str = "Recruiting <jobs@acme.com>",
        day: int = 1,
        hour: int = 9,
        conversation_id: Optional[str] = None,
        account: str = "default",
        snippet: str = "",
    ) -> RawMessage:
        return RawMessage(
            message_id=message_id,
            conversation_id=conversation_id,
            account=account,
            sender=sender,
            subject=subject,
            received_at=ts(day, hour),
            payload=build_mime(subject, body, sender, message_id),
            payload_format=PayloadFormat.MIME,
            snippet=snippet,
        )
    return _make


@pytest.fixture
def pipeline_config():
    return PipelineConfig()


@pytest.fixture
def memory_store():
    return InMemoryStateStore()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def model_engine(fake_provider, pipeline_config):
    """Engine backed by the fake provider with an in-memory cache."""
    return StagedInferenceEngine(fake_provider, pipeline_config, InferenceCache())


@pytest.fixture
def rules_engine(pipeline_config):
    """Engine with no provider: every stage uses the rule-based fallback."""
    return StagedInferenceEngine(None, pipeline_config, InferenceCache())
