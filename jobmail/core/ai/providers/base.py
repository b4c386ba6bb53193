"""
Base Model Context Interface

A model context is a short-lived, disposable handle for exactly one model
call. Providers hand out a fresh context per call and the caller closes it
unconditionally, so no session state survives between calls.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional
import time
import logging

from langchain_core.prompts import ChatPromptTemplate

logger = logging.getLogger(__name__)


@dataclass
class GenerationBudget:
    """Per-stage generation limits."""
    max_tokens: int
    context_size: int
    temperature: float = 0.0


@dataclass
class ModelResponse:
    """Raw text returned by one model call."""
    text: str
    latency_ms: int
    model: str


class BaseModelContext(ABC):
    """
    One-shot model context.

    Usable as an async context manager; close() is idempotent.
    """

    def __init__(self, model: str, stage: str, budget: GenerationBudget):
        self.model = model
        self.stage = stage
        self.budget = budget
        self.closed = False

    async def generate(self, prompt: ChatPromptTemplate, variables: Dict[str, str]) -> ModelResponse:
        """
        Run the prompt once.

        Args:
            prompt: Chat prompt template for the stage
            variables: Template variables

        Returns:
            ModelResponse with the raw completion text
        """
        if self.closed:
            raise RuntimeError(f"{self.stage} context for {self.model} is already closed")

        start = time.time()
        text = await self._generate_impl(prompt, variables)
        latency_ms = int((time.time() - start) * 1000)
        logger.debug(f"{self.stage} call on {self.model} took {latency_ms}ms")
        return ModelResponse(text=text or "", latency_ms=latency_ms, model=self.model)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._close_impl()

    @abstractmethod
    async def _generate_impl(self, prompt: ChatPromptTemplate, variables: Dict[str, str]) -> str:
        """Provider-specific completion. Must be cancellation-safe."""
        pass

    async def _close_impl(self) -> None:
        """Release provider resources (connections, sessions)."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
        return False


class BaseModelProvider(ABC):
    """Factory for per-call model contexts."""

    def __init__(self):
        self.contexts_created = 0

    def create_context(self, stage: str, budget: GenerationBudget) -> BaseModelContext:
        self.contexts_created += 1
        return self._create_context(stage, budget)

    @abstractmethod
    def _create_context(self, stage: str, budget: GenerationBudget) -> BaseModelContext:
        pass

    async def health_check(self) -> Optional[str]:
        """Return None when the backend is reachable, else an error message."""
        return None
