"""
Local Model Provider

Talks to a local Ollama-compatible server through its OpenAI-compatible
endpoint via LangChain's ChatOpenAI. Every context owns its own HTTP client,
which is closed when the context is disposed.
"""

from typing import Dict, Optional
import logging

import httpx
from langchain_openai import ChatOpenAI
from langchain_core.prompts import ChatPromptTemplate

from .base import BaseModelContext, BaseModelProvider, GenerationBudget

logger = logging.getLogger(__name__)

# Ollama ignores the key but the OpenAI client requires one
LOCAL_API_KEY = "ollama"


class LocalModelContext(BaseModelContext):
    """Fresh ChatOpenAI client + HTTP connection pool for one call."""

    def __init__(self, model: str, stage: str, budget: GenerationBudget, base_url: str):
        super().__init__(model, stage, budget)
        self.http_client = httpx.AsyncClient()
        self.client = ChatOpenAI(
            model=model,
            temperature=budget.temperature,
            max_tokens=budget.max_tokens,
            base_url=f"{base_url.rstrip('/')}/v1",
            api_key=LOCAL_API_KEY,
            max_retries=0,
            http_async_client=self.http_client,
            extra_body={"options": {"num_ctx": budget.context_size}},
        )

    async def _generate_impl(self, prompt: ChatPromptTemplate, variables: Dict[str, str]) -> str:
        chain = prompt | self.client
        result = await chain.ainvoke(variables)
        return result.content if isinstance(result.content, str) else str(result.content)

    async def _close_impl(self) -> None:
        await self.http_client.aclose()


class LocalModelProvider(BaseModelProvider):
    """Hands out one LocalModelContext per stage call."""

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        classify_model: str = "llama3.2:1b",
        extract_model: Optional[str] = None,
    ):
        super().__init__()
        self.base_url = base_url
        self.stage_models = {
            "classify": classify_model,
            "extract": extract_model or classify_model,
            "match": classify_model,
        }
        logger.info(
            f"LocalModelProvider initialized: base_url={base_url}, "
            f"classify={classify_model}, extract={self.stage_models['extract']}"
        )

    def _create_context(self, stage: str, budget: GenerationBudget) -> LocalModelContext:
        return LocalModelContext(self.stage_models[stage], stage, budget, self.base_url)

    async def health_check(self) -> Optional[str]:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.base_url.rstrip('/')}/api/tags")
                resp.raise_for_status()
                available = {m.get("name") for m in resp.json().get("models", [])}
        except httpx.HTTPError as e:
            return f"Local model server unreachable at {self.base_url}: {e}"

        missing = sorted(m for m in set(self.stage_models.values()) if m not in available)
        if missing:
            return f"Models not installed on local server: {', '.join(missing)}"
        return None
