"""
Model Provider Abstraction Layer

Per-call disposable model contexts for the staged inference engine.
"""
from .base import BaseModelContext, BaseModelProvider, GenerationBudget, ModelResponse
from .local import LocalModelProvider

__all__ = [
    'BaseModelContext',
    'BaseModelProvider',
    'GenerationBudget',
    'ModelResponse',
    'LocalModelProvider',
]
