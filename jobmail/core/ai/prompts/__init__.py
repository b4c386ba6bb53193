"""Prompt templates for the staged inference engine"""
from .job_prompts import CLASSIFY_PROMPT, EXTRACT_PROMPT, MATCH_PROMPT, STAGE_PROMPTS

__all__ = ['CLASSIFY_PROMPT', 'EXTRACT_PROMPT', 'MATCH_PROMPT', 'STAGE_PROMPTS']
