"""AI module for job email classification and extraction"""
from .config_loader import PipelineConfig, load_pipeline_config
from .confidence import ConfidencePolicy
from .preclassifier import FastPreclassifier
from .inference_cache import InferenceCache
from .staged_engine import StagedInferenceEngine

__all__ = [
    'PipelineConfig',
    'load_pipeline_config',
    'ConfidencePolicy',
    'FastPreclassifier',
    'InferenceCache',
    'StagedInferenceEngine',
]
