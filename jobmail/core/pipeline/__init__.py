"""Thread-aware job extraction pipeline"""
from .models import (
    ClassificationRecord,
    JobEntity,
    JobStatus,
    PipelineStage,
    ExitReason,
    ProgressEvent,
    ActivityEvent,
    SyncSummary,
)

__all__ = [
    'ClassificationRecord',
    'JobEntity',
    'JobStatus',
    'PipelineStage',
    'ExitReason',
    'ProgressEvent',
    'ActivityEvent',
    'SyncSummary',
]
