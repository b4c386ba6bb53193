"""
Pipeline error taxonomy.

Per-message errors (extraction, model) are absorbed by the pipeline and recorded
on the message. Persistence and configuration errors are fatal for the run.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors"""
    pass


class ExtractionFailure(PipelineError):
    """Message content could not be extracted cleanly"""
    pass


class NoReadableContent(ExtractionFailure):
    """No text at all is available for a message, snippet included"""

    def __init__(self, message_id: str):
        super().__init__(f"No readable content for message {message_id}")
        self.message_id = message_id


class ModelTimeout(PipelineError):
    """Model call exceeded its wall-clock budget"""

    def __init__(self, stage: str, timeout_seconds: float):
        super().__init__(f"{stage} model call timed out after {timeout_seconds}s")
        self.stage = stage
        self.timeout_seconds = timeout_seconds


class ModelInvocationError(PipelineError):
    """Unexpected model-layer failure (transport error, unparseable output)"""
    pass


class PersistenceFailure(PipelineError):
    """State store rejected a write. Fatal for the run."""
    pass


class ConfigurationError(PipelineError):
    """Missing or invalid configuration. Fatal at startup."""
    pass
