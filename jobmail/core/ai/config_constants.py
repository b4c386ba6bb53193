"""
Configuration constants for the classification pipeline.

Centralized defaults to avoid magic values in pipeline logic. Every value here
can be overridden from config/pipeline.yaml.
"""

from pathlib import Path

# Paths
AI_DIR = Path(__file__).parent
CONFIG_DIR = AI_DIR / "config"
DEFAULT_CONFIG_FILE = "pipeline.yaml"
LOCAL_CONFIG_FILE = "pipeline.local.yaml"

# Confidence thresholds
AUTO_APPROVE_THRESHOLD = 0.9
NEEDS_REVIEW_THRESHOLD = 0.7
MIN_JOB_STORAGE_THRESHOLD = 0.6
DIGEST_FILTER_THRESHOLD = 0.8

# Confidence level boundaries (upper-exclusive)
VERY_LOW_CONFIDENCE = 0.3
LOW_CONFIDENCE = 0.5
MEDIUM_CONFIDENCE = 0.7
HIGH_CONFIDENCE = 0.9

# Retention of unreviewed records per confidence level (days)
RETENTION_DAYS_HIGH = 30
RETENTION_DAYS_MEDIUM = 14
RETENTION_DAYS_LOW = 7

# Stage timeouts (seconds)
CLASSIFY_TIMEOUT_SECONDS = 3.0
EXTRACT_TIMEOUT_SECONDS = 6.0
MATCH_TIMEOUT_SECONDS = 3.0

# Stage truncation limits (characters of body sent to the model)
CLASSIFY_MAX_BODY_CHARS = 800
EXTRACT_MAX_BODY_CHARS = 1500

# Stage generation budgets
CLASSIFY_MAX_TOKENS = 15
EXTRACT_MAX_TOKENS = 100
MATCH_MAX_TOKENS = 15
CLASSIFY_CONTEXT_SIZE = 512
EXTRACT_CONTEXT_SIZE = 1024
MATCH_CONTEXT_SIZE = 512
MODEL_TEMPERATURE = 0.0

# Cache
CACHE_TTL_DAYS = 7

# Concurrency
MAX_CONCURRENT_MODEL_CALLS = 2
GROUP_CONCURRENCY = 4
PROGRESS_BATCH_SIZE = 25

# Content extraction
MIN_PART_LENGTH = 20
TRUNCATION_MIN_BODY_CHARS = 200
DIGEST_BODY_SCAN_CHARS = 2000

# Orphan matching
TITLE_SIMILARITY_THRESHOLD = 0.7
