"""Shared default constants for the agentflow engine."""

# Task definitions without an explicit timeout give up after 10 minutes.
DEFAULT_TIMEOUT_AFTER_SECONDS: int = 600

# Worker pool size for queues that are not configured explicitly.
DEFAULT_QUEUE_NAME: str = 'default'
DEFAULT_MAX_WORKERS: int = 10

# A claimed job whose worker has not acknowledged it within this window
# is redelivered by the database job queue.
DEFAULT_STALE_CLAIM_SECONDS: int = 900

# Comparison window bounds for file organization.
DEFAULT_WINDOW_SIZE: int = 5
DEFAULT_WINDOW_OVERLAP: int = 1
MIN_WINDOW_SIZE: int = 2
MAX_WINDOW_SIZE: int = 100

# Merge thresholds for file organization (confidence scale 0-5).
DEFAULT_GROUP_CONFIDENCE_THRESHOLD: int = 3
DEFAULT_ADJACENCY_BOUNDARY_THRESHOLD: int = 2
DEFAULT_NAME_SIMILARITY_THRESHOLD: float = 0.7
# Votes without an explicit confidence count as fully confident.
DEFAULT_VOTE_CONFIDENCE: int = 5

# Well-known listener workflow types.
WORKFLOW_TYPE_EXTRACT_DATA: str = 'extract_data'
WORKFLOW_TYPE_WRITE_DEMAND: str = 'write_demand'
