"""
Shared constants for usage sync.
"""

# Lookback window bounds (days)
MIN_LOOKBACK_DAYS = 1
MAX_LOOKBACK_DAYS = 365
DEFAULT_LOOKBACK_DAYS = 30

# Query range guard (days)
MAX_QUERY_DAYS = 400

# Query result cache TTL (seconds)
QUERY_CACHE_TTL_SECONDS = 30
QUERY_CACHE_MAX_ENTRIES = 128

# Sync scheduling (seconds)
SYNC_BASE_INTERVAL_SECONDS = 5 * 60
SYNC_MAX_INTERVAL_SECONDS = 60 * 60
MAX_CONSECUTIVE_SYNC_FAILURES = 5

# Per-call timeouts (seconds)
QUERY_TIMEOUT_SECONDS = 30.0
UPLOAD_BATCH_TIMEOUT_SECONDS = 60.0
PROBE_TIMEOUT_SECONDS = 30.0

# Entity group transactions accept at most 100 operations
MAX_BATCH_SIZE = 100

SCHEMA_VERSION_NO_USER = 1
SCHEMA_VERSION_WITH_USER = 2
SCHEMA_VERSION_WITH_USER_AND_CONSENT = 3

DEFAULT_DATASET_ID = "default"
DEFAULT_TABLE_NAME = "usageAggDaily"

# Characters the table service forbids in PartitionKey/RowKey
FORBIDDEN_KEY_CHARS = ("/", "\\", "#", "?")

MAX_DISPLAY_NAME_LENGTH = 64

PROBE_DAY_KEY = "rbac-probe"
