"""Constants for the rotation module.

This module centralizes configuration values used across the rotation package.
"""

# Account defaults
DEFAULT_REGION = "us-east-1"
ANONYMOUS_EMAIL = "builder-id@aws.amazon.com"  # Placeholder identity for Builder ID logins
ACCOUNT_ID_BYTES = 16

# Persisted document format
DOCUMENT_VERSION = 1
DEFAULT_ACTIVE_INDEX = -1
ACCOUNTS_FILE_NAME = "kiro-accounts.json"
USAGE_FILE_NAME = "kiro-usage.json"
CONFIG_SUBDIR = "opencode"

# File locking (seconds unless otherwise noted)
LOCK_RETRIES = 5
LOCK_MIN_TIMEOUT_SECONDS = 0.1
LOCK_MAX_TIMEOUT_SECONDS = 1.0
LOCK_BACKOFF_FACTOR = 2.0
LOCK_SUFFIX = ".lock"

# Quota evaluation
WARNING_THRESHOLD_PERCENT = 80

# Account switch notifications
TOAST_DEBOUNCE_MS = 30_000
