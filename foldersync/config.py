"""Global configuration: file names, patterns, constants, defaults."""

import re

# Every file the engine owns shares this stem
FILE_PREFIX = "schedule"

# The single authoritative snapshot per shared folder
BASE_FILE_NAME = f"{FILE_PREFIX}.base"

# Advisory marker written while a merge is in progress
MERGE_LOCK_FILE = f"{FILE_PREFIX}.merge-lock"

BACKUP_MARKER = ".bak"

WORKING_FILE_PATTERN = re.compile(r"^schedule\.(.+)\.db$")
CHANGE_FILE_PATTERN = re.compile(r"^schedule\.(.+)\.(\d{8}T\d{12}Z)\.changes$")
BACKUP_FILE_PATTERN = re.compile(
    r"^schedule\..+\.(?:db|changes)\.bak\.(\d{4}-\d{2}-\d{2})$"
)

# Sortable timestamp embedded in change file names
CHANGE_STAMP_FORMAT = "%Y%m%dT%H%M%S%fZ"
BACKUP_DATE_FORMAT = "%Y-%m-%d"

# Row bookkeeping columns; never compared when describing a conflict
SYNC_ID_FIELD = "sync_id"
MODIFIED_AT_FIELD = "modified_at"
MODIFIED_BY_FIELD = "modified_by"
BOOKKEEPING_FIELDS = frozenset({SYNC_ID_FIELD, MODIFIED_AT_FIELD, MODIFIED_BY_FIELD})

# Defaults for the overridable settings
DEFAULT_POLL_INTERVAL = 30.0  # seconds
DEFAULT_BACKUP_RETENTION_DAYS = 3
DEFAULT_CHECKPOINT_DAYS = 3
DEFAULT_LOCK_STALE_SECONDS = 3600  # 1 hour
