"""Global configuration: paths, constants, settings."""

from pathlib import Path

# Default directory holding the per-user documents
DEFAULT_DATA_DIR = Path("data")

# Per-user document and lock marker file names
DATA_FILE_PATTERN = "data_{user_id}.json"
LOCK_FILE_PATTERN = "data_{user_id}.lock"
CORRUPT_SUFFIX = ".corrupt"

# Allowed characters in a user id (ids become part of a file name)
USER_ID_PATTERN = r"^[A-Za-z0-9_.@-]+$"

# Clients unseen for this long drop out of the liveness list; the same
# value is the staleness timeout of a lock marker.
CLIENT_TIMEOUT = 30.0

# Lock acquisition
LOCK_WAIT_TIME = 5.0
LOCK_POLL_INTERVAL = 0.1

# Documents unmodified for this many days are purged by cleanup
RETENTION_DAYS = 30

# Sync client
POLL_INTERVAL = 10.0
MAX_RETRIES = 3
BACKOFF_BASE = 1.0
BACKOFF_CAP = 5.0
REQUEST_TIMEOUT = 10.0
VERSION_HEADER = "X-Data-Version"

# Auth collaborator
SESSION_COOKIE = "timetracker_session"
SESSION_DURATION = 24 * 60 * 60

DEFAULT_PROJECT_COLOR = "#3B82F6"

# Starter projects for a user without a stored document
DEFAULT_PROJECTS = (
    ("General", "#3B82F6"),
    ("Development", "#10B981"),
    ("Meeting", "#F59E0B"),
)
