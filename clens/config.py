"""clens configuration."""
import os


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default

# Storage layout (relative to the project directory)
CLENS_DIR_NAME = os.getenv("CLENS_DIR_NAME", ".clens")
SESSIONS_DIR_NAME = "sessions"
DISTILLED_DIR_NAME = "distilled"
LINKS_FILE_NAME = "_links.jsonl"

# Durations
IDLE_THRESHOLD_MS = _env_int("CLENS_IDLE_THRESHOLD_MS", 300_000)

# Output caps
TIMELINE_CAP = _env_int("CLENS_TIMELINE_CAP", 500)
COMM_SEQUENCE_CAP = _env_int("CLENS_COMM_SEQUENCE_CAP", 500)

# Git boundary
GIT_TIMEOUT_SECONDS = _env_int("CLENS_GIT_TIMEOUT_SECONDS", 10)

# Feature flags
DIFF_ATTRIBUTION_ENABLED = _env_bool("CLENS_DIFF_ATTRIBUTION_ENABLED", True)
