"""
Log-safe rendering of values that arrive from agent sessions.

Memory ids, personas, lock owners, service names and bearer tokens are all
caller-supplied. A newline inside a memory id must not be able to forge a
second log record, and a bearer token must never reach a log file whole.

Usage:
    from persona_coord.core.secure_logging import sanitize_for_log

    logger.info(f"[MemoryLockManager] Lock acquired on {sanitize_for_log(memory_id)}")
"""

from typing import Any, Optional

MAX_LOGGED_LENGTH = 200
TOKEN_PREFIX = 4

# C0 controls and DEL map to None, i.e. are deleted by str.translate
_STRIP_CONTROL = dict.fromkeys([*range(0x20), 0x7F])


def sanitize_for_log(value: Any, max_len: int = MAX_LOGGED_LENGTH) -> str:
    """Drop control characters from ``str(value)`` and clip it to ``max_len``."""
    text = str(value).translate(_STRIP_CONTROL)
    if len(text) > max_len:
        return text[:max_len] + "..."
    return text


def mask_token(token: Optional[str]) -> str:
    """Identify a bearer token in logs without making it reusable."""
    if not token:
        return "<none>"
    if len(token) <= TOKEN_PREFIX * 2:
        return "****"
    return f"{token[:TOKEN_PREFIX]}****({len(token)} chars)"
