from __future__ import annotations

from datetime import UTC, datetime
import re

IDENTIFIER_FILLER = "_"
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9]")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def sanitize_identifier(identifier: str, filler: str = IDENTIFIER_FILLER) -> str:
    """Map a work item identifier to a name that is safe to use as a file name."""
    return _UNSAFE_CHARS.sub(filler, identifier)


def board_name(release: str, suffix: str) -> str:
    return f"sig-release-{release}-{suffix}"
