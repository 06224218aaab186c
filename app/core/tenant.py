from __future__ import annotations

import re


AGENCY_ID_MIN_LENGTH = 2
AGENCY_ID_MAX_LENGTH = 64
_AGENCY_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


def normalize_agency_id(value: str) -> str:
    cleaned = value.strip()
    if len(cleaned) < AGENCY_ID_MIN_LENGTH or len(cleaned) > AGENCY_ID_MAX_LENGTH:
        raise ValueError(
            f"agency_id must be between {AGENCY_ID_MIN_LENGTH} and {AGENCY_ID_MAX_LENGTH} characters"
        )
    if not _AGENCY_ID_RE.fullmatch(cleaned):
        raise ValueError("agency_id may only contain letters, numbers, '-' and '_'")
    return cleaned


def is_valid_agency_id(value: str | None) -> bool:
    if not value:
        return False
    try:
        normalize_agency_id(value)
    except ValueError:
        return False
    return True
