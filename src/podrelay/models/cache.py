from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class CacheStatus(StrEnum):
    FRESH = "fresh"  # age <= ttl
    STALE = "stale"  # ttl < age <= purge horizon; serve and revalidate
    EXPIRED = "expired"  # age > purge horizon, not yet purged
    ABSENT = "absent"


class CacheEntry(BaseModel):
    """A whole cached value and the instant it was written."""

    value: Any
    written_at: datetime


class CacheRead(BaseModel):
    """Result of a cache read, classified against a policy."""

    status: CacheStatus
    value: Any = None
    written_at: datetime | None = None

    @property
    def usable(self) -> bool:
        """True when the value may be served (fresh, or stale as a fallback)."""
        return self.status in (CacheStatus.FRESH, CacheStatus.STALE)


class FetchabilityRecord(BaseModel):
    """Outcome of the last probe of a feed URL for one country."""

    ok: bool
    checked_at: datetime
    reason: str = ""  # ok_direct | ok_proxy | ok_allowlisted | timeout | blocklisted | ...
