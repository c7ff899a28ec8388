"""SQLite-backed cache model for key-value storage with TTL.

Single-process deployments keep run state, run indexes and admission
slots here so suspended runs survive a restart without Redis.
"""

import time
from typing import Optional
from sqlmodel import SQLModel, Field


class CacheEntry(SQLModel, table=True):
    """Generic key-value entry with optional expiration."""

    __tablename__ = "cache_entries"

    key: str = Field(primary_key=True, max_length=512)
    value: str = Field(max_length=1000000)  # JSON serialized
    expires_at: Optional[float] = Field(default=None, index=True)  # Unix timestamp
    created_at: float = Field(default_factory=time.time)
