"""Directory -> profile resolution cache (``cache.json``).

The cache is advisory: dropping it never changes which profile a
directory resolves to, only how much work resolving takes. Loading is
therefore fail-open and a broken file reads as an empty cache.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from credvault.config import DEFAULT_CACHE_TTL_SECONDS
from credvault.models import utcnow
from credvault.utils.files import atomic_write_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    profile: str
    cached_at: datetime
    ttl_seconds: int

    @property
    def expires_at(self) -> datetime:
        return self.cached_at + timedelta(seconds=self.ttl_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    def as_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile,
            "cached_at": self.cached_at.isoformat(),
            "ttl_seconds": self.ttl_seconds,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CacheEntry:
        cached_at = datetime.fromisoformat(str(raw["cached_at"]))
        if cached_at.tzinfo is None:
            raise ValueError("cached_at must carry a UTC offset")
        ttl = raw["ttl_seconds"]
        if isinstance(ttl, bool) or not isinstance(ttl, int):
            raise ValueError("ttl_seconds must be an integer")
        profile = raw["profile"]
        if not isinstance(profile, str) or not profile:
            raise ValueError("profile must be a non-empty string")
        return cls(profile=profile, cached_at=cached_at, ttl_seconds=ttl)


def cache_key(directory: Path) -> str:
    """Canonical path string used as the cache key."""
    return str(Path(directory).expanduser().resolve())


class ResolutionCache:
    """TTL-bounded directory -> profile map persisted as JSON."""

    def __init__(
        self,
        path: Path,
        *,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.path = path
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def get(self, directory: Path) -> str | None:
        entry = self._load().get(cache_key(directory))
        return entry.profile if entry is not None else None

    def set(self, directory: Path, profile: str) -> None:
        entries = self._load()
        entries[cache_key(directory)] = CacheEntry(
            profile=profile,
            cached_at=self._clock(),
            ttl_seconds=self.ttl_seconds,
        )
        self._save(entries)

    def invalidate(self, directory: Path) -> bool:
        entries = self._load()
        removed = entries.pop(cache_key(directory), None) is not None
        self._save(entries)
        return removed

    def entries(self) -> dict[str, CacheEntry]:
        """Live (unexpired) entries keyed by directory."""
        return self._load()

    def clear(self) -> None:
        """Drop the whole cache file."""
        self.path.unlink(missing_ok=True)
        logger.debug("Cleared resolution cache %s", self.path)

    def _load(self) -> dict[str, CacheEntry]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.debug("Ignoring unreadable cache %s: %s", self.path, e)
            return {}
        raw_entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(raw_entries, dict):
            logger.debug("Ignoring malformed cache %s", self.path)
            return {}

        now = self._clock()
        entries: dict[str, CacheEntry] = {}
        for key, raw in raw_entries.items():
            try:
                entry = CacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Dropping malformed cache entry %s: %s", key, e)
                continue
            if entry.is_expired(now):
                continue
            entries[str(key)] = entry
        return entries

    def _save(self, entries: dict[str, CacheEntry]) -> None:
        payload = {
            "entries": {key: entry.as_dict() for key, entry in sorted(entries.items())},
        }
        atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
