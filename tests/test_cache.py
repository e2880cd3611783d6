"""Tests for the directory resolution cache."""

from __future__ import annotations

import json
from pathlib import Path

from credvault.cache import ResolutionCache, cache_key


def _cache(tmp_path: Path, clock, ttl: int = 3600) -> ResolutionCache:
    return ResolutionCache(tmp_path / "cache.json", ttl_seconds=ttl, clock=clock)


def test_set_and_get(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock)
    project = tmp_path / "project"
    project.mkdir()
    cache.set(project, "work")
    assert cache.get(project) == "work"
    assert cache.get(tmp_path) is None


def test_keys_are_canonical_paths(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock)
    project = tmp_path / "project"
    (project / "sub").mkdir(parents=True)
    cache.set(project / "sub" / "..", "work")
    assert cache.get(project) == "work"
    assert cache_key(project / "sub" / "..") == str(project.resolve())


def test_entries_expire_after_ttl(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock, ttl=60)
    cache.set(tmp_path, "work")
    clock.advance(seconds=60)
    assert cache.get(tmp_path) == "work"
    clock.advance(seconds=1)
    assert cache.get(tmp_path) is None


def test_expired_entries_are_pruned_on_write(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock, ttl=60)
    old = tmp_path / "old"
    new = tmp_path / "new"
    old.mkdir()
    new.mkdir()
    cache.set(old, "work")
    clock.advance(minutes=5)
    cache.set(new, "personal")
    payload = json.loads(cache.path.read_text())
    assert list(payload["entries"]) == [str(new.resolve())]


def test_file_format(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock)
    cache.set(tmp_path, "work")
    entry = json.loads(cache.path.read_text())["entries"][str(tmp_path.resolve())]
    assert entry == {
        "profile": "work",
        "cached_at": "2026-03-01T12:00:00+00:00",
        "ttl_seconds": 3600,
    }


def test_missing_empty_and_corrupt_files_read_as_empty(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock)
    assert cache.get(tmp_path) is None

    cache.path.write_text("")
    assert cache.get(tmp_path) is None

    cache.path.write_text("{not json")
    assert cache.get(tmp_path) is None
    assert cache.entries() == {}

    cache.path.write_text(json.dumps({"entries": ["wrong", "shape"]}))
    assert cache.get(tmp_path) is None


def test_malformed_entries_are_dropped(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock)
    good = str(tmp_path.resolve())
    cache.path.write_text(
        json.dumps(
            {
                "entries": {
                    good: {
                        "profile": "work",
                        "cached_at": "2026-03-01T11:59:00+00:00",
                        "ttl_seconds": 3600,
                    },
                    "/elsewhere": {"profile": "x", "cached_at": "yesterday", "ttl_seconds": 5},
                    "/other": "nope",
                }
            }
        )
    )
    assert list(cache.entries()) == [good]


def test_corrupt_file_is_replaced_on_next_write(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock)
    cache.path.write_text("garbage")
    cache.set(tmp_path, "work")
    assert cache.get(tmp_path) == "work"


def test_invalidate_and_clear(tmp_path: Path, clock):
    cache = _cache(tmp_path, clock)
    cache.set(tmp_path, "work")
    assert cache.invalidate(tmp_path) is True
    assert cache.invalidate(tmp_path) is False
    cache.set(tmp_path, "work")
    cache.clear()
    assert not cache.path.exists()
    cache.clear()
