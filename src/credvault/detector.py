"""Active-profile detection for a working directory.

Order: cached resolution, then the nearest marker file walking up to the
filesystem root, then the registry default.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from credvault.cache import ResolutionCache
from credvault.config import DEFAULT_MARKER_NAME
from credvault.exceptions import (
    InvalidProfileReferenceError,
    NoProfileResolvedError,
    ProfileNotFoundError,
)
from credvault.store import ProfileStore

logger = logging.getLogger(__name__)

GITIGNORE_NAME = ".gitignore"


@dataclass(frozen=True)
class MarkerInit:
    """Outcome of pinning a directory to a profile."""

    marker_path: Path
    ignore_path: Path | None = None


def read_marker(path: Path) -> str:
    """First line of the marker, trimmed; unreadable markers are a bad reference."""
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise InvalidProfileReferenceError("", path, reason=str(e)) from e
    lines = text.strip().splitlines()
    return lines[0].strip() if lines else ""


def find_git_root(directory: Path) -> Path | None:
    """Nearest ancestor (inclusive) holding a ``.git`` dir or file."""
    for candidate in (directory, *directory.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def ensure_gitignored(repo_root: Path, entry: str) -> bool:
    """Append ``entry`` to the repo's .gitignore unless a line already matches.

    Returns True when the file was changed.
    """
    path = repo_root / GITIGNORE_NAME
    contents = path.read_text(encoding="utf-8") if path.exists() else ""
    if any(line.strip() == entry for line in contents.splitlines()):
        return False
    if contents and not contents.endswith("\n"):
        contents += "\n"
    contents += f"{entry}\n"
    path.write_text(contents, encoding="utf-8")
    return True


class Detector:
    """Resolve which profile applies to a directory."""

    def __init__(
        self,
        store: ProfileStore,
        cache: ResolutionCache,
        *,
        marker_name: str = DEFAULT_MARKER_NAME,
    ) -> None:
        self._store = store
        self._cache = cache
        self.marker_name = marker_name

    def find_marker(self, start_directory: Path) -> Path | None:
        """Nearest marker file at or above ``start_directory``."""
        start = Path(start_directory).expanduser().resolve()
        for directory in (start, *start.parents):
            candidate = directory / self.marker_name
            if candidate.is_file():
                return candidate
        return None

    def resolve(self, start_directory: Path) -> str:
        registry = self._store.load()

        cached = self._cache.get(start_directory)
        if cached is not None and registry.profile_exists(cached):
            logger.debug("Cache hit for %s -> %s", start_directory, cached)
            return cached

        marker = self.find_marker(start_directory)
        if marker is not None:
            name = read_marker(marker)
            if not registry.profile_exists(name):
                raise InvalidProfileReferenceError(name, marker)
            logger.debug("Marker %s -> %s", marker, name)
            self._remember(start_directory, name)
            return name

        if registry.default_profile:
            logger.debug("No marker above %s; using default profile", start_directory)
            return registry.default_profile
        raise NoProfileResolvedError()

    def init_profile(self, directory: Path, profile_name: str) -> MarkerInit:
        """Pin ``directory`` to ``profile_name`` with a marker file."""
        registry = self._store.load()
        if not registry.profile_exists(profile_name):
            raise ProfileNotFoundError(profile_name)

        directory = Path(directory).expanduser().resolve()
        marker_path = directory / self.marker_name
        marker_path.write_text(f"{profile_name}\n", encoding="utf-8")
        self._remember(directory, profile_name)

        ignore_path = None
        repo_root = find_git_root(directory)
        if repo_root is not None:
            if ensure_gitignored(repo_root, self.marker_name):
                logger.info("Added %s to %s", self.marker_name, repo_root / GITIGNORE_NAME)
            ignore_path = repo_root / GITIGNORE_NAME
        return MarkerInit(marker_path=marker_path, ignore_path=ignore_path)

    def _remember(self, directory: Path, profile_name: str) -> None:
        try:
            self._cache.set(directory, profile_name)
        except OSError as e:
            logger.warning("Could not update resolution cache: %s", e)
