"""Profile registry persistence (``config.toml``)."""

from __future__ import annotations

import logging
import re
import tomllib
from datetime import UTC, datetime
from pathlib import Path

from credvault.exceptions import RegistryIoError, VaultError
from credvault.models import (
    REGISTRY_VERSION,
    CredentialType,
    Profile,
    Registry,
    validate_profile,
)
from credvault.utils.files import atomic_write_text

logger = logging.getLogger(__name__)

_TOML_BARE_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")

_TOML_ESCAPES = {chr(code): f"\\u{code:04X}" for code in (*range(0x20), 0x7F)}
_TOML_ESCAPES.update({
    "\b": "\\b",
    "\t": "\\t",
    "\n": "\\n",
    "\f": "\\f",
    "\r": "\\r",
    '"': '\\"',
    "\\": "\\\\",
})


def _toml_escape(value: str) -> str:
    escaped = "".join(_TOML_ESCAPES.get(ch, ch) for ch in value)
    return f'"{escaped}"'


def _toml_key(value: str) -> str:
    text = str(value)
    if _TOML_BARE_KEY_RE.fullmatch(text):
        return text
    return _toml_escape(text)


def _toml_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def _parse_datetime(raw: object, *, field_name: str, profile: str, path: Path) -> datetime:
    if isinstance(raw, str):
        try:
            raw = datetime.fromisoformat(raw)
        except ValueError:
            pass
    if not isinstance(raw, datetime):
        raise RegistryIoError(
            f"Invalid {field_name} for profile '{profile}' in {path}: "
            "expected a date-time."
        )
    if raw.tzinfo is None:
        raw = raw.replace(tzinfo=UTC)
    return raw


def _optional_datetime(raw: dict, key: str, *, profile: str, path: Path) -> datetime | None:
    if raw.get(key) is None:
        return None
    return _parse_datetime(raw[key], field_name=key, profile=profile, path=path)


def _parse_profile(raw: object, *, path: Path) -> Profile:
    if not isinstance(raw, dict):
        raise RegistryIoError(f"Invalid profile entry in {path}: expected table.")

    name = str(raw.get("name", "")).strip()
    type_raw = str(raw.get("credential_type", CredentialType.API_KEY.value)).strip()
    try:
        credential_type = CredentialType(type_raw)
    except ValueError as e:
        raise RegistryIoError(
            f"Profile '{name}' in {path} has unknown credential_type {type_raw!r}."
        ) from e

    if "created_at" not in raw:
        raise RegistryIoError(
            f"Profile '{name}' in {path} is missing required 'created_at'."
        )

    metadata_raw = raw.get("metadata", {})
    if not isinstance(metadata_raw, dict):
        raise RegistryIoError(
            f"Invalid metadata for profile '{name}' in {path}: expected table."
        )

    description = raw.get("description")
    profile = Profile(
        name=name,
        credential_type=credential_type,
        created_at=_parse_datetime(
            raw["created_at"], field_name="created_at", profile=name, path=path,
        ),
        description=str(description) if description is not None else None,
        last_used=_optional_datetime(raw, "last_used", profile=name, path=path),
        expires_at=_optional_datetime(raw, "expires_at", profile=name, path=path),
        metadata={str(k): str(v) for k, v in metadata_raw.items()},
    )
    try:
        validate_profile(profile)
    except VaultError as e:
        raise RegistryIoError(f"Invalid profile in {path}: {e}") from e
    return profile


def parse_registry(raw: dict, *, path: Path) -> Registry:
    profiles_raw = raw.get("profiles", [])
    if not isinstance(profiles_raw, list):
        raise RegistryIoError(f"Invalid profiles in {path}: expected array of tables.")

    registry = Registry(version=str(raw.get("version", REGISTRY_VERSION)))
    for item in profiles_raw:
        profile = _parse_profile(item, path=path)
        if registry.profile_exists(profile.name):
            raise RegistryIoError(
                f"Duplicate profile '{profile.name}' in {path}."
            )
        registry.profiles.append(profile)

    default = raw.get("default_profile")
    if default is not None:
        default = str(default)
        if not registry.profile_exists(default):
            raise RegistryIoError(
                f"default_profile '{default}' in {path} names no existing profile."
            )
        registry.default_profile = default
    return registry


def render_registry_toml(registry: Registry) -> str:
    """Render ``config.toml`` content; optional fields are omitted when unset."""
    lines: list[str] = [
        "# credvault profile registry",
        "# Profile metadata only; secrets live in the system keychain.",
        "",
        f"version = {_toml_escape(registry.version)}",
    ]
    if registry.default_profile:
        lines.append(f"default_profile = {_toml_escape(registry.default_profile)}")
    lines.append("")

    for profile in registry.profiles:
        lines.append("[[profiles]]")
        lines.append(f"name = {_toml_escape(profile.name)}")
        lines.append(f"credential_type = {_toml_escape(profile.credential_type.value)}")
        if profile.description is not None:
            lines.append(f"description = {_toml_escape(profile.description)}")
        lines.append(f"created_at = {_toml_datetime(profile.created_at)}")
        if profile.last_used is not None:
            lines.append(f"last_used = {_toml_datetime(profile.last_used)}")
        if profile.expires_at is not None:
            lines.append(f"expires_at = {_toml_datetime(profile.expires_at)}")
        if profile.metadata:
            lines.append("")
            lines.append("[profiles.metadata]")
            for key in sorted(profile.metadata):
                lines.append(f"{_toml_key(key)} = {_toml_escape(profile.metadata[key])}")
        lines.append("")

    return "\n".join(lines).rstrip() + "\n"


class ProfileStore:
    """Owns the registry file: load, render, atomic save."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> Registry:
        """Load the registry; a missing file is an empty registry."""
        if not self.path.exists():
            return Registry()
        try:
            with open(self.path, "rb") as f:
                raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise RegistryIoError(f"Invalid TOML in {self.path}: {e}") from e
        except OSError as e:
            raise RegistryIoError(f"Cannot read registry {self.path}: {e}") from e
        return parse_registry(raw, path=self.path)

    def save(self, registry: Registry) -> None:
        """Atomically replace the registry file, owner read/write only."""
        content = render_registry_toml(registry)
        try:
            atomic_write_text(self.path, content)
        except OSError as e:
            raise RegistryIoError(f"Cannot write registry {self.path}: {e}") from e
        logger.debug(
            "Saved registry %s (%d profiles)", self.path, len(registry.profiles),
        )
