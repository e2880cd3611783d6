"""Profile and registry data model."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from credvault.exceptions import (
    EmptyProfileNameError,
    InvalidProfileNameError,
    PreconditionFailedError,
    ProfileAlreadyExistsError,
    ProfileNameTooLongError,
    ProfileNotFoundError,
)

REGISTRY_VERSION = "1.0"
MAX_PROFILE_NAME_LENGTH = 64
EXPIRY_WARNING_WINDOW = timedelta(hours=24)

_PROFILE_NAME_RE = re.compile(r"^[\w-]+$")


class CredentialType(str, Enum):
    API_KEY = "api_key"
    OAUTH = "oauth"

    def __str__(self) -> str:
        return "API Key" if self is CredentialType.API_KEY else "OAuth"


class CredentialStatus(str, Enum):
    VALID = "valid"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class Profile:
    """One managed credential identity (secrets live in the keychain)."""

    name: str
    credential_type: CredentialType = CredentialType.API_KEY
    created_at: datetime = field(default_factory=utcnow)
    description: str | None = None
    last_used: datetime | None = None
    expires_at: datetime | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def is_oauth(self) -> bool:
        return self.credential_type is CredentialType.OAUTH

    def touch(self, now: datetime | None = None) -> None:
        self.last_used = now or utcnow()

    def status(self, now: datetime | None = None) -> CredentialStatus:
        """Expiry state; only OAuth profiles with a known expiry can expire."""
        if not self.is_oauth or self.expires_at is None:
            return CredentialStatus.VALID
        current = now or utcnow()
        if current > self.expires_at:
            return CredentialStatus.EXPIRED
        if current + EXPIRY_WARNING_WINDOW > self.expires_at:
            return CredentialStatus.EXPIRING_SOON
        return CredentialStatus.VALID

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.status(now) is CredentialStatus.EXPIRED

    def expires_soon(self, now: datetime | None = None) -> bool:
        return self.status(now) is CredentialStatus.EXPIRING_SOON


def validate_profile_name(name: str) -> None:
    """Reject empty, overlong, or out-of-charset profile names."""
    if not name:
        raise EmptyProfileNameError()
    if len(name) > MAX_PROFILE_NAME_LENGTH:
        raise ProfileNameTooLongError(MAX_PROFILE_NAME_LENGTH)
    if not _PROFILE_NAME_RE.fullmatch(name):
        raise InvalidProfileNameError(f"Invalid profile name: {name}")


def validate_profile(profile: Profile) -> None:
    validate_profile_name(profile.name)
    if profile.expires_at is not None and not profile.is_oauth:
        raise PreconditionFailedError(
            f"Profile '{profile.name}' has an expiry but is not an OAuth profile."
        )


@dataclass
class Registry:
    """The persisted profile set plus the default pointer.

    Mutators here only touch memory; persisting is the caller's job
    (see ``ProfileStore.save``).
    """

    version: str = REGISTRY_VERSION
    default_profile: str | None = None
    profiles: list[Profile] = field(default_factory=list)

    def find_profile(self, name: str) -> Profile | None:
        for profile in self.profiles:
            if profile.name == name:
                return profile
        return None

    def get_profile(self, name: str) -> Profile:
        profile = self.find_profile(name)
        if profile is None:
            raise ProfileNotFoundError(name)
        return profile

    def profile_exists(self, name: str) -> bool:
        return self.find_profile(name) is not None

    def profile_names(self) -> list[str]:
        return [profile.name for profile in self.profiles]

    def add_profile(self, profile: Profile) -> None:
        validate_profile(profile)
        if self.profile_exists(profile.name):
            raise ProfileAlreadyExistsError(profile.name)
        self.profiles.append(profile)

    def remove_profile(self, name: str) -> Profile:
        profile = self.get_profile(name)
        self.profiles.remove(profile)
        if self.default_profile == name:
            self.default_profile = None
        return profile

    def set_default(self, name: str) -> None:
        if not self.profile_exists(name):
            raise ProfileNotFoundError(name)
        self.default_profile = name
