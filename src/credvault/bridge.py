"""Temporarily lend a profile's OAuth tokens to a companion application.

The companion keeps its own credential record in the system keychain.
``IntegrationBridge.swapped`` backs that record up, writes the profile's
tokens in its place, runs the guarded block, and always puts the original
record back (or removes the slot if there was none).
"""

from __future__ import annotations

import json
import logging
import warnings
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar

from credvault.config import DEFAULT_EXTERNAL_SERVICE
from credvault.exceptions import (
    InvalidCredentialFormatError,
    PreconditionFailedError,
    SecretBackendError,
    SecretNotFoundError,
)
from credvault.models import Profile
from credvault.secrets import SecretBackend, SecretNamespace
from credvault.store import ProfileStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECORD_KEY = "claudeAiOauth"
DEFAULT_SCOPES = ("user:inference", "user:profile", "user:sessions:claude_code")
UNKNOWN_FLAVOR = "unknown"


class RestoreWarning(UserWarning):
    """The companion's keychain entry could not be put back."""


@dataclass(frozen=True)
class ExternalCredentials:
    """Tokens read from the companion application's own record."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    subscription_type: str = UNKNOWN_FLAVOR
    scopes: tuple[str, ...] = field(default_factory=tuple)

    def __repr__(self) -> str:
        return (
            "ExternalCredentials(access_token='***', "
            f"expires_at={self.expires_at!r}, "
            f"subscription_type={self.subscription_type!r})"
        )


def subscription_flavor(profile: Profile) -> str:
    flavor = profile.metadata.get("subscription_type", "").strip()
    if flavor:
        return flavor
    description = (profile.description or "").lower()
    if "max" in description:
        return "max"
    if "pro" in description:
        return "pro"
    return UNKNOWN_FLAVOR


def _epoch_ms(value: datetime | None) -> int:
    if value is None:
        return 0
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: object) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return None
    return datetime.fromtimestamp(value / 1000, tz=UTC)


def parse_external_record(raw: str) -> ExternalCredentials:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise InvalidCredentialFormatError(
            f"Failed to parse companion credentials: {e}"
        ) from e
    record = payload.get(RECORD_KEY) if isinstance(payload, dict) else None
    if not isinstance(record, dict):
        raise InvalidCredentialFormatError(
            f"Could not find {RECORD_KEY} in companion credentials."
        )
    access_token = record.get("accessToken")
    if not isinstance(access_token, str) or not access_token:
        raise InvalidCredentialFormatError(
            "Could not find accessToken in companion credentials."
        )
    refresh_token = record.get("refreshToken")
    scopes = record.get("scopes")
    return ExternalCredentials(
        access_token=access_token,
        refresh_token=refresh_token if isinstance(refresh_token, str) and refresh_token else None,
        expires_at=_from_epoch_ms(record.get("expiresAt")),
        subscription_type=str(record.get("subscriptionType") or UNKNOWN_FLAVOR),
        scopes=tuple(str(s) for s in scopes) if isinstance(scopes, list) else (),
    )


class IntegrationBridge:
    """Backup / swap / execute / restore around the companion's keychain slot."""

    def __init__(
        self,
        store: ProfileStore,
        secrets: SecretBackend,
        *,
        account: str,
        service: str = DEFAULT_EXTERNAL_SERVICE,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self.service = service
        self.account = account

    def read_raw(self) -> str | None:
        return self._secrets.get_raw(self.service, self.account)

    def read_external(self) -> ExternalCredentials | None:
        """Parse the companion's current record; None when the slot is empty."""
        raw = self.read_raw()
        if raw is None:
            return None
        return parse_external_record(raw)

    def build_record(self, profile_name: str) -> str:
        """Serialize ``profile_name``'s tokens in the companion's format."""
        profile = self._store.load().get_profile(profile_name)
        if not profile.is_oauth:
            raise PreconditionFailedError(
                f"Profile '{profile_name}' is not an OAuth profile. "
                "The companion integration requires OAuth tokens."
            )
        access_token = self._secrets.get(SecretNamespace.OAUTH_ACCESS, profile_name)
        refresh_token = self._secrets.get_optional(SecretNamespace.OAUTH_REFRESH, profile_name)
        record = {
            RECORD_KEY: {
                "accessToken": access_token,
                "refreshToken": refresh_token or "",
                "expiresAt": _epoch_ms(profile.expires_at),
                "scopes": list(DEFAULT_SCOPES),
                "subscriptionType": subscription_flavor(profile),
            }
        }
        return json.dumps(record)

    @contextmanager
    def swapped(self, profile_name: str) -> Iterator[None]:
        """Hold the companion slot on ``profile_name`` for the block's duration."""
        backup = self.read_raw()
        logger.debug(
            "Backed up %s/%s (%s)", self.service, self.account,
            "present" if backup is not None else "absent",
        )
        try:
            self._secrets.store_raw(self.service, self.account, self.build_record(profile_name))
            logger.debug("Swapped %s/%s to profile '%s'", self.service, self.account, profile_name)
            yield
        finally:
            self._restore(backup)

    def with_profile(self, profile_name: str, operation: Callable[[], T]) -> T:
        with self.swapped(profile_name):
            return operation()

    def _restore(self, backup: str | None) -> None:
        try:
            if backup is not None:
                self._secrets.store_raw(self.service, self.account, backup)
            else:
                try:
                    self._secrets.delete_raw(self.service, self.account)
                except SecretNotFoundError:
                    pass
        except SecretBackendError as e:
            message = (
                f"Failed to restore {self.service} keychain entry: {e}. "
                "You may need to log in to the companion application again."
            )
            logger.warning("%s", message)
            warnings.warn(message, RestoreWarning, stacklevel=3)
            return
        logger.debug("Restored %s/%s", self.service, self.account)
