"""Credential expiry tracking and OAuth refresh-token rotation."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

import httpx

from credvault.config import DEFAULT_TOKEN_ENDPOINT
from credvault.exceptions import (
    PreconditionFailedError,
    RefreshFailedError,
    SecretNotFoundError,
)
from credvault.models import CredentialStatus, CredentialType, Profile, utcnow
from credvault.secrets import SecretBackend, SecretNamespace
from credvault.store import ProfileStore

logger = logging.getLogger(__name__)

# Upper bound for a server-reported token lifetime (ten years).
MAX_TOKEN_LIFETIME_SECONDS = 10 * 365 * 86400


@dataclass(frozen=True)
class TokenGrant:
    """Parsed token-endpoint response (tokens are kept out of repr)."""

    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None

    def __repr__(self) -> str:
        return (
            f"TokenGrant(access_token='***', "
            f"refresh_token={'***' if self.refresh_token else None!r}, "
            f"expires_in={self.expires_in!r})"
        )


def _error_body(response: httpx.Response, limit: int = 200) -> str:
    try:
        text = response.text
    except (httpx.HTTPError, UnicodeDecodeError):
        return ""
    return text[:limit]


def parse_token_response(payload: object) -> TokenGrant:
    if not isinstance(payload, dict):
        raise ValueError("token response is not a JSON object")
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise ValueError("token response is missing access_token")
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token:
        refresh_token = None
    expires_in = payload.get("expires_in")
    if isinstance(expires_in, bool) or not isinstance(expires_in, int):
        expires_in = None
    else:
        expires_in = min(max(expires_in, 0), MAX_TOKEN_LIFETIME_SECONDS)
    return TokenGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
    )


class CredentialLifecycle:
    """Keeps a profile's credential usable.

    OAuth profiles move Valid -> ExpiringSoon -> Expired; an expired one
    gets exactly one refresh attempt per call. API-key profiles never
    expire.
    """

    def __init__(
        self,
        store: ProfileStore,
        secrets: SecretBackend,
        *,
        token_endpoint: str = DEFAULT_TOKEN_ENDPOINT,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._secrets = secrets
        self.token_endpoint = token_endpoint
        self._transport = transport
        self._clock = clock

    def status(self, profile_name: str) -> CredentialStatus:
        return self._store.load().get_profile(profile_name).status(self._clock())

    def ensure_valid(self, profile_name: str) -> CredentialStatus:
        """Refresh an expired OAuth credential; raise if that fails."""
        profile = self._store.load().get_profile(profile_name)
        status = profile.status(self._clock())
        if status is CredentialStatus.EXPIRING_SOON:
            logger.warning(
                "Profile '%s' credentials expire soon (%s)",
                profile_name, profile.expires_at.isoformat(),
            )
        if status is not CredentialStatus.EXPIRED:
            return status

        logger.info("Token for profile '%s' expired; attempting refresh", profile_name)
        try:
            self.refresh(profile_name)
        except (RefreshFailedError, SecretNotFoundError) as e:
            logger.error("Failed to refresh token for '%s': %s", profile_name, e)
            raise RefreshFailedError(
                f"Token refresh failed for profile '{profile_name}': {e}",
                profile_name=profile_name,
            ) from e
        logger.info("Token for profile '%s' refreshed", profile_name)
        return CredentialStatus.VALID

    def refresh(self, profile_name: str) -> TokenGrant:
        """Exchange the stored refresh token for a new access token.

        Stored tokens are only touched after a successful response.
        """
        profile = self._store.load().get_profile(profile_name)
        self._require_oauth(profile)
        refresh_token = self._secrets.get(SecretNamespace.OAUTH_REFRESH, profile_name)

        grant = self._request_grant(profile_name, refresh_token)

        now = self._clock()
        registry = self._store.load()
        updated = registry.get_profile(profile_name)
        updated.expires_at = (
            now + timedelta(seconds=grant.expires_in)
            if grant.expires_in is not None
            else None
        )
        updated.touch(now)
        self._store.save(registry)

        self._secrets.store(SecretNamespace.OAUTH_ACCESS, profile_name, grant.access_token)
        if grant.refresh_token is not None:
            self._secrets.store(
                SecretNamespace.OAUTH_REFRESH, profile_name, grant.refresh_token,
            )
        logger.debug(
            "Refreshed profile '%s' (expires_in=%s, rotated refresh token=%s)",
            profile_name, grant.expires_in, grant.refresh_token is not None,
        )
        return grant

    def get_credential(self, profile_name: str) -> str:
        """Current secret for the profile, refreshing first if needed."""
        self.ensure_valid(profile_name)
        profile = self._store.load().get_profile(profile_name)
        if profile.credential_type is CredentialType.API_KEY:
            return self._secrets.get(SecretNamespace.API_KEY, profile_name)
        if profile.credential_type is CredentialType.OAUTH:
            return self._secrets.get(SecretNamespace.OAUTH_ACCESS, profile_name)
        raise PreconditionFailedError(
            f"Unsupported credential type {profile.credential_type!r}"
        )

    def _request_grant(self, profile_name: str, refresh_token: str) -> TokenGrant:
        body = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        try:
            with httpx.Client(transport=self._transport) as client:
                response = client.post(self.token_endpoint, json=body)
        except httpx.HTTPError as e:
            raise RefreshFailedError(
                f"Failed to reach token endpoint: {e}", profile_name=profile_name,
            ) from e

        if not response.is_success:
            raise RefreshFailedError(
                f"Token refresh failed ({response.status_code}): {_error_body(response)}",
                profile_name=profile_name,
            )
        try:
            return parse_token_response(response.json())
        except ValueError as e:
            raise RefreshFailedError(
                f"Failed to parse refresh response: {e}", profile_name=profile_name,
            ) from e

    @staticmethod
    def _require_oauth(profile: Profile) -> None:
        if not profile.is_oauth:
            raise PreconditionFailedError(
                f"Profile '{profile.name}' is not an OAuth profile; "
                "only OAuth credentials can be refreshed."
            )
