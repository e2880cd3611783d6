"""High-level profile operations used by the CLI.

``Vault`` wires the registry store, keychain, resolution cache, detector,
credential lifecycle and companion bridge together from one
``VaultConfig``. Each method is a single user-facing action and persists
whatever it changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import httpx

from credvault.bridge import IntegrationBridge
from credvault.cache import ResolutionCache
from credvault.config import VaultConfig
from credvault.detector import Detector, MarkerInit
from credvault.exceptions import (
    PreconditionFailedError,
    SecretBackendError,
    SecretNotFoundError,
    VaultError,
)
from credvault.lifecycle import CredentialLifecycle, TokenGrant
from credvault.models import (
    CredentialType,
    Profile,
    Registry,
    utcnow,
    validate_profile_name,
)
from credvault.secrets import SecretBackend, SecretNamespace, validate_api_key
from credvault.store import ProfileStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Vault:
    def __init__(
        self,
        config: VaultConfig,
        *,
        keyring_backend: Any | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.clock = clock
        self.store = ProfileStore(config.registry_path)
        self.secrets = SecretBackend(
            keyring_backend,
            api_key_prefix=config.api_key_prefix,
            api_key_min_length=config.api_key_min_length,
        )
        self.cache = ResolutionCache(
            config.cache_path, ttl_seconds=config.cache_ttl_seconds, clock=clock,
        )
        self.detector = Detector(self.store, self.cache, marker_name=config.marker_name)
        self.lifecycle = CredentialLifecycle(
            self.store,
            self.secrets,
            token_endpoint=config.token_endpoint,
            transport=transport,
            clock=clock,
        )
        self.bridge = IntegrationBridge(
            self.store,
            self.secrets,
            service=config.external_service,
            account=config.external_account,
        )

    # -- profile management -------------------------------------------

    def add_api_key_profile(
        self,
        name: str,
        api_key: str,
        description: str | None = None,
    ) -> Profile:
        validate_profile_name(name)
        validate_api_key(
            api_key,
            prefix=self.config.api_key_prefix,
            min_length=self.config.api_key_min_length,
        )
        registry = self.store.load()
        profile = Profile(
            name=name,
            credential_type=CredentialType.API_KEY,
            created_at=self.clock(),
            description=description,
        )
        registry.add_profile(profile)
        self._store_new_profile(registry, name, {SecretNamespace.API_KEY: api_key})
        logger.info("Added API key profile '%s'", name)
        return profile

    def add_oauth_profile(
        self,
        name: str,
        access_token: str,
        *,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
        description: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> Profile:
        validate_profile_name(name)
        registry = self.store.load()
        profile = Profile(
            name=name,
            credential_type=CredentialType.OAUTH,
            created_at=self.clock(),
            description=description,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
        )
        registry.add_profile(profile)
        secrets = {SecretNamespace.OAUTH_ACCESS: access_token}
        if refresh_token:
            secrets[SecretNamespace.OAUTH_REFRESH] = refresh_token
        self._store_new_profile(registry, name, secrets)
        logger.info("Added OAuth profile '%s'", name)
        return profile

    def _store_new_profile(
        self,
        registry: Registry,
        name: str,
        secrets: dict[SecretNamespace, str],
    ) -> None:
        """Write secrets, then the registry; undo the secrets if either fails."""
        written: list[SecretNamespace] = []
        try:
            for namespace, value in secrets.items():
                self.secrets.store(namespace, name, value)
                written.append(namespace)
            self.store.save(registry)
        except VaultError:
            for namespace in written:
                try:
                    self.secrets.delete(namespace, name)
                except SecretBackendError as e:
                    logger.warning(
                        "Could not remove %s entry for '%s' after a failed add: %s",
                        namespace.value, name, e,
                    )
            raise

    def list_profiles(self) -> list[Profile]:
        return list(self.store.load().profiles)

    def get_profile(self, name: str) -> Profile:
        return self.store.load().get_profile(name)

    def default_profile(self) -> str | None:
        return self.store.load().default_profile

    def remove_profile(self, name: str) -> Profile:
        """Drop the profile and every keychain entry it owns."""
        registry = self.store.load()
        profile = registry.remove_profile(name)
        if profile.credential_type is CredentialType.OAUTH:
            namespaces = (SecretNamespace.OAUTH_ACCESS, SecretNamespace.OAUTH_REFRESH)
        else:
            namespaces = (SecretNamespace.API_KEY,)
        for namespace in namespaces:
            try:
                self.secrets.delete(namespace, name)
            except SecretNotFoundError:
                logger.debug("No %s entry for '%s' to delete", namespace.value, name)
        self.store.save(registry)
        logger.info("Removed profile '%s'", name)
        return profile

    def set_default(self, name: str) -> None:
        registry = self.store.load()
        registry.set_default(name)
        self.store.save(registry)

    def touch(self, name: str) -> Profile:
        registry = self.store.load()
        profile = registry.get_profile(name)
        profile.touch(self.clock())
        self.store.save(registry)
        return profile

    # -- resolution ---------------------------------------------------

    def detect(self, directory: Path) -> str:
        return self.detector.resolve(directory)

    def init_profile(self, directory: Path, name: str) -> MarkerInit:
        return self.detector.init_profile(directory, name)

    def resolve_profile(self, explicit: str | None, directory: Path) -> str:
        """An explicitly named profile wins over detection but must exist."""
        if explicit:
            self.get_profile(explicit)
            return explicit
        return self.detect(directory)

    def clear_cache(self) -> None:
        self.cache.clear()

    # -- credentials --------------------------------------------------

    def credential_for(self, name: str) -> tuple[Profile, str]:
        """Current secret for ``name``; records the use in ``last_used``."""
        secret = self.lifecycle.get_credential(name)
        profile = self.touch(name)
        return profile, secret

    def environment_for(self, name: str) -> dict[str, str]:
        _, secret = self.credential_for(name)
        return {self.config.env_var: secret}

    def refresh(self, name: str) -> TokenGrant:
        return self.lifecycle.refresh(name)

    # -- companion application ---------------------------------------

    def import_external(self, name: str) -> Profile:
        """Create an OAuth profile from the companion's stored tokens."""
        validate_profile_name(name)
        credentials = self.bridge.read_external()
        if credentials is None:
            raise PreconditionFailedError(
                f"No credentials found in the {self.config.external_service!r} "
                "keychain entry. Log in to the companion application first."
            )
        flavor = credentials.subscription_type
        description = (
            f"Imported from {self.config.external_service} ({flavor}) "
            f"on {self.clock():%Y-%m-%d}"
        )
        return self.add_oauth_profile(
            name,
            credentials.access_token,
            refresh_token=credentials.refresh_token,
            expires_at=credentials.expires_at,
            description=description,
            metadata={"subscription_type": flavor},
        )

    def with_profile(self, name: str, operation: Callable[[], T]) -> T:
        """Run ``operation`` with the companion switched to ``name``.

        An expired token that cannot be refreshed stops here, before the
        companion's entry is touched.
        """
        self.lifecycle.ensure_valid(name)
        result = self.bridge.with_profile(name, operation)
        self.touch(name)
        return result
