"""Secret storage on top of the platform keychain.

All secret bytes live in the system keychain via ``keyring``; nothing here
ever writes a secret to disk or to the log. Entries are addressed by a
namespace (keyring service name) and an account (the profile name).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from credvault.config import DEFAULT_API_KEY_MIN_LENGTH, DEFAULT_API_KEY_PREFIX
from credvault.exceptions import (
    InvalidCredentialFormatError,
    MalformedCredentialError,
    SecretBackendError,
    SecretNotFoundError,
)

logger = logging.getLogger(__name__)


class SecretNamespace(str, Enum):
    """Keyring service names owned by credvault."""

    API_KEY = "credvault"
    OAUTH_ACCESS = "credvault-oauth"
    OAUTH_REFRESH = "credvault-oauth-refresh"


def validate_api_key(
    key: str,
    *,
    prefix: str = DEFAULT_API_KEY_PREFIX,
    min_length: int = DEFAULT_API_KEY_MIN_LENGTH,
) -> None:
    if not key.startswith(prefix) or len(key) < min_length:
        raise InvalidCredentialFormatError("Invalid API key format")


class SecretBackend:
    """Typed get/store/delete over a keyring backend.

    ``backend`` is anything exposing keyring's ``get_password``,
    ``set_password`` and ``delete_password``; it defaults to the active
    platform keyring.
    """

    def __init__(
        self,
        backend: Any | None = None,
        *,
        api_key_prefix: str = DEFAULT_API_KEY_PREFIX,
        api_key_min_length: int = DEFAULT_API_KEY_MIN_LENGTH,
    ) -> None:
        self._backend = backend if backend is not None else keyring.get_keyring()
        self._api_key_prefix = api_key_prefix
        self._api_key_min_length = api_key_min_length

    # -- typed namespaces ---------------------------------------------

    def store(self, namespace: SecretNamespace, account: str, value: str) -> None:
        """Validate and write one secret."""
        self._validate(namespace, value, on_read=False)
        self.store_raw(namespace.value, account, value)

    def get(self, namespace: SecretNamespace, account: str) -> str:
        """Read one secret, re-validating it against its namespace's format."""
        value = self.get_raw(namespace.value, account)
        if value is None:
            raise SecretNotFoundError(
                f"No {_describe(namespace)} stored for profile '{account}'"
            )
        self._validate(namespace, value, on_read=True)
        return value

    def get_optional(self, namespace: SecretNamespace, account: str) -> str | None:
        try:
            return self.get(namespace, account)
        except SecretNotFoundError:
            return None

    def delete(self, namespace: SecretNamespace, account: str) -> None:
        self.delete_raw(namespace.value, account)

    def _validate(self, namespace: SecretNamespace, value: str, *, on_read: bool) -> None:
        if namespace is SecretNamespace.API_KEY:
            try:
                validate_api_key(
                    value,
                    prefix=self._api_key_prefix,
                    min_length=self._api_key_min_length,
                )
            except InvalidCredentialFormatError as e:
                if on_read:
                    raise MalformedCredentialError(
                        "Stored API key does not match the expected format"
                    ) from e
                raise
            return
        if not value:
            message = f"{_describe(namespace).capitalize()} is empty"
            if on_read:
                raise MalformedCredentialError(message)
            raise InvalidCredentialFormatError(message)

    # -- raw service/account access -----------------------------------

    def get_raw(self, service: str, account: str) -> str | None:
        """Return the stored value, or None when the entry does not exist."""
        try:
            value = self._backend.get_password(service, account)
        except KeyringError as e:
            raise SecretBackendError(
                f"Keychain lookup failed for {service}/{account}: {e}"
            ) from e
        logger.debug(
            "Keychain read %s/%s: %s", service, account,
            "hit" if value is not None else "miss",
        )
        return value

    def store_raw(self, service: str, account: str, value: str) -> None:
        try:
            self._backend.set_password(service, account, value)
        except KeyringError as e:
            raise SecretBackendError(
                f"Keychain write failed for {service}/{account}: {e}"
            ) from e
        logger.debug("Keychain write %s/%s", service, account)

    def delete_raw(self, service: str, account: str) -> None:
        try:
            self._backend.delete_password(service, account)
        except PasswordDeleteError as e:
            raise SecretNotFoundError(
                f"No keychain entry {service}/{account} to delete"
            ) from e
        except KeyringError as e:
            raise SecretBackendError(
                f"Keychain delete failed for {service}/{account}: {e}"
            ) from e
        logger.debug("Keychain delete %s/%s", service, account)


def _describe(namespace: SecretNamespace) -> str:
    if namespace is SecretNamespace.API_KEY:
        return "API key"
    if namespace is SecretNamespace.OAUTH_ACCESS:
        return "OAuth access token"
    return "OAuth refresh token"
