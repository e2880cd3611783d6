"""Shared test fixtures for credvault."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from keyring.errors import PasswordDeleteError

from credvault.config import VaultConfig
from credvault.vault import Vault


class MemoryKeyring:
    """In-memory stand-in for a keyring backend."""

    def __init__(self) -> None:
        self.entries: dict[tuple[str, str], str] = {}

    def get_password(self, service: str, username: str) -> str | None:
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError("Password not found") from None


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def keychain() -> MemoryKeyring:
    return MemoryKeyring()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def vault_config(tmp_path: Path) -> VaultConfig:
    """Config rooted in a temp dir so no test touches the real home."""
    return VaultConfig(root=tmp_path / "vault", external_account="tester")


@pytest.fixture
def vault(vault_config: VaultConfig, keychain: MemoryKeyring, clock: FrozenClock) -> Vault:
    return Vault(vault_config, keyring_backend=keychain, clock=clock)
