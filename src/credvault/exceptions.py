"""credvault exception hierarchy.

Every failure the core can report is a ``VaultError`` subclass so the CLI
can map it to a distinct exit status and a remediation hint.
"""

from __future__ import annotations


class VaultError(Exception):
    """Base for all credvault exceptions."""

    exit_code: int = 1
    hint: str = ""


class ProfileNotFoundError(VaultError):
    """A named profile is not in the registry."""

    exit_code = 10
    hint = "Run 'credvault list' to see the available profiles."

    def __init__(self, name: str) -> None:
        super().__init__(f"Profile '{name}' not found")
        self.name = name


class ProfileAlreadyExistsError(VaultError):
    exit_code = 11
    hint = "Pick another name or remove the existing profile first."

    def __init__(self, name: str) -> None:
        super().__init__(f"Profile '{name}' already exists")
        self.name = name


class InvalidProfileNameError(VaultError):
    """Profile names are 1-64 characters of letters, digits, '-' and '_'."""

    exit_code = 12
    hint = "Use 1-64 letters, digits, '-' or '_'."

    def __init__(self, message: str) -> None:
        super().__init__(message)


class EmptyProfileNameError(InvalidProfileNameError):
    def __init__(self) -> None:
        super().__init__("Empty profile name")


class ProfileNameTooLongError(InvalidProfileNameError):
    def __init__(self, limit: int = 64) -> None:
        super().__init__(f"Profile name too long (max {limit} characters)")


class InvalidCredentialFormatError(VaultError):
    exit_code = 13
    hint = "Check that you pasted the full credential."


class MalformedCredentialError(InvalidCredentialFormatError):
    """A stored secret failed validation on read."""

    hint = "The stored secret was changed outside credvault; re-add the profile."


class SecretBackendError(VaultError):
    """The platform secret store failed."""

    exit_code = 14
    hint = "Make sure the system keychain is unlocked and reachable."


class SecretNotFoundError(SecretBackendError):
    exit_code = 15
    hint = "Re-add the profile to store its secret again."


class RegistryIoError(VaultError):
    """The profile registry could not be read or written."""

    exit_code = 16
    hint = "Check the permissions and contents of the registry file."


class NoProfileResolvedError(VaultError):
    exit_code = 17
    hint = (
        "Run 'credvault init <profile>' to pin this project, or "
        "'credvault default <profile>' to set a default."
    )

    def __init__(self) -> None:
        super().__init__("No profile detected and no default profile set")


class InvalidProfileReferenceError(VaultError):
    """A marker file names a profile that does not exist."""

    exit_code = 18
    hint = "Fix the marker file or add the missing profile."

    def __init__(
        self, name: str, marker_path: object = None, *, reason: str | None = None,
    ) -> None:
        if reason is not None:
            super().__init__(f"Cannot read profile marker {marker_path}: {reason}")
        else:
            location = f" in {marker_path}" if marker_path is not None else ""
            super().__init__(f"Profile '{name}'{location} does not exist")
        self.name = name
        self.marker_path = marker_path


class RefreshFailedError(VaultError):
    exit_code = 19

    def __init__(self, message: str, *, profile_name: str = "") -> None:
        super().__init__(message)
        self.profile_name = profile_name
        target = profile_name or "<profile>"
        self.hint = (
            "Log in again in the companion application, then re-import: "
            f"credvault import oauth --profile {target}"
        )


class PreconditionFailedError(VaultError):
    exit_code = 20


class ConfigError(VaultError):
    """Raised when settings loading or validation fails."""

    exit_code = 21
    hint = "Check settings.toml in the vault root."
