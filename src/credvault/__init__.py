"""credvault: per-directory credential profiles for a remote API."""

__version__ = "0.1.0"
