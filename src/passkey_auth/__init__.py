"""Passwordless authentication service built on WebAuthn passkeys."""

__version__ = "1.0.0"
