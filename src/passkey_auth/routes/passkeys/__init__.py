"""Passkey ceremony package initialization."""

from passkey_auth.routes.passkeys.routes import router

__all__ = ["router"]
