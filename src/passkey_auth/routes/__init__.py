"""Routes package for the passkey authentication API."""

from passkey_auth.routes.main import router as main_router
from passkey_auth.routes.passkeys.routes import router as passkeys_router

__all__ = ["main_router", "passkeys_router"]
