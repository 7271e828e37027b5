"""Configuration module for the passkey authentication service.

Settings are loaded once at import time and shared by the whole process.

Config discovery:
-----------------
The dotenv file is discovered in the following order: (1) via the
`PASSKEY_AUTH_CONFIG_PATH` environment variable, (2) `.env` in the project root,
(3) fallback to environment variables only. Running with plain environment
variables is the normal mode for containers and CI.

Relying party:
--------------
WebAuthn ceremonies are bound to a relying party (RP) id and an expected origin.
Both are derived exactly once from the settings into an immutable
`RelyingParty` value (see `build_relying_party`) that is handed to the
registration and authentication flows explicitly. Flows never read the
environment themselves, which keeps them testable with several RP setups in one
process.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the RP derivation rules, update `build_relying_party` and its tests.
"""

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "PASSKEY_AUTH_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use, in order of precedence:
    1. Environment variable PASSKEY_AUTH_CONFIG_PATH
    2. .env in project root
    3. None (fallback to environment variables only)

    Returns:
        Optional[str]: Path to config file, or None if not found.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=False)


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All fields are loaded from the environment or the dotenv file found by
    `get_config_path`.
    """

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",  # Allow extra env vars not defined as fields
    )

    # Server configuration
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    DEBUG: bool = False
    ENV: str = "dev"
    APP_NAME: str = "Passkey_Auth"

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"
    LOG_TO_FILE: bool = False
    LOKI_URL: Optional[str] = None
    LOKI_COMPRESS: bool = True

    # Prometheus /metrics endpoint
    METRICS_ENABLED: bool = True

    # MongoDB configuration
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "passkey_auth"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Collection identifiers
    USERS_COLLECTION: str = "users"
    CHALLENGES_COLLECTION: str = "passkey_challenges"
    CREDENTIALS_COLLECTION: str = "passkey_credentials"
    SESSION_TOKENS_COLLECTION: str = "session_tokens"

    # Relying party. PUBLIC_ENDPOINT is the public API endpoint of the service,
    # e.g. "https://auth.example.com/v1"; explicit RP id/origin win over it.
    PUBLIC_ENDPOINT: Optional[str] = None
    WEBAUTHN_RP_ID: Optional[str] = None
    WEBAUTHN_RP_NAME: str = "Passkey Demo"
    WEBAUTHN_ORIGIN: Optional[str] = None

    # Ceremony policy
    CHALLENGE_TTL_SECONDS: int = 300  # 5 minutes
    MAX_CREDENTIALS_PER_USER: int = 20

    # Session secrets handed out after a verified authentication
    SESSION_SECRET_LENGTH: int = 64
    SESSION_SECRET_TTL_SECONDS: int = 60

    @field_validator("MONGODB_URL", mode="before")
    @classmethod
    def no_empty_urls(cls, v, info):
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError(f"{info.field_name} must not be empty")
        return v

    @field_validator(
        "CHALLENGE_TTL_SECONDS",
        "SESSION_SECRET_LENGTH",
        "SESSION_SECRET_TTL_SECONDS",
        "MAX_CREDENTIALS_PER_USER",
        mode="before",
    )
    @classmethod
    def validate_positive_integers(cls, v, info):
        if v is not None and int(v) <= 0:
            raise ValueError(f"{info.field_name} must be a positive integer")
        return v

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() in ("prod", "production")


@dataclass(frozen=True)
class RelyingParty:
    """WebAuthn relying party identity shared by both ceremonies."""

    id: str
    name: str
    origin: str


def build_relying_party(config: Settings) -> RelyingParty:
    """
    Derive the relying party identity from settings.

    Precedence for the RP id: WEBAUTHN_RP_ID, then the hostname of
    PUBLIC_ENDPOINT, then "localhost". The RP id never carries a scheme or a
    port. Precedence for the origin: WEBAUTHN_ORIGIN, then PUBLIC_ENDPOINT cut
    before its first "/v1", then "https://<rp id>".

    Args:
        config (Settings): Loaded settings

    Returns:
        RelyingParty: Immutable RP identity
    """
    endpoint = (config.PUBLIC_ENDPOINT or "").strip()

    rp_id = config.WEBAUTHN_RP_ID
    if not rp_id and endpoint:
        rp_id = urlparse(endpoint if "://" in endpoint else f"https://{endpoint}").hostname
    rp_id = rp_id or "localhost"

    origin = config.WEBAUTHN_ORIGIN
    if not origin and endpoint:
        origin = endpoint.split("/v1")[0].rstrip("/")
    origin = origin or f"https://{rp_id}"

    return RelyingParty(id=rp_id, name=config.WEBAUTHN_RP_NAME, origin=origin)


settings = Settings()
