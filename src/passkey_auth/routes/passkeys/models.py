"""
Pydantic models for the passkey ceremony endpoints and stored documents.

Request/response field names are camelCase because they are the wire contract
shared with the browser client; document models use the snake_case field
names stored in MongoDB.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Ceremony = Literal["registration", "authentication"]


class StartRequest(BaseModel):
    """Body of POST /v1/challenges and POST /v1/tokens."""

    email: EmailStr = Field(..., description="Email identifying the user", examples=["user@example.com"])


class RegistrationFinishRequest(BaseModel):
    """Body of PUT /v1/challenges."""

    challengeId: str = Field(..., min_length=1, description="Id returned by registration start")
    registration: Dict[str, Any] = Field(
        ..., description="RegistrationResponseJSON produced by navigator.credentials.create()"
    )


class AuthenticationFinishRequest(BaseModel):
    """Body of PUT /v1/tokens."""

    challengeId: str = Field(..., min_length=1, description="Id returned by authentication start")
    authentication: Dict[str, Any] = Field(
        ..., description="AuthenticationResponseJSON produced by navigator.credentials.get()"
    )


class ChallengeResponse(BaseModel):
    """Options for the browser plus the id of the challenge that backs them."""

    options: Dict[str, Any] = Field(..., description="WebAuthn creation or request options (JSON form)")
    challengeId: str = Field(..., description="Opaque id to send back on finish")


class RegistrationResult(BaseModel):
    success: bool = True


class SessionResponse(BaseModel):
    """Result of a verified authentication."""

    userId: str = Field(..., description="Authenticated user id")
    secret: str = Field(..., description="Short-lived secret to exchange for an application session")


class ErrorResponse(BaseModel):
    error: str = Field(..., description="Human readable message")
    code: Optional[str] = Field(None, description="Stable machine readable error code")


class ChallengeDocument(BaseModel):
    """
    Database document model for the challenges collection.

    `token` is the base64url challenge the browser signs; `expires_at` drives
    the TTL index and the read-side expiry check.
    """

    user_id: str = Field(..., description="Id of the user the ceremony belongs to")
    token: str = Field(..., description="Base64url encoded challenge bytes")
    ceremony: Ceremony = Field(..., description="Ceremony the challenge was issued for")
    created_at: datetime = Field(..., description="Issue timestamp")
    expires_at: datetime = Field(..., description="Expiry timestamp")


class CredentialDocument(BaseModel):
    """Database document model for the credentials collection."""

    user_id: str = Field(..., description="Id of the credential owner")
    credential_id: bytes = Field(..., description="Authenticator assigned credential id")
    public_key: bytes = Field(..., description="COSE encoded public key")
    sign_count: int = Field(0, ge=0, description="Last verified signature counter")
    transports: List[str] = Field(default_factory=list, description="Transports reported at registration")
    aaguid: Optional[str] = Field(None, description="Authenticator model identifier")
    device_type: Optional[str] = Field(None, description="single_device or multi_device")
    backed_up: bool = Field(False, description="Whether the credential is synced/backed up")
    created_at: Optional[datetime] = Field(None, description="Registration timestamp")
    last_used_at: Optional[datetime] = Field(None, description="Last successful authentication")
