"""
Passkey ceremony endpoints.

    POST /v1/challenges   registration start       {email}
    PUT  /v1/challenges   registration finish      {challengeId, registration}
    POST /v1/tokens       authentication start     {email}
    PUT  /v1/tokens       authentication finish    {challengeId, authentication}

Flows are injected with FastAPI dependencies so tests can swap their
collaborators through `app.dependency_overrides`. Errors raised by the flows
are rendered by the application's exception handlers.
"""

from functools import lru_cache

from fastapi import APIRouter, Depends, Request

from passkey_auth.config import RelyingParty, build_relying_party, settings
from passkey_auth.routes.passkeys.models import (
    AuthenticationFinishRequest,
    ChallengeResponse,
    ErrorResponse,
    RegistrationFinishRequest,
    RegistrationResult,
    SessionResponse,
    StartRequest,
)
from passkey_auth.routes.passkeys.services.authentication import AuthenticationFlow
from passkey_auth.routes.passkeys.services.registration import RegistrationFlow
from passkey_auth.utils.logging_utils import get_client_ip

router = APIRouter(prefix="/v1", tags=["Passkeys"])

ERROR_RESPONSES = {
    400: {"description": "Invalid input, unknown challenge or failed verification", "model": ErrorResponse},
    500: {"description": "Storage or identity provider unavailable", "model": ErrorResponse},
}


@lru_cache()
def get_relying_party() -> RelyingParty:
    """Relying party identity, derived once per process."""
    return build_relying_party(settings)


def get_registration_flow(relying_party: RelyingParty = Depends(get_relying_party)) -> RegistrationFlow:
    return RegistrationFlow(relying_party=relying_party)


def get_authentication_flow(relying_party: RelyingParty = Depends(get_relying_party)) -> AuthenticationFlow:
    return AuthenticationFlow(relying_party=relying_party)


@router.post(
    "/challenges",
    response_model=ChallengeResponse,
    summary="Start passkey registration",
    description="Resolve or create the user for `email` and return WebAuthn creation options.",
    responses=ERROR_RESPONSES,
)
async def start_registration(
    body: StartRequest, request: Request, flow: RegistrationFlow = Depends(get_registration_flow)
):
    return await flow.start(body.email, ip_address=get_client_ip(request))


@router.put(
    "/challenges",
    response_model=RegistrationResult,
    summary="Finish passkey registration",
    description="Verify the browser's registration response and store the new credential.",
    responses=ERROR_RESPONSES,
)
async def finish_registration(
    body: RegistrationFinishRequest, request: Request, flow: RegistrationFlow = Depends(get_registration_flow)
):
    return await flow.finish(body.challengeId, body.registration, ip_address=get_client_ip(request))


@router.post(
    "/tokens",
    response_model=ChallengeResponse,
    summary="Start passkey authentication",
    description=(
        "Return WebAuthn request options for the user's registered passkeys. Responds with "
        "code `credential_not_found` when the user has none, so clients can fall back to registration."
    ),
    responses=ERROR_RESPONSES,
)
async def start_authentication(
    body: StartRequest, request: Request, flow: AuthenticationFlow = Depends(get_authentication_flow)
):
    return await flow.start(body.email, ip_address=get_client_ip(request))


@router.put(
    "/tokens",
    response_model=SessionResponse,
    summary="Finish passkey authentication",
    description="Verify the browser's assertion and return a short-lived session secret.",
    responses=ERROR_RESPONSES,
)
async def finish_authentication(
    body: AuthenticationFinishRequest, request: Request, flow: AuthenticationFlow = Depends(get_authentication_flow)
):
    return await flow.finish(body.challengeId, body.authentication, ip_address=get_client_ip(request))
