"""Tests for the passkey registration ceremony."""

import pytest

from conftest import registration_payload
from passkey_auth.errors import NotFoundError, ProviderError, StoreError, ValidationError, VerificationError

CHALLENGES = "passkey_challenges"
CREDENTIALS = "passkey_credentials"


class TestRegistrationStart:
    @pytest.mark.asyncio
    async def test_start_returns_options_and_challenge_id(self, registration_flow, store):
        result = await registration_flow.start("a@x.com")

        assert result["options"]["challenge"] == "c1"
        assert result["options"]["rp"] == {"id": "localhost", "name": "Passkey Demo"}
        [challenge] = store.documents(CHALLENGES)
        assert challenge["id"] == result["challengeId"]
        assert challenge["token"] == "c1"
        assert challenge["ceremony"] == "registration"

    @pytest.mark.asyncio
    async def test_start_twice_creates_one_user_and_two_challenges(self, registration_flow, challenges, store):
        first = await registration_flow.start("a@x.com")
        second = await registration_flow.start("a@x.com")

        assert len(store.documents("users")) == 1
        assert first["challengeId"] != second["challengeId"]
        assert len(store.documents(CHALLENGES)) == 2

        await challenges.invalidate(first["challengeId"])
        remaining = await challenges.fetch(second["challengeId"])
        assert remaining["token"] == "c2"

    @pytest.mark.asyncio
    async def test_email_lookup_ignores_case_and_whitespace(self, registration_flow, store):
        await registration_flow.start("A@X.com")
        await registration_flow.start("  a@x.COM ")
        users = store.documents("users")
        assert [user["email"] for user in users] == ["a@x.com"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email", ["", "   ", None])
    async def test_missing_email_has_no_side_effects(self, registration_flow, store, email):
        with pytest.raises(ValidationError) as exc_info:
            await registration_flow.start(email)
        assert exc_info.value.message == "email is required"
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_start_excludes_already_registered_credentials(self, registration_flow, verifier):
        started = await registration_flow.start("a@x.com")
        await registration_flow.finish(started["challengeId"], registration_payload("c1", b"cred-1"))

        again = await registration_flow.start("a@x.com")
        assert [c["credential_id"] for c in verifier.registration_calls[-1]] == [b"cred-1"]
        assert len(again["options"]["excludeCredentials"]) == 1

    @pytest.mark.asyncio
    async def test_identity_outage_is_provider_error(self, registration_flow, store):
        store.unavailable = True
        with pytest.raises(ProviderError) as exc_info:
            await registration_flow.start("a@x.com")
        assert exc_info.value.status_code == 500


class TestRegistrationFinish:
    @pytest.mark.asyncio
    async def test_valid_response_persists_credential_once(self, registration_flow, store):
        started = await registration_flow.start("a@x.com")

        result = await registration_flow.finish(started["challengeId"], registration_payload("c1", b"cred-1"))

        assert result == {"success": True}
        [credential] = store.documents(CREDENTIALS)
        assert credential["credential_id"] == b"cred-1"
        assert credential["public_key"] == b"pk-cred-1"
        assert credential["sign_count"] == 0
        assert credential["user_id"] == store.documents("users")[0]["id"]
        assert credential["transports"] == ["internal"]
        assert credential["backed_up"] is True
        assert store.documents(CHALLENGES) == []

    @pytest.mark.asyncio
    async def test_second_finish_with_same_challenge_is_not_found(self, registration_flow, store):
        started = await registration_flow.start("a@x.com")
        await registration_flow.finish(started["challengeId"], registration_payload("c1", b"cred-1"))

        with pytest.raises(NotFoundError):
            await registration_flow.finish(started["challengeId"], registration_payload("c1", b"cred-2"))
        assert len(store.documents(CREDENTIALS)) == 1

    @pytest.mark.asyncio
    async def test_failed_verification_still_spends_challenge(self, registration_flow, store):
        started = await registration_flow.start("a@x.com")

        with pytest.raises(VerificationError):
            await registration_flow.finish(started["challengeId"], registration_payload("wrong-challenge"))

        assert store.documents(CREDENTIALS) == []
        with pytest.raises(NotFoundError):
            await registration_flow.finish(started["challengeId"], registration_payload("c1"))

    @pytest.mark.asyncio
    async def test_unverified_verdict_is_verification_error(self, registration_flow, verifier, store):
        from passkey_auth.routes.passkeys.services.verifier import RegistrationVerdict

        verifier.verify_registration = lambda *args: RegistrationVerdict(verified=False)
        started = await registration_flow.start("a@x.com")

        with pytest.raises(VerificationError):
            await registration_flow.finish(started["challengeId"], registration_payload("c1"))
        assert store.documents(CREDENTIALS) == []
        assert store.documents(CHALLENGES) == []

    @pytest.mark.asyncio
    async def test_duplicate_credential_id_is_rejected(self, registration_flow, store):
        first = await registration_flow.start("a@x.com")
        await registration_flow.finish(first["challengeId"], registration_payload("c1", b"cred-1"))

        second = await registration_flow.start("b@x.com")
        with pytest.raises(VerificationError) as exc_info:
            await registration_flow.finish(second["challengeId"], registration_payload("c2", b"cred-1"))

        assert exc_info.value.message == "Credential already registered"
        assert len(store.documents(CREDENTIALS)) == 1

    @pytest.mark.asyncio
    async def test_bogus_challenge_id_is_not_found(self, registration_flow):
        with pytest.raises(NotFoundError) as exc_info:
            await registration_flow.finish("bogus", registration_payload("c1"))
        assert exc_info.value.message == "Challenge not found or expired"

    @pytest.mark.asyncio
    async def test_authentication_challenge_cannot_finish_registration(self, registration_flow, challenges):
        challenge_id = await challenges.create("user-1", "c9", "authentication")
        with pytest.raises(NotFoundError):
            await registration_flow.finish(challenge_id, registration_payload("c9"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "challenge_id, registration, message",
        [
            ("", {"rawId": "x"}, "challengeId is required"),
            ("some-id", {}, "registration is required"),
        ],
    )
    async def test_missing_inputs_are_validation_errors(
        self, registration_flow, store, challenge_id, registration, message
    ):
        with pytest.raises(ValidationError) as exc_info:
            await registration_flow.finish(challenge_id, registration)
        assert exc_info.value.message == message
        assert store.calls == []

    @pytest.mark.asyncio
    async def test_store_failure_while_persisting_is_store_error(self, registration_flow, credentials):
        async def unavailable(*args, **kwargs):
            raise StoreError()

        started = await registration_flow.start("a@x.com")
        credentials.add = unavailable

        with pytest.raises(StoreError):
            await registration_flow.finish(started["challengeId"], registration_payload("c1"))
