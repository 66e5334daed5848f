"""Test-mode verifier and the switch that selects it.

The stub keeps the verifier's interface and shape checks but skips every
cryptographic and freshness check, so end-to-end suites can drive the real
ceremony state machine without an authenticator. It is chosen only from
operator configuration, once, when the app is built.
"""

import json
import logging

from fido2.utils import sha256

from .errors import MalformedPayload
from .schemas import AuthenticationCredential, RegistrationCredential
from .verifier import (
    CREATE,
    GET,
    AssertionResult,
    RegistrationResult,
    WebAuthnVerifier,
    check_credential_type,
    decode_field,
)

logger = logging.getLogger(__name__)

STUB_KEY_PREFIX = b"test-mode-key:"


def _check_client_data_shape(raw: bytes, expected_type: str) -> None:
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise MalformedPayload("client data is not JSON") from exc
    if not isinstance(data, dict) or data.get("type") != expected_type:
        raise MalformedPayload(f"client data type is not {expected_type!r}")


class StubVerifier:
    test_mode = True

    def verify_registration(self, credential: RegistrationCredential, expected_challenge: bytes) -> RegistrationResult:
        check_credential_type(credential.type)
        raw_id = decode_field(credential.raw_id, "raw_id")
        _check_client_data_shape(decode_field(credential.response.client_data_json, "client_data_json"), CREATE)
        decode_field(credential.response.attestation_object, "attestation_object")
        return RegistrationResult(
            credential_id=raw_id,
            public_key=STUB_KEY_PREFIX + sha256(raw_id),
            sign_count=0,
        )

    def verify_assertion(
        self,
        credential: AuthenticationCredential,
        expected_challenge: bytes,
        public_key: bytes,
        stored_counter: int,
    ) -> AssertionResult:
        check_credential_type(credential.type)
        raw_id = decode_field(credential.raw_id, "raw_id")
        _check_client_data_shape(decode_field(credential.response.client_data_json, "client_data_json"), GET)
        decode_field(credential.response.authenticator_data, "authenticator_data")
        decode_field(credential.response.signature, "signature")
        return AssertionResult(credential_id=raw_id, sign_count=stored_counter + 1)


def select_verifier(settings) -> WebAuthnVerifier | StubVerifier:
    if settings.TEST_MODE is True:
        logger.warning("TEST_MODE is on: passkey signatures are NOT verified (env=%s)", settings.ENV)
        return StubVerifier()
    return WebAuthnVerifier(rp_id=settings.RP_ID, origin=settings.ORIGIN)
