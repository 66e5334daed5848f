"""Verification of WebAuthn attestations and assertions.

Nothing in here touches storage or the network. Every expectation is passed
in, and each check either returns a small result object or raises one of the
:class:`~shortauth.errors.InvalidCredential` subclasses.
"""

import hmac
import struct
from dataclasses import dataclass

import cbor2
from cryptography.exceptions import InvalidSignature
from fido2.cose import CoseKey, UnsupportedKey
from fido2.utils import sha256, websafe_decode
from fido2.webauthn import AttestationObject, AuthenticatorData, CollectedClientData

from .errors import (
    ChallengeMismatch,
    CounterReplay,
    CredentialMismatch,
    MalformedPayload,
    OriginMismatch,
    RelyingPartyMismatch,
    SignatureInvalid,
)
from .schemas import AuthenticationCredential, RegistrationCredential

CREATE = "webauthn.create"
GET = "webauthn.get"

# ES256, RS256
ACCEPTED_ALGORITHMS = (-7, -257)

_DECODE_ERRORS = (ValueError, KeyError, TypeError, IndexError, AttributeError, struct.error)


@dataclass(frozen=True)
class RegistrationResult:
    credential_id: bytes
    public_key: bytes
    sign_count: int
    aaguid: str | None = None


@dataclass(frozen=True)
class AssertionResult:
    credential_id: bytes
    sign_count: int


def decode_field(value: str, name: str) -> bytes:
    try:
        decoded = websafe_decode(value)
    except _DECODE_ERRORS as exc:
        raise MalformedPayload(f"{name} is not valid base64url") from exc
    if not decoded:
        raise MalformedPayload(f"{name} is empty")
    return decoded


def check_credential_type(value: str) -> None:
    if value != "public-key":
        raise MalformedPayload(f"unexpected credential type {value!r}")


def check_counter(new_counter: int, stored_counter: int) -> None:
    """Reject a counter that did not move forward.

    Authenticators that never count report 0 every time; that pair is let
    through, any other repeat or decrease means a cloned or replayed key.
    """
    if new_counter > stored_counter:
        return
    if new_counter == 0 and stored_counter == 0:
        return
    raise CounterReplay(f"signature counter {new_counter} is not above stored {stored_counter}")


class WebAuthnVerifier:
    test_mode = False

    def __init__(self, rp_id: str, origin: str):
        self.rp_id = rp_id
        self.origin = origin
        self._rp_id_hash = sha256(rp_id.encode())

    def _check_client_data(self, raw: bytes, expected_type: str, expected_challenge: bytes) -> CollectedClientData:
        try:
            client_data = CollectedClientData(raw)
        except _DECODE_ERRORS as exc:
            raise MalformedPayload("client data is not valid JSON client data") from exc

        if client_data.type != expected_type:
            raise MalformedPayload(f"client data type {client_data.type!r}, expected {expected_type!r}")
        if not hmac.compare_digest(bytes(client_data.challenge), expected_challenge):
            raise ChallengeMismatch("challenge in client data does not match the issued one")
        if client_data.origin != self.origin:
            raise OriginMismatch(f"origin {client_data.origin!r} is not {self.origin!r}")
        return client_data

    def _check_authenticator_data(self, auth_data: AuthenticatorData) -> None:
        if not hmac.compare_digest(auth_data.rp_id_hash, self._rp_id_hash):
            raise RelyingPartyMismatch(f"authenticator data is not scoped to {self.rp_id!r}")
        if not auth_data.is_user_present():
            raise MalformedPayload("user presence flag not set")

    def verify_registration(self, credential: RegistrationCredential, expected_challenge: bytes) -> RegistrationResult:
        check_credential_type(credential.type)
        raw_id = decode_field(credential.raw_id, "raw_id")
        client_data_raw = decode_field(credential.response.client_data_json, "client_data_json")
        attestation_raw = decode_field(credential.response.attestation_object, "attestation_object")

        self._check_client_data(client_data_raw, CREATE, expected_challenge)

        try:
            attestation = AttestationObject(attestation_raw)
            auth_data = attestation.auth_data
        except _DECODE_ERRORS as exc:
            raise MalformedPayload("attestation object could not be parsed") from exc

        self._check_authenticator_data(auth_data)

        cred_data = auth_data.credential_data
        if cred_data is None:
            raise MalformedPayload("attestation carries no credential data")
        public_key = cred_data.public_key
        if isinstance(public_key, UnsupportedKey) or public_key.get(3) not in ACCEPTED_ALGORITHMS:
            raise MalformedPayload(f"unsupported public key algorithm {public_key.get(3)}")
        if not hmac.compare_digest(bytes(cred_data.credential_id), raw_id):
            raise CredentialMismatch("attested credential id differs from raw_id")

        return RegistrationResult(
            credential_id=bytes(cred_data.credential_id),
            # COSE key -> CBOR bytes for storage
            public_key=cbor2.dumps(dict(public_key)),
            sign_count=auth_data.counter,
            aaguid=str(cred_data.aaguid),
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
        client_data_raw = decode_field(credential.response.client_data_json, "client_data_json")
        auth_data_raw = decode_field(credential.response.authenticator_data, "authenticator_data")
        signature = decode_field(credential.response.signature, "signature")

        self._check_client_data(client_data_raw, GET, expected_challenge)

        try:
            auth_data = AuthenticatorData(auth_data_raw)
        except _DECODE_ERRORS as exc:
            raise MalformedPayload("authenticator data could not be parsed") from exc

        self._check_authenticator_data(auth_data)

        try:
            cose_key = CoseKey.parse(cbor2.loads(public_key))
        except _DECODE_ERRORS as exc:
            raise SignatureInvalid("stored public key is unusable") from exc
        try:
            cose_key.verify(auth_data_raw + sha256(client_data_raw), signature)
        except (InvalidSignature, ValueError, NotImplementedError) as exc:
            raise SignatureInvalid("signature does not verify under the stored key") from exc

        check_counter(auth_data.counter, stored_counter)
        return AssertionResult(credential_id=raw_id, sign_count=auth_data.counter)
