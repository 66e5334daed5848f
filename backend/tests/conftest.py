"""
Shared pytest fixtures for the passkey backend tests.

Provides:
- A software authenticator that produces real ES256 attestations/assertions
- Stub credential payloads shaped like the frontend's test-mode ones
- A controllable clock, a SQLite-backed credential store, ceremony engines
"""

import json
import os

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2.cose import ES256
from fido2.utils import sha256, websafe_encode
from fido2.webauthn import Aaguid, AttestationObject, AttestedCredentialData, AuthenticatorData

from shortauth import models  # noqa: F401
from shortauth.ceremony import CeremonyEngine, RelyingParty
from shortauth.challenges import InMemoryChallengeLedger
from shortauth.config import Settings
from shortauth.db import Base, make_engine, make_session_factory
from shortauth.schemas import AuthenticationCredential, RegistrationCredential
from shortauth.security import JwtSessionIssuer
from shortauth.store import SqlCredentialStore
from shortauth.testmode import StubVerifier
from shortauth.verifier import WebAuthnVerifier

RP_ID = "localhost"
RP_NAME = "Thalora URL Shortener"
ORIGIN = "http://localhost:3000"
JWT_SECRET = "test-secret-that-is-long-enough-for-hs256-signing"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SoftAuthenticator:
    """In-process platform authenticator holding one P-256 key."""

    def __init__(self, rp_id: str = RP_ID, origin: str = ORIGIN):
        self.rp_id = rp_id
        self.origin = origin
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.cose_key = ES256.from_cryptography_key(self.private_key.public_key())
        self.credential_id = os.urandom(32)
        self.counter = 0

    def client_data(self, type_: str, challenge: str, origin: str | None = None) -> bytes:
        return json.dumps({
            "type": type_,
            "challenge": challenge,
            "origin": origin or self.origin,
            "crossOrigin": False,
        }).encode()

    def _ids(self) -> dict:
        raw_id = websafe_encode(self.credential_id)
        return {"id": raw_id, "raw_id": raw_id, "type": "public-key"}

    def create(self, challenge: str, *, origin=None, type_="webauthn.create", rp_id=None, counter=0) -> dict:
        cred_data = AttestedCredentialData.create(Aaguid.NONE, self.credential_id, self.cose_key)
        auth_data = AuthenticatorData.create(
            sha256((rp_id or self.rp_id).encode()),
            AuthenticatorData.FLAG.UP | AuthenticatorData.FLAG.AT,
            counter,
            cred_data,
        )
        attestation = AttestationObject.create("none", auth_data, {})
        return {
            **self._ids(),
            "response": {
                "client_data_json": websafe_encode(self.client_data(type_, challenge, origin)),
                "attestation_object": websafe_encode(bytes(attestation)),
            },
        }

    def get(self, challenge: str, *, counter=None, origin=None, type_="webauthn.get", rp_id=None, signing_key=None) -> dict:
        if counter is None:
            self.counter += 1
            counter = self.counter
        client_data = self.client_data(type_, challenge, origin)
        auth_data = AuthenticatorData.create(
            sha256((rp_id or self.rp_id).encode()),
            AuthenticatorData.FLAG.UP,
            counter,
        )
        key = signing_key or self.private_key
        signature = key.sign(bytes(auth_data) + sha256(client_data), ec.ECDSA(hashes.SHA256()))
        return {
            **self._ids(),
            "response": {
                "client_data_json": websafe_encode(client_data),
                "authenticator_data": websafe_encode(bytes(auth_data)),
                "signature": websafe_encode(signature),
            },
        }


def stub_registration(username: str, challenge: str) -> dict:
    raw_id = websafe_encode(f"test-credential-{username}".encode())
    return {
        "id": f"test-credential-{username}",
        "raw_id": raw_id,
        "type": "public-key",
        "response": {
            "client_data_json": websafe_encode(json.dumps(
                {"type": "webauthn.create", "challenge": challenge, "origin": ORIGIN}
            ).encode()),
            "attestation_object": websafe_encode(b"fake-attestation-object"),
        },
    }


def stub_assertion(username: str, challenge: str) -> dict:
    raw_id = websafe_encode(f"test-credential-{username}".encode())
    return {
        "id": f"test-credential-{username}",
        "raw_id": raw_id,
        "type": "public-key",
        "response": {
            "client_data_json": websafe_encode(json.dumps(
                {"type": "webauthn.get", "challenge": challenge, "origin": ORIGIN}
            ).encode()),
            "authenticator_data": websafe_encode(b"fake-authenticator-data"),
            "signature": websafe_encode(b"fake-signature"),
        },
    }


def as_registration(payload: dict) -> RegistrationCredential:
    return RegistrationCredential.model_validate(payload)


def as_assertion(payload: dict) -> AuthenticationCredential:
    return AuthenticationCredential.model_validate(payload)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'shortener.db'}"


@pytest.fixture
def store(database_url):
    engine = make_engine(database_url)
    Base.metadata.create_all(bind=engine)
    yield SqlCredentialStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def ledger(clock):
    return InMemoryChallengeLedger(ttl_seconds=60, clock=clock)


@pytest.fixture
def sessions():
    return JwtSessionIssuer(JWT_SECRET, ttl_seconds=3600)


def _engine(store, ledger, sessions, verifier):
    return CeremonyEngine(
        store=store,
        ledger=ledger,
        verifier=verifier,
        sessions=sessions,
        relying_party=RelyingParty(id=RP_ID, name=RP_NAME, timeout_ms=60000),
    )


@pytest.fixture
def engine(store, ledger, sessions):
    return _engine(store, ledger, sessions, WebAuthnVerifier(rp_id=RP_ID, origin=ORIGIN))


@pytest.fixture
def stub_engine(store, ledger, sessions):
    return _engine(store, ledger, sessions, StubVerifier())


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def make_settings(database_url):
    def _make(**overrides) -> Settings:
        values = {
            "DATABASE_URL": database_url,
            "JWT_SECRET": JWT_SECRET,
            "RP_ID": RP_ID,
            "RP_NAME": RP_NAME,
            "ORIGIN": ORIGIN,
            "CHALLENGE_BACKEND": "memory",
            "TEST_MODE": False,
            "ENV": "dev",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make
