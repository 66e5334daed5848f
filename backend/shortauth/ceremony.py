"""Registration and login ceremonies.

A ceremony has no object of its own: its state is the ledger entry for
``(subject, kind)`` plus whatever the client signed. ``*_begin`` issues that
entry, ``*_complete`` consumes it (whatever the outcome), hands the signed
response to the verifier and, on success, writes the store and asks for a
session.
"""

import hmac
import logging
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Dict, List

from email_validator import EmailNotValidError, validate_email
from fido2.utils import websafe_encode

from .challenges import CeremonyKind, ChallengeLedger
from .errors import (
    CredentialMismatch,
    DuplicateEmail,
    DuplicateUsername,
    InvalidCredential,
    InvalidInput,
    InvalidSession,
    UnknownUsername,
)
from .schemas import (
    AllowedCredential,
    AuthenticationCredential,
    AuthenticatorSelection,
    LoginOptions,
    PubKeyCredParam,
    RegistrationCredential,
    RegistrationOptions,
    RelyingPartyEntity,
    UserEntity,
)
from .security import JwtSessionIssuer
from .store import SqlCredentialStore, User
from .verifier import ACCEPTED_ALGORITHMS, decode_field

logger = logging.getLogger(__name__)

USER_HANDLE_BYTES = 16
USERNAME_MIN, USERNAME_MAX = 3, 255
EMAIL_MAX = 320


@dataclass(frozen=True)
class RelyingParty:
    id: str
    name: str
    timeout_ms: int = 60000


@dataclass(frozen=True)
class CeremonyResult:
    user: User
    session_token: str


def normalize_username(username: str) -> str:
    username = (username or "").strip()
    if not USERNAME_MIN <= len(username) <= USERNAME_MAX:
        raise InvalidInput(f"Username must be between {USERNAME_MIN} and {USERNAME_MAX} characters")
    return username


def normalize_email(email: str) -> str:
    email = (email or "").strip().lower()
    if not email or len(email) > EMAIL_MAX:
        raise InvalidInput("Invalid email address")
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError as exc:
        raise InvalidInput("Invalid email address") from exc
    return email


class KeyedLocks:
    """One lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[object, List] = {}

    @contextmanager
    def hold(self, key):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class CeremonyEngine:
    def __init__(
        self,
        store: SqlCredentialStore,
        ledger: ChallengeLedger,
        verifier,
        sessions: JwtSessionIssuer,
        relying_party: RelyingParty,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ):
        self._store = store
        self._ledger = ledger
        self._verifier = verifier
        self._sessions = sessions
        self.relying_party = relying_party
        self._random_bytes = random_bytes
        self._user_locks = KeyedLocks()

    @property
    def test_mode(self) -> bool:
        return bool(self._verifier.test_mode)

    # ---------- Registration ----------
    def registration_begin(self, username: str, email: str) -> RegistrationOptions:
        username = normalize_username(username)
        email = normalize_email(email)
        logger.info("Beginning registration for user: %s", username)

        if self._store.find_user_by_username(username) is not None:
            raise DuplicateUsername(f"username {username!r} taken")
        if self._store.find_user_by_email(email) is not None:
            raise DuplicateEmail(f"email {email!r} taken")

        handle = websafe_encode(self._random_bytes(USER_HANDLE_BYTES))
        challenge = self._ledger.issue(handle, CeremonyKind.REGISTRATION, {"username": username, "email": email})

        rp = self.relying_party
        return RegistrationOptions(
            challenge=challenge.encoded,
            user_id=handle,
            timeout=rp.timeout_ms,
            rp=RelyingPartyEntity(id=rp.id, name=rp.name),
            user=UserEntity(id=handle, name=username, display_name=username),
            pub_key_cred_params=[PubKeyCredParam(alg=alg) for alg in ACCEPTED_ALGORITHMS],
            authenticator_selection=AuthenticatorSelection(),
            attestation="none",
        )

    def registration_complete(self, user_handle: str, credential: RegistrationCredential) -> CeremonyResult:
        logger.info("Completing registration for handle: %s", user_handle)
        challenge = self._ledger.consume(user_handle, CeremonyKind.REGISTRATION)
        username = challenge.payload["username"]
        email = challenge.payload["email"]

        try:
            result = self._verifier.verify_registration(credential, challenge.value)
        except InvalidCredential as exc:
            logger.warning("Registration credential rejected for %s: %s", username, exc.reason)
            raise

        user = self._store.create_user(
            username=username,
            email=email,
            credential_id=result.credential_id,
            public_key=result.public_key,
            sign_count=result.sign_count,
        )
        token = self._sessions.issue_session(user.user_id)
        logger.info("User registered successfully: %s (ID: %s)", user.username, user.user_id)
        return CeremonyResult(user=user, session_token=token)

    # ---------- Login ----------
    def login_begin(self, username: str) -> LoginOptions:
        username = (username or "").strip()
        logger.info("Beginning login for user: %s", username)

        user = self._store.find_user_by_username(username)
        if user is None:
            raise UnknownUsername(f"no user {username!r}")

        challenge = self._ledger.issue(username, CeremonyKind.LOGIN)
        rp = self.relying_party
        return LoginOptions(
            challenge=challenge.encoded,
            timeout=rp.timeout_ms,
            rp_id=rp.id,
            allow_credentials=[AllowedCredential(id=websafe_encode(user.credential_id), transports=["internal"])],
        )

    def login_complete(self, username: str, credential: AuthenticationCredential) -> CeremonyResult:
        username = (username or "").strip()
        logger.info("Completing login for user: %s", username)
        challenge = self._ledger.consume(username, CeremonyKind.LOGIN)

        user = self._store.find_user_by_username(username)
        if user is None:
            raise UnknownUsername(f"no user {username!r}")

        # Read counter, verify, write counter: one unit per user.
        with self._user_locks.hold(user.user_id):
            user = self._store.find_user_by_id(user.user_id)
            if user is None:
                raise UnknownUsername(f"no user {username!r}")
            try:
                presented = decode_field(credential.raw_id, "raw_id")
                if not hmac.compare_digest(presented, user.credential_id):
                    raise CredentialMismatch("credential is not the one registered for this user")
                result = self._verifier.verify_assertion(
                    credential,
                    challenge.value,
                    user.public_key,
                    user.signature_counter,
                )
                self._store.update_counter(user.user_id, result.sign_count, expected=user.signature_counter)
            except InvalidCredential as exc:
                logger.warning("Authentication failed for %s: %s", username, exc.reason)
                raise

        user = replace(user, signature_counter=result.sign_count)
        token = self._sessions.issue_session(user.user_id)
        logger.info("User logged in successfully: %s (ID: %s)", user.username, user.user_id)
        return CeremonyResult(user=user, session_token=token)

    # ---------- Sessions ----------
    def resolve_session(self, token: str | None) -> User:
        if not token:
            raise InvalidSession("no session token")
        user = self._store.find_user_by_id(self._sessions.decode_session(token))
        if user is None:
            raise InvalidSession("session refers to a missing user")
        return user
