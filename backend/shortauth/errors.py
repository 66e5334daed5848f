"""Error taxonomy for the passkey ceremonies.

Every error carries the HTTP status and the message that is safe to show a
client. Verification failures all share one public message so a caller
cannot tell a bad signature from a stale challenge; the concrete reason is
kept on the exception for the logs.
"""


class AuthError(Exception):
    status_code = 500
    public_message = "Authentication error"

    def __init__(self, reason: str | None = None):
        self.reason = reason or self.public_message
        super().__init__(self.reason)


class InvalidInput(AuthError):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.public_message = message


class Conflict(AuthError):
    status_code = 409
    public_message = "Account already exists"


class DuplicateUsername(Conflict):
    public_message = "Username already exists"


class DuplicateEmail(Conflict):
    public_message = "Email already exists"


class DuplicateCredential(Conflict):
    public_message = "Credential already registered"


class UserNotFound(AuthError):
    status_code = 404
    public_message = "User not found"


class UnknownUsername(UserNotFound):
    pass


class ChallengeExpiredOrMissing(AuthError):
    status_code = 401
    public_message = "Authentication failed"


class InvalidCredential(AuthError):
    status_code = 401
    public_message = "Authentication failed"


class MalformedPayload(InvalidCredential):
    pass


class ChallengeMismatch(InvalidCredential):
    pass


class OriginMismatch(InvalidCredential):
    pass


class RelyingPartyMismatch(InvalidCredential):
    pass


class CredentialMismatch(InvalidCredential):
    pass


class SignatureInvalid(InvalidCredential):
    pass


class CounterReplay(InvalidCredential):
    pass


class InvalidSession(AuthError):
    status_code = 401
    public_message = "Not authenticated"


class StorageUnavailable(AuthError):
    status_code = 503
    public_message = "Storage unavailable"
