import time

import jwt

from .errors import InvalidSession

ALGO = "HS256"


class JwtSessionIssuer:
    def __init__(self, secret: str, ttl_seconds: int = 3600, clock=time.time):
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def issue_session(self, user_id: int) -> str:
        now = int(self._clock())
        payload = {"sub": str(user_id), "iat": now, "exp": now + self.ttl_seconds}
        return jwt.encode(payload, self._secret, algorithm=ALGO)

    def decode_session(self, token: str) -> int:
        try:
            payload = jwt.decode(token, self._secret, algorithms=[ALGO], options={"require": ["sub", "exp"]})
            return int(payload["sub"])
        except (jwt.InvalidTokenError, ValueError) as exc:
            raise InvalidSession(str(exc)) from exc
