"""Short-lived, single-use challenges for passkey ceremonies.

A ledger holds at most one live challenge per ``(subject, kind)`` pair.
Issuing again for the same pair replaces the previous entry, and
``consume`` hands an entry out exactly once.
"""

import abc
import enum
import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Tuple

from fido2.utils import websafe_decode, websafe_encode
from redis import Redis
from redis.exceptions import RedisError

from .errors import ChallengeExpiredOrMissing, StorageUnavailable

logger = logging.getLogger(__name__)

CHALLENGE_BYTES = 32

Clock = Callable[[], float]
RandomSource = Callable[[int], bytes]


class CeremonyKind(str, enum.Enum):
    REGISTRATION = "reg"
    LOGIN = "auth"


@dataclass(frozen=True)
class Challenge:
    value: bytes
    kind: CeremonyKind
    subject: str
    issued_at: float
    expires_at: float
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def encoded(self) -> str:
        return websafe_encode(self.value)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps({
            "value": self.encoded,
            "kind": self.kind.value,
            "subject": self.subject,
            "issued_at": self.issued_at,
            "expires_at": self.expires_at,
            "payload": self.payload,
        })

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Challenge":
        data = json.loads(raw)
        return cls(
            value=websafe_decode(data["value"]),
            kind=CeremonyKind(data["kind"]),
            subject=data["subject"],
            issued_at=data["issued_at"],
            expires_at=data["expires_at"],
            payload=data.get("payload") or {},
        )


class ChallengeLedger(abc.ABC):
    """Common minting logic; subclasses decide where entries live."""

    def __init__(self, ttl_seconds: int = 60, clock: Clock = time.time, random_bytes: RandomSource = secrets.token_bytes):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._random_bytes = random_bytes

    def _mint(self, subject: str, kind: CeremonyKind, payload: Dict[str, Any] | None) -> Challenge:
        now = self._clock()
        return Challenge(
            value=self._random_bytes(CHALLENGE_BYTES),
            kind=kind,
            subject=subject,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
            payload=dict(payload or {}),
        )

    @abc.abstractmethod
    def issue(self, subject: str, kind: CeremonyKind, payload: Dict[str, Any] | None = None) -> Challenge:
        ...

    @abc.abstractmethod
    def consume(self, subject: str, kind: CeremonyKind) -> Challenge:
        ...

    @staticmethod
    def _reject(reason: str) -> ChallengeExpiredOrMissing:
        logger.warning("Challenge rejected: %s", reason)
        return ChallengeExpiredOrMissing(reason)


class InMemoryChallengeLedger(ChallengeLedger):
    """Process-local ledger guarded by a single lock.

    Fine for one worker process; multi-process deployments should use
    :class:`RedisChallengeLedger`.
    """

    def __init__(self, ttl_seconds: int = 60, clock: Clock = time.time, random_bytes: RandomSource = secrets.token_bytes):
        super().__init__(ttl_seconds, clock, random_bytes)
        self._entries: Dict[Tuple[str, CeremonyKind], Challenge] = {}
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
        for key in expired:
            del self._entries[key]

    def issue(self, subject: str, kind: CeremonyKind, payload: Dict[str, Any] | None = None) -> Challenge:
        challenge = self._mint(subject, kind, payload)
        with self._lock:
            self._purge(challenge.issued_at)
            self._entries[(subject, kind)] = challenge
        return challenge

    def consume(self, subject: str, kind: CeremonyKind) -> Challenge:
        now = self._clock()
        with self._lock:
            entry = self._entries.pop((subject, kind), None)
            self._purge(now)
        if entry is None or entry.is_expired(now):
            raise self._reject(f"no live {kind.name.lower()} challenge for {subject!r}")
        return entry

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisChallengeLedger(ChallengeLedger):
    """Ledger shared between processes through Redis.

    Entries are written with ``SETEX`` so Redis drops them on its own; the
    stored ``expires_at`` is still checked so an injected clock stays
    authoritative.
    """

    def __init__(self, client: Redis, ttl_seconds: int = 60, clock: Clock = time.time, random_bytes: RandomSource = secrets.token_bytes):
        super().__init__(ttl_seconds, clock, random_bytes)
        self._redis = client

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisChallengeLedger":
        return cls(Redis.from_url(url), **kwargs)

    @staticmethod
    def _key(subject: str, kind: CeremonyKind) -> str:
        return f"challenge:{kind.value}:{subject}"

    def issue(self, subject: str, kind: CeremonyKind, payload: Dict[str, Any] | None = None) -> Challenge:
        challenge = self._mint(subject, kind, payload)
        try:
            self._redis.setex(self._key(subject, kind), self.ttl_seconds, challenge.to_json())
        except RedisError as exc:
            logger.error("Could not store challenge: %s", exc)
            raise StorageUnavailable(str(exc)) from exc
        return challenge

    def consume(self, subject: str, kind: CeremonyKind) -> Challenge:
        key = self._key(subject, kind)
        try:
            # MULTI/EXEC: only one caller ever sees the value.
            pipe = self._redis.pipeline()
            pipe.get(key)
            pipe.delete(key)
            value, _ = pipe.execute()
        except RedisError as exc:
            logger.error("Could not consume challenge: %s", exc)
            raise StorageUnavailable(str(exc)) from exc

        if value is None:
            raise self._reject(f"no live {kind.name.lower()} challenge for {subject!r}")
        try:
            entry = Challenge.from_json(value)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Unreadable challenge entry at %s: %s", key, exc)
            raise ChallengeExpiredOrMissing(f"unreadable challenge entry for {subject!r}") from exc
        if entry.is_expired(self._clock()):
            raise self._reject(f"{kind.name.lower()} challenge for {subject!r} expired")
        return entry


def build_ledger(settings) -> ChallengeLedger:
    if settings.CHALLENGE_BACKEND == "redis":
        return RedisChallengeLedger.from_url(settings.REDIS_URL, ttl_seconds=settings.CHALLENGE_TIMEOUT_SECONDS)
    return InMemoryChallengeLedger(ttl_seconds=settings.CHALLENGE_TIMEOUT_SECONDS)
