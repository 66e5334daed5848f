import threading
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from shortauth.challenges import CHALLENGE_BYTES, CeremonyKind, Challenge, ChallengeLedger, RedisChallengeLedger
from shortauth.errors import ChallengeExpiredOrMissing, StorageUnavailable


class TestInMemoryLedger:
    def test_issue_then_consume_returns_same_challenge(self, ledger):
        issued = ledger.issue("alice", CeremonyKind.LOGIN)
        assert len(issued.value) == CHALLENGE_BYTES
        assert ledger.consume("alice", CeremonyKind.LOGIN) == issued

    def test_challenge_is_single_use(self, ledger):
        ledger.issue("alice", CeremonyKind.LOGIN)
        ledger.consume("alice", CeremonyKind.LOGIN)
        with pytest.raises(ChallengeExpiredOrMissing):
            ledger.consume("alice", CeremonyKind.LOGIN)

    def test_new_issue_replaces_previous(self, ledger):
        first = ledger.issue("alice", CeremonyKind.LOGIN)
        second = ledger.issue("alice", CeremonyKind.LOGIN)
        assert first.value != second.value
        assert ledger.consume("alice", CeremonyKind.LOGIN) == second
        assert len(ledger) == 0

    def test_kinds_are_independent(self, ledger):
        reg = ledger.issue("alice", CeremonyKind.REGISTRATION, {"email": "alice@x.com"})
        login = ledger.issue("alice", CeremonyKind.LOGIN)
        assert ledger.consume("alice", CeremonyKind.REGISTRATION) == reg
        assert ledger.consume("alice", CeremonyKind.LOGIN) == login

    def test_payload_travels_with_challenge(self, ledger):
        ledger.issue("handle", CeremonyKind.REGISTRATION, {"username": "alice", "email": "alice@x.com"})
        entry = ledger.consume("handle", CeremonyKind.REGISTRATION)
        assert entry.payload == {"username": "alice", "email": "alice@x.com"}

    def test_expired_challenge_rejected(self, ledger, clock):
        ledger.issue("alice", CeremonyKind.LOGIN)
        clock.advance(60)
        with pytest.raises(ChallengeExpiredOrMissing):
            ledger.consume("alice", CeremonyKind.LOGIN)

    def test_challenge_valid_just_before_expiry(self, ledger, clock):
        ledger.issue("alice", CeremonyKind.LOGIN)
        clock.advance(59.9)
        ledger.consume("alice", CeremonyKind.LOGIN)

    def test_expired_entries_purged_lazily(self, ledger, clock):
        ledger.issue("alice", CeremonyKind.LOGIN)
        ledger.issue("bob", CeremonyKind.LOGIN)
        clock.advance(120)
        ledger.issue("carol", CeremonyKind.LOGIN)
        assert len(ledger) == 1

    def test_unknown_subject(self, ledger):
        with pytest.raises(ChallengeExpiredOrMissing):
            ledger.consume("nobody", CeremonyKind.REGISTRATION)

    def test_concurrent_consume_has_one_winner(self, ledger):
        ledger.issue("alice", CeremonyKind.LOGIN)
        barrier = threading.Barrier(8)
        wins, losses = [], []

        def worker():
            barrier.wait()
            try:
                wins.append(ledger.consume("alice", CeremonyKind.LOGIN))
            except ChallengeExpiredOrMissing:
                losses.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert len(losses) == 7


class TestRedisLedger:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def redis_ledger(self, client, clock):
        return RedisChallengeLedger(client, ttl_seconds=60, clock=clock)

    def test_issue_writes_with_ttl(self, redis_ledger, client):
        issued = redis_ledger.issue("alice", CeremonyKind.LOGIN)
        key, ttl, value = client.setex.call_args.args
        assert key == "challenge:auth:alice"
        assert ttl == 60
        assert Challenge.from_json(value) == issued

    def test_consume_reads_and_deletes_in_one_pipeline(self, redis_ledger, client):
        issued = redis_ledger.issue("h1", CeremonyKind.REGISTRATION, {"username": "alice"})
        stored = client.setex.call_args.args[2]
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [stored.encode(), 1]

        assert redis_ledger.consume("h1", CeremonyKind.REGISTRATION) == issued
        pipe.get.assert_called_once_with("challenge:reg:h1")
        pipe.delete.assert_called_once_with("challenge:reg:h1")

    def test_missing_key(self, redis_ledger, client):
        client.pipeline.return_value.execute.return_value = [None, 0]
        with pytest.raises(ChallengeExpiredOrMissing):
            redis_ledger.consume("alice", CeremonyKind.LOGIN)

    def test_stored_expiry_still_checked(self, redis_ledger, client, clock):
        redis_ledger.issue("alice", CeremonyKind.LOGIN)
        stored = client.setex.call_args.args[2]
        client.pipeline.return_value.execute.return_value = [stored, 1]
        clock.advance(61)
        with pytest.raises(ChallengeExpiredOrMissing):
            redis_ledger.consume("alice", CeremonyKind.LOGIN)

    def test_redis_down_is_storage_error(self, redis_ledger, client):
        client.setex.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(StorageUnavailable):
            redis_ledger.issue("alice", CeremonyKind.LOGIN)

        client.pipeline.return_value.execute.side_effect = RedisConnectionError("connection refused")
        with pytest.raises(StorageUnavailable):
            redis_ledger.consume("alice", CeremonyKind.LOGIN)

    @pytest.mark.parametrize("stored", [b"not json", b'{"kind": "auth"}', b'{"value": "%%%", "kind": "auth", "subject": "alice", "issued_at": 0, "expires_at": 1}'])
    def test_unreadable_entry_is_missing_challenge(self, redis_ledger, client, stored):
        client.pipeline.return_value.execute.return_value = [stored, 1]
        with pytest.raises(ChallengeExpiredOrMissing):
            redis_ledger.consume("alice", CeremonyKind.LOGIN)


def test_incomplete_ledger_cannot_be_built():
    class HalfLedger(ChallengeLedger):
        def issue(self, subject, kind, payload=None):
            return self._mint(subject, kind, payload)

    with pytest.raises(TypeError):
        HalfLedger()
