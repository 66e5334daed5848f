import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .db import session_scope
from .errors import (
    CounterReplay,
    DuplicateCredential,
    DuplicateEmail,
    DuplicateUsername,
    StorageUnavailable,
    UserNotFound,
)
from .models import UserRow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class User:
    user_id: int
    username: str
    email: str
    credential_id: bytes
    public_key: bytes
    signature_counter: int
    created_at: datetime | None = None


def _to_user(row: UserRow) -> User:
    return User(
        user_id=int(row.id),
        username=row.username,
        email=row.email,
        credential_id=bytes(row.credential_id),
        public_key=bytes(row.public_key),
        signature_counter=int(row.sign_count),
        created_at=row.created_at,
    )


class SqlCredentialStore:
    """User records kept in the relational database.

    Rows are converted to :class:`User` snapshots before the session closes,
    so callers never hold a live ORM object.
    """

    def __init__(self, sessions: sessionmaker):
        self._sessions = sessions

    @contextmanager
    def _transaction(self):
        try:
            with session_scope(self._sessions) as db:
                yield db
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("Credential store failure: %s", exc)
            raise StorageUnavailable(str(exc)) from exc

    def _find_one(self, db: Session, *criteria) -> User | None:
        row = db.execute(select(UserRow).where(*criteria)).scalar_one_or_none()
        return _to_user(row) if row is not None else None

    def find_user_by_username(self, username: str) -> User | None:
        with self._transaction() as db:
            return self._find_one(db, UserRow.username == username)

    def find_user_by_email(self, email: str) -> User | None:
        with self._transaction() as db:
            return self._find_one(db, UserRow.email == email)

    def find_user_by_credential_id(self, credential_id: bytes) -> User | None:
        with self._transaction() as db:
            return self._find_one(db, UserRow.credential_id == credential_id)

    def find_user_by_id(self, user_id: int) -> User | None:
        with self._transaction() as db:
            return self._find_one(db, UserRow.id == user_id)

    def create_user(
        self,
        username: str,
        email: str,
        credential_id: bytes,
        public_key: bytes,
        sign_count: int = 0,
    ) -> User:
        try:
            with self._transaction() as db:
                row = UserRow(
                    username=username,
                    email=email,
                    credential_id=credential_id,
                    public_key=public_key,
                    sign_count=sign_count,
                )
                db.add(row)
                db.flush()
                db.refresh(row)
                user = _to_user(row)
        except IntegrityError as exc:
            raise self._conflict_for(username, email) from exc
        return user

    def _conflict_for(self, username: str, email: str):
        # The unique constraint fired; work out which identity was taken.
        if self.find_user_by_username(username) is not None:
            return DuplicateUsername(f"username {username!r} claimed concurrently")
        if self.find_user_by_email(email) is not None:
            return DuplicateEmail(f"email {email!r} claimed concurrently")
        return DuplicateCredential("credential id already registered")

    def update_counter(self, user_id: int, new_counter: int, expected: int | None = None) -> None:
        """Store ``new_counter`` for the user.

        With ``expected`` set this is a compare-and-set: the write only lands if
        the stored counter still equals ``expected``, otherwise another login
        got there first and :class:`CounterReplay` is raised.
        """
        with self._transaction() as db:
            stmt = update(UserRow).where(UserRow.id == user_id)
            if expected is not None:
                stmt = stmt.where(UserRow.sign_count == expected)
            result = db.execute(stmt.values(sign_count=new_counter, updated_at=func.now()))
            if result.rowcount == 1:
                return
            exists = db.get(UserRow, user_id) is not None

        if not exists:
            raise UserNotFound(f"user {user_id} not found")
        raise CounterReplay(f"counter for user {user_id} moved past {expected}")

    def ping(self) -> bool:
        try:
            with session_scope(self._sessions) as db:
                db.execute(select(1))
            return True
        except SQLAlchemyError:
            return False
