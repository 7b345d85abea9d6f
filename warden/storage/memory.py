from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    RefreshTokenRecord,
    SingleUseToken,
    TokenKind,
    User,
    UserCredential,
    utcnow,
)


class MemoryStore:
    """In-process credential store for single-instance deployments and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserCredential] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.single_use_tokens: Dict[TokenKind, Dict[str, SingleUseToken]] = {
            kind: {} for kind in TokenKind
        }
        # Every composite operation runs under this lock so readers never observe a
        # half-applied transition. RLock allows the helpers below to nest.
        self._data_lock = threading.RLock()

    # users
    def create_user(
        self,
        email: str,
        username: str,
        password_hash: str,
        password_algo: str,
    ) -> User:
        with self._data_lock:
            email_key = email.lower()
            username_key = username.lower()
            for existing in self.users.values():
                if existing.email.lower() == email_key:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username.lower() == username_key:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
            user = User.new(email=email, username=username)
            self.users[user.id] = user
            self.credentials[user.id] = UserCredential(
                user_id=user.id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email_key = email.lower()
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email.lower() == email_key), None
            )

    def find_users_by_email_or_username(self, email: str, username: str) -> List[User]:
        email_key = email.lower()
        username_key = username.lower()
        with self._data_lock:
            return [
                u
                for u in self.users.values()
                if u.email.lower() == email_key or u.username.lower() == username_key
            ]

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            if not cred:
                return None
            return cred.password_hash, cred.password_algo

    def _set_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        if user_id not in self.users:
            raise ConstraintViolation("user not found for credentials", {"user_id": user_id})
        self.credentials[user_id] = UserCredential(
            user_id=user_id, password_hash=password_hash, password_algo=password_algo
        )
        self.users[user_id].updated_at = utcnow()

    def replace_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> int:
        """Revoke every refresh token for the user, then store the new hash."""

        with self._data_lock:
            revoked = self._delete_user_refresh_tokens(user_id)
            self._set_password(user_id, password_hash, password_algo)
            return revoked

    # refresh tokens
    def add_refresh_token(
        self, user_id: str, hashed_token: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for refresh token", {"user_id": user_id}
                )
            record = RefreshTokenRecord(
                id=str(uuid.uuid4()),
                user_id=user_id,
                hashed_token=hashed_token,
                expires_at=expires_at,
            )
            self.refresh_tokens[record.id] = record
            return record

    def _find_refresh_token(
        self, user_id: str, hashed_token: str
    ) -> Optional[RefreshTokenRecord]:
        return next(
            (
                r
                for r in self.refresh_tokens.values()
                if r.user_id == user_id and r.hashed_token == hashed_token
            ),
            None,
        )

    def consume_refresh_token(
        self, user_id: str, hashed_token: str, now: Optional[datetime] = None
    ) -> bool:
        """Delete the matching record and report whether it was live.

        Only one caller can ever observe ``True`` for a given record.
        """

        now = now or utcnow()
        with self._data_lock:
            record = self._find_refresh_token(user_id, hashed_token)
            if record is None:
                return False
            del self.refresh_tokens[record.id]
            return record.expires_at > now

    def delete_refresh_token(self, user_id: str, hashed_token: str) -> bool:
        with self._data_lock:
            record = self._find_refresh_token(user_id, hashed_token)
            if record is None:
                return False
            del self.refresh_tokens[record.id]
            return True

    def _delete_user_refresh_tokens(self, user_id: str) -> int:
        doomed = [rid for rid, r in self.refresh_tokens.items() if r.user_id == user_id]
        for rid in doomed:
            del self.refresh_tokens[rid]
        return len(doomed)

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            return self._delete_user_refresh_tokens(user_id)

    def count_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for r in self.refresh_tokens.values() if r.user_id == user_id)

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            doomed = [rid for rid, r in self.refresh_tokens.items() if r.expires_at <= now]
            for rid in doomed:
                del self.refresh_tokens[rid]
            return len(doomed)

    def count_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            return sum(1 for r in self.refresh_tokens.values() if r.expires_at <= now)

    # single-use tokens
    def issue_single_use_token(
        self,
        kind: TokenKind,
        user_id: str,
        token: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> SingleUseToken:
        """Mark the user's active tokens of ``kind`` used and insert a new one."""

        kind = TokenKind(kind)
        now = now or utcnow()
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for token", {"user_id": user_id})
            bucket = self.single_use_tokens[kind]
            if token in bucket:
                raise ConstraintViolation("token already exists", {"kind": kind.value})
            for existing in bucket.values():
                if existing.user_id == user_id and existing.is_active(now):
                    existing.used_at = now
            issued = SingleUseToken.new(kind, token, user_id, expires_at)
            issued.created_at = now
            bucket[token] = issued
            return issued

    def get_single_use_token(self, kind: TokenKind, token: str) -> Optional[SingleUseToken]:
        with self._data_lock:
            return self.single_use_tokens[TokenKind(kind)].get(token)

    def list_active_tokens(
        self, kind: TokenKind, user_id: str, now: Optional[datetime] = None
    ) -> List[SingleUseToken]:
        now = now or utcnow()
        with self._data_lock:
            return [
                t
                for t in self.single_use_tokens[TokenKind(kind)].values()
                if t.user_id == user_id and t.is_active(now)
            ]

    def delete_expired_tokens(
        self, kind: TokenKind, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._data_lock:
            bucket = self.single_use_tokens[TokenKind(kind)]
            doomed = [key for key, t in bucket.items() if t.expires_at <= now]
            for key in doomed:
                del bucket[key]
            return len(doomed)

    def count_expired_tokens(self, kind: TokenKind, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            return sum(
                1 for t in self.single_use_tokens[TokenKind(kind)].values() if t.expires_at <= now
            )

    def _claim_token(
        self, kind: TokenKind, token_id: str, user_id: str, used_at: datetime
    ) -> bool:
        for t in self.single_use_tokens[kind].values():
            if t.id == token_id:
                if t.user_id != user_id or not t.is_active(used_at):
                    return False
                t.used_at = used_at
                return True
        return False

    # composite transitions
    def complete_email_verification(
        self, token_id: str, user_id: str, used_at: Optional[datetime] = None
    ) -> bool:
        used_at = used_at or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return False
            if not self._claim_token(
                TokenKind.EMAIL_VERIFICATION, token_id, user_id, used_at
            ):
                return False
            user.email_verified = True
            user.updated_at = used_at
            return True

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        used_at: Optional[datetime] = None,
    ) -> bool:
        used_at = used_at or utcnow()
        with self._data_lock:
            if user_id not in self.users:
                return False
            if not self._claim_token(
                TokenKind.PASSWORD_RESET, token_id, user_id, used_at
            ):
                return False
            self._delete_user_refresh_tokens(user_id)
            self._set_password(user_id, password_hash, password_algo)
            return True

    def ping(self) -> bool:
        return True
