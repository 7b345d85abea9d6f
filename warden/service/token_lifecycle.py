from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from warden.config import Settings
from warden.logging import get_logger, hash_email
from warden.service.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    SamePasswordError,
    UserNotFoundError,
    translate_storage_errors,
)
from warden.service.events import (
    EventPublisher,
    ResendVerificationRequested,
    ResetPasswordRequested,
    safe_publish,
)
from warden.service.passwords import PasswordHasher
from warden.storage.models import (
    RefreshTokenRecord,
    SingleUseToken,
    TokenKind,
    User,
    utcnow,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def create_user(
        self, email: str, username: str, password_hash: str, password_algo: str
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def find_users_by_email_or_username(self, email: str, username: str) -> List[User]: ...

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]: ...

    def replace_password(self, user_id: str, password_hash: str, password_algo: str) -> int: ...

    def add_refresh_token(
        self, user_id: str, hashed_token: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def consume_refresh_token(
        self, user_id: str, hashed_token: str, now: Optional[datetime] = None
    ) -> bool: ...

    def delete_refresh_token(self, user_id: str, hashed_token: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def count_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def count_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...

    def issue_single_use_token(
        self,
        kind: TokenKind,
        user_id: str,
        token: str,
        expires_at: datetime,
        now: Optional[datetime] = None,
    ) -> SingleUseToken: ...

    def get_single_use_token(self, kind: TokenKind, token: str) -> Optional[SingleUseToken]: ...

    def list_active_tokens(
        self, kind: TokenKind, user_id: str, now: Optional[datetime] = None
    ) -> List[SingleUseToken]: ...

    def delete_expired_tokens(self, kind: TokenKind, now: Optional[datetime] = None) -> int: ...

    def count_expired_tokens(self, kind: TokenKind, now: Optional[datetime] = None) -> int: ...

    def complete_email_verification(
        self, token_id: str, user_id: str, used_at: Optional[datetime] = None
    ) -> bool: ...

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        used_at: Optional[datetime] = None,
    ) -> bool: ...


_TOKEN_MESSAGES = {
    TokenKind.EMAIL_VERIFICATION: {
        "not_found": "Email verification token is invalid",
        "used": "Email verification token has already been used",
        "expired": "Email verification token has expired",
    },
    TokenKind.PASSWORD_RESET: {
        "not_found": "Invalid password reset token",
        "used": "Password reset token has already been used",
        "expired": "Password reset token has expired",
    },
}


class TokenLifecycleService:
    """Single-use token issuance and redemption plus password-change rules.

    Each category (email verification, password reset) allows at most one active
    token per user; issuing a new one retires the user's other active tokens of
    that category in the same store transaction.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        settings: Settings,
        *,
        publisher: Optional[EventPublisher] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.publisher = publisher
        self._clock = clock
        self.verification_ttl = timedelta(hours=settings.email_verification_expiry_hours)
        self.reset_ttl = timedelta(minutes=settings.password_reset_expiry_minutes)

    def _now(self) -> datetime:
        return self._clock()

    def _issue(self, kind: TokenKind, user: User) -> SingleUseToken:
        now = self._now()
        ttl = self.verification_ttl if kind == TokenKind.EMAIL_VERIFICATION else self.reset_ttl
        with translate_storage_errors():
            issued = self.store.issue_single_use_token(
                kind, user.id, secrets.token_urlsafe(32), now + ttl, now
            )
        logger.info(
            "single_use_token_issued",
            kind=kind.value,
            user_id=user.id,
            expires_at=issued.expires_at.isoformat(),
        )
        return issued

    def _redeemable(self, kind: TokenKind, raw_token: str) -> SingleUseToken:
        messages = _TOKEN_MESSAGES[kind]
        token = None
        if raw_token:
            with translate_storage_errors():
                token = self.store.get_single_use_token(kind, raw_token)
        if token is None:
            raise InvalidTokenError(messages["not_found"], reason="not_found")
        if token.is_used:
            raise InvalidTokenError(messages["used"], reason="used")
        if token.is_expired(self._now()):
            raise InvalidTokenError(messages["expired"], reason="expired")
        return token

    def _claim_failed(self, token: SingleUseToken) -> InvalidTokenError:
        """Explain why the store refused to claim a token that passed ``_redeemable``.

        Either a concurrent redemption won, or the token expired while the
        request was hashing.
        """
        messages = _TOKEN_MESSAGES[token.kind]
        with translate_storage_errors():
            current = self.store.get_single_use_token(token.kind, token.token)
        if current is not None and not current.is_used and current.is_expired(self._now()):
            return InvalidTokenError(messages["expired"], reason="expired")
        return InvalidTokenError(messages["used"], reason="used")

    # email verification
    def issue_verification_token_for(self, user: User) -> SingleUseToken:
        return self._issue(TokenKind.EMAIL_VERIFICATION, user)

    async def issue_verification_token(self, email: str) -> SingleUseToken:
        with translate_storage_errors():
            user = self.store.get_user_by_email(email.strip())
        if not user:
            raise UserNotFoundError()
        return self.issue_verification_token_for(user)

    async def resend_verification_email(self, email: str) -> SingleUseToken:
        with translate_storage_errors():
            user = self.store.get_user_by_email(email.strip())
        if not user:
            raise UserNotFoundError()
        token = self.issue_verification_token_for(user)
        if user.email_verified:
            logger.info("verification_resend_suppressed", user_id=user.id)
            return token
        safe_publish(
            self.publisher,
            ResendVerificationRequested(
                user_id=user.id,
                email=user.email,
                username=user.username,
                verification_token=token.token,
            ),
        )
        return token

    async def verify_email(self, raw_token: str) -> None:
        token = self._redeemable(TokenKind.EMAIL_VERIFICATION, raw_token)
        with translate_storage_errors():
            claimed = self.store.complete_email_verification(
                token.id, token.user_id, self._now()
            )
        if not claimed:
            raise self._claim_failed(token)
        logger.info("email_verified", user_id=token.user_id)

    # password reset
    async def request_password_reset(self, email: str) -> None:
        with translate_storage_errors():
            user = self.store.get_user_by_email(email.strip())
        if not user:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email))
            return
        token = self._issue(TokenKind.PASSWORD_RESET, user)
        safe_publish(
            self.publisher,
            ResetPasswordRequested(
                user_id=user.id,
                email=user.email,
                username=user.username,
                reset_token=token.token,
            ),
        )

    def _is_current_password(self, user_id: str, password: str) -> bool:
        with translate_storage_errors():
            record = self.store.get_password_record(user_id)
        if not record:
            return False
        stored_hash, algo = record
        return self.hasher.matches(password, stored_hash, algo)

    async def reset_password(self, raw_token: str, new_password: str) -> None:
        token = self._redeemable(TokenKind.PASSWORD_RESET, raw_token)
        if self._is_current_password(token.user_id, new_password):
            raise SamePasswordError()
        pwd_hash, algo = self.hasher.hash(new_password)
        with translate_storage_errors():
            claimed = self.store.complete_password_reset(
                token.id, token.user_id, pwd_hash, algo, self._now()
            )
        if not claimed:
            raise self._claim_failed(token)
        logger.info("password_reset_completed", user_id=token.user_id)

    async def change_password(
        self, user_id: str, old_password: str, new_password: str
    ) -> None:
        with translate_storage_errors():
            user = self.store.get_user(user_id)
        if not user:
            raise UserNotFoundError()
        if not self._is_current_password(user_id, old_password):
            raise InvalidCredentialsError()
        if self._is_current_password(user_id, new_password):
            raise SamePasswordError()
        pwd_hash, algo = self.hasher.hash(new_password)
        with translate_storage_errors():
            revoked = self.store.replace_password(user_id, pwd_hash, algo)
        logger.info("password_changed", user_id=user_id, revoked_refresh_tokens=revoked)

    # maintenance
    async def cleanup_expired_tokens(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Delete expired single-use and refresh token records.

        Redemption re-checks expiry on its own, so this is pure reclamation and
        safe to re-run after a failure.
        """

        now = now or self._now()
        with translate_storage_errors():
            removed = {
                kind.value: self.store.delete_expired_tokens(kind, now) for kind in TokenKind
            }
            removed["refresh"] = self.store.delete_expired_refresh_tokens(now)
        logger.info("expired_tokens_cleaned", **removed)
        return removed

    async def count_expired_tokens(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Report what ``cleanup_expired_tokens`` would delete at ``now``."""

        now = now or self._now()
        with translate_storage_errors():
            pending = {
                kind.value: self.store.count_expired_tokens(kind, now) for kind in TokenKind
            }
            pending["refresh"] = self.store.count_expired_refresh_tokens(now)
        return pending
