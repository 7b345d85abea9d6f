from __future__ import annotations

from typing import Optional

from warden.logging import get_logger, hash_email
from warden.service.errors import (
    AlreadyExistsError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidTokenError,
    UnauthorizedError,
    ValidationError,
    translate_storage_errors,
)
from warden.service.events import EventPublisher, UserCreated, safe_publish
from warden.service.passwords import PasswordHasher
from warden.service.token_lifecycle import CredentialStore, TokenLifecycleService
from warden.service.tokens import ACCESS, JwtService, hash_token
from warden.storage.errors import ConstraintViolation
from warden.storage.models import AuthenticatedUser, User

logger = get_logger(__name__)


class AuthService:
    """Registration, login and refresh-token rotation."""

    def __init__(
        self,
        store: CredentialStore,
        jwt: JwtService,
        hasher: PasswordHasher,
        lifecycle: TokenLifecycleService,
        *,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        self.store = store
        self.jwt = jwt
        self.hasher = hasher
        self.lifecycle = lifecycle
        self.publisher = publisher
        self.logger = logger
        self._dummy_hash: Optional[str] = None

    def _burn_hash(self, password: str) -> None:
        # Unknown emails still pay for one verification so timing matches wrong passwords.
        if self._dummy_hash is None:
            self._dummy_hash, _ = self.hasher.hash("warden-timing-equalizer")
        self.hasher.matches(password, self._dummy_hash)

    async def register(self, email: str, username: str, password: str) -> User:
        email = email.strip().lower()
        username = username.strip()
        if not email or not username or not password:
            raise ValidationError("email, username and password are required")
        with translate_storage_errors():
            if self.store.find_users_by_email_or_username(email, username):
                raise AlreadyExistsError()
            pwd_hash, algo = self.hasher.hash(password)
            try:
                user = self.store.create_user(email, username, pwd_hash, algo)
            except ConstraintViolation as exc:
                # Another registration committed between the lookup and the insert.
                raise AlreadyExistsError(detail=exc.detail) from exc
        token = self.lifecycle.issue_verification_token_for(user)
        self.logger.info("user_registered", user_id=user.id, email_hash=hash_email(email))
        safe_publish(
            self.publisher,
            UserCreated(
                user_id=user.id,
                email=user.email,
                username=user.username,
                verification_token=token.token,
            ),
        )
        return user

    def _password_matches(self, user_id: str, password: str) -> bool:
        with translate_storage_errors():
            record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        return self.hasher.matches(password, stored_hash, algo)

    def _issue_pair(self, user: User) -> AuthenticatedUser:
        access_token = self.jwt.generate_access_token(user.id)
        refresh_token = self.jwt.generate_refresh_token(user.id)
        with translate_storage_errors():
            self.store.add_refresh_token(
                user.id, hash_token(refresh_token), self.jwt.refresh_expires_at()
            )
        return AuthenticatedUser(user=user, access_token=access_token, refresh_token=refresh_token)

    async def login(self, email: str, password: str) -> AuthenticatedUser:
        email = email.strip().lower()
        with translate_storage_errors():
            user = self.store.get_user_by_email(email)
        if not user:
            self._burn_hash(password)
            self.logger.info("login_failed", email_hash=hash_email(email))
            raise InvalidCredentialsError()
        if not self._password_matches(user.id, password):
            self.logger.info("login_failed", email_hash=hash_email(email))
            raise InvalidCredentialsError()
        if not user.email_verified:
            raise EmailNotVerifiedError()
        session = self._issue_pair(user)
        self.logger.info("user_logged_in", user_id=user.id)
        return session

    async def refresh(self, raw_refresh_token: str) -> AuthenticatedUser:
        if not self.jwt.validate_refresh_token(raw_refresh_token):
            raise InvalidTokenError("Invalid refresh token", reason="malformed")
        user_id = self.jwt.get_user_id_from_token(raw_refresh_token)
        with translate_storage_errors():
            # Conditional delete: of two concurrent callers only one sees True.
            consumed = self.store.consume_refresh_token(
                user_id, hash_token(raw_refresh_token)
            )
            user = self.store.get_user(user_id) if consumed else None
        if not consumed:
            self.logger.warning("refresh_token_reuse_or_unknown", user_id=user_id)
            raise InvalidTokenError("Invalid refresh token", reason="not_found")
        if not user:
            raise InvalidTokenError("Invalid refresh token", reason="not_found")
        session = self._issue_pair(user)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return session

    async def logout(self, raw_refresh_token: str) -> None:
        payload = self.jwt.decode(raw_refresh_token)
        if not payload or payload.get("token_type") != "refresh":
            self.logger.info("logout_ignored_invalid_token")
            return
        user_id = str(payload["sub"])
        with translate_storage_errors():
            removed = self.store.delete_refresh_token(user_id, hash_token(raw_refresh_token))
        self.logger.info("user_logged_out", user_id=user_id, revoked=removed)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authenticate(self, authorization: Optional[str]) -> str:
        """Resolve an ``Authorization: Bearer`` access token to a user id."""

        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("Missing bearer token")
        payload = self.jwt.decode(token)
        if not payload or payload.get("token_type") != ACCESS:
            raise UnauthorizedError("Invalid access token")
        user_id = str(payload["sub"])
        with translate_storage_errors():
            user = self.store.get_user(user_id)
        if not user:
            raise UnauthorizedError("Invalid access token")
        return user.id
