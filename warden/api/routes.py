from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from warden.api.deps import rate_limited, require_user_id
from warden.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from warden.logging import get_logger
from warden.service.runtime import get_runtime
from warden.storage.models import AuthenticatedUser, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _auth_response(session: AuthenticatedUser) -> AuthResponse:
    return AuthResponse(
        user=_user_response(session.user),
        access_token=session.access_token,
        refresh_token=session.refresh_token,
    )


@router.post(
    "/register",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(rate_limited("register"))],
)
async def register(body: RegisterRequest):
    """Create an unverified account and send the verification email."""
    user = await get_runtime().auth.register(body.email, body.username, body.password)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/login", response_model=Envelope, dependencies=[Depends(rate_limited("login"))])
async def login(body: LoginRequest):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: unknown email or wrong password (indistinguishable)
        403: email address not yet verified
    """
    session = await get_runtime().auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(session))


@router.post(
    "/refresh", response_model=Envelope, dependencies=[Depends(rate_limited("refresh"))]
)
async def refresh(body: RefreshRequest):
    """Rotate a refresh token; the presented token stops working."""
    session = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(session))


@router.post("/logout", status_code=204)
async def logout(body: RefreshRequest):
    await get_runtime().auth.logout(body.refresh_token)


@router.get("/verify", response_model=Envelope, dependencies=[Depends(rate_limited("verify"))])
async def verify_email(token: str = Query(..., max_length=256)):
    await get_runtime().lifecycle.verify_email(token)
    return Envelope(status="ok", data={"status": "verified"})


@router.post(
    "/resend-verification",
    status_code=204,
    dependencies=[Depends(rate_limited("resend_verification"))],
)
async def resend_verification(body: EmailRequest):
    await get_runtime().lifecycle.resend_verification_email(body.email)


@router.post(
    "/forgot-password",
    status_code=204,
    dependencies=[Depends(rate_limited("forgot_password"))],
)
async def forgot_password(body: EmailRequest):
    # Same response whether or not the address is registered.
    await get_runtime().lifecycle.request_password_reset(body.email)


@router.post(
    "/reset-password",
    status_code=204,
    dependencies=[Depends(rate_limited("reset_password"))],
)
async def reset_password(body: ResetPasswordRequest):
    await get_runtime().lifecycle.reset_password(body.token, body.new_password)


@router.post(
    "/change-password",
    status_code=204,
    dependencies=[Depends(rate_limited("change_password"))],
)
async def change_password(body: ChangePasswordRequest, user_id: str = Depends(require_user_id)):
    await get_runtime().lifecycle.change_password(
        user_id, body.old_password, body.new_password
    )
