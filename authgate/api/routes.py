from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header

from authgate.api.schemas import (
    CodeDispatchResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MeResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    RegisterResponse,
    TempTokenRequest,
    TokenPairResponse,
    TokenRefreshRequest,
    VerifyCodeRequest,
)
from authgate.service.auth import AuthContext, AuthState, LoginResult
from authgate.service.runtime import get_runtime
from authgate.service.tokens import TokenPair

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _pair_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        refresh_expires_in=pair.refresh_expires_in,
        roles=list(pair.roles),
        active_tenant_id=pair.active_tenant_id,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        state=result.state.value,
        requires_verification=result.state == AuthState.CODE_PENDING,
        temp_token=result.temp_token,
        expires_in=result.expires_in,
        destination=result.destination,
        tokens=_pair_response(result.tokens) if result.tokens else None,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    """Check email and password.

    Returns a temp token and sends a code to the account's phone, or
    returns tokens directly for privileged accounts and accounts without
    a phone on file.

    Raises:
        401: If credentials are invalid
        429: If the account is locked out
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_login_response(result))


@router.post("/verify-sms", response_model=Envelope)
async def verify_sms(body: VerifyCodeRequest):
    """Complete a login with the code sent to the account's phone."""
    runtime = get_runtime()
    result = await runtime.auth.verify_code_and_complete_login(
        body.temp_token, body.code, body.active_tenant_id
    )
    return Envelope(status="ok", data=_login_response(result))


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email, body.password, body.phone, name=body.name
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user_id=result.user_id,
            temp_token=result.temp_token,
            expires_in=result.expires_in,
            destination=result.destination,
        ),
    )


@router.post("/activate", response_model=Envelope)
async def activate(body: VerifyCodeRequest):
    """Activate a pending account with the code sent at registration."""
    runtime = get_runtime()
    result = await runtime.auth.verify_code_and_activate(body.temp_token, body.code)
    return Envelope(status="ok", data=_login_response(result))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token, body.active_tenant_id)
    return Envelope(status="ok", data=_pair_response(pair))


@router.post("/logout", response_model=Envelope)
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.access_token)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/resend-code", response_model=Envelope)
async def resend_code(body: TempTokenRequest):
    runtime = get_runtime()
    dispatch = await runtime.auth.resend_code(body.temp_token)
    return Envelope(
        status="ok",
        data=CodeDispatchResponse(
            destination=dispatch.destination, expires_in=dispatch.expires_in
        ),
    )


@router.post("/password-reset/request", response_model=Envelope)
async def request_password_reset(body: PasswordResetRequest):
    """Send a reset token if the account exists; the response never says."""
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return Envelope(
        status="ok",
        data={"message": "if the account exists, a reset token has been sent"},
    )


@router.post("/password-reset/confirm", response_model=Envelope)
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.complete_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data={"message": "password updated"})


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data=MeResponse(
            user_id=principal.user_id,
            roles=list(principal.roles),
            active_tenant_id=principal.active_tenant_id,
        ),
    )
