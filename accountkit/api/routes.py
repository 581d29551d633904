from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Request, Response

from accountkit.api.schemas import (
    AccountResponse,
    Envelope,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    VerifyOtpRequest,
)
from accountkit.service.runtime import get_runtime
from accountkit.service.validation import normalize_email
from accountkit.storage.models import TokenPair

router = APIRouter(prefix="/api/user")


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


async def get_access_token(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[str]:
    """Access token from the http-only cookie, else from a Bearer header."""
    runtime = get_runtime()
    cookie_token = request.cookies.get(runtime.settings.access_cookie_name)
    return cookie_token or _extract_bearer(authorization)


def _apply_access_cookie(response: Response, tokens: TokenPair) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        settings.access_cookie_name,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _clear_access_cookie(response: Response) -> None:
    settings = get_runtime().settings
    response.delete_cookie(
        settings.access_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


@router.post("/register", response_model=Envelope, status_code=202, tags=["account"])
async def register(body: RegisterRequest):
    """Start a registration and email a one-time code.

    Raises:
        400: If a field is missing or the passwords differ
        409: If the username or email already belongs to an account
        422: If a field is malformed
        502: If the code could not be delivered
    """
    runtime = get_runtime()
    await runtime.accounts.register(
        name=body.name,
        username=body.username,
        password=body.password,
        confirm_password=body.confirm_password,
        date_of_birth=body.date_of_birth,
        email=body.email,
    )
    return Envelope(
        status="ok",
        data={"message": "verification code sent", "email": normalize_email(body.email)},
    )


@router.post("/verify-otp", response_model=Envelope, status_code=201, tags=["account"])
async def verify_otp(body: VerifyOtpRequest):
    runtime = get_runtime()
    account = await runtime.accounts.verify_otp(body.email, body.otp)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with username and password.

    Returns both tokens and sets the access token as an http-only,
    strict same-site cookie.
    """
    runtime = get_runtime()
    tokens = await runtime.accounts.login(body.username, body.password)
    _apply_access_cookie(response, tokens)
    return Envelope(status="ok", data=TokenResponse.from_pair(tokens))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, response: Response):
    runtime = get_runtime()
    tokens = await runtime.accounts.refresh(body.refresh_token or "")
    _apply_access_cookie(response, tokens)
    return Envelope(status="ok", data=TokenResponse.from_pair(tokens))


@router.post("/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, access_token: Optional[str] = Depends(get_access_token)):
    runtime = get_runtime()
    revoked = await runtime.accounts.logout(access_token)
    _clear_access_cookie(response)
    return Envelope(
        status="ok", data={"message": "logged out", "sessions_revoked": revoked}
    )


@router.get("/{username}", response_model=Envelope, tags=["account"])
async def get_user(
    username: str = Path(..., min_length=1, max_length=64),
    access_token: Optional[str] = Depends(get_access_token),
):
    runtime = get_runtime()
    account = await runtime.accounts.get_user(access_token, username)
    return Envelope(status="ok", data=AccountResponse.from_account(account))


@router.delete("/{username}", response_model=Envelope, tags=["account"])
async def delete_user(
    response: Response,
    username: str = Path(..., min_length=1, max_length=64),
    access_token: Optional[str] = Depends(get_access_token),
):
    runtime = get_runtime()
    await runtime.accounts.delete_user(access_token, username)
    _clear_access_cookie(response)
    return Envelope(status="ok", data={"message": "account deleted", "username": username})


@router.patch("/{username}", response_model=Envelope, tags=["account"])
async def update_user(
    username: str = Path(..., min_length=1, max_length=64),
    operations: List[Dict[str, Any]] = Body(...),
    access_token: Optional[str] = Depends(get_access_token),
):
    """Apply an RFC 6902 patch document to the caller's own account."""
    runtime = get_runtime()
    account = await runtime.accounts.update_user(access_token, username, operations)
    return Envelope(status="ok", data=AccountResponse.from_account(account))
