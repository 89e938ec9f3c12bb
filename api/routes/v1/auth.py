"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes (all under /api/v1):
  POST  /auth/register                -- create unverified account; mails verification link
  POST  /auth/login                   -- password login; returns access + refresh token
  GET   /auth/verify-email            -- consume verification token (?token=&email=)
  POST  /auth/resend-verification     -- reissue verification token
  POST  /auth/request-password-reset  -- mail a reset OTP (same answer for unknown emails)
  POST  /auth/reset-password-otp      -- consume OTP, set new password
  POST  /auth/refresh-token           -- refresh token -> new access token
  GET   /auth/me                      -- caller's public profile (requires auth)
  POST  /auth/logout                  -- revoke one refresh token (requires auth)
  POST  /auth/logout-all              -- revoke every session (requires auth)
  POST  /auth/change-password         -- rotate password, invalidate all tokens (requires auth)
  GET   /auth/users                   -- list accounts (admin only)
  PATCH /auth/users/{account_id}      -- change role / active flag (admin only)

Every response body is the {success, message, data} envelope. Handlers raise
auth.errors exceptions; api/main.py converts them.

Security:
  - register/login/resend-verification: 5 requests / 15 minutes per client
    (AUTH_RATE_LIMIT). Password reset endpoints: 3 requests / hour per client
    (PASSWORD_RESET_RATE_LIMIT).
  - Login timing equalization lives in AuthService.login(); never inline it.
  - Cache-Control: no-store on every response that carries a token.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import AUTH_RATE_LIMIT, PASSWORD_RESET_RATE_LIMIT, limiter
from api.models import (
    AccountPatch,
    AccountView,
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    LogoutRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    envelope,
)
from auth.dependencies import get_auth_context, get_auth_service, require_admin
from auth.models import AuthContext
from auth.service import AuthService

# Auth policy:
# - register, login, verify-email, resend-verification,
#   request-password-reset, reset-password-otp, refresh-token: public
# - me, logout, logout-all, change-password: bearer access token (get_auth_context)
# - users, users/{id}: bearer access token + ADMIN role (require_admin)
router = APIRouter()


def _ok(message: str, data: Optional[dict] = None, status_code: int = 200, no_store: bool = False) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content=envelope(message, data))
    if no_store:
        resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", status_code=201)
@limiter.limit(AUTH_RATE_LIMIT)  # below @router so FastAPI registers the limited wrapper
def register(
    request: Request,
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Create an unverified account. The verification link goes out by email."""
    account = service.register(body.email, body.password, body.name)
    return _ok(
        "User registered successfully. Please check your email to verify your account.",
        {"user": AccountView.from_account(account).to_json()},
        status_code=201,
    )


@router.post("/auth/login")
@limiter.limit(AUTH_RATE_LIMIT)
def login(
    request: Request,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Authenticate with email and password; return an access and a refresh token.

    Unknown email and wrong password return the same 401 body. The
    User-Agent header labels the new session.
    """
    result = service.login(body.email, body.password, request.headers.get("User-Agent"))
    return _ok(
        "Login successful",
        {
            "access_token": result.access_token,
            "refresh_token": result.refresh_token,
            "token_type": "bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
            "user": AccountView.from_account(result.account).to_json(),
        },
        no_store=True,
    )


@router.get("/auth/verify-email")
def verify_email(
    token: Optional[str] = None,
    email: Optional[str] = None,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Consume the emailed verification token. Missing parameters are a 400, not a 422."""
    service.verify_email(email or "", token or "")
    return _ok("Email verified successfully")


@router.post("/auth/resend-verification")
@limiter.limit(AUTH_RATE_LIMIT)
def resend_verification(
    request: Request,
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    service.resend_verification(body.email)
    return _ok("Verification email sent successfully")


@router.post("/auth/request-password-reset")
@limiter.limit(PASSWORD_RESET_RATE_LIMIT)
def request_password_reset(
    request: Request,
    body: EmailRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Mail a reset OTP. The response is identical whether or not the email exists."""
    message = service.request_password_reset(body.email)
    return _ok(message)


@router.post("/auth/reset-password-otp")
@limiter.limit(PASSWORD_RESET_RATE_LIMIT)
def reset_password_otp(
    request: Request,
    body: ResetPasswordRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    service.reset_password_with_otp(body.email, body.otp, body.new_password)
    return _ok("Password reset successfully")


@router.post("/auth/refresh-token")
def refresh_token(
    body: RefreshTokenRequest,
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Mint a new access token. The refresh token itself is not rotated."""
    access_token = service.refresh(body.refresh_token)
    return _ok("Token refreshed successfully", {"access_token": access_token}, no_store=True)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me")
def me(ctx: AuthContext = Depends(get_auth_context)) -> JSONResponse:
    return _ok("Profile retrieved", {"user": AccountView.from_account(ctx.account).to_json()})


@router.post("/auth/logout")
def logout(
    body: Optional[LogoutRequest] = None,
    ctx: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Revoke the given refresh token. Always succeeds, even for unknown tokens."""
    service.logout(ctx.account, body.refresh_token if body else None)
    return _ok("Logged out successfully")


@router.post("/auth/logout-all")
def logout_all(
    ctx: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    service.logout_all(ctx.account)
    return _ok("Logged out from all devices successfully")


@router.post("/auth/change-password")
def change_password(
    body: ChangePasswordRequest,
    ctx: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Rotate the password. Every access and refresh token of the account stops working."""
    service.change_password(ctx.account, body.current_password, body.new_password)
    return _ok("Password changed successfully. Please login again.")


# ---------------------------------------------------------------------------
# Account management (admin only)
# ---------------------------------------------------------------------------


@router.get("/auth/users")
def list_users(
    ctx: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    users = [AccountView.from_account(a).to_json() for a in service.list_accounts()]
    return _ok("Users retrieved", {"users": users})


@router.patch("/auth/users/{account_id}")
def update_user(
    account_id: str,
    body: AccountPatch,
    ctx: AuthContext = Depends(require_admin),
    service: AuthService = Depends(get_auth_service),
) -> JSONResponse:
    """Change an account's role or active flag. Self-deactivation and last-admin removal are refused."""
    account = service.update_account(ctx.account, account_id, role=body.role, is_active=body.is_active)
    return _ok("User updated", {"user": AccountView.from_account(account).to_json()})
