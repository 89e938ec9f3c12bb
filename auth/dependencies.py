"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential is accepted on protected routes: an access token in
`Authorization: Bearer <token>`. Refresh tokens are rejected here by the
type check in TokenIssuer.verify().

get_auth_context() resolves the bearer token into an AuthContext (account +
verified claims) and is the only thing route handlers receive about the
caller -- no attributes are bolted onto the request object.
require_admin() wraps it and raises 403 for non-admin roles.

Errors are raised as auth.errors exceptions; api/main.py turns them into the
response envelope.

Layer rule: no imports from api/. May import from fastapi because this
module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.errors import AuthenticationError, AuthorizationError
from auth.models import AuthContext
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_auth_context(request: Request) -> AuthContext:
    """Require a valid bearer access token. Raises 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: AuthContext = Depends(get_auth_context)): ...
    """
    token = _bearer_token(request)
    if token is None:
        raise AuthenticationError("Not authorized to access this route")
    return get_auth_service(request).authenticate(token)


def require_admin(request: Request) -> AuthContext:
    """Require the ADMIN role. Raises 401 if unauthenticated, 403 if not admin."""
    ctx = get_auth_context(request)
    if not ctx.is_admin:
        raise AuthorizationError(f"Role '{ctx.account.role.value}' is not authorized to access this route")
    return ctx
