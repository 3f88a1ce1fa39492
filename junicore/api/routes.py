from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from junicore.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PrincipalResponse,
    RegisterRequest,
    TokenRefreshRequest,
    WebhookAck,
)
from junicore.logging import get_logger
from junicore.service.auth import AuthContext, TokenPair
from junicore.service.events import CHECKR, STRIPE
from junicore.service.runtime import Runtime, check_rate_limit
from junicore.storage.models import Principal, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise _http_error("unavailable", "service not ready", status_code=503)
    return runtime


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Consume one request from ``key``'s bucket or raise 429."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )


async def _auth_rate_limit(request: Request, response: Response, route: str) -> Runtime:
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"auth:{route}:{_client_key(request)}",
        runtime.settings.auth_rate_limit,
        runtime.settings.auth_rate_window_seconds,
        response=response,
    )
    return runtime


async def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    verified = runtime.auth.authenticate(authorization)
    if not verified.ok:
        raise _http_error(
            "unauthorized",
            verified.error.message,
            status_code=401,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return verified.value


def require_roles(*roles: Role):
    """Dependency factory: 401 without a valid token, 403 without the role."""

    async def _dependency(
        principal: AuthContext = Depends(get_principal),
        runtime: Runtime = Depends(get_runtime),
    ) -> AuthContext:
        return runtime.auth.require_role(principal, *roles)

    return _dependency


def _auth_response(principal: Principal, tokens: TokenPair) -> AuthResponse:
    return AuthResponse(
        user=PrincipalResponse.from_principal(principal),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.access_expires_in,
        refresh_expires_at=tokens.refresh_expires_at,
        session_id=tokens.session_id,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an unverified FAMILY or COMPANION principal.

    An email-verification token is issued and handed to the notifier; login
    is refused until it has been redeemed.

    Raises:
        400: invalid email, weak password, or a role that cannot be self-assigned
        409: email already registered
        429: rate limit exceeded
    """
    runtime = await _auth_rate_limit(request, response, "register")
    principal = await asyncio.to_thread(
        runtime.auth.register, body.email, body.password, body.role
    )
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and receive a token pair.

    Raises:
        401: unknown email, wrong password, inactive or unverified principal
        429: rate limit exceeded
    """
    runtime = await _auth_rate_limit(request, response, "login")
    principal, tokens = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    return Envelope(status="ok", data=_auth_response(principal, tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = await _auth_rate_limit(request, response, "refresh")
    principal, tokens = await asyncio.to_thread(runtime.auth.refresh, body.refresh_token)
    return Envelope(status="ok", data=_auth_response(principal, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
):
    runtime = await _auth_rate_limit(request, response, "logout")
    revoked = False
    if body is not None and body.refresh_token:
        revoked = await asyncio.to_thread(runtime.auth.logout_token, body.refresh_token)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    user = await asyncio.to_thread(runtime.store.get_user, principal.user_id)
    if user is None or not user.is_active:
        raise _http_error("unauthorized", "principal no longer active", status_code=401)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(user))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request, response: Response):
    runtime = await _auth_rate_limit(request, response, "verify-email")
    principal = await asyncio.to_thread(runtime.single_use.verify_email, body.token)
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest, request: Request, response: Response):
    """Request a password-reset token. Succeeds whether or not the email is known."""
    runtime = await _auth_rate_limit(request, response, "forgot-password")
    await asyncio.to_thread(runtime.single_use.request_password_reset, body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = await _auth_rate_limit(request, response, "reset-password")
    await asyncio.to_thread(runtime.single_use.reset_password, body.token, body.new_password)
    return Envelope(status="ok", data={"status": "reset"})


@router.post(
    "/admin/principals/{user_id}/revoke-sessions", response_model=Envelope, tags=["admin"]
)
async def admin_revoke_sessions(
    user_id: str,
    principal: AuthContext = Depends(require_roles(Role.ADMIN)),
    runtime: Runtime = Depends(get_runtime),
):
    target = await asyncio.to_thread(runtime.store.get_user, user_id)
    if target is None:
        raise _http_error("not_found", "principal not found", status_code=404)
    revoked = await asyncio.to_thread(runtime.auth.revoke_all_sessions, user_id)
    logger.info("admin_sessions_revoked", admin_id=principal.user_id, user_id=user_id, count=revoked)
    return Envelope(status="ok", data={"revoked": revoked})


async def _ingest(provider: str, request: Request) -> WebhookAck:
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"webhook:{provider}",
        runtime.settings.webhook_rate_limit,
        runtime.settings.webhook_rate_window_seconds,
    )
    # Signatures cover the exact bytes received; never parse before verifying
    raw_body = await request.body()
    outcome = await runtime.dispatcher.ingest(provider, raw_body, request.headers)
    return WebhookAck(received=True, duplicate=outcome.duplicate)


@webhook_router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(request: Request):
    return await _ingest(STRIPE, request)


@webhook_router.post("/checkr", response_model=WebhookAck)
async def checkr_webhook(request: Request):
    return await _ingest(CHECKR, request)
