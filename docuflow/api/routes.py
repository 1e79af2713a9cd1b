from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from docuflow.api.schemas import (
    MAX_TOKEN_LENGTH,
    AuthResponse,
    Envelope,
    InviteAcceptRequest,
    InviteAcceptResponse,
    InviteCreateRequest,
    InviteCreateResponse,
    InvitePreviewResponse,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PasswordResetRequested,
    UserResponse,
)
from docuflow.logging import get_logger
from docuflow.service.auth import AuthContext
from docuflow.service.errors import (
    ForbiddenError,
    RateLimitedError,
    UnauthorizedError,
)
from docuflow.service.runtime import check_rate_limit, get_runtime
from docuflow.storage.models import TokenPurpose

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError: if the bucket for ``key`` is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": reset_seconds}
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id)
    if not ctx:
        raise UnauthorizedError("invalid session")
    return ctx


async def get_firm_owner(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != "firm":
        raise ForbiddenError("firm account required")
    return principal


# -- auth -----------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    user, session = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    if not user or not session:
        raise UnauthorizedError("invalid credentials")
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            session_id=session.id,
            session_expires_at=session.expires_at,
            access_token=session.id,
            role=user.role,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.logout(principal.session_id)
    logger.info("logout", user_id=principal.user_id)
    return Envelope(status="ok", data={"status": "logged_out"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise UnauthorizedError("invalid session")
    return Envelope(
        status="ok",
        data=UserResponse(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            role=user.role,
            created_at=user.created_at,
            is_active=user.is_active,
        ),
    )


@router.post("/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: PasswordResetRequest, response: Response):
    """Start a password reset.

    The answer is the same whether or not the email belongs to an account.
    Outside production the raw link is echoed back for local testing.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{body.email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
        response=response,
    )
    outcome = await runtime.tokens.request_password_reset(body.email, origin=body.origin)
    payload = PasswordResetRequested(message=outcome.message)
    if outcome.issued and not runtime.settings.is_production:
        payload.email_sent = outcome.email_sent
        payload.delivery_error = outcome.delivery_error
        payload.debug_reset_link = outcome.link
        payload.debug_reset_token = outcome.raw_token
        payload.expires_at = outcome.expires_at
    return Envelope(status="ok", data=payload.model_dump(exclude_none=True))


@router.post("/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: PasswordResetConfirm, response: Response):
    runtime = get_runtime()
    # global bucket; guessing tokens is not tied to any one email
    await _enforce_rate_limit(
        runtime,
        "reset:confirm",
        runtime.settings.reset_confirm_rate_limit,
        300,
        response=response,
    )
    await runtime.tokens.redeem(
        body.token,
        TokenPurpose.PASSWORD_RESET,
        {"new_password": body.new_password},
    )
    return Envelope(status="ok", data={"status": "reset"})


# -- invites --------------------------------------------------------------


@router.post("/invites", response_model=Envelope, tags=["invites"])
async def create_invite(
    body: InviteCreateRequest, principal: AuthContext = Depends(get_firm_owner)
):
    runtime = get_runtime()
    invite = await runtime.tokens.create_invite(
        principal,
        body.email,
        body.role,
        firm_id=body.firm_id,
        origin=body.origin,
    )
    return Envelope(
        status="ok",
        data=InviteCreateResponse(
            invite_link=invite.link,
            token=invite.raw_token,
            firm_id=invite.firm.id,
            role=invite.role,
            email=invite.email,
            expires_at=invite.expires_at,
            email_sent=invite.email_sent,
            delivery_error=invite.delivery_error,
        ),
    )


@router.get("/invites/verify", response_model=Envelope, tags=["invites"])
async def verify_invite(
    token: str = Query(..., min_length=1, max_length=MAX_TOKEN_LENGTH),
):
    runtime = get_runtime()
    preview = runtime.tokens.describe_invite(token)
    return Envelope(
        status="ok",
        data=InvitePreviewResponse(
            firm_id=preview.firm_id,
            firm_name=preview.firm_name,
            role=preview.role,
            email=preview.email,
            expires_at=preview.expires_at,
        ),
    )


@router.post("/invites/accept", response_model=Envelope, tags=["invites"])
async def accept_invite(body: InviteAcceptRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        "invite:accept",
        runtime.settings.reset_confirm_rate_limit,
        300,
        response=response,
    )
    result = await runtime.tokens.redeem(
        body.token,
        TokenPurpose.for_invite_role(body.role),
        {
            "password": body.password,
            "full_name": body.full_name,
            "company_name": body.company_name,
            "firm_id": body.firm_id,
            "role": body.role,
        },
    )
    session = result.session
    membership = result.membership
    return Envelope(
        status="ok",
        data=InviteAcceptResponse(
            user_id=result.user_id,
            session_id=session.id,
            access_token=session.id,
            session_expires_at=session.expires_at,
            firm_id=membership.firm_id,
            role=membership.role,
        ),
    )
