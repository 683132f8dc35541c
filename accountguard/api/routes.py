from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Request, Response
from pydantic import BaseModel

from accountguard.api.schemas import (
    AccountResponse,
    ChallengeResponse,
    DeviceListResponse,
    DeviceResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    NotificationListResponse,
    NotificationPreferencesRequest,
    NotificationResponse,
    PasswordChangeRequest,
    RevokeAllResponse,
    SecurityEventListResponse,
    SecurityEventResponse,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    TokenRefreshRequest,
    TwoFactorCancelRequest,
    TwoFactorResendRequest,
    TwoFactorVerifyRequest,
)
from accountguard.logging import get_correlation_id, get_logger
from accountguard.service.auth import LoginContext, LoginOutcome
from accountguard.service.devices import analyze_device_trust
from accountguard.service.errors import InvalidTokenError
from accountguard.service.fingerprint import ClientSignals
from accountguard.service.runtime import get_runtime
from accountguard.service.sessions import AuthContext, IssuedTokens, SessionManager
from accountguard.service.two_factor import IssuedChallenge
from accountguard.storage.models import (
    Account,
    DeliveryChannel,
    SecurityEvent,
    SecurityNotification,
    Session,
    TrustedDevice,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _ok(data: BaseModel | dict | None = None) -> Envelope:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    extra = {"request_id": get_correlation_id()} if get_correlation_id() else {}
    return Envelope(status="ok", data=data, **extra)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")


async def get_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    token = SessionManager.extract_bearer(authorization) or access_cookie
    if not token:
        raise InvalidTokenError("authentication required")
    return get_runtime().sessions.authenticate(token)


def _apply_session_cookies(response: Response, tokens: IssuedTokens) -> None:
    secure = get_runtime().settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=tokens.access_expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=tokens.refresh_expires_at,
        path="/v1/auth",
    )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(ACCESS_COOKIE, path="/")
    response.delete_cookie(REFRESH_COOKIE, path="/v1/auth")


def _account_response(account: Account) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        email=account.email,
        display_name=account.display_name,
        two_factor_enabled=account.two_factor_enabled,
        email_notifications=account.email_notifications,
        created_at=account.created_at,
    )


def _token_response(tokens: IssuedTokens) -> LoginResponse:
    return LoginResponse(
        requires_two_factor=False,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type="bearer",
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        session_id=tokens.session.id,
        account_id=tokens.session.account_id,
    )


def _challenge_response(issued: IssuedChallenge) -> ChallengeResponse:
    return ChallengeResponse(
        challenge_id=issued.challenge_id,
        delivery_method=issued.delivered_via.value,
        expires_at=issued.challenge.expires_at,
        delivered=issued.delivered,
    )


def _login_response(outcome: LoginOutcome, response: Response) -> LoginResponse:
    if outcome.requires_two_factor and outcome.challenge:
        return LoginResponse(
            requires_two_factor=True,
            account_id=outcome.account.id,
            challenge_id=outcome.challenge.challenge_id,
            delivery_method=outcome.challenge.delivered_via.value,
            challenge_expires_at=outcome.challenge.challenge.expires_at,
        )
    _apply_session_cookies(response, outcome.tokens)
    return _token_response(outcome.tokens)


def _session_response(session: Session, current_session_id: str) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        device_id=session.device_id,
        device_info=session.device_info,
        ip=session.ip,
        user_agent=session.user_agent,
        created_at=session.created_at,
        last_accessed=session.last_accessed,
        expires_at=session.expires_at,
        remember_me=session.remember_me,
        is_current=session.id == current_session_id,
    )


def _device_response(device: TrustedDevice, current_device_id: Optional[str]) -> DeviceResponse:
    analysis = analyze_device_trust(device)
    return DeviceResponse(
        id=device.id,
        friendly_name=device.friendly_name,
        device_class=device.device_class,
        browser=device.browser,
        os=device.os,
        trusted=device.trusted,
        first_seen=device.first_seen,
        last_seen=device.last_seen,
        last_ip=device.last_ip,
        location=device.location.label() if device.location else None,
        trust_score=analysis.score,
        trust_level=analysis.level,
        is_current=device.id == current_device_id,
    )


def _notification_response(notification: SecurityNotification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        event_type=notification.event_type,
        severity=notification.severity.value,
        title=notification.title,
        message=notification.message,
        metadata=notification.metadata,
        created_at=notification.created_at,
        read=notification.read,
        actioned=notification.actioned,
    )


def _event_response(event: SecurityEvent) -> SecurityEventResponse:
    return SecurityEventResponse(
        id=event.id,
        event_type=event.event_type,
        created_at=event.created_at,
        ip=event.ip,
        user_agent=event.user_agent,
        details=event.details,
    )


# auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Create an account; duplicate emails are rejected with CONFLICT."""
    runtime = get_runtime()
    # argon2 hashing runs off the event loop
    account = await asyncio.to_thread(
        runtime.auth.signup,
        body.email,
        body.password,
        display_name=body.display_name,
        phone=body.phone,
    )
    return _ok(_account_response(account))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Check credentials and decide between issuing tokens and a second factor.

    Returns ``requiresTwoFactor`` with a ``challengeId`` when a one-time code
    was sent, otherwise the token pair (also set as httpOnly cookies).

    Raises:
        401: unknown email or wrong password (identical response)
        423: sign-in blocked by risk assessment
        429: too many attempts for this email or client
    """
    runtime = get_runtime()
    user_agent = _user_agent(request)
    device = body.device
    accept_language = request.headers.get("accept-language", "")
    signals = ClientSignals(
        user_agent=user_agent,
        screen_width=device.screen_width if device else None,
        screen_height=device.screen_height if device else None,
        color_depth=device.color_depth if device else None,
        timezone=device.timezone if device else None,
        language=(device.language if device and device.language else None)
        or (accept_language.split(",")[0].strip() or None),
        platform=device.platform if device else None,
        canvas_hash=device.canvas_hash if device else None,
        gpu_hash=device.gpu_hash if device else None,
    )
    context = LoginContext(
        ip=_client_ip(request),
        user_agent=user_agent,
        signals=signals,
        headers=request.headers,
    )
    outcome = await runtime.auth.login(
        body.email,
        body.password,
        context,
        remember_me=body.remember_me,
        delivery_method=DeliveryChannel(body.delivery_method),
    )
    return _ok(_login_response(outcome, response))


@router.post("/auth/2fa/verify", response_model=Envelope, tags=["auth"])
async def verify_two_factor(body: TwoFactorVerifyRequest, response: Response):
    """Exchange a one-time code for tokens; optionally trust the device."""
    runtime = get_runtime()
    outcome = await runtime.auth.verify_two_factor(
        body.challenge_id, body.code, trust_device=body.trust_device
    )
    return _ok(_login_response(outcome, response))


@router.post("/auth/2fa/resend", response_model=Envelope, tags=["auth"])
async def resend_two_factor(body: TwoFactorResendRequest):
    runtime = get_runtime()
    method = DeliveryChannel(body.method) if body.method else None
    issued = await runtime.two_factor.resend(body.challenge_id, method)
    return _ok(_challenge_response(issued))


@router.post("/auth/2fa/cancel", response_model=Envelope, tags=["auth"])
async def cancel_two_factor(body: TwoFactorCancelRequest):
    get_runtime().two_factor.cancel(body.challenge_id)
    return _ok({"challengeId": body.challenge_id, "status": "cancelled"})


@router.post("/auth/2fa/enable", response_model=Envelope, tags=["auth"])
async def enable_two_factor(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    account = await get_runtime().auth.set_two_factor(
        ctx, True, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return _ok(_account_response(account))


@router.post("/auth/2fa/disable", response_model=Envelope, tags=["auth"])
async def disable_two_factor(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    account = await get_runtime().auth.set_two_factor(
        ctx, False, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    return _ok(_account_response(account))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Rotate the token pair. Replaying a used refresh token signs out every session."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or refresh_cookie
    if not token:
        raise InvalidTokenError()
    tokens = runtime.sessions.refresh(
        token, ip=_client_ip(request), user_agent=_user_agent(request)
    )
    _apply_session_cookies(response, tokens)
    return _ok(_token_response(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, ctx: AuthContext = Depends(get_auth_context)
):
    get_runtime().auth.logout(ctx, ip=_client_ip(request))
    _clear_session_cookies(response)
    return _ok({"loggedOut": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def current_account(ctx: AuthContext = Depends(get_auth_context)):
    return _ok(_account_response(ctx.account))


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    ctx: AuthContext = Depends(get_auth_context),
):
    """Change the password and sign out every other session."""
    revoked = await get_runtime().auth.change_password(
        ctx,
        body.current_password,
        body.new_password,
        ip=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return _ok(RevokeAllResponse(sessions_revoked=len(revoked)))


# sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: AuthContext = Depends(get_auth_context)):
    sessions = get_runtime().sessions.list(ctx.account_id)
    return _ok(
        SessionListResponse(items=[_session_response(s, ctx.session_id) for s in sessions])
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    get_runtime().auth.revoke_session(ctx, session_id, ip=_client_ip(request))
    return _ok({"sessionId": session_id, "revoked": True})


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    request: Request,
    keep_current: bool = Query(False),
    ctx: AuthContext = Depends(get_auth_context),
):
    revoked, devices_removed = get_runtime().auth.revoke_all_sessions(
        ctx, keep_current=keep_current, ip=_client_ip(request)
    )
    return _ok(RevokeAllResponse(sessions_revoked=len(revoked), devices_removed=devices_removed))


# devices


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_devices(ctx: AuthContext = Depends(get_auth_context)):
    devices = get_runtime().devices.list(ctx.account_id)
    return _ok(
        DeviceListResponse(
            items=[_device_response(d, ctx.session.device_id) for d in devices]
        )
    )


@router.post("/devices/{device_id}/trust", response_model=Envelope, tags=["devices"])
async def trust_device(
    request: Request,
    device_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    device = get_runtime().auth.trust_device(ctx, device_id, ip=_client_ip(request))
    return _ok(_device_response(device, ctx.session.device_id))


@router.delete("/devices/{device_id}/trust", response_model=Envelope, tags=["devices"])
async def untrust_device(
    request: Request,
    device_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    device = get_runtime().auth.untrust_device(ctx, device_id, ip=_client_ip(request))
    return _ok(_device_response(device, ctx.session.device_id))


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def revoke_device(
    request: Request,
    device_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    """Forget a device and sign out every session started from it."""
    revoked = await get_runtime().auth.revoke_device(ctx, device_id, ip=_client_ip(request))
    return _ok({"deviceId": device_id, "sessionsRevoked": len(revoked)})


@router.delete("/devices", response_model=Envelope, tags=["devices"])
async def revoke_other_devices(request: Request, ctx: AuthContext = Depends(get_auth_context)):
    removed, revoked = await get_runtime().auth.revoke_other_devices(ctx, ip=_client_ip(request))
    return _ok(RevokeAllResponse(sessions_revoked=len(revoked), devices_removed=removed))


# notifications


@router.get("/notifications", response_model=Envelope, tags=["notifications"])
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    ctx: AuthContext = Depends(get_auth_context),
):
    notifications = get_runtime().notifications
    items = notifications.list(ctx.account_id, unread_only=unread_only, limit=limit)
    return _ok(
        NotificationListResponse(
            items=[_notification_response(n) for n in items],
            unread_count=notifications.unread_count(ctx.account_id),
        )
    )


@router.get("/notifications/unread-count", response_model=Envelope, tags=["notifications"])
async def unread_notification_count(ctx: AuthContext = Depends(get_auth_context)):
    return _ok({"unreadCount": get_runtime().notifications.unread_count(ctx.account_id)})


@router.post("/notifications/read-all", response_model=Envelope, tags=["notifications"])
async def mark_all_notifications_read(ctx: AuthContext = Depends(get_auth_context)):
    updated = get_runtime().notifications.mark_all_read(ctx.account_id)
    return _ok({"updated": updated})


@router.post("/notifications/{notification_id}/read", response_model=Envelope, tags=["notifications"])
async def mark_notification_read(
    notification_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    get_runtime().notifications.mark_read(notification_id, ctx.account_id)
    return _ok({"id": notification_id, "read": True})


@router.post(
    "/notifications/{notification_id}/actioned", response_model=Envelope, tags=["notifications"]
)
async def mark_notification_actioned(
    notification_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(get_auth_context),
):
    get_runtime().notifications.mark_actioned(notification_id, ctx.account_id)
    return _ok({"id": notification_id, "actioned": True})


@router.put("/notifications/preferences", response_model=Envelope, tags=["notifications"])
async def update_notification_preferences(
    body: NotificationPreferencesRequest, ctx: AuthContext = Depends(get_auth_context)
):
    account = get_runtime().auth.set_email_notifications(ctx, body.email_notifications)
    return _ok(_account_response(account))


# audit


@router.get("/security/events", response_model=Envelope, tags=["security"])
async def list_security_events(
    event_type: Optional[str] = Query(None, max_length=64),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: AuthContext = Depends(get_auth_context),
):
    events = get_runtime().audit.list(
        ctx.account_id, event_type=event_type, limit=limit, offset=offset
    )
    return _ok(
        SecurityEventListResponse(
            items=[_event_response(e) for e in events], limit=limit, offset=offset
        )
    )
