from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from wukongid.api.schemas import (
    AppAuthResponse,
    AuthenticateRequest,
    AuthenticateResponse,
    BackupCodesResponse,
    DeviceSessionListResponse,
    DeviceSessionResponse,
    Envelope,
    MeResponse,
    MfaCodeRequest,
    MfaEnableRequest,
    MfaSetupResponse,
    MfaStatusResponse,
    MfaVerifyResponse,
    RevokeAllResponse,
    TokenRequest,
    TokenResponseBody,
    UserInfoJwtRequest,
    UserInfoRequest,
    UserInfoResponse,
)
from wukongid.config import AuthenticationMode, normalize_client_id
from wukongid.logging import get_logger
from wukongid.service.errors import InvalidGrantType, InvalidState, StoreUnavailable
from wukongid.service.issuer import SessionIdentity, TokenIssuer, UserInfo
from wukongid.service.mfa import MSG_INVALID
from wukongid.service.runtime import Runtime, get_runtime
from wukongid.service.sessions import DeviceMeta, device_info, hash_session_token
from wukongid.storage.models import Identity

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class Principal:
    identity: Identity
    session_id: Optional[str] = None
    claims: Optional[SessionIdentity] = None
    via_fallback: bool = False
    mfa_pending: bool = False

    @property
    def subject_id(self) -> str:
        return self.identity.external_id

    @property
    def is_admin(self) -> bool:
        return self.identity.role == "admin"


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header or not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def _authenticate(runtime: Runtime, credential: Optional[str]) -> Optional[Principal]:
    """Resolve a session credential to a principal; None means unauthenticated."""
    claims = runtime.issuer.verify_session(credential)
    if claims is None:
        return None
    try:
        identity = runtime.identities.get(claims.subject_id)
    except StoreUnavailable as exc:
        logger.error("principal_lookup_failed", subject_id=claims.subject_id, error=exc.message)
        return None
    if identity is None:
        logger.warning("principal_subject_missing", subject_id=claims.subject_id)
        return None
    if claims.mfa_pending:
        return Principal(identity=identity, claims=claims, mfa_pending=True)
    if claims.session_id:
        if not runtime.sessions.is_live(claims.session_id):
            logger.info("principal_session_revoked", subject_id=claims.subject_id)
            return None
        runtime.sessions.touch(claims.session_id)
    return Principal(identity=identity, session_id=claims.session_id, claims=claims)


def _request_credential(runtime: Runtime, request: Request, authorization: Optional[str]) -> Optional[str]:
    return request.cookies.get(runtime.settings.session_cookie_name) or _extract_bearer(
        authorization
    )


def _resolve_principal(
    request: Request, authorization: Optional[str], *, allow_mfa_pending: bool
) -> Principal:
    runtime = get_runtime()
    principal = _authenticate(runtime, _request_credential(runtime, request, authorization))
    if principal is not None:
        if principal.mfa_pending and not allow_mfa_pending:
            raise _http_error(
                "unauthorized",
                "MFA verification required",
                status_code=401,
                details={"mfa_required": True},
            )
        return principal
    if runtime.settings.auth_mode == AuthenticationMode.DEVELOPMENT_FALLBACK:
        logger.warning("auth_development_fallback", path=request.url.path)
        return Principal(identity=runtime.identities.development_identity(), via_fallback=True)
    raise _http_error("unauthorized", "authentication required", status_code=401)


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    return _resolve_principal(request, authorization, allow_mfa_pending=False)


async def get_challenged_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> Principal:
    """Like get_principal, but also accepts a sign-in awaiting its second factor."""
    return _resolve_principal(request, authorization, allow_mfa_pending=True)


def _set_session_cookies(
    runtime: Runtime,
    response: Response,
    credential: str,
    raw_session_id: Optional[str],
    *,
    max_age: Optional[int] = None,
) -> None:
    settings = runtime.settings
    if max_age is None:
        max_age = int(runtime.issuer.session_lifetime.total_seconds())
    cookie_kwargs = dict(
        httponly=True,
        secure=settings.is_production,
        samesite="lax",
        max_age=max_age,
        path="/",
    )
    response.set_cookie(settings.session_cookie_name, credential, **cookie_kwargs)
    if raw_session_id:
        response.set_cookie(settings.device_cookie_name, raw_session_id, **cookie_kwargs)


def _clear_session_cookies(runtime: Runtime, response: Response) -> None:
    settings = runtime.settings
    for name in (settings.session_cookie_name, settings.device_cookie_name):
        response.delete_cookie(
            name, path="/", secure=settings.is_production, httponly=True, samesite="lax"
        )


def _start_session(
    runtime: Runtime, identity: Identity, request: Request, response: Response
) -> str:
    """Record a device session and attach a session credential bound to it."""
    raw_session_id = runtime.sessions.create_device_session(
        identity.external_id,
        DeviceMeta(
            user_agent=request.headers.get("user-agent"),
            ip_address=_client_ip(request),
        ),
    )
    credential = runtime.issuer.mint_session(
        identity.external_id,
        identity.display_name or identity.external_id,
        session_id=raw_session_id,
    )
    _set_session_cookies(runtime, response, credential, raw_session_id)
    logger.info("session_started", subject_id=identity.external_id)
    return credential


def _finish_sign_in(
    runtime: Runtime, identity: Identity, request: Request, response: Response
) -> bool:
    """Start the session after primary authentication; True if MFA is still owed.

    Accounts with MFA get a short-lived pending credential instead, and no
    device session, until ``/v1/mfa/verify`` succeeds.
    """
    if not runtime.mfa.is_enabled(identity.external_id):
        _start_session(runtime, identity, request, response)
        return False
    ttl_seconds = runtime.settings.mfa_pending_ttl_seconds
    credential = runtime.issuer.mint_session(
        identity.external_id,
        identity.display_name or identity.external_id,
        timedelta(seconds=ttl_seconds),
        mfa_pending=True,
    )
    response.delete_cookie(
        runtime.settings.device_cookie_name,
        path="/",
        secure=runtime.settings.is_production,
        httponly=True,
        samesite="lax",
    )
    _set_session_cookies(runtime, response, credential, None, max_age=ttl_seconds)
    logger.info("mfa_challenge_issued", subject_id=identity.external_id)
    return True


def _require_client(runtime: Runtime, client_id: str) -> str:
    client = normalize_client_id(client_id)
    if client != runtime.settings.client_id:
        logger.warning("client_id_mismatch", client_id=client)
        raise _http_error("forbidden", "unknown client_id", status_code=403)
    return client


def _append_query(url: str, **params: str) -> str:
    parts = urlsplit(url)
    query = f"{parts.query}&{urlencode(params)}" if parts.query else urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def _user_info_response(info: UserInfo) -> UserInfoResponse:
    return UserInfoResponse(
        open_id=info.subject_id,
        client_id=info.client_id,
        name=info.name,
        email=info.email,
        login_method=info.login_method,
        role=info.role,
    )


# authorization


@router.get("/portal/app-auth", response_model=Envelope, tags=["auth"])
async def app_auth(
    client_id: Optional[str] = Query(None, max_length=256),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=4096),
    auth_type: str = Query("signIn", alias="type", max_length=32),
):
    """Accept a sign-in request from the console client.

    The state must be a base64url JSON object; the client id must match
    the configured application.
    """
    if not client_id or not redirect_uri or not state:
        raise _http_error(
            "validation_error",
            "client_id, redirect_uri and state are required",
            status_code=400,
        )
    runtime = get_runtime()
    client = _require_client(runtime, client_id)
    payload = TokenIssuer.decode_state(state)
    return Envelope(
        status="ok",
        data=AppAuthResponse(
            client_id=client,
            redirect_uri=redirect_uri,
            state=state,
            type=auth_type,
            state_payload=payload,
        ),
    )


@router.post("/auth/authenticate", response_model=Envelope, tags=["auth"])
async def authenticate(body: AuthenticateRequest, request: Request, response: Response):
    """Establish an identity and issue an authorization code for it.

    The email provider completes the code exchange in-process and signs the
    browser in directly; other providers get the code back to redirect with.
    """
    runtime = get_runtime()
    client = _require_client(runtime, body.client_id)
    TokenIssuer.decode_state(body.state)
    identity, created = runtime.identities.resolve_provider_identity(
        body.provider,
        body.provider_user_id,
        email=body.email,
        name=body.name,
    )
    code = await runtime.broker.issue_code(client, body.redirect_uri, identity.external_id)

    if body.provider == "email":
        await runtime.issuer.exchange(code, client, body.redirect_uri)
        mfa_required = _finish_sign_in(runtime, identity, request, response)
        return Envelope(
            status="ok",
            data=AuthenticateResponse(
                redirect_url="/", created=created, mfa_required=mfa_required
            ),
        )

    return Envelope(
        status="ok",
        data=AuthenticateResponse(
            redirect_url=_append_query(body.redirect_uri, code=code, state=body.state),
            code=code,
            created=created,
        ),
    )


@router.post("/auth/token", response_model=Envelope, tags=["auth"])
async def exchange_token(body: TokenRequest):
    if body.grant_type != "authorization_code":
        raise InvalidGrantType(
            "grant_type must be authorization_code", detail={"grant_type": body.grant_type}
        )
    runtime = get_runtime()
    tokens = await runtime.issuer.exchange(body.code, body.client_id, body.redirect_uri)
    return Envelope(status="ok", data=TokenResponseBody(**tokens.to_dict()))


@router.post("/auth/userinfo", response_model=Envelope, tags=["auth"])
async def user_info(body: UserInfoRequest):
    runtime = get_runtime()
    info = await runtime.issuer.user_info(body.access_token)
    return Envelope(status="ok", data=_user_info_response(info))


@router.post("/auth/userinfo/jwt", response_model=Envelope, tags=["auth"])
async def user_info_from_jwt(body: UserInfoJwtRequest):
    runtime = get_runtime()
    _require_client(runtime, body.project_id)
    info = runtime.issuer.user_info_from_session(body.jwt_token)
    return Envelope(status="ok", data=_user_info_response(info))


@router.get("/oauth/callback", tags=["auth"])
async def oauth_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=4096),
    state: Optional[str] = Query(None, max_length=4096),
):
    """Finish a provider round-trip: exchange the code and sign the browser in."""
    if not code or not state:
        raise _http_error("validation_error", "code and state are required", status_code=400)
    runtime = get_runtime()
    payload = TokenIssuer.decode_state(state)
    redirect_uri = payload.get("redirect_uri")
    if not isinstance(redirect_uri, str) or not redirect_uri:
        raise InvalidState("state does not carry a redirect_uri")

    tokens = await runtime.issuer.exchange(code, runtime.settings.client_id, redirect_uri)
    info = await runtime.issuer.user_info(tokens.access_token)
    identity = runtime.identities.upsert(
        info.subject_id,
        display_name=info.name,
        email=info.email,
        login_method=info.login_method,
    )
    response = RedirectResponse(url="/", status_code=302)
    _finish_sign_in(runtime, identity, request, response)
    return response


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    identity = principal.identity
    return Envelope(
        status="ok",
        data=MeResponse(
            open_id=identity.external_id,
            name=identity.display_name or "Unknown User",
            email=identity.email,
            login_method=identity.login_method,
            role=identity.role,
            mfa_enabled=runtime.mfa.is_enabled(identity.external_id),
            last_signed_in=identity.last_signed_in,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    principal = _authenticate(runtime, _request_credential(runtime, request, authorization))
    if principal and principal.session_id:
        runtime.sessions.revoke_current(
            principal.session_id,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    _clear_session_cookies(runtime, response)
    return Envelope(status="ok", data={"message": "session revoked"})


# mfa


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    status = runtime.mfa.status(principal.subject_id)
    return Envelope(
        status="ok",
        data=MfaStatusResponse(
            enabled=status.enabled,
            backup_codes_remaining=status.backup_codes_remaining,
            backup_codes_generated=status.backup_codes_generated,
        ),
    )


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: Principal = Depends(get_principal)):
    """Stage a TOTP secret and backup codes server-side; nothing is enabled until enable."""
    runtime = get_runtime()
    if runtime.mfa.is_enabled(principal.subject_id):
        raise _http_error("conflict", "MFA already enabled", status_code=409)
    label = principal.identity.email or principal.identity.display_name or principal.subject_id
    enrollment = runtime.mfa.begin_enrollment(principal.subject_id, label)
    await runtime.mfa_staging.stage(principal.subject_id, enrollment)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
            backup_codes=enrollment.backup_codes,
        ),
    )


@router.post("/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(
    body: MfaEnableRequest, request: Request, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    subject_id = principal.subject_id
    if runtime.mfa.is_enabled(subject_id):
        raise _http_error("conflict", "MFA already enabled", status_code=409)
    staged = await runtime.mfa_staging.load(subject_id)
    if staged is None:
        raise _http_error(
            "validation_error",
            "no MFA enrollment in progress; start setup again",
            status_code=400,
        )
    if not runtime.mfa.verify_totp(staged.secret, body.code):
        raise _http_error("validation_error", MSG_INVALID, status_code=400)
    runtime.mfa.confirm_enrollment(
        subject_id,
        staged.secret,
        staged.backup_codes,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    await runtime.mfa_staging.discard(subject_id)
    status = runtime.mfa.status(subject_id)
    return Envelope(
        status="ok",
        data=MfaStatusResponse(
            enabled=status.enabled,
            backup_codes_remaining=status.backup_codes_remaining,
            backup_codes_generated=status.backup_codes_generated,
        ),
    )


@router.post("/mfa/verify", response_model=Envelope, tags=["mfa"])
async def mfa_verify(
    body: MfaCodeRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(get_challenged_principal),
):
    """Check a second factor; a pending sign-in is upgraded to a full session."""
    runtime = get_runtime()
    result = runtime.mfa.verify(
        principal.subject_id,
        body.code,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not result.success:
        if result.message == MSG_INVALID:
            raise _http_error("unauthorized", result.message, status_code=401)
        raise _http_error("validation_error", result.message, status_code=400)
    session_started = False
    if principal.mfa_pending:
        _start_session(runtime, principal.identity, request, response)
        session_started = True
    return Envelope(
        status="ok",
        data=MfaVerifyResponse(
            success=result.success,
            message=result.message,
            method=result.method,
            session_started=session_started,
        ),
    )


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(
    body: MfaCodeRequest, request: Request, principal: Principal = Depends(get_principal)
):
    """Disable MFA; requires a current TOTP or an unused backup code."""
    runtime = get_runtime()
    ip_address = _client_ip(request)
    user_agent = request.headers.get("user-agent")
    result = runtime.mfa.verify(
        principal.subject_id, body.code, ip_address=ip_address, user_agent=user_agent
    )
    if not result.success:
        if result.message == MSG_INVALID:
            raise _http_error("unauthorized", "invalid MFA code", status_code=401)
        raise _http_error("validation_error", result.message, status_code=400)
    runtime.mfa.disable(principal.subject_id, ip_address=ip_address, user_agent=user_agent)
    return Envelope(status="ok", data={"status": "disabled"})


@router.post("/mfa/backup-codes/regenerate", response_model=Envelope, tags=["mfa"])
async def mfa_regenerate_backup_codes(
    request: Request, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    codes = runtime.mfa.regenerate_backup_codes(
        principal.subject_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=BackupCodesResponse(backup_codes=codes))


# device sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    current_hash = hash_session_token(principal.session_id) if principal.session_id else None
    items = []
    for sess in runtime.sessions.list_sessions(principal.subject_id):
        info = device_info(sess.user_agent)
        items.append(
            DeviceSessionResponse(
                id=sess.id,
                device_name=sess.device_name,
                browser=info["browser"],
                os=info["os"],
                ip_address=sess.ip_address,
                created_at=sess.created_at,
                last_activity_at=sess.last_activity_at,
                expires_at=sess.expires_at,
                expires_in_seconds=runtime.sessions.expiry_seconds(sess),
                is_active=sess.is_live(),
                is_current=current_hash is not None
                and sess.session_token_hash == current_hash,
            )
        )
    return Envelope(status="ok", data=DeviceSessionListResponse(items=items))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    request: Request,
    session_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    runtime.sessions.revoke(
        session_id,
        principal.subject_id,
        is_admin=principal.is_admin,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data={"id": session_id, "status": "revoked"})


@router.post("/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(
    request: Request, response: Response, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    revoked = runtime.sessions.revoke_all(
        principal.subject_id,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    # The caller's own session is among those revoked
    _clear_session_cookies(runtime, response)
    return Envelope(status="ok", data=RevokeAllResponse(revoked=revoked))
