from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import ValidationError as PydanticValidationError

from authcore.api.schemas import (
    AuthorizedAppListResponse,
    AuthorizedAppResponse,
    AuthResponse,
    ConsentRequest,
    ConsentResponse,
    Envelope,
    InteractionLoginRequest,
    InteractionResponse,
    LoginRequest,
    PrincipalResponse,
    RegisterRequest,
    SessionCountResponse,
    SessionListResponse,
    SessionResponse,
    SessionsRevokedResponse,
    SocialLoginRequest,
    TokenRefreshRequest,
    TokenRequest,
    TokenResponse,
)
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.auth import AuthResult
from authcore.service.errors import ConsentRequiredError, NotFoundError, ServiceError
from authcore.service.gate import LEGACY_JTI, Principal, extract_bearer
from authcore.service.interactions import PROMPT_CONSENT, PROMPT_LOGIN, InteractionOutcome
from authcore.service.keys import SIGNING_ALGORITHM
from authcore.service.oauth import DEFAULT_SCOPES, build_redirect
from authcore.service.runtime import get_runtime
from authcore.storage.models import DeviceInfo, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")
well_known_router = APIRouter()

_NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}

# OAuth wire error codes for the token endpoint
_OAUTH_ERROR_CODES = {
    "validation_error": "invalid_request",
    "unauthorized": "invalid_client",
}


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


def _device_from_request(request: Request) -> DeviceInfo:
    forwarded = request.headers.get("X-Forwarded-For")
    ip_addr = forwarded.split(",")[0].strip() if forwarded else None
    if not ip_addr and request.client:
        ip_addr = request.client.host
    return DeviceInfo(
        user_agent=request.headers.get("User-Agent"),
        ip_addr=ip_addr,
        location=request.headers.get("CF-IPCountry"),
    )


def _request_token(request: Request, settings: Settings) -> Optional[str]:
    return extract_bearer(request.headers.get("Authorization")) or request.cookies.get(
        settings.access_cookie_name
    )


async def _authenticate(request: Request) -> Optional[Principal]:
    runtime = get_runtime()
    token = _request_token(request, runtime.settings)
    if not token:
        return None
    principal = await runtime.gate.authenticate(token)
    if principal is None:
        return None
    request.state.principal = principal
    if principal.jti != LEGACY_JTI:
        runtime.sessions.touch(principal.jti)
    return principal


async def get_principal(request: Request) -> Principal:
    principal = await _authenticate(request)
    if principal is None:
        raise _http_error("unauthorized", "unauthorized", status_code=401)
    return principal


async def get_optional_principal(request: Request) -> Optional[Principal]:
    return await _authenticate(request)


def _apply_auth_cookies(response: Response, result: AuthResult, settings: Settings) -> None:
    response.set_cookie(
        settings.access_cookie_name,
        result.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=result.expires_in,
        path="/",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        result.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path=settings.refresh_cookie_path,
    )


def _clear_auth_cookies(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.access_cookie_name, path="/", secure=settings.cookie_secure, samesite="lax"
    )
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=settings.cookie_secure,
        samesite="lax",
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user.id,
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            role=result.user.role,
        ),
    )


def _session_response(session: Session, principal: Principal) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        last_used_at=session.last_used_at,
        expires_at=session.expires_at,
        user_agent=session.user_agent,
        ip_addr=session.ip_addr,
        location=session.location,
        client_id=session.client_id,
        current=session.id == principal.jti,
    )


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        display_name=body.display_name,
        phone=body.phone,
        device=_device_from_request(request),
    )
    _apply_auth_cookies(response, result, runtime.settings)
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email or phone and password.

    Raises:
        401: If credentials are invalid (never says which part was wrong)
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.identifier, body.password, device=_device_from_request(request)
    )
    _apply_auth_cookies(response, result, runtime.settings)
    return _auth_envelope(result)


async def _social_login(provider: str, body: SocialLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.social_login(
        provider, body.token, device=_device_from_request(request)
    )
    _apply_auth_cookies(response, result, runtime.settings)
    return _auth_envelope(result)


@router.post("/auth/google", response_model=Envelope, tags=["auth"])
async def google_login(body: SocialLoginRequest, request: Request, response: Response):
    return await _social_login("google", body, request, response)


@router.post("/auth/apple", response_model=Envelope, tags=["auth"])
async def apple_login(body: SocialLoginRequest, request: Request, response: Response):
    return await _social_login("apple", body, request, response)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    request: Request, response: Response, body: Optional[TokenRefreshRequest] = None
):
    """Rotate the refresh token; reads the body first, then the path-scoped cookie."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    result = await runtime.auth.refresh(token)
    _apply_auth_cookies(response, result, runtime.settings)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout(principal)
    _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    claims = runtime.interactions.find_account(principal.id) or {}
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            **principal.as_dict(),
            email_verified=claims.get("email_verified"),
            name=claims.get("name"),
        ),
    )


# sessions


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_active_for_user(principal.id)
    return Envelope(
        status="ok",
        data=SessionListResponse(items=[_session_response(s, principal) for s in sessions]),
    )


@router.get("/sessions/count", response_model=Envelope, tags=["sessions"])
async def count_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    count = runtime.sessions.count_active_for_user(principal.id)
    return Envelope(status="ok", data=SessionCountResponse(count=count))


@router.get("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def get_session(
    session_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    session = runtime.sessions.get_owned(session_id, principal.id)
    if session is None:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    return Envelope(status="ok", data=_session_response(session, principal))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    response: Response,
    session_id: str = Path(..., max_length=128),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    # Someone else's session is indistinguishable from a missing one
    session = runtime.sessions.get_owned(session_id, principal.id)
    if session is None:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    await runtime.sessions.delete(session.id, user_id=principal.id)
    if session.id == principal.jti:
        _clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"revoked": True, "session_id": session.id})


@router.delete("/sessions", response_model=Envelope, tags=["sessions"])
async def revoke_other_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.auth.revoke_other_sessions(principal)
    return Envelope(status="ok", data=SessionsRevokedResponse(revoked=count))


# oauth


def _interaction_required(
    error: str, description: str, uid: str, url: str, settings_cookie: Any
) -> JSONResponse:
    response = JSONResponse(
        status_code=401,
        content={
            "error": error,
            "error_description": description,
            "interaction_uid": uid,
            "interaction_url": url,
        },
        headers=_NO_STORE_HEADERS,
    )
    response.set_cookie(
        settings_cookie.name,
        uid,
        httponly=True,
        secure=settings_cookie.secure,
        samesite="lax",
        max_age=settings_cookie.max_age_seconds,
        path=settings_cookie.path,
    )
    return response


@router.get("/oauth/authorize", tags=["oauth"])
async def authorize(
    client_id: Optional[str] = Query(None, max_length=256),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
    response_type: Optional[str] = Query(None, max_length=32),
    code_challenge: Optional[str] = Query(None, max_length=256),
    code_challenge_method: Optional[str] = Query(None, max_length=16),
    state: Optional[str] = Query(None, max_length=1024),
    scope: Optional[str] = Query(None, max_length=1024),
    nonce: Optional[str] = Query(None, max_length=256),
    principal: Optional[Principal] = Depends(get_optional_principal),
):
    """Issue an authorization code and redirect back to the client.

    Without a session, or without consent for a third-party client, an
    interaction is started and a 401 carrying its id and URL is returned so
    the front end can route to sign-in or consent.
    """
    runtime = get_runtime()
    runtime.broker.validate_authorization_request(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
    )
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": response_type,
        "code_challenge": code_challenge,
        "code_challenge_method": code_challenge_method,
        "state": state,
        "scope": scope or " ".join(DEFAULT_SCOPES),
        "nonce": nonce,
    }
    cookie_config = runtime.interactions.config.cookies
    if principal is None:
        interaction = runtime.interactions.start(params, prompt=PROMPT_LOGIN)
        return _interaction_required(
            "login_required",
            "sign-in required",
            interaction.uid,
            runtime.interactions.config.url_for(interaction.uid, PROMPT_LOGIN),
            cookie_config,
        )
    try:
        code = runtime.broker.authorize(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            principal=principal,
            scope=params["scope"],
            nonce=nonce,
        )
    except ConsentRequiredError:
        interaction = runtime.interactions.start(
            params, prompt=PROMPT_CONSENT, account_id=principal.id
        )
        return _interaction_required(
            "consent_required",
            "consent required",
            interaction.uid,
            runtime.interactions.config.url_for(interaction.uid, PROMPT_CONSENT),
            cookie_config,
        )
    return RedirectResponse(
        build_redirect(redirect_uri or "", {"code": code, "state": state}),
        status_code=302,
    )


async def _read_token_request(request: Request) -> TokenRequest:
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            raw: Dict[str, Any] = await request.json()
        except ValueError:
            raw = {}
    else:
        form = await request.form()
        raw = {key: value for key, value in form.items() if isinstance(value, str)}
    return TokenRequest.model_validate(raw if isinstance(raw, dict) else {})


def _oauth_error(status_code: int, error: str, description: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "error_description": description},
        headers=_NO_STORE_HEADERS,
    )


@router.post("/oauth/token", tags=["oauth"])
async def token(request: Request):
    """Authorization-code exchange; accepts form-encoded or JSON bodies."""
    runtime = get_runtime()
    try:
        body = await _read_token_request(request)
    except PydanticValidationError:
        return _oauth_error(400, "invalid_request", "malformed token request")
    try:
        tokens = runtime.broker.token(
            code=body.code,
            code_verifier=body.code_verifier,
            client_id=body.client_id,
            redirect_uri=body.redirect_uri,
            grant_type=body.grant_type,
            client_secret=body.client_secret,
        )
    except ServiceError as exc:
        logger.info(
            "oauth_token_rejected",
            client_id=body.client_id,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _oauth_error(
            exc.status_code,
            _OAUTH_ERROR_CODES.get(exc.error_code, exc.error_code),
            exc.message,
        )
    return JSONResponse(
        content=TokenResponse(**tokens).model_dump(), headers=_NO_STORE_HEADERS
    )


@router.post("/oauth/consent", response_model=Envelope, tags=["oauth"])
async def grant_consent(body: ConsentRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    consent = runtime.broker.grant_consent(principal.id, body.client_id, body.scopes)
    return Envelope(
        status="ok",
        data=ConsentResponse(
            client_id=consent.client_id, scopes=consent.scopes, granted_at=consent.updated_at
        ),
    )


@router.get("/oauth/apps", response_model=Envelope, tags=["oauth"])
async def list_authorized_apps(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    apps = runtime.broker.list_authorized_apps(principal.id)
    return Envelope(
        status="ok",
        data=AuthorizedAppListResponse(items=[AuthorizedAppResponse(**app) for app in apps]),
    )


@router.delete("/oauth/apps/{client_id}", response_model=Envelope, tags=["oauth"])
async def revoke_authorized_app(
    client_id: str = Path(..., max_length=256),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    if not runtime.broker.revoke_consent(principal.id, client_id):
        raise NotFoundError("no consent for client", detail={"client_id": client_id})
    return Envelope(status="ok", data={"revoked": True, "client_id": client_id})


# interactions


def _browser_uid(request: Request) -> Optional[str]:
    runtime = get_runtime()
    return request.cookies.get(runtime.interactions.config.cookies.name)


def _interaction_envelope(outcome: InteractionOutcome) -> Envelope:
    return Envelope(
        status="ok",
        data=InteractionResponse(
            redirect_to=outcome.redirect_to, prompt=outcome.prompt, grant_id=outcome.grant_id
        ),
    )


@router.get("/interaction/{uid}", tags=["interaction"])
async def interaction(request: Request, uid: str = Path(..., max_length=128)):
    runtime = get_runtime()
    try:
        outcome = runtime.interactions.route(uid, browser_uid=_browser_uid(request))
    except NotFoundError:
        return JSONResponse(
            status_code=400,
            content=runtime.interactions.render_error(
                "invalid_request", "interaction not found or expired"
            ),
        )
    return RedirectResponse(outcome.redirect_to, status_code=303)


@router.post("/interaction/{uid}/login", response_model=Envelope, tags=["interaction"])
async def interaction_login(
    body: InteractionLoginRequest,
    request: Request,
    uid: str = Path(..., max_length=128),
):
    runtime = get_runtime()
    outcome = runtime.interactions.submit_login(
        uid, body.email, body.password, browser_uid=_browser_uid(request)
    )
    return _interaction_envelope(outcome)


@router.post("/interaction/{uid}/confirm", response_model=Envelope, tags=["interaction"])
async def interaction_confirm(
    request: Request,
    uid: str = Path(..., max_length=128),
    principal: Optional[Principal] = Depends(get_optional_principal),
):
    runtime = get_runtime()
    outcome = runtime.interactions.confirm_consent(
        uid,
        account_id=principal.id if principal else None,
        browser_uid=_browser_uid(request),
    )
    return _interaction_envelope(outcome)


@router.post("/interaction/{uid}/abort", response_model=Envelope, tags=["interaction"])
async def interaction_abort(request: Request, uid: str = Path(..., max_length=128)):
    runtime = get_runtime()
    outcome = runtime.interactions.abort(uid, browser_uid=_browser_uid(request))
    return _interaction_envelope(outcome)


# well-known


def discovery_document(settings: Settings) -> Dict[str, Any]:
    issuer = settings.oidc_issuer
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/v1/oauth/authorize",
        "token_endpoint": f"{issuer}/v1/oauth/token",
        "userinfo_endpoint": f"{issuer}/v1/me",
        "jwks_uri": f"{issuer}/jwks",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
        "scopes_supported": list(DEFAULT_SCOPES),
        "token_endpoint_auth_methods_supported": ["none", "client_secret_post"],
        "claims_supported": [
            "sub",
            "iss",
            "aud",
            "exp",
            "iat",
            "email",
            "email_verified",
            "name",
            "nonce",
        ],
        "code_challenge_methods_supported": ["S256"],
    }


@well_known_router.get("/jwks", tags=["oidc"])
async def jwks():
    runtime = get_runtime()
    return JSONResponse(content=runtime.keys.jwks())


@well_known_router.get("/.well-known/openid-configuration", tags=["oidc"])
async def openid_configuration():
    runtime = get_runtime()
    return JSONResponse(content=discovery_document(runtime.settings))
