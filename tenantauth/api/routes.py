from __future__ import annotations

import hmac
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from tenantauth.api.schemas import (
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    InvitationResponse,
    LoginRequest,
    RefreshResponse,
    RegisterRequest,
    UserResponse,
)
from tenantauth.logging import get_logger
from tenantauth.service.auth import Principal
from tenantauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    ServerError,
)
from tenantauth.service.runtime import get_runtime
from tenantauth.service.sessions import ClientInfo
from tenantauth.service.validators import validate_redirect_uri
from tenantauth.storage.models import Tenant

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_COOKIE = "refresh_token"


def _client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def _resolve_tenant(api_key: Optional[str]) -> Tenant:
    if not api_key:
        raise AuthenticationError("Unauthorized")
    runtime = get_runtime()
    global_key = runtime.settings.api_key
    if global_key and hmac.compare_digest(api_key.encode(), global_key.encode()):
        tenant = runtime.store.get_default_tenant()
    else:
        tenant = runtime.store.get_tenant_by_api_key(api_key)
    if tenant is None:
        logger.warning("tenant_resolution_failed")
        raise AuthenticationError("Unauthorized")
    return tenant


async def get_tenant(
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Tenant:
    return _resolve_tenant(x_api_key)


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Unauthorized")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Unauthorized")
    return token.strip()


async def get_principal(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> Principal:
    runtime = get_runtime()
    principal = await runtime.auth.authenticate_access_token(_bearer_token(authorization))
    if x_api_key:
        tenant = _resolve_tenant(x_api_key)
        if tenant.id != principal.tenant_id:
            logger.warning(
                "principal_tenant_mismatch",
                user_id=principal.user_id,
                token_tenant_id=principal.tenant_id,
                api_key_tenant_id=tenant.id,
            )
            raise ForbiddenError("Forbidden")
    return principal


async def get_tenant_principal(
    tenant: Tenant = Depends(get_tenant),
    principal: Principal = Depends(get_principal),
) -> Principal:
    return principal


async def require_operator(
    x_tenant_secret_key: Optional[str] = Header(None, alias="X-Tenant-Secret-Key"),
) -> None:
    secret = get_runtime().settings.tenant_secret_key
    if not secret:
        logger.error("tenant_secret_key_missing")
        raise ServerError("TENANT_SECRET_KEY not configured")
    if not x_tenant_secret_key or not hmac.compare_digest(
        x_tenant_secret_key.encode(), secret.encode()
    ):
        logger.warning("operator_secret_rejected")
        raise AuthenticationError("Unauthorized")


def _set_refresh_cookie(response: Response, refresh_token: str) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        REFRESH_COOKIE,
        refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
        max_age=settings.refresh_token_expiry,
        path="/",
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.set_cookie(
        REFRESH_COOKIE,
        "",
        httponly=True,
        secure=get_runtime().settings.cookie_secure,
        samesite="strict",
        max_age=0,
        path="/",
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(
    body: RegisterRequest,
    request: Request,
    tenant: Tenant = Depends(get_tenant),
):
    """Create, restore or link an account in the caller's tenant.

    Registration never opens a session, so no refresh cookie is set.

    Raises:
        400: invalid username, email, password or role
        403: elevated role without a valid invitation code
        409: identity dispute or reserved username
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        tenant_id=tenant.id,
        username=body.username,
        email=body.email,
        password=body.password,
        role=body.role,
        invitation_code=body.invitation_code,
        client=_client_info(request),
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user_id,
            access_token=result.access_token,
            expires_in=result.expires_in,
            role=result.role,
            tenant_id=result.tenant_id,
        ),
    )


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    tenant: Tenant = Depends(get_tenant),
):
    runtime = get_runtime()
    result, refresh_token = await runtime.auth.login(
        tenant_id=tenant.id,
        identifier=body.username_or_email,
        password=body.password,
        role=body.role,
        client=_client_info(request),
    )
    _set_refresh_cookie(response, refresh_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user_id,
            access_token=result.access_token,
            expires_in=result.expires_in,
            role=result.role,
            tenant_id=result.tenant_id,
        ),
    )


@router.get("/refresh", response_model=Envelope)
async def refresh(
    request: Request,
    tenant: Tenant = Depends(get_tenant),
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    access_token, expires_in = await runtime.auth.refresh(
        refresh_token, tenant_id=tenant.id, client=_client_info(request)
    )
    return Envelope(
        status="ok",
        data=RefreshResponse(access_token=access_token, expires_in=expires_in),
    )


@router.post(
    "/internal/invitations",
    response_model=Envelope,
    status_code=201,
    dependencies=[Depends(require_operator)],
)
async def create_invitation():
    runtime = get_runtime()
    code = await runtime.auth.generate_invitation_code()
    return Envelope(
        status="ok",
        data=InvitationResponse(
            invitation_code=code, expires_in=runtime.settings.invitation_ttl_seconds
        ),
    )


@router.get("/verify", response_model=Envelope)
async def verify(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    profile = await runtime.auth.verify_user_exists(principal.user_id, principal.tenant_id)
    return Envelope(
        status="ok",
        data=UserResponse(
            id=profile.id,
            username=profile.username,
            email=profile.email,
            role=profile.role,
            created_at=profile.created_at,
            updated_at=profile.updated_at,
        ),
    )


@router.delete("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    principal: Principal = Depends(get_principal),
    refresh_token: Optional[str] = Cookie(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.user_id, refresh_token, client=_client_info(request)
    )
    _clear_refresh_cookie(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.put("/reset", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    principal: Principal = Depends(get_tenant_principal),
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.user_id,
        body.old_password,
        body.new_password,
        body.confirm_new_password,
        client=_client_info(request),
    )
    return Envelope(status="ok", data={"message": "password changed"})


@router.get("/sso/logout")
async def sso_logout(
    request: Request,
    redirect_uri: Optional[str] = Query(None),
    refresh_token: Optional[str] = Cookie(None),
):
    """Cookie-only logout shared by every client of a tenant.

    A repeated call with an already spent cookie still succeeds.
    """
    runtime = get_runtime()
    if redirect_uri:
        validate_redirect_uri(redirect_uri, runtime.settings.allowed_origins)
    await runtime.auth.sso_logout(refresh_token, client=_client_info(request))
    if redirect_uri:
        response: Response = RedirectResponse(redirect_uri, status_code=303)
    else:
        response = JSONResponse(
            content=Envelope(status="ok", data={"message": "logged out"}).model_dump()
        )
    _clear_refresh_cookie(response)
    return response
