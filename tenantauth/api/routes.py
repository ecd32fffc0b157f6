from __future__ import annotations

from fastapi import APIRouter, Depends

from tenantauth.api.deps import admission, require_claims, require_superadmin
from tenantauth.api.schemas import (
    AuthSettingsUpdate,
    Envelope,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshRequest,
    RevokeRequest,
    TokenResponse,
    UserInfoResponse,
)
from tenantauth.logging import get_logger
from tenantauth.service.admission import AUTH_POLICY, STRICT_POLICY
from tenantauth.service.runtime import get_runtime
from tenantauth.service.tokens import AccessClaims

logger = get_logger(__name__)

router = APIRouter()


@router.get("/.well-known/jwks.json")
async def jwks() -> dict:
    # Relying parties expect the bare JWKS document, not the envelope
    return get_runtime().tokens.jwks()


@router.get("/healthz")
async def healthz() -> Envelope:
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"status": "ok", "redis": runtime.counter_store is not None},
    )


@router.post("/v1/auth/login", dependencies=[Depends(admission(AUTH_POLICY))])
async def login(body: LoginRequest) -> Envelope:
    issued = await get_runtime().auth.login(
        body.email,
        body.password,
        body.client_id,
        body.client_secret,
        device_info=body.device_info,
    )
    return Envelope(status="ok", data=TokenResponse(**issued.to_dict()))


@router.post("/v1/auth/refresh", dependencies=[Depends(admission(AUTH_POLICY))])
async def refresh(body: RefreshRequest) -> Envelope:
    issued = await get_runtime().auth.refresh(body.refresh_token, body.client_id)
    return Envelope(status="ok", data=TokenResponse(**issued.to_dict()))


@router.post("/v1/auth/revoke")
async def revoke(body: RevokeRequest) -> Envelope:
    return Envelope(status="ok", data=await get_runtime().auth.revoke(body.refresh_token))


@router.post(
    "/v1/auth/password-reset/request", dependencies=[Depends(admission(STRICT_POLICY))]
)
async def request_password_reset(body: PasswordResetRequest) -> Envelope:
    data = await get_runtime().auth.request_password_reset(body.email)
    return Envelope(status="ok", data=data)


@router.post(
    "/v1/auth/password-reset/confirm", dependencies=[Depends(admission(STRICT_POLICY))]
)
async def confirm_password_reset(body: PasswordResetConfirm) -> Envelope:
    data = await get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=data)


@router.get("/v1/auth/providers")
async def providers(client_id: str) -> Envelope:
    """Sign-in methods a client app offers; public so login screens can render."""
    runtime = get_runtime()
    app = runtime.clients.get_app_by_client_id(client_id)
    settings = runtime.clients.get_auth_settings(app.id)
    return Envelope(status="ok", data={**settings.to_dict(), "app_name": app.name})


@router.get("/v1/userinfo")
async def userinfo(claims: AccessClaims = Depends(require_claims)) -> Envelope:
    return Envelope(status="ok", data=UserInfoResponse(**claims.to_dict()))


@router.get("/v1/me")
async def me(claims: AccessClaims = Depends(require_claims)) -> Envelope:
    return Envelope(status="ok", data=await get_runtime().auth.get_current_user(claims.sub))


@router.delete("/v1/admin/users/{user_id}")
async def delete_user(
    user_id: str, claims: AccessClaims = Depends(require_superadmin)
) -> Envelope:
    result = await get_runtime().auth.delete_user(user_id, requested_by=claims.sub)
    logger.info("admin_user_deleted", user_id=user_id, admin_id=claims.sub)
    return Envelope(status="ok", data=result)


@router.patch("/v1/admin/apps/{app_id}/auth-settings")
async def update_auth_settings(
    app_id: str,
    body: AuthSettingsUpdate,
    claims: AccessClaims = Depends(require_superadmin),
) -> Envelope:
    changes = body.model_dump(exclude_none=True)
    settings = get_runtime().clients.update_auth_settings(app_id, **changes)
    logger.info("admin_auth_settings_updated", app_id=app_id, admin_id=claims.sub)
    return Envelope(status="ok", data=settings.to_dict())
