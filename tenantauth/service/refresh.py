from __future__ import annotations

import secrets
from datetime import timedelta
from typing import Dict, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.audit import AuditRecorder
from tenantauth.service.authorization import AuthorizationResolver
from tenantauth.service.clock import Clock, SystemClock
from tenantauth.service.errors import (
    ClientMismatchError,
    NotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from tenantauth.service.tokens import IssuedTokens, TokenService
from tenantauth.storage.models import AuditAction, RefreshToken
from tenantauth.storage.repository import Repository

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 32


class RefreshLedger:
    """Opaque, single-use refresh tokens.

    A token is claimed by an atomic active->revoked transition in the
    repository before its replacement is minted, so of two concurrent
    rotations of the same token exactly one succeeds; the other sees
    ``token_revoked``.
    """

    def __init__(
        self,
        settings: Settings,
        store: Repository,
        tokens: TokenService,
        authz: AuthorizationResolver,
        audit: AuditRecorder,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.tokens = tokens
        self.authz = authz
        self.audit = audit
        self.clock = clock or SystemClock()

    def issue(
        self, user_id: str, app_id: str, device_info: Optional[Dict] = None
    ) -> RefreshToken:
        now = self.clock.now()
        row = RefreshToken(
            token=secrets.token_urlsafe(REFRESH_TOKEN_BYTES),
            user_id=user_id,
            app_id=app_id,
            expires_at=now + timedelta(days=self.settings.refresh_token_ttl_days),
            device_info=dict(device_info) if device_info else None,
            created_at=now,
        )
        return self.store.create_refresh_token(row)

    def rotate(self, presented_token: str, client_id: str) -> IssuedTokens:
        row = self.store.get_refresh_token(presented_token) if presented_token else None
        if row is None:
            raise TokenInvalidError("Invalid refresh token")
        if row.revoked:
            logger.warning("refresh_token_reuse", user_id=row.user_id, app_id=row.app_id)
            raise TokenRevokedError("Refresh token revoked")
        if self.clock.now() >= row.expires_at:
            raise TokenExpiredError("Refresh token expired")

        app = self.store.get_app(row.app_id)
        if app is None or app.client_id != client_id:
            logger.warning("refresh_client_mismatch", app_id=row.app_id)
            raise ClientMismatchError()
        user = self.store.get_user(row.user_id)
        if user is None:
            raise TokenInvalidError("Invalid refresh token")
        self.authz.ensure_app_access(user, app.id)

        if not self.store.revoke_refresh_token_if_active(presented_token):
            logger.warning("refresh_rotation_lost_race", user_id=user.id, app_id=app.id)
            raise TokenRevokedError("Refresh token revoked")

        replacement = self.issue(user.id, app.id, row.device_info)
        roles = self.authz.get_roles(user.id, app.id)
        access_token = self.tokens.issue_access_token(user.id, app.client_id, app.id, roles)
        self.audit.record(AuditAction.REFRESH, user.id, app_id=app.id)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=replacement.token,
            expires_in=self.tokens.access_token_ttl_seconds,
        )

    def revoke(self, presented_token: str) -> Dict[str, bool]:
        """Revoke a refresh token; revoking an already revoked token succeeds."""
        row = self.store.get_refresh_token(presented_token) if presented_token else None
        if row is None:
            raise NotFoundError("Refresh token not found")
        if self.store.revoke_refresh_token_if_active(presented_token):
            self.audit.record(AuditAction.REVOKE, row.user_id, app_id=row.app_id)
        return {"revoked": True}

    def revoke_all_for_user(self, user_id: str) -> int:
        count = self.store.revoke_refresh_tokens_for_user(user_id)
        if count:
            logger.info("refresh_tokens_revoked", user_id=user_id, count=count)
        return count
