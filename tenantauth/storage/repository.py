from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from tenantauth.storage.models import (
    App,
    AppAuthSettings,
    AppType,
    AuditAction,
    AuditEvent,
    OneTimeSecret,
    RefreshToken,
    RegistrationMethod,
    Role,
    SecretKind,
    User,
    UserAppRole,
)


class Repository(Protocol):
    """Persistence boundary used by every service.

    Implementations must make the compare-and-set methods
    (``revoke_refresh_token_if_active``, ``mark_secret_used_if_unused``,
    ``make_app_confidential_if_public``) and the
    replace-on-issue ``create_one_time_secret`` atomic with respect to concurrent
    callers, and must raise ``ConstraintViolation`` on uniqueness conflicts.
    """

    # users
    def create_user(
        self,
        email: str,
        *,
        password_hash: Optional[str] = None,
        registration_method: RegistrationMethod = RegistrationMethod.EMAIL_PASSWORD,
        is_email_verified: bool = False,
        oauth_provider: Optional[str] = None,
        oauth_provider_id: Optional[str] = None,
        opted_in_apps: Optional[Iterable[str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_oauth(self, provider: str, provider_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def add_opted_in_apps(self, user_id: str, app_ids: Iterable[str]) -> Optional[User]: ...

    def link_oauth_identity(
        self, user_id: str, provider: str, provider_id: str
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # apps and roles
    def create_app(
        self,
        name: str,
        client_id: str,
        *,
        app_type: AppType = AppType.PUBLIC,
        client_secret_hash: Optional[str] = None,
        redirect_uris: Optional[List[str]] = None,
    ) -> App: ...

    def get_app(self, app_id: str) -> Optional[App]: ...

    def get_app_by_client_id(self, client_id: str) -> Optional[App]: ...

    def list_apps(self) -> List[App]: ...

    def make_app_confidential_if_public(self, app_id: str, client_secret_hash: str) -> bool: ...

    def get_app_auth_settings(self, app_id: str) -> Optional[AppAuthSettings]: ...

    def save_app_auth_settings(self, settings: AppAuthSettings) -> AppAuthSettings: ...

    def get_role(self, app_id: str, name: str) -> Optional[Role]: ...

    def ensure_role(self, app_id: str, name: str) -> Role: ...

    def assign_role(
        self, user_id: str, role: Role, assigned_by: Optional[str] = None
    ) -> UserAppRole: ...

    def list_role_names(
        self, user_id: str, app_id: Optional[str] = None
    ) -> List[Tuple[str, str]]: ...

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token_if_active(self, token: str) -> bool: ...

    def revoke_refresh_tokens_for_user(self, user_id: str) -> int: ...

    # one-time secrets
    def create_one_time_secret(
        self,
        user_id: str,
        kind: SecretKind,
        secret: str,
        expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> Tuple[OneTimeSecret, int]: ...

    def get_one_time_secret(self, kind: SecretKind, secret: str) -> Optional[OneTimeSecret]: ...

    def get_latest_unused_secret(
        self, user_id: str, kind: SecretKind
    ) -> Optional[OneTimeSecret]: ...

    def mark_secret_used_if_unused(self, secret_id: str) -> bool: ...

    # audit
    def append_audit_event(
        self,
        action: AuditAction,
        user_id: Optional[str],
        metadata: Dict,
        created_at: Optional[datetime] = None,
    ) -> AuditEvent: ...

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...
