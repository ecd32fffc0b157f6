from __future__ import annotations

import secrets
import uuid
from dataclasses import replace
from typing import List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.service.authorization import DEFAULT_ROLE_NAME
from tenantauth.service.clock import Clock, SystemClock
from tenantauth.service.errors import (
    AuthMethodDisabledError,
    ClientSecretRequiredError,
    ConflictError,
    InvalidClientError,
    InvalidCredentialsError,
    NotFoundError,
    ValidationError,
)
from tenantauth.service.passwords import PasswordService
from tenantauth.storage.models import App, AppAuthSettings, AppType, AuthMethod
from tenantauth.storage.repository import Repository

logger = get_logger(__name__)

CLIENT_SECRET_LENGTH = 64

AUTH_SETTING_FIELDS = frozenset(
    {
        "email_password_enabled",
        "email_otp_enabled",
        "google_auth_enabled",
        "github_auth_enabled",
        "microsoft_auth_enabled",
        "require_email_verification",
        "allow_registration",
    }
)


def _generate_client_secret() -> str:
    # token_urlsafe(48) yields exactly 64 characters
    return secrets.token_urlsafe(CLIENT_SECRET_LENGTH * 3 // 4)


class ClientRegistry:
    """Registered client applications and their credentials."""

    def __init__(
        self,
        store: Repository,
        passwords: PasswordService,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.clock = clock or SystemClock()

    def create_app(
        self,
        name: str,
        app_type: AppType = AppType.PUBLIC,
        redirect_uris: Optional[List[str]] = None,
    ) -> Tuple[App, Optional[str]]:
        """Register an app; the plaintext secret is returned here and never again."""
        app_type = AppType(app_type)
        client_secret = None
        secret_hash = None
        if app_type == AppType.CONFIDENTIAL:
            client_secret = _generate_client_secret()
            secret_hash = self.passwords.hash(client_secret)
        app = self.store.create_app(
            name,
            str(uuid.uuid4()),
            app_type=app_type,
            client_secret_hash=secret_hash,
            redirect_uris=redirect_uris,
        )
        self.store.ensure_role(app.id, DEFAULT_ROLE_NAME)
        logger.info("app_created", app_id=app.id, app_type=app_type.value)
        return app, client_secret

    def get_app(self, app_id: str) -> App:
        app = self.store.get_app(app_id)
        if not app:
            raise NotFoundError("app not found", detail={"app_id": app_id})
        return app

    def get_app_by_client_id(self, client_id: str) -> App:
        app = self.store.get_app_by_client_id(client_id)
        if not app:
            raise NotFoundError("app not found", detail={"client_id": client_id})
        return app

    def verify_client(self, client_id: str, client_secret: Optional[str] = None) -> App:
        """Resolve the calling app, checking the secret for confidential clients.

        An unknown client id is reported as invalid credentials so a login
        response cannot be used to enumerate registered clients.
        """
        app = self.store.get_app_by_client_id(client_id) if client_id else None
        if not app:
            raise InvalidCredentialsError()
        if app.type != AppType.CONFIDENTIAL:
            return app
        if not client_secret:
            raise ClientSecretRequiredError()
        if not app.client_secret_hash:
            logger.error("client_secret_hash_missing", app_id=app.id)
            raise InvalidClientError("Invalid client configuration")
        if not self.passwords.verify(app.client_secret_hash, client_secret):
            logger.info("client_secret_mismatch", app_id=app.id)
            raise InvalidClientError()
        return app

    def make_confidential(self, app_id: str) -> str:
        app = self.get_app(app_id)
        if app.type == AppType.CONFIDENTIAL:
            raise ConflictError("app is already confidential", detail={"app_id": app_id})
        client_secret = _generate_client_secret()
        # Two concurrent promotions must not both hand out a secret
        if not self.store.make_app_confidential_if_public(
            app_id, self.passwords.hash(client_secret)
        ):
            raise ConflictError("app is already confidential", detail={"app_id": app_id})
        logger.info("app_promoted_confidential", app_id=app_id)
        return client_secret

    # ------------------------------------------------------------------ sign-in methods

    def get_auth_settings(self, app_id: str) -> AppAuthSettings:
        app = self.get_app(app_id)
        stored = self.store.get_app_auth_settings(app.id)
        if stored is not None:
            return stored
        now = self.clock.now()
        return AppAuthSettings(app_id=app.id, created_at=now, updated_at=now)

    def update_auth_settings(self, app_id: str, **changes: bool) -> AppAuthSettings:
        """Apply partial changes; at least one sign-in method must stay enabled."""
        unknown = set(changes) - AUTH_SETTING_FIELDS
        if unknown:
            raise ValidationError(
                "unknown authentication settings", detail={"fields": sorted(unknown)}
            )
        current = self.get_auth_settings(app_id)
        updated = replace(
            current,
            **{name: bool(value) for name, value in changes.items()},
            updated_at=self.clock.now(),
        )
        if not updated.enabled_methods():
            raise ValidationError("at least one authentication method must be enabled")
        saved = self.store.save_app_auth_settings(updated)
        logger.info(
            "app_auth_settings_updated",
            app_id=saved.app_id,
            fields=sorted(changes),
            enabled_methods=saved.enabled_methods(),
        )
        return saved

    def is_auth_method_enabled(self, app_id: str, method: AuthMethod | str) -> bool:
        stored = self.store.get_app_auth_settings(app_id)
        return (stored or AppAuthSettings(app_id=app_id)).is_enabled(AuthMethod(method))

    def ensure_auth_method(self, app: App, method: AuthMethod | str) -> None:
        method = AuthMethod(method)
        if not self.is_auth_method_enabled(app.id, method):
            logger.info("auth_method_disabled", app_id=app.id, method=method.value)
            raise AuthMethodDisabledError(
                f"{method.value} sign-in is not enabled for this application",
                detail={"method": method.value},
            )
