from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from tenantauth.logging import get_logger, hash_email
from tenantauth.service.admission import AUTH_POLICY, STRICT_POLICY, AdmissionController
from tenantauth.service.audit import AuditRecorder
from tenantauth.service.authorization import DEFAULT_ROLE_NAME, AuthorizationResolver
from tenantauth.service.clients import ClientRegistry
from tenantauth.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidOrExpiredError,
    NotFoundError,
    RegistrationDisabledError,
    ValidationError,
)
from tenantauth.service.notifier import Notifier, TemplateKind
from tenantauth.service.oauth import IdentityExchanger, OAuthProvider, resolve_provider
from tenantauth.service.one_time import OneTimeSecretManager
from tenantauth.service.passwords import PasswordService, generate_secure_password
from tenantauth.service.refresh import RefreshLedger
from tenantauth.service.tokens import IssuedTokens, TokenService
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    App,
    AuditAction,
    AuthMethod,
    RegistrationMethod,
    SecretKind,
    User,
)
from tenantauth.storage.repository import Repository

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
INVITE_PASSWORD_LENGTH = 16

# Returned for every OTP / reset request so responses never reveal whether
# the address belongs to an account.
OTP_REQUEST_RESPONSE = {"message": "If the account exists, a login code has been sent"}
RESET_REQUEST_RESPONSE = {
    "message": "If the account exists, a password reset email has been sent"
}


def _validate_email(email: str) -> str:
    email = (email or "").strip()
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        raise ValidationError("invalid email address", detail={"field": "email"})
    return email


def _validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"password must be at least {MIN_PASSWORD_LENGTH} characters",
            detail={"field": "password"},
        )


class AuthService:
    """Authentication flows composed from the credential and token components."""

    def __init__(
        self,
        store: Repository,
        *,
        passwords: PasswordService,
        tokens: TokenService,
        refresh: RefreshLedger,
        secrets: OneTimeSecretManager,
        authz: AuthorizationResolver,
        clients: ClientRegistry,
        admission: AdmissionController,
        audit: AuditRecorder,
        oauth: IdentityExchanger,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.tokens = tokens
        self.refresh_ledger = refresh
        self.secrets = secrets
        self.authz = authz
        self.clients = clients
        self.admission = admission
        self.audit = audit
        self.oauth = oauth
        self.notifier = notifier

    async def _admit(self, policy: str, caller_key: Optional[str]) -> None:
        if caller_key:
            await self.admission.admit(policy, caller_key)

    def _issue_tokens(
        self, user: User, app: App, device_info: Optional[Dict] = None
    ) -> IssuedTokens:
        roles = self.authz.get_roles(user.id, app.id)
        access_token = self.tokens.issue_access_token(user.id, app.client_id, app.id, roles)
        refresh_row = self.refresh_ledger.issue(user.id, app.id, device_info)
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_row.token,
            expires_in=self.tokens.access_token_ttl_seconds,
        )

    def _join_app(self, user: User, app_id: str, assigned_by: Optional[str] = None) -> None:
        self.store.add_opted_in_apps(user.id, [app_id])
        if DEFAULT_ROLE_NAME not in self.authz.get_roles(user.id, app_id):
            self.authz.assign_role(user.id, app_id, DEFAULT_ROLE_NAME, assigned_by=assigned_by)

    # ------------------------------------------------------------------ register / login

    async def register(
        self,
        email: str,
        password: str,
        client_id: str,
        client_secret: Optional[str] = None,
        *,
        caller_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self._admit(AUTH_POLICY, caller_key)
        email = _validate_email(email)
        _validate_password(password)
        app = self.clients.verify_client(client_id, client_secret)
        if not self.clients.get_auth_settings(app.id).allow_registration:
            raise RegistrationDisabledError()
        self.clients.ensure_auth_method(app, AuthMethod.EMAIL_PASSWORD)
        if self.store.get_user_by_email(email):
            raise ConflictError("email already registered", detail={"field": "email"})
        try:
            user = self.store.create_user(
                email,
                password_hash=self.passwords.hash(password),
                registration_method=RegistrationMethod.EMAIL_PASSWORD,
            )
        except ConstraintViolation as exc:
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self._join_app(user, app.id)
        logger.info("user_registered", user_id=user.id, app_id=app.id)
        self.audit.record(AuditAction.REGISTER, user.id, app_id=app.id)
        return user.profile()

    async def login(
        self,
        email: str,
        password: str,
        client_id: str,
        client_secret: Optional[str] = None,
        *,
        device_info: Optional[Dict] = None,
        caller_key: Optional[str] = None,
    ) -> IssuedTokens:
        await self._admit(AUTH_POLICY, caller_key)
        app = self.clients.verify_client(client_id, client_secret)
        self.clients.ensure_auth_method(app, AuthMethod.EMAIL_PASSWORD)
        user = self.store.get_user_by_email(email or "")
        if user is None or not user.password_hash:
            # Same hashing cost as a wrong password for unknown or OAuth-only accounts
            self.passwords.burn_time(password or "")
            logger.info("login_failed", email_hash=hash_email(email or ""), app_id=app.id)
            raise InvalidCredentialsError()
        if not self.passwords.verify(user.password_hash, password or ""):
            logger.info("login_failed", user_id=user.id, app_id=app.id)
            raise InvalidCredentialsError()

        self.authz.ensure_app_access(user, app.id)
        if self.passwords.needs_rehash(user.password_hash):
            self.store.update_user(user.id, password_hash=self.passwords.hash(password))

        issued = self._issue_tokens(user, app, device_info)
        logger.info("login_success", user_id=user.id, app_id=app.id)
        self.audit.record(AuditAction.LOGIN, user.id, app_id=app.id, method="password")
        return issued

    async def refresh(self, refresh_token: str, client_id: str) -> IssuedTokens:
        return self.refresh_ledger.rotate(refresh_token, client_id)

    async def revoke(self, refresh_token: str) -> Dict[str, bool]:
        return self.refresh_ledger.revoke(refresh_token)

    # ------------------------------------------------------------------ OTP login

    async def request_otp(
        self,
        email: str,
        client_id: str,
        client_secret: Optional[str] = None,
        *,
        caller_key: Optional[str] = None,
    ) -> Dict[str, str]:
        await self._admit(STRICT_POLICY, caller_key)
        app = self.clients.verify_client(client_id, client_secret)
        self.clients.ensure_auth_method(app, AuthMethod.EMAIL_OTP)
        user = self.store.get_user_by_email(email or "")
        if user is None:
            logger.info("otp_request_unknown_email", email_hash=hash_email(email or ""))
            return dict(OTP_REQUEST_RESPONSE)
        issued = await self.secrets.request(user, SecretKind.OTP_LOGIN)
        self.audit.record(
            AuditAction.OTP_REQUEST, user.id, app_id=app.id, delivered=issued.delivered
        )
        return dict(OTP_REQUEST_RESPONSE)

    async def login_with_otp(
        self,
        email: str,
        code: str,
        client_id: str,
        client_secret: Optional[str] = None,
        *,
        device_info: Optional[Dict] = None,
        caller_key: Optional[str] = None,
    ) -> IssuedTokens:
        await self._admit(AUTH_POLICY, caller_key)
        app = self.clients.verify_client(client_id, client_secret)
        self.clients.ensure_auth_method(app, AuthMethod.EMAIL_OTP)
        user = self.store.get_user_by_email(email or "")
        if user is None or not self.secrets.is_valid_otp(user.id, code):
            raise InvalidOrExpiredError()
        # A non-member is refused before the code is spent
        self.authz.ensure_app_access(user, app.id)
        self.secrets.consume_otp(user.id, code)
        if not user.is_email_verified:
            # Receiving the code proves control of the mailbox
            self.store.update_user(user.id, is_email_verified=True)
        issued = self._issue_tokens(user, app, device_info)
        self.audit.record(AuditAction.OTP_LOGIN, user.id, app_id=app.id)
        return issued

    # ------------------------------------------------------------------ password reset

    async def request_password_reset(
        self, email: str, *, caller_key: Optional[str] = None
    ) -> Dict[str, str]:
        await self._admit(STRICT_POLICY, caller_key)
        user = self.store.get_user_by_email(email or "")
        if user is None:
            logger.info("password_reset_unknown_email", email_hash=hash_email(email or ""))
            return dict(RESET_REQUEST_RESPONSE)
        issued = await self.secrets.request(user, SecretKind.PASSWORD_RESET)
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUEST, user.id, delivered=issued.delivered
        )
        return dict(RESET_REQUEST_RESPONSE)

    async def verify_reset_token(self, token: str) -> bool:
        return self.secrets.is_valid_reset_token(token)

    async def reset_password(self, token: str, new_password: str) -> Dict[str, Any]:
        _validate_password(new_password)
        record = self.secrets.consume_reset_token(token)
        user = self.store.get_user(record.user_id)
        if user is None:
            raise InvalidOrExpiredError()
        self.store.update_user(user.id, password_hash=self.passwords.hash(new_password))
        revoked = self.refresh_ledger.revoke_all_for_user(user.id)
        logger.info("password_reset_completed", user_id=user.id, revoked_tokens=revoked)
        self.audit.record(
            AuditAction.PASSWORD_RESET_COMPLETE, user.id, revoked_tokens=revoked
        )
        return {"reset": True}

    # ------------------------------------------------------------------ OAuth

    async def oauth_login(
        self,
        provider: OAuthProvider | str,
        code: str,
        client_id: str,
        client_secret: Optional[str] = None,
        *,
        redirect_uri: Optional[str] = None,
        device_info: Optional[Dict] = None,
        caller_key: Optional[str] = None,
    ) -> IssuedTokens:
        await self._admit(AUTH_POLICY, caller_key)
        app = self.clients.verify_client(client_id, client_secret)
        provider = resolve_provider(provider)
        self.clients.ensure_auth_method(app, AuthMethod(provider.value))
        identity = await self.oauth.exchange_code_for_identity(provider, code, redirect_uri)
        provider_name = identity.provider.value

        user = self.store.get_user_by_oauth(provider_name, identity.provider_id)
        if user is None:
            user = self.store.get_user_by_email(identity.email)
            if user is not None:
                if not identity.email_verified:
                    # An unverified provider address proves nothing about the mailbox
                    logger.info(
                        "oauth_link_refused_unverified_email",
                        user_id=user.id,
                        provider=provider_name,
                    )
                    raise ConflictError(
                        "an account with this email already exists",
                        detail={"field": "email", "provider": provider_name},
                    )
                try:
                    self.store.link_oauth_identity(user.id, provider_name, identity.provider_id)
                except ConstraintViolation as exc:
                    raise ConflictError("OAuth identity already linked") from exc
                if not user.is_email_verified:
                    self.store.update_user(user.id, is_email_verified=True)
                logger.info("oauth_identity_linked", user_id=user.id, provider=provider_name)
            else:
                if not self.clients.get_auth_settings(app.id).allow_registration:
                    raise RegistrationDisabledError()
                try:
                    user = self.store.create_user(
                        identity.email,
                        registration_method=RegistrationMethod.OAUTH,
                        is_email_verified=identity.email_verified,
                        oauth_provider=provider_name,
                        oauth_provider_id=identity.provider_id,
                    )
                except ConstraintViolation as exc:
                    raise ConflictError("account already exists", detail=exc.detail) from exc
                logger.info("oauth_user_created", user_id=user.id, provider=provider_name)

        # Signing in through an app with OAuth counts as joining it
        if app.id not in user.opted_in_apps:
            self._join_app(user, app.id)
        issued = self._issue_tokens(user, app, device_info)
        self.audit.record(
            AuditAction.OAUTH_LOGIN, user.id, app_id=app.id, provider=provider_name
        )
        return issued

    # ------------------------------------------------------------------ user administration

    async def invite_user(
        self,
        email: str,
        app_ids: Iterable[str],
        *,
        invited_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = _validate_email(email)
        app_ids = list(dict.fromkeys(app_ids))
        if not app_ids:
            raise ValidationError("at least one app is required", detail={"field": "app_ids"})
        apps = [self.clients.get_app(app_id) for app_id in app_ids]

        temporary_password: Optional[str] = None
        user = self.store.get_user_by_email(email)
        created = user is None
        if user is None:
            temporary_password = generate_secure_password(INVITE_PASSWORD_LENGTH)
            user = self.store.create_user(
                email,
                password_hash=self.passwords.hash(temporary_password),
                registration_method=RegistrationMethod.INVITE,
            )
        else:
            new_apps = [a for a in apps if a.id not in user.opted_in_apps]
            if not new_apps:
                raise ConflictError(
                    "user already has access to these apps", detail={"app_ids": app_ids}
                )
            apps = new_apps

        for app in apps:
            self._join_app(user, app.id, assigned_by=invited_by)

        data: Dict[str, Any] = {"app_names": [a.name for a in apps]}
        if temporary_password:
            data["temporary_password"] = temporary_password
        try:
            await self.notifier.send(user.email, TemplateKind.INVITE, data)
        except Exception as exc:
            logger.error("invite_delivery_failed", user_id=user.id, error=str(exc))

        self.audit.record(
            AuditAction.USER_INVITE,
            user.id,
            app_ids=[a.id for a in apps],
            invited_by=invited_by,
            created=created,
        )
        return {
            "user": self.store.get_user(user.id).profile(),
            "created": created,
            "app_ids": [a.id for a in apps],
        }

    async def opt_in(self, user_id: str, app_id: str) -> Dict[str, Any]:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        app = self.clients.get_app(app_id)
        if app.id not in user.opted_in_apps:
            self._join_app(user, app.id)
            logger.info("user_opted_in", user_id=user.id, app_id=app.id)
        return user.profile()

    def _can_manage(self, actor_id: str, target: User) -> bool:
        if actor_id == target.id or self.authz.is_superadmin(actor_id):
            return True
        return any(self.authz.is_app_owner(actor_id, app_id) for app_id in target.opted_in_apps)

    async def update_user(
        self,
        user_id: str,
        *,
        requested_by: str,
        email: Optional[str] = None,
        password: Optional[str] = None,
        mfa_enabled: Optional[bool] = None,
    ) -> Dict[str, Any]:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        if not self._can_manage(requested_by, user):
            raise ForbiddenError("not allowed to update this user")
        fields: Dict[str, Any] = {}
        if email is not None:
            fields["email"] = _validate_email(email)
            fields["is_email_verified"] = False
        if password is not None:
            _validate_password(password)
            fields["password_hash"] = self.passwords.hash(password)
        if mfa_enabled is not None:
            fields["mfa_enabled"] = bool(mfa_enabled)
        if fields:
            try:
                user = self.store.update_user(user_id, **fields)
            except ConstraintViolation as exc:
                raise ConflictError("email already registered", detail=exc.detail) from exc
            logger.info("user_updated", user_id=user_id, fields=sorted(fields))
        return user.profile()

    async def delete_user(self, user_id: str, *, requested_by: str) -> Dict[str, bool]:
        if not self.authz.is_superadmin(requested_by):
            raise ForbiddenError("superadmin access required")
        if user_id == requested_by:
            raise ConflictError("cannot delete your own account")
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        self.store.delete_user(user_id)
        logger.info("user_deleted", user_id=user_id, deleted_by=requested_by)
        self.audit.record(
            AuditAction.USER_DELETE, None, deleted_user_id=user_id, deleted_by=requested_by
        )
        return {"deleted": True}

    async def get_current_user(self, user_id: str) -> Dict[str, Any]:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found")
        profile = user.profile()
        profile["roles"] = self.authz.get_roles_by_app(user.id)
        profile["is_superadmin"] = self.authz.is_superadmin(user.id)
        return profile
