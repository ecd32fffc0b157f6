from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from tenantauth.logging import get_logger
from tenantauth.storage.errors import ConstraintViolation
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

_UPDATABLE_USER_FIELDS = frozenset(
    {"email", "password_hash", "is_email_verified", "mfa_enabled"}
)


def _email_key(email: str) -> str:
    return email.strip().casefold()


class MemoryStore:
    """Thread-safe in-process repository.

    A single RLock guards every read-modify-write so the compare-and-set
    methods behave atomically across threads sharing the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self._users_by_email: Dict[str, str] = {}
        self._users_by_oauth: Dict[Tuple[str, str], str] = {}
        self.apps: Dict[str, App] = {}
        self._apps_by_client_id: Dict[str, str] = {}
        self.app_auth_settings: Dict[str, AppAuthSettings] = {}
        self.roles: Dict[str, Role] = {}
        self.user_roles: List[UserAppRole] = []
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.secrets: Dict[str, OneTimeSecret] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    # ------------------------------------------------------------------ users

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
    ) -> User:
        with self._data_lock:
            key = _email_key(email)
            if key in self._users_by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            oauth_key = None
            if oauth_provider and oauth_provider_id:
                oauth_key = (oauth_provider, oauth_provider_id)
                if oauth_key in self._users_by_oauth:
                    raise ConstraintViolation(
                        "oauth identity already linked", {"field": "oauth_provider_id"}
                    )
            user = User(
                id=str(uuid.uuid4()),
                email=email.strip(),
                password_hash=password_hash,
                is_email_verified=is_email_verified,
                registration_method=registration_method,
                oauth_provider=oauth_provider,
                oauth_provider_id=oauth_provider_id,
                opted_in_apps=set(opted_in_apps or ()),
            )
            self.users[user.id] = user
            self._users_by_email[key] = user.id
            if oauth_key:
                self._users_by_oauth[oauth_key] = user.id
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_email.get(_email_key(email))
            return self.users.get(user_id) if user_id else None

    def get_user_by_oauth(self, provider: str, provider_id: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._users_by_oauth.get((provider, provider_id))
            return self.users.get(user_id) if user_id else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return ordered[:limit]

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                new_key = _email_key(fields["email"])
                old_key = _email_key(user.email)
                owner = self._users_by_email.get(new_key)
                if owner and owner != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                self._users_by_email.pop(old_key, None)
                self._users_by_email[new_key] = user_id
                fields["email"] = fields["email"].strip()
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = datetime.now(timezone.utc)
            return user

    def add_opted_in_apps(self, user_id: str, app_ids: Iterable[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.opted_in_apps.update(app_ids)
            user.updated_at = datetime.now(timezone.utc)
            return user

    def link_oauth_identity(
        self, user_id: str, provider: str, provider_id: str
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            owner = self._users_by_oauth.get((provider, provider_id))
            if owner and owner != user_id:
                raise ConstraintViolation(
                    "oauth identity already linked", {"field": "oauth_provider_id"}
                )
            if user.oauth_provider and user.oauth_provider_id:
                self._users_by_oauth.pop((user.oauth_provider, user.oauth_provider_id), None)
            user.oauth_provider = provider
            user.oauth_provider_id = provider_id
            self._users_by_oauth[(provider, provider_id)] = user_id
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            self._users_by_email.pop(_email_key(user.email), None)
            if user.oauth_provider and user.oauth_provider_id:
                self._users_by_oauth.pop((user.oauth_provider, user.oauth_provider_id), None)
            self.user_roles = [r for r in self.user_roles if r.user_id != user_id]
            for token, row in list(self.refresh_tokens.items()):
                if row.user_id == user_id:
                    self.refresh_tokens.pop(token, None)
            for secret_id, row in list(self.secrets.items()):
                if row.user_id == user_id:
                    self.secrets.pop(secret_id, None)
            # Audit rows outlive the user
            for event in self.audit_events:
                if event.user_id == user_id:
                    event.user_id = None
            return True

    # ------------------------------------------------------------ apps/roles

    def create_app(
        self,
        name: str,
        client_id: str,
        *,
        app_type: AppType = AppType.PUBLIC,
        client_secret_hash: Optional[str] = None,
        redirect_uris: Optional[List[str]] = None,
    ) -> App:
        with self._data_lock:
            if client_id in self._apps_by_client_id:
                raise ConstraintViolation("client_id already exists", {"field": "client_id"})
            app = App(
                id=str(uuid.uuid4()),
                name=name,
                client_id=client_id,
                type=app_type,
                client_secret_hash=client_secret_hash,
                redirect_uris=list(redirect_uris or []),
            )
            self.apps[app.id] = app
            self._apps_by_client_id[client_id] = app.id
            return app

    def get_app(self, app_id: str) -> Optional[App]:
        with self._data_lock:
            return self.apps.get(app_id)

    def get_app_by_client_id(self, client_id: str) -> Optional[App]:
        with self._data_lock:
            app_id = self._apps_by_client_id.get(client_id)
            return self.apps.get(app_id) if app_id else None

    def list_apps(self) -> List[App]:
        with self._data_lock:
            return sorted(self.apps.values(), key=lambda a: a.created_at)

    def make_app_confidential_if_public(self, app_id: str, client_secret_hash: str) -> bool:
        with self._data_lock:
            app = self.apps.get(app_id)
            if app is None or app.type != AppType.PUBLIC:
                return False
            app.type = AppType.CONFIDENTIAL
            app.client_secret_hash = client_secret_hash
            return True

    def get_app_auth_settings(self, app_id: str) -> Optional[AppAuthSettings]:
        with self._data_lock:
            return self.app_auth_settings.get(app_id)

    def save_app_auth_settings(self, settings: AppAuthSettings) -> AppAuthSettings:
        with self._data_lock:
            if settings.app_id not in self.apps:
                raise ConstraintViolation("app not found for settings", {"field": "app_id"})
            self.app_auth_settings[settings.app_id] = settings
            return settings

    def get_role(self, app_id: str, name: str) -> Optional[Role]:
        with self._data_lock:
            return next(
                (r for r in self.roles.values() if r.app_id == app_id and r.name == name),
                None,
            )

    def ensure_role(self, app_id: str, name: str) -> Role:
        with self._data_lock:
            if app_id not in self.apps:
                raise ConstraintViolation("app not found for role", {"field": "app_id"})
            existing = self.get_role(app_id, name)
            if existing:
                return existing
            role = Role(id=str(uuid.uuid4()), app_id=app_id, name=name)
            self.roles[role.id] = role
            return role

    def assign_role(
        self, user_id: str, role: Role, assigned_by: Optional[str] = None
    ) -> UserAppRole:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for role", {"field": "user_id"})
            if any(r.user_id == user_id and r.role_id == role.id for r in self.user_roles):
                raise ConstraintViolation("role already assigned", {"field": "role_id"})
            assignment = UserAppRole(
                user_id=user_id,
                role_id=role.id,
                app_id=role.app_id,
                assigned_by=assigned_by,
            )
            self.user_roles.append(assignment)
            return assignment

    def list_role_names(
        self, user_id: str, app_id: Optional[str] = None
    ) -> List[Tuple[str, str]]:
        with self._data_lock:
            results: List[Tuple[str, str]] = []
            for assignment in self.user_roles:
                if assignment.user_id != user_id:
                    continue
                if app_id is not None and assignment.app_id != app_id:
                    continue
                role = self.roles.get(assignment.role_id)
                if role:
                    results.append((role.app_id, role.name))
            return results

    # -------------------------------------------------------- refresh tokens

    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            if token.user_id not in self.users:
                raise ConstraintViolation("user not found for token", {"field": "user_id"})
            self.refresh_tokens[token.token] = token
            return token

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def revoke_refresh_token_if_active(self, token: str) -> bool:
        with self._data_lock:
            row = self.refresh_tokens.get(token)
            if row is None or row.revoked:
                return False
            row.revoked = True
            return True

    def revoke_refresh_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for row in self.refresh_tokens.values():
                if row.user_id == user_id and not row.revoked:
                    row.revoked = True
                    count += 1
            return count

    # ------------------------------------------------------ one-time secrets

    def create_one_time_secret(
        self,
        user_id: str,
        kind: SecretKind,
        secret: str,
        expires_at: datetime,
        created_at: Optional[datetime] = None,
    ) -> Tuple[OneTimeSecret, int]:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for secret", {"field": "user_id"})
            invalidated = 0
            for row in self.secrets.values():
                if row.user_id == user_id and row.kind == kind and not row.used:
                    row.used = True
                    invalidated += 1
            record = OneTimeSecret(
                id=str(uuid.uuid4()),
                user_id=user_id,
                kind=kind,
                secret=secret,
                expires_at=expires_at,
                created_at=created_at or datetime.now(timezone.utc),
            )
            self.secrets[record.id] = record
            return record, invalidated

    def get_one_time_secret(self, kind: SecretKind, secret: str) -> Optional[OneTimeSecret]:
        with self._data_lock:
            return next(
                (r for r in self.secrets.values() if r.kind == kind and r.secret == secret),
                None,
            )

    def get_latest_unused_secret(
        self, user_id: str, kind: SecretKind
    ) -> Optional[OneTimeSecret]:
        with self._data_lock:
            candidates = [
                r
                for r in self.secrets.values()
                if r.user_id == user_id and r.kind == kind and not r.used
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda r: r.created_at)

    def mark_secret_used_if_unused(self, secret_id: str) -> bool:
        with self._data_lock:
            row = self.secrets.get(secret_id)
            if row is None or row.used:
                return False
            row.used = True
            return True

    # ----------------------------------------------------------------- audit

    def append_audit_event(
        self,
        action: AuditAction,
        user_id: Optional[str],
        metadata: Dict,
        created_at: Optional[datetime] = None,
    ) -> AuditEvent:
        with self._data_lock:
            event = AuditEvent(
                id=str(uuid.uuid4()),
                action=action,
                user_id=user_id,
                metadata=dict(metadata),
                created_at=created_at or datetime.now(timezone.utc),
            )
            self.audit_events.append(event)
            return event

    def list_audit_events(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e
                for e in self.audit_events
                if (user_id is None or e.user_id == user_id)
                and (action is None or e.action == action)
            ]
            return list(reversed(events))[:limit]
