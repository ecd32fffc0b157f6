from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Set


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AppType(str, Enum):
    PUBLIC = "PUBLIC"
    CONFIDENTIAL = "CONFIDENTIAL"


class RegistrationMethod(str, Enum):
    EMAIL_PASSWORD = "EMAIL_PASSWORD"
    INVITE = "INVITE"
    OAUTH = "OAUTH"


class AuthMethod(str, Enum):
    EMAIL_PASSWORD = "email_password"
    EMAIL_OTP = "email_otp"
    GOOGLE = "google"
    GITHUB = "github"
    MICROSOFT = "microsoft"


class SecretKind(str, Enum):
    OTP_LOGIN = "OTP_LOGIN"
    PASSWORD_RESET = "PASSWORD_RESET"


class AuditAction(str, Enum):
    LOGIN = "LOGIN"
    REFRESH = "REFRESH"
    REVOKE = "REVOKE"
    ROLE_ASSIGN = "ROLE_ASSIGN"
    REGISTER = "REGISTER"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_COMPLETE = "PASSWORD_RESET_COMPLETE"
    OTP_REQUEST = "OTP_REQUEST"
    OTP_LOGIN = "OTP_LOGIN"
    OAUTH_LOGIN = "OAUTH_LOGIN"
    USER_INVITE = "USER_INVITE"
    USER_DELETE = "USER_DELETE"


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    is_email_verified: bool = False
    mfa_enabled: bool = False
    opted_in_apps: Set[str] = field(default_factory=set)
    registration_method: RegistrationMethod = RegistrationMethod.EMAIL_PASSWORD
    oauth_provider: Optional[str] = None
    oauth_provider_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def profile(self) -> Dict:
        """Public view of the account; never includes the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "is_email_verified": self.is_email_verified,
            "mfa_enabled": self.mfa_enabled,
            "opted_in_apps": sorted(self.opted_in_apps),
            "registration_method": self.registration_method.value,
            "oauth_provider": self.oauth_provider,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class App:
    id: str
    name: str
    client_id: str
    type: AppType = AppType.PUBLIC
    client_secret_hash: Optional[str] = None
    redirect_uris: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)


_METHOD_FLAGS = {
    AuthMethod.EMAIL_PASSWORD: "email_password_enabled",
    AuthMethod.EMAIL_OTP: "email_otp_enabled",
    AuthMethod.GOOGLE: "google_auth_enabled",
    AuthMethod.GITHUB: "github_auth_enabled",
    AuthMethod.MICROSOFT: "microsoft_auth_enabled",
}


@dataclass
class AppAuthSettings:
    """Per-app switches for sign-up and each sign-in method.

    An app with no stored row behaves as these defaults: password sign-in and
    registration allowed, every other method off.
    """

    app_id: str
    email_password_enabled: bool = True
    email_otp_enabled: bool = False
    google_auth_enabled: bool = False
    github_auth_enabled: bool = False
    microsoft_auth_enabled: bool = False
    require_email_verification: bool = True
    allow_registration: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def is_enabled(self, method: AuthMethod) -> bool:
        return bool(getattr(self, _METHOD_FLAGS[AuthMethod(method)]))

    def enabled_methods(self) -> List[str]:
        return [method.value for method in AuthMethod if self.is_enabled(method)]

    def to_dict(self) -> Dict:
        return {
            "app_id": self.app_id,
            "providers": {method.value: self.is_enabled(method) for method in AuthMethod},
            "allow_registration": self.allow_registration,
            "require_email_verification": self.require_email_verification,
        }


@dataclass
class Role:
    id: str
    app_id: str
    name: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class UserAppRole:
    user_id: str
    role_id: str
    app_id: str
    assigned_by: Optional[str] = None
    assigned_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshToken:
    token: str
    user_id: str
    app_id: str
    expires_at: datetime
    revoked: bool = False
    device_info: Optional[Dict] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class OneTimeSecret:
    id: str
    user_id: str
    kind: SecretKind
    secret: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class AuditEvent:
    id: str
    action: AuditAction
    user_id: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
