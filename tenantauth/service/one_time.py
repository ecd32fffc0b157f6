from __future__ import annotations

import hmac
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.clock import Clock, SystemClock
from tenantauth.service.errors import InvalidOrExpiredError
from tenantauth.service.notifier import Notifier, TemplateKind
from tenantauth.storage.models import OneTimeSecret, SecretKind, User
from tenantauth.storage.repository import Repository

logger = get_logger(__name__)

RESET_TOKEN_BYTES = 32

_TEMPLATES = {
    SecretKind.OTP_LOGIN: TemplateKind.OTP,
    SecretKind.PASSWORD_RESET: TemplateKind.PASSWORD_RESET,
}


def generate_numeric_code(length: int) -> str:
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


@dataclass
class IssuedSecret:
    record: OneTimeSecret
    delivered: bool
    invalidated: int = 0


class OneTimeSecretManager:
    """OTP codes and password-reset tokens.

    Issuing a secret marks every earlier unused secret of the same kind for
    that user as used, so at most one is ever redeemable. Every rejection is
    reported as the same ``invalid_or_expired`` error.
    """

    def __init__(
        self,
        settings: Settings,
        store: Repository,
        notifier: Notifier,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.notifier = notifier
        self.clock = clock or SystemClock()

    def ttl_minutes(self, kind: SecretKind) -> int:
        if kind == SecretKind.OTP_LOGIN:
            return self.settings.otp_ttl_minutes
        return self.settings.password_reset_ttl_minutes

    def _generate(self, kind: SecretKind) -> str:
        if kind == SecretKind.OTP_LOGIN:
            return generate_numeric_code(self.settings.otp_length)
        return secrets.token_urlsafe(RESET_TOKEN_BYTES)

    async def request(
        self, user: User, kind: SecretKind, extra: Optional[Dict[str, Any]] = None
    ) -> IssuedSecret:
        ttl = self.ttl_minutes(kind)
        value = self._generate(kind)
        now = self.clock.now()
        record, invalidated = self.store.create_one_time_secret(
            user.id, kind, value, now + timedelta(minutes=ttl), created_at=now
        )
        data: Dict[str, Any] = {**(extra or {}), "expires_in_minutes": ttl}
        data["code" if kind == SecretKind.OTP_LOGIN else "token"] = value
        delivered = True
        try:
            await self.notifier.send(user.email, _TEMPLATES[kind], data)
        except Exception as exc:
            # The secret stays valid; only this delivery attempt failed
            delivered = False
            logger.error(
                "one_time_secret_delivery_failed",
                user_id=user.id,
                kind=kind.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
        logger.info(
            "one_time_secret_issued",
            user_id=user.id,
            kind=kind.value,
            invalidated=invalidated,
            delivered=delivered,
        )
        return IssuedSecret(record=record, delivered=delivered, invalidated=invalidated)

    def _is_redeemable(self, record: Optional[OneTimeSecret]) -> bool:
        return (
            record is not None
            and not record.used
            and self.clock.now() < record.expires_at
        )

    def _claim(self, record: Optional[OneTimeSecret]) -> OneTimeSecret:
        if not self._is_redeemable(record):
            raise InvalidOrExpiredError()
        if not self.store.mark_secret_used_if_unused(record.id):
            raise InvalidOrExpiredError()
        return record

    def _find_otp(self, user_id: str, code: str) -> Optional[OneTimeSecret]:
        record = self.store.get_latest_unused_secret(user_id, SecretKind.OTP_LOGIN)
        if record is None or not code:
            return None
        if not hmac.compare_digest(record.secret.encode(), code.strip().encode()):
            return None
        return record

    def is_valid_reset_token(self, token: str) -> bool:
        """Check a reset token without consuming it."""
        if not token:
            return False
        return self._is_redeemable(
            self.store.get_one_time_secret(SecretKind.PASSWORD_RESET, token)
        )

    def is_valid_otp(self, user_id: str, code: str) -> bool:
        return self._is_redeemable(self._find_otp(user_id, code))

    def consume_reset_token(self, token: str) -> OneTimeSecret:
        record = (
            self.store.get_one_time_secret(SecretKind.PASSWORD_RESET, token)
            if token
            else None
        )
        return self._claim(record)

    def consume_otp(self, user_id: str, code: str) -> OneTimeSecret:
        return self._claim(self._find_otp(user_id, code))
