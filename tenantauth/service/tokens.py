from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import jwt

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.clock import Clock, SystemClock
from tenantauth.service.errors import TokenExpiredError, TokenInvalidError
from tenantauth.service.keys import KeyProvider

logger = get_logger(__name__)

ALGORITHM = "RS256"
_REQUIRED_CLAIMS = ["sub", "aud", "tid", "iss", "iat", "exp"]


@dataclass
class AccessClaims:
    """Verified access-token payload.

    ``aud`` is the client id the token was issued to and ``tid`` the app
    (tenant) id; ``roles`` are that user's role names within the app.
    """

    sub: str
    aud: str
    tid: str
    iss: str
    iat: int
    exp: int
    roles: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class TokenService:
    def __init__(
        self,
        settings: Settings,
        keys: KeyProvider,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings
        self.keys = keys
        self.clock = clock or SystemClock()

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.settings.access_token_ttl_minutes * 60

    def issue_access_token(
        self, user_id: str, client_id: str, app_id: str, roles: Sequence[str]
    ) -> str:
        issued_at = self.clock.now()
        expires_at = issued_at + timedelta(minutes=self.settings.access_token_ttl_minutes)
        payload = {
            "sub": user_id,
            "aud": client_id,
            "tid": app_id,
            "roles": list(roles),
            "iss": self.settings.jwt_issuer,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        material = self.keys.material()
        return jwt.encode(
            payload,
            material.private_key,
            algorithm=ALGORITHM,
            headers={"kid": material.kid},
        )

    def verify_access_token(
        self, token: str, *, audience: Optional[str] = None
    ) -> AccessClaims:
        """Validate signature, issuer and expiry and return the claims.

        Raises TokenExpiredError when the token is past ``exp`` and
        TokenInvalidError for anything else (bad signature, wrong algorithm,
        wrong issuer or audience, missing claims, malformed input).
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise TokenInvalidError() from exc
        # Reject algorithm confusion before touching the key
        if header.get("alg") != ALGORITHM:
            logger.warning("access_token_algorithm_rejected", alg=header.get("alg"))
            raise TokenInvalidError()
        try:
            payload = jwt.decode(
                token,
                self.keys.verification_key(),
                algorithms=[ALGORITHM],
                issuer=self.settings.jwt_issuer,
                options={
                    "require": _REQUIRED_CLAIMS,
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_aud": False,
                },
            )
        except jwt.PyJWTError as exc:
            logger.info("access_token_rejected", reason=type(exc).__name__)
            raise TokenInvalidError() from exc

        if audience is not None and payload.get("aud") != audience:
            raise TokenInvalidError()
        roles = payload.get("roles") or []
        if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
            raise TokenInvalidError()
        try:
            exp = int(payload["exp"])
            iat = int(payload["iat"])
        except (TypeError, ValueError) as exc:
            raise TokenInvalidError() from exc

        now = self.clock.now().timestamp()
        if now >= exp + self.settings.token_leeway_seconds:
            raise TokenExpiredError()

        return AccessClaims(
            sub=str(payload["sub"]),
            aud=str(payload["aud"]),
            tid=str(payload["tid"]),
            iss=str(payload["iss"]),
            iat=iat,
            exp=exp,
            roles=list(roles),
        )

    def jwks(self) -> Dict[str, List[Dict[str, Any]]]:
        return {"keys": [self.keys.public_jwk()]}
