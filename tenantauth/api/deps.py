from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Header, Request, Response

from tenantauth.service.admission import AdmissionDecision
from tenantauth.service.errors import AuthenticationError, ForbiddenError
from tenantauth.service.runtime import get_runtime
from tenantauth.service.tokens import AccessClaims


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("invalid authorization header")
    return token.strip()


def caller_key(request: Request) -> str:
    """Stable identity for rate limiting; the connecting address."""
    return request.client.host if request.client else "unknown"


async def require_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    """Verify the bearer access token and return its claims."""
    return get_runtime().tokens.verify_access_token(_bearer_token(authorization))


def require_role(role_name: str) -> Callable:
    async def _dependency(claims: AccessClaims = Depends(require_claims)) -> AccessClaims:
        if role_name not in claims.roles:
            raise ForbiddenError(f"role '{role_name}' required")
        return claims

    return _dependency


async def require_superadmin(claims: AccessClaims = Depends(require_claims)) -> AccessClaims:
    # Roles are re-read so a revoked admin role takes effect before the token expires
    if not get_runtime().authz.is_superadmin(claims.sub):
        raise ForbiddenError("superadmin access required")
    return claims


def admission(policy_name: str) -> Callable:
    async def _dependency(request: Request, response: Response) -> AdmissionDecision:
        decision = await get_runtime().admission.admit(policy_name, caller_key(request))
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return decision

    return _dependency
