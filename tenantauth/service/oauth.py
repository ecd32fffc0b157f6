from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import InvalidCredentialsError, ValidationError

logger = get_logger(__name__)


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    GITHUB = "github"
    MICROSOFT = "microsoft"


def resolve_provider(provider: OAuthProvider | str) -> OAuthProvider:
    try:
        return OAuthProvider(provider)
    except ValueError as exc:
        raise ValidationError(f"Unsupported OAuth provider: {provider}") from exc


@dataclass(frozen=True)
class ExternalIdentity:
    provider: OAuthProvider
    provider_id: str
    email: Optional[str]
    email_verified: bool = False
    name: Optional[str] = None


def _parse_google(info: Dict[str, Any]) -> ExternalIdentity:
    return ExternalIdentity(
        provider=OAuthProvider.GOOGLE,
        provider_id=str(info.get("id") or info.get("sub") or ""),
        email=info.get("email"),
        email_verified=bool(info.get("verified_email") or info.get("email_verified")),
        name=info.get("name"),
    )


def _parse_github(info: Dict[str, Any]) -> ExternalIdentity:
    return ExternalIdentity(
        provider=OAuthProvider.GITHUB,
        provider_id=str(info.get("id") or ""),
        email=info.get("email"),
        # GitHub only exposes the public email here; verification comes from /user/emails
        email_verified=False,
        name=info.get("name") or info.get("login"),
    )


def _parse_microsoft(info: Dict[str, Any]) -> ExternalIdentity:
    return ExternalIdentity(
        provider=OAuthProvider.MICROSOFT,
        provider_id=str(info.get("id") or ""),
        email=info.get("mail") or info.get("userPrincipalName"),
        email_verified=True,
        name=info.get("displayName"),
    )


@dataclass(frozen=True)
class ProviderConfig:
    token_url: str
    userinfo_url: str
    parse: Callable[[Dict[str, Any]], ExternalIdentity]
    userinfo_accept: str = "application/json"
    emails_url: Optional[str] = None


PROVIDERS: Dict[OAuthProvider, ProviderConfig] = {
    OAuthProvider.GOOGLE: ProviderConfig(
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://www.googleapis.com/oauth2/v2/userinfo",
        parse=_parse_google,
    ),
    OAuthProvider.GITHUB: ProviderConfig(
        token_url="https://github.com/login/oauth/access_token",
        userinfo_url="https://api.github.com/user",
        parse=_parse_github,
        userinfo_accept="application/vnd.github+json",
        emails_url="https://api.github.com/user/emails",
    ),
    OAuthProvider.MICROSOFT: ProviderConfig(
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        userinfo_url="https://graph.microsoft.com/v1.0/me",
        parse=_parse_microsoft,
    ),
}


class IdentityExchanger:
    """Turns an authorization code into an ExternalIdentity for any provider."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = timeout

    def credentials(self, provider: OAuthProvider) -> Tuple[Optional[str], Optional[str]]:
        prefix = f"oauth_{provider.value}"
        return (
            getattr(self.settings, f"{prefix}_client_id"),
            getattr(self.settings, f"{prefix}_client_secret"),
        )

    def is_configured(self, provider: OAuthProvider) -> bool:
        client_id, client_secret = self.credentials(provider)
        return bool(client_id and client_secret)

    async def exchange_code_for_identity(
        self,
        provider: OAuthProvider | str,
        code: str,
        redirect_uri: Optional[str] = None,
    ) -> ExternalIdentity:
        provider = resolve_provider(provider)
        client_id, client_secret = self.credentials(provider)
        if not client_id or not client_secret:
            logger.warning("oauth_not_configured", provider=provider.value)
            raise ValidationError(f"OAuth provider {provider.value} is not configured")
        callback_uri = redirect_uri or self.settings.oauth_redirect_uri
        if not callback_uri:
            raise ValidationError("No OAuth redirect URI configured")
        if not code:
            raise InvalidCredentialsError("OAuth authentication failed")

        config = PROVIDERS[provider]
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    config.token_url,
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": callback_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider.value)
                    raise InvalidCredentialsError("OAuth authentication failed")

                headers = {
                    "Authorization": f"Bearer {access_token}",
                    "Accept": config.userinfo_accept,
                }
                userinfo_response = await client.get(config.userinfo_url, headers=headers)
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    raise InvalidCredentialsError("OAuth authentication failed")
                identity = config.parse(userinfo)

                if config.emails_url and not identity.email:
                    emails_response = await client.get(config.emails_url, headers=headers)
                    if emails_response.status_code == 200:
                        primary = next(
                            (
                                e["email"]
                                for e in emails_response.json()
                                if e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            identity = ExternalIdentity(
                                provider=identity.provider,
                                provider_id=identity.provider_id,
                                email=primary,
                                email_verified=True,
                                name=identity.name,
                            )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider.value,
                status_code=exc.response.status_code,
            )
            raise InvalidCredentialsError("OAuth authentication failed") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider.value, error=str(exc))
            raise InvalidCredentialsError("OAuth authentication failed") from exc

        if not identity.provider_id or not identity.email:
            logger.error("oauth_identity_incomplete", provider=provider.value)
            raise InvalidCredentialsError("OAuth authentication failed")
        logger.info("oauth_exchange_success", provider=provider.value)
        return identity
