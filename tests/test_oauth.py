"""Tests for the OAuth code exchange, driven through httpx.MockTransport."""

import json

import httpx
import pytest

from tenantauth.service.errors import InvalidCredentialsError, ValidationError
from tenantauth.service.oauth import IdentityExchanger, OAuthProvider


@pytest.fixture
def oauth_settings(settings):
    return settings.model_copy(
        update={
            "oauth_google_client_id": "google-id",
            "oauth_google_client_secret": "google-secret",
            "oauth_github_client_id": "github-id",
            "oauth_github_client_secret": "github-secret",
            "oauth_redirect_uri": "https://app.example.com/oauth/callback",
        }
    )


def _transport(routes, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        key = (request.method, str(request.url))
        if key not in routes:
            return httpx.Response(404, json={"error": "not found"})
        status, body = routes[key]
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


GOOGLE_TOKEN = ("POST", "https://oauth2.googleapis.com/token")
GOOGLE_USER = ("GET", "https://www.googleapis.com/oauth2/v2/userinfo")
GITHUB_TOKEN = ("POST", "https://github.com/login/oauth/access_token")
GITHUB_USER = ("GET", "https://api.github.com/user")
GITHUB_EMAILS = ("GET", "https://api.github.com/user/emails")


class TestExchange:
    async def test_google_identity(self, oauth_settings):
        seen = []
        routes = {
            GOOGLE_TOKEN: (200, {"access_token": "upstream-token"}),
            GOOGLE_USER: (
                200,
                {"id": "1234", "email": "gina@example.com", "verified_email": True, "name": "Gina"},
            ),
        }
        exchanger = IdentityExchanger(oauth_settings, transport=_transport(routes, seen))

        identity = await exchanger.exchange_code_for_identity("google", "auth-code")

        assert identity.provider == OAuthProvider.GOOGLE
        assert identity.provider_id == "1234"
        assert identity.email == "gina@example.com"
        assert identity.email_verified is True
        token_request, userinfo_request = seen
        form = dict(httpx.QueryParams(token_request.content.decode()))
        assert form["code"] == "auth-code"
        assert form["redirect_uri"] == "https://app.example.com/oauth/callback"
        assert form["grant_type"] == "authorization_code"
        assert userinfo_request.headers["Authorization"] == "Bearer upstream-token"

    async def test_github_falls_back_to_primary_verified_email(self, oauth_settings):
        routes = {
            GITHUB_TOKEN: (200, {"access_token": "gh-token"}),
            GITHUB_USER: (200, {"id": 77, "login": "octo", "email": None}),
            GITHUB_EMAILS: (
                200,
                [
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "octo@example.com", "primary": True, "verified": True},
                ],
            ),
        }
        exchanger = IdentityExchanger(oauth_settings, transport=_transport(routes))

        identity = await exchanger.exchange_code_for_identity(OAuthProvider.GITHUB, "code")

        assert identity.provider_id == "77"
        assert identity.email == "octo@example.com"
        assert identity.email_verified is True
        assert identity.name == "octo"

    async def test_explicit_redirect_uri_wins(self, oauth_settings):
        seen = []
        routes = {
            GOOGLE_TOKEN: (200, {"access_token": "t"}),
            GOOGLE_USER: (200, {"id": "1", "email": "a@example.com"}),
        }
        exchanger = IdentityExchanger(oauth_settings, transport=_transport(routes, seen))

        await exchanger.exchange_code_for_identity("google", "code", "https://other/cb")

        form = dict(httpx.QueryParams(seen[0].content.decode()))
        assert form["redirect_uri"] == "https://other/cb"


class TestFailures:
    async def test_unsupported_provider(self, oauth_settings):
        exchanger = IdentityExchanger(oauth_settings)
        with pytest.raises(ValidationError):
            await exchanger.exchange_code_for_identity("myspace", "code")

    async def test_unconfigured_provider(self, oauth_settings):
        exchanger = IdentityExchanger(oauth_settings)
        assert exchanger.is_configured(OAuthProvider.MICROSOFT) is False
        with pytest.raises(ValidationError):
            await exchanger.exchange_code_for_identity("microsoft", "code")

    async def test_missing_redirect_uri(self, oauth_settings):
        exchanger = IdentityExchanger(oauth_settings.model_copy(update={"oauth_redirect_uri": None}))
        with pytest.raises(ValidationError):
            await exchanger.exchange_code_for_identity("google", "code")

    @pytest.mark.parametrize(
        "routes",
        [
            {GOOGLE_TOKEN: (400, {"error": "invalid_grant"})},
            {GOOGLE_TOKEN: (200, {"error": "bad_verification_code"})},
            {GOOGLE_TOKEN: (200, {"access_token": "t"}), GOOGLE_USER: (401, {})},
            {GOOGLE_TOKEN: (200, {"access_token": "t"}), GOOGLE_USER: (200, {"id": "1"})},
        ],
        ids=["token-http-error", "no-access-token", "userinfo-http-error", "no-email"],
    )
    async def test_upstream_failures_are_invalid_credentials(self, oauth_settings, routes):
        exchanger = IdentityExchanger(oauth_settings, transport=_transport(routes))

        with pytest.raises(InvalidCredentialsError) as excinfo:
            await exchanger.exchange_code_for_identity("google", "code")
        assert excinfo.value.message == "OAuth authentication failed"

    async def test_transport_error(self, oauth_settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        exchanger = IdentityExchanger(oauth_settings, transport=httpx.MockTransport(handler))

        with pytest.raises(InvalidCredentialsError):
            await exchanger.exchange_code_for_identity("google", "code")

    async def test_non_json_userinfo(self, oauth_settings):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(200, content=json.dumps({"access_token": "t"}))
            return httpx.Response(200, content=b"<html>oops</html>")

        exchanger = IdentityExchanger(oauth_settings, transport=httpx.MockTransport(handler))

        with pytest.raises(InvalidCredentialsError):
            await exchanger.exchange_code_for_identity("google", "code")
