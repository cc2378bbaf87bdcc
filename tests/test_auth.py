# =============================================================================
# Tests for Credential Guard and OAuth Refresh
# =============================================================================

import asyncio
import json
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from conftest import StubRefresher
from hawk_sync.auth import CredentialGuard, OAuthRefresher
from hawk_sync.auth.oauth import GOOGLE_REVOKE_URL, GOOGLE_TOKEN_URL
from hawk_sync.config import OAuthConfig
from hawk_sync.core import CredentialError, OAuthCredential, Provider, utcnow


def oauth_config() -> OAuthConfig:
    return OAuthConfig(
        google_client_id="google-id",
        google_client_secret="google-secret",
        microsoft_client_id="ms-id",
        microsoft_client_secret="ms-secret",
        microsoft_tenant="contoso",
    )


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestCredentialGuard:
    """Tests for the pre-flight check."""

    @pytest.mark.asyncio
    async def test_token_expiring_in_four_minutes_is_refreshed(self, account, registry, refresher):
        guard = CredentialGuard(registry, refresher)
        account.credential.expires_at = utcnow() + timedelta(minutes=4)

        assert await guard.ensure_valid(account) is True

        assert refresher.calls == 1
        assert account.credential.access_token == "token-1"
        assert registry.saved == [(account.id, account.credential)]

    @pytest.mark.asyncio
    async def test_token_expiring_in_ten_minutes_is_kept(self, account, registry, refresher):
        guard = CredentialGuard(registry, refresher)
        account.credential.expires_at = utcnow() + timedelta(minutes=10)

        assert await guard.ensure_valid(account) is False

        assert refresher.calls == 0
        assert account.credential.access_token == "initial-token"

    @pytest.mark.asyncio
    async def test_no_expiry_means_valid(self, account, registry, refresher):
        guard = CredentialGuard(registry, refresher)
        account.credential.expires_at = None

        assert await guard.ensure_valid(account) is False
        assert guard.refresh_due_in(account.credential) is None

    @pytest.mark.asyncio
    async def test_force_refreshes_valid_token(self, account, registry, refresher):
        guard = CredentialGuard(registry, refresher)

        assert await guard.ensure_valid(account, force=True) is True
        assert refresher.calls == 1

    @pytest.mark.asyncio
    async def test_missing_refresh_token_fails_closed(self, account, registry, refresher):
        guard = CredentialGuard(registry, refresher)
        account.credential = OAuthCredential(
            access_token="old", expires_at=utcnow() - timedelta(minutes=1)
        )

        with pytest.raises(CredentialError):
            await guard.ensure_valid(account)
        assert account.credential.access_token == "old"

    @pytest.mark.asyncio
    async def test_unexpected_refresh_error_becomes_credential_error(
        self, account, registry, refresher
    ):
        guard = CredentialGuard(registry, refresher)
        refresher.error = RuntimeError("boom")

        with pytest.raises(CredentialError):
            await guard.ensure_valid(account, force=True)

    @pytest.mark.asyncio
    async def test_save_failure_keeps_new_token(self, account, registry, refresher):
        guard = CredentialGuard(registry, refresher)
        registry.fail_save = True

        assert await guard.ensure_valid(account, force=True) is True
        assert account.credential.access_token == "token-1"

    @pytest.mark.asyncio
    async def test_concurrent_checks_refresh_once(self, account, registry):
        refresher = StubRefresher()
        guard = CredentialGuard(registry, refresher)
        account.credential.expires_at = utcnow() + timedelta(minutes=1)

        results = await asyncio.gather(guard.ensure_valid(account), guard.ensure_valid(account))

        assert sorted(results) == [False, True]
        assert refresher.calls == 1

    def test_refresh_due_in(self, account, registry, refresher):
        now = utcnow()
        guard = CredentialGuard(registry, refresher, clock=lambda: now)
        account.credential.expires_at = now + timedelta(minutes=20)

        assert guard.refresh_due_in(account.credential) == pytest.approx(15 * 60)
        assert guard.is_valid(account.credential)


class TestOAuthRefresher:
    """Tests for the token endpoint calls."""

    @pytest.mark.asyncio
    async def test_google_refresh(self, account):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"access_token": "new-access", "expires_in": 1800})

        refresher = OAuthRefresher(oauth_config(), mock_client(handler))
        before = utcnow()
        credential = await refresher.refresh(account)

        assert seen["url"] == GOOGLE_TOKEN_URL
        assert seen["form"]["grant_type"] == ["refresh_token"]
        assert seen["form"]["refresh_token"] == ["refresh-token"]
        assert seen["form"]["client_id"] == ["google-id"]
        assert credential.access_token == "new-access"
        # Google doesn't rotate refresh tokens; the old one is kept
        assert credential.refresh_token == "refresh-token"
        assert before + timedelta(seconds=1790) < credential.expires_at
        assert credential.expires_at < utcnow() + timedelta(seconds=1810)

    @pytest.mark.asyncio
    async def test_microsoft_refresh_rotates_refresh_token(self, account):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={
                "access_token": "ms-access",
                "refresh_token": "ms-rotated",
            })

        account.provider = Provider.OUTLOOK
        refresher = OAuthRefresher(oauth_config(), mock_client(handler))
        credential = await refresher.refresh(account)

        assert seen["url"] == "https://login.microsoftonline.com/contoso/oauth2/v2.0/token"
        assert "IMAP.AccessAsUser.All" in seen["form"]["scope"][0]
        assert credential.refresh_token == "ms-rotated"
        # No expires_in: one hour
        assert credential.expires_at > utcnow() + timedelta(minutes=59)

    @pytest.mark.asyncio
    async def test_rejected_refresh_raises(self, account):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={
                "error": "invalid_grant",
                "error_description": "Token has been expired or revoked.",
            })

        refresher = OAuthRefresher(oauth_config(), mock_client(handler))
        with pytest.raises(CredentialError, match="invalid_grant"):
            await refresher.refresh(account)

    @pytest.mark.asyncio
    async def test_network_error_raises(self, account):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route to host")

        refresher = OAuthRefresher(oauth_config(), mock_client(handler))
        with pytest.raises(CredentialError):
            await refresher.refresh(account)

    @pytest.mark.asyncio
    async def test_response_without_access_token_raises(self, account):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=json.dumps({"token_type": "Bearer"}))

        refresher = OAuthRefresher(oauth_config(), mock_client(handler))
        with pytest.raises(CredentialError):
            await refresher.refresh(account)

    @pytest.mark.asyncio
    async def test_unconfigured_client_raises(self, account):
        refresher = OAuthRefresher(OAuthConfig(), mock_client(lambda r: httpx.Response(200)))
        with pytest.raises(CredentialError, match="not configured"):
            await refresher.refresh(account)

    @pytest.mark.asyncio
    async def test_revoke_google(self, account):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            return httpx.Response(200)

        refresher = OAuthRefresher(oauth_config(), mock_client(handler))
        assert await refresher.revoke(account) is True
        assert seen["url"] == GOOGLE_REVOKE_URL

    @pytest.mark.asyncio
    async def test_revoke_outlook_unsupported(self, account):
        account.provider = Provider.OUTLOOK
        refresher = OAuthRefresher(oauth_config(), mock_client(lambda r: httpx.Response(200)))
        assert await refresher.revoke(account) is False
