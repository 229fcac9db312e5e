"""Tests for token verification and the Supabase-backed authority."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from jose import jwt

from trademarket.auth import verify_and_get_user_id
from trademarket.config import Settings
from trademarket.errors import Forbidden, NotFound, Unauthenticated
from trademarket.identity import SupabaseAuthority
from trademarket.models import Role, Tier

SECRET = "unit-test-jwt-secret"
ISSUER = "https://test.supabase.co/auth/v1"


@pytest.fixture
def settings():
    return Settings(supabase_url="https://test.supabase.co", supabase_jwt_secret=SECRET, supabase_anon_key="anon")


def _token(claims, secret=SECRET, algorithm="HS256"):
    return jwt.encode(claims, secret, algorithm=algorithm)


class TestVerifyToken:
    @pytest.mark.asyncio
    async def test_hs256(self, settings):
        token = _token({"sub": "auth-123", "iss": ISSUER})
        assert await verify_and_get_user_id(token, settings) == "auth-123"

    @pytest.mark.asyncio
    async def test_wrong_secret(self, settings):
        token = _token({"sub": "auth-123", "iss": ISSUER}, secret="forged")
        with pytest.raises(Unauthenticated):
            await verify_and_get_user_id(token, settings)

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, settings):
        token = _token({"sub": "auth-123", "iss": "https://evil.example.com/auth/v1"})
        with pytest.raises(Unauthenticated):
            await verify_and_get_user_id(token, settings)

    @pytest.mark.asyncio
    async def test_missing_subject(self, settings):
        token = _token({"iss": ISSUER})
        with pytest.raises(Unauthenticated, match="sub"):
            await verify_and_get_user_id(token, settings)

    @pytest.mark.asyncio
    async def test_empty_token(self, settings):
        with pytest.raises(Unauthenticated):
            await verify_and_get_user_id("", settings)

    @pytest.mark.asyncio
    async def test_opaque_token_asks_supabase(self, settings):
        with patch("trademarket.auth._fetch_user_id_from_supabase", new_callable=AsyncMock) as fetch:
            fetch.return_value = "auth-999"
            assert await verify_and_get_user_id("not-a-jwt", settings) == "auth-999"
        fetch.assert_awaited_once_with("not-a-jwt", settings)

    @pytest.mark.asyncio
    async def test_hs256_without_secret_asks_supabase(self):
        settings = Settings(supabase_url="https://test.supabase.co", supabase_jwt_secret="")
        token = _token({"sub": "auth-123", "iss": ISSUER})
        with patch("trademarket.auth._fetch_user_id_from_supabase", new_callable=AsyncMock) as fetch:
            fetch.return_value = "auth-123"
            assert await verify_and_get_user_id(token, settings) == "auth-123"


def _supabase_returning(*rows):
    sb = MagicMock()
    query = sb.table.return_value.select.return_value.eq.return_value.limit.return_value
    query.execute.return_value = MagicMock(data=list(rows))
    return sb


class TestSupabaseAuthority:
    @pytest.mark.asyncio
    async def test_resolve_maps_profile(self, settings):
        sb = _supabase_returning({
            "id": "user-1",
            "auth_user_id": "auth-1",
            "role": "tradesperson",
            "subscription_tier": "pro",
            "subscription_status": "active",
            "email": "t@example.com",
        })
        authority = SupabaseAuthority(sb, settings)
        with patch("trademarket.identity.verify_and_get_user_id", new_callable=AsyncMock) as verify:
            verify.return_value = "auth-1"
            caller = await authority.resolve("token")

        assert caller.user_id == "user-1"
        assert caller.role == Role.tradesperson
        assert caller.effective_tier == Tier.pro
        sb.table.assert_called_with("users")
        sb.table.return_value.select.return_value.eq.assert_called_with("auth_user_id", "auth-1")

    @pytest.mark.asyncio
    async def test_resolve_without_profile(self, settings):
        authority = SupabaseAuthority(_supabase_returning(), settings)
        with patch("trademarket.identity.verify_and_get_user_id", new_callable=AsyncMock) as verify:
            verify.return_value = "auth-1"
            with pytest.raises(Unauthenticated):
                await authority.resolve("token")

    @pytest.mark.asyncio
    async def test_unknown_role(self, settings):
        authority = SupabaseAuthority(_supabase_returning({"id": "user-1", "role": "superuser"}), settings)
        with patch("trademarket.identity.verify_and_get_user_id", new_callable=AsyncMock) as verify:
            verify.return_value = "auth-1"
            with pytest.raises(Forbidden):
                await authority.resolve("token")

    @pytest.mark.asyncio
    async def test_tier_for_active_subscription(self, settings):
        sb = _supabase_returning({"id": "user-1", "subscription_tier": "business", "subscription_status": "active"})
        assert await SupabaseAuthority(sb, settings).tier_for("user-1") == Tier.business

    @pytest.mark.asyncio
    async def test_tier_for_lapsed_subscription(self, settings):
        sb = _supabase_returning({"id": "user-1", "subscription_tier": "business", "subscription_status": "canceled"})
        assert await SupabaseAuthority(sb, settings).tier_for("user-1") == Tier.basic

    @pytest.mark.asyncio
    async def test_tier_for_unknown_user(self, settings):
        with pytest.raises(NotFound):
            await SupabaseAuthority(_supabase_returning(), settings).tier_for("ghost")

    @pytest.mark.asyncio
    async def test_payout_account(self, settings):
        sb = _supabase_returning({"id": "user-1", "stripe_connect_account_id": "acct_9"})
        assert await SupabaseAuthority(sb, settings).payout_account_for("user-1") == "acct_9"
