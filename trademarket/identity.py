# trademarket/identity.py
"""Role & tier authority.

Resolves callers and tradesperson tiers from the identity provider's
``users`` profile table. Read-only: nothing here mutates an account, and
tiers are looked up fresh on every call so a tier change affects the next
charge and never an earlier one.
"""

import asyncio
from typing import Any, Dict, Optional

from supabase import Client

from .auth import verify_and_get_user_id
from .config import Settings
from .errors import Forbidden, NotFound, Unauthenticated
from .logging_config import get_logger
from .models import Caller, Role, Tier, as_tier

logger = get_logger("trademarket.identity")

USERS_TABLE = "users"


class IdentityAuthority:
    """Interface the gate and the orchestrator depend on."""

    async def resolve(self, token: str) -> Caller:
        raise NotImplementedError

    async def tier_for(self, user_id: str) -> Tier:
        raise NotImplementedError

    async def payout_account_for(self, user_id: str) -> Optional[str]:
        raise NotImplementedError


def _row_to_caller(row: Dict[str, Any]) -> Caller:
    try:
        role = Role(row.get("role") or "")
    except ValueError:
        raise Forbidden(f"Unsupported role: {row.get('role')!r}")
    return Caller(
        user_id=row["id"],
        role=role,
        subscription_tier=as_tier(row.get("subscription_tier")),
        subscription_status=row.get("subscription_status"),
        email=row.get("email"),
    )


class SupabaseAuthority(IdentityAuthority):
    def __init__(self, sb: Client, settings: Settings):
        self._sb = sb
        self._settings = settings

    async def _profile(self, column: str, value: str) -> Optional[Dict[str, Any]]:
        def _query():
            return self._sb.table(USERS_TABLE).select("*").eq(column, value).limit(1).execute()

        r = await asyncio.to_thread(_query)
        return r.data[0] if r.data else None

    async def resolve(self, token: str) -> Caller:
        auth_user_id = await verify_and_get_user_id(token, self._settings)
        row = await self._profile("auth_user_id", auth_user_id)
        if not row:
            raise Unauthenticated("No profile for this account")
        return _row_to_caller(row)

    async def tier_for(self, user_id: str) -> Tier:
        row = await self._profile("id", user_id)
        if not row:
            raise NotFound("Tradesperson not found")
        # Lapsed subscriptions pay the basic rate
        if row.get("subscription_status") != "active":
            return Tier.basic
        return as_tier(row.get("subscription_tier"))

    async def payout_account_for(self, user_id: str) -> Optional[str]:
        row = await self._profile("id", user_id)
        if not row:
            return None
        return row.get("stripe_connect_account_id")
