# trademarket/deps.py
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header
from supabase import Client, create_client

from .config import get_settings
from .db import get_sessionmaker
from .errors import Unauthenticated
from .gate import AuthorizationGate
from .gateway import PaymentGateway, StripeGateway
from .identity import IdentityAuthority, SupabaseAuthority
from .ledger import JobLedger
from .models import Caller
from .orchestrator import PaymentOrchestrator


@lru_cache
def get_supabase() -> Client:
    settings = get_settings()
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    return create_client(settings.supabase_url, settings.supabase_service_role_key)


@lru_cache
def get_authority() -> IdentityAuthority:
    return SupabaseAuthority(get_supabase(), get_settings())


@lru_cache
def get_gateway() -> PaymentGateway:
    return StripeGateway(get_settings())


def get_ledger() -> JobLedger:
    return JobLedger(get_sessionmaker())


def get_orchestrator(
    ledger: JobLedger = Depends(get_ledger),
    gateway: PaymentGateway = Depends(get_gateway),
    authority: IdentityAuthority = Depends(get_authority),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(ledger, gateway, authority)


def get_gate(
    ledger: JobLedger = Depends(get_ledger),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
) -> AuthorizationGate:
    return AuthorizationGate(ledger, orchestrator, get_settings())


async def get_caller(
    authorization: Optional[str] = Header(default=None),
    authority: IdentityAuthority = Depends(get_authority),
) -> Optional[Caller]:
    # No header at all is left to the gate, which answers Unauthenticated
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        raise Unauthenticated("Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    return await authority.resolve(token)
