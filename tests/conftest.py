"""Pytest configuration and fixtures."""

import json
import os
import secrets
from types import SimpleNamespace

import pytest

# Unit tests never talk to Supabase or Stripe; these only satisfy settings
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-key")
os.environ.setdefault("SUPABASE_ANON_KEY", "test-anon-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", _TEST_JWT_SECRET)
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_only")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_only")

import pytest_asyncio  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.ext.asyncio import create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from trademarket.config import Settings  # noqa: E402
from trademarket.db import get_session, init_models, make_engine, make_sessionmaker  # noqa: E402
from trademarket.deps import get_authority, get_gateway, get_ledger  # noqa: E402
from trademarket.errors import GatewayError, Unauthenticated  # noqa: E402
from trademarket.fees import FeeSchedule  # noqa: E402
from trademarket.gate import AuthorizationGate  # noqa: E402
from trademarket.gateway import (  # noqa: E402
    GatewayCheckout,
    PaymentGateway,
    WebhookSignatureError,
    normalize_event,
)
from trademarket.identity import IdentityAuthority  # noqa: E402
from trademarket.ledger import JobLedger  # noqa: E402
from trademarket.main import app  # noqa: E402
from trademarket.models import Caller, JobIn, JobLocation, QuoteIn, Role, Tier  # noqa: E402
from trademarket.orchestrator import PaymentOrchestrator  # noqa: E402
from trademarket.tables import Base  # noqa: E402


# Fakes
CUSTOMER = Caller(user_id="cust-1", role=Role.customer, email="cust-1@example.com")
OTHER_CUSTOMER = Caller(user_id="cust-2", role=Role.customer)
TRADE_PRO = Caller(
    user_id="trade-1", role=Role.tradesperson, subscription_tier=Tier.pro, subscription_status="active"
)
TRADE_BASIC = Caller(user_id="trade-2", role=Role.tradesperson)
BUSINESS_OWNER = Caller(
    user_id="biz-1", role=Role.business_owner, subscription_tier=Tier.business, subscription_status="active"
)
ADMIN = Caller(user_id="admin-1", role=Role.admin)

TOKENS = {
    "customer-token": CUSTOMER,
    "other-customer-token": OTHER_CUSTOMER,
    "trade-pro-token": TRADE_PRO,
    "trade-basic-token": TRADE_BASIC,
    "business-token": BUSINESS_OWNER,
    "admin-token": ADMIN,
}


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


class StaticAuthority(IdentityAuthority):
    """Identity provider stand-in backed by the callers above."""

    def __init__(self):
        self.tokens = dict(TOKENS)
        self.tiers = {c.user_id: c.effective_tier for c in TOKENS.values()}
        self.accounts = {c.user_id: f"acct_{c.user_id}" for c in TOKENS.values()}

    async def resolve(self, token: str) -> Caller:
        caller = self.tokens.get(token)
        if caller is None:
            raise Unauthenticated("Invalid token")
        return caller

    async def tier_for(self, user_id: str) -> Tier:
        return self.tiers.get(user_id, Tier.basic)

    async def payout_account_for(self, user_id: str):
        return self.accounts.get(user_id)


class FakeGateway(PaymentGateway):
    """Records every call; ``fail_next`` makes the next checkout raise."""

    def __init__(self):
        self.checkouts = []
        self.refunds = []
        self.fail_next = False
        self.enabled = True

    def create_checkout(self, **kwargs) -> GatewayCheckout:
        if self.fail_next:
            self.fail_next = False
            raise GatewayError("Payment provider unavailable, please try again")
        self.checkouts.append(kwargs)
        n = len(self.checkouts)
        return GatewayCheckout(session_id=f"cs_test_{n}", url=f"https://checkout.stripe.test/pay/cs_test_{n}")

    def payouts_enabled(self, account_id: str) -> bool:
        return self.enabled

    def refund(self, gateway_reference: str, idempotency_key: str) -> str:
        self.refunds.append((gateway_reference, idempotency_key))
        return f"re_test_{len(self.refunds)}"

    def parse_event(self, payload: bytes, signature):
        if signature != "valid":
            raise WebhookSignatureError("No signatures found matching the expected signature for payload")
        return normalize_event(json.loads(payload))


# Storage and services
@pytest.fixture
def callers():
    return SimpleNamespace(
        customer=CUSTOMER,
        other_customer=OTHER_CUSTOMER,
        pro=TRADE_PRO,
        basic=TRADE_BASIC,
        business=BUSINESS_OWNER,
        admin=ADMIN,
    )


@pytest_asyncio.fixture
async def sessions(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await init_models(engine)
    yield make_sessionmaker(engine)
    await engine.dispose()


@pytest.fixture
def ledger(sessions):
    return JobLedger(sessions)


@pytest.fixture
def authority():
    return StaticAuthority()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def fees():
    return FeeSchedule(basic_bps=150, pro_bps=120, business_bps=100)


@pytest.fixture
def orchestrator(ledger, gateway, authority, fees):
    return PaymentOrchestrator(ledger, gateway, authority, fees)


@pytest.fixture
def gate(ledger, orchestrator):
    return AuthorizationGate(ledger, orchestrator, Settings(basic_monthly_quote_limit=5, quote_expiry_days=30))


def job_details(title: str = "Fix leaking tap") -> JobIn:
    return JobIn(
        title=title,
        description="Kitchen mixer tap drips constantly",
        service_type="plumbing",
        urgency="soon",
        location=JobLocation(postcode="SW1A 1AA", town="London"),
        budget_cents=15000,
    )


@pytest.fixture
def assigned_job(ledger):
    """Factory: posted job with two quotes, the first (trade-1) accepted."""

    async def make(price_cents: int = 10000, deposit_cents=2500):
        job = await ledger.post_job(CUSTOMER.user_id, job_details())
        q1 = await ledger.submit_quote(
            job.id, TRADE_PRO.user_id, QuoteIn(price_cents=price_cents, deposit_cents=deposit_cents)
        )
        q2 = await ledger.submit_quote(job.id, TRADE_BASIC.user_id, QuoteIn(price_cents=price_cents + 500))
        job = await ledger.accept_quote(job.id, q1.id, CUSTOMER.user_id)
        return job, q1, q2

    return make


# HTTP
@pytest.fixture
def client(tmp_path, authority, gateway):
    """Test client wired to a fresh SQLite file, the static authority and the fake gateway."""
    db_path = tmp_path / "api.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    # Every TestClient request runs on its own event loop, so never pool connections
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    sessions = make_sessionmaker(engine)

    async def _session():
        async with sessions() as session:
            yield session

    app.dependency_overrides[get_ledger] = lambda: JobLedger(sessions)
    app.dependency_overrides[get_authority] = lambda: authority
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_session] = _session
    yield TestClient(app)
    app.dependency_overrides.clear()
