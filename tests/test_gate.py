"""Tests for the authorization gate: rule order, admin bypass, tier limits."""

import asyncio
from datetime import date
from unittest.mock import AsyncMock

import pytest

from trademarket.errors import Forbidden, Unauthenticated
from trademarket.gate import AuthorizationGate
from trademarket.ledger import month_start
from trademarket.models import Caller, JobStatus, PaymentType, QuoteIn, QuoteStatus, Role, Tier

from .conftest import job_details


class TestRuleOrder:
    @pytest.mark.asyncio
    async def test_anonymous_caller(self, gate, ledger):
        with pytest.raises(Unauthenticated):
            await gate.post_job(None, job_details())
        with pytest.raises(Unauthenticated):
            await gate.refund(None, "pay-1")
        assert await ledger.list_jobs() == []

    @pytest.mark.asyncio
    async def test_role_checked_before_tier(self, gate, callers):
        # A basic customer fails on role, not on the pro requirement
        with pytest.raises(Forbidden, match="role"):
            await gate.save_job(callers.customer, "job-1")

    @pytest.mark.asyncio
    async def test_role_checked_before_ownership(self, gate, ledger, callers):
        job = await gate.post_job(callers.customer, job_details())
        with pytest.raises(Forbidden, match="role"):
            await gate.cancel_job(callers.pro, job.id)
        assert (await ledger.get_job(job.id)).status == JobStatus.open

    @pytest.mark.asyncio
    async def test_downstream_untouched_on_denial(self, callers):
        ledger = AsyncMock()
        orchestrator = AsyncMock()
        gate = AuthorizationGate(ledger, orchestrator)

        with pytest.raises(Forbidden):
            await gate.refund(callers.customer, "pay-1")
        with pytest.raises(Forbidden):
            await gate.submit_quote(callers.customer, "job-1", QuoteIn(price_cents=100))

        orchestrator.refund.assert_not_called()
        ledger.submit_quote.assert_not_called()


class TestRoles:
    @pytest.mark.asyncio
    async def test_tradesperson_cannot_post_jobs(self, gate, callers):
        with pytest.raises(Forbidden):
            await gate.post_job(callers.pro, job_details())

    @pytest.mark.asyncio
    async def test_customer_cannot_quote(self, gate, callers):
        job = await gate.post_job(callers.customer, job_details())
        with pytest.raises(Forbidden):
            await gate.submit_quote(callers.other_customer, job.id, QuoteIn(price_cents=100))

    @pytest.mark.asyncio
    async def test_business_owner_can_quote(self, gate, callers):
        job = await gate.post_job(callers.customer, job_details())
        quote = await gate.submit_quote(callers.business, job.id, QuoteIn(price_cents=100))
        assert quote.tradesperson_id == callers.business.user_id

    @pytest.mark.asyncio
    async def test_refund_and_maintenance_are_admin_only(self, gate, callers):
        with pytest.raises(Forbidden):
            await gate.refund(callers.pro, "pay-1")
        with pytest.raises(Forbidden):
            await gate.expire_quotes(callers.customer)
        assert await gate.expire_quotes(callers.admin) == 0


class TestTiers:
    @pytest.mark.asyncio
    async def test_saved_jobs_need_pro(self, gate, callers):
        job = await gate.post_job(callers.customer, job_details())
        with pytest.raises(Forbidden, match="pro subscription"):
            await gate.save_job(callers.basic, job.id)
        await gate.save_job(callers.pro, job.id)
        assert [j.id for j in await gate.list_saved_jobs(callers.pro)] == [job.id]

    @pytest.mark.asyncio
    async def test_lapsed_subscription_counts_as_basic(self, gate, callers):
        lapsed = Caller(
            user_id="trade-3", role=Role.tradesperson, subscription_tier=Tier.business, subscription_status="past_due"
        )
        with pytest.raises(Forbidden):
            await gate.list_saved_jobs(lapsed)

    @pytest.mark.asyncio
    async def test_admin_bypasses_tier(self, gate, callers):
        assert callers.admin.effective_tier == Tier.basic
        assert await gate.list_saved_jobs(callers.admin) == []

    @pytest.mark.asyncio
    async def test_basic_monthly_quote_limit(self, gate, callers):
        jobs = [await gate.post_job(callers.customer, job_details(f"Job {i}")) for i in range(6)]
        for job in jobs[:5]:
            await gate.submit_quote(callers.basic, job.id, QuoteIn(price_cents=100))

        with pytest.raises(Forbidden, match="5 quotes per month"):
            await gate.submit_quote(callers.basic, jobs[5].id, QuoteIn(price_cents=100))

        # Paid tiers are not limited
        for job in jobs:
            await gate.submit_quote(callers.pro, job.id, QuoteIn(price_cents=100))

    @pytest.mark.asyncio
    async def test_concurrent_quotes_respect_the_monthly_limit(self, gate, ledger, callers):
        jobs = [await gate.post_job(callers.customer, job_details(f"Job {i}")) for i in range(8)]
        for job in jobs[:4]:
            await gate.submit_quote(callers.basic, job.id, QuoteIn(price_cents=100))

        results = await asyncio.gather(
            *(gate.submit_quote(callers.basic, job.id, QuoteIn(price_cents=100)) for job in jobs[4:]),
            return_exceptions=True,
        )

        refused = [r for r in results if isinstance(r, Exception)]
        assert len(results) - len(refused) == 1
        assert len(refused) == 3
        assert all(isinstance(r, Forbidden) for r in refused)
        assert await ledger.count_quotes_since(callers.basic.user_id, month_start()) == 5

    def test_month_start(self):
        start = month_start()
        assert start.day == 1
        assert (start.hour, start.minute, start.second) == (0, 0, 0)


class TestOwnership:
    @pytest.mark.asyncio
    async def test_other_customer_cannot_accept(self, gate, ledger, callers):
        job = await gate.post_job(callers.customer, job_details())
        quote = await gate.submit_quote(callers.pro, job.id, QuoteIn(price_cents=100))
        with pytest.raises(Forbidden):
            await gate.accept_quote(callers.other_customer, job.id, quote.id)
        assert (await ledger.get_quote(quote.id)).status == QuoteStatus.pending

    @pytest.mark.asyncio
    async def test_admin_cancels_assigned_job_owned_by_someone_else(self, gate, callers, assigned_job):
        job, _, _ = await assigned_job()
        job = await gate.cancel_job(callers.admin, job.id, "policy violation")
        assert job.status == JobStatus.cancelled
        assert job.cancelled_by == callers.admin.user_id

    @pytest.mark.asyncio
    async def test_assigned_tradesperson_can_schedule(self, gate, callers, assigned_job):
        job, _, _ = await assigned_job()
        job = await gate.schedule_job(callers.pro, job.id, date(2030, 3, 1))
        assert job.scheduled_date == date(2030, 3, 1)

    @pytest.mark.asyncio
    async def test_unassigned_tradesperson_cannot_schedule(self, gate, callers, assigned_job):
        job, _, _ = await assigned_job()
        with pytest.raises(Forbidden):
            await gate.schedule_job(callers.business, job.id, date(2030, 3, 1))

    @pytest.mark.asyncio
    async def test_assigned_job_hidden_from_strangers(self, gate, callers, assigned_job):
        job, _, _ = await assigned_job()
        assert (await gate.get_job(callers.pro, job.id)).id == job.id
        with pytest.raises(Forbidden):
            await gate.get_job(callers.business, job.id)
        with pytest.raises(Forbidden):
            await gate.get_job(callers.other_customer, job.id)

    @pytest.mark.asyncio
    async def test_tradespeople_only_see_their_own_quotes(self, gate, callers):
        job = await gate.post_job(callers.customer, job_details())
        mine = await gate.submit_quote(callers.pro, job.id, QuoteIn(price_cents=100))
        await gate.submit_quote(callers.business, job.id, QuoteIn(price_cents=120))

        assert [q.id for q in await gate.list_quotes(callers.pro, job.id)] == [mine.id]
        assert len(await gate.list_quotes(callers.customer, job.id)) == 2
        assert len(await gate.list_quotes(callers.admin, job.id)) == 2

    @pytest.mark.asyncio
    async def test_list_jobs_scoped_by_role(self, gate, callers, assigned_job):
        assigned, _, _ = await assigned_job()
        open_job = await gate.post_job(callers.other_customer, job_details("Open"))

        assert [j.id for j in await gate.list_jobs(callers.customer)] == [assigned.id]
        assert [j.id for j in await gate.list_jobs(callers.pro, status=JobStatus.open)] == [open_job.id]
        assert [j.id for j in await gate.list_jobs(callers.pro)] == [assigned.id]
        assert len(await gate.list_jobs(callers.admin)) == 2

    @pytest.mark.asyncio
    async def test_only_owner_pays(self, gate, gateway, callers, assigned_job):
        job, q1, _ = await assigned_job()
        with pytest.raises(Forbidden):
            await gate.initiate_payment(callers.other_customer, job.id, q1.id, PaymentType.deposit)
        assert gateway.checkouts == []

        handle = await gate.initiate_payment(callers.customer, job.id, q1.id, PaymentType.deposit)
        assert gateway.checkouts[0]["customer_email"] == callers.customer.email
        assert handle.checkout_url

    @pytest.mark.asyncio
    async def test_review_by_owner_on_completed_job(self, gate, ledger, callers, assigned_job):
        job, q1, _ = await assigned_job()
        await ledger.start_work(job.id, q1.id)
        await ledger.complete_job(job.id)

        with pytest.raises(Forbidden):
            await gate.leave_review(callers.pro, job.id, "rev-1")
        with pytest.raises(Forbidden):
            await gate.leave_review(callers.other_customer, job.id, "rev-1")
        job = await gate.leave_review(callers.customer, job.id, "rev-1")
        assert job.review_id == "rev-1"
