# trademarket/gate.py
"""Authorization gate.

Every request handler goes through here. Checks run in a fixed order and
the first failure wins:

    1. a resolved caller                      -> Unauthenticated
    2. role allowed for the operation         -> Forbidden
    3. minimum tier (admins bypass)           -> Forbidden
    4. ownership of the targeted job (admins bypass) -> Forbidden

The ledger and orchestrator are only called once all four pass.
"""

from datetime import date, timedelta
from typing import Iterable, Optional

from .config import Settings, get_settings
from .errors import Forbidden, Unauthenticated
from .ledger import JobLedger
from .logging_config import get_logger
from .models import (
    TIER_ORDER,
    Caller,
    CheckoutHandle,
    Job,
    JobIn,
    JobStatus,
    Payment,
    PaymentType,
    Quote,
    QuoteIn,
    Role,
    Tier,
)
from .orchestrator import PaymentOrchestrator

logger = get_logger("trademarket.gate")

CUSTOMER_SIDE = frozenset({Role.customer, Role.admin})
PROVIDER_SIDE = frozenset({Role.tradesperson, Role.business_owner, Role.admin})
EVERYONE = frozenset(Role)
ADMIN_ONLY = frozenset({Role.admin})

ALLOWED_ROLES = {
    "post_job": CUSTOMER_SIDE,
    "accept_quote": CUSTOMER_SIDE,
    "cancel_job": CUSTOMER_SIDE,
    "initiate_deposit": CUSTOMER_SIDE,
    "initiate_final_payment": CUSTOMER_SIDE,
    "leave_review": CUSTOMER_SIDE,
    "submit_quote": PROVIDER_SIDE,
    "save_job": PROVIDER_SIDE,
    "list_saved_jobs": PROVIDER_SIDE,
    "schedule_job": EVERYONE,
    "get_job": EVERYONE,
    "list_jobs": EVERYONE,
    "list_quotes": EVERYONE,
    "list_payments": EVERYONE,
    "refund": ADMIN_ONLY,
    "expire_quotes": ADMIN_ONLY,
}

MIN_TIER = {
    "save_job": Tier.pro,
    "list_saved_jobs": Tier.pro,
    "schedule_job": Tier.pro,
}


class AuthorizationGate:
    def __init__(
        self,
        ledger: JobLedger,
        orchestrator: PaymentOrchestrator,
        settings: Optional[Settings] = None,
    ):
        self.ledger = ledger
        self.orchestrator = orchestrator
        self._settings = settings or get_settings()

    # Rules
    def _check(self, caller: Optional[Caller], operation: str) -> Caller:
        """Rules 1-3. Returns the caller so call sites can chain on it."""
        if caller is None:
            raise Unauthenticated("Sign in to continue")
        if caller.role not in ALLOWED_ROLES[operation]:
            logger.info("Denied %s for role %s | user=%s", operation, caller.role.value, caller.user_id)
            raise Forbidden(f"Your role ({caller.role.value}) cannot {operation.replace('_', ' ')}")
        minimum = MIN_TIER.get(operation)
        if minimum is not None and not caller.is_admin:
            if TIER_ORDER[caller.effective_tier] < TIER_ORDER[minimum]:
                raise Forbidden(f"This feature requires a {minimum.value} subscription")
        return caller

    def _require_owner(self, caller: Caller, job: Job, sides: Iterable[str] = ("customer",)) -> None:
        """Rule 4: caller is the job's customer and/or assigned tradesperson, or admin."""
        if caller.is_admin:
            return
        owners = set()
        if "customer" in sides:
            owners.add(job.customer_id)
        if "tradesperson" in sides and job.tradesperson_id:
            owners.add(job.tradesperson_id)
        if caller.user_id not in owners:
            raise Forbidden("You do not have access to this job")

    def _can_view(self, caller: Caller, job: Job) -> bool:
        return (
            caller.is_admin
            or job.status == JobStatus.open
            or caller.user_id in (job.customer_id, job.tradesperson_id)
        )

    def _quote_allowance(self, caller: Caller) -> Optional[int]:
        if caller.is_admin or caller.effective_tier != Tier.basic:
            return None
        return self._settings.basic_monthly_quote_limit

    # Jobs and quotes
    async def post_job(self, caller: Optional[Caller], details: JobIn) -> Job:
        caller = self._check(caller, "post_job")
        return await self.ledger.post_job(caller.user_id, details)

    async def get_job(self, caller: Optional[Caller], job_id: str) -> Job:
        caller = self._check(caller, "get_job")
        job = await self.ledger.get_job(job_id)
        if not self._can_view(caller, job):
            raise Forbidden("You do not have access to this job")
        return job

    async def list_jobs(
        self,
        caller: Optional[Caller],
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        caller = self._check(caller, "list_jobs")
        if caller.is_admin:
            return await self.ledger.list_jobs(status=status, limit=limit, offset=offset)
        if caller.role == Role.customer:
            return await self.ledger.list_jobs(customer_id=caller.user_id, status=status, limit=limit, offset=offset)
        # Providers browse open jobs, otherwise see the jobs they were hired for
        if status == JobStatus.open:
            return await self.ledger.list_jobs(status=status, limit=limit, offset=offset)
        return await self.ledger.list_jobs(tradesperson_id=caller.user_id, status=status, limit=limit, offset=offset)

    async def submit_quote(self, caller: Optional[Caller], job_id: str, terms: QuoteIn) -> Quote:
        caller = self._check(caller, "submit_quote")
        return await self.ledger.submit_quote(
            job_id, caller.user_id, terms, monthly_limit=self._quote_allowance(caller)
        )

    async def list_quotes(self, caller: Optional[Caller], job_id: str) -> list[Quote]:
        caller = self._check(caller, "list_quotes")
        job = await self.ledger.get_job(job_id)
        if not self._can_view(caller, job):
            raise Forbidden("You do not have access to this job")
        quotes = await self.ledger.list_quotes(job_id)
        if caller.is_admin or caller.user_id == job.customer_id:
            return quotes
        return [q for q in quotes if q.tradesperson_id == caller.user_id]

    async def accept_quote(self, caller: Optional[Caller], job_id: str, quote_id: str) -> Job:
        caller = self._check(caller, "accept_quote")
        self._require_owner(caller, await self.ledger.get_job(job_id))
        return await self.ledger.accept_quote(job_id, quote_id, caller.user_id, admin_override=caller.is_admin)

    async def cancel_job(self, caller: Optional[Caller], job_id: str, reason: Optional[str] = None) -> Job:
        caller = self._check(caller, "cancel_job")
        self._require_owner(caller, await self.ledger.get_job(job_id))
        return await self.ledger.cancel_job(job_id, caller.user_id, caller.role, reason)

    async def schedule_job(self, caller: Optional[Caller], job_id: str, scheduled_date: date) -> Job:
        caller = self._check(caller, "schedule_job")
        self._require_owner(caller, await self.ledger.get_job(job_id), sides=("customer", "tradesperson"))
        return await self.ledger.schedule_job(job_id, scheduled_date)

    async def leave_review(self, caller: Optional[Caller], job_id: str, review_id: str) -> Job:
        caller = self._check(caller, "leave_review")
        self._require_owner(caller, await self.ledger.get_job(job_id))
        return await self.ledger.link_review(job_id, review_id)

    async def save_job(self, caller: Optional[Caller], job_id: str) -> Job:
        caller = self._check(caller, "save_job")
        return await self.ledger.save_job(caller.user_id, job_id)

    async def list_saved_jobs(self, caller: Optional[Caller]) -> list[Job]:
        caller = self._check(caller, "list_saved_jobs")
        return await self.ledger.list_saved_jobs(caller.user_id)

    async def expire_quotes(self, caller: Optional[Caller]) -> int:
        self._check(caller, "expire_quotes")
        return await self.ledger.expire_stale_quotes(timedelta(days=self._settings.quote_expiry_days))

    # Payments
    async def initiate_payment(
        self,
        caller: Optional[Caller],
        job_id: str,
        quote_id: str,
        payment_type: PaymentType = PaymentType.deposit,
    ) -> CheckoutHandle:
        operation = "initiate_deposit" if payment_type == PaymentType.deposit else "initiate_final_payment"
        caller = self._check(caller, operation)
        self._require_owner(caller, await self.ledger.get_job(job_id))
        initiate = (
            self.orchestrator.initiate_deposit
            if payment_type == PaymentType.deposit
            else self.orchestrator.initiate_final_payment
        )
        return await initiate(
            job_id,
            quote_id,
            caller.user_id,
            admin_override=caller.is_admin,
            customer_email=caller.email,
        )

    async def list_payments(self, caller: Optional[Caller], job_id: str) -> list[Payment]:
        caller = self._check(caller, "list_payments")
        self._require_owner(caller, await self.ledger.get_job(job_id), sides=("customer", "tradesperson"))
        return await self.orchestrator.list_payments(job_id)

    async def refund(self, caller: Optional[Caller], payment_id: str) -> Payment:
        caller = self._check(caller, "refund")
        return await self.orchestrator.refund(payment_id, caller.user_id, caller.role)
