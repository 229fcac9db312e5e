# trademarket/orchestrator.py
"""Payment orchestrator.

Charges are created in three steps:

    1. transaction: validate job/quote/payments, insert Payment(authorized)
    2. no transaction: ask the gateway for a checkout session
    3. transaction: record the checkout session on the Payment

Only ``reconcile`` (fed by the Stripe webhook) moves the job forward.
Settled deposits land as ``captured`` and settled finals as ``succeeded``.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta, timezone
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import Conflict, Forbidden, GatewayError, Internal, InvalidState, NotFound
from .fees import FeeSchedule, platform_fee
from .gateway import PaymentGateway
from .identity import IdentityAuthority
from .ledger import JobLedger
from .logging_config import get_logger
from .models import (
    SETTLED_STATUSES,
    CheckoutHandle,
    GatewayEvent,
    JobStatus,
    Payment,
    PaymentStatus,
    PaymentType,
    QuoteStatus,
    Role,
)
from .tables import JobRow, PaymentRow, ProcessedEventRow, QuoteRow, new_id, utcnow

logger = get_logger("trademarket.orchestrator")

# An authorized payment that never got a checkout URL is abandoned after this
PENDING_CHECKOUT_TIMEOUT = timedelta(minutes=10)

_SETTLED_VALUES = [s.value for s in SETTLED_STATUSES]


def build_reference(payment_type: PaymentType, job_id: str, quote_id: str, payment_id: str) -> str:
    return f"{PaymentType(payment_type).value}:{job_id}:{quote_id}:{payment_id}"


def parse_reference(reference: Optional[str]) -> Optional[Tuple[PaymentType, str, str, str]]:
    """Split a reconciliation reference, or None if it is not one of ours."""
    if not reference:
        return None
    parts = reference.split(":")
    if len(parts) != 4 or not all(parts):
        return None
    try:
        ptype = PaymentType(parts[0])
    except ValueError:
        return None
    return ptype, parts[1], parts[2], parts[3]


def active_key(job_id: str, quote_id: str, payment_type: PaymentType) -> str:
    return f"{job_id}:{quote_id}:{PaymentType(payment_type).value}"


def _row_to_payment(row: PaymentRow) -> Payment:
    return Payment(
        id=row.id,
        job_id=row.job_id,
        quote_id=row.quote_id,
        type=row.type,
        amount_cents=row.amount_cents,
        platform_fee_cents=row.platform_fee_cents,
        fee_rate_bps=row.fee_rate_bps,
        tier=row.tier,
        reference=row.reference,
        gateway_reference=row.gateway_reference,
        checkout_url=row.checkout_url,
        status=row.status,
        failure_code=row.failure_code,
        created_at=row.created_at,
        updated_at=row.updated_at,
        settled_at=row.settled_at,
        refunded_at=row.refunded_at,
    )


def _as_aware(value):
    # SQLite hands back naive datetimes even for timezone-aware columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PaymentOrchestrator:
    def __init__(
        self,
        ledger: JobLedger,
        gateway: PaymentGateway,
        authority: IdentityAuthority,
        fees: Optional[FeeSchedule] = None,
    ):
        self._ledger = ledger
        self._gateway = gateway
        self._authority = authority
        self._fees = fees or FeeSchedule.from_settings()

    # Reads
    async def get_payment(self, payment_id: str) -> Payment:
        async with self._ledger.transaction() as session:
            row = await session.get(PaymentRow, payment_id, populate_existing=True)
            if row is None:
                raise NotFound("Payment not found")
            return _row_to_payment(row)

    async def list_payments(self, job_id: str) -> list[Payment]:
        async with self._ledger.transaction() as session:
            rows = (
                await session.execute(
                    select(PaymentRow).where(PaymentRow.job_id == job_id).order_by(PaymentRow.created_at)
                )
            ).scalars().all()
            return [_row_to_payment(r) for r in rows]

    async def _settled_payment(
        self, session: AsyncSession, job_id: str, quote_id: str, payment_type: PaymentType
    ) -> Optional[PaymentRow]:
        result = await session.execute(
            select(PaymentRow).where(
                PaymentRow.job_id == job_id,
                PaymentRow.quote_id == quote_id,
                PaymentRow.type == payment_type.value,
                PaymentRow.status.in_(_SETTLED_VALUES),
            )
        )
        return result.scalars().first()

    async def _live_payment(self, session: AsyncSession, key: str) -> Optional[PaymentRow]:
        result = await session.execute(
            select(PaymentRow).where(PaymentRow.active_key == key).execution_options(populate_existing=True)
        )
        return result.scalars().first()

    # Charge initiation
    async def initiate_deposit(
        self,
        job_id: str,
        quote_id: str,
        acting_customer_id: str,
        *,
        admin_override: bool = False,
        customer_email: Optional[str] = None,
    ) -> CheckoutHandle:
        return await self._initiate(
            PaymentType.deposit, job_id, quote_id, acting_customer_id, admin_override, customer_email
        )

    async def initiate_final_payment(
        self,
        job_id: str,
        quote_id: str,
        acting_customer_id: str,
        *,
        admin_override: bool = False,
        customer_email: Optional[str] = None,
    ) -> CheckoutHandle:
        return await self._initiate(
            PaymentType.final, job_id, quote_id, acting_customer_id, admin_override, customer_email
        )

    def _check_job(self, job: JobRow, quote: Optional[QuoteRow], acting_customer_id: str, admin_override: bool):
        if job.customer_id != acting_customer_id and not admin_override:
            raise Forbidden("You can only pay for your own jobs")
        if quote is None or quote.job_id != job.id:
            raise NotFound("Quote not found for this job")
        if job.status == JobStatus.cancelled.value:
            raise InvalidState("This job has been cancelled")
        if quote.status != QuoteStatus.accepted.value or job.accepted_quote_id != quote.id:
            raise InvalidState("Only the accepted quote can be paid")

    async def _initiate(
        self,
        payment_type: PaymentType,
        job_id: str,
        quote_id: str,
        acting_customer_id: str,
        admin_override: bool,
        customer_email: Optional[str],
    ) -> CheckoutHandle:
        async with self._ledger.transaction() as session:
            job = await session.get(JobRow, job_id, populate_existing=True)
            if job is None:
                raise NotFound("Job not found")
            quote = await session.get(QuoteRow, quote_id, populate_existing=True)
            self._check_job(job, quote, acting_customer_id, admin_override)
            tradesperson_id = quote.tradesperson_id
            title = job.title

        # Network lookups stay outside any transaction
        tier = await self._authority.tier_for(tradesperson_id)
        destination = await self._authority.payout_account_for(tradesperson_id)
        if not destination:
            raise Conflict("Tradesperson is not onboarded for payouts yet")
        if not await asyncio.to_thread(self._gateway.payouts_enabled, destination):
            raise Conflict("Tradesperson's payout account is not enabled yet")

        key = active_key(job_id, quote_id, payment_type)
        try:
            async with self._ledger.transaction() as session:
                job = await session.get(JobRow, job_id, populate_existing=True)
                quote = await session.get(QuoteRow, quote_id, populate_existing=True)
                self._check_job(job, quote, acting_customer_id, admin_override)

                deposit = await self._settled_payment(session, job_id, quote_id, PaymentType.deposit)
                if payment_type == PaymentType.deposit:
                    if deposit is not None:
                        raise Conflict("The deposit for this job has already been paid")
                    if job.status != JobStatus.assigned.value:
                        raise InvalidState(f"Deposit cannot be taken while the job is {job.status}")
                    amount = quote.deposit_cents or quote.price_cents
                else:
                    if deposit is None:
                        raise InvalidState("The deposit must be paid before the final payment")
                    if await self._settled_payment(session, job_id, quote_id, PaymentType.final) is not None:
                        raise Conflict("The final payment for this job has already been paid")
                    amount = quote.price_cents - (quote.deposit_cents or quote.price_cents)
                    if amount <= 0:
                        raise InvalidState("No remaining balance for this job")
                    if job.status != JobStatus.in_progress.value:
                        raise InvalidState(f"Final payment cannot be taken while the job is {job.status}")

                live = await self._live_payment(session, key)
                if live is not None:
                    if live.checkout_url:
                        logger.info("Reusing checkout | payment=%s | job=%s", live.id, job_id)
                        return CheckoutHandle(
                            payment_id=live.id,
                            checkout_url=live.checkout_url,
                            session_id=live.gateway_reference,
                        )
                    if utcnow() - _as_aware(live.created_at) < PENDING_CHECKOUT_TIMEOUT:
                        raise Conflict("A payment for this job is already being set up; try again shortly")
                    logger.warning("Abandoning stuck payment %s for %s", live.id, key)
                    live.status = PaymentStatus.canceled.value
                    live.failure_code = "abandoned"
                    live.active_key = None
                    live.updated_at = utcnow()
                    await session.flush()

                bps = self._fees.rate_for(tier)
                fee = platform_fee(amount, tier, self._fees)
                payment_id = new_id()
                reference = build_reference(payment_type, job_id, quote_id, payment_id)
                session.add(
                    PaymentRow(
                        id=payment_id,
                        job_id=job_id,
                        quote_id=quote_id,
                        type=payment_type.value,
                        amount_cents=amount,
                        platform_fee_cents=fee,
                        fee_rate_bps=bps,
                        tier=tier.value,
                        reference=reference,
                        status=PaymentStatus.authorized.value,
                        active_key=key,
                    )
                )
                await session.flush()
        except IntegrityError:
            logger.warning("Concurrent payment initiation for %s", key)
            raise Conflict("A payment for this job is already being set up; try again shortly")

        logger.info(
            "Payment authorized | id=%s | type=%s | job=%s | amount=%d | fee=%d | tier=%s",
            payment_id, payment_type.value, job_id, amount, fee, tier.value,
        )

        try:
            checkout = await asyncio.to_thread(
                self._gateway.create_checkout,
                amount_cents=amount,
                fee_cents=fee,
                reference=reference,
                destination_account=destination,
                description=f"{payment_type.value.capitalize()} payment: {title}",
                idempotency_key=f"checkout:{payment_id}",
                customer_email=customer_email,
            )
        except GatewayError:
            async with self._ledger.transaction() as session:
                await session.execute(
                    update(PaymentRow)
                    .where(PaymentRow.id == payment_id, PaymentRow.status == PaymentStatus.authorized.value)
                    .values(
                        status=PaymentStatus.canceled.value,
                        failure_code="gateway_error",
                        active_key=None,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
            logger.error("Checkout creation failed | payment=%s | job=%s", payment_id, job_id)
            raise

        async with self._ledger.transaction() as session:
            await session.execute(
                update(PaymentRow)
                .where(PaymentRow.id == payment_id, PaymentRow.gateway_reference.is_(None))
                .values(
                    gateway_reference=checkout.session_id,
                    checkout_url=checkout.url,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
        return CheckoutHandle(payment_id=payment_id, checkout_url=checkout.url, session_id=checkout.session_id)

    # Reconciliation
    async def reconcile(self, event: GatewayEvent) -> None:
        """Apply one settlement callback. Never raises on business mismatches."""
        try:
            await self._reconcile(event)
        except IntegrityError:
            # A concurrent delivery of the same event may have won the insert
            async with self._ledger.transaction() as session:
                seen = await session.get(ProcessedEventRow, event.event_id)
            if seen is None:
                raise
            logger.info("Duplicate delivery of event %s ignored", event.event_id)

    async def _reconcile(self, event: GatewayEvent) -> None:
        async with self._ledger.transaction() as session:
            if await session.get(ProcessedEventRow, event.event_id) is not None:
                logger.info("Event %s already processed", event.event_id)
                return
            session.add(
                ProcessedEventRow(event_id=event.event_id, reference=event.reference, outcome=event.outcome)
            )
            await session.flush()

            parsed = parse_reference(event.reference)
            if parsed is None:
                logger.warning("Event %s has unknown reference %r", event.event_id, event.reference)
                return
            ptype, job_id, quote_id, payment_id = parsed

            row = await session.get(PaymentRow, payment_id, populate_existing=True)
            if row is None or row.job_id != job_id or row.quote_id != quote_id or row.type != ptype.value:
                logger.warning("Event %s references missing payment %s", event.event_id, event.reference)
                return

            if event.outcome == "succeeded":
                await self._settle(session, row, event)
            else:
                self._fail(row, event)

    async def _settle(self, session: AsyncSession, row: PaymentRow, event: GatewayEvent) -> None:
        status = PaymentStatus(row.status)
        if status in SETTLED_STATUSES:
            logger.info("Payment %s already settled", row.id)
            return
        if status == PaymentStatus.refunded:
            logger.warning("Success event %s for refunded payment %s ignored", event.event_id, row.id)
            return

        key = active_key(row.job_id, row.quote_id, PaymentType(row.type))
        now = utcnow()
        if status == PaymentStatus.canceled:
            # Late success for a payment we gave up on
            other = await self._live_payment(session, key)
            if other is not None and other.id != row.id and await self._supersede(session, other):
                other = None
            if other is not None and other.id != row.id:
                row.failure_code = "duplicate_settlement"
                row.gateway_reference = event.gateway_reference or row.gateway_reference
                row.updated_at = now
                logger.error(
                    "Duplicate settlement | payment=%s | live=%s | job=%s | needs manual refund",
                    row.id, other.id, row.job_id,
                )
                return
            logger.warning("Reviving canceled payment %s on late success", row.id)

        ptype = PaymentType(row.type)
        row.status = (PaymentStatus.captured if ptype == PaymentType.deposit else PaymentStatus.succeeded).value
        row.active_key = key
        row.failure_code = None
        row.gateway_reference = event.gateway_reference or row.gateway_reference
        row.settled_at = now
        row.updated_at = now
        await session.flush()
        logger.info("Payment settled | id=%s | type=%s | job=%s", row.id, ptype.value, row.job_id)

        job = await session.get(JobRow, row.job_id, populate_existing=True)
        quote = await session.get(QuoteRow, row.quote_id, populate_existing=True)
        try:
            if ptype == PaymentType.deposit:
                await self._ledger.start_work(row.job_id, row.quote_id, session=session)
                if quote is not None and quote.deposit_cents in (None, quote.price_cents):
                    await self._ledger.complete_job(row.job_id, session=session)
            else:
                await self._ledger.complete_job(row.job_id, session=session)
        except InvalidState as e:
            logger.warning(
                "Settled %s payment %s but job %s was %s: %s",
                ptype.value, row.id, row.job_id, job.status if job else None, e,
            )

    async def _supersede(self, session: AsyncSession, other: PaymentRow) -> bool:
        """Cancel an unpaid retry so a late success can take its place."""
        result = await session.execute(
            update(PaymentRow)
            .where(PaymentRow.id == other.id, PaymentRow.status == PaymentStatus.authorized.value)
            .values(
                status=PaymentStatus.canceled.value,
                failure_code="superseded",
                active_key=None,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        await session.refresh(other)
        logger.info("Payment superseded by late settlement | id=%s | job=%s", other.id, other.job_id)
        return True

    def _fail(self, row: PaymentRow, event: GatewayEvent) -> None:
        status = PaymentStatus(row.status)
        if status != PaymentStatus.authorized:
            # Out-of-order or repeated failure; settled payments stay settled
            logger.info("Failure event %s for %s payment %s ignored", event.event_id, status.value, row.id)
            return
        row.status = PaymentStatus.canceled.value
        row.failure_code = event.failure_code or "payment_failed"
        row.active_key = None
        row.updated_at = utcnow()
        logger.info("Payment canceled | id=%s | code=%s | job=%s", row.id, row.failure_code, row.job_id)

    # Refunds
    async def refund(self, payment_id: str, acting_admin_id: str, role) -> Payment:
        if getattr(role, "value", role) != Role.admin.value:
            raise Forbidden("Only admins can issue refunds")

        async with self._ledger.transaction() as session:
            row = await session.get(PaymentRow, payment_id, populate_existing=True)
            if row is None:
                raise NotFound("Payment not found")
            if row.status not in _SETTLED_VALUES:
                raise InvalidState(f"Payment is {row.status}; only settled payments can be refunded")
            if not row.gateway_reference:
                raise Internal("Settled payment has no gateway reference")
            gateway_reference = row.gateway_reference

        refund_id = await asyncio.to_thread(self._gateway.refund, gateway_reference, f"refund:{payment_id}")

        async with self._ledger.transaction() as session:
            now = utcnow()
            result = await session.execute(
                update(PaymentRow)
                .where(PaymentRow.id == payment_id, PaymentRow.status.in_(_SETTLED_VALUES))
                .values(status=PaymentStatus.refunded.value, active_key=None, refunded_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise Conflict("Payment was refunded concurrently")
            row = await session.get(PaymentRow, payment_id, populate_existing=True)
            payment = _row_to_payment(row)

        logger.info("Payment refunded | id=%s | refund=%s | by=%s", payment_id, refund_id, acting_admin_id)
        return payment
