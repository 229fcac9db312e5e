# trademarket/ledger.py
"""Job ledger: the authoritative state machine for jobs and quotes.

Every status change is a compare-and-swap (``UPDATE ... WHERE status =
:expected``) inside a single transaction, so two callers racing on the same
job cannot both win and a failed swap rolls back everything written before
it.

    open -> assigned -> in_progress -> completed
    open | assigned -> cancelled
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import Conflict, Forbidden, InvalidState, NotFound
from .logging_config import get_logger
from .models import (
    Job,
    JobIn,
    JobLocation,
    JobStatus,
    Quote,
    QuoteIn,
    QuoteStatus,
    Role,
)
from .tables import JobRow, QuoteAllowanceRow, QuoteRow, SavedJobRow, utcnow

logger = get_logger("trademarket.ledger")

CANCELLABLE = (JobStatus.open, JobStatus.assigned)
SCHEDULABLE = (JobStatus.assigned, JobStatus.in_progress)


def month_start(now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return datetime(now.year, now.month, 1, tzinfo=timezone.utc)


# Row helpers
def _row_to_job(row: JobRow) -> Job:
    return Job(
        id=row.id,
        customer_id=row.customer_id,
        tradesperson_id=row.tradesperson_id,
        title=row.title,
        description=row.description,
        service_type=row.service_type,
        urgency=row.urgency,
        location=JobLocation(**(row.location or {})),
        budget_cents=row.budget_cents,
        status=row.status,
        accepted_quote_id=row.accepted_quote_id,
        scheduled_date=row.scheduled_date,
        review_id=row.review_id,
        cancellation_reason=row.cancellation_reason,
        cancelled_at=row.cancelled_at,
        cancelled_by=row.cancelled_by,
        completed_at=row.completed_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_quote(row: QuoteRow) -> Quote:
    return Quote(
        id=row.id,
        job_id=row.job_id,
        tradesperson_id=row.tradesperson_id,
        price_cents=row.price_cents,
        deposit_cents=row.deposit_cents,
        description=row.description or "",
        estimated_duration=row.estimated_duration,
        available_date=row.available_date,
        status=row.status,
        accepted_at=row.accepted_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _is_admin(role) -> bool:
    return getattr(role, "value", role) == Role.admin.value


class JobLedger:
    def __init__(self, sessions: async_sessionmaker[AsyncSession]):
        self._sessions = sessions

    @asynccontextmanager
    async def transaction(self, session: Optional[AsyncSession] = None):
        """Yield ``session`` as-is, or open and commit a new one."""
        if session is not None:
            yield session
            return
        async with self._sessions() as new_session:
            async with new_session.begin():
                yield new_session

    # Internal primitives
    async def _load_job(self, session: AsyncSession, job_id: str) -> JobRow:
        row = await session.get(JobRow, job_id, populate_existing=True)
        if row is None:
            raise NotFound("Job not found")
        return row

    async def _cas_job(self, session: AsyncSession, job_id: str, expected, **values) -> bool:
        """Apply ``values`` only if the job's status is still one of ``expected``."""
        values.setdefault("updated_at", utcnow())
        if isinstance(values.get("status"), JobStatus):
            values["status"] = values["status"].value
        stmt = (
            update(JobRow)
            .where(JobRow.id == job_id, JobRow.status.in_([JobStatus(s).value for s in expected]))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        if result.rowcount != 1:
            logger.warning(
                "Status race on job %s: expected one of %s",
                job_id,
                [JobStatus(s).value for s in expected],
            )
            return False
        return True

    # Jobs
    async def post_job(self, customer_id: str, details: JobIn) -> Job:
        async with self.transaction() as session:
            row = JobRow(
                customer_id=customer_id,
                title=details.title,
                description=details.description,
                service_type=details.service_type,
                urgency=details.urgency,
                location=details.location.model_dump(),
                budget_cents=details.budget_cents,
                status=JobStatus.open.value,
            )
            session.add(row)
            await session.flush()
            job = _row_to_job(row)
        logger.info("Job posted | id=%s | customer=%s", job.id, customer_id)
        return job

    async def get_job(self, job_id: str, session: Optional[AsyncSession] = None) -> Job:
        async with self.transaction(session) as s:
            return _row_to_job(await self._load_job(s, job_id))

    async def list_jobs(
        self,
        customer_id: Optional[str] = None,
        tradesperson_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        stmt = select(JobRow)
        if customer_id:
            stmt = stmt.where(JobRow.customer_id == customer_id)
        if tradesperson_id:
            stmt = stmt.where(JobRow.tradesperson_id == tradesperson_id)
        if status:
            stmt = stmt.where(JobRow.status == JobStatus(status).value)
        stmt = stmt.order_by(JobRow.created_at.desc()).limit(limit).offset(offset)
        async with self.transaction() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_row_to_job(r) for r in rows]

    async def cancel_job(self, job_id: str, acting_user_id: str, role, reason: Optional[str] = None) -> Job:
        async with self.transaction() as session:
            row = await self._load_job(session, job_id)
            if acting_user_id != row.customer_id and not _is_admin(role):
                raise Forbidden("Only the job owner or an admin can cancel this job")
            current = JobStatus(row.status)
            if current == JobStatus.cancelled:
                raise Conflict("Job is already cancelled")
            if current == JobStatus.completed:
                raise Conflict("Job is already completed")
            if current not in CANCELLABLE:
                raise InvalidState("Work has started on this job; it can no longer be cancelled")

            now = utcnow()
            swapped = await self._cas_job(
                session,
                job_id,
                (current,),
                status=JobStatus.cancelled,
                cancellation_reason=reason,
                cancelled_at=now,
                cancelled_by=acting_user_id,
                updated_at=now,
            )
            if not swapped:
                raise InvalidState("Job changed while cancelling; reload and try again")
            job = _row_to_job(await self._load_job(session, job_id))
        logger.info("Job cancelled | id=%s | by=%s | from=%s", job_id, acting_user_id, current.value)
        return job

    async def start_work(self, job_id: str, quote_id: str, session: Optional[AsyncSession] = None) -> Job:
        """assigned -> in_progress once the deposit for the accepted quote settles."""
        async with self.transaction(session) as s:
            row = await self._load_job(s, job_id)
            if row.status != JobStatus.assigned.value or row.accepted_quote_id != quote_id:
                raise InvalidState(f"Job {job_id} is {row.status}; cannot start work")
            if not await self._cas_job(s, job_id, (JobStatus.assigned,), status=JobStatus.in_progress):
                raise InvalidState(f"Job {job_id} changed before work could start")
            job = _row_to_job(await self._load_job(s, job_id))
        logger.info("Job in progress | id=%s | quote=%s", job_id, quote_id)
        return job

    async def complete_job(self, job_id: str, session: Optional[AsyncSession] = None) -> Job:
        """in_progress -> completed. Called by the payment orchestrator only."""
        async with self.transaction(session) as s:
            row = await self._load_job(s, job_id)
            if row.status != JobStatus.in_progress.value:
                raise InvalidState(f"Job {job_id} is {row.status}; only in-progress jobs can complete")
            now = utcnow()
            if not await self._cas_job(
                s, job_id, (JobStatus.in_progress,), status=JobStatus.completed, completed_at=now, updated_at=now
            ):
                raise InvalidState(f"Job {job_id} changed before it could complete")
            job = _row_to_job(await self._load_job(s, job_id))
        logger.info("Job completed | id=%s", job_id)
        return job

    async def schedule_job(self, job_id: str, scheduled_date: date) -> Job:
        async with self.transaction() as session:
            row = await self._load_job(session, job_id)
            current = JobStatus(row.status)
            if current not in SCHEDULABLE:
                raise InvalidState("Only assigned or in-progress jobs can be scheduled")
            if not await self._cas_job(session, job_id, (current,), scheduled_date=scheduled_date):
                raise InvalidState("Job changed while scheduling; reload and try again")
            return _row_to_job(await self._load_job(session, job_id))

    async def link_review(self, job_id: str, review_id: str) -> Job:
        async with self.transaction() as session:
            row = await self._load_job(session, job_id)
            if row.status != JobStatus.completed.value:
                raise InvalidState("Reviews can only be left on completed jobs")
            if row.review_id:
                raise Conflict("This job has already been reviewed")
            result = await session.execute(
                update(JobRow)
                .where(JobRow.id == job_id, JobRow.review_id.is_(None))
                .values(review_id=review_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise Conflict("This job has already been reviewed")
            return _row_to_job(await self._load_job(session, job_id))

    # Quotes
    async def submit_quote(
        self,
        job_id: str,
        tradesperson_id: str,
        terms: QuoteIn,
        *,
        monthly_limit: Optional[int] = None,
    ) -> Quote:
        """Insert a pending quote and count it against the month's allowance.

        With ``monthly_limit`` set, the quote is refused once the tradesperson
        has submitted that many this calendar month (UTC).
        """
        try:
            return await self._submit_quote(job_id, tradesperson_id, terms, monthly_limit)
        except IntegrityError:
            # Another submission created this month's allowance row first
            logger.info("Allowance row for %s created concurrently, retrying", tradesperson_id)
            return await self._submit_quote(job_id, tradesperson_id, terms, monthly_limit)

    async def _consume_quote_allowance(
        self, session: AsyncSession, tradesperson_id: str, monthly_limit: Optional[int]
    ) -> None:
        since = month_start()
        period = since.date()
        stmt = (
            update(QuoteAllowanceRow)
            .where(QuoteAllowanceRow.tradesperson_id == tradesperson_id, QuoteAllowanceRow.period == period)
            .values(used=QuoteAllowanceRow.used + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if monthly_limit is not None:
            stmt = stmt.where(QuoteAllowanceRow.used < monthly_limit)
        if (await session.execute(stmt)).rowcount == 1:
            return

        exhausted = Forbidden(
            f"The basic plan includes {monthly_limit} quotes per month; upgrade to quote on more jobs"
        )
        if await session.get(QuoteAllowanceRow, (tradesperson_id, period), populate_existing=True) is not None:
            raise exhausted

        # First quote of the month: seed from what is already on record
        used = await self.count_quotes_since(tradesperson_id, since, session=session)
        if monthly_limit is not None and used >= monthly_limit:
            raise exhausted
        session.add(QuoteAllowanceRow(tradesperson_id=tradesperson_id, period=period, used=used + 1))
        await session.flush()

    async def _submit_quote(
        self, job_id: str, tradesperson_id: str, terms: QuoteIn, monthly_limit: Optional[int]
    ) -> Quote:
        async with self.transaction() as session:
            job = await self._load_job(session, job_id)
            if job.status != JobStatus.open.value:
                raise InvalidState("This job is no longer open for quotes")

            existing = await session.execute(
                select(QuoteRow.id).where(
                    QuoteRow.job_id == job_id,
                    QuoteRow.tradesperson_id == tradesperson_id,
                    QuoteRow.status == QuoteStatus.pending.value,
                )
            )
            if existing.first() is not None:
                raise Conflict("You already have a pending quote on this job")

            # Touch the job under its open status so an acceptance racing this
            # insert either sees the new quote or makes this insert fail.
            if not await self._cas_job(session, job_id, (JobStatus.open,)):
                raise InvalidState("This job is no longer open for quotes")

            # The counter update serializes one tradesperson's submissions
            await self._consume_quote_allowance(session, tradesperson_id, monthly_limit)

            row = QuoteRow(
                job_id=job_id,
                tradesperson_id=tradesperson_id,
                price_cents=terms.price_cents,
                deposit_cents=terms.deposit_cents,
                description=terms.description,
                estimated_duration=terms.estimated_duration,
                available_date=terms.available_date,
                status=QuoteStatus.pending.value,
            )
            session.add(row)
            await session.flush()
            quote = _row_to_quote(row)
        logger.info("Quote submitted | id=%s | job=%s | tradesperson=%s", quote.id, job_id, tradesperson_id)
        return quote

    async def get_quote(self, quote_id: str, session: Optional[AsyncSession] = None) -> Quote:
        async with self.transaction(session) as s:
            row = await s.get(QuoteRow, quote_id, populate_existing=True)
            if row is None:
                raise NotFound("Quote not found")
            return _row_to_quote(row)

    async def list_quotes(self, job_id: str) -> list[Quote]:
        async with self.transaction() as session:
            rows = (
                await session.execute(
                    select(QuoteRow).where(QuoteRow.job_id == job_id).order_by(QuoteRow.created_at)
                )
            ).scalars().all()
            return [_row_to_quote(r) for r in rows]

    async def count_quotes_since(
        self, tradesperson_id: str, since: datetime, session: Optional[AsyncSession] = None
    ) -> int:
        async with self.transaction(session) as s:
            result = await s.execute(
                select(func.count(QuoteRow.id)).where(
                    QuoteRow.tradesperson_id == tradesperson_id,
                    QuoteRow.created_at >= since,
                )
            )
            return int(result.scalar_one())

    async def accept_quote(
        self,
        job_id: str,
        quote_id: str,
        acting_customer_id: str,
        *,
        admin_override: bool = False,
    ) -> Job:
        """Accept one quote, reject its pending siblings and assign the job.

        All three writes share one transaction; the job swap runs first so a
        concurrent acceptance or cancellation aborts this one cleanly.
        """
        async with self.transaction() as session:
            job = await self._load_job(session, job_id)
            if job.customer_id != acting_customer_id and not admin_override:
                raise Forbidden("You can only accept quotes for your own jobs")

            quote = await session.get(QuoteRow, quote_id, populate_existing=True)
            if quote is None or quote.job_id != job_id:
                raise NotFound("Quote not found for this job")

            if job.status == JobStatus.assigned.value:
                raise InvalidState("This job already has an accepted quote")
            if job.status != JobStatus.open.value:
                raise InvalidState("This job is no longer open for quotes")
            if quote.status != QuoteStatus.pending.value:
                raise InvalidState(f"This quote is {quote.status} and can no longer be accepted")

            now = utcnow()
            swapped = await self._cas_job(
                session,
                job_id,
                (JobStatus.open,),
                status=JobStatus.assigned,
                tradesperson_id=quote.tradesperson_id,
                accepted_quote_id=quote_id,
                updated_at=now,
            )
            if not swapped:
                raise InvalidState("This job already has an accepted quote")

            accepted = await session.execute(
                update(QuoteRow)
                .where(QuoteRow.id == quote_id, QuoteRow.status == QuoteStatus.pending.value)
                .values(status=QuoteStatus.accepted.value, accepted_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if accepted.rowcount != 1:
                raise InvalidState("This quote can no longer be accepted")

            rejected = await session.execute(
                update(QuoteRow)
                .where(
                    QuoteRow.job_id == job_id,
                    QuoteRow.id != quote_id,
                    QuoteRow.status == QuoteStatus.pending.value,
                )
                .values(status=QuoteStatus.rejected.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            result = _row_to_job(await self._load_job(session, job_id))

        logger.info(
            "Quote accepted | job=%s | quote=%s | tradesperson=%s | rejected=%s",
            job_id,
            quote_id,
            result.tradesperson_id,
            rejected.rowcount,
        )
        return result

    async def expire_stale_quotes(self, max_age: timedelta, now: Optional[datetime] = None) -> int:
        """Expire pending quotes older than ``max_age``. Returns how many changed."""
        cutoff = (now or utcnow()) - max_age
        async with self.transaction() as session:
            result = await session.execute(
                update(QuoteRow)
                .where(QuoteRow.status == QuoteStatus.pending.value, QuoteRow.created_at < cutoff)
                .values(status=QuoteStatus.expired.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            expired = result.rowcount or 0
        if expired:
            logger.info("Expired %d stale quotes (cutoff=%s)", expired, cutoff.isoformat())
        return expired

    # Saved jobs
    async def save_job(self, user_id: str, job_id: str) -> Job:
        try:
            async with self.transaction() as session:
                job = await self._load_job(session, job_id)
                existing = await session.execute(
                    select(SavedJobRow.id).where(SavedJobRow.user_id == user_id, SavedJobRow.job_id == job_id)
                )
                if existing.first() is None:
                    session.add(SavedJobRow(user_id=user_id, job_id=job_id))
                    await session.flush()
                return _row_to_job(job)
        except IntegrityError:
            # Saved concurrently by the same user
            logger.info("Job %s already saved by %s", job_id, user_id)
            return await self.get_job(job_id)

    async def list_saved_jobs(self, user_id: str) -> list[Job]:
        async with self.transaction() as session:
            rows = (
                await session.execute(
                    select(JobRow)
                    .join(SavedJobRow, SavedJobRow.job_id == JobRow.id)
                    .where(SavedJobRow.user_id == user_id)
                    .order_by(SavedJobRow.created_at.desc())
                )
            ).scalars().all()
            return [_row_to_job(r) for r in rows]
