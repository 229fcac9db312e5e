# trademarket/jobs.py
from typing import Optional

from fastapi import APIRouter, Depends, Query

from .deps import get_caller, get_gate
from .gate import AuthorizationGate
from .models import (
    CancelIn,
    Caller,
    Job,
    JobIn,
    JobStatus,
    Quote,
    QuoteIn,
    ReviewIn,
    SaveJobIn,
    ScheduleIn,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.get("", response_model=list[Job])
async def list_jobs(
    status: JobStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.list_jobs(caller, status=status, limit=limit, offset=offset)


@router.post("", response_model=Job, status_code=201)
async def create_job(
    payload: JobIn,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.post_job(caller, payload)


# Saved jobs (declared before /{job_id} so "saved" is not taken as an id)
@router.get("/saved", response_model=list[Job])
async def list_saved_jobs(
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.list_saved_jobs(caller)


@router.post("/saved", response_model=Job, status_code=201)
async def save_job(
    payload: SaveJobIn,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.save_job(caller, payload.job_id)


@router.get("/{job_id}", response_model=Job)
async def get_job(
    job_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.get_job(caller, job_id)


# Quotes
@router.post("/{job_id}/quotes", response_model=Quote, status_code=201)
async def submit_quote(
    job_id: str,
    payload: QuoteIn,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.submit_quote(caller, job_id, payload)


@router.get("/{job_id}/quotes", response_model=list[Quote])
async def list_quotes(
    job_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.list_quotes(caller, job_id)


@router.post("/{job_id}/quotes/{quote_id}/accept", response_model=Job)
async def accept_quote(
    job_id: str,
    quote_id: str,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.accept_quote(caller, job_id, quote_id)


# Lifecycle
@router.post("/{job_id}/cancel", response_model=Job)
async def cancel_job(
    job_id: str,
    payload: Optional[CancelIn] = None,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    reason = payload.reason if payload else None
    return await gate.cancel_job(caller, job_id, reason)


@router.post("/{job_id}/schedule", response_model=Job)
async def schedule_job(
    job_id: str,
    payload: ScheduleIn,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.schedule_job(caller, job_id, payload.scheduled_date)


@router.post("/{job_id}/review", response_model=Job)
async def leave_review(
    job_id: str,
    payload: ReviewIn,
    caller: Optional[Caller] = Depends(get_caller),
    gate: AuthorizationGate = Depends(get_gate),
):
    return await gate.leave_review(caller, job_id, payload.review_id)
