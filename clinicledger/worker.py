"""Periodic ledger maintenance jobs.

The jobs are plain functions taking a session so they can be exercised
directly; the scheduler runs them on a timer in worker threads, each inside
its own :func:`clinicledger.db.session_scope`.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from clinicledger import audit, fees
from clinicledger.commissions import affiliate, sales_rep
from clinicledger.db import session_scope
from clinicledger.db.models import Clinic
from clinicledger.time_utils import utc_now


logger = structlog.get_logger(__name__)

APPROVAL_INTERVAL = 60 * 60  # hourly
ADMIN_FEE_INTERVAL = 7 * 24 * 60 * 60  # weekly
AUDIT_VERIFY_INTERVAL = 24 * 60 * 60  # daily

# Track running background tasks so they can be cancelled on shutdown
_background_tasks: List[asyncio.Task] = []


def approve_held_commissions(session: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """Approve affiliate and sales commissions whose hold period has passed."""

    now = now or utc_now()
    counts = {
        "affiliate": affiliate.approve_pending_commissions(session, now=now),
        "sales_rep": sales_rep.approve_pending_sales_commissions(session, now=now),
    }
    logger.info("held_commissions_approved", **counts)
    return counts


def record_weekly_admin_fees(session: Session, now: Optional[datetime] = None) -> Dict[int, int]:
    """Record last week's admin fee for every active clinic.

    Returns the fee amount per clinic for which an event exists afterwards.
    """

    now = now or utc_now()
    current_start, _ = fees.week_bounds(now)
    period_start, period_end = current_start - timedelta(days=7), current_start
    recorded: Dict[int, int] = {}
    clinic_ids = session.execute(select(Clinic.id).where(Clinic.is_active.is_(True)).order_by(Clinic.id)).scalars()
    for clinic_id in clinic_ids:
        event = fees.record_admin_fee(session, clinic_id, period_start, period_end)
        if event is not None:
            recorded[clinic_id] = event.amount_cents
    logger.info(
        "weekly_admin_fees_recorded",
        period_start=period_start.isoformat(),
        period_end=period_end.isoformat(),
        clinics=len(recorded),
    )
    return recorded


def verify_audit_chains(session: Session) -> List[audit.ChainVerification]:
    """Verify every audit chain, logging broken chains at error level."""

    results = audit.verify_all_chains(session)
    broken = [result for result in results if not result.valid]
    for result in broken:
        logger.error(
            "audit_chain_broken",
            chain_id=result.chain_id,
            first_invalid_id=result.first_invalid_id,
            reason=result.reason,
        )
    logger.info("audit_chains_verified", chains=len(results), broken=len(broken))
    return results


def _in_session(job: Callable[[Session], object]) -> Callable[[], Awaitable[None]]:
    def _run() -> None:
        with session_scope() as session:
            job(session)

    async def _job() -> None:
        await asyncio.to_thread(_run)

    _job.__name__ = getattr(job, "__name__", "job")
    return _job


async def _run_periodic(interval: float, coro: Callable[[], Awaitable[None]]) -> None:
    """Run ``coro`` every ``interval`` seconds."""
    while True:
        try:
            await coro()
        except Exception:
            logger.exception("scheduled_task_failed", job=getattr(coro, "__name__", repr(coro)))
        await asyncio.sleep(interval)


def start_scheduler() -> None:
    """Start the periodic ledger jobs on the running event loop."""
    _background_tasks.extend(
        [
            asyncio.create_task(_run_periodic(APPROVAL_INTERVAL, _in_session(approve_held_commissions))),
            asyncio.create_task(_run_periodic(ADMIN_FEE_INTERVAL, _in_session(record_weekly_admin_fees))),
            asyncio.create_task(_run_periodic(AUDIT_VERIFY_INTERVAL, _in_session(verify_audit_chains))),
        ]
    )
    logger.info("scheduler_started", tasks=len(_background_tasks))


async def stop_scheduler() -> None:
    """Cancel all running background tasks."""
    for task in _background_tasks:
        task.cancel()
    await asyncio.gather(*_background_tasks, return_exceptions=True)
    _background_tasks.clear()


__all__ = [
    "APPROVAL_INTERVAL",
    "ADMIN_FEE_INTERVAL",
    "AUDIT_VERIFY_INTERVAL",
    "approve_held_commissions",
    "record_weekly_admin_fees",
    "verify_audit_chains",
    "start_scheduler",
    "stop_scheduler",
]
