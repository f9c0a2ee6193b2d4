"""
Sale lifecycle state machine.

    draft -> invoiced -> paid -> locked -> commission_paid
    draft/invoiced -> voided

transition_sale_status is the only code that writes Sale.status. Each write
is a conditional UPDATE asserting the status the caller expects; if another
actor moved the row first the UPDATE matches nothing and the caller gets a
ConflictError instead of overwriting.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.auth.actor import Actor
from ledgersync.errors import (
    AppError,
    ConflictError,
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from ledgersync.models import AuditAction, Sale, SaleStatus, TriggeredBy
from ledgersync.services.incidents import LifecycleRejected, flag_sale_error, record_incident
from ledgersync.utils.audit import log_action
from ledgersync.utils.dates import utcnow

logger = logging.getLogger(__name__)

TRANSITIONS: dict[SaleStatus, frozenset[SaleStatus]] = {
    SaleStatus.DRAFT: frozenset({SaleStatus.INVOICED, SaleStatus.VOIDED}),
    SaleStatus.INVOICED: frozenset({SaleStatus.PAID, SaleStatus.VOIDED}),
    SaleStatus.PAID: frozenset({SaleStatus.LOCKED}),
    SaleStatus.LOCKED: frozenset({SaleStatus.COMMISSION_PAID}),
    SaleStatus.COMMISSION_PAID: frozenset(),
    SaleStatus.VOIDED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in TRANSITIONS.items() if not targets
)

# Position along the main path; voided sits outside it
STATUS_RANK = {
    SaleStatus.DRAFT: 0,
    SaleStatus.INVOICED: 1,
    SaleStatus.PAID: 2,
    SaleStatus.LOCKED: 3,
    SaleStatus.COMMISSION_PAID: 4,
}


def is_transition_allowed(current: SaleStatus, requested: SaleStatus) -> bool:
    return requested in TRANSITIONS.get(current, frozenset())


def is_at_or_past(status: SaleStatus, target: SaleStatus) -> bool:
    """True when a sale already sits at or beyond target on the main path."""
    if status == target:
        return True
    if status not in STATUS_RANK or target not in STATUS_RANK:
        return False
    return STATUS_RANK[status] > STATUS_RANK[target]


# ── Guards ─────────────────────────────────────────────────


def _require_elevated(sale: Sale, actor: Actor) -> None:
    if not actor.is_elevated:
        raise ForbiddenError(f"{actor.role.value} may not move sale {sale.id} to this status")


def _require_elevated_or_system(sale: Sale, actor: Actor) -> None:
    if not (actor.is_elevated or actor.is_system):
        raise ForbiddenError(f"{actor.role.value} may not move sale {sale.id} to this status")


def _guard_invoiced(sale: Sale, actor: Actor) -> None:
    _require_elevated_or_system(sale, actor)
    if not sale.external_invoice_id:
        raise ValidationError(f"Sale {sale.id} has no external invoice to link")


def _guard_locked(sale: Sale, actor: Actor) -> None:
    _require_elevated(sale, actor)
    if sale.commission_locked:
        raise ValidationError(f"Sale {sale.id} commission is already locked")


def _guard_commission_paid(sale: Sale, actor: Actor) -> None:
    _require_elevated(sale, actor)
    if not sale.commission_locked:
        raise ValidationError(f"Sale {sale.id} commission must be locked before payout")
    if sale.commission_paid:
        raise ValidationError(f"Sale {sale.id} commission is already paid")


GUARDS: dict[SaleStatus, Callable[[Sale, Actor], None]] = {
    SaleStatus.INVOICED: _guard_invoiced,
    SaleStatus.PAID: _require_elevated_or_system,
    SaleStatus.LOCKED: _guard_locked,
    SaleStatus.COMMISSION_PAID: _guard_commission_paid,
    SaleStatus.VOIDED: _require_elevated_or_system,
}


def _edge_write(
    next_status: SaleStatus,
    actor: Actor,
    now: datetime,
    paid_date: Optional[datetime],
) -> tuple[dict[str, Any], list]:
    """Extra column values and extra WHERE conditions for an edge."""
    if next_status == SaleStatus.PAID:
        return {"paid_date": paid_date or now}, []
    if next_status == SaleStatus.LOCKED:
        return (
            {
                "commission_locked": True,
                "commission_locked_at": now,
                "commission_locked_by": actor.actor_id,
            },
            [Sale.commission_locked.is_(False)],
        )
    if next_status == SaleStatus.COMMISSION_PAID:
        return (
            {"commission_paid": True, "commission_paid_at": now},
            [Sale.commission_locked.is_(True), Sale.commission_paid.is_(False)],
        )
    return {}, []


async def load_sale(db: AsyncSession, sale_id: int, include_deleted: bool = False) -> Sale:
    """Read a sale bypassing the identity map, so callers see committed state."""
    query = select(Sale).where(Sale.id == sale_id)
    if not include_deleted:
        query = query.where(Sale.deleted_at.is_(None))
    sale = await db.scalar(query.execution_options(populate_existing=True))
    if not sale:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


async def transition_sale_status(
    db: AsyncSession,
    sale_id: int,
    expected_status: SaleStatus,
    next_status: SaleStatus,
    actor: Actor,
    paid_date: Optional[datetime] = None,
) -> Sale:
    """
    Move a sale from expected_status to next_status.

    Raises:
        NotFoundError: sale missing or soft-deleted
        InvalidTransitionError: edge not in the transition table
        ForbiddenError / ValidationError: edge guard failed
        ConflictError: the sale is no longer in expected_status
    """
    sale = await load_sale(db, sale_id)

    if not is_transition_allowed(expected_status, next_status):
        raise InvalidTransitionError(
            f"Cannot move sale from {expected_status.value} to {next_status.value}",
            details={"sale_id": sale_id, "allowed": sorted(s.value for s in TRANSITIONS[expected_status])},
        )

    if sale.status != expected_status:
        raise ConflictError(
            f"Sale {sale_id} is {sale.status.value}, expected {expected_status.value}",
            details={"sale_id": sale_id, "current_status": sale.status.value},
        )

    guard = GUARDS.get(next_status)
    if guard:
        guard(sale, actor)

    now = utcnow()
    values, conditions = _edge_write(next_status, actor, now, paid_date)
    result = await db.execute(
        update(Sale)
        .where(
            Sale.id == sale_id,
            Sale.status == expected_status,
            Sale.deleted_at.is_(None),
            *conditions,
        )
        .values(
            status=next_status,
            status_changed_at=now,
            status_changed_by=actor.actor_id,
            **values,
        )
        .execution_options(synchronize_session=False)
    )

    if result.rowcount == 0:
        current = await db.scalar(select(Sale.status).where(Sale.id == sale_id))
        logger.info(
            f"Sale {sale_id}: lost race moving {expected_status.value} -> "
            f"{next_status.value} (now {current.value if current else 'missing'})"
        )
        raise ConflictError(
            f"Sale {sale_id} was modified concurrently",
            details={"sale_id": sale_id, "current_status": current.value if current else None},
        )

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.TRANSITION_STATUS,
        target_type="sale",
        target_id=sale_id,
        action_metadata={"from": expected_status.value, "to": next_status.value},
    )
    logger.info(f"Sale {sale_id}: {expected_status.value} -> {next_status.value} by {actor}")

    return await load_sale(db, sale_id)


# ── Bulk operations ────────────────────────────────────────


class RowOutcome(str, Enum):
    TRANSITIONED = "transitioned"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class BulkRowResult:
    sale_id: int
    sale_reference: Optional[str]
    outcome: RowOutcome
    error: Optional[str] = None


@dataclass
class BulkTransitionResult:
    target_status: SaleStatus
    results: list[BulkRowResult] = field(default_factory=list)

    def _count(self, outcome: RowOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def total_candidates(self) -> int:
        return len(self.results)

    @property
    def total_transitioned(self) -> int:
        return self._count(RowOutcome.TRANSITIONED)

    @property
    def total_skipped(self) -> int:
        return self._count(RowOutcome.SKIPPED)

    @property
    def total_failed(self) -> int:
        return self._count(RowOutcome.FAILED)


async def _record_bulk_failure(
    db: AsyncSession,
    sale_id: int,
    from_status: Optional[SaleStatus],
    target: SaleStatus,
    operation: str,
    reason: str,
) -> None:
    await record_incident(
        db,
        LifecycleRejected(
            sale_id=sale_id,
            operation=operation,
            from_status=from_status.value if from_status else None,
            to_status=target.value,
            reason=reason,
        ),
        messages=f"{operation}: sale {sale_id} could not move to {target.value}: {reason}",
        source="lifecycle",
        triggered_by=TriggeredBy.LIFECYCLE,
        sale_id=sale_id,
    )
    await flag_sale_error(db, sale_id, f"{operation} failed: {reason}")
    await db.commit()


async def _bulk_transition(
    db: AsyncSession,
    actor: Actor,
    source: SaleStatus,
    target: SaleStatus,
    operation: str,
    sale_ids: Optional[list[int]] = None,
) -> BulkTransitionResult:
    if not actor.is_elevated:
        raise ForbiddenError(f"{operation} requires an elevated role")

    query = select(Sale.id, Sale.sale_reference, Sale.status).where(Sale.deleted_at.is_(None))
    if sale_ids is None:
        query = query.where(Sale.status == source)
    else:
        query = query.where(Sale.id.in_(sale_ids))
    candidates = (await db.execute(query.order_by(Sale.id))).all()

    summary = BulkTransitionResult(target_status=target)

    for sale_id, reference, status in candidates:
        if is_at_or_past(status, target):
            summary.results.append(BulkRowResult(sale_id, reference, RowOutcome.SKIPPED))
            continue

        try:
            await transition_sale_status(db, sale_id, source, target, actor)
            await db.commit()
            summary.results.append(BulkRowResult(sale_id, reference, RowOutcome.TRANSITIONED))
            continue
        except ConflictError as e:
            await db.rollback()
            current = await db.scalar(select(Sale.status).where(Sale.id == sale_id))
            if current is not None and is_at_or_past(current, target):
                summary.results.append(BulkRowResult(sale_id, reference, RowOutcome.SKIPPED))
                continue
            error = e.message
        except AppError as e:
            await db.rollback()
            error = e.message

        logger.error(f"{operation}: sale {sale_id} failed: {error}")
        summary.results.append(BulkRowResult(sale_id, reference, RowOutcome.FAILED, error))
        await _record_bulk_failure(db, sale_id, status, target, operation, error)

    logger.info(
        f"{operation}: {summary.total_transitioned} moved, {summary.total_skipped} skipped, "
        f"{summary.total_failed} failed of {summary.total_candidates}"
    )
    return summary


async def lock_paid_sales(
    db: AsyncSession,
    actor: Actor,
    sale_ids: Optional[list[int]] = None,
) -> BulkTransitionResult:
    """Lock commission on every paid sale (or the given ones)."""
    return await _bulk_transition(
        db, actor, SaleStatus.PAID, SaleStatus.LOCKED, "lock_paid_sales", sale_ids
    )


async def pay_commissions(
    db: AsyncSession,
    actor: Actor,
    sale_ids: Optional[list[int]] = None,
) -> BulkTransitionResult:
    """Record commission payout on every locked sale (or the given ones)."""
    return await _bulk_transition(
        db, actor, SaleStatus.LOCKED, SaleStatus.COMMISSION_PAID, "pay_commissions", sale_ids
    )
