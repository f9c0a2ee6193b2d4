"""
Claiming and allocating placeholder sales.

A claim is one conditional UPDATE: it only matches while the sale is still
unclaimed, so of two concurrent claimants exactly one succeeds. Assigning
the buyer's owner afterwards is a separate guarded write in its own
transaction; if it loses a race the claim stands and an incident is logged.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import contains_eager

from ledgersync.auth.actor import Actor
from ledgersync.errors import ConflictError, ForbiddenError, NotFoundError
from ledgersync.models import AuditAction, Buyer, Sale, TriggeredBy
from ledgersync.services.incidents import ClaimOwnerAssignmentSkipped, record_incident
from ledgersync.services.lifecycle import load_sale
from ledgersync.utils.audit import log_action
from ledgersync.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ClaimResult:
    sale: Sale
    owner_assigned: bool


async def _conditional_allocate(
    db: AsyncSession,
    sale_id: int,
    shopper_id: str,
    allocated_by: str,
) -> bool:
    """Set the shopper only if the sale is still an unclaimed placeholder."""
    try:
        result = await db.execute(
            update(Sale)
            .where(
                Sale.id == sale_id,
                Sale.shopper_id.is_(None),
                Sale.needs_allocation.is_(True),
                Sale.deleted_at.is_(None),
            )
            .values(
                shopper_id=shopper_id,
                needs_allocation=False,
                allocated_by=allocated_by,
                allocated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
    except IntegrityError as e:
        raise ConflictError(
            f"Sale {sale_id} duplicates an invoice that already has a canonical sale"
        ) from e
    return result.rowcount == 1


async def assign_buyer_owner_if_unowned(
    db: AsyncSession,
    buyer_id: int,
    actor: Actor,
    sale_id: int,
) -> bool:
    """
    Best-effort: make the claimant the buyer's owner if it has none.

    Commits on its own. Never raises; returns whether ownership was taken.
    """
    try:
        result = await db.execute(
            update(Buyer)
            .where(Buyer.id == buyer_id, Buyer.owner_id.is_(None))
            .values(
                owner_id=actor.actor_id,
                owner_changed_at=utcnow(),
                owner_changed_by=actor.actor_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            await log_action(
                db=db,
                actor_id=actor.actor_id,
                action=AuditAction.ASSIGN_BUYER_OWNER,
                target_type="buyer",
                target_id=buyer_id,
                action_metadata={"via_sale_id": sale_id},
            )
            await db.commit()
            return True

        current_owner = await db.scalar(select(Buyer.owner_id).where(Buyer.id == buyer_id))
        if current_owner != actor.actor_id:
            logger.warning(
                f"Sale {sale_id} claimed by {actor.actor_id} but buyer {buyer_id} "
                f"is owned by {current_owner}"
            )
            await record_incident(
                db,
                ClaimOwnerAssignmentSkipped(
                    sale_id=sale_id,
                    buyer_id=buyer_id,
                    claimant_id=actor.actor_id,
                    current_owner=current_owner,
                ),
                messages=f"Buyer {buyer_id} owner not assigned after claim of sale {sale_id}",
                source="claims",
                triggered_by=TriggeredBy.CLAIM,
                sale_id=sale_id,
            )
            await db.commit()
        return False
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"Buyer {buyer_id} owner assignment after claim of sale {sale_id} failed: {e}")
        return False


async def claim_sale(db: AsyncSession, sale_id: int, actor: Actor) -> ClaimResult:
    """
    Claim an unallocated placeholder sale for the calling actor.

    Raises:
        NotFoundError: no such sale
        ConflictError: already claimed, or lost the race to another claimant
        ForbiddenError: the buyer belongs to a different shopper
    """
    sale = await db.get(Sale, sale_id)
    if sale is None or sale.is_deleted:
        raise NotFoundError(f"Sale {sale_id} not found")
    if sale.shopper_id is not None or not sale.needs_allocation:
        raise ConflictError(f"Sale {sale_id} is already claimed")

    if sale.buyer_id is not None:
        owner_id = await db.scalar(select(Buyer.owner_id).where(Buyer.id == sale.buyer_id))
        if owner_id is not None and owner_id != actor.actor_id:
            raise ForbiddenError(f"Buyer of sale {sale_id} belongs to another shopper")

    if not await _conditional_allocate(db, sale_id, actor.actor_id, actor.actor_id):
        logger.info(f"Claim of sale {sale_id} by {actor.actor_id} lost to a concurrent claim")
        raise ConflictError(f"Sale {sale_id} was claimed by someone else")

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.CLAIM_SALE,
        target_type="sale",
        target_id=sale_id,
    )
    await db.commit()
    logger.info(f"Sale {sale_id} claimed by {actor.actor_id}")

    owner_assigned = False
    if sale.buyer_id is not None:
        owner_assigned = await assign_buyer_owner_if_unowned(db, sale.buyer_id, actor, sale_id)

    return ClaimResult(sale=await load_sale(db, sale_id), owner_assigned=owner_assigned)


async def allocate_sale(
    db: AsyncSession,
    sale_id: int,
    shopper_id: str,
    actor: Actor,
) -> Sale:
    """Assign an unallocated sale to a shopper on their behalf."""
    if not actor.is_elevated:
        raise ForbiddenError("Allocating sales requires an elevated role")

    sale = await load_sale(db, sale_id)
    if sale.shopper_id is not None or not sale.needs_allocation:
        raise ConflictError(f"Sale {sale_id} is already allocated")

    if not await _conditional_allocate(db, sale_id, shopper_id, actor.actor_id):
        raise ConflictError(f"Sale {sale_id} was allocated concurrently")

    await log_action(
        db=db,
        actor_id=actor.actor_id,
        action=AuditAction.ALLOCATE_SALE,
        target_type="sale",
        target_id=sale_id,
        action_metadata={"shopper_id": shopper_id},
    )
    logger.info(f"Sale {sale_id} allocated to {shopper_id} by {actor}")
    return await load_sale(db, sale_id)


async def list_claimable_sales(db: AsyncSession, actor: Actor) -> list[Sale]:
    """
    Unclaimed placeholders the actor may claim, newest first.

    Excludes sales whose buyer already belongs to another shopper.
    """
    result = await db.execute(
        select(Sale)
        .outerjoin(Sale.buyer)
        .options(contains_eager(Sale.buyer))
        .where(
            Sale.needs_allocation.is_(True),
            Sale.shopper_id.is_(None),
            Sale.deleted_at.is_(None),
            or_(Buyer.id.is_(None), Buyer.owner_id.is_(None), Buyer.owner_id == actor.actor_id),
        )
        .order_by(Sale.sale_date.desc().nulls_last(), Sale.id.desc())
    )
    sales = list(result.scalars().unique().all())
    logger.debug(f"{len(sales)} claimable sale(s) for {actor.actor_id}")
    return sales
