"""Append-only EkoToken ledger.

A collector's balance is never stored as a mutable counter: every entry
carries ``balance_after`` and the latest entry's value is the balance.
Entries are ordered by a per-collector ``seq`` with a unique constraint,
so two writers racing for the same slot cannot both commit.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka import metrics
from ekotaka.db.models import EkoTokenTransaction, Pickup, PickupStatus
from ekotaka.errors import Conflict, ValidationError
from ekotaka.lifecycle.history import commit_or_conflict
from ekotaka.ledger.calculator import calculate_pickup_tokens, milestones_reached, next_milestone

logger = logging.getLogger(__name__)

ENTRY_TYPES = ("earned", "redeemed", "bonus", "penalty", "expired")
ENTRY_SOURCES = ("pickup_verification", "milestone", "referral", "redemption", "bonus", "penalty")


async def _latest_entry(db: AsyncSession, collector_id: str) -> Optional[EkoTokenTransaction]:
    result = await db.execute(
        select(EkoTokenTransaction)
        .where(EkoTokenTransaction.collector_id == collector_id)
        .order_by(EkoTokenTransaction.seq.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_balance(db: AsyncSession, collector_id: str) -> int:
    latest = await _latest_entry(db, collector_id)
    return latest.balance_after if latest else 0


async def append_entry(
    db: AsyncSession,
    collector_id: str,
    amount: int,
    entry_type: str,
    source: str,
    description: str,
    pickup_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> EkoTokenTransaction:
    """
    Append one ledger entry (flushed, not committed).

    Raises:
        ValidationError: Unknown type/source, or the entry would overdraw
        Conflict: Another writer took the same sequence slot
    """
    if entry_type not in ENTRY_TYPES:
        raise ValidationError.single("type", f"Unknown token entry type {entry_type}")
    if source not in ENTRY_SOURCES:
        raise ValidationError.single("source", f"Unknown token entry source {source}")

    latest = await _latest_entry(db, collector_id)
    balance = latest.balance_after if latest else 0
    new_balance = balance + amount
    if new_balance < 0:
        raise ValidationError.single(
            "amount", f"Insufficient token balance: have {balance}, need {-amount}"
        )

    entry = EkoTokenTransaction(
        collector_id=collector_id,
        seq=(latest.seq + 1) if latest else 1,
        amount=amount,
        type=entry_type,
        source=source,
        pickup_id=pickup_id,
        description=description,
        entry_metadata=metadata,
        balance_after=new_balance,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        raise Conflict("Token ledger changed concurrently, please retry") from e

    metrics.token_entries_total.labels(source=source).inc()
    if amount > 0:
        metrics.tokens_awarded_total.labels(source=source).inc(amount)
    logger.info(
        f"Token entry #{entry.seq} for {collector_id}: {amount:+d} ({source}), balance {new_balance}"
    )
    return entry


async def count_paid_pickups(db: AsyncSession, collector_id: str) -> int:
    result = await db.execute(
        select(func.count(Pickup.id)).where(
            Pickup.collector_id == collector_id,
            Pickup.status == PickupStatus.PAID.value,
        )
    )
    return int(result.scalar_one())


async def award_pickup_tokens(db: AsyncSession, pickup: Pickup) -> dict[str, Any]:
    """
    Credit tokens for a paid pickup plus any milestone it completes.

    Runs inside the caller's transaction. A pickup is credited at most once;
    a repeat call returns the earlier amount and awards nothing.
    """
    existing = await db.execute(
        select(EkoTokenTransaction).where(
            EkoTokenTransaction.collector_id == pickup.collector_id,
            EkoTokenTransaction.pickup_id == pickup.id,
            EkoTokenTransaction.source == "pickup_verification",
        )
    )
    previous = existing.scalars().first()
    if previous is not None:
        logger.info(f"Tokens already awarded for pickup {pickup.id}; skipping")
        return {"tokensAwarded": previous.amount, "milestones": []}

    verification = pickup.verification or {}
    estimated = float(pickup.estimated_weight)
    actual = float(pickup.actual_weight) if pickup.actual_weight is not None else None
    calc = calculate_pickup_tokens(
        category=pickup.category,
        estimated_weight=estimated,
        actual_weight=actual,
        ai_confidence=verification.get("aiConfidence"),
        has_after_photo=bool((pickup.photos or {}).get("after")),
        manually_reviewed=bool(verification.get("manualReview")),
    )

    weight = actual if actual is not None else estimated
    await append_entry(
        db,
        collector_id=pickup.collector_id,
        amount=calc.total_tokens,
        entry_type="earned",
        source="pickup_verification",
        description=f"Paid pickup: {pickup.category} ({weight:.1f}kg)",
        pickup_id=pickup.id,
        metadata={
            "category": pickup.category,
            "weight": weight,
            "aiConfidence": verification.get("aiConfidence"),
            "breakdown": calc.breakdown,
        },
    )

    paid_count = await count_paid_pickups(db, pickup.collector_id)
    awarded = []
    for milestone in milestones_reached(paid_count):
        await append_entry(
            db,
            collector_id=pickup.collector_id,
            amount=milestone.tokens,
            entry_type="bonus",
            source="milestone",
            description=milestone.description,
            metadata={"milestone": milestone.key},
        )
        awarded.append({"milestone": milestone.key, "tokens": milestone.tokens})

    return {"tokensAwarded": calc.total_tokens, "milestones": awarded}


async def redeem_tokens(
    db: AsyncSession,
    collector_id: str,
    amount: int,
    reward: str,
) -> EkoTokenTransaction:
    """Debit ``amount`` tokens for a reward and commit."""
    if amount <= 0:
        raise ValidationError.single("amount", "Redemption amount must be greater than 0")
    if not reward or not reward.strip():
        raise ValidationError.single("reward", "Reward is required")

    entry = await append_entry(
        db,
        collector_id=collector_id,
        amount=-amount,
        entry_type="redeemed",
        source="redemption",
        description=f"Redeemed for {reward.strip()}",
        metadata={"reward": reward.strip()},
    )
    await commit_or_conflict(db, "token ledger")
    return entry


async def token_summary(db: AsyncSession, collector_id: str, now: datetime) -> dict[str, Any]:
    """Balance, milestone progress, monthly earnings and recent entries."""
    balance = await get_balance(db, collector_id)
    paid_count = await count_paid_pickups(db, collector_id)

    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    monthly = await db.execute(
        select(func.coalesce(func.sum(EkoTokenTransaction.amount), 0)).where(
            EkoTokenTransaction.collector_id == collector_id,
            EkoTokenTransaction.amount > 0,
            EkoTokenTransaction.created_at >= month_start,
        )
    )

    by_source = await db.execute(
        select(
            EkoTokenTransaction.source,
            func.sum(EkoTokenTransaction.amount),
            func.count(EkoTokenTransaction.id),
        )
        .where(
            EkoTokenTransaction.collector_id == collector_id,
            EkoTokenTransaction.amount > 0,
        )
        .group_by(EkoTokenTransaction.source)
    )

    recent = await db.execute(
        select(EkoTokenTransaction)
        .where(EkoTokenTransaction.collector_id == collector_id)
        .order_by(EkoTokenTransaction.seq.desc())
        .limit(10)
    )

    return {
        "balance": balance,
        "paidPickupCount": paid_count,
        "nextMilestone": next_milestone(paid_count),
        "monthlyEarned": int(monthly.scalar_one()),
        "earningsBySource": {
            source: {"total": int(total), "count": int(count)}
            for source, total, count in by_source.all()
        },
        "recentEntries": list(recent.scalars().all()),
    }


async def token_history(
    db: AsyncSession,
    collector_id: str,
    page: int = 1,
    limit: int = 20,
    entry_type: Optional[str] = None,
) -> tuple[list[EkoTokenTransaction], int]:
    """Ledger entries newest first, optionally filtered by type."""
    conditions = [EkoTokenTransaction.collector_id == collector_id]
    if entry_type and entry_type != "all":
        conditions.append(EkoTokenTransaction.type == entry_type)

    total = await db.execute(select(func.count(EkoTokenTransaction.id)).where(*conditions))
    rows = await db.execute(
        select(EkoTokenTransaction)
        .where(*conditions)
        .order_by(EkoTokenTransaction.seq.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(rows.scalars().all()), int(total.scalar_one())
