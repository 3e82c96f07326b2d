"""Pickup lifecycle: verification, rejection, payment and owner edits."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka.ai.classifier import ClassificationResult
from ekotaka.analytics.stats import refresh_after_change
from ekotaka.config import settings
from ekotaka.db.models import (
    PlasticCategory,
    Pickup,
    PickupStatus,
    PickupStatusEvent,
    utcnow,
)
from ekotaka.errors import Conflict, FieldError, NotFound, ValidationError
from ekotaka.ledger.tokens import award_pickup_tokens
from ekotaka.lifecycle.history import commit_or_conflict, compare_and_set, next_seq
from ekotaka.lifecycle.machine import PICKUP_MACHINE

logger = logging.getLogger(__name__)


async def load_pickup(db: AsyncSession, pickup_id: str) -> Pickup:
    """Load a pickup with fresh state and history, or raise NotFound."""
    result = await db.execute(
        select(Pickup)
        .where(Pickup.id == pickup_id)
        .execution_options(populate_existing=True)
    )
    pickup = result.scalar_one_or_none()
    if pickup is None:
        raise NotFound("Pickup", pickup_id)
    return pickup


async def load_owned_pickup(db: AsyncSession, pickup_id: str, collector_id: str) -> Pickup:
    """Same as load_pickup, but other collectors' pickups look missing."""
    pickup = await load_pickup(db, pickup_id)
    if pickup.collector_id != collector_id:
        raise NotFound("Pickup", pickup_id)
    return pickup


async def _append_event(
    db: AsyncSession,
    pickup_id: str,
    status: str,
    notes: Optional[str],
    changed_by: Optional[str],
):
    seq = await next_seq(db, PickupStatusEvent.seq, PickupStatusEvent.pickup_id, pickup_id)
    db.add(
        PickupStatusEvent(
            pickup_id=pickup_id,
            seq=seq,
            status=status,
            timestamp=utcnow(),
            notes=notes,
            changed_by=changed_by,
        )
    )


def _to_weight(value: Any, field: str) -> Decimal:
    try:
        weight = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError.single(field, "Weight must be a number") from e
    if not weight.is_finite():
        raise ValidationError.single(field, "Weight must be a number")
    return weight


async def verify_pickup(
    db: AsyncSession,
    pickup_id: str,
    actual_weight: Any,
    verifier_id: str,
    notes: Optional[str] = None,
    ai: Optional[ClassificationResult] = None,
    manual_review: Optional[bool] = None,
) -> Pickup:
    """
    pending -> verified.

    Records the measured weight and who verified it. Previously stored AI
    fields are kept unless a fresh classification is supplied.
    """
    weight = _to_weight(actual_weight, "actualWeight")
    if weight < 0:
        raise ValidationError.single("actualWeight", "Actual weight cannot be negative")

    pickup = await load_pickup(db, pickup_id)
    PICKUP_MACHINE.ensure(pickup.status, PickupStatus.VERIFIED.value)
    if weight < pickup.committed_weight:
        raise ValidationError.single(
            "actualWeight",
            f"Actual weight {weight} kg is below the {pickup.committed_weight} kg already ordered",
        )

    verification = dict(pickup.verification or {})
    if ai is not None:
        verification.update(
            {
                "aiConfidence": ai.confidence,
                "aiCategory": ai.detected_category,
                "aiWeight": ai.estimated_weight,
                "reasoning": ai.reasoning,
            }
        )
    now = utcnow()
    verification["verifiedBy"] = verifier_id
    verification["verifiedAt"] = now.isoformat()
    if manual_review is not None:
        verification["manualReview"] = manual_review
    else:
        verification.setdefault("manualReview", verifier_id != "system")

    await compare_and_set(
        db,
        Pickup,
        PICKUP_MACHINE,
        pickup_id,
        expected=pickup.status,
        requested=PickupStatus.VERIFIED.value,
        values={"actual_weight": weight, "verification": verification, "updated_at": now},
        conditions=(Pickup.committed_weight <= weight,),
    )
    await _append_event(db, pickup_id, PickupStatus.VERIFIED.value, notes, verifier_id)
    await commit_or_conflict(db, f"pickup {pickup_id}")
    await refresh_after_change(db, collector_ids=[pickup.collector_id])

    logger.info(f"Pickup {pickup_id} verified by {verifier_id} at {weight} kg")
    return await load_pickup(db, pickup_id)


async def reject_pickup(
    db: AsyncSession,
    pickup_id: str,
    reason: str,
    verifier_id: str,
) -> Pickup:
    """pending -> rejected, with a required reason."""
    if not reason or not reason.strip():
        raise ValidationError.single("reason", "Rejection reason is required")

    pickup = await load_pickup(db, pickup_id)
    verification = dict(pickup.verification or {})
    now = utcnow()
    verification.update(
        {
            "rejectionReason": reason.strip(),
            "verifiedBy": verifier_id,
            "verifiedAt": now.isoformat(),
        }
    )

    await compare_and_set(
        db,
        Pickup,
        PICKUP_MACHINE,
        pickup_id,
        expected=pickup.status,
        requested=PickupStatus.REJECTED.value,
        values={"verification": verification, "updated_at": now},
    )
    await _append_event(db, pickup_id, PickupStatus.REJECTED.value, reason.strip(), verifier_id)
    await commit_or_conflict(db, f"pickup {pickup_id}")
    await refresh_after_change(db, collector_ids=[pickup.collector_id])

    logger.info(f"Pickup {pickup_id} rejected by {verifier_id}: {reason.strip()}")
    return await load_pickup(db, pickup_id)


async def mark_paid(
    db: AsyncSession,
    pickup_id: str,
    transaction_id: str,
    changed_by: str = "system",
) -> dict[str, Any]:
    """
    verified -> paid, crediting EkoTokens.

    Runs inside the caller's transaction (payout settlement); the caller
    commits.
    """
    pickup = await load_pickup(db, pickup_id)
    await compare_and_set(
        db,
        Pickup,
        PICKUP_MACHINE,
        pickup_id,
        expected=pickup.status,
        requested=PickupStatus.PAID.value,
        values={"updated_at": utcnow()},
    )
    await _append_event(
        db, pickup_id, PickupStatus.PAID.value, f"Payout {transaction_id} completed", changed_by
    )
    return await award_pickup_tokens(db, pickup)


def validate_pickup_fields(
    category: Any,
    weight: Any,
    address: Any,
    weight_field: str = "weight",
) -> tuple[list[FieldError], Optional[Decimal]]:
    """Shared checks for category, weight and address. Returns errors and parsed weight."""
    errors: list[FieldError] = []
    parsed: Optional[Decimal] = None

    if not category:
        errors.append(FieldError("category", "Category is required"))
    elif category not in PlasticCategory.values():
        errors.append(
            FieldError("category", f"Category must be one of {', '.join(PlasticCategory.values())}")
        )

    if weight is None or weight == "":
        errors.append(FieldError(weight_field, "Weight is required"))
    else:
        try:
            parsed = _to_weight(weight, weight_field)
        except ValidationError as e:
            errors.extend(e.errors)
        else:
            if parsed <= 0:
                errors.append(FieldError(weight_field, "Weight must be greater than 0"))
            elif parsed > Decimal(str(settings.max_pickup_weight_kg)):
                errors.append(
                    FieldError(
                        weight_field,
                        f"Weight cannot exceed {settings.max_pickup_weight_kg:g} kg",
                    )
                )

    if address is not None and not str(address).strip():
        errors.append(FieldError("address", "Address is required"))

    return errors, parsed


async def update_pickup_details(
    db: AsyncSession,
    pickup_id: str,
    collector_id: str,
    changes: dict[str, Any],
) -> Pickup:
    """Owner edit of category, estimated weight, notes or address while pending."""
    pickup = await load_owned_pickup(db, pickup_id, collector_id)
    if pickup.status != PickupStatus.PENDING.value:
        raise Conflict(f"Pickup can only be edited while pending (currently {pickup.status})")

    values: dict[str, Any] = {}
    errors: list[FieldError] = []
    if "category" in changes or "estimatedWeight" in changes or "address" in changes:
        field_errors, weight = validate_pickup_fields(
            changes.get("category", pickup.category),
            changes.get("estimatedWeight", pickup.estimated_weight),
            changes.get("address"),
            weight_field="estimatedWeight",
        )
        errors.extend(field_errors)
        if "category" in changes:
            values["category"] = changes["category"]
        if "estimatedWeight" in changes:
            values["estimated_weight"] = weight
        if changes.get("address"):
            location = dict(pickup.location)
            location["address"] = str(changes["address"]).strip()
            values["location"] = location
    if errors:
        raise ValidationError(errors)

    if "notes" in changes:
        values["notes"] = changes["notes"]
    if not values:
        return pickup

    values["updated_at"] = utcnow()
    result = await db.execute(
        update(Pickup)
        .where(
            Pickup.id == pickup_id,
            Pickup.collector_id == collector_id,
            Pickup.status == PickupStatus.PENDING.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        raise Conflict("Pickup changed while editing, please retry")
    await db.commit()

    logger.info(f"Pickup {pickup_id} edited by owner: {sorted(values)}")
    return await load_pickup(db, pickup_id)
