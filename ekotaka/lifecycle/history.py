"""Check-and-set status updates and audit-sequence helpers."""

import logging
from typing import Any, Optional, Type

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ekotaka import metrics
from ekotaka.db.models import Base
from ekotaka.errors import Conflict, InvalidTransition, NotFound
from ekotaka.lifecycle.machine import StateMachine

logger = logging.getLogger(__name__)


async def next_seq(db: AsyncSession, seq_column, parent_column, parent_id: Any) -> int:
    """Next sequence number for an append-only child table."""
    result = await db.execute(
        select(func.coalesce(func.max(seq_column), 0)).where(parent_column == parent_id)
    )
    return int(result.scalar_one()) + 1


async def current_status(db: AsyncSession, model: Type[Base], record_id: str) -> Optional[str]:
    result = await db.execute(select(model.status).where(model.id == record_id))
    return result.scalar_one_or_none()


async def compare_and_set(
    db: AsyncSession,
    model: Type[Base],
    machine: StateMachine,
    record_id: str,
    expected: str,
    requested: str,
    values: Optional[dict[str, Any]] = None,
    conditions: tuple = (),
) -> None:
    """
    Move a record from ``expected`` to ``requested`` in one conditional UPDATE.

    The statement only matches while the stored status still equals
    ``expected`` (plus any extra ``conditions``), so two racing callers
    cannot both succeed. Nothing is written when the edge is not in the
    machine or the row no longer matches.

    Raises:
        InvalidTransition: Edge not allowed, or the status changed underneath us
        NotFound: The record vanished
    """
    machine.ensure(expected, requested)

    stmt = (
        update(model)
        .where(model.id == record_id, model.status == expected, *conditions)
        .values(status=requested, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)

    if result.rowcount != 1:
        latest = await current_status(db, model, record_id)
        if latest is None:
            raise NotFound(machine.entity.capitalize(), record_id)
        metrics.record_rejected_transition(machine.entity, requested)
        logger.info(
            f"Lost check-and-set on {machine.entity} {record_id}: "
            f"expected {expected}, found {latest}, requested {requested}"
        )
        raise InvalidTransition(machine.entity, latest, requested)

    metrics.record_transition(machine.entity, expected, requested)


async def commit_or_conflict(db: AsyncSession, what: str):
    """Commit, turning a unique/check constraint violation into Conflict."""
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning(f"Integrity violation while saving {what}: {e.orig}")
        raise Conflict(f"Concurrent update to {what}, please retry") from e
