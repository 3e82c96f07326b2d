"""Transition graphs for pickups, orders and payment transactions."""

from dataclasses import dataclass
from typing import Iterable, Mapping

from ekotaka import metrics
from ekotaka.db.models import OrderStatus, PickupStatus, TransactionStatus
from ekotaka.errors import InvalidTransition


@dataclass(frozen=True)
class StateMachine:
    """A directed graph of allowed status moves with one initial state."""

    entity: str
    initial: str
    edges: Mapping[str, frozenset[str]]

    @property
    def terminal(self) -> frozenset[str]:
        states = set(self.edges) | {s for targets in self.edges.values() for s in targets}
        return frozenset(s for s in states if not self.edges.get(s))

    def can(self, current: str, requested: str) -> bool:
        return requested in self.edges.get(current, frozenset())

    def ensure(self, current: str, requested: str):
        """Raise InvalidTransition unless current -> requested is an edge."""
        if not self.can(current, requested):
            metrics.record_rejected_transition(self.entity, requested)
            raise InvalidTransition(self.entity, current, requested)

    def is_valid_walk(self, statuses: Iterable[str]) -> bool:
        """True when the sequence starts at the initial state and follows edges."""
        statuses = list(statuses)
        if not statuses or statuses[0] != self.initial:
            return False
        return all(self.can(a, b) for a, b in zip(statuses, statuses[1:]))


PICKUP_MACHINE = StateMachine(
    entity="pickup",
    initial=PickupStatus.PENDING.value,
    edges={
        PickupStatus.PENDING.value: frozenset(
            {PickupStatus.VERIFIED.value, PickupStatus.REJECTED.value}
        ),
        PickupStatus.VERIFIED.value: frozenset({PickupStatus.PAID.value}),
        PickupStatus.REJECTED.value: frozenset(),
        PickupStatus.PAID.value: frozenset(),
    },
)

ORDER_MACHINE = StateMachine(
    entity="order",
    initial=OrderStatus.PENDING.value,
    edges={
        OrderStatus.PENDING.value: frozenset(
            {OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value}
        ),
        OrderStatus.CONFIRMED.value: frozenset(
            {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value}
        ),
        OrderStatus.PROCESSING.value: frozenset({OrderStatus.SHIPPED.value}),
        OrderStatus.SHIPPED.value: frozenset({OrderStatus.DELIVERED.value}),
        OrderStatus.DELIVERED.value: frozenset(),
        OrderStatus.CANCELLED.value: frozenset(),
    },
)

_SETTLED = frozenset(
    {
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
        TransactionStatus.CANCELLED.value,
    }
)

TRANSACTION_MACHINE = StateMachine(
    entity="transaction",
    initial=TransactionStatus.PENDING.value,
    edges={
        TransactionStatus.PENDING.value: _SETTLED | {TransactionStatus.PROCESSING.value},
        TransactionStatus.PROCESSING.value: _SETTLED,
        TransactionStatus.COMPLETED.value: frozenset(),
        TransactionStatus.FAILED.value: frozenset(),
        TransactionStatus.CANCELLED.value: frozenset(),
    },
)
