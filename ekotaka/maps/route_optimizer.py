"""Collection route ordering over hotspots and pickups."""

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from ekotaka.maps.geo import haversine_m

logger = logging.getLogger(__name__)

AVERAGE_SPEED_M_PER_S = 30000 / 3600  # 30 km/h
STOP_SECONDS = 300
VALUE_PER_KG = 30.0
HIGH_VALUE = 500.0
BALANCED_VALUE_THRESHOLD = 400.0
MAX_WAYPOINTS = 25
# Nearest-neighbour bias: 5% shorter effective distance per kg, capped
WEIGHT_BIAS_PER_KG = 0.05
MAX_WEIGHT_BIAS = 0.5

STRATEGIES = ("nearest", "weighted", "balanced")


@dataclass
class Waypoint:
    id: str
    coordinates: tuple[float, float]
    address: str
    weight: float
    value: Optional[float] = None
    category: Optional[str] = None
    status: Optional[str] = None

    @property
    def estimated_value(self) -> float:
        return self.value if self.value else self.weight * VALUE_PER_KG

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "location": {"coordinates": list(self.coordinates), "address": self.address},
            "weight": self.weight,
            "value": self.estimated_value,
            "category": self.category,
            "status": self.status,
        }


def _route(origin: Sequence[float], waypoints: list[Waypoint], order: list[int]) -> dict[str, Any]:
    total_distance = 0.0
    position = origin
    for idx in order:
        total_distance += haversine_m(position, waypoints[idx].coordinates)
        position = waypoints[idx].coordinates

    ordered = [waypoints[idx] for idx in order]
    total_weight = sum(w.weight for w in ordered)
    return {
        "waypoints": [w.to_dict() for w in ordered],
        "routeOrder": order,
        "totalDistance": round(total_distance, 1),
        "totalDuration": round(
            total_distance / AVERAGE_SPEED_M_PER_S + len(order) * STOP_SECONDS, 1
        ),
        "estimatedValue": round(sum(w.estimated_value for w in ordered), 2),
        "summary": {
            "totalStops": len(order),
            "totalWeight": round(total_weight, 2),
            "averageDistance": round(total_distance / len(order), 1) if order else 0.0,
        },
    }


def _nearest_unvisited(
    position: Sequence[float], waypoints: list[Waypoint], visited: set[int], weight_bias: bool
) -> int:
    best_idx, best_score = -1, float("inf")
    for i, wp in enumerate(waypoints):
        if i in visited:
            continue
        score = haversine_m(position, wp.coordinates)
        if weight_bias:
            score *= 1 - min(MAX_WEIGHT_BIAS, wp.weight * WEIGHT_BIAS_PER_KG)
        if score < best_score:
            best_idx, best_score = i, score
    return best_idx


def nearest_neighbor(origin: Sequence[float], waypoints: list[Waypoint]) -> list[int]:
    """Greedy nearest stop first, nudged toward heavier stops."""
    visited: set[int] = set()
    order: list[int] = []
    position = origin
    while len(visited) < len(waypoints):
        idx = _nearest_unvisited(position, waypoints, visited, weight_bias=True)
        visited.add(idx)
        order.append(idx)
        position = waypoints[idx].coordinates
    return order


def weighted(origin: Sequence[float], waypoints: list[Waypoint]) -> list[int]:
    """
    Value-first ordering.

    Stops are taken in descending value-per-kg order, except that a stop
    below the high-value threshold is deferred while a more valuable one
    is within 1.5x its distance. Deferred stops are filled in nearest-first.
    """
    ranked = sorted(
        range(len(waypoints)),
        key=lambda i: waypoints[i].estimated_value / waypoints[i].weight if waypoints[i].weight else 0.0,
        reverse=True,
    )
    visited: set[int] = set()
    order: list[int] = []
    position = origin

    for idx in ranked:
        wp = waypoints[idx]
        distance = haversine_m(position, wp.coordinates)
        defer = False
        if wp.estimated_value <= HIGH_VALUE:
            for other in ranked:
                if other in visited or other == idx:
                    continue
                if waypoints[other].estimated_value > wp.estimated_value and (
                    haversine_m(position, waypoints[other].coordinates) < distance * 1.5
                ):
                    defer = True
                    break
        if not defer:
            visited.add(idx)
            order.append(idx)
            position = wp.coordinates

    while len(visited) < len(waypoints):
        idx = _nearest_unvisited(position, waypoints, visited, weight_bias=False)
        visited.add(idx)
        order.append(idx)
        position = waypoints[idx].coordinates
    return order


def optimize_route(
    origin: Sequence[float], waypoints: list[Waypoint], strategy: str = "balanced"
) -> dict[str, Any]:
    """Order up to MAX_WAYPOINTS stops from origin with the chosen strategy."""
    waypoints = waypoints[:MAX_WAYPOINTS]
    if not waypoints:
        return {**_route(origin, [], []), "strategy": strategy}

    if strategy == "balanced":
        average_value = sum(w.estimated_value for w in waypoints) / len(waypoints)
        strategy = "weighted" if average_value > BALANCED_VALUE_THRESHOLD else "nearest"

    order = weighted(origin, waypoints) if strategy == "weighted" else nearest_neighbor(origin, waypoints)
    route = _route(origin, waypoints, order)
    route["strategy"] = strategy
    logger.debug(
        f"Optimized {len(waypoints)} stops with {strategy}: {route['totalDistance'] / 1000:.2f} km"
    )
    return route
