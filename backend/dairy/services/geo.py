# Overview: Great-circle distances and the nearest-neighbour stop ordering heuristic.

from __future__ import annotations

import math
from typing import Callable, Sequence, TypeVar


EARTH_RADIUS_KM = 6371.0

T = TypeVar("T")


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def nearest_neighbour(
    origin: tuple[float, float],
    items: Sequence[T],
    coords: Callable[[T], tuple[float, float] | None],
) -> list[tuple[T, float | None]]:
    """
    Order items greedily by always visiting the closest unvisited one.

    Returns (item, leg_km) pairs. Items without coordinates keep their input
    order, go last, and have a leg of None. Ties go to the earlier item.
    """
    located = [(item, coords(item)) for item in items]
    pending = [(item, point) for item, point in located if point is not None]
    unlocated = [item for item, point in located if point is None]

    ordered: list[tuple[T, float | None]] = []
    here = origin
    while pending:
        best_index = 0
        best_km = None
        for index, (_, point) in enumerate(pending):
            km = haversine_km(here[0], here[1], point[0], point[1])
            if best_km is None or km < best_km:
                best_index, best_km = index, km
        item, point = pending.pop(best_index)
        ordered.append((item, best_km))
        here = point

    ordered.extend((item, None) for item in unlocated)
    return ordered


def path_legs(
    origin: tuple[float, float],
    items: Sequence[T],
    coords: Callable[[T], tuple[float, float] | None],
) -> list[tuple[T, float | None]]:
    """Legs for a fixed visiting order; unlocated items contribute no distance."""
    legs: list[tuple[T, float | None]] = []
    here = origin
    for item in items:
        point = coords(item)
        if point is None:
            legs.append((item, None))
            continue
        legs.append((item, haversine_km(here[0], here[1], point[0], point[1])))
        here = point
    return legs


def estimate_minutes(total_km: float, minutes_per_km: float) -> int:
    return int(math.ceil(round(total_km * minutes_per_km, 6)))
