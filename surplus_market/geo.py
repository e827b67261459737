import math
from typing import Callable, List, Optional, Sequence, Tuple, TypeVar

T = TypeVar("T")

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in kilometres."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def sort_by_distance(
    items: Sequence[T],
    origin: Tuple[float, float],
    position: Callable[[T], Optional[Tuple[Optional[float], Optional[float]]]],
) -> List[Tuple[T, Optional[float]]]:
    """Pair each item with its distance from ``origin``, nearest first.

    Items without a known position keep their relative order at the end.
    """
    lat0, lon0 = origin
    located = []
    unknown = []
    for item in items:
        pos = position(item)
        if pos is None or pos[0] is None or pos[1] is None:
            unknown.append((item, None))
            continue
        located.append((item, round(haversine_km(lat0, lon0, pos[0], pos[1]), 2)))
    located.sort(key=lambda pair: pair[1])
    return located + unknown
