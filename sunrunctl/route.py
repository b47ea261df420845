import math
import random
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Union

from .errors import EmptyTaskError
from .geo import Point, haversine_distance, normal_sample

STEP_LENGTH = 0.0001  # degrees, roughly 11 m
DEVIATION_STD = 1 / 50000  # degrees, roughly 2 m


@dataclass
class MockTrail:
    points: List[Dict[str, str]]
    distance_km: float


def _coordinate(point: Union[Mapping[str, Any], Any], name: str) -> float:
    value = point.get(name) if isinstance(point, Mapping) else getattr(point, name, None)
    if value is None or value == "":
        raise EmptyTaskError(f"route point is missing {name}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise EmptyTaskError(f"route point has invalid {name}: {value!r}")


def to_points(waypoints: Sequence[Any]) -> List[Point]:
    if not waypoints:
        raise EmptyTaskError("task has no route waypoints")
    return [(_coordinate(p, "longitude"), _coordinate(p, "latitude")) for p in waypoints]


def _segment(a: Point, b: Point, step: float) -> List[Point]:
    vx, vy = b[0] - a[0], b[1] - a[1]
    norm = math.hypot(vx, vy)
    if norm == 0:
        return [a]
    ux, uy = vx / norm, vy / norm
    points = [a]
    for i in range(1, math.floor(norm / step)):
        points.append((a[0] + i * step * ux, a[1] + i * step * uy))
    return points


def densify(route: Sequence[Point], step: float = STEP_LENGTH) -> List[Point]:
    """Insert points every `step` degrees along each segment, keeping the last waypoint."""
    dense: List[Point] = []
    for a, b in zip(route, route[1:]):
        dense.extend(_segment(a, b, step))
    if route:
        dense.append(route[-1])
    return dense


def _deviate(point: Point, rng: random.Random) -> Point:
    return (normal_sample(point[0], DEVIATION_STD, rng), normal_sample(point[1], DEVIATION_STD, rng))


def synthesize(waypoints: Sequence[Any], target_km: float, rng: random.Random = random) -> MockTrail:
    """
    Walk the densified route from a random index, jittering every point,
    until the jittered trail is at least `target_km` long. The walk wraps
    to the start near the end of the route so short routes can still
    cover long distances; the jump back to the start is not counted as
    distance run.
    """
    dense = densify(to_points(waypoints))
    target_m = float(target_km) * 1000

    i = rng.randrange(len(dense))
    trail = [_deviate(dense[i], rng)]
    travelled = 0.0
    wrapped = False
    while travelled < target_m:
        trail.append(_deviate(dense[i], rng))
        if not wrapped:
            travelled += haversine_distance(trail[-2], trail[-1])
        i += 1
        wrapped = False
        if i >= len(dense) - 2:
            # routes of three points or fewer never leave dense[0]
            wrapped = i > 1
            i = 0

    return MockTrail(
        points=[{"longitude": f"{lon:.6f}", "latitude": f"{lat:.6f}"} for lon, lat in trail],
        distance_km=round(travelled / 1000, 2),
    )
