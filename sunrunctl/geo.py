"""Great-circle distances, truncated normal sampling and duration formatting."""
import math
import random
from typing import Sequence, Tuple

Point = Tuple[float, float]  # (longitude, latitude)

_DEG_TO_RAD = 0.0174532925194329
# asin(chord / 2) * EARTH_DIAMETER_M gives the arc length in meters.
EARTH_DIAMETER_M = 1.2740015798544e7


def _unit_vector(point: Point) -> Tuple[float, float, float]:
    lon = point[0] * _DEG_TO_RAD
    lat = point[1] * _DEG_TO_RAD
    return (
        math.cos(lat) * math.cos(lon),
        math.cos(lat) * math.sin(lon),
        math.sin(lat),
    )


def haversine_distance(a: Point, b: Point) -> float:
    """Great-circle distance in meters between two (lon, lat) points."""
    x1, y1, z1 = _unit_vector(a)
    x2, y2, z2 = _unit_vector(b)
    chord = math.sqrt((x1 - x2) ** 2 + (y1 - y2) ** 2 + (z1 - z2) ** 2)
    return math.asin(min(1.0, chord / 2)) * EARTH_DIAMETER_M


def path_length(points: Sequence[Point]) -> float:
    total = 0.0
    for i in range(len(points) - 1):
        total += haversine_distance(points[i], points[i + 1])
    return total


def normal_sample(mean: float, std_dev: float, rng: random.Random = random) -> float:
    """
    Draw from N(mean, std_dev) truncated to mean +/- 3 std_dev.
    Polar Box-Muller; draws outside the unit disc or the bounds are rejected.
    """
    if std_dev < 0:
        raise ValueError(f"std_dev must be >= 0, got {std_dev}")
    low, high = mean - 3 * std_dev, mean + 3 * std_dev
    while True:
        u = rng.random() * 2 - 1
        v = rng.random() * 2 - 1
        w = u * u + v * v
        if w == 0 or w >= 1:
            continue
        result = mean + u * math.sqrt(-2 * math.log(w) / w) * std_dev
        if low <= result <= high:
            return result


def format_duration(seconds: float) -> str:
    total = max(0, int(seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"
