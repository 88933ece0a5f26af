"""Great-circle distance between two coordinates."""

import math

EARTH_RADIUS_MILES = 3959.0


def calculate_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Haversine distance in miles.

    Symmetric in its two points and exactly 0 when they are identical.
    """
    if lat1 == lat2 and lng1 == lng2:
        return 0.0

    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    # Float error can push `a` just past 1 for antipodal points
    a = min(1.0, max(0.0, a))
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
