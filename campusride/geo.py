# campusride/geo.py
import math
import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from geopy.distance import geodesic

from .errors import ValidationError

METERS_PER_DEGREE_LAT = 111_320.0


@dataclass(frozen=True)
class Point:
    lng: float
    lat: float

    def __post_init__(self):
        if self.lng is None or self.lat is None:
            raise ValidationError("coordinates are required")
        if not (-180.0 <= self.lng <= 180.0) or not (-90.0 <= self.lat <= 90.0):
            raise ValidationError(f"invalid coordinates ({self.lng}, {self.lat})")

    @property
    def latlng(self) -> Tuple[float, float]:
        # geopy wants (lat, lng)
        return (self.lat, self.lng)

    def distance_m(self, other: "Point") -> float:
        return geodesic(self.latlng, other.latlng).meters


@dataclass(frozen=True)
class CaptainPosition:
    captain_id: int
    point: Point
    updated_at: datetime
    available: bool = True
    verified: bool = True
    banned: bool = False

    @property
    def matchable(self) -> bool:
        return self.available and self.verified and not self.banned


class GeoIndex:
    """Last known position of every online captain.

    Entries are immutable and replaced whole under the lock, so a query works
    on a copy of the map taken at one instant: a captain removed before the
    query began is never returned, and concurrent upserts never block the
    distance sorting.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._positions: Dict[int, CaptainPosition] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._positions)

    def upsert(self, captain_id: int, point: Point, timestamp: datetime,
               verified: bool = True, banned: bool = False, available: bool = True) -> CaptainPosition:
        position = CaptainPosition(
            captain_id=captain_id,
            point=point,
            updated_at=timestamp,
            available=available,
            verified=verified,
            banned=banned,
        )
        with self._lock:
            current = self._positions.get(captain_id)
            # out-of-order pings must not move a captain backwards in time
            if current is not None and current.updated_at > timestamp:
                return current
            self._positions[captain_id] = position
        return position

    def remove(self, captain_id: int) -> bool:
        with self._lock:
            return self._positions.pop(captain_id, None) is not None

    def set_available(self, captain_id: int, available: bool) -> bool:
        with self._lock:
            current = self._positions.get(captain_id)
            if current is None:
                return False
            self._positions[captain_id] = replace(current, available=available)
            return True

    def get(self, captain_id: int) -> Optional[CaptainPosition]:
        with self._lock:
            return self._positions.get(captain_id)

    def snapshot(self) -> List[CaptainPosition]:
        with self._lock:
            return list(self._positions.values())

    def query_nearby(self, point: Point, radius_m: float, limit: Optional[int] = None) -> List[int]:
        if radius_m < 0:
            raise ValidationError("radius must be non-negative")

        # cheap bounding box before the geodesic distance
        dlat = radius_m / METERS_PER_DEGREE_LAT
        cos_lat = max(math.cos(math.radians(point.lat)), 1e-6)
        dlng = radius_m / (METERS_PER_DEGREE_LAT * cos_lat)

        hits = []
        for pos in self.snapshot():
            if not pos.matchable:
                continue
            if abs(pos.point.lat - point.lat) > dlat or abs(pos.point.lng - point.lng) > dlng:
                continue
            distance = point.distance_m(pos.point)
            if distance <= radius_m:
                hits.append((distance, pos.captain_id))

        hits.sort()
        ids = [captain_id for _, captain_id in hits]
        return ids if limit is None else ids[:limit]


@dataclass(frozen=True)
class Place:
    point: Point
    address: str
    landmark: Optional[str] = None

    def __post_init__(self):
        if not self.address or not self.address.strip():
            raise ValidationError("address is required")
