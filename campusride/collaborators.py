# campusride/collaborators.py
"""Interfaces to the services the ride core depends on but does not own."""
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from .geo import Point

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteInfo:
    distance_km: float
    duration_min: float
    polyline: Optional[str] = None


class RoutingProvider(Protocol):
    def route(self, pickup: Point, dropoff: Point) -> RouteInfo: ...


class NotificationDispatcher(Protocol):
    def notify(self, user_id: int, event_type: str, payload: Dict[str, Any]) -> None: ...


class PaymentGateway(Protocol):
    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, Any]) -> str: ...


class GeodesicRouter:
    """Straight-line routing for when no maps provider is configured."""

    def __init__(self, average_speed_kmh: float = 25.0):
        self.average_speed_kmh = average_speed_kmh

    def route(self, pickup: Point, dropoff: Point) -> RouteInfo:
        distance_km = round(pickup.distance_m(dropoff) / 1000.0, 2)
        duration_min = round(distance_km / self.average_speed_kmh * 60.0, 1)
        return RouteInfo(distance_km=distance_km, duration_min=duration_min)


class LogNotifier:
    def notify(self, user_id: int, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info("notify user=%s event=%s payload=%s", user_id, event_type, payload)


class LocalOrderGateway:
    """Mints gateway-style order ids locally; used in development and tests."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def create_order(self, amount: int, currency: str, receipt: str, notes: Dict[str, Any]) -> str:
        order_id = "order_%014x" % self.rng.getrandbits(56)
        logger.info("created order %s amount=%s %s receipt=%s", order_id, amount, currency, receipt)
        return order_id


def dispatch(notifier: NotificationDispatcher, user_id: int, event_type: str, payload: Dict[str, Any]) -> bool:
    """Fire-and-forget delivery, called after the triggering change has committed."""
    try:
        notifier.notify(user_id, event_type, payload)
        return True
    except Exception:
        logger.exception("failed to notify user %s of %s", user_id, event_type)
        return False
