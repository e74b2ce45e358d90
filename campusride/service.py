# campusride/service.py
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from .collaborators import NotificationDispatcher, dispatch
from .config import Settings
from .errors import ForbiddenError, InvalidTransitionError
from .geo import GeoIndex
from .lifecycle import expire, is_overdue
from .models import Ride, Role
from .store import RideStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class RideService:
    """Dependencies shared by the matching, lifecycle and payment services."""

    def __init__(
        self,
        store: RideStore,
        geo: GeoIndex,
        notifier: NotificationDispatcher,
        settings: Optional[Settings] = None,
        clock: Clock = datetime.utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.geo = geo
        self.notifier = notifier
        self.settings = settings or Settings()
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    def notify(self, user_id: Optional[int], event_type: str, payload: Dict[str, Any]) -> None:
        if user_id is not None:
            dispatch(self.notifier, user_id, event_type, payload)

    def get_ride(self, ride_id: int) -> Ride:
        """Load a ride, expiring it first if its offer window has passed."""
        with self.store.sessions() as session:
            ride = self.store.get_ride(session, ride_id)
        if is_overdue(ride, self.clock()):
            ride = self.expire_ride(ride_id) or self._reload(ride_id)
        return ride

    def expire_ride(self, ride_id: int, now: Optional[datetime] = None) -> Optional[Ride]:
        """Expire one overdue ride; returns None when a concurrent change got there first."""
        now = now or self.clock()
        try:
            ride, _ = self.store.transition(ride_id, lambda session, ride: expire(ride, now))
        except InvalidTransitionError as exc:
            logger.info("ride %s not expired: %s", ride_id, exc)
            return None
        self.notify(ride.rider_id, "ride_expired", {"ride_id": ride.id})
        return ride

    def role_in(self, ride: Ride, user_id: int) -> Role:
        if ride.rider_id == user_id:
            return Role.rider
        if ride.captain_id is not None and ride.captain_id == user_id:
            return Role.captain
        raise ForbiddenError(f"user {user_id} is not part of ride {ride.id}")

    def _reload(self, ride_id: int) -> Ride:
        with self.store.sessions() as session:
            return self.store.get_ride(session, ride_id)
