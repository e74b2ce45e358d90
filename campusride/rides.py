# campusride/rides.py
import logging
from typing import Optional

from sqlalchemy import update
from sqlmodel import select

from . import lifecycle
from .errors import ForbiddenError, InvalidTransitionError, OTPMismatchError
from .fare import captain_earnings
from .models import NotifiedCaptain, Ride, RideStatus, Role, User, Vehicle
from .service import RideService

logger = logging.getLogger(__name__)


class RideLifecycle(RideService):
    """Drives an accepted ride to completion or cancellation."""

    def find_active_ride(self, user_id: int, role: Role) -> Optional[Ride]:
        with self.store.sessions() as session:
            ride = self.store.active_ride(session, user_id, Role(role))
        if ride is not None and lifecycle.is_overdue(ride, self.clock()):
            self.expire_ride(ride.id)
            return None
        return ride

    def _captain_of(self, ride: Ride, captain_id: int) -> None:
        if ride.captain_id is None or ride.captain_id != captain_id:
            raise ForbiddenError(f"user {captain_id} is not the captain of ride {ride.id}")

    # ---------------- cancel ----------------
    def cancel_ride(self, ride_id: int, user_id: int, reason: Optional[str] = None) -> Ride:
        now = self.clock()

        def make(session, ride):
            role = self.role_in(ride, user_id)
            if lifecycle.is_overdue(ride, now):
                return lifecycle.expire(ride, now)
            return lifecycle.cancel(ride, role, reason, now)

        def free_vehicle(session, ride, transition):
            if transition.event == "cancel":
                self.store.release_vehicle(session, ride.vehicle_id)

        ride, transition = self.store.transition(ride_id, make, after=free_vehicle)
        if transition.event == "expire":
            self.notify(ride.rider_id, "ride_expired", {"ride_id": ride.id})
            raise InvalidTransitionError(f"ride {ride_id} has already expired")

        payload = {"ride_id": ride.id, "status": ride.status.value, "reason": reason}
        if ride.captain_id is not None:
            self.geo.set_available(ride.captain_id, True)
            other = ride.captain_id if ride.status == RideStatus.cancelled_rider else ride.rider_id
            self.notify(other, "ride_cancelled", payload)
        else:
            for captain_id in self._offered_to(ride.id):
                self.notify(captain_id, "offer_withdrawn", payload)
        return ride

    def _offered_to(self, ride_id: int):
        with self.store.sessions() as session:
            return session.exec(
                select(NotifiedCaptain.captain_id).where(NotifiedCaptain.ride_id == ride_id)
            ).all()

    # ---------------- trip ------------------
    def arrive(self, ride_id: int, captain_id: int) -> Ride:
        now = self.clock()

        def make(session, ride):
            self._captain_of(ride, captain_id)
            return lifecycle.arrive(ride, now)

        ride, _ = self.store.transition(ride_id, make)
        self.notify(ride.rider_id, "captain_arrived", {"ride_id": ride.id})
        return ride

    def start_ride(self, ride_id: int, captain_id: int, otp: str) -> Ride:
        now = self.clock()

        def make(session, ride):
            self._captain_of(ride, captain_id)
            return lifecycle.start(ride, otp, now)

        try:
            ride, _ = self.store.transition(ride_id, make)
        except OTPMismatchError:
            logger.warning("wrong OTP for ride %s from captain %s", ride_id, captain_id)
            raise
        self.notify(ride.rider_id, "ride_started", {"ride_id": ride.id})
        return ride

    def complete_ride(self, ride_id: int, captain_id: int) -> Ride:
        now = self.clock()

        def make(session, ride):
            self._captain_of(ride, captain_id)
            return lifecycle.complete(ride, now)

        def settle(session, ride, transition):
            earned = captain_earnings(ride.fare_base)
            conn = session.connection()
            conn.execute(
                update(User)
                .where(User.id == ride.captain_id)
                .values(
                    earnings_total=User.earnings_total + earned,
                    earnings_available=User.earnings_available + earned,
                    total_rides_as_captain=User.total_rides_as_captain + 1,
                )
            )
            conn.execute(
                update(User)
                .where(User.id == ride.rider_id)
                .values(total_rides_as_rider=User.total_rides_as_rider + 1)
            )
            conn.execute(
                update(Vehicle)
                .where(Vehicle.id == ride.vehicle_id)
                .values(
                    total_rides=Vehicle.total_rides + 1,
                    total_distance=Vehicle.total_distance + ride.distance_km,
                )
            )
            self.store.release_vehicle(session, ride.vehicle_id)
            logger.info("credited captain %s with %s for ride %s", ride.captain_id, earned, ride.id)

        ride, _ = self.store.transition(ride_id, make, after=settle)
        self.geo.set_available(captain_id, True)
        self.notify(ride.rider_id, "ride_completed", {
            "ride_id": ride.id,
            "fare": ride.fare_final_amount,
            "payment_status": ride.payment_status.value,
        })
        return ride

    # ---------------- rating ----------------
    def rate_ride(self, ride_id: int, user_id: int, rating: int, review: Optional[str] = None) -> Ride:
        now = self.clock()
        rated = {}

        def make(session, ride):
            role = self.role_in(ride, user_id)
            rated["user_id"] = ride.captain_id if role == Role.rider else ride.rider_id
            return lifecycle.rate(ride, role, rating, review, now)

        def record(session, ride, transition):
            # running average over every rating the user has received
            session.connection().execute(
                update(User)
                .where(User.id == rated["user_id"])
                .values(
                    rating_average=(User.rating_average * User.rating_count + rating) / (User.rating_count + 1),
                    rating_count=User.rating_count + 1,
                )
            )

        ride, _ = self.store.transition(ride_id, make, after=record)
        self.notify(rated["user_id"], "ride_rated", {"ride_id": ride.id, "rating": rating})
        return ride
