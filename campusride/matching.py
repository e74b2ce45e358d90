# campusride/matching.py
"""Matching engine: turns a ride request into offers to nearby captains.

Offers go to every eligible captain at once, nearest first. The order only
drives how clients list the offer; whoever accepts first wins the ride.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session, select

from . import lifecycle
from .collaborators import RoutingProvider
from .errors import (
    ConflictError,
    DependencyError,
    ForbiddenError,
    NotFoundError,
    StaleRequestError,
    ValidationError,
)
from .fare import compute_fare, profile_for
from .geo import METERS_PER_DEGREE_LAT, Place, Point
from .models import (
    MAX_CAPACITY,
    NotifiedCaptain,
    PaymentMethod,
    Ride,
    RideStatus,
    Role,
    User,
    Vehicle,
    VehicleStatus,
    VehicleType,
)
from .service import RideService

logger = logging.getLogger(__name__)

MAX_PASSENGERS = MAX_CAPACITY


class MatchingEngine(RideService):
    def __init__(self, *args, router: RoutingProvider, **kwargs):
        super().__init__(*args, **kwargs)
        self.router = router

    # ---------------- request ---------------
    def request_ride(
        self,
        rider_id: int,
        pickup: Place,
        dropoff: Place,
        passenger_count: int = 1,
        vehicle_type: VehicleType = VehicleType.bike,
        payment_method: PaymentMethod = PaymentMethod.razorpay,
        special_requests: Optional[str] = None,
        discount: float = 0,
    ) -> Ride:
        if not 1 <= passenger_count <= MAX_PASSENGERS:
            raise ValidationError(f"passenger count must be between 1 and {MAX_PASSENGERS}")
        vehicle_type = VehicleType(vehicle_type)

        with self.store.sessions() as session:
            rider = self.store.get_user(session, rider_id)
            if rider.is_banned or not rider.is_active:
                raise ForbiddenError("account is not allowed to request rides")
            active = self.store.active_ride(session, rider_id, Role.rider)
        if active is not None and lifecycle.is_overdue(active, self.clock()):
            self.expire_ride(active.id)
            active = None
        if active is not None:
            raise ConflictError(f"rider already has an active ride ({active.id})")

        # no transaction is open while the routing provider is in flight
        try:
            route = self.router.route(pickup.point, dropoff.point)
        except Exception as exc:
            raise DependencyError(f"routing failed: {exc}") from exc
        fare = compute_fare(route.distance_km, profile_for(vehicle_type), discount)

        now = self.clock()
        with self.store.sessions() as session:
            # serialise concurrent requests from the same rider
            session.exec(select(User).where(User.id == rider_id).with_for_update()).one()
            self._ensure_no_active_ride(session, rider_id)

            ride = Ride(
                rider_id=rider_id,
                vehicle_type=vehicle_type,
                pickup_lng=pickup.point.lng,
                pickup_lat=pickup.point.lat,
                pickup_address=pickup.address,
                pickup_landmark=pickup.landmark,
                dropoff_lng=dropoff.point.lng,
                dropoff_lat=dropoff.point.lat,
                dropoff_address=dropoff.address,
                dropoff_landmark=dropoff.landmark,
                distance_km=route.distance_km,
                duration_min=route.duration_min,
                polyline=route.polyline,
                fare_base=fare.base_fare,
                fare_platform_fee=fare.platform_fee,
                fare_gst=fare.gst,
                fare_discount=fare.discount,
                fare_total=fare.total,
                fare_final_amount=fare.final_amount,
                payment_method=PaymentMethod(payment_method),
                status=RideStatus.requesting,
                requested_at=now,
                expires_at=now + timedelta(seconds=self.settings.offer_window_seconds),
                passenger_count=passenger_count,
                special_requests=special_requests,
            )
            session.add(ride)
            session.flush()

            candidates = self._candidates(session, pickup.point, vehicle_type, passenger_count, now, exclude=rider_id)
            for rank, captain_id in enumerate(candidates):
                session.add(NotifiedCaptain(ride_id=ride.id, captain_id=captain_id, rank=rank, notified_at=now))
            session.commit()
            session.refresh(ride)

        logger.info("ride %s requested by %s; offered to %d captains", ride.id, rider_id, len(candidates))
        offer = {
            "ride_id": ride.id,
            "pickup": pickup.address,
            "dropoff": dropoff.address,
            "distance_km": ride.distance_km,
            "fare": ride.fare_final_amount,
            "expires_at": ride.expires_at.isoformat(),
        }
        for captain_id in candidates:
            self.notify(captain_id, "ride_offer", offer)
        return ride

    def _ensure_no_active_ride(self, session: Session, rider_id: int) -> None:
        active = self.store.active_ride(session, rider_id, Role.rider)
        if active is not None and not lifecycle.is_overdue(active, self.clock()):
            raise ConflictError(f"rider already has an active ride ({active.id})")

    def _candidates(
        self,
        session: Session,
        point: Point,
        vehicle_type: VehicleType,
        passenger_count: int,
        now: datetime,
        exclude: Optional[int] = None,
    ) -> List[int]:
        nearby = [c for c in self.geo.query_nearby(point, self.settings.match_radius_m) if c != exclude]
        if not nearby:
            return []

        rows = session.exec(
            select(User, Vehicle)
            .join(Vehicle, Vehicle.owner_id == User.id)
            .where(User.id.in_(nearby))
        ).all()
        eligible = {
            user.id
            for user, vehicle in rows
            if user.can_drive
            and vehicle.is_eligible(now)
            and vehicle.current_status == VehicleStatus.available
            and vehicle.vehicle_type == vehicle_type
            and vehicle.capacity >= passenger_count
        }
        ordered = [c for c in nearby if c in eligible]
        return ordered[: self.settings.max_notified_captains]

    # ---------------- accept ----------------
    def accept_ride(self, ride_id: int, captain_id: int) -> Ride:
        now = self.clock()
        with self.store.sessions() as session:
            captain = self.store.get_user(session, captain_id)
            if not captain.can_drive:
                raise ForbiddenError("only active, verified captains can accept rides")
            vehicle = self.store.vehicle_of(session, captain_id)
            if vehicle is None or not vehicle.is_eligible(now):
                raise ForbiddenError("captain has no eligible vehicle")
            active = self.store.active_ride(session, captain_id, Role.captain)
            if active is not None:
                raise ConflictError(f"captain already has an active ride ({active.id})")

        otp = lifecycle.generate_otp(self.rng)

        def make(session, ride):
            if lifecycle.is_overdue(ride, now):
                return lifecycle.expire(ride, now)
            return lifecycle.accept(ride, captain_id, vehicle.id, otp, now)

        def claim_vehicle(session, ride, transition):
            if transition.event != "accept":
                return
            result = session.connection().execute(
                update(Vehicle)
                .where(Vehicle.id == vehicle.id, Vehicle.current_status == VehicleStatus.available)
                .values(current_status=VehicleStatus.on_ride)
            )
            if result.rowcount != 1:
                raise ConflictError("captain's vehicle is not available")

        try:
            ride, transition = self.store.transition(ride_id, make, after=claim_vehicle)
        except StaleRequestError:
            logger.warning("captain %s lost ride %s", captain_id, ride_id)
            raise

        if transition.event == "expire":
            self.notify(ride.rider_id, "ride_expired", {"ride_id": ride.id})
            raise StaleRequestError(f"ride {ride_id} offer window has closed")

        self.geo.set_available(captain_id, False)
        self.notify(ride.rider_id, "ride_accepted", {
            "ride_id": ride.id,
            "captain_id": captain_id,
            "vehicle_id": vehicle.id,
            "otp": ride.otp,
        })
        return ride

    # ---------------- offers ----------------
    def mark_viewed(self, ride_id: int, captain_id: int) -> NotifiedCaptain:
        now = self.clock()
        with self.store.sessions() as session:
            entry = session.exec(
                select(NotifiedCaptain)
                .where(NotifiedCaptain.ride_id == ride_id)
                .where(NotifiedCaptain.captain_id == captain_id)
            ).first()
            if not entry:
                raise NotFoundError(f"captain {captain_id} was not offered ride {ride_id}")
            session.connection().execute(
                update(NotifiedCaptain)
                .where(NotifiedCaptain.id == entry.id, NotifiedCaptain.viewed.is_(False))
                .values(viewed=True, viewed_at=now)
            )
            session.commit()
            session.refresh(entry)
            return entry

    def notified_captains(self, ride_id: int) -> List[NotifiedCaptain]:
        with self.store.sessions() as session:
            return list(session.exec(
                select(NotifiedCaptain)
                .where(NotifiedCaptain.ride_id == ride_id)
                .order_by(NotifiedCaptain.rank)
            ).all())

    def nearby_requests(self, point: Point, radius_m: Optional[float] = None, limit: int = 20) -> List[Ride]:
        radius_m = self.settings.match_radius_m if radius_m is None else radius_m
        now = self.clock()
        dlat = radius_m / METERS_PER_DEGREE_LAT
        dlng = radius_m / (METERS_PER_DEGREE_LAT * max(math.cos(math.radians(point.lat)), 1e-6))

        with self.store.sessions() as session:
            rides = session.exec(
                select(Ride)
                .where(Ride.status == RideStatus.requesting)
                .where(Ride.expires_at >= now)
                .where(Ride.pickup_lat.between(point.lat - dlat, point.lat + dlat))
                .where(Ride.pickup_lng.between(point.lng - dlng, point.lng + dlng))
                .order_by(Ride.requested_at)
            ).all()
        found = [r for r in rides if point.distance_m(Point(r.pickup_lng, r.pickup_lat)) <= radius_m]
        return found[:limit]

    # ---------------- expiry ----------------
    def expire_overdue(self, now: Optional[datetime] = None) -> List[int]:
        """Expire every ride still requesting past its deadline; returns the expired ids."""
        now = now or self.clock()
        with self.store.sessions() as session:
            overdue = session.exec(
                select(Ride.id)
                .where(Ride.status == RideStatus.requesting)
                .where(Ride.expires_at < now)
            ).all()

        expired = []
        for ride_id in overdue:
            if self.expire_ride(ride_id, now) is not None:
                expired.append(ride_id)
        if expired:
            logger.info("expired %d overdue rides", len(expired))
        return expired
