# campusride/captains.py
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlmodel import Session, select

from .errors import ConflictError, ForbiddenError, ValidationError
from .geo import Point
from .models import Role, User, Vehicle, VehicleStatus
from .service import RideService

logger = logging.getLogger(__name__)


class CaptainPresence(RideService):
    """Keeps the geo index in step with captains going online, moving and going offline."""

    def set_captain_mode(self, user_id: int, active: bool) -> User:
        with self.store.sessions() as session:
            user = self.store.get_user(session, user_id)
            vehicle = self.store.vehicle_of(session, user_id)
            if active:
                if not user.captain_verified:
                    raise ForbiddenError("Captain verification required")
                if vehicle is None:
                    raise ValidationError("Vehicle registration required")
            elif self.store.active_ride(session, user_id, Role.captain) is not None:
                raise ConflictError("finish or cancel the current ride before going offline")

            user.is_captain_active = active
            user.role = Role.captain if active else Role.rider
            user.updated_at = self.clock()
            session.add(user)
            if vehicle is not None:
                # a vehicle on a ride or in the workshop keeps its status
                session.connection().execute(
                    update(Vehicle)
                    .where(
                        Vehicle.id == vehicle.id,
                        Vehicle.current_status.in_((VehicleStatus.available, VehicleStatus.offline)),
                    )
                    .values(current_status=VehicleStatus.available if active else VehicleStatus.offline)
                )
            session.commit()
            session.refresh(user)
            self._sync(session, user)
        logger.info("captain %s is now %s", user_id, "online" if active else "offline")
        return user

    def update_location(self, user_id: int, point: Point, address: Optional[str] = None) -> User:
        now = self.clock()
        with self.store.sessions() as session:
            user = self.store.get_user(session, user_id)
            user.location_lng = point.lng
            user.location_lat = point.lat
            user.location_address = address or user.location_address
            user.location_updated_at = now
            session.add(user)
            session.commit()
            session.refresh(user)
            self._sync(session, user)
        return user

    def load_geo_index(self) -> int:
        """Rebuild the index from stored locations, e.g. after a restart."""
        with self.store.sessions() as session:
            captains = session.exec(
                select(User)
                .where(User.role == Role.captain)
                .where(User.is_captain_active == True)  # noqa: E712
                .where(User.location_lat.is_not(None))
            ).all()
            for user in captains:
                self._sync(session, user)
        return len(self.geo)

    def _sync(self, session: Session, user: User) -> None:
        now: datetime = self.clock()
        vehicle = self.store.vehicle_of(session, user.id)
        if (
            not user.can_drive
            or user.location_lat is None
            or vehicle is None
            or not vehicle.is_eligible(now)
        ):
            self.geo.remove(user.id)
            return
        self.geo.upsert(
            user.id,
            Point(user.location_lng, user.location_lat),
            user.location_updated_at or now,
            verified=user.is_verified and user.captain_verified,
            banned=user.is_banned,
            available=vehicle.current_status == VehicleStatus.available,
        )
