# campusride/store.py
import logging
from typing import Callable, Optional, Tuple

from sqlalchemy import update
from sqlmodel import Session, select

from .database import SessionFactory
from .errors import InvalidTransitionError, NotFoundError
from .lifecycle import Transition
from .models import ACTIVE_STATUSES, Ride, Role, User, Vehicle, VehicleStatus

logger = logging.getLogger(__name__)

MakeTransition = Callable[[Session, Ride], Transition]
AfterCommit = Callable[[Session, Ride, Transition], None]


class RideStore:
    """Reads and conditional writes shared by the ride services.

    A ride is only ever written through ``transition``: the update carries
    the status (and any ``expect`` columns) the caller observed, so of two
    racing writers exactly one matches a row and the other re-reads.
    """

    def __init__(self, sessions: SessionFactory, attempts: int = 3):
        self.sessions = sessions
        self.attempts = attempts

    # ---------------- reads -----------------
    def get_ride(self, session: Session, ride_id: int) -> Ride:
        ride = session.get(Ride, ride_id, populate_existing=True)
        if not ride:
            raise NotFoundError(f"Ride {ride_id} not found")
        return ride

    def get_user(self, session: Session, user_id: int) -> User:
        user = session.get(User, user_id, populate_existing=True)
        if not user:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def vehicle_of(self, session: Session, owner_id: int) -> Optional[Vehicle]:
        return session.exec(
            select(Vehicle)
            .where(Vehicle.owner_id == owner_id)
            .execution_options(populate_existing=True)
        ).first()

    def active_ride(self, session: Session, user_id: int, role: Role) -> Optional[Ride]:
        owner = Ride.rider_id if role == Role.rider else Ride.captain_id
        return session.exec(
            select(Ride)
            .where(owner == user_id)
            .where(Ride.status.in_(ACTIVE_STATUSES))
            .order_by(Ride.requested_at.desc())
            .execution_options(populate_existing=True)
        ).first()

    # ---------------- writes ----------------
    def apply(self, session: Session, ride: Ride, transition: Transition) -> bool:
        stmt = update(Ride).where(Ride.id == ride.id, Ride.status == transition.source)
        for column, value in transition.expect.items():
            attr = getattr(Ride, column)
            stmt = stmt.where(attr.is_(None) if value is None else attr == value)
        result = session.connection().execute(stmt.values(**transition.changes))
        return result.rowcount == 1

    def transition(
        self,
        ride_id: int,
        make: MakeTransition,
        after: Optional[AfterCommit] = None,
    ) -> Tuple[Ride, Transition]:
        """Compute a transition from a fresh snapshot and commit it atomically.

        ``after`` runs inside the same transaction, so its writes commit or
        roll back together with the status change.
        """
        for attempt in range(1, self.attempts + 1):
            with self.sessions() as session:
                ride = self.get_ride(session, ride_id)
                transition = make(session, ride)
                if self.apply(session, ride, transition):
                    if after is not None:
                        after(session, ride, transition)
                    session.commit()
                    logger.info(
                        "ride %s %s: %s -> %s",
                        ride_id, transition.event, transition.source.value, transition.target.value,
                    )
                    return self.get_ride(session, ride_id), transition
                session.rollback()
            logger.warning("ride %s changed during %s (attempt %d)", ride_id, transition.event, attempt)
        raise InvalidTransitionError(f"ride {ride_id} is changing concurrently; try again")

    def release_vehicle(self, session: Session, vehicle_id: Optional[int]) -> None:
        if vehicle_id is None:
            return
        session.connection().execute(
            update(Vehicle)
            .where(Vehicle.id == vehicle_id, Vehicle.current_status == VehicleStatus.on_ride)
            .values(current_status=VehicleStatus.available)
        )
