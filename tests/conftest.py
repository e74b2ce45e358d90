import random
import threading
from datetime import datetime, timedelta

import pytest

from campusride.collaborators import RouteInfo
from campusride.config import Settings
from campusride.core import RideCore
from campusride.geo import Place, Point
from campusride.models import Role, User, Vehicle, VehicleType

NOW = datetime(2026, 1, 15, 9, 0, 0)
SECRET = "rzp_test_secret"

# main gate of the campus; captains are placed north of it
CAMPUS = Point(lng=77.5946, lat=12.9716)
LIBRARY = Point(lng=77.6100, lat=12.9800)


def north_of(point: Point, meters: float) -> Point:
    return Point(lng=point.lng, lat=point.lat + meters / 111_320.0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self._lock = threading.Lock()
        self.events = []
        self.fail = False

    def notify(self, user_id, event_type, payload):
        if self.fail:
            raise ConnectionError("push service unavailable")
        with self._lock:
            self.events.append((user_id, event_type, payload))

    def of(self, event_type):
        return [(user_id, payload) for user_id, kind, payload in self.events if kind == event_type]


class FixedRouter:
    def __init__(self, distance_km: float = 4.2, duration_min: float = 12.0):
        self.distance_km = distance_km
        self.duration_min = duration_min
        self.fail = False

    def route(self, pickup, dropoff):
        if self.fail:
            raise TimeoutError("maps provider timed out")
        return RouteInfo(distance_km=self.distance_km, duration_min=self.duration_min, polyline="abc")


class FakeGateway:
    def __init__(self):
        self.orders = []
        self.fail = False

    def create_order(self, amount, currency, receipt, notes):
        if self.fail:
            raise ConnectionError("gateway down")
        order_id = f"order_{len(self.orders) + 1:04d}"
        self.orders.append((order_id, amount, currency, receipt))
        return order_id


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def router():
    return FixedRouter()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'rides.db'}",
        gateway_secret=SECRET,
        sweep_interval_seconds=0.05,
    )


@pytest.fixture
def core(settings, router, notifier, gateway, clock):
    core = RideCore(
        settings=settings,
        router=router,
        notifier=notifier,
        gateway=gateway,
        clock=clock,
        rng=random.Random(42),
    )
    yield core
    core.sweeper.stop()
    core.engine.dispose()


def make_rider(core: RideCore, name: str = "Asha") -> User:
    with core.sessions() as session:
        user = User(name=name, email=f"{name.lower()}@student.campus.edu", is_verified=True)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user


def make_captain(
    core: RideCore,
    name: str,
    point: Point = CAMPUS,
    vehicle_type: VehicleType = VehicleType.bike,
    capacity: int = 1,
    online: bool = True,
    docs_valid_until: datetime = NOW + timedelta(days=365),
) -> User:
    with core.sessions() as session:
        user = User(
            name=name,
            email=f"{name.lower()}@student.campus.edu",
            role=Role.captain,
            is_verified=True,
            captain_verified=True,
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        session.add(Vehicle(
            owner_id=user.id,
            vehicle_type=vehicle_type,
            brand="Hero",
            model="Splendor",
            registration_number=f"KA01AB{user.id:04d}",
            capacity=capacity,
            is_verified=True,
            rc_expiry=docs_valid_until,
            insurance_expiry=docs_valid_until,
        ))
        session.commit()
    if online:
        core.captains.set_captain_mode(user.id, True)
        core.captains.update_location(user.id, point, "Main gate")
    with core.sessions() as session:
        return core.store.get_user(session, user.id)


def pickup_place() -> Place:
    return Place(point=CAMPUS, address="Main gate")


def dropoff_place() -> Place:
    return Place(point=LIBRARY, address="Central library")


def request(core: RideCore, rider: User, **kwargs):
    return core.matching.request_ride(rider.id, pickup_place(), dropoff_place(), **kwargs)


def user(core: RideCore, user_id: int) -> User:
    with core.sessions() as session:
        return core.store.get_user(session, user_id)


def vehicle_of(core: RideCore, owner_id: int) -> Vehicle:
    with core.sessions() as session:
        return core.store.vehicle_of(session, owner_id)
