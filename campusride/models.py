# campusride/models.py
from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy import CheckConstraint, event
from sqlmodel import SQLModel, Field, UniqueConstraint

MAX_CAPACITY = 7


class Role(str, Enum):
    rider = "rider"
    captain = "captain"


class VehicleType(str, Enum):
    bike = "bike"
    scooter = "scooter"
    auto = "auto"
    car = "car"


# (base fare, per km) used when a vehicle is registered without its own rates
DEFAULT_RATES = {
    VehicleType.bike: (15, 3),
    VehicleType.scooter: (15, 3),
    VehicleType.auto: (25, 8),
    VehicleType.car: (40, 12),
}


class VehicleStatus(str, Enum):
    available = "available"
    on_ride = "on_ride"
    offline = "offline"
    maintenance = "maintenance"


class RideStatus(str, Enum):
    requesting = "requesting"
    accepted = "accepted"
    arrived = "arrived"
    started = "started"
    completed = "completed"
    cancelled_rider = "cancelled_rider"
    cancelled_captain = "cancelled_captain"
    expired = "expired"


class PaymentMethod(str, Enum):
    cash = "cash"
    razorpay = "razorpay"
    stripe = "stripe"
    wallet = "wallet"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    refunded = "refunded"


ACTIVE_STATUSES = (
    RideStatus.requesting,
    RideStatus.accepted,
    RideStatus.arrived,
    RideStatus.started,
)
TERMINAL_STATUSES = (
    RideStatus.completed,
    RideStatus.cancelled_rider,
    RideStatus.cancelled_captain,
    RideStatus.expired,
)


class User(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("email"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str
    firebase_uid: Optional[str] = Field(default=None, index=True)
    role: Role = Role.rider
    is_captain_active: bool = False
    captain_verified: bool = False
    is_verified: bool = False
    is_active: bool = True
    is_banned: bool = False

    location_lng: Optional[float] = None
    location_lat: Optional[float] = None
    location_address: Optional[str] = None
    location_updated_at: Optional[datetime] = None

    rating_average: float = 5.0
    rating_count: int = 0
    total_rides_as_rider: int = 0
    total_rides_as_captain: int = 0
    earnings_total: int = 0
    earnings_available: int = 0
    earnings_withdrawn: int = 0

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def can_drive(self) -> bool:
        return (
            self.role == Role.captain
            and self.is_captain_active
            and self.captain_verified
            and self.is_verified
            and self.is_active
            and not self.is_banned
        )


class Vehicle(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("owner_id"),
        UniqueConstraint("registration_number"),
        CheckConstraint(f"capacity BETWEEN 1 AND {MAX_CAPACITY}", name="ck_vehicle_capacity"),
        CheckConstraint("base_fare >= 0 AND per_km_rate >= 0", name="ck_vehicle_rates"),
    )
    id: Optional[int] = Field(default=None, primary_key=True)
    owner_id: int = Field(foreign_key="user.id", index=True)
    vehicle_type: VehicleType
    brand: str
    model: str
    registration_number: str
    capacity: int = 1
    base_fare: Optional[float] = None
    per_km_rate: Optional[float] = None
    is_verified: bool = False
    is_active: bool = True
    current_status: VehicleStatus = VehicleStatus.offline

    rc_expiry: datetime
    insurance_expiry: datetime
    pollution_expiry: Optional[datetime] = None

    total_rides: int = 0
    total_distance: float = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)

    def are_documents_valid(self, now: datetime) -> bool:
        rc_valid = self.rc_expiry > now
        insurance_valid = self.insurance_expiry > now
        pc_valid = self.pollution_expiry is None or self.pollution_expiry > now
        return rc_valid and insurance_valid and pc_valid

    def is_eligible(self, now: datetime) -> bool:
        return (
            self.is_verified
            and self.is_active
            and self.current_status != VehicleStatus.maintenance
            and self.are_documents_valid(now)
        )


@event.listens_for(Vehicle, "before_insert")
def _seed_vehicle_rates(mapper, connection, vehicle: Vehicle) -> None:
    base_fare, per_km_rate = DEFAULT_RATES[VehicleType(vehicle.vehicle_type)]
    if vehicle.base_fare is None:
        vehicle.base_fare = base_fare
    if vehicle.per_km_rate is None:
        vehicle.per_km_rate = per_km_rate


class Ride(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    rider_id: int = Field(foreign_key="user.id", index=True)
    captain_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    vehicle_id: Optional[int] = Field(default=None, foreign_key="vehicle.id")
    vehicle_type: VehicleType = VehicleType.bike

    pickup_lng: float
    pickup_lat: float
    pickup_address: str
    pickup_landmark: Optional[str] = None
    dropoff_lng: float
    dropoff_lat: float
    dropoff_address: str
    dropoff_landmark: Optional[str] = None

    distance_km: float
    duration_min: float
    polyline: Optional[str] = None

    fare_base: int
    fare_platform_fee: int
    fare_gst: int
    fare_discount: int = 0
    fare_total: int
    fare_final_amount: int

    payment_method: PaymentMethod = PaymentMethod.razorpay
    payment_status: PaymentStatus = PaymentStatus.pending
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    gateway_signature: Optional[str] = None
    paid_at: Optional[datetime] = None

    status: RideStatus = Field(default=RideStatus.requesting, index=True)
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: datetime = Field(index=True)

    otp: Optional[str] = None
    otp_verified: bool = False

    # rating given by the rider to the captain, and vice versa
    rider_rating: Optional[int] = None
    rider_review: Optional[str] = None
    rider_rated_at: Optional[datetime] = None
    captain_rating: Optional[int] = None
    captain_review: Optional[str] = None
    captain_rated_at: Optional[datetime] = None

    passenger_count: int = 1
    special_requests: Optional[str] = None
    cancellation_reason: Optional[str] = None


class NotifiedCaptain(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("ride_id", "captain_id"),)
    id: Optional[int] = Field(default=None, primary_key=True)
    ride_id: int = Field(foreign_key="ride.id", index=True)
    captain_id: int = Field(foreign_key="user.id", index=True)
    rank: int = 0
    notified_at: datetime
    viewed: bool = False
    viewed_at: Optional[datetime] = None
