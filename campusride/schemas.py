# campusride/schemas.py
from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel, Field

from .geo import Place, Point
from .models import PaymentMethod, PaymentStatus, Role, RideStatus, VehicleType


# ------------------------------------------------------------------
# Base class for models read straight off SQLModel rows
# ------------------------------------------------------------------
class ORMModel(BaseModel):
    model_config = {"from_attributes": True}


# ------------------------------------------------------------------
# Locations
# ------------------------------------------------------------------
class PointIn(BaseModel):
    lng: float = Field(..., ge=-180, le=180)
    lat: float = Field(..., ge=-90, le=90)

    def to_point(self) -> Point:
        return Point(lng=self.lng, lat=self.lat)


class PlaceIn(PointIn):
    address: str = Field(..., min_length=1)
    landmark: Optional[str] = None

    def to_place(self) -> Place:
        return Place(point=self.to_point(), address=self.address, landmark=self.landmark)


class LocationUpdate(PointIn):
    address: Optional[str] = None


class CaptainMode(BaseModel):
    active: bool


# ------------------------------------------------------------------
# Rides
# ------------------------------------------------------------------
class RideCreate(BaseModel):
    pickup: PlaceIn
    dropoff: PlaceIn
    passenger_count: int = Field(1, ge=1, le=7)
    vehicle_type: VehicleType = VehicleType.bike
    payment_method: PaymentMethod = PaymentMethod.razorpay
    special_requests: Optional[str] = None


class RideCancel(BaseModel):
    reason: Optional[str] = None


class RideStart(BaseModel):
    otp: str = Field(..., min_length=4, max_length=4)


class RatingCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = None


class RideRead(ORMModel):
    # never serialise otp or gateway signature
    id: int
    rider_id: int
    captain_id: Optional[int] = None
    vehicle_id: Optional[int] = None
    vehicle_type: VehicleType
    status: RideStatus

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
    fare_discount: int
    fare_total: int
    fare_final_amount: int

    payment_method: PaymentMethod
    payment_status: PaymentStatus
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None

    requested_at: datetime
    accepted_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    expires_at: datetime
    otp_verified: bool

    rider_rating: Optional[int] = None
    rider_review: Optional[str] = None
    captain_rating: Optional[int] = None
    captain_review: Optional[str] = None
    passenger_count: int
    special_requests: Optional[str] = None
    cancellation_reason: Optional[str] = None


class NotifiedCaptainRead(ORMModel):
    captain_id: int
    rank: int
    notified_at: datetime
    viewed: bool
    viewed_at: Optional[datetime] = None


# ------------------------------------------------------------------
# Users
# ------------------------------------------------------------------
class UserRead(ORMModel):
    id: int
    name: str
    email: str
    role: Role
    is_captain_active: bool
    rating_average: float
    rating_count: int
    earnings_total: int
    earnings_available: int
    earnings_withdrawn: int


# ------------------------------------------------------------------
# Payments
# ------------------------------------------------------------------
class PaymentOrderCreate(BaseModel):
    ride_id: int


class PaymentOrderRead(BaseModel):
    ride_id: int
    order_id: str
    amount: int
    currency: str


class PaymentVerify(BaseModel):
    ride_id: int
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class PaymentFailed(BaseModel):
    ride_id: int
    razorpay_payment_id: Optional[str] = None


class PaymentHistoryPage(BaseModel):
    payments: List[RideRead]
    page: int
    pages: int
    count: int


class EarningsRead(ORMModel):
    total: int
    available: int
    withdrawn: int
    today_earnings: int
    today_rides: int
    total_rides: int


class PayoutCreate(BaseModel):
    amount: int = Field(..., ge=1)


class PayoutRead(ORMModel):
    amount: int
    status: str
    estimated_transfer_at: datetime
