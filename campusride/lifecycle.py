# campusride/lifecycle.py
"""Ride state machine.

Each function inspects a snapshot of a ride and returns the ``Transition`` it
would make, or raises. Nothing here touches the database: the service layer
commits a transition with a conditional update on ``source`` and ``expect``
so that a ride that changed in the meantime is never overwritten.

    requesting --accept--> accepted --arrive--> arrived --start(otp)--> started --complete--> completed
    requesting --expire--> expired
    requesting/accepted --cancel(rider)--> cancelled_rider
    accepted/arrived/started --cancel(captain)--> cancelled_captain
"""
import hmac
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .errors import InvalidTransitionError, OTPMismatchError, StaleRequestError, ValidationError
from .models import PaymentStatus, Ride, RideStatus, Role

CANCELLABLE_BY = {
    Role.rider: (RideStatus.requesting, RideStatus.accepted),
    Role.captain: (RideStatus.accepted, RideStatus.arrived, RideStatus.started),
}
CANCELLED_STATUS = {
    Role.rider: RideStatus.cancelled_rider,
    Role.captain: RideStatus.cancelled_captain,
}


@dataclass(frozen=True)
class Transition:
    event: str
    source: RideStatus
    target: RideStatus
    changes: Dict[str, Any]
    # column values that must be unchanged when the update lands
    expect: Dict[str, Any] = field(default_factory=dict)


def generate_otp(rng: random.Random) -> str:
    return str(rng.randint(1000, 9999))


def is_overdue(ride: Ride, now: datetime) -> bool:
    return ride.status == RideStatus.requesting and now > ride.expires_at


def _require(ride: Ride, event: str, *allowed: RideStatus) -> None:
    if ride.status not in allowed:
        raise InvalidTransitionError(f"cannot {event} a ride that is {ride.status.value}")


def accept(ride: Ride, captain_id: int, vehicle_id: int, otp: str, now: datetime) -> Transition:
    if ride.status != RideStatus.requesting or ride.captain_id is not None:
        raise StaleRequestError(f"ride {ride.id} is no longer open ({ride.status.value})")
    if now > ride.expires_at:
        raise StaleRequestError(f"ride {ride.id} offer window has closed")
    return Transition(
        event="accept",
        source=RideStatus.requesting,
        target=RideStatus.accepted,
        changes={
            "status": RideStatus.accepted,
            "captain_id": captain_id,
            "vehicle_id": vehicle_id,
            "otp": otp,
            "otp_verified": False,
            "accepted_at": now,
        },
        expect={"captain_id": None},
    )


def expire(ride: Ride, now: datetime) -> Transition:
    _require(ride, "expire", RideStatus.requesting)
    if not now > ride.expires_at:
        raise InvalidTransitionError(f"ride {ride.id} offer window is still open")
    changes = {"status": RideStatus.expired}
    if ride.payment_status == PaymentStatus.completed:
        changes["payment_status"] = PaymentStatus.refunded
    return Transition(
        event="expire",
        source=RideStatus.requesting,
        target=RideStatus.expired,
        changes=changes,
        expect={"payment_status": ride.payment_status},
    )


def cancel(ride: Ride, by: Role, reason: Optional[str], now: datetime) -> Transition:
    if ride.status == RideStatus.completed:
        raise InvalidTransitionError("cannot cancel a completed ride")
    _require(ride, f"cancel as {by.value}", *CANCELLABLE_BY[by])

    target = CANCELLED_STATUS[by]
    changes = {
        "status": target,
        "cancellation_reason": reason,
        "cancelled_at": now,
    }
    if ride.payment_status == PaymentStatus.completed:
        changes["payment_status"] = PaymentStatus.refunded
    return Transition(
        event="cancel",
        source=ride.status,
        target=target,
        changes=changes,
        expect={"payment_status": ride.payment_status},
    )


def arrive(ride: Ride, now: datetime) -> Transition:
    _require(ride, "arrive", RideStatus.accepted)
    if ride.captain_id is None:
        raise InvalidTransitionError("no captain assigned")
    return Transition(
        event="arrive",
        source=RideStatus.accepted,
        target=RideStatus.arrived,
        changes={"status": RideStatus.arrived, "arrived_at": now},
    )


def start(ride: Ride, code: str, now: datetime) -> Transition:
    _require(ride, "start", RideStatus.arrived)
    if not ride.otp or not hmac.compare_digest(str(code or "").strip(), ride.otp):
        raise OTPMismatchError("incorrect OTP")
    return Transition(
        event="start",
        source=RideStatus.arrived,
        target=RideStatus.started,
        changes={"status": RideStatus.started, "otp_verified": True, "started_at": now},
    )


def complete(ride: Ride, now: datetime) -> Transition:
    _require(ride, "complete", RideStatus.started)
    return Transition(
        event="complete",
        source=RideStatus.started,
        target=RideStatus.completed,
        changes={"status": RideStatus.completed, "completed_at": now},
    )


def rate(ride: Ride, by: Role, rating: int, review: Optional[str], now: datetime) -> Transition:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("rating must be an integer from 1 to 5")
    _require(ride, "rate", RideStatus.completed)

    column = f"{by.value}_rating"
    if getattr(ride, column) is not None:
        raise InvalidTransitionError(f"ride {ride.id} was already rated by the {by.value}")
    return Transition(
        event="rate",
        source=RideStatus.completed,
        target=RideStatus.completed,
        changes={
            column: rating,
            f"{by.value}_review": review,
            f"{by.value}_rated_at": now,
        },
        expect={column: None},
    )
