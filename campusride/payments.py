# campusride/payments.py
"""Payment reconciliation.

The gateway hands the client an order id, then a payment id and a signature
once checkout succeeds. The signature is an HMAC-SHA256 of
``"<order_id>|<payment_id>"`` keyed with the merchant secret. A ride is
marked paid at most once; captain earnings are credited on completion, never
here, because cash rides have no gateway callback. Payouts move a verified
captain's available balance into withdrawn.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import func, or_, update
from sqlmodel import select

from . import lifecycle
from .collaborators import PaymentGateway
from .errors import (
    ConflictError,
    DependencyError,
    ForbiddenError,
    InvalidTransitionError,
    SignatureInvalidError,
    ValidationError,
)
from .fare import captain_earnings
from .models import PaymentStatus, Ride, RideStatus, User
from .service import RideService

logger = logging.getLogger(__name__)

CURRENCY = "INR"
# a charge that lands after the ride is gone is recorded and refunded at once
UNPAYABLE_STATUSES = (RideStatus.cancelled_rider, RideStatus.cancelled_captain, RideStatus.expired)
SETTLED = (PaymentStatus.completed, PaymentStatus.refunded)
MIN_PAYOUT = 100
PAYOUT_SETTLEMENT = timedelta(days=2)


def sign(secret: str, order_id: str, payment_id: str) -> str:
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    expected = sign(secret, order_id, payment_id)
    return hmac.compare_digest(expected, (signature or "").strip().lower())


@dataclass(frozen=True)
class EarningsSummary:
    total: int
    available: int
    withdrawn: int
    today_earnings: int
    today_rides: int
    total_rides: int


@dataclass(frozen=True)
class Payout:
    amount: int
    status: str
    estimated_transfer_at: datetime


class PaymentReconciler(RideService):
    def __init__(self, *args, gateway: PaymentGateway, **kwargs):
        super().__init__(*args, **kwargs)
        self.gateway = gateway

    @property
    def secret(self) -> str:
        if not self.settings.gateway_secret:
            raise DependencyError("payment gateway secret is not configured")
        return self.settings.gateway_secret

    def create_order(self, ride_id: int, rider_id: int) -> Ride:
        ride = self.get_ride(ride_id)
        if ride.rider_id != rider_id:
            raise ForbiddenError("only the rider pays for a ride")
        if ride.payment_status in SETTLED:
            raise ConflictError(f"payment for ride {ride_id} is already {ride.payment_status.value}")
        if ride.status in UNPAYABLE_STATUSES:
            raise InvalidTransitionError(f"ride {ride_id} is {ride.status.value}")

        try:
            order_id = self.gateway.create_order(
                amount=ride.fare_final_amount * 100,  # paise
                currency=CURRENCY,
                receipt=f"ride_{ride.id}",
                notes={"ride_id": ride.id, "rider_id": rider_id},
            )
        except Exception as exc:
            raise DependencyError(f"payment gateway failed: {exc}") from exc

        with self.store.sessions() as session:
            result = session.connection().execute(
                update(Ride)
                .where(Ride.id == ride_id, Ride.payment_status.not_in(SETTLED))
                .values(gateway_order_id=order_id)
            )
            if result.rowcount != 1:
                raise ConflictError(f"payment for ride {ride_id} changed while creating the order")
            session.commit()
            return self.store.get_ride(session, ride_id)

    def confirm_payment(self, ride_id: int, order_id: str, payment_id: str, signature: str) -> Ride:
        if not order_id or not payment_id:
            raise ValidationError("order id and payment id are required")
        if not verify_signature(self.secret, order_id, payment_id, signature):
            logger.warning("invalid payment signature for ride %s (payment %s)", ride_id, payment_id)
            raise SignatureInvalidError("invalid payment signature")

        for _ in range(self.store.attempts):
            now = self.clock()
            with self.store.sessions() as session:
                ride = self.store.get_ride(session, ride_id)
                overdue = lifecycle.is_overdue(ride, now)
            if overdue:
                # the sweep has not reached it yet; expire first so the charge lands as a refund
                self.expire_ride(ride_id, now)
                continue

            with self.store.sessions() as session:
                ride = self.store.get_ride(session, ride_id)
                if ride.gateway_payment_id == payment_id and ride.payment_status in SETTLED:
                    # gateway retries and client double-submits land here
                    return ride
                if ride.payment_status in SETTLED:
                    raise ConflictError(f"ride {ride_id} was already paid by another payment")
                if ride.gateway_order_id and ride.gateway_order_id != order_id:
                    raise ValidationError(f"order {order_id} does not belong to ride {ride_id}")

                status = PaymentStatus.refunded if ride.status in UNPAYABLE_STATUSES else PaymentStatus.completed
                result = session.connection().execute(
                    update(Ride)
                    .where(
                        Ride.id == ride_id,
                        Ride.status == ride.status,
                        Ride.payment_status == ride.payment_status,
                    )
                    .values(
                        payment_status=status,
                        gateway_order_id=order_id,
                        gateway_payment_id=payment_id,
                        gateway_signature=signature,
                        paid_at=now,
                    )
                )
                if result.rowcount == 1:
                    session.commit()
                    ride = self.store.get_ride(session, ride_id)
                    break
                session.rollback()
        else:
            raise ConflictError(f"ride {ride_id} is changing concurrently; try again")

        logger.info("ride %s payment %s -> %s", ride_id, payment_id, ride.payment_status.value)
        self.notify(ride.rider_id, "payment_confirmed", {
            "ride_id": ride.id,
            "payment_status": ride.payment_status.value,
        })
        return ride

    def fail_payment(self, ride_id: int, payment_id: Optional[str] = None) -> Ride:
        with self.store.sessions() as session:
            result = session.connection().execute(
                update(Ride)
                .where(Ride.id == ride_id, Ride.payment_status == PaymentStatus.pending)
                .values(payment_status=PaymentStatus.failed, gateway_payment_id=payment_id)
            )
            if result.rowcount != 1:
                ride = self.store.get_ride(session, ride_id)
                raise InvalidTransitionError(f"payment for ride {ride_id} is {ride.payment_status.value}")
            session.commit()
            logger.info("ride %s payment %s failed", ride_id, payment_id)
            return self.store.get_ride(session, ride_id)

    # ---------------- captain earnings ----------------
    def _verified_captain(self, session, captain_id: int) -> User:
        captain = self.store.get_user(session, captain_id)
        if not captain.captain_verified:
            raise ForbiddenError("captain verification required")
        return captain

    def earnings_summary(self, captain_id: int) -> EarningsSummary:
        now = self.clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with self.store.sessions() as session:
            captain = self._verified_captain(session, captain_id)
            completed = session.exec(
                select(Ride)
                .where(Ride.captain_id == captain_id)
                .where(Ride.status == RideStatus.completed)
            ).all()
        today = [r for r in completed if r.completed_at and r.completed_at >= midnight]
        return EarningsSummary(
            total=captain.earnings_total,
            available=captain.earnings_available,
            withdrawn=captain.earnings_withdrawn,
            today_earnings=sum(captain_earnings(r.fare_base) for r in today),
            today_rides=len(today),
            total_rides=len(completed),
        )

    def request_payout(self, captain_id: int, amount: int) -> Payout:
        if amount is None or amount < MIN_PAYOUT:
            raise ValidationError(f"minimum payout amount is {MIN_PAYOUT} {CURRENCY}")
        now = self.clock()
        with self.store.sessions() as session:
            self._verified_captain(session, captain_id)
            result = session.connection().execute(
                update(User)
                .where(User.id == captain_id, User.earnings_available >= amount)
                .values(
                    earnings_available=User.earnings_available - amount,
                    earnings_withdrawn=User.earnings_withdrawn + amount,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise ValidationError("insufficient balance")
            session.commit()
        logger.info("captain %s requested a payout of %s", captain_id, amount)
        return Payout(amount=amount, status="processing", estimated_transfer_at=now + PAYOUT_SETTLEMENT)

    def payment_history(self, user_id: int, page: int = 1, limit: int = 10) -> Tuple[List[Ride], int]:
        """Paid rides the user took part in, newest payment first, plus the total count."""
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be positive")
        party = or_(Ride.rider_id == user_id, Ride.captain_id == user_id)
        with self.store.sessions() as session:
            total = session.exec(
                select(func.count()).select_from(Ride)
                .where(party)
                .where(Ride.payment_status == PaymentStatus.completed)
            ).one()
            rides = session.exec(
                select(Ride)
                .where(party)
                .where(Ride.payment_status == PaymentStatus.completed)
                .order_by(Ride.paid_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
        return list(rides), total

