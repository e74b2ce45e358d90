# campusride/main.py
import logging
import math
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import Caller, get_current_user
from .core import RideCore
from .errors import CampusRideError
from .models import RideStatus
from .geo import Point
from .payments import CURRENCY
from . import schemas as s

APP_VERSION = "0.1.0"

logger = logging.getLogger(__name__)


def create_app(core: Optional[RideCore] = None, run_sweeper: bool = True) -> FastAPI:
    core = core or RideCore()
    logging.basicConfig(level=core.settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        restored = core.captains.load_geo_index()
        logger.info("geo index restored with %d captains", restored)
        if run_sweeper:
            core.sweeper.start()
        try:
            yield
        finally:
            core.sweeper.stop()

    app = FastAPI(title="Campus Ride API", version=APP_VERSION, lifespan=lifespan)
    app.state.core = core

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=core.settings.origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CampusRideError)
    async def _core_error(request: Request, exc: CampusRideError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "error": type(exc).__name__},
        )

    # ---------------- Health ----------------
    @app.get("/api/health")
    def health():
        return {"status": "ok", "version": APP_VERSION, "captains_online": len(core.geo)}

    # ---------------- Captains --------------
    @app.post("/api/captains/mode", response_model=s.UserRead)
    def captain_mode(
        payload: s.CaptainMode,
        caller: Caller = Depends(get_current_user),
    ):
        user = core.captains.set_captain_mode(caller.user_id, payload.active)
        return s.UserRead.model_validate(user)

    @app.post("/api/captains/location", response_model=s.UserRead)
    def captain_location(
        payload: s.LocationUpdate,
        caller: Caller = Depends(get_current_user),
    ):
        user = core.captains.update_location(caller.user_id, payload.to_point(), payload.address)
        return s.UserRead.model_validate(user)

    @app.get("/api/captains/requests", response_model=List[s.RideRead])
    def nearby_requests(
        lng: float,
        lat: float,
        radius: Optional[float] = None,
        caller: Caller = Depends(get_current_user),
    ):
        rides = core.matching.nearby_requests(Point(lng=lng, lat=lat), radius)
        return [s.RideRead.model_validate(r) for r in rides]

    # ---------------- Rides -----------------
    @app.post("/api/rides", response_model=s.RideRead, status_code=201)
    def request_ride(
        payload: s.RideCreate,
        caller: Caller = Depends(get_current_user),
    ):
        ride = core.matching.request_ride(
            caller.user_id,
            payload.pickup.to_place(),
            payload.dropoff.to_place(),
            passenger_count=payload.passenger_count,
            vehicle_type=payload.vehicle_type,
            payment_method=payload.payment_method,
            special_requests=payload.special_requests,
        )
        return s.RideRead.model_validate(ride)

    @app.get("/api/rides/active", response_model=Optional[s.RideRead])
    def active_ride(
        caller: Caller = Depends(get_current_user),
    ):
        ride = core.rides.find_active_ride(caller.user_id, caller.role)
        return s.RideRead.model_validate(ride) if ride else None

    @app.get("/api/rides/{ride_id}", response_model=s.RideRead)
    def get_ride(
        ride_id: int,
        caller: Caller = Depends(get_current_user),
    ):
        ride = core.rides.get_ride(ride_id)
        if ride.status != RideStatus.requesting:
            core.rides.role_in(ride, caller.user_id)
        return s.RideRead.model_validate(ride)

    @app.get("/api/rides/{ride_id}/notified", response_model=List[s.NotifiedCaptainRead])
    def notified_captains(
        ride_id: int,
        caller: Caller = Depends(get_current_user),
    ):
        core.rides.role_in(core.rides.get_ride(ride_id), caller.user_id)
        return [s.NotifiedCaptainRead.model_validate(n) for n in core.matching.notified_captains(ride_id)]

    @app.post("/api/rides/{ride_id}/view", response_model=s.NotifiedCaptainRead)
    def view_offer(
        ride_id: int,
        caller: Caller = Depends(get_current_user),
    ):
        entry = core.matching.mark_viewed(ride_id, caller.user_id)
        return s.NotifiedCaptainRead.model_validate(entry)

    @app.post("/api/rides/{ride_id}/accept", response_model=s.RideRead)
    def accept_ride(
        ride_id: int,
        caller: Caller = Depends(get_current_user),
    ):
        return s.RideRead.model_validate(core.matching.accept_ride(ride_id, caller.user_id))

    @app.post("/api/rides/{ride_id}/arrive", response_model=s.RideRead)
    def arrive(
        ride_id: int,
        caller: Caller = Depends(get_current_user),
    ):
        return s.RideRead.model_validate(core.rides.arrive(ride_id, caller.user_id))

    @app.post("/api/rides/{ride_id}/start", response_model=s.RideRead)
    def start_ride(
        ride_id: int,
        payload: s.RideStart,
        caller: Caller = Depends(get_current_user),
    ):
        return s.RideRead.model_validate(core.rides.start_ride(ride_id, caller.user_id, payload.otp))

    @app.post("/api/rides/{ride_id}/complete", response_model=s.RideRead)
    def complete_ride(
        ride_id: int,
        caller: Caller = Depends(get_current_user),
    ):
        return s.RideRead.model_validate(core.rides.complete_ride(ride_id, caller.user_id))

    @app.post("/api/rides/{ride_id}/cancel", response_model=s.RideRead)
    def cancel_ride(
        ride_id: int,
        payload: s.RideCancel,
        caller: Caller = Depends(get_current_user),
    ):
        return s.RideRead.model_validate(core.rides.cancel_ride(ride_id, caller.user_id, payload.reason))

    @app.post("/api/rides/{ride_id}/rate", response_model=s.RideRead)
    def rate_ride(
        ride_id: int,
        payload: s.RatingCreate,
        caller: Caller = Depends(get_current_user),
    ):
        ride = core.rides.rate_ride(ride_id, caller.user_id, payload.rating, payload.review)
        return s.RideRead.model_validate(ride)

    # ---------------- Payments --------------
    @app.post("/api/payments/order", response_model=s.PaymentOrderRead)
    def create_order(
        payload: s.PaymentOrderCreate,
        caller: Caller = Depends(get_current_user),
    ):
        ride = core.payments.create_order(payload.ride_id, caller.user_id)
        return s.PaymentOrderRead(
            ride_id=ride.id,
            order_id=ride.gateway_order_id,
            amount=ride.fare_final_amount * 100,
            currency=CURRENCY,
        )

    @app.post("/api/payments/verify", response_model=s.RideRead)
    def verify_payment(
        payload: s.PaymentVerify,
        caller: Caller = Depends(get_current_user),
    ):
        core.rides.role_in(core.rides.get_ride(payload.ride_id), caller.user_id)
        ride = core.payments.confirm_payment(
            payload.ride_id,
            payload.razorpay_order_id,
            payload.razorpay_payment_id,
            payload.razorpay_signature,
        )
        return s.RideRead.model_validate(ride)

    @app.post("/api/payments/failed", response_model=s.RideRead)
    def payment_failed(
        payload: s.PaymentFailed,
        caller: Caller = Depends(get_current_user),
    ):
        core.rides.role_in(core.rides.get_ride(payload.ride_id), caller.user_id)
        return s.RideRead.model_validate(core.payments.fail_payment(payload.ride_id, payload.razorpay_payment_id))

    @app.get("/api/payments/history", response_model=s.PaymentHistoryPage)
    def payment_history(
        page: int = 1,
        limit: int = 10,
        caller: Caller = Depends(get_current_user),
    ):
        rides, total = core.payments.payment_history(caller.user_id, page, limit)
        return s.PaymentHistoryPage(
            payments=[s.RideRead.model_validate(r) for r in rides],
            page=page,
            pages=math.ceil(total / limit),
            count=len(rides),
        )

    @app.get("/api/payments/earnings", response_model=s.EarningsRead)
    def earnings(
        caller: Caller = Depends(get_current_user),
    ):
        return s.EarningsRead.model_validate(core.payments.earnings_summary(caller.user_id))

    @app.post("/api/payments/payout", response_model=s.PayoutRead)
    def request_payout(
        payload: s.PayoutCreate,
        caller: Caller = Depends(get_current_user),
    ):
        return s.PayoutRead.model_validate(core.payments.request_payout(caller.user_id, payload.amount))

    return app
