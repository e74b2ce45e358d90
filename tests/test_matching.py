import random
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest
from sqlmodel import func, select

from campusride import lifecycle
from campusride.errors import (
    ConflictError,
    DependencyError,
    ForbiddenError,
    NotFoundError,
    StaleRequestError,
    ValidationError,
)
from campusride.models import Ride, RideStatus, VehicleStatus, VehicleType
from tests.conftest import (
    CAMPUS,
    NOW,
    dropoff_place,
    make_captain,
    make_rider,
    north_of,
    pickup_place,
    request,
    vehicle_of,
)


def ride_count(core):
    with core.sessions() as session:
        return session.exec(select(func.count(Ride.id))).one()


def test_request_creates_priced_ride_and_offers_nearest_first(core, notifier):
    far = make_captain(core, "Far", north_of(CAMPUS, 3000))
    near = make_captain(core, "Near", north_of(CAMPUS, 200))
    mid = make_captain(core, "Mid", north_of(CAMPUS, 1200))
    make_captain(core, "Outside", north_of(CAMPUS, 9000))
    rider = make_rider(core)

    ride = request(core, rider)

    assert ride.status == RideStatus.requesting
    assert ride.captain_id is None
    assert (ride.fare_base, ride.fare_platform_fee, ride.fare_gst, ride.fare_total) == (28, 3, 1, 32)
    assert ride.fare_final_amount == 32
    assert ride.distance_km == 4.2
    assert ride.expires_at == NOW + timedelta(minutes=5)

    notified = core.matching.notified_captains(ride.id)
    assert [n.captain_id for n in notified] == [near.id, mid.id, far.id]
    assert all(n.notified_at == NOW and not n.viewed for n in notified)
    assert [user_id for user_id, _ in notifier.of("ride_offer")] == [near.id, mid.id, far.id]


def test_offers_respect_vehicle_class_capacity_and_documents(core):
    bike = make_captain(core, "Bike", north_of(CAMPUS, 100))
    make_captain(core, "Car", north_of(CAMPUS, 150), vehicle_type=VehicleType.car, capacity=4)
    make_captain(core, "Lapsed", north_of(CAMPUS, 200), docs_valid_until=NOW - timedelta(days=1))
    pair = make_captain(core, "Pair", north_of(CAMPUS, 300), capacity=2)
    rider = make_rider(core)

    solo = request(core, rider)
    assert [n.captain_id for n in core.matching.notified_captains(solo.id)] == [bike.id, pair.id]

    core.rides.cancel_ride(solo.id, rider.id)
    two = request(core, rider, passenger_count=2)
    assert [n.captain_id for n in core.matching.notified_captains(two.id)] == [pair.id]


def test_offers_are_capped(core, settings):
    for i in range(settings.max_notified_captains + 3):
        make_captain(core, f"Captain{i}", north_of(CAMPUS, 50 + i * 10))
    ride = request(core, make_rider(core))

    assert len(core.matching.notified_captains(ride.id)) == settings.max_notified_captains


def test_rider_with_active_ride_gets_conflict(core):
    rider = make_rider(core)
    request(core, rider)

    with pytest.raises(ConflictError):
        request(core, rider)
    assert ride_count(core) == 1


def test_overdue_request_does_not_block_a_new_one(core, clock):
    rider = make_rider(core)
    first = request(core, rider)
    clock.advance(minutes=6)

    second = request(core, rider)

    assert core.rides.get_ride(first.id).status == RideStatus.expired
    assert second.status == RideStatus.requesting


def test_routing_failure_leaves_nothing_behind(core, router):
    router.fail = True
    with pytest.raises(DependencyError):
        request(core, make_rider(core))
    assert ride_count(core) == 0


def test_request_validation(core):
    rider = make_rider(core)
    with pytest.raises(ValidationError):
        request(core, rider, passenger_count=0)
    with pytest.raises(NotFoundError):
        core.matching.request_ride(9999, pickup_place(), dropoff_place())


def test_failed_notification_does_not_undo_request(core, notifier):
    make_captain(core, "Near", north_of(CAMPUS, 100))
    notifier.fail = True

    ride = request(core, make_rider(core))

    assert core.rides.get_ride(ride.id).status == RideStatus.requesting
    assert len(core.matching.notified_captains(ride.id)) == 1


def test_accept_assigns_captain_vehicle_and_otp(core, notifier):
    captain = make_captain(core, "Ravi", north_of(CAMPUS, 100))
    rider = make_rider(core)
    ride = request(core, rider)

    accepted = core.matching.accept_ride(ride.id, captain.id)

    assert accepted.status == RideStatus.accepted
    assert accepted.captain_id == captain.id
    assert accepted.vehicle_id == vehicle_of(core, captain.id).id
    assert accepted.accepted_at == NOW
    assert accepted.otp == lifecycle.generate_otp(random.Random(42))
    assert vehicle_of(core, captain.id).current_status == VehicleStatus.on_ride
    assert core.geo.get(captain.id).available is False

    [(rider_id, payload)] = notifier.of("ride_accepted")
    assert rider_id == rider.id
    assert payload["otp"] == accepted.otp


def test_concurrent_accepts_have_exactly_one_winner(core):
    captains = [make_captain(core, f"Captain{i}", north_of(CAMPUS, 100 + i * 50)) for i in range(6)]
    ride = request(core, make_rider(core))

    def attempt(captain):
        try:
            return core.matching.accept_ride(ride.id, captain.id)
        except StaleRequestError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(captains)) as pool:
        outcomes = list(pool.map(attempt, captains))

    winners = [o for o in outcomes if isinstance(o, Ride)]
    losers = [o for o in outcomes if isinstance(o, StaleRequestError)]
    assert len(winners) == 1
    assert len(losers) == len(captains) - 1

    final = core.rides.get_ride(ride.id)
    assert final.status == RideStatus.accepted
    assert final.captain_id == winners[0].captain_id
    assert final.vehicle_id == vehicle_of(core, final.captain_id).id
    on_ride = [c for c in captains if vehicle_of(core, c.id).current_status == VehicleStatus.on_ride]
    assert [c.id for c in on_ride] == [final.captain_id]
    # every captain stays in the offer log
    assert {n.captain_id for n in core.matching.notified_captains(ride.id)} == {c.id for c in captains}


def test_accept_after_deadline_expires_ride(core, clock, notifier):
    captain = make_captain(core, "Late", north_of(CAMPUS, 100))
    rider = make_rider(core)
    ride = request(core, rider)
    clock.advance(minutes=5, seconds=1)

    with pytest.raises(StaleRequestError):
        core.matching.accept_ride(ride.id, captain.id)

    final = core.rides.get_ride(ride.id)
    assert final.status == RideStatus.expired
    assert final.captain_id is None
    assert vehicle_of(core, captain.id).current_status == VehicleStatus.available
    assert [uid for uid, _ in notifier.of("ride_expired")] == [rider.id]


def test_accept_racing_the_sweep_never_accepts_overdue_ride(core, clock):
    captains = [make_captain(core, f"Captain{i}", north_of(CAMPUS, 100 + i * 50)) for i in range(3)]
    ride = request(core, make_rider(core))
    clock.advance(minutes=5, seconds=1)

    def attempt(captain):
        try:
            core.matching.accept_ride(ride.id, captain.id)
            return "accepted"
        except StaleRequestError:
            return "stale"

    with ThreadPoolExecutor(max_workers=4) as pool:
        sweep = pool.submit(core.matching.expire_overdue)
        outcomes = list(pool.map(attempt, captains))
        sweep.result()

    assert outcomes == ["stale"] * 3
    assert core.rides.get_ride(ride.id).status == RideStatus.expired


def test_accept_on_cancelled_ride_is_stale(core):
    captain = make_captain(core, "Ravi", north_of(CAMPUS, 100))
    rider = make_rider(core)
    ride = request(core, rider)
    core.rides.cancel_ride(ride.id, rider.id, "found a friend")

    with pytest.raises(StaleRequestError):
        core.matching.accept_ride(ride.id, captain.id)
    assert core.rides.get_ride(ride.id).captain_id is None


def test_captain_with_active_ride_cannot_take_another(core):
    captain = make_captain(core, "Ravi", north_of(CAMPUS, 100))
    first = request(core, make_rider(core, "Asha"))
    second = request(core, make_rider(core, "Bela"))
    core.matching.accept_ride(first.id, captain.id)

    with pytest.raises(ConflictError):
        core.matching.accept_ride(second.id, captain.id)
    assert core.rides.get_ride(second.id).status == RideStatus.requesting


def test_riders_and_offline_captains_cannot_accept(core):
    rider = make_rider(core)
    offline = make_captain(core, "Offline", online=False)
    ride = request(core, rider)

    with pytest.raises(ForbiddenError):
        core.matching.accept_ride(ride.id, rider.id)
    with pytest.raises(ForbiddenError):
        core.matching.accept_ride(ride.id, offline.id)


def test_expire_overdue_sweeps_only_past_deadline(core, clock, notifier):
    rider_a, rider_b = make_rider(core, "Asha"), make_rider(core, "Bela")
    old = request(core, rider_a)
    clock.advance(minutes=3)
    young = request(core, rider_b)
    clock.advance(minutes=2, seconds=30)

    assert core.matching.expire_overdue() == [old.id]
    assert core.rides.get_ride(young.id).status == RideStatus.requesting
    assert core.matching.expire_overdue() == []
    assert [uid for uid, _ in notifier.of("ride_expired")] == [rider_a.id]


def test_mark_viewed_records_first_view(core, clock):
    captain = make_captain(core, "Ravi", north_of(CAMPUS, 100))
    ride = request(core, make_rider(core))
    clock.advance(seconds=20)

    entry = core.matching.mark_viewed(ride.id, captain.id)
    assert entry.viewed is True
    assert entry.viewed_at == NOW + timedelta(seconds=20)

    clock.advance(seconds=20)
    assert core.matching.mark_viewed(ride.id, captain.id).viewed_at == NOW + timedelta(seconds=20)

    with pytest.raises(NotFoundError):
        core.matching.mark_viewed(ride.id, 9999)


def test_nearby_requests_lists_open_rides_oldest_first(core, clock):
    first = request(core, make_rider(core, "Asha"))
    clock.advance(seconds=30)
    second = request(core, make_rider(core, "Bela"))

    found = core.matching.nearby_requests(north_of(CAMPUS, 500), 2000)
    assert [r.id for r in found] == [first.id, second.id]
    assert core.matching.nearby_requests(north_of(CAMPUS, 9000), 2000) == []

    clock.advance(minutes=5)
    assert [r.id for r in core.matching.nearby_requests(CAMPUS, 2000)] == [second.id]


def test_cancel_racing_accept_has_one_outcome(core):
    captain = make_captain(core, "Ravi", north_of(CAMPUS, 100))
    rider = make_rider(core)

    for _ in range(5):
        ride = request(core, rider)

        def accept():
            try:
                return core.matching.accept_ride(ride.id, captain.id)
            except StaleRequestError as exc:
                return exc

        with ThreadPoolExecutor(max_workers=2) as pool:
            accepted = pool.submit(accept)
            cancelled = pool.submit(core.rides.cancel_ride, ride.id, rider.id, "changed plans")
            accept_outcome, cancel_outcome = accepted.result(), cancelled.result()

        assert isinstance(accept_outcome, (Ride, StaleRequestError))
        assert cancel_outcome.status == RideStatus.cancelled_rider

        final = core.rides.get_ride(ride.id)
        assert final.status == RideStatus.cancelled_rider
        if isinstance(accept_outcome, Ride):
            # accept won; the cancel then applied to the accepted ride
            assert final.captain_id == captain.id
            assert final.accepted_at is not None
        else:
            assert final.captain_id is None
        assert vehicle_of(core, captain.id).current_status == VehicleStatus.available
