# campusride/fare.py
"""Fare calculation.

Pure functions only: the same distance and vehicle profile always price the
same, so a fare quoted at request time can be recomputed in tests and audits.
"""
import math
from dataclasses import dataclass, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from .errors import ValidationError
from .models import DEFAULT_RATES, VehicleType

PLATFORM_FEE_RATE = Decimal("0.10")
GST_RATE = Decimal("0.18")
CAPTAIN_SHARE = Decimal("0.90")


@dataclass(frozen=True)
class VehicleProfile:
    base_fare: float
    per_km_rate: float


DEFAULT_PRICING: Dict[VehicleType, VehicleProfile] = {
    vehicle_type: VehicleProfile(base_fare=base_fare, per_km_rate=per_km_rate)
    for vehicle_type, (base_fare, per_km_rate) in DEFAULT_RATES.items()
}


@dataclass(frozen=True)
class FareBreakdown:
    base_fare: int
    platform_fee: int
    gst: int
    discount: int
    total: int
    final_amount: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def round_currency(value) -> int:
    """Round half-up to a whole currency unit (2.5 -> 3, not banker's 2)."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def profile_for(vehicle_type: VehicleType) -> VehicleProfile:
    return DEFAULT_PRICING[VehicleType(vehicle_type)]


def compute_fare(distance_km: float, profile: VehicleProfile, discount: float = 0) -> FareBreakdown:
    if distance_km is None or not math.isfinite(distance_km) or distance_km < 0:
        raise ValidationError("distance must be a finite, non-negative number")
    if profile.base_fare < 0 or profile.per_km_rate < 0:
        raise ValidationError("vehicle pricing must be non-negative")

    raw = Decimal(str(profile.base_fare)) + Decimal(str(distance_km)) * Decimal(str(profile.per_km_rate))
    base_fare = round_currency(raw)
    platform_fee = round_currency(base_fare * PLATFORM_FEE_RATE)
    gst = round_currency(platform_fee * GST_RATE)
    total = base_fare + platform_fee + gst

    discount = min(max(round_currency(discount or 0), 0), total)
    return FareBreakdown(
        base_fare=base_fare,
        platform_fee=platform_fee,
        gst=gst,
        discount=discount,
        total=total,
        final_amount=total - discount,
    )


def captain_earnings(base_fare: int) -> int:
    # platform fee and gst stay with the platform
    return round_currency(base_fare * CAPTAIN_SHARE)
