# escrow_engine/domain/pricing.py

"""
Price computation for bookings.

Everything here is pure: the same rate card, trip and request time always
produce the same breakdown. Amounts are integer minor units (cents).
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Dict, Tuple

from escrow_engine.domain.categories import ServiceCategory
from escrow_engine.domain.exceptions import InputValidationError

_CENT = Decimal("1")

MIN_FEE_RATE = Decimal("0.05")
MAX_FEE_RATE = Decimal("0.25")


@dataclass(frozen=True)
class RateCard:
    base_cents: int
    per_mile_cents: int
    per_minute_cents: int = 0


@dataclass(frozen=True)
class PricingConfig:
    category_multipliers: Dict[ServiceCategory, Decimal] = field(
        default_factory=lambda: {
            ServiceCategory.FOOD_DELIVERY: Decimal("1.0"),
            ServiceCategory.PACKAGE_DELIVERY: Decimal("1.0"),
            ServiceCategory.MOVING: Decimal("1.25"),
            ServiceCategory.ERRANDS: Decimal("1.0"),
        }
    )
    fee_rates: Dict[ServiceCategory, Decimal] = field(
        default_factory=lambda: {
            ServiceCategory.FOOD_DELIVERY: Decimal("0.15"),
            ServiceCategory.PACKAGE_DELIVERY: Decimal("0.12"),
            ServiceCategory.MOVING: Decimal("0.10"),
            ServiceCategory.ERRANDS: Decimal("0.18"),
        }
    )
    min_fee_cents: int = 100
    max_fee_cents: int = 5000
    peak_multiplier: Decimal = Decimal("1.2")
    weekend_multiplier: Decimal = Decimal("1.1")
    # Half-open local-hour windows: [start, end)
    peak_windows: Tuple[Tuple[int, int], ...] = ((7, 10), (16, 20))
    utc_offset_minutes: int = 0

    def __post_init__(self) -> None:
        for category, rate in self.fee_rates.items():
            if not MIN_FEE_RATE <= rate <= MAX_FEE_RATE:
                raise ValueError(
                    f"Fee rate {rate} for {category.value} outside "
                    f"[{MIN_FEE_RATE}, {MAX_FEE_RATE}]"
                )
        if self.min_fee_cents > self.max_fee_cents:
            raise ValueError("min_fee_cents must not exceed max_fee_cents")


@dataclass(frozen=True)
class PriceBreakdown:
    base_cents: int
    variable_cents: int
    multiplier: Decimal
    subtotal_cents: int
    platform_fee_cents: int
    total_cents: int

    def __post_init__(self) -> None:
        if self.total_cents != self.subtotal_cents + self.platform_fee_cents:
            raise ValueError("total_cents must equal subtotal_cents + platform_fee_cents")
        if self.total_cents < 0:
            raise ValueError("total_cents must be non-negative")


def _round_cents(amount: Decimal) -> int:
    return int(amount.quantize(_CENT, rounding=ROUND_HALF_EVEN))


def _local_time(moment: datetime, utc_offset_minutes: int) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone(timedelta(minutes=utc_offset_minutes)))


def is_peak(moment: datetime, config: PricingConfig) -> bool:
    hour = _local_time(moment, config.utc_offset_minutes).hour
    return any(start <= hour < end for start, end in config.peak_windows)


def is_weekend(moment: datetime, config: PricingConfig) -> bool:
    return _local_time(moment, config.utc_offset_minutes).weekday() >= 5


def price_multiplier(
    category: ServiceCategory,
    requested_at: datetime,
    config: PricingConfig,
) -> Decimal:
    """Category, peak-hour and weekend multipliers composed multiplicatively."""
    multiplier = config.category_multipliers.get(category, Decimal("1"))
    if is_peak(requested_at, config):
        multiplier *= config.peak_multiplier
    if is_weekend(requested_at, config):
        multiplier *= config.weekend_multiplier
    return multiplier


def platform_fee(subtotal_cents: int, category: ServiceCategory, config: PricingConfig) -> int:
    if subtotal_cents <= 0:
        return 0
    raw_fee = _round_cents(Decimal(subtotal_cents) * config.fee_rates[category])
    return min(max(raw_fee, config.min_fee_cents), config.max_fee_cents)


def compute_price(
    rate_card: RateCard,
    distance_miles: float,
    duration_minutes: int,
    category: ServiceCategory,
    requested_at: datetime,
    config: PricingConfig | None = None,
) -> PriceBreakdown:
    """
    base + distance * per_mile + duration * per_minute, scaled by the
    composed multiplier, floored at zero, plus the category platform fee.
    Rounding is half-to-even on the cent.
    """
    config = config or PricingConfig()

    if distance_miles < 0:
        raise InputValidationError("distance_miles must be non-negative")
    if duration_minutes < 0:
        raise InputValidationError("duration_minutes must be non-negative")
    if not isinstance(category, ServiceCategory):
        raise InputValidationError(f"Unknown service category: {category!r}")

    distance = Decimal(str(distance_miles))
    variable = distance * rate_card.per_mile_cents + Decimal(duration_minutes) * rate_card.per_minute_cents
    variable_cents = _round_cents(variable)

    multiplier = price_multiplier(category, requested_at, config)
    subtotal_cents = max(
        0,
        _round_cents((Decimal(rate_card.base_cents) + variable) * multiplier),
    )
    fee_cents = platform_fee(subtotal_cents, category, config)

    return PriceBreakdown(
        base_cents=rate_card.base_cents,
        variable_cents=variable_cents,
        multiplier=multiplier,
        subtotal_cents=subtotal_cents,
        platform_fee_cents=fee_cents,
        total_cents=subtotal_cents + fee_cents,
    )
