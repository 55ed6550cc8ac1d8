"""
Pricing rules for rentals, prolongations, transfers and excursions.

Every function here is pure: the same inputs always give the same price, so
the server can recompute any client-submitted total before acting on it.
"""
import enum
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Sequence

from services.exceptions import ValidationError


CENT = Decimal("0.01")

# Flat surcharges, in dinars
LANGUAGE_FEE = Decimal("30")
GUIDE_FEE = Decimal("200")

# Smallest bookable headcount and largest one for an excursion
MIN_EXCURSION_PEOPLE = 1
MAX_EXCURSION_PEOPLE = 8


class TripType(enum.Enum):
    ONE_WAY = "aller simple"
    ROUND_TRIP = "aller retour"


@dataclass(frozen=True)
class PriceQuote:
    raw_amount: Decimal
    discount_percent: int
    amount: Decimal


@dataclass(frozen=True)
class ExcursionPrices:
    one_to_four: Decimal
    five_to_six: Decimal
    seven_to_eight: Decimal


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() keeps 0.1 as 0.1 instead of its binary expansion
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")


def round_money(amount) -> Decimal:
    """Round to the cent, halves away from zero"""
    return to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount, minor_units: int = 1000) -> int:
    """Convert an amount to the gateway's smallest currency unit (millimes for TND)"""
    return int((to_decimal(amount) * minor_units).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def long_stay_discount(days: int) -> int:
    """Discount percent for a stay: 4-10 days 5%, 11-20 days 10%, beyond 20 days 15%"""
    if days > 20:
        return 15
    if days >= 11:
        return 10
    if days >= 4:
        return 5
    return 0


def _discounted(days: int, price_per_day) -> PriceQuote:
    if days < 1:
        raise ValidationError("Duration must be at least one day")
    raw = days * to_decimal(price_per_day)
    percent = long_stay_discount(days)
    amount = raw * (Decimal(100 - percent) / Decimal(100))
    return PriceQuote(raw_amount=raw, discount_percent=percent, amount=round_money(amount))


def prolongation_price(additional_days: int, price_per_day) -> PriceQuote:
    """
    Cost of extending a rental.

    Args:
        additional_days: Days added to the current dropoff date
        price_per_day: Daily rate of the vehicle

    Returns:
        Quote with the undiscounted amount, the tier applied and the
        discounted amount rounded to the cent
    """
    return _discounted(additional_days, price_per_day)


def rental_days(start: date, end: date) -> int:
    return (end - start).days


def rental_price(days: int, price_per_day) -> PriceQuote:
    """Cost of a full rental, same long-stay tiers as prolongations"""
    return _discounted(days, price_per_day)


def deposit_amount(total_price, payment_percentage: int) -> Decimal:
    """Amount due for a 30% deposit or a full payment"""
    return round_money(to_decimal(total_price) * payment_percentage / 100)


def transfer_price(distance_km, price_per_km, trip_type: TripType, driver_languages: Sequence[str] = ()) -> Decimal:
    multiplier = 2 if trip_type == TripType.ROUND_TRIP else 1
    price = to_decimal(distance_km) * to_decimal(price_per_km) * multiplier
    if driver_languages:
        price += LANGUAGE_FEE
    return round_money(price)


def excursion_headcount(adults: int, children: int, babies: int) -> int:
    for count in (adults, children, babies):
        if count < 0 or count > MAX_EXCURSION_PEOPLE:
            raise ValidationError(
                f"Adults, children and babies must each be between 0 and {MAX_EXCURSION_PEOPLE}"
            )
    total = adults + children + babies
    if total < MIN_EXCURSION_PEOPLE or total > MAX_EXCURSION_PEOPLE:
        raise ValidationError(
            f"Total number of people must be between {MIN_EXCURSION_PEOPLE} and {MAX_EXCURSION_PEOPLE}"
        )
    return total


def excursion_price(prices: ExcursionPrices, adults: int, children: int = 0, babies: int = 0,
                    with_guide: bool = False) -> Decimal:
    total = excursion_headcount(adults, children, babies)
    if total <= 4:
        price = to_decimal(prices.one_to_four)
    elif total <= 6:
        price = to_decimal(prices.five_to_six)
    else:
        price = to_decimal(prices.seven_to_eight)

    if with_guide:
        price += GUIDE_FEE
    return round_money(price)
