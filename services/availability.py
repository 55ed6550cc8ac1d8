"""
Availability calendar of a matriculation.

A matriculation is held by a reservation over an inclusive range of UTC
calendar days. Two ranges [s1, e1] and [s2, e2] conflict when
s1 <= e2 and s2 <= e1, so a booking ending on day D and another starting on
day D cannot coexist.
"""
from datetime import date, datetime, timezone
from typing import Iterable, List, Optional, Tuple

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from database.models.vehicle import Matriculation, MatriculationStatus, UnavailablePeriod
from services.exceptions import DateConflict, InvalidDate, MatriculationUnavailable, ValidationError


def parse_utc_date(value) -> date:
    """
    Normalize a date input to a UTC calendar day.

    Accepts ``date`` objects, ``datetime`` objects (aware ones are converted
    to UTC first), ``YYYY-MM-DD`` strings and ISO timestamps.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            if "T" in text:
                return parse_utc_date(datetime.fromisoformat(text.replace("Z", "+00:00")))
            return date.fromisoformat(text)
        except ValueError:
            raise InvalidDate(f"Invalid date: {value!r}")
    raise InvalidDate(f"Invalid date: {value!r}")


def periods_overlap(start_a: date, end_a: date, start_b: date, end_b: date) -> bool:
    return start_a <= end_b and start_b <= end_a


def find_conflicts(
    periods: Iterable[UnavailablePeriod],
    start: date,
    end: date,
    exclude_reservation_id: Optional[int] = None,
) -> List[UnavailablePeriod]:
    """Periods overlapping [start, end], ignoring those owned by the excluded reservation"""
    conflicts = []
    for period in periods:
        if exclude_reservation_id is not None and period.reservation_id == exclude_reservation_id:
            continue
        if periods_overlap(period.start_date, period.end_date, start, end):
            conflicts.append(period)
    return conflicts


def has_overlap(
    periods: Iterable[UnavailablePeriod],
    start: date,
    end: date,
    exclude_reservation_id: Optional[int] = None,
) -> bool:
    return bool(find_conflicts(periods, start, end, exclude_reservation_id))


def is_held_on(periods: Iterable[UnavailablePeriod], day: date) -> bool:
    return any(p.start_date <= day <= p.end_date for p in periods)


def add_period(matriculation: Matriculation, start: date, end: date, reservation_id: int) -> UnavailablePeriod:
    period = UnavailablePeriod(start_date=start, end_date=end, reservation_id=reservation_id)
    matriculation.unavailable_periods.append(period)
    return period


def remove_period(matriculation: Matriculation, reservation_id: int) -> int:
    """Drop every period owned by the reservation, returns how many were removed"""
    owned = [p for p in matriculation.unavailable_periods if p.reservation_id == reservation_id]
    for period in owned:
        matriculation.unavailable_periods.remove(period)
    return len(owned)


async def lock_matriculation(session: AsyncSession, vehicle_id: int, plate_number: str) -> Optional[Matriculation]:
    """
    Load a matriculation with its calendar for a read-modify-write.

    The row is selected FOR UPDATE so concurrent bookings of the same plate
    serialize on the database; the calendar is re-read from the database
    even if the session already holds it.
    """
    result = await session.execute(
        select(Matriculation)
        .options(selectinload(Matriculation.unavailable_periods))
        .where(
            Matriculation.vehicle_id == vehicle_id,
            Matriculation.plate_number == plate_number,
        )
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def ensure_bookable(
    matriculation: Matriculation,
    start: date,
    end: date,
    exclude_reservation_id: Optional[int] = None,
) -> None:
    """Raise unless the matriculation can be held over [start, end]"""
    if matriculation.is_in_maintenance:
        raise MatriculationUnavailable(f"Matriculation {matriculation.plate_number} is in maintenance")

    conflicts = find_conflicts(matriculation.unavailable_periods, start, end, exclude_reservation_id)
    if conflicts:
        logger.warning(
            f"Date conflict on {matriculation.plate_number} for {start}..{end}: "
            f"held by reservations {[p.reservation_id for p in conflicts]}"
        )
        raise DateConflict(
            f"Matriculation {matriculation.plate_number} is not available from {start} to {end}"
        )


def release_if_idle(matriculation: Matriculation, today: date) -> None:
    """Put a rented matriculation back to available when no remaining period covers today"""
    if matriculation.status == MatriculationStatus.RENTED and not is_held_on(
        matriculation.unavailable_periods, today
    ):
        matriculation.status = MatriculationStatus.AVAILABLE


def parse_date_range(start, end) -> Tuple[date, date]:
    """Parse a pickup/dropoff pair, pickup strictly before dropoff"""
    start, end = parse_utc_date(start), parse_utc_date(end)
    if start >= end:
        raise ValidationError("Pickup date must be before dropoff date")
    return start, end
