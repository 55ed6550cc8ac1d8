"""Availability calendar tests."""

from datetime import date, datetime, timedelta, timezone
from itertools import product

import pytest

from database.models import Matriculation, MatriculationStatus, UnavailablePeriod
from services.availability import (
    add_period,
    ensure_bookable,
    find_conflicts,
    has_overlap,
    is_held_on,
    parse_date_range,
    parse_utc_date,
    periods_overlap,
    release_if_idle,
    remove_period,
)
from services.exceptions import DateConflict, InvalidDate, MatriculationUnavailable, ValidationError


def period(start, end, reservation_id):
    return UnavailablePeriod(start_date=start, end_date=end, reservation_id=reservation_id)


def june(day):
    return date(2025, 6, day)


def test_overlap_is_inclusive():
    assert periods_overlap(june(1), june(5), june(5), june(10))
    assert periods_overlap(june(1), june(5), june(4), june(10))
    assert periods_overlap(june(1), june(10), june(3), june(4))
    assert not periods_overlap(june(1), june(5), june(6), june(10))


def test_overlap_symmetry():
    base = date(2025, 6, 1)
    days = [base + timedelta(days=n) for n in range(0, 8, 2)]
    ranges = [(s, e) for s, e in product(days, days) if s <= e]
    for (s1, e1), (s2, e2) in product(ranges, ranges):
        assert periods_overlap(s1, e1, s2, e2) == periods_overlap(s2, e2, s1, e1)


def test_own_period_is_excluded():
    periods = [period(date(2025, 6, 1), date(2025, 6, 5), 1)]
    assert has_overlap(periods, date(2025, 6, 4), date(2025, 6, 10))
    assert not has_overlap(periods, date(2025, 6, 4), date(2025, 6, 10), exclude_reservation_id=1)


def test_find_conflicts_lists_only_overlapping():
    periods = [
        period(date(2025, 6, 1), date(2025, 6, 5), 1),
        period(date(2025, 6, 6), date(2025, 6, 10), 2),
        period(date(2025, 6, 20), date(2025, 6, 25), 3),
    ]
    conflicts = find_conflicts(periods, date(2025, 6, 5), date(2025, 6, 7))
    assert [p.reservation_id for p in conflicts] == [1, 2]


def test_parse_utc_date():
    assert parse_utc_date("2025-06-01") == date(2025, 6, 1)
    assert parse_utc_date("2025-06-01T23:30:00Z") == date(2025, 6, 1)
    # 00:30 in Tunis is still the previous day in UTC
    assert parse_utc_date("2025-06-02T00:30:00+01:00") == date(2025, 6, 1)
    assert parse_utc_date(datetime(2025, 6, 1, 12, tzinfo=timezone.utc)) == date(2025, 6, 1)
    assert parse_utc_date(date(2025, 6, 1)) == date(2025, 6, 1)


@pytest.mark.parametrize("value", ["", "not a date", "2025-13-01", None, 20250601])
def test_parse_utc_date_rejects_garbage(value):
    with pytest.raises(InvalidDate):
        parse_utc_date(value)


def test_date_range_must_be_increasing():
    assert parse_date_range("2025-06-01", "2025-06-02") == (date(2025, 6, 1), date(2025, 6, 2))
    with pytest.raises(ValidationError):
        parse_date_range("2025-06-02", "2025-06-02")
    with pytest.raises(ValidationError):
        parse_date_range("2025-06-03", "2025-06-02")


def test_add_and_remove_period():
    matriculation = Matriculation(plate_number="123TUN456", status=MatriculationStatus.AVAILABLE)
    add_period(matriculation, date(2025, 6, 1), date(2025, 6, 5), 1)
    add_period(matriculation, date(2025, 6, 10), date(2025, 6, 12), 2)

    assert remove_period(matriculation, 1) == 1
    assert [p.reservation_id for p in matriculation.unavailable_periods] == [2]
    assert remove_period(matriculation, 1) == 0


def test_ensure_bookable():
    matriculation = Matriculation(plate_number="123TUN456", status=MatriculationStatus.AVAILABLE)
    add_period(matriculation, date(2025, 6, 1), date(2025, 6, 5), 1)

    ensure_bookable(matriculation, date(2025, 6, 6), date(2025, 6, 10))
    ensure_bookable(matriculation, date(2025, 6, 2), date(2025, 6, 3), exclude_reservation_id=1)
    with pytest.raises(DateConflict):
        ensure_bookable(matriculation, date(2025, 6, 5), date(2025, 6, 10))

    matriculation.status = MatriculationStatus.MAINTENANCE
    with pytest.raises(MatriculationUnavailable):
        ensure_bookable(matriculation, date(2025, 7, 1), date(2025, 7, 2))


def test_release_if_idle():
    matriculation = Matriculation(plate_number="123TUN456", status=MatriculationStatus.RENTED)
    add_period(matriculation, date(2025, 6, 1), date(2025, 6, 5), 1)

    release_if_idle(matriculation, date(2025, 6, 3))
    assert matriculation.status == MatriculationStatus.RENTED
    assert is_held_on(matriculation.unavailable_periods, date(2025, 6, 3))

    release_if_idle(matriculation, date(2025, 6, 6))
    assert matriculation.status == MatriculationStatus.AVAILABLE
