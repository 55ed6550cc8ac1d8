"""
Reservation lifecycle manager.

Owns reservation status transitions and the availability calendar side
effects they carry. Every operation runs in a single transaction: the
reservation row and the matriculation calendar change together or not at all.
Notifications are sent after commit.
"""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from config.settings import settings
from database.base import async_session_factory
from database.models.reservation import PAYMENT_PERCENTAGES, Reservation, ReservationStatus
from database.models.user import User
from database.models.vehicle import Matriculation, MatriculationStatus, Vehicle
from services.availability import (
    add_period,
    ensure_bookable,
    lock_matriculation,
    parse_date_range,
    release_if_idle,
    remove_period,
)
from services.clock import Clock, system_clock
from services.exceptions import (
    InvalidTransition,
    NotFound,
    OrderIdMismatch,
    PaymentAmountMismatch,
    PaymentNotCompleted,
    ValidationError,
)
from services.notification_service import (
    LogNotificationDispatcher,
    NotificationDispatcher,
    NotificationEvent,
    dispatch,
)
from services.payment_service import (
    PaymentGateway,
    build_payment_payload,
    konnect_service,
    new_order_id,
    parse_record_id,
    validate_callback_params,
)
from services.pricing import deposit_amount, rental_days, rental_price, round_money, to_minor_units
from services.transaction import transaction


ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING: {
        ReservationStatus.PAID,
        ReservationStatus.CONFIRMED,
        ReservationStatus.CANCELLED,
        ReservationStatus.REJECTED,
    },
    # Paid bookings nobody confirmed are completed by the daily sweep once returned
    ReservationStatus.PAID: {
        ReservationStatus.CONFIRMED,
        ReservationStatus.CANCELLED,
        ReservationStatus.COMPLETED,
    },
    # Back to pending is an admin correction, it frees the calendar
    ReservationStatus.CONFIRMED: {
        ReservationStatus.COMPLETED,
        ReservationStatus.CANCELLED,
        ReservationStatus.REJECTED,
        ReservationStatus.PENDING,
    },
}

# Statuses that carry a deposit or a full payment
PAYING_STATUSES = (ReservationStatus.PAID, ReservationStatus.CONFIRMED)

MIN_CLIENT_RENTAL_DAYS = 3
CLIENT_PAYMENT_PERCENTAGES = (30, 100)
RESERVATION_PAYMENT_LIFESPAN_MINUTES = 10


@dataclass
class ClientBooking:
    reservation: Reservation
    pay_url: str
    amount_due: Decimal


def parse_status(value) -> ReservationStatus:
    if isinstance(value, ReservationStatus):
        return value
    try:
        return ReservationStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid reservation status: {value!r}")


def ensure_transition(current: ReservationStatus, new: ReservationStatus) -> None:
    """Raise InvalidTransition unless current -> new is allowed (editing in place counts)"""
    if current == new and current in ALLOWED_TRANSITIONS:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, ()):
        raise InvalidTransition(f"Cannot change reservation status from {current.value} to {new.value}")


def check_payment_percentage(status: ReservationStatus, payment_percentage) -> int:
    """Paid and confirmed reservations need a percentage, every other status has none"""
    try:
        percentage = int(payment_percentage or 0)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid payment percentage: {payment_percentage!r}")
    if percentage not in PAYMENT_PERCENTAGES:
        raise ValidationError(f"Payment percentage must be one of {PAYMENT_PERCENTAGES}")
    if status in PAYING_STATUSES and not percentage:
        raise ValidationError(f"Payment percentage is required for a {status.value} reservation")
    if status not in PAYING_STATUSES and percentage:
        raise ValidationError(f"A {status.value} reservation cannot have a payment percentage")
    return percentage


def reservation_payload(reservation: Reservation, user: User, vehicle: Vehicle, **extra) -> Dict[str, Any]:
    payload = {
        "reservation_id": reservation.id,
        "email": user.email,
        "full_name": user.full_name,
        "vehicle": vehicle.display_name,
        "matriculation": reservation.matriculation,
        "pickup_location": reservation.pickup_location,
        "dropoff_location": reservation.dropoff_location,
        "pickup_date": reservation.pickup_date.isoformat(),
        "dropoff_date": reservation.dropoff_date.isoformat(),
        "pickup_time": reservation.pickup_time,
        "dropoff_time": reservation.dropoff_time,
        "total_price": str(reservation.total_price),
        "amount_paid": str(reservation.amount_paid),
        "remaining_amount": str(reservation.remaining_amount),
        "currency": reservation.currency,
    }
    payload.update(extra)
    return payload


async def get_reservation(session: AsyncSession, reservation_id: int, lock: bool = False) -> Reservation:
    """Load a reservation with its user, vehicle and prolongations"""
    query = (
        select(Reservation)
        .options(
            selectinload(Reservation.user),
            selectinload(Reservation.vehicle),
            selectinload(Reservation.prolongations),
        )
        .where(Reservation.id == reservation_id)
    )
    if lock:
        query = query.with_for_update()
    result = await session.execute(query)
    reservation = result.scalar_one_or_none()
    if not reservation:
        raise NotFound(f"Reservation {reservation_id} not found")
    return reservation


async def _find_matriculation(session: AsyncSession, vehicle_id: int, plate_number: Optional[str]) -> Matriculation:
    if not plate_number:
        raise ValidationError("Matriculation is required")
    matriculation = await lock_matriculation(session, vehicle_id, plate_number)
    if matriculation is None:
        raise NotFound(f"Matriculation {plate_number} not found on vehicle {vehicle_id}")
    return matriculation


async def check_calendar(session: AsyncSession, reservation: Reservation, plate_number: str,
                         start: date, end: date) -> Matriculation:
    """Validate a plate for [start, end] without holding it"""
    matriculation = await _find_matriculation(session, reservation.vehicle_id, plate_number)
    ensure_bookable(matriculation, start, end, exclude_reservation_id=reservation.id)
    return matriculation


async def hold_calendar(session: AsyncSession, reservation: Reservation, plate_number: str,
                        start: date, end: date, today: date) -> Matriculation:
    """
    Hold a plate for the reservation over [start, end].

    The reservation's own period on that plate is replaced, so re-confirming
    or extending a booking never conflicts with itself. A pickup today or
    earlier puts the plate in the rented status.
    """
    matriculation = await _find_matriculation(session, reservation.vehicle_id, plate_number)
    ensure_bookable(matriculation, start, end, exclude_reservation_id=reservation.id)

    if remove_period(matriculation, reservation.id):
        # Delete the old row before inserting its replacement
        await session.flush()
    add_period(matriculation, start, end, reservation.id)

    if start <= today:
        matriculation.status = MatriculationStatus.RENTED
    logger.debug(f"Reservation {reservation.id} holds {plate_number} from {start} to {end}")
    return matriculation


async def release_calendar(session: AsyncSession, reservation: Reservation, today: date) -> int:
    """Drop the periods the reservation holds, returns how many were dropped"""
    if not reservation.matriculation or reservation.id is None:
        return 0
    matriculation = await lock_matriculation(session, reservation.vehicle_id, reservation.matriculation)
    if matriculation is None:
        logger.warning(
            f"Reservation {reservation.id} references missing matriculation {reservation.matriculation}"
        )
        return 0

    removed = remove_period(matriculation, reservation.id)
    if removed:
        await session.flush()
        release_if_idle(matriculation, today)
        logger.debug(f"Reservation {reservation.id} released {reservation.matriculation}")
    return removed


class ReservationService:
    """Reservation lifecycle manager"""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_factory,
        gateway: PaymentGateway = konnect_service,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Clock = system_clock,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier if notifier is not None else LogNotificationDispatcher()
        self.clock = clock

    async def confirm_reservation(self, reservation_id: int, matriculation: str, pickup_date, dropoff_date,
                                  payment_percentage: Optional[int] = None) -> Reservation:
        """Confirm a reservation on a plate, holding it over the given dates"""
        if not matriculation:
            raise ValidationError("Matriculation is required to confirm a reservation")
        return await self.change_reservation_status(
            reservation_id,
            ReservationStatus.CONFIRMED,
            pickup_date=pickup_date,
            dropoff_date=dropoff_date,
            matriculation=matriculation,
            payment_percentage=payment_percentage,
        )

    async def change_reservation_status(
        self,
        reservation_id: int,
        new_status,
        pickup_date=None,
        dropoff_date=None,
        matriculation: Optional[str] = None,
        payment_percentage: Optional[int] = None,
        amount_paid=None,
    ) -> Reservation:
        """
        Move a reservation to a new status, optionally editing its dates or plate.

        A change of status, dates or plate reconciles the calendar: the old
        period is released and, when the reservation still holds the plate,
        the new one is held. Both happen in the same transaction, so a
        conflict on the new period leaves the old one in place.

        Args:
            reservation_id: Reservation to update
            new_status: Target status, may equal the current one for an edit
            pickup_date: New pickup date, requires dropoff_date
            dropoff_date: New dropoff date, requires pickup_date
            matriculation: New plate number
            payment_percentage: 30 or 100 for paid/confirmed, defaults to the current one
            amount_paid: Amount received so far

        Returns:
            The updated reservation

        Raises:
            InvalidTransition, ValidationError, NotFound, DateConflict,
            MatriculationUnavailable
        """
        status = parse_status(new_status)
        date_range = None
        if pickup_date is not None or dropoff_date is not None:
            if pickup_date is None or dropoff_date is None:
                raise ValidationError("Both pickup and dropoff dates are required")
            date_range = parse_date_range(pickup_date, dropoff_date)
        today = self.clock.today()

        async with transaction(self.session_factory) as session:
            reservation = await get_reservation(session, reservation_id, lock=True)
            previous = reservation.status
            ensure_transition(previous, status)

            if payment_percentage is None:
                payment_percentage = reservation.payment_percentage if status in PAYING_STATUSES else 0
            percentage = check_payment_percentage(status, payment_percentage)

            start, end = date_range or (reservation.pickup_date, reservation.dropoff_date)
            plate = matriculation or reservation.matriculation
            moved = plate != reservation.matriculation or (start, end) != (
                reservation.pickup_date,
                reservation.dropoff_date,
            )

            if moved or status != previous:
                released = await release_calendar(session, reservation, today)
                if status == ReservationStatus.CONFIRMED or (released and status == ReservationStatus.PAID):
                    await hold_calendar(session, reservation, plate, start, end, today)
                elif moved and plate and status in ALLOWED_TRANSITIONS:
                    await check_calendar(session, reservation, plate, start, end)

            reservation.status = status
            reservation.matriculation = plate
            reservation.pickup_date = start
            reservation.dropoff_date = end
            reservation.payment_percentage = percentage
            if amount_paid is not None:
                reservation.amount_paid = round_money(amount_paid)

        logger.info(f"Reservation {reservation.id}: {previous.value} -> {status.value}")
        if status == ReservationStatus.CONFIRMED and previous != ReservationStatus.CONFIRMED:
            await dispatch(
                self.notifier,
                NotificationEvent.RESERVATION_CONFIRMED,
                reservation_payload(reservation, reservation.user, reservation.vehicle),
            )
        return reservation

    async def create_reservation(
        self,
        user_id: int,
        vehicle_id: int,
        pickup_location: str,
        dropoff_location: str,
        pickup_date,
        dropoff_date,
        pickup_time: str,
        dropoff_time: str,
        matriculation: Optional[str] = None,
        status=ReservationStatus.PENDING,
        payment_percentage: int = 0,
        total_price=None,
        amount_paid=0,
        flight_number: Optional[str] = None,
    ) -> Reservation:
        """
        Create a reservation from the back office, in any initial status.

        A confirmed reservation holds its plate right away; the price defaults
        to the rental price of the vehicle.
        """
        status = parse_status(status)
        start, end = parse_date_range(pickup_date, dropoff_date)
        if not all((pickup_location, dropoff_location, pickup_time, dropoff_time)):
            raise ValidationError("Pickup and dropoff locations and times are required")
        percentage = check_payment_percentage(status, payment_percentage)
        if status == ReservationStatus.CONFIRMED and not matriculation:
            raise ValidationError("Matriculation is required to confirm a reservation")
        today = self.clock.today()

        async with transaction(self.session_factory) as session:
            user = await session.get(User, user_id)
            if not user:
                raise NotFound(f"User {user_id} not found")
            vehicle = await session.get(Vehicle, vehicle_id)
            if not vehicle:
                raise NotFound(f"Vehicle {vehicle_id} not found")

            if total_price is None:
                price = rental_price(rental_days(start, end), vehicle.price_per_day).amount
            else:
                price = round_money(total_price)
                if price <= 0:
                    raise ValidationError("Total price must be positive")

            reservation = Reservation(
                user_id=user.id,
                vehicle_id=vehicle.id,
                matriculation=matriculation,
                pickup_location=pickup_location,
                dropoff_location=dropoff_location,
                pickup_date=start,
                dropoff_date=end,
                pickup_time=pickup_time,
                dropoff_time=dropoff_time,
                flight_number=flight_number,
                status=status,
                payment_percentage=percentage,
                total_price=price,
                amount_paid=round_money(amount_paid or 0),
                currency=settings.currency,
            )
            session.add(reservation)
            await session.flush()

            if status == ReservationStatus.CONFIRMED:
                await hold_calendar(session, reservation, matriculation, start, end, today)
            elif matriculation and status in ALLOWED_TRANSITIONS:
                await check_calendar(session, reservation, matriculation, start, end)

        logger.info(f"Reservation {reservation.id} created for user {user.id} ({status.value})")
        if status == ReservationStatus.CONFIRMED:
            await dispatch(
                self.notifier,
                NotificationEvent.RESERVATION_CONFIRMED,
                reservation_payload(reservation, user, vehicle),
            )
        return reservation

    async def create_client_reservation(
        self,
        user_id: int,
        vehicle_id: int,
        matriculation: str,
        pickup_location: str,
        dropoff_location: str,
        pickup_date,
        dropoff_date,
        pickup_time: str,
        dropoff_time: str,
        payment_percentage: int,
        flight_number: Optional[str] = None,
    ) -> ClientBooking:
        """
        Book a vehicle from the client side and open a card payment.

        The price is computed here from the vehicle rate, whatever the client
        displayed. The reservation stays pending until the gateway confirms
        the deposit or the full amount.
        """
        start, end = parse_date_range(pickup_date, dropoff_date)
        days = rental_days(start, end)
        if days < MIN_CLIENT_RENTAL_DAYS:
            raise ValidationError(f"Minimum rental duration is {MIN_CLIENT_RENTAL_DAYS} days")
        if payment_percentage not in CLIENT_PAYMENT_PERCENTAGES:
            raise ValidationError(f"Payment percentage must be one of {CLIENT_PAYMENT_PERCENTAGES}")
        if not all((pickup_location, dropoff_location, pickup_time, dropoff_time)):
            raise ValidationError("Pickup and dropoff locations and times are required")
        if start < self.clock.today():
            raise ValidationError("Pickup date is in the past")

        async with transaction(self.session_factory) as session:
            user = await session.get(User, user_id)
            if not user:
                raise NotFound(f"User {user_id} not found")
            vehicle = await session.get(Vehicle, vehicle_id)
            if not vehicle:
                raise NotFound(f"Vehicle {vehicle_id} not found")

            plate = await _find_matriculation(session, vehicle.id, matriculation)
            ensure_bookable(plate, start, end)

            quote = rental_price(days, vehicle.price_per_day)
            amount_due = deposit_amount(quote.amount, payment_percentage)
            order_id = new_order_id()

            reservation = Reservation(
                user_id=user.id,
                vehicle_id=vehicle.id,
                matriculation=matriculation,
                pickup_location=pickup_location,
                dropoff_location=dropoff_location,
                pickup_date=start,
                dropoff_date=end,
                pickup_time=pickup_time,
                dropoff_time=dropoff_time,
                flight_number=flight_number,
                status=ReservationStatus.PENDING,
                payment_percentage=0,
                requested_payment_percentage=payment_percentage,
                total_price=quote.amount,
                amount_paid=Decimal("0"),
                currency=settings.currency,
                order_id=order_id,
            )
            session.add(reservation)
            await session.flush()

            payload = build_payment_payload(
                amount=to_minor_units(amount_due, settings.currency_minor_units),
                description=f"Rental of {vehicle.display_name} from {start} to {end}",
                order_id=order_id,
                success_url=f"{settings.success_url}?orderId={order_id}&reservation_id={reservation.id}",
                full_name=user.full_name,
                email=user.email,
                phone=user.phone,
                lifespan=RESERVATION_PAYMENT_LIFESPAN_MINUTES,
            )
            link = await self.gateway.init_payment(payload)
            reservation.payment_ref = link.payment_ref

        logger.info(
            f"Client reservation {reservation.id} created, {quote.amount} {reservation.currency} "
            f"({quote.discount_percent}% off), awaiting {amount_due}"
        )
        await dispatch(
            self.notifier,
            NotificationEvent.RESERVATION_PAYMENT_LINK,
            reservation_payload(reservation, user, vehicle, pay_url=link.pay_url, amount_due=str(amount_due)),
        )
        return ClientBooking(reservation=reservation, pay_url=link.pay_url, amount_due=amount_due)

    async def confirm_reservation_payment(self, order_id: str, reservation_id, payment_ref: str) -> Reservation:
        """
        Gateway callback for a client booking.

        The payment status is always fetched from the gateway. Replaying the
        callback of an already paid reservation changes nothing.
        """
        validate_callback_params(order_id, reservation_id, payment_ref)
        reservation_id = parse_record_id(reservation_id)

        async with transaction(self.session_factory) as session:
            result = await session.execute(
                select(Reservation)
                .options(selectinload(Reservation.user), selectinload(Reservation.vehicle))
                .where(
                    Reservation.id == reservation_id,
                    Reservation.order_id == order_id,
                    Reservation.payment_ref == payment_ref,
                )
                .with_for_update()
            )
            reservation = result.scalar_one_or_none()
            if not reservation:
                raise NotFound("No reservation matches this payment")

            if reservation.status != ReservationStatus.PENDING:
                if reservation.amount_paid and reservation.status in (
                    ReservationStatus.PAID,
                    ReservationStatus.CONFIRMED,
                    ReservationStatus.COMPLETED,
                ):
                    logger.info(f"Reservation {reservation.id} payment already recorded")
                    return reservation
                raise InvalidTransition(f"Reservation {reservation.id} is {reservation.status.value}")

            payment = await self.gateway.get_payment(payment_ref)
            if not payment.is_completed:
                raise PaymentNotCompleted(f"Payment {payment_ref} is {payment.status or 'unknown'}")
            if payment.order_id != order_id:
                logger.warning(f"Order id mismatch for reservation {reservation.id}: {payment.order_id}")
                raise OrderIdMismatch()

            percentage = reservation.requested_payment_percentage or 100
            amount_due = deposit_amount(reservation.total_price, percentage)
            expected = to_minor_units(amount_due, settings.currency_minor_units)
            if payment.amount != expected:
                logger.warning(
                    f"Amount mismatch for reservation {reservation.id}: got {payment.amount}, expected {expected}"
                )
                raise PaymentAmountMismatch(
                    f"Payment amount {payment.amount} does not match expected {expected}"
                )

            reservation.status = ReservationStatus.PAID
            reservation.payment_percentage = percentage
            reservation.amount_paid = amount_due

        logger.info(f"Reservation {reservation.id} paid ({percentage}%, {amount_due} {reservation.currency})")
        await dispatch(
            self.notifier,
            NotificationEvent.RESERVATION_PAID,
            reservation_payload(reservation, reservation.user, reservation.vehicle),
        )
        return reservation

    async def delete_reservation(self, reservation_id: int) -> None:
        """Delete a reservation, giving back any period it holds"""
        today = self.clock.today()
        async with transaction(self.session_factory) as session:
            reservation = await get_reservation(session, reservation_id, lock=True)
            await release_calendar(session, reservation, today)
            await session.delete(reservation)
        logger.info(f"Reservation {reservation_id} deleted")

    async def list_active_reservations(self, user_id: int) -> List[Reservation]:
        """Confirmed reservations of a user, soonest first"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Reservation)
                .options(selectinload(Reservation.vehicle))
                .where(
                    Reservation.user_id == user_id,
                    Reservation.status == ReservationStatus.CONFIRMED,
                )
                .order_by(Reservation.pickup_date)
            )
            return list(result.scalars().all())


# Global service instance
reservation_service = ReservationService()
