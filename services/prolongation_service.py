"""
Prolongation workflow.

A client asks to move the dropoff date of a confirmed or paid reservation.
The back office then accepts it, either with payment at the agency (the
calendar and the price are extended at once) or by card (a payment link is
sent and the extension is applied when the gateway confirms the payment),
or rejects it.
"""
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from database.base import async_session_factory
from database.models.prolongation import (
    DISCOUNT_TIERS,
    PaymentMethod,
    ProlongationPaymentStatus,
    ProlongationRequest,
    ProlongationStatus,
)
from database.models.reservation import Reservation
from services.availability import parse_utc_date
from services.clock import Clock, system_clock
from services.exceptions import (
    DateConflict,
    InvalidTransition,
    MatriculationUnavailable,
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
from services.pricing import PriceQuote, deposit_amount, prolongation_price, round_money, to_minor_units
from services.reservation_service import check_calendar, get_reservation, hold_calendar
from services.transaction import transaction


# Requests not decided yet, or accepted by card and not paid yet
OPEN_STATUSES = (ProlongationStatus.PENDING, ProlongationStatus.WAITING_FOR_PAYMENT)


@dataclass
class ProlongationDecision:
    prolongation: ProlongationRequest
    reservation: Optional[Reservation] = None
    pay_url: Optional[str] = None


def parse_payment_method(value) -> PaymentMethod:
    if isinstance(value, PaymentMethod):
        return value
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationError(f"Invalid payment method: {value!r}")


def quote_extension(reservation: Reservation, new_dropoff_date: date) -> PriceQuote:
    """Price of moving the reservation's dropoff to new_dropoff_date"""
    if new_dropoff_date <= reservation.dropoff_date:
        raise ValidationError("New dropoff date must be after the current dropoff date")
    additional_days = (new_dropoff_date - reservation.dropoff_date).days
    return prolongation_price(additional_days, reservation.vehicle.price_per_day)


def prolongation_payload(prolongation: ProlongationRequest, reservation: Reservation, **extra) -> Dict[str, Any]:
    payload = {
        "prolongation_id": prolongation.id,
        "reservation_id": reservation.id,
        "email": reservation.user.email,
        "full_name": reservation.user.full_name,
        "vehicle": reservation.vehicle.display_name,
        "matriculation": reservation.matriculation,
        "pickup_date": reservation.pickup_date.isoformat(),
        "new_dropoff_date": prolongation.new_dropoff_date.isoformat(),
        "additional_days": prolongation.additional_days,
        "reduction": prolongation.reduction,
        "additional_cost": str(prolongation.additional_cost),
        "total_price": str(prolongation.total_price),
        "currency": reservation.currency,
    }
    if prolongation.payment_method:
        payload["payment_method"] = prolongation.payment_method.value
    payload.update(extra)
    return payload


async def get_prolongation(session: AsyncSession, prolongation_id: int, lock: bool = False) -> ProlongationRequest:
    query = select(ProlongationRequest).where(ProlongationRequest.id == prolongation_id)
    if lock:
        query = query.with_for_update()
    result = await session.execute(query)
    prolongation = result.scalar_one_or_none()
    if not prolongation:
        raise NotFound(f"Prolongation {prolongation_id} not found")
    return prolongation


async def apply_extension(session: AsyncSession, prolongation: ProlongationRequest,
                          reservation: Reservation, today: date) -> None:
    """
    Extend the reservation to the prolongation's dropoff date.

    The reservation's period is replaced by one over [pickup, new dropoff]
    after the same overlap and maintenance checks as a confirmation. The
    price grows by the discounted additional cost and the amount paid
    follows the reservation's payment percentage.
    """
    if not reservation.can_be_prolonged:
        raise InvalidTransition(f"Reservation {reservation.id} is {reservation.status.value}")
    if prolongation.new_dropoff_date <= reservation.dropoff_date:
        raise ValidationError("Prolongation no longer extends the reservation")

    await hold_calendar(
        session, reservation, reservation.matriculation,
        reservation.pickup_date, prolongation.new_dropoff_date, today,
    )

    reservation.dropoff_date = prolongation.new_dropoff_date
    reservation.total_price = round_money(reservation.total_price + prolongation.additional_cost)
    reservation.amount_paid = deposit_amount(reservation.total_price, reservation.payment_percentage)
    prolongation.total_price = reservation.total_price
    prolongation.status = ProlongationStatus.ACCEPTED


class ProlongationService:
    """Prolongation workflow"""

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

    async def create_prolongation(self, reservation_id: int, new_dropoff_date, reduction: Optional[int] = None,
                                  total_price=None) -> ProlongationRequest:
        """
        Record a prolongation request.

        The cost is recomputed from the vehicle rate. A reduction or total
        sent by the client that disagrees with it is logged and ignored.
        """
        new_dropoff = parse_utc_date(new_dropoff_date)
        if reduction is not None and reduction not in DISCOUNT_TIERS:
            raise ValidationError(f"Reduction must be one of {DISCOUNT_TIERS}")

        async with transaction(self.session_factory) as session:
            reservation = await get_reservation(session, reservation_id, lock=True)
            if not reservation.can_be_prolonged:
                raise InvalidTransition("Only confirmed or paid reservations can be prolonged")

            quote = quote_extension(reservation, new_dropoff)
            new_total = round_money(reservation.total_price + quote.amount)
            if reduction is not None and reduction != quote.discount_percent:
                logger.warning(
                    f"Prolongation of reservation {reservation.id}: client reduction {reduction}% "
                    f"differs from {quote.discount_percent}%"
                )
            if total_price is not None and round_money(total_price) != new_total:
                logger.warning(
                    f"Prolongation of reservation {reservation.id}: client total {total_price} differs from {new_total}"
                )

            prolongation = ProlongationRequest(
                reservation_id=reservation.id,
                new_dropoff_date=new_dropoff,
                additional_days=(new_dropoff - reservation.dropoff_date).days,
                reduction=quote.discount_percent,
                additional_cost=quote.amount,
                total_price=new_total,
                status=ProlongationStatus.PENDING,
                payment_status=ProlongationPaymentStatus.UNPAID,
            )
            session.add(prolongation)

        logger.info(
            f"Prolongation {prolongation.id} requested for reservation {reservation.id} "
            f"until {new_dropoff} (+{quote.amount} {reservation.currency})"
        )
        return prolongation

    async def accept_prolongation(self, prolongation_id: int, payment_method,
                                  new_dropoff_date=None) -> ProlongationDecision:
        """
        Accept a prolongation request.

        Args:
            prolongation_id: Request to accept
            payment_method: "en_agence" extends the reservation now, "par_carte"
                sends a payment link and waits for the gateway callback
            new_dropoff_date: Dropoff date decided by the agency, defaults to the requested one

        Returns:
            The prolongation, plus the extended reservation (agency payment)
            or the payment URL (card payment)
        """
        method = parse_payment_method(payment_method)
        override = parse_utc_date(new_dropoff_date) if new_dropoff_date is not None else None
        today = self.clock.today()
        pay_url = None

        async with transaction(self.session_factory) as session:
            prolongation = await get_prolongation(session, prolongation_id, lock=True)
            # A request waiting for payment is settled by the gateway callback only
            if prolongation.status != ProlongationStatus.PENDING:
                raise InvalidTransition(f"Prolongation {prolongation.id} is {prolongation.status.value}")
            reservation = await get_reservation(session, prolongation.reservation_id, lock=True)

            # The reservation may have moved since the request, price against its current dropoff
            new_dropoff = override or prolongation.new_dropoff_date
            quote = quote_extension(reservation, new_dropoff)
            prolongation.new_dropoff_date = new_dropoff
            prolongation.additional_days = (new_dropoff - reservation.dropoff_date).days
            prolongation.reduction = quote.discount_percent
            prolongation.additional_cost = quote.amount
            prolongation.total_price = round_money(reservation.total_price + quote.amount)
            prolongation.payment_method = method

            if method == PaymentMethod.IN_AGENCY:
                await apply_extension(session, prolongation, reservation, today)
                prolongation.payment_status = ProlongationPaymentStatus.PAID
            else:
                if not reservation.can_be_prolonged:
                    raise InvalidTransition(f"Reservation {reservation.id} is {reservation.status.value}")
                await check_calendar(
                    session, reservation, reservation.matriculation, reservation.pickup_date, new_dropoff
                )
                order_id = new_order_id()
                payload = build_payment_payload(
                    amount=to_minor_units(quote.amount, settings.currency_minor_units),
                    description=f"Prolongation of reservation {reservation.id} until {new_dropoff}",
                    order_id=order_id,
                    success_url=(
                        f"{settings.success_url_prolongation}?orderId={order_id}"
                        f"&prolongation_id={prolongation.id}"
                    ),
                    full_name=reservation.user.full_name,
                    email=reservation.user.email,
                    phone=reservation.user.phone,
                )
                link = await self.gateway.init_payment(payload)
                prolongation.order_id = order_id
                prolongation.payment_ref = link.payment_ref
                prolongation.status = ProlongationStatus.WAITING_FOR_PAYMENT
                pay_url = link.pay_url

        if method == PaymentMethod.IN_AGENCY:
            logger.info(
                f"Prolongation {prolongation.id} accepted, reservation {reservation.id} "
                f"extended to {reservation.dropoff_date}"
            )
            await dispatch(
                self.notifier,
                NotificationEvent.PROLONGATION_ACCEPTED,
                prolongation_payload(prolongation, reservation),
            )
            return ProlongationDecision(prolongation=prolongation, reservation=reservation)

        logger.info(f"Prolongation {prolongation.id} waiting for card payment ({prolongation.order_id})")
        await dispatch(
            self.notifier,
            NotificationEvent.PROLONGATION_PAYMENT_LINK,
            prolongation_payload(prolongation, reservation, pay_url=pay_url),
        )
        return ProlongationDecision(prolongation=prolongation, pay_url=pay_url)

    async def confirm_prolongation_payment(self, order_id: str, prolongation_id,
                                           payment_ref: str) -> ProlongationRequest:
        """
        Gateway callback for a card prolongation.

        The payment is checked against the gateway, never against the
        redirect parameters alone. A replayed callback of a settled
        prolongation is a no-op. Any failed check leaves the reservation,
        the calendar and the prolongation untouched.
        """
        validate_callback_params(order_id, prolongation_id, payment_ref)
        prolongation_id = parse_record_id(prolongation_id)
        today = self.clock.today()

        async with transaction(self.session_factory) as session:
            result = await session.execute(
                select(ProlongationRequest)
                .where(
                    ProlongationRequest.id == prolongation_id,
                    ProlongationRequest.order_id == order_id,
                    ProlongationRequest.payment_ref == payment_ref,
                )
                .with_for_update()
            )
            prolongation = result.scalar_one_or_none()
            if not prolongation:
                raise NotFound("No prolongation matches this payment")

            if prolongation.is_settled:
                logger.info(f"Prolongation {prolongation.id} payment already recorded")
                return prolongation
            if prolongation.status != ProlongationStatus.WAITING_FOR_PAYMENT:
                raise InvalidTransition(f"Prolongation {prolongation.id} is {prolongation.status.value}")

            payment = await self.gateway.get_payment(payment_ref)
            if not payment.is_completed:
                raise PaymentNotCompleted(f"Payment {payment_ref} is {payment.status or 'unknown'}")
            if payment.order_id != order_id:
                logger.warning(f"Order id mismatch for prolongation {prolongation.id}: {payment.order_id}")
                raise OrderIdMismatch()

            expected = to_minor_units(prolongation.additional_cost, settings.currency_minor_units)
            if payment.amount != expected:
                logger.warning(
                    f"Amount mismatch for prolongation {prolongation.id}: got {payment.amount}, expected {expected}"
                )
                raise PaymentAmountMismatch(
                    f"Payment amount {payment.amount} does not match expected {expected}"
                )

            reservation = await get_reservation(session, prolongation.reservation_id, lock=True)
            try:
                await apply_extension(session, prolongation, reservation, today)
            except (DateConflict, MatriculationUnavailable, InvalidTransition, ValidationError) as e:
                # Money was taken, the agency has to settle this by hand
                logger.error(
                    f"Prolongation {prolongation.id} paid ({payment_ref}) but cannot be applied: {e.message}"
                )
                raise
            prolongation.payment_status = ProlongationPaymentStatus.PAID

        logger.info(
            f"Prolongation {prolongation.id} paid, reservation {reservation.id} extended to {reservation.dropoff_date}"
        )
        await dispatch(
            self.notifier,
            NotificationEvent.PROLONGATION_ACCEPTED,
            prolongation_payload(prolongation, reservation),
        )
        return prolongation

    async def reject_prolongation(self, prolongation_id: int, reason: Optional[str] = None) -> ProlongationRequest:
        """Reject a pending request, nothing was held on the calendar"""
        # A live payment link could still be paid after a rejection
        return await self._reject(prolongation_id, (ProlongationStatus.PENDING,), reason)

    async def expire_prolongation(self, prolongation_id: int) -> ProlongationRequest:
        """Reject an open request whose proposed dropoff date has passed"""
        return await self._reject(prolongation_id, OPEN_STATUSES, "expired")

    async def _reject(self, prolongation_id: int, from_statuses, reason: Optional[str]) -> ProlongationRequest:
        async with transaction(self.session_factory) as session:
            prolongation = await get_prolongation(session, prolongation_id, lock=True)
            if prolongation.status not in from_statuses:
                raise InvalidTransition(f"Prolongation {prolongation.id} is {prolongation.status.value}")
            reservation = await get_reservation(session, prolongation.reservation_id)
            prolongation.status = ProlongationStatus.REJECTED

        logger.info(f"Prolongation {prolongation.id} rejected ({reason or 'by the agency'})")
        await dispatch(
            self.notifier,
            NotificationEvent.PROLONGATION_REJECTED,
            prolongation_payload(prolongation, reservation, reason=reason),
        )
        return prolongation

    async def delete_prolongation(self, prolongation_id: int) -> None:
        async with transaction(self.session_factory) as session:
            prolongation = await get_prolongation(session, prolongation_id, lock=True)
            if prolongation.status == ProlongationStatus.ACCEPTED:
                raise InvalidTransition("An accepted prolongation cannot be deleted")
            await session.delete(prolongation)
        logger.info(f"Prolongation {prolongation_id} deleted")


# Global service instance
prolongation_service = ProlongationService()
