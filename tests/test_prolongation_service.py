"""Prolongation workflow tests."""

from datetime import date
from decimal import Decimal

import pytest

from database.models import (
    PaymentMethod,
    ProlongationPaymentStatus,
    ProlongationRequest,
    ProlongationStatus,
    Reservation,
)
from services.exceptions import (
    DateConflict,
    GatewayError,
    InvalidTransition,
    NotFound,
    OrderIdMismatch,
    PaymentAmountMismatch,
    PaymentNotCompleted,
    ValidationError,
)
from services.notification_service import NotificationEvent


def june(day):
    return date(2025, 6, day)


@pytest.fixture
async def rental(make_reservation, fleet):
    """Confirmed 4-day rental at 100/day, 30% paid"""
    return await make_reservation(
        "2025-06-01", "2025-06-05", "confirmed", fleet.plate, 30,
        total_price=Decimal("400"), amount_paid=Decimal("120"),
    )


@pytest.mark.asyncio
async def test_create_prolongation_prices_on_server(prolongations, rental):
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-17", reduction=5, total_price=1)

    assert prolongation.status == ProlongationStatus.PENDING
    assert prolongation.payment_status == ProlongationPaymentStatus.UNPAID
    assert prolongation.additional_days == 12
    assert prolongation.reduction == 10
    assert prolongation.additional_cost == Decimal("1080.00")
    assert prolongation.total_price == Decimal("1480.00")


@pytest.mark.asyncio
async def test_create_prolongation_rules(prolongations, make_reservation, rental):
    with pytest.raises(ValidationError):
        await prolongations.create_prolongation(rental.id, "2025-06-05", reduction=0)
    with pytest.raises(ValidationError):
        await prolongations.create_prolongation(rental.id, "2025-06-10", reduction=7)

    pending = await make_reservation("2025-06-10", "2025-06-15")
    with pytest.raises(InvalidTransition):
        await prolongations.create_prolongation(pending.id, "2025-06-20")
    with pytest.raises(NotFound):
        await prolongations.create_prolongation(999, "2025-06-20")


@pytest.mark.asyncio
async def test_accept_in_agency(prolongations, rental, fleet, calendar, notifier):
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-17", reduction=10)

    decision = await prolongations.accept_prolongation(prolongation.id, "en_agence")

    assert decision.prolongation.status == ProlongationStatus.ACCEPTED
    assert decision.prolongation.payment_method == PaymentMethod.IN_AGENCY
    assert decision.prolongation.payment_status == ProlongationPaymentStatus.PAID
    assert decision.prolongation.is_settled
    assert decision.pay_url is None
    reservation = decision.reservation
    assert reservation.dropoff_date == june(17)
    assert reservation.total_price == Decimal("1480.00")
    assert reservation.amount_paid == Decimal("444.00")
    assert await calendar() == [(june(1), june(17), rental.id)]

    [payload] = notifier.of_type(NotificationEvent.PROLONGATION_ACCEPTED)
    assert payload["new_dropoff_date"] == "2025-06-17"


@pytest.mark.asyncio
async def test_accept_with_other_dropoff(prolongations, rental, calendar):
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-17")

    decision = await prolongations.accept_prolongation(prolongation.id, PaymentMethod.IN_AGENCY, "2025-06-08")

    assert decision.prolongation.additional_days == 3
    assert decision.prolongation.additional_cost == Decimal("300.00")
    assert decision.reservation.total_price == Decimal("700.00")
    assert await calendar() == [(june(1), june(8), rental.id)]


@pytest.mark.asyncio
async def test_accept_in_agency_conflict_changes_nothing(prolongations, make_reservation, rental, fleet,
                                                         calendar, fetch):
    other = await make_reservation("2025-06-10", "2025-06-12", "confirmed", fleet.plate, 100)
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-17")

    with pytest.raises(DateConflict):
        await prolongations.accept_prolongation(prolongation.id, "en_agence")

    assert (await fetch(ProlongationRequest, prolongation.id)).status == ProlongationStatus.PENDING
    stored = await fetch(Reservation, rental.id)
    assert stored.dropoff_date == june(5)
    assert stored.total_price == Decimal("400")
    assert await calendar() == [(june(1), june(5), rental.id), (june(10), june(12), other.id)]


@pytest.mark.asyncio
async def test_accept_by_card_waits_for_payment(prolongations, rental, gateway, notifier, calendar, fetch):
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-17")

    decision = await prolongations.accept_prolongation(prolongation.id, "par_carte")

    assert decision.pay_url == "https://pay.test/ref-1"
    assert decision.reservation is None
    stored = await fetch(ProlongationRequest, prolongation.id)
    assert stored.status == ProlongationStatus.WAITING_FOR_PAYMENT
    assert stored.payment_ref == "ref-1"
    assert stored.order_id == gateway.payloads["ref-1"]["orderId"]
    assert gateway.payloads["ref-1"]["amount"] == 1080000
    assert f"prolongation_id={prolongation.id}" in gateway.payloads["ref-1"]["successUrl"]

    assert (await fetch(Reservation, rental.id)).dropoff_date == june(5)
    assert await calendar() == [(june(1), june(5), rental.id)]
    [payload] = notifier.of_type(NotificationEvent.PROLONGATION_PAYMENT_LINK)
    assert payload["pay_url"] == decision.pay_url


@pytest.mark.asyncio
async def test_gateway_failure_aborts_acceptance(prolongations, rental, gateway, fetch):
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-17")
    gateway.fail_with = GatewayError("Gateway rejected the API key")

    with pytest.raises(GatewayError):
        await prolongations.accept_prolongation(prolongation.id, "par_carte")

    stored = await fetch(ProlongationRequest, prolongation.id)
    assert stored.status == ProlongationStatus.PENDING
    assert stored.order_id is None


async def wait_for_card_payment(prolongations, rental_id, new_dropoff="2025-06-17"):
    prolongation = await prolongations.create_prolongation(rental_id, new_dropoff)
    await prolongations.accept_prolongation(prolongation.id, "par_carte")
    return prolongation.id


@pytest.mark.asyncio
async def test_card_payment_callback_extends_reservation(prolongations, rental, gateway, calendar, fetch):
    prolongation_id = await wait_for_card_payment(prolongations, rental.id)
    order_id = gateway.payloads["ref-1"]["orderId"]
    gateway.complete("ref-1")

    prolongation = await prolongations.confirm_prolongation_payment(order_id, str(prolongation_id), "ref-1")

    assert prolongation.is_settled
    stored = await fetch(Reservation, rental.id)
    assert stored.dropoff_date == june(17)
    assert stored.total_price == Decimal("1480")
    assert await calendar() == [(june(1), june(17), rental.id)]


@pytest.mark.asyncio
async def test_card_payment_callback_is_idempotent(prolongations, rental, gateway, calendar, fetch, notifier):
    prolongation_id = await wait_for_card_payment(prolongations, rental.id)
    order_id = gateway.payloads["ref-1"]["orderId"]
    gateway.complete("ref-1")

    await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-1")
    await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-1")

    assert gateway.lookups == 1
    assert (await fetch(Reservation, rental.id)).total_price == Decimal("1480")
    assert await calendar() == [(june(1), june(17), rental.id)]
    assert len(notifier.of_type(NotificationEvent.PROLONGATION_ACCEPTED)) == 1


@pytest.mark.asyncio
async def test_amount_mismatch_changes_nothing(prolongations, rental, gateway, calendar, fetch):
    prolongation_id = await wait_for_card_payment(prolongations, rental.id)
    order_id = gateway.payloads["ref-1"]["orderId"]
    gateway.complete("ref-1", amount=1079999)

    with pytest.raises(PaymentAmountMismatch):
        await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-1")

    stored = await fetch(ProlongationRequest, prolongation_id)
    assert stored.status == ProlongationStatus.WAITING_FOR_PAYMENT
    assert stored.payment_status == ProlongationPaymentStatus.UNPAID
    assert (await fetch(Reservation, rental.id)).dropoff_date == june(5)
    assert await calendar() == [(june(1), june(5), rental.id)]


@pytest.mark.asyncio
async def test_callback_checks(prolongations, rental, gateway):
    prolongation_id = await wait_for_card_payment(prolongations, rental.id)
    order_id = gateway.payloads["ref-1"]["orderId"]

    gateway.complete("ref-1", status="pending")
    with pytest.raises(PaymentNotCompleted):
        await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-1")

    gateway.complete("ref-1", order_id="someone-else")
    with pytest.raises(OrderIdMismatch):
        await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-1")

    with pytest.raises(NotFound):
        await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-2")
    with pytest.raises(ValidationError):
        await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "${paymentRef}")
    with pytest.raises(ValidationError):
        await prolongations.confirm_prolongation_payment(None, prolongation_id, "ref-1")


@pytest.mark.asyncio
async def test_conflict_after_payment_is_fatal(prolongations, make_reservation, rental, fleet, gateway, calendar,
                                               fetch):
    prolongation_id = await wait_for_card_payment(prolongations, rental.id)
    order_id = gateway.payloads["ref-1"]["orderId"]
    gateway.complete("ref-1")
    # Someone books the plate before the client pays
    other = await make_reservation("2025-06-15", "2025-06-20", "confirmed", fleet.plate, 30)

    with pytest.raises(DateConflict):
        await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-1")

    assert (await fetch(ProlongationRequest, prolongation_id)).status == ProlongationStatus.WAITING_FOR_PAYMENT
    assert await calendar() == [(june(1), june(5), rental.id), (june(15), june(20), other.id)]


@pytest.mark.asyncio
async def test_reject_prolongation(prolongations, rental, notifier, calendar):
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-17")

    rejected = await prolongations.reject_prolongation(prolongation.id)

    assert rejected.status == ProlongationStatus.REJECTED
    assert await calendar() == [(june(1), june(5), rental.id)]
    [payload] = notifier.of_type(NotificationEvent.PROLONGATION_REJECTED)
    assert payload["email"] == "amira@example.com"

    with pytest.raises(InvalidTransition):
        await prolongations.accept_prolongation(prolongation.id, "en_agence")
    with pytest.raises(InvalidTransition):
        await prolongations.reject_prolongation(prolongation.id)


@pytest.mark.asyncio
async def test_delete_prolongation(prolongations, rental, fetch):
    pending = await prolongations.create_prolongation(rental.id, "2025-06-08")
    await prolongations.delete_prolongation(pending.id)
    assert await fetch(ProlongationRequest, pending.id) is None

    accepted = await prolongations.create_prolongation(rental.id, "2025-06-08")
    await prolongations.accept_prolongation(accepted.id, "en_agence")
    with pytest.raises(InvalidTransition):
        await prolongations.delete_prolongation(accepted.id)


@pytest.mark.asyncio
async def test_invalid_payment_method(prolongations, rental):
    prolongation = await prolongations.create_prolongation(rental.id, "2025-06-08")
    with pytest.raises(ValidationError):
        await prolongations.accept_prolongation(prolongation.id, "cheque")


@pytest.mark.asyncio
async def test_card_acceptance_is_not_repeated(prolongations, rental, gateway, calendar, fetch):
    prolongation_id = await wait_for_card_payment(prolongations, rental.id)
    order_id = gateway.payloads["ref-1"]["orderId"]

    with pytest.raises(InvalidTransition):
        await prolongations.accept_prolongation(prolongation_id, "par_carte")
    with pytest.raises(InvalidTransition):
        await prolongations.accept_prolongation(prolongation_id, "en_agence")
    assert list(gateway.payloads) == ["ref-1"]

    # The first payment link still settles the request
    gateway.complete("ref-1")
    settled = await prolongations.confirm_prolongation_payment(order_id, prolongation_id, "ref-1")
    assert settled.is_settled
    assert await calendar() == [(june(1), june(17), rental.id)]


@pytest.mark.asyncio
async def test_waiting_for_payment_cannot_be_rejected(prolongations, rental, gateway, fetch):
    prolongation_id = await wait_for_card_payment(prolongations, rental.id)

    with pytest.raises(InvalidTransition):
        await prolongations.reject_prolongation(prolongation_id)
    assert (await fetch(ProlongationRequest, prolongation_id)).status == ProlongationStatus.WAITING_FOR_PAYMENT

    expired = await prolongations.expire_prolongation(prolongation_id)
    assert expired.status == ProlongationStatus.REJECTED
