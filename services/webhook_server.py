"""
Webhook server for Konnect payment redirects
"""
from typing import Optional

from aiohttp import web
from loguru import logger

from services.exceptions import BookingError
from services.prolongation_service import ProlongationService, prolongation_service
from services.reservation_service import ReservationService, reservation_service


RESERVATIONS_KEY = web.AppKey("reservation_service", ReservationService)
PROLONGATIONS_KEY = web.AppKey("prolongation_service", ProlongationService)


def error_response(error: BookingError) -> web.Response:
    return web.json_response({"message": error.message}, status=error.status_code)


async def handle_reservation_payment(request: web.Request) -> web.Response:
    """
    Konnect redirect after a client booking payment

    Query: payment_ref, orderId, reservation_id
    """
    params = request.query
    logger.info(f"Reservation payment callback: {dict(params)}")

    try:
        reservation = await request.app[RESERVATIONS_KEY].confirm_reservation_payment(
            order_id=params.get("orderId"),
            reservation_id=params.get("reservation_id"),
            payment_ref=params.get("payment_ref"),
        )
    except BookingError as e:
        logger.warning(f"Reservation payment callback rejected: {e.message}")
        return error_response(e)

    return web.json_response({
        "message": "Payment confirmed",
        "reservation_id": reservation.id,
        "status": reservation.status.value,
        "amount_paid": str(reservation.amount_paid),
    })


async def handle_prolongation_payment(request: web.Request) -> web.Response:
    """
    Konnect redirect after a prolongation payment

    Query: payment_ref, orderId, prolongation_id
    """
    params = request.query
    logger.info(f"Prolongation payment callback: {dict(params)}")

    try:
        prolongation = await request.app[PROLONGATIONS_KEY].confirm_prolongation_payment(
            order_id=params.get("orderId"),
            prolongation_id=params.get("prolongation_id"),
            payment_ref=params.get("payment_ref"),
        )
    except BookingError as e:
        logger.warning(f"Prolongation payment callback rejected: {e.message}")
        return error_response(e)

    return web.json_response({
        "message": "Prolongation payment confirmed",
        "prolongation_id": prolongation.id,
        "status": prolongation.status.value,
        "payment_status": prolongation.payment_status.value,
    })


async def health_check(request: web.Request) -> web.Response:
    """Health check endpoint"""
    return web.Response(status=200, text="OK")


def create_webhook_app(reservations: Optional[ReservationService] = None,
                       prolongations: Optional[ProlongationService] = None) -> web.Application:
    """Create the webhook application"""
    app = web.Application()
    app[RESERVATIONS_KEY] = reservations or reservation_service
    app[PROLONGATIONS_KEY] = prolongations or prolongation_service

    # Routes
    app.router.add_get("/payments/reservations/confirm", handle_reservation_payment)
    app.router.add_get("/payments/prolongations/confirm", handle_prolongation_payment)
    app.router.add_get("/health", health_check)

    return app


async def run_webhook_server(host: str = "0.0.0.0", port: int = 8080,
                             app: Optional[web.Application] = None) -> web.AppRunner:
    """
    Start the webhook server

    Args:
        host: Host to listen on
        port: Port to listen on
        app: Application to serve, defaults to the global services

    Returns:
        The runner, to be cleaned up on shutdown
    """
    if app is None:
        app = create_webhook_app()
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"🌐 Webhook server started on http://{host}:{port}")
    logger.info(f"   - Reservation payments: GET http://{host}:{port}/payments/reservations/confirm")
    logger.info(f"   - Prolongation payments: GET http://{host}:{port}/payments/prolongations/confirm")
    logger.info(f"   - Health check: GET http://{host}:{port}/health")

    return runner

