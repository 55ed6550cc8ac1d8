"""
Daily reservation maintenance.

Runs periodically as a background task: expires stale pending bookings,
marks plates of ongoing rentals as rented, completes finished rentals and
rejects prolongation requests whose proposed dropoff date has passed.
"""
import asyncio
from typing import Dict, List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import settings
from database.base import async_session_factory
from database.models.prolongation import ProlongationRequest
from database.models.reservation import Reservation, ReservationStatus
from database.models.vehicle import MatriculationStatus
from services.availability import lock_matriculation
from services.clock import Clock, system_clock
from services.exceptions import BookingError
from services.notification_service import NotificationDispatcher
from services.prolongation_service import OPEN_STATUSES, ProlongationService
from services.reservation_service import ReservationService, get_reservation
from services.transaction import transaction


class MaintenanceService:
    """Status sweep over reservations and prolongations"""

    def __init__(
        self,
        session_factory: async_sessionmaker = async_session_factory,
        notifier: Optional[NotificationDispatcher] = None,
        clock: Clock = system_clock,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.reservations = ReservationService(session_factory=session_factory, notifier=notifier, clock=clock)
        self.prolongations = ProlongationService(session_factory=session_factory, notifier=notifier, clock=clock)

    async def _ids(self, query) -> List[int]:
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _mark_rented(self, reservation_id: int) -> bool:
        async with transaction(self.session_factory) as session:
            reservation = await get_reservation(session, reservation_id)
            if not reservation.matriculation:
                return False
            matriculation = await lock_matriculation(session, reservation.vehicle_id, reservation.matriculation)
            if matriculation is None or matriculation.status != MatriculationStatus.AVAILABLE:
                return False
            matriculation.status = MatriculationStatus.RENTED
            return True

    async def run_daily(self) -> Dict[str, int]:
        """
        Run every sweep once for the current day.

        Each record is handled in its own transaction; a record that fails
        (or changed status since it was selected) is logged and skipped.

        Returns:
            dict: Statistics per sweep plus the number of skipped records
        """
        today = self.clock.today()
        stats = {
            "cancelled": 0,
            "rented": 0,
            "completed": 0,
            "prolongations_rejected": 0,
            "skipped": 0,
        }
        logger.info(f"Daily maintenance started for {today}")

        # Pending bookings nobody acted on before their dropoff date
        expired_pending = await self._ids(
            select(Reservation.id).where(
                Reservation.status == ReservationStatus.PENDING,
                Reservation.dropoff_date < today,
            )
        )
        for reservation_id in expired_pending:
            try:
                await self.reservations.change_reservation_status(reservation_id, ReservationStatus.CANCELLED)
                stats["cancelled"] += 1
            except BookingError as e:
                logger.error(f"Could not cancel expired reservation {reservation_id}: {e.message}")
                stats["skipped"] += 1

        ongoing = await self._ids(
            select(Reservation.id).where(
                Reservation.status.in_((ReservationStatus.CONFIRMED, ReservationStatus.PAID)),
                Reservation.pickup_date <= today,
                Reservation.dropoff_date >= today,
            )
        )
        for reservation_id in ongoing:
            try:
                if await self._mark_rented(reservation_id):
                    stats["rented"] += 1
            except BookingError as e:
                logger.error(f"Could not mark reservation {reservation_id} as rented: {e.message}")
                stats["skipped"] += 1

        finished = await self._ids(
            select(Reservation.id).where(
                Reservation.status.in_((ReservationStatus.CONFIRMED, ReservationStatus.PAID)),
                Reservation.dropoff_date < today,
            )
        )
        for reservation_id in finished:
            try:
                await self.reservations.change_reservation_status(reservation_id, ReservationStatus.COMPLETED)
                stats["completed"] += 1
            except BookingError as e:
                logger.error(f"Could not complete reservation {reservation_id}: {e.message}")
                stats["skipped"] += 1

        expired_prolongations = await self._ids(
            select(ProlongationRequest.id).where(
                ProlongationRequest.status.in_(OPEN_STATUSES),
                ProlongationRequest.new_dropoff_date < today,
            )
        )
        for prolongation_id in expired_prolongations:
            try:
                await self.prolongations.expire_prolongation(prolongation_id)
                stats["prolongations_rejected"] += 1
            except BookingError as e:
                logger.error(f"Could not reject expired prolongation {prolongation_id}: {e.message}")
                stats["skipped"] += 1

        logger.info(f"Daily maintenance finished: {stats}")
        return stats


async def run_daily_maintenance(
    clock: Clock = system_clock,
    session_factory: async_sessionmaker = async_session_factory,
    notifier: Optional[NotificationDispatcher] = None,
) -> Dict[str, int]:
    service = MaintenanceService(session_factory=session_factory, notifier=notifier, clock=clock)
    return await service.run_daily()


async def run_periodic_maintenance(interval_hours: Optional[float] = None,
                                   service: Optional[MaintenanceService] = None):
    """
    Run the daily maintenance forever.

    Args:
        interval_hours: Hours between two runs, defaults to the configured interval
        service: Maintenance service to use
    """
    interval_hours = interval_hours or settings.maintenance_interval_hours
    service = service or MaintenanceService()

    logger.info(f"Maintenance service started (interval: {interval_hours}h)")

    while True:
        try:
            await service.run_daily()
        except Exception as e:
            logger.exception(f"Maintenance error: {e}")

        await asyncio.sleep(interval_hours * 3600)
