from .user import User
from .vehicle import Vehicle, Matriculation, UnavailablePeriod, VehicleCategory, MatriculationStatus
from .reservation import Reservation, ReservationStatus, PAYMENT_PERCENTAGES
from .prolongation import (
    ProlongationRequest, ProlongationStatus, ProlongationPaymentStatus, PaymentMethod, DISCOUNT_TIERS
)

__all__ = [
    "User",
    "Vehicle", "Matriculation", "UnavailablePeriod", "VehicleCategory", "MatriculationStatus",
    "Reservation", "ReservationStatus", "PAYMENT_PERCENTAGES",
    "ProlongationRequest", "ProlongationStatus", "ProlongationPaymentStatus", "PaymentMethod",
    "DISCOUNT_TIERS",
]
