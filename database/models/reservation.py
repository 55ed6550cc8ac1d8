from sqlalchemy import Column, Integer, String, Date, DateTime, Enum, ForeignKey, Numeric
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database.base import Base
import enum


class ReservationStatus(enum.Enum):
    PENDING = "pending"         # Awaiting payment or admin decision
    PAID = "paid"               # Deposit received, awaiting confirmation
    CONFIRMED = "confirmed"     # Holds the matriculation calendar
    COMPLETED = "completed"     # Vehicle returned
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# Payment percentages the agency accepts (deposit or full payment)
PAYMENT_PERCENTAGES = (0, 30, 100)


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)

    # Relationships
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    matriculation = Column(String(50), nullable=True)  # plate number

    # Itinerary, dates are UTC calendar days
    pickup_location = Column(String(255), nullable=False)
    dropoff_location = Column(String(255), nullable=False)
    pickup_date = Column(Date, nullable=False)
    dropoff_date = Column(Date, nullable=False)
    pickup_time = Column(String(5), nullable=False)
    dropoff_time = Column(String(5), nullable=False)
    flight_number = Column(String(20), nullable=True)

    status = Column(Enum(ReservationStatus), default=ReservationStatus.PENDING, nullable=False)

    # Finances
    payment_percentage = Column(Integer, default=0, nullable=False)
    total_price = Column(Numeric(12, 3), nullable=False)
    amount_paid = Column(Numeric(12, 3), default=0, nullable=False)
    currency = Column(String(3), default="TND", nullable=False)

    # Card payment handoff, the percentage chosen at checkout applies once paid
    requested_payment_percentage = Column(Integer, nullable=True)
    order_id = Column(String(64), nullable=True, index=True)
    payment_ref = Column(String(255), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="reservations")
    vehicle = relationship("Vehicle", back_populates="reservations")
    prolongations = relationship(
        "ProlongationRequest", back_populates="reservation", cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<Reservation(id={self.id}, matriculation={self.matriculation}, status={self.status.value})>"

    @property
    def is_confirmed(self) -> bool:
        return self.status == ReservationStatus.CONFIRMED

    @property
    def can_be_prolonged(self) -> bool:
        return self.status in (ReservationStatus.CONFIRMED, ReservationStatus.PAID)

    @property
    def remaining_amount(self):
        return self.total_price - self.amount_paid
