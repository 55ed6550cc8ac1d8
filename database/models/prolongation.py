from sqlalchemy import Column, Integer, String, Date, DateTime, Enum, ForeignKey, Numeric
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database.base import Base
import enum


class ProlongationStatus(enum.Enum):
    PENDING = "pending"                          # Submitted by the client
    WAITING_FOR_PAYMENT = "waiting_for_payment"  # Card link sent, gateway callback pending
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ProlongationPaymentStatus(enum.Enum):
    UNPAID = "unpaid"
    PAID = "paid"


class PaymentMethod(enum.Enum):
    IN_AGENCY = "en_agence"
    CARD = "par_carte"


# Long-stay discount tiers, in percent
DISCOUNT_TIERS = (0, 5, 10, 15)


class ProlongationRequest(Base):
    __tablename__ = "prolongation_requests"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False)

    # Proposal
    new_dropoff_date = Column(Date, nullable=False)
    additional_days = Column(Integer, default=0, nullable=False)
    reduction = Column(Integer, default=0, nullable=False)
    additional_cost = Column(Numeric(12, 3), default=0, nullable=False)
    total_price = Column(Numeric(12, 3), nullable=False)

    # Decision and payment
    status = Column(Enum(ProlongationStatus), default=ProlongationStatus.PENDING, nullable=False)
    payment_status = Column(
        Enum(ProlongationPaymentStatus), default=ProlongationPaymentStatus.UNPAID, nullable=False
    )
    payment_method = Column(Enum(PaymentMethod), nullable=True)
    order_id = Column(String(64), nullable=True, index=True)
    payment_ref = Column(String(255), nullable=True, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    reservation = relationship("Reservation", back_populates="prolongations")

    def __repr__(self):
        return f"<ProlongationRequest(id={self.id}, reservation_id={self.reservation_id}, status={self.status.value})>"

    @property
    def is_settled(self) -> bool:
        return (
            self.status == ProlongationStatus.ACCEPTED
            and self.payment_status == ProlongationPaymentStatus.PAID
        )
