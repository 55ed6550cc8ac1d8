from sqlalchemy import Column, Integer, String, Date, DateTime, Enum, ForeignKey, Numeric, Index, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from database.base import Base
import enum


class VehicleCategory(enum.Enum):
    ECONOMY = "economique"
    SUV = "SUV"
    LUXURY = "luxe"


class MatriculationStatus(enum.Enum):
    AVAILABLE = "available"      # Free to be handed over
    RENTED = "rented"            # Currently out with a customer
    MAINTENANCE = "maintenance"  # Cannot be booked


class Vehicle(Base):
    """A vehicle model offered for rental; physical units are its matriculations"""
    __tablename__ = "vehicles"

    id = Column(Integer, primary_key=True, index=True)
    brand = Column(String(100), nullable=False)
    model = Column(String(100), nullable=False)
    category = Column(Enum(VehicleCategory), default=VehicleCategory.ECONOMY, nullable=False)

    # Tariff
    price_per_day = Column(Numeric(10, 3), nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    matriculations = relationship(
        "Matriculation", back_populates="vehicle", cascade="all, delete-orphan"
    )
    reservations = relationship("Reservation", back_populates="vehicle")

    def __repr__(self):
        return f"<Vehicle(id={self.id}, brand={self.brand}, model={self.model})>"

    @property
    def display_name(self) -> str:
        return f"{self.brand} {self.model}"


class Matriculation(Base):
    __tablename__ = "matriculations"
    __table_args__ = (
        UniqueConstraint("vehicle_id", "plate_number", name="uq_matriculation_plate"),
    )

    id = Column(Integer, primary_key=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    plate_number = Column(String(50), nullable=False, index=True)

    status = Column(Enum(MatriculationStatus), default=MatriculationStatus.AVAILABLE, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    vehicle = relationship("Vehicle", back_populates="matriculations")
    unavailable_periods = relationship(
        "UnavailablePeriod",
        back_populates="matriculation",
        cascade="all, delete-orphan",
        order_by="UnavailablePeriod.start_date",
    )

    def __repr__(self):
        return f"<Matriculation(id={self.id}, plate={self.plate_number}, status={self.status.value})>"

    @property
    def is_in_maintenance(self) -> bool:
        return self.status == MatriculationStatus.MAINTENANCE


class UnavailablePeriod(Base):
    """Inclusive date range during which a matriculation is held by one reservation"""
    __tablename__ = "unavailable_periods"
    __table_args__ = (
        Index("ix_unavailable_periods_range", "matriculation_id", "start_date", "end_date"),
        Index("ix_unavailable_periods_owner", "matriculation_id", "reservation_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    matriculation_id = Column(Integer, ForeignKey("matriculations.id"), nullable=False)
    # Back-reference only: the reservation does not own the row
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    matriculation = relationship("Matriculation", back_populates="unavailable_periods")

    def __repr__(self):
        return (
            f"<UnavailablePeriod(matriculation_id={self.matriculation_id}, "
            f"reservation_id={self.reservation_id}, {self.start_date}..{self.end_date})>"
        )
