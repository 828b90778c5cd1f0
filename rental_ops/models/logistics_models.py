from sqlalchemy import CheckConstraint, Column, Date, DateTime, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class Equipment(Base):
    __tablename__ = "Equipment"
    __table_args__ = (
        CheckConstraint("TotalQty >= 0", name="ck_equipment_total_qty"),
        CheckConstraint("RentedQty >= 0", name="ck_equipment_rented_qty"),
    )

    EquipmentID = Column(Integer, primary_key=True)
    Name = Column(String(255), nullable=False)
    Description = Column(String(1000))
    TotalQty = Column(Integer, nullable=False, default=0)
    # Derived; written only by services.stock_ledger.recompute.
    RentedQty = Column(Integer, nullable=False, default=0)
    UnitPrice = Column(Numeric(10, 2))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    RentalItems = relationship("RentalItem", back_populates="Equipment")


class Rental(Base):
    __tablename__ = "Rental"

    RentalID = Column(Integer, primary_key=True)
    PersonID = Column(Integer, nullable=False)
    Status = Column(String(20), nullable=False, default="SCHEDULED")
    StartDate = Column(Date, nullable=False)
    EndDate = Column(Date, nullable=False)
    DeliveryAddress = Column(String(500))
    DeliveryDriverID = Column(Integer)
    ReturnDriverID = Column(Integer)
    Notes = Column(String(1000))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    RentalItems = relationship("RentalItem", back_populates="Rental", cascade="all, delete-orphan")
    RouteStops = relationship("RouteStop", back_populates="Rental")


class RentalItem(Base):
    __tablename__ = "RentalItems"
    __table_args__ = (CheckConstraint("Quantity > 0", name="ck_rental_item_quantity"),)

    RentalItemID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("Rental.RentalID"), nullable=False)
    EquipmentID = Column(Integer, ForeignKey("Equipment.EquipmentID"), nullable=False)
    Quantity = Column(Integer, nullable=False, default=1)
    UnitPrice = Column(Numeric(10, 2))

    Rental = relationship("Rental", back_populates="RentalItems")
    Equipment = relationship("Equipment", back_populates="RentalItems")


class Route(Base):
    __tablename__ = "Routes"

    RouteID = Column(Integer, primary_key=True)
    DriverID = Column(Integer, nullable=False)
    RouteDate = Column(Date, nullable=False)
    Status = Column(String(20), nullable=False, default="PLANNED")
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Stops = relationship(
        "RouteStop",
        back_populates="Route",
        cascade="all, delete-orphan",
        order_by="RouteStop.Sequence",
    )


class RouteStop(Base):
    __tablename__ = "RouteStops"
    __table_args__ = (
        # A rental leg can sit in at most one stop across all routes.
        UniqueConstraint("RentalID", "StopType", name="uq_route_stop_rental_leg"),
        UniqueConstraint("RouteID", "Sequence", name="uq_route_stop_sequence"),
    )

    StopID = Column(Integer, primary_key=True)
    RouteID = Column(Integer, ForeignKey("Routes.RouteID"), nullable=False)
    RentalID = Column(Integer, ForeignKey("Rental.RentalID"), nullable=False)
    StopType = Column(String(20), nullable=False)
    Sequence = Column(Integer, nullable=False)
    Status = Column(String(20), nullable=False, default="PENDING")
    CompletedAt = Column(DateTime)
    ReceiverName = Column(String(255))
    Signature = Column(Text)

    Route = relationship("Route", back_populates="Stops")
    Rental = relationship("Rental", back_populates="RouteStops")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(Integer)
    CreatedAt = Column(DateTime, server_default=func.now())
