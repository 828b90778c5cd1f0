from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.logistics_models import Equipment, Rental, RentalItem
from services.errors import InsufficientStock, NotFound


STOCK_LOGGER = logging.getLogger("rental_ops.stock")

CONSUMING_STATUSES = ("SCHEDULED", "ACTIVE")


@dataclass
class StockDrift:
    equipment_id: int
    stored: int
    expected: int


def committed_quantity(db: Session, equipment_id: int, exclude_rental_id: int | None = None) -> int:
    stmt = (
        select(func.coalesce(func.sum(RentalItem.Quantity), 0))
        .join(Rental, Rental.RentalID == RentalItem.RentalID)
        .where(RentalItem.EquipmentID == equipment_id)
        .where(Rental.Status.in_(CONSUMING_STATUSES))
    )
    if exclude_rental_id is not None:
        stmt = stmt.where(Rental.RentalID != exclude_rental_id)
    return int(db.execute(stmt).scalar() or 0)


def recompute(db: Session, equipment_id: int) -> int:
    """Rebuild Equipment.RentedQty from the rentals that currently hold stock.

    Never adjusts the counter in place; the sum is taken from source rows so
    repeated calls converge on the same value. Runs inside the caller's
    transaction and does not commit.
    """
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound("Equipment", equipment_id)
    db.flush()
    rented = committed_quantity(db, equipment_id)
    if equipment.RentedQty != rented:
        STOCK_LOGGER.info(
            "Stock recomputed equipment_id=%s rented_qty=%s previous=%s",
            equipment_id,
            rented,
            equipment.RentedQty,
        )
        equipment.RentedQty = rented
        equipment.UpdatedDate = datetime.now()
    return rented


def recompute_many(db: Session, equipment_ids: Iterable[int]) -> dict[int, int]:
    # One write per distinct id, in id order so concurrent writers lock rows alike.
    return {equipment_id: recompute(db, equipment_id) for equipment_id in sorted(set(equipment_ids))}


def available_qty(equipment: Equipment) -> int:
    return int(equipment.TotalQty or 0) - int(equipment.RentedQty or 0)


def stock_snapshot(db: Session, equipment_id: int) -> dict:
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound("Equipment", equipment_id)
    return {
        "equipmentID": equipment.EquipmentID,
        "totalQty": int(equipment.TotalQty or 0),
        "rentedQty": int(equipment.RentedQty or 0),
        "availableQty": available_qty(equipment),
    }


def requested_by_equipment(lines: Iterable) -> dict[int, int]:
    totals: dict[int, int] = {}
    for line in lines:
        quantity = int(line.quantity)
        if quantity <= 0:
            raise ValueError(f"Quantity for equipment {line.equipmentID} must be greater than zero.")
        totals[line.equipmentID] = totals.get(line.equipmentID, 0) + quantity
    return totals


def lock_equipment(db: Session, equipment_ids: Iterable[int]) -> dict[int, Equipment]:
    ids = sorted(set(equipment_ids))
    if not ids:
        return {}
    rows = db.execute(
        select(Equipment)
        .where(Equipment.EquipmentID.in_(ids))
        .order_by(Equipment.EquipmentID)
        .with_for_update()
    ).scalars().all()
    found = {row.EquipmentID: row for row in rows}
    for equipment_id in ids:
        if equipment_id not in found:
            raise NotFound("Equipment", equipment_id)
    return found


def ensure_available(db: Session, requested: dict[int, int], exclude_rental_id: int | None = None) -> None:
    """Reject with InsufficientStock before anything is written.

    When a rental is being edited its own current commitment is left out of
    the comparison, so shrinking or re-submitting the same lines never fails.
    """
    equipment_by_id = lock_equipment(db, requested.keys())
    blocking = []
    for equipment_id, quantity in sorted(requested.items()):
        equipment = equipment_by_id[equipment_id]
        held = committed_quantity(db, equipment_id, exclude_rental_id=exclude_rental_id)
        available = int(equipment.TotalQty or 0) - held
        if quantity > available:
            blocking.append({"equipmentID": equipment_id, "requested": quantity, "available": max(available, 0)})
    if blocking:
        STOCK_LOGGER.warning("Stock check rejected blocking=%s", blocking)
        raise InsufficientStock(blocking)


def find_drift(db: Session) -> list[StockDrift]:
    held = dict(
        db.execute(
            select(RentalItem.EquipmentID, func.sum(RentalItem.Quantity))
            .join(Rental, Rental.RentalID == RentalItem.RentalID)
            .where(Rental.Status.in_(CONSUMING_STATUSES))
            .group_by(RentalItem.EquipmentID)
        ).all()
    )
    drift = []
    for equipment in db.execute(select(Equipment).order_by(Equipment.EquipmentID)).scalars():
        expected = int(held.get(equipment.EquipmentID) or 0)
        if int(equipment.RentedQty or 0) != expected:
            drift.append(StockDrift(equipment.EquipmentID, int(equipment.RentedQty or 0), expected))
    return drift
