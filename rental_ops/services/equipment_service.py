from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.logistics_models import AuditLog, Equipment, RentalItem
from services.errors import EquipmentInUse, NotFound, unit_of_work
from services.stock_ledger import available_qty, lock_equipment, recompute


EQUIPMENT_LOGGER = logging.getLogger("rental_ops.equipment")

_FIELD_MAP = {
    "name": "Name",
    "description": "Description",
    "totalQty": "TotalQty",
    "unitPrice": "UnitPrice",
}


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=details,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def _apply_fields(equipment: Equipment, values: dict) -> None:
    for field, value in values.items():
        column = _FIELD_MAP.get(field)
        if column is None:
            continue
        setattr(equipment, column, value)


def create_equipment(db: Session, values: dict, user_id: int | None = None) -> Equipment:
    total = int(values.get("totalQty") or 0)
    if total < 0:
        raise ValueError("totalQty must be zero or greater.")
    if not (values.get("name") or "").strip():
        raise ValueError("name is required.")

    with unit_of_work(db):
        equipment = Equipment(RentedQty=0, CreatedDate=datetime.now(), UpdatedDate=datetime.now())
        _apply_fields(equipment, values)
        equipment.TotalQty = total
        db.add(equipment)
        db.flush()
        log_audit(db, "Equipment", equipment.EquipmentID, "CreateEquipment", f"totalQty={total}", user_id=user_id)
    EQUIPMENT_LOGGER.info("Equipment created equipment_id=%s total_qty=%s", equipment.EquipmentID, total)
    return equipment


def update_equipment(db: Session, equipment_id: int, values: dict, user_id: int | None = None) -> Equipment:
    with unit_of_work(db):
        found = lock_equipment(db, [equipment_id])
        equipment = found[equipment_id]
        rented = recompute(db, equipment_id)
        if "totalQty" in values and values["totalQty"] is not None:
            new_total = int(values["totalQty"])
            if new_total < 0:
                raise ValueError("totalQty must be zero or greater.")
            if new_total < rented:
                raise EquipmentInUse(
                    f"Equipment {equipment_id} has {rented} units committed; totalQty cannot drop to {new_total}.",
                    equipmentID=equipment_id,
                    rentedQty=rented,
                )
        _apply_fields(equipment, {key: value for key, value in values.items() if value is not None})
        equipment.UpdatedDate = datetime.now()
        log_audit(db, "Equipment", equipment_id, "UpdateEquipment", f"totalQty={equipment.TotalQty}", user_id=user_id)
    return equipment


def delete_equipment(db: Session, equipment_id: int, user_id: int | None = None) -> None:
    with unit_of_work(db):
        equipment = db.get(Equipment, equipment_id)
        if not equipment:
            raise NotFound("Equipment", equipment_id)
        references = db.execute(
            select(func.count(RentalItem.RentalItemID)).where(RentalItem.EquipmentID == equipment_id)
        ).scalar()
        if references:
            raise EquipmentInUse(
                f"Equipment {equipment_id} is referenced by {references} rental lines.",
                equipmentID=equipment_id,
            )
        db.delete(equipment)
        log_audit(db, "Equipment", equipment_id, "DeleteEquipment", None, user_id=user_id)
    EQUIPMENT_LOGGER.info("Equipment deleted equipment_id=%s", equipment_id)


def serialize_equipment(equipment: Equipment) -> dict:
    return {
        "equipmentID": equipment.EquipmentID,
        "name": equipment.Name,
        "description": equipment.Description,
        "totalQty": int(equipment.TotalQty or 0),
        "rentedQty": int(equipment.RentedQty or 0),
        "availableQty": available_qty(equipment),
        "unitPrice": float(equipment.UnitPrice) if equipment.UnitPrice is not None else None,
        "createdDate": equipment.CreatedDate,
        "updatedDate": equipment.UpdatedDate,
    }
