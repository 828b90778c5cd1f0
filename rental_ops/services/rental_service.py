from __future__ import annotations

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models.logistics_models import Equipment, Rental, RentalItem, RouteStop
from services.equipment_service import log_audit
from services.errors import InvalidTransition, NotFound, PendingStopConflict, unit_of_work
from services.stock_ledger import CONSUMING_STATUSES, ensure_available, recompute_many, requested_by_equipment


RENTAL_LOGGER = logging.getLogger("rental_ops.rentals")

RENTAL_STATES = {"SCHEDULED", "ACTIVE", "COMPLETED", "CANCELLED"}
TERMINAL_STATES = {"COMPLETED", "CANCELLED"}
STATE_TRANSITIONS = {
    "SCHEDULED": {"ACTIVE", "COMPLETED", "CANCELLED"},
    "ACTIVE": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}
# What a completed stop does to its rental; pairs not listed leave the status alone.
STOP_COMPLETION_TRANSITIONS = {
    ("SCHEDULED", "DELIVERY"): "ACTIVE",
    ("SCHEDULED", "RETURN"): "COMPLETED",
    ("ACTIVE", "RETURN"): "COMPLETED",
}


def rental_status_after_stop(current: str, stop_type: str) -> str:
    return STOP_COMPLETION_TRANSITIONS.get((current, stop_type), current)


def owed_legs(status: str, start_date: date, end_date: date) -> list[str]:
    """Stop types a rental in this status still owes; same-day rentals owe both while scheduled."""
    if status == "SCHEDULED":
        return ["DELIVERY", "RETURN"] if start_date == end_date else ["DELIVERY"]
    if status == "ACTIVE":
        return ["RETURN"]
    return []


def load_rental(db: Session, rental_id: int, lock: bool = False) -> Rental:
    stmt = (
        select(Rental)
        .options(selectinload(Rental.RentalItems).selectinload(RentalItem.Equipment))
        .where(Rental.RentalID == rental_id)
    )
    if lock:
        stmt = stmt.with_for_update()
    rental = db.execute(stmt).scalars().first()
    if not rental:
        raise NotFound("Rental", rental_id)
    return rental


def transition_rental(db: Session, rental: Rental, target_state: str) -> bool:
    """Move a rental to target_state; returns True when stock was re-derived."""
    current = rental.Status
    if target_state == current:
        return False
    if current not in STATE_TRANSITIONS or target_state not in STATE_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Invalid rental state transition: {current} -> {target_state}",
            rentalID=rental.RentalID,
        )
    rental.Status = target_state
    rental.UpdatedDate = datetime.now()
    RENTAL_LOGGER.info("Rental status changed rental_id=%s %s->%s", rental.RentalID, current, target_state)
    if (current in CONSUMING_STATUSES) != (target_state in CONSUMING_STATUSES):
        recompute_many(db, [item.EquipmentID for item in rental.RentalItems])
        return True
    return False


def pending_stops(db: Session, rental_id: int, stop_type: str | None = None) -> list[RouteStop]:
    stmt = (
        select(RouteStop)
        .where(RouteStop.RentalID == rental_id)
        .where(RouteStop.Status == "PENDING")
        .order_by(RouteStop.StopID)
    )
    if stop_type:
        stmt = stmt.where(RouteStop.StopType == stop_type)
    return list(db.execute(stmt).scalars().all())


def _validate_dates(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise ValueError("endDate must be on or after startDate.")


def _build_items(db: Session, lines) -> list[RentalItem]:
    items = []
    for line in lines:
        unit_price = line.unitPrice
        if unit_price is None:
            equipment = db.get(Equipment, line.equipmentID)
            unit_price = equipment.UnitPrice if equipment else None
        items.append(RentalItem(EquipmentID=line.equipmentID, Quantity=int(line.quantity), UnitPrice=unit_price))
    return items


def create_rental(db: Session, payload, user_id: int | None = None) -> Rental:
    _validate_dates(payload.startDate, payload.endDate)
    if not payload.rentalItems:
        raise ValueError("No rental items supplied.")

    requested = requested_by_equipment(payload.rentalItems)
    with unit_of_work(db):
        ensure_available(db, requested)
        rental = Rental(
            PersonID=payload.personID,
            Status="SCHEDULED",
            StartDate=payload.startDate,
            EndDate=payload.endDate,
            DeliveryAddress=payload.deliveryAddress,
            Notes=payload.notes,
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        rental.RentalItems.extend(_build_items(db, payload.rentalItems))
        db.add(rental)
        db.flush()
        recompute_many(db, requested.keys())
        log_audit(db, "Rental", rental.RentalID, "CreateRental", f"items={requested}", user_id=user_id)
    RENTAL_LOGGER.info("Rental created rental_id=%s person_id=%s", rental.RentalID, rental.PersonID)
    return rental


def replace_items(db: Session, rental_id: int, lines, user_id: int | None = None) -> Rental:
    if not lines:
        raise ValueError("No rental items supplied.")
    requested = requested_by_equipment(lines)
    with unit_of_work(db):
        rental = load_rental(db, rental_id, lock=True)
        if rental.Status not in CONSUMING_STATUSES:
            raise InvalidTransition(
                f"Items of a {rental.Status} rental cannot change.",
                rentalID=rental_id,
            )
        touched = {item.EquipmentID for item in rental.RentalItems} | set(requested)
        ensure_available(db, requested, exclude_rental_id=rental_id)
        rental.RentalItems.clear()
        db.flush()
        rental.RentalItems.extend(_build_items(db, lines))
        rental.UpdatedDate = datetime.now()
        db.flush()
        recompute_many(db, touched)
        log_audit(db, "Rental", rental_id, "ReplaceItems", f"items={requested}", user_id=user_id)
    RENTAL_LOGGER.info("Rental items replaced rental_id=%s", rental_id)
    return rental


def reschedule(
    db: Session,
    rental_id: int,
    start_date: date | None = None,
    end_date: date | None = None,
    user_id: int | None = None,
) -> Rental:
    with unit_of_work(db):
        rental = load_rental(db, rental_id, lock=True)
        if rental.Status in TERMINAL_STATES:
            raise InvalidTransition(f"A {rental.Status} rental cannot be rescheduled.", rentalID=rental_id)
        new_start = start_date or rental.StartDate
        new_end = end_date or rental.EndDate
        _validate_dates(new_start, new_end)

        legs = []
        if new_start != rental.StartDate:
            legs.append("DELIVERY")
        if new_end != rental.EndDate:
            legs.append("RETURN")
        for leg in legs:
            blocking = pending_stops(db, rental_id, leg)
            if blocking:
                RENTAL_LOGGER.warning("Reschedule rejected rental_id=%s leg=%s pending_stops=%s", rental_id, leg, [s.StopID for s in blocking])
                raise PendingStopConflict(rental_id, [s.StopID for s in blocking], f"move the {leg.lower()} date of")
        if "DELIVERY" in legs and rental.Status != "SCHEDULED":
            raise InvalidTransition(
                f"Rental {rental_id} was already delivered; startDate cannot change.",
                rentalID=rental_id,
            )
        # A same-day rental that stops being same-day no longer owes its return while scheduled.
        still_owed = owed_legs(rental.Status, new_start, new_end)
        orphaned = [stop.StopID for stop in pending_stops(db, rental_id) if stop.StopType not in still_owed]
        if orphaned:
            RENTAL_LOGGER.warning("Reschedule rejected rental_id=%s orphaned_stops=%s", rental_id, orphaned)
            raise PendingStopConflict(rental_id, orphaned, "reschedule")

        rental.StartDate = new_start
        rental.EndDate = new_end
        rental.UpdatedDate = datetime.now()
        log_audit(db, "Rental", rental_id, "Reschedule", f"{new_start}..{new_end}", user_id=user_id)
    return rental


def _close_rental(db: Session, rental_id: int, target_state: str, action: str, user_id: int | None) -> Rental:
    with unit_of_work(db):
        rental = load_rental(db, rental_id, lock=True)
        blocking = pending_stops(db, rental_id)
        if blocking and rental.Status not in TERMINAL_STATES:
            RENTAL_LOGGER.warning("%s rejected rental_id=%s pending_stops=%s", action, rental_id, [s.StopID for s in blocking])
            raise PendingStopConflict(rental_id, [s.StopID for s in blocking], action.lower())
        transition_rental(db, rental, target_state)
        log_audit(db, "Rental", rental_id, action, f"status={target_state}", user_id=user_id)
    return rental


def cancel_rental(db: Session, rental_id: int, user_id: int | None = None) -> Rental:
    return _close_rental(db, rental_id, "CANCELLED", "Cancel", user_id)


def finish_rental(db: Session, rental_id: int, user_id: int | None = None) -> Rental:
    return _close_rental(db, rental_id, "COMPLETED", "Finish", user_id)


def list_rentals(db: Session, status: str | None = None) -> list[Rental]:
    stmt = (
        select(Rental)
        .options(selectinload(Rental.RentalItems).selectinload(RentalItem.Equipment))
        .order_by(Rental.StartDate, Rental.RentalID)
    )
    if status:
        stmt = stmt.where(Rental.Status == status)
    return list(db.execute(stmt).scalars().all())


def serialize_rental(rental: Rental) -> dict:
    return {
        "rentalID": rental.RentalID,
        "personID": rental.PersonID,
        "status": rental.Status,
        "startDate": rental.StartDate,
        "endDate": rental.EndDate,
        "deliveryAddress": rental.DeliveryAddress,
        "deliveryDriverID": rental.DeliveryDriverID,
        "returnDriverID": rental.ReturnDriverID,
        "notes": rental.Notes,
        "createdDate": rental.CreatedDate,
        "updatedDate": rental.UpdatedDate,
        "rentalItems": [
            {
                "rentalItemID": item.RentalItemID,
                "equipmentID": item.EquipmentID,
                "quantity": item.Quantity,
                "unitPrice": float(item.UnitPrice) if item.UnitPrice is not None else None,
                "equipment": {
                    "equipmentID": item.Equipment.EquipmentID,
                    "name": item.Equipment.Name,
                } if item.Equipment else None,
            }
            for item in rental.RentalItems
        ],
    }
