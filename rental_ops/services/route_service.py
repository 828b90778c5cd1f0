from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models.logistics_models import Rental, Route, RouteStop
from services.equipment_service import log_audit
from services.errors import (
    InvalidTransition,
    NotFound,
    RouteIncomplete,
    StopAlreadyAssigned,
    StopAlreadyCompleted,
    unit_of_work,
)
from services.rental_service import load_rental, owed_legs, pending_stops, rental_status_after_stop, transition_rental
from services.stock_ledger import CONSUMING_STATUSES, recompute_many


ROUTE_LOGGER = logging.getLogger("rental_ops.routes")

STOP_TYPES = ("DELIVERY", "RETURN")
ROUTE_STATES = ("PLANNED", "IN_PROGRESS", "COMPLETED")
ROUTE_TRANSITIONS = {
    "PLANNED": {"IN_PROGRESS", "COMPLETED"},
    "IN_PROGRESS": {"COMPLETED"},
    "COMPLETED": set(),
}
OPEN_ROUTE_STATES = ("PLANNED", "IN_PROGRESS")
LEG_DRIVER_FIELDS = {"DELIVERY": "DeliveryDriverID", "RETURN": "ReturnDriverID"}


@dataclass(frozen=True)
class Obligation:
    rental_id: int
    stop_type: str
    due_date: date


def obligations_for(rental: Rental) -> list[Obligation]:
    """Legs a rental still owes, regardless of whether a stop already covers them.

    A scheduled rental owes its delivery; an active one owes its return. A
    same-day rental owes both while still scheduled.
    """
    return [
        Obligation(rental.RentalID, leg, rental.StartDate if leg == "DELIVERY" else rental.EndDate)
        for leg in owed_legs(rental.Status, rental.StartDate, rental.EndDate)
    ]


def _assigned_legs(db: Session, rental_ids) -> dict[tuple[int, str], RouteStop]:
    ids = list(set(rental_ids))
    if not ids:
        return {}
    rows = db.execute(select(RouteStop).where(RouteStop.RentalID.in_(ids))).scalars().all()
    return {(row.RentalID, row.StopType): row for row in rows}


def available_jobs(db: Session, day: date) -> dict[str, list[Rental]]:
    with unit_of_work(db):
        candidates = db.execute(
            select(Rental)
            .where(or_(Rental.StartDate == day, Rental.EndDate == day))
            .where(Rental.Status.in_(CONSUMING_STATUSES))
            .order_by(Rental.RentalID)
        ).scalars().all()
        assigned = _assigned_legs(db, [rental.RentalID for rental in candidates])

    jobs: dict[str, list[Rental]] = {"deliveries": [], "returns": []}
    for rental in candidates:
        for obligation in obligations_for(rental):
            if obligation.due_date != day:
                continue
            if (obligation.rental_id, obligation.stop_type) in assigned:
                continue
            bucket = "deliveries" if obligation.stop_type == "DELIVERY" else "returns"
            jobs[bucket].append(rental)
    return jobs


def normalize_sequences(stops: list) -> list:
    """Order requested stops by their sequence when it is a dense 1..N permutation.

    Anything else (gaps, duplicates, missing values) falls back to input order;
    the sequence is only advisory until the driver starts the route.
    """
    sequences = [getattr(stop, "sequence", None) for stop in stops]
    if all(isinstance(seq, int) for seq in sequences) and sorted(sequences) == list(range(1, len(stops) + 1)):
        return sorted(stops, key=lambda stop: stop.sequence)
    return list(stops)


def _validate_requested_stops(stops: list) -> None:
    if not stops:
        raise ValueError("A route needs at least one stop.")
    seen: set[tuple[int, str]] = set()
    for stop in stops:
        if stop.type not in STOP_TYPES:
            raise ValueError(f"Unknown stop type {stop.type}.")
        key = (stop.rentalID, stop.type)
        if key in seen:
            raise StopAlreadyAssigned(stop.rentalID, stop.type)
        seen.add(key)


def _assign_stops(db: Session, route: Route, stops: list, first_sequence: int) -> list[RouteStop]:
    ordered = normalize_sequences(stops)
    rentals = {}
    for rental_id in sorted({stop.rentalID for stop in ordered}):
        rentals[rental_id] = load_rental(db, rental_id, lock=True)
    assigned = _assigned_legs(db, rentals.keys())

    created = []
    for offset, requested in enumerate(ordered):
        rental = rentals[requested.rentalID]
        existing = assigned.get((rental.RentalID, requested.type))
        if existing is not None:
            ROUTE_LOGGER.warning(
                "Stop assignment rejected rental_id=%s type=%s existing_route_id=%s",
                rental.RentalID,
                requested.type,
                existing.RouteID,
            )
            raise StopAlreadyAssigned(rental.RentalID, requested.type, existing.RouteID)
        owed = {obligation.stop_type for obligation in obligations_for(rental)}
        if requested.type not in owed:
            raise InvalidTransition(
                f"Rental {rental.RentalID} is {rental.Status} and has no {requested.type} leg to schedule.",
                rentalID=rental.RentalID,
                type=requested.type,
            )
        stop = RouteStop(
            RentalID=rental.RentalID,
            StopType=requested.type,
            Sequence=first_sequence + offset,
            Status="PENDING",
        )
        route.Stops.append(stop)
        # Assignment records the driver only; Status changes when the stop is executed.
        setattr(rental, LEG_DRIVER_FIELDS[requested.type], route.DriverID)
        rental.UpdatedDate = datetime.now()
        created.append(stop)

    try:
        db.flush()
    except IntegrityError as exc:
        legs = ", ".join(f"{stop.rentalID}/{stop.type}" for stop in ordered)
        ROUTE_LOGGER.warning("Concurrent stop assignment detected route_id=%s legs=%s", route.RouteID, legs)
        raise StopAlreadyAssigned(None, None, message=f"One of the legs {legs} was assigned concurrently.") from exc
    return created


def create_route(db: Session, route_date: date, driver_id: int, stops: list, user_id: int | None = None) -> Route:
    _validate_requested_stops(stops)
    with unit_of_work(db):
        route = Route(
            DriverID=driver_id,
            RouteDate=route_date,
            Status="PLANNED",
            CreatedDate=datetime.now(),
            UpdatedDate=datetime.now(),
        )
        db.add(route)
        db.flush()
        _assign_stops(db, route, stops, first_sequence=1)
        log_audit(db, "Route", route.RouteID, "CreateRoute", f"driver={driver_id} stops={len(stops)}", user_id=user_id)
    ROUTE_LOGGER.info("Route created route_id=%s driver_id=%s date=%s stops=%s", route.RouteID, driver_id, route_date, len(stops))
    return route


def load_route(db: Session, route_id: int, lock: bool = False) -> Route:
    stmt = (
        select(Route)
        .options(selectinload(Route.Stops).selectinload(RouteStop.Rental))
        .where(Route.RouteID == route_id)
    )
    if lock:
        stmt = stmt.with_for_update()
    route = db.execute(stmt).scalars().first()
    if not route:
        raise NotFound("Route", route_id)
    return route


def _require_open(route: Route) -> None:
    if route.Status not in OPEN_ROUTE_STATES:
        raise InvalidTransition(f"Route {route.RouteID} is {route.Status}.", routeID=route.RouteID)


def add_stops(db: Session, route_id: int, stops: list, user_id: int | None = None) -> Route:
    _validate_requested_stops(stops)
    with unit_of_work(db):
        route = load_route(db, route_id, lock=True)
        _require_open(route)
        next_sequence = max((stop.Sequence for stop in route.Stops), default=0) + 1
        _assign_stops(db, route, stops, first_sequence=next_sequence)
        log_audit(db, "Route", route_id, "AddStops", f"stops={len(stops)}", user_id=user_id)
    return route


def _load_stop(db: Session, stop_id: int) -> RouteStop:
    stop = db.execute(
        select(RouteStop).where(RouteStop.StopID == stop_id).with_for_update()
    ).scalars().first()
    if not stop:
        raise NotFound("RouteStop", stop_id)
    return stop


def _resequence(db: Session, stops_in_order: list[RouteStop]) -> None:
    # Two passes so the (RouteID, Sequence) constraint never sees a transient duplicate.
    for index, stop in enumerate(stops_in_order, start=1):
        stop.Sequence = -index
    db.flush()
    for index, stop in enumerate(stops_in_order, start=1):
        stop.Sequence = index
    db.flush()


def complete_stop(
    db: Session,
    stop_id: int,
    receiver_name: str | None = None,
    signature: str | None = None,
    user_id: int | None = None,
) -> RouteStop:
    with unit_of_work(db):
        stop = _load_stop(db, stop_id)
        if stop.Status == "COMPLETED":
            ROUTE_LOGGER.warning("Duplicate stop completion rejected stop_id=%s", stop_id)
            raise StopAlreadyCompleted(stop_id)
        _require_open(stop.Route)
        if stop.StopType == "RETURN":
            undelivered = [row.StopID for row in pending_stops(db, stop.RentalID, "DELIVERY")]
            if undelivered:
                ROUTE_LOGGER.warning("Return before delivery rejected stop_id=%s delivery_stops=%s", stop_id, undelivered)
                raise InvalidTransition(
                    f"Rental {stop.RentalID} has a pending delivery stop; complete it before the return.",
                    rentalID=stop.RentalID,
                    stopIDs=undelivered,
                )

        stop.Status = "COMPLETED"
        stop.CompletedAt = datetime.now()
        stop.ReceiverName = receiver_name
        stop.Signature = signature

        rental = load_rental(db, stop.RentalID, lock=True)
        previous = rental.Status
        recomputed = transition_rental(db, rental, rental_status_after_stop(previous, stop.StopType))
        if stop.StopType == "RETURN" and not recomputed:
            recompute_many(db, [item.EquipmentID for item in rental.RentalItems])
        log_audit(
            db,
            "RouteStop",
            stop_id,
            "CompleteStop",
            f"{stop.StopType} rental={rental.RentalID} {previous}->{rental.Status} receiver={receiver_name or ''}",
            user_id=user_id,
        )
    ROUTE_LOGGER.info("Stop completed stop_id=%s type=%s rental_id=%s", stop_id, stop.StopType, stop.RentalID)
    return stop


def _release_leg(db: Session, stop: RouteStop) -> None:
    rental = load_rental(db, stop.RentalID, lock=True)
    # Assignment never touches Status, so clearing the driver restores the pre-assignment state.
    setattr(rental, LEG_DRIVER_FIELDS[stop.StopType], None)
    rental.UpdatedDate = datetime.now()


def remove_stop(db: Session, stop_id: int, user_id: int | None = None) -> Route:
    with unit_of_work(db):
        stop = _load_stop(db, stop_id)
        if stop.Status == "COMPLETED":
            raise StopAlreadyCompleted(stop_id)
        route = load_route(db, stop.RouteID, lock=True)
        _require_open(route)

        _release_leg(db, stop)
        route.Stops.remove(stop)
        db.flush()
        _resequence(db, list(route.Stops))
        route.UpdatedDate = datetime.now()
        log_audit(db, "RouteStop", stop_id, "RemoveStop", f"{stop.StopType} rental={stop.RentalID} route={route.RouteID}", user_id=user_id)
    ROUTE_LOGGER.info("Stop removed stop_id=%s route_id=%s", stop_id, route.RouteID)
    return route


def reorder_stops(db: Session, route_id: int, stop_ids: list[int], user_id: int | None = None) -> Route:
    with unit_of_work(db):
        route = load_route(db, route_id, lock=True)
        _require_open(route)
        by_id = {stop.StopID: stop for stop in route.Stops}
        if sorted(stop_ids) != sorted(by_id):
            raise ValueError("stopIDs must list every stop of the route exactly once.")
        _resequence(db, [by_id[stop_id] for stop_id in stop_ids])
        route.UpdatedDate = datetime.now()
        log_audit(db, "Route", route_id, "ReorderStops", ",".join(str(i) for i in stop_ids), user_id=user_id)
    return route


def delete_route(db: Session, route_id: int, user_id: int | None = None) -> None:
    with unit_of_work(db):
        route = load_route(db, route_id, lock=True)
        completed = [stop.StopID for stop in route.Stops if stop.Status == "COMPLETED"]
        if completed:
            raise StopAlreadyCompleted(completed[0])
        for stop in route.Stops:
            _release_leg(db, stop)
        db.delete(route)
        log_audit(db, "Route", route_id, "DeleteRoute", None, user_id=user_id)
    ROUTE_LOGGER.info("Route deleted route_id=%s", route_id)


def set_route_status(db: Session, route_id: int, target_state: str, user_id: int | None = None) -> Route:
    if target_state not in ROUTE_STATES:
        raise ValueError(f"Unknown route status {target_state}.")
    with unit_of_work(db):
        route = load_route(db, route_id, lock=True)
        current = route.Status
        if target_state == current:
            return route
        if target_state not in ROUTE_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                f"Invalid route state transition: {current} -> {target_state}",
                routeID=route_id,
            )
        if target_state == "COMPLETED":
            if not route.Stops:
                raise InvalidTransition(f"Route {route_id} has no stops to complete.", routeID=route_id)
            pending = [stop.StopID for stop in route.Stops if stop.Status != "COMPLETED"]
            if pending:
                ROUTE_LOGGER.warning("Route completion rejected route_id=%s pending=%s", route_id, pending)
                raise RouteIncomplete(route_id, pending)
        route.Status = target_state
        route.UpdatedDate = datetime.now()
        log_audit(db, "Route", route_id, "SetStatus", f"{current}->{target_state}", user_id=user_id)
    ROUTE_LOGGER.info("Route status changed route_id=%s %s->%s", route_id, current, target_state)
    return route


def routes_for_date(db: Session, day: date) -> list[Route]:
    stmt = (
        select(Route)
        .options(selectinload(Route.Stops).selectinload(RouteStop.Rental))
        .where(Route.RouteDate == day)
        .order_by(Route.RouteID)
    )
    return list(db.execute(stmt).scalars().all())


def driver_route(db: Session, driver_id: int, day: date) -> Route | None:
    stmt = (
        select(Route)
        .options(selectinload(Route.Stops).selectinload(RouteStop.Rental))
        .where(Route.DriverID == driver_id)
        .where(Route.RouteDate == day)
        .where(Route.Status.in_(OPEN_ROUTE_STATES))
        .order_by(Route.RouteID)
    )
    return db.execute(stmt).scalars().first()


def get_stop(db: Session, stop_id: int) -> RouteStop:
    stop = db.execute(
        select(RouteStop).options(selectinload(RouteStop.Rental)).where(RouteStop.StopID == stop_id)
    ).scalars().first()
    if not stop:
        raise NotFound("RouteStop", stop_id)
    return stop


def serialize_stop(stop: RouteStop, include_proof: bool = False) -> dict:
    rental = stop.Rental
    payload = {
        "stopID": stop.StopID,
        "routeID": stop.RouteID,
        "rentalID": stop.RentalID,
        "type": stop.StopType,
        "sequence": stop.Sequence,
        "status": stop.Status,
        "completedAt": stop.CompletedAt,
        "receiverName": stop.ReceiverName,
        "hasSignature": bool(stop.Signature),
        "rental": {
            "personID": rental.PersonID,
            "status": rental.Status,
            "deliveryAddress": rental.DeliveryAddress,
            "startDate": rental.StartDate,
            "endDate": rental.EndDate,
        } if rental else None,
    }
    if include_proof:
        payload["signature"] = stop.Signature
    return payload


def serialize_route(route: Route) -> dict:
    stops = sorted(route.Stops, key=lambda stop: stop.Sequence)
    return {
        "routeID": route.RouteID,
        "driverID": route.DriverID,
        "date": route.RouteDate,
        "status": route.Status,
        "pendingStops": sum(1 for stop in stops if stop.Status == "PENDING"),
        "createdDate": route.CreatedDate,
        "updatedDate": route.UpdatedDate,
        "stops": [serialize_stop(stop) for stop in stops],
    }


def serialize_job(rental: Rental, stop_type: str) -> dict:
    return {
        "rentalID": rental.RentalID,
        "type": stop_type,
        "personID": rental.PersonID,
        "status": rental.Status,
        "deliveryAddress": rental.DeliveryAddress,
        "date": rental.StartDate if stop_type == "DELIVERY" else rental.EndDate,
    }
