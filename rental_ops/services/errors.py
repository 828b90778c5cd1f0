from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session


STORAGE_LOGGER = logging.getLogger("rental_ops.storage")


class RentalOpsError(RuntimeError):
    """Base class for every conflict the operator has to resolve."""

    status_code = 409

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class NotFound(RentalOpsError):
    status_code = 404

    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found.", entity=entity, entityID=entity_id)


class InsufficientStock(RentalOpsError):
    def __init__(self, blocking: list[dict]):
        names = ", ".join(
            f"equipment {row['equipmentID']} (requested={row['requested']}, available={row['available']})"
            for row in blocking
        )
        super().__init__(f"Insufficient stock: {names}", blocking=blocking)
        self.blocking = blocking


class StopAlreadyAssigned(RentalOpsError):
    def __init__(self, rental_id: int | None, stop_type: str | None, route_id: int | None = None, message: str | None = None):
        where = f" on route {route_id}" if route_id else ""
        super().__init__(
            message or f"Rental {rental_id} already has a {stop_type} stop{where}.",
            rentalID=rental_id,
            type=stop_type,
            routeID=route_id,
        )


class StopAlreadyCompleted(RentalOpsError):
    def __init__(self, stop_id: int):
        super().__init__(f"Stop {stop_id} is already completed.", stopID=stop_id)


class RouteIncomplete(RentalOpsError):
    def __init__(self, route_id: int, pending_stop_ids: list[int]):
        super().__init__(
            f"Route {route_id} still has pending stops: {', '.join(str(i) for i in pending_stop_ids)}.",
            routeID=route_id,
            pendingStopIDs=pending_stop_ids,
        )


class InvalidTransition(RentalOpsError):
    pass


class PendingStopConflict(RentalOpsError):
    def __init__(self, rental_id: int, stop_ids: list[int], action: str):
        super().__init__(
            f"Cannot {action} rental {rental_id}: pending route stops {', '.join(str(i) for i in stop_ids)} must be removed first.",
            rentalID=rental_id,
            stopIDs=stop_ids,
        )


class EquipmentInUse(RentalOpsError):
    pass


class StorageUnavailable(RentalOpsError):
    status_code = 503


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Commit on success, roll back on any failure.

    Driver level connectivity failures surface as StorageUnavailable so callers
    can tell a retryable outage apart from a domain conflict.
    """
    try:
        yield db
        db.commit()
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        db.rollback()
        STORAGE_LOGGER.error("Store call failed error=%s", exc.__class__.__name__)
        raise StorageUnavailable(f"Store unavailable: {exc.__class__.__name__}") from exc
    except Exception:
        db.rollback()
        raise
