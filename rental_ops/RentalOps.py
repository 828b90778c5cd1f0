import logging
import os
from contextlib import asynccontextmanager
from datetime import date

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select, text
from sqlalchemy.orm import Session

from db.base import Base
from db.deps import get_rental_ops_db
from db.session import engine_rental_ops
from models.logistics_models import Equipment
from schemas.equipment import EquipmentUpsert
from schemas.rentals import CreateRentalDto, ReplaceItemsRequest, RescheduleRequest
from schemas.routes import (
    AddStopsRequest,
    CompleteStopRequest,
    CreateRouteRequest,
    ReorderStopsRequest,
    RouteStatusRequest,
)
from services.equipment_service import create_equipment, delete_equipment, serialize_equipment, update_equipment
from services.errors import NotFound, RentalOpsError, StorageUnavailable, unit_of_work
from services.rental_service import (
    cancel_rental,
    create_rental,
    finish_rental,
    list_rentals,
    load_rental,
    replace_items,
    reschedule,
    serialize_rental,
)
from services.route_service import (
    add_stops,
    available_jobs,
    complete_stop,
    create_route,
    delete_route,
    driver_route,
    get_stop,
    load_route,
    remove_stop,
    reorder_stops,
    routes_for_date,
    serialize_job,
    serialize_route,
    serialize_stop,
    set_route_status,
)
from services.stock_ledger import recompute, stock_snapshot


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def _parse_bool_env(name: str, default: str) -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


logging.getLogger("rental_ops").setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())
API_LOGGER = logging.getLogger("rental_ops.api")

_CREATE_SCHEMA = _parse_bool_env("RENTAL_OPS_CREATE_SCHEMA", "false")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if _CREATE_SCHEMA:
        Base.metadata.create_all(engine_rental_ops)
        API_LOGGER.info("Schema ensured on startup")
    yield
    engine_rental_ops.dispose()


app = FastAPI(title="Rental Ops", lifespan=lifespan)

_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = _parse_bool_env("CORS_ALLOW_CREDENTIALS", "true")
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials; force safe behavior.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)


@app.exception_handler(RentalOpsError)
async def rental_ops_error_handler(request: Request, exc: RentalOpsError):
    if isinstance(exc, StorageUnavailable):
        API_LOGGER.error("Storage unavailable path=%s", request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.__class__.__name__, "context": exc.context},
    )


def _bad_request(exc: ValueError) -> HTTPException:
    return HTTPException(status_code=400, detail=str(exc))


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_rental_ops_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/equipment")
def get_equipment(db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        rows = db.execute(select(Equipment).order_by(Equipment.Name)).scalars().all()
    return [serialize_equipment(row) for row in rows]


@app.get("/api/equipment/{equipment_id}")
def get_equipment_item(equipment_id: int, db: Session = Depends(get_rental_ops_db)):
    equipment = db.get(Equipment, equipment_id)
    if not equipment:
        raise NotFound("Equipment", equipment_id)
    return serialize_equipment(equipment)


@app.post("/api/equipment")
def create_equipment_item(payload: EquipmentUpsert, db: Session = Depends(get_rental_ops_db)):
    try:
        equipment = create_equipment(db, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_equipment(equipment)


@app.put("/api/equipment/{equipment_id}")
def update_equipment_item(equipment_id: int, payload: EquipmentUpsert, db: Session = Depends(get_rental_ops_db)):
    try:
        equipment = update_equipment(db, equipment_id, payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_equipment(equipment)


@app.delete("/api/equipment/{equipment_id}")
def delete_equipment_item(equipment_id: int, db: Session = Depends(get_rental_ops_db)):
    delete_equipment(db, equipment_id)
    return {"ok": True}


@app.get("/api/equipment/{equipment_id}/stock")
def get_equipment_stock(equipment_id: int, db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        snapshot = stock_snapshot(db, equipment_id)
    return snapshot


@app.post("/api/equipment/{equipment_id}/recompute")
def recompute_equipment_stock(equipment_id: int, db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        recompute(db, equipment_id)
        snapshot = stock_snapshot(db, equipment_id)
    return snapshot


@app.get("/api/rentals")
def get_rentals(status: str | None = Query(None), db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        rentals = list_rentals(db, status)
        payloads = [serialize_rental(rental) for rental in rentals]
    return payloads


@app.get("/api/rentals/{rental_id}")
def get_rental(rental_id: int, db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        payload = serialize_rental(load_rental(db, rental_id))
    return payload


@app.post("/api/rentals")
def create_rental_endpoint(payload: CreateRentalDto, db: Session = Depends(get_rental_ops_db)):
    try:
        rental = create_rental(db, payload)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_rental(load_rental(db, rental.RentalID))


@app.put("/api/rentals/{rental_id}/items")
def replace_rental_items(rental_id: int, payload: ReplaceItemsRequest, db: Session = Depends(get_rental_ops_db)):
    try:
        rental = replace_items(db, rental_id, payload.rentalItems)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_rental(load_rental(db, rental.RentalID))


@app.post("/api/rentals/{rental_id}/reschedule")
def reschedule_rental(rental_id: int, payload: RescheduleRequest, db: Session = Depends(get_rental_ops_db)):
    try:
        rental = reschedule(db, rental_id, payload.startDate, payload.endDate)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_rental(rental)


@app.post("/api/rentals/{rental_id}/cancel")
def cancel_rental_endpoint(rental_id: int, db: Session = Depends(get_rental_ops_db)):
    rental = cancel_rental(db, rental_id)
    return {"message": "Rental Cancelled", "rental": serialize_rental(rental)}


@app.post("/api/rentals/{rental_id}/finish")
def finish_rental_endpoint(rental_id: int, db: Session = Depends(get_rental_ops_db)):
    rental = finish_rental(db, rental_id)
    return {"message": "Rental Completed", "rental": serialize_rental(rental)}


@app.get("/api/routes/jobs")
def get_available_jobs(day: date = Query(..., alias="date"), db: Session = Depends(get_rental_ops_db)):
    jobs = available_jobs(db, day)
    return {
        "date": day,
        "deliveries": [serialize_job(rental, "DELIVERY") for rental in jobs["deliveries"]],
        "returns": [serialize_job(rental, "RETURN") for rental in jobs["returns"]],
    }


@app.get("/api/routes")
def get_routes(day: date = Query(..., alias="date"), db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        payloads = [serialize_route(route) for route in routes_for_date(db, day)]
    return payloads


@app.post("/api/routes")
def create_route_endpoint(payload: CreateRouteRequest, db: Session = Depends(get_rental_ops_db)):
    try:
        route = create_route(db, payload.date, payload.driverID, payload.stops)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_route(load_route(db, route.RouteID))


@app.get("/api/routes/{route_id}")
def get_route(route_id: int, db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        payload = serialize_route(load_route(db, route_id))
    return payload


@app.delete("/api/routes/{route_id}")
def delete_route_endpoint(route_id: int, db: Session = Depends(get_rental_ops_db)):
    delete_route(db, route_id)
    return {"ok": True}


@app.post("/api/routes/{route_id}/stops")
def add_route_stops(route_id: int, payload: AddStopsRequest, db: Session = Depends(get_rental_ops_db)):
    try:
        add_stops(db, route_id, payload.stops)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_route(load_route(db, route_id))


@app.put("/api/routes/{route_id}/stops/order")
def reorder_route_stops(route_id: int, payload: ReorderStopsRequest, db: Session = Depends(get_rental_ops_db)):
    try:
        route = reorder_stops(db, route_id, payload.stopIDs)
    except ValueError as exc:
        raise _bad_request(exc) from exc
    return serialize_route(route)


@app.post("/api/routes/{route_id}/status")
def set_route_status_endpoint(route_id: int, payload: RouteStatusRequest, db: Session = Depends(get_rental_ops_db)):
    route = set_route_status(db, route_id, payload.status)
    return serialize_route(route)


@app.get("/api/stops/{stop_id}")
def get_stop_endpoint(stop_id: int, db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        payload = serialize_stop(get_stop(db, stop_id), include_proof=True)
    return payload


@app.post("/api/stops/{stop_id}/complete")
def complete_stop_endpoint(stop_id: int, payload: CompleteStopRequest, db: Session = Depends(get_rental_ops_db)):
    stop = complete_stop(db, stop_id, payload.receiverName, payload.signature)
    return serialize_stop(stop)


@app.delete("/api/stops/{stop_id}")
def remove_stop_endpoint(stop_id: int, db: Session = Depends(get_rental_ops_db)):
    route = remove_stop(db, stop_id)
    return serialize_route(route)


@app.get("/api/drivers/{driver_id}/route")
def get_driver_route(driver_id: int, day: date | None = Query(None, alias="date"), db: Session = Depends(get_rental_ops_db)):
    with unit_of_work(db):
        route = driver_route(db, driver_id, day or date.today())
        payload = serialize_route(route) if route else None
    return {"route": payload}
