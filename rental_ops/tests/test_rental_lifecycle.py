import os
import sys
import unittest
from datetime import date, timedelta
from pathlib import Path


os.environ.setdefault("RENTAL_OPS_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.engine import create_store_engine, make_session_factory
from models.logistics_models import AuditLog, Equipment, Rental
from schemas.rentals import CreateRentalDto, RentalItemDto
from schemas.routes import RouteStopDto
from services.equipment_service import create_equipment
from services.errors import InvalidTransition, NotFound, PendingStopConflict
from services.rental_service import (
    cancel_rental,
    create_rental,
    finish_rental,
    rental_status_after_stop,
    replace_items,
    reschedule,
    serialize_rental,
)
from services.route_service import complete_stop, create_route, remove_stop


START = date(2026, 4, 6)
END = START + timedelta(days=5)


class RentalLifecycleTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_store_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.db = make_session_factory(self.engine)()
        self.generator = create_equipment(self.db, {"name": "Generator 5kVA", "totalQty": 4, "unitPrice": 120.0})
        self.rental = create_rental(
            self.db,
            CreateRentalDto(
                personID=7,
                startDate=START,
                endDate=END,
                deliveryAddress="Av. Brasil, 500",
                rentalItems=[RentalItemDto(equipmentID=self.generator.EquipmentID, quantity=2)],
            ),
        )

    def tearDown(self):
        self.db.close()
        self.engine.dispose()

    def _rented(self):
        self.db.expire_all()
        return self.db.get(Equipment, self.generator.EquipmentID).RentedQty

    def test_new_rental_is_scheduled_and_snapshots_price(self):
        payload = serialize_rental(self.rental)
        self.assertEqual(payload["status"], "SCHEDULED")
        self.assertEqual(payload["rentalItems"][0]["unitPrice"], 120.0)
        self.assertIsNone(payload["deliveryDriverID"])
        self.assertEqual(self._rented(), 2)

    def test_end_before_start_is_rejected(self):
        with self.assertRaises(ValueError):
            create_rental(
                self.db,
                CreateRentalDto(
                    personID=7,
                    startDate=END,
                    endDate=START,
                    rentalItems=[RentalItemDto(equipmentID=self.generator.EquipmentID, quantity=1)],
                ),
            )

    def test_rental_without_items_is_rejected(self):
        with self.assertRaises(ValueError):
            create_rental(self.db, CreateRentalDto(personID=7, startDate=START, endDate=END, rentalItems=[]))

    def test_cancel_releases_stock_and_is_terminal(self):
        cancel_rental(self.db, self.rental.RentalID)
        self.assertEqual(self._rented(), 0)
        with self.assertRaises(InvalidTransition):
            finish_rental(self.db, self.rental.RentalID)
        with self.assertRaises(InvalidTransition):
            replace_items(self.db, self.rental.RentalID, [RentalItemDto(equipmentID=self.generator.EquipmentID, quantity=1)])

    def test_finish_releases_stock(self):
        finish_rental(self.db, self.rental.RentalID)
        self.assertEqual(self._rented(), 0)

    def test_unknown_rental_is_not_found(self):
        with self.assertRaises(NotFound):
            cancel_rental(self.db, 12345)

    def test_stop_completion_transition_table(self):
        self.assertEqual(rental_status_after_stop("SCHEDULED", "DELIVERY"), "ACTIVE")
        self.assertEqual(rental_status_after_stop("ACTIVE", "DELIVERY"), "ACTIVE")
        self.assertEqual(rental_status_after_stop("COMPLETED", "DELIVERY"), "COMPLETED")
        self.assertEqual(rental_status_after_stop("ACTIVE", "RETURN"), "COMPLETED")
        self.assertEqual(rental_status_after_stop("CANCELLED", "RETURN"), "CANCELLED")

    def test_reschedule_extends_end_date(self):
        new_end = END + timedelta(days=3)
        rental = reschedule(self.db, self.rental.RentalID, end_date=new_end)
        self.assertEqual(rental.EndDate, new_end)
        with self.assertRaises(ValueError):
            reschedule(self.db, self.rental.RentalID, end_date=START - timedelta(days=1))

    def test_reschedule_is_blocked_by_pending_stop_for_that_leg(self):
        route = create_route(self.db, START, 3, [RouteStopDto(rentalID=self.rental.RentalID, type="DELIVERY", sequence=1)])
        with self.assertRaises(PendingStopConflict):
            reschedule(self.db, self.rental.RentalID, start_date=START + timedelta(days=1))

        # The return leg has no stop yet, so the end date may still move.
        reschedule(self.db, self.rental.RentalID, end_date=END + timedelta(days=1))

        remove_stop(self.db, route.Stops[0].StopID)
        rental = reschedule(self.db, self.rental.RentalID, start_date=START + timedelta(days=1))
        self.assertEqual(rental.StartDate, START + timedelta(days=1))

    def test_start_date_is_fixed_once_delivered(self):
        route = create_route(self.db, START, 3, [RouteStopDto(rentalID=self.rental.RentalID, type="DELIVERY")])
        complete_stop(self.db, route.Stops[0].StopID, "Maria", "sig-001")
        with self.assertRaises(InvalidTransition):
            reschedule(self.db, self.rental.RentalID, start_date=START - timedelta(days=1))

    def _same_day_rental(self):
        return create_rental(
            self.db,
            CreateRentalDto(
                personID=8,
                startDate=START,
                endDate=START,
                rentalItems=[RentalItemDto(equipmentID=self.generator.EquipmentID, quantity=1)],
            ),
        )

    def test_reschedule_cannot_strand_a_return_stop_of_a_same_day_rental(self):
        rental = self._same_day_rental()
        route = create_route(self.db, START, 3, [RouteStopDto(rentalID=rental.RentalID, type="RETURN")])

        with self.assertRaises(PendingStopConflict) as ctx:
            reschedule(self.db, rental.RentalID, start_date=START - timedelta(days=2))
        self.assertEqual(ctx.exception.context["stopIDs"], [route.Stops[0].StopID])

        self.db.expire_all()
        stored = self.db.get(Rental, rental.RentalID)
        self.assertEqual((stored.StartDate, stored.EndDate, stored.Status), (START, START, "SCHEDULED"))

    def test_same_day_rental_with_delivery_stop_may_extend(self):
        rental = self._same_day_rental()
        create_route(self.db, START, 3, [RouteStopDto(rentalID=rental.RentalID, type="DELIVERY")])
        rescheduled = reschedule(self.db, rental.RentalID, end_date=START + timedelta(days=2))
        self.assertEqual(rescheduled.EndDate, START + timedelta(days=2))

    def test_cancel_and_finish_are_blocked_by_pending_stops(self):
        create_route(self.db, START, 3, [RouteStopDto(rentalID=self.rental.RentalID, type="DELIVERY")])
        with self.assertRaises(PendingStopConflict):
            cancel_rental(self.db, self.rental.RentalID)
        with self.assertRaises(PendingStopConflict):
            finish_rental(self.db, self.rental.RentalID)
        self.assertEqual(self._rented(), 2)

    def test_mutations_are_audited(self):
        cancel_rental(self.db, self.rental.RentalID)
        actions = [row.Action for row in self.db.query(AuditLog).filter(AuditLog.EntityType == "Rental").order_by(AuditLog.AuditID).all()]
        self.assertEqual(actions, ["CreateRental", "Cancel"])


if __name__ == "__main__":
    unittest.main()
