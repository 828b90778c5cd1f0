import os
import sys
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError


os.environ.setdefault("RENTAL_OPS_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import RentalOps as app_module
from db.base import Base
from db.engine import create_store_engine, make_session_factory


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.engine = create_store_engine("sqlite+pysqlite:///:memory:")
        Base.metadata.create_all(self.engine)
        self.session_factory = make_session_factory(self.engine)

        def _override():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_rental_ops_db] = _override
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.engine.dispose()

    def _equipment(self, total=5, name="Concrete mixer"):
        response = self.client.post("/api/equipment", json={"name": name, "totalQty": total, "unitPrice": 80})
        self.assertEqual(response.status_code, 200)
        return response.json()["equipmentID"]

    def _rental(self, equipment_id, quantity, start="2026-06-01", end="2026-06-05"):
        return self.client.post(
            "/api/rentals",
            json={
                "personID": 3,
                "startDate": start,
                "endDate": end,
                "deliveryAddress": "Rua B, 45",
                "rentalItems": [{"equipmentID": equipment_id, "quantity": quantity}],
            },
        )

    def test_health_endpoints(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").status_code, 200)

    def test_oversell_is_rejected_with_conflict_details(self):
        equipment_id = self._equipment(total=5)
        first = self._rental(equipment_id, 3)
        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["status"], "SCHEDULED")

        stock = self.client.get(f"/api/equipment/{equipment_id}/stock").json()
        self.assertEqual((stock["rentedQty"], stock["availableQty"]), (3, 2))

        second = self._rental(equipment_id, 3)
        self.assertEqual(second.status_code, 409)
        body = second.json()
        self.assertEqual(body["error"], "InsufficientStock")
        self.assertEqual(body["context"]["blocking"], [{"equipmentID": equipment_id, "requested": 3, "available": 2}])
        self.assertEqual(len(self.client.get("/api/rentals").json()), 1)

    def test_validation_errors(self):
        equipment_id = self._equipment()
        self.assertEqual(self._rental(equipment_id, 1, start="2026-06-05", end="2026-06-01").status_code, 400)
        self.assertEqual(self._rental(equipment_id, 0).status_code, 422)
        self.assertEqual(self.client.post("/api/equipment", json={"totalQty": 2}).status_code, 400)

    def test_missing_entities_return_not_found(self):
        response = self.client.get("/api/rentals/777")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["error"], "NotFound")
        self.assertEqual(self.client.post("/api/stops/55/complete", json={}).status_code, 404)
        self.assertEqual(self.client.get("/api/routes/12").status_code, 404)
        self.assertEqual(self._rental(999, 1).status_code, 404)

    def test_route_flow_over_http(self):
        equipment_id = self._equipment(total=5)
        rental_id = self._rental(equipment_id, 3).json()["rentalID"]

        jobs = self.client.get("/api/routes/jobs", params={"date": "2026-06-01"}).json()
        self.assertEqual([job["rentalID"] for job in jobs["deliveries"]], [rental_id])
        self.assertEqual(jobs["returns"], [])

        created = self.client.post(
            "/api/routes",
            json={"date": "2026-06-01", "driverID": 8, "stops": [{"rentalID": rental_id, "type": "DELIVERY", "sequence": 1}]},
        )
        self.assertEqual(created.status_code, 200)
        route = created.json()
        stop_id = route["stops"][0]["stopID"]
        self.assertEqual(route["status"], "PLANNED")

        duplicate = self.client.post(
            "/api/routes",
            json={"date": "2026-06-01", "driverID": 9, "stops": [{"rentalID": rental_id, "type": "DELIVERY"}]},
        )
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"], "StopAlreadyAssigned")

        cancel = self.client.post(f"/api/rentals/{rental_id}/cancel")
        self.assertEqual(cancel.status_code, 409)
        self.assertEqual(cancel.json()["context"]["stopIDs"], [stop_id])

        driver = self.client.get("/api/drivers/8/route", params={"date": "2026-06-01"}).json()
        self.assertEqual(driver["route"]["routeID"], route["routeID"])

        done = self.client.post(f"/api/stops/{stop_id}/complete", json={"receiverName": "Ana", "signature": "sig"})
        self.assertEqual(done.status_code, 200)
        self.assertEqual(done.json()["rental"]["status"], "ACTIVE")
        self.assertTrue(done.json()["hasSignature"])

        proof = self.client.get(f"/api/stops/{stop_id}")
        self.assertEqual(proof.status_code, 200)
        self.assertEqual(proof.json()["signature"], "sig")
        self.assertEqual(proof.json()["receiverName"], "Ana")
        self.assertNotIn("signature", route["stops"][0])
        self.assertEqual(self.client.get("/api/stops/9191").status_code, 404)

        again = self.client.post(f"/api/stops/{stop_id}/complete", json={"receiverName": "Ana"})
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["error"], "StopAlreadyCompleted")

        finished = self.client.post(f"/api/routes/{route['routeID']}/status", json={"status": "COMPLETED"})
        self.assertEqual(finished.json()["status"], "COMPLETED")
        backwards = self.client.post(f"/api/routes/{route['routeID']}/status", json={"status": "IN_PROGRESS"})
        self.assertEqual(backwards.status_code, 409)
        self.assertEqual(backwards.json()["error"], "InvalidTransition")

        jobs = self.client.get("/api/routes/jobs", params={"date": "2026-06-05"}).json()
        self.assertEqual([job["rentalID"] for job in jobs["returns"]], [rental_id])

    def test_incomplete_route_cannot_be_completed(self):
        equipment_id = self._equipment()
        rental_id = self._rental(equipment_id, 1).json()["rentalID"]
        route = self.client.post(
            "/api/routes",
            json={"date": "2026-06-01", "driverID": 8, "stops": [{"rentalID": rental_id, "type": "DELIVERY"}]},
        ).json()

        response = self.client.post(f"/api/routes/{route['routeID']}/status", json={"status": "COMPLETED"})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "RouteIncomplete")

        removed = self.client.delete(f"/api/stops/{route['stops'][0]['stopID']}")
        self.assertEqual(removed.status_code, 200)
        self.assertEqual(removed.json()["stops"], [])
        self.assertIsNone(self.client.get(f"/api/rentals/{rental_id}").json()["deliveryDriverID"])

    def test_equipment_in_use_cannot_shrink_or_be_deleted(self):
        equipment_id = self._equipment(total=4)
        self._rental(equipment_id, 3)
        shrink = self.client.put(f"/api/equipment/{equipment_id}", json={"totalQty": 2})
        self.assertEqual(shrink.status_code, 409)
        self.assertEqual(shrink.json()["error"], "EquipmentInUse")
        self.assertEqual(self.client.delete(f"/api/equipment/{equipment_id}").status_code, 409)

    def test_storage_failures_map_to_service_unavailable(self):
        failure = OperationalError("SELECT 1", {}, Exception("connection reset"))
        with mock.patch.object(app_module, "list_rentals", side_effect=failure):
            response = self.client.get("/api/rentals")
        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["error"], "StorageUnavailable")


if __name__ == "__main__":
    unittest.main()
