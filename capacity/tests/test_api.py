"""
Integration tests for the bed control HTTP API.

These exercise token authentication, facility scoping, the ADT intake
endpoints and the read-only unit queries through DRF's APIClient.
"""
from datetime import timedelta

from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework import status
from rest_framework.authtoken.models import Token
from rest_framework.test import APIClient, APITestCase

from ..models import Assignment, Bed, Facility
from ..scope import FacilityScope
from ..services import registry


class BedControlAPITests(APITestCase):
    def setUp(self) -> None:
        self.facility = Facility.objects.create(id="fac-1", tenant_id="tenant-1", name="General")
        Facility.objects.create(id="fac-2", tenant_id="tenant-2", name="Elsewhere")
        self.scope = FacilityScope(tenant_id="tenant-1", facility_id="fac-1")
        self.unit = registry.register_unit(
            self.scope, code="TELE", name="Telemetry", accepted_acuity=[1, 2, 3],
            target_census=10, max_census=12, nurse_patient_ratio="1:4", default_los_days=3.0,
        )
        earlier = timezone.now() - timedelta(days=2)
        self.bed = registry.register_bed(
            self.scope, self.unit.pk, room="101", capabilities=["telemetry"], at=earlier,
        )
        self.user = get_user_model().objects.create_user(username="adt-feed", password="feedpass")
        self.token = Token.objects.create(user=self.user)

    def client_for(self, tenant="tenant-1", facility="fac-1") -> APIClient:
        """Return a client carrying the API token and scope headers."""
        client = APIClient()
        client.credentials(
            HTTP_AUTHORIZATION=f"Token {self.token.key}",
            HTTP_X_TENANT_ID=tenant,
            HTTP_X_FACILITY_ID=facility,
        )
        return client

    def admit(self, client, patient="P-1", **extra):
        body = {"messageId": f"m-{patient}", "patientRef": patient, "unitId": self.unit.pk, "acuity": 2, **extra}
        return client.post("/api/adt/admit", body, format="json")

    def test_requests_without_token_are_rejected(self):
        response = APIClient().get(f"/api/units/{self.unit.pk}/census")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertFalse(response.data["ok"])

    def test_bearer_keyword_is_accepted(self):
        client = APIClient()
        client.credentials(
            HTTP_AUTHORIZATION=f"Bearer {self.token.key}", HTTP_X_TENANT_ID="tenant-1", HTTP_X_FACILITY_ID="fac-1",
        )
        response = client.get(f"/api/units/{self.unit.pk}/census")
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_facility_of_another_tenant_is_forbidden(self):
        client = self.client_for(tenant="tenant-1", facility="fac-2")
        response = client.get(f"/api/units/{self.unit.pk}/census")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["error"]["code"], "ScopeViolation")

    def test_admit_then_census(self):
        client = self.client_for()
        response = self.admit(client, requiredCapabilities="telemetry")
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data["data"]["bedId"], self.bed.pk)

        census = client.get(f"/api/units/{self.unit.pk}/census")
        self.assertEqual(census.status_code, status.HTTP_200_OK)
        self.assertEqual(census.data["data"]["occupied"], 1)
        self.assertEqual(census.data["data"]["available"], 0)
        self.assertEqual(census.data["data"]["occupancyRate"], 100.0)

    def test_replayed_admit_answers_with_first_outcome(self):
        client = self.client_for()
        first = self.admit(client)
        again = self.admit(client)
        self.assertEqual(again.status_code, status.HTTP_200_OK)
        self.assertEqual(again.data["data"], first.data["data"])
        self.assertIn("warnings", again.data)
        self.assertEqual(Assignment.objects.count(), 1)

    def test_no_bed_available_is_a_conflict(self):
        client = self.client_for()
        self.admit(client, patient="P-1")
        response = self.admit(client, patient="P-2")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["error"]["code"], "NoBedAvailable")

    def test_invalid_admit_payload(self):
        client = self.client_for()
        response = client.post("/api/adt/admit", {"patientRef": "P-1"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["error"]["code"], "InvalidRequest")

    def test_discharge_then_clean(self):
        client = self.client_for()
        self.admit(client)
        response = client.post(
            "/api/adt/discharge", {"messageId": "d-1", "patientRef": "P-1", "disposition": "home"}, format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.bed.refresh_from_db()
        self.assertEqual(self.bed.status, Bed.STATUS_DIRTY)

        cleaned = client.post(f"/api/beds/{self.bed.pk}/status", {"status": "available"}, format="json")
        self.assertEqual(cleaned.status_code, status.HTTP_200_OK)
        self.assertEqual(cleaned.data["data"]["status"], "available")

    def test_occupied_cannot_be_set_by_hand(self):
        client = self.client_for()
        response = client.post(f"/api/beds/{self.bed.pk}/status", {"status": "occupied"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_invalid_transition_is_a_conflict(self):
        client = self.client_for()
        response = client.post(f"/api/beds/{self.bed.pk}/status", {"status": "dirty"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data["error"]["code"], "InvalidTransition")

    def test_matched_beds(self):
        client = self.client_for()
        response = client.get(f"/api/units/{self.unit.pk}/beds/matched?capabilities=telemetry&acuity=2")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([b["id"] for b in response.data["data"]], [self.bed.pk])

        none = client.get(f"/api/units/{self.unit.pk}/beds/matched?capabilities=bariatric")
        self.assertEqual(none.data["data"], [])

    def test_unknown_unit_is_not_found(self):
        client = self.client_for()
        response = client.get("/api/units/9999/census")
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_forecast_without_rows_warns(self):
        client = self.client_for()
        response = client.get(f"/api/units/{self.unit.pk}/forecast?daysAhead=3")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["data"], [])
        self.assertTrue(response.data["warnings"])

        too_far = client.get(f"/api/units/{self.unit.pk}/forecast?daysAhead=31")
        self.assertEqual(too_far.status_code, status.HTTP_400_BAD_REQUEST)

    def test_assignment_los(self):
        client = self.client_for()
        admitted = self.admit(client)
        response = client.get(f"/api/assignments/{admitted.data['data']['id']}/los")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["data"]["source"], "unit_default")
        self.assertEqual(response.data["data"]["expectedTotalDays"], 3.0)

    def test_healthz(self):
        response = self.client.get("/api/healthz")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.json()["ok"])
