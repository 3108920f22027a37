"""
Integration tests for the exchange API.

These exercise the request paths a hospital front-end drives: listing
surplus stock, searching, proposing and answering exchanges, and the
per-exchange conversation.  Tests use DRF's APIClient within the
APITestCase base class and authenticate with ``force_authenticate``.

To run the tests:

```
pytest -q exchange/tests
```
"""
from datetime import timedelta

from django.urls import reverse
from django.utils import timezone
from rest_framework.test import APITestCase, APIClient
from rest_framework import status

from exchange.models import DrugListing, ExchangeRequest, Hospital, HospitalDistance, User
from exchange.services.inventory import ListingInput, upsert_listing


class ExchangeAPITests(APITestCase):
    def setUp(self) -> None:
        """Two hospitals 5 km apart, one listing, and a staff user at each."""
        self.seeker = Hospital.objects.create(name="City Hospital", location="Toronto, ON")
        self.provider = Hospital.objects.create(name="General Hospital", location="Toronto, ON")
        self.outsider = Hospital.objects.create(name="Far Away Clinic", location="Ottawa, ON")
        HospitalDistance.objects.create(from_hospital=self.seeker, to_hospital=self.provider, distance_km=5)

        self.seeker_user = User.objects.create_user(username="city", password="pass12345", hospital=self.seeker)
        self.provider_user = User.objects.create_user(username="general", password="pass12345",
                                                      hospital=self.provider)
        self.outsider_user = User.objects.create_user(username="far", password="pass12345",
                                                      hospital=self.outsider)
        self.unbound_user = User.objects.create_user(username="nobody", password="pass12345")

        self.listing = upsert_listing(self.provider, ListingInput(
            name="Amoxicillin 500mg", din="02243465", quantity=50,
            expiry=timezone.localdate() + timedelta(days=90),
        ))

        self.seeker_client = APIClient()
        self.seeker_client.force_authenticate(user=self.seeker_user)
        self.provider_client = APIClient()
        self.provider_client.force_authenticate(user=self.provider_user)
        self.outsider_client = APIClient()
        self.outsider_client.force_authenticate(user=self.outsider_user)

    # -- helpers ----------------------------------------------------------

    def _search(self, **overrides):
        body = {"drugName": "Amoxicillin", "dosage": "500mg", "quantity": 20}
        body.update(overrides)
        return self.seeker_client.post(reverse("search"), body, format="json")

    def _propose(self, quantity=20):
        r = self._search()
        return self.seeker_client.post(reverse("exchange_propose"), {
            "requestId": r.data["requestId"],
            "listingId": r.data["data"][0]["listingId"],
            "quantity": quantity,
        }, format="json")

    # -- listings ---------------------------------------------------------

    def test_create_and_list_listings(self) -> None:
        r = self.provider_client.post(reverse("listings"), {
            "drugName": "Ceftriaxone", "dosage": "1g", "quantity": 12, "expiryDate": "2030-06-30",
        }, format="json")
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        self.assertTrue(r.data["ok"])
        self.assertEqual(r.data["data"]["canonicalName"], "ceftriaxone")
        self.assertEqual(r.data["data"]["available"], 12)

        mine = self.provider_client.get(reverse("listings"))
        self.assertEqual(mine.data["pagination"]["total"], 2)
        shared = self.seeker_client.get(reverse("listings"), {"scope": "shared"})
        self.assertEqual(shared.data["pagination"]["total"], 2)
        self.assertEqual(self.seeker_client.get(reverse("listings")).data["pagination"]["total"], 0)

    def test_listing_update_and_remove_are_owner_only(self) -> None:
        body = {"listingId": self.listing.id, "drugName": "Amoxicillin 500mg", "quantity": 40}
        r = self.seeker_client.post(reverse("listing_update"), body, format="json")
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(r.data["error"]["code"], "forbidden")

        r = self.provider_client.post(reverse("listing_update"), body, format="json")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data["data"]["quantity"], 40)

        r = self.provider_client.post(reverse("listing_remove"), {"listingId": self.listing.id}, format="json")
        self.assertTrue(r.data["removed"])
        self.assertFalse(DrugListing.objects.get(pk=self.listing.id).active)

    def test_listing_update_below_reserved_is_rejected(self) -> None:
        self.assertEqual(self._propose(30).status_code, status.HTTP_201_CREATED)
        r = self.provider_client.post(reverse("listing_update"), {
            "listingId": self.listing.id, "drugName": "Amoxicillin 500mg", "quantity": 10,
        }, format="json")
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(r.data["error"]["code"], "invalid_request")

    def test_bulk_import(self) -> None:
        r = self.provider_client.post(reverse("listing_bulk_import"), {"rows": [
            {"drug_name": "Heparin 5000 iu", "quantity": 10},
            {"quantity": 3},
        ]}, format="json")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(len(r.data["created"]), 1)
        self.assertEqual(r.data["errors"][0]["row"], 1)

    # -- search -----------------------------------------------------------

    def test_search_returns_ranked_candidates(self) -> None:
        r = self._search(maxDistanceKm=30)
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(len(r.data["data"]), 1)
        top = r.data["data"][0]
        self.assertEqual(top["rank"], 1)
        self.assertEqual(top["hospitalName"], "General Hospital")
        self.assertEqual(top["distanceKm"], 5)
        self.assertTrue(top["dosageMatch"])

    def test_search_validation(self) -> None:
        r = self._search(drugName="")
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(r.data["ok"])
        r = self._search(drugName="tablets")
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(r.data["error"]["code"], "invalid_request")

    def test_account_without_hospital_is_refused(self) -> None:
        client = APIClient()
        client.force_authenticate(user=self.unbound_user)
        r = client.post(reverse("search"), {"drugName": "Amoxicillin", "quantity": 1}, format="json")
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)

    # -- exchanges --------------------------------------------------------

    def test_full_exchange_flow(self) -> None:
        r = self._propose(20)
        self.assertEqual(r.status_code, status.HTTP_201_CREATED)
        exchange_id = r.data["data"]["id"]
        self.assertEqual(r.data["conversationId"], exchange_id)
        self.assertEqual(r.data["data"]["state"], "proposed")

        r = self.seeker_client.post(reverse("exchange_respond"),
                                    {"exchangeId": exchange_id, "decision": "accept"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)

        r = self.provider_client.post(reverse("exchange_respond"),
                                      {"exchangeId": exchange_id, "decision": "accept"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertEqual(r.data["data"]["state"], "accepted")
        self.assertIsNotNone(r.data["data"]["completionDeadline"])

        r = self.seeker_client.post(reverse("exchange_complete"), {"exchangeId": exchange_id}, format="json")
        self.assertEqual(r.data["data"]["state"], "completed")
        self.listing.refresh_from_db()
        self.assertEqual((self.listing.quantity_total, self.listing.quantity_reserved), (30, 0))

        r = self.provider_client.get(reverse("exchange_detail", args=[exchange_id]))
        self.assertEqual([t["to"] for t in r.data["data"]["transitions"]], ["proposed", "accepted", "completed"])

    def test_propose_more_than_available(self) -> None:
        r = self._propose(60)
        self.assertEqual(r.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(r.data["error"]["code"], "insufficient_quantity")
        self.assertEqual(r.data["error"]["context"]["available"], 50)
        self.assertFalse(ExchangeRequest.objects.exists())

    def test_terminal_exchange_reports_already_handled(self) -> None:
        exchange_id = self._propose().data["data"]["id"]
        r = self.seeker_client.post(reverse("exchange_cancel"), {"exchangeId": exchange_id, "reason": "no longer needed"},
                                    format="json")
        self.assertEqual(r.data["data"]["state"], "cancelled")
        r = self.provider_client.post(reverse("exchange_respond"),
                                      {"exchangeId": exchange_id, "decision": "accept"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(r.data["error"]["code"], "invalid_state_transition")

    def test_exchange_list_and_outsider_access(self) -> None:
        exchange_id = self._propose().data["data"]["id"]
        r = self.provider_client.get(reverse("exchange_list"), {"role": "provider"})
        self.assertEqual(r.data["pagination"]["total"], 1)
        self.assertEqual(r.data["data"][0]["seekerHospitalName"], "City Hospital")
        r = self.outsider_client.get(reverse("exchange_detail", args=[exchange_id]))
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)
        r = self.outsider_client.get(reverse("exchange_detail", args=[exchange_id + 100]))
        self.assertEqual(r.status_code, status.HTTP_404_NOT_FOUND)

    # -- conversations ----------------------------------------------------

    def test_conversation_send_history_and_read(self) -> None:
        cid = self._propose().data["conversationId"]
        r = self.seeker_client.post(reverse("conversation_send"),
                                    {"conversationId": cid, "content": "Can you courier today?"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        message_id = r.data["messageId"]

        convs = self.provider_client.get(reverse("conversation_list"))
        self.assertEqual(convs.data["data"][0]["unreadCount"], 2)

        r = self.provider_client.post(reverse("conversation_read"),
                                      {"conversationId": cid, "upToMessageId": message_id}, format="json")
        self.assertEqual(r.data["updated"], 2)

        r = self.provider_client.get(reverse("conversation_history"), {"conversationId": cid})
        self.assertEqual([m["status"] for m in r.data["data"]], ["read", "read"])
        self.assertEqual(r.data["data"][-1]["content"], "Can you courier today?")

    def test_conversation_errors(self) -> None:
        cid = self._propose().data["conversationId"]
        r = self.seeker_client.post(reverse("conversation_send"),
                                    {"conversationId": cid + 100, "content": "hello"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(r.data["error"]["code"], "conversation_not_found")

        r = self.outsider_client.post(reverse("conversation_send"),
                                      {"conversationId": cid, "content": "hello"}, format="json")
        self.assertEqual(r.status_code, status.HTTP_403_FORBIDDEN)

        r = self.seeker_client.post(reverse("conversation_send"),
                                    {"conversationId": cid, "content": "   "}, format="json")
        self.assertEqual(r.status_code, status.HTTP_400_BAD_REQUEST)

    def test_healthz(self) -> None:
        r = self.client.get(reverse("healthz"))
        self.assertEqual(r.status_code, status.HTTP_200_OK)
        self.assertTrue(r.json()["ok"])
