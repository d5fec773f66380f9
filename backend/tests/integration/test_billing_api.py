"""
Integration tests for the billing API endpoints.
"""

from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from core.database import get_db
from main import app
from utils.datetime_utils import clinic_now

BASE = "/api/billing"


@pytest.fixture
def client(session_factory):
    """TestClient whose requests share one test session."""
    session = session_factory()

    def override_get_db() -> Generator[Session, None, None]:
        yield session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def api_invoice(client, make_visit):
    """A $100 invoice created through the API. Returns the response body."""
    visit = make_visit(patient_id=11)
    created = client.post(f"{BASE}/invoices", json={"visit_id": visit.id, "created_by": 1})
    assert created.status_code == 201
    added = client.post(
        f"{BASE}/invoices/{created.json()['id']}/items",
        json={"item_type": "service", "item_name": "Consultation", "unit_price": "100.00", "added_by": 1},
    )
    assert added.status_code == 201
    return added.json()["invoice"]


def _money(value):
    return Decimal(str(value))


class TestInvoiceEndpoints:
    """Invoice creation, reads and maintenance."""

    def test_create_and_read_invoice(self, client, api_invoice):
        response = client.get(f"{BASE}/invoices/{api_invoice['id']}")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pending"
        assert data["version"] == 2
        assert data["invoice_number"].startswith("INV-")
        assert data["patient_id"] == 11
        assert _money(data["total_amount"]) == Decimal("100.00")
        assert [i["item_name"] for i in data["items"]] == ["Consultation"]

    def test_invoice_for_visit(self, client, api_invoice):
        response = client.get(f"{BASE}/visits/{api_invoice['visit_id']}/invoice")

        assert response.status_code == 200
        assert response.json()["id"] == api_invoice["id"]

    def test_unknown_invoice_is_404(self, client):
        response = client.get(f"{BASE}/invoices/999999")

        assert response.status_code == 404
        data = response.json()
        assert data["success"] is False
        assert data["error_code"] == "INVOICE_NOT_FOUND"

    def test_unknown_visit_is_404(self, client):
        response = client.post(f"{BASE}/invoices", json={"visit_id": 999999})

        assert response.status_code == 404
        assert response.json()["error_code"] == "VISIT_NOT_FOUND"

    def test_list_invoices(self, client, api_invoice):
        response = client.get(f"{BASE}/invoices", params={"status": "pending"})

        assert response.status_code == 200
        assert [i["id"] for i in response.json()["invoices"]] == [api_invoice["id"]]

    def test_item_update_and_remove(self, client, api_invoice):
        item_id = api_invoice["items"][0]["id"]

        updated = client.put(f"{BASE}/items/{item_id}", json={"quantity": "2", "expected_version": 2})
        assert updated.status_code == 200
        assert _money(updated.json()["invoice"]["total_amount"]) == Decimal("200.00")
        assert updated.json()["invoice"]["version"] == 3

        removed = client.delete(f"{BASE}/items/{item_id}", params={"expected_version": 3})
        assert removed.status_code == 200
        assert _money(removed.json()["invoice"]["total_amount"]) == Decimal("0.00")
        assert removed.json()["invoice"]["items"] == []

    def test_discount_hold_and_cancel(self, client, api_invoice):
        invoice_id = api_invoice["id"]

        discounted = client.put(f"{BASE}/invoices/{invoice_id}/discount", json={"discount_percentage": "10"})
        assert _money(discounted.json()["total_amount"]) == Decimal("90.00")

        held = client.post(f"{BASE}/invoices/{invoice_id}/hold", json={"reason": "Insurance review"})
        assert held.json()["on_hold"] is True

        resumed = client.post(f"{BASE}/invoices/{invoice_id}/resume", json={})
        assert resumed.json()["on_hold"] is False

        cancelled = client.post(f"{BASE}/invoices/{invoice_id}/cancel", json={"cancelled_by": 1, "reason": "Duplicate"})
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

    def test_request_validation(self, client, api_invoice):
        response = client.post(
            f"{BASE}/invoices/{api_invoice['id']}/items",
            json={"item_type": "service", "item_name": "", "unit_price": "-1"},
        )

        assert response.status_code == 422


class TestPaymentEndpoints:
    """Payments over HTTP, including the error contract."""

    def test_partial_then_full_payment(self, client, api_invoice):
        invoice_id = api_invoice["id"]

        first = client.post(f"{BASE}/invoices/{invoice_id}/payments",
                            json={"amount": "60.00", "payment_method": "cash", "expected_version": 2})
        assert first.status_code == 200
        body = first.json()
        assert body["idempotent"] is False
        assert body["invoice"]["status"] == "partial_paid"
        assert _money(body["invoice"]["balance"]) == Decimal("40.00")
        assert body["payment"]["invoice_version"] == 3

        second = client.post(f"{BASE}/invoices/{invoice_id}/payments",
                             json={"amount": "40.00", "payment_method": "card", "expected_version": 3})
        assert second.json()["invoice"]["status"] == "paid"
        assert _money(second.json()["invoice"]["balance"]) == Decimal("0.00")

        history = client.get(f"{BASE}/invoices/{invoice_id}/payments")
        assert [p["payment_method"] for p in history.json()["payments"]] == ["card", "cash"]

    def test_stale_version_is_409(self, client, api_invoice):
        invoice_id = api_invoice["id"]
        client.post(f"{BASE}/invoices/{invoice_id}/payments",
                    json={"amount": "30.00", "payment_method": "cash", "expected_version": 2})

        response = client.post(f"{BASE}/invoices/{invoice_id}/payments",
                               json={"amount": "20.00", "payment_method": "cash", "expected_version": 2})

        assert response.status_code == 409
        data = response.json()
        assert data["error_code"] == "VERSION_MISMATCH"
        assert data["details"] == {"current_version": 3, "expected_version": 2}

    def test_overpayment_is_400(self, client, api_invoice):
        response = client.post(f"{BASE}/invoices/{api_invoice['id']}/payments",
                               json={"amount": "150.00", "payment_method": "cash"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "PAYMENT_EXCEEDS_BALANCE"

    def test_invalid_payment_method_is_400(self, client, api_invoice):
        response = client.post(f"{BASE}/invoices/{api_invoice['id']}/payments",
                               json={"amount": "10.00", "payment_method": "barter"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_PAYMENT"

    def test_idempotent_retry_after_full_payment(self, client, api_invoice):
        invoice_id = api_invoice["id"]
        payload = {"amount": "100.00", "payment_method": "cash", "expected_version": 2}
        client.post(f"{BASE}/invoices/{invoice_id}/payments", json=payload)

        retry = client.post(f"{BASE}/invoices/{invoice_id}/payments", json=payload)

        assert retry.status_code == 200
        assert retry.json()["idempotent"] is True
        assert retry.json()["payment"] is None
        assert len(client.get(f"{BASE}/invoices/{invoice_id}/payments").json()["payments"]) == 1

    def test_get_payment_by_id(self, client, api_invoice):
        paid = client.post(f"{BASE}/invoices/{api_invoice['id']}/payments",
                           json={"amount": "40.00", "payment_method": "cash"})
        payment_id = paid.json()["payment"]["id"]

        response = client.get(f"{BASE}/payments/{payment_id}")

        assert response.status_code == 200
        assert response.json()["invoice_id"] == api_invoice["id"]
        assert _money(response.json()["amount"]) == Decimal("40.00")

        missing = client.get(f"{BASE}/payments/987654")
        assert missing.status_code == 404
        assert missing.json()["error_code"] == "PAYMENT_NOT_FOUND"

    def test_payment_report(self, client, api_invoice):
        invoice_id = api_invoice["id"]
        client.post(f"{BASE}/invoices/{invoice_id}/payments", json={"amount": "60.00", "payment_method": "cash"})
        client.post(f"{BASE}/invoices/{invoice_id}/payments", json={"amount": "40.00", "payment_method": "card"})
        today = clinic_now().date().isoformat()

        response = client.get(f"{BASE}/payments/report", params={"start_date": today, "end_date": today})

        assert response.status_code == 200
        data = response.json()
        assert data["start_date"] == today
        assert [p["payment_method"] for p in data["payments"]] == ["card", "cash"]
        assert data["summary"]["total_payments"] == 2
        assert _money(data["summary"]["total_amount"]) == Decimal("100.00")
        assert data["summary"]["by_method"]["cash"]["count"] == 1
        assert _money(data["summary"]["by_method"]["card"]["amount"]) == Decimal("40.00")

    def test_payment_report_rejects_inverted_range(self, client):
        response = client.get(f"{BASE}/payments/report",
                              params={"start_date": "2024-05-02", "end_date": "2024-05-01"})

        assert response.status_code == 400
        assert response.json()["error_code"] == "INVALID_BILLING_INPUT"

        assert client.get(f"{BASE}/payments/report").status_code == 422


class TestCompletionEndpoint:
    """POST /invoices/{id}/complete."""

    def test_complete_then_repeat(self, client, api_invoice):
        invoice_id = api_invoice["id"]

        first = client.post(f"{BASE}/invoices/{invoice_id}/complete", json={"completed_by": 1, "expected_version": 2})
        assert first.status_code == 200
        assert first.json()["invoice"]["status"] == "paid"
        assert first.json()["visit_completed"] is True

        again = client.post(f"{BASE}/invoices/{invoice_id}/complete", json={"completed_by": 1, "expected_version": 2})
        assert again.status_code == 200
        assert again.json()["idempotent"] is True


class TestPatientEndpoints:
    """Outstanding balance and invoice eligibility."""

    def test_outstanding_and_eligibility(self, client, api_invoice):
        outstanding = client.get(f"{BASE}/patients/11/outstanding")
        assert outstanding.status_code == 200
        assert _money(outstanding.json()["total_outstanding"]) == Decimal("100.00")
        assert outstanding.json()["invoice_count"] == 1

        eligibility = client.get(f"{BASE}/patients/11/invoice-eligibility")
        assert eligibility.json() == {"can_create": True, "outstanding_count": 1, "message": "OK"}
