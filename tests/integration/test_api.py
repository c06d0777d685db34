"""
Integration tests for the dashboard API.
"""
import asyncio
import csv
import io

import pytest
from fastapi.testclient import TestClient

from dashboard import app as api


ORDER_FORM = {
    "supplier": {"razonSocial": "Ferretería Central", "nit": "800.1"},
    "expense_type": "MANTENIMIENTO",
    "items": [
        {"description": "Correa", "quantity": 2, "unit_price": 50000},
        {"description": "Rodamiento", "quantity": 4, "unit_price": 12500},
    ],
    "notes": "Urgente",
}


@pytest.fixture
def client(test_config, store, identity, accounts, seed_profile):
    """A TestClient over an in-memory backend with one admin and one user."""
    async def _seed():
        await seed_profile(store, accounts["admin"], role="admin")
        await seed_profile(store, accounts["user"], role="user")

    asyncio.run(_seed())
    api.configure(test_config, store, identity)
    with TestClient(api.app) as test_client:
        yield test_client
    api.configure()


@pytest.fixture
def sign_in(client, password):
    """Return a helper that signs in and returns the auth headers."""
    def _sign_in(email):
        response = client.post("/api/session", json={"email": email, "password": password})
        assert response.status_code == 200, response.text
        return {"X-Session-Token": response.json()["token"]}
    return _sign_in


@pytest.fixture
def admin_headers(sign_in, accounts):
    return sign_in(accounts["admin"].email)


@pytest.fixture
def user_headers(sign_in, accounts):
    return sign_in(accounts["user"].email)


@pytest.mark.integration
@pytest.mark.api
class TestSessionEndpoints:
    """Tests for sign-in and sign-out."""

    def test_health(self, client):
        """Test the liveness probe needs no session."""
        assert client.get("/api/health").json()["status"] == "ok"

    def test_sign_in_returns_role(self, client, password, accounts):
        """Test a registered admin gets a token and the admin role."""
        response = client.post("/api/session", json={"email": accounts["admin"].email, "password": password})
        body = response.json()
        assert body["role"] == "admin"
        assert body["display_name"] == "Ada Admin"
        assert body["token"]

    def test_wrong_password_is_401(self, client, accounts):
        """Test bad credentials map to 401 with the error kind."""
        response = client.post("/api/session", json={"email": accounts["user"].email, "password": "nope"})
        assert response.status_code == 401
        assert response.json()["kind"] == "wrong_password"

    def test_unregistered_identity_is_403(self, client, identity, password):
        """Test an identity without a profile is refused."""
        identity.register("stranger@example.com", password)
        response = client.post("/api/session", json={"email": "stranger@example.com", "password": password})
        assert response.status_code == 403
        assert "not registered" in response.json()["detail"]

    def test_requests_without_token_are_401(self, client):
        """Test protected endpoints require a session token."""
        assert client.get("/api/orders").status_code == 401
        assert client.get("/api/stats", headers={"X-Session-Token": "bogus"}).status_code == 401

    def test_sign_out_invalidates_token(self, client, user_headers):
        """Test a token stops working after sign-out."""
        assert client.delete("/api/session", headers=user_headers).status_code == 200
        assert client.get("/api/orders", headers=user_headers).status_code == 401


@pytest.mark.integration
@pytest.mark.api
class TestOrderEndpoints:
    """Tests for the order endpoints."""

    def test_next_number_is_stable_until_saved(self, client, user_headers):
        """Test asking twice returns the same reserved number."""
        first = client.post("/api/orders/next-number", headers=user_headers).json()
        second = client.post("/api/orders/next-number", headers=user_headers).json()
        assert first == second == {"order_number": 1000}

    def test_create_and_list(self, client, user_headers, accounts):
        """Test creating an order stamps it and makes it listable."""
        response = client.post("/api/orders", json=ORDER_FORM, headers=user_headers)
        assert response.status_code == 201
        created = response.json()
        assert created["numeroOrden"] == 1000
        assert created["totales"]["subtotal"] == 150000
        assert created["totales"]["ivaPercent"] == 19
        assert created["creadoPor"]["uid"] == accounts["user"].uid

        listed = client.get("/api/orders", headers=user_headers).json()
        assert [o["id"] for o in listed] == [created["id"]]
        assert client.get(f"/api/orders/{created['id']}", headers=user_headers).json()["observaciones"] == "Urgente"

    def test_sequential_creates_use_sequential_numbers(self, client, user_headers):
        """Test each save reserves the next number."""
        numbers = [
            client.post("/api/orders", json=ORDER_FORM, headers=user_headers).json()["numeroOrden"]
            for _ in range(3)
        ]
        assert numbers == [1000, 1001, 1002]

    def test_filters(self, client, user_headers):
        """Test search and type filters on the listing."""
        client.post("/api/orders", json=ORDER_FORM, headers=user_headers)
        other = {**ORDER_FORM, "supplier": {"razonSocial": "Papelería Sur"}, "expense_type": "COMPRA"}
        client.post("/api/orders", json=other, headers=user_headers)

        by_search = client.get("/api/orders", params={"search": "papel"}, headers=user_headers).json()
        by_type = client.get("/api/orders", params={"type": "MANTENIMIENTO"}, headers=user_headers).json()
        assert [o["proveedor"]["razonSocial"] for o in by_search] == ["Papelería Sur"]
        assert [o["tipoGasto"] for o in by_type] == ["MANTENIMIENTO"]

    def test_invalid_order_is_422(self, client, user_headers):
        """Test validation problems are reported and nothing is stored."""
        bad = {**ORDER_FORM, "items": [{"description": " ", "quantity": 0, "unit_price": 10}]}
        response = client.post("/api/orders", json=bad, headers=user_headers)
        assert response.status_code == 422
        assert len(response.json()["problems"]) == 2
        assert client.get("/api/orders", headers=user_headers).json() == []

    def test_stats(self, client, user_headers):
        """Test the dashboard counts what was created."""
        client.post("/api/orders", json=ORDER_FORM, headers=user_headers)
        stats = client.get("/api/stats", headers=user_headers).json()
        assert stats["total_orders"] == 1
        assert stats["by_type"] == {"MANTENIMIENTO": 1}
        assert stats["has_data"] is True
        assert len(stats["monthly_series"]) == 6

    def test_unknown_order_is_404(self, client, user_headers):
        """Test reading a missing order returns 404."""
        assert client.get("/api/orders/nope", headers=user_headers).status_code == 404

    def test_user_cannot_edit_or_delete(self, client, user_headers):
        """Test non-admins get 403 on privileged order operations."""
        order_id = client.post("/api/orders", json=ORDER_FORM, headers=user_headers).json()["id"]
        assert client.put(f"/api/orders/{order_id}", json=ORDER_FORM, headers=user_headers).status_code == 403
        assert client.delete(
            f"/api/orders/{order_id}", params={"confirm": "true"}, headers=user_headers
        ).status_code == 403

    def test_admin_edit_keeps_number(self, client, user_headers, admin_headers):
        """Test an admin edit replaces content and keeps the order number."""
        created = client.post("/api/orders", json=ORDER_FORM, headers=user_headers).json()
        edit = {**ORDER_FORM, "items": [{"description": "Correa", "quantity": 1, "unit_price": 1000}]}
        response = client.put(f"/api/orders/{created['id']}", json=edit, headers=admin_headers)
        assert response.status_code == 200
        stored = client.get(f"/api/orders/{created['id']}", headers=user_headers).json()
        assert stored["numeroOrden"] == created["numeroOrden"]
        assert stored["totales"]["subtotal"] == 1000
        assert stored["creadoPor"] == created["creadoPor"]

    def test_admin_delete_needs_confirmation(self, client, user_headers, admin_headers):
        """Test deletion is refused until confirmed."""
        order_id = client.post("/api/orders", json=ORDER_FORM, headers=user_headers).json()["id"]
        assert client.delete(f"/api/orders/{order_id}", headers=admin_headers).status_code == 400
        assert client.delete(
            f"/api/orders/{order_id}", params={"confirm": "true"}, headers=admin_headers
        ).status_code == 200
        assert client.get("/api/orders", headers=admin_headers).json() == []

    def test_order_xml(self, client, user_headers):
        """Test the XML rendering of one order."""
        order_id = client.post("/api/orders", json=ORDER_FORM, headers=user_headers).json()["id"]
        response = client.get(f"/api/orders/{order_id}/xml", headers=user_headers)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "<Number>1000</Number>" in response.text


@pytest.mark.integration
@pytest.mark.api
class TestUserEndpoints:
    """Tests for the user administration endpoints."""

    def test_list_users(self, client, admin_headers, accounts):
        """Test the admin sees every profile and cannot manage themselves."""
        body = client.get("/api/users", headers=admin_headers).json()
        assert body["counts"] == {"total": 2, "active": 2, "admins": 1}
        manageable = {u["uid"]: u["manageable"] for u in body["users"]}
        assert manageable == {accounts["admin"].uid: False, accounts["user"].uid: True}

    def test_user_cannot_list_users(self, client, user_headers):
        """Test non-admins get 403."""
        assert client.get("/api/users", headers=user_headers).status_code == 403

    def test_promote_and_deactivate(self, client, admin_headers, accounts, password):
        """Test role and status changes take effect on the next sign-in."""
        uid = accounts["user"].uid
        assert client.patch(f"/api/users/{uid}/role", json={"role": "admin"}, headers=admin_headers).status_code == 200
        assert client.patch(f"/api/users/{uid}/active", json={"active": False}, headers=admin_headers).status_code == 200
        response = client.post("/api/session", json={"email": accounts["user"].email, "password": password})
        assert response.status_code == 403
        assert "inactive" in response.json()["detail"]

    def test_deactivation_revokes_issued_token(self, client, admin_headers, user_headers, accounts):
        """Test a token issued before deactivation stops working on its next request."""
        assert client.get("/api/orders", headers=user_headers).status_code == 200
        uid = accounts["user"].uid
        assert client.patch(f"/api/users/{uid}/active", json={"active": False}, headers=admin_headers).status_code == 200
        response = client.get("/api/orders", headers=user_headers)
        assert response.status_code == 403
        assert "inactive" in response.json()["detail"]
        assert client.post("/api/orders", json=ORDER_FORM, headers=user_headers).status_code == 401

    def test_role_change_reaches_issued_token(self, client, admin_headers, user_headers, accounts):
        """Test promotion and demotion apply to a token that is already in use."""
        assert client.get("/api/users", headers=user_headers).status_code == 403
        uid = accounts["user"].uid
        assert client.patch(f"/api/users/{uid}/role", json={"role": "admin"}, headers=admin_headers).status_code == 200
        assert client.get("/api/users", headers=user_headers).status_code == 200
        assert client.patch(f"/api/users/{uid}/role", json={"role": "user"}, headers=admin_headers).status_code == 200
        assert client.get("/api/users", headers=user_headers).status_code == 403

    def test_unknown_role_is_400(self, client, admin_headers, accounts):
        """Test an invalid role is rejected."""
        uid = accounts["user"].uid
        response = client.patch(f"/api/users/{uid}/role", json={"role": "root"}, headers=admin_headers)
        assert response.status_code == 400

    def test_own_status_is_403(self, client, admin_headers, accounts):
        """Test an admin cannot deactivate themselves."""
        uid = accounts["admin"].uid
        response = client.patch(f"/api/users/{uid}/active", json={"active": False}, headers=admin_headers)
        assert response.status_code == 403

    def test_register_user(self, client, admin_headers):
        """Test an admin registers a new identity that can then sign in."""
        response = client.post("/api/users", headers=admin_headers, json={
            "email": "new@example.com", "password": "s3cret-pass", "display_name": "New", "department": "Taller",
        })
        assert response.status_code == 201
        assert response.json()["role"] == "user"
        signed_in = client.post("/api/session", json={"email": "new@example.com", "password": "s3cret-pass"})
        assert signed_in.status_code == 200

    def test_register_duplicate_email_is_400(self, client, admin_headers, accounts):
        """Test an email already in use is refused."""
        response = client.post("/api/users", headers=admin_headers, json={
            "email": accounts["user"].email, "password": "x",
        })
        assert response.status_code == 400


@pytest.mark.integration
@pytest.mark.api
class TestExportEndpoint:
    """Tests for the CSV export endpoint."""

    def test_empty_export_is_404(self, client, user_headers):
        """Test nothing is exported when there are no orders."""
        assert client.get("/api/export.csv", headers=user_headers).status_code == 404

    def test_export_csv(self, client, user_headers):
        """Test the spreadsheet holds one row per order."""
        client.post("/api/orders", json=ORDER_FORM, headers=user_headers)
        response = client.get("/api/export.csv", headers=user_headers)
        assert response.status_code == 200
        assert "purchase_orders_" in response.headers["content-disposition"]
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert rows[0]["Supplier"] == "Ferretería Central"
        assert rows[0]["Expense Type"] == "MANTENIMIENTO"
