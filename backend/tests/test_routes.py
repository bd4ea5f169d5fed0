"""
API route tests.

Verifies the HTTP contract: status codes, error kinds, and that request
bodies reach the services.
"""

from conftest import auth_headers


def _create_spending(client, headers, amount=15000):
    return client.post("/api/transactions", json={
        "transaction_type": "spending",
        "amount_cents": amount,
        "description": "Buy money, case 24-118",
        "receipt_number": "R-0042",
    }, headers=headers)


class TestSystemRoutes:

    def test_health_degraded_without_email_key(self, client):
        response = client.get("/api/health")

        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "degraded"
        assert data["checks"]["database"]["status"] == "healthy"

    def test_session_records_login(self, client, agent_headers):
        response = client.post("/api/session", headers=agent_headers)

        assert response.status_code == 200
        assert response.get_json() == {"user_id": "agent-uid", "role": "agent"}


class TestAuthentication:

    def test_missing_token(self, client):
        response = client.get("/api/books")
        assert response.status_code == 401
        assert response.get_json()["kind"] == "unauthorized"

    def test_bad_token(self, client, admin):
        response = client.get("/api/books", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_unknown_user_is_forbidden(self, client):
        response = client.post("/api/books", json={"year": 2025, "starting_amount_cents": 100},
                               headers=auth_headers("stranger-uid"))
        assert response.status_code == 403


class TestBookRoutes:

    def test_agent_cannot_create_book(self, client, agent_headers):
        response = client.post("/api/books", json={"year": 2025, "starting_amount_cents": 100000},
                               headers=agent_headers)
        assert response.status_code == 403

    def test_admin_creates_book(self, client, admin_headers):
        response = client.post("/api/books", json={
            "year": 2025, "starting_amount_cents": 100000, "activate": True,
        }, headers=admin_headers)

        assert response.status_code == 201
        book = response.get_json()["book"]
        assert book["year"] == 2025
        assert book["is_active"] is True

    def test_duplicate_year_conflicts(self, client, admin_headers, active_book):
        response = client.post("/api/books", json={"year": 2025, "starting_amount_cents": 5},
                               headers=admin_headers)
        assert response.status_code == 409
        assert response.get_json()["kind"] == "conflict"

    def test_invalid_year(self, client, admin_headers):
        response = client.post("/api/books", json={"year": 1999, "starting_amount_cents": 5},
                               headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()["kind"] == "validation_error"

    def test_reset_requires_phrase(self, client, admin_headers, active_book):
        response = client.post(f"/api/books/{active_book.id}/reset", json={"confirmation": "reset"},
                               headers=admin_headers)
        assert response.status_code == 400
        assert response.get_json()["kind"] == "validation_error"

    def test_summary(self, client, admin_headers, active_book):
        response = client.get(f"/api/books/{active_book.id}/summary", headers=admin_headers)
        assert response.status_code == 200


class TestTransactionRoutes:

    def test_agent_creates_pending_transaction(self, client, agent_headers, active_book):
        response = _create_spending(client, agent_headers)

        assert response.status_code == 201
        tx = response.get_json()["transaction"]
        assert tx["status"] == "pending"
        assert tx["amount_cents"] == 15000

    def test_create_without_active_book(self, client, agent_headers):
        response = _create_spending(client, agent_headers)
        assert response.status_code == 409
        assert response.get_json()["kind"] == "invalid_state"

    def test_approve_then_approve_again(self, client, outbox, admin_headers, agent_headers, active_book):
        tx_id = _create_spending(client, agent_headers).get_json()["transaction"]["id"]

        first = client.post(f"/api/transactions/{tx_id}/approve-spending", json={"notes": "Receipt verified"},
                            headers=admin_headers)
        second = client.post(f"/api/transactions/{tx_id}/approve-spending", headers=admin_headers)

        assert first.status_code == 200
        assert first.get_json()["status"] == "approved"
        assert first.get_json()["warnings"] == []
        assert second.status_code == 409
        assert second.get_json()["kind"] == "invalid_state"

    def test_agent_cannot_approve(self, client, agent_headers, active_book):
        tx_id = _create_spending(client, agent_headers).get_json()["transaction"]["id"]

        response = client.post(f"/api/transactions/{tx_id}/approve-spending", headers=agent_headers)

        assert response.status_code == 403

    def test_approve_spending_rejects_other_types(self, client, outbox, admin_headers, agent_headers, active_book):
        response = client.post("/api/transactions", json={
            "transaction_type": "return", "amount_cents": 2000,
        }, headers=agent_headers)
        tx_id = response.get_json()["transaction"]["id"]

        response = client.post(f"/api/transactions/{tx_id}/approve-spending", headers=admin_headers)

        assert response.status_code == 400
        assert response.get_json()["kind"] == "type_mismatch"

    def test_missing_transaction(self, client, admin_headers):
        response = client.get("/api/transactions/9999", headers=admin_headers)
        assert response.status_code == 404
        assert response.get_json()["kind"] == "not_found"

    def test_agents_list_only_their_own(self, client, agent_headers, other_agent, active_book):
        _create_spending(client, agent_headers, 1000)
        _create_spending(client, auth_headers("other-uid"), 2000)

        response = client.get("/api/transactions", headers=agent_headers)

        assert [tx["amount_cents"] for tx in response.get_json()["transactions"]] == [1000]
