import pytest
from fastapi.testclient import TestClient

from ezboss.auth.security import create_access_token
from ezboss.main import app
from ezboss.routes.deps import get_email_dispatcher, get_estimate_service


@pytest.fixture
def client(service, dispatcher):
    app.dependency_overrides[get_estimate_service] = lambda: service
    app.dependency_overrides[get_email_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(permissions=("estimates:read", "estimates:write"), roles=()):
    token = create_access_token(
        "user_1", "Pat Contractor", "pat@contractor.test", roles=list(roles), permissions=list(permissions)
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth():
    return _headers()


def _create(client, auth, **overrides):
    body = {
        "customer_name": "Jordan Rivers",
        "customer_email": "jordan@example.com",
        "line_items": [
            {"description": "Deck boards", "quantity": 2, "unit_price": 100},
            {"description": "Fasteners", "quantity": 1, "unit_price": 50},
        ],
        "discount": 10,
        "discount_type": "percentage",
        "tax_rate": 8,
    }
    body.update(overrides)
    r = client.post("/estimates", json=body, headers=auth)
    assert r.status_code == 201, r.text
    return r.json()


class TestAuth:
    def test_requires_token(self, client):
        assert client.get("/estimates").status_code == 401

    def test_bad_token(self, client):
        r = client.get("/estimates", headers={"Authorization": "Bearer not-a-jwt"})
        assert r.status_code == 401

    def test_read_only_cannot_write(self, client):
        read_only = _headers(permissions=["estimates:read"])
        assert client.get("/estimates", headers=read_only).status_code == 200
        assert client.post("/estimates", json={"customer_name": "Sam"}, headers=read_only).status_code == 403

    def test_admin_bypasses_permissions(self, client):
        admin = _headers(permissions=[], roles=["admin"])
        assert client.post("/estimates", json={"customer_name": "Sam"}, headers=admin).status_code == 201


class TestContractorRoutes:
    def test_create_and_read(self, client, auth):
        created = _create(client, auth)

        assert created["estimate_number"] == "EST-2025-001"
        assert created["total"] == 243
        r = client.get(f"/estimates/{created['id']}", headers=auth)
        assert r.status_code == 200
        assert r.json()["created_by"] == "user_1"
        assert r.headers["X-Request-ID"]

    def test_request_id_is_echoed(self, client):
        r = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert r.headers["X-Request-ID"] == "req-123"

    def test_error_mapping(self, client, auth):
        created = _create(client, auth)

        missing = client.get("/estimates/est_missing", headers=auth)
        assert missing.status_code == 404
        assert missing.json()["code"] == "ESTIMATE_NOT_FOUND"

        invalid = client.patch(f"/estimates/{created['id']}/financials", json={"discount": 150}, headers=auth)
        assert invalid.status_code == 422
        assert invalid.json()["errors"]["discount"]

        transition = client.post(f"/estimates/{created['id']}/convert-to-invoice", headers=auth)
        assert transition.status_code == 409
        assert transition.json()["code"] == "INVALID_TRANSITION"

    def test_line_item_lifecycle(self, client, auth):
        created = _create(client, auth)
        eid = created["id"]

        added = client.post(f"/estimates/{eid}/line-items", json={"description": "Lattice", "quantity": 1, "unit_price": 40}, headers=auth)
        assert added.status_code == 201
        li = added.json()["id"]

        updated = client.patch(f"/estimates/{eid}/line-items/{li}", json={"quantity": 2}, headers=auth)
        assert updated.json()["total"] == 80

        order = [li] + [item["id"] for item in created["line_items"]]
        reordered = client.put(f"/estimates/{eid}/line-items/order", json={"ordered_ids": order}, headers=auth)
        assert [item["id"] for item in reordered.json()["line_items"]] == order

        assert client.delete(f"/estimates/{eid}/line-items/{li}", headers=auth).status_code == 200
        assert client.delete(f"/estimates/{eid}/line-items/{li}", headers=auth).status_code == 404

        revisions = client.get(f"/estimates/{eid}/revisions", headers=auth).json()
        assert sum(len(day["revisions"]) for day in revisions) == 5

    def test_payments(self, client, auth):
        eid = _create(client, auth)["id"]

        paid = client.post(f"/estimates/{eid}/payments", json={"amount": 100, "method": "Check"}, headers=auth)
        assert paid.status_code == 201
        summary = client.get(f"/estimates/{eid}/payments", headers=auth).json()
        assert (summary["total_paid"], summary["balance"]) == (100, 143)

        after = client.delete(f"/estimates/{eid}/payments/{paid.json()['id']}", headers=auth).json()
        assert after["balance"] == 243

        assert client.post(f"/estimates/{eid}/payments", json={"amount": 0}, headers=auth).status_code == 422

    def test_send_flow(self, client, auth, dispatcher):
        eid = _create(client, auth)["id"]

        r = client.post(f"/estimates/{eid}/send", json={"subject": "Your deck estimate"}, headers=auth)

        assert r.status_code == 200
        body = r.json()
        assert body["estimate_state"] == "estimate"
        assert body["client_state"] == "sent"
        assert body["client_view_url"] == f"https://app.ezboss.test/client/estimate/{body['email_token']}"
        assert dispatcher.sent[0]["to"] == "jordan@example.com"

    def test_send_failure_is_bad_gateway(self, client, auth, dispatcher):
        eid = _create(client, auth)["id"]
        dispatcher.fail_sends = True

        r = client.post(f"/estimates/{eid}/send", json={}, headers=auth)

        assert r.status_code == 502
        assert r.json()["code"] == "EXTERNAL_DEPENDENCY_FAILED"
        assert client.get(f"/estimates/{eid}", headers=auth).json()["client_state"] is None

    def test_search(self, client, auth):
        _create(client, auth)
        _create(client, auth, customer_name="Morgan Hale")

        found = client.get("/estimates/search", params={"customer": "mor"}, headers=auth).json()

        assert [e["customer_name"] for e in found] == ["Morgan Hale"]


class TestClientView:
    def _sent(self, client, auth):
        eid = _create(client, auth)["id"]
        token = client.post(f"/estimates/{eid}/prepare-send", headers=auth).json()["email_token"]
        client.post(f"/estimates/{eid}/mark-sent", headers=auth)
        return eid, token

    def test_view_hides_contractor_fields(self, client, auth):
        eid, token = self._sent(client, auth)

        r = client.get(f"/client/estimate/{token}")

        assert r.status_code == 200
        body = r.json()
        assert body["client_state"] == "viewed"
        assert body["view_count"] == 1
        assert "revisions_history" not in body
        assert "communications" not in body
        assert "contractor_email" not in body

    def test_unknown_token(self, client):
        assert client.get("/client/estimate/nope").status_code == 404

    def test_decision_and_comment(self, client, auth, dispatcher):
        eid, token = self._sent(client, auth)
        client.get(f"/client/estimate/{token}")

        comment = client.post(f"/client/estimate/{token}/comments", json={"text": "Looks good", "author_name": "Jordan"})
        assert comment.status_code == 201

        decided = client.post(f"/client/estimate/{token}/decision", json={"decision": "accepted", "client_name": "Jordan"})
        assert decided.status_code == 200
        assert decided.json()["client_state"] == "accepted"

        again = client.post(f"/client/estimate/{token}/decision", json={"decision": "denied"})
        assert again.status_code == 409

        events = [n[1] for n in dispatcher.notifications]
        assert events == ["opened", "commented", "accepted"]

    def test_tracking_pixel(self, client):
        r = client.get("/client/estimate/anything/pixel.png")
        assert r.status_code == 200
        assert r.headers["content-type"] == "image/png"
        assert r.content.startswith(b"\x89PNG")


def test_startup_creates_tables(tmp_path, monkeypatch):
    from sqlalchemy import inspect

    from ezboss import main
    from ezboss.db import build_engine

    engine = build_engine(f"sqlite:///{tmp_path / 'startup.db'}")
    monkeypatch.setattr(main, "engine", engine)
    monkeypatch.setattr(main.settings, "auto_create_db", True)

    with TestClient(main.app) as client:
        assert client.get("/health").json() == {"status": "ok"}

    assert "estimates" in inspect(engine).get_table_names()
    engine.dispose()
