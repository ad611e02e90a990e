"""
Backend API Tests for the Approval & Budget Ledger Engine
Testing: health, budget endpoints, PO/invoice approval, payments,
error mapping
"""
import pytest
from httpx import ASGITransport, AsyncClient

from server import app, get_db, get_services, policy_for, policy_service
from server import db as server_db

from conftest import PROJECT_ID

BASE = f"/api/projects/{PROJECT_ID}"


def as_user(user_id):
    return {"X-User-Id": user_id}


@pytest.fixture
async def client(db):
    app.dependency_overrides[get_db] = lambda: db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


@pytest.fixture
async def sub_account(client):
    """Account 5000 / sub-account 5010 with budget 10000, via the API"""
    response = await client.post(f"{BASE}/accounts", json={"code": "5000"}, headers=as_user("admin"))
    assert response.status_code == 201
    account_id = response.json()["account_id"]

    response = await client.post(
        f"{BASE}/sub-accounts",
        json={"account_id": account_id, "code": "5010", "budgeted": 10000},
        headers=as_user("admin")
    )
    assert response.status_code == 201, response.text
    return response.json()["sub_account_id"]


class TestHealthEndpoints:
    """Health check endpoints"""

    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestBudgetEndpoints:
    """Budget structure and balances"""

    async def test_new_sub_account_balance(self, client, sub_account):
        response = await client.get(f"{BASE}/sub-accounts/{sub_account}/balance")
        assert response.status_code == 200
        data = response.json()
        assert data["budgeted"] == 10000.0
        assert data["available"] == 10000.0
        print(f"Balance: {data}")

    async def test_update_budget(self, client, sub_account):
        response = await client.put(
            f"{BASE}/sub-accounts/{sub_account}/budget", json={"budgeted": 12500}, headers=as_user("admin")
        )
        assert response.status_code == 200
        assert response.json()["available"] == 12500.0

    async def test_negative_budget_rejected(self, client, sub_account):
        response = await client.put(
            f"{BASE}/sub-accounts/{sub_account}/budget", json={"budgeted": -1}, headers=as_user("admin")
        )
        assert response.status_code == 422

    async def test_user_header_required(self, client):
        response = await client.post(f"{BASE}/accounts", json={"code": "6000"})
        assert response.status_code == 401

    async def test_unknown_sub_account_is_integrity_error(self, client):
        response = await client.get(f"{BASE}/sub-accounts/64b7f0c2a1b2c3d4e5f60718/balance")
        assert response.status_code == 409
        assert response.json()["violation_type"] == "MISSING_SUB_ACCOUNT"


class TestApprovalFlow:
    """PO -> invoice -> payment through HTTP"""

    async def test_full_flow(self, client, sub_account, members):
        response = await client.post(
            f"{BASE}/purchase-orders",
            json={"sub_account_id": sub_account, "amount": 4000, "submit": True},
            headers=as_user("crew-1")
        )
        assert response.status_code == 201, response.text
        po = response.json()
        assert po["display_number"] == "PO-0001"
        assert po["status"] == "pending"

        inbox = await client.get(f"{BASE}/approvals/pending", headers=as_user("pm-1"))
        assert [item["document_id"] for item in inbox.json()] == [po["id"]]

        response = await client.post(
            f"{BASE}/purchase-orders/{po['id']}/decision",
            json={"decision": "approve"}, headers=as_user("pm-1")
        )
        assert response.status_code == 200
        assert response.json()["document_status"] == "approved"

        balance = (await client.get(f"{BASE}/sub-accounts/{sub_account}/balance")).json()
        assert balance["committed"] == 4000.0

        response = await client.post(
            f"{BASE}/invoices", json={"po_id": po["id"], "amount": 4000}, headers=as_user("crew-1")
        )
        assert response.status_code == 201
        invoice = response.json()
        assert invoice["status"] == "pending_approval"

        response = await client.post(
            f"{BASE}/invoices/{invoice['id']}/decision",
            json={"decision": "approve"}, headers=as_user("ctl-1")
        )
        assert response.json()["document_status"] == "pending"

        response = await client.post(
            f"{BASE}/payment-forecasts",
            json={"name": "Week 1", "payment_date": "2024-02-01", "items": [{"invoice_id": invoice["id"]}]},
            headers=as_user("ctl-1")
        )
        assert response.status_code == 201, response.text
        forecast = response.json()
        item_id = forecast["items"][0]["item_id"]

        response = await client.post(
            f"{BASE}/payment-forecasts/{forecast['id']}/items/{item_id}/pay",
            json={"amount_paid": 4000, "receipt_ref": "RCPT-1"}, headers=as_user("ctl-1")
        )
        assert response.status_code == 200, response.text
        assert response.json()["invoice_status"] == "paid"

        balance = (await client.get(f"{BASE}/sub-accounts/{sub_account}/balance")).json()
        assert balance["actual"] == 4000.0
        assert balance["committed"] == 0.0
        assert balance["available"] == 6000.0

        verify = (await client.get(f"{BASE}/ledger/verify")).json()
        assert verify["violations"] == []

        logs = (await client.get(f"{BASE}/audit-logs", params={"entity_type": "PURCHASE_ORDER"})).json()
        assert {log["action_type"] for log in logs} >= {"CREATE", "SUBMIT", "APPROVE"}

    async def test_ineligible_approver_is_business_error(self, client, sub_account, members):
        po = (await client.post(
            f"{BASE}/purchase-orders",
            json={"sub_account_id": sub_account, "amount": 100, "submit": True},
            headers=as_user("crew-1")
        )).json()

        response = await client.post(
            f"{BASE}/purchase-orders/{po['id']}/decision",
            json={"decision": "approve"}, headers=as_user("crew-2")
        )
        assert response.status_code == 422
        body = response.json()
        assert body["code"] == "APPROVER_NOT_ELIGIBLE"
        assert "reason" in body

    async def test_payment_without_receipt(self, client, sub_account):
        forecast = (await client.post(
            f"{BASE}/payment-forecasts",
            json={
                "name": "Petty", "payment_date": "2024-02-01",
                "items": [{"payee": "Taxi Co", "amount": 25, "sub_account_id": sub_account}]
            },
            headers=as_user("ctl-1")
        )).json()

        response = await client.post(
            f"{BASE}/payment-forecasts/{forecast['id']}/items/{forecast['items'][0]['item_id']}/pay",
            json={"amount_paid": 25}, headers=as_user("ctl-1")
        )
        assert response.status_code == 422
        assert response.json()["code"] == "MISSING_RECEIPT"

    async def test_missing_purchase_order(self, client):
        response = await client.get(f"{BASE}/purchase-orders/not-an-id")
        assert response.status_code == 404


class TestConfigAndSettings:
    """Approval configuration and policy flags"""

    async def test_defaults_then_save(self, client):
        defaults = (await client.get(f"{BASE}/approval-config")).json()
        assert defaults["po_approvals"][0]["roles"] == ["PM", "EP"]

        response = await client.put(
            f"{BASE}/approval-config",
            json={
                "po_approvals": [{"approver_type": "fixed", "approvers": ["ctl-1"]}],
                "invoice_approvals": []
            },
            headers=as_user("admin")
        )
        assert response.status_code == 200, response.text

        saved = (await client.get(f"{BASE}/approval-config")).json()
        assert saved["po_approvals"][0]["approvers"] == ["ctl-1"]
        assert saved["invoice_approvals"] == []

    async def test_invalid_step_rejected(self, client):
        response = await client.put(
            f"{BASE}/approval-config",
            json={"po_approvals": [{"approver_type": "role", "roles": []}]},
            headers=as_user("admin")
        )
        assert response.status_code == 422

    async def test_policy_update(self, client):
        response = await client.put(
            "/api/settings/policies", json={"key": "strict_budget_enabled", "value": True}, headers=as_user("admin")
        )
        assert response.status_code == 200
        policies = (await client.get("/api/settings/policies")).json()
        assert policies["policies"]["strict_budget_enabled"] is True

    async def test_unknown_policy_key(self, client):
        response = await client.put(
            "/api/settings/policies", json={"key": "nope", "value": 1}, headers=as_user("admin")
        )
        assert response.status_code == 400

    async def test_policy_service_outlives_requests(self, db):
        """The TTL cache lives on one PolicyService per database"""
        first = await get_services(db)
        second = await get_services(db)

        assert first.policy is second.policy
        assert policy_for(db) is first.policy
        assert policy_for(server_db) is policy_service


class TestAuditTrail:
    """Audit entries over HTTP"""

    async def test_rejection_entry_has_step_and_reason(self, client, sub_account, members):
        po = (await client.post(
            f"{BASE}/purchase-orders",
            json={"sub_account_id": sub_account, "amount": 300, "submit": True},
            headers=as_user("crew-1")
        )).json()

        response = await client.post(
            f"{BASE}/purchase-orders/{po['id']}/decision",
            json={"decision": "reject", "reason": "Wrong supplier"}, headers=as_user("pm-1")
        )
        assert response.status_code == 200, response.text

        logs = (await client.get(f"{BASE}/audit-logs", params={"action_type": "REJECT"})).json()
        assert len(logs) == 1
        assert logs[0]["display_number"] == "PO-0001"
        assert logs[0]["step"] == 1
        assert logs[0]["reason"] == "Wrong supplier"

    async def test_sub_account_creation_is_audited(self, client, sub_account):
        logs = (await client.get(f"{BASE}/audit-logs", params={"entity_type": "SUB_ACCOUNT"})).json()
        assert [log["action_type"] for log in logs] == ["CREATE"]
        assert logs[0]["new_value_json"]["budgeted"] == 10000
