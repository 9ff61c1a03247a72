"""
Integration tests for the loan repayment API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from ngnasoro.api import app
from ngnasoro.api.dependencies import MicrofinanceSystem, get_system
from ngnasoro.api.payments import PAYMENT_FAILED
from ngnasoro.config import NgnaSoroConfig
from ngnasoro.storage import InMemoryStorage


@pytest.fixture
def system():
    settings = NgnaSoroConfig(_env_file=None, storage_backend="memory")
    return MicrofinanceSystem(InMemoryStorage(), settings)


@pytest.fixture
def client(system):
    """Test client wired to an in-memory service instead of the global one"""
    app.dependency_overrides[get_system] = lambda: system
    yield TestClient(app)
    app.dependency_overrides.clear()


def create_active_loan(client, client_id="client-1", principal="100000",
                       rate="5", months=12, disbursed="2024-01-15"):
    r = client.post("/loans", json={
        "client_id": client_id,
        "sfd_id": "sfd-bamako",
        "principal": principal,
        "annual_interest_rate": rate,
        "duration_months": months,
        "purpose": "Commerce de tissus"
    })
    assert r.status_code == 201
    loan_id = r.json()["id"]
    assert client.post(f"/loans/{loan_id}/approve", json={"approved_by": "agent-7"}).status_code == 200
    r = client.post(f"/loans/{loan_id}/disburse", json={"disbursement_date": disbursed})
    assert r.status_code == 200
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["service"] == "ngnasoro_loan_repayment"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "reminders" in r.json()["endpoints"]

    def test_correlation_header(self, client):
        r = client.get("/health", headers={"X-Correlation-ID": "req-42"})
        assert r.headers["X-Correlation-ID"] == "req-42"
        assert client.get("/health").headers["X-Correlation-ID"]


class TestLoanFlow:
    """End-to-end loan lifecycle"""

    def test_create_loan(self, client):
        r = client.post("/loans", json={
            "client_id": "client-1",
            "sfd_id": "sfd-bamako",
            "principal": "100000",
            "annual_interest_rate": "5",
            "duration_months": 12
        })
        assert r.status_code == 201
        data = r.json()
        assert data["status"] == "pending"
        assert data["monthly_payment"] == {"amount": "8750", "currency": "XOF"}
        assert data["total_repayable"]["amount"] == "105000"

    def test_invalid_terms(self, client):
        r = client.post("/loans", json={
            "client_id": "client-1",
            "sfd_id": "sfd-bamako",
            "principal": "100000",
            "annual_interest_rate": "5",
            "duration_months": 0
        })
        assert r.status_code == 400

    def test_disburse_generates_schedule(self, client):
        loan = create_active_loan(client)
        assert loan["status"] == "active"
        assert loan["next_payment_date"] == "2024-02-15"

        r = client.get(f"/loans/{loan['id']}/schedule")
        assert r.status_code == 200
        schedule = r.json()
        assert len(schedule) == 12
        assert schedule[0]["id"] == f"{loan['id']}:1"
        assert schedule[0]["total_amount"] == "8750"
        assert schedule[-1]["total_amount"] == "8750"
        assert all(entry["status"] == "pending" for entry in schedule)

    def test_disburse_pending_conflicts(self, client):
        r = client.post("/loans", json={
            "client_id": "client-1", "sfd_id": "sfd-bamako",
            "principal": "50000", "annual_interest_rate": "5", "duration_months": 6
        })
        r = client.post(f"/loans/{r.json()['id']}/disburse", json={})
        assert r.status_code == 409

    def test_list_loans(self, client):
        create_active_loan(client, client_id="client-1")
        create_active_loan(client, client_id="client-2")

        r = client.get("/loans", params={"sfd_id": "sfd-bamako", "status": "active"})
        assert r.status_code == 200
        assert len(r.json()) == 2
        assert len(client.get("/loans", params={"client_id": "client-2"}).json()) == 1

    def test_list_requires_filter(self, client):
        assert client.get("/loans").status_code == 400

    def test_unknown_loan(self, client):
        assert client.get("/loans/missing").status_code == 404
        assert client.get("/loans/missing/schedule").status_code == 404
        assert client.post("/loans/missing/approve", json={}).status_code == 404


class TestPaymentFlow:
    """Recording repayments"""

    def test_record_payment(self, client):
        loan = create_active_loan(client)

        r = client.post("/payments", json={
            "installment_id": f"{loan['id']}:1",
            "paid_amount": "8750"
        })
        assert r.status_code == 200
        assert r.json()["status"] == "paid"

        updated = client.get(f"/loans/{loan['id']}").json()
        assert updated["next_payment_date"] == "2024-03-15"
        assert updated["remaining_amount"]["amount"] == "96250"

    def test_double_payment_gets_generic_error(self, client):
        loan = create_active_loan(client)
        payment = {"installment_id": f"{loan['id']}:1", "paid_amount": "8750"}

        client.post("/payments", json=payment)
        r = client.post("/payments", json=payment)

        assert r.status_code == 409
        assert r.json()["detail"] == PAYMENT_FAILED

    def test_unknown_installment(self, client):
        r = client.post("/payments", json={"installment_id": "missing:1", "paid_amount": "100"})
        assert r.status_code == 404
        assert r.json()["detail"] == PAYMENT_FAILED

    def test_non_positive_amount(self, client):
        loan = create_active_loan(client)
        r = client.post("/payments", json={
            "installment_id": f"{loan['id']}:1",
            "paid_amount": "0"
        })
        assert r.status_code == 400

    def test_short_payment_rejected(self, client):
        loan = create_active_loan(client)
        r = client.post("/payments", json={
            "installment_id": f"{loan['id']}:1",
            "paid_amount": "1"
        })
        assert r.status_code == 400
        assert r.json()["detail"] == PAYMENT_FAILED
        assert client.get(f"/loans/{loan['id']}").json()["remaining_amount"]["amount"] == "105000"

    def test_defaulted_loan_rejected(self, client):
        loan = create_active_loan(client)
        assert client.post(f"/loans/{loan['id']}/default", json={}).status_code == 200

        r = client.post("/payments", json={
            "installment_id": f"{loan['id']}:1",
            "paid_amount": "8750"
        })
        assert r.status_code == 400
        assert r.json()["detail"] == PAYMENT_FAILED

    def test_full_repayment_completes_loan(self, client):
        loan = create_active_loan(client, principal="30000", rate="0", months=3)

        for n in range(1, 4):
            r = client.post("/payments", json={
                "installment_id": f"{loan['id']}:{n}",
                "paid_amount": "10000"
            })
            assert r.status_code == 200

        assert client.get(f"/loans/{loan['id']}").json()["status"] == "completed"


class TestReminderFlow:
    """Reminder sweep and resulting notifications"""

    def test_run_reminders(self, client):
        create_active_loan(client)

        r = client.post("/reminders/run", json={"today": "2024-02-08"})
        assert r.status_code == 200
        assert r.json() == {"success": True, "notificationsCreated": 1}

    def test_rerun_same_day(self, client):
        create_active_loan(client)

        client.post("/reminders/run", json={"today": "2024-02-14"})
        r = client.post("/reminders/run", params={"detailed": "true"}, json={"today": "2024-02-14"})

        data = r.json()
        assert data["notificationsCreated"] == 0
        assert data["skipped"] == 1
        assert data["runDate"] == "2024-02-14"

    def test_reminder_notification_visible(self, client):
        create_active_loan(client)
        client.post("/reminders/run", json={"today": "2024-02-14"})

        r = client.get("/notifications/client-1")
        assert r.status_code == 200
        reminders = [n for n in r.json() if n["type"] == "loan_payment_reminder"]
        assert len(reminders) == 1
        assert reminders[0]["urgency"] == "urgent"
        assert reminders[0]["title"] == "Paiement dû demain"
        assert "8 750 FCFA" in reminders[0]["message"]

    def test_mark_read(self, client):
        create_active_loan(client)
        client.post("/reminders/run", json={"today": "2024-02-08"})
        unread = client.get("/notifications/client-1/unread-count").json()["unread"]
        notification_id = client.get("/notifications/client-1").json()[0]["id"]

        assert client.post(f"/notifications/{notification_id}/read").status_code == 200
        assert client.get("/notifications/client-1/unread-count").json()["unread"] == unread - 1
        assert client.post("/notifications/missing/read").status_code == 404

    def test_scheduler_status(self, client):
        data = client.get("/reminders/scheduler").json()
        assert data["running"] is False
        assert data["cron"] == "0 8 * * *"
        assert data["next_run"] is not None


class TestAuditEndpoints:
    """Audit trail queries"""

    def test_loan_events(self, client):
        loan = create_active_loan(client)

        r = client.get("/audit", params={"target_resource": loan["id"]})
        actions = [e["action"] for e in r.json()["events"]]
        assert actions[0] == "loan_created"
        assert "loan_disbursed" in actions

    def test_filter_by_action(self, client):
        create_active_loan(client)
        r = client.get("/audit", params={"action": "loan_created"})
        assert r.json()["count"] == 1

    def test_invalid_filter(self, client):
        assert client.get("/audit", params={"action": "nope"}).status_code == 400

    def test_verify(self, client):
        create_active_loan(client)
        data = client.get("/audit/verify").json()
        assert data["valid"] is True
        assert data["total_events"] > 0


class TestCalculator:
    """Repayment preview"""

    def test_preview(self, client):
        r = client.post("/calculator/preview", json={
            "principal": "100000",
            "annual_interest_rate": "5",
            "duration_months": 12,
            "disbursement_date": "2024-01-15"
        })
        assert r.status_code == 200
        data = r.json()
        assert data["monthly_payment"]["amount"] == "8750"
        assert data["total_interest"]["amount"] == "5000"
        assert len(data["schedule"]) == 12
        assert data["schedule"][0]["due_date"] == "2024-02-15"

    def test_preview_invalid(self, client):
        r = client.post("/calculator/preview", json={
            "principal": "-5",
            "annual_interest_rate": "5",
            "duration_months": 12
        })
        assert r.status_code == 400
