import ipaddress
from datetime import date, timedelta
from decimal import Decimal
from io import BytesIO
from types import SimpleNamespace

import pytest
from openpyxl import load_workbook

import app as app_module
from app import (
    BILLING_HOLD_REASON,
    EXPORT_DEFINITIONS,
    ActivityLog,
    CreditApplication,
    Customer,
    CustomerService,
    FinancialAdjustment,
    IPAddress,
    InventoryItem,
    InventorySerialNumber,
    Invoice,
    MpesaTransaction,
    NetworkError,
    Payment,
    PaymentReminder,
    add_months,
    calculate_nssf,
    calculate_paye,
    calculate_payroll,
    calculate_sha,
    compute_tax,
    create_app,
    db,
    normalize_mpesa_phone,
    parse_cidr,
    prorata_factor,
    should_generate_ip_pool,
)


TEST_ADMIN_USERNAME = "sys-admin"
TEST_ADMIN_PASSWORD = "SecurePass123!"
TEST_CRON_SECRET = "cron-secret"


class StripeStub:
    class PaymentIntent:
        created: list[dict] = []

        @classmethod
        def create(cls, **kwargs):
            cls.created.append(kwargs)
            intent_id = f"pi_{len(cls.created)}"
            return SimpleNamespace(
                id=intent_id,
                client_secret=f"{intent_id}_secret",
                amount=kwargs.get("amount"),
                metadata=kwargs.get("metadata", {}),
            )

    class Event:
        next_event = None

        @classmethod
        def construct_from(cls, payload, api_key):
            return cls.next_event

    class Webhook:
        @staticmethod
        def construct_event(payload, sig_header, secret):
            raise NotImplementedError

    api_key = None

    @staticmethod
    def reset():
        StripeStub.PaymentIntent.created = []
        StripeStub.Event.next_event = None


def install_stripe_stub(flask_app, monkeypatch, stub=None):
    stub = stub or StripeStub()
    stub.reset()
    monkeypatch.setattr(app_module, "stripe", stub, raising=False)
    monkeypatch.setattr(app_module, "StripeError", Exception, raising=False)
    monkeypatch.setattr(app_module, "SignatureVerificationError", Exception, raising=False)
    flask_app.config["STRIPE_SECRET_KEY"] = "sk_test"
    return stub


class FakeMpesaClient:
    def __init__(self, error: str | None = None):
        self.error = error
        self.requests: list[dict] = []

    def stk_push(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise app_module.MpesaApiError(self.error)
        index = len(self.requests)
        return {
            "MerchantRequestID": f"29115-{index}",
            "CheckoutRequestID": f"ws_CO_{index}",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
        }


def install_mpesa_client(monkeypatch, client=None):
    client = client or FakeMpesaClient()
    monkeypatch.setattr(app_module, "build_mpesa_client", lambda flask_app: client)
    return client


@pytest.fixture
def app(tmp_path):
    test_db_path = tmp_path / "test.db"
    sent_email: list[tuple[str, str, str]] = []
    sent_sms: list[tuple[str, str]] = []

    def capture_email(recipient, subject, body):
        sent_email.append((recipient, subject, body))
        return True

    def capture_sms(phone, message):
        sent_sms.append((phone, message))
        return True

    app = create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret",
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
            "ADMIN_USERNAME": TEST_ADMIN_USERNAME,
            "ADMIN_PASSWORD": TEST_ADMIN_PASSWORD,
            "ADMIN_EMAIL": "ops@example.com",
            "CRON_SECRET": TEST_CRON_SECRET,
            "STRIPE_SECRET_KEY": None,
            "MPESA_CONSUMER_KEY": "consumer-key",
            "MPESA_CONSUMER_SECRET": "consumer-secret",
            "MPESA_SHORTCODE": "174379",
            "MPESA_PASSKEY": "passkey",
            "MPESA_CALLBACK_URL": "https://isp.example.com/api/mpesa/callback",
            "DASHBOARD_OVERVIEW_CACHE_SECONDS": 0,
            "NOTIFICATION_EMAIL_SENDER": capture_email,
            "NOTIFICATION_SMS_SENDER": capture_sms,
        }
    )
    app.config["TEST_EMAIL_OUTBOX"] = sent_email
    app.config["TEST_SMS_OUTBOX"] = sent_sms

    yield app

    with app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


def login_admin(client, follow_redirects: bool = True):
    return client.post(
        "/login",
        data={"username": TEST_ADMIN_USERNAME, "password": TEST_ADMIN_PASSWORD},
        follow_redirects=follow_redirects,
    )


def create_customer(client, **overrides) -> dict:
    payload = {
        "first_name": "Amina",
        "last_name": "Otieno",
        "email": "amina@example.com",
        "phone": "0712345678",
        "city": "Nairobi",
    }
    payload.update(overrides)
    response = client.post("/api/customers", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["customer"]


def plan_id_for(client, name: str) -> int:
    plans = client.get("/api/service-plans").get_json()["plans"]
    return next(plan["id"] for plan in plans if plan["name"] == name)


def add_service(client, customer_id: int, plan_name: str = "Home Basic 10", **extra) -> dict:
    payload = {"service_plan_id": plan_id_for(client, plan_name), "activate": True}
    payload.update(extra)
    response = client.post(f"/api/customers/{customer_id}/services", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["service"]


def create_invoice(client, customer_id: int, amount: str = "1000", **extra) -> dict:
    payload = {"amount": amount, "description": "Installation"}
    payload.update(extra)
    response = client.post(f"/api/customers/{customer_id}/invoices", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["invoice"]


def create_inventory_item(client, **overrides) -> dict:
    payload = {
        "name": "Dual-band Router",
        "category": "Network Equipment",
        "sku": "RTR-001",
        "stock_quantity": 5,
        "unit_cost": "3500",
        "reorder_level": 2,
    }
    payload.update(overrides)
    response = client.post("/api/inventory", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["item"]


def create_employee(client, **overrides) -> dict:
    payload = {
        "first_name": "Brian",
        "last_name": "Mwangi",
        "email": "brian@example.com",
        "phone": "0722000111",
        "position": "Field Technician",
        "basic_salary": "45000",
        "allowances": "5000",
    }
    payload.update(overrides)
    response = client.post("/api/employees", json=payload)
    assert response.status_code == 201, response.get_json()
    return response.get_json()["employee"]


def stk_callback_body(checkout_id: str, amount: int, receipt: str = "QWE123RTY", result_code: int = 0):
    callback = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully."
        if result_code == 0
        else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20241019101500},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


# -- Pure calculations -------------------------------------------------------


def test_payroll_statutory_deductions_for_fifty_thousand_gross():
    figures = calculate_payroll(4_500_000, 500_000)

    assert figures["gross_pay_cents"] == 5_000_000
    assert figures["paye_cents"] == 738_300
    assert figures["nssf_cents"] == 216_000
    assert figures["sha_cents"] == 120_000
    assert figures["net_pay_cents"] == 3_925_700


def test_paye_relief_and_sha_bands():
    assert calculate_paye(Decimal("20000")) == Decimal("0")
    assert calculate_paye(Decimal("30000")) == Decimal("1500")
    assert calculate_nssf(Decimal("10000")) == Decimal("600")
    assert calculate_sha(Decimal("5000")) == Decimal("150")
    assert calculate_sha(Decimal("200000")) == Decimal("5500")


def test_compute_tax_handles_exclusive_inclusive_and_exempt():
    assert compute_tax(10000, Decimal("16")) == (10000, 1600, 11600)
    assert compute_tax(11600, Decimal("16"), inclusive=True) == (10000, 1600, 11600)
    assert compute_tax(10000, Decimal("16"), exempt=True) == (10000, 0, 10000)


def test_prorata_factor_is_capped_and_month_arithmetic_clamps():
    assert prorata_factor(date(2024, 1, 16), date(2024, 1, 30), "monthly") == Decimal("0.5")
    assert prorata_factor(date(2024, 1, 1), date(2024, 1, 31), "monthly") == Decimal(1)
    assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)


def test_parse_cidr_normalises_and_rejects_bad_input():
    assert parse_cidr("192.168.1.10/24") == ipaddress.ip_network("192.168.1.0/24")

    for bad in ("192.168.1.0", "300.1.1.1/24", "10.0.0.0/33", "10.0.0.0/abc"):
        with pytest.raises(NetworkError):
            parse_cidr(bad)


def test_ip_pool_generation_limits():
    assert should_generate_ip_pool(ipaddress.ip_network("10.0.0.0/24"), 1000)
    assert not should_generate_ip_pool(ipaddress.ip_network("10.0.0.0/16"), 1000)
    assert not should_generate_ip_pool(ipaddress.ip_network("10.0.0.0/31"), 1000)
    assert not should_generate_ip_pool(ipaddress.ip_network("2001:db8::/120"), 1000)


def test_normalize_mpesa_phone():
    assert normalize_mpesa_phone("0712345678") == "254712345678"
    assert normalize_mpesa_phone("+254 712 345 678") == "254712345678"
    assert normalize_mpesa_phone("712345678") == "254712345678"
    assert normalize_mpesa_phone("0110123456") == "254110123456"
    assert normalize_mpesa_phone("12345") is None


# -- Authentication and dashboard -------------------------------------------


def test_api_requires_admin_login(client):
    response = client.get("/api/customers")

    assert response.status_code == 401
    assert response.get_json()["error"] == "Administrator login required."


def test_dashboard_redirects_anonymous_users(client):
    response = client.get("/dashboard")

    assert response.status_code == 302
    assert "/login" in response.headers["Location"]


def test_login_renders_dashboard(client):
    response = login_admin(client)

    assert response.status_code == 200
    assert b"Operations dashboard" in response.data


def test_invalid_login_is_rejected(client):
    response = client.post(
        "/login", data={"username": TEST_ADMIN_USERNAME, "password": "wrong"}
    )

    assert response.status_code == 200
    assert b"Invalid credentials" in response.data


def test_dashboard_metrics_reflect_records(client):
    login_admin(client)
    customer = create_customer(client)
    add_service(client, customer["id"])
    create_invoice(client, customer["id"], due_date=(date.today() - timedelta(days=3)).isoformat())
    client.post("/api/cron/billing/overdue")

    metrics = client.get("/api/dashboard/metrics").get_json()

    assert metrics["customers"]["total"] == 1
    assert metrics["customers"]["active"] == 1
    assert metrics["billing"]["overdue_invoices"] == 1
    assert metrics["billing"]["outstanding_cents"] == 116000
    assert metrics["recent_activity"]


# -- Customers and plans -----------------------------------------------------


def test_create_customer_assigns_account_and_billing_defaults(client):
    login_admin(client)

    customer = create_customer(client)

    assert customer["account_number"].startswith("ACC")
    assert customer["status"] == "Pending"
    assert customer["billing_config"]["billing_cycle"] == "monthly"
    assert customer["billing_config"]["payment_terms_days"] == 14

    duplicate = client.post(
        "/api/customers", json={"first_name": "Other", "email": "AMINA@example.com"}
    )
    assert duplicate.status_code == 409


def test_customer_search_and_update(client):
    login_admin(client)
    customer = create_customer(client)
    create_customer(client, first_name="Peter", email="peter@example.com", phone="0799000000")

    results = client.get("/api/customers?search=amina").get_json()["customers"]
    assert [c["id"] for c in results] == [customer["id"]]

    response = client.patch(f"/api/customers/{customer['id']}", json={"city": "Mombasa"})
    assert response.status_code == 200
    assert response.get_json()["customer"]["city"] == "Mombasa"

    bad = client.patch(f"/api/customers/{customer['id']}", json={"status": "Gone"})
    assert bad.status_code == 400


def test_customer_with_invoices_cannot_be_deleted(client):
    login_admin(client)
    customer = create_customer(client)
    create_invoice(client, customer["id"])

    response = client.delete(f"/api/customers/{customer['id']}")

    assert response.status_code == 409


def test_service_plan_rules(client):
    login_admin(client)

    created = client.post("/api/service-plans", json={"name": "Fibre 50", "price": "5500"})
    assert created.status_code == 201
    assert created.get_json()["plan"]["price_cents"] == 550000

    duplicate = client.post("/api/service-plans", json={"name": "Fibre 50", "price": "1"})
    assert duplicate.status_code == 409

    customer = create_customer(client)
    add_service(client, customer["id"], plan_name="Fibre 50")
    blocked = client.delete(f"/api/service-plans/{created.get_json()['plan']['id']}")
    assert blocked.status_code == 409


def test_activating_service_activates_customer(client):
    login_admin(client)
    customer = create_customer(client)

    service = add_service(client, customer["id"])

    assert service["status"] == "Active"
    assert client.get(f"/api/customers/{customer['id']}").get_json()["customer"]["status"] == "Active"


def test_suspend_and_unsuspend_customer(client):
    login_admin(client)
    customer = create_customer(client)
    add_service(client, customer["id"])

    response = client.post(
        f"/api/customers/{customer['id']}/suspend", json={"reason": "Fraud review"}
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["customer"]["status"] == "Suspended"
    assert body["affected_services"] == 1

    again = client.post(f"/api/customers/{customer['id']}/suspend", json={})
    assert again.status_code == 400

    restored = client.post(f"/api/customers/{customer['id']}/unsuspend")
    assert restored.status_code == 200
    assert restored.get_json()["restored_services"] == 1
    assert restored.get_json()["customer"]["status"] == "Active"


# -- Billing -----------------------------------------------------------------


def test_generate_prorated_service_invoice(client, app):
    login_admin(client)
    customer = create_customer(client)
    add_service(client, customer["id"])

    response = client.post(
        f"/api/customers/{customer['id']}/invoices/generate",
        json={"period_start": "2024-01-16", "period_end": "2024-01-30", "prorate": True},
    )

    assert response.status_code == 201
    invoice = response.get_json()["invoice"]
    assert invoice["invoice_number"] == f"INV-{date.today().year}-000001"
    assert invoice["is_prorated"] is True
    assert invoice["subtotal_cents"] == 125000
    assert invoice["tax_cents"] == 20000
    assert invoice["total_cents"] == 145000
    assert invoice["items"][0]["description"].endswith("prorated")

    outbox = app.config["TEST_EMAIL_OUTBOX"]
    assert outbox[-1][0] == "amina@example.com"
    assert invoice["invoice_number"] in outbox[-1][1]


def test_generate_invoice_requires_active_service(client):
    login_admin(client)
    customer = create_customer(client)

    response = client.post(f"/api/customers/{customer['id']}/invoices/generate", json={})

    assert response.status_code == 400
    assert "No active services" in response.get_json()["error"]


def test_tax_exempt_billing_config(client):
    login_admin(client)
    customer = create_customer(client)

    config = client.post(
        f"/api/customers/{customer['id']}/billing-config",
        json={"tax_exempt": True, "billing_day": 15},
    )
    assert config.status_code == 200
    assert config.get_json()["billing_config"]["billing_day"] == 15

    invalid = client.post(
        f"/api/customers/{customer['id']}/billing-config", json={"billing_day": 31}
    )
    assert invalid.status_code == 400

    invoice = create_invoice(client, customer["id"], amount="1000")
    assert invoice["tax_cents"] == 0
    assert invoice["total_cents"] == 100000


def test_payment_applies_oldest_invoice_first_and_credits_overpayment(client, app):
    login_admin(client)
    customer = create_customer(client)
    first = create_invoice(client, customer["id"], amount="1000")
    second = create_invoice(client, customer["id"], amount="500")

    response = client.post(
        f"/api/customers/{customer['id']}/payments",
        json={"amount": "2000", "method": "cash"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert [entry["invoice_id"] for entry in body["applications"]] == [first["id"], second["id"]]
    assert [entry["amount_cents"] for entry in body["applications"]] == [116000, 58000]
    assert body["overpayment_cents"] == 26000
    assert body["credit_reference"] == f"CN-{date.today().year}-000001"
    assert body["balance"]["outstanding_cents"] == 0
    assert body["balance"]["balance_cents"] == 26000

    with app.app_context():
        assert {invoice.status for invoice in Invoice.query.all()} == {"Paid"}

    assert app.config["TEST_SMS_OUTBOX"][-1][0] == "254712345678"


def test_partial_payment_and_payment_validation(client):
    login_admin(client)
    customer = create_customer(client)
    invoice = create_invoice(client, customer["id"], amount="1000")

    partial = client.post(
        f"/api/customers/{customer['id']}/payments",
        json={"amount": "500", "method": "bank_transfer", "invoice_ids": [invoice["id"]]},
    )
    assert partial.status_code == 201
    assert partial.get_json()["applications"][0]["status"] == "Partial"

    unknown = client.post(
        f"/api/customers/{customer['id']}/payments", json={"amount": "10", "method": "cheque"}
    )
    assert unknown.status_code == 400

    zero = client.post(
        f"/api/customers/{customer['id']}/payments", json={"amount": "0", "method": "cash"}
    )
    assert zero.status_code == 400

    cancel = client.post(f"/api/invoices/{invoice['id']}/cancel")
    assert cancel.status_code == 400


def test_adjustments_use_credit_and_debit_note_numbers(client):
    login_admin(client)
    customer = create_customer(client)
    year = date.today().year

    credit = client.post(
        f"/api/customers/{customer['id']}/adjustments",
        json={"adjustment_type": "credit", "amount": "200", "reason": "Outage goodwill"},
    )
    debit = client.post(
        f"/api/customers/{customer['id']}/adjustments",
        json={"adjustment_type": "debit", "amount": "50", "reason": "Late fee"},
    )

    assert credit.status_code == 201
    assert credit.get_json()["adjustment"]["reference_number"] == f"CN-{year}-000001"
    assert debit.get_json()["adjustment"]["reference_number"] == f"DN-{year}-000001"
    assert debit.get_json()["balance"]["balance_cents"] == 15000


def test_customer_statement_running_balance(client):
    login_admin(client)
    customer = create_customer(client)
    create_invoice(client, customer["id"], amount="1000")
    client.post(
        f"/api/customers/{customer['id']}/payments", json={"amount": "500", "method": "cash"}
    )

    statement = client.get(f"/api/customers/{customer['id']}/statement").get_json()["statement"]

    assert [entry["type"] for entry in statement["entries"]] == ["invoice", "payment"]
    assert statement["entries"][0]["balance_cents"] == 116000
    assert statement["closing_balance_cents"] == 66000

    pdf = client.get(f"/api/customers/{customer['id']}/statement.pdf")
    assert pdf.status_code == 200
    assert pdf.data.startswith(b"%PDF")


def test_invoice_and_receipt_pdfs(client):
    login_admin(client)
    customer = create_customer(client)
    invoice = create_invoice(client, customer["id"])
    payment = client.post(
        f"/api/customers/{customer['id']}/payments", json={"amount": "1160", "method": "cash"}
    ).get_json()["payment"]

    invoice_pdf = client.get(f"/api/invoices/{invoice['id']}/pdf")
    receipt_pdf = client.get(f"/api/payments/{payment['id']}/pdf")

    assert invoice_pdf.mimetype == "application/pdf"
    assert invoice_pdf.data.startswith(b"%PDF")
    assert receipt_pdf.data.startswith(b"%PDF")


def test_cron_endpoints_require_secret_or_admin(client):
    denied = client.post("/api/cron/billing/run")
    assert denied.status_code == 401

    wrong = client.post(
        "/api/cron/billing/run", headers={"Authorization": "Bearer not-the-secret"}
    )
    assert wrong.status_code == 401

    allowed = client.post(
        "/api/cron/billing/run", headers={"Authorization": f"Bearer {TEST_CRON_SECRET}"}
    )
    assert allowed.status_code == 200
    assert allowed.get_json()["generated"] == 0


def test_automated_billing_waits_for_next_cycle(client, app):
    login_admin(client)
    customer = create_customer(client)
    add_service(client, customer["id"])

    first_run = client.post("/api/cron/billing/run").get_json()
    assert first_run["generated"] == 0
    assert first_run["skipped"] == 1

    with app.app_context():
        record = db.session.get(Customer, customer["id"])
        record.billing_config.last_invoice_date = date.today() - timedelta(days=40)
        db.session.commit()

    second_run = client.post("/api/cron/billing/run").get_json()
    assert second_run["generated"] == 1
    assert second_run["details"][0]["total_cents"] == 290000

    third_run = client.post("/api/cron/billing/run").get_json()
    assert third_run["generated"] == 0


def test_overdue_sweep_suspends_and_payment_restores(client, app):
    login_admin(client)
    customer = create_customer(client)
    add_service(client, customer["id"])
    create_invoice(
        client, customer["id"], due_date=(date.today() - timedelta(days=30)).isoformat()
    )

    sweep = client.post(
        "/api/cron/billing/overdue",
        headers={"Authorization": f"Bearer {TEST_CRON_SECRET}"},
    )
    assert sweep.status_code == 200
    assert sweep.get_json() == {
        "marked_overdue": 1,
        "suspended": [customer["account_number"]],
    }

    with app.app_context():
        record = db.session.get(Customer, customer["id"])
        assert record.status == "Suspended"
        assert record.suspension_reason == BILLING_HOLD_REASON
        assert record.services[0].status == "Suspended"

    client.post(
        f"/api/customers/{customer['id']}/payments", json={"amount": "1160", "method": "cash"}
    )

    with app.app_context():
        record = db.session.get(Customer, customer["id"])
        assert record.status == "Active"
        assert record.services[0].status == "Active"


def test_overpayment_credit_settles_later_invoice_before_sweep(client, app):
    login_admin(client)
    customer = create_customer(client)
    add_service(client, customer["id"])

    payment = client.post(
        f"/api/customers/{customer['id']}/payments", json={"amount": "5000", "method": "cash"}
    ).get_json()
    assert payment["overpayment_cents"] == 500000

    invoice = create_invoice(
        client, customer["id"], due_date=(date.today() - timedelta(days=30)).isoformat()
    )
    assert invoice["status"] == "Paid"
    assert invoice["amount_paid_cents"] == 116000

    balance = client.get(f"/api/customers/{customer['id']}").get_json()["customer"]["balance"]
    assert balance["balance_cents"] == 384000
    assert balance["outstanding_cents"] == 0

    sweep = client.post(
        "/api/cron/billing/overdue",
        headers={"Authorization": f"Bearer {TEST_CRON_SECRET}"},
    )
    assert sweep.get_json() == {"marked_overdue": 0, "suspended": []}

    with app.app_context():
        assert db.session.get(Customer, customer["id"]).status == "Active"
        credit = FinancialAdjustment.query.filter_by(customer_id=customer["id"]).one()
        assert credit.applied_cents == 116000
        assert credit.unapplied_cents == 384000
        assert CreditApplication.query.count() == 1


def test_credit_adjustment_applies_to_open_invoices_oldest_first(client, app):
    login_admin(client)
    customer = create_customer(client)
    first = create_invoice(client, customer["id"], amount="1000")
    second = create_invoice(client, customer["id"], amount="500")

    response = client.post(
        f"/api/customers/{customer['id']}/adjustments",
        json={"adjustment_type": "credit", "amount": "1500", "reason": "Outage refund"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert [(a["invoice_id"], a["amount_cents"]) for a in body["credit_applications"]] == [
        (first["id"], 116000),
        (second["id"], 34000),
    ]
    assert body["adjustment"]["unapplied_cents"] == 0
    assert body["balance"]["outstanding_cents"] == 24000
    assert body["balance"]["balance_cents"] == -24000

    with app.app_context():
        assert db.session.get(Invoice, first["id"]).status == "Paid"
        assert db.session.get(Invoice, second["id"]).status == "Partial"


def test_payment_reminders_fire_once_before_and_after_due(client, app):
    login_admin(client)
    customer = create_customer(client)
    add_service(client, customer["id"])
    today = date.today()
    upcoming = create_invoice(
        client, customer["id"], due_date=(today + timedelta(days=3)).isoformat()
    )
    late = create_invoice(
        client, customer["id"], amount="500", due_date=(today - timedelta(days=3)).isoformat()
    )
    create_invoice(client, customer["id"], due_date=(today + timedelta(days=5)).isoformat())
    email_count = len(app.config["TEST_EMAIL_OUTBOX"])
    headers = {"Authorization": f"Bearer {TEST_CRON_SECRET}"}

    denied = client.post("/api/cron/billing/reminders", headers={"Authorization": "Bearer nope"})
    assert denied.status_code == 401

    run = client.post("/api/cron/billing/reminders", headers=headers)
    assert run.status_code == 200
    summary = run.get_json()
    assert summary["processed"] == 3
    assert summary["reminders_sent"] == 2
    assert summary["errors"] == 0
    sent = {detail["invoice_number"]: detail["reminder_type"] for detail in summary["details"]}
    assert sent == {
        upcoming["invoice_number"]: "before_due",
        late["invoice_number"]: "after_due",
    }

    emails = app.config["TEST_EMAIL_OUTBOX"][email_count:]
    assert sorted(subject for _, subject, _ in emails) == [
        "Overdue Payment Notice",
        "Payment Reminder",
    ]
    assert app.config["TEST_SMS_OUTBOX"][-1][0] == "254712345678"

    repeat = client.post("/api/cron/billing/reminders", headers=headers).get_json()
    assert repeat["reminders_sent"] == 0
    with app.app_context():
        assert PaymentReminder.query.count() == 2

    client.post(
        f"/api/customers/{customer['id']}/billing-config", json={"auto_send_reminders": False}
    )
    disabled = client.post("/api/cron/billing/reminders", headers=headers).get_json()
    assert disabled["processed"] == 0


def test_reminder_days_are_validated(client):
    login_admin(client)
    customer = create_customer(client)

    response = client.post(
        f"/api/customers/{customer['id']}/billing-config",
        json={"reminder_days_before": 7, "reminder_days_after": 2},
    )
    assert response.status_code == 200
    config = response.get_json()["billing_config"]
    assert config["reminder_days_before"] == 7
    assert config["reminder_days_after"] == 2
    assert config["auto_send_reminders"] is True

    invalid = client.post(
        f"/api/customers/{customer['id']}/billing-config", json={"reminder_days_after": -1}
    )
    assert invalid.status_code == 400


# -- M-Pesa and card payments ------------------------------------------------


def test_stk_push_and_successful_callback(client, app, monkeypatch):
    fake = install_mpesa_client(monkeypatch)
    login_admin(client)
    customer = create_customer(client)
    invoice = create_invoice(client, customer["id"])

    push = client.post(f"/api/customers/{customer['id']}/mpesa/stk-push", json={})
    assert push.status_code == 201
    push_body = push.get_json()
    assert push_body["status"] == "pending"
    assert push_body["checkout_request_id"] == "ws_CO_1"
    assert fake.requests[0]["amount"] == 1160
    assert fake.requests[0]["phone_number"] == "254712345678"
    assert fake.requests[0]["account_reference"] == customer["account_number"]

    callback = client.post("/api/mpesa/callback", json=stk_callback_body("ws_CO_1", 1160))
    assert callback.status_code == 200
    assert callback.get_json() == {"ResultCode": 0, "ResultDesc": "Success"}

    duplicate = client.post("/api/mpesa/callback", json=stk_callback_body("ws_CO_1", 1160))
    assert duplicate.get_json()["ResultCode"] == 0

    with app.app_context():
        payments = Payment.query.filter_by(customer_id=customer["id"]).all()
        assert len(payments) == 1
        assert payments[0].status == "Completed"
        assert payments[0].mpesa_receipt_number == "QWE123RTY"
        assert db.session.get(Invoice, invoice["id"]).status == "Paid"

    sms = app.config["TEST_SMS_OUTBOX"]
    assert len([entry for entry in sms if "QWE123RTY" in entry[1]]) == 1

    status = client.get("/api/payments/status/ws_CO_1").get_json()
    assert status["status"] == "completed"
    assert status["mpesa_receipt_number"] == "QWE123RTY"


def test_failed_stk_callback_marks_payment_failed(client, app, monkeypatch):
    install_mpesa_client(monkeypatch)
    login_admin(client)
    customer = create_customer(client)

    client.post(f"/api/customers/{customer['id']}/mpesa/stk-push", json={"amount": "300"})
    client.post("/api/mpesa/callback", json=stk_callback_body("ws_CO_1", 300, result_code=1032))

    with app.app_context():
        transaction = MpesaTransaction.query.filter_by(checkout_request_id="ws_CO_1").one()
        assert transaction.status == "failed"
        assert transaction.payment.status == "Failed"


def test_stk_push_validation_and_errors(client, app, monkeypatch):
    login_admin(client)
    customer = create_customer(client)

    install_mpesa_client(monkeypatch)
    fractional = client.post(
        f"/api/customers/{customer['id']}/mpesa/stk-push", json={"amount": "10.50"}
    )
    assert fractional.status_code == 400

    install_mpesa_client(monkeypatch, FakeMpesaClient(error="Invalid Access Token"))
    failed = client.post(
        f"/api/customers/{customer['id']}/mpesa/stk-push", json={"amount": "100"}
    )
    assert failed.status_code == 502
    with app.app_context():
        assert ActivityLog.query.filter_by(level="ERROR", category="mpesa").count() == 1

    app.config["MPESA_CONSUMER_KEY"] = None
    unconfigured = client.post(
        f"/api/customers/{customer['id']}/mpesa/stk-push", json={"amount": "100"}
    )
    assert unconfigured.status_code == 503


def test_c2b_confirmation_matches_account_number(client, app):
    login_admin(client)
    customer = create_customer(client)
    create_invoice(client, customer["id"], amount="500")
    body = {
        "TransactionType": "Pay Bill",
        "TransID": "RKT123ABC",
        "TransTime": "20241019101500",
        "TransAmount": "580.00",
        "BusinessShortCode": "174379",
        "BillRefNumber": customer["account_number"].lower(),
        "MSISDN": "254700000001",
        "FirstName": "Amina",
    }

    response = client.post("/api/mpesa/callback", json=body)
    assert response.get_json()["ResultCode"] == 0

    repeat = client.post("/api/mpesa/callback", json=body)
    assert repeat.get_json()["ResultCode"] == 0

    with app.app_context():
        payments = Payment.query.filter_by(customer_id=customer["id"]).all()
        assert len(payments) == 1
        assert payments[0].mpesa_receipt_number == "RKT123ABC"
        assert Invoice.query.one().status == "Paid"


def test_unmatched_c2b_payment_can_be_assigned(client, app):
    login_admin(client)
    customer = create_customer(client)
    body = {
        "TransactionType": "Pay Bill",
        "TransID": "RKT999XYZ",
        "TransAmount": "1000",
        "BillRefNumber": "UNKNOWN",
        "MSISDN": "254799999999",
    }
    client.post("/api/mpesa/callback", json=body)

    unmatched = client.get("/api/mpesa/transactions?status=unmatched").get_json()["transactions"]
    assert len(unmatched) == 1

    assigned = client.post(
        f"/api/mpesa/transactions/{unmatched[0]['id']}/assign",
        json={"customer_id": customer["id"]},
    )
    assert assigned.status_code == 200
    assert assigned.get_json()["transaction"]["status"] == "completed"
    assert assigned.get_json()["payment"]["amount_cents"] == 100000

    again = client.post(
        f"/api/mpesa/transactions/{unmatched[0]['id']}/assign",
        json={"customer_id": customer["id"]},
    )
    assert again.status_code == 400


def test_mpesa_callback_rejects_bad_payloads(client, app):
    not_json = client.post("/api/mpesa/callback", data="nope", content_type="text/plain")
    assert not_json.status_code == 400
    assert not_json.get_json()["ResultCode"] == 1

    missing_id = client.post(
        "/api/mpesa/callback", json={"TransactionType": "Pay Bill", "TransAmount": "10"}
    )
    assert missing_id.status_code == 500
    assert missing_id.get_json()["ResultCode"] == 1

    with app.app_context():
        assert ActivityLog.query.filter_by(level="ERROR", category="mpesa").count() == 1


def test_stk_callback_with_malformed_metadata_is_rejected(client, app, monkeypatch):
    install_mpesa_client(monkeypatch)
    login_admin(client)
    customer = create_customer(client)
    create_invoice(client, customer["id"])
    checkout_id = client.post(
        f"/api/customers/{customer['id']}/mpesa/stk-push", json={}
    ).get_json()["checkout_request_id"]

    body = stk_callback_body(checkout_id, 1160)
    body["Body"]["stkCallback"]["CallbackMetadata"] = [{"Name": "Amount", "Value": 1160}]
    response = client.post("/api/mpesa/callback", json=body)

    assert response.status_code == 500
    assert response.get_json()["ResultCode"] == 1
    with app.app_context():
        assert Payment.query.filter_by(status="Completed").count() == 0
        transaction = MpesaTransaction.query.filter_by(checkout_request_id=checkout_id).one()
        assert transaction.status == "pending"


def test_card_intent_requires_stripe(client):
    login_admin(client)
    customer = create_customer(client)
    invoice = create_invoice(client, customer["id"])

    response = client.post(f"/api/invoices/{invoice['id']}/card-intent")

    assert response.status_code == 503


def test_stripe_webhook_records_card_payment(client, app, monkeypatch):
    stub = install_stripe_stub(app, monkeypatch)
    login_admin(client)
    customer = create_customer(client)
    invoice = create_invoice(client, customer["id"])

    intent = client.post(f"/api/invoices/{invoice['id']}/card-intent")
    assert intent.status_code == 200
    assert intent.get_json()["client_secret"] == "pi_1_secret"
    assert stub.PaymentIntent.created[0]["amount"] == 116000
    assert stub.PaymentIntent.created[0]["currency"] == "kes"

    stub.Event.next_event = SimpleNamespace(
        type="payment_intent.succeeded",
        data=SimpleNamespace(
            object=SimpleNamespace(
                id="pi_1", amount_received=116000, metadata={"invoice_id": str(invoice["id"])}
            )
        ),
    )
    first = client.post("/stripe/webhook", data=b"{}", content_type="application/json")
    second = client.post("/stripe/webhook", data=b"{}", content_type="application/json")

    assert first.get_json() == {"status": "ok"}
    assert second.get_json() == {"status": "ok"}
    with app.app_context():
        assert Payment.query.filter_by(method="card").count() == 1
        assert db.session.get(Invoice, invoice["id"]).status == "Paid"


def test_stripe_webhook_disabled_without_keys(client):
    response = client.post("/stripe/webhook", data=b"{}", content_type="application/json")

    assert response.get_json() == {"status": "disabled"}


# -- Inventory and procurement ----------------------------------------------


def test_inventory_stock_adjustments(client):
    login_admin(client)
    item = create_inventory_item(client)

    duplicate = client.post(
        "/api/inventory", json={"name": "Other", "category": "Cables", "sku": "RTR-001"}
    )
    assert duplicate.status_code == 409

    too_many = client.post(
        f"/api/inventory/{item['id']}/adjust", json={"quantity": -10, "reason": "Audit"}
    )
    assert too_many.status_code == 400

    adjusted = client.post(
        f"/api/inventory/{item['id']}/adjust", json={"quantity": -4, "reason": "Damaged in store"}
    )
    assert adjusted.status_code == 200
    assert adjusted.get_json()["item"]["stock_quantity"] == 1
    assert adjusted.get_json()["item"]["is_low_stock"] is True

    alerts = client.get("/api/inventory/alerts").get_json()
    assert alerts["count"] == 1

    movements = client.get(f"/api/inventory/movements?item_id={item['id']}").get_json()
    assert sorted(m["quantity"] for m in movements["movements"]) == [-4, 5]


def test_automatic_equipment_allocation_and_return(client, app):
    login_admin(client)
    router = create_inventory_item(client)
    create_inventory_item(
        client,
        name="Ethernet Cable 5m",
        category="Cables",
        sku="CBL-005",
        stock_quantity=20,
        unit_cost="500",
    )
    customer = create_customer(client)
    add_service(client, customer["id"])

    recommendations = client.get(f"/api/inventory/allocate?customer_id={customer['id']}")
    assert recommendations.status_code == 200
    assert recommendations.get_json()["recommendations"][0]["type"] == "router"

    response = client.post("/api/inventory/allocate", json={"customer_id": customer["id"]})
    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["total_allocated"] == 2
    assert body["total_value_cents"] == 350000 + 50000

    with app.app_context():
        assert db.session.get(InventoryItem, router["id"]).stock_quantity == 4

    equipment = client.get(f"/api/customers/{customer['id']}/equipment").get_json()["equipment"]
    router_equipment = next(e for e in equipment if e["inventory_item_id"] == router["id"])
    returned = client.post(
        f"/api/customers/{customer['id']}/equipment/{router_equipment['id']}/return",
        json={"condition": "good"},
    )
    assert returned.status_code == 200
    assert returned.get_json()["equipment"]["status"] == "returned"

    with app.app_context():
        assert db.session.get(InventoryItem, router["id"]).stock_quantity == 5

    repeat = client.post(
        f"/api/customers/{customer['id']}/equipment/{router_equipment['id']}/return",
        json={"condition": "good"},
    )
    assert repeat.status_code == 400


def test_allocation_reports_missing_stock(client):
    login_admin(client)
    customer = create_customer(client)

    response = client.post(
        "/api/inventory/allocate",
        json={
            "customer_id": customer["id"],
            "equipment_requirements": [
                {"category": "Network Equipment", "type": "switch", "quantity": 1}
            ],
        },
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is False
    assert body["allocation_errors"] == ["No available switch in Network Equipment"]


def test_purchase_order_lifecycle_creates_supplier_invoice(client, app):
    login_admin(client)
    item = create_inventory_item(client)
    supplier = client.post(
        "/api/suppliers", json={"company_name": "Wananchi Distributors", "payment_terms_days": 30}
    ).get_json()["supplier"]
    assert supplier["supplier_code"] == "SUP-0001"

    created = client.post(
        "/api/purchase-orders",
        json={
            "supplier_id": supplier["id"],
            "items": [{"inventory_item_id": item["id"], "quantity": 10, "unit_cost": "3000"}],
        },
    )
    assert created.status_code == 201
    order = created.get_json()["purchase_order"]
    assert order["order_number"] == f"PO-{date.today().year}-000001"
    assert order["total_amount_cents"] == 3000000
    po_item_id = order["items"][0]["id"]

    receive_payload = {
        "items": [{"purchase_order_item_id": po_item_id, "quantity_received": 10}],
        "serial_numbers": {str(po_item_id): ["SN-1001", "SN-1002"]},
    }
    early = client.post(f"/api/purchase-orders/{order['id']}/receive", json=receive_payload)
    assert early.status_code == 400

    approved = client.post(f"/api/purchase-orders/{order['id']}/approve")
    assert approved.get_json()["purchase_order"]["status"] == "Approved"

    received = client.post(f"/api/purchase-orders/{order['id']}/receive", json=receive_payload)
    assert received.status_code == 200
    result = received.get_json()
    assert result["status"] == "Received"
    assert result["supplier_invoice"]["subtotal_cents"] == 3000000
    assert result["supplier_invoice"]["tax_cents"] == 480000
    assert result["supplier_invoice"]["total_cents"] == 3480000
    assert result["duplicate_serial_numbers"] == []

    with app.app_context():
        assert db.session.get(InventoryItem, item["id"]).stock_quantity == 15

    again = client.post(f"/api/purchase-orders/{order['id']}/receive", json=receive_payload)
    assert again.status_code == 400

    invoice_id = result["supplier_invoice"]["id"]
    partial = client.post(f"/api/supplier-invoices/{invoice_id}/payments", json={"amount": "10000"})
    assert partial.get_json()["invoice"]["status"] == "Partial"
    overpay = client.post(f"/api/supplier-invoices/{invoice_id}/payments", json={"amount": "40000"})
    assert overpay.status_code == 400

    pdf = client.get(f"/api/supplier-invoices/{invoice_id}/pdf")
    assert pdf.data.startswith(b"%PDF")

    blocked = client.delete(f"/api/suppliers/{supplier['id']}")
    assert blocked.status_code == 409


def test_receiving_more_than_ordered_is_rejected(client, app):
    login_admin(client)
    item = create_inventory_item(client)
    supplier = client.post("/api/suppliers", json={"company_name": "Cable Co"}).get_json()[
        "supplier"
    ]
    order = client.post(
        "/api/purchase-orders",
        json={
            "supplier_id": supplier["id"],
            "items": [{"inventory_item_id": item["id"], "quantity": 2, "unit_cost": "100"}],
        },
    ).get_json()["purchase_order"]
    client.post(f"/api/purchase-orders/{order['id']}/approve")

    response = client.post(
        f"/api/purchase-orders/{order['id']}/receive",
        json={"items": [{"purchase_order_item_id": order["items"][0]["id"], "quantity_received": 3}]},
    )

    assert response.status_code == 400
    with app.app_context():
        assert db.session.get(InventoryItem, item["id"]).stock_quantity == 5
    assert (
        client.get(f"/api/purchase-orders/{order['id']}").get_json()["purchase_order"]["status"]
        == "Approved"
    )


def test_receiving_known_serial_numbers_reports_duplicates(client, app):
    login_admin(client)
    item = create_inventory_item(client)
    supplier = client.post("/api/suppliers", json={"company_name": "Fibre Mart"}).get_json()[
        "supplier"
    ]

    def receive_with_serials(serials):
        order = client.post(
            "/api/purchase-orders",
            json={
                "supplier_id": supplier["id"],
                "items": [{"inventory_item_id": item["id"], "quantity": 2, "unit_cost": "3000"}],
            },
        ).get_json()["purchase_order"]
        client.post(f"/api/purchase-orders/{order['id']}/approve")
        po_item_id = order["items"][0]["id"]
        return client.post(
            f"/api/purchase-orders/{order['id']}/receive",
            json={
                "items": [{"purchase_order_item_id": po_item_id, "quantity_received": 2}],
                "serial_numbers": {str(po_item_id): serials},
            },
        )

    first = receive_with_serials(["SN-2001", "SN-2002"])
    assert first.get_json()["duplicate_serial_numbers"] == []

    second = receive_with_serials(["SN-2002", "SN-2003"])
    assert second.status_code == 200
    assert second.get_json()["duplicate_serial_numbers"] == ["SN-2002"]

    with app.app_context():
        assert InventorySerialNumber.query.filter_by(serial_number="SN-2002").count() == 1
        assert InventorySerialNumber.query.count() == 3
        assert db.session.get(InventoryItem, item["id"]).stock_quantity == 9


# -- HR and payroll ----------------------------------------------------------


def test_employee_numbers_and_duplicates(client):
    login_admin(client)

    first = create_employee(client)
    second = create_employee(client, first_name="Grace", email="grace@example.com")

    assert first["employee_number"] == "EMP-0001"
    assert second["employee_number"] == "EMP-0002"
    assert first["basic_salary_cents"] == 4500000

    duplicate = client.post(
        "/api/employees", json={"first_name": "Copy", "email": "BRIAN@example.com"}
    )
    assert duplicate.status_code == 409


def test_payroll_generate_approve_pay_and_lock(client):
    login_admin(client)
    employee = create_employee(client)

    generated = client.post("/api/payroll/generate", json={"period": "2024-05"})
    assert generated.status_code == 200
    body = generated.get_json()
    assert body["summary"]["total_employees"] == 1
    assert body["calculations"][0]["net_pay_cents"] == 3925700

    assert client.post("/api/payroll/approve", json={"period": "2024-05"}).get_json()["updated"] == 1
    assert client.post("/api/payroll/pay", json={"period": "2024-05"}).get_json()["updated"] == 1

    locked = client.post("/api/payroll/generate", json={"period": "2024-05"}).get_json()
    assert locked["calculations"] == []
    assert locked["locked"] == [{"employee_id": employee["id"], "status": "paid"}]

    records = client.get("/api/payroll?period=2024-05").get_json()["records"]
    assert records[0]["status"] == "paid"

    export = client.get("/api/payroll/export?period=2024-05")
    assert export.mimetype == "text/csv"
    assert "EMP-0001" in export.get_data(as_text=True)

    blocked = client.delete(f"/api/employees/{employee['id']}")
    assert blocked.status_code == 409


def test_payroll_rejects_bad_period(client):
    login_admin(client)
    create_employee(client)

    response = client.post("/api/payroll/generate", json={"period": "May 2024"})

    assert response.status_code == 400
    assert "YYYY-MM" in response.get_json()["error"]


# -- Network -----------------------------------------------------------------


def test_subnet_creation_generates_pool_with_reserved_gateway(client):
    login_admin(client)

    response = client.post(
        "/api/subnets",
        json={"name": "Core", "network": "10.10.0.0/29", "gateway": "10.10.0.1"},
    )

    assert response.status_code == 201
    body = response.get_json()
    assert body["ips_generated"] == 6
    assert body["pool_error"] is None
    assert body["subnet"]["reserved_ips"] == 1
    assert body["subnet"]["available_ips"] == 5

    listing = client.get(f"/api/subnets/{body['subnet']['id']}/ips").get_json()["ip_addresses"]
    assert [ip["address"] for ip in listing][:2] == ["10.10.0.1", "10.10.0.2"]


def test_subnet_validation_and_overlap(client):
    login_admin(client)
    client.post("/api/subnets", json={"name": "LAN", "network": "10.0.0.0/24"})

    overlap = client.post("/api/subnets", json={"name": "Half", "network": "10.0.0.128/25"})
    assert overlap.status_code == 409
    assert overlap.get_json()["overlapping_subnets"][0]["network"] == "10.0.0.0/24"

    duplicate = client.post("/api/subnets", json={"name": "Again", "network": "10.0.0.0/24"})
    assert duplicate.status_code == 409

    bad_gateway = client.post(
        "/api/subnets", json={"name": "Bad", "network": "10.1.0.0/24", "gateway": "10.2.0.1"}
    )
    assert bad_gateway.status_code == 400

    check = client.post("/api/subnets/check-overlap", json={"cidr": "10.0.0.0/16"}).get_json()
    assert check["overlaps"] is True

    large = client.post("/api/subnets", json={"name": "Metro", "network": "172.16.0.0/16"})
    assert large.status_code == 201
    assert large.get_json()["ips_generated"] == 0

    not_eligible = client.post(f"/api/subnets/{large.get_json()['subnet']['id']}/generate-ips")
    assert not_eligible.status_code == 400


def test_ip_assignment_release_and_subnet_protection(client, app):
    login_admin(client)
    subnet = client.post(
        "/api/subnets",
        json={"name": "Access", "network": "10.20.0.0/29", "gateway": "10.20.0.1"},
    ).get_json()["subnet"]
    customer = create_customer(client)

    service = add_service(client, customer["id"], subnet_id=subnet["id"])
    assert service["ip_address"] == "10.20.0.2"

    taken = client.post(
        "/api/ip-addresses/assign",
        json={"service_id": service["id"], "ip_address": "10.20.0.1"},
    )
    assert taken.status_code == 400

    blocked_delete = client.delete(f"/api/subnets/{subnet['id']}")
    assert blocked_delete.status_code == 409
    blocked_resize = client.put(f"/api/subnets/{subnet['id']}", json={"network": "10.30.0.0/29"})
    assert blocked_resize.status_code == 409

    assigned = client.get(f"/api/subnets/{subnet['id']}/ips?status=assigned").get_json()
    ip_id = assigned["ip_addresses"][0]["id"]
    released = client.post(f"/api/ip-addresses/{ip_id}/release")
    assert released.status_code == 200
    assert released.get_json()["ip_address"]["status"] == "available"

    with app.app_context():
        assert db.session.get(CustomerService, service["id"]).ip_address is None

    resized = client.put(
        f"/api/subnets/{subnet['id']}",
        json={"network": "10.30.0.0/29", "gateway": "10.30.0.1"},
    )
    assert resized.status_code == 200
    assert resized.get_json()["ips_generated"] == 6
    with app.app_context():
        assert IPAddress.query.filter(IPAddress.address.like("10.20.%")).count() == 0


def test_changing_gateway_moves_the_reservation(client):
    login_admin(client)
    subnet = client.post(
        "/api/subnets",
        json={"name": "Edge", "network": "10.50.0.0/29", "gateway": "10.50.0.1"},
    ).get_json()["subnet"]

    moved = client.put(f"/api/subnets/{subnet['id']}", json={"gateway": "10.50.0.2"})
    assert moved.status_code == 200
    assert moved.get_json()["subnet"]["gateway"] == "10.50.0.2"

    pool = {
        ip["address"]: (ip["status"], ip["notes"])
        for ip in client.get(f"/api/subnets/{subnet['id']}/ips").get_json()["ip_addresses"]
    }
    assert pool["10.50.0.1"] == ("available", None)
    assert pool["10.50.0.2"] == ("reserved", "Gateway")
    assert moved.get_json()["subnet"]["reserved_ips"] == 1

    customer = create_customer(client)
    service = add_service(client, customer["id"], subnet_id=subnet["id"])
    assert service["ip_address"] == "10.50.0.1"

    conflict = client.put(f"/api/subnets/{subnet['id']}", json={"gateway": "10.50.0.1"})
    assert conflict.status_code == 409
    detail = client.get(f"/api/subnets/{subnet['id']}").get_json()["subnet"]
    assert detail["gateway"] == "10.50.0.2"


def test_generate_ips_fills_only_missing_addresses(client, app):
    login_admin(client)
    subnet = client.post(
        "/api/subnets",
        json={"name": "Backhaul", "network": "10.60.0.0/29", "gateway": "10.60.0.1"},
    ).get_json()["subnet"]

    with app.app_context():
        IPAddress.query.filter(
            IPAddress.subnet_id == subnet["id"],
            IPAddress.address.in_(["10.60.0.5", "10.60.0.6"]),
        ).delete(synchronize_session=False)
        db.session.commit()

    response = client.post(f"/api/subnets/{subnet['id']}/generate-ips")

    assert response.status_code == 200
    body = response.get_json()
    assert body["created"] == 2
    assert body["total_ips"] == 6
    assert body["reserved_ips"] == 1
    with app.app_context():
        assert IPAddress.query.filter_by(subnet_id=subnet["id"], address="10.60.0.5").count() == 1

    again = client.post(f"/api/subnets/{subnet['id']}/generate-ips").get_json()
    assert again["created"] == 0


def test_suspension_can_release_ip_addresses(client):
    login_admin(client)
    subnet = client.post(
        "/api/subnets", json={"name": "Access", "network": "10.40.0.0/29"}
    ).get_json()["subnet"]
    customer = create_customer(client)
    add_service(client, customer["id"], subnet_id=subnet["id"])

    response = client.post(
        f"/api/customers/{customer['id']}/suspend",
        json={"reason": "Moving house", "release_ips": True},
    )

    assert response.get_json()["released_ips"] == ["10.40.0.1"]
    usage = client.get(f"/api/subnets/{subnet['id']}").get_json()["subnet"]
    assert usage["assigned_ips"] == 0


def test_router_validation(client):
    login_admin(client)

    bad = client.post("/api/routers", json={"name": "Edge", "ip_address": "999.1.1.1"})
    assert bad.status_code == 400

    router = client.post(
        "/api/routers", json={"name": "Edge", "ip_address": "10.0.0.1", "router_type": "MikroTik"}
    ).get_json()["router"]
    client.post(
        "/api/subnets", json={"name": "Edge LAN", "network": "10.50.0.0/29", "router_id": router["id"]}
    )

    blocked = client.delete(f"/api/routers/{router['id']}")
    assert blocked.status_code == 409


# -- Support -----------------------------------------------------------------


def test_ticket_assignment_sends_sms_and_resolution(client, app):
    login_admin(client)
    employee = create_employee(client)
    customer = create_customer(client)

    created = client.post(
        "/api/tickets",
        json={
            "customer_id": customer["id"],
            "subject": "No connectivity",
            "description": "Router lights are off",
            "priority": "high",
            "assigned_to": employee["id"],
        },
    )
    assert created.status_code == 201
    ticket = created.get_json()["ticket"]
    assert ticket["ticket_number"] == "TKT-0001"
    assert ticket["assignee_name"] == "Brian Mwangi"

    sms = app.config["TEST_SMS_OUTBOX"]
    assert sms[-1][0] == "254722000111"
    assert "TKT-0001" in sms[-1][1]

    resolved = client.patch(
        f"/api/tickets/{ticket['id']}",
        json={"status": "resolved", "resolution_notes": "Replaced power adapter"},
    )
    assert resolved.get_json()["ticket"]["resolved_at"] is not None

    bad_priority = client.patch(f"/api/tickets/{ticket['id']}", json={"priority": "meh"})
    assert bad_priority.status_code == 400


def test_ticket_ignores_inactive_assignee(client, app):
    login_admin(client)
    employee = create_employee(client)
    client.patch(f"/api/employees/{employee['id']}", json={"status": "terminated"})

    created = client.post(
        "/api/tickets",
        json={"subject": "Core switch", "description": "Fan noise", "assigned_to": employee["id"]},
    )

    assert created.status_code == 201
    assert created.get_json()["ticket"]["assigned_to"] is None
    assert app.config["TEST_SMS_OUTBOX"] == []
    with app.app_context():
        assert ActivityLog.query.filter_by(level="WARNING", category="support").count() == 1

    missing = client.post("/api/tickets", json={"subject": "Only subject"})
    assert missing.status_code == 400


# -- Reports and exports -----------------------------------------------------


def test_reports_and_exports(client):
    login_admin(client)
    customer = create_customer(client)
    create_invoice(client, customer["id"])
    client.post(
        f"/api/customers/{customer['id']}/payments", json={"amount": "1160", "method": "cash"}
    )
    create_inventory_item(client)

    revenue = client.get("/api/reports/revenue").get_json()
    assert revenue["total_revenue_cents"] == 116000
    assert revenue["by_method"] == [{"method": "cash", "amount_cents": 116000}]

    customers = client.get("/api/reports/customers").get_json()
    assert customers["total"] == 1

    inventory = client.get("/api/reports/inventory").get_json()
    assert inventory["total_value_cents"] == 5 * 350000

    csv_export = client.get("/api/reports/customers/export?format=csv")
    assert csv_export.mimetype == "text/csv"
    lines = csv_export.get_data(as_text=True).splitlines()
    assert lines[0] == ",".join(EXPORT_DEFINITIONS["customers"])
    assert customer["account_number"] in lines[1]

    xlsx_export = client.get("/api/reports/invoices/export?format=xlsx")
    workbook = load_workbook(BytesIO(xlsx_export.data))
    rows = list(workbook.active.iter_rows(values_only=True))
    assert list(rows[0]) == EXPORT_DEFINITIONS["invoices"]
    assert rows[1][4] == "Paid"

    unknown = client.get("/api/reports/unknown/export")
    assert unknown.status_code == 404

    bad_date = client.get("/api/reports/revenue?start=yesterday")
    assert bad_date.status_code == 400


def test_activity_log_filters(client):
    login_admin(client)
    customer = create_customer(client)

    logs = client.get("/api/activity-logs?category=admin").get_json()["logs"]
    assert any("created" in entry["message"] for entry in logs)

    customer_logs = client.get(f"/api/customers/{customer['id']}/logs").get_json()["logs"]
    assert customer_logs and all(entry["customer_id"] == customer["id"] for entry in customer_logs)


# -- Customer portal ---------------------------------------------------------


def test_portal_requires_login(client):
    response = client.get("/api/portal/summary")

    assert response.status_code == 401

    page = client.get("/portal")
    assert page.status_code == 302
    assert "/portal/login" in page.headers["Location"]


def test_portal_login_summary_and_tickets(app, client):
    login_admin(client)
    customer = create_customer(client)
    other = create_customer(client, first_name="Peter", email="peter@example.com")
    add_service(client, customer["id"])
    create_invoice(client, customer["id"])
    other_invoice = create_invoice(client, other["id"])
    client.post(
        f"/api/customers/{customer['id']}/portal-password", json={"password": "PortalPass1"}
    )

    portal = app.test_client()
    denied = portal.post(
        "/portal/login",
        json={"account_number": customer["account_number"], "password": "wrong-pass"},
    )
    assert denied.status_code == 401

    login = portal.post(
        "/portal/login",
        json={"account_number": customer["account_number"], "password": "PortalPass1"},
    )
    assert login.status_code == 200

    summary = portal.get("/api/portal/summary").get_json()
    assert summary["customer"]["id"] == customer["id"]
    assert summary["balance"]["outstanding_cents"] == 116000
    assert len(summary["services"]) == 1

    ticket = portal.post(
        "/api/portal/tickets", json={"subject": "Slow speeds", "description": "Evenings only"}
    )
    assert ticket.status_code == 201
    assert ticket.get_json()["ticket"]["customer_id"] == customer["id"]

    page = portal.get("/portal")
    assert page.status_code == 200
    assert customer["account_number"].encode() in page.data

    forbidden = portal.get(f"/api/portal/invoices/{other_invoice['id']}/pdf")
    assert forbidden.status_code == 404


def test_portal_login_by_email_with_form(app, client):
    login_admin(client)
    customer = create_customer(client)
    client.post(
        f"/api/customers/{customer['id']}/portal-password", json={"password": "PortalPass1"}
    )

    portal = app.test_client()
    response = portal.post(
        "/portal/login",
        data={"account_number": "Amina@Example.com", "password": "PortalPass1"},
    )

    assert response.status_code == 302
    assert response.headers["Location"].endswith("/portal")
