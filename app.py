import base64
import calendar
import csv
import io
import ipaddress
import json
import os
import secrets
import smtplib
import ssl
import string
import time
from datetime import UTC, date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from email.message import EmailMessage
from email.utils import formataddr, format_datetime, make_msgid
from functools import wraps
from pathlib import Path

import requests
import stripe
from dotenv import load_dotenv
from flask import (
    Flask,
    Response,
    abort,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask_sqlalchemy import SQLAlchemy
from openpyxl import Workbook
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import event, insert, or_
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash

StripeError = stripe.StripeError
SignatureVerificationError = stripe.SignatureVerificationError

load_dotenv()

db = SQLAlchemy()

DEFAULT_CURRENCY = "KES"
DEFAULT_TAX_RATE = Decimal("16")
SUPPLIER_VAT_RATE = Decimal("16")
DEFAULT_PAYMENT_TERMS_DAYS = 14
DEFAULT_REMINDER_DAYS_BEFORE = 3
DEFAULT_REMINDER_DAYS_AFTER = 3
DEFAULT_SUPPLIER_PAYMENT_TERMS_DAYS = 30
DEFAULT_SUSPENSION_GRACE_DAYS = 7
IP_POOL_MAX_HOSTS_DEFAULT = 1000
IP_POOL_BATCH_SIZE_DEFAULT = 100

DASHBOARD_OVERVIEW_CACHE_KEY = "_dashboard_overview_cache"
DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT = 10.0

BILLING_HOLD_REASON = "Billing hold: overdue balance"

PORTAL_SESSION_KEY = "customer_portal_id"


def utcnow() -> datetime:
    return datetime.now(UTC)


def generate_account_number() -> str:
    return f"ACC{secrets.randbelow(10**6):06d}"


def generate_payment_reference() -> str:
    alphabet = string.ascii_uppercase + string.digits
    return "PAY-" + "".join(secrets.choice(alphabet) for _ in range(10))


def stripe_active(app: Flask | None = None) -> bool:
    app = app or current_app
    if app is None:
        return False
    return bool(app.config.get("STRIPE_SECRET_KEY"))


def init_stripe(app: Flask) -> None:
    secret_key = app.config.get("STRIPE_SECRET_KEY")
    stripe.api_key = secret_key or None


def describe_stripe_error(error: StripeError) -> str:
    message = getattr(error, "user_message", None) or str(error)
    return message or "Stripe could not process the request."


class BillingError(ValueError):
    """Raised when an invoice, payment or adjustment request is rejected."""


class InventoryError(ValueError):
    """Raised when stock levels cannot satisfy a request."""


class ProcurementError(ValueError):
    """Raised when a purchase order transition is not allowed."""


class NetworkError(ValueError):
    """Raised for invalid CIDR blocks and IP address assignments."""


class PayrollError(ValueError):
    """Raised when payroll cannot be generated for a period."""


class MpesaApiError(RuntimeError):
    """Raised when the M-Pesa Daraja API responds with an error."""


class SmsDeliveryError(RuntimeError):
    """Raised when the SMS gateway rejects a message."""


def _coerce_int(value: object | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value != value:  # NaN check
            return None
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip()
        if not cleaned:
            return None
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError):
                return None
    return None


def parse_decimal(value: object | None) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    raw = str(value).strip().replace(",", "")
    if not raw:
        return None
    try:
        parsed = Decimal(raw)
    except (InvalidOperation, TypeError):
        return None
    if not parsed.is_finite():
        return None
    return parsed


def parse_amount_cents(value: object | None) -> int | None:
    amount = parse_decimal(value)
    if amount is None:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def format_money(cents: int | None, currency: str = DEFAULT_CURRENCY) -> str:
    amount = (Decimal(cents or 0) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{currency} {amount:,.2f}"


def parse_iso_date(value: object | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return datetime.strptime(raw[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


def _as_aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _isoformat(value: date | datetime | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_aware(value).isoformat()
    return value.isoformat()


TRUTHY_VALUES = {"1", "true", "yes", "on", "y"}


def is_truthy(value: str | bool | None) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUTHY_VALUES


def wants_json_response() -> bool:
    """Determine whether the current request expects a JSON response."""

    if request.path.startswith("/api/"):
        return True

    if request.is_json:
        return True

    requested_with = request.headers.get("X-Requested-With", "").lower()
    if requested_with == "xmlhttprequest":
        return True

    accept_mimetypes = request.accept_mimetypes
    if accept_mimetypes:
        best = accept_mimetypes.best
        if best == "application/json":
            return True
        if (
            accept_mimetypes["application/json"]
            and accept_mimetypes["application/json"]
            >= accept_mimetypes["text/html"]
        ):
            return True

    return False


def request_payload() -> dict:
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


# -- Billing arithmetic -------------------------------------------------------

BILLING_CYCLES = ["daily", "weekly", "monthly", "quarterly", "semi-annual", "annual"]
BILLING_CYCLE_DAYS = {
    "daily": 1,
    "weekly": 7,
    "monthly": 30,
    "quarterly": 90,
    "semi-annual": 180,
    "annual": 365,
}
BILLING_CYCLE_MONTHS = {"monthly": 1, "quarterly": 3, "semi-annual": 6, "annual": 12}


def add_months(start: date, months: int, day: int | None = None) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day or start.day, last_day))


def billing_period_end(start: date, cycle: str) -> date:
    if cycle == "daily":
        return start
    if cycle == "weekly":
        return start + timedelta(days=6)
    months = BILLING_CYCLE_MONTHS.get(cycle, 1)
    return add_months(start, months) - timedelta(days=1)


def next_billing_date(anchor: date, cycle: str, billing_day: int | None = None) -> date:
    if cycle == "daily":
        return anchor + timedelta(days=1)
    if cycle == "weekly":
        return anchor + timedelta(days=7)
    months = BILLING_CYCLE_MONTHS.get(cycle, 1)
    return add_months(anchor, months, day=billing_day)


def prorata_factor(period_start: date, period_end: date, cycle: str) -> Decimal:
    days = (period_end - period_start).days + 1
    cycle_days = BILLING_CYCLE_DAYS.get(cycle, 30)
    if days <= 0:
        return Decimal(0)
    return min(Decimal(days) / Decimal(cycle_days), Decimal(1))


def compute_tax(
    amount_cents: int, tax_rate: Decimal, *, inclusive: bool = False, exempt: bool = False
) -> tuple[int, int, int]:
    """Split a line total into ``(subtotal, tax, total)`` cents."""

    if exempt or not tax_rate or tax_rate <= 0:
        return amount_cents, 0, amount_cents

    rate = Decimal(tax_rate) / Decimal(100)
    if inclusive:
        tax_cents = round_cents(Decimal(amount_cents) * rate / (1 + rate))
        return amount_cents - tax_cents, tax_cents, amount_cents

    tax_cents = round_cents(Decimal(amount_cents) * rate)
    return amount_cents, tax_cents, amount_cents + tax_cents


def next_document_number(column, prefix: str, *, width: int = 6, year: int | None = None) -> str:
    """Return the next ``PREFIX-YEAR-000001`` style number for ``column``."""

    year = year or date.today().year
    stem = f"{prefix}-{year}-"
    existing = db.session.query(column).filter(column.like(f"{stem}%")).all()
    highest = 0
    for (value,) in existing:
        suffix = _coerce_int((value or "")[len(stem):])
        if suffix and suffix > highest:
            highest = suffix
    return f"{stem}{highest + 1:0{width}d}"


# -- Payroll statutory deductions ---------------------------------------------

PAYE_PERSONAL_RELIEF = Decimal("2400")
NSSF_TIER_LIMIT = Decimal("18000")
NSSF_RATE = Decimal("0.06")
SHA_BANDS = [
    (5999, 150),
    (7999, 300),
    (11999, 400),
    (14999, 500),
    (19999, 600),
    (24999, 750),
    (29999, 850),
    (34999, 900),
    (39999, 950),
    (44999, 1000),
    (49999, 1100),
    (59999, 1200),
    (69999, 1300),
    (79999, 1400),
    (89999, 1500),
    (99999, 1600),
]
SHA_HIGH_EARNER_RATE = Decimal("0.0275")


def _round_shillings(value: Decimal) -> Decimal:
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def calculate_paye(gross: Decimal) -> Decimal:
    gross = Decimal(gross)
    if gross <= 24000:
        tax = gross * Decimal("0.1")
    elif gross <= 32333:
        tax = Decimal("2400") + (gross - 24000) * Decimal("0.25")
    elif gross <= 500000:
        tax = Decimal("2400") + Decimal("2083.25") + (gross - 32333) * Decimal("0.3")
    elif gross <= 800000:
        tax = (
            Decimal("2400")
            + Decimal("2083.25")
            + Decimal("140300.1")
            + (gross - 500000) * Decimal("0.325")
        )
    else:
        tax = (
            Decimal("2400")
            + Decimal("2083.25")
            + Decimal("140300.1")
            + Decimal("97500")
            + (gross - 800000) * Decimal("0.35")
        )
    return _round_shillings(max(Decimal(0), tax - PAYE_PERSONAL_RELIEF))


def calculate_nssf(gross: Decimal) -> Decimal:
    gross = Decimal(gross)
    contribution = min(gross, NSSF_TIER_LIMIT) * NSSF_RATE
    if gross > NSSF_TIER_LIMIT:
        contribution += min(gross - NSSF_TIER_LIMIT, NSSF_TIER_LIMIT) * NSSF_RATE
    return _round_shillings(contribution)


def calculate_sha(gross: Decimal) -> Decimal:
    gross = Decimal(gross)
    for ceiling, contribution in SHA_BANDS:
        if gross <= ceiling:
            return Decimal(contribution)
    return _round_shillings(gross * SHA_HIGH_EARNER_RATE)


# -- Network helpers ----------------------------------------------------------


def parse_cidr(value: str | None) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
    raw = (value or "").strip()
    if not raw or "/" not in raw:
        raise NetworkError("CIDR must include a prefix length, e.g. 192.168.1.0/24.")
    address_part, _, prefix_part = raw.partition("/")
    try:
        address = ipaddress.ip_address(address_part)
    except ValueError as exc:
        raise NetworkError(f"Invalid IP address in CIDR: {address_part}") from exc
    prefix = _coerce_int(prefix_part)
    if prefix is None or not prefix_part.strip().isdigit():
        raise NetworkError(f"Invalid prefix length: {prefix_part}")
    if prefix < 0 or prefix > address.max_prefixlen:
        raise NetworkError(
            f"Prefix length must be between 0 and {address.max_prefixlen} for IPv{address.version}."
        )
    return ipaddress.ip_network(f"{address}/{prefix}", strict=False)


def usable_host_count(network: ipaddress.IPv4Network | ipaddress.IPv6Network) -> int:
    if network.version == 4 and network.prefixlen <= 30:
        return network.num_addresses - 2
    return network.num_addresses


def should_generate_ip_pool(
    network: ipaddress.IPv4Network | ipaddress.IPv6Network, max_hosts: int
) -> bool:
    return (
        network.version == 4
        and 8 <= network.prefixlen <= 30
        and usable_host_count(network) <= max_hosts
    )


def validate_gateway(
    gateway: str | None, network: ipaddress.IPv4Network | ipaddress.IPv6Network
) -> str | None:
    raw = (gateway or "").strip()
    if not raw:
        return None
    try:
        address = ipaddress.ip_address(raw)
    except ValueError as exc:
        raise NetworkError(f"Invalid gateway address: {raw}") from exc
    if address not in network:
        raise NetworkError(f"Gateway {raw} is outside {network}.")
    return str(address)


# -- M-Pesa -------------------------------------------------------------------


def normalize_mpesa_phone(raw: str | None) -> str | None:
    digits = "".join(ch for ch in (raw or "") if ch.isdigit())
    if not digits:
        return None
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif digits.startswith(("7", "1")) and len(digits) == 9:
        digits = "254" + digits
    if len(digits) != 12 or not digits.startswith(("2547", "2541")):
        return None
    return digits


class MpesaApiClient:
    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        *,
        timeout: float = 30.0,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.consumer_key = (consumer_key or "").strip()
        self.consumer_secret = (consumer_secret or "").strip()
        self.shortcode = str(shortcode or "").strip()
        self.passkey = (passkey or "").strip()
        self.timeout = timeout

        if not all(
            [self.base_url, self.consumer_key, self.consumer_secret, self.shortcode, self.passkey]
        ):
            raise MpesaApiError("M-Pesa credentials are not fully configured.")

    def _decode(self, response: requests.Response) -> dict:
        try:
            payload = response.json()
        except ValueError as exc:
            raise MpesaApiError("M-Pesa API returned an invalid JSON payload.") from exc
        if not isinstance(payload, dict):
            raise MpesaApiError("Unexpected M-Pesa API response structure.")
        return payload

    def fetch_access_token(self) -> str:
        try:
            response = requests.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise MpesaApiError(f"Unable to reach M-Pesa: {exc}") from exc

        if response.status_code != 200:
            raise MpesaApiError(
                f"M-Pesa OAuth responded with HTTP {response.status_code}: {response.text}"
            )
        token = self._decode(response).get("access_token")
        if not token:
            raise MpesaApiError("M-Pesa OAuth response did not include an access token.")
        return token

    def build_password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    def stk_push(
        self,
        *,
        phone_number: str,
        amount: int,
        account_reference: str,
        description: str,
        callback_url: str,
    ) -> dict:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        body = {
            "BusinessShortCode": self.shortcode,
            "Password": self.build_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": phone_number,
            "PartyB": self.shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference[:12],
            "TransactionDesc": description[:13],
        }
        token = self.fetch_access_token()
        try:
            response = requests.post(
                f"{self.base_url}/mpesa/stkpush/v1/processrequest",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise MpesaApiError(f"Unable to reach M-Pesa: {exc}") from exc

        payload = self._decode(response)
        if response.status_code != 200 or str(payload.get("ResponseCode", "")) != "0":
            message = (
                payload.get("errorMessage")
                or payload.get("ResponseDescription")
                or f"HTTP {response.status_code}"
            )
            raise MpesaApiError(f"STK push rejected: {message}")
        return payload


def build_mpesa_client(app: Flask) -> MpesaApiClient:
    timeout_value = app.config.get("MPESA_API_TIMEOUT", 30.0)
    try:
        timeout = float(timeout_value)
    except (TypeError, ValueError):
        timeout = 30.0
    return MpesaApiClient(
        app.config.get("MPESA_BASE_URL") or "",
        app.config.get("MPESA_CONSUMER_KEY") or "",
        app.config.get("MPESA_CONSUMER_SECRET") or "",
        app.config.get("MPESA_SHORTCODE") or "",
        app.config.get("MPESA_PASSKEY") or "",
        timeout=timeout,
    )


def _stk_metadata(callback: dict) -> dict[str, object]:
    metadata = callback.get("CallbackMetadata") or {}
    if not isinstance(metadata, dict):
        raise ValueError("Malformed CallbackMetadata in STK callback.")
    items = metadata.get("Item") or []
    if not isinstance(items, list):
        raise ValueError("Malformed CallbackMetadata items in STK callback.")
    values: dict[str, object] = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            values[item["Name"]] = item.get("Value")
    return values


def parse_mpesa_timestamp(value: object | None) -> datetime | None:
    raw = str(value or "").strip()
    if len(raw) != 14 or not raw.isdigit():
        return None
    try:
        # Daraja timestamps are East Africa Time (UTC+3).
        local = datetime.strptime(raw, "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return (local - timedelta(hours=3)).replace(tzinfo=UTC)


CUSTOMER_STATUS_OPTIONS = ["Pending", "Active", "Suspended", "Inactive"]
CUSTOMER_TYPE_OPTIONS = ["Residential", "Business"]
SERVICE_STATUS_OPTIONS = ["Pending", "Active", "Suspended", "Terminated"]
INVOICE_STATUS_OPTIONS = ["Pending", "Partial", "Paid", "Overdue", "Cancelled"]
OPEN_INVOICE_STATUSES = ("Pending", "Partial", "Overdue")
PAYMENT_METHOD_OPTIONS = ["mpesa", "card", "bank_transfer", "cash"]
PAYMENT_STATUS_OPTIONS = ["Pending", "Completed", "Failed", "Refunded"]
ADJUSTMENT_TYPE_OPTIONS = ["credit", "debit"]
MPESA_STATUS_OPTIONS = ["pending", "completed", "failed", "unmatched"]
INVENTORY_STATUS_OPTIONS = ["active", "discontinued"]
PURCHASE_ORDER_STATUS_OPTIONS = ["Pending", "Approved", "Received", "Cancelled"]
SUPPLIER_INVOICE_STATUS_OPTIONS = ["Unpaid", "Partial", "Paid"]
EMPLOYEE_STATUS_OPTIONS = ["active", "inactive", "terminated"]
PAYROLL_STATUS_OPTIONS = ["calculated", "approved", "paid"]
IP_STATUS_OPTIONS = ["available", "assigned", "reserved"]
TICKET_STATUS_OPTIONS = ["open", "in_progress", "resolved", "closed"]
TICKET_PRIORITY_OPTIONS = ["low", "medium", "high", "urgent"]
LOG_LEVEL_OPTIONS = ["INFO", "WARNING", "ERROR", "SUCCESS"]


class AdminUser(db.Model):
    __tablename__ = "admin_users"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(120), nullable=False, unique=True)
    email = db.Column(db.String(255), unique=True)
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = db.Column(db.DateTime(timezone=True))

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<AdminUser {self.username}>"


class CompanySettings(db.Model):
    __tablename__ = "company_settings"

    id = db.Column(db.Integer, primary_key=True)
    company_name = db.Column(db.String(255), nullable=False, default="ISP Desk")
    email = db.Column(db.String(255))
    phone = db.Column(db.String(40))
    address = db.Column(db.String(255))
    currency = db.Column(db.String(8), nullable=False, default=DEFAULT_CURRENCY)
    default_tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=DEFAULT_TAX_RATE)
    default_payment_terms_days = db.Column(
        db.Integer, nullable=False, default=DEFAULT_PAYMENT_TERMS_DAYS
    )
    suspension_grace_days = db.Column(
        db.Integer, nullable=False, default=DEFAULT_SUSPENSION_GRACE_DAYS
    )
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<CompanySettings {self.company_name}>"


class ActivityLog(db.Model):
    __tablename__ = "system_logs"

    id = db.Column(db.Integer, primary_key=True)
    level = db.Column(db.String(20), nullable=False, default="INFO")
    source = db.Column(db.String(120), nullable=False)
    category = db.Column(db.String(40), nullable=False, index=True)
    message = db.Column(db.Text, nullable=False)
    details = db.Column(db.Text)
    customer_id = db.Column(db.Integer, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    @property
    def details_dict(self) -> dict:
        if not self.details:
            return {}
        try:
            parsed = json.loads(self.details)
        except ValueError:
            return {"raw": self.details}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ActivityLog {self.level} {self.category}>"


class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.Integer, primary_key=True)
    account_number = db.Column(
        db.String(20), nullable=False, unique=True, default=generate_account_number
    )
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone = db.Column(db.String(40))
    address = db.Column(db.String(255))
    city = db.Column(db.String(120))
    customer_type = db.Column(db.String(40), nullable=False, default="Residential")
    status = db.Column(db.String(20), nullable=False, default="Pending")
    suspension_reason = db.Column(db.String(255))
    suspended_at = db.Column(db.DateTime(timezone=True))
    portal_password_hash = db.Column(db.String(255))
    portal_password_updated_at = db.Column(db.DateTime(timezone=True))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    services = db.relationship(
        "CustomerService", back_populates="customer", cascade="all, delete-orphan"
    )
    invoices = db.relationship(
        "Invoice", back_populates="customer", cascade="all, delete-orphan"
    )
    payments = db.relationship(
        "Payment", back_populates="customer", cascade="all, delete-orphan"
    )
    adjustments = db.relationship(
        "FinancialAdjustment", back_populates="customer", cascade="all, delete-orphan"
    )
    billing_config = db.relationship(
        "CustomerBillingConfig",
        back_populates="customer",
        uselist=False,
        cascade="all, delete-orphan",
    )
    equipment = db.relationship(
        "CustomerEquipment", back_populates="customer", cascade="all, delete-orphan"
    )
    tickets = db.relationship("SupportTicket", back_populates="customer")

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def active_services(self) -> list["CustomerService"]:
        return [service for service in self.services if service.status == "Active"]

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Customer {self.account_number}>"


class ServicePlan(db.Model):
    __tablename__ = "service_plans"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    category = db.Column(db.String(50), nullable=False, default="Residential")
    description = db.Column(db.Text)
    download_speed = db.Column(db.Integer, nullable=False, default=0)
    upload_speed = db.Column(db.Integer, nullable=False, default=0)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    features_text = db.Column(db.Text)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    position = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    subscriptions = db.relationship("CustomerService", back_populates="plan")

    @property
    def feature_list(self) -> list[str]:
        if not self.features_text:
            return []
        return [line.strip() for line in self.features_text.splitlines() if line.strip()]

    def set_features_from_text(self, raw_text: str) -> None:
        features = [line.strip() for line in raw_text.splitlines() if line.strip()]
        self.features_text = "\n".join(features) if features else None

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<ServicePlan {self.name} ({self.category})>"


class CustomerService(db.Model):
    __tablename__ = "customer_services"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    service_plan_id = db.Column(
        db.Integer, db.ForeignKey("service_plans.id"), nullable=False
    )
    status = db.Column(db.String(20), nullable=False, default="Pending")
    ip_address = db.Column(db.String(64))
    start_date = db.Column(db.Date)
    activated_at = db.Column(db.DateTime(timezone=True))
    suspended_at = db.Column(db.DateTime(timezone=True))
    terminated_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer", back_populates="services")
    plan = db.relationship("ServicePlan", back_populates="subscriptions")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<CustomerService {self.id} customer={self.customer_id}>"


class CustomerBillingConfig(db.Model):
    __tablename__ = "customer_billing_configs"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, unique=True
    )
    billing_cycle = db.Column(db.String(20), nullable=False, default="monthly")
    billing_day = db.Column(db.Integer, nullable=False, default=1)
    payment_terms_days = db.Column(
        db.Integer, nullable=False, default=DEFAULT_PAYMENT_TERMS_DAYS
    )
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=DEFAULT_TAX_RATE)
    tax_inclusive = db.Column(db.Boolean, nullable=False, default=False)
    tax_exempt = db.Column(db.Boolean, nullable=False, default=False)
    prorata_enabled = db.Column(db.Boolean, nullable=False, default=True)
    auto_generate = db.Column(db.Boolean, nullable=False, default=True)
    auto_send_reminders = db.Column(db.Boolean, nullable=False, default=True)
    reminder_days_before = db.Column(
        db.Integer, nullable=False, default=DEFAULT_REMINDER_DAYS_BEFORE
    )
    reminder_days_after = db.Column(
        db.Integer, nullable=False, default=DEFAULT_REMINDER_DAYS_AFTER
    )
    last_invoice_date = db.Column(db.Date)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer", back_populates="billing_config")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<CustomerBillingConfig customer={self.customer_id} {self.billing_cycle}>"


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(40), nullable=False, unique=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    description = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default="Pending")
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    amount_paid_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    issue_date = db.Column(db.Date, nullable=False, default=date.today)
    due_date = db.Column(db.Date)
    period_start = db.Column(db.Date)
    period_end = db.Column(db.Date)
    is_prorated = db.Column(db.Boolean, nullable=False, default=False)
    notes = db.Column(db.Text)
    paid_at = db.Column(db.DateTime(timezone=True))
    stripe_payment_intent_id = db.Column(db.String(64))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer", back_populates="invoices")
    items = db.relationship(
        "InvoiceItem", back_populates="invoice", cascade="all, delete-orphan"
    )
    applications = db.relationship("PaymentApplication", back_populates="invoice")
    credit_applications = db.relationship("CreditApplication", back_populates="invoice")

    @property
    def balance_cents(self) -> int:
        if self.status == "Cancelled":
            return 0
        return max(0, (self.total_cents or 0) - (self.amount_paid_cents or 0))

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Invoice {self.invoice_number} for customer {self.customer_id}>"


class InvoiceItem(db.Model):
    __tablename__ = "invoice_items"

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True
    )
    customer_service_id = db.Column(db.Integer, db.ForeignKey("customer_services.id"))
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    invoice = db.relationship("Invoice", back_populates="items")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<InvoiceItem {self.id} invoice={self.invoice_id}>"


class Payment(db.Model):
    __tablename__ = "payments"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    amount_cents = db.Column(db.Integer, nullable=False)
    method = db.Column(db.String(20), nullable=False)
    reference_number = db.Column(
        db.String(40), nullable=False, unique=True, default=generate_payment_reference
    )
    status = db.Column(db.String(20), nullable=False, default="Completed")
    mpesa_receipt_number = db.Column(db.String(40))
    external_reference = db.Column(db.String(64), index=True)
    notes = db.Column(db.Text)
    paid_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    customer = db.relationship("Customer", back_populates="payments")
    applications = db.relationship(
        "PaymentApplication", back_populates="payment", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Payment {self.reference_number} {self.status}>"


class PaymentApplication(db.Model):
    __tablename__ = "payment_applications"

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(
        db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True
    )
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True
    )
    amount_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    payment = db.relationship("Payment", back_populates="applications")
    invoice = db.relationship("Invoice", back_populates="applications")


class FinancialAdjustment(db.Model):
    __tablename__ = "financial_adjustments"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    adjustment_type = db.Column(db.String(20), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(255), nullable=False)
    reference_number = db.Column(db.String(40), unique=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"))
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"))
    status = db.Column(db.String(20), nullable=False, default="approved")
    applied_cents = db.Column(db.Integer, nullable=False, default=0)
    created_by = db.Column(db.Integer, db.ForeignKey("admin_users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    customer = db.relationship("Customer", back_populates="adjustments")
    applications = db.relationship(
        "CreditApplication", back_populates="adjustment", cascade="all, delete-orphan"
    )

    @property
    def unapplied_cents(self) -> int:
        if self.adjustment_type != "credit" or self.status != "approved":
            return 0
        return max(0, (self.amount_cents or 0) - (self.applied_cents or 0))

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<FinancialAdjustment {self.adjustment_type} {self.amount_cents}>"


class CreditApplication(db.Model):
    __tablename__ = "credit_applications"

    id = db.Column(db.Integer, primary_key=True)
    adjustment_id = db.Column(
        db.Integer, db.ForeignKey("financial_adjustments.id"), nullable=False, index=True
    )
    invoice_id = db.Column(
        db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True
    )
    amount_cents = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    adjustment = db.relationship("FinancialAdjustment", back_populates="applications")
    invoice = db.relationship("Invoice", back_populates="credit_applications")


class PaymentReminder(db.Model):
    __tablename__ = "payment_reminders"
    __table_args__ = (
        db.UniqueConstraint("invoice_id", "reminder_type", name="uq_payment_reminder_invoice"),
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False)
    reminder_type = db.Column(db.String(20), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    channels = db.Column(db.String(40))
    status = db.Column(db.String(20), nullable=False, default="sent")
    sent_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    invoice = db.relationship("Invoice")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PaymentReminder {self.reminder_type} invoice={self.invoice_id}>"


class MpesaTransaction(db.Model):
    __tablename__ = "mpesa_transactions"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), index=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"))
    checkout_request_id = db.Column(db.String(80), unique=True)
    merchant_request_id = db.Column(db.String(80))
    transaction_id = db.Column(db.String(40), unique=True)
    transaction_type = db.Column(db.String(40))
    mpesa_receipt_number = db.Column(db.String(40))
    amount_cents = db.Column(db.Integer)
    phone_number = db.Column(db.String(20))
    bill_ref_number = db.Column(db.String(64))
    payer_name = db.Column(db.String(255))
    result_code = db.Column(db.Integer)
    result_desc = db.Column(db.String(255))
    status = db.Column(db.String(20), nullable=False, default="pending")
    transaction_date = db.Column(db.DateTime(timezone=True))
    callback_data = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer")
    payment = db.relationship("Payment")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<MpesaTransaction {self.id} {self.status}>"


class InventoryItem(db.Model):
    __tablename__ = "inventory_items"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(80), unique=True)
    category = db.Column(db.String(80), nullable=False, index=True)
    description = db.Column(db.Text)
    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    reorder_level = db.Column(db.Integer, nullable=False, default=0)
    requires_serial = db.Column(db.Boolean, nullable=False, default=False)
    location = db.Column(db.String(120))
    status = db.Column(db.String(20), nullable=False, default="active")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    movements = db.relationship(
        "InventoryMovement", back_populates="item", cascade="all, delete-orphan"
    )

    @property
    def is_low_stock(self) -> bool:
        return self.stock_quantity <= self.reorder_level

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<InventoryItem {self.name} qty={self.stock_quantity}>"


class InventoryMovement(db.Model):
    __tablename__ = "inventory_movements"

    id = db.Column(db.Integer, primary_key=True)
    inventory_item_id = db.Column(
        db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True
    )
    movement_type = db.Column(db.String(20), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    reference_type = db.Column(db.String(40))
    reference_number = db.Column(db.String(64))
    unit_cost_cents = db.Column(db.Integer)
    notes = db.Column(db.Text)
    performed_by = db.Column(db.Integer)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    item = db.relationship("InventoryItem", back_populates="movements")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<InventoryMovement {self.movement_type} {self.quantity}>"


class InventorySerialNumber(db.Model):
    __tablename__ = "inventory_serial_numbers"

    id = db.Column(db.Integer, primary_key=True)
    inventory_item_id = db.Column(
        db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True
    )
    serial_number = db.Column(db.String(120), nullable=False, unique=True)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"))
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"))
    customer_equipment_id = db.Column(db.Integer, db.ForeignKey("customer_equipment.id"))
    status = db.Column(db.String(20), nullable=False, default="in_stock")
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    item = db.relationship("InventoryItem")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<InventorySerialNumber {self.serial_number} {self.status}>"


class CustomerEquipment(db.Model):
    __tablename__ = "customer_equipment"

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(
        db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True
    )
    inventory_item_id = db.Column(
        db.Integer, db.ForeignKey("inventory_items.id"), nullable=False
    )
    equipment_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    serial_number = db.Column(db.String(120))
    status = db.Column(db.String(20), nullable=False, default="allocated")
    return_condition = db.Column(db.String(40))
    notes = db.Column(db.Text)
    allocated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    returned_at = db.Column(db.DateTime(timezone=True))

    customer = db.relationship("Customer", back_populates="equipment")
    item = db.relationship("InventoryItem")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<CustomerEquipment {self.equipment_name} customer={self.customer_id}>"


class Supplier(db.Model):
    __tablename__ = "suppliers"

    id = db.Column(db.Integer, primary_key=True)
    supplier_code = db.Column(db.String(40), unique=True)
    company_name = db.Column(db.String(255), nullable=False)
    contact_name = db.Column(db.String(255))
    email = db.Column(db.String(255))
    phone = db.Column(db.String(40))
    address = db.Column(db.String(255))
    tax_number = db.Column(db.String(80))
    payment_terms_days = db.Column(
        db.Integer, nullable=False, default=DEFAULT_SUPPLIER_PAYMENT_TERMS_DAYS
    )
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    purchase_orders = db.relationship("PurchaseOrder", back_populates="supplier")
    invoices = db.relationship("SupplierInvoice", back_populates="supplier")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Supplier {self.company_name}>"


class PurchaseOrder(db.Model):
    __tablename__ = "purchase_orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(40), nullable=False, unique=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="Pending")
    total_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey("admin_users.id"))
    approved_at = db.Column(db.DateTime(timezone=True))
    received_at = db.Column(db.DateTime(timezone=True))
    cancelled_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    supplier = db.relationship("Supplier", back_populates="purchase_orders")
    items = db.relationship(
        "PurchaseOrderItem", back_populates="purchase_order", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PurchaseOrder {self.order_number} {self.status}>"


class PurchaseOrderItem(db.Model):
    __tablename__ = "purchase_order_items"

    id = db.Column(db.Integer, primary_key=True)
    purchase_order_id = db.Column(
        db.Integer, db.ForeignKey("purchase_orders.id"), nullable=False, index=True
    )
    inventory_item_id = db.Column(
        db.Integer, db.ForeignKey("inventory_items.id"), nullable=False
    )
    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    quantity_received = db.Column(db.Integer, nullable=False, default=0)

    purchase_order = db.relationship("PurchaseOrder", back_populates="items")
    item = db.relationship("InventoryItem")


class SupplierInvoice(db.Model):
    __tablename__ = "supplier_invoices"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(40), nullable=False, unique=True)
    supplier_id = db.Column(db.Integer, db.ForeignKey("suppliers.id"), nullable=False)
    purchase_order_id = db.Column(db.Integer, db.ForeignKey("purchase_orders.id"))
    invoice_date = db.Column(db.Date, nullable=False, default=date.today)
    due_date = db.Column(db.Date)
    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    tax_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    paid_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="Unpaid")
    notes = db.Column(db.Text)
    created_by = db.Column(db.Integer, db.ForeignKey("admin_users.id"))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    supplier = db.relationship("Supplier", back_populates="invoices")
    purchase_order = db.relationship("PurchaseOrder")
    items = db.relationship(
        "SupplierInvoiceItem", back_populates="invoice", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SupplierInvoice {self.invoice_number} {self.status}>"


class SupplierInvoiceItem(db.Model):
    __tablename__ = "supplier_invoice_items"

    id = db.Column(db.Integer, primary_key=True)
    supplier_invoice_id = db.Column(
        db.Integer, db.ForeignKey("supplier_invoices.id"), nullable=False, index=True
    )
    inventory_item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"))
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_cost_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)

    invoice = db.relationship("SupplierInvoice", back_populates="items")


class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    employee_number = db.Column(db.String(20), nullable=False, unique=True)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120), nullable=False, default="")
    email = db.Column(db.String(255), nullable=False, unique=True)
    phone = db.Column(db.String(40))
    position = db.Column(db.String(120))
    department = db.Column(db.String(120))
    hire_date = db.Column(db.Date)
    basic_salary_cents = db.Column(db.Integer, nullable=False, default=0)
    allowances_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="active")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    payroll_records = db.relationship(
        "PayrollRecord", back_populates="employee", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Employee {self.employee_number}>"


class PayrollRecord(db.Model):
    __tablename__ = "payroll_records"
    __table_args__ = (
        db.UniqueConstraint("employee_id", "period", name="uq_payroll_employee_period"),
    )

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id"), nullable=False, index=True
    )
    period = db.Column(db.String(7), nullable=False, index=True)
    period_start = db.Column(db.Date, nullable=False)
    period_end = db.Column(db.Date, nullable=False)
    basic_salary_cents = db.Column(db.Integer, nullable=False, default=0)
    allowances_cents = db.Column(db.Integer, nullable=False, default=0)
    overtime_cents = db.Column(db.Integer, nullable=False, default=0)
    gross_pay_cents = db.Column(db.Integer, nullable=False, default=0)
    paye_cents = db.Column(db.Integer, nullable=False, default=0)
    nssf_cents = db.Column(db.Integer, nullable=False, default=0)
    sha_cents = db.Column(db.Integer, nullable=False, default=0)
    other_deductions_cents = db.Column(db.Integer, nullable=False, default=0)
    total_deductions_cents = db.Column(db.Integer, nullable=False, default=0)
    net_pay_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="calculated")
    approved_at = db.Column(db.DateTime(timezone=True))
    paid_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    employee = db.relationship("Employee", back_populates="payroll_records")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<PayrollRecord {self.period} employee={self.employee_id}>"


class NetworkRouter(db.Model):
    __tablename__ = "network_routers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    ip_address = db.Column(db.String(64), nullable=False)
    location = db.Column(db.String(255))
    router_type = db.Column(db.String(60))
    status = db.Column(db.String(20), nullable=False, default="active")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    subnets = db.relationship("Subnet", back_populates="router")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<NetworkRouter {self.name}>"


class Subnet(db.Model):
    __tablename__ = "subnets"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    network = db.Column(db.String(64), nullable=False, unique=True)
    gateway = db.Column(db.String(64))
    dns_servers = db.Column(db.String(255))
    description = db.Column(db.Text)
    router_id = db.Column(db.Integer, db.ForeignKey("network_routers.id"))
    status = db.Column(db.String(20), nullable=False, default="active")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    router = db.relationship("NetworkRouter", back_populates="subnets")
    ip_addresses = db.relationship(
        "IPAddress", back_populates="subnet", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<Subnet {self.network}>"


class IPAddress(db.Model):
    __tablename__ = "ip_addresses"
    __table_args__ = (
        db.UniqueConstraint("subnet_id", "address", name="uq_ip_address_subnet"),
    )

    id = db.Column(db.Integer, primary_key=True)
    subnet_id = db.Column(
        db.Integer, db.ForeignKey("subnets.id"), nullable=False, index=True
    )
    address = db.Column(db.String(64), nullable=False, index=True)
    # Integer form keeps "lowest free address" ordering numeric, not lexical.
    sort_key = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default="available")
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"))
    customer_service_id = db.Column(db.Integer, db.ForeignKey("customer_services.id"))
    assigned_at = db.Column(db.DateTime(timezone=True))
    notes = db.Column(db.String(255))

    subnet = db.relationship("Subnet", back_populates="ip_addresses")
    customer = db.relationship("Customer")
    service = db.relationship("CustomerService")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<IPAddress {self.address} {self.status}>"


class SupportTicket(db.Model):
    __tablename__ = "support_tickets"

    id = db.Column(db.Integer, primary_key=True)
    ticket_number = db.Column(db.String(20), nullable=False, unique=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), index=True)
    subject = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=False)
    priority = db.Column(db.String(20), nullable=False, default="medium")
    status = db.Column(db.String(20), nullable=False, default="open")
    assigned_to = db.Column(db.Integer, db.ForeignKey("employees.id"))
    resolution_notes = db.Column(db.Text)
    resolved_at = db.Column(db.DateTime(timezone=True))
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    customer = db.relationship("Customer", back_populates="tickets")
    assignee = db.relationship("Employee")

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return f"<SupportTicket {self.ticket_number}>"


DEFAULT_SERVICE_PLANS = [
    {
        "name": "Home Basic 10",
        "category": "Residential",
        "download_speed": 10,
        "upload_speed": 5,
        "price_cents": 250000,
        "description": "Entry level fibre and fixed wireless for small households.",
        "features": ["Unlimited data", "Free router installation"],
    },
    {
        "name": "Home Plus 30",
        "category": "Residential",
        "download_speed": 30,
        "upload_speed": 15,
        "price_cents": 400000,
        "description": "Streaming-ready connection for busy homes.",
        "features": ["Unlimited data", "Dual-band Wi-Fi router", "Priority support"],
    },
    {
        "name": "Business 100",
        "category": "Business",
        "download_speed": 100,
        "upload_speed": 50,
        "price_cents": 1500000,
        "description": "Symmetric-leaning link with static addressing for offices.",
        "features": ["Static IP address", "99.5% uptime SLA", "24/7 support line"],
    },
]


def _env_int(name: str, default: int) -> int:
    value = _coerce_int(os.environ.get(name))
    return default if value is None else value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    try:
        return float(raw) if raw else default
    except ValueError:
        return default


def _database_url(default: str) -> str:
    url = (os.environ.get("DATABASE_URL") or "").strip()
    if not url:
        return default
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)

    instance_path = Path(app.instance_path)
    db_path = instance_path / "ispdesk.db"
    os.makedirs(instance_path, exist_ok=True)

    secret_key = os.environ.get("SECRET_KEY") or secrets.token_hex(16)

    default_config = {
        "SECRET_KEY": secret_key,
        "SQLALCHEMY_DATABASE_URI": _database_url(f"sqlite:///{db_path}"),
        "SQLALCHEMY_TRACK_MODIFICATIONS": False,
        "LOG_LEVEL": os.environ.get("LOG_LEVEL", "INFO").upper(),
        "ADMIN_USERNAME": os.environ.get("ADMIN_USERNAME"),
        "ADMIN_PASSWORD": os.environ.get("ADMIN_PASSWORD"),
        "ADMIN_EMAIL": os.environ.get("ADMIN_EMAIL"),
        "CRON_SECRET": os.environ.get("CRON_SECRET"),
        "COMPANY_NAME": os.environ.get("COMPANY_NAME", "ISP Desk"),
        "COMPANY_EMAIL": os.environ.get("COMPANY_EMAIL"),
        "COMPANY_PHONE": os.environ.get("COMPANY_PHONE"),
        "CURRENCY": os.environ.get("CURRENCY", DEFAULT_CURRENCY),
        "DEFAULT_TAX_RATE": os.environ.get("DEFAULT_TAX_RATE", str(DEFAULT_TAX_RATE)),
        "DEFAULT_PAYMENT_TERMS_DAYS": _env_int(
            "DEFAULT_PAYMENT_TERMS_DAYS", DEFAULT_PAYMENT_TERMS_DAYS
        ),
        "SUSPENSION_GRACE_DAYS": _env_int(
            "SUSPENSION_GRACE_DAYS", DEFAULT_SUSPENSION_GRACE_DAYS
        ),
        "IP_POOL_MAX_HOSTS": _env_int("IP_POOL_MAX_HOSTS", IP_POOL_MAX_HOSTS_DEFAULT),
        "IP_POOL_BATCH_SIZE": _env_int("IP_POOL_BATCH_SIZE", IP_POOL_BATCH_SIZE_DEFAULT),
        "MPESA_BASE_URL": os.environ.get(
            "MPESA_BASE_URL", "https://sandbox.safaricom.co.ke"
        ),
        "MPESA_CONSUMER_KEY": os.environ.get("MPESA_CONSUMER_KEY"),
        "MPESA_CONSUMER_SECRET": os.environ.get("MPESA_CONSUMER_SECRET"),
        "MPESA_SHORTCODE": os.environ.get("MPESA_SHORTCODE"),
        "MPESA_PASSKEY": os.environ.get("MPESA_PASSKEY"),
        "MPESA_CALLBACK_URL": os.environ.get("MPESA_CALLBACK_URL"),
        "MPESA_API_TIMEOUT": _env_float("MPESA_API_TIMEOUT", 30.0),
        "STRIPE_SECRET_KEY": os.environ.get("STRIPE_SECRET_KEY"),
        "STRIPE_WEBHOOK_SECRET": os.environ.get("STRIPE_WEBHOOK_SECRET"),
        "SMTP_HOST": os.environ.get("SMTP_HOST"),
        "SMTP_PORT": _env_int("SMTP_PORT", 587),
        "SMTP_USERNAME": os.environ.get("SMTP_USERNAME"),
        "SMTP_PASSWORD": os.environ.get("SMTP_PASSWORD"),
        "SMTP_SENDER": os.environ.get("SMTP_SENDER"),
        "SMTP_USE_TLS": is_truthy(os.environ.get("SMTP_USE_TLS", "true")),
        "SMS_API_URL": os.environ.get("SMS_API_URL"),
        "SMS_API_KEY": os.environ.get("SMS_API_KEY"),
        "SMS_USERNAME": os.environ.get("SMS_USERNAME"),
        "SMS_SENDER_ID": os.environ.get("SMS_SENDER_ID"),
        "DASHBOARD_OVERVIEW_CACHE_SECONDS": _env_float(
            "DASHBOARD_OVERVIEW_CACHE_SECONDS", DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT
        ),
        "NOTIFICATION_EMAIL_SENDER": None,
        "NOTIFICATION_SMS_SENDER": None,
    }

    app.config.update(default_config)

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    db.init_app(app)
    init_stripe(app)

    register_routes(app)

    with app.app_context():
        db.create_all()
        ensure_default_admin_user()
        ensure_company_settings()
        ensure_service_plans_seeded()

    return app


def ensure_default_admin_user() -> None:
    if AdminUser.query.count() > 0:
        return

    username = (current_app.config.get("ADMIN_USERNAME") or "").strip()
    password = current_app.config.get("ADMIN_PASSWORD")
    contact_email = current_app.config.get("ADMIN_EMAIL")

    if not username or not password:
        current_app.logger.warning(
            "No admin users exist and ADMIN_USERNAME/ADMIN_PASSWORD were not provided."
        )
        return

    admin = AdminUser(username=username, email=contact_email)
    admin.set_password(password)
    db.session.add(admin)
    db.session.commit()


def ensure_company_settings() -> CompanySettings:
    settings = CompanySettings.query.order_by(CompanySettings.id.asc()).first()
    if settings:
        return settings

    tax_rate = parse_decimal(current_app.config.get("DEFAULT_TAX_RATE"))
    settings = CompanySettings(
        company_name=current_app.config.get("COMPANY_NAME") or "ISP Desk",
        email=current_app.config.get("COMPANY_EMAIL"),
        phone=current_app.config.get("COMPANY_PHONE"),
        currency=(current_app.config.get("CURRENCY") or DEFAULT_CURRENCY).upper(),
        default_tax_rate=DEFAULT_TAX_RATE if tax_rate is None else tax_rate,
        default_payment_terms_days=current_app.config.get(
            "DEFAULT_PAYMENT_TERMS_DAYS", DEFAULT_PAYMENT_TERMS_DAYS
        ),
        suspension_grace_days=current_app.config.get(
            "SUSPENSION_GRACE_DAYS", DEFAULT_SUSPENSION_GRACE_DAYS
        ),
    )
    db.session.add(settings)
    db.session.commit()
    return settings


def get_company_settings() -> CompanySettings:
    settings = CompanySettings.query.order_by(CompanySettings.id.asc()).first()
    return settings or ensure_company_settings()


def ensure_service_plans_seeded() -> None:
    if ServicePlan.query.count() > 0:
        return

    for position, plan_data in enumerate(DEFAULT_SERVICE_PLANS, start=1):
        plan = ServicePlan(
            name=plan_data["name"],
            category=plan_data["category"],
            description=plan_data["description"],
            download_speed=plan_data["download_speed"],
            upload_speed=plan_data["upload_speed"],
            price_cents=plan_data["price_cents"],
            billing_cycle="monthly",
            position=position,
        )
        plan.set_features_from_text("\n".join(plan_data["features"]))
        db.session.add(plan)
    db.session.commit()


def log_activity(
    level: str,
    source: str,
    category: str,
    message: str,
    details: dict | None = None,
    customer_id: int | None = None,
) -> ActivityLog:
    """Record an audit entry in ``system_logs`` and echo it to the app logger.

    The entry joins the current session; the caller owns the commit so the log
    row lands in the same transaction as the change it describes.
    """

    normalized_level = (level or "INFO").upper()
    if normalized_level not in LOG_LEVEL_OPTIONS:
        normalized_level = "INFO"

    entry = ActivityLog(
        level=normalized_level,
        source=source,
        category=category,
        message=message,
        details=json.dumps(details, default=str) if details else None,
        customer_id=customer_id,
    )
    db.session.add(entry)

    if normalized_level == "ERROR":
        current_app.logger.error("[%s] %s: %s", category, source, message)
    elif normalized_level == "WARNING":
        current_app.logger.warning("[%s] %s: %s", category, source, message)
    else:
        current_app.logger.info("[%s] %s: %s", category, source, message)
    return entry


def send_email_notification(recipient: str | None, subject: str, body: str) -> bool:
    app = current_app
    if not recipient:
        return False

    sender = app.config.get("NOTIFICATION_EMAIL_SENDER")
    if callable(sender):
        try:
            return bool(sender(recipient, subject, body))
        except Exception as exc:  # pragma: no cover - custom sender errors
            app.logger.warning("Custom email sender failed: %s", exc)
            return False

    host = (app.config.get("SMTP_HOST") or "").strip()
    from_email = (app.config.get("SMTP_SENDER") or app.config.get("SMTP_USERNAME") or "").strip()
    if not host or not from_email:
        app.logger.info("SMTP is not configured; skipped email to %s", recipient)
        return False

    settings = get_company_settings()
    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = formataddr((settings.company_name, from_email))
    message["To"] = recipient
    message["Date"] = format_datetime(utcnow())
    message["Message-ID"] = make_msgid(domain=from_email.split("@")[-1])
    message.set_content(body)

    try:
        with smtplib.SMTP(host, int(app.config.get("SMTP_PORT") or 587), timeout=10) as smtp:
            smtp.ehlo()
            if app.config.get("SMTP_USE_TLS"):
                smtp.starttls(context=ssl.create_default_context())
                smtp.ehlo()
            username = app.config.get("SMTP_USERNAME")
            if username:
                smtp.login(username, app.config.get("SMTP_PASSWORD") or "")
            smtp.send_message(message)
        return True
    except (smtplib.SMTPException, OSError) as exc:  # pragma: no cover - external service dependency
        app.logger.warning("Email delivery to %s failed: %s", recipient, exc)
        return False


def deliver_sms(app: Flask, phone_number: str, message: str) -> None:
    url = (app.config.get("SMS_API_URL") or "").strip()
    api_key = (app.config.get("SMS_API_KEY") or "").strip()
    if not url or not api_key:
        raise SmsDeliveryError("SMS gateway is not configured.")

    payload = {
        "username": app.config.get("SMS_USERNAME") or "",
        "to": f"+{phone_number}" if phone_number.isdigit() else phone_number,
        "message": message,
    }
    sender_id = app.config.get("SMS_SENDER_ID")
    if sender_id:
        payload["from"] = sender_id

    try:
        response = requests.post(
            url,
            data=payload,
            headers={"apiKey": api_key, "Accept": "application/json"},
            timeout=10,
        )
    except requests.RequestException as exc:
        raise SmsDeliveryError(f"Unable to reach SMS gateway: {exc}") from exc

    if response.status_code >= 400:
        raise SmsDeliveryError(
            f"SMS gateway responded with HTTP {response.status_code}: {response.text}"
        )


def send_sms_notification(phone_number: str | None, message: str) -> bool:
    app = current_app
    normalized = normalize_mpesa_phone(phone_number) or (phone_number or "").strip()
    if not normalized:
        return False

    sender = app.config.get("NOTIFICATION_SMS_SENDER")
    if callable(sender):
        try:
            return bool(sender(normalized, message))
        except Exception as exc:  # pragma: no cover - custom sender errors
            app.logger.warning("Custom SMS sender failed: %s", exc)
            return False

    if not app.config.get("SMS_API_URL"):
        app.logger.info("SMS gateway is not configured; skipped SMS to %s", normalized)
        return False

    try:
        deliver_sms(app, normalized, message)
    except SmsDeliveryError as exc:
        app.logger.warning("SMS delivery to %s failed: %s", normalized, exc)
        return False
    return True


def login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if not session.get("admin_authenticated"):
            if wants_json_response():
                return jsonify({"error": "Administrator login required."}), 401
            flash("Please log in to access the dashboard.", "warning")
            return redirect(url_for("login", next=request.path))
        return func(*args, **kwargs)

    return wrapper


def client_login_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        customer_id = session.get(PORTAL_SESSION_KEY)
        if not customer_id:
            if wants_json_response():
                return jsonify({"error": "Customer login required."}), 401
            flash("Please log in to access your account.", "warning")
            return redirect(url_for("portal_login", next=request.path))

        customer = db.session.get(Customer, customer_id)
        if not customer:
            session.pop(PORTAL_SESSION_KEY, None)
            if wants_json_response():
                return jsonify({"error": "Customer session expired."}), 401
            flash("We couldn't find that account. Please log in again.", "danger")
            return redirect(url_for("portal_login"))

        return func(customer, *args, **kwargs)

    return wrapper


def cron_secret_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        expected = current_app.config.get("CRON_SECRET")
        header = request.headers.get("Authorization", "")
        if expected and secrets.compare_digest(
            header.encode("utf-8"), f"Bearer {expected}".encode("utf-8")
        ):
            return func(*args, **kwargs)
        if session.get("admin_authenticated"):
            return func(*args, **kwargs)
        return jsonify({"error": "Unauthorized"}), 401

    return wrapper


def current_admin_id() -> int | None:
    return _coerce_int(session.get("admin_user_id"))


def invalidate_dashboard_overview_cache(app: Flask | None = None) -> None:
    target_app = app
    if target_app is None:
        try:
            target_app = current_app._get_current_object()
        except RuntimeError:
            target_app = None

    if target_app is None:
        return

    target_app.config.pop(DASHBOARD_OVERVIEW_CACHE_KEY, None)


def get_dashboard_overview_snapshot(app: Flask) -> dict[str, object]:
    ttl_seconds = float(
        app.config.get(
            "DASHBOARD_OVERVIEW_CACHE_SECONDS",
            DASHBOARD_OVERVIEW_CACHE_SECONDS_DEFAULT,
        )
    )
    now_monotonic = time.monotonic()
    cached = app.config.get(DASHBOARD_OVERVIEW_CACHE_KEY)

    if cached and cached.get("expires_at", 0) > now_monotonic:
        return cached["payload"]

    today = date.today()
    month_start = today.replace(day=1)
    month_start_at = datetime(month_start.year, month_start.month, 1, tzinfo=UTC)

    total_customers = Customer.query.count()
    active_customers = Customer.query.filter_by(status="Active").count()
    suspended_customers = Customer.query.filter_by(status="Suspended").count()
    new_this_month = Customer.query.filter(Customer.created_at >= month_start_at).count()

    monthly_revenue_cents = (
        db.session.query(db.func.coalesce(db.func.sum(Payment.amount_cents), 0))
        .filter(Payment.status == "Completed", Payment.paid_at >= month_start_at)
        .scalar()
    )
    outstanding_cents = (
        db.session.query(
            db.func.coalesce(
                db.func.sum(Invoice.total_cents - Invoice.amount_paid_cents), 0
            )
        )
        .filter(Invoice.status.in_(OPEN_INVOICE_STATUSES))
        .scalar()
    )
    overdue_count = Invoice.query.filter(Invoice.status == "Overdue").count()
    overdue_cents = (
        db.session.query(
            db.func.coalesce(
                db.func.sum(Invoice.total_cents - Invoice.amount_paid_cents), 0
            )
        )
        .filter(Invoice.status == "Overdue")
        .scalar()
    )

    inventory_items = InventoryItem.query.filter_by(status="active").count()
    stock_value_cents = (
        db.session.query(
            db.func.coalesce(
                db.func.sum(InventoryItem.stock_quantity * InventoryItem.unit_cost_cents), 0
            )
        )
        .filter(InventoryItem.status == "active")
        .scalar()
    )
    low_stock = InventoryItem.query.filter(
        InventoryItem.status == "active",
        InventoryItem.stock_quantity <= InventoryItem.reorder_level,
    ).count()

    subnet_total = Subnet.query.count()
    ip_total = IPAddress.query.count()
    ip_assigned = IPAddress.query.filter_by(status="assigned").count()

    open_tickets = SupportTicket.query.filter(
        SupportTicket.status.in_(["open", "in_progress"])
    ).count()
    recent_tickets = (
        SupportTicket.query.order_by(SupportTicket.created_at.desc()).limit(5).all()
    )
    recent_activity = (
        ActivityLog.query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
        .limit(10)
        .all()
    )

    overview_payload = {
        "generated_at": utcnow().isoformat(),
        "customers": {
            "total": total_customers,
            "active": active_customers,
            "suspended": suspended_customers,
            "new_this_month": new_this_month,
        },
        "billing": {
            "monthly_revenue_cents": monthly_revenue_cents,
            "outstanding_cents": outstanding_cents,
            "overdue_invoices": overdue_count,
            "overdue_amount_cents": overdue_cents,
        },
        "inventory": {
            "active_items": inventory_items,
            "stock_value_cents": stock_value_cents,
            "low_stock_items": low_stock,
        },
        "network": {
            "subnets": subnet_total,
            "ip_addresses": ip_total,
            "assigned_ips": ip_assigned,
            "utilization_percent": round(ip_assigned * 100 / ip_total, 1) if ip_total else 0.0,
        },
        "support": {
            "open_tickets": open_tickets,
            "recent_tickets": [
                {
                    "id": ticket.id,
                    "ticket_number": ticket.ticket_number,
                    "subject": ticket.subject,
                    "priority": ticket.priority,
                    "status": ticket.status,
                }
                for ticket in recent_tickets
            ],
        },
        "recent_activity": [
            {
                "level": entry.level,
                "category": entry.category,
                "message": entry.message,
                "created_at": _isoformat(entry.created_at),
            }
            for entry in recent_activity
        ],
    }

    app.config[DASHBOARD_OVERVIEW_CACHE_KEY] = {
        "payload": overview_payload,
        "expires_at": now_monotonic + ttl_seconds,
    }

    return overview_payload


def _dashboard_overview_cache_invalidator(mapper, connection, target):  # noqa: ARG001
    invalidate_dashboard_overview_cache()


for model in (
    Customer,
    Invoice,
    Payment,
    InventoryItem,
    Subnet,
    IPAddress,
    SupportTicket,
):
    for event_name in ("after_insert", "after_update", "after_delete"):
        event.listen(model, event_name, _dashboard_overview_cache_invalidator)


# -- Customers and billing ----------------------------------------------------


def get_or_create_billing_config(customer: Customer) -> CustomerBillingConfig:
    if customer.billing_config is not None:
        return customer.billing_config

    settings = get_company_settings()
    config = CustomerBillingConfig(
        customer=customer,
        billing_cycle="monthly",
        billing_day=1,
        payment_terms_days=settings.default_payment_terms_days,
        tax_rate=settings.default_tax_rate,
        tax_inclusive=False,
        tax_exempt=False,
        prorata_enabled=True,
        auto_generate=True,
        auto_send_reminders=True,
        reminder_days_before=DEFAULT_REMINDER_DAYS_BEFORE,
        reminder_days_after=DEFAULT_REMINDER_DAYS_AFTER,
    )
    db.session.add(config)
    db.session.flush()
    return config


def calculate_customer_balance(customer: Customer) -> dict[str, int]:
    """Summarise what a customer owes.

    ``balance_cents`` is positive when the customer is in credit. Overpayment
    credits point back at the payment that created them and are already part
    of ``paid``, so only stand-alone adjustments move the balance.
    """

    invoiced = sum(
        invoice.total_cents for invoice in customer.invoices if invoice.status != "Cancelled"
    )
    paid = sum(
        payment.amount_cents for payment in customer.payments if payment.status == "Completed"
    )
    credits = sum(
        adjustment.amount_cents
        for adjustment in customer.adjustments
        if adjustment.adjustment_type == "credit"
        and adjustment.status == "approved"
        and adjustment.payment_id is None
    )
    debits = sum(
        adjustment.amount_cents
        for adjustment in customer.adjustments
        if adjustment.adjustment_type == "debit" and adjustment.status == "approved"
    )
    outstanding = sum(
        invoice.balance_cents
        for invoice in customer.invoices
        if invoice.status in OPEN_INVOICE_STATUSES
    )
    return {
        "invoiced_cents": invoiced,
        "paid_cents": paid,
        "credits_cents": credits,
        "debits_cents": debits,
        "outstanding_cents": outstanding,
        "balance_cents": paid + credits - invoiced - debits,
    }


def refresh_invoice_status(invoice: Invoice, today: date | None = None) -> None:
    if invoice.status == "Cancelled":
        return
    today = today or date.today()
    if invoice.amount_paid_cents >= invoice.total_cents:
        invoice.status = "Paid"
        invoice.paid_at = invoice.paid_at or utcnow()
    elif invoice.due_date is not None and invoice.due_date < today:
        invoice.status = "Overdue"
    elif invoice.amount_paid_cents > 0:
        invoice.status = "Partial"
    else:
        invoice.status = "Pending"


def apply_customer_credit(customer: Customer) -> list[dict[str, object]]:
    """Settle open invoices from unapplied credit notes, oldest due date first.

    Both manual credits and overpayment credits are drawn down in the order
    they were issued. Applying credit moves ``outstanding_cents`` only; the
    ledger balance already counts the credit.
    """

    credits = [
        credit
        for credit in FinancialAdjustment.query.filter_by(
            customer_id=customer.id, adjustment_type="credit", status="approved"
        )
        .order_by(FinancialAdjustment.created_at.asc(), FinancialAdjustment.id.asc())
        .all()
        if credit.unapplied_cents > 0
    ]
    if not credits:
        return []

    invoices = (
        Invoice.query.filter(
            Invoice.customer_id == customer.id,
            Invoice.status.in_(OPEN_INVOICE_STATUSES),
        )
        .order_by(Invoice.due_date.asc(), Invoice.created_at.asc(), Invoice.id.asc())
        .all()
    )

    applications: list[dict[str, object]] = []
    for invoice in invoices:
        touched = False
        for credit in credits:
            due = invoice.balance_cents
            if due <= 0:
                break
            available = credit.unapplied_cents
            if available <= 0:
                continue
            applied = min(due, available)
            credit.applied_cents = (credit.applied_cents or 0) + applied
            invoice.amount_paid_cents += applied
            db.session.add(
                CreditApplication(adjustment=credit, invoice=invoice, amount_cents=applied)
            )
            applications.append(
                {
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "credit_reference": credit.reference_number,
                    "amount_cents": applied,
                }
            )
            touched = True
        if touched:
            refresh_invoice_status(invoice)

    if applications:
        db.session.flush()
        log_activity(
            "INFO",
            "billing",
            "billing",
            (
                f"Applied {format_money(sum(a['amount_cents'] for a in applications))} "
                f"of account credit for {customer.account_number}"
            ),
            {"applications": applications},
            customer_id=customer.id,
        )
    return applications


def suspend_customer(
    customer: Customer,
    reason: str,
    *,
    release_ips: bool = False,
    performed_by: int | None = None,
    source: str = "customer-management",
) -> dict[str, object]:
    previous_status = customer.status
    now = utcnow()
    affected_services = 0
    released: list[str] = []

    for service in customer.services:
        if service.status != "Active":
            continue
        service.status = "Suspended"
        service.suspended_at = now
        affected_services += 1
        if release_ips:
            released.extend(release_service_ips(service))

    customer.status = "Suspended"
    customer.suspension_reason = reason
    customer.suspended_at = now

    details = {
        "previous_status": previous_status,
        "affected_services": affected_services,
        "released_ips": released,
        "performed_by": performed_by,
    }
    log_activity(
        "INFO",
        source,
        "admin",
        f"Customer {customer.account_number} suspended: {reason}",
        details,
        customer_id=customer.id,
    )
    return details


def restore_customer_service(
    customer: Customer, *, note: str, source: str = "customer-management"
) -> int:
    now = utcnow()
    restored = 0
    for service in customer.services:
        if service.status == "Suspended":
            service.status = "Active"
            service.suspended_at = None
            service.activated_at = service.activated_at or now
            restored += 1

    customer.status = "Active"
    customer.suspension_reason = None
    customer.suspended_at = None
    log_activity(
        "INFO",
        source,
        "admin",
        f"Customer {customer.account_number} restored: {note}",
        {"restored_services": restored},
        customer_id=customer.id,
    )
    return restored


def activate_pending_services(customer: Customer) -> list[CustomerService]:
    today = date.today()
    activated = []
    for service in customer.services:
        if service.status != "Pending":
            continue
        if service.start_date is not None and service.start_date > today:
            continue
        service.status = "Active"
        service.activated_at = utcnow()
        activated.append(service)

    if activated and customer.status == "Pending":
        customer.status = "Active"
    return activated


def recalculate_customer_billing_state(customer: Customer) -> None:
    today = date.today()
    for invoice in customer.invoices:
        if invoice.status in ("Pending", "Partial"):
            refresh_invoice_status(invoice, today)

    has_overdue = any(
        invoice.status == "Overdue" and invoice.balance_cents > 0
        for invoice in customer.invoices
    )
    if (
        customer.status == "Suspended"
        and customer.suspension_reason == BILLING_HOLD_REASON
        and not has_overdue
    ):
        restore_customer_service(
            customer, note="overdue balance cleared", source="billing-automation"
        )


def build_invoice_lines(raw_items: object) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise BillingError("At least one invoice line is required.")

    lines = []
    for index, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise BillingError(f"Invoice line {index} is malformed.")
        description = str(raw.get("description") or "").strip()
        quantity = _coerce_int(raw.get("quantity", 1))
        unit_price_cents = parse_amount_cents(raw.get("unit_price", raw.get("amount")))
        if not description:
            raise BillingError(f"Invoice line {index} needs a description.")
        if quantity is None or quantity <= 0:
            raise BillingError(f"Invoice line {index} needs a positive quantity.")
        if unit_price_cents is None or unit_price_cents < 0:
            raise BillingError(f"Invoice line {index} needs a valid unit price.")
        lines.append(
            {
                "description": description,
                "quantity": quantity,
                "unit_price_cents": unit_price_cents,
            }
        )
    return lines


def create_invoice_record(
    customer: Customer,
    lines: list[dict],
    *,
    description: str | None = None,
    due_date: date | None = None,
    period_start: date | None = None,
    period_end: date | None = None,
    is_prorated: bool = False,
    notes: str | None = None,
) -> Invoice:
    if not lines:
        raise BillingError("At least one invoice line is required.")

    config = get_or_create_billing_config(customer)
    today = date.today()
    line_total = sum(line["quantity"] * line["unit_price_cents"] for line in lines)
    tax_rate = Decimal(str(config.tax_rate or 0))
    subtotal, tax, total = compute_tax(
        line_total, tax_rate, inclusive=config.tax_inclusive, exempt=config.tax_exempt
    )

    invoice = Invoice(
        invoice_number=next_document_number(Invoice.invoice_number, "INV"),
        customer=customer,
        description=description,
        status="Pending",
        subtotal_cents=subtotal,
        tax_cents=tax,
        total_cents=total,
        amount_paid_cents=0,
        tax_rate=Decimal(0) if config.tax_exempt else tax_rate,
        issue_date=today,
        due_date=due_date or today + timedelta(days=config.payment_terms_days),
        period_start=period_start,
        period_end=period_end,
        is_prorated=is_prorated,
        notes=notes,
    )
    for line in lines:
        invoice.items.append(
            InvoiceItem(
                customer_service_id=line.get("customer_service_id"),
                description=line["description"],
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
                total_cents=line["quantity"] * line["unit_price_cents"],
            )
        )
    db.session.add(invoice)
    db.session.flush()
    apply_customer_credit(customer)
    return invoice


def generate_service_invoice(
    customer: Customer,
    *,
    period_start: date | None = None,
    period_end: date | None = None,
    prorate: bool = False,
    source: str = "billing",
) -> Invoice:
    services = customer.active_services()
    if not services:
        raise BillingError("No active services found for this customer.")

    config = get_or_create_billing_config(customer)
    start = period_start or date.today()
    end = period_end or billing_period_end(start, config.billing_cycle)
    if end < start:
        raise BillingError("The billing period cannot end before it starts.")

    factor = Decimal(1)
    if prorate and config.prorata_enabled:
        factor = prorata_factor(start, end, config.billing_cycle)
    is_prorated = factor < 1

    lines = []
    for service in services:
        plan = service.plan
        description = f"{plan.name} ({start.isoformat()} to {end.isoformat()})"
        if is_prorated:
            description += " - prorated"
        lines.append(
            {
                "customer_service_id": service.id,
                "description": description,
                "quantity": 1,
                "unit_price_cents": round_cents(Decimal(plan.price_cents) * factor),
            }
        )

    invoice = create_invoice_record(
        customer,
        lines,
        description=f"Service charges {start:%b %Y}",
        period_start=start,
        period_end=end,
        is_prorated=is_prorated,
    )
    config.last_invoice_date = start
    log_activity(
        "INFO",
        source,
        "billing",
        f"Invoice {invoice.invoice_number} generated for {customer.account_number}",
        {
            "invoice_id": invoice.id,
            "total_cents": invoice.total_cents,
            "services": len(services),
            "prorated": is_prorated,
        },
        customer_id=customer.id,
    )
    return invoice


def notify_invoice_issued(invoice: Invoice) -> bool:
    customer = invoice.customer
    if not customer.email:
        return False
    currency = get_company_settings().currency
    due_line = (
        f"Due date: {invoice.due_date.isoformat()}" if invoice.due_date else "Due date: Not set"
    )
    return send_email_notification(
        customer.email,
        f"Invoice {invoice.invoice_number}",
        (
            f"Hello {customer.first_name},\n\n"
            f"Invoice {invoice.invoice_number} for {format_money(invoice.total_cents, currency)} "
            "has been issued to your account.\n"
            f"{due_line}\n\n"
            f"Pay via M-Pesa using account number {customer.account_number}."
        ),
    )


def run_automated_billing(today: date | None = None) -> dict[str, object]:
    today = today or date.today()
    summary: dict[str, object] = {
        "processed": 0,
        "generated": 0,
        "skipped": 0,
        "errors": 0,
        "details": [],
    }
    generated_invoices: list[Invoice] = []

    customers = Customer.query.filter_by(status="Active").order_by(Customer.id.asc()).all()
    for customer in customers:
        config = get_or_create_billing_config(customer)
        if not config.auto_generate:
            continue

        summary["processed"] += 1
        anchor = config.last_invoice_date or _as_aware(customer.created_at).date()
        due_on = next_billing_date(anchor, config.billing_cycle, config.billing_day)

        if due_on > today:
            summary["skipped"] += 1
            summary["details"].append(
                {
                    "customer_id": customer.id,
                    "status": "skipped",
                    "next_billing_date": due_on.isoformat(),
                }
            )
            continue

        if not customer.active_services():
            summary["skipped"] += 1
            summary["details"].append(
                {"customer_id": customer.id, "status": "skipped", "reason": "no active services"}
            )
            continue

        try:
            invoice = generate_service_invoice(
                customer, period_start=today, source="billing-automation"
            )
        except BillingError as exc:
            summary["errors"] += 1
            summary["details"].append(
                {"customer_id": customer.id, "status": "error", "error": str(exc)}
            )
            continue

        generated_invoices.append(invoice)
        summary["generated"] += 1
        summary["details"].append(
            {
                "customer_id": customer.id,
                "status": "generated",
                "invoice_number": invoice.invoice_number,
                "total_cents": invoice.total_cents,
            }
        )

    log_activity(
        "ERROR" if summary["errors"] else "INFO",
        "billing-automation",
        "billing",
        (
            f"Automated billing processed {summary['processed']} customers and "
            f"generated {summary['generated']} invoices"
        ),
        {key: value for key, value in summary.items() if key != "details"},
    )
    db.session.commit()

    for invoice in generated_invoices:
        notify_invoice_issued(invoice)
    return summary


def sweep_overdue_invoices(today: date | None = None) -> dict[str, object]:
    today = today or date.today()
    settings = get_company_settings()

    marked = 0
    for invoice in Invoice.query.filter(
        Invoice.status.in_(["Pending", "Partial"]),
        Invoice.due_date.isnot(None),
        Invoice.due_date < today,
    ).all():
        invoice.status = "Overdue"
        marked += 1
    db.session.flush()

    cutoff = today - timedelta(days=settings.suspension_grace_days)
    delinquent = (
        Customer.query.join(Invoice, Invoice.customer_id == Customer.id)
        .filter(
            Customer.status == "Active",
            Invoice.status == "Overdue",
            Invoice.due_date < cutoff,
        )
        .distinct()
        .all()
    )
    suspended = []
    for customer in delinquent:
        suspend_customer(customer, BILLING_HOLD_REASON, source="billing-automation")
        suspended.append(customer.account_number)

    log_activity(
        "WARNING" if suspended else "INFO",
        "billing-automation",
        "billing",
        f"Overdue sweep marked {marked} invoices and suspended {len(suspended)} customers",
        {"marked_overdue": marked, "suspended": suspended},
    )
    db.session.commit()
    return {"marked_overdue": marked, "suspended": suspended}


def _reminder_message(invoice: Invoice, reminder_type: str, currency: str) -> tuple[str, str]:
    customer = invoice.customer
    amount = format_money(invoice.balance_cents, currency)
    due = invoice.due_date.isoformat()
    if reminder_type == "before_due":
        return (
            "Payment Reminder",
            (
                f"Dear {customer.full_name}, invoice {invoice.invoice_number} for {amount} "
                f"is due on {due}. Pay via M-Pesa using account number "
                f"{customer.account_number} to avoid service interruption."
            ),
        )
    return (
        "Overdue Payment Notice",
        (
            f"Dear {customer.full_name}, invoice {invoice.invoice_number} for {amount} "
            f"was due on {due} and is now overdue. Please pay immediately to avoid "
            "service suspension."
        ),
    )


def run_payment_reminders(today: date | None = None) -> dict[str, object]:
    """Send before-due and after-due reminders for open invoices.

    A reminder fires on the exact day ``reminder_days_before`` ahead of the due
    date, or ``reminder_days_after`` past it, and at most once per invoice and
    reminder type.
    """

    today = today or date.today()
    currency = get_company_settings().currency
    summary: dict[str, object] = {
        "processed": 0,
        "reminders_sent": 0,
        "errors": 0,
        "details": [],
    }

    invoices = (
        Invoice.query.join(Customer, Invoice.customer_id == Customer.id)
        .join(CustomerBillingConfig, CustomerBillingConfig.customer_id == Customer.id)
        .filter(
            Customer.status == "Active",
            CustomerBillingConfig.auto_send_reminders.is_(True),
            Invoice.status.in_(OPEN_INVOICE_STATUSES),
            Invoice.due_date.isnot(None),
        )
        .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        .all()
    )

    for invoice in invoices:
        if invoice.balance_cents <= 0:
            continue
        summary["processed"] += 1
        config = invoice.customer.billing_config
        days_to_due = (invoice.due_date - today).days
        if days_to_due > 0 and days_to_due == config.reminder_days_before:
            reminder_type = "before_due"
        elif days_to_due < 0 and -days_to_due == config.reminder_days_after:
            reminder_type = "after_due"
        else:
            continue

        if PaymentReminder.query.filter_by(
            invoice_id=invoice.id, reminder_type=reminder_type, status="sent"
        ).first():
            continue

        customer = invoice.customer
        subject, message = _reminder_message(invoice, reminder_type, currency)
        channels = []
        if send_email_notification(customer.email, subject, message):
            channels.append("email")
        if send_sms_notification(customer.phone, message):
            channels.append("sms")

        if not channels:
            summary["errors"] += 1
            summary["details"].append(
                {
                    "customer_id": customer.id,
                    "invoice_number": invoice.invoice_number,
                    "reminder_type": reminder_type,
                    "status": "error",
                    "error": "No notification channel accepted the reminder.",
                }
            )
            continue

        db.session.add(
            PaymentReminder(
                customer_id=customer.id,
                invoice_id=invoice.id,
                reminder_type=reminder_type,
                amount_cents=invoice.balance_cents,
                due_date=invoice.due_date,
                channels=",".join(channels),
                status="sent",
                sent_at=utcnow(),
            )
        )
        summary["reminders_sent"] += 1
        summary["details"].append(
            {
                "customer_id": customer.id,
                "customer_name": customer.full_name,
                "invoice_number": invoice.invoice_number,
                "reminder_type": reminder_type,
                "channels": channels,
                "status": "sent",
            }
        )

    log_activity(
        "ERROR" if summary["errors"] else "INFO",
        "billing-automation",
        "billing",
        (
            f"Payment reminders processed {summary['processed']} invoices and "
            f"sent {summary['reminders_sent']} reminders"
        ),
        {key: value for key, value in summary.items() if key != "details"},
    )
    db.session.commit()
    return summary


def build_customer_statement(
    customer: Customer, start: date | None = None, end: date | None = None
) -> dict[str, object]:
    entries: list[dict[str, object]] = []
    for invoice in customer.invoices:
        if invoice.status == "Cancelled":
            continue
        entries.append(
            {
                "date": invoice.issue_date,
                "type": "invoice",
                "reference": invoice.invoice_number,
                "description": invoice.description or "Invoice",
                "debit_cents": invoice.total_cents,
                "credit_cents": 0,
            }
        )
    for payment in customer.payments:
        if payment.status != "Completed":
            continue
        entries.append(
            {
                "date": _as_aware(payment.paid_at or payment.created_at).date(),
                "type": "payment",
                "reference": payment.mpesa_receipt_number or payment.reference_number,
                "description": f"Payment ({payment.method})",
                "debit_cents": 0,
                "credit_cents": payment.amount_cents,
            }
        )
    for adjustment in customer.adjustments:
        if adjustment.status != "approved" or adjustment.payment_id is not None:
            continue
        is_credit = adjustment.adjustment_type == "credit"
        entries.append(
            {
                "date": _as_aware(adjustment.created_at).date(),
                "type": adjustment.adjustment_type,
                "reference": adjustment.reference_number or f"ADJ-{adjustment.id}",
                "description": adjustment.reason,
                "debit_cents": 0 if is_credit else adjustment.amount_cents,
                "credit_cents": adjustment.amount_cents if is_credit else 0,
            }
        )

    entries.sort(key=lambda entry: (entry["date"], entry["type"] != "invoice"))

    opening = 0
    running = 0
    lines = []
    for entry in entries:
        movement = entry["debit_cents"] - entry["credit_cents"]
        if start and entry["date"] < start:
            opening += movement
            running += movement
            continue
        if end and entry["date"] > end:
            continue
        running += movement
        lines.append({**entry, "date": entry["date"].isoformat(), "balance_cents": running})

    return {
        "customer_id": customer.id,
        "account_number": customer.account_number,
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
        "opening_balance_cents": opening,
        "closing_balance_cents": running,
        "entries": lines,
    }


# -- Payments -----------------------------------------------------------------


def apply_payment(payment: Payment, invoice_ids: list[int] | None = None) -> dict[str, object]:
    """Allocate a completed payment to open invoices, oldest due date first."""

    customer = payment.customer
    query = Invoice.query.filter(
        Invoice.customer_id == customer.id,
        Invoice.status.in_(OPEN_INVOICE_STATUSES),
    )
    if invoice_ids:
        query = query.filter(Invoice.id.in_(invoice_ids))
    invoices = query.order_by(
        Invoice.due_date.asc(), Invoice.created_at.asc(), Invoice.id.asc()
    ).all()

    remaining = payment.amount_cents
    applications = []
    for invoice in invoices:
        if remaining <= 0:
            break
        due = invoice.balance_cents
        if due <= 0:
            continue
        applied = min(due, remaining)
        invoice.amount_paid_cents += applied
        refresh_invoice_status(invoice)
        db.session.add(
            PaymentApplication(payment=payment, invoice=invoice, amount_cents=applied)
        )
        remaining -= applied
        applications.append(
            {
                "invoice_id": invoice.id,
                "invoice_number": invoice.invoice_number,
                "amount_cents": applied,
                "status": invoice.status,
            }
        )

    credit_reference = None
    if remaining > 0:
        credit = FinancialAdjustment(
            customer=customer,
            adjustment_type="credit",
            amount_cents=remaining,
            reason=f"Overpayment credit from payment ID {payment.id}",
            reference_number=next_document_number(FinancialAdjustment.reference_number, "CN"),
            payment_id=payment.id,
            status="approved",
        )
        db.session.add(credit)
        db.session.flush()
        credit_reference = credit.reference_number

    credit_applications = apply_customer_credit(customer) if remaining > 0 else []
    activated = activate_pending_services(customer)
    recalculate_customer_billing_state(customer)
    return {
        "applications": applications,
        "credit_applications": credit_applications,
        "overpayment_cents": remaining,
        "credit_reference": credit_reference,
        "activated_services": [service.id for service in activated],
    }


def record_payment(
    customer: Customer,
    amount_cents: int | None,
    method: str,
    *,
    invoice_ids: list[int] | None = None,
    notes: str | None = None,
    mpesa_receipt_number: str | None = None,
    external_reference: str | None = None,
    performed_by: int | None = None,
) -> tuple[Payment, dict[str, object]]:
    if amount_cents is None or amount_cents <= 0:
        raise BillingError("Payment amount must be greater than zero.")
    if method not in PAYMENT_METHOD_OPTIONS:
        raise BillingError(
            f"Unsupported payment method. Use one of: {', '.join(PAYMENT_METHOD_OPTIONS)}."
        )

    payment = Payment(
        customer=customer,
        amount_cents=amount_cents,
        method=method,
        status="Completed",
        notes=notes,
        mpesa_receipt_number=mpesa_receipt_number,
        external_reference=external_reference,
        paid_at=utcnow(),
    )
    db.session.add(payment)
    db.session.flush()

    result = apply_payment(payment, invoice_ids=invoice_ids)
    log_activity(
        "SUCCESS",
        "payment-processing",
        "payments",
        f"Payment {payment.reference_number} of {format_money(amount_cents)} recorded via {method}",
        {
            "payment_id": payment.id,
            "applied_invoices": len(result["applications"]),
            "overpayment_cents": result["overpayment_cents"],
            "performed_by": performed_by,
        },
        customer_id=customer.id,
    )
    return payment, result


def complete_pending_payment(payment: Payment) -> dict[str, object]:
    payment.status = "Completed"
    payment.paid_at = utcnow()
    db.session.flush()
    return apply_payment(payment)


def notify_payment_received(payment: Payment) -> bool:
    customer = payment.customer
    currency = get_company_settings().currency
    balance = calculate_customer_balance(customer)
    reference = payment.mpesa_receipt_number or payment.reference_number
    return send_sms_notification(
        customer.phone,
        (
            f"Dear {customer.first_name}, we have received {format_money(payment.amount_cents, currency)} "
            f"(ref {reference}). Outstanding balance: "
            f"{format_money(balance['outstanding_cents'], currency)}."
        ),
    )


# -- M-Pesa payments ----------------------------------------------------------


def initiate_stk_push(
    customer: Customer, phone_raw: str | None, amount_cents: int | None
) -> MpesaTransaction:
    phone = normalize_mpesa_phone(phone_raw or customer.phone)
    if not phone:
        raise BillingError("Provide a valid Safaricom phone number, e.g. 0712345678.")
    if amount_cents is None or amount_cents < 100:
        raise BillingError("M-Pesa payments must be at least 1.")
    if amount_cents % 100:
        raise BillingError("M-Pesa amounts must be whole shillings.")

    client = build_mpesa_client(current_app)
    callback_url = current_app.config.get("MPESA_CALLBACK_URL") or url_for(
        "mpesa_callback", _external=True
    )
    response = client.stk_push(
        phone_number=phone,
        amount=amount_cents // 100,
        account_reference=customer.account_number,
        description="Internet bill",
        callback_url=callback_url,
    )

    payment = Payment(
        customer=customer,
        amount_cents=amount_cents,
        method="mpesa",
        status="Pending",
        notes="STK push initiated",
    )
    transaction = MpesaTransaction(
        customer=customer,
        payment=payment,
        checkout_request_id=response.get("CheckoutRequestID"),
        merchant_request_id=response.get("MerchantRequestID"),
        transaction_type="STK",
        amount_cents=amount_cents,
        phone_number=phone,
        bill_ref_number=customer.account_number,
        status="pending",
    )
    db.session.add_all([payment, transaction])
    db.session.flush()
    log_activity(
        "INFO",
        "mpesa",
        "mpesa",
        f"STK push sent to {phone} for {format_money(amount_cents)}",
        {"checkout_request_id": transaction.checkout_request_id},
        customer_id=customer.id,
    )
    return transaction


def match_mpesa_customer(bill_ref: str | None, phone: str | None) -> Customer | None:
    reference = (bill_ref or "").strip()
    if reference:
        customer = Customer.query.filter(
            db.func.upper(Customer.account_number) == reference.upper()
        ).first()
        if customer:
            return customer

    normalized = normalize_mpesa_phone(phone)
    if not normalized:
        return None
    for candidate in Customer.query.filter(Customer.phone.isnot(None)).all():
        if normalize_mpesa_phone(candidate.phone) == normalized:
            return candidate
    return None


def process_mpesa_callback(body: dict) -> dict[str, object]:
    envelope = body.get("Body") if isinstance(body.get("Body"), dict) else {}
    stk_callback = envelope.get("stkCallback")
    if isinstance(stk_callback, dict):
        return _process_stk_callback(stk_callback, body)
    if body.get("TransactionType"):
        return _process_c2b_confirmation(body)

    log_activity(
        "WARNING", "mpesa", "mpesa", "Unrecognised M-Pesa callback payload", {"keys": list(body)}
    )
    return {"handled": False}


def _process_stk_callback(callback: dict, body: dict) -> dict[str, object]:
    checkout_id = callback.get("CheckoutRequestID")
    result_code = _coerce_int(callback.get("ResultCode"))
    result_desc = callback.get("ResultDesc")

    transaction = None
    if checkout_id:
        transaction = MpesaTransaction.query.filter_by(checkout_request_id=checkout_id).first()
    if transaction is not None and transaction.status in {"completed", "failed", "unmatched"}:
        log_activity(
            "INFO",
            "mpesa",
            "mpesa",
            f"Duplicate STK callback ignored for {checkout_id}",
            customer_id=transaction.customer_id,
        )
        return {"handled": True, "duplicate": True, "status": transaction.status}

    if transaction is None:
        transaction = MpesaTransaction(
            checkout_request_id=checkout_id,
            merchant_request_id=callback.get("MerchantRequestID"),
            transaction_type="STK",
            status="pending",
        )
        db.session.add(transaction)

    transaction.result_code = result_code
    transaction.result_desc = result_desc
    transaction.callback_data = json.dumps(body)

    if result_code == 0:
        metadata = _stk_metadata(callback)
        amount_cents = parse_amount_cents(metadata.get("Amount"))
        receipt = metadata.get("MpesaReceiptNumber")
        phone = metadata.get("PhoneNumber")
        if amount_cents:
            transaction.amount_cents = amount_cents
        transaction.mpesa_receipt_number = str(receipt) if receipt else None
        transaction.transaction_date = parse_mpesa_timestamp(metadata.get("TransactionDate"))
        if phone:
            transaction.phone_number = str(phone)

        payment = transaction.payment
        if payment is None and transaction.customer is not None:
            payment = Payment(
                customer=transaction.customer,
                amount_cents=transaction.amount_cents,
                method="mpesa",
                status="Pending",
            )
            db.session.add(payment)
            transaction.payment = payment

        if payment is None:
            transaction.status = "unmatched"
            log_activity(
                "WARNING",
                "mpesa",
                "mpesa",
                f"STK payment {receipt} has no matching request",
                {"checkout_request_id": checkout_id},
            )
            return {"handled": True, "status": transaction.status}

        payment.amount_cents = transaction.amount_cents or payment.amount_cents
        payment.mpesa_receipt_number = transaction.mpesa_receipt_number
        transaction.status = "completed"
        result = complete_pending_payment(payment)
        log_activity(
            "SUCCESS",
            "mpesa",
            "mpesa",
            f"Payment successful: {format_money(payment.amount_cents)} from {transaction.phone_number}",
            {
                "receipt": transaction.mpesa_receipt_number,
                "checkout_request_id": checkout_id,
                "applied_invoices": len(result["applications"]),
            },
            customer_id=payment.customer_id,
        )
        return {"handled": True, "status": transaction.status, "payment_id": payment.id}

    transaction.status = "failed"
    if transaction.payment is not None and transaction.payment.status == "Pending":
        transaction.payment.status = "Failed"
    log_activity(
        "ERROR",
        "mpesa",
        "mpesa",
        f"Payment failed: {result_desc}",
        {"result_code": result_code, "checkout_request_id": checkout_id},
        customer_id=transaction.customer_id,
    )
    return {"handled": True, "status": transaction.status}


def _process_c2b_confirmation(body: dict) -> dict[str, object]:
    trans_id = str(body.get("TransID") or "").strip()
    if not trans_id:
        raise ValueError("C2B confirmation is missing TransID.")

    existing = MpesaTransaction.query.filter_by(transaction_id=trans_id).first()
    if existing is not None:
        return {"handled": True, "duplicate": True, "status": existing.status}

    amount_cents = parse_amount_cents(body.get("TransAmount"))
    if not amount_cents or amount_cents <= 0:
        raise ValueError(f"C2B confirmation {trans_id} has an invalid amount.")

    phone = str(body.get("MSISDN") or "").strip()
    bill_ref = str(body.get("BillRefNumber") or "").strip()
    payer_name = " ".join(
        str(body.get(key) or "").strip()
        for key in ("FirstName", "MiddleName", "LastName")
        if body.get(key)
    )
    transaction = MpesaTransaction(
        transaction_id=trans_id,
        transaction_type=body.get("TransactionType"),
        mpesa_receipt_number=trans_id,
        amount_cents=amount_cents,
        phone_number=phone,
        bill_ref_number=bill_ref,
        payer_name=payer_name or None,
        result_code=0,
        transaction_date=parse_mpesa_timestamp(body.get("TransTime")),
        callback_data=json.dumps(body),
        status="pending",
    )
    db.session.add(transaction)

    customer = match_mpesa_customer(bill_ref, phone)
    if customer is None:
        transaction.status = "unmatched"
        log_activity(
            "WARNING",
            "mpesa",
            "mpesa",
            f"Unmatched M-Pesa payment {trans_id} for account '{bill_ref}'",
            {"amount_cents": amount_cents, "phone_number": phone},
        )
        return {"handled": True, "status": transaction.status}

    payment, _ = record_payment(
        customer,
        amount_cents,
        "mpesa",
        mpesa_receipt_number=trans_id,
        notes=f"M-Pesa paybill {bill_ref}",
    )
    transaction.customer = customer
    transaction.payment = payment
    transaction.status = "completed"
    return {"handled": True, "status": transaction.status, "payment_id": payment.id}


def assign_unmatched_transaction(
    transaction: MpesaTransaction, customer: Customer, performed_by: int | None = None
) -> Payment:
    if transaction.status != "unmatched":
        raise BillingError("Only unmatched M-Pesa transactions can be assigned.")
    if not transaction.amount_cents:
        raise BillingError("The transaction has no amount to apply.")

    payment, _ = record_payment(
        customer,
        transaction.amount_cents,
        "mpesa",
        mpesa_receipt_number=transaction.mpesa_receipt_number,
        notes="Reconciled from unmatched M-Pesa transaction",
        performed_by=performed_by,
    )
    transaction.customer = customer
    transaction.payment = payment
    transaction.status = "completed"
    return payment


# -- Stripe card payments -----------------------------------------------------


def _metadata_dict(stripe_object: object) -> dict[str, str]:
    metadata = getattr(stripe_object, "metadata", None) or {}
    if isinstance(metadata, dict):
        return {str(key): str(value) for key, value in metadata.items()}
    try:
        return {str(key): str(value) for key, value in dict(metadata).items()}
    except (TypeError, ValueError):
        return {}


def create_card_payment_intent(invoice: Invoice) -> object:
    balance = invoice.balance_cents
    if balance <= 0:
        raise BillingError("This invoice has no outstanding balance.")

    currency = get_company_settings().currency.lower()
    intent = stripe.PaymentIntent.create(
        amount=balance,
        currency=currency,
        description=f"Invoice {invoice.invoice_number}",
        metadata={
            "invoice_id": str(invoice.id),
            "customer_id": str(invoice.customer_id),
        },
    )
    invoice.stripe_payment_intent_id = getattr(intent, "id", None)
    return intent


def _find_invoice_for_intent(intent: object) -> Invoice | None:
    metadata = _metadata_dict(intent)
    invoice_id = _coerce_int(metadata.get("invoice_id"))
    if invoice_id:
        invoice = db.session.get(Invoice, invoice_id)
        if invoice:
            return invoice
    intent_id = getattr(intent, "id", None)
    if intent_id:
        return Invoice.query.filter_by(stripe_payment_intent_id=intent_id).first()
    return None


def handle_stripe_event(event: object) -> bool:
    event_type = getattr(event, "type", "")
    data_object = getattr(getattr(event, "data", None), "object", None)
    if not data_object:
        return False

    if event_type == "payment_intent.succeeded":
        return _handle_payment_intent_succeeded(data_object)
    if event_type == "payment_intent.payment_failed":
        return _handle_payment_intent_failed(data_object)
    return False


def _handle_payment_intent_succeeded(intent: object) -> bool:
    invoice = _find_invoice_for_intent(intent)
    if invoice is None:
        return False

    intent_id = getattr(intent, "id", None)
    if intent_id and Payment.query.filter_by(external_reference=intent_id).first():
        return True

    amount_cents = (
        _coerce_int(getattr(intent, "amount_received", None))
        or _coerce_int(getattr(intent, "amount", None))
        or invoice.balance_cents
    )
    record_payment(
        invoice.customer,
        amount_cents,
        "card",
        invoice_ids=[invoice.id],
        external_reference=intent_id,
        notes=f"Stripe payment for {invoice.invoice_number}",
    )
    return True


def _handle_payment_intent_failed(intent: object) -> bool:
    invoice = _find_invoice_for_intent(intent)
    if invoice is None:
        return False

    error = getattr(intent, "last_payment_error", None)
    message = getattr(error, "message", None) or "Card payment failed"
    log_activity(
        "WARNING",
        "stripe",
        "payments",
        f"Card payment for {invoice.invoice_number} failed: {message}",
        {"payment_intent": getattr(intent, "id", None)},
        customer_id=invoice.customer_id,
    )
    return True


def next_plain_number(column, prefix: str, width: int = 4) -> str:
    stem = f"{prefix}-"
    highest = 0
    for (value,) in db.session.query(column).filter(column.like(f"{stem}%")).all():
        suffix = _coerce_int((value or "")[len(stem):])
        if suffix and suffix > highest:
            highest = suffix
    return f"{stem}{highest + 1:0{width}d}"


# -- Inventory and equipment allocation ---------------------------------------

EQUIPMENT_CATEGORY = "Network Equipment"
CABLE_CATEGORY = "Cables"


def record_inventory_movement(
    item: InventoryItem,
    movement_type: str,
    quantity: int,
    *,
    reference_type: str | None = None,
    reference_number: str | None = None,
    unit_cost_cents: int | None = None,
    notes: str | None = None,
    performed_by: int | None = None,
) -> InventoryMovement:
    movement = InventoryMovement(
        item=item,
        movement_type=movement_type,
        quantity=quantity,
        reference_type=reference_type,
        reference_number=reference_number,
        unit_cost_cents=item.unit_cost_cents if unit_cost_cents is None else unit_cost_cents,
        notes=notes,
        performed_by=performed_by,
    )
    db.session.add(movement)
    return movement


def adjust_stock(
    item: InventoryItem, delta: int, reason: str, performed_by: int | None = None
) -> InventoryMovement:
    if delta == 0:
        raise InventoryError("Adjustment quantity cannot be zero.")
    new_quantity = item.stock_quantity + delta
    if new_quantity < 0:
        raise InventoryError(
            f"Cannot remove {abs(delta)} units; only {item.stock_quantity} in stock."
        )
    item.stock_quantity = new_quantity
    movement = record_inventory_movement(
        item,
        "adjustment",
        delta,
        reference_type="stock_adjustment",
        notes=reason,
        performed_by=performed_by,
    )
    log_activity(
        "INFO",
        "inventory-management",
        "inventory",
        f"Stock for {item.name} adjusted by {delta:+d}: {reason}",
        {"item_id": item.id, "new_quantity": new_quantity},
    )
    return movement


def primary_service_plan(customer: Customer) -> ServicePlan | None:
    for status in ("Active", "Pending"):
        for service in customer.services:
            if service.status == status:
                return service.plan
    return None


def default_equipment_requirements(customer: Customer) -> list[dict]:
    plan = primary_service_plan(customer)
    category = (plan.category or "").lower() if plan else ""
    speed = plan.download_speed if plan else 0

    if category == "business" or speed >= 100:
        return [
            {"category": EQUIPMENT_CATEGORY, "type": "router", "quantity": 1},
            {"category": EQUIPMENT_CATEGORY, "type": "switch", "quantity": 1},
            {"category": CABLE_CATEGORY, "type": "ethernet", "quantity": 2},
        ]
    if category == "residential":
        return [
            {"category": EQUIPMENT_CATEGORY, "type": "router", "quantity": 1},
            {"category": CABLE_CATEGORY, "type": "ethernet", "quantity": 1},
        ]
    return [{"category": EQUIPMENT_CATEGORY, "type": "router", "quantity": 1}]


def find_allocatable_item(category: str, keyword: str, quantity: int) -> InventoryItem | None:
    pattern = f"%{keyword.lower()}%"
    return (
        InventoryItem.query.filter(
            db.func.lower(InventoryItem.category) == category.lower(),
            InventoryItem.status == "active",
            InventoryItem.stock_quantity >= quantity,
            or_(
                db.func.lower(InventoryItem.name).like(pattern),
                db.func.lower(db.func.coalesce(InventoryItem.description, "")).like(pattern),
            ),
        )
        .order_by(
            InventoryItem.stock_quantity.desc(),
            InventoryItem.unit_cost_cents.asc(),
            InventoryItem.id.asc(),
        )
        .first()
    )


def allocate_equipment(
    customer: Customer,
    requirements: list[dict] | None = None,
    *,
    performed_by: int | None = None,
) -> dict[str, object]:
    automatic = not requirements
    requirements = requirements or default_equipment_requirements(customer)
    allocated: list[dict] = []
    errors: list[str] = []

    for raw in requirements:
        if not isinstance(raw, dict):
            errors.append("Skipped a malformed equipment requirement.")
            continue
        category = str(raw.get("category") or "").strip()
        keyword = str(raw.get("type") or "").strip()
        quantity = _coerce_int(raw.get("quantity", 1)) or 0
        if not category or not keyword or quantity <= 0:
            errors.append(f"Invalid requirement for '{keyword or category or 'unknown'}'.")
            continue

        item = find_allocatable_item(category, keyword, quantity)
        if item is None:
            errors.append(f"No available {keyword} in {category}")
            continue

        serials = [str(value).strip() for value in raw.get("serial_numbers") or [] if value]
        equipment = CustomerEquipment(
            customer=customer,
            item=item,
            equipment_name=item.name,
            quantity=quantity,
            unit_cost_cents=item.unit_cost_cents,
            serial_number=", ".join(serials) or None,
            status="allocated",
            notes="Allocated automatically" if automatic else "Allocated on request",
        )
        db.session.add(equipment)
        item.stock_quantity -= quantity
        record_inventory_movement(
            item,
            "allocated",
            -quantity,
            reference_type="customer_allocation",
            reference_number=customer.account_number,
            notes=f"Allocated to {customer.full_name}",
            performed_by=performed_by,
        )
        db.session.flush()

        for serial in serials:
            record = InventorySerialNumber.query.filter_by(
                inventory_item_id=item.id, serial_number=serial
            ).first()
            if record is not None and record.status == "in_stock":
                record.status = "allocated"
                record.customer_equipment_id = equipment.id

        allocated.append(
            {
                "equipment_id": equipment.id,
                "item_id": item.id,
                "name": item.name,
                "sku": item.sku,
                "type": keyword,
                "quantity": quantity,
                "unit_cost_cents": item.unit_cost_cents,
                "total_cost_cents": item.unit_cost_cents * quantity,
                "location": item.location,
            }
        )

    total_value = sum(entry["total_cost_cents"] for entry in allocated)
    log_activity(
        "WARNING" if errors else "INFO",
        "inventory-management",
        "inventory",
        (
            "Equipment allocation completed with errors"
            if errors
            else "Equipment allocation successful"
        ),
        {
            "allocated_items": len(allocated),
            "total_value_cents": total_value,
            "errors": errors,
            "allocation_type": "automatic" if automatic else "manual",
        },
        customer_id=customer.id,
    )
    return {
        "customer_id": customer.id,
        "allocated_equipment": allocated,
        "allocation_errors": errors,
        "total_allocated": len(allocated),
        "total_value_cents": total_value,
    }


def equipment_recommendations(plan: ServicePlan) -> list[dict]:
    category = (plan.category or "").lower()
    speed = plan.download_speed or 0
    business = category == "business"
    recommendations = []

    if business or speed >= 100:
        recommendations.append(
            {
                "category": EQUIPMENT_CATEGORY,
                "type": "enterprise_router",
                "name": "Enterprise Router",
                "quantity": 1,
                "priority": "high",
                "reason": "High-speed business plan requires an enterprise-grade router",
            }
        )
    else:
        recommendations.append(
            {
                "category": EQUIPMENT_CATEGORY,
                "type": "router",
                "name": "Standard Router",
                "quantity": 1,
                "priority": "high",
                "reason": "Basic router for residential service",
            }
        )
    if speed >= 500:
        recommendations.append(
            {
                "category": EQUIPMENT_CATEGORY,
                "type": "switch",
                "name": "Gigabit Switch",
                "quantity": 1,
                "priority": "medium",
                "reason": "High-speed connection benefits from a dedicated switch",
            }
        )
    recommendations.append(
        {
            "category": CABLE_CATEGORY,
            "type": "ethernet",
            "name": "Ethernet Cable",
            "quantity": 3 if business else 1,
            "priority": "high",
            "reason": "Cabling for router and client devices",
        }
    )

    for recommendation in recommendations:
        keyword = recommendation["type"].split("_")[-1]
        item = find_allocatable_item(
            recommendation["category"], keyword, recommendation["quantity"]
        )
        recommendation["available"] = item is not None
        recommendation["suggested_item"] = (
            {"id": item.id, "name": item.name, "stock_quantity": item.stock_quantity}
            if item
            else None
        )
        recommendation["estimated_cost_cents"] = (
            item.unit_cost_cents * recommendation["quantity"] if item else 0
        )
    return recommendations


def return_equipment(
    equipment: CustomerEquipment, condition: str, performed_by: int | None = None
) -> CustomerEquipment:
    if equipment.status != "allocated":
        raise InventoryError("This equipment has already been returned.")

    condition = (condition or "good").strip().lower()
    equipment.status = "damaged" if condition == "damaged" else "returned"
    equipment.return_condition = condition
    equipment.returned_at = utcnow()

    item = equipment.item
    if condition != "damaged":
        item.stock_quantity += equipment.quantity
        record_inventory_movement(
            item,
            "returned",
            equipment.quantity,
            reference_type="customer_return",
            reference_number=equipment.customer.account_number,
            notes=f"Returned in {condition} condition",
            performed_by=performed_by,
        )

    for serial in InventorySerialNumber.query.filter_by(
        customer_equipment_id=equipment.id
    ).all():
        serial.status = "returned" if condition == "damaged" else "in_stock"
        serial.customer_equipment_id = None

    log_activity(
        "INFO",
        "inventory-management",
        "inventory",
        f"{equipment.equipment_name} returned by {equipment.customer.account_number} ({condition})",
        {"equipment_id": equipment.id, "restocked": condition != "damaged"},
        customer_id=equipment.customer_id,
    )
    return equipment


# -- Suppliers and purchase orders --------------------------------------------


def create_purchase_order(
    supplier_id: object,
    raw_items: object,
    *,
    notes: str | None = None,
    created_by: int | None = None,
) -> PurchaseOrder:
    supplier = db.session.get(Supplier, _coerce_int(supplier_id)) if supplier_id else None
    if supplier is None:
        raise ProcurementError("A valid supplier is required.")
    if not supplier.is_active:
        raise ProcurementError(f"{supplier.company_name} is not an active supplier.")
    if not isinstance(raw_items, list) or not raw_items:
        raise ProcurementError("At least one item is required.")

    order = PurchaseOrder(
        order_number=next_document_number(PurchaseOrder.order_number, "PO"),
        supplier=supplier,
        status="Pending",
        notes=notes,
        created_by=created_by,
    )
    total = 0
    for index, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            raise ProcurementError(f"Item {index} is malformed.")
        item_id = _coerce_int(raw.get("inventory_item_id"))
        quantity = _coerce_int(raw.get("quantity"))
        unit_cost_cents = parse_amount_cents(raw.get("unit_cost"))
        inventory_item = db.session.get(InventoryItem, item_id) if item_id else None
        if inventory_item is None:
            raise ProcurementError(f"Item {index} references an unknown inventory item.")
        if quantity is None or quantity <= 0:
            raise ProcurementError(f"Item {index} needs a positive quantity.")
        if unit_cost_cents is None or unit_cost_cents < 0:
            raise ProcurementError(f"Item {index} needs a valid unit cost.")
        line_total = quantity * unit_cost_cents
        order.items.append(
            PurchaseOrderItem(
                item=inventory_item,
                quantity=quantity,
                unit_cost_cents=unit_cost_cents,
                total_cost_cents=line_total,
            )
        )
        total += line_total

    order.total_amount_cents = total
    db.session.add(order)
    db.session.flush()
    log_activity(
        "INFO",
        "procurement",
        "procurement",
        f"Purchase order {order.order_number} raised with {supplier.company_name}",
        {"purchase_order_id": order.id, "total_cents": total, "items": len(order.items)},
    )
    return order


def approve_purchase_order(order: PurchaseOrder) -> None:
    if order.status != "Pending":
        raise ProcurementError(f"Only pending orders can be approved (currently {order.status}).")
    order.status = "Approved"
    order.approved_at = utcnow()
    log_activity(
        "INFO",
        "procurement",
        "procurement",
        f"Purchase order {order.order_number} approved",
        {"purchase_order_id": order.id},
    )


def cancel_purchase_order(order: PurchaseOrder) -> None:
    if order.status in {"Received", "Cancelled"}:
        raise ProcurementError(f"A {order.status.lower()} order cannot be cancelled.")
    order.status = "Cancelled"
    order.cancelled_at = utcnow()
    log_activity(
        "INFO",
        "procurement",
        "procurement",
        f"Purchase order {order.order_number} cancelled",
        {"purchase_order_id": order.id},
    )


def receive_purchase_order(
    order: PurchaseOrder,
    received_items: object,
    serial_numbers: object = None,
    *,
    performed_by: int | None = None,
) -> dict[str, object]:
    """Book received goods into stock and raise the matching supplier invoice."""

    if order.status != "Approved":
        raise ProcurementError("Only approved purchase orders can be received.")
    if not isinstance(received_items, list):
        raise ProcurementError("Provide the items being received.")
    serial_map = serial_numbers if isinstance(serial_numbers, dict) else {}

    order_items = {item.id: item for item in order.items}
    received_lines: list[tuple[PurchaseOrderItem, int]] = []
    requiring_serials: list[dict] = []
    duplicate_serials: list[str] = []

    for entry in received_items:
        if not isinstance(entry, dict):
            continue
        po_item_id = _coerce_int(entry.get("purchase_order_item_id"))
        quantity = _coerce_int(entry.get("quantity_received"))
        if not po_item_id or quantity is None or quantity <= 0:
            continue
        po_item = order_items.get(po_item_id)
        if po_item is None:
            raise ProcurementError(f"Item {po_item_id} is not part of {order.order_number}.")
        outstanding = po_item.quantity - po_item.quantity_received
        if quantity > outstanding:
            raise ProcurementError(
                f"Cannot receive {quantity} of {po_item.item.name}; only {outstanding} outstanding."
            )

        po_item.quantity_received += quantity
        inventory_item = po_item.item
        inventory_item.stock_quantity += quantity
        record_inventory_movement(
            inventory_item,
            "received",
            quantity,
            reference_type="purchase_order",
            reference_number=order.order_number,
            unit_cost_cents=po_item.unit_cost_cents,
            notes=f"Received from {order.supplier.company_name}",
            performed_by=performed_by,
        )

        serials = serial_map.get(str(po_item.id)) or serial_map.get(po_item.id) or []
        stored = 0
        for raw_serial in serials:
            serial = str(raw_serial or "").strip()
            if not serial:
                continue
            if InventorySerialNumber.query.filter_by(serial_number=serial).first():
                duplicate_serials.append(serial)
                continue
            db.session.add(
                InventorySerialNumber(
                    inventory_item_id=inventory_item.id,
                    serial_number=serial,
                    purchase_order_id=order.id,
                    supplier_id=order.supplier_id,
                    status="in_stock",
                )
            )
            stored += 1

        if inventory_item.requires_serial and stored < quantity:
            requiring_serials.append(
                {
                    "purchase_order_item_id": po_item.id,
                    "inventory_item_id": inventory_item.id,
                    "name": inventory_item.name,
                    "quantity": quantity,
                    "serials_recorded": stored,
                }
            )
        received_lines.append((po_item, quantity))

    if not received_lines:
        raise ProcurementError("No valid items were provided to receive.")

    order.status = "Received"
    order.received_at = utcnow()

    supplier = order.supplier
    today = date.today()
    subtotal = sum(po_item.unit_cost_cents * quantity for po_item, quantity in received_lines)
    tax = round_cents(Decimal(subtotal) * SUPPLIER_VAT_RATE / Decimal(100))
    invoice = SupplierInvoice(
        invoice_number=f"SINV-{today.year}-{order.id:06d}",
        supplier=supplier,
        purchase_order=order,
        invoice_date=today,
        due_date=today
        + timedelta(days=supplier.payment_terms_days or DEFAULT_SUPPLIER_PAYMENT_TERMS_DAYS),
        subtotal_cents=subtotal,
        tax_cents=tax,
        total_cents=subtotal + tax,
        paid_cents=0,
        status="Unpaid",
        notes=f"Auto-generated on receipt of {order.order_number}",
        created_by=performed_by,
    )
    for po_item, quantity in received_lines:
        invoice.items.append(
            SupplierInvoiceItem(
                inventory_item_id=po_item.inventory_item_id,
                description=po_item.item.name,
                quantity=quantity,
                unit_cost_cents=po_item.unit_cost_cents,
                total_cents=po_item.unit_cost_cents * quantity,
            )
        )
    db.session.add(invoice)
    db.session.flush()

    log_activity(
        "WARNING" if duplicate_serials else "INFO",
        "procurement",
        "procurement",
        f"Purchase order {order.order_number} received; supplier invoice {invoice.invoice_number} created",
        {
            "received_lines": len(received_lines),
            "supplier_invoice_id": invoice.id,
            "duplicate_serials": duplicate_serials,
        },
    )
    return {
        "purchase_order_id": order.id,
        "status": order.status,
        "supplier_invoice": {
            "id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "subtotal_cents": invoice.subtotal_cents,
            "tax_cents": invoice.tax_cents,
            "total_cents": invoice.total_cents,
            "due_date": invoice.due_date.isoformat(),
        },
        "items_requiring_serial_numbers": requiring_serials,
        "duplicate_serial_numbers": duplicate_serials,
    }


def record_supplier_payment(invoice: SupplierInvoice, amount_cents: int | None) -> None:
    outstanding = invoice.total_cents - invoice.paid_cents
    if amount_cents is None or amount_cents <= 0:
        raise ProcurementError("Payment amount must be greater than zero.")
    if amount_cents > outstanding:
        raise ProcurementError(
            f"Payment exceeds the outstanding balance of {format_money(outstanding)}."
        )
    invoice.paid_cents += amount_cents
    invoice.status = "Paid" if invoice.paid_cents >= invoice.total_cents else "Partial"
    log_activity(
        "INFO",
        "procurement",
        "procurement",
        f"Supplier invoice {invoice.invoice_number} paid {format_money(amount_cents)}",
        {"supplier_invoice_id": invoice.id, "status": invoice.status},
    )


# -- Payroll ------------------------------------------------------------------


def parse_payroll_period(period: object) -> tuple[date, date]:
    try:
        start = datetime.strptime(str(period or "").strip(), "%Y-%m").date()
    except ValueError as exc:
        raise PayrollError("Payroll period must use the YYYY-MM format.") from exc
    end = start.replace(day=calendar.monthrange(start.year, start.month)[1])
    return start, end


def calculate_payroll(
    basic_cents: int,
    allowances_cents: int = 0,
    overtime_cents: int = 0,
    other_deductions_cents: int = 0,
) -> dict[str, int]:
    gross_cents = basic_cents + allowances_cents + overtime_cents
    gross = Decimal(gross_cents) / Decimal(100)
    paye_cents = int(calculate_paye(gross) * 100)
    nssf_cents = int(calculate_nssf(gross) * 100)
    sha_cents = int(calculate_sha(gross) * 100)
    total_deductions = paye_cents + nssf_cents + sha_cents + other_deductions_cents
    return {
        "basic_salary_cents": basic_cents,
        "allowances_cents": allowances_cents,
        "overtime_cents": overtime_cents,
        "gross_pay_cents": gross_cents,
        "paye_cents": paye_cents,
        "nssf_cents": nssf_cents,
        "sha_cents": sha_cents,
        "other_deductions_cents": other_deductions_cents,
        "total_deductions_cents": total_deductions,
        "net_pay_cents": gross_cents - total_deductions,
    }


def generate_payroll(
    period: object,
    employee_ids: list[int] | None = None,
    *,
    overtime: dict | None = None,
) -> dict[str, object]:
    start, end = parse_payroll_period(period)
    period_key = start.strftime("%Y-%m")
    overtime = overtime or {}

    query = Employee.query.filter_by(status="active")
    if employee_ids:
        query = query.filter(Employee.id.in_(employee_ids))
    employees = query.order_by(Employee.id.asc()).all()
    if not employees:
        raise PayrollError("No active employees found.")

    calculations = []
    locked = []
    for employee in employees:
        record = PayrollRecord.query.filter_by(
            employee_id=employee.id, period=period_key
        ).first()
        if record is not None and record.status != "calculated":
            locked.append({"employee_id": employee.id, "status": record.status})
            continue

        overtime_cents = parse_amount_cents(
            overtime.get(str(employee.id), overtime.get(employee.id))
        ) or 0
        figures = calculate_payroll(
            employee.basic_salary_cents, employee.allowances_cents, overtime_cents
        )
        if record is None:
            record = PayrollRecord(
                employee=employee, period=period_key, period_start=start, period_end=end
            )
            db.session.add(record)
        for field, value in figures.items():
            setattr(record, field, value)
        record.status = "calculated"
        calculations.append(
            {"employee_id": employee.id, "employee_name": employee.full_name, **figures}
        )

    summary = {
        "total_employees": len(calculations),
        "total_gross_pay_cents": sum(c["gross_pay_cents"] for c in calculations),
        "total_deductions_cents": sum(c["total_deductions_cents"] for c in calculations),
        "total_net_pay_cents": sum(c["net_pay_cents"] for c in calculations),
        "total_paye_cents": sum(c["paye_cents"] for c in calculations),
        "total_nssf_cents": sum(c["nssf_cents"] for c in calculations),
        "total_sha_cents": sum(c["sha_cents"] for c in calculations),
    }
    log_activity(
        "INFO",
        "payroll",
        "hr",
        f"Payroll for {period_key} calculated for {len(calculations)} employees",
        {**summary, "locked": locked},
    )
    return {
        "period": period_key,
        "calculations": calculations,
        "summary": summary,
        "locked": locked,
    }


def transition_payroll(period: object, target_status: str) -> int:
    start, _ = parse_payroll_period(period)
    period_key = start.strftime("%Y-%m")
    source_status = {"approved": "calculated", "paid": "approved"}[target_status]
    records = PayrollRecord.query.filter_by(period=period_key, status=source_status).all()
    if not records:
        raise PayrollError(f"No {source_status} payroll records for {period_key}.")
    now = utcnow()
    for record in records:
        record.status = target_status
        if target_status == "approved":
            record.approved_at = now
        else:
            record.paid_at = now
    log_activity(
        "INFO",
        "payroll",
        "hr",
        f"Payroll for {period_key} marked {target_status} ({len(records)} records)",
    )
    return len(records)


# -- Network and IP management ------------------------------------------------


def find_overlapping_subnets(
    network: ipaddress.IPv4Network | ipaddress.IPv6Network, exclude_id: int | None = None
) -> list[Subnet]:
    overlapping = []
    for subnet in Subnet.query.order_by(Subnet.id.asc()).all():
        if exclude_id and subnet.id == exclude_id:
            continue
        try:
            existing = ipaddress.ip_network(subnet.network, strict=False)
        except ValueError:
            continue
        if existing.version == network.version and existing.overlaps(network):
            overlapping.append(subnet)
    return overlapping


def generate_ip_pool(
    subnet: Subnet,
    network: ipaddress.IPv4Network | ipaddress.IPv6Network,
    batch_size: int = IP_POOL_BATCH_SIZE_DEFAULT,
) -> int:
    existing = {
        address
        for (address,) in db.session.query(IPAddress.address).filter(
            IPAddress.subnet_id == subnet.id
        )
    }
    batch: list[dict] = []
    created = 0
    for host in network.hosts():
        address = str(host)
        if address in existing:
            continue
        batch.append(
            {
                "subnet_id": subnet.id,
                "address": address,
                "sort_key": int(host),
                "status": "reserved" if address == subnet.gateway else "available",
                "notes": "Gateway" if address == subnet.gateway else None,
            }
        )
        if len(batch) >= batch_size:
            db.session.execute(insert(IPAddress), batch)
            created += len(batch)
            batch = []
    if batch:
        db.session.execute(insert(IPAddress), batch)
        created += len(batch)
    return created


def move_subnet_gateway(subnet: Subnet, gateway: str | None) -> None:
    """Point the subnet at a new gateway and move the pool reservation with it."""

    if gateway == subnet.gateway:
        return
    new_row = (
        IPAddress.query.filter_by(subnet_id=subnet.id, address=gateway).first()
        if gateway
        else None
    )
    if new_row is not None and new_row.status == "assigned":
        raise NetworkError(f"Gateway {gateway} is assigned to a customer.")

    if subnet.gateway:
        old_row = IPAddress.query.filter_by(
            subnet_id=subnet.id, address=subnet.gateway, status="reserved"
        ).first()
        if old_row is not None:
            old_row.status = "available"
            old_row.notes = None
    if new_row is not None:
        new_row.status = "reserved"
        new_row.notes = "Gateway"
    subnet.gateway = gateway


def subnet_usage(subnet: Subnet) -> dict[str, int]:
    counts = dict(
        db.session.query(IPAddress.status, db.func.count(IPAddress.id))
        .filter(IPAddress.subnet_id == subnet.id)
        .group_by(IPAddress.status)
        .all()
    )
    total = sum(counts.values())
    return {
        "total_ips": total,
        "assigned_ips": counts.get("assigned", 0),
        "reserved_ips": counts.get("reserved", 0),
        "available_ips": counts.get("available", 0),
    }


def release_ip_record(record: IPAddress) -> str:
    service = record.service
    if service is not None and service.ip_address == record.address:
        service.ip_address = None
    record.status = "available"
    record.customer_id = None
    record.customer_service_id = None
    record.assigned_at = None
    return record.address


def release_service_ips(service: CustomerService) -> list[str]:
    released = [
        release_ip_record(record)
        for record in IPAddress.query.filter_by(customer_service_id=service.id).all()
    ]
    service.ip_address = None
    return released


def assign_ip_address(
    service: CustomerService,
    *,
    subnet_id: int | None = None,
    address: str | None = None,
) -> IPAddress:
    if service.status == "Terminated":
        raise NetworkError("Cannot assign an IP address to a terminated service.")

    if address:
        try:
            parsed = ipaddress.ip_address(address.strip())
        except ValueError as exc:
            raise NetworkError(f"Invalid IP address: {address}") from exc
        query = IPAddress.query.filter_by(address=str(parsed))
        if subnet_id:
            query = query.filter_by(subnet_id=subnet_id)
        record = query.first()
        if record is None:
            raise NetworkError(f"{parsed} is not part of a tracked subnet.")
        if record.status != "available":
            raise NetworkError(f"{parsed} is not available (currently {record.status}).")
    else:
        if not subnet_id:
            raise NetworkError("Provide a subnet or a specific IP address.")
        record = (
            IPAddress.query.filter_by(subnet_id=subnet_id, status="available")
            .order_by(IPAddress.sort_key.asc(), IPAddress.id.asc())
            .first()
        )
        if record is None:
            raise NetworkError("No available IP addresses in this subnet.")

    if record.subnet.status != "active":
        raise NetworkError(f"Subnet {record.subnet.network} is not active.")

    if service.ip_address:
        release_service_ips(service)

    record.status = "assigned"
    record.customer_id = service.customer_id
    record.customer_service_id = service.id
    record.assigned_at = utcnow()
    service.ip_address = record.address
    log_activity(
        "INFO",
        "network",
        "network",
        f"IP {record.address} assigned to service {service.id}",
        {"subnet": record.subnet.network, "service_id": service.id},
        customer_id=service.customer_id,
    )
    return record


# -- Support ------------------------------------------------------------------


def notify_ticket_assignment(ticket: SupportTicket) -> bool:
    employee = ticket.assignee
    if employee is None or not employee.phone:
        return False
    customer_label = ticket.customer.full_name if ticket.customer else "internal"
    return send_sms_notification(
        employee.phone,
        (
            f"Ticket {ticket.ticket_number} ({ticket.priority}) assigned to you: "
            f"{ticket.subject} [{customer_label}]"
        ),
    )


# -- Reports ------------------------------------------------------------------


def _date_bounds(start: date | None, end: date | None) -> tuple[datetime | None, datetime | None]:
    start_at = datetime(start.year, start.month, start.day, tzinfo=UTC) if start else None
    end_at = (
        datetime(end.year, end.month, end.day, tzinfo=UTC) + timedelta(days=1) if end else None
    )
    return start_at, end_at


def revenue_report(start: date | None = None, end: date | None = None) -> dict[str, object]:
    start_at, end_at = _date_bounds(start, end)
    query = Payment.query.filter(Payment.status == "Completed")
    if start_at:
        query = query.filter(Payment.paid_at >= start_at)
    if end_at:
        query = query.filter(Payment.paid_at < end_at)

    by_month: dict[str, int] = {}
    by_method: dict[str, int] = {}
    total = 0
    count = 0
    for payment in query.all():
        paid_at = _as_aware(payment.paid_at or payment.created_at)
        month_key = paid_at.strftime("%Y-%m")
        by_month[month_key] = by_month.get(month_key, 0) + payment.amount_cents
        by_method[payment.method] = by_method.get(payment.method, 0) + payment.amount_cents
        total += payment.amount_cents
        count += 1

    return {
        "start": start.isoformat() if start else None,
        "end": end.isoformat() if end else None,
        "total_revenue_cents": total,
        "payment_count": count,
        "by_month": [
            {"month": month, "amount_cents": amount} for month, amount in sorted(by_month.items())
        ],
        "by_method": [
            {"method": method, "amount_cents": amount}
            for method, amount in sorted(by_method.items())
        ],
    }


def customer_report() -> dict[str, object]:
    by_status = dict(
        db.session.query(Customer.status, db.func.count(Customer.id))
        .group_by(Customer.status)
        .all()
    )
    by_type = dict(
        db.session.query(Customer.customer_type, db.func.count(Customer.id))
        .group_by(Customer.customer_type)
        .all()
    )
    new_per_month: dict[str, int] = {}
    for (created_at,) in db.session.query(Customer.created_at).all():
        key = _as_aware(created_at).strftime("%Y-%m")
        new_per_month[key] = new_per_month.get(key, 0) + 1
    return {
        "total": sum(by_status.values()),
        "by_status": {status: by_status.get(status, 0) for status in CUSTOMER_STATUS_OPTIONS},
        "by_type": by_type,
        "new_per_month": [
            {"month": month, "count": count} for month, count in sorted(new_per_month.items())
        ],
    }


def inventory_report() -> dict[str, object]:
    categories: dict[str, dict[str, int]] = {}
    low_stock = []
    for item in InventoryItem.query.filter_by(status="active").order_by(InventoryItem.name).all():
        bucket = categories.setdefault(
            item.category,
            {"item_count": 0, "total_quantity": 0, "total_value_cents": 0, "low_stock_count": 0},
        )
        bucket["item_count"] += 1
        bucket["total_quantity"] += item.stock_quantity
        bucket["total_value_cents"] += item.stock_quantity * item.unit_cost_cents
        if item.is_low_stock:
            bucket["low_stock_count"] += 1
            low_stock.append(
                {
                    "id": item.id,
                    "name": item.name,
                    "stock_quantity": item.stock_quantity,
                    "reorder_level": item.reorder_level,
                }
            )
    return {
        "categories": [{"category": name, **values} for name, values in sorted(categories.items())],
        "low_stock": low_stock,
        "total_value_cents": sum(c["total_value_cents"] for c in categories.values()),
    }


def network_report() -> dict[str, object]:
    subnets = []
    for subnet in Subnet.query.order_by(Subnet.network).all():
        usage = subnet_usage(subnet)
        usable = usage["total_ips"] - usage["reserved_ips"]
        subnets.append(
            {
                "id": subnet.id,
                "name": subnet.name,
                "network": subnet.network,
                **usage,
                "utilization_percent": (
                    round(usage["assigned_ips"] * 100 / usable, 1) if usable else 0.0
                ),
            }
        )
    return {"subnets": subnets}


EXPORT_DEFINITIONS = {
    "customers": [
        "account_number",
        "first_name",
        "last_name",
        "email",
        "phone",
        "customer_type",
        "status",
        "created_at",
    ],
    "invoices": [
        "invoice_number",
        "account_number",
        "issue_date",
        "due_date",
        "status",
        "subtotal",
        "tax",
        "total",
        "paid",
    ],
    "payments": [
        "reference_number",
        "account_number",
        "method",
        "status",
        "amount",
        "mpesa_receipt_number",
        "paid_at",
    ],
    "inventory": [
        "sku",
        "name",
        "category",
        "stock_quantity",
        "reorder_level",
        "unit_cost",
        "stock_value",
        "status",
    ],
    "payroll": [
        "employee_number",
        "employee_name",
        "period",
        "gross_pay",
        "paye",
        "nssf",
        "sha",
        "net_pay",
        "status",
    ],
    "ip-addresses": ["subnet", "address", "status", "account_number", "assigned_at"],
}


def _money_cell(cents: int | None) -> str:
    return f"{Decimal(cents or 0) / Decimal(100):.2f}"


def collect_export_rows(name: str, params: dict) -> list[list[object]]:
    if name == "customers":
        return [
            [
                c.account_number,
                c.first_name,
                c.last_name,
                c.email,
                c.phone or "",
                c.customer_type,
                c.status,
                _isoformat(c.created_at),
            ]
            for c in Customer.query.order_by(Customer.id.asc()).all()
        ]
    if name == "invoices":
        query = Invoice.query
        if params.get("status"):
            query = query.filter(Invoice.status == params["status"])
        return [
            [
                inv.invoice_number,
                inv.customer.account_number,
                _isoformat(inv.issue_date),
                _isoformat(inv.due_date) or "",
                inv.status,
                _money_cell(inv.subtotal_cents),
                _money_cell(inv.tax_cents),
                _money_cell(inv.total_cents),
                _money_cell(inv.amount_paid_cents),
            ]
            for inv in query.order_by(Invoice.id.asc()).all()
        ]
    if name == "payments":
        return [
            [
                p.reference_number,
                p.customer.account_number,
                p.method,
                p.status,
                _money_cell(p.amount_cents),
                p.mpesa_receipt_number or "",
                _isoformat(p.paid_at) or "",
            ]
            for p in Payment.query.order_by(Payment.id.asc()).all()
        ]
    if name == "inventory":
        return [
            [
                i.sku or "",
                i.name,
                i.category,
                i.stock_quantity,
                i.reorder_level,
                _money_cell(i.unit_cost_cents),
                _money_cell(i.stock_quantity * i.unit_cost_cents),
                i.status,
            ]
            for i in InventoryItem.query.order_by(InventoryItem.name.asc()).all()
        ]
    if name == "payroll":
        query = PayrollRecord.query
        if params.get("period"):
            query = query.filter(PayrollRecord.period == params["period"])
        return [
            [
                r.employee.employee_number,
                r.employee.full_name,
                r.period,
                _money_cell(r.gross_pay_cents),
                _money_cell(r.paye_cents),
                _money_cell(r.nssf_cents),
                _money_cell(r.sha_cents),
                _money_cell(r.net_pay_cents),
                r.status,
            ]
            for r in query.order_by(PayrollRecord.period.asc(), PayrollRecord.id.asc()).all()
        ]
    if name == "ip-addresses":
        records = IPAddress.query.order_by(IPAddress.subnet_id, IPAddress.sort_key).all()
        return [
            [
                r.subnet.network,
                r.address,
                r.status,
                r.customer.account_number if r.customer else "",
                _isoformat(r.assigned_at) or "",
            ]
            for r in records
        ]
    raise KeyError(name)


def build_csv_response(filename: str, headers: list[str], rows: list[list[object]]) -> Response:
    stream = io.StringIO()
    writer = csv.writer(stream)
    writer.writerow(headers)
    writer.writerows(rows)
    return Response(
        stream.getvalue(),
        mimetype="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}.csv"'},
    )


def build_excel_response(filename: str, headers: list[str], rows: list[list[object]]) -> Response:
    stream = io.BytesIO()
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = filename[:31]
    sheet.append(headers)
    for row in rows:
        sheet.append(row)
    workbook.save(stream)
    stream.seek(0)
    return Response(
        stream.getvalue(),
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers={"Content-Disposition": f'attachment; filename="{filename}.xlsx"'},
    )


def _render_pdf(
    title: str,
    reference: str,
    details: list[tuple[str, str]],
    table_rows: list[list[str]],
    totals: list[tuple[str, str]],
) -> bytes:
    buffer = io.BytesIO()
    document = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=1.5 * cm,
        leftMargin=1.5 * cm,
        topMargin=1.5 * cm,
        bottomMargin=1.5 * cm,
        title=f"{title} {reference}",
    )
    styles = getSampleStyleSheet()
    settings = get_company_settings()

    story = [
        Paragraph(settings.company_name, styles["Title"]),
        Paragraph(f"{title}: {reference}", styles["Heading2"]),
        Spacer(1, 0.4 * cm),
    ]
    for label, value in details:
        story.append(Paragraph(f"<b>{label}:</b> {value}", styles["Normal"]))
    story.append(Spacer(1, 0.4 * cm))

    if table_rows:
        table = Table(table_rows, repeatRows=1)
        table.setStyle(
            TableStyle(
                [
                    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1f4e79")),
                    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                    ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
                    ("PADDING", (0, 0), (-1, -1), 5),
                ]
            )
        )
        story.append(table)
        story.append(Spacer(1, 0.4 * cm))

    for label, value in totals:
        story.append(Paragraph(f"<b>{label}:</b> {value}", styles["Normal"]))

    document.build(story)
    return buffer.getvalue()


def render_invoice_pdf(invoice: Invoice) -> bytes:
    currency = get_company_settings().currency
    customer = invoice.customer
    rows = [["Description", "Qty", "Unit price", "Amount"]]
    for item in invoice.items:
        rows.append(
            [
                item.description,
                str(item.quantity),
                format_money(item.unit_price_cents, currency),
                format_money(item.total_cents, currency),
            ]
        )
    return _render_pdf(
        "Invoice",
        invoice.invoice_number,
        [
            ("Customer", f"{customer.full_name} ({customer.account_number})"),
            ("Issue date", invoice.issue_date.isoformat()),
            ("Due date", invoice.due_date.isoformat() if invoice.due_date else "-"),
            ("Status", invoice.status),
        ],
        rows,
        [
            ("Subtotal", format_money(invoice.subtotal_cents, currency)),
            (f"VAT ({invoice.tax_rate}%)", format_money(invoice.tax_cents, currency)),
            ("Total", format_money(invoice.total_cents, currency)),
            ("Balance due", format_money(invoice.balance_cents, currency)),
        ],
    )


def render_statement_pdf(customer: Customer, statement: dict) -> bytes:
    currency = get_company_settings().currency
    rows = [["Date", "Reference", "Description", "Debit", "Credit", "Balance"]]
    for entry in statement["entries"]:
        rows.append(
            [
                entry["date"],
                entry["reference"],
                entry["description"],
                format_money(entry["debit_cents"], currency) if entry["debit_cents"] else "",
                format_money(entry["credit_cents"], currency) if entry["credit_cents"] else "",
                format_money(entry["balance_cents"], currency),
            ]
        )
    return _render_pdf(
        "Statement",
        customer.account_number,
        [
            ("Customer", customer.full_name),
            ("Period", f"{statement['start'] or 'start'} to {statement['end'] or 'today'}"),
        ],
        rows,
        [
            ("Opening balance", format_money(statement["opening_balance_cents"], currency)),
            ("Closing balance", format_money(statement["closing_balance_cents"], currency)),
        ],
    )


def render_payment_receipt_pdf(payment: Payment) -> bytes:
    currency = get_company_settings().currency
    rows = [["Invoice", "Applied"]]
    for application in payment.applications:
        rows.append(
            [
                application.invoice.invoice_number,
                format_money(application.amount_cents, currency),
            ]
        )
    return _render_pdf(
        "Payment receipt",
        payment.reference_number,
        [
            ("Customer", f"{payment.customer.full_name} ({payment.customer.account_number})"),
            ("Method", payment.method),
            ("M-Pesa receipt", payment.mpesa_receipt_number or "-"),
            ("Paid at", _isoformat(payment.paid_at) or "-"),
        ],
        rows if len(rows) > 1 else [],
        [("Amount", format_money(payment.amount_cents, currency))],
    )


def render_supplier_invoice_pdf(invoice: SupplierInvoice) -> bytes:
    currency = get_company_settings().currency
    rows = [["Item", "Qty", "Unit cost", "Amount"]]
    for item in invoice.items:
        rows.append(
            [
                item.description,
                str(item.quantity),
                format_money(item.unit_cost_cents, currency),
                format_money(item.total_cents, currency),
            ]
        )
    return _render_pdf(
        "Supplier invoice",
        invoice.invoice_number,
        [
            ("Supplier", invoice.supplier.company_name),
            (
                "Purchase order",
                invoice.purchase_order.order_number if invoice.purchase_order else "-",
            ),
            ("Due date", invoice.due_date.isoformat() if invoice.due_date else "-"),
            ("Status", invoice.status),
        ],
        rows,
        [
            ("Subtotal", format_money(invoice.subtotal_cents, currency)),
            (f"VAT ({SUPPLIER_VAT_RATE}%)", format_money(invoice.tax_cents, currency)),
            ("Total", format_money(invoice.total_cents, currency)),
        ],
    )


# -- Serializers --------------------------------------------------------------


def serialize_activity_log(entry: ActivityLog) -> dict[str, object]:
    return {
        "id": entry.id,
        "level": entry.level,
        "source": entry.source,
        "category": entry.category,
        "message": entry.message,
        "details": entry.details_dict,
        "customer_id": entry.customer_id,
        "created_at": _isoformat(entry.created_at),
    }


def serialize_company_settings(settings: CompanySettings) -> dict[str, object]:
    return {
        "company_name": settings.company_name,
        "email": settings.email,
        "phone": settings.phone,
        "address": settings.address,
        "currency": settings.currency,
        "default_tax_rate": str(settings.default_tax_rate),
        "default_payment_terms_days": settings.default_payment_terms_days,
        "suspension_grace_days": settings.suspension_grace_days,
    }


def serialize_service_plan(plan: ServicePlan) -> dict[str, object]:
    return {
        "id": plan.id,
        "name": plan.name,
        "category": plan.category,
        "description": plan.description,
        "download_speed": plan.download_speed,
        "upload_speed": plan.upload_speed,
        "price_cents": plan.price_cents,
        "billing_cycle": plan.billing_cycle,
        "features": plan.feature_list,
        "is_active": plan.is_active,
        "position": plan.position,
    }


def serialize_customer_service(service: CustomerService) -> dict[str, object]:
    return {
        "id": service.id,
        "customer_id": service.customer_id,
        "service_plan_id": service.service_plan_id,
        "plan_name": service.plan.name if service.plan else None,
        "price_cents": service.plan.price_cents if service.plan else 0,
        "status": service.status,
        "ip_address": service.ip_address,
        "start_date": _isoformat(service.start_date),
        "activated_at": _isoformat(service.activated_at),
        "suspended_at": _isoformat(service.suspended_at),
        "terminated_at": _isoformat(service.terminated_at),
    }


def serialize_billing_config(config: CustomerBillingConfig) -> dict[str, object]:
    return {
        "customer_id": config.customer_id,
        "billing_cycle": config.billing_cycle,
        "billing_day": config.billing_day,
        "payment_terms_days": config.payment_terms_days,
        "tax_rate": str(config.tax_rate),
        "tax_inclusive": config.tax_inclusive,
        "tax_exempt": config.tax_exempt,
        "prorata_enabled": config.prorata_enabled,
        "auto_generate": config.auto_generate,
        "auto_send_reminders": config.auto_send_reminders,
        "reminder_days_before": config.reminder_days_before,
        "reminder_days_after": config.reminder_days_after,
        "last_invoice_date": _isoformat(config.last_invoice_date),
    }


def serialize_invoice(invoice: Invoice, *, include_items: bool = False) -> dict[str, object]:
    data = {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "customer_id": invoice.customer_id,
        "account_number": invoice.customer.account_number if invoice.customer else None,
        "description": invoice.description,
        "status": invoice.status,
        "subtotal_cents": invoice.subtotal_cents,
        "tax_cents": invoice.tax_cents,
        "tax_rate": str(invoice.tax_rate),
        "total_cents": invoice.total_cents,
        "amount_paid_cents": invoice.amount_paid_cents,
        "balance_cents": invoice.balance_cents,
        "issue_date": _isoformat(invoice.issue_date),
        "due_date": _isoformat(invoice.due_date),
        "period_start": _isoformat(invoice.period_start),
        "period_end": _isoformat(invoice.period_end),
        "is_prorated": invoice.is_prorated,
        "notes": invoice.notes,
        "paid_at": _isoformat(invoice.paid_at),
    }
    if include_items:
        data["items"] = [
            {
                "id": item.id,
                "description": item.description,
                "quantity": item.quantity,
                "unit_price_cents": item.unit_price_cents,
                "total_cents": item.total_cents,
                "customer_service_id": item.customer_service_id,
            }
            for item in invoice.items
        ]
    return data


def serialize_payment(payment: Payment) -> dict[str, object]:
    return {
        "id": payment.id,
        "customer_id": payment.customer_id,
        "reference_number": payment.reference_number,
        "amount_cents": payment.amount_cents,
        "method": payment.method,
        "status": payment.status,
        "mpesa_receipt_number": payment.mpesa_receipt_number,
        "external_reference": payment.external_reference,
        "notes": payment.notes,
        "paid_at": _isoformat(payment.paid_at),
        "created_at": _isoformat(payment.created_at),
        "applications": [
            {
                "invoice_id": application.invoice_id,
                "invoice_number": application.invoice.invoice_number,
                "amount_cents": application.amount_cents,
            }
            for application in payment.applications
        ],
    }


def serialize_adjustment(adjustment: FinancialAdjustment) -> dict[str, object]:
    return {
        "id": adjustment.id,
        "customer_id": adjustment.customer_id,
        "adjustment_type": adjustment.adjustment_type,
        "amount_cents": adjustment.amount_cents,
        "reason": adjustment.reason,
        "reference_number": adjustment.reference_number,
        "invoice_id": adjustment.invoice_id,
        "payment_id": adjustment.payment_id,
        "status": adjustment.status,
        "applied_cents": adjustment.applied_cents or 0,
        "unapplied_cents": adjustment.unapplied_cents,
        "created_at": _isoformat(adjustment.created_at),
    }


def serialize_mpesa_transaction(transaction: MpesaTransaction) -> dict[str, object]:
    return {
        "id": transaction.id,
        "customer_id": transaction.customer_id,
        "payment_id": transaction.payment_id,
        "checkout_request_id": transaction.checkout_request_id,
        "transaction_id": transaction.transaction_id,
        "transaction_type": transaction.transaction_type,
        "mpesa_receipt_number": transaction.mpesa_receipt_number,
        "amount_cents": transaction.amount_cents,
        "phone_number": transaction.phone_number,
        "bill_ref_number": transaction.bill_ref_number,
        "payer_name": transaction.payer_name,
        "result_code": transaction.result_code,
        "result_desc": transaction.result_desc,
        "status": transaction.status,
        "transaction_date": _isoformat(transaction.transaction_date),
        "created_at": _isoformat(transaction.created_at),
    }


def serialize_inventory_item(item: InventoryItem) -> dict[str, object]:
    return {
        "id": item.id,
        "name": item.name,
        "sku": item.sku,
        "category": item.category,
        "description": item.description,
        "stock_quantity": item.stock_quantity,
        "unit_cost_cents": item.unit_cost_cents,
        "stock_value_cents": item.stock_quantity * item.unit_cost_cents,
        "reorder_level": item.reorder_level,
        "requires_serial": item.requires_serial,
        "location": item.location,
        "status": item.status,
        "is_low_stock": item.is_low_stock,
    }


def serialize_movement(movement: InventoryMovement) -> dict[str, object]:
    return {
        "id": movement.id,
        "inventory_item_id": movement.inventory_item_id,
        "item_name": movement.item.name if movement.item else None,
        "movement_type": movement.movement_type,
        "quantity": movement.quantity,
        "reference_type": movement.reference_type,
        "reference_number": movement.reference_number,
        "unit_cost_cents": movement.unit_cost_cents,
        "notes": movement.notes,
        "performed_by": movement.performed_by,
        "created_at": _isoformat(movement.created_at),
    }


def serialize_customer_equipment(equipment: CustomerEquipment) -> dict[str, object]:
    return {
        "id": equipment.id,
        "customer_id": equipment.customer_id,
        "inventory_item_id": equipment.inventory_item_id,
        "equipment_name": equipment.equipment_name,
        "quantity": equipment.quantity,
        "unit_cost_cents": equipment.unit_cost_cents,
        "serial_number": equipment.serial_number,
        "status": equipment.status,
        "return_condition": equipment.return_condition,
        "notes": equipment.notes,
        "allocated_at": _isoformat(equipment.allocated_at),
        "returned_at": _isoformat(equipment.returned_at),
    }


def serialize_supplier(supplier: Supplier) -> dict[str, object]:
    return {
        "id": supplier.id,
        "supplier_code": supplier.supplier_code,
        "company_name": supplier.company_name,
        "contact_name": supplier.contact_name,
        "email": supplier.email,
        "phone": supplier.phone,
        "address": supplier.address,
        "tax_number": supplier.tax_number,
        "payment_terms_days": supplier.payment_terms_days,
        "is_active": supplier.is_active,
    }


def serialize_purchase_order(order: PurchaseOrder) -> dict[str, object]:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "supplier_id": order.supplier_id,
        "supplier_name": order.supplier.company_name if order.supplier else None,
        "status": order.status,
        "total_amount_cents": order.total_amount_cents,
        "notes": order.notes,
        "created_by": order.created_by,
        "created_at": _isoformat(order.created_at),
        "approved_at": _isoformat(order.approved_at),
        "received_at": _isoformat(order.received_at),
        "cancelled_at": _isoformat(order.cancelled_at),
        "items": [
            {
                "id": item.id,
                "inventory_item_id": item.inventory_item_id,
                "item_name": item.item.name if item.item else None,
                "quantity": item.quantity,
                "unit_cost_cents": item.unit_cost_cents,
                "total_cost_cents": item.total_cost_cents,
                "quantity_received": item.quantity_received,
            }
            for item in order.items
        ],
    }


def serialize_supplier_invoice(invoice: SupplierInvoice) -> dict[str, object]:
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "supplier_id": invoice.supplier_id,
        "supplier_name": invoice.supplier.company_name if invoice.supplier else None,
        "purchase_order_id": invoice.purchase_order_id,
        "invoice_date": _isoformat(invoice.invoice_date),
        "due_date": _isoformat(invoice.due_date),
        "subtotal_cents": invoice.subtotal_cents,
        "tax_cents": invoice.tax_cents,
        "total_cents": invoice.total_cents,
        "paid_cents": invoice.paid_cents,
        "balance_cents": invoice.total_cents - invoice.paid_cents,
        "status": invoice.status,
        "notes": invoice.notes,
        "items": [
            {
                "inventory_item_id": item.inventory_item_id,
                "description": item.description,
                "quantity": item.quantity,
                "unit_cost_cents": item.unit_cost_cents,
                "total_cents": item.total_cents,
            }
            for item in invoice.items
        ],
    }


def serialize_employee(employee: Employee) -> dict[str, object]:
    return {
        "id": employee.id,
        "employee_number": employee.employee_number,
        "first_name": employee.first_name,
        "last_name": employee.last_name,
        "full_name": employee.full_name,
        "email": employee.email,
        "phone": employee.phone,
        "position": employee.position,
        "department": employee.department,
        "hire_date": _isoformat(employee.hire_date),
        "basic_salary_cents": employee.basic_salary_cents,
        "allowances_cents": employee.allowances_cents,
        "status": employee.status,
    }


def serialize_payroll_record(record: PayrollRecord) -> dict[str, object]:
    return {
        "id": record.id,
        "employee_id": record.employee_id,
        "employee_name": record.employee.full_name if record.employee else None,
        "period": record.period,
        "period_start": _isoformat(record.period_start),
        "period_end": _isoformat(record.period_end),
        "basic_salary_cents": record.basic_salary_cents,
        "allowances_cents": record.allowances_cents,
        "overtime_cents": record.overtime_cents,
        "gross_pay_cents": record.gross_pay_cents,
        "paye_cents": record.paye_cents,
        "nssf_cents": record.nssf_cents,
        "sha_cents": record.sha_cents,
        "other_deductions_cents": record.other_deductions_cents,
        "total_deductions_cents": record.total_deductions_cents,
        "net_pay_cents": record.net_pay_cents,
        "status": record.status,
        "approved_at": _isoformat(record.approved_at),
        "paid_at": _isoformat(record.paid_at),
    }


def serialize_router(router: NetworkRouter) -> dict[str, object]:
    return {
        "id": router.id,
        "name": router.name,
        "ip_address": router.ip_address,
        "location": router.location,
        "router_type": router.router_type,
        "status": router.status,
        "subnet_count": len(router.subnets),
    }


def serialize_subnet(subnet: Subnet, *, include_usage: bool = True) -> dict[str, object]:
    data = {
        "id": subnet.id,
        "name": subnet.name,
        "network": subnet.network,
        "gateway": subnet.gateway,
        "dns_servers": subnet.dns_servers,
        "description": subnet.description,
        "router_id": subnet.router_id,
        "router_name": subnet.router.name if subnet.router else None,
        "status": subnet.status,
        "created_at": _isoformat(subnet.created_at),
    }
    if include_usage:
        data.update(subnet_usage(subnet))
    return data


def serialize_ip_address(record: IPAddress) -> dict[str, object]:
    return {
        "id": record.id,
        "subnet_id": record.subnet_id,
        "address": record.address,
        "status": record.status,
        "customer_id": record.customer_id,
        "customer_service_id": record.customer_service_id,
        "assigned_at": _isoformat(record.assigned_at),
        "notes": record.notes,
    }


def serialize_ticket(ticket: SupportTicket) -> dict[str, object]:
    return {
        "id": ticket.id,
        "ticket_number": ticket.ticket_number,
        "customer_id": ticket.customer_id,
        "subject": ticket.subject,
        "description": ticket.description,
        "priority": ticket.priority,
        "status": ticket.status,
        "assigned_to": ticket.assigned_to,
        "assignee_name": ticket.assignee.full_name if ticket.assignee else None,
        "resolution_notes": ticket.resolution_notes,
        "resolved_at": _isoformat(ticket.resolved_at),
        "created_at": _isoformat(ticket.created_at),
        "updated_at": _isoformat(ticket.updated_at),
    }


def serialize_customer(customer: Customer, *, detail: bool = False) -> dict[str, object]:
    data = {
        "id": customer.id,
        "account_number": customer.account_number,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "full_name": customer.full_name,
        "email": customer.email,
        "phone": customer.phone,
        "address": customer.address,
        "city": customer.city,
        "customer_type": customer.customer_type,
        "status": customer.status,
        "suspension_reason": customer.suspension_reason,
        "suspended_at": _isoformat(customer.suspended_at),
        "has_portal_password": bool(customer.portal_password_hash),
        "notes": customer.notes,
        "created_at": _isoformat(customer.created_at),
    }
    if detail:
        data["services"] = [serialize_customer_service(s) for s in customer.services]
        data["balance"] = calculate_customer_balance(customer)
        data["open_invoices"] = [
            serialize_invoice(invoice)
            for invoice in customer.invoices
            if invoice.status in OPEN_INVOICE_STATUSES
        ]
        data["billing_config"] = (
            serialize_billing_config(customer.billing_config)
            if customer.billing_config
            else None
        )
    return data


def register_routes(app: Flask) -> None:
    def _json_error(message: str, status: int = 400):
        return jsonify({"error": message}), status

    def _limit_arg(default: int = 100, maximum: int = 500) -> int:
        limit = _coerce_int(request.args.get("limit")) or default
        return max(1, min(limit, maximum))

    def _date_arg(name: str) -> date | None:
        raw = (request.args.get(name) or "").strip()
        if not raw:
            return None
        parsed = parse_iso_date(raw)
        if parsed is None:
            abort(400, description=f"Invalid {name} date; use YYYY-MM-DD.")
        return parsed

    def _payload_date(payload: dict, key: str) -> date | None:
        raw = payload.get(key)
        if raw in (None, ""):
            return None
        parsed = parse_iso_date(raw)
        if parsed is None:
            abort(400, description=f"Invalid {key}; use YYYY-MM-DD.")
        return parsed

    def _clean_text(value: object | None) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _pdf_response(content: bytes, filename: str) -> Response:
        return Response(
            content,
            mimetype="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{filename}.pdf"'},
        )

    def _unique_account_number() -> str:
        while True:
            candidate = generate_account_number()
            if not Customer.query.filter_by(account_number=candidate).first():
                return candidate

    def _mpesa_configured() -> bool:
        return all(
            app.config.get(key)
            for key in (
                "MPESA_CONSUMER_KEY",
                "MPESA_CONSUMER_SECRET",
                "MPESA_SHORTCODE",
                "MPESA_PASSKEY",
            )
        )

    @app.errorhandler(BillingError)
    @app.errorhandler(InventoryError)
    @app.errorhandler(ProcurementError)
    @app.errorhandler(NetworkError)
    @app.errorhandler(PayrollError)
    def handle_domain_error(error: ValueError):
        db.session.rollback()
        return _json_error(str(error), 400)

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        if error.code and error.code < 400:
            return error
        if wants_json_response():
            return _json_error(error.description or error.name, error.code or 500)
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):
        db.session.rollback()
        app.logger.exception("Unhandled error while serving %s", request.path)
        if wants_json_response():
            return _json_error("Internal server error.", 500)
        return "Internal server error", 500

    @app.template_filter("money")
    def money_filter(value: int | None):
        return format_money(value, get_company_settings().currency)

    @app.context_processor
    def inject_company_settings():
        return {"company": get_company_settings()}

    # -- Authentication and dashboard ----------------------------------------

    @app.route("/")
    def index():
        if session.get("admin_authenticated"):
            return redirect(url_for("dashboard"))
        return redirect(url_for("login"))

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            username_or_email = request.form.get("username", "").strip()
            password = request.form.get("password", "")

            if username_or_email and password:
                admin = AdminUser.query.filter(
                    or_(
                        AdminUser.username == username_or_email,
                        AdminUser.email == username_or_email,
                    )
                ).first()

                if admin and admin.check_password(password):
                    session["admin_authenticated"] = True
                    session["admin_logged_in_at"] = utcnow().isoformat()
                    session["admin_user_id"] = admin.id
                    admin.last_login_at = utcnow()
                    db.session.commit()
                    flash("Welcome back!", "success")
                    redirect_target = request.args.get("next") or url_for("dashboard")
                    return redirect(redirect_target)

            flash("Invalid credentials. Please try again.", "danger")

        return render_template("login.html")

    @app.get("/logout")
    def logout():
        session.clear()
        flash("You have been logged out.", "info")
        return redirect(url_for("login"))

    @app.route("/dashboard")
    @login_required
    def dashboard():
        overview = get_dashboard_overview_snapshot(app)
        low_stock_items = (
            InventoryItem.query.filter(
                InventoryItem.status == "active",
                InventoryItem.stock_quantity <= InventoryItem.reorder_level,
            )
            .order_by(InventoryItem.stock_quantity.asc())
            .limit(10)
            .all()
        )
        return render_template(
            "dashboard.html", overview=overview, low_stock_items=low_stock_items
        )

    @app.get("/api/dashboard/metrics")
    @login_required
    def api_dashboard_metrics():
        return jsonify(get_dashboard_overview_snapshot(app))

    # -- Settings and activity logs ------------------------------------------

    @app.route("/api/settings/company", methods=["GET", "POST"])
    @login_required
    def company_settings():
        settings = get_company_settings()
        if request.method == "GET":
            return jsonify({"settings": serialize_company_settings(settings)})

        payload = request_payload()
        if "company_name" in payload:
            name = _clean_text(payload.get("company_name"))
            if not name:
                return _json_error("Company name cannot be empty.")
            settings.company_name = name
        for field in ("email", "phone", "address"):
            if field in payload:
                setattr(settings, field, _clean_text(payload.get(field)))
        if "currency" in payload:
            currency = (_clean_text(payload.get("currency")) or "").upper()
            if len(currency) != 3 or not currency.isalpha():
                return _json_error("Currency must be a three letter ISO code.")
            settings.currency = currency
        if "default_tax_rate" in payload:
            rate = parse_decimal(payload.get("default_tax_rate"))
            if rate is None or rate < 0 or rate > 100:
                return _json_error("Tax rate must be between 0 and 100.")
            settings.default_tax_rate = rate
        for field in ("default_payment_terms_days", "suspension_grace_days"):
            if field in payload:
                days = _coerce_int(payload.get(field))
                if days is None or days < 0:
                    return _json_error(f"{field} must be zero or a positive number of days.")
                setattr(settings, field, days)

        log_activity(
            "INFO",
            "settings",
            "admin",
            "Company settings updated",
            {"fields": sorted(payload), "performed_by": current_admin_id()},
        )
        db.session.commit()
        return jsonify({"settings": serialize_company_settings(settings)})

    @app.get("/api/activity-logs")
    @login_required
    def list_activity_logs():
        query = ActivityLog.query
        category = request.args.get("category")
        if category:
            query = query.filter(ActivityLog.category == category)
        level = request.args.get("level")
        if level:
            query = query.filter(ActivityLog.level == level.upper())
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(ActivityLog.customer_id == customer_id)
        entries = (
            query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(_limit_arg())
            .all()
        )
        return jsonify({"logs": [serialize_activity_log(entry) for entry in entries]})

    @app.get("/api/customers/<int:customer_id>/logs")
    @login_required
    def customer_activity_logs(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        entries = (
            ActivityLog.query.filter_by(customer_id=customer.id)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(_limit_arg())
            .all()
        )
        return jsonify({"logs": [serialize_activity_log(entry) for entry in entries]})

    # -- Customers -----------------------------------------------------------

    @app.get("/api/customers")
    @login_required
    def list_customers():
        query = Customer.query
        status = request.args.get("status")
        if status:
            query = query.filter(Customer.status == status)
        search = (request.args.get("search") or "").strip()
        if search:
            pattern = f"%{search.lower()}%"
            query = query.filter(
                or_(
                    db.func.lower(Customer.first_name).like(pattern),
                    db.func.lower(Customer.last_name).like(pattern),
                    db.func.lower(Customer.email).like(pattern),
                    db.func.lower(db.func.coalesce(Customer.phone, "")).like(pattern),
                    db.func.lower(Customer.account_number).like(pattern),
                )
            )
        customers = query.order_by(Customer.created_at.desc(), Customer.id.desc()).all()
        return jsonify({"customers": [serialize_customer(c) for c in customers]})

    @app.post("/api/customers")
    @login_required
    def create_customer():
        payload = request_payload()
        first_name = _clean_text(payload.get("first_name"))
        email = (_clean_text(payload.get("email")) or "").lower()
        if not first_name or not email:
            return _json_error("First name and email are required.")
        if Customer.query.filter(db.func.lower(Customer.email) == email).first():
            return _json_error("A customer with this email already exists.", 409)

        customer_type = _clean_text(payload.get("customer_type")) or "Residential"
        if customer_type not in CUSTOMER_TYPE_OPTIONS:
            return _json_error(f"Customer type must be one of: {', '.join(CUSTOMER_TYPE_OPTIONS)}.")
        status = _clean_text(payload.get("status")) or "Pending"
        if status not in CUSTOMER_STATUS_OPTIONS:
            return _json_error(f"Status must be one of: {', '.join(CUSTOMER_STATUS_OPTIONS)}.")

        customer = Customer(
            account_number=_unique_account_number(),
            first_name=first_name,
            last_name=_clean_text(payload.get("last_name")) or "",
            email=email,
            phone=_clean_text(payload.get("phone")),
            address=_clean_text(payload.get("address")),
            city=_clean_text(payload.get("city")),
            customer_type=customer_type,
            status=status,
            notes=_clean_text(payload.get("notes")),
        )
        password = payload.get("portal_password")
        if password:
            if len(str(password)) < 8:
                return _json_error("Portal passwords must be at least 8 characters.")
            customer.portal_password_hash = generate_password_hash(str(password))
            customer.portal_password_updated_at = utcnow()

        db.session.add(customer)
        db.session.flush()
        get_or_create_billing_config(customer)
        log_activity(
            "INFO",
            "customer-management",
            "admin",
            f"Customer {customer.account_number} created",
            {"performed_by": current_admin_id()},
            customer_id=customer.id,
        )
        db.session.commit()
        return jsonify({"customer": serialize_customer(customer, detail=True)}), 201

    @app.get("/api/customers/<int:customer_id>")
    @login_required
    def get_customer(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        return jsonify({"customer": serialize_customer(customer, detail=True)})

    @app.route("/api/customers/<int:customer_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_customer(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        payload = request_payload()

        if "first_name" in payload:
            first_name = _clean_text(payload.get("first_name"))
            if not first_name:
                return _json_error("First name cannot be empty.")
            customer.first_name = first_name
        if "last_name" in payload:
            customer.last_name = _clean_text(payload.get("last_name")) or ""
        if "email" in payload:
            email = (_clean_text(payload.get("email")) or "").lower()
            if not email:
                return _json_error("Email cannot be empty.")
            duplicate = Customer.query.filter(
                db.func.lower(Customer.email) == email, Customer.id != customer.id
            ).first()
            if duplicate:
                return _json_error("A customer with this email already exists.", 409)
            customer.email = email
        for field in ("phone", "address", "city", "notes"):
            if field in payload:
                setattr(customer, field, _clean_text(payload.get(field)))
        if "customer_type" in payload:
            if payload.get("customer_type") not in CUSTOMER_TYPE_OPTIONS:
                return _json_error(
                    f"Customer type must be one of: {', '.join(CUSTOMER_TYPE_OPTIONS)}."
                )
            customer.customer_type = payload["customer_type"]
        if "status" in payload:
            if payload.get("status") not in CUSTOMER_STATUS_OPTIONS:
                return _json_error(
                    f"Status must be one of: {', '.join(CUSTOMER_STATUS_OPTIONS)}."
                )
            customer.status = payload["status"]

        log_activity(
            "INFO",
            "customer-management",
            "admin",
            f"Customer {customer.account_number} updated",
            {"fields": sorted(payload), "performed_by": current_admin_id()},
            customer_id=customer.id,
        )
        db.session.commit()
        return jsonify({"customer": serialize_customer(customer, detail=True)})

    @app.delete("/api/customers/<int:customer_id>")
    @login_required
    def delete_customer(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        if customer.invoices or customer.payments:
            return _json_error(
                "Customers with invoices or payments cannot be deleted; mark them Inactive instead.",
                409,
            )
        for service in customer.services:
            release_service_ips(service)
        log_activity(
            "WARNING",
            "customer-management",
            "admin",
            f"Customer {customer.account_number} deleted",
            {"performed_by": current_admin_id()},
            customer_id=customer.id,
        )
        db.session.delete(customer)
        db.session.commit()
        return jsonify({"status": "deleted"})

    @app.post("/api/customers/<int:customer_id>/portal-password")
    @login_required
    def set_customer_portal_password(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        password = str(request_payload().get("password") or "")
        if len(password) < 8:
            return _json_error("Portal passwords must be at least 8 characters.")
        customer.portal_password_hash = generate_password_hash(password)
        customer.portal_password_updated_at = utcnow()
        log_activity(
            "INFO",
            "customer-management",
            "admin",
            f"Portal password issued for {customer.account_number}",
            {"performed_by": current_admin_id()},
            customer_id=customer.id,
        )
        db.session.commit()
        return jsonify({"status": "updated"})

    @app.post("/api/customers/<int:customer_id>/suspend")
    @login_required
    def suspend_customer_account(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        if customer.status == "Suspended":
            return _json_error("Customer is already suspended.")
        payload = request_payload()
        reason = _clean_text(payload.get("reason")) or "Suspended by administrator"
        details = suspend_customer(
            customer,
            reason,
            release_ips=is_truthy(payload.get("release_ips")),
            performed_by=current_admin_id(),
        )
        db.session.commit()
        return jsonify({"customer": serialize_customer(customer), **details})

    @app.post("/api/customers/<int:customer_id>/unsuspend")
    @login_required
    def unsuspend_customer_account(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        if customer.status != "Suspended":
            return _json_error("Customer is not suspended.")
        restored = restore_customer_service(customer, note="reactivated by administrator")
        db.session.commit()
        return jsonify(
            {"customer": serialize_customer(customer), "restored_services": restored}
        )

    # -- Service plans and customer services ---------------------------------

    def _apply_plan_payload(plan: ServicePlan, payload: dict) -> None:
        if "name" in payload:
            name = _clean_text(payload.get("name"))
            if not name:
                raise BillingError("Plan name cannot be empty.")
            plan.name = name
        if "category" in payload:
            category = _clean_text(payload.get("category")) or "Residential"
            if category not in CUSTOMER_TYPE_OPTIONS:
                raise BillingError(
                    f"Plan category must be one of: {', '.join(CUSTOMER_TYPE_OPTIONS)}."
                )
            plan.category = category
        if "description" in payload:
            plan.description = _clean_text(payload.get("description"))
        for field in ("download_speed", "upload_speed", "position"):
            if field in payload:
                value = _coerce_int(payload.get(field))
                if value is None or value < 0:
                    raise BillingError(f"{field} must be zero or a positive whole number.")
                setattr(plan, field, value)
        if "price" in payload:
            price_cents = parse_amount_cents(payload.get("price"))
            if price_cents is None or price_cents < 0:
                raise BillingError("Plan price must be a positive amount.")
            plan.price_cents = price_cents
        if "billing_cycle" in payload:
            if payload.get("billing_cycle") not in BILLING_CYCLES:
                raise BillingError(f"Billing cycle must be one of: {', '.join(BILLING_CYCLES)}.")
            plan.billing_cycle = payload["billing_cycle"]
        if "features" in payload:
            features = payload.get("features") or []
            if isinstance(features, list):
                features = "\n".join(str(feature) for feature in features)
            plan.set_features_from_text(str(features))
        if "is_active" in payload:
            plan.is_active = is_truthy(payload.get("is_active"))

    @app.get("/api/service-plans")
    @login_required
    def list_service_plans():
        query = ServicePlan.query
        if not is_truthy(request.args.get("include_inactive")):
            query = query.filter_by(is_active=True)
        plans = query.order_by(ServicePlan.position.asc(), ServicePlan.id.asc()).all()
        return jsonify({"plans": [serialize_service_plan(plan) for plan in plans]})

    @app.post("/api/service-plans")
    @login_required
    def create_service_plan():
        payload = request_payload()
        if not _clean_text(payload.get("name")) or payload.get("price") in (None, ""):
            return _json_error("Plan name and price are required.")
        if ServicePlan.query.filter_by(name=_clean_text(payload.get("name"))).first():
            return _json_error("A plan with this name already exists.", 409)

        plan = ServicePlan(
            position=(db.session.query(db.func.max(ServicePlan.position)).scalar() or 0) + 1
        )
        _apply_plan_payload(plan, payload)
        db.session.add(plan)
        log_activity("INFO", "service-plans", "admin", f"Service plan {plan.name} created")
        db.session.commit()
        return jsonify({"plan": serialize_service_plan(plan)}), 201

    @app.route("/api/service-plans/<int:plan_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_service_plan(plan_id: int):
        plan = ServicePlan.query.get_or_404(plan_id)
        payload = request_payload()
        name = _clean_text(payload.get("name"))
        if name and ServicePlan.query.filter(
            ServicePlan.name == name, ServicePlan.id != plan.id
        ).first():
            return _json_error("A plan with this name already exists.", 409)
        _apply_plan_payload(plan, payload)
        log_activity("INFO", "service-plans", "admin", f"Service plan {plan.name} updated")
        db.session.commit()
        return jsonify({"plan": serialize_service_plan(plan)})

    @app.delete("/api/service-plans/<int:plan_id>")
    @login_required
    def delete_service_plan(plan_id: int):
        plan = ServicePlan.query.get_or_404(plan_id)
        if plan.subscriptions:
            return _json_error(
                "This plan is assigned to customers; deactivate it instead.", 409
            )
        log_activity("WARNING", "service-plans", "admin", f"Service plan {plan.name} deleted")
        db.session.delete(plan)
        db.session.commit()
        return jsonify({"status": "deleted"})

    @app.get("/api/customers/<int:customer_id>/services")
    @login_required
    def list_customer_services(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        return jsonify(
            {"services": [serialize_customer_service(s) for s in customer.services]}
        )

    @app.post("/api/customers/<int:customer_id>/services")
    @login_required
    def add_customer_service(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        payload = request_payload()
        plan = db.session.get(ServicePlan, _coerce_int(payload.get("service_plan_id")) or 0)
        if plan is None:
            return _json_error("A valid service plan is required.")
        if not plan.is_active:
            return _json_error(f"{plan.name} is no longer offered.")

        service = CustomerService(
            customer=customer,
            plan=plan,
            status="Pending",
            start_date=_payload_date(payload, "start_date") or date.today(),
        )
        if is_truthy(payload.get("activate")):
            service.status = "Active"
            service.activated_at = utcnow()
            if customer.status == "Pending":
                customer.status = "Active"
        db.session.add(service)
        db.session.flush()

        subnet_id = _coerce_int(payload.get("subnet_id"))
        requested_ip = _clean_text(payload.get("ip_address"))
        if subnet_id or requested_ip:
            assign_ip_address(service, subnet_id=subnet_id, address=requested_ip)

        log_activity(
            "INFO",
            "customer-management",
            "admin",
            f"{plan.name} added for {customer.account_number} ({service.status})",
            {"service_id": service.id},
            customer_id=customer.id,
        )
        db.session.commit()
        return jsonify({"service": serialize_customer_service(service)}), 201

    @app.post("/api/customer-services/<int:service_id>/status")
    @login_required
    def change_customer_service_status(service_id: int):
        service = CustomerService.query.get_or_404(service_id)
        status = _clean_text(request_payload().get("status"))
        if status not in SERVICE_STATUS_OPTIONS:
            return _json_error(f"Status must be one of: {', '.join(SERVICE_STATUS_OPTIONS)}.")
        if service.status == "Terminated":
            return _json_error("Terminated services cannot be changed.")

        now = utcnow()
        released: list[str] = []
        if status == "Active":
            service.activated_at = service.activated_at or now
            service.suspended_at = None
            if service.customer.status == "Pending":
                service.customer.status = "Active"
        elif status == "Suspended":
            service.suspended_at = now
        elif status == "Terminated":
            service.terminated_at = now
            released = release_service_ips(service)
        previous = service.status
        service.status = status

        log_activity(
            "INFO",
            "customer-management",
            "admin",
            f"Service {service.id} changed from {previous} to {status}",
            {"released_ips": released},
            customer_id=service.customer_id,
        )
        db.session.commit()
        return jsonify(
            {"service": serialize_customer_service(service), "released_ips": released}
        )

    # -- Billing ---------------------------------------------------------------

    @app.route("/api/customers/<int:customer_id>/billing-config", methods=["GET", "POST"])
    @login_required
    def customer_billing_config(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        config = get_or_create_billing_config(customer)
        if request.method == "GET":
            db.session.commit()
            return jsonify({"billing_config": serialize_billing_config(config)})

        payload = request_payload()
        if "billing_cycle" in payload:
            if payload.get("billing_cycle") not in BILLING_CYCLES:
                raise BillingError(f"Billing cycle must be one of: {', '.join(BILLING_CYCLES)}.")
            config.billing_cycle = payload["billing_cycle"]
        if "billing_day" in payload:
            billing_day = _coerce_int(payload.get("billing_day"))
            if billing_day is None or not 1 <= billing_day <= 28:
                raise BillingError("Billing day must be between 1 and 28.")
            config.billing_day = billing_day
        if "payment_terms_days" in payload:
            terms = _coerce_int(payload.get("payment_terms_days"))
            if terms is None or terms < 0:
                raise BillingError("Payment terms must be zero or more days.")
            config.payment_terms_days = terms
        if "tax_rate" in payload:
            rate = parse_decimal(payload.get("tax_rate"))
            if rate is None or rate < 0 or rate > 100:
                raise BillingError("Tax rate must be between 0 and 100.")
            config.tax_rate = rate
        for field in ("reminder_days_before", "reminder_days_after"):
            if field in payload:
                days = _coerce_int(payload.get(field))
                if days is None or not 0 <= days <= 60:
                    raise BillingError("Reminder days must be between 0 and 60.")
                setattr(config, field, days)
        for flag in (
            "tax_inclusive",
            "tax_exempt",
            "prorata_enabled",
            "auto_generate",
            "auto_send_reminders",
        ):
            if flag in payload:
                setattr(config, flag, is_truthy(payload.get(flag)))

        log_activity(
            "INFO",
            "billing",
            "billing",
            f"Billing configuration updated for {customer.account_number}",
            serialize_billing_config(config),
            customer_id=customer.id,
        )
        db.session.commit()
        return jsonify({"billing_config": serialize_billing_config(config)})

    @app.post("/api/customers/<int:customer_id>/invoices/generate")
    @login_required
    def generate_customer_invoice(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        payload = request_payload()
        invoice = generate_service_invoice(
            customer,
            period_start=_payload_date(payload, "period_start"),
            period_end=_payload_date(payload, "period_end"),
            prorate=is_truthy(payload.get("prorate")),
        )
        db.session.commit()
        notify_invoice_issued(invoice)
        return jsonify({"invoice": serialize_invoice(invoice, include_items=True)}), 201

    @app.get("/api/customers/<int:customer_id>/invoices")
    @login_required
    def list_customer_invoices(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        invoices = (
            Invoice.query.filter_by(customer_id=customer.id)
            .order_by(Invoice.issue_date.desc(), Invoice.id.desc())
            .all()
        )
        return jsonify({"invoices": [serialize_invoice(invoice) for invoice in invoices]})

    @app.post("/api/customers/<int:customer_id>/invoices")
    @login_required
    def create_manual_invoice(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        payload = request_payload()
        raw_items = payload.get("items")
        if not raw_items and payload.get("amount") not in (None, ""):
            raw_items = [
                {
                    "description": payload.get("description") or "Invoice",
                    "quantity": 1,
                    "unit_price": payload.get("amount"),
                }
            ]
        lines = build_invoice_lines(raw_items)
        invoice = create_invoice_record(
            customer,
            lines,
            description=_clean_text(payload.get("description")),
            due_date=_payload_date(payload, "due_date"),
            notes=_clean_text(payload.get("notes")),
        )
        log_activity(
            "INFO",
            "billing",
            "billing",
            f"Manual invoice {invoice.invoice_number} created for {customer.account_number}",
            {"invoice_id": invoice.id, "total_cents": invoice.total_cents},
            customer_id=customer.id,
        )
        db.session.commit()
        notify_invoice_issued(invoice)
        return jsonify({"invoice": serialize_invoice(invoice, include_items=True)}), 201

    @app.get("/api/invoices")
    @login_required
    def list_invoices():
        query = Invoice.query
        status = request.args.get("status")
        if status:
            query = query.filter(Invoice.status == status)
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(Invoice.customer_id == customer_id)
        if is_truthy(request.args.get("overdue")):
            query = query.filter(
                or_(
                    Invoice.status == "Overdue",
                    (Invoice.status.in_(OPEN_INVOICE_STATUSES))
                    & (Invoice.due_date < date.today()),
                )
            )
        invoices = (
            query.order_by(Invoice.issue_date.desc(), Invoice.id.desc())
            .limit(_limit_arg(200, 1000))
            .all()
        )
        return jsonify({"invoices": [serialize_invoice(invoice) for invoice in invoices]})

    @app.get("/api/invoices/<int:invoice_id>")
    @login_required
    def get_invoice(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        return jsonify({"invoice": serialize_invoice(invoice, include_items=True)})

    @app.route("/api/invoices/<int:invoice_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_invoice(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        if invoice.status == "Cancelled":
            return _json_error("Cancelled invoices cannot be edited.")
        payload = request_payload()
        if "notes" in payload:
            invoice.notes = _clean_text(payload.get("notes"))
        if "description" in payload:
            invoice.description = _clean_text(payload.get("description"))
        if "due_date" in payload:
            due_date = _payload_date(payload, "due_date")
            if due_date is None:
                return _json_error("Due date is required.")
            invoice.due_date = due_date
            refresh_invoice_status(invoice)
        db.session.commit()
        return jsonify({"invoice": serialize_invoice(invoice, include_items=True)})

    @app.post("/api/invoices/<int:invoice_id>/cancel")
    @login_required
    def cancel_invoice(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        if invoice.status == "Cancelled":
            return _json_error("Invoice is already cancelled.")
        if invoice.amount_paid_cents > 0:
            return _json_error("Invoices with payments applied cannot be cancelled.")
        invoice.status = "Cancelled"
        recalculate_customer_billing_state(invoice.customer)
        log_activity(
            "WARNING",
            "billing",
            "billing",
            f"Invoice {invoice.invoice_number} cancelled",
            {"performed_by": current_admin_id()},
            customer_id=invoice.customer_id,
        )
        db.session.commit()
        return jsonify({"invoice": serialize_invoice(invoice)})

    @app.get("/api/invoices/<int:invoice_id>/pdf")
    @login_required
    def invoice_pdf(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        return _pdf_response(render_invoice_pdf(invoice), invoice.invoice_number)

    @app.route("/api/customers/<int:customer_id>/adjustments", methods=["GET", "POST"])
    @login_required
    def customer_adjustments(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        if request.method == "GET":
            return jsonify(
                {"adjustments": [serialize_adjustment(a) for a in customer.adjustments]}
            )

        payload = request_payload()
        adjustment_type = _clean_text(payload.get("adjustment_type"))
        if adjustment_type not in ADJUSTMENT_TYPE_OPTIONS:
            return _json_error("Adjustment type must be credit or debit.")
        amount_cents = parse_amount_cents(payload.get("amount"))
        if amount_cents is None or amount_cents <= 0:
            return _json_error("Adjustment amount must be greater than zero.")
        reason = _clean_text(payload.get("reason"))
        if not reason:
            return _json_error("A reason is required.")
        invoice_id = _coerce_int(payload.get("invoice_id"))
        if invoice_id and not Invoice.query.filter_by(
            id=invoice_id, customer_id=customer.id
        ).first():
            return _json_error("The invoice does not belong to this customer.")

        prefix = "CN" if adjustment_type == "credit" else "DN"
        adjustment = FinancialAdjustment(
            customer=customer,
            adjustment_type=adjustment_type,
            amount_cents=amount_cents,
            reason=reason,
            reference_number=next_document_number(
                FinancialAdjustment.reference_number, prefix
            ),
            invoice_id=invoice_id,
            status="approved",
            created_by=current_admin_id(),
        )
        db.session.add(adjustment)
        db.session.flush()
        log_activity(
            "INFO",
            "billing",
            "billing",
            f"{adjustment_type.title()} of {format_money(amount_cents)} recorded: {reason}",
            {"reference_number": adjustment.reference_number},
            customer_id=customer.id,
        )
        credit_applications = []
        if adjustment_type == "credit":
            credit_applications = apply_customer_credit(customer)
            recalculate_customer_billing_state(customer)
        db.session.commit()
        return (
            jsonify(
                {
                    "adjustment": serialize_adjustment(adjustment),
                    "credit_applications": credit_applications,
                    "balance": calculate_customer_balance(customer),
                }
            ),
            201,
        )

    @app.post("/api/cron/billing/overdue")
    @cron_secret_required
    def cron_billing_overdue():
        return jsonify(sweep_overdue_invoices())

    @app.post("/api/cron/billing/run")
    @cron_secret_required
    def cron_billing_run():
        return jsonify(run_automated_billing())

    @app.post("/api/cron/billing/reminders")
    @cron_secret_required
    def cron_billing_reminders():
        return jsonify(run_payment_reminders())

    def _statement_for(customer: Customer) -> dict[str, object]:
        start = _date_arg("start")
        end = _date_arg("end")
        if start and end and end < start:
            abort(400, description="The statement end date is before its start date.")
        return build_customer_statement(customer, start, end)

    @app.get("/api/customers/<int:customer_id>/statement")
    @login_required
    def customer_statement(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        return jsonify({"statement": _statement_for(customer)})

    @app.get("/api/customers/<int:customer_id>/statement.pdf")
    @login_required
    def customer_statement_pdf(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        content = render_statement_pdf(customer, _statement_for(customer))
        return _pdf_response(content, f"statement-{customer.account_number}")

    # -- Payments ------------------------------------------------------------

    @app.post("/api/customers/<int:customer_id>/payments")
    @login_required
    def record_customer_payment(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        payload = request_payload()
        raw_ids = payload.get("invoice_ids") or []
        if not isinstance(raw_ids, list):
            raw_ids = [raw_ids]
        invoice_ids = [value for value in (_coerce_int(raw) for raw in raw_ids) if value]

        payment, result = record_payment(
            customer,
            parse_amount_cents(payload.get("amount")),
            (_clean_text(payload.get("method")) or "").lower(),
            invoice_ids=invoice_ids or None,
            notes=_clean_text(payload.get("notes")),
            mpesa_receipt_number=_clean_text(payload.get("mpesa_receipt_number")),
            external_reference=_clean_text(payload.get("reference")),
            performed_by=current_admin_id(),
        )
        db.session.commit()
        notify_payment_received(payment)
        return (
            jsonify(
                {
                    "payment": serialize_payment(payment),
                    **result,
                    "balance": calculate_customer_balance(customer),
                }
            ),
            201,
        )

    @app.get("/api/customers/<int:customer_id>/payments")
    @login_required
    def list_customer_payments(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        payments = (
            Payment.query.filter_by(customer_id=customer.id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .all()
        )
        return jsonify({"payments": [serialize_payment(payment) for payment in payments]})

    @app.get("/api/payments")
    @login_required
    def list_payments():
        query = Payment.query
        customer_id = _coerce_int(request.args.get("customer_id"))
        if customer_id:
            query = query.filter(Payment.customer_id == customer_id)
        for field in ("method", "status"):
            value = request.args.get(field)
            if value:
                query = query.filter(getattr(Payment, field) == value)
        start_at, end_at = _date_bounds(_date_arg("start"), _date_arg("end"))
        if start_at:
            query = query.filter(Payment.paid_at >= start_at)
        if end_at:
            query = query.filter(Payment.paid_at < end_at)
        payments = (
            query.order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(_limit_arg(200, 1000))
            .all()
        )
        return jsonify({"payments": [serialize_payment(payment) for payment in payments]})

    @app.get("/api/payments/<int:payment_id>/pdf")
    @login_required
    def payment_receipt_pdf(payment_id: int):
        payment = Payment.query.get_or_404(payment_id)
        return _pdf_response(render_payment_receipt_pdf(payment), payment.reference_number)

    def _card_intent_response(invoice: Invoice):
        if not stripe_active():
            return _json_error("Card payments require Stripe configuration.", 503)
        try:
            intent = create_card_payment_intent(invoice)
        except StripeError as error:
            db.session.rollback()
            app.logger.warning(
                "Stripe rejected the intent for %s: %s", invoice.invoice_number, error
            )
            return _json_error(describe_stripe_error(error), 502)
        db.session.commit()
        return jsonify(
            {
                "client_secret": getattr(intent, "client_secret", None),
                "payment_intent_id": getattr(intent, "id", None),
                "amount_cents": invoice.balance_cents,
            }
        )

    @app.post("/api/invoices/<int:invoice_id>/card-intent")
    @login_required
    def create_invoice_card_intent(invoice_id: int):
        invoice = Invoice.query.get_or_404(invoice_id)
        return _card_intent_response(invoice)

    @app.post("/stripe/webhook")
    def stripe_webhook():
        if not stripe_active():
            return jsonify({"status": "disabled"}), 200

        payload = request.data
        sig_header = request.headers.get("Stripe-Signature")
        webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

        try:
            if webhook_secret:
                event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
            else:
                json_payload = json.loads(payload.decode("utf-8"))
                event = stripe.Event.construct_from(json_payload, stripe.api_key)
        except (ValueError, SignatureVerificationError, StripeError) as error:
            return jsonify({"error": str(error)}), 400

        handled = handle_stripe_event(event)
        if handled:
            db.session.commit()
            return jsonify({"status": "ok"}), 200

        db.session.rollback()
        return jsonify({"status": "ignored"}), 200

    # -- M-Pesa --------------------------------------------------------------

    def _start_stk_push(customer: Customer):
        if not _mpesa_configured():
            return _json_error("M-Pesa is not configured.", 503)
        payload = request_payload()
        amount_cents = parse_amount_cents(payload.get("amount"))
        if amount_cents is None:
            amount_cents = calculate_customer_balance(customer)["outstanding_cents"]
        try:
            transaction = initiate_stk_push(
                customer, _clean_text(payload.get("phone_number")), amount_cents
            )
        except MpesaApiError as exc:
            db.session.rollback()
            log_activity(
                "ERROR",
                "mpesa",
                "mpesa",
                f"STK push failed: {exc}",
                customer_id=customer.id,
            )
            db.session.commit()
            return _json_error(str(exc), 502)

        db.session.commit()
        return (
            jsonify(
                {
                    "checkout_request_id": transaction.checkout_request_id,
                    "merchant_request_id": transaction.merchant_request_id,
                    "payment_id": transaction.payment_id,
                    "status": transaction.status,
                    "message": "Check your phone and enter your M-Pesa PIN to complete the payment.",
                }
            ),
            201,
        )

    @app.post("/api/customers/<int:customer_id>/mpesa/stk-push")
    @login_required
    def admin_stk_push(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        return _start_stk_push(customer)

    @app.post("/api/mpesa/callback")
    def mpesa_callback():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"ResultCode": 1, "ResultDesc": "Invalid payload"}), 400

        try:
            result = process_mpesa_callback(body)
            db.session.commit()
        except (ValueError, SQLAlchemyError) as exc:
            db.session.rollback()
            app.logger.exception("M-Pesa callback processing failed")
            log_activity("ERROR", "mpesa", "mpesa", f"Callback processing failed: {exc}")
            db.session.commit()
            return jsonify({"ResultCode": 1, "ResultDesc": "Processing failed"}), 500

        payment_id = result.get("payment_id")
        if payment_id and result.get("status") == "completed":
            payment = db.session.get(Payment, payment_id)
            if payment is not None:
                notify_payment_received(payment)
        return jsonify({"ResultCode": 0, "ResultDesc": "Success"})

    @app.post("/api/mpesa/validation")
    def mpesa_validation():
        return jsonify({"ResultCode": 0, "ResultDesc": "Accepted"})

    @app.get("/api/mpesa/transactions")
    @login_required
    def list_mpesa_transactions():
        query = MpesaTransaction.query
        status = request.args.get("status")
        if status:
            query = query.filter(MpesaTransaction.status == status.lower())
        transactions = (
            query.order_by(MpesaTransaction.created_at.desc(), MpesaTransaction.id.desc())
            .limit(_limit_arg(200, 1000))
            .all()
        )
        return jsonify(
            {"transactions": [serialize_mpesa_transaction(t) for t in transactions]}
        )

    @app.post("/api/mpesa/transactions/<int:transaction_id>/assign")
    @login_required
    def assign_mpesa_transaction(transaction_id: int):
        transaction = MpesaTransaction.query.get_or_404(transaction_id)
        customer_id = _coerce_int(request_payload().get("customer_id"))
        customer = db.session.get(Customer, customer_id) if customer_id else None
        if customer is None:
            return _json_error("Customer not found.", 404)
        payment = assign_unmatched_transaction(
            transaction, customer, performed_by=current_admin_id()
        )
        db.session.commit()
        notify_payment_received(payment)
        return jsonify(
            {
                "transaction": serialize_mpesa_transaction(transaction),
                "payment": serialize_payment(payment),
            }
        )

    @app.get("/api/payments/status/<checkout_id>")
    def payment_status(checkout_id: str):
        transaction = MpesaTransaction.query.filter_by(checkout_request_id=checkout_id).first()
        if not session.get("admin_authenticated"):
            portal_customer_id = session.get(PORTAL_SESSION_KEY)
            if not portal_customer_id:
                return _json_error("Login required.", 401)
            if transaction is not None and transaction.customer_id != portal_customer_id:
                transaction = None
        if transaction is None:
            return _json_error("Transaction not found.", 404)
        return jsonify(
            {
                "checkout_request_id": transaction.checkout_request_id,
                "status": transaction.status,
                "result_desc": transaction.result_desc,
                "mpesa_receipt_number": transaction.mpesa_receipt_number,
                "amount_cents": transaction.amount_cents,
                "payment_id": transaction.payment_id,
            }
        )

    # -- Inventory -----------------------------------------------------------

    def _apply_inventory_payload(item: InventoryItem, payload: dict) -> None:
        if "name" in payload:
            name = _clean_text(payload.get("name"))
            if not name:
                raise InventoryError("Item name cannot be empty.")
            item.name = name
        if "category" in payload:
            category = _clean_text(payload.get("category"))
            if not category:
                raise InventoryError("Item category cannot be empty.")
            item.category = category
        for field in ("sku", "description", "location"):
            if field in payload:
                setattr(item, field, _clean_text(payload.get(field)))
        if "unit_cost" in payload:
            cost = parse_amount_cents(payload.get("unit_cost"))
            if cost is None or cost < 0:
                raise InventoryError("Unit cost must be zero or a positive amount.")
            item.unit_cost_cents = cost
        if "reorder_level" in payload:
            level = _coerce_int(payload.get("reorder_level"))
            if level is None or level < 0:
                raise InventoryError("Reorder level must be zero or more.")
            item.reorder_level = level
        if "requires_serial" in payload:
            item.requires_serial = is_truthy(payload.get("requires_serial"))
        if "status" in payload:
            if payload.get("status") not in INVENTORY_STATUS_OPTIONS:
                raise InventoryError(
                    f"Status must be one of: {', '.join(INVENTORY_STATUS_OPTIONS)}."
                )
            item.status = payload["status"]

    @app.get("/api/inventory")
    @login_required
    def list_inventory():
        query = InventoryItem.query
        category = request.args.get("category")
        if category:
            query = query.filter(db.func.lower(InventoryItem.category) == category.lower())
        status = request.args.get("status")
        if status:
            query = query.filter(InventoryItem.status == status)
        if is_truthy(request.args.get("low_stock")):
            query = query.filter(InventoryItem.stock_quantity <= InventoryItem.reorder_level)
        search = (request.args.get("search") or "").strip()
        if search:
            pattern = f"%{search.lower()}%"
            query = query.filter(
                or_(
                    db.func.lower(InventoryItem.name).like(pattern),
                    db.func.lower(db.func.coalesce(InventoryItem.sku, "")).like(pattern),
                )
            )
        items = query.order_by(InventoryItem.category.asc(), InventoryItem.name.asc()).all()
        return jsonify(
            {
                "items": [serialize_inventory_item(item) for item in items],
                "categories": inventory_report()["categories"],
            }
        )

    @app.post("/api/inventory")
    @login_required
    def create_inventory_item():
        payload = request_payload()
        if not _clean_text(payload.get("name")) or not _clean_text(payload.get("category")):
            return _json_error("Item name and category are required.")
        sku = _clean_text(payload.get("sku"))
        if sku and InventoryItem.query.filter_by(sku=sku).first():
            return _json_error(f"SKU {sku} is already in use.", 409)
        opening_stock = _coerce_int(payload.get("stock_quantity")) or 0
        if opening_stock < 0:
            return _json_error("Opening stock cannot be negative.")

        item = InventoryItem(stock_quantity=opening_stock)
        _apply_inventory_payload(item, payload)
        db.session.add(item)
        db.session.flush()
        if opening_stock:
            record_inventory_movement(
                item,
                "adjustment",
                opening_stock,
                reference_type="opening_stock",
                notes="Opening stock",
                performed_by=current_admin_id(),
            )
        log_activity(
            "INFO",
            "inventory-management",
            "inventory",
            f"Inventory item {item.name} created",
            {"item_id": item.id, "stock_quantity": opening_stock},
        )
        db.session.commit()
        return jsonify({"item": serialize_inventory_item(item)}), 201

    @app.get("/api/inventory/<int:item_id>")
    @login_required
    def get_inventory_item(item_id: int):
        item = InventoryItem.query.get_or_404(item_id)
        data = serialize_inventory_item(item)
        data["serial_numbers"] = [
            {"serial_number": serial.serial_number, "status": serial.status}
            for serial in InventorySerialNumber.query.filter_by(inventory_item_id=item.id)
            .order_by(InventorySerialNumber.id.asc())
            .all()
        ]
        return jsonify({"item": data})

    @app.route("/api/inventory/<int:item_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_inventory_item(item_id: int):
        item = InventoryItem.query.get_or_404(item_id)
        payload = request_payload()
        sku = _clean_text(payload.get("sku"))
        if sku and InventoryItem.query.filter(
            InventoryItem.sku == sku, InventoryItem.id != item.id
        ).first():
            return _json_error(f"SKU {sku} is already in use.", 409)
        if "stock_quantity" in payload:
            return _json_error("Use the stock adjustment endpoint to change quantities.")
        _apply_inventory_payload(item, payload)
        db.session.commit()
        return jsonify({"item": serialize_inventory_item(item)})

    @app.delete("/api/inventory/<int:item_id>")
    @login_required
    def delete_inventory_item(item_id: int):
        item = InventoryItem.query.get_or_404(item_id)
        in_use = (
            CustomerEquipment.query.filter_by(inventory_item_id=item.id).first()
            or PurchaseOrderItem.query.filter_by(inventory_item_id=item.id).first()
        )
        if in_use:
            return _json_error(
                "This item has allocations or purchase orders; mark it discontinued instead.",
                409,
            )
        log_activity(
            "WARNING", "inventory-management", "inventory", f"Inventory item {item.name} deleted"
        )
        db.session.delete(item)
        db.session.commit()
        return jsonify({"status": "deleted"})

    @app.post("/api/inventory/<int:item_id>/adjust")
    @login_required
    def adjust_inventory_item(item_id: int):
        item = InventoryItem.query.get_or_404(item_id)
        payload = request_payload()
        delta = _coerce_int(payload.get("quantity"))
        if delta is None:
            return _json_error("A whole-number quantity is required.")
        reason = _clean_text(payload.get("reason")) or "Manual adjustment"
        movement = adjust_stock(item, delta, reason, performed_by=current_admin_id())
        db.session.commit()
        return jsonify(
            {"item": serialize_inventory_item(item), "movement": serialize_movement(movement)}
        )

    @app.get("/api/inventory/alerts")
    @login_required
    def inventory_alerts():
        items = (
            InventoryItem.query.filter(
                InventoryItem.status == "active",
                InventoryItem.stock_quantity <= InventoryItem.reorder_level,
            )
            .order_by(InventoryItem.stock_quantity.asc(), InventoryItem.name.asc())
            .all()
        )
        return jsonify(
            {
                "alerts": [serialize_inventory_item(item) for item in items],
                "count": len(items),
            }
        )

    @app.post("/api/inventory/allocate")
    @login_required
    def allocate_inventory():
        payload = request_payload()
        customer_id = _coerce_int(payload.get("customer_id"))
        customer = db.session.get(Customer, customer_id) if customer_id else None
        if customer is None:
            return _json_error("Customer not found.", 404)
        requirements = payload.get("equipment_requirements")
        if requirements is not None and not isinstance(requirements, list):
            return _json_error("equipment_requirements must be a list.")

        result = allocate_equipment(
            customer, requirements or None, performed_by=current_admin_id()
        )
        db.session.commit()
        return jsonify({"success": not result["allocation_errors"], **result})

    @app.get("/api/inventory/allocate")
    @login_required
    def allocation_recommendations():
        plan = None
        plan_id = _coerce_int(request.args.get("plan_id"))
        customer_id = _coerce_int(request.args.get("customer_id"))
        if plan_id:
            plan = db.session.get(ServicePlan, plan_id)
        elif customer_id:
            customer = db.session.get(Customer, customer_id)
            if customer is None:
                return _json_error("Customer not found.", 404)
            plan = primary_service_plan(customer)
        if plan is None:
            return _json_error("Provide a plan_id or a customer with a service plan.")
        recommendations = equipment_recommendations(plan)
        return jsonify(
            {
                "plan": serialize_service_plan(plan),
                "recommendations": recommendations,
                "estimated_total_cents": sum(
                    entry["estimated_cost_cents"] for entry in recommendations
                ),
            }
        )

    @app.get("/api/customers/<int:customer_id>/equipment")
    @login_required
    def list_customer_equipment(customer_id: int):
        customer = Customer.query.get_or_404(customer_id)
        return jsonify(
            {"equipment": [serialize_customer_equipment(e) for e in customer.equipment]}
        )

    @app.post("/api/customers/<int:customer_id>/equipment/<int:equipment_id>/return")
    @login_required
    def return_customer_equipment(customer_id: int, equipment_id: int):
        equipment = CustomerEquipment.query.filter_by(
            id=equipment_id, customer_id=customer_id
        ).first_or_404()
        condition = _clean_text(request_payload().get("condition")) or "good"
        return_equipment(equipment, condition, performed_by=current_admin_id())
        db.session.commit()
        return jsonify({"equipment": serialize_customer_equipment(equipment)})

    @app.get("/api/inventory/movements")
    @login_required
    def list_inventory_movements():
        query = InventoryMovement.query
        item_id = _coerce_int(request.args.get("item_id"))
        if item_id:
            query = query.filter(InventoryMovement.inventory_item_id == item_id)
        movement_type = request.args.get("movement_type")
        if movement_type:
            query = query.filter(InventoryMovement.movement_type == movement_type)
        movements = (
            query.order_by(InventoryMovement.created_at.desc(), InventoryMovement.id.desc())
            .limit(_limit_arg(200, 1000))
            .all()
        )
        return jsonify({"movements": [serialize_movement(m) for m in movements]})

    # -- Suppliers and purchase orders ---------------------------------------

    def _apply_supplier_payload(supplier: Supplier, payload: dict) -> None:
        if "company_name" in payload:
            name = _clean_text(payload.get("company_name"))
            if not name:
                raise ProcurementError("Company name cannot be empty.")
            supplier.company_name = name
        for field in ("contact_name", "email", "phone", "address", "tax_number"):
            if field in payload:
                setattr(supplier, field, _clean_text(payload.get(field)))
        if "payment_terms_days" in payload:
            terms = _coerce_int(payload.get("payment_terms_days"))
            if terms is None or terms < 0:
                raise ProcurementError("Payment terms must be zero or more days.")
            supplier.payment_terms_days = terms
        if "is_active" in payload:
            supplier.is_active = is_truthy(payload.get("is_active"))

    @app.get("/api/suppliers")
    @login_required
    def list_suppliers():
        query = Supplier.query
        if not is_truthy(request.args.get("include_inactive")):
            query = query.filter_by(is_active=True)
        suppliers = query.order_by(Supplier.company_name.asc()).all()
        return jsonify({"suppliers": [serialize_supplier(s) for s in suppliers]})

    @app.post("/api/suppliers")
    @login_required
    def create_supplier():
        payload = request_payload()
        if not _clean_text(payload.get("company_name")):
            return _json_error("Company name is required.")
        code = _clean_text(payload.get("supplier_code"))
        if code and Supplier.query.filter_by(supplier_code=code).first():
            return _json_error(f"Supplier code {code} is already in use.", 409)

        supplier = Supplier(
            supplier_code=code, payment_terms_days=DEFAULT_SUPPLIER_PAYMENT_TERMS_DAYS
        )
        _apply_supplier_payload(supplier, payload)
        db.session.add(supplier)
        db.session.flush()
        supplier.supplier_code = supplier.supplier_code or f"SUP-{supplier.id:04d}"
        log_activity(
            "INFO", "procurement", "procurement", f"Supplier {supplier.company_name} added"
        )
        db.session.commit()
        return jsonify({"supplier": serialize_supplier(supplier)}), 201

    @app.get("/api/suppliers/<int:supplier_id>")
    @login_required
    def get_supplier(supplier_id: int):
        supplier = Supplier.query.get_or_404(supplier_id)
        return jsonify({"supplier": serialize_supplier(supplier)})

    @app.route("/api/suppliers/<int:supplier_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_supplier(supplier_id: int):
        supplier = Supplier.query.get_or_404(supplier_id)
        _apply_supplier_payload(supplier, request_payload())
        db.session.commit()
        return jsonify({"supplier": serialize_supplier(supplier)})

    @app.delete("/api/suppliers/<int:supplier_id>")
    @login_required
    def delete_supplier(supplier_id: int):
        supplier = Supplier.query.get_or_404(supplier_id)
        if supplier.purchase_orders or supplier.invoices:
            return _json_error(
                "Suppliers with purchase orders cannot be deleted; deactivate them instead.",
                409,
            )
        db.session.delete(supplier)
        db.session.commit()
        return jsonify({"status": "deleted"})

    @app.get("/api/suppliers/<int:supplier_id>/invoices")
    @login_required
    def list_supplier_invoices_for_supplier(supplier_id: int):
        supplier = Supplier.query.get_or_404(supplier_id)
        return jsonify(
            {"invoices": [serialize_supplier_invoice(inv) for inv in supplier.invoices]}
        )

    @app.get("/api/purchase-orders")
    @login_required
    def list_purchase_orders():
        query = PurchaseOrder.query
        status = request.args.get("status")
        if status:
            query = query.filter(PurchaseOrder.status == status)
        supplier_id = _coerce_int(request.args.get("supplier_id"))
        if supplier_id:
            query = query.filter(PurchaseOrder.supplier_id == supplier_id)
        orders = query.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc()).all()
        return jsonify({"purchase_orders": [serialize_purchase_order(o) for o in orders]})

    @app.post("/api/purchase-orders")
    @login_required
    def create_purchase_order_route():
        payload = request_payload()
        order = create_purchase_order(
            payload.get("supplier_id"),
            payload.get("items"),
            notes=_clean_text(payload.get("notes")),
            created_by=current_admin_id(),
        )
        db.session.commit()
        return jsonify({"purchase_order": serialize_purchase_order(order)}), 201

    @app.get("/api/purchase-orders/<int:order_id>")
    @login_required
    def get_purchase_order(order_id: int):
        order = PurchaseOrder.query.get_or_404(order_id)
        return jsonify({"purchase_order": serialize_purchase_order(order)})

    @app.post("/api/purchase-orders/<int:order_id>/approve")
    @login_required
    def approve_purchase_order_route(order_id: int):
        order = PurchaseOrder.query.get_or_404(order_id)
        approve_purchase_order(order)
        db.session.commit()
        return jsonify({"purchase_order": serialize_purchase_order(order)})

    @app.post("/api/purchase-orders/<int:order_id>/cancel")
    @login_required
    def cancel_purchase_order_route(order_id: int):
        order = PurchaseOrder.query.get_or_404(order_id)
        cancel_purchase_order(order)
        db.session.commit()
        return jsonify({"purchase_order": serialize_purchase_order(order)})

    @app.post("/api/purchase-orders/<int:order_id>/receive")
    @login_required
    def receive_purchase_order_route(order_id: int):
        order = PurchaseOrder.query.get_or_404(order_id)
        payload = request_payload()
        result = receive_purchase_order(
            order,
            payload.get("items"),
            payload.get("serial_numbers"),
            performed_by=_coerce_int(payload.get("user_id")) or current_admin_id(),
        )
        db.session.commit()
        return jsonify(result)

    @app.get("/api/supplier-invoices")
    @login_required
    def list_supplier_invoices():
        query = SupplierInvoice.query
        supplier_id = _coerce_int(request.args.get("supplier_id"))
        if supplier_id:
            query = query.filter(SupplierInvoice.supplier_id == supplier_id)
        status = request.args.get("status")
        if status:
            query = query.filter(SupplierInvoice.status == status)
        invoices = query.order_by(
            SupplierInvoice.invoice_date.desc(), SupplierInvoice.id.desc()
        ).all()
        return jsonify({"invoices": [serialize_supplier_invoice(inv) for inv in invoices]})

    @app.get("/api/supplier-invoices/<int:invoice_id>")
    @login_required
    def get_supplier_invoice(invoice_id: int):
        invoice = SupplierInvoice.query.get_or_404(invoice_id)
        return jsonify({"invoice": serialize_supplier_invoice(invoice)})

    @app.post("/api/supplier-invoices/<int:invoice_id>/payments")
    @login_required
    def pay_supplier_invoice(invoice_id: int):
        invoice = SupplierInvoice.query.get_or_404(invoice_id)
        record_supplier_payment(invoice, parse_amount_cents(request_payload().get("amount")))
        db.session.commit()
        return jsonify({"invoice": serialize_supplier_invoice(invoice)})

    @app.get("/api/supplier-invoices/<int:invoice_id>/pdf")
    @login_required
    def supplier_invoice_pdf(invoice_id: int):
        invoice = SupplierInvoice.query.get_or_404(invoice_id)
        return _pdf_response(render_supplier_invoice_pdf(invoice), invoice.invoice_number)

    # -- Employees and payroll -----------------------------------------------

    def _apply_employee_payload(employee: Employee, payload: dict) -> None:
        if "first_name" in payload:
            first_name = _clean_text(payload.get("first_name"))
            if not first_name:
                raise PayrollError("First name cannot be empty.")
            employee.first_name = first_name
        if "last_name" in payload:
            employee.last_name = _clean_text(payload.get("last_name")) or ""
        for field in ("phone", "position", "department"):
            if field in payload:
                setattr(employee, field, _clean_text(payload.get(field)))
        if "hire_date" in payload:
            employee.hire_date = _payload_date(payload, "hire_date")
        for field, column in (
            ("basic_salary", "basic_salary_cents"),
            ("allowances", "allowances_cents"),
        ):
            if field in payload:
                cents = parse_amount_cents(payload.get(field))
                if cents is None or cents < 0:
                    raise PayrollError(f"{field.replace('_', ' ').title()} must be a positive amount.")
                setattr(employee, column, cents)
        if "status" in payload:
            if payload.get("status") not in EMPLOYEE_STATUS_OPTIONS:
                raise PayrollError(
                    f"Status must be one of: {', '.join(EMPLOYEE_STATUS_OPTIONS)}."
                )
            employee.status = payload["status"]

    @app.get("/api/employees")
    @login_required
    def list_employees():
        query = Employee.query
        status = request.args.get("status")
        if status:
            query = query.filter(Employee.status == status)
        department = request.args.get("department")
        if department:
            query = query.filter(Employee.department == department)
        employees = query.order_by(Employee.employee_number.asc()).all()
        return jsonify({"employees": [serialize_employee(e) for e in employees]})

    @app.post("/api/employees")
    @login_required
    def create_employee():
        payload = request_payload()
        email = (_clean_text(payload.get("email")) or "").lower()
        if not _clean_text(payload.get("first_name")) or not email:
            return _json_error("First name and email are required.")
        if Employee.query.filter(db.func.lower(Employee.email) == email).first():
            return _json_error("An employee with this email already exists.", 409)

        employee = Employee(
            employee_number=next_plain_number(Employee.employee_number, "EMP"),
            email=email,
        )
        _apply_employee_payload(employee, payload)
        db.session.add(employee)
        log_activity(
            "INFO",
            "hr",
            "hr",
            f"Employee {employee.employee_number} ({employee.full_name}) added",
        )
        db.session.commit()
        return jsonify({"employee": serialize_employee(employee)}), 201

    @app.get("/api/employees/<int:employee_id>")
    @login_required
    def get_employee(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        return jsonify({"employee": serialize_employee(employee)})

    @app.route("/api/employees/<int:employee_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_employee(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        payload = request_payload()
        if "email" in payload:
            email = (_clean_text(payload.get("email")) or "").lower()
            if not email:
                return _json_error("Email cannot be empty.")
            if Employee.query.filter(
                db.func.lower(Employee.email) == email, Employee.id != employee.id
            ).first():
                return _json_error("An employee with this email already exists.", 409)
            employee.email = email
        _apply_employee_payload(employee, payload)
        db.session.commit()
        return jsonify({"employee": serialize_employee(employee)})

    @app.delete("/api/employees/<int:employee_id>")
    @login_required
    def delete_employee(employee_id: int):
        employee = Employee.query.get_or_404(employee_id)
        if employee.payroll_records:
            return _json_error(
                "Employees with payroll history cannot be deleted; mark them terminated instead.",
                409,
            )
        for ticket in SupportTicket.query.filter_by(assigned_to=employee.id).all():
            ticket.assigned_to = None
        db.session.delete(employee)
        db.session.commit()
        return jsonify({"status": "deleted"})

    @app.post("/api/payroll/generate")
    @login_required
    def generate_payroll_route():
        payload = request_payload()
        raw_ids = payload.get("employee_ids") or []
        if not isinstance(raw_ids, list):
            raw_ids = [raw_ids]
        employee_ids = [value for value in (_coerce_int(raw) for raw in raw_ids) if value]
        overtime = payload.get("overtime") if isinstance(payload.get("overtime"), dict) else None
        result = generate_payroll(
            payload.get("period"), employee_ids or None, overtime=overtime
        )
        db.session.commit()
        return jsonify(result)

    @app.post("/api/payroll/approve")
    @login_required
    def approve_payroll_route():
        updated = transition_payroll(request_payload().get("period"), "approved")
        db.session.commit()
        return jsonify({"updated": updated, "status": "approved"})

    @app.post("/api/payroll/pay")
    @login_required
    def pay_payroll_route():
        updated = transition_payroll(request_payload().get("period"), "paid")
        db.session.commit()
        return jsonify({"updated": updated, "status": "paid"})

    @app.get("/api/payroll")
    @login_required
    def list_payroll_records():
        query = PayrollRecord.query
        period = request.args.get("period")
        if period:
            query = query.filter(PayrollRecord.period == period)
        status = request.args.get("status")
        if status:
            query = query.filter(PayrollRecord.status == status)
        records = query.order_by(PayrollRecord.period.desc(), PayrollRecord.id.asc()).all()
        return jsonify({"records": [serialize_payroll_record(r) for r in records]})

    # -- Network -------------------------------------------------------------

    def _validated_router_ip(raw: object | None) -> str:
        text = _clean_text(raw)
        try:
            return str(ipaddress.ip_address(text or ""))
        except ValueError as exc:
            raise NetworkError(f"Invalid router IP address: {text}") from exc

    @app.get("/api/routers")
    @login_required
    def list_routers():
        routers = NetworkRouter.query.order_by(NetworkRouter.name.asc()).all()
        return jsonify({"routers": [serialize_router(router) for router in routers]})

    @app.post("/api/routers")
    @login_required
    def create_router():
        payload = request_payload()
        name = _clean_text(payload.get("name"))
        if not name:
            return _json_error("Router name is required.")
        if NetworkRouter.query.filter_by(name=name).first():
            return _json_error(f"Router {name} already exists.", 409)
        router = NetworkRouter(
            name=name,
            ip_address=_validated_router_ip(payload.get("ip_address")),
            location=_clean_text(payload.get("location")),
            router_type=_clean_text(payload.get("router_type")),
            status=_clean_text(payload.get("status")) or "active",
        )
        db.session.add(router)
        log_activity("INFO", "network", "network", f"Router {name} added")
        db.session.commit()
        return jsonify({"router": serialize_router(router)}), 201

    @app.route("/api/routers/<int:router_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_router(router_id: int):
        router = NetworkRouter.query.get_or_404(router_id)
        payload = request_payload()
        if "name" in payload:
            name = _clean_text(payload.get("name"))
            if not name:
                return _json_error("Router name cannot be empty.")
            if NetworkRouter.query.filter(
                NetworkRouter.name == name, NetworkRouter.id != router.id
            ).first():
                return _json_error(f"Router {name} already exists.", 409)
            router.name = name
        if "ip_address" in payload:
            router.ip_address = _validated_router_ip(payload.get("ip_address"))
        for field in ("location", "router_type"):
            if field in payload:
                setattr(router, field, _clean_text(payload.get(field)))
        if "status" in payload:
            router.status = _clean_text(payload.get("status")) or router.status
        db.session.commit()
        return jsonify({"router": serialize_router(router)})

    @app.delete("/api/routers/<int:router_id>")
    @login_required
    def delete_router(router_id: int):
        router = NetworkRouter.query.get_or_404(router_id)
        if router.subnets:
            return _json_error("Move or delete this router's subnets first.", 409)
        db.session.delete(router)
        db.session.commit()
        return jsonify({"status": "deleted"})

    def _router_from_payload(payload: dict) -> NetworkRouter | None:
        router_id = _coerce_int(payload.get("router_id"))
        if not router_id:
            return None
        router = db.session.get(NetworkRouter, router_id)
        if router is None:
            raise NetworkError("Router not found.")
        return router

    def _overlap_conflict(network_text: str, overlapping: list[Subnet]):
        return (
            jsonify(
                {
                    "error": f"{network_text} overlaps existing subnets.",
                    "overlapping_subnets": [
                        serialize_subnet(subnet, include_usage=False) for subnet in overlapping
                    ],
                }
            ),
            409,
        )

    def _populate_ip_pool(subnet: Subnet, network) -> tuple[int, str | None]:
        if not should_generate_ip_pool(network, int(app.config["IP_POOL_MAX_HOSTS"])):
            return 0, None
        try:
            created = generate_ip_pool(subnet, network, int(app.config["IP_POOL_BATCH_SIZE"]))
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            app.logger.exception("IP pool generation failed for %s", subnet.network)
            log_activity(
                "ERROR",
                "network",
                "network",
                f"IP pool generation failed for {subnet.network}: {exc}",
            )
            db.session.commit()
            return 0, "IP pool generation failed; retry with generate-ips."
        return created, None

    @app.get("/api/subnets")
    @login_required
    def list_subnets():
        query = Subnet.query
        router_id = _coerce_int(request.args.get("router_id"))
        if router_id:
            query = query.filter(Subnet.router_id == router_id)
        subnets = query.order_by(Subnet.network.asc()).all()
        return jsonify({"subnets": [serialize_subnet(subnet) for subnet in subnets]})

    @app.post("/api/subnets")
    @login_required
    def create_subnet():
        payload = request_payload()
        name = _clean_text(payload.get("name"))
        if not name:
            return _json_error("Subnet name is required.")
        network = parse_cidr(payload.get("network") or payload.get("cidr"))
        network_text = str(network)

        if Subnet.query.filter_by(network=network_text).first():
            return _json_error(f"Subnet {network_text} already exists.", 409)
        overlapping = find_overlapping_subnets(network)
        if overlapping:
            return _overlap_conflict(network_text, overlapping)

        subnet = Subnet(
            name=name,
            network=network_text,
            gateway=validate_gateway(payload.get("gateway"), network),
            dns_servers=_clean_text(payload.get("dns_servers")),
            description=_clean_text(payload.get("description")),
            router=_router_from_payload(payload),
            status="active",
        )
        db.session.add(subnet)
        log_activity(
            "INFO", "network", "network", f"Subnet {network_text} ({name}) created"
        )
        db.session.commit()

        ips_generated, pool_error = _populate_ip_pool(subnet, network)
        return (
            jsonify(
                {
                    "subnet": serialize_subnet(subnet),
                    "ips_generated": ips_generated,
                    "pool_error": pool_error,
                }
            ),
            201,
        )

    @app.post("/api/subnets/check-overlap")
    @login_required
    def check_subnet_overlap():
        payload = request_payload()
        network = parse_cidr(payload.get("cidr") or payload.get("network"))
        overlapping = find_overlapping_subnets(
            network, exclude_id=_coerce_int(payload.get("exclude_id"))
        )
        return jsonify(
            {
                "network": str(network),
                "usable_hosts": usable_host_count(network),
                "overlaps": bool(overlapping),
                "overlapping_subnets": [
                    serialize_subnet(subnet, include_usage=False) for subnet in overlapping
                ],
            }
        )

    @app.get("/api/subnets/<int:subnet_id>")
    @login_required
    def get_subnet(subnet_id: int):
        subnet = Subnet.query.get_or_404(subnet_id)
        return jsonify({"subnet": serialize_subnet(subnet)})

    @app.route("/api/subnets/<int:subnet_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_subnet(subnet_id: int):
        subnet = Subnet.query.get_or_404(subnet_id)
        payload = request_payload()
        network = parse_cidr(payload.get("network") or payload.get("cidr") or subnet.network)
        network_text = str(network)
        network_changed = network_text != subnet.network

        if network_changed:
            if Subnet.query.filter(
                Subnet.network == network_text, Subnet.id != subnet.id
            ).first():
                return _json_error(f"Subnet {network_text} already exists.", 409)
            overlapping = find_overlapping_subnets(network, exclude_id=subnet.id)
            if overlapping:
                return _overlap_conflict(network_text, overlapping)
            if subnet_usage(subnet)["assigned_ips"]:
                return _json_error(
                    "Release the assigned addresses before changing the network.", 409
                )
            IPAddress.query.filter_by(subnet_id=subnet.id).delete()
            subnet.network = network_text

        if "name" in payload:
            name = _clean_text(payload.get("name"))
            if not name:
                return _json_error("Subnet name cannot be empty.")
            subnet.name = name
        if "gateway" in payload or network_changed:
            gateway = validate_gateway(payload.get("gateway", subnet.gateway), network)
            if network_changed:
                subnet.gateway = gateway
            else:
                try:
                    move_subnet_gateway(subnet, gateway)
                except NetworkError as exc:
                    db.session.rollback()
                    return _json_error(str(exc), 409)
        for field in ("dns_servers", "description"):
            if field in payload:
                setattr(subnet, field, _clean_text(payload.get(field)))
        if "router_id" in payload:
            subnet.router = _router_from_payload(payload)
        if "status" in payload:
            subnet.status = _clean_text(payload.get("status")) or subnet.status

        log_activity("INFO", "network", "network", f"Subnet {subnet.network} updated")
        db.session.commit()

        ips_generated, pool_error = (0, None)
        if network_changed:
            ips_generated, pool_error = _populate_ip_pool(subnet, network)
        return jsonify(
            {
                "subnet": serialize_subnet(subnet),
                "ips_generated": ips_generated,
                "pool_error": pool_error,
            }
        )

    @app.delete("/api/subnets/<int:subnet_id>")
    @login_required
    def delete_subnet(subnet_id: int):
        subnet = Subnet.query.get_or_404(subnet_id)
        if subnet_usage(subnet)["assigned_ips"]:
            return _json_error("Subnets with assigned addresses cannot be deleted.", 409)
        log_activity("WARNING", "network", "network", f"Subnet {subnet.network} deleted")
        db.session.delete(subnet)
        db.session.commit()
        return jsonify({"status": "deleted"})

    @app.post("/api/subnets/<int:subnet_id>/generate-ips")
    @login_required
    def generate_subnet_ips(subnet_id: int):
        subnet = Subnet.query.get_or_404(subnet_id)
        network = parse_cidr(subnet.network)
        max_hosts = int(app.config["IP_POOL_MAX_HOSTS"])
        if not should_generate_ip_pool(network, max_hosts):
            return _json_error(
                f"Pools are generated for IPv4 /8 to /30 subnets with at most {max_hosts} usable hosts."
            )
        created = generate_ip_pool(subnet, network, int(app.config["IP_POOL_BATCH_SIZE"]))
        log_activity(
            "INFO",
            "network",
            "network",
            f"Generated {created} addresses for {subnet.network}",
        )
        db.session.commit()
        return jsonify({"created": created, **subnet_usage(subnet)})

    @app.get("/api/subnets/<int:subnet_id>/ips")
    @login_required
    def list_subnet_ips(subnet_id: int):
        subnet = Subnet.query.get_or_404(subnet_id)
        query = IPAddress.query.filter_by(subnet_id=subnet.id)
        status = request.args.get("status")
        if status:
            query = query.filter(IPAddress.status == status)
        records = (
            query.order_by(IPAddress.sort_key.asc())
            .limit(_limit_arg(IP_POOL_MAX_HOSTS_DEFAULT, 65536))
            .all()
        )
        return jsonify(
            {
                "subnet": serialize_subnet(subnet),
                "ip_addresses": [serialize_ip_address(record) for record in records],
            }
        )

    @app.post("/api/ip-addresses/assign")
    @login_required
    def assign_ip_route():
        payload = request_payload()
        service_id = _coerce_int(payload.get("service_id"))
        service = db.session.get(CustomerService, service_id) if service_id else None
        if service is None:
            return _json_error("Customer service not found.", 404)
        record = assign_ip_address(
            service,
            subnet_id=_coerce_int(payload.get("subnet_id")),
            address=_clean_text(payload.get("ip_address")),
        )
        db.session.commit()
        return jsonify({"ip_address": serialize_ip_address(record)})

    @app.post("/api/ip-addresses/<int:ip_id>/release")
    @login_required
    def release_ip_route(ip_id: int):
        record = IPAddress.query.get_or_404(ip_id)
        if record.status != "assigned":
            return _json_error(f"{record.address} is not assigned.")
        customer_id = record.customer_id
        address = release_ip_record(record)
        log_activity(
            "INFO",
            "network",
            "network",
            f"IP {address} released",
            customer_id=customer_id,
        )
        db.session.commit()
        return jsonify({"ip_address": serialize_ip_address(record)})

    # -- Support tickets -----------------------------------------------------

    def _open_ticket(customer: Customer | None, payload: dict, *, source: str) -> SupportTicket:
        subject = _clean_text(payload.get("subject"))
        description = _clean_text(payload.get("description"))
        if not subject or not description:
            abort(400, description="Subject and description are required.")
        priority = (_clean_text(payload.get("priority")) or "medium").lower()
        if priority not in TICKET_PRIORITY_OPTIONS:
            abort(
                400,
                description=f"Priority must be one of: {', '.join(TICKET_PRIORITY_OPTIONS)}.",
            )

        assignee = None
        assignee_id = _coerce_int(payload.get("assigned_to"))
        if assignee_id:
            assignee = db.session.get(Employee, assignee_id)
            if assignee is None or assignee.status != "active":
                log_activity(
                    "WARNING",
                    source,
                    "support",
                    f"Ignored unknown or inactive assignee {assignee_id} for new ticket",
                    customer_id=customer.id if customer else None,
                )
                assignee = None

        ticket = SupportTicket(
            ticket_number=next_plain_number(SupportTicket.ticket_number, "TKT"),
            customer=customer,
            subject=subject,
            description=description,
            priority=priority,
            status="open",
            assignee=assignee,
        )
        db.session.add(ticket)
        db.session.flush()
        log_activity(
            "INFO",
            source,
            "support",
            f"Ticket {ticket.ticket_number} opened: {subject}",
            {"priority": priority, "assigned_to": assignee.id if assignee else None},
            customer_id=customer.id if customer else None,
        )
        return ticket

    @app.get("/api/tickets")
    @login_required
    def list_tickets():
        query = SupportTicket.query
        for field in ("status", "priority"):
            value = request.args.get(field)
            if value:
                query = query.filter(getattr(SupportTicket, field) == value)
        for field in ("customer_id", "assigned_to"):
            value = _coerce_int(request.args.get(field))
            if value:
                query = query.filter(getattr(SupportTicket, field) == value)
        tickets = query.order_by(SupportTicket.created_at.desc(), SupportTicket.id.desc()).all()
        return jsonify({"tickets": [serialize_ticket(ticket) for ticket in tickets]})

    @app.post("/api/tickets")
    @login_required
    def create_ticket():
        payload = request_payload()
        customer = None
        customer_id = _coerce_int(payload.get("customer_id"))
        if customer_id:
            customer = db.session.get(Customer, customer_id)
            if customer is None:
                return _json_error("Customer not found.", 404)
        ticket = _open_ticket(customer, payload, source="support-desk")
        db.session.commit()
        notify_ticket_assignment(ticket)
        return jsonify({"ticket": serialize_ticket(ticket)}), 201

    @app.get("/api/tickets/<int:ticket_id>")
    @login_required
    def get_ticket(ticket_id: int):
        ticket = SupportTicket.query.get_or_404(ticket_id)
        return jsonify({"ticket": serialize_ticket(ticket)})

    @app.route("/api/tickets/<int:ticket_id>", methods=["PUT", "PATCH"])
    @login_required
    def update_ticket(ticket_id: int):
        ticket = SupportTicket.query.get_or_404(ticket_id)
        payload = request_payload()
        reassigned = False

        if "status" in payload:
            status = _clean_text(payload.get("status"))
            if status not in TICKET_STATUS_OPTIONS:
                return _json_error(
                    f"Status must be one of: {', '.join(TICKET_STATUS_OPTIONS)}."
                )
            ticket.status = status
            ticket.resolved_at = (
                ticket.resolved_at or utcnow() if status in {"resolved", "closed"} else None
            )
        if "priority" in payload:
            priority = _clean_text(payload.get("priority"))
            if priority not in TICKET_PRIORITY_OPTIONS:
                return _json_error(
                    f"Priority must be one of: {', '.join(TICKET_PRIORITY_OPTIONS)}."
                )
            ticket.priority = priority
        if "assigned_to" in payload:
            assignee_id = _coerce_int(payload.get("assigned_to"))
            assignee = db.session.get(Employee, assignee_id) if assignee_id else None
            if assignee_id and assignee is None:
                return _json_error("Employee not found.", 404)
            reassigned = assignee is not None and assignee.id != ticket.assigned_to
            ticket.assignee = assignee
        for field in ("subject", "description", "resolution_notes"):
            if field in payload:
                setattr(ticket, field, _clean_text(payload.get(field)))

        log_activity(
            "INFO",
            "support-desk",
            "support",
            f"Ticket {ticket.ticket_number} updated ({ticket.status})",
            {"fields": sorted(payload)},
            customer_id=ticket.customer_id,
        )
        db.session.commit()
        if reassigned:
            notify_ticket_assignment(ticket)
        return jsonify({"ticket": serialize_ticket(ticket)})

    # -- Reports ---------------------------------------------------------------

    @app.get("/api/reports/revenue")
    @login_required
    def report_revenue():
        return jsonify(revenue_report(_date_arg("start"), _date_arg("end")))

    @app.get("/api/reports/customers")
    @login_required
    def report_customers():
        return jsonify(customer_report())

    @app.get("/api/reports/inventory")
    @login_required
    def report_inventory():
        return jsonify(inventory_report())

    @app.get("/api/reports/network")
    @login_required
    def report_network():
        return jsonify(network_report())

    def _export_response(name: str) -> Response:
        if name not in EXPORT_DEFINITIONS:
            abort(404, description=f"Unknown export '{name}'.")
        export_format = (request.args.get("format") or "csv").lower()
        if export_format not in {"csv", "xlsx"}:
            abort(400, description="Export format must be csv or xlsx.")
        headers = EXPORT_DEFINITIONS[name]
        rows = collect_export_rows(name, request.args.to_dict())
        filename = f"{name}-{date.today().isoformat()}"
        if export_format == "xlsx":
            return build_excel_response(filename, headers, rows)
        return build_csv_response(filename, headers, rows)

    @app.get("/api/reports/<name>/export")
    @login_required
    def export_report(name: str):
        return _export_response(name)

    @app.get("/api/payroll/export")
    @login_required
    def export_payroll():
        return _export_response("payroll")

    # -- Customer portal -----------------------------------------------------

    def _portal_summary(customer: Customer) -> dict[str, object]:
        invoices = (
            Invoice.query.filter_by(customer_id=customer.id)
            .order_by(Invoice.issue_date.desc(), Invoice.id.desc())
            .limit(20)
            .all()
        )
        payments = (
            Payment.query.filter_by(customer_id=customer.id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(20)
            .all()
        )
        return {
            "customer": serialize_customer(customer),
            "balance": calculate_customer_balance(customer),
            "services": [serialize_customer_service(s) for s in customer.services],
            "invoices": [serialize_invoice(invoice) for invoice in invoices],
            "payments": [serialize_payment(payment) for payment in payments],
            "equipment": [
                serialize_customer_equipment(e)
                for e in customer.equipment
                if e.status == "allocated"
            ],
            "tickets": [serialize_ticket(ticket) for ticket in customer.tickets],
        }

    @app.route("/portal/login", methods=["GET", "POST"])
    def portal_login():
        if session.get(PORTAL_SESSION_KEY):
            existing = db.session.get(Customer, session[PORTAL_SESSION_KEY])
            if existing:
                return redirect(url_for("portal_dashboard"))

        if request.method == "POST":
            payload = request_payload()
            identifier = (
                _clean_text(payload.get("account_number"))
                or _clean_text(payload.get("email"))
                or ""
            )
            password = str(payload.get("password") or "")

            customer = None
            if identifier:
                customer = Customer.query.filter(
                    or_(
                        db.func.upper(Customer.account_number) == identifier.upper(),
                        db.func.lower(Customer.email) == identifier.lower(),
                    )
                ).first()

            if customer and not customer.portal_password_hash:
                message = "Your portal password has not been issued yet. Please contact support."
            elif (
                customer
                and password
                and check_password_hash(customer.portal_password_hash, password)
            ):
                session[PORTAL_SESSION_KEY] = customer.id
                session["portal_authenticated_at"] = utcnow().isoformat()
                log_activity(
                    "INFO",
                    "customer-portal",
                    "system",
                    f"Portal login for {customer.account_number}",
                    customer_id=customer.id,
                )
                db.session.commit()
                if request.is_json:
                    return jsonify({"customer": serialize_customer(customer)})
                flash("Welcome to your customer portal!", "success")
                return redirect(request.args.get("next") or url_for("portal_dashboard"))
            else:
                message = "Invalid account number or password. Please try again."

            if request.is_json:
                return _json_error(message, 401)
            flash(message, "danger")

        return render_template("portal_login.html")

    @app.get("/portal/logout")
    def portal_logout():
        session.pop(PORTAL_SESSION_KEY, None)
        session.pop("portal_authenticated_at", None)
        flash("You have been logged out of the customer portal.", "info")
        return redirect(url_for("portal_login"))

    @app.route("/portal")
    @client_login_required
    def portal_dashboard(customer: Customer):
        return render_template("portal.html", summary=_portal_summary(customer))

    @app.get("/api/portal/summary")
    @client_login_required
    def portal_summary(customer: Customer):
        return jsonify(_portal_summary(customer))

    @app.post("/api/portal/mpesa/stk-push")
    @client_login_required
    def portal_stk_push(customer: Customer):
        return _start_stk_push(customer)

    @app.post("/api/portal/invoices/<int:invoice_id>/card-intent")
    @client_login_required
    def portal_card_intent(customer: Customer, invoice_id: int):
        invoice = Invoice.query.filter_by(id=invoice_id, customer_id=customer.id).first_or_404()
        return _card_intent_response(invoice)

    @app.get("/api/portal/invoices/<int:invoice_id>/pdf")
    @client_login_required
    def portal_invoice_pdf(customer: Customer, invoice_id: int):
        invoice = Invoice.query.filter_by(id=invoice_id, customer_id=customer.id).first_or_404()
        return _pdf_response(render_invoice_pdf(invoice), invoice.invoice_number)

    @app.route("/api/portal/tickets", methods=["GET", "POST"])
    @client_login_required
    def portal_tickets(customer: Customer):
        if request.method == "GET":
            return jsonify(
                {"tickets": [serialize_ticket(ticket) for ticket in customer.tickets]}
            )
        payload = request_payload()
        payload.pop("assigned_to", None)
        ticket = _open_ticket(customer, payload, source="customer-portal")
        db.session.commit()
        return jsonify({"ticket": serialize_ticket(ticket)}), 201


app = create_app()


if __name__ == "__main__":
    app.run(
        host=os.environ.get("HOST", "0.0.0.0"),
        port=_env_int("PORT", 5000),
        debug=is_truthy(os.environ.get("FLASK_DEBUG")),
    )
