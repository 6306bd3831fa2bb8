import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple, Union
from uuid import uuid4

import click
from flask import (
    Flask, render_template, request, redirect, url_for, flash, jsonify
)
from flask_caching import Cache
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import (
    LoginManager, login_user, login_required, logout_user, UserMixin
)
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError
from sqlalchemy import CheckConstraint, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.security import generate_password_hash, check_password_hash

# -------------------------
# Config & helpers
# -------------------------

INVOICES_PATH = "/dashboard/invoices"
INVOICE_STATUSES = ("pending", "paid")
LISTING_KEY = "view:" + INVOICES_PATH
LISTING_GENERATION_KEY = LISTING_KEY + ":generation"
MAX_AMOUNT = Decimal("999999999999.99")

def make_db_uri() -> str:
    url = os.environ.get("DATABASE_URL")
    if url and url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    return url or "sqlite:///local.db"

def make_secret_key() -> str:
    return os.environ.get("SECRET_KEY", "dev-secret-key")

def make_engine_options(uri: str) -> dict:
    # SQLite uses its own pool classes, which reject the QueuePool sizing args.
    if uri.startswith("sqlite"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_size": int(os.environ.get("DB_POOL_SIZE", "5")),
        "max_overflow": int(os.environ.get("DB_MAX_OVERFLOW", "5")),
    }

def make_cache_config() -> dict:
    config = {
        "CACHE_TYPE": os.environ.get("CACHE_TYPE", "SimpleCache"),
        "CACHE_DEFAULT_TIMEOUT": int(os.environ.get("CACHE_DEFAULT_TIMEOUT", "300")),
    }
    if os.environ.get("CACHE_REDIS_URL"):
        config["CACHE_REDIS_URL"] = os.environ["CACHE_REDIS_URL"]
    if os.environ.get("CACHE_DIR"):
        config["CACHE_DIR"] = os.environ["CACHE_DIR"]
    return config

def today() -> date:
    return datetime.now(timezone.utc).date()

def format_currency(cents: int) -> str:
    return f"${Decimal(cents) / 100:,.2f}"

@event.listens_for(Engine, "connect")
def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

# -------------------------
# App / DB init
# -------------------------

app = Flask(__name__)
app.config["SQLALCHEMY_DATABASE_URI"] = make_db_uri()
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SQLALCHEMY_ENGINE_OPTIONS"] = make_engine_options(app.config["SQLALCHEMY_DATABASE_URI"])
app.config.update(make_cache_config())
app.secret_key = make_secret_key()

db = SQLAlchemy(app)
migrate = Migrate(app, db)
cache = Cache(app)

login_manager = LoginManager(app)
login_manager.login_view = "login"

# -------------------------
# Models
# -------------------------

def new_id() -> str:
    return str(uuid4())

class User(UserMixin, db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def set_password(self, raw: str):
        self.password_hash = generate_password_hash(raw)

    def check_password(self, raw: str) -> bool:
        return check_password_hash(self.password_hash, raw)

    @property
    def is_active(self):
        return self.active

    def get_id(self):
        return str(self.id)

class Customer(db.Model):
    __tablename__ = "customers"

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)

class Invoice(db.Model):
    __tablename__ = "invoices"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_invoices_amount_positive"),
        CheckConstraint("status IN ('pending', 'paid')", name="ck_invoices_status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_id)
    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True)
    amount = db.Column(db.BigInteger, nullable=False)  # minor units (cents)
    status = db.Column(db.String(10), nullable=False)
    date = db.Column(db.Date, nullable=False)

# -------------------------
# Login manager
# -------------------------

@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))

# -------------------------
# Invoice form schema
# -------------------------

CUSTOMER_ID_MESSAGE = "Customer ID must be a string"
AMOUNT_MESSAGE = "Amount must be greater than $0"
AMOUNT_TOO_LARGE_MESSAGE = f"Amount must not exceed ${MAX_AMOUNT:,}"
STATUS_MESSAGE = 'Status must be either "pending" or "paid"'

FieldErrors = Dict[str, List[str]]

class InvoiceForm(BaseModel):
    """Validated create/update payload.

    ``id`` and ``date`` are not part of the form: the store assigns the id
    and the create handler stamps the date.
    """

    customer_id: str = Field(alias="customerId")
    amount: Decimal
    status: str

    @field_validator("customer_id", mode="before")
    @classmethod
    def check_customer_id(cls, value):
        if not isinstance(value, str) or not value.strip():
            raise PydanticCustomError("customer_id_type", CUSTOMER_ID_MESSAGE)
        return value.strip()

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, value):
        if value is None or isinstance(value, bool):
            raise PydanticCustomError("amount_greater_than", AMOUNT_MESSAGE)
        try:
            amount = Decimal(str(value).strip())
            if not amount.is_finite():
                raise InvalidOperation
            if amount > MAX_AMOUNT:
                raise PydanticCustomError("amount_too_large", AMOUNT_TOO_LARGE_MESSAGE)
            amount = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        except InvalidOperation:
            raise PydanticCustomError("amount_greater_than", AMOUNT_MESSAGE)
        if amount <= 0:
            raise PydanticCustomError("amount_greater_than", AMOUNT_MESSAGE)
        return amount

    @field_validator("status", mode="before")
    @classmethod
    def check_status(cls, value):
        if value not in INVOICE_STATUSES:
            raise PydanticCustomError("status_enum", STATUS_MESSAGE)
        return value

def validate_invoice_form(form) -> Tuple[Optional[InvoiceForm], FieldErrors]:
    """Validate raw form values; exactly one element of the result is set.

    Missing keys are validated as ``None`` so every field reports its own
    error in a single pass.
    """
    raw = {key: form.get(key) for key in ("customerId", "amount", "status")}
    try:
        return InvoiceForm.model_validate(raw), {}
    except ValidationError as exc:
        errors: FieldErrors = {}
        for err in exc.errors():
            key = str(err["loc"][0]) if err["loc"] else "form"
            errors.setdefault(key, []).append(err["msg"])
        return None, errors

def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))

# -------------------------
# Persistence
# -------------------------

class PersistenceError(Exception):
    """The store rejected a write. The original error is chained."""

def _execute_write(action: str, write):
    try:
        result = write()
        db.session.commit()
    except (SQLAlchemyError, OverflowError) as exc:
        db.session.rollback()
        app.logger.exception("Database error while trying to %s", action)
        raise PersistenceError(action) from exc
    return result

def insert_invoice(customer_id: str, amount: int, status: str, created: date) -> str:
    invoice = Invoice(customer_id=customer_id, amount=amount, status=status, date=created)

    def write():
        db.session.add(invoice)
        db.session.flush()
        return invoice.id

    return _execute_write("create invoice", write)

def update_invoice_row(invoice_id: str, customer_id: str, amount: int, status: str) -> int:
    stmt = (
        db.update(Invoice)
        .where(Invoice.id == invoice_id)
        .values(customer_id=customer_id, amount=amount, status=status)
        .execution_options(synchronize_session=False)
    )
    result = _execute_write("update invoice", lambda: db.session.execute(stmt))
    return result.rowcount

def delete_invoice_row(invoice_id: str) -> int:
    stmt = (
        db.delete(Invoice)
        .where(Invoice.id == invoice_id)
        .execution_options(synchronize_session=False)
    )
    result = _execute_write("delete invoice", lambda: db.session.execute(stmt))
    return result.rowcount

# -------------------------
# View cache
# -------------------------

def listing_generation() -> int:
    return cache.get(LISTING_GENERATION_KEY) or 0

def invalidate_listing() -> Tuple[str, ...]:
    # entries tagged with an older generation are treated as misses
    cache.cache.inc(LISTING_GENERATION_KEY)
    cache.delete(LISTING_KEY)
    return (INVOICES_PATH,)

# -------------------------
# Mutation outcomes
# -------------------------

@dataclass(frozen=True)
class ValidationFailure:
    errors: FieldErrors

    def as_state(self) -> dict:
        return {"error": self.errors, "message": None}

@dataclass(frozen=True)
class PersistenceFailure:
    message: str

    def as_state(self) -> dict:
        return {"message": self.message}

@dataclass(frozen=True)
class MutationSuccess:
    invalidated: Tuple[str, ...] = field(default_factory=tuple)
    redirect_to: Optional[str] = None
    invoice_id: Optional[str] = None

MutationOutcome = Union[ValidationFailure, PersistenceFailure, MutationSuccess]

# -------------------------
# Invoice mutations
# -------------------------

def create_invoice(form) -> MutationOutcome:
    fields, errors = validate_invoice_form(form)
    if errors:
        app.logger.debug("Invoice create rejected: %s", errors)
        return ValidationFailure(errors)

    amount_in_cents = to_minor_units(fields.amount)
    try:
        invoice_id = insert_invoice(fields.customer_id, amount_in_cents, fields.status, today())
    except PersistenceError:
        return PersistenceFailure("Database Error: Failed to Create Invoice.")

    app.logger.info("Invoice created: %s", invoice_id)
    return MutationSuccess(invalidated=invalidate_listing(), redirect_to=INVOICES_PATH, invoice_id=invoice_id)

def update_invoice(invoice_id: str, form) -> MutationOutcome:
    fields, errors = validate_invoice_form(form)
    if errors:
        app.logger.debug("Invoice update rejected for %s: %s", invoice_id, errors)
        return ValidationFailure(errors)

    amount_in_cents = to_minor_units(fields.amount)
    try:
        updated = update_invoice_row(invoice_id, fields.customer_id, amount_in_cents, fields.status)
    except PersistenceError:
        return PersistenceFailure("Database Error: Failed to Update Invoice.")

    app.logger.info("Invoice updated: %s (%d row(s))", invoice_id, updated)
    return MutationSuccess(invalidated=invalidate_listing(), redirect_to=INVOICES_PATH, invoice_id=invoice_id)

def delete_invoice(invoice_id: str) -> MutationOutcome:
    try:
        deleted = delete_invoice_row(invoice_id)
    except PersistenceError:
        return PersistenceFailure("Database Error: Failed to Delete Invoice.")

    app.logger.info("Invoice deleted: %s (%d row(s))", invoice_id, deleted)
    return MutationSuccess(invalidated=invalidate_listing(), invoice_id=invoice_id)

# -------------------------
# Identity provider
# -------------------------

CREDENTIALS_SIGNIN = "CredentialsSignin"
ACCESS_DENIED = "AccessDenied"

class AuthError(Exception):
    def __init__(self, type: str):
        super().__init__(type)
        self.type = type

def sign_in(email: str, password: str) -> None:
    user = db.session.execute(db.select(User).filter_by(email=email)).scalar_one_or_none()
    if not user or not user.check_password(password):
        raise AuthError(CREDENTIALS_SIGNIN)
    if not user.is_active:
        raise AuthError(ACCESS_DENIED)
    login_user(user)

def authenticate(form) -> Optional[str]:
    """Sign in with the submitted credentials.

    Returns a user-facing message for known sign-in failures, ``None`` on
    success. Anything that is not an ``AuthError`` propagates.
    """
    try:
        sign_in(form.get("email", "").strip().lower(), form.get("password", ""))
    except AuthError as error:
        if error.type == CREDENTIALS_SIGNIN:
            return "Invalid email or password."
        return "Failed to sign in."
    return None

# -------------------------
# Read side
# -------------------------

def fetch_invoice_listing() -> List[dict]:
    rows = db.session.execute(
        db.select(Invoice, Customer)
        .join(Customer, Invoice.customer_id == Customer.id)
        .order_by(Invoice.date.desc(), Invoice.id)
    ).all()
    return [
        {
            "id": invoice.id,
            "name": customer.name,
            "email": customer.email,
            "amount": format_currency(invoice.amount),
            "status": invoice.status,
            "date": invoice.date.isoformat(),
        }
        for invoice, customer in rows
    ]

def fetch_customers() -> List[Customer]:
    return db.session.execute(db.select(Customer).order_by(Customer.name)).scalars().all()

def cached_invoice_listing() -> List[dict]:
    generation = listing_generation()
    entry = cache.get(LISTING_KEY)
    if entry is not None and entry["generation"] == generation:
        return entry["rows"]
    invoices = fetch_invoice_listing()
    if listing_generation() == generation:
        cache.set(LISTING_KEY, {"generation": generation, "rows": invoices})
    return invoices

# -------------------------
# Auth routes
# -------------------------

@app.route("/login", methods=["GET", "POST"])
def login():
    if request.method == "POST":
        message = authenticate(request.form)
        if message:
            flash(message, "danger")
            return redirect(url_for("login"))
        return redirect(INVOICES_PATH)
    return render_template("login.html")

@app.route("/logout")
@login_required
def logout():
    logout_user()
    flash("Logged out.", "info")
    return redirect(url_for("login"))

# -------------------------
# Invoices
# -------------------------

def render_invoice_form(state: dict, invoice=None, values=None, status_code: int = 200):
    return render_template(
        "invoice_form.html",
        state=state,
        invoice=invoice,
        values=values or {},
        customers=fetch_customers(),
    ), status_code

def render_outcome(outcome: MutationOutcome, invoice=None):
    if isinstance(outcome, MutationSuccess):
        return redirect(outcome.redirect_to)
    status_code = 400 if isinstance(outcome, ValidationFailure) else 500
    return render_invoice_form(outcome.as_state(), invoice, request.form, status_code)

@app.route("/")
def root():
    return redirect(INVOICES_PATH)

@app.route(INVOICES_PATH)
@login_required
def index():
    return render_template("invoices.html", invoices=cached_invoice_listing())

@app.route(INVOICES_PATH + "/create", methods=["GET", "POST"])
@login_required
def create_invoice_view():
    if request.method == "POST":
        return render_outcome(create_invoice(request.form))
    return render_invoice_form({"message": None})

@app.route(INVOICES_PATH + "/<invoice_id>/edit", methods=["GET", "POST"])
@login_required
def edit_invoice_view(invoice_id):
    invoice = db.get_or_404(Invoice, invoice_id)
    if request.method == "POST":
        return render_outcome(update_invoice(invoice_id, request.form), invoice)
    values = {
        "customerId": invoice.customer_id,
        "amount": f"{Decimal(invoice.amount) / 100:.2f}",
        "status": invoice.status,
    }
    return render_invoice_form({"message": None}, invoice, values)

@app.route(INVOICES_PATH + "/<invoice_id>/delete", methods=["POST"])
@login_required
def delete_invoice_view(invoice_id):
    outcome = delete_invoice(invoice_id)
    if isinstance(outcome, PersistenceFailure):
        flash(outcome.message, "danger")
    return render_template("invoices.html", invoices=cached_invoice_listing())

# -------------------------
# Health
# -------------------------
@app.route("/healthz")
def healthz():
    return jsonify({"status": "ok"}), 200

# -------------------------
# CLI helpers
# -------------------------
@app.cli.command("create-admin")
def create_admin():
    """Create initial dashboard user with env ADMIN_EMAIL / ADMIN_PASSWORD."""
    email = os.environ.get("ADMIN_EMAIL")
    password = os.environ.get("ADMIN_PASSWORD")
    if not email or not password:
        print("Set ADMIN_EMAIL and ADMIN_PASSWORD env vars before running this command.")
        return
    email = email.strip().lower()
    existing = db.session.execute(db.select(User).filter_by(email=email)).scalar_one_or_none()
    if existing:
        print("Admin already exists.")
        return
    u = User(email=email, active=True)
    u.set_password(password)
    db.session.add(u)
    db.session.commit()
    print(f"Admin created: {email}")

@app.cli.command("create-customer")
@click.argument("name")
@click.argument("email")
def create_customer(name, email):
    """Add a customer that invoices can be billed to."""
    email = email.strip().lower()
    existing = db.session.execute(db.select(Customer).filter_by(email=email)).scalar_one_or_none()
    if existing:
        print(f"Customer already exists: {existing.id}")
        return
    c = Customer(name=name.strip(), email=email)
    db.session.add(c)
    db.session.commit()
    print(f"Customer created: {c.id}")

# -------------------------
# App entry (dev)
# -------------------------
if __name__ == "__main__":
    port = int(os.environ.get("PORT", "8000"))
    app.run(host="0.0.0.0", port=port, debug=True)
