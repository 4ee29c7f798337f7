import os
import re
import json
import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, date
from typing import List, Optional, Literal, Dict, Any

from fastapi import FastAPI, Depends, HTTPException, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, EmailStr, Field
from bson import ObjectId

from database import db, create_document, get_documents, utcnow
from config import Settings, get_settings
from schemas import (
    COLLECTION_ADMIN_NOTIFICATIONS, COLLECTION_CLIENTS, COLLECTION_EMAIL_LOGS, COLLECTION_INVOICES,
    COLLECTION_SESSIONS, COLLECTION_SETTINGS, COLLECTION_USER_ROLES, COLLECTION_USERS,
    Client as ClientSchema, EmailLog as EmailLogSchema, Invoice as InvoiceSchema,
    InvoiceItem as InvoiceItemSchema, InvoiceStatus, RoleName, Session as SessionSchema,
    User as UserSchema, UserSettings,
)
from calculator import compute_totals
from roles import build_role, ensure_user_role, get_user_role, has_permission, is_admin, save_role
from billing import (
    SignatureVerificationError, StripeClient, StripeError, WebhookDispatcher,
    check_invoice_limit, get_subscription_status, verify_signature,
)
from mailer import (
    EmailDeliveryError, EmailNotConfiguredError, SmtpMailer, default_subject,
    render_invoice_html, render_invoice_text, render_new_user_notification,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Simply Invoicing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------- Utilities --------------------

def oid(obj_id: str) -> ObjectId:
    try:
        return ObjectId(obj_id)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid ID")


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, datetime):
            out[k] = v.isoformat()
        else:
            out[k] = v
    return out


PBKDF2_ITERATIONS = 200_000


def hash_password(password: str, salt: Optional[str] = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"pbkdf2_sha256${PBKDF2_ITERATIONS}${salt}${digest}"


def verify_password(password: str, stored: Optional[str]) -> bool:
    try:
        _, iterations, salt, digest = (stored or "").split("$")
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations)).hex()
    return hmac.compare_digest(candidate, digest)


def create_session(user_id: str, hours: int) -> str:
    token = uuid.uuid4().hex
    expires_at = utcnow() + timedelta(hours=hours)
    create_document(COLLECTION_SESSIONS, SessionSchema(user_id=user_id, token=token, expires_at=expires_at))
    return token


def get_user_from_token(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Authentication required. Please sign in again.")
    token = authorization.split(" ")[-1].strip()
    sess = db[COLLECTION_SESSIONS].find_one({"token": token})
    if not sess:
        raise HTTPException(status_code=401, detail="Invalid session")
    expires_at = sess.get("expires_at")
    if expires_at and expires_at.replace(tzinfo=None) < utcnow():
        raise HTTPException(status_code=401, detail="Session expired")
    user = db[COLLECTION_USERS].find_one({"_id": oid(sess["user_id"])})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    user.pop("password_hash", None)
    return serialize_doc(user)


def get_current_role(current=Depends(get_user_from_token)) -> Dict[str, Any]:
    role = get_user_role(db, current["id"])
    return role or build_role(current["id"], current.get("email")).model_dump()


def require_permission(permission: str):
    def checker(role=Depends(get_current_role)) -> Dict[str, Any]:
        if not has_permission(role, permission):
            raise HTTPException(status_code=403, detail=f"Insufficient permissions: {permission} required")
        return role
    return checker


def require_admin(role=Depends(get_current_role)) -> Dict[str, Any]:
    if not is_admin(role):
        raise HTTPException(status_code=403, detail="Admin access required")
    return role


def get_stripe_client(settings: Settings = Depends(get_settings)) -> Optional[StripeClient]:
    if not settings.stripe_secret_key:
        return None
    return StripeClient(settings.stripe_secret_key, settings.stripe_api_base)


def require_stripe(stripe: Optional[StripeClient] = Depends(get_stripe_client)) -> StripeClient:
    if stripe is None:
        raise HTTPException(status_code=503, detail="Payments are not configured")
    return stripe


def get_optional_mailer(settings: Settings = Depends(get_settings)) -> Optional[SmtpMailer]:
    try:
        return SmtpMailer(settings)
    except EmailNotConfiguredError:
        return None


def require_mailer(mailer: Optional[SmtpMailer] = Depends(get_optional_mailer)) -> SmtpMailer:
    if mailer is None:
        raise HTTPException(status_code=503, detail="Email credentials not configured.")
    return mailer


def load_owned(collection: str, doc_id: str, current: Dict[str, Any], role: Dict[str, Any], label: str) -> Dict[str, Any]:
    doc = db[collection].find_one({"_id": oid(doc_id)})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    if doc.get("user_id") != current["id"] and not is_admin(role):
        raise HTTPException(status_code=403, detail=f"You do not have access to this {label.lower()}")
    return doc


def can_modify(doc: Dict[str, Any], current: Dict[str, Any], role: Dict[str, Any]) -> bool:
    if is_admin(role):
        return True
    return doc.get("user_id") == current["id"] and has_permission(role, "create_invoices")


def load_user_settings(user_id: str) -> UserSettings:
    doc = db[COLLECTION_SETTINGS].find_one({"_id": user_id}) or {}
    return UserSettings(**{k: v for k, v in doc.items() if k in ("company", "invoice")})


# -------------------- Models (request/response) --------------------

class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    display_name: Optional[str] = None

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class AuthResponse(BaseModel):
    token: str
    user: Dict[str, Any]

class ClientRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None
    status: Literal["active", "inactive"] = "active"

class InvoiceRequest(BaseModel):
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    client_email: Optional[EmailStr] = None
    client_address: Optional[str] = None
    client_phone: Optional[str] = None
    items: List[InvoiceItemSchema] = Field(..., min_length=1)
    tax_rate: float = Field(0, ge=0, le=100)
    discount: float = Field(0, ge=0, le=100)
    notes: Optional[str] = None
    terms: Optional[str] = None
    # left out on update: the stored value is kept
    status: Optional[InvoiceStatus] = None
    issue_date: Optional[date] = None
    due_date: date

class SendInvoiceEmailRequest(BaseModel):
    invoice_id: str
    client_email: Optional[EmailStr] = None
    subject: Optional[str] = None
    message: Optional[str] = None

class CheckoutRequest(BaseModel):
    price_id: str = Field(..., min_length=1)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

class RoleUpdateRequest(BaseModel):
    role: RoleName


# -------------------- Health/Test --------------------

@app.get("/")
def read_root():
    return {"message": "Simply Invoicing API running"}

@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
    except Exception as e:
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# -------------------- Auth --------------------

def notify_new_user(mailer: Optional[SmtpMailer], settings: Settings, user: Dict[str, Any], role: str) -> None:
    if mailer is None or not settings.admin_notification_email:
        return
    content = render_new_user_notification(user, role)
    record = {
        "type": "new_user_registered",
        "user_id": user["id"],
        "user_email": user.get("email"),
        "sent_to": settings.admin_notification_email,
        "timestamp": utcnow(),
    }
    try:
        record["message_id"] = mailer.send(settings.admin_notification_email, content["subject"], content["html"], content["text"])
        record["notification_sent"] = True
    except EmailDeliveryError as e:
        logger.exception("Failed to send new user notification for %s", user.get("email"))
        record.update({"notification_sent": False, "error": str(e)})
    db[COLLECTION_ADMIN_NOTIFICATIONS].insert_one(record)

@app.post("/auth/register", response_model=AuthResponse)
def register(payload: RegisterRequest, settings: Settings = Depends(get_settings), mailer: Optional[SmtpMailer] = Depends(get_optional_mailer)):
    existing = db[COLLECTION_USERS].find_one({"email": payload.email})
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = UserSchema(
        email=payload.email,
        display_name=payload.display_name or payload.email.split("@")[0],
        password_hash=hash_password(payload.password),
    )
    user_id = create_document(COLLECTION_USERS, user)
    role = ensure_user_role(db, user_id, payload.email, settings.admin_emails)
    token = create_session(user_id, settings.session_hours)
    udoc = serialize_doc(db[COLLECTION_USERS].find_one({"_id": ObjectId(user_id)}))
    udoc.pop("password_hash", None)
    notify_new_user(mailer, settings, udoc, role["role"])
    return AuthResponse(token=token, user=udoc)

@app.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, settings: Settings = Depends(get_settings)):
    user = db[COLLECTION_USERS].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    ensure_user_role(db, str(user["_id"]), user.get("email"), settings.admin_emails)
    token = create_session(str(user["_id"]), settings.session_hours)
    user.pop("password_hash", None)
    return AuthResponse(token=token, user=serialize_doc(user))

@app.get("/me")
def me(current=Depends(get_user_from_token)):
    return current

@app.get("/me/role")
def my_role(role=Depends(get_current_role)):
    return serialize_doc(role)


# -------------------- Settings --------------------

@app.get("/settings")
def get_user_settings(current=Depends(get_user_from_token)):
    return load_user_settings(current["id"]).model_dump()

@app.put("/settings")
def update_user_settings(payload: UserSettings, current=Depends(get_user_from_token)):
    db[COLLECTION_SETTINGS].update_one(
        {"_id": current["id"]},
        {"$set": {**payload.model_dump(mode="json"), "updated_at": utcnow()}},
        upsert=True,
    )
    return payload.model_dump()


# -------------------- Clients --------------------

@app.post("/clients")
def create_client(payload: ClientRequest, current=Depends(get_user_from_token)):
    client = ClientSchema(user_id=current["id"], **payload.model_dump())
    client_id = create_document(COLLECTION_CLIENTS, client)
    doc = db[COLLECTION_CLIENTS].find_one({"_id": ObjectId(client_id)})
    return serialize_doc(doc)

@app.get("/clients")
def list_clients(q: Optional[str] = None, current=Depends(get_user_from_token)):
    query: Dict[str, Any] = {"user_id": current["id"]}
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"email": {"$regex": pattern, "$options": "i"}},
            {"company": {"$regex": pattern, "$options": "i"}},
        ]
    docs = list(db[COLLECTION_CLIENTS].find(query).sort([("created_at", -1)]))
    return [serialize_doc(d) for d in docs]

@app.get("/clients/stats")
def client_stats(current=Depends(get_user_from_token)):
    docs = get_documents(COLLECTION_CLIENTS, {"user_id": current["id"]})
    active = sum(1 for d in docs if d.get("status") == "active")
    return {"total_clients": len(docs), "active_clients": active, "inactive_clients": len(docs) - active}

@app.get("/clients/{client_id}")
def get_client(client_id: str, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    doc = load_owned(COLLECTION_CLIENTS, client_id, current, role, "Client")
    return serialize_doc(doc)

@app.put("/clients/{client_id}")
def update_client(client_id: str, payload: ClientRequest, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    load_owned(COLLECTION_CLIENTS, client_id, current, role, "Client")
    db[COLLECTION_CLIENTS].update_one({"_id": oid(client_id)}, {"$set": {**payload.model_dump(), "updated_at": utcnow()}})
    doc = db[COLLECTION_CLIENTS].find_one({"_id": oid(client_id)})
    return serialize_doc(doc)

@app.delete("/clients/{client_id}")
def delete_client(client_id: str, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    # invoices keep their copied client details
    load_owned(COLLECTION_CLIENTS, client_id, current, role, "Client")
    db[COLLECTION_CLIENTS].delete_one({"_id": oid(client_id)})
    return {"success": True}


# -------------------- Invoices --------------------

def next_invoice_number(user_id: str) -> str:
    invoice_settings = load_user_settings(user_id).invoice
    n = invoice_settings.next_number
    db[COLLECTION_SETTINGS].update_one({"_id": user_id}, {"$set": {"invoice.next_number": n + 1}}, upsert=True)
    return f"{invoice_settings.prefix}{n}"


def build_invoice_fields(payload: InvoiceRequest, current: Dict[str, Any], role: Dict[str, Any], existing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    existing = existing or {}
    fields = payload.model_dump(exclude={"client_id"})
    if payload.client_id:
        client = load_owned(COLLECTION_CLIENTS, payload.client_id, current, role, "Client")
        fields["client_id"] = payload.client_id
        for src, dst in (("name", "client_name"), ("email", "client_email"), ("address", "client_address"), ("phone", "client_phone")):
            if not fields.get(dst):
                fields[dst] = client.get(src)
    if not fields.get("client_name"):
        raise HTTPException(status_code=400, detail="Client name is required")
    fields["status"] = payload.status or existing.get("status") or "pending"
    fields["issue_date"] = payload.issue_date or existing.get("issue_date") or utcnow().date()
    fields.update(compute_totals(payload.items, payload.discount, payload.tax_rate).as_document())
    return fields

@app.post("/invoices")
def create_invoice(
    payload: InvoiceRequest,
    current=Depends(get_user_from_token),
    role=Depends(require_permission("create_invoices")),
    settings: Settings = Depends(get_settings),
):
    limit = check_invoice_limit(db, current, settings)
    if not limit["can_create"]:
        raise HTTPException(status_code=403, detail=limit["reason"])
    fields = build_invoice_fields(payload, current, role)
    invoice = InvoiceSchema(user_id=current["id"], invoice_number=next_invoice_number(current["id"]), **fields)
    inv_id = create_document(COLLECTION_INVOICES, invoice.model_dump(mode="json"))
    logger.info("Invoice %s created for user %s", invoice.invoice_number, current["id"])
    doc = db[COLLECTION_INVOICES].find_one({"_id": ObjectId(inv_id)})
    return serialize_doc(doc)

@app.get("/invoices")
def list_invoices(status: Optional[str] = None, current=Depends(get_user_from_token), role=Depends(require_permission("read_invoices"))):
    q: Dict[str, Any] = {} if is_admin(role) else {"user_id": current["id"]}
    if status:
        q["status"] = status
    docs = list(db[COLLECTION_INVOICES].find(q).sort([("created_at", -1)]))
    return [serialize_doc(d) for d in docs]

@app.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: str, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    doc = load_owned(COLLECTION_INVOICES, invoice_id, current, role, "Invoice")
    return serialize_doc(doc)

@app.put("/invoices/{invoice_id}")
def update_invoice(invoice_id: str, payload: InvoiceRequest, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    doc = load_owned(COLLECTION_INVOICES, invoice_id, current, role, "Invoice")
    if not can_modify(doc, current, role):
        raise HTTPException(status_code=403, detail="Insufficient permissions to update invoices")
    fields = build_invoice_fields(payload, current, role, existing=doc)
    update = InvoiceSchema(user_id=doc["user_id"], invoice_number=doc["invoice_number"], **fields).model_dump(mode="json")
    # email tracking belongs to the send flow
    update.pop("email_sent", None)
    update["updated_at"] = utcnow()
    db[COLLECTION_INVOICES].update_one({"_id": oid(invoice_id)}, {"$set": update})
    doc = db[COLLECTION_INVOICES].find_one({"_id": oid(invoice_id)})
    return serialize_doc(doc)

@app.post("/invoices/{invoice_id}/status")
def set_invoice_status(invoice_id: str, status: InvoiceStatus, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    doc = load_owned(COLLECTION_INVOICES, invoice_id, current, role, "Invoice")
    if not can_modify(doc, current, role):
        raise HTTPException(status_code=403, detail="Insufficient permissions to update invoices")
    db[COLLECTION_INVOICES].update_one({"_id": oid(invoice_id)}, {"$set": {"status": status, "updated_at": utcnow()}})
    return {"success": True}

@app.delete("/invoices/{invoice_id}")
def delete_invoice(invoice_id: str, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    doc = load_owned(COLLECTION_INVOICES, invoice_id, current, role, "Invoice")
    if not can_modify(doc, current, role):
        raise HTTPException(status_code=403, detail="Insufficient permissions to delete invoices")
    db[COLLECTION_INVOICES].delete_one({"_id": oid(invoice_id)})
    return {"success": True}

@app.get("/invoices/{invoice_id}/html", response_class=HTMLResponse)
def invoice_html(invoice_id: str, current=Depends(get_user_from_token), role=Depends(get_current_role), settings: Settings = Depends(get_settings)):
    inv = serialize_doc(load_owned(COLLECTION_INVOICES, invoice_id, current, role, "Invoice"))
    company = company_details(inv["user_id"])
    return render_invoice_html(inv, company, None, settings.app_url)


# -------------------- Dashboard --------------------

@app.get("/dashboard/summary")
def dashboard_summary(current=Depends(get_user_from_token)):
    total = db[COLLECTION_INVOICES].aggregate([
        {"$match": {"user_id": current["id"]}},
        {"$group": {"_id": "$status", "sum": {"$sum": "$total"}, "count": {"$sum": 1}}}
    ])
    by_status = {d["_id"]: {"amount": d["sum"], "count": d["count"]} for d in total}
    statuses = ["draft", "pending", "sent", "paid", "overdue", "cancelled"]

    recent = [serialize_doc(i) for i in db[COLLECTION_INVOICES].find({"user_id": current["id"]}).sort([("created_at", -1)]).limit(5)]

    return {
        "status": {s: by_status.get(s, {}).get("amount", 0) for s in statuses},
        "counts": {s: by_status.get(s, {}).get("count", 0) for s in statuses},
        "outstanding": round(sum(by_status.get(s, {}).get("amount", 0) for s in ("pending", "sent", "overdue")), 2),
        "recent": recent,
    }


# -------------------- Email --------------------

def company_details(user_id: str) -> Dict[str, Any]:
    company = load_user_settings(user_id).company.model_dump()
    owner = db[COLLECTION_USERS].find_one({"_id": oid(user_id)}) if ObjectId.is_valid(user_id) else None
    if owner:
        company["name"] = company.get("name") or owner.get("company_name")
        company["address"] = company.get("address") or owner.get("company_address")
        company["phone"] = company.get("phone") or owner.get("company_phone")
        company["email"] = company.get("email") or owner.get("email")
    return company


def log_email_attempt(**fields) -> None:
    try:
        create_document(COLLECTION_EMAIL_LOGS, EmailLogSchema(timestamp=utcnow(), **fields))
    except Exception:
        logger.exception("Failed to write email log for invoice %s", fields.get("invoice_id"))

@app.post("/rpc/send-invoice-email")
def send_invoice_email(
    payload: SendInvoiceEmailRequest,
    current=Depends(get_user_from_token),
    role=Depends(get_current_role),
    settings: Settings = Depends(get_settings),
    mailer: SmtpMailer = Depends(require_mailer),
):
    inv = db[COLLECTION_INVOICES].find_one({"_id": oid(payload.invoice_id)})
    if not inv:
        raise HTTPException(status_code=404, detail="Invoice not found. It may have been deleted.")
    if inv.get("user_id") != current["id"] and not is_admin(role):
        raise HTTPException(status_code=403, detail="You do not have permission to send this invoice.")

    invoice = serialize_doc(inv)
    to = payload.client_email or invoice.get("client_email")
    if not to:
        raise HTTPException(status_code=400, detail="Invoice ID and client email are required.")

    company = company_details(invoice["user_id"])
    subject = payload.subject or default_subject(invoice, company)
    html = render_invoice_html(invoice, company, payload.message, settings.app_url)
    text = render_invoice_text(invoice, company, payload.message, settings.app_url)

    try:
        message_id = mailer.send(to, subject, html, text, from_name=company.get("name"))
    except EmailDeliveryError as e:
        logger.exception("Email sending failed for invoice %s", payload.invoice_id)
        log_email_attempt(invoice_id=payload.invoice_id, user_id=current["id"], client_email=to, subject=subject, error=str(e), status="failed")
        raise HTTPException(status_code=502, detail=e.user_message())
    logger.info("Invoice %s emailed to %s (%s)", payload.invoice_id, to, message_id)

    update = {
        "email_sent": True,
        "email_status": "sent",
        "last_sent": utcnow(),
        "sent_to": to,
        "sent_by": current["id"],
        "message_id": message_id,
        "email_subject": subject,
        "updated_at": utcnow(),
    }
    if invoice.get("status") in ("draft", "pending"):
        update["status"] = "sent"
    db[COLLECTION_INVOICES].update_one({"_id": inv["_id"]}, {"$set": update})

    log_email_attempt(
        invoice_id=payload.invoice_id, user_id=current["id"], client_email=to, client_name=invoice.get("client_name"),
        subject=subject, message_id=message_id, status="sent", invoice_total=invoice.get("total"),
    )
    return {
        "success": True,
        "message": "Invoice sent successfully!",
        "message_id": message_id,
        "client_email": to,
        "client_name": invoice.get("client_name"),
        "invoice_number": invoice.get("invoice_number"),
        "total": invoice.get("total"),
    }

@app.get("/email-logs")
def list_email_logs(limit: int = 100, current=Depends(get_user_from_token), role=Depends(get_current_role)):
    q: Dict[str, Any] = {} if is_admin(role) else {"user_id": current["id"]}
    docs = db[COLLECTION_EMAIL_LOGS].find(q).sort([("timestamp", -1)]).limit(max(1, min(limit, 500)))
    return [serialize_doc(d) for d in docs]


# -------------------- Subscriptions --------------------

@app.post("/rpc/create-checkout-session")
def create_checkout_session(
    payload: CheckoutRequest,
    current=Depends(get_user_from_token),
    settings: Settings = Depends(get_settings),
    stripe: StripeClient = Depends(require_stripe),
):
    try:
        session = stripe.create_checkout_session(
            price_id=payload.price_id,
            user_id=current["id"],
            customer_email=current.get("email"),
            success_url=payload.success_url or f"{settings.app_url}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=payload.cancel_url or f"{settings.app_url}/pricing",
        )
    except StripeError as e:
        logger.exception("Checkout session error for user %s", current["id"])
        raise HTTPException(status_code=502, detail=f"Checkout failed: {e}")
    logger.info("Checkout session created: %s", session.get("id"))
    return {"success": True, "session_id": session.get("id"), "url": session.get("url")}

@app.post("/rpc/create-customer-portal-session")
def create_customer_portal_session(
    current=Depends(get_user_from_token),
    settings: Settings = Depends(get_settings),
    stripe: StripeClient = Depends(require_stripe),
):
    customer_id = current.get("stripe_customer_id")
    if not customer_id:
        raise HTTPException(status_code=400, detail="No subscription found")
    try:
        portal = stripe.create_portal_session(customer_id, f"{settings.app_url}/account")
    except StripeError as e:
        logger.exception("Portal session error for user %s", current["id"])
        raise HTTPException(status_code=502, detail=f"Portal access failed: {e}")
    return {"success": True, "url": portal.get("url")}

@app.post("/rpc/get-subscription-status")
def subscription_status(current=Depends(get_user_from_token), settings: Settings = Depends(get_settings)):
    return get_subscription_status(db, current, settings)

@app.post("/rpc/check-invoice-limit")
def invoice_limit(current=Depends(get_user_from_token), settings: Settings = Depends(get_settings)):
    return check_invoice_limit(db, current, settings)

@app.post("/rpc/get-pricing-plans")
def pricing_plans(settings: Settings = Depends(get_settings)):
    return {"success": True, "plans": {k: p.model_dump() for k, p in settings.plans.items()}}

@app.post("/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    stripe: Optional[StripeClient] = Depends(get_stripe_client),
):
    payload = await request.body()
    try:
        verify_signature(payload, request.headers.get("stripe-signature"), settings.stripe_webhook_secret, settings.webhook_tolerance_seconds)
        event = json.loads(payload)
        if not isinstance(event, dict):
            raise ValueError("Event payload must be a JSON object")
    except (SignatureVerificationError, ValueError) as e:
        logger.warning("Webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=f"Webhook Error: {e}")

    logger.info("Webhook verified: %s", event.get("type"))
    try:
        WebhookDispatcher(db, stripe, settings).dispatch(event)
    except Exception:
        logger.exception("Webhook handler error for %s", event.get("type"))
        return JSONResponse(status_code=500, content={"error": "Webhook handler failed"})
    return {"received": True}


# -------------------- Admin --------------------

@app.get("/admin/users")
def admin_list_users(_: dict = Depends(require_admin)):
    users = get_documents(COLLECTION_USERS)
    roles = {r["_id"]: r for r in db[COLLECTION_USER_ROLES].find({})}
    out = []
    for u in users:
        u.pop("password_hash", None)
        item = serialize_doc(u)
        item["role"] = roles.get(item["id"], {}).get("role", "user")
        out.append(item)
    return out

@app.put("/admin/users/{user_id}/role")
def admin_set_role(user_id: str, payload: RoleUpdateRequest, _: dict = Depends(require_permission("user_management"))):
    user = db[COLLECTION_USERS].find_one({"_id": oid(user_id)})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    doc = save_role(db, build_role(user_id, user.get("email"), payload.role))
    logger.info("Role for user %s set to %s", user_id, payload.role)
    return doc


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
