"""
Database Schemas for Simply Invoicing

Each Pydantic model corresponds to a MongoDB collection. Collection names are
kept in the COLLECTION_* constants below so every module writes to the same place.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr
from datetime import date, datetime

COLLECTION_INVOICES = "invoices"
COLLECTION_CLIENTS = "clients"
COLLECTION_USERS = "users"
COLLECTION_USER_ROLES = "userRoles"
COLLECTION_EMAIL_LOGS = "emailLogs"
COLLECTION_SETTINGS = "settings"
COLLECTION_SESSIONS = "sessions"
COLLECTION_ADMIN_NOTIFICATIONS = "adminNotifications"

InvoiceStatus = Literal["draft", "pending", "sent", "paid", "overdue", "cancelled"]
RoleName = Literal["admin", "manager", "user", "guest"]


# Auth and accounts
class Subscription(BaseModel):
    """Embedded in the user profile; written only by webhook handlers."""
    id: Optional[str] = Field(None, description="Provider subscription id")
    status: str = "active"
    plan: str = "basic"
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    price_id: Optional[str] = None

class User(BaseModel):
    email: EmailStr
    display_name: Optional[str] = None
    password_hash: str
    company_name: Optional[str] = None
    company_address: Optional[str] = None
    company_phone: Optional[str] = None
    is_admin: bool = False
    stripe_customer_id: Optional[str] = None
    subscription: Optional[Subscription] = None

class Session(BaseModel):
    user_id: str
    token: str
    expires_at: datetime

class UserRole(BaseModel):
    """
    Role record, one per user
    Collection name: "userRoles" (document id is the user id)
    """
    user_id: str
    email: Optional[str] = None
    role: RoleName = "user"
    is_admin: bool = False
    permissions: List[str] = Field(default_factory=list)

# Business data
class Client(BaseModel):
    user_id: str
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

class InvoiceItem(BaseModel):
    description: str = ""
    quantity: float = Field(1, ge=0)
    price: float = Field(0, ge=0, description="Unit price")

class Invoice(BaseModel):
    user_id: str
    invoice_number: str
    client_id: Optional[str] = None
    client_name: str
    client_email: Optional[EmailStr] = None
    client_address: Optional[str] = None
    client_phone: Optional[str] = None
    items: List[InvoiceItem]
    tax_rate: float = Field(0, ge=0, le=100, description="Tax rate as percentage e.g. 5 for 5%")
    discount: float = Field(0, ge=0, le=100, description="Discount as percentage")
    notes: Optional[str] = None
    terms: Optional[str] = None
    status: InvoiceStatus = "pending"
    issue_date: date
    due_date: date
    subtotal: float
    discount_amount: float
    tax_amount: float
    total: float
    email_sent: bool = False

class EmailLog(BaseModel):
    """
    Append-only record of each send attempt
    Collection name: "emailLogs"
    """
    invoice_id: Optional[str] = None
    user_id: Optional[str] = None
    client_email: Optional[str] = None
    client_name: Optional[str] = None
    subject: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None
    status: Literal["sent", "failed"]
    invoice_total: Optional[float] = None
    timestamp: datetime

# Per-user settings
class CompanySettings(BaseModel):
    name: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[EmailStr] = None
    currency: str = "USD"

class InvoiceSettings(BaseModel):
    prefix: str = "INV-"
    next_number: int = Field(1001, ge=1)
    default_terms: str = "Net 30"
    default_notes: str = "Thank you for your business!"

class UserSettings(BaseModel):
    company: CompanySettings = Field(default_factory=CompanySettings)
    invoice: InvoiceSettings = Field(default_factory=InvoiceSettings)
