"""
Runtime configuration

Everything that used to be a hardcoded constant (plan table, admin allow-list,
provider credentials) lives on `Settings` so routes receive it through
`Depends(get_settings)` and tests can swap it out.
"""
import os
from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class PlanLimits(BaseModel):
    invoices_per_month: int = Field(..., ge=0)
    custom_templates: bool = False
    advanced_analytics: bool = False
    api_access: bool = False


class Plan(BaseModel):
    name: str
    price: float = Field(..., ge=0, description="Monthly price in USD")
    stripe_price_id: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    limits: PlanLimits


def default_plans(basic_price_id: Optional[str] = None, premium_price_id: Optional[str] = None) -> Dict[str, Plan]:
    return {
        "basic": Plan(
            name="Basic",
            price=3.99,
            stripe_price_id=basic_price_id,
            features=["Up to 10 invoices per month", "Basic email templates", "1 user account"],
            limits=PlanLimits(invoices_per_month=10),
        ),
        "premium": Plan(
            name="Premium",
            price=9.99,
            stripe_price_id=premium_price_id,
            features=[
                "Unlimited invoices",
                "Custom email templates",
                "Advanced analytics",
                "Up to 5 team members",
                "Custom branding",
            ],
            limits=PlanLimits(invoices_per_month=9999, custom_templates=True, advanced_analytics=True),
        ),
    }


class Settings(BaseModel):
    app_url: str = "http://localhost:5173"
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    admin_emails: List[str] = Field(default_factory=list)
    admin_notification_email: Optional[str] = None

    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    email_from: Optional[str] = None
    email_from_name: str = "Simply Invoicing"

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    stripe_api_base: str = "https://api.stripe.com/v1"
    webhook_tolerance_seconds: int = 300

    session_hours: int = 24
    default_plan: str = "basic"
    plans: Dict[str, Plan] = Field(default_factory=default_plans)

    def plan_for(self, key: Optional[str]) -> Plan:
        return self.plans.get(key or self.default_plan) or self.plans[self.default_plan]


def _csv(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def load_settings() -> Settings:
    return Settings(
        app_url=os.getenv("APP_URL", "http://localhost:5173"),
        allowed_origins=_csv(os.getenv("ALLOWED_ORIGINS")) or ["*"],
        admin_emails=_csv(os.getenv("ADMIN_EMAILS")),
        admin_notification_email=os.getenv("ADMIN_NOTIFICATION_EMAIL"),
        smtp_host=os.getenv("SMTP_HOST"),
        smtp_port=int(os.getenv("SMTP_PORT", 587)),
        smtp_username=os.getenv("SMTP_USERNAME"),
        smtp_password=os.getenv("SMTP_PASSWORD"),
        smtp_use_tls=os.getenv("SMTP_USE_TLS", "true").lower() != "false",
        email_from=os.getenv("EMAIL_FROM") or os.getenv("SMTP_USERNAME"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
        webhook_tolerance_seconds=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", 300)),
        session_hours=int(os.getenv("SESSION_HOURS", 24)),
        plans=default_plans(os.getenv("STRIPE_BASIC_PRICE_ID"), os.getenv("STRIPE_PREMIUM_PRICE_ID")),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
