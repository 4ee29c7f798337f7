"""
Subscriptions and billing

- StripeClient: the three Stripe REST calls the app needs, made with requests
- plan lookups and the monthly invoice quota
- webhook signature verification and event dispatch
"""
import hashlib
import hmac
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests
from bson import ObjectId

from config import Plan, Settings
from database import utcnow
from schemas import COLLECTION_INVOICES, COLLECTION_USERS

logger = logging.getLogger(__name__)


class StripeError(Exception):
    pass


class SignatureVerificationError(Exception):
    pass


# -------------------- Stripe REST client --------------------

class StripeClient:
    def __init__(self, secret_key: str, api_base: str = "https://api.stripe.com/v1", timeout: int = 20):
        if not secret_key:
            raise StripeError("Stripe is not configured")
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _request(self, method: str, path: str, data: Optional[List[Tuple[str, str]]] = None) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        try:
            r = requests.request(method, url, data=data, auth=(self.secret_key, ""), timeout=self.timeout)
        except requests.RequestException as e:
            raise StripeError(str(e)) from e
        try:
            body = r.json()
        except ValueError:
            body = {"raw": r.text}
        if r.status_code >= 400:
            message = (body.get("error") or {}).get("message") if isinstance(body, dict) else None
            raise StripeError(message or f"Stripe request failed with status {r.status_code}")
        return body

    def create_checkout_session(self, price_id: str, user_id: str, customer_email: Optional[str], success_url: str, cancel_url: str) -> Dict[str, Any]:
        data = [
            ("mode", "subscription"),
            ("payment_method_types[0]", "card"),
            ("line_items[0][price]", price_id),
            ("line_items[0][quantity]", "1"),
            ("client_reference_id", user_id),
            ("subscription_data[metadata][user_id]", user_id),
            ("metadata[user_id]", user_id),
            ("success_url", success_url),
            ("cancel_url", cancel_url),
        ]
        if customer_email:
            data.append(("customer_email", customer_email))
        return self._request("POST", "/checkout/sessions", data)

    def create_portal_session(self, customer_id: str, return_url: str) -> Dict[str, Any]:
        return self._request("POST", "/billing_portal/sessions", [("customer", customer_id), ("return_url", return_url)])

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/subscriptions/{subscription_id}")


# -------------------- Plans and usage --------------------

def resolve_plan(plans: Dict[str, Plan], price_id: Optional[str], default: str = "basic") -> str:
    for key, plan in plans.items():
        if price_id and plan.stripe_price_id == price_id:
            return key
    return default


def start_of_month(now: Optional[datetime] = None) -> datetime:
    now = now or utcnow()
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    return datetime(now.year, now.month, 1)


def count_invoices_this_month(db, user_id: str, now: Optional[datetime] = None) -> int:
    return db[COLLECTION_INVOICES].count_documents({
        "user_id": user_id,
        "created_at": {"$gte": start_of_month(now)},
    })


def get_subscription_status(db, user: Dict[str, Any], settings: Settings, now: Optional[datetime] = None) -> Dict[str, Any]:
    current_usage = count_invoices_this_month(db, user["id"], now)
    sub = user.get("subscription")

    if sub:
        plan = settings.plans.get(sub.get("plan"))
        limits = (plan or settings.plan_for(None)).limits
        subscription = {
            "status": sub.get("status"),
            "plan": sub.get("plan"),
            "current_period_end": sub.get("current_period_end"),
            "cancel_at_period_end": sub.get("cancel_at_period_end", False),
            "price": plan.price if plan else 0,
        }
    else:
        limits = settings.plan_for(None).limits
        subscription = {"status": "active", "plan": settings.default_plan, "price": 0}

    usage = {
        "invoices_this_month": current_usage,
        "invoice_limit": limits.invoices_per_month,
        "has_custom_templates": limits.custom_templates if sub else False,
        "has_advanced_analytics": limits.advanced_analytics if sub else False,
        "has_api_access": limits.api_access if sub else False,
        "usage_percentage": round(current_usage / limits.invoices_per_month * 100) if limits.invoices_per_month else 100,
    }
    return {
        "success": True,
        "subscription": subscription,
        "usage": usage,
        "plans": {k: p.model_dump() for k, p in settings.plans.items()},
    }


def check_invoice_limit(db, user: Dict[str, Any], settings: Settings, now: Optional[datetime] = None) -> Dict[str, Any]:
    # No slot is reserved: concurrent creates can both pass this check.
    usage = get_subscription_status(db, user, settings, now)["usage"]
    current, limit = usage["invoices_this_month"], usage["invoice_limit"]
    if current >= limit:
        return {
            "can_create": False,
            "reason": f"You've reached your monthly limit of {limit} invoices. Please upgrade to create more invoices.",
            "current_usage": current,
            "limit": limit,
            "upgrade_required": True,
        }
    return {
        "can_create": True,
        "current_usage": current,
        "limit": limit,
        "remaining": limit - current,
    }


# -------------------- Webhooks --------------------

def verify_signature(payload: bytes, header: Optional[str], secret: Optional[str], tolerance: int = 300, now: Optional[float] = None) -> None:
    """Check a Stripe-Signature header: t=<unix ts>,v1=<hex hmac>[,v1=...]."""
    if not secret:
        raise SignatureVerificationError("Webhook secret is not configured")
    if not header:
        raise SignatureVerificationError("Missing Stripe-Signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not timestamp.isdigit() or not signatures:
        raise SignatureVerificationError("Malformed Stripe-Signature header")

    signed = timestamp.encode() + b"." + payload
    expected = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise SignatureVerificationError("No signatures found matching the expected signature for payload")

    if tolerance and abs((now if now is not None else time.time()) - int(timestamp)) > tolerance:
        raise SignatureVerificationError("Timestamp outside the tolerance zone")


def _from_epoch(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def subscription_block(subscription: Dict[str, Any], plans: Dict[str, Plan]) -> Dict[str, Any]:
    item = _first_item(subscription)
    price_id = (item.get("price") or {}).get("id")
    # newer API versions report the period on the item
    period_end = subscription.get("current_period_end") or item.get("current_period_end")
    return {
        "id": subscription.get("id"),
        "status": subscription.get("status"),
        "plan": resolve_plan(plans, price_id),
        "current_period_end": _from_epoch(period_end),
        "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
        "price_id": price_id,
    }


class WebhookDispatcher:
    """Routes a verified Stripe event to the handler that updates the user profile."""

    def __init__(self, db, stripe: Optional[StripeClient], settings: Settings):
        self.db = db
        self.stripe = stripe
        self.settings = settings
        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "checkout.session.completed": self.checkout_session_completed,
            "customer.subscription.updated": self.subscription_updated,
            "customer.subscription.deleted": self.subscription_deleted,
            "invoice.payment_succeeded": self.payment_succeeded,
            "invoice.payment_failed": self.payment_failed,
        }

    def dispatch(self, event: Dict[str, Any]) -> bool:
        event_type = event.get("type")
        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled event type: %s", event_type)
            return False
        handler((event.get("data") or {}).get("object") or {})
        return True

    def _find_user_by_customer(self, customer_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not customer_id:
            return None
        return self.db[COLLECTION_USERS].find_one({"stripe_customer_id": customer_id})

    def checkout_session_completed(self, session: Dict[str, Any]) -> None:
        user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
        if not user_id or not ObjectId.is_valid(user_id):
            logger.warning("Checkout session %s has no usable user reference", session.get("id"))
            return
        if self.stripe is None:
            raise StripeError("Stripe is not configured")

        subscription = self.stripe.retrieve_subscription(session.get("subscription"))
        block = subscription_block(subscription, self.settings.plans)
        res = self.db[COLLECTION_USERS].update_one(
            {"_id": ObjectId(user_id)},
            {"$set": {"stripe_customer_id": session.get("customer"), "subscription": block, "updated_at": utcnow()}},
        )
        if res.matched_count == 0:
            logger.warning("User %s not found for checkout session %s", user_id, session.get("id"))
            return
        logger.info("User %s subscribed to %s plan", user_id, block["plan"])

    def subscription_updated(self, subscription: Dict[str, Any]) -> None:
        user = self._find_user_by_customer(subscription.get("customer"))
        if not user:
            logger.warning("User not found for customer: %s", subscription.get("customer"))
            return
        block = subscription_block(subscription, self.settings.plans)
        self.db[COLLECTION_USERS].update_one(
            {"_id": user["_id"]},
            {"$set": {"subscription": block, "updated_at": utcnow()}},
        )
        logger.info("Updated subscription for user %s to %s", user["_id"], block["plan"])

    def subscription_deleted(self, subscription: Dict[str, Any]) -> None:
        user = self._find_user_by_customer(subscription.get("customer"))
        if not user:
            return
        self.db[COLLECTION_USERS].update_one(
            {"_id": user["_id"]},
            {"$set": {"subscription.status": "canceled", "updated_at": utcnow()}},
        )
        logger.info("Subscription canceled for user %s", user["_id"])

    def payment_succeeded(self, invoice: Dict[str, Any]) -> None:
        logger.info("Payment succeeded: %s", invoice.get("id"))

    def payment_failed(self, invoice: Dict[str, Any]) -> None:
        logger.warning("Payment failed: %s", invoice.get("id"))
