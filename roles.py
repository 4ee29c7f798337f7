"""
Roles and permissions

Permissions are never edited on their own: they are derived from the role
through ROLE_PERMISSIONS whenever a role is written.
"""
import logging
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import utcnow
from schemas import COLLECTION_USER_ROLES, COLLECTION_USERS, UserRole

logger = logging.getLogger(__name__)

ROLE_PERMISSIONS: Dict[str, List[str]] = {
    "admin": [
        "read_invoices", "write_invoices", "create_invoices", "delete_invoices",
        "manage_users", "manage_organizations", "view_reports", "export_data",
        "system_admin", "user_management", "billing_management",
    ],
    "manager": [
        "read_invoices", "write_invoices", "create_invoices",
        "view_reports", "export_data",
    ],
    "user": [
        "read_invoices", "create_invoices",
    ],
    "guest": [
        "read_invoices",
    ],
}


def default_permissions(role: str) -> List[str]:
    return list(ROLE_PERMISSIONS.get(role) or ROLE_PERMISSIONS["user"])


def build_role(user_id: str, email: Optional[str], role: str = "user", is_admin_email: bool = False) -> UserRole:
    if is_admin_email:
        role = "admin"
    if role not in ROLE_PERMISSIONS:
        role = "user"
    return UserRole(
        user_id=user_id,
        email=email,
        role=role,
        is_admin=role == "admin",
        permissions=default_permissions(role),
    )


def save_role(db, user_role: UserRole) -> Dict[str, Any]:
    doc = user_role.model_dump()
    doc["updated_at"] = utcnow()
    db[COLLECTION_USER_ROLES].update_one(
        {"_id": user_role.user_id},
        {"$set": doc, "$setOnInsert": {"created_at": doc["updated_at"]}},
        upsert=True,
    )
    db[COLLECTION_USERS].update_one({"_id": _user_oid(user_role.user_id)}, {"$set": {"is_admin": user_role.is_admin}})
    return doc


def _user_oid(user_id: str):
    return ObjectId(user_id) if ObjectId.is_valid(user_id) else user_id


def get_user_role(db, user_id: str) -> Optional[Dict[str, Any]]:
    return db[COLLECTION_USER_ROLES].find_one({"_id": user_id})


def ensure_user_role(db, user_id: str, email: Optional[str], admin_emails: List[str]) -> Dict[str, Any]:
    """Return the stored role, creating it (or promoting to admin) when needed."""
    is_admin_email = bool(email) and email.lower() in {e.lower() for e in admin_emails}
    existing = get_user_role(db, user_id)
    if existing and not (is_admin_email and existing.get("role") != "admin"):
        return existing
    if is_admin_email:
        logger.info("Admin user detected: %s", email)
    return save_role(db, build_role(user_id, email, (existing or {}).get("role", "user"), is_admin_email))


def has_permission(user_role: Optional[Dict[str, Any]], permission: str) -> bool:
    if not user_role:
        return False
    return permission in (user_role.get("permissions") or [])


def is_admin(user_role: Optional[Dict[str, Any]]) -> bool:
    if not user_role:
        return False
    return bool(user_role.get("is_admin")) or user_role.get("role") == "admin"
