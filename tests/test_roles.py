import mongomock
import pytest
from bson import ObjectId

from roles import (
    ROLE_PERMISSIONS, build_role, default_permissions, ensure_user_role,
    get_user_role, has_permission, is_admin, save_role,
)


@pytest.fixture
def db():
    return mongomock.MongoClient()["roles_test"]


def new_user(db, email):
    return str(db["users"].insert_one({"email": email}).inserted_id)


def test_unknown_role_gets_user_permissions():
    assert default_permissions("auditor") == ROLE_PERMISSIONS["user"]


def test_permission_table_is_not_shared():
    perms = default_permissions("guest")
    perms.append("delete_invoices")
    assert ROLE_PERMISSIONS["guest"] == ["read_invoices"]


def test_admin_email_forces_admin_role():
    role = build_role("u1", "owner@example.com", "guest", is_admin_email=True)
    assert role.role == "admin"
    assert role.is_admin
    assert "billing_management" in role.permissions


def test_ensure_creates_user_role(db):
    user_id = new_user(db, "alice@example.com")

    role = ensure_user_role(db, user_id, "alice@example.com", ["owner@example.com"])

    assert role["role"] == "user"
    assert role["permissions"] == ["read_invoices", "create_invoices"]
    assert get_user_role(db, user_id)["role"] == "user"


def test_ensure_promotes_listed_email(db):
    user_id = new_user(db, "owner@example.com")
    save_role(db, build_role(user_id, "owner@example.com", "user"))

    role = ensure_user_role(db, user_id, "Owner@Example.com", ["owner@example.com"])

    assert role["role"] == "admin"
    assert db["users"].find_one({"_id": ObjectId(user_id)})["is_admin"] is True


def test_ensure_keeps_existing_role(db):
    user_id = new_user(db, "mgr@example.com")
    save_role(db, build_role(user_id, "mgr@example.com", "manager"))

    role = ensure_user_role(db, user_id, "mgr@example.com", [])

    assert role["role"] == "manager"


def test_permission_checks():
    manager = build_role("u1", None, "manager").model_dump()
    assert has_permission(manager, "write_invoices")
    assert not has_permission(manager, "delete_invoices")
    assert not has_permission(None, "read_invoices")
    assert not is_admin(manager)
    assert is_admin({"role": "admin"})
    assert is_admin({"is_admin": True, "role": "user"})
