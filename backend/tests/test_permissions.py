from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlmodel import Session

from commission_tracker import permissions as perms
from commission_tracker import repositories, services
from commission_tracker.database import engine
from commission_tracker.main import app

client = TestClient(app)


def _boom(*_args, **_kwargs):
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


def _permission_id(admin_headers, user_id, module_name, action):
    r = client.get(f"/users/{user_id}/permissions", headers=admin_headers)
    assert r.status_code == 200
    for p in r.json()["permissions"]:
        if p["module_name"] == module_name and p["name"] == action:
            return p["id"]
    raise AssertionError(f"permission {module_name}.{action} not seeded")


def test_route_and_method_mapping():
    assert perms.module_for_path("/reports/dashboard") == "dashboard"
    assert perms.module_for_path("/reports/monthly-trends") == "dashboard"
    assert perms.module_for_path("/reports/commission/export") == "commission_report"
    assert perms.module_for_path("/sales-data/import") == "sales_upload"
    assert perms.module_for_path("/clientsx") is None
    assert perms.module_for_path("/health") is None
    for admin_path in ("/users", "/roles", "/permissions", "/modules"):
        assert perms.module_for_path(admin_path) is None
    assert perms.action_for_method("GET") == "view"
    assert perms.action_for_method("put") == "edit"
    assert perms.action_for_method("DELETE") == "delete"


def test_static_role_table():
    assert perms.role_allows("admin", "user_management", "delete")
    assert perms.role_allows("viewer", "dashboard", "view")
    assert not perms.role_allows("viewer", "dashboard", "edit")
    assert perms.role_allows("dataentry", "sales_upload", "edit")
    assert not perms.role_allows("dataentry", "sales_upload", "delete")
    assert not perms.role_allows("nobody", "dashboard", "view")
    assert perms.role_permissions("viewer") == [
        {"module_name": "dashboard", "name": "view"},
        {"module_name": "commission_report", "name": "view"},
    ]
    assert len(perms.role_permissions("admin")) == len(perms.MODULES) * len(perms.ACTIONS)


def test_viewer_access_follows_role_table(make_user):
    viewer = make_user("viewer")
    h = viewer["headers"]
    assert client.get("/reports/dashboard", headers=h).status_code == 200
    assert client.get("/reports/commission", headers=h).status_code == 200
    denied = client.get("/clients", headers=h)
    assert denied.status_code == 403
    assert denied.json()["detail"] == "Forbidden: view permission on clients required"
    assert client.post("/sales-data", json={}, headers=h).status_code == 403
    assert client.get("/users", headers=h).status_code == 403


def test_dataentry_access_follows_role_table(make_user):
    clerk = make_user("dataentry")
    h = clerk["headers"]
    assert client.get("/sales-data", headers=h).status_code == 200
    assert client.get("/exchange-rates/latest", headers=h).status_code == 200
    assert client.delete("/sales-data/missing", headers=h).status_code == 403
    assert client.get("/clients", headers=h).status_code == 403
    assert client.get("/reports/dashboard", headers=h).status_code == 403


def test_grant_and_revoke_change_access(admin_headers, make_user):
    viewer = make_user("viewer")
    perm_id = _permission_id(admin_headers, viewer["id"], "clients", "view")
    assert client.get("/clients", headers=viewer["headers"]).status_code == 403

    g = client.post(f"/users/{viewer['id']}/permissions", json={"permission_id": perm_id}, headers=admin_headers)
    assert g.status_code == 200
    # granting twice is a no-op
    g2 = client.post(f"/users/{viewer['id']}/permissions", json={"permission_id": perm_id}, headers=admin_headers)
    assert g2.status_code == 200
    assert client.get("/clients", headers=viewer["headers"]).status_code == 200

    mine = client.get("/permissions", headers=viewer["headers"]).json()["permissions"]
    assert {"module_name": "clients", "name": "view"} in mine
    assert {"module_name": "dashboard", "name": "view"} in mine

    r = client.delete(f"/users/{viewer['id']}/permissions/{perm_id}", headers=admin_headers)
    assert r.status_code == 200
    assert client.get("/clients", headers=viewer["headers"]).status_code == 403


def test_grant_validates_user_and_permission(admin_headers, make_user):
    viewer = make_user("viewer")
    perm_id = _permission_id(admin_headers, viewer["id"], "clients", "view")
    r = client.post("/users/missing/permissions", json={"permission_id": perm_id}, headers=admin_headers)
    assert r.status_code == 404
    r2 = client.post(f"/users/{viewer['id']}/permissions", json={"permission_id": "missing"}, headers=admin_headers)
    assert r2.status_code == 404
    r3 = client.post(f"/users/{viewer['id']}/permissions", json={"permission_id": perm_id},
                     headers=viewer["headers"])
    assert r3.status_code == 403


def test_user_permissions_listing_is_self_or_admin(admin_headers, make_user):
    viewer = make_user("viewer")
    other = make_user("viewer")
    own = client.get(f"/users/{viewer['id']}/permissions", headers=viewer["headers"])
    assert own.status_code == 200
    rows = own.json()["permissions"]
    assert len(rows) == len(perms.MODULES) * len(perms.ACTIONS)
    assert {"id", "module_id", "module_name", "name", "description", "granted"} <= set(rows[0])
    assert client.get(f"/users/{other['id']}/permissions", headers=viewer["headers"]).status_code == 403
    assert client.get("/permissions", params={"user_id": other["id"]}, headers=viewer["headers"]).status_code == 403
    as_admin = client.get("/permissions", params={"user_id": other["id"]}, headers=admin_headers)
    assert as_admin.status_code == 200
    assert as_admin.json()["permissions"] == perms.role_permissions("viewer")


def test_permission_check_endpoint(admin_headers, make_user):
    viewer = make_user("viewer")
    assert client.get("/permissions/check", headers=admin_headers).status_code == 400
    r = client.get("/permissions/check", params={"user_id": viewer["id"], "module": "dashboard"},
                   headers=admin_headers)
    assert r.json() == {"has_permission": True}
    r2 = client.get("/permissions/check",
                    params={"user_id": viewer["id"], "module": "dashboard", "permission": "delete"},
                    headers=viewer["headers"])
    assert r2.json() == {"has_permission": False}


def test_modules_are_seeded(admin_headers, make_user):
    viewer = make_user("viewer")
    r = client.get("/modules", headers=viewer["headers"])
    assert r.status_code == 200
    assert sorted(m["name"] for m in r.json()["modules"]) == sorted(perms.MODULES)


def test_create_tables_endpoint_is_admin_only(admin_headers, make_user):
    viewer = make_user("viewer")
    assert client.post("/permissions/create-tables", headers=viewer["headers"]).status_code == 403
    r = client.post("/permissions/create-tables", headers=admin_headers)
    assert r.status_code == 200
    with Session(engine) as session:
        assert repositories.PermissionRepository(session).count_modules() == len(perms.MODULES)


def test_unknown_user_and_admin_shortcuts():
    with Session(engine) as session:
        svc = services.PermissionService(session)
        assert svc.has_permission("no-such-user", "dashboard") is False
        admin = repositories.UserRepository(session).get_by_email("admin@example.com")
        assert svc.has_permission(admin.id, "user_management", "delete") is True


def test_falls_back_to_role_table_when_tables_unavailable(monkeypatch, admin_headers, make_user):
    viewer = make_user("viewer")
    perm_id = _permission_id(admin_headers, viewer["id"], "clients", "view")
    client.post(f"/users/{viewer['id']}/permissions", json={"permission_id": perm_id}, headers=admin_headers)
    assert client.get("/clients", headers=viewer["headers"]).status_code == 200

    monkeypatch.setattr("commission_tracker.services.table_exists", _boom)
    # the explicit grant is ignored; the static role table still answers
    assert client.get("/clients", headers=viewer["headers"]).status_code == 403
    assert client.get("/reports/dashboard", headers=viewer["headers"]).status_code == 200
    with Session(engine) as session:
        svc = services.PermissionService(session)
        assert svc.effective_permissions(viewer["id"], "viewer") == perms.role_permissions("viewer")
        assert svc.modules() == []


def test_falls_back_to_role_table_when_grant_query_fails(monkeypatch, admin_headers, make_user):
    clerk = make_user("dataentry")
    perm_id = _permission_id(admin_headers, clerk["id"], "brokers", "view")
    client.post(f"/users/{clerk['id']}/permissions", json={"permission_id": perm_id}, headers=admin_headers)

    monkeypatch.setattr(repositories.PermissionRepository, "has_grant", _boom)
    with Session(engine) as session:
        svc = services.PermissionService(session)
        assert svc.has_permission(clerk["id"], "brokers", "view") is False
        assert svc.has_permission(clerk["id"], "sales_upload", "edit") is True
