from fastapi.testclient import TestClient

from commission_tracker.main import app
from conftest import login, unique

client = TestClient(app)


def _new_user_payload(role="viewer", **extra):
    name = unique("user")
    payload = {"username": name, "full_name": "New User", "email": f"{name}@example.com", "password": "pw-123",
               "role": role}
    payload.update(extra)
    return payload


def test_admin_creates_lists_and_updates_users(admin_headers):
    payload = _new_user_payload()
    r = client.post("/users", json=payload, headers=admin_headers)
    assert r.status_code == 201
    created = r.json()
    assert created["role"] == "viewer"
    assert created["role_id"]
    assert "password_hash" not in created

    listing = client.get("/users", params={"search": payload["username"]}, headers=admin_headers)
    assert listing.status_code == 200
    assert [u["email"] for u in listing.json()] == [payload["email"]]

    upd = client.put(f"/users/{created['id']}", json={"full_name": "Renamed", "email": payload["email"],
                                                       "role": "dataentry"}, headers=admin_headers)
    assert upd.status_code == 200
    assert upd.json()["full_name"] == "Renamed"
    assert upd.json()["role"] == "dataentry"

    # the old password still works because none was supplied
    headers = login(payload["email"], payload["password"])
    assert client.get("/auth/me", headers=headers).json()["role"] == "dataentry"


def test_password_update_is_hashed_and_effective(admin_headers):
    payload = _new_user_payload()
    user_id = client.post("/users", json=payload, headers=admin_headers).json()["id"]
    r = client.put(f"/users/{user_id}", json={"full_name": "X", "email": payload["email"], "role": "viewer",
                                               "password": "changed"}, headers=admin_headers)
    assert r.status_code == 200
    assert TestClient(app).post("/auth/login", json={"email": payload["email"],
                                                     "password": payload["password"]}).status_code == 401
    login(payload["email"], "changed")


def test_duplicate_email_and_username_are_rejected(admin_headers):
    payload = _new_user_payload()
    assert client.post("/users", json=payload, headers=admin_headers).status_code == 201
    dup_email = dict(payload, username=unique("other"))
    r = client.post("/users", json=dup_email, headers=admin_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Email already exists"
    dup_name = dict(payload, email=f"{unique('other')}@example.com")
    r2 = client.post("/users", json=dup_name, headers=admin_headers)
    assert r2.status_code == 400
    assert r2.json()["detail"] == "Username already exists"


def test_update_rejects_email_of_another_user(admin_headers):
    a = _new_user_payload()
    b = _new_user_payload()
    client.post("/users", json=a, headers=admin_headers)
    b_id = client.post("/users", json=b, headers=admin_headers).json()["id"]
    r = client.put(f"/users/{b_id}", json={"full_name": "B", "email": a["email"], "role": "viewer"},
                   headers=admin_headers)
    assert r.status_code == 400


def test_user_creation_requires_a_known_role_id(admin_headers):
    r = client.post("/users", json=_new_user_payload(role=None, role_id="missing"), headers=admin_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid role"
    r2 = client.post("/users", json=_new_user_payload(role=None), headers=admin_headers)
    assert r2.status_code == 400


def test_user_management_is_admin_only(make_user):
    viewer = make_user("viewer")
    h = viewer["headers"]
    assert client.get("/users", headers=h).status_code == 403
    assert client.post("/users", json=_new_user_payload(), headers=h).status_code == 403
    assert client.get("/roles", headers=h).status_code == 403
    assert client.get("/users").status_code == 401


def test_delete_user_rules(admin_headers):
    me = client.get("/auth/me", headers=admin_headers).json()
    r = client.delete(f"/users/{me['id']}", headers=admin_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "You cannot delete your own account"

    payload = _new_user_payload()
    user_id = client.post("/users", json=payload, headers=admin_headers).json()["id"]
    headers = login(payload["email"], payload["password"])
    assert client.delete(f"/users/{user_id}", headers=admin_headers).status_code == 200
    assert client.get("/auth/me", headers=headers).status_code == 401
    assert client.delete(f"/users/{user_id}", headers=admin_headers).status_code == 404


def test_user_role_endpoint_is_self_or_admin(admin_headers, make_user):
    viewer = make_user("viewer")
    other = make_user("dataentry")
    assert client.get(f"/users/{viewer['id']}/role", headers=viewer["headers"]).json() == {"role": "viewer"}
    assert client.get(f"/users/{other['id']}/role", headers=viewer["headers"]).status_code == 403
    assert client.get(f"/users/{other['id']}/role", headers=admin_headers).json() == {"role": "dataentry"}
    assert client.get("/users/missing/role", headers=admin_headers).status_code == 404


def test_system_roles_are_seeded_and_protected(admin_headers):
    roles = client.get("/roles", headers=admin_headers).json()["roles"]
    by_name = {r["name"]: r for r in roles}
    for name in ("admin", "viewer", "dataentry"):
        assert by_name[name]["is_system"] is True
    viewer_id = by_name["viewer"]["id"]
    r = client.put(f"/roles/{viewer_id}", json={"name": "watcher"}, headers=admin_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Cannot modify system roles"
    r2 = client.delete(f"/roles/{viewer_id}", headers=admin_headers)
    assert r2.status_code == 400
    assert r2.json()["detail"] == "Cannot delete system roles"


def test_custom_role_lifecycle(admin_headers):
    name = unique("auditor")
    r = client.post("/roles", json={"name": name, "description": "Audit team"}, headers=admin_headers)
    assert r.status_code == 201
    role_id = r.json()["id"]
    assert client.post("/roles", json={"name": name}, headers=admin_headers).status_code == 400
    assert client.post("/roles", json={"description": "no name"}, headers=admin_headers).status_code == 400
    assert client.get(f"/roles/{role_id}", headers=admin_headers).json()["role"]["name"] == name

    payload = _new_user_payload(role=None, role_id=role_id)
    created = client.post("/users", json=payload, headers=admin_headers)
    assert created.status_code == 201
    user_id = created.json()["id"]
    assert created.json()["role"] == name

    # in use: cannot delete
    r2 = client.delete(f"/roles/{role_id}", headers=admin_headers)
    assert r2.status_code == 400
    assert r2.json()["detail"] == "Cannot delete role that is assigned to users"

    renamed = unique("reviewer")
    assert client.put(f"/roles/{role_id}", json={"name": renamed}, headers=admin_headers).status_code == 200
    assert client.get(f"/users/{user_id}/role", headers=admin_headers).json() == {"role": renamed}

    client.delete(f"/users/{user_id}", headers=admin_headers)
    assert client.delete(f"/roles/{role_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/roles/{role_id}", headers=admin_headers).status_code == 404


def test_custom_role_gets_only_explicit_grants(admin_headers):
    role_id = client.post("/roles", json={"name": unique("custom")}, headers=admin_headers).json()["id"]
    payload = _new_user_payload(role=None, role_id=role_id)
    user_id = client.post("/users", json=payload, headers=admin_headers).json()["id"]
    headers = login(payload["email"], payload["password"])
    assert client.get("/reports/dashboard", headers=headers).status_code == 403

    perms = client.get(f"/users/{user_id}/permissions", headers=admin_headers).json()["permissions"]
    perm_id = next(p["id"] for p in perms if p["module_name"] == "dashboard" and p["name"] == "view")
    client.post(f"/users/{user_id}/permissions", json={"permission_id": perm_id}, headers=admin_headers)
    assert client.get("/reports/dashboard", headers=headers).status_code == 200


def test_unknown_role_name_is_rejected(admin_headers):
    r = client.post("/users", json=_new_user_payload(role=unique("ghost-role")), headers=admin_headers)
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid role"

    payload = _new_user_payload()
    user_id = client.post("/users", json=payload, headers=admin_headers).json()["id"]
    upd = client.put(f"/users/{user_id}", json={"full_name": "X", "email": payload["email"], "role": "ghost-role"},
                     headers=admin_headers)
    assert upd.status_code == 400
    assert upd.json()["detail"] == "Invalid role"
    assert client.get(f"/users/{user_id}/role", headers=admin_headers).json() == {"role": "viewer"}
