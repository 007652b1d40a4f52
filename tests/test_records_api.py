"""Tests for the records / outcomes JSON API."""
import pytest
from werkzeug.security import generate_password_hash

from app.mycolab import create_app
from app.mycolab.db import session_scope
from app.mycolab.models import Base, Permission, Role, User


def _seed_all_permissions(s):
    perm_keys = [
        ("admin.view", "Admin: view"),
        ("records.view", "Records: view"),
        ("records.create", "Records: create"),
        ("records.amend", "Records: amend"),
        ("records.dispose", "Records: dispose"),
    ]
    perms = {}
    for key, name in perm_keys:
        p = Permission(key=key, name=name)
        s.add(p)
        perms[key] = p
    return perms


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("RECORDS_PAGE_SIZE", "2")

    app = create_app()
    engine = app.extensions["sqlalchemy_engine"]
    Base.metadata.create_all(bind=engine)

    with session_scope(app) as s:
        perms = _seed_all_permissions(s)
        admin = Role(key="admin", name="Administrator")
        for p in perms.values():
            admin.permissions.append(p)
        viewer = Role(key="viewer", name="Viewer")
        viewer.permissions.append(perms["records.view"])

        u = User(email="admin@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        u.roles.append(admin)
        v = User(email="viewer@example.com", password_hash=generate_password_hash("pw"), is_active=True)
        v.roles.append(viewer)
        s.add_all([admin, viewer, u, v])

    return app.test_client()


def _login(client, email="admin@example.com"):
    r = client.post("/auth/login", json={"email": email, "password": "pw"})
    assert r.status_code == 200
    return r.json["csrf_token"]


def _post(client, token, url, payload):
    return client.post(url, json=payload, headers={"X-CSRF-Token": token})


def _create(client, token, entity_type="culture", **fields):
    fields = fields or {"label": "LC-001", "healthRating": 5}
    r = _post(client, token, "/api/records", {"entity_type": entity_type, "fields": fields})
    assert r.status_code == 201, r.json
    return r.json["record"]["record_group_id"]


def test_health_and_csrf_token(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json["ok"] is True
    r = client.get("/csrf-token")
    assert r.status_code == 200
    assert r.json["csrf_token"]


def test_records_require_login(client):
    r = client.get("/api/records")
    assert r.status_code == 401
    assert r.json["code"] == "Unauthorized"


def test_bad_login_is_rejected(client):
    r = client.post("/auth/login", json={"email": "admin@example.com", "password": "nope"})
    assert r.status_code == 401
    assert r.json["code"] == "InvalidCredentials"


def test_mutations_require_csrf(client):
    _login(client)
    r = client.post("/api/records", json={"entity_type": "culture", "fields": {"label": "LC-001"}})
    assert r.status_code == 400
    assert r.json["code"] == "CSRFError"


def test_create_amend_and_read_history(client):
    token = _login(client)
    gid = _create(client, token)

    r = _post(
        client,
        token,
        f"/api/records/{gid}/amend",
        {"changes": {"healthRating": 3}, "amendment_type": "correction", "reason": "misread gauge"},
    )
    assert r.status_code == 201
    record = r.json["record"]
    assert record["version"] == 2
    assert record["fields"]["health_rating"] == 3

    r = client.get(f"/api/records/{gid}/versions")
    versions = r.json["versions"]
    assert [v["version"] for v in versions] == [2, 1]
    assert versions[0]["is_current"] is True
    assert versions[1]["valid_to"] == versions[0]["valid_from"]

    r = client.get(f"/api/records/{gid}/amendments")
    amendments = r.json["amendments"]
    assert list(amendments) == [versions[0]["id"]]
    entry = amendments[versions[0]["id"]][0]
    assert entry["changes_summary"] == {"health_rating": {"old": 5, "new": 3}}
    assert entry["reason"] == "misread gauge"
    assert entry["amended_by_email"] == "admin@example.com"

    r = client.get(f"/api/records/{gid}/as-of", query_string={"at": versions[1]["valid_from"]})
    assert r.status_code == 200
    assert r.json["version"]["version"] == 1

    r = client.get(f"/api/records/{gid}/integrity")
    assert r.json == {"record_group_id": gid, "ok": True, "problems": []}


def test_errors_map_to_json(client):
    token = _login(client)
    gid = _create(client, token)

    r = _post(client, token, f"/api/records/{gid}/amend", {"changes": {"healthRating": 3}, "amendment_type": "correction"})
    assert r.status_code == 400
    assert r.json["code"] == "MissingReason"

    r = _post(
        client,
        token,
        f"/api/records/{gid}/amend",
        {"changes": {"healthRating": 5}, "amendment_type": "correction", "reason": "no change"},
    )
    assert r.status_code == 400
    assert r.json["code"] == "NoOpAmendment"

    r = _post(
        client,
        token,
        "/api/records/nope/amend",
        {"changes": {"healthRating": 2}, "amendment_type": "correction", "reason": "x"},
    )
    assert r.status_code == 404
    assert r.json["code"] == "RecordGroupNotFound"

    r = _post(
        client,
        token,
        f"/api/records/{gid}/amend",
        {"changes": {"notes": "x"}, "amendment_type": "update", "reason": "x", "expected_version": 7},
    )
    assert r.status_code == 409
    assert r.json["code"] == "ConcurrentModification"

    r = client.get(f"/api/records/{gid}/as-of", query_string={"at": "yesterday"})
    assert r.status_code == 400
    assert r.json["code"] == "InvalidFieldValue"

    r = client.get(f"/api/records/{gid}/versions")
    assert len(r.json["versions"]) == 1


def test_archive_hides_record_and_blocks_amendments(client):
    token = _login(client)
    gid = _create(client, token)

    r = _post(client, token, f"/api/records/{gid}/archive", {"reason": "duplicate entry"})
    assert r.status_code == 201
    assert r.json["record"]["is_archived"] is True

    r = client.get("/api/records")
    assert gid not in [rec["record_group_id"] for rec in r.json["records"]]
    r = client.get("/api/records", query_string={"include_archived": "1"})
    assert gid in [rec["record_group_id"] for rec in r.json["records"]]

    r = _post(
        client,
        token,
        f"/api/records/{gid}/amend",
        {"changes": {"notes": "x"}, "amendment_type": "update", "reason": "late"},
    )
    assert r.status_code == 409
    assert r.json["code"] == "RecordArchived"


def test_restore_and_merge(client):
    token = _login(client)
    gid = _create(client, token, label="LC-001", notes="clean")
    dup = _create(client, token, label="LC-001b")

    _post(client, token, f"/api/records/{gid}/amend", {"changes": {"notes": "cloudy"}, "amendment_type": "update", "reason": "look"})
    v1_id = client.get(f"/api/records/{gid}/versions").json["versions"][-1]["id"]

    r = _post(client, token, f"/api/records/{gid}/restore", {"version_id": v1_id, "reason": "was condensation"})
    assert r.status_code == 201
    assert r.json["record"]["fields"]["notes"] == "clean"

    r = _post(client, token, f"/api/records/{gid}/merge", {"source_group_ids": [dup], "reason": "same jar"})
    assert r.status_code == 201
    assert r.json["record"]["version"] == 4
    assert client.get(f"/api/records/{dup}").json["record"]["is_archived"] is True


def test_list_pages(client):
    token = _login(client)
    for label in ("LC-1", "LC-2", "LC-3"):
        _create(client, token, label=label)

    r = client.get("/api/records", query_string={"entity_type": "culture"})
    assert len(r.json["records"]) == 2
    assert r.json["has_more"] is True
    r = client.get("/api/records", query_string={"entity_type": "culture", "page": "2"})
    assert len(r.json["records"]) == 1
    assert r.json["has_more"] is False


def test_viewer_cannot_amend(client):
    token = _login(client)
    gid = _create(client, token)
    client.get("/auth/logout")

    token = _login(client, "viewer@example.com")
    assert client.get(f"/api/records/{gid}").status_code == 200
    r = _post(
        client,
        token,
        f"/api/records/{gid}/amend",
        {"changes": {"notes": "x"}, "amendment_type": "update", "reason": "x"},
    )
    assert r.status_code == 403
    assert r.json["missing_permission"] == "records.amend"


def test_dispose_endpoint(client):
    token = _login(client)
    gid = _create(client, token, "grow", name="Tub 1")

    r = client.get("/api/outcomes/vocabulary/grow")
    assert r.status_code == 200
    codes = {o["code"]: o["category"] for o in r.json["outcomes"]}
    assert codes["completed_low_yield"] == "partial"

    r = _post(
        client,
        token,
        f"/api/outcomes/grow/{gid}/dispose",
        {"outcome_code": "completed_success", "contamination_type": "cobweb"},
    )
    assert r.status_code == 400
    assert r.json["code"] == "IrrelevantContaminationDetails"

    r = _post(client, token, f"/api/outcomes/grow/{gid}/dispose", {"outcomeCode": "completed_success", "notes": "2 flushes"})
    assert r.status_code == 201
    record = r.json["record"]
    assert record["is_archived"] is True
    assert record["archive_reason"] == "Disposed: Tub 1 — 2 flushes"
    assert record["outcome"]["outcome_category"] == "success"

    r = client.get("/api/outcomes", query_string={"entity_type": "grow"})
    assert [o["record_group_id"] for o in r.json["outcomes"]] == [gid]
