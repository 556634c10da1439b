import io
from datetime import timedelta

import app as catalog
from app_helpers import admin_headers, count_rows, create_admin, create_base, create_user
from conftest import build_app

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def test_admin_routes_require_a_session(client):
    assert client.get("/admin/session").status_code == 401
    assert client.get("/admin/bases", headers={"Authorization": "Bearer bogus"}).status_code == 401


def test_session_endpoint_reports_admin(app, client):
    create_admin(app)
    headers = admin_headers(client)

    resp = client.get("/admin/session", headers=headers)

    assert resp.status_code == 200
    assert resp.get_json()["user"]["email"] == "admin@example.com"


def test_session_cookie_authenticates_follow_up_requests(app, client):
    create_admin(app)
    admin_headers(client)

    assert client.get("/admin/session").status_code == 200


def test_deactivated_admin_loses_access_on_next_request(app, client):
    create_admin(app)
    headers = admin_headers(client)
    with app.app_context():
        catalog.AdminUser.query.one().is_active = False
        catalog.db.session.commit()

    resp = client.get("/admin/session", headers=headers)

    assert resp.status_code == 403
    assert resp.get_json()["code"] == "ACCESS_DENIED"


def test_non_admin_session_cannot_reach_admin_routes(app, client):
    user_id = create_user(app)
    with app.app_context():
        session = catalog.Session(
            user_id=user_id,
            access_token="plain-user-token",
            refresh_token="plain-user-refresh",
            expires_at=catalog.utcnow() + timedelta(minutes=30),
        )
        catalog.db.session.add(session)
        catalog.db.session.commit()

    resp = client.get("/admin/bases", headers={"Authorization": "Bearer plain-user-token"})

    assert resp.status_code == 403


def test_expired_session_is_rejected_and_removed(app, client):
    create_admin(app)
    headers = admin_headers(client)
    with app.app_context():
        catalog.Session.query.one().expires_at = catalog.utcnow() - timedelta(minutes=1)
        catalog.db.session.commit()

    assert app.test_client().get("/admin/session", headers=headers).status_code == 401
    assert count_rows(app, catalog.Session) == 0


def test_request_from_unlisted_ip_is_rejected(app, client):
    create_admin(app, allowed_ips=["10.0.0.1"])
    headers = admin_headers(client, ip_address="10.0.0.1")

    ok = client.get("/admin/session", headers=headers, environ_base={"REMOTE_ADDR": "10.0.0.1"})
    blocked = client.get("/admin/session", headers=headers, environ_base={"REMOTE_ADDR": "10.0.0.9"})

    assert ok.status_code == 200
    assert blocked.status_code == 403
    assert blocked.get_json()["code"] == "IP_NOT_ALLOWED"


def test_logout_revokes_session(app, client):
    create_admin(app)
    headers = admin_headers(client)

    assert client.post("/admin/logout", headers=headers).status_code == 200
    assert client.get("/admin/session", headers=headers).status_code == 401


def test_admin_base_listing_filters(app, client):
    create_admin(app)
    headers = admin_headers(client)
    ring = create_base(app, name="Ring", hall_type="TH", base_type="WAR")
    create_base(app, name="Builder Ring", hall_type="BH", hall_level=9, base_type="TROPHY")
    create_base(app, name="Farm", hall_type="TH", base_type="FARMING")

    resp = client.get("/admin/bases?q=ring&hall_type=TH&base_type=ALL", headers=headers)

    assert [b["id"] for b in resp.get_json()] == [ring]


def test_update_base_validates_hall_range(app, client):
    create_admin(app)
    headers = admin_headers(client)
    base_id = create_base(app)

    bad = client.patch(f"/admin/bases/{base_id}", json={"hall_type": "BH", "hall_level": 15}, headers=headers)
    good = client.patch(
        f"/admin/bases/{base_id}",
        json={"name": "Renamed", "hall_type": "BH", "hall_level": 10, "tips": ""},
        headers=headers,
    )

    assert bad.status_code == 400
    assert good.status_code == 200
    assert good.get_json()["name"] == "Renamed"
    assert (good.get_json()["hall_type"], good.get_json()["hall_level"]) == ("BH", 10)
    assert good.get_json()["tips"] is None


def test_delete_base_keeps_download_history(app, client):
    create_admin(app)
    headers = admin_headers(client)
    base_id = create_base(app)
    client.get(f"/bases/{base_id}/download")
    client.post(f"/bases/{base_id}/ratings", json={"rating": 5, "fingerprint": "fp"})

    resp = client.delete(f"/admin/bases/{base_id}", headers=headers)

    assert resp.status_code == 200
    assert count_rows(app, catalog.BaseLayout) == 0
    assert count_rows(app, catalog.Rating) == 0
    assert count_rows(app, catalog.Download, base_id=None) == 1


def test_allowed_ip_management(app, client):
    create_admin(app)
    headers = admin_headers(client)

    invalid = client.post("/admin/security/allowed-ips", json={"ip": "999.1.1.1"}, headers=headers)
    added = client.post("/admin/security/allowed-ips", json={"ip": "127.0.0.1"}, headers=headers)
    duplicate = client.post("/admin/security/allowed-ips", json={"ip": "127.0.0.1"}, headers=headers)
    other = client.post("/admin/security/allowed-ips", json={"ip": "192.0.2.4"}, headers=headers)

    assert invalid.status_code == 400
    assert added.status_code == 201
    assert added.get_json()["includes_current_ip"] is True
    assert duplicate.status_code == 409
    assert other.get_json()["allowed_ips"] == ["127.0.0.1", "192.0.2.4"]

    removed = client.delete("/admin/security/allowed-ips/192.0.2.4", headers=headers)
    missing = client.delete("/admin/security/allowed-ips/192.0.2.4", headers=headers)

    assert removed.get_json()["allowed_ips"] == ["127.0.0.1"]
    assert missing.status_code == 404
    assert client.get("/admin/security/allowed-ips", headers=headers).get_json() == {"allowed_ips": ["127.0.0.1"]}


def test_current_ip(app, client):
    create_admin(app)
    headers = admin_headers(client)

    resp = client.get("/admin/security/current-ip", headers=headers, environ_base={"REMOTE_ADDR": "198.51.100.20"})

    assert resp.get_json() == {"ip": "198.51.100.20"}


def test_login_attempt_log_and_failed_count(app, client):
    create_admin(app)
    client.post("/functions/admin-auth", json={"email": "admin@example.com", "password": "nope"})
    headers = admin_headers(client)

    body = client.get("/admin/security/login-attempts", headers=headers).get_json()

    assert body["recent_failed_24h"] == 1
    assert [a["success"] for a in body["attempts"]] == [True, False]


def test_cleanup_removes_old_attempts(app, client):
    create_admin(app)
    with app.app_context():
        stale = catalog.utcnow() - timedelta(hours=25)
        catalog.db.session.add(catalog.AdminLoginAttempt(ip_address="1.2.3.4", created_at=stale))
        catalog.db.session.commit()
    headers = admin_headers(client)

    resp = client.post("/admin/security/cleanup", headers=headers)

    assert resp.get_json()["old_login_attempts_removed"] == 1
    assert count_rows(app, catalog.AdminLoginAttempt) == 1


def test_security_events_list(app, client):
    create_user(app, email="user@example.com")
    create_admin(app)
    client.post("/functions/admin-auth", json={"email": "user@example.com", "password": "CorrectHorse42Battery"})
    headers = admin_headers(client)

    events = client.get("/admin/security/events", headers=headers).get_json()

    assert [e["event_type"] for e in events] == ["admin_access_denied"]


def test_image_optimizer_passes_images_through(app, client):
    create_admin(app)
    headers = admin_headers(client)

    resp = client.post(
        "/admin/images/optimize",
        data={
            "files": [
                (io.BytesIO(PNG_BYTES), "castle.png"),
                (io.BytesIO(b"hello"), "notes.txt"),
            ]
        },
        headers=headers,
        content_type="multipart/form-data",
    )

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["skipped"] == ["notes.txt"]
    assert len(body["processed"]) == 1
    assert body["processed"][0]["file_size"] == len(PNG_BYTES)

    image = client.get(body["processed"][0]["url"], headers=headers)
    assert image.status_code == 200
    assert image.data == PNG_BYTES


def test_tampered_image_token_is_rejected(app, client):
    create_admin(app)
    headers = admin_headers(client)

    assert client.get("/admin/images/not-a-token", headers=headers).status_code == 400


def test_analytics_summarises_catalog(app, client):
    create_admin(app)
    headers = admin_headers(client)
    popular = create_base(app, name="Popular")
    create_base(app, name="Quiet")
    client.get(f"/bases/{popular}/download")
    client.get(f"/bases/{popular}/download")
    client.post(f"/bases/{popular}/ratings", json={"rating": 4, "fingerprint": "fp"})

    body = client.get("/admin/analytics", headers=headers).get_json()

    assert body["totals"] == {"bases": 2, "downloads": 2, "ratings": 1, "downloads_daily": 2}
    assert body["top_downloaded"] == [{"base_id": popular, "name": "Popular", "download_count": 2}]
    assert body["top_rated"][0]["average_rating"] == 4.0
    assert len(body["charts"]["line_downloads"]) == 14
    assert body["charts"]["line_downloads"][-1]["downloads"] == 2


def test_audit_log_records_admin_actions(app, client):
    create_admin(app)
    headers = admin_headers(client)
    base_id = create_base(app)
    client.delete(f"/admin/bases/{base_id}", headers=headers)

    logs = client.get("/admin/audit-logs", headers=headers).get_json()

    assert logs[0]["action"] == f"base_delete:{base_id}"


def test_forwarded_header_is_ignored_without_trusted_proxy(app, client):
    create_admin(app, allowed_ips=["10.0.0.1"])
    headers = admin_headers(client, ip_address="10.0.0.1")

    resp = client.get(
        "/admin/session",
        headers={**headers, "X-Forwarded-For": "10.0.0.1"},
        environ_base={"REMOTE_ADDR": "10.0.0.9"},
    )

    assert resp.status_code == 403
    assert resp.get_json()["code"] == "IP_NOT_ALLOWED"


def test_trusted_proxy_hop_is_used_for_allow_list(tmp_path):
    proxied = build_app(tmp_path, TRUSTED_PROXY_COUNT=1)
    create_admin(proxied, allowed_ips=["10.0.0.1"])
    client = proxied.test_client()
    headers = admin_headers(client, ip_address="10.0.0.1")

    allowed = client.get("/admin/session", headers={**headers, "X-Forwarded-For": "10.0.0.9, 10.0.0.1"})
    spoofed = client.get("/admin/session", headers={**headers, "X-Forwarded-For": "10.0.0.1, 10.0.0.9"})

    assert allowed.status_code == 200
    assert spoofed.status_code == 403
    with proxied.app_context():
        catalog.db.engine.dispose()


def test_update_base_rejects_non_string_fields(app, client):
    create_admin(app)
    headers = admin_headers(client)
    base_id = create_base(app, name="Original")

    assert client.patch(f"/admin/bases/{base_id}", json={"name": 5}, headers=headers).status_code == 400
    assert client.patch(f"/admin/bases/{base_id}", json={"hall_type": ["TH"]}, headers=headers).status_code == 400
    assert client.patch(f"/admin/bases/{base_id}", json={"hall_level": 10.5}, headers=headers).status_code == 400
    assert client.patch(f"/admin/bases/{base_id}", json=["name"], headers=headers).status_code == 200

    with app.app_context():
        assert catalog.db.session.get(catalog.BaseLayout, base_id).name == "Original"


def test_failed_update_leaves_base_untouched(app, client):
    create_admin(app)
    headers = admin_headers(client)
    base_id = create_base(app, name="Original", tips="Keep walls up")

    resp = client.patch(f"/admin/bases/{base_id}", json={"tips": "Changed", "layout_link": "  "}, headers=headers)

    assert resp.status_code == 400
    with app.app_context():
        base = catalog.db.session.get(catalog.BaseLayout, base_id)
        assert (base.name, base.tips) == ("Original", "Keep walls up")


def test_update_base_accepts_digit_string_hall_level(app, client):
    create_admin(app)
    headers = admin_headers(client)
    base_id = create_base(app)

    resp = client.patch(f"/admin/bases/{base_id}", json={"hall_type": "bh", "hall_level": "9"}, headers=headers)

    assert resp.status_code == 200
    assert (resp.get_json()["hall_type"], resp.get_json()["hall_level"]) == ("BH", 9)


def test_allowed_ip_must_be_a_string(app, client):
    create_admin(app)
    headers = admin_headers(client)

    assert client.post("/admin/security/allowed-ips", json={"ip": 1234}, headers=headers).status_code == 400
    assert client.post("/admin/security/allowed-ips", json=["127.0.0.1"], headers=headers).status_code == 400
    assert client.get("/admin/security/allowed-ips", headers=headers).get_json() == {"allowed_ips": []}
