"""
tests/test_api_routes.py -- Integration tests for the auth and security API routes.

These tests exercise the full stack: FastAPI routing -> enforcement gate ->
auth dependency injection -> service / ledger -> response model serialization.

Coverage:
  - Login: 200 with token + cookie, 401 bad credentials, 400 unknown principal type
  - Password change: wrong current password, unchanged password, success records the change
  - Admin bulk routes: by ids, all_expired, request validation
  - Admin reports: expired sets, requiring-action, per-principal audits, recent audits
  - Authorization: non-admin 403, stale admin stopped by the gate
"""

from __future__ import annotations

from datetime import timedelta

from auth.tokens import create_access_token


def _admin(app_ctx) -> dict[str, str]:
    return {"Authorization": f"Bearer {app_ctx.admin_token}"}


class TestLogin:
    def test_login_success(self, app_ctx, client) -> None:
        resp = client.post(
            "/api/v1/auth/login",
            json={"email": app_ctx.admin.email, "password": "adminpass123"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["email"] == app_ctx.admin.email
        assert data["role"] == "admin"
        assert "access_token" in resp.cookies
        assert resp.headers["cache-control"] == "no-store"

    def test_login_bad_password(self, app_ctx, client) -> None:
        resp = client.post(
            "/api/v1/auth/login",
            json={"email": app_ctx.admin.email, "password": "wrong-password"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_login_unknown_email_same_error(self, client) -> None:
        resp = client.post("/api/v1/auth/login", json={"email": "ghost@example.com", "password": "whatever"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_login_unknown_principal_type(self, app_ctx, client) -> None:
        resp = client.post(
            "/api/v1/auth/login",
            json={"email": app_ctx.admin.email, "password": "adminpass123", "principal_type": "robot"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_principal_type"

    def test_stale_principal_can_still_log_in(self, app_ctx, client) -> None:
        stale = app_ctx.stale(email="stale-login@example.com", password="stale-pass-123")
        resp = client.post("/api/v1/auth/login", json={"email": stale.email, "password": "stale-pass-123"})
        assert resp.status_code == 200

    def test_me_returns_identity_without_hash(self, app_ctx, client) -> None:
        resp = client.get("/api/v1/auth/me", headers=_admin(app_ctx))
        assert resp.status_code == 200
        data = resp.json()
        assert data["email"] == app_ctx.admin.email
        assert "hashed_password" not in data


class TestPasswordChange:
    def test_wrong_current_password(self, app_ctx, client) -> None:
        p = app_ctx.fresh(password="current-pass-1")
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "nope", "new_password": "another-pass-1"},
            headers=app_ctx.bearer(p),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_unchanged_password_rejected(self, app_ctx, client) -> None:
        p = app_ctx.fresh(password="current-pass-1")
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "current-pass-1", "new_password": "current-pass-1"},
            headers=app_ctx.bearer(p),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_unchanged"

    def test_short_password_is_validation_error(self, app_ctx, client) -> None:
        p = app_ctx.fresh(password="current-pass-1")
        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "current-pass-1", "new_password": "short"},
            headers=app_ctx.bearer(p),
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_expired_password_can_be_changed_through_the_gate(self, app_ctx, client) -> None:
        p = app_ctx.stale(verified_at=app_ctx.clock(), password="current-pass-1")
        headers = app_ctx.bearer(p)
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 403

        resp = client.post(
            "/api/v1/auth/password",
            json={"current_password": "current-pass-1", "new_password": "rotated-pass-2"},
            headers=headers,
        )
        assert resp.status_code == 200
        newest = app_ctx.ledger.list_for(p)[0]
        assert newest.reason == "Password reset completed"
        assert newest.password_changed_at == app_ctx.clock()
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200


class TestBulkActions:
    def test_reverify_by_ids(self, app_ctx, client) -> None:
        a, b = app_ctx.fresh(), app_ctx.fresh()
        resp = client.post(
            "/api/v1/security/reverify",
            json={"ids": [a.id, b.id, 99999], "reason": "Mailbox provider breach"},
            headers=_admin(app_ctx),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["action"] == "reverification"
        assert data["requested"] == 2
        assert data["succeeded"] == [a.id, b.id]
        assert data["failed"] == []

        record = app_ctx.ledger.list_for(a)[0]
        assert record.reason == "Mailbox provider breach"
        assert record.trigger.label() == f"user#{app_ctx.admin.id}"
        assert app_ctx.registry.get().get_by_id(a.id).email_verified_at is None

    def test_reverified_principal_is_then_stopped(self, app_ctx, client) -> None:
        p = app_ctx.fresh()
        client.post("/api/v1/security/reverify", json={"ids": [p.id]}, headers=_admin(app_ctx))
        resp = client.get("/api/v1/auth/me", headers=app_ctx.bearer(p))
        assert resp.status_code == 403

    def test_password_reset_all_expired(self, app_ctx, client) -> None:
        stale = app_ctx.stale()
        resp = client.post(
            "/api/v1/security/password-reset",
            json={"all_expired": True},
            headers=_admin(app_ctx),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert stale.id in data["succeeded"]
        assert app_ctx.admin.id not in data["succeeded"]
        assert stale.id in [who.id for who, _ in app_ctx.notifier.resets]

    def test_both_targets_rejected(self, app_ctx, client) -> None:
        resp = client.post(
            "/api/v1/security/reverify",
            json={"ids": [1], "all_expired": True},
            headers=_admin(app_ctx),
        )
        assert resp.status_code == 422

    def test_no_target_rejected(self, app_ctx, client) -> None:
        resp = client.post("/api/v1/security/reverify", json={}, headers=_admin(app_ctx))
        assert resp.status_code == 422

    def test_unknown_principal_type(self, app_ctx, client) -> None:
        resp = client.post(
            "/api/v1/security/reverify",
            json={"ids": [1], "principal_type": "robot"},
            headers=_admin(app_ctx),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "unknown_principal_type"


class TestReports:
    def test_expired_verification_report(self, app_ctx, client) -> None:
        stale = app_ctx.stale(password_changed_at=app_ctx.clock())
        fresh = app_ctx.fresh()
        resp = client.get("/api/v1/security/expired?kind=verification", headers=_admin(app_ctx))
        assert resp.status_code == 200
        data = resp.json()
        ids = [p["id"] for p in data["principals"]]
        assert stale.id in ids
        assert fresh.id not in ids
        assert data["count"] == len(ids)
        assert data["kind"] == "verification"
        assert data["principal_type"] == "user"
        assert data["as_of"] == app_ctx.clock().isoformat()

    def test_expired_password_report(self, app_ctx, client) -> None:
        stale = app_ctx.stale(verified_at=app_ctx.clock())
        resp = client.get("/api/v1/security/expired?kind=password", headers=_admin(app_ctx))
        assert stale.id in [p["id"] for p in resp.json()["principals"]]

    def test_invalid_kind_is_422(self, app_ctx, client) -> None:
        resp = client.get("/api/v1/security/expired?kind=bogus", headers=_admin(app_ctx))
        assert resp.status_code == 422

    def test_requiring_action_lists_each_principal_once(self, app_ctx, client) -> None:
        both = app_ctx.stale()
        resp = client.get("/api/v1/security/requiring-action", headers=_admin(app_ctx))
        assert resp.status_code == 200
        ids = [p["id"] for p in resp.json()]
        assert ids.count(both.id) == 1
        assert ids == sorted(ids)

    def test_principal_audits(self, app_ctx, client) -> None:
        p = app_ctx.fresh()
        resp = client.get(f"/api/v1/security/principals/user/{p.id}/audits", headers=_admin(app_ctx))
        assert resp.status_code == 200
        records = resp.json()
        assert [r["reason"] for r in records] == ["seed"]
        assert records[0]["password_changed_at"] is not None

    def test_principal_audits_view_filter(self, app_ctx, client) -> None:
        p = app_ctx.fresh()
        resp = client.get(
            f"/api/v1/security/principals/user/{p.id}/audits?view=verifications",
            headers=_admin(app_ctx),
        )
        assert resp.json() == []

    def test_principal_audits_missing_is_404(self, app_ctx, client) -> None:
        resp = client.get("/api/v1/security/principals/user/99999/audits", headers=_admin(app_ctx))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_recent_audits(self, app_ctx, client) -> None:
        app_ctx.fresh()
        resp = client.get("/api/v1/security/audits/recent?days=7&limit=5", headers=_admin(app_ctx))
        assert resp.status_code == 200
        assert 1 <= len(resp.json()) <= 5


class TestAuthorization:
    def test_security_routes_require_auth(self, client) -> None:
        assert client.get("/api/v1/security/requiring-action").status_code == 401

    def test_non_admin_forbidden(self, app_ctx, client) -> None:
        member = app_ctx.fresh()
        resp = client.get("/api/v1/security/requiring-action", headers=app_ctx.bearer(member))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_stale_admin_is_stopped_by_gate(self, app_ctx, client) -> None:
        old_admin = app_ctx.stale(role="admin")
        token = create_access_token(old_admin)
        resp = client.get(
            "/api/v1/security/requiring-action",
            headers={"Authorization": f"Bearer {token}"},
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "verification_required"

    def test_docs_require_auth(self, app_ctx, client) -> None:
        assert client.get("/docs").status_code == 401
        assert client.get("/docs", headers=_admin(app_ctx)).status_code == 200

    def test_stale_window_edge(self, app_ctx, client) -> None:
        edge = app_ctx.fresh(
            verified_at=app_ctx.clock() - timedelta(days=30),
            password_changed_at=app_ctx.clock() - timedelta(days=29),
        )
        resp = client.get("/api/v1/auth/me", headers=app_ctx.bearer(edge))
        assert resp.status_code == 403
