"""
Tests for security profile API endpoints.
"""


def failed_login(client, headers, account_id):
    return client.post("/audit-events", json={
        "actor": {"id": account_id, "name": account_id, "role": "customer"},
        "action": "User Login",
        "resource": {"type": "session"},
        "outcome": "failed",
    }, headers=headers)


class TestGetProfile:

    def test_unknown_account_returns_404(self, client):
        response = client.get("/accounts/nobody/security-profile")
        assert response.status_code == 404

    def test_profile_after_login(self, client, admin_headers):
        failed_login(client, admin_headers, "acct-1")
        data = client.get("/accounts/acct-1/security-profile").json()

        assert data["account_id"] == "acct-1"
        assert data["failed_login_count"] == 1
        assert data["score"] == 0
        assert data["tier"] == "POOR"


class TestProfileChanges:

    def test_two_factor(self, client, admin_headers):
        response = client.post(
            "/accounts/acct-1/two-factor",
            json={"enabled": True, "method": "sms"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["two_factor_enabled"] is True
        assert data["two_factor_method"] == "sms"
        assert data["score"] == 20

    def test_full_hygiene_reaches_fair(self, client, admin_headers):
        client.post("/accounts/acct-1/two-factor", json={"enabled": True}, headers=admin_headers)
        client.post("/accounts/acct-1/backup-codes", headers=admin_headers)
        client.post(
            "/accounts/acct-1/devices",
            json={"device_id": "dev-1", "device_name": "Laptop", "trusted": True},
            headers=admin_headers,
        )
        response = client.post(
            "/accounts/acct-1/allowed-ips",
            json={"ip_address": "192.168.1.10"},
            headers=admin_headers,
        )
        data = response.json()
        assert data["score"] == 55
        assert data["tier"] == "FAIR"
        assert data["ip_allow_list"] == ["192.168.1.10"]
        assert data["devices"][0]["trusted"] is True

    def test_remove_allowed_ip(self, client, admin_headers):
        client.post(
            "/accounts/acct-1/allowed-ips",
            json={"ip_address": "192.168.1.10"},
            headers=admin_headers,
        )
        response = client.delete(
            "/accounts/acct-1/allowed-ips/192.168.1.10", headers=admin_headers
        )
        assert response.status_code == 200
        assert response.json()["ip_allow_list"] == []

    def test_invalid_ip_returns_422(self, client, admin_headers):
        response = client.post(
            "/accounts/acct-1/allowed-ips",
            json={"ip_address": "999.1.1.1"},
            headers=admin_headers,
        )
        assert response.status_code == 422

    def test_changes_are_audited(self, client, admin_headers):
        client.post("/accounts/acct-1/backup-codes", headers=admin_headers)
        data = client.get(
            "/audit-events", params={"action_type": "security"}
        ).json()
        assert data["total"] == 1
        assert data["items"][0]["resource_id"] == "acct-1"
        assert data["items"][0]["actor_id"] == "admin-1"

    def test_writes_require_actor(self, client):
        response = client.post("/accounts/acct-1/backup-codes")
        assert response.status_code == 401


class TestUnlock:

    def test_unlock_locked_account(self, client, admin_headers):
        for _ in range(5):
            failed_login(client, admin_headers, "acct-1")
        assert client.get("/accounts/acct-1/security-profile").json()["locked"] is True

        response = client.post("/accounts/acct-1/unlock", headers=admin_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["locked"] is False
        assert data["failed_login_count"] == 0

    def test_unlock_unknown_account_returns_404(self, client, admin_headers):
        response = client.post("/accounts/nobody/unlock", headers=admin_headers)
        assert response.status_code == 404


class TestSecurityMetrics:

    def test_metrics(self, client, admin_headers):
        client.post("/accounts/acct-1/two-factor", json={"enabled": True}, headers=admin_headers)
        for _ in range(5):
            failed_login(client, admin_headers, "acct-2")

        data = client.get("/security-metrics").json()
        assert data["total_accounts"] == 2
        assert data["two_factor_enabled"] == 1
        assert data["locked_accounts"] == 1
        assert data["active_events"] == 2
        assert data["active_threats"] == 2
