"""
Tests for KYC review API endpoints.

Review rules are tested in test_kyc_service.py; these cover
the HTTP contract.
"""


def submission_body(account_id="acct-1", documents=None):
    return {
        "account_id": account_id,
        "full_name": "Jane Doe",
        "email": "jane@example.com",
        "date_of_birth": "1990-04-01",
        "documents": documents or [
            {"document_type": "passport", "filename": "passport.pdf"},
        ],
    }


def create_submission(client, headers, **kwargs):
    response = client.post("/kyc-submissions", json=submission_body(**kwargs), headers=headers)
    assert response.status_code == 201
    return response.json()


class TestCreateSubmission:

    def test_create_returns_pending(self, client, admin_headers):
        data = create_submission(client, admin_headers)

        assert data["status"] == "pending"
        assert data["risk_level"] == "high"
        assert data["is_current"] is True
        assert data["documents"][0]["document_type"] == "passport"
        assert data["documents"][0]["status"] == "pending"

    def test_documents_required(self, client, admin_headers):
        body = submission_body()
        body["documents"] = []
        response = client.post("/kyc-submissions", json=body, headers=admin_headers)
        assert response.status_code == 422

    def test_second_open_submission_returns_409(self, client, admin_headers):
        create_submission(client, admin_headers)
        response = client.post(
            "/kyc-submissions", json=submission_body(), headers=admin_headers
        )
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "InvalidTransition"


class TestQueries:

    def test_list_and_filter(self, client, admin_headers):
        create_submission(client, admin_headers, account_id="acct-1")
        second = create_submission(client, admin_headers, account_id="acct-2")
        client.post(
            f"/kyc-submissions/{second['id']}/decision",
            json={"status": "under_review"},
            headers=admin_headers,
        )

        assert len(client.get("/kyc-submissions").json()) == 2
        pending = client.get("/kyc-submissions", params={"status": "pending"}).json()
        assert [s["account_id"] for s in pending] == ["acct-1"]

    def test_stats(self, client, admin_headers):
        create_submission(client, admin_headers)
        data = client.get("/kyc-submissions/stats").json()
        assert data["total_submissions"] == 1
        assert data["pending_review"] == 1

    def test_get_by_id(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        response = client.get(f"/kyc-submissions/{created['id']}")
        assert response.status_code == 200
        assert response.json()["full_name"] == "Jane Doe"

    def test_unknown_submission_returns_404(self, client):
        assert client.get("/kyc-submissions/999").status_code == 404


class TestReview:

    def test_high_risk_shortcut_returns_409(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        response = client.post(
            f"/kyc-submissions/{created['id']}/decision",
            json={"status": "rejected", "override_reason": "forged"},
            headers=admin_headers,
        )
        assert response.status_code == 409
        assert "review required" in response.json()["detail"]["message"]

    def test_full_review_flow(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        sub_id = created["id"]
        doc_id = created["documents"][0]["id"]

        response = client.post(
            f"/kyc-submissions/{sub_id}/decision",
            json={"status": "under_review"},
            headers=admin_headers,
        )
        assert response.json()["status"] == "under_review"

        response = client.post(
            f"/kyc-submissions/{sub_id}/documents/{doc_id}/decision",
            json={"status": "approved"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "approved"
        assert response.json()["reviewed_by"] == "admin-1"

        response = client.post(
            f"/kyc-submissions/{sub_id}/decision",
            json={"status": "approved", "notes": "verified"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "approved"
        assert data["reviewed_by"] == "admin-1"
        assert data["notes"] == "verified"

    def test_approval_with_pending_document_returns_409(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        client.post(
            f"/kyc-submissions/{created['id']}/decision",
            json={"status": "under_review"},
            headers=admin_headers,
        )
        response = client.post(
            f"/kyc-submissions/{created['id']}/decision",
            json={"status": "approved"},
            headers=admin_headers,
        )
        assert response.status_code == 409

    def test_document_rejection_needs_reason(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        doc_id = created["documents"][0]["id"]
        response = client.post(
            f"/kyc-submissions/{created['id']}/documents/{doc_id}/decision",
            json={"status": "rejected"},
            headers=admin_headers,
        )
        assert response.status_code == 422

    def test_info_request_and_resubmission(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        sub_id = created["id"]
        for status in ("under_review", "requires_additional_info"):
            client.post(
                f"/kyc-submissions/{sub_id}/decision",
                json={"status": status},
                headers=admin_headers,
            )

        response = client.post(
            f"/kyc-submissions/{sub_id}/documents",
            json={"document_type": "utility_bill", "filename": "bill.pdf"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert len(data["documents"]) == 2

    def test_high_risk_rejection_opens_security_event(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        sub_id = created["id"]
        client.post(
            f"/kyc-submissions/{sub_id}/decision",
            json={"status": "under_review"},
            headers=admin_headers,
        )
        response = client.post(
            f"/kyc-submissions/{sub_id}/decision",
            json={"status": "rejected", "override_reason": "forged documents"},
            headers=admin_headers,
        )
        assert response.status_code == 200

        events = client.get("/security-events", params={"account_id": "acct-1"}).json()
        assert len(events) == 1
        assert events[0]["event_type"] == "suspicious_activity"
        assert events[0]["severity"] == "high"

    def test_decision_requires_actor(self, client, admin_headers):
        created = create_submission(client, admin_headers)
        response = client.post(
            f"/kyc-submissions/{created['id']}/decision",
            json={"status": "under_review"},
        )
        assert response.status_code == 401
