"""Tests for the leads API."""

import pytest

LEADS_URL = "/api/v1/leads"


@pytest.fixture
def created_lead(client, tenant_headers):
    response = client.post(LEADS_URL, json={
        "full_name": "Laura Torres",
        "email": "laura@example.com",
        "phone": "+5215599887766",
        "source": "web_form",
    }, headers=tenant_headers)
    return response.json()["data"]


class TestLeadCrud:
    """Test lead creation, lookup and updates."""

    def test_create_lead(self, client, tenant_headers):
        response = client.post(LEADS_URL, json={"full_name": "Jorge Díaz"}, headers=tenant_headers)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        data = body["data"]
        assert data["stage"] == "first_contact"
        assert data["display_stage"] == "new"
        assert data["source"] == "manual"
        assert data["metadata"] == {}
        assert data["version"] == 1

    def test_create_with_invalid_stage(self, client, tenant_headers):
        response = client.post(LEADS_URL, json={"full_name": "Jorge", "stage": "hot"}, headers=tenant_headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "http_400"

    def test_create_validation_error(self, client, tenant_headers):
        response = client.post(LEADS_URL, json={"full_name": ""}, headers=tenant_headers)

        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "validation_error"

    def test_list_and_search(self, client, tenant_headers, created_lead):
        client.post(LEADS_URL, json={"full_name": "Pedro Ruiz"}, headers=tenant_headers)

        all_leads = client.get(LEADS_URL, headers=tenant_headers).json()["data"]
        found = client.get(LEADS_URL, params={"search": "laura@"}, headers=tenant_headers).json()["data"]

        assert len(all_leads) == 2
        assert [lead["id"] for lead in found] == [created_lead["id"]]

    def test_get_lead(self, client, tenant_headers, created_lead):
        response = client.get(f"{LEADS_URL}/{created_lead['id']}", headers=tenant_headers)

        assert response.status_code == 200
        assert response.json()["data"]["email"] == "laura@example.com"

    def test_get_unknown_lead(self, client, tenant_headers):
        response = client.get(f"{LEADS_URL}/missing", headers=tenant_headers)

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "http_404"
        assert body["request_id"]

    def test_lead_of_other_tenant_is_hidden(self, client, basic_tenant, created_lead):
        response = client.get(f"{LEADS_URL}/{created_lead['id']}", headers={"X-Tenant-ID": basic_tenant.id})

        assert response.status_code == 404

    def test_update_fields(self, client, tenant_headers, created_lead):
        response = client.put(f"{LEADS_URL}/{created_lead['id']}", json={
            "notes": "Prefiere llamadas por la tarde",
            "metadata": {"campaign": "primavera"},
            "expected_version": 1,
        }, headers=tenant_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["notes"] == "Prefiere llamadas por la tarde"
        assert data["metadata"]["campaign"] == "primavera"
        assert data["version"] == 2

    def test_delete(self, client, tenant_headers, created_lead):
        response = client.delete(f"{LEADS_URL}/{created_lead['id']}", headers=tenant_headers)

        assert response.json()["data"] == {"id": created_lead["id"], "deleted": True}
        assert client.get(f"{LEADS_URL}/{created_lead['id']}", headers=tenant_headers).status_code == 404


class TestLeadStage:
    """Test stage changes and optimistic concurrency."""

    def test_change_stage(self, client, tenant_headers, created_lead):
        response = client.patch(f"{LEADS_URL}/{created_lead['id']}/stage", json={
            "stage": "qualification",
            "expected_version": created_lead["version"],
        }, headers=tenant_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["stage"] == "qualification"
        assert data["display_stage"] == "qualification"
        assert data["version"] == 2

    def test_stale_version_conflict(self, client, tenant_headers, created_lead):
        url = f"{LEADS_URL}/{created_lead['id']}/stage"
        client.patch(url, json={"stage": "prospecting", "expected_version": 1}, headers=tenant_headers)

        response = client.patch(url, json={"stage": "opportunity", "expected_version": 1}, headers=tenant_headers)

        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "stale_lead"
        assert error["details"] == {"expected_version": 1, "current_version": 2}

    def test_invalid_stage(self, client, tenant_headers, created_lead):
        response = client.patch(
            f"{LEADS_URL}/{created_lead['id']}/stage", json={"stage": "hot"}, headers=tenant_headers
        )

        assert response.status_code == 400

    def test_close_lead(self, client, tenant_headers, created_lead):
        response = client.post(
            f"{LEADS_URL}/{created_lead['id']}/close", json={"reason": "Compró con otro"}, headers=tenant_headers
        )

        data = response.json()["data"]
        assert data["status"] == "closed"
        assert data["display_stage"] == "closed"
        assert data["metadata"]["closed_reason"] == "Compró con otro"


class TestFunnelEndpoints:

    def test_board_and_analysis(self, client, tenant_headers, created_lead):
        other = client.post(LEADS_URL, json={"full_name": "Pedro Ruiz", "stage": "opportunity"},
                            headers=tenant_headers).json()["data"]
        hidden = client.post(LEADS_URL, json={"full_name": "Sofía Luna"}, headers=tenant_headers).json()["data"]
        client.post(f"{LEADS_URL}/{hidden['id']}/remove-from-funnel", headers=tenant_headers)

        board = client.get(f"{LEADS_URL}/funnel", headers=tenant_headers).json()["data"]
        analysis = client.get(f"{LEADS_URL}/funnel/analysis", headers=tenant_headers).json()["data"]

        assert board["stages"] == ["new", "prospecting", "qualification", "opportunity"]
        assert [lead["id"] for lead in board["columns"]["new"]] == [created_lead["id"]]
        assert [lead["id"] for lead in board["columns"]["opportunity"]] == [other["id"]]
        assert board["total_visible"] == 2
        assert analysis["total_leads"] == 3
        assert analysis["excluded_leads"] == 1
        assert analysis["exclusion_reasons"] == {"removed_from_funnel": 1}


class TestTenantHeader:

    def test_missing_tenant_header(self, client):
        response = client.get(LEADS_URL)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "missing_tenant"
