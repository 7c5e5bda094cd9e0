"""
GroupLedger - API Endpoint Tests

HTTP-level tests of the consolidation router against the in-memory store.
"""

import pytest
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

from conftest import ACQUISITION_DATE, AS_OF


BASE = "/api/v1/consolidation"
RUN_BODY = {"period": {"year": 2025, "period": 3}, "as_of_date": AS_OF.isoformat()}


def _group_body(companies, name="Holdco Group", ownership="80"):
    return {
        "name": name,
        "reporting_currency": "USD",
        "consolidation_method": "full",
        "parent_company_id": str(companies["parent"].id),
        "members": [{
            "company_id": str(companies["subsidiary"].id),
            "ownership_percentage": ownership,
            "acquisition_date": ACQUISITION_DATE.isoformat(),
        }],
    }


RULE_BODY = {
    "name": "Intercompany receivables",
    "elimination_type": "intercompany_receivable_payable",
    "debit_account_code": "2300",
    "credit_account_code": "1300",
    "source_accounts": [{"kind": "by_code", "code": "1300"}],
    "priority": 10,
}


async def _create_group(client, auth_headers, companies, **kwargs):
    response = await client.post(f"{BASE}/groups", json=_group_body(companies, **kwargs), headers=auth_headers)
    assert response.status_code == 201
    return response.json()


class TestHealthEndpoints:
    """Test liveness endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_cache_health_when_disabled(self, client):
        response = await client.get("/health/cache")
        assert response.status_code == 200
        assert response.json()["status"] == "disabled"


class TestRequestContext:
    """Test tenant headers."""

    @pytest.mark.asyncio
    async def test_missing_organization_header(self, client):
        response = await client.get(f"{BASE}/groups")
        assert response.status_code == 401
        assert response.json()["detail"]["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_malformed_organization_header(self, client):
        response = await client.get(f"{BASE}/groups", headers={"X-Organization-ID": "not-a-uuid"})
        assert response.status_code == 400


class TestGroupEndpoints:
    """Test group and member endpoints."""

    @pytest.mark.asyncio
    async def test_create_and_get_group(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        assert group["version"] == 1
        assert group["members"][0]["non_controlling_interest_percentage"] in ("20", "20.00")
        assert group["members"][0]["effective_method"] == "full"

        response = await client.get(f"{BASE}/groups/{group['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["name"] == "Holdco Group"

    @pytest.mark.asyncio
    async def test_group_not_found_envelope(self, client, auth_headers):
        response = await client.get(f"{BASE}/groups/{uuid4()}", headers=auth_headers)
        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["code"] == "GROUP_NOT_FOUND"
        assert "timestamp" in detail

    @pytest.mark.asyncio
    async def test_group_hidden_from_other_organization(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        response = await client.get(
            f"{BASE}/groups/{group['id']}", headers={"X-Organization-ID": str(uuid4())},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, client, auth_headers, companies):
        await _create_group(client, auth_headers, companies)
        response = await client.post(f"{BASE}/groups", json=_group_body(companies), headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "DUPLICATE_GROUP_NAME"

    @pytest.mark.asyncio
    async def test_invalid_ownership_rejected(self, client, auth_headers, companies):
        response = await client.post(
            f"{BASE}/groups", json=_group_body(companies, ownership="120"), headers=auth_headers,
        )
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_patch_distinguishes_absent_from_null(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        url = f"{BASE}/groups/{group['id']}"

        response = await client.patch(url, json={"description": "Operating group"}, headers=auth_headers)
        assert response.json()["description"] == "Operating group"

        response = await client.patch(url, json={"name": "Renamed Group"}, headers=auth_headers)
        body = response.json()
        assert body["name"] == "Renamed Group"
        assert body["description"] == "Operating group"

        response = await client.patch(url, json={"description": None}, headers=auth_headers)
        assert response.json()["description"] is None

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        url = f"{BASE}/groups/{group['id']}"
        first = await client.patch(url, json={"description": "a", "expected_version": 1}, headers=auth_headers)
        assert first.status_code == 200
        second = await client.patch(url, json={"description": "b", "expected_version": 1}, headers=auth_headers)
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "VERSION_CONFLICT"

    @pytest.mark.asyncio
    async def test_member_lifecycle(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        members_url = f"{BASE}/groups/{group['id']}/members"

        response = await client.post(members_url, json={
            "company_id": str(companies["foreign"].id),
            "ownership_percentage": "100",
            "acquisition_date": ACQUISITION_DATE.isoformat(),
        }, headers=auth_headers)
        assert response.status_code == 201
        assert len(response.json()["members"]) == 2

        response = await client.patch(
            f"{members_url}/{companies['subsidiary'].id}",
            json={"ownership_percentage": "60"},
            headers=auth_headers,
        )
        assert response.status_code == 200

        response = await client.delete(f"{members_url}/{companies['foreign'].id}", headers=auth_headers)
        assert [m["company_id"] for m in response.json()["members"]] == [str(companies["subsidiary"].id)]

    @pytest.mark.asyncio
    async def test_delete_group_deactivates(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        response = await client.delete(f"{BASE}/groups/{group['id']}", headers=auth_headers)
        assert response.status_code == 204

        listed = await client.get(f"{BASE}/groups", headers=auth_headers)
        assert listed.json() == []
        listed = await client.get(f"{BASE}/groups", params={"include_inactive": True}, headers=auth_headers)
        assert listed.json()[0]["is_active"] is False


class TestRuleEndpoints:
    """Test elimination rule endpoints."""

    @pytest.mark.asyncio
    async def test_create_and_reprioritise_rule(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        response = await client.post(f"{BASE}/groups/{group['id']}/rules", json=RULE_BODY, headers=auth_headers)
        assert response.status_code == 201
        rule = response.json()
        assert rule["source_accounts"][0]["code"] == "1300"

        response = await client.put(f"{BASE}/rules/{rule['id']}/priority", json={"priority": 1}, headers=auth_headers)
        assert response.json()["priority"] == 1
        assert response.json()["version"] == 2

        response = await client.get(f"{BASE}/groups/{group['id']}", headers=auth_headers)
        assert response.json()["elimination_rule_ids"] == [rule["id"]]

    @pytest.mark.asyncio
    async def test_bulk_create_is_atomic(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        item = dict(RULE_BODY, group_id=group["id"])
        response = await client.post(f"{BASE}/rules/bulk", json={"rules": [item, item]}, headers=auth_headers)
        assert response.status_code == 409

        response = await client.get(f"{BASE}/groups/{group['id']}/rules", headers=auth_headers)
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_rule_patch_and_deactivate(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        rule = (await client.post(f"{BASE}/groups/{group['id']}/rules", json=RULE_BODY, headers=auth_headers)).json()

        response = await client.patch(
            f"{BASE}/rules/{rule['id']}", json={"description": "Receivable side"}, headers=auth_headers,
        )
        assert response.json()["description"] == "Receivable side"
        assert response.json()["name"] == RULE_BODY["name"]

        response = await client.post(f"{BASE}/rules/{rule['id']}/deactivate", headers=auth_headers)
        assert response.json()["is_active"] is False

        response = await client.get(
            f"{BASE}/groups/{group['id']}/rules", params={"active_only": True}, headers=auth_headers,
        )
        assert response.json() == []


class TestRunEndpoints:
    """Test runs and consolidated reports."""

    @pytest.mark.asyncio
    async def test_full_consolidation(self, client, auth_headers, companies):
        """Create a group and rule, run it, then read every report."""
        group = await _create_group(client, auth_headers, companies)
        await client.post(f"{BASE}/groups/{group['id']}/rules", json=RULE_BODY, headers=auth_headers)

        response = await client.post(f"{BASE}/groups/{group['id']}/runs", json=RUN_BODY, headers=auth_headers)
        assert response.status_code == 201
        run = response.json()
        assert run["status"] == "completed"
        assert run["progress_percent"] == 100
        assert run["has_trial_balance"] is True
        assert len(run["elimination_entries"]) == 1
        assert [s["step_type"] for s in run["steps"]] == [
            "collect_balances", "translate_currency", "eliminate_intercompany", "apply_nci", "validate",
        ]

        tb = (await client.get(f"{BASE}/runs/{run['id']}/trial-balance", headers=auth_headers)).json()
        assert tb["is_balanced"] is True

        sheet = (await client.get(f"{BASE}/runs/{run['id']}/reports/balance-sheet", headers=auth_headers)).json()
        assert sheet["totals"]["total_assets"] == sheet["totals"]["total_liabilities_and_equity"]
        assert sheet["totals"]["non_controlling_interest"] == "8000.00"

        income = (await client.get(f"{BASE}/runs/{run['id']}/reports/income-statement", headers=auth_headers)).json()
        assert income["totals"]["attributable_to_nci"] == "1000.00"

        for report in ("cash-flow", "equity-statement"):
            response = await client.get(f"{BASE}/runs/{run['id']}/reports/{report}", headers=auth_headers)
            assert response.status_code == 200

        latest = (await client.get(f"{BASE}/groups/{group['id']}/runs/latest", headers=auth_headers)).json()
        assert latest["id"] == run["id"]

    @pytest.mark.asyncio
    async def test_duplicate_run_conflicts(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        url = f"{BASE}/groups/{group['id']}/runs"
        await client.post(url, json=RUN_BODY, headers=auth_headers)

        response = await client.post(url, json=RUN_BODY, headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "RUN_ALREADY_EXISTS"

        forced = dict(RUN_BODY, options={"force_regeneration": True})
        response = await client.post(url, json=forced, headers=auth_headers)
        assert response.status_code == 201

    @pytest.mark.asyncio
    async def test_intercompany_matching_in_response(self, client, auth_headers, companies, store):
        parent, subsidiary = companies["parent"].id, companies["subsidiary"].id
        store.add_intercompany_transaction(parent, subsidiary, date(2025, 3, 10), "10000")
        store.add_intercompany_transaction(subsidiary, parent, date(2025, 3, 12), "9950")
        group = await _create_group(client, auth_headers, companies)
        body = dict(RUN_BODY, options={"intercompany_amount_tolerance_percent": "1"})

        run = (await client.post(f"{BASE}/groups/{group['id']}/runs", json=body, headers=auth_headers)).json()
        assert run["status"] == "completed"
        assert Decimal(run["options"]["intercompany_amount_tolerance_percent"]) == Decimal("1")
        matching = run["intercompany_matching"]
        assert matching["matched_count"] == 1
        assert matching["partial_match_count"] == 1
        assert matching["discrepancies"] == []
        assert Decimal(matching["total_variance"]["USD"]) == Decimal("50")

    @pytest.mark.asyncio
    async def test_tolerance_out_of_range_rejected(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        body = dict(RUN_BODY, options={"intercompany_amount_tolerance_percent": "150"})
        response = await client.post(f"{BASE}/groups/{group['id']}/runs", json=body, headers=auth_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_deferred_run_executes_later(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        body = dict(RUN_BODY, execute_immediately=False)
        run = (await client.post(f"{BASE}/groups/{group['id']}/runs", json=body, headers=auth_headers)).json()
        assert run["status"] == "pending"
        assert run["queued"] is False

        response = await client.get(f"{BASE}/runs/{run['id']}/reports/balance-sheet", headers=auth_headers)
        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "RUN_NOT_COMPLETED"

        response = await client.post(f"{BASE}/runs/{run['id']}/execute", headers=auth_headers)
        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_cancel_and_delete(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        body = dict(RUN_BODY, execute_immediately=False)
        run = (await client.post(f"{BASE}/groups/{group['id']}/runs", json=body, headers=auth_headers)).json()

        response = await client.post(f"{BASE}/runs/{run['id']}/cancel", headers=auth_headers)
        assert response.json()["status"] == "cancelled"

        response = await client.post(f"{BASE}/runs/{run['id']}/cancel", headers=auth_headers)
        assert response.json()["detail"]["code"] == "CANNOT_CANCEL"

    @pytest.mark.asyncio
    async def test_list_runs_by_status(self, client, auth_headers, companies):
        group = await _create_group(client, auth_headers, companies)
        await client.post(f"{BASE}/groups/{group['id']}/runs", json=RUN_BODY, headers=auth_headers)

        response = await client.get(
            f"{BASE}/groups/{group['id']}/runs", params={"status": "completed"}, headers=auth_headers,
        )
        assert len(response.json()) == 1
        response = await client.get(
            f"{BASE}/groups/{group['id']}/runs", params={"status": "failed"}, headers=auth_headers,
        )
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_background_execution_queues_run(self, client, auth_headers, companies, monkeypatch):
        """With background execution on, a deferred run is handed to the worker queue."""
        from app.routers import consolidation as consolidation_router
        from app.tasks import consolidation_tasks

        enqueue = MagicMock(return_value="task-1")
        monkeypatch.setattr(consolidation_router.settings, "consolidation_background_execution", True)
        monkeypatch.setattr(consolidation_tasks, "enqueue_consolidation_run", enqueue)

        group = await _create_group(client, auth_headers, companies)
        body = dict(RUN_BODY, execute_immediately=False)
        run = (await client.post(f"{BASE}/groups/{group['id']}/runs", json=body, headers=auth_headers)).json()

        assert run["status"] == "pending"
        assert run["queued"] is True
        enqueue.assert_called_once()
        assert str(enqueue.call_args.args[0]) == run["id"]
