"""HTTP surface: envelopes, error mapping and phase-routed endpoints."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

from app.core.constants import MigrationPhase
from app.policies.template_store import TemplateStore

from conftest import TODAY, legacy_fields, phase_config

API = "/api/v1"


def template_body(number="POL-2024-001", **overrides):
    body = {"policyNumber": number, "policyType": "Life", "provider": "Acme Life"}
    body.update(overrides)
    return body


def terms_body(template_id, **overrides):
    body = {
        "templateId": template_id,
        "premiumAmount": 1000,
        "commissionAmount": 100,
        "startDate": "2025-01-01",
        "expiryDate": "2026-01-01",
    }
    body.update(overrides)
    return body


def policy_body(client_id="client-a", number="POL-2024-001", **overrides):
    body = {
        "clientId": client_id,
        **template_body(number),
        "premiumAmount": "1000.00",
        "commissionAmount": "100.00",
        "startDate": "2025-01-01",
        "expiryDate": "2026-01-01",
    }
    body.update(overrides)
    return body


async def create_template(api, number="POL-2024-001", **overrides):
    response = await api.post(f"{API}/policy-templates", json=template_body(number, **overrides))
    assert response.status_code == 201
    return response.json()["data"]


async def create_instance(api, client_id, template_id, headers=None, **overrides):
    response = await api.post(
        f"{API}/clients/{client_id}/policy-instances", json=terms_body(template_id, **overrides), headers=headers
    )
    assert response.status_code == 201, response.json()
    return response.json()["data"]


def field_errors(body):
    return {item["field"]: item["message"] for item in body["errors"]}


class TestHealth:
    async def test_health(self, api):
        response = await api.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "env": "test", "phase": "migration"}


class TestTemplates:
    async def test_create_returns_envelope(self, api):
        response = await api.post(f"{API}/policy-templates", json=template_body(description="Whole life"))

        body = response.json()
        assert response.status_code == 201
        assert body["success"] is True
        assert body["message"] == "Policy template created successfully"
        assert body["data"]["policyNumber"] == "POL-2024-001"
        assert body["data"]["description"] == "Whole life"
        assert "warnings" not in body

    async def test_warnings_are_listed(self, api):
        response = await api.post(f"{API}/policy-templates", json=template_body("TEST-123"))

        assert response.status_code == 201
        assert [w["field"] for w in response.json()["warnings"]] == ["policyNumber"]

    async def test_case_insensitive_duplicate_is_409(self, api):
        await create_template(api, "POL-2024-001")

        response = await api.post(f"{API}/policy-templates", json=template_body("pol-2024-001"))

        body = response.json()
        assert response.status_code == 409
        assert body["success"] is False
        assert body["error"] == "Conflict"
        assert list(field_errors(body)) == ["policyNumber"]

    async def test_rule_violations_are_400_per_field(self, api):
        response = await api.post(f"{API}/policy-templates", json={"policyNumber": "AB", "policyType": "Pet"})

        body = response.json()
        assert response.status_code == 400
        assert body["error"] == "ValidationError"
        assert set(field_errors(body)) == {"policyNumber", "policyType", "provider"}

    async def test_malformed_request_uses_the_same_shape(self, api):
        bad_limit = await api.get(f"{API}/policy-templates", params={"limit": 0})
        bad_id = await api.get(f"{API}/policy-templates/not-a-uuid")

        assert bad_limit.status_code == 400
        assert list(field_errors(bad_limit.json())) == ["limit"]
        assert bad_id.status_code == 400
        assert list(field_errors(bad_id.json())) == ["template_id"]

    async def test_missing_template_is_404(self, api):
        response = await api.get(f"{API}/policy-templates/00000000-0000-0000-0000-000000000000")

        body = response.json()
        assert response.status_code == 404
        assert body["error"] == "NotFound"
        assert body["details"]["resource"] == "Policy template"

    async def test_listing_search_and_check_number(self, api):
        await create_template(api, "LIFE-100")
        await create_template(api, "AUTO-9", policyType="Auto", provider="Road Mutual")

        listing = (await api.get(f"{API}/policy-templates", params={"policyTypes": "Auto"})).json()["data"]
        search = (await api.get(f"{API}/policy-templates/search", params={"q": "life"})).json()["data"]
        check = (await api.get(f"{API}/policy-templates/check-number", params={"policyNumber": "life-100"})).json()

        assert [t["policyNumber"] for t in listing["templates"]] == ["AUTO-9"]
        assert [t["policyNumber"] for t in search] == ["LIFE-100"]
        assert check["data"]["available"] is False

    async def test_update_and_cascade_delete(self, api):
        template = await create_template(api)
        await create_instance(api, "client-a", template["id"])
        await create_instance(api, "client-b", template["id"])

        updated = await api.put(f"{API}/policy-templates/{template['id']}", json={"provider": "Zenith Assurance"})
        deleted = await api.delete(f"{API}/policy-templates/{template['id']}")
        remaining = await api.get(f"{API}/clients/client-a/policy-instances")

        assert updated.json()["data"]["provider"] == "Zenith Assurance"
        assert deleted.json()["data"] == {"deletedInstances": 2, "affectedClients": ["client-a", "client-b"]}
        assert remaining.json()["data"] == []

    async def test_unexpected_failure_is_500(self, api):
        with patch.object(TemplateStore, "stats", AsyncMock(side_effect=RuntimeError("boom"))):
            response = await api.get(f"{API}/policy-templates/stats")

        body = response.json()
        assert response.status_code == 500
        assert body["error"] == "InternalError"
        assert body["message"] == "An unexpected error occurred"


class TestInstances:
    async def test_create_for_client(self, api):
        template = await create_template(api)

        data = await create_instance(api, "client-a", template["id"], expiryDate=None, durationMonths=12)

        assert data["expiryDate"] == "2026-01-01"
        assert data["displayStatus"] == "Active"
        assert data["template"]["policyNumber"] == "POL-2024-001"

    async def test_commission_above_premium(self, api):
        template = await create_template(api)

        response = await api.post(
            f"{API}/clients/client-a/policy-instances",
            json=terms_body(template["id"], premiumAmount=500, commissionAmount=600),
        )

        assert response.status_code == 400
        assert field_errors(response.json()) == {"commissionAmount": "Commission cannot be greater than premium amount"}

    async def test_second_association_is_409(self, api):
        template = await create_template(api)
        await create_instance(api, "client-a", template["id"])

        response = await api.post(f"{API}/clients/client-a/policy-instances", json=terms_body(template["id"]))

        assert response.status_code == 409

    async def test_status_change_and_stats(self, api):
        template = await create_template(api)
        instance = await create_instance(api, "client-a", template["id"])

        response = await api.patch(
            f"{API}/policy-instances/{instance['id']}/status", json={"status": "Cancelled", "reason": "Client request"}
        )
        stats = (await api.get(f"{API}/clients/client-a/policy-stats")).json()["data"]

        assert response.json()["message"] == "Policy status set to Cancelled"
        assert response.json()["data"]["displayStatus"] == "Cancelled"
        assert stats["cancelledPolicies"] == 1

    async def test_calculate_expiry(self, api):
        response = await api.post(
            f"{API}/policy-instances/calculate-expiry", json={"startDate": "2025-01-31", "durationMonths": 1}
        )

        data = response.json()["data"]
        assert data["expiryDate"] == "2025-02-28"
        assert data["displayStatus"] == "Expired"

    async def test_validate_association(self, api):
        template = await create_template(api)

        good = await api.post(
            f"{API}/policy-instances/validate-association", json={"clientId": "client-a", "templateId": template["id"]}
        )
        bad = await api.post(
            f"{API}/policy-instances/validate-association", json={"clientId": "client-zz", "templateId": template["id"]}
        )

        assert good.json()["data"]["valid"] is True
        assert bad.json()["data"]["errors"] == {"clientId": "Client not found"}

    async def test_actor_header_is_recorded(self, api):
        template = await create_template(api)
        await create_instance(api, "client-a", template["id"], headers={"X-Actor-Id": "agent-42"})

        log = (await api.get(f"{API}/audit/clients/client-a")).json()["data"]

        assert [(e["action"], e["actorId"]) for e in log["entries"]] == [("CREATE", "agent-42")]


class TestExpiryEndpoints:
    async def test_warnings_summary_and_sweep(self, api):
        soon = await create_template(api, "POL-SOON")
        lapsed = await create_template(api, "POL-LAPSED")
        await create_instance(api, "client-a", soon["id"], expiryDate=(TODAY + timedelta(days=5)).isoformat())
        await create_instance(api, "client-b", lapsed["id"], expiryDate="2025-06-01")

        warnings = (await api.get(f"{API}/policy-templates/expiry/warnings")).json()["data"]
        summary = (await api.get(f"{API}/policy-templates/expiry/summary")).json()["data"]
        sweep = await api.post(f"{API}/policy-templates/expiry/update-expired")
        again = await api.post(f"{API}/policy-templates/expiry/update-expired")

        assert warnings["counts"] == {"critical": 1, "warning": 0, "info": 0}
        assert summary["lapsedAwaitingSweep"] == 1
        assert sweep.json()["message"] == "1 policies marked as expired"
        assert again.json()["data"]["updated"] == 0


class TestPhaseRouting:
    async def test_preparation_writes_legacy(self, api, api_config):
        api_config["config"] = phase_config(MigrationPhase.PREPARATION)

        created = await api.post(f"{API}/policies", json=policy_body())
        config = (await api.get(f"{API}/policies/config")).json()["data"]

        assert created.status_code == 201
        policy = created.json()["data"]
        assert policy["source"] == "legacy"
        assert policy["id"].isdigit()
        assert config["strategy"] == "legacy_only"

        fetched = await api.get(f"{API}/policies/{policy['id']}")
        deleted = await api.delete(f"{API}/policies/{policy['id']}")
        assert fetched.json()["data"]["policyNumber"] == "POL-2024-001"
        assert deleted.status_code == 200

    async def test_migration_phase_writes_templates(self, api):
        created = await api.post(f"{API}/policies", json=policy_body())
        duplicate = await api.post(f"{API}/policies", json=policy_body())

        assert created.json()["data"]["source"] == "template"
        assert duplicate.status_code == 409

    async def test_transition_migrates_on_read(self, api, api_config, add_legacy, scheduled_jobs):
        api_config["config"] = phase_config(MigrationPhase.TRANSITION)
        [legacy_id] = await add_legacy(legacy_fields("client-a", "LEG-001"))

        first = (await api.get(f"{API}/clients/client-a/policies")).json()["data"]
        assert [(p["source"], p["legacyId"]) for p in first] == [("legacy", legacy_id)]
        assert len(scheduled_jobs.jobs) == 1

        await scheduled_jobs.run_all()

        second = (await api.get(f"{API}/clients/client-a/policies")).json()["data"]
        assert [(p["source"], p["policyNumber"]) for p in second] == [("template", "LEG-001")]

    async def test_complete_phase_hides_legacy(self, api, api_config, add_legacy):
        api_config["config"] = phase_config(MigrationPhase.COMPLETE)
        [legacy_id] = await add_legacy(legacy_fields("client-a", "LEG-001"))

        listing = (await api.get(f"{API}/policies", params={"clientId": "client-a"})).json()["data"]
        response = await api.get(f"{API}/policies/{legacy_id}")

        assert listing["policies"] == []
        assert response.status_code == 404


class TestMigrationEndpoints:
    async def test_preflight_inline_run_verify_and_rollback(self, api, add_legacy):
        await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-b", "LEG-002"))

        preflight = (await api.get(f"{API}/migration/preflight")).json()["data"]
        run = await api.post(f"{API}/migration/runs", json={"inline": True, "batchSize": 1})
        verify = (await api.get(f"{API}/migration/verify")).json()["data"]
        status = (await api.get(f"{API}/migration/status")).json()["data"]

        assert preflight["convertible"] == 2
        assert run.status_code == 200
        result = run.json()["data"]
        assert result["status"] == "COMPLETED"
        assert len(result["batches"]) == 2
        assert verify["healthy"] is True
        assert status["legacyRemaining"] == 0

        rollback = await api.post(f"{API}/migration/runs/{result['id']}/rollback")

        assert rollback.json()["message"] == "Restored 2 legacy policies"
        after = (await api.get(f"{API}/migration/status")).json()["data"]
        assert after["legacyRemaining"] == 2

    async def test_queued_run(self, api):
        with patch("app.tasks.migration_tasks.run_migration.delay") as delay:
            response = await api.post(f"{API}/migration/runs", json={}, headers={"X-Actor-Id": "ops"})

        run = response.json()["data"]
        assert response.status_code == 202
        assert run["status"] == "PENDING"
        delay.assert_called_once_with(run["id"], "ops")

        fetched = await api.get(f"{API}/migration/runs/{run['id']}")
        cancelled = await api.post(f"{API}/migration/runs/{run['id']}/cancel")
        assert fetched.json()["data"]["id"] == run["id"]
        assert cancelled.json()["data"]["cancelRequested"] is True

    async def test_run_refused_before_templates_exist(self, api, api_config):
        api_config["config"] = phase_config(MigrationPhase.PREPARATION)

        response = await api.post(f"{API}/migration/runs", json={"inline": True})

        assert response.status_code == 409
        assert response.json()["error"] == "MigrationError"


class TestAuditEndpoints:
    async def test_report_requires_ordered_dates(self, api):
        response = await api.get(f"{API}/audit/report", params={"startDate": "2025-06-10", "endDate": "2025-06-01"})

        assert response.status_code == 400
        assert list(field_errors(response.json())) == ["endDate"]

    async def test_report_requires_dates(self, api):
        response = await api.get(f"{API}/audit/report")

        assert response.status_code == 400
        assert set(field_errors(response.json())) == {"startDate", "endDate"}

    async def test_client_stats(self, api):
        template = await create_template(api)
        await create_instance(api, "client-a", template["id"])

        stats = (await api.get(f"{API}/audit/clients/client-a/stats")).json()["data"]

        assert stats["totalEntries"] == 1
        assert stats["byAction"] == {"CREATE": 1}
