"""Policy Instance Store: associations, partial updates, status changes and client aggregates."""

import uuid
from datetime import date, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.db.models.audit_log import AuditLog
from app.policies.instance_store import DUPLICATE_ASSOCIATION_MESSAGE, InstanceStore
from app.policies.template_store import TemplateStore
from app.repositories import policy_instances as instance_repository

from conftest import TODAY


def terms(**overrides):
    data = {
        "premiumAmount": "1000.00",
        "commissionAmount": "100.00",
        "startDate": "2025-01-01",
        "expiryDate": "2026-01-01",
    }
    data.update(overrides)
    return data


@pytest.fixture
def store(session):
    return InstanceStore(session, actor_id="agent-7", today=TODAY)


@pytest.fixture
async def template(clients, session):
    created, _ = await TemplateStore(session, today=TODAY).create(
        {"policyNumber": "POL-2024-001", "policyType": "Life", "provider": "Acme Life"}
    )
    return created


async def instance_audit(session):
    result = await session.execute(
        select(AuditLog).where(AuditLog.entity_type == "PolicyInstance").order_by(AuditLog.id)
    )
    return list(result.scalars().all())


class TestCreate:
    async def test_create_instance(self, template, store, session):
        instance, returned_template, warnings = await store.create("client-a", template.id, terms())

        assert instance.status == "Active"
        assert instance.client_id == "client-a"
        assert returned_template.id == template.id
        assert warnings == {}

        entries = await instance_audit(session)
        assert [(e.action, e.client_id, e.actor_id) for e in entries] == [("CREATE", "client-a", "agent-7")]
        assert entries[0].details["premiumAmount"] == "1000.00"

    async def test_expiry_derived_from_duration(self, template, store):
        instance, _, _ = await store.create(
            "client-a", template.id, terms(expiryDate=None, startDate="2025-01-31", durationMonths=1)
        )
        assert instance.expiry_date == date(2025, 2, 28)
        assert instance.duration_months == 1

    async def test_commission_above_premium(self, template, store, session):
        with pytest.raises(ValidationError) as exc_info:
            await store.create("client-a", template.id, terms(premiumAmount=500, commissionAmount=600))

        assert exc_info.value.errors == {"commissionAmount": "Commission cannot be greater than premium amount"}
        assert await instance_audit(session) == []

    async def test_second_association_conflicts(self, template, store):
        await store.create("client-a", template.id, terms())

        with pytest.raises(ConflictError) as exc_info:
            await store.create("client-a", template.id, terms(premiumAmount="2000.00"))

        assert exc_info.value.errors == {"templateId": DUPLICATE_ASSOCIATION_MESSAGE}

    async def test_association_race_rolls_back_only_the_insert(self, template, store, session):
        await store.create("client-a", template.id, terms())

        with patch.object(instance_repository, "find_for_client_template", AsyncMock(return_value=None)):
            with pytest.raises(ConflictError) as exc_info:
                await store.create("client-a", template.id, terms(premiumAmount="2000.00"))
        assert exc_info.value.errors == {"templateId": DUPLICATE_ASSOCIATION_MESSAGE}

        other, _, _ = await store.create("client-b", template.id, terms())
        await session.commit()

        assert [e.action for e in await instance_audit(session)] == ["CREATE", "CREATE"]
        assert (await store.get(other.id))["clientId"] == "client-b"

    async def test_same_template_for_another_client(self, template, store):
        await store.create("client-a", template.id, terms())
        instance, _, _ = await store.create("client-b", template.id, terms())
        assert instance.client_id == "client-b"

    async def test_missing_template(self, clients, store):
        with pytest.raises(NotFoundError) as exc_info:
            await store.create("client-a", uuid.uuid4(), terms())
        assert exc_info.value.resource == "Policy template"

    async def test_missing_client(self, template, store):
        with pytest.raises(NotFoundError) as exc_info:
            await store.create("client-zz", template.id, terms())
        assert exc_info.value.resource == "Client"

    async def test_malformed_template_id(self, clients, store):
        with pytest.raises(ValidationError) as exc_info:
            await store.create("client-a", "not-a-uuid", terms())
        assert exc_info.value.errors["templateId"] == "Template ID must be a valid identifier"


class TestUpdate:
    async def test_premium_only_update_rechecks_stored_commission(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms(commissionAmount="300.00"))

        with pytest.raises(ValidationError) as exc_info:
            await store.update(instance.id, {"premiumAmount": "200.00"})

        assert exc_info.value.errors == {"commissionAmount": "Commission cannot be greater than premium amount"}

    async def test_partial_update_keeps_other_terms(self, template, store, session):
        instance, _, _ = await store.create("client-a", template.id, terms())

        updated, _, _ = await store.update(instance.id, {"premiumAmount": "1500.00"})

        assert str(updated.premium_amount) == "1500.00"
        assert str(updated.commission_amount) == "100.00"
        assert updated.expiry_date == date(2026, 1, 1)
        last = (await instance_audit(session))[-1]
        assert last.action == "UPDATE"
        assert last.details["changes"] == {"premiumAmount": {"old": "1000.00", "new": "1500.00"}}

    async def test_duration_change_rederives_expiry(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms(expiryDate=None, durationMonths=12))

        updated, _, _ = await store.update(instance.id, {"durationMonths": 6})

        assert updated.expiry_date == date(2025, 7, 1)

    async def test_start_change_rederives_expiry_from_duration(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms(expiryDate=None, durationMonths=12))

        updated, _, _ = await store.update(instance.id, {"startDate": "2025-02-01"})

        assert updated.expiry_date == date(2026, 2, 1)
        assert updated.duration_months == 12

    async def test_explicit_expiry_survives_later_start_change(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms(expiryDate=None, durationMonths=12))

        updated, _, _ = await store.update(instance.id, {"expiryDate": "2025-07-01"})
        assert updated.expiry_date == date(2025, 7, 1)
        assert updated.duration_months is None

        updated, _, _ = await store.update(instance.id, {"startDate": "2025-02-01"})
        assert updated.start_date == date(2025, 2, 1)
        assert updated.expiry_date == date(2025, 7, 1)

    async def test_stale_duration_does_not_override_stored_expiry(self, template, store, session):
        instance, _, _ = await store.create("client-a", template.id, terms(durationMonths=12, expiryDate="2025-09-01"))
        assert instance.duration_months == 12

        updated, _, _ = await store.update(instance.id, {"startDate": "2025-02-01"})

        assert updated.expiry_date == date(2025, 9, 1)
        assert updated.duration_months is None

    async def test_references_cannot_change(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms())

        with pytest.raises(ValidationError) as exc_info:
            await store.update(instance.id, {"clientId": "client-b"})
        assert "clientId" in exc_info.value.errors

    async def test_unchanged_reference_is_accepted(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms())
        updated, _, _ = await store.update(instance.id, {"clientId": "client-a", "commissionAmount": "50.00"})
        assert str(updated.commission_amount) == "50.00"

    async def test_old_start_date_is_not_rechecked_on_unrelated_update(self, clients, session):
        """Today-relative windows only apply to the fields being changed."""
        early = InstanceStore(session, today=date(2024, 1, 1))
        template, _ = await TemplateStore(session).create(
            {"policyNumber": "POL-OLD", "policyType": "Life", "provider": "Acme Life"}
        )
        instance, _, _ = await early.create("client-a", template.id, terms(startDate="2023-06-01", expiryDate="2024-06-01"))

        later = InstanceStore(session, today=TODAY)
        updated, _, _ = await later.update(instance.id, {"commissionAmount": "10.00"})

        assert updated.start_date == date(2023, 6, 1)

    async def test_missing_instance(self, clients, store):
        with pytest.raises(NotFoundError):
            await store.update(uuid.uuid4(), {"premiumAmount": "10.00"})


class TestStatus:
    async def test_status_change_is_audited(self, template, store, session):
        instance, _, _ = await store.create("client-a", template.id, terms())

        updated, _ = await store.update_status(instance.id, "cancelled", reason="Client request")

        assert updated.status == "Cancelled"
        last = (await instance_audit(session))[-1]
        assert last.action == "STATUS_CHANGE"
        assert last.details == {"from": "Active", "to": "Cancelled", "reason": "Client request"}

    async def test_same_status_is_a_no_op(self, template, store, session):
        instance, _, _ = await store.create("client-a", template.id, terms())
        await store.update_status(instance.id, "Active")
        assert [e.action for e in await instance_audit(session)] == ["CREATE"]

    async def test_unknown_status(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms())
        with pytest.raises(ValidationError) as exc_info:
            await store.update_status(instance.id, "Paused")
        assert "status" in exc_info.value.errors

    async def test_status_change_skips_date_rules(self, clients, session):
        early = InstanceStore(session, today=date(2024, 1, 1))
        template, _ = await TemplateStore(session).create(
            {"policyNumber": "POL-OLD", "policyType": "Life", "provider": "Acme Life"}
        )
        instance, _, _ = await early.create("client-a", template.id, terms(startDate="2023-06-01", expiryDate="2024-06-01"))

        updated, _ = await InstanceStore(session, today=date(2026, 1, 1)).update_status(instance.id, "Expired")

        assert updated.status == "Expired"


class TestReads:
    async def test_get_includes_template_and_display_status(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms(expiryDate=(TODAY + timedelta(days=10)).isoformat()))

        data = await store.get(instance.id)

        assert data["status"] == "Active"
        assert data["displayStatus"] == "ExpiringSoon"
        assert data["expiryWarning"] == "Expires in 10 days"
        assert data["daysUntilExpiry"] == 10
        assert data["premiumAmount"] == 1000.0
        assert data["template"]["policyNumber"] == "POL-2024-001"

    async def test_list_for_client(self, template, store, session):
        other, _ = await TemplateStore(session).create({"policyNumber": "HLTH-1", "policyType": "Health", "provider": "Care Plus"})
        await store.create("client-a", template.id, terms())
        await store.create("client-a", other.id, terms())
        await store.create("client-b", template.id, terms())

        everything = await store.list_for_client("client-a")
        health = await store.list_for_client("client-a", policy_type="Health")

        assert len(everything) == 2
        assert [p["template"]["policyNumber"] for p in health] == ["HLTH-1"]

    async def test_list_for_unknown_client(self, clients, store):
        with pytest.raises(NotFoundError):
            await store.list_for_client("client-zz")

    async def test_delete_leaves_template(self, template, store, session):
        instance, _, _ = await store.create("client-a", template.id, terms())

        await store.delete(instance.id)

        assert await store.list_for_client("client-a") == []
        assert await TemplateStore(session).get(template.id) is not None
        assert (await instance_audit(session))[-1].action == "DELETE"


class TestClientStats:
    async def test_stats_use_display_status(self, clients, store, session):
        templates = TemplateStore(session)
        numbers = ["LIFE-1", "LIFE-2", "LIFE-3", "LIFE-4"]
        created = [
            (await templates.create({"policyNumber": n, "policyType": "Life", "provider": "Acme Life"}))[0]
            for n in numbers
        ]
        await store.create("client-a", created[0].id, terms())
        await store.create("client-a", created[1].id, terms(expiryDate=(TODAY + timedelta(days=5)).isoformat()))
        # lapsed but not yet swept
        await store.create("client-a", created[2].id, terms(expiryDate="2025-06-01"))
        cancelled, _, _ = await store.create("client-a", created[3].id, terms())
        await store.update_status(cancelled.id, "Cancelled")

        stats = await store.stats_for_client("client-a")

        assert stats == {
            "totalPolicies": 4,
            "activePolicies": 2,
            "expiringSoonPolicies": 1,
            "expiredPolicies": 1,
            "cancelledPolicies": 1,
            "totalPremium": 4000.0,
            "totalCommission": 400.0,
            "activePremium": 2000.0,
            "activeCommission": 200.0,
        }


class TestValidateAssociation:
    async def test_valid(self, template, store):
        result = await store.validate_association("client-a", str(template.id))

        assert result["valid"] is True
        assert result["errors"] == {}
        assert result["template"]["policyNumber"] == "POL-2024-001"

    async def test_existing_association(self, template, store):
        await store.create("client-a", template.id, terms())

        result = await store.validate_association("client-a", template.id)

        assert result["valid"] is False
        assert result["errors"] == {"templateId": DUPLICATE_ASSOCIATION_MESSAGE}

    async def test_existing_association_excluded_when_editing(self, template, store):
        instance, _, _ = await store.create("client-a", template.id, terms())
        result = await store.validate_association("client-a", template.id, exclude_instance_id=instance.id)
        assert result["valid"] is True

    async def test_unknown_references(self, clients, store):
        result = await store.validate_association("client-zz", str(uuid.uuid4()))

        assert result["valid"] is False
        assert result["errors"] == {"templateId": "Policy template not found", "clientId": "Client not found"}
        assert result["template"] is None

    async def test_malformed_template_id(self, clients, store):
        result = await store.validate_association("client-a", "12345")
        assert result["errors"] == {"templateId": "Template ID must be a valid identifier"}
