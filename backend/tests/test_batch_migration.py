"""Batch migration engine, rollback and pre/post-migration checks."""

import uuid
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.constants import MigrationPhase
from app.core.errors import ConflictError, MigrationError, NotFoundError
from app.db.models.audit_log import AuditLog
from app.migration import checks, rollback
from app.migration import engine as engine_module
from app.migration.engine import MigrationEngine
from app.repositories import legacy_policies as legacy_repository
from app.repositories import migration_runs as run_repository
from app.repositories import policy_instances as instance_repository
from app.repositories import policy_templates as template_repository

from conftest import TODAY, legacy_fields, phase_config

FAR_FUTURE = datetime(2099, 1, 1, tzinfo=timezone.utc)


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def make_engine(session_factory, fake_sleep):
    def _make(phase=MigrationPhase.MIGRATION, config=None, **options):
        return MigrationEngine(
            session_factory,
            config or phase_config(phase),
            actor_id="operator",
            today=TODAY,
            sleep=fake_sleep,
            **options,
        )

    return _make


async def start(engine, **options):
    run = await engine.create_run(**options)
    return uuid.UUID(run["id"])


async def count(session_factory, statement):
    async with session_factory() as db:
        return (await db.execute(statement)).scalar_one()


class TestRunLifecycle:
    async def test_mixed_outcomes(self, clients, add_legacy, make_engine, session_factory):
        ids = await add_legacy(
            legacy_fields("client-a", "LEG-001"),
            legacy_fields("client-b", "LEG-001"),
            legacy_fields("client-a", "leg-001"),
            legacy_fields("client-zz", "LEG-004"),
            legacy_fields("client-c", "LEG-005", commission_amount=Decimal("5000.00")),
        )
        engine = make_engine()
        run_id = await start(engine, batch_size=2)

        result = await engine.run(run_id)

        run = result.run
        assert result.status == "PARTIALLY_COMPLETED"
        assert len(result.batches) == 3
        assert run["totalRead"] == 5
        assert run["converted"] == 2
        assert run["duplicates"] == 1
        assert run["skipped"] == 2
        assert run["failed"] == 0
        assert run["templatesCreated"] == 1
        assert run["instancesCreated"] == 2
        assert run["batchesCompleted"] == 3
        assert run["highWaterMark"] == ids[-1]
        assert run["skippedReasons"][str(ids[3])] == "Client client-zz not found"
        assert "commissionAmount" in run["skippedReasons"][str(ids[4])]

        async with session_factory() as db:
            assert sorted(await legacy_repository.existing_ids(db, ids)) == [ids[3], ids[4]]
            assert await template_repository.count_templates(db) == 1
            assert await run_repository.count_backups(db) == 3
        batch_audits = await count(
            session_factory,
            select(func.count(AuditLog.id)).where(AuditLog.action == "MIGRATE", AuditLog.entity_type == "MigrationBatch"),
        )
        assert batch_audits == 3

    async def test_clean_run_completes(self, clients, add_legacy, make_engine, session_factory):
        await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-b", "LEG-002"))
        engine = make_engine()

        result = await engine.run(await start(engine))

        assert result.status == "COMPLETED"
        assert result.run["converted"] == 2
        assert result.run["completedAt"] is not None
        assert result.batches[0].attempts == 1
        async with session_factory() as db:
            report = await checks.verify_migration_integrity(db)
        assert report["healthy"] is True
        assert report["legacyRemaining"] == 0

    async def test_dry_run_writes_nothing(self, clients, add_legacy, make_engine, session_factory):
        await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-b", "LEG-002"))
        engine = make_engine()

        result = await engine.run(await start(engine, dry_run=True))

        assert result.status == "COMPLETED"
        assert result.run["dryRun"] is True
        assert result.run["converted"] == 2
        async with session_factory() as db:
            assert await legacy_repository.count_legacy(db) == 2
            assert await template_repository.count_templates(db) == 0
            assert await run_repository.count_backups(db) == 0

    async def test_empty_legacy_table(self, clients, make_engine):
        engine = make_engine()
        result = await engine.run(await start(engine))
        assert result.status == "COMPLETED"
        assert result.batches == []

    async def test_refused_while_templates_are_off(self, make_engine):
        engine = make_engine(MigrationPhase.PREPARATION)

        with pytest.raises(MigrationError) as exc_info:
            await engine.create_run()
        assert exc_info.value.status_code == 409

    async def test_one_active_run_at_a_time(self, make_engine):
        engine = make_engine()
        await engine.create_run()

        with pytest.raises(ConflictError):
            await engine.create_run()

    async def test_pending_run_blocks_new_runs_until_finished(self, clients, make_engine, session_factory):
        engine = make_engine()
        first = await engine.create_run()

        with pytest.raises(ConflictError) as exc_info:
            await engine.create_run(dry_run=True)
        assert first["id"] in exc_info.value.message

        async with session_factory() as db:
            active = await run_repository.find_active_run(db)
        assert str(active.id) == first["id"]

        await engine.run(uuid.UUID(first["id"]))
        second = await engine.create_run()
        assert second["id"] != first["id"]

    async def test_batch_size_defaults_to_phase(self, make_engine):
        run = await make_engine(MigrationPhase.TRANSITION).create_run()
        assert run["batchSize"] == 100
        assert run["status"] == "PENDING"
        assert run["phase"] == "transition"

    async def test_finished_run_cannot_rerun(self, clients, make_engine):
        engine = make_engine()
        run_id = await start(engine)
        await engine.run(run_id)

        with pytest.raises(ConflictError):
            await engine.run(run_id)

    async def test_unknown_run(self, make_engine):
        with pytest.raises(NotFoundError):
            await make_engine().get_run(uuid.uuid4())


class TestRetries:
    async def test_transient_failure_is_retried_with_backoff(
        self, clients, add_legacy, make_engine, fake_sleep, monkeypatch
    ):
        await add_legacy(legacy_fields("client-a", "LEG-001"))
        real_convert = engine_module.convert_legacy_record
        calls = []

        async def flaky(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await real_convert(*args, **kwargs)

        monkeypatch.setattr(engine_module, "convert_legacy_record", flaky)
        engine = make_engine()

        result = await engine.run(await start(engine))

        assert result.status == "COMPLETED"
        assert result.batches[0].attempts == 2
        assert fake_sleep.delays == [1.0]
        assert result.run["converted"] == 1

    async def test_exhausted_retries_fail_the_batch_and_move_on(
        self, clients, add_legacy, make_engine, fake_sleep, monkeypatch, session_factory
    ):
        ids = await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-b", "LEG-002"))
        real_convert = engine_module.convert_legacy_record

        async def stuck_on_first(db, legacy, *args, **kwargs):
            if legacy.id == ids[0]:
                raise TimeoutError()
            return await real_convert(db, legacy, *args, **kwargs)

        monkeypatch.setattr(engine_module, "convert_legacy_record", stuck_on_first)
        engine = make_engine()

        result = await engine.run(await start(engine, batch_size=1))

        assert result.status == "PARTIALLY_COMPLETED"
        assert [b.attempts for b in result.batches] == [3, 1]
        assert fake_sleep.delays == [1.0, 2.0]
        assert result.run["failed"] == 1
        assert result.run["failedRecordIds"] == [ids[0]]
        assert result.run["converted"] == 1
        assert result.run["highWaterMark"] == ids[1]
        assert result.batches[0].to_dict()["error"] == "TimeoutError"
        async with session_factory() as db:
            assert await legacy_repository.existing_ids(db, ids) == {ids[0]}

    async def test_non_transient_failure_is_not_retried(
        self, clients, add_legacy, make_engine, fake_sleep, monkeypatch
    ):
        await add_legacy(legacy_fields("client-a", "LEG-001"))

        async def broken(*args, **kwargs):
            raise ValueError("bad row")

        monkeypatch.setattr(engine_module, "convert_legacy_record", broken)
        engine = make_engine()

        result = await engine.run(await start(engine))

        assert result.batches[0].attempts == 1
        assert fake_sleep.delays == []
        assert result.run["failed"] == 1


class TestCancelAndHalt:
    async def test_request_cancel_flags_active_run(self, make_engine):
        engine = make_engine()
        run_id = await start(engine)

        run = await engine.request_cancel(run_id)

        assert run["cancelRequested"] is True
        assert run["status"] == "PENDING"

    async def test_cancel_between_batches_then_resume(
        self, clients, add_legacy, make_engine, monkeypatch, session_factory
    ):
        ids = await add_legacy(
            legacy_fields("client-a", "LEG-001"),
            legacy_fields("client-b", "LEG-002"),
            legacy_fields("client-c", "LEG-003"),
        )
        engine = make_engine()
        run_id = await start(engine, batch_size=1)
        checked = []

        async def cancel_after_first_batch(db, requested_run_id):
            checked.append(requested_run_id)
            return len(checked) > 1

        with monkeypatch.context() as patched:
            patched.setattr(run_repository, "is_cancel_requested", cancel_after_first_batch)
            stopped = await engine.run(run_id)

        assert checked == [run_id, run_id]
        assert stopped.status == "CANCELLED"
        assert stopped.run["highWaterMark"] == ids[0]
        assert stopped.run["batchesCompleted"] == 1

        resumed = await engine.run(run_id)

        assert resumed.status == "COMPLETED"
        assert resumed.run["converted"] == 3
        assert resumed.run["batchesCompleted"] == 3
        assert [b.batch_number for b in resumed.batches] == [2, 3]
        async with session_factory() as db:
            assert await legacy_repository.count_legacy(db) == 0

    async def test_cancel_of_finished_run_is_ignored(self, clients, make_engine):
        engine = make_engine()
        run_id = await start(engine)
        await engine.run(run_id)

        run = await engine.request_cancel(run_id)

        assert run["status"] == "COMPLETED"
        assert run["cancelRequested"] is False

    async def test_corrupting_batch_halts_when_rollback_disabled(
        self, clients, add_legacy, make_engine, monkeypatch
    ):
        ids = await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-b", "LEG-002"))

        async def corrupted(db, results):
            return [f"Legacy record {results[0].legacy_id} still present after conversion"]

        monkeypatch.setattr(checks, "verify_batch", corrupted)
        engine = make_engine(MigrationPhase.COMPLETE)

        result = await engine.run(await start(engine, batch_size=1))

        assert result.status == "FAILED"
        assert len(result.batches) == 1
        assert result.run["highWaterMark"] == 0
        assert result.run["batchesCompleted"] == 0
        assert result.run["errorMessage"] == f"Legacy record {ids[0]} still present after conversion"
        assert result.to_dict()["halt"] == {
            "message": f"Legacy record {ids[0]} still present after conversion",
            "failedRecordIds": [ids[0]],
            "highWaterMark": 0,
        }

    async def test_corrupting_batch_is_recorded_when_rollback_enabled(
        self, clients, add_legacy, make_engine, monkeypatch
    ):
        ids = await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-b", "LEG-002"))
        seen = []

        async def first_batch_corrupted(db, results):
            seen.append(results)
            return ["Instance missing"] if len(seen) == 1 else []

        monkeypatch.setattr(checks, "verify_batch", first_batch_corrupted)
        engine = make_engine()

        result = await engine.run(await start(engine, batch_size=1))

        assert result.status == "PARTIALLY_COMPLETED"
        assert result.run["highWaterMark"] == ids[1]
        assert result.run["errorMessage"] == "Instance missing"


class TestRollback:
    async def migrate(self, add_legacy, make_engine):
        ids = await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-b", "LEG-001"))
        engine = make_engine()
        run_id = await start(engine)
        await engine.run(run_id)
        return ids, run_id

    async def test_rollback_run_restores_everything(self, clients, add_legacy, make_engine, session_factory):
        ids, run_id = await self.migrate(add_legacy, make_engine)
        config = phase_config(MigrationPhase.MIGRATION)

        async with session_factory() as db:
            result = await rollback.rollback_run(db, run_id, config, actor_id="operator")
            await db.commit()

        assert result["runId"] == str(run_id)
        assert [r["legacyId"] for r in result["restored"]] == [ids[1], ids[0]]
        assert [r["templateDeleted"] for r in result["restored"]] == [False, True]
        assert all(r["instanceDeleted"] for r in result["restored"])
        async with session_factory() as db:
            assert await legacy_repository.existing_ids(db, ids) == set(ids)
            assert await template_repository.count_templates(db) == 0
            assert await run_repository.count_backups(db) == 0
            restored = await legacy_repository.get_legacy(db, ids[0])
            assert restored.premium_amount == Decimal("1000.00")
            assert restored.start_date == date(2025, 1, 1)
        rollbacks = await count(session_factory, select(func.count(AuditLog.id)).where(AuditLog.action == "ROLLBACK"))
        assert rollbacks == 2

    async def test_rollback_single_backup_keeps_shared_template(self, clients, add_legacy, make_engine, session_factory):
        ids, run_id = await self.migrate(add_legacy, make_engine)
        config = phase_config(MigrationPhase.MIGRATION)

        async with session_factory() as db:
            backups = await run_repository.list_backups_for_run(db, run_id)
            first = next(b for b in backups if b.legacy_policy_id == ids[0])
            result = await rollback.rollback_backup(db, first.id, config)
            await db.commit()

        assert result == {
            "backupId": str(first.id),
            "legacyId": ids[0],
            "instanceDeleted": True,
            "templateDeleted": False,
        }
        async with session_factory() as db:
            assert await template_repository.count_templates(db) == 1
            assert await legacy_repository.existing_ids(db, ids) == {ids[0]}

        async with session_factory() as db:
            with pytest.raises(ConflictError) as exc_info:
                await rollback.rollback_backup(db, first.id, config)
        assert exc_info.value.message == "Backup has already been restored"

    async def test_expired_backups_are_not_restored(self, clients, add_legacy, make_engine, session_factory):
        ids, run_id = await self.migrate(add_legacy, make_engine)
        config = phase_config(MigrationPhase.MIGRATION)

        async with session_factory() as db:
            result = await rollback.rollback_run(db, run_id, config, now=FAR_FUTURE)
            backup = (await run_repository.list_backups_for_run(db, run_id))[0]
            with pytest.raises(ConflictError) as exc_info:
                await rollback.rollback_backup(db, backup.id, config, now=FAR_FUTURE)

        assert result["restored"] == []
        assert len(result["expiredBackups"]) == 2
        assert exc_info.value.message == "Backup has expired"

    async def test_rollback_disabled(self, session_factory):
        config = phase_config(MigrationPhase.COMPLETE)
        async with session_factory() as db:
            with pytest.raises(MigrationError) as exc_info:
                await rollback.rollback_run(db, uuid.uuid4(), config)
        assert exc_info.value.status_code == 409

    async def test_unknown_backup(self, session_factory):
        async with session_factory() as db:
            with pytest.raises(NotFoundError):
                await rollback.rollback_backup(db, uuid.uuid4(), phase_config(MigrationPhase.MIGRATION))

    async def test_no_backups_without_rollback(self, clients, add_legacy, make_engine, session_factory):
        await add_legacy(legacy_fields("client-a", "LEG-001"))
        engine = make_engine(MigrationPhase.COMPLETE)
        await engine.run(await start(engine))

        async with session_factory() as db:
            assert await run_repository.count_backups(db) == 0
            assert await legacy_repository.count_legacy(db) == 0

    async def test_purge_expired_backups(self, clients, add_legacy, make_engine, session_factory):
        await self.migrate(add_legacy, make_engine)

        async with session_factory() as db:
            assert await rollback.purge_expired_backups(db) == 0
            assert await rollback.purge_expired_backups(db, now=FAR_FUTURE) == 2
            await db.commit()

        async with session_factory() as db:
            assert await run_repository.count_backups(db, restorable_only=False) == 0


class TestChecks:
    async def test_preflight(self, clients, add_legacy, session_factory):
        ids = await add_legacy(
            legacy_fields("client-a", "LEG-001"),
            legacy_fields("client-b", "LEG-001"),
            legacy_fields("client-zz", "LEG-003"),
            legacy_fields("client-a", "LEG-004", commission_amount=Decimal("5000.00")),
            legacy_fields("client-b", "LEG-005", provider=""),
            legacy_fields("client-c", "LEG-006", start_date=date(2025, 8, 1), expiry_date=date(2026, 8, 1)),
            legacy_fields("client-c", "LEG-007", premium_amount=Decimal("-5.00")),
        )

        async with session_factory() as db:
            report = await checks.preflight_check(db, phase_config(MigrationPhase.MIGRATION), today=TODAY)

        assert report["totalLegacyRecords"] == 7
        assert report["convertible"] == 3
        assert report["missingRequiredData"] == 1
        assert report["orphanedClientReferences"] == 1
        assert report["invalidRecords"] == 3
        assert report["duplicatePolicyNumbers"] == 1
        assert report["templatesToCreate"] == 3
        assert report["futureStartDates"] == 1
        assert report["negativeAmounts"] == 1
        assert report["ready"] is False
        assert report["phase"] == "migration"
        assert report["samples"]["orphanedClientReferences"] == [ids[2]]
        assert report["samples"]["duplicatePolicyNumbers"] == {"leg-001": [ids[0], ids[1]]}
        assert set(report["samples"]["invalidRecords"]) == {str(ids[3]), str(ids[4]), str(ids[6])}

    async def test_preflight_counts_existing_templates(self, clients, add_legacy, make_engine, session_factory):
        await add_legacy(legacy_fields("client-a", "LEG-001"))
        engine = make_engine()
        await engine.run(await start(engine))
        await add_legacy(legacy_fields("client-b", "LEG-001"))

        async with session_factory() as db:
            report = await checks.preflight_check(db, phase_config(MigrationPhase.MIGRATION), today=TODAY)

        assert report["templatesToCreate"] == 0
        assert report["ready"] is True

    async def test_verify_detects_broken_instances(self, clients, add_legacy, make_engine, session_factory):
        await add_legacy(legacy_fields("client-a", "LEG-001"))
        engine = make_engine()
        await engine.run(await start(engine))

        async with session_factory() as db:
            template = await template_repository.get_by_number_key(db, "leg-001")
            await instance_repository.insert_instance(
                db,
                template_id=template.id,
                client_id="client-b",
                premium_amount=Decimal("100.00"),
                commission_amount=Decimal("200.00"),
                start_date=date(2025, 1, 1),
                expiry_date=date(2024, 1, 1),
                status="Active",
            )
            await db.commit()

        async with session_factory() as db:
            report = await checks.verify_migration_integrity(db)

        assert report["healthy"] is False
        assert len(report["invariantViolations"]) == 1
        assert report["orphanedInstances"] == []
        assert report["duplicateTemplates"] == []

    async def test_migration_status(self, clients, add_legacy, make_engine, session_factory):
        await add_legacy(legacy_fields("client-a", "LEG-001"), legacy_fields("client-zz", "LEG-002"))
        engine = make_engine()
        await engine.run(await start(engine))

        async with session_factory() as db:
            status = await checks.migration_status(db, phase_config(MigrationPhase.MIGRATION))

        assert status["legacyRemaining"] == 1
        assert status["templates"] == 1
        assert status["restorableBackups"] == 1
        assert status["config"]["phase"] == "migration"
        assert [run["status"] for run in status["recentRuns"]] == ["PARTIALLY_COMPLETED"]

    async def test_verify_batch_flags_lingering_rows(self, add_legacy, session_factory):
        from app.core.constants import ConversionOutcome
        from app.migration.converter import ConversionResult

        [legacy_id] = await add_legacy(legacy_fields("client-a", "LEG-001"))
        claimed = ConversionResult(legacy_id, ConversionOutcome.CONVERTED, instance_id=uuid.uuid4())

        async with session_factory() as db:
            problems = await checks.verify_batch(db, [claimed])

        assert problems == [
            f"Legacy record {legacy_id} still present after conversion",
            f"Instance {claimed.instance_id} for legacy record {legacy_id} is missing",
        ]
