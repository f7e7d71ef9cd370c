"""
Tests for the restore engine.

This module tests the restore state machine end to end against an
in-memory PostgreSQL server:
- A committed restore replaces production and keeps a pre-restore snapshot
- Failures before the swap leave production untouched
- Failures after the swap roll back from the snapshot when enabled
- Scratch databases never outlive a session
"""

import gzip
import io
import json
import tarfile
from unittest.mock import patch

import pytest

from apps.backups.artifacts import Tier, list_pre_restore_snapshots
from apps.backups.conftest import TEST_FERNET_KEY
from apps.backups.dump import create_artifact_file
from apps.backups.encryption import write_checksum_file
from apps.backups.exceptions import RestoreCancelled, RestoreError
from apps.backups.restore import RestoreEngine
from apps.backups.sessions import RestoreStatus, SessionStore

PRODUCTION_TABLES = ["customers", "orders", "products"]


@pytest.fixture
def backup_of_other_data(fake_server, make_backup):
    """An artifact holding different tables than production currently has."""
    fake_server.databases["shop"] = ["customers", "orders", "products", "invoices"]
    path = make_backup("daily")
    fake_server.databases["shop"] = list(PRODUCTION_TABLES)
    fake_server.calls.clear()
    return path


def scratch_databases(server):
    return [name for name in server.databases if name != "shop"]


class TestCommittedRestore:
    def test_restore_replaces_production(self, config, fake_server, backup_of_other_data):
        engine = RestoreEngine(config, server=fake_server)

        session = engine.run(str(backup_of_other_data), skip_confirmation=True)

        assert session.status == RestoreStatus.COMMITTED
        assert fake_server.databases["shop"] == ["customers", "orders", "products", "invoices"]
        assert scratch_databases(fake_server) == []
        assert [h["status"] for h in session.history] == [
            "pending",
            "snapshotting",
            "staging",
            "swapping",
            "verifying",
            "committed",
        ]

    def test_snapshot_is_kept_in_backup_root(self, config, fake_server, backup_of_other_data):
        session = RestoreEngine(config, server=fake_server).run(str(backup_of_other_data), skip_confirmation=True)

        snapshots = list_pre_restore_snapshots(config.backup_root)
        assert len(snapshots) == 1
        assert str(snapshots[0].path) == session.pre_restore_snapshot
        assert snapshots[0].checksum_path.is_file()

    def test_restore_by_timestamp(self, config, fake_server, backup_of_other_data):
        timestamp = backup_of_other_data.name.split("_", 1)[1][:15]

        session = RestoreEngine(config, server=fake_server).run(timestamp, skip_confirmation=True)

        assert session.status == RestoreStatus.COMMITTED
        assert session.target_artifact == str(backup_of_other_data)

    def test_encrypted_restore(self, encrypted_config, fake_server, make_backup):
        path = make_backup(key=TEST_FERNET_KEY)

        session = RestoreEngine(encrypted_config, server=fake_server).run(str(path), skip_confirmation=True)

        assert session.status == RestoreStatus.COMMITTED
        assert session.pre_restore_snapshot.endswith(".dump.tar.gz.enc")

    def test_confirmation_callback(self, config, fake_server, backup_of_other_data):
        seen = []

        def confirm(session):
            seen.append(session.status)
            return True

        RestoreEngine(config, server=fake_server, confirm=confirm).run(str(backup_of_other_data))

        assert seen == [RestoreStatus.SWAPPING]

    def test_session_record_is_persisted(self, config, fake_server, backup_of_other_data):
        session = RestoreEngine(config, server=fake_server).run(str(backup_of_other_data), skip_confirmation=True)

        stored = SessionStore(config.log_dir).load(session.id)
        assert stored.status == RestoreStatus.COMMITTED
        assert stored.scratch_database_name.startswith("shop_restore_")

    def test_verification_reports_are_written(self, config, fake_server, backup_of_other_data):
        RestoreEngine(config, server=fake_server).run(str(backup_of_other_data), skip_confirmation=True)

        reports = [json.loads(p.read_text()) for p in config.log_dir.glob("verification_report_*.json")]
        # One for the restore source, one for the pre-restore snapshot
        assert len(reports) == 2
        assert {r["mode"] for r in reports} == {"lightweight"}
        assert {r["overall_status"] for r in reports} == {"passed"}
        assert str(backup_of_other_data) in {r["reports"][0]["artifact"]["path"] for r in reports}

    def test_skip_snapshot_into_new_database(self, config, fake_server, backup_of_other_data):
        session = RestoreEngine(config, server=fake_server).run(
            str(backup_of_other_data),
            skip_confirmation=True,
            target_database="shop_copy",
            skip_snapshot=True,
        )

        assert session.status == RestoreStatus.COMMITTED
        assert session.snapshot_skipped is True
        assert session.pre_restore_snapshot is None
        assert fake_server.databases["shop_copy"] == ["customers", "orders", "products", "invoices"]
        assert fake_server.databases["shop"] == PRODUCTION_TABLES


class TestFailureBeforeSwap:
    def test_missing_artifact(self, config, fake_server):
        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run("20240101_000000", skip_confirmation=True)

        session = exc_info.value.session
        assert session.status == RestoreStatus.FAILED
        assert session.failed_step == "pending"
        assert "Backup not found" in session.error

    def test_undersized_artifact_refused(self, config, fake_server):
        path = config.tier_dir(Tier.DAILY) / "shop_20250102_020000.dump.tar.gz"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"\0" * 500)

        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(str(path), skip_confirmation=True)

        assert exc_info.value.session.failed_step == "pending"
        mutations = {"create_database", "drop_database", "rename_database", "restore", "dump"}
        assert not [c for c in fake_server.calls if c[0] in mutations]
        assert fake_server.databases == {"shop": PRODUCTION_TABLES}

    def test_staging_failure_leaves_production_untouched(self, config, fake_server, backup_of_other_data):
        fake_server.fail_on("restore", RuntimeError("pg_restore: out of disk"), database="shop_restore")

        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(
                str(backup_of_other_data), rollback_enabled=True, skip_confirmation=True
            )

        session = exc_info.value.session
        assert session.status == RestoreStatus.FAILED
        assert session.failed_step == "staging"
        assert fake_server.databases == {"shop": PRODUCTION_TABLES}
        assert not any(c[0] == "rename_database" for c in fake_server.calls)
        # The snapshot is kept for the operator even though it was not needed
        assert len(list_pre_restore_snapshots(config.backup_root)) == 1

    def test_truncated_dump_fails_in_staging(self, config, fake_server, backup_of_other_data):
        # Valid gzip around a tar archive that ends in the middle of a member
        archive = gzip.decompress(backup_of_other_data.read_bytes())
        with tarfile.open(fileobj=io.BytesIO(archive)) as tar:
            first_data_member = next(m for m in tar.getmembers() if m.isfile())
        cut = first_data_member.offset_data + first_data_member.size // 2
        backup_of_other_data.write_bytes(gzip.compress(archive[:cut]))
        write_checksum_file(backup_of_other_data)

        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(str(backup_of_other_data), skip_confirmation=True)

        assert exc_info.value.session.failed_step == "staging"
        assert fake_server.databases == {"shop": PRODUCTION_TABLES}

    def test_missing_production_requires_skip_snapshot(self, config, fake_server, backup_of_other_data):
        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(
                str(backup_of_other_data), skip_confirmation=True, target_database="brand_new"
            )

        session = exc_info.value.session
        assert session.failed_step == "snapshotting"
        assert "--skip-snapshot" in session.error
        assert "brand_new" not in fake_server.databases

    def test_corrupt_snapshot_stops_before_swap(self, config, fake_server, backup_of_other_data):
        def truncated_snapshot(*args, **kwargs):
            path = create_artifact_file(*args, **kwargs)
            path.write_bytes(path.read_bytes()[:200])
            return path

        fake_server.fail_on("rename_database", RuntimeError("rename failed"))

        with patch("apps.backups.restore.create_artifact_file", side_effect=truncated_snapshot):
            with pytest.raises(RestoreError) as exc_info:
                RestoreEngine(config, server=fake_server).run(
                    str(backup_of_other_data), rollback_enabled=True, skip_confirmation=True
                )

        session = exc_info.value.session
        assert session.status == RestoreStatus.FAILED
        assert session.failed_step == "snapshotting"
        assert [h["status"] for h in session.history] == ["pending", "snapshotting", "failed"]
        assert "Pre-restore snapshot is not usable" in session.error
        assert session.pre_restore_snapshot is None
        assert list_pre_restore_snapshots(config.backup_root) == []
        mutations = {"create_database", "drop_database", "rename_database", "restore"}
        assert not [c for c in fake_server.calls if c[0] in mutations]
        assert fake_server.databases == {"shop": PRODUCTION_TABLES}

    def test_declined_confirmation(self, config, fake_server, backup_of_other_data):
        engine = RestoreEngine(config, server=fake_server, confirm=lambda session: False)

        with pytest.raises(RestoreCancelled) as exc_info:
            engine.run(str(backup_of_other_data))

        session = exc_info.value.session
        assert session.status == RestoreStatus.FAILED
        assert session.failed_step == "swapping"
        assert fake_server.databases == {"shop": PRODUCTION_TABLES}

    def test_no_confirmation_without_callback(self, config, fake_server, backup_of_other_data):
        with pytest.raises(RestoreCancelled) as exc_info:
            RestoreEngine(config, server=fake_server).run(str(backup_of_other_data))

        assert "--yes" in str(exc_info.value)
        assert scratch_databases(fake_server) == []

    def test_work_directory_is_removed(self, config, fake_server, backup_of_other_data):
        fake_server.fail_on("restore", RuntimeError("boom"), database="shop_restore")

        with pytest.raises(RestoreError):
            RestoreEngine(config, server=fake_server).run(str(backup_of_other_data), skip_confirmation=True)

        assert list(config.staging_dir.iterdir()) == []


class TestFailureAfterSwap:
    def test_rollback_restores_snapshot(self, config, fake_server, backup_of_other_data):
        fake_server.fail_on("rename_database", RuntimeError("rename failed"))

        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(
                str(backup_of_other_data), rollback_enabled=True, skip_confirmation=True
            )

        session = exc_info.value.session
        assert session.status == RestoreStatus.ROLLED_BACK
        assert session.failed_step == "swapping"
        assert fake_server.databases["shop"] == PRODUCTION_TABLES
        assert scratch_databases(fake_server) == []

    def test_without_rollback_needs_manual_recovery(self, config, fake_server, backup_of_other_data):
        fake_server.fail_on("rename_database", RuntimeError("rename failed"))

        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(str(backup_of_other_data), skip_confirmation=True)

        session = exc_info.value.session
        assert session.status == RestoreStatus.FAILED
        assert "may be inconsistent" in session.error
        assert session.pre_restore_snapshot in session.error
        assert scratch_databases(fake_server) == []

    def test_verification_mismatch_rolls_back(self, config, fake_server, backup_of_other_data):
        original_rename = fake_server.rename_database

        def lossy_rename(old_name, new_name):
            original_rename(old_name, new_name)
            fake_server.databases[new_name] = fake_server.databases[new_name][:1]

        fake_server.rename_database = lossy_rename

        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(
                str(backup_of_other_data), rollback_enabled=True, skip_confirmation=True
            )

        session = exc_info.value.session
        assert session.failed_step == "verifying"
        assert session.status == RestoreStatus.ROLLED_BACK
        assert fake_server.databases["shop"] == PRODUCTION_TABLES

    def test_failed_rollback_reports_snapshot(self, config, fake_server, backup_of_other_data):
        def rename_and_lose_snapshot(old_name, new_name):
            for snapshot in list_pre_restore_snapshots(config.backup_root):
                snapshot.path.unlink()
            raise RuntimeError("rename failed")

        fake_server.rename_database = rename_and_lose_snapshot

        with pytest.raises(RestoreError) as exc_info:
            RestoreEngine(config, server=fake_server).run(
                str(backup_of_other_data), rollback_enabled=True, skip_confirmation=True
            )

        session = exc_info.value.session
        assert session.status == RestoreStatus.FAILED
        assert "rollback failed" in session.error
        assert session.pre_restore_snapshot in session.error
