"""
Tests for artifact naming, discovery and lookup.
"""

from datetime import datetime, timedelta

from apps.backups.artifacts import (
    RetentionPolicy,
    Tier,
    artifact_from_path,
    find_by_timestamp,
    format_size,
    latest_per_tier,
    list_artifacts,
    list_pre_restore_snapshots,
    resolve_artifact,
)
from apps.backups.encryption import write_checksum_file


def make_artifact(root, tier, timestamp, prefix="shop", suffix=".dump.tar.gz", size=2048):
    directory = root / tier if tier else root
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{prefix}_{timestamp}{suffix}"
    path.write_bytes(b"\0" * size)
    return path


class TestArtifactFromPath:
    def test_parses_name(self, tmp_path):
        path = make_artifact(tmp_path, "weekly", "20250105_020000", suffix=".dump.tar.gz.enc")
        write_checksum_file(path)

        artifact = artifact_from_path(path)

        assert artifact.id == "20250105_020000"
        assert artifact.tier == Tier.WEEKLY
        assert artifact.created_at == datetime(2025, 1, 5, 2, 0, 0)
        assert artifact.size_bytes == 2048
        assert artifact.compressed is True
        assert artifact.encrypted is True
        assert artifact.checksum is not None
        assert artifact.is_pre_restore is False

    def test_explicit_tier_wins(self, tmp_path):
        path = make_artifact(tmp_path, "daily", "20250101_020000")

        assert artifact_from_path(path, Tier.MONTHLY).tier == Tier.MONTHLY

    def test_pre_restore_snapshot(self, tmp_path):
        path = make_artifact(tmp_path, None, "20250106_101500", prefix="pre_restore")

        artifact = artifact_from_path(path)

        assert artifact.tier is None
        assert artifact.is_pre_restore is True


class TestDiscovery:
    def test_list_ignores_sidecars_and_strangers(self, tmp_path):
        path = make_artifact(tmp_path, "daily", "20250102_020000")
        write_checksum_file(path)
        (tmp_path / "daily" / "notes.txt").write_text("not a backup")
        make_artifact(tmp_path, "daily", "20250103_020000")

        grouped = list_artifacts(tmp_path)

        assert [a.id for a in grouped[Tier.DAILY]] == ["20250102_020000", "20250103_020000"]
        assert grouped[Tier.WEEKLY] == []

    def test_latest_per_tier(self, tmp_path):
        make_artifact(tmp_path, "daily", "20250102_020000")
        make_artifact(tmp_path, "daily", "20250103_020000")
        make_artifact(tmp_path, "monthly", "20250101_020000")

        latest = latest_per_tier(tmp_path)

        assert latest[Tier.DAILY].id == "20250103_020000"
        assert latest[Tier.MONTHLY].id == "20250101_020000"
        assert Tier.WEEKLY not in latest

    def test_find_by_timestamp_across_tiers(self, tmp_path):
        make_artifact(tmp_path, "daily", "20250102_020000")
        make_artifact(tmp_path, "weekly", "20250105_020000")

        found = find_by_timestamp(tmp_path, "20250105_020000")

        assert found is not None
        assert found.tier == Tier.WEEKLY
        assert find_by_timestamp(tmp_path, "20240101_000000") is None

    def test_find_pre_restore_by_timestamp(self, tmp_path):
        make_artifact(tmp_path, None, "20250106_101500", prefix="pre_restore")

        assert list_pre_restore_snapshots(tmp_path)[0].id == "20250106_101500"
        assert find_by_timestamp(tmp_path, "20250106_101500").is_pre_restore

    def test_resolve_path_and_timestamp(self, tmp_path):
        path = make_artifact(tmp_path, "daily", "20250102_020000")

        assert resolve_artifact(tmp_path, str(path)).path == path
        assert resolve_artifact(tmp_path, "daily/" + path.name).path == path
        assert resolve_artifact(tmp_path, "20250102_020000").path == path
        assert resolve_artifact(tmp_path, "/nowhere/shop.dump.tar.gz") is None
        assert resolve_artifact(tmp_path, "garbage") is None


class TestRetentionPolicy:
    def test_windows(self):
        policy = RetentionPolicy(daily_days=7, weekly_weeks=4, monthly_months=12)

        assert policy.window_for(Tier.DAILY) == timedelta(days=7)
        assert policy.window_for(Tier.WEEKLY) == timedelta(days=28)
        assert policy.window_for(Tier.MONTHLY) == timedelta(days=360)
        assert policy.window_for(None) == timedelta(days=7)


def test_format_size():
    assert format_size(512) == "512 B"
    assert format_size(2048) == "2.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"
