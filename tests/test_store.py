"""스냅샷 스토어 테스트 (SQLite 실행기)."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import pytest
from creator_metrics.config import AppConfig, D1Config
from creator_metrics.models import MAX_COUNTER, Measurement, format_timestamp
from creator_metrics.store import (
    LOCK_LOST_MESSAGE,
    LOCK_UNAVAILABLE_MESSAGE,
    acquire_insert_lock,
    get_creator_history,
    get_historical_data,
    get_latest_metrics,
    insert_snapshots,
    release_insert_lock,
)

from conftest import T0


def _m(handle: str, platform: str = "tiktok", **overrides: Any) -> Measurement:
    """테스트용 Measurement 헬퍼."""
    data: dict[str, Any] = {"handle": handle, "platform": platform, "followers": 1000, "likes": 5000}
    data.update(overrides)
    return Measurement.model_validate(data)


def _hold_lock(fake_d1, *, owner: str = "other-run", expires_in: timedelta = timedelta(minutes=5)) -> None:
    fake_d1.conn.execute(
        "INSERT INTO snapshot_insert_locks (lock_key, owner, acquired_at, expires_at) VALUES (?, ?, ?, ?)",
        [704021, owner, format_timestamp(T0), format_timestamp(T0 + expires_in)],
    )
    fake_d1.conn.commit()


class TestInsertSnapshots:
    """배치 적재 테스트."""

    def test_empty_batch_no_store_access(self, fake_d1, app_config: AppConfig) -> None:
        result = insert_snapshots([], app_config, now=T0)
        assert (result.inserted, result.skipped, result.failed) == (0, 0, 0)
        assert result.details == []
        assert fake_d1.statements == []

    def test_missing_auth_raises(self, fake_d1) -> None:
        config = AppConfig(d1=D1Config(database_id="db"))
        with pytest.raises(RuntimeError, match="D1 auth config missing"):
            insert_snapshots([_m("alice")], config, now=T0)

    def test_inserts_batch_with_shared_timestamp(self, fake_d1, app_config: AppConfig) -> None:
        result = insert_snapshots(
            [_m("alice", marketing_rep="Kim"), _m("bob", "instagram", followers=20)],
            app_config,
            now=T0,
        )

        assert result.inserted == 2
        assert result.skipped == 0
        assert result.lock_unavailable is False
        assert all(d.status == "inserted" for d in result.details)

        rows = fake_d1.all_rows()
        assert [(r["handle"], r["platform"], r["followers"]) for r in rows] == [
            ("alice", "tiktok", 1000),
            ("bob", "instagram", 20),
        ]
        assert {r["scraped_at"] for r in rows} == {"2026-03-01T12:00:00.000Z"}
        assert rows[0]["marketing_rep"] == "Kim"
        assert rows[1]["marketing_rep"] is None

    def test_single_insert_statement(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m(f"user{i}") for i in range(25)], app_config, now=T0)
        inserts = [s for s in fake_d1.statements if s.startswith("INSERT OR IGNORE INTO metrics_snapshots ")]
        assert len(inserts) == 1

    def test_duplicate_in_batch_last_wins(self, fake_d1, app_config: AppConfig) -> None:
        result = insert_snapshots(
            [_m("Alice", followers=1), _m("alice", followers=2)],
            app_config,
            now=T0,
        )
        assert result.inserted == 1
        rows = fake_d1.all_rows()
        assert len(rows) == 1
        assert rows[0]["followers"] == 2

    def test_same_handle_different_platform_both_inserted(self, fake_d1, app_config: AppConfig) -> None:
        result = insert_snapshots([_m("alice", "tiktok"), _m("alice", "twitter")], app_config, now=T0)
        assert result.inserted == 2

    def test_non_ascii_case_variants_are_distinct(self, fake_d1, app_config: AppConfig) -> None:
        """NOCASE는 ASCII만 접으므로 \u00c9lise와 \u00e9lise는 다른 계정이다."""
        result = insert_snapshots([_m("\u00c9lise"), _m("\u00e9lise"), _m("BOB"), _m("bob")], app_config, now=T0)

        assert result.inserted == 3
        assert sorted(r["handle"] for r in fake_d1.all_rows()) == ["bob", "\u00c9lise", "\u00e9lise"]

    def test_oversized_counter_clamped_not_failing_batch(self, fake_d1, app_config: AppConfig) -> None:
        result = insert_snapshots(
            [_m("alice", followers=100), _m("bob", followers=1e20, likes="1e30")],
            app_config,
            now=T0,
        )

        assert (result.inserted, result.failed) == (2, 0)
        rows = {r["handle"]: r for r in fake_d1.all_rows()}
        assert rows["alice"]["followers"] == 100
        assert rows["bob"]["followers"] == rows["bob"]["likes"] == MAX_COUNTER

    def test_recent_snapshot_skipped(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m("alice")], app_config, now=T0)

        result = insert_snapshots([_m("ALICE", followers=1100), _m("bob")], app_config, now=T0 + timedelta(hours=2))

        assert result.inserted == 1
        assert result.skipped == 1
        skipped = next(d for d in result.details if d.status == "skipped")
        assert skipped.handle == "ALICE"
        assert skipped.error == "Snapshot within last 4h already exists"
        assert len(fake_d1.all_rows()) == 2

    def test_outside_recent_window_inserted(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m("alice")], app_config, now=T0)
        result = insert_snapshots([_m("alice", followers=1100)], app_config, now=T0 + timedelta(hours=5))
        assert result.inserted == 1
        assert len(fake_d1.all_rows()) == 2

    def test_blank_handle_and_unknown_platform_skipped(self, fake_d1, app_config: AppConfig) -> None:
        result = insert_snapshots(
            [_m("   "), _m("carol", "youtube"), _m("dave")],
            app_config,
            now=T0,
        )
        errors = {d.error for d in result.details if d.status == "skipped"}
        assert errors == {"Empty handle", "Unsupported platform"}
        assert result.inserted == 1
        assert result.skipped == 2

    def test_lock_released_after_success(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m("alice")], app_config, now=T0)
        assert fake_d1.all_rows("snapshot_insert_locks") == []

    def test_logs_batch_summary(self, fake_d1, app_config: AppConfig, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="creator_metrics"):
            insert_snapshots([_m("alice")], app_config, now=T0)
        record = next(r for r in caplog.records if getattr(r, "event_code", None) == "SNAPSHOT_INSERT")
        assert record.counts == {"inserted": 1, "skipped": 0, "failed": 0}


class TestInsertLock:
    """동시 적재 lock 테스트."""

    def test_lock_held_skips_whole_batch(self, fake_d1, app_config: AppConfig) -> None:
        _hold_lock(fake_d1)

        result = insert_snapshots([_m("alice"), _m("bob")], app_config, now=T0 + timedelta(minutes=1))

        assert result.lock_unavailable is True
        assert result.skipped == 2
        assert result.inserted == 0
        assert all(d.error == LOCK_UNAVAILABLE_MESSAGE for d in result.details)
        assert fake_d1.all_rows() == []
        # 다른 실행의 lock은 건드리지 않는다
        assert [r["owner"] for r in fake_d1.all_rows("snapshot_insert_locks")] == ["other-run"]

    def test_expired_lease_reclaimed(self, fake_d1, app_config: AppConfig) -> None:
        _hold_lock(fake_d1, expires_in=timedelta(minutes=5))

        result = insert_snapshots([_m("alice")], app_config, now=T0 + timedelta(minutes=10))

        assert result.lock_unavailable is False
        assert result.inserted == 1

    def test_acquire_and_release(self, fake_d1, app_config: AppConfig) -> None:
        assert acquire_insert_lock(app_config, "run-a", now=T0) is True
        assert acquire_insert_lock(app_config, "run-b", now=T0) is False

        # 다른 owner의 해제 요청은 무시된다
        release_insert_lock(app_config, "run-b")
        assert acquire_insert_lock(app_config, "run-b", now=T0) is False

        release_insert_lock(app_config, "run-a")
        assert acquire_insert_lock(app_config, "run-b", now=T0) is True

    def test_lost_lease_writes_nothing(self, fake_d1, app_config: AppConfig, monkeypatch: pytest.MonkeyPatch) -> None:
        """적재 도중 lease가 만료되어 다른 실행에 넘어가면 배치는 쓰지 않고 failed."""

        def acquire_then_lose(config: AppConfig, owner: str, *, now=None) -> bool:
            assert acquire_insert_lock(config, owner, now=now)
            fake_d1.conn.execute("UPDATE snapshot_insert_locks SET owner = 'other-run'")
            fake_d1.conn.commit()
            return True

        monkeypatch.setattr("creator_metrics.store.acquire_insert_lock", acquire_then_lose)

        result = insert_snapshots([_m("alice"), _m("bob")], app_config, now=T0)

        assert result.failed == 2
        assert all(d.error == LOCK_LOST_MESSAGE for d in result.details)
        assert fake_d1.all_rows() == []
        assert [r["owner"] for r in fake_d1.all_rows("snapshot_insert_locks")] == ["other-run"]

    def test_insert_conditioned_on_lease_owner(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m("alice")], app_config, now=T0)
        insert_sql = next(s for s in fake_d1.statements if s.startswith("INSERT OR IGNORE INTO metrics_snapshots "))
        assert "snapshot_insert_locks" in insert_sql


class TestInsertFailures:
    """스토어 오류 처리 테스트."""

    def test_insert_error_marks_all_failed(self, fake_d1, app_config: AppConfig) -> None:
        fake_d1.fail_on = "INSERT OR IGNORE INTO metrics_snapshots ("

        result = insert_snapshots([_m("alice"), _m("bob")], app_config, now=T0)

        assert result.failed == 2
        assert result.inserted == 0
        assert all("simulated outage" in (d.error or "") for d in result.details)
        fake_d1.fail_on = None
        assert fake_d1.all_rows("snapshot_insert_locks") == []

    def test_lock_error_marks_all_failed(self, fake_d1, app_config: AppConfig) -> None:
        fake_d1.fail_on = "snapshot_insert_locks"

        result = insert_snapshots([_m("alice")], app_config, now=T0)

        assert result.failed == 1
        assert result.lock_unavailable is False
        assert fake_d1.all_rows() == []

    def test_release_failure_logged(self, fake_d1, app_config: AppConfig, caplog: pytest.LogCaptureFixture) -> None:
        fake_d1.fail_on = "DELETE FROM snapshot_insert_locks WHERE lock_key = ? AND owner"
        with caplog.at_level(logging.ERROR, logger="creator_metrics"):
            release_insert_lock(app_config, "run-a")
        assert any(getattr(r, "event_code", None) == "LOCK_RELEASE_FAILED" for r in caplog.records)


class TestReads:
    """조회 테스트."""

    def test_latest_metrics_one_per_pair(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m("alice", followers=100), _m("bob", followers=500)], app_config, now=T0)
        insert_snapshots([_m("alice", followers=900)], app_config, now=T0 + timedelta(hours=6))

        latest = get_latest_metrics(app_config)

        assert [(s.handle, s.followers) for s in latest] == [("alice", 900), ("bob", 500)]
        assert latest[0].scraped_at == T0 + timedelta(hours=6)

    def test_creator_history_case_insensitive(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m("Alice", followers=100)], app_config, now=T0 - timedelta(days=40))
        insert_snapshots([_m("alice", followers=200)], app_config, now=T0 - timedelta(days=2))
        insert_snapshots([_m("alice", followers=300)], app_config, now=T0)

        history = get_creator_history("ALICE", "TikTok", app_config, days=30, now=T0)

        assert [s.followers for s in history] == [300, 200]

    def test_historical_data_window(self, fake_d1, app_config: AppConfig) -> None:
        insert_snapshots([_m("alice")], app_config, now=T0 - timedelta(days=10))
        insert_snapshots([_m("bob", "twitter")], app_config, now=T0)

        rows = get_historical_data(app_config, days=7, now=T0)

        assert [(s.handle, s.platform) for s in rows] == [("bob", "twitter")]
