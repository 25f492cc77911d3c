"""공통 fixture."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import yaml

from creator_metrics.config import AppConfig, D1Config
from creator_metrics.d1 import SCHEMA_STATEMENTS

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


class FakeD1:
    """D1 HTTP API 대신 in-memory SQLite로 쿼리를 실행한다 (D1은 SQLite 방언)."""

    def __init__(self) -> None:
        self.conn = sqlite3.connect(":memory:")
        self.conn.row_factory = sqlite3.Row
        self.statements: list[str] = []
        self.fail_on: str | None = None
        for statement in SCHEMA_STATEMENTS:
            self.conn.execute(statement)
        self.conn.commit()

    def query(self, sql: str, params: list[Any], config: D1Config) -> dict[str, Any]:
        self.statements.append(sql)
        if self.fail_on is not None and self.fail_on in sql:
            raise RuntimeError("D1 query failed: simulated outage")
        cursor = self.conn.execute(sql, params)
        rows = [dict(r) for r in cursor.fetchall()] if cursor.description else []
        self.conn.commit()
        return {"success": True, "result": [{"results": rows, "meta": {"changes": cursor.rowcount}}]}

    def all_rows(self, table: str = "metrics_snapshots") -> list[dict[str, Any]]:
        return [dict(r) for r in self.conn.execute(f"SELECT * FROM {table} ORDER BY rowid")]


@pytest.fixture()
def fake_d1(monkeypatch: pytest.MonkeyPatch) -> FakeD1:
    """creator_metrics.d1._d1_query를 SQLite 실행기로 교체."""
    fake = FakeD1()
    monkeypatch.setattr("creator_metrics.d1._d1_query", fake.query)
    yield fake
    fake.conn.close()


@pytest.fixture()
def app_config() -> AppConfig:
    """D1 인증 정보가 채워진 테스트 설정."""
    return AppConfig(
        d1=D1Config(database_id="test-db-id", account_id="test-account-id", api_token="test-api-token"),
        alerts={"webhook_url": "https://hooks.slack.com/test"},
    )


@pytest.fixture()
def sample_config_data() -> dict[str, Any]:
    """테스트용 config dict."""
    return {
        "platforms": ["tiktok", "instagram", "twitter"],
        "d1": {
            "database_id": "test-db-id",
            "account_id": "test-account-id",
            "api_token": "test-api-token",
        },
        "snapshots": {"recent_window_hours": 4, "lock_key": 704021, "lock_ttl_sec": 300},
        "anomaly": {"likely_error_pct": 90, "suspicious_drop_pct": 50},
        "health": {"cadence_hours": 24, "stale_threshold_hours": 26},
        "alerts": {"webhook_url": "", "timeout_sec": 10, "min_success_ratio": 0.8},
    }


@pytest.fixture()
def tmp_config_file(tmp_path: Path, sample_config_data: dict[str, Any]) -> Path:
    """임시 YAML 설정 파일."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(sample_config_data), encoding="utf-8")
    return config_path


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """실행 환경의 설정 환경변수가 테스트에 섞이지 않도록 제거."""
    for name in (
        "D1_DATABASE_ID",
        "CLOUDFLARE_ACCOUNT_ID",
        "CLOUDFLARE_API_TOKEN",
        "SLACK_WEBHOOK_URL",
        "SCRAPE_ALERT_WEBHOOK_URL",
        "SCRAPE_STALE_HOURS",
    ):
        monkeypatch.delenv(name, raising=False)
