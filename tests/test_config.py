"""설정 로딩 테스트."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import yaml
from creator_metrics.config import AppConfig, load_config
from pydantic import ValidationError


class TestLoadConfig:
    """config.yaml 로딩 테스트."""

    def test_load_valid_config(self, tmp_config_file: Path) -> None:
        config = load_config(tmp_config_file)
        assert config.platforms == ["tiktok", "instagram", "twitter"]
        assert config.d1.database_id == "test-db-id"
        assert config.snapshots.lock_key == 704021

    def test_load_config_with_defaults(self, tmp_path: Path) -> None:
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({"d1": {"database_id": "db"}}), encoding="utf-8")

        config = load_config(config_path)
        assert config.snapshots.recent_window_hours == 4
        assert config.anomaly.likely_error_pct == 90
        assert config.anomaly.suspicious_drop_pct == 50
        assert config.health.cadence_hours == 24
        assert config.health.stale_threshold_hours == 26
        assert config.alerts.min_success_ratio == 0.8

    def test_load_empty_config_raises(self, tmp_path: Path) -> None:
        config_path = tmp_path / "config.yaml"
        config_path.write_text("", encoding="utf-8")

        with pytest.raises(ValueError, match="Empty config file"):
            load_config(config_path)

    def test_load_invalid_yaml_raises(self, tmp_path: Path) -> None:
        config_path = tmp_path / "config.yaml"
        config_path.write_text("{{invalid: yaml: content", encoding="utf-8")

        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_env_override_d1(self, tmp_config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("D1_DATABASE_ID", "env-db-id")
        monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "env-account")
        monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "env-token")
        config = load_config(tmp_config_file)
        assert config.d1.database_id == "env-db-id"
        assert config.d1.account_id == "env-account"
        assert config.d1.api_token == "env-token"

    def test_env_override_webhook(self, tmp_config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.com/primary")
        monkeypatch.setenv("SCRAPE_ALERT_WEBHOOK_URL", "https://hooks.slack.com/legacy")
        config = load_config(tmp_config_file)
        assert config.alerts.webhook_url == "https://hooks.slack.com/primary"

    def test_env_override_legacy_webhook(self, tmp_config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """SLACK_WEBHOOK_URL이 없으면 SCRAPE_ALERT_WEBHOOK_URL 사용."""
        monkeypatch.setenv("SCRAPE_ALERT_WEBHOOK_URL", "https://hooks.slack.com/legacy")
        config = load_config(tmp_config_file)
        assert config.alerts.webhook_url == "https://hooks.slack.com/legacy"

    def test_webhook_url_whitespace_stripped(self, tmp_config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SLACK_WEBHOOK_URL", "https://hooks.slack.com/primary\n")
        config = load_config(tmp_config_file)
        assert config.alerts.webhook_url == "https://hooks.slack.com/primary"
        assert AppConfig(alerts={"webhook_url": " https://hooks.slack.com/x\r\n"}).alerts.webhook_url == (
            "https://hooks.slack.com/x"
        )

    def test_env_override_stale_hours(self, tmp_config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SCRAPE_STALE_HOURS", "30")
        config = load_config(tmp_config_file)
        assert config.health.stale_threshold_hours == 30.0

    def test_dotenv_file_loaded(self, tmp_config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """config.yaml 옆의 .env를 읽는다."""
        (tmp_config_file.parent / ".env").write_text("D1_DATABASE_ID=dotenv-db\n", encoding="utf-8")
        config = load_config(tmp_config_file)
        assert config.d1.database_id == "dotenv-db"


class TestAppConfigValidation:
    """Pydantic 검증 테스트."""

    def test_platforms_normalized(self) -> None:
        config = AppConfig(platforms=[" TikTok ", "instagram"])
        assert config.platforms == ["tiktok", "instagram"]

    def test_unknown_platform_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unsupported platforms"):
            AppConfig(platforms=["tiktok", "youtube"])

    def test_empty_platforms_rejected(self) -> None:
        with pytest.raises(ValidationError):
            AppConfig(platforms=[])

    @pytest.mark.parametrize(
        "section",
        [
            {"anomaly": {"likely_error_pct": 0}},
            {"anomaly": {"suspicious_drop_pct": 150}},
            {"snapshots": {"recent_window_hours": 0}},
            {"alerts": {"min_success_ratio": 1.5}},
        ],
    )
    def test_out_of_range_values_rejected(self, section: dict[str, Any]) -> None:
        with pytest.raises(ValidationError):
            AppConfig.model_validate(section)
