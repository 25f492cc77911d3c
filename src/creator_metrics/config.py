"""YAML 설정 로딩 + Pydantic 모델."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from creator_metrics.models import PLATFORMS

_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "config.yaml"


# ── 설정 모델 ──────────────────────────────────────────


class D1Config(BaseModel):
    database_id: str = ""
    account_id: str = ""
    api_token: str = ""
    timeout_sec: float = 30.0


class SnapshotConfig(BaseModel):
    recent_window_hours: float = Field(default=4.0, gt=0)
    lock_key: int = 704021
    lock_ttl_sec: int = Field(default=300, ge=1)  # 프로세스 비정상 종료 시 lease 만료


class AnomalyConfig(BaseModel):
    likely_error_pct: float = Field(default=90.0, gt=0, le=100)
    suspicious_drop_pct: float = Field(default=50.0, gt=0, le=100)


class HealthConfig(BaseModel):
    cadence_hours: float = Field(default=24.0, gt=0)
    stale_threshold_hours: float = Field(default=26.0, gt=0)


class AlertConfig(BaseModel):
    webhook_url: str = ""
    timeout_sec: float = 10.0
    min_success_ratio: float = Field(default=0.8, ge=0, le=1)

    @field_validator("webhook_url", mode="before")
    @classmethod
    def strip_webhook_url(cls, v: Any) -> str:
        # secret/.env 값 끝의 개행 제거
        return "" if v is None else str(v).strip()


class AppConfig(BaseModel):
    """애플리케이션 전체 설정."""

    platforms: list[str] = Field(default_factory=lambda: list(PLATFORMS), min_length=1)
    d1: D1Config = Field(default_factory=D1Config)
    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    anomaly: AnomalyConfig = Field(default_factory=AnomalyConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)

    @field_validator("platforms")
    @classmethod
    def platforms_supported(cls, v: list[str]) -> list[str]:
        normalized = [p.strip().lower() for p in v]
        unknown = [p for p in normalized if p not in PLATFORMS]
        if unknown:
            raise ValueError(f"unsupported platforms: {', '.join(unknown)}")
        return normalized


# ── 로딩 ───────────────────────────────────────────────


def load_config(path: Path | None = None) -> AppConfig:
    """YAML 설정 파일을 로딩하고 Pydantic 모델로 검증한다.

    환경변수 우선순위: 시스템 환경변수 > .env 파일 > config.yaml 기본값
    """
    config_path = path or _DEFAULT_CONFIG_PATH

    # .env 파일 로딩: config.yaml과 같은 디렉터리의 .env를 탐색
    dotenv_path = config_path.parent / ".env"
    load_dotenv(dotenv_path=dotenv_path, override=False)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raise ValueError(f"Empty config file: {config_path}")

    # 환경변수 오버라이드 (D1)
    if d1_id := os.environ.get("D1_DATABASE_ID"):
        raw.setdefault("d1", {})
        raw["d1"]["database_id"] = d1_id
    if account_id := os.environ.get("CLOUDFLARE_ACCOUNT_ID"):
        raw.setdefault("d1", {})
        raw["d1"]["account_id"] = account_id
    if api_token := os.environ.get("CLOUDFLARE_API_TOKEN"):
        raw.setdefault("d1", {})
        raw["d1"]["api_token"] = api_token

    # SCRAPE_ALERT_WEBHOOK_URL은 이전 배포와의 호환용
    webhook_url = os.environ.get("SLACK_WEBHOOK_URL") or os.environ.get("SCRAPE_ALERT_WEBHOOK_URL")
    if webhook_url:
        raw.setdefault("alerts", {})
        raw["alerts"]["webhook_url"] = webhook_url

    if stale_hours := os.environ.get("SCRAPE_STALE_HOURS"):
        raw.setdefault("health", {})
        raw["health"]["stale_threshold_hours"] = stale_hours

    return AppConfig.model_validate(raw)
