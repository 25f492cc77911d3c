"""수집 신선도(freshness) 헬스 리포트 모듈.

플랫폼별 최신 스냅샷 경과 시간으로 파이프라인 상태를 분류한다.
- 플랫폼: fresh / stale / missing
- 전체: healthy / degraded (일부 플랫폼 이상) / stale (전체 중단)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

from creator_metrics.config import AppConfig
from creator_metrics.d1 import SNAPSHOTS_TABLE, query_rows
from creator_metrics.models import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

HealthStatus = Literal["healthy", "degraded", "stale"]
PlatformStatus = Literal["fresh", "stale", "missing"]


@dataclass
class PlatformHealth:
    platform: str
    latest_snapshot_at: datetime | None
    hours_since_latest_snapshot: float | None
    snapshots_last_24h: int
    handles_last_24h: int
    status: PlatformStatus


@dataclass
class HealthReport:
    generated_at: datetime
    cadence_hours: float
    stale_threshold_hours: float
    latest_snapshot_at: datetime | None
    hours_since_latest_snapshot: float | None
    status: HealthStatus
    action_required: bool
    issues: list[str] = field(default_factory=list)
    platforms: list[PlatformHealth] = field(default_factory=list)


def hours_since(value: datetime | None, now: datetime) -> float | None:
    """경과 시간(시간 단위, 소수 첫째 자리 반올림)."""
    if value is None:
        return None
    return round((now - value).total_seconds() / 3600, 1)


def derive_platform_status(hours: float | None, stale_threshold_hours: float) -> PlatformStatus:
    if hours is None:
        return "missing"
    return "stale" if hours > stale_threshold_hours else "fresh"


def derive_overall_status(
    hours_since_latest: float | None,
    platform_statuses: list[PlatformStatus],
    stale_threshold_hours: float,
) -> HealthStatus:
    """전체 상태 분류.

    stale: 스냅샷 없음, 전체 최신 스냅샷이 임계치 초과, 또는 모든 플랫폼이 fresh가 아님
    degraded: 일부 플랫폼만 fresh가 아님
    """
    not_fresh = [s for s in platform_statuses if s != "fresh"]
    overall_stale = hours_since_latest is None or hours_since_latest > stale_threshold_hours

    if overall_stale or len(not_fresh) == len(platform_statuses):
        return "stale"
    if not_fresh:
        return "degraded"
    return "healthy"


def _to_datetime(value: object) -> datetime | None:
    if not value:
        return None
    return parse_timestamp(str(value))


def get_scrape_health_report(
    config: AppConfig,
    *,
    cadence_hours: float | None = None,
    stale_threshold_hours: float | None = None,
    now: datetime | None = None,
) -> HealthReport:
    """스냅샷 신선도 리포트를 계산한다.

    전체/플랫폼별 쿼리는 각각 독립적으로 일관되며 서로 같은 시점을 보장하지 않는다.
    """
    cadence_hours = cadence_hours or config.health.cadence_hours
    stale_threshold_hours = stale_threshold_hours or config.health.stale_threshold_hours
    now = now or utcnow()
    last_24h = format_timestamp(now - timedelta(hours=24))

    overall_rows = query_rows(
        f"SELECT MAX(scraped_at) AS latest_snapshot_at FROM {SNAPSHOTS_TABLE}",
        [],
        config.d1,
    )
    platform_rows = query_rows(
        f"SELECT platform, MAX(scraped_at) AS latest_snapshot_at, "
        f"SUM(CASE WHEN scraped_at >= ? THEN 1 ELSE 0 END) AS snapshots_last_24h, "
        f"COUNT(DISTINCT CASE WHEN scraped_at >= ? THEN lower(handle) END) AS handles_last_24h "
        f"FROM {SNAPSHOTS_TABLE} GROUP BY platform",
        [last_24h, last_24h],
        config.d1,
    )
    by_platform = {str(row["platform"]): row for row in platform_rows}

    platforms: list[PlatformHealth] = []
    for platform in config.platforms:
        row = by_platform.get(platform, {})
        latest_at = _to_datetime(row.get("latest_snapshot_at"))
        hours = hours_since(latest_at, now)
        platforms.append(
            PlatformHealth(
                platform=platform,
                latest_snapshot_at=latest_at,
                hours_since_latest_snapshot=hours,
                snapshots_last_24h=int(row.get("snapshots_last_24h") or 0),
                handles_last_24h=int(row.get("handles_last_24h") or 0),
                status=derive_platform_status(hours, stale_threshold_hours),
            )
        )

    latest_snapshot_at = _to_datetime(overall_rows[0].get("latest_snapshot_at")) if overall_rows else None
    hours_since_latest = hours_since(latest_snapshot_at, now)
    status = derive_overall_status(hours_since_latest, [p.status for p in platforms], stale_threshold_hours)

    issues: list[str] = []
    if latest_snapshot_at is None:
        issues.append(f"No snapshots found in {SNAPSHOTS_TABLE}")
    elif hours_since_latest is not None and hours_since_latest > stale_threshold_hours:
        issues.append(f"Last snapshot is {hours_since_latest}h old (threshold {stale_threshold_hours:g}h)")

    for p in platforms:
        if p.status == "missing":
            issues.append(f"No {p.platform} snapshots found")
        elif p.status == "stale":
            issues.append(f"{p.platform} snapshots are stale ({p.hours_since_latest_snapshot}h old)")

    report = HealthReport(
        generated_at=now,
        cadence_hours=cadence_hours,
        stale_threshold_hours=stale_threshold_hours,
        latest_snapshot_at=latest_snapshot_at,
        hours_since_latest_snapshot=hours_since_latest,
        status=status,
        action_required=status != "healthy",
        issues=issues,
        platforms=platforms,
    )

    log = logger.info if status == "healthy" else logger.warning
    log(
        "Scrape health: %s (%d issues)",
        status,
        len(issues),
        extra={"event_code": "SCRAPE_HEALTH", "status": status},
    )
    return report
