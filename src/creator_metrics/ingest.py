"""수집 배치 적재 오케스트레이션.

이상 탐지 → 스냅샷 적재 → 알림 사유 판정 → Slack 알림 순서로 실행한다.
이상 탐지는 적재 전에 실행해야 직전 스냅샷이 이번 배치로 바뀌지 않는다.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from creator_metrics.anomaly import Anomaly, detect_anomalies
from creator_metrics.config import AppConfig
from creator_metrics.d1 import _validate_d1_auth
from creator_metrics.models import Measurement, format_timestamp, utcnow
from creator_metrics.notify import (
    DatabaseCounts,
    PlatformStat,
    ScrapeAlertPayload,
    platform_label,
    send_scrape_alert,
)
from creator_metrics.store import LOCK_UNAVAILABLE_MESSAGE, InsertSnapshotsResult, insert_snapshots

logger = logging.getLogger(__name__)


@dataclass
class IngestionReport:
    """배치 1회 실행 결과."""

    insert: InsertSnapshotsResult
    anomalies: list[Anomaly] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)
    alert_sent: bool = False
    duration_ms: float = 0.0


def derive_platform_stats(measurements: Sequence[Measurement]) -> dict[str, PlatformStat]:
    """수집 작업이 통계를 주지 않으면 배치 자체를 전부 성공으로 본다."""
    stats: dict[str, PlatformStat] = {}
    for m in measurements:
        stat = stats.setdefault(m.platform, PlatformStat())
        stat.attempted += 1
        stat.succeeded += 1
    for stat in stats.values():
        stat.success_ratio = 1.0
    return stats


def collect_alert_reasons(
    insert: InsertSnapshotsResult,
    anomalies: Sequence[Anomaly],
    platform_stats: dict[str, PlatformStat],
    min_success_ratio: float,
) -> list[str]:
    reasons: list[str] = []
    if anomalies:
        reasons.append(f"{len(anomalies)} anomalies detected")
    if insert.lock_unavailable:
        reasons.append(LOCK_UNAVAILABLE_MESSAGE)
    if insert.failed:
        reasons.append(f"{insert.failed} snapshot inserts failed")

    for platform, stat in platform_stats.items():
        ratio = stat.success_ratio
        if ratio is None and stat.attempted:
            ratio = stat.succeeded / stat.attempted
        if ratio is not None and ratio < min_success_ratio:
            reasons.append(
                f"{platform_label(platform)} success ratio {round(ratio * 100)}% "
                f"below {round(min_success_ratio * 100)}%"
            )
    return reasons


def run_ingestion(
    measurements: Sequence[Measurement],
    config: AppConfig,
    *,
    platform_stats: dict[str, PlatformStat] | None = None,
    alert: bool = True,
    now: datetime | None = None,
) -> IngestionReport:
    """측정값 배치를 검사하고 적재한 뒤 필요하면 알림을 보낸다.

    이상 탐지 조회 실패는 적재를 막지 않는다 (로그 후 탐지 결과 없음으로 진행).
    """
    started = time.monotonic()
    now = now or utcnow()
    if measurements:
        _validate_d1_auth(config.d1)

    try:
        anomalies = detect_anomalies(measurements, config)
    except Exception as e:
        logger.error("Anomaly detection failed: %s", e, extra={"event_code": "ANOMALY_CHECK_FAILED"})
        anomalies = []

    insert = insert_snapshots(measurements, config, now=now)

    stats = platform_stats if platform_stats is not None else derive_platform_stats(measurements)
    reasons = collect_alert_reasons(insert, anomalies, stats, config.alerts.min_success_ratio)
    duration_ms = round((time.monotonic() - started) * 1000, 1)

    alert_sent = False
    if alert and reasons:
        payload = ScrapeAlertPayload(
            reasons=reasons,
            platform_stats=stats,
            database=DatabaseCounts(inserted=insert.inserted, skipped=insert.skipped, failed=insert.failed),
            anomalies=anomalies or None,
            duration_ms=duration_ms,
            timestamp=format_timestamp(now),
        )
        alert_sent = send_scrape_alert(payload, config.alerts.webhook_url, timeout=config.alerts.timeout_sec)

    logger.info(
        "Ingestion complete: %d measurements, %d anomalies, %d alert reasons",
        len(measurements),
        len(anomalies),
        len(reasons),
        extra={
            "event_code": "INGESTION_COMPLETE",
            "duration_ms": duration_ms,
            "counts": {
                "inserted": insert.inserted,
                "skipped": insert.skipped,
                "failed": insert.failed,
                "anomalies": len(anomalies),
            },
        },
    )

    return IngestionReport(
        insert=insert,
        anomalies=anomalies,
        reasons=reasons,
        alert_sent=alert_sent,
        duration_ms=duration_ms,
    )
