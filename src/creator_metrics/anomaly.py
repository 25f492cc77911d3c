"""스냅샷 급감 이상 탐지 모듈.

새 측정값을 (handle, platform)별 직전 스냅샷과 비교해 큰 하락을 분류한다.
- likely_error: 어떤 카운터든 90% 이상 하락 (차단/빈 응답 등 수집 오류일 가능성이 높음)
- suspicious_drop: followers만, 50% 이상 하락
- 직전 값이 0 이하이거나 증가/유지인 경우는 평가하지 않는다
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

import orjson

from creator_metrics.config import AnomalyConfig, AppConfig
from creator_metrics.d1 import SNAPSHOTS_TABLE, query_rows
from creator_metrics.models import COUNTER_FIELDS, Measurement, snapshot_key

logger = logging.getLogger(__name__)

AnomalySeverity = Literal["suspicious_drop", "likely_error"]


@dataclass
class Anomaly:
    """이상 탐지 결과 (저장하지 않음)."""

    handle: str
    platform: str
    metric: str
    previous_value: int
    new_value: int
    drop_percent: float
    severity: AnomalySeverity


def check_drop(
    handle: str,
    platform: str,
    metric: str,
    previous_value: int,
    new_value: int,
    *,
    thresholds: AnomalyConfig | None = None,
) -> Anomaly | None:
    """카운터 1개의 하락률을 분류한다."""
    thresholds = thresholds or AnomalyConfig()

    if previous_value <= 0 or new_value < 0:
        return None
    if new_value >= previous_value:
        return None

    drop_percent = (previous_value - new_value) / previous_value * 100

    if drop_percent >= thresholds.likely_error_pct:
        severity: AnomalySeverity = "likely_error"
    elif metric == "followers" and drop_percent >= thresholds.suspicious_drop_pct:
        severity = "suspicious_drop"
    else:
        return None

    return Anomaly(
        handle=handle,
        platform=platform,
        metric=metric,
        previous_value=previous_value,
        new_value=new_value,
        drop_percent=drop_percent,
        severity=severity,
    )


def _fetch_previous(handles: list[str], config: AppConfig) -> dict[tuple[str, str], dict]:
    """배치에 포함된 handle들의 (handle, platform)별 최신 스냅샷을 한 번에 조회한다."""
    rows = query_rows(
        f"SELECT handle, platform, followers, likes, posts, videos FROM ("
        f"SELECT handle, platform, followers, likes, posts, videos, "
        f"ROW_NUMBER() OVER (PARTITION BY handle, platform ORDER BY scraped_at DESC) AS rn "
        f"FROM {SNAPSHOTS_TABLE} WHERE handle IN (SELECT value FROM json_each(?))"
        f") WHERE rn = 1",
        [orjson.dumps(handles).decode()],
        config.d1,
    )
    return {snapshot_key(str(r["handle"]), str(r["platform"])): r for r in rows}


def detect_anomalies(measurements: Sequence[Measurement], config: AppConfig) -> list[Anomaly]:
    """새 측정값 배치를 저장된 직전 스냅샷과 비교한다.

    직전 스냅샷이 없는 신규 계정은 평가하지 않는다.
    """
    # 스토어와 같이 (handle, platform)별 마지막 측정값만 평가한다
    latest: dict[tuple[str, str], Measurement] = {}
    for m in measurements:
        if m.handle:
            latest[m.key] = m
    candidates = list(latest.values())
    if not candidates:
        return []

    previous = _fetch_previous(sorted({m.handle for m in candidates}), config)
    anomalies: list[Anomaly] = []

    for m in candidates:
        prev = previous.get(m.key)
        if prev is None:
            continue

        for metric in COUNTER_FIELDS:
            anomaly = check_drop(
                m.handle,
                m.platform,
                metric,
                int(prev[metric] or 0),
                getattr(m, metric),
                thresholds=config.anomaly,
            )
            if anomaly is None:
                continue
            anomalies.append(anomaly)
            logger.warning(
                "Anomaly detected: %s/%s %s dropped %.0f%% (%d -> %d)",
                anomaly.handle,
                anomaly.platform,
                anomaly.metric,
                anomaly.drop_percent,
                anomaly.previous_value,
                anomaly.new_value,
                extra={
                    "event_code": "ANOMALY_DETECTED",
                    "handle": anomaly.handle,
                    "platform": anomaly.platform,
                    "metric": anomaly.metric,
                    "severity": anomaly.severity,
                },
            )

    return anomalies
