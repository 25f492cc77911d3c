"""델타 계산 모듈.

현재 스냅샷과 "최소 24시간(7일) 이상 이전의 가장 최근 스냅샷"을 비교해 1일/7일 델타를 구한다.
수집 주기가 불규칙하므로(cron 지연, 재시도, 수동 실행) 정확히 N시간 전 스냅샷을 찾지 않는다.

- 조건을 만족하는 이전 스냅샷이 없으면 델타는 None (0으로 대체하지 않음)
- 기간별로 쌍당 인덱스 조회 1회, 4개 카운터를 한 번에 가져온다
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import field_validator

from creator_metrics.config import AppConfig
from creator_metrics.d1 import SNAPSHOTS_TABLE, query_rows
from creator_metrics.models import MetricSnapshot, format_timestamp, parse_timestamp, utcnow
from creator_metrics.store import LATEST_PER_PAIR_SQL


_TS_FORMAT = "%Y-%m-%dT%H:%M:%fZ"


class DeltaProjection(MetricSnapshot):
    """스냅샷 + 1일/7일 델타 (저장하지 않는 파생 뷰)."""

    prev_1d_scraped_at: datetime | None = None
    prev_7d_scraped_at: datetime | None = None
    delta_followers_1d: int | None = None
    delta_likes_1d: int | None = None
    delta_posts_1d: int | None = None
    delta_videos_1d: int | None = None
    delta_followers_7d: int | None = None
    delta_posts_7d: int | None = None
    delta_videos_7d: int | None = None

    @field_validator("prev_1d_scraped_at", "prev_7d_scraped_at", mode="before")
    @classmethod
    def parse_prev_scraped_at(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_timestamp(v)
        return v


def _prior_lookup(alias: str, current: str, offset: str) -> str:
    """current 기준 offset 이상 이전의 가장 최근 스냅샷 1건을 조인하는 절."""
    return (
        f"LEFT JOIN {SNAPSHOTS_TABLE} {alias} ON {alias}.id = ("
        f"SELECT m.id FROM {SNAPSHOTS_TABLE} m "
        f"WHERE m.handle = {current}.handle AND m.platform = {current}.platform "
        f"AND m.scraped_at <= strftime('{_TS_FORMAT}', {current}.scraped_at, '{offset}') "
        f"ORDER BY m.scraped_at DESC LIMIT 1)"
    )


def _delta_select(current: str) -> str:
    c = current
    return (
        f"SELECT {c}.id, {c}.handle, {c}.platform, {c}.marketing_rep, "
        f"{c}.followers, {c}.likes, {c}.posts, {c}.videos, {c}.scraped_at, "
        f"p1.scraped_at AS prev_1d_scraped_at, p7.scraped_at AS prev_7d_scraped_at, "
        f"{c}.followers - p1.followers AS delta_followers_1d, "
        f"{c}.likes - p1.likes AS delta_likes_1d, "
        f"{c}.posts - p1.posts AS delta_posts_1d, "
        f"{c}.videos - p1.videos AS delta_videos_1d, "
        f"{c}.followers - p7.followers AS delta_followers_7d, "
        f"{c}.posts - p7.posts AS delta_posts_7d, "
        f"{c}.videos - p7.videos AS delta_videos_7d "
    )


def get_metrics_with_deltas(config: AppConfig) -> list[DeltaProjection]:
    """(handle, platform)별 최신 스냅샷과 1일/7일 델타 (팔로워 내림차순)."""
    sql = (
        f"WITH latest AS ({LATEST_PER_PAIR_SQL}) "
        f"{_delta_select('l')}"
        f"FROM latest l "
        f"{_prior_lookup('p1', 'l', '-24 hours')} "
        f"{_prior_lookup('p7', 'l', '-7 days')} "
        f"ORDER BY l.followers DESC"
    )
    rows = query_rows(sql, [], config.d1)
    return [DeltaProjection.model_validate(row) for row in rows]


def get_metrics_history_with_deltas(
    config: AppConfig,
    *,
    days: float = 90,
    now: datetime | None = None,
) -> list[DeltaProjection]:
    """최근 N일의 모든 스냅샷과 각각의 1일/7일 델타.

    이전 스냅샷은 조회 기간 밖에 있어도 된다.
    """
    now = now or utcnow()
    sql = (
        f"{_delta_select('h')}"
        f"FROM {SNAPSHOTS_TABLE} h "
        f"{_prior_lookup('p1', 'h', '-24 hours')} "
        f"{_prior_lookup('p7', 'h', '-7 days')} "
        f"WHERE h.scraped_at > ? "
        f"ORDER BY h.scraped_at DESC, h.followers DESC"
    )
    rows = query_rows(sql, [format_timestamp(now - timedelta(days=days))], config.d1)
    return [DeltaProjection.model_validate(row) for row in rows]


# ── 기간 성장률 ──────────────────────────────────────────


@dataclass
class HistoryPoint:
    at: datetime
    value: int


@dataclass
class RangeGrowth:
    growth: int
    growth_percent: float
    baseline_value: int


def compute_range_growth(history: Sequence[HistoryPoint], current_value: int) -> RangeGrowth:
    """호출자가 미리 잘라 둔 기간(예: 최근 30일)의 성장량.

    baseline은 기간 내 가장 이른 값. baseline이 0이면 growth_percent는 0.0
    (0 나누기는 오류가 아니라 알려진 경계 케이스로 취급).
    """
    if not history:
        return RangeGrowth(growth=0, growth_percent=0.0, baseline_value=current_value)

    baseline = min(history, key=lambda p: p.at).value
    growth = current_value - baseline
    growth_percent = (growth / baseline) * 100 if baseline != 0 else 0.0
    return RangeGrowth(growth=growth, growth_percent=growth_percent, baseline_value=baseline)


# ── 담당자별 집계 ────────────────────────────────────────


@dataclass
class RepStats:
    rep: str
    total_followers: int
    total_growth: int
    creator_count: int


def get_rep_stats(config: AppConfig) -> list[RepStats]:
    """marketing_rep별 팔로워 합계, 1일 성장 합계, 크리에이터 수.

    1일 이전 스냅샷이 없는 쌍은 성장 합계에 포함되지 않는다.
    """
    sql = (
        f"WITH latest AS ({LATEST_PER_PAIR_SQL}) "
        f"SELECT COALESCE(l.marketing_rep, 'Unassigned') AS rep, "
        f"SUM(l.followers) AS total_followers, "
        f"COALESCE(SUM(l.followers - p1.followers), 0) AS total_growth, "
        f"COUNT(DISTINCT lower(l.handle)) AS creator_count "
        f"FROM latest l "
        f"{_prior_lookup('p1', 'l', '-24 hours')} "
        f"GROUP BY COALESCE(l.marketing_rep, 'Unassigned') "
        f"ORDER BY total_followers DESC"
    )
    rows = query_rows(sql, [], config.d1)
    return [
        RepStats(
            rep=str(row["rep"]),
            total_followers=int(row["total_followers"] or 0),
            total_growth=int(row["total_growth"] or 0),
            creator_count=int(row["creator_count"] or 0),
        )
        for row in rows
    ]
