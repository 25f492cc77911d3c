"""스냅샷 스토어.

metrics_snapshots는 append-only 테이블이다. 배치 적재 프로토콜:
1. 스냅샷 테이블 전용 lock 획득 (대기하지 않음, 실패 시 배치 전체 skipped)
2. 배치 내 (handle, platform) 중복 제거 (마지막 값 우선)
3. 최근 N시간 내 스냅샷이 있는 쌍은 skipped
4. 남은 후보를 단일 INSERT OR IGNORE 문으로 적재
5. 모든 종료 경로에서 lock 해제

D1에는 advisory lock이 없으므로 lock은 snapshot_insert_locks 테이블의 lease 행이다.
lease는 lock_ttl_sec 후 만료되어 다른 실행이 가져갈 수 있다. INSERT 문은 lease 소유를
조건으로 하며, lease를 잃은 배치는 아무것도 쓰지 않고 failed로 끝난다.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal
from uuid import uuid4

import orjson

from creator_metrics.config import AppConfig
from creator_metrics.d1 import LOCKS_TABLE, SNAPSHOTS_TABLE, _validate_d1_auth, query_rows
from creator_metrics.models import (
    Measurement,
    MetricSnapshot,
    format_timestamp,
    snapshot_key,
    utcnow,
)

logger = logging.getLogger(__name__)

LOCK_UNAVAILABLE_MESSAGE = "Another snapshot insert is already in progress"
LOCK_LOST_MESSAGE = "Snapshot insert lock lease expired before insert"

SNAPSHOT_COLUMNS = "id, handle, platform, marketing_rep, followers, likes, posts, videos, scraped_at"

# (handle, platform)별 최신 스냅샷. PARTITION BY handle은 컬럼 collation(NOCASE)을 따른다.
LATEST_PER_PAIR_SQL = f"""
SELECT {SNAPSHOT_COLUMNS} FROM (
  SELECT {SNAPSHOT_COLUMNS},
         ROW_NUMBER() OVER (PARTITION BY handle, platform ORDER BY scraped_at DESC) AS rn
  FROM {SNAPSHOTS_TABLE}
) WHERE rn = 1
"""

InsertStatus = Literal["inserted", "skipped", "failed"]


@dataclass
class SnapshotInsertDetail:
    """후보 1건의 적재 결과."""

    handle: str
    platform: str
    status: InsertStatus
    error: str | None = None


@dataclass
class InsertSnapshotsResult:
    """배치 적재 결과."""

    inserted: int = 0
    skipped: int = 0
    failed: int = 0
    lock_unavailable: bool = False
    details: list[SnapshotInsertDetail] = field(default_factory=list)

    def add(self, detail: SnapshotInsertDetail) -> None:
        if detail.status == "inserted":
            self.inserted += 1
        elif detail.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.details.append(detail)


# ── lock ─────────────────────────────────────────────────


class InsertLockLostError(RuntimeError):
    """적재 도중 lease가 만료되어 다른 실행에 넘어간 경우."""



def acquire_insert_lock(config: AppConfig, owner: str, *, now: datetime | None = None) -> bool:
    """스냅샷 적재 lock을 즉시 획득 시도한다 (대기 없음).

    만료된 lease만 먼저 정리한 뒤 INSERT OR IGNORE로 lock 행을 선점한다.
    PRIMARY KEY(lock_key) 덕분에 동시에 여러 프로세스가 시도해도 하나만 성공한다.
    """
    now = now or utcnow()
    key = config.snapshots.lock_key
    now_ts = format_timestamp(now)
    expires_ts = format_timestamp(now + timedelta(seconds=config.snapshots.lock_ttl_sec))

    query_rows(
        f"DELETE FROM {LOCKS_TABLE} WHERE lock_key = ? AND expires_at <= ?",
        [key, now_ts],
        config.d1,
    )
    rows = query_rows(
        f"INSERT OR IGNORE INTO {LOCKS_TABLE} (lock_key, owner, acquired_at, expires_at) "
        f"VALUES (?, ?, ?, ?) RETURNING owner",
        [key, owner, now_ts, expires_ts],
        config.d1,
    )
    return bool(rows) and rows[0].get("owner") == owner


def holds_insert_lock(config: AppConfig, owner: str) -> bool:
    rows = query_rows(
        f"SELECT owner FROM {LOCKS_TABLE} WHERE lock_key = ? AND owner = ?",
        [config.snapshots.lock_key, owner],
        config.d1,
    )
    return bool(rows)


def release_insert_lock(config: AppConfig, owner: str) -> None:
    """자신이 보유한 lock만 해제한다. 해제 실패는 로그만 남긴다."""
    try:
        query_rows(
            f"DELETE FROM {LOCKS_TABLE} WHERE lock_key = ? AND owner = ?",
            [config.snapshots.lock_key, owner],
            config.d1,
        )
    except Exception as e:
        logger.error(
            "Failed to release snapshot insert lock: %s",
            e,
            extra={"event_code": "LOCK_RELEASE_FAILED"},
        )


# ── 배치 적재 ────────────────────────────────────────────


def _all_with_status(
    measurements: Sequence[Measurement],
    status: InsertStatus,
    error: str,
    *,
    lock_unavailable: bool = False,
) -> InsertSnapshotsResult:
    result = InsertSnapshotsResult(lock_unavailable=lock_unavailable)
    for m in measurements:
        result.add(SnapshotInsertDetail(handle=m.handle, platform=m.platform, status=status, error=error))
    return result


def _insert_locked(
    measurements: Sequence[Measurement],
    config: AppConfig,
    now: datetime,
    owner: str,
) -> InsertSnapshotsResult:
    """lock 보유 상태에서 중복 제거 → 최근 스냅샷 필터 → 단일 INSERT."""
    result = InsertSnapshotsResult()

    deduped: dict[tuple[str, str], Measurement] = {}
    for m in measurements:
        if not m.handle:
            result.add(SnapshotInsertDetail(handle=m.handle, platform=m.platform, status="skipped", error="Empty handle"))
            continue
        if m.platform not in config.platforms:
            result.add(
                SnapshotInsertDetail(handle=m.handle, platform=m.platform, status="skipped", error="Unsupported platform")
            )
            continue
        # 같은 쌍이 여러 번 오면 마지막 값만 남긴다
        deduped[m.key] = m

    if not deduped:
        return result

    window_hours = config.snapshots.recent_window_hours
    window_start = format_timestamp(now - timedelta(hours=window_hours))
    handles = sorted({m.handle for m in deduped.values()})
    recent_rows = query_rows(
        f"SELECT DISTINCT handle, platform FROM {SNAPSHOTS_TABLE} "
        f"WHERE scraped_at > ? AND handle IN (SELECT value FROM json_each(?))",
        [window_start, orjson.dumps(handles).decode()],
        config.d1,
    )
    recent_keys = {snapshot_key(str(r["handle"]), str(r["platform"])) for r in recent_rows}

    to_insert = [m for key, m in deduped.items() if key not in recent_keys]
    inserted_keys: set[tuple[str, str]] = set()

    if to_insert:
        scraped_at = format_timestamp(now)
        payload = orjson.dumps(
            [
                {
                    "handle": m.handle,
                    "platform": m.platform,
                    "marketing_rep": m.marketing_rep,
                    "followers": m.followers,
                    "likes": m.likes,
                    "posts": m.posts,
                    "videos": m.videos,
                    "scraped_at": scraped_at,
                }
                for m in to_insert
            ]
        ).decode()
        inserted_rows = query_rows(
            f"INSERT OR IGNORE INTO {SNAPSHOTS_TABLE} "
            f"(handle, platform, marketing_rep, followers, likes, posts, videos, scraped_at) "
            f"SELECT json_extract(value, '$.handle'), json_extract(value, '$.platform'), "
            f"json_extract(value, '$.marketing_rep'), json_extract(value, '$.followers'), "
            f"json_extract(value, '$.likes'), json_extract(value, '$.posts'), "
            f"json_extract(value, '$.videos'), json_extract(value, '$.scraped_at') "
            f"FROM json_each(?) "
            f"WHERE EXISTS (SELECT 1 FROM {LOCKS_TABLE} WHERE lock_key = ? AND owner = ?) "
            f"RETURNING handle, platform",
            [payload, config.snapshots.lock_key, owner],
            config.d1,
        )
        if not inserted_rows and not holds_insert_lock(config, owner):
            raise InsertLockLostError(LOCK_LOST_MESSAGE)
        inserted_keys = {snapshot_key(str(r["handle"]), str(r["platform"])) for r in inserted_rows}

    for key, m in deduped.items():
        if key in inserted_keys:
            result.add(SnapshotInsertDetail(handle=m.handle, platform=m.platform, status="inserted"))
        elif key in recent_keys:
            result.add(
                SnapshotInsertDetail(
                    handle=m.handle,
                    platform=m.platform,
                    status="skipped",
                    error=f"Snapshot within last {window_hours:g}h already exists",
                )
            )
        else:
            result.add(
                SnapshotInsertDetail(handle=m.handle, platform=m.platform, status="skipped", error="Duplicate snapshot key")
            )

    return result


def insert_snapshots(
    measurements: Sequence[Measurement],
    config: AppConfig,
    *,
    now: datetime | None = None,
) -> InsertSnapshotsResult:
    """측정값 배치를 스냅샷으로 적재한다.

    - D1 인증 설정 누락은 RuntimeError (설정 오류는 즉시 실패)
    - lock 경합은 오류가 아님: 전체 skipped + lock_unavailable=True
    - 스토어 오류는 예외 대신 전체 failed 결과로 반환
    """
    if not measurements:
        return InsertSnapshotsResult()

    _validate_d1_auth(config.d1)
    now = now or utcnow()
    owner = uuid4().hex

    try:
        acquired = acquire_insert_lock(config, owner, now=now)
    except Exception as e:
        logger.error(
            "Snapshot insert lock acquisition failed: %s",
            e,
            extra={"event_code": "SNAPSHOT_INSERT_FAILED"},
        )
        return _all_with_status(measurements, "failed", str(e))

    if not acquired:
        logger.warning(
            "Snapshot insert skipped: lock %d is held by another run",
            config.snapshots.lock_key,
            extra={"event_code": "SNAPSHOT_LOCK_UNAVAILABLE", "counts": {"skipped": len(measurements)}},
        )
        return _all_with_status(measurements, "skipped", LOCK_UNAVAILABLE_MESSAGE, lock_unavailable=True)

    try:
        result = _insert_locked(measurements, config, now, owner)
    except Exception as e:
        logger.error(
            "Failed to insert snapshots batch: %s",
            e,
            extra={"event_code": "SNAPSHOT_INSERT_FAILED", "counts": {"failed": len(measurements)}},
        )
        return _all_with_status(measurements, "failed", str(e))
    finally:
        release_insert_lock(config, owner)

    logger.info(
        "Snapshot insert complete: inserted=%d, skipped=%d, failed=%d",
        result.inserted,
        result.skipped,
        result.failed,
        extra={
            "event_code": "SNAPSHOT_INSERT",
            "counts": {"inserted": result.inserted, "skipped": result.skipped, "failed": result.failed},
        },
    )
    return result


# ── 조회 ─────────────────────────────────────────────────


def _to_snapshots(rows: list[dict]) -> list[MetricSnapshot]:
    return [MetricSnapshot.model_validate(row) for row in rows]


def get_latest_metrics(config: AppConfig) -> list[MetricSnapshot]:
    """(handle, platform)별 최신 스냅샷 (팔로워 내림차순)."""
    rows = query_rows(f"{LATEST_PER_PAIR_SQL} ORDER BY followers DESC", [], config.d1)
    return _to_snapshots(rows)


def get_creator_history(
    handle: str,
    platform: str,
    config: AppConfig,
    *,
    days: float = 30,
    now: datetime | None = None,
) -> list[MetricSnapshot]:
    """특정 계정/플랫폼의 최근 N일 스냅샷 (최신순)."""
    now = now or utcnow()
    handle_key, platform_key = snapshot_key(handle, platform)
    rows = query_rows(
        f"SELECT {SNAPSHOT_COLUMNS} FROM {SNAPSHOTS_TABLE} "
        f"WHERE handle = ? AND platform = ? AND scraped_at > ? "
        f"ORDER BY scraped_at DESC",
        [handle_key, platform_key, format_timestamp(now - timedelta(days=days))],
        config.d1,
    )
    return _to_snapshots(rows)


def get_historical_data(
    config: AppConfig,
    *,
    days: float = 30,
    now: datetime | None = None,
) -> list[MetricSnapshot]:
    """최근 N일 전체 스냅샷 (최신순)."""
    now = now or utcnow()
    rows = query_rows(
        f"SELECT {SNAPSHOT_COLUMNS} FROM {SNAPSHOTS_TABLE} WHERE scraped_at > ? ORDER BY scraped_at DESC",
        [format_timestamp(now - timedelta(days=days))],
        config.d1,
    )
    return _to_snapshots(rows)
