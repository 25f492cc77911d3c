"""오래된 스냅샷 아카이브.

운영자가 명시적으로 실행하는 작업이다 (자동 실행 없음).
원본 테이블에서는 아카이브 테이블에 복사된 id만 삭제한다.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from creator_metrics.config import AppConfig
from creator_metrics.d1 import ARCHIVE_TABLE, SNAPSHOTS_TABLE, _validate_d1_auth, query_rows
from creator_metrics.models import format_timestamp, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

_ARCHIVE_COLUMNS = "id, handle, platform, marketing_rep, followers, likes, posts, videos, scraped_at"


@dataclass
class ArchiveResult:
    archived: int
    deleted: int
    cutoff: datetime


@dataclass
class TableStats:
    table: str
    count: int
    oldest_scraped_at: datetime | None
    newest_scraped_at: datetime | None


def archive_old_snapshots(
    config: AppConfig,
    *,
    retention_days: int = 90,
    now: datetime | None = None,
) -> ArchiveResult:
    """retention_days보다 오래된 스냅샷을 아카이브 테이블로 옮긴다."""
    if retention_days < 1:
        raise ValueError(f"retention_days must be >= 1: {retention_days}")
    _validate_d1_auth(config.d1)

    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    cutoff_ts = format_timestamp(cutoff)

    archived_rows = query_rows(
        f"INSERT OR IGNORE INTO {ARCHIVE_TABLE} ({_ARCHIVE_COLUMNS}, archived_at) "
        f"SELECT {_ARCHIVE_COLUMNS}, ? FROM {SNAPSHOTS_TABLE} WHERE scraped_at < ? "
        f"RETURNING id",
        [format_timestamp(now), cutoff_ts],
        config.d1,
    )
    deleted_rows = query_rows(
        f"DELETE FROM {SNAPSHOTS_TABLE} "
        f"WHERE scraped_at < ? AND id IN (SELECT id FROM {ARCHIVE_TABLE}) "
        f"RETURNING id",
        [cutoff_ts],
        config.d1,
    )

    result = ArchiveResult(archived=len(archived_rows), deleted=len(deleted_rows), cutoff=cutoff)
    logger.info(
        "Archived %d snapshots older than %s (deleted %d)",
        result.archived,
        cutoff_ts,
        result.deleted,
        extra={
            "event_code": "SNAPSHOT_ARCHIVE",
            "counts": {"archived": result.archived, "deleted": result.deleted},
        },
    )
    return result


def _table_stats(table: str, config: AppConfig) -> TableStats:
    rows = query_rows(
        f"SELECT COUNT(*) AS count, MIN(scraped_at) AS oldest, MAX(scraped_at) AS newest FROM {table}",
        [],
        config.d1,
    )
    row = rows[0] if rows else {}
    oldest = row.get("oldest")
    newest = row.get("newest")
    return TableStats(
        table=table,
        count=int(row.get("count") or 0),
        oldest_scraped_at=parse_timestamp(str(oldest)) if oldest else None,
        newest_scraped_at=parse_timestamp(str(newest)) if newest else None,
    )


def get_archive_stats(config: AppConfig) -> list[TableStats]:
    """원본/아카이브 테이블의 행 수와 가장 오래된/최신 스냅샷 시각."""
    return [_table_stats(SNAPSHOTS_TABLE, config), _table_stats(ARCHIVE_TABLE, config)]
