"""D1 HTTP API 클라이언트.

Cloudflare D1 HTTP API를 통해 스냅샷 테이블을 읽고 쓴다.
- parameterized query만 사용 (SQL injection 방지)
- 쿼리 1회 = 1 트랜잭션 (D1은 쿼리 단위 autocommit)
- 재시도 없음: 재시도는 상위 수집 작업의 책임
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from creator_metrics.config import D1Config
from creator_metrics.models import PLATFORMS

logger = logging.getLogger(__name__)

_D1_API_BASE = "https://api.cloudflare.com/client/v4/accounts"

SNAPSHOTS_TABLE = "metrics_snapshots"
ARCHIVE_TABLE = "metrics_snapshots_archive"
LOCKS_TABLE = "snapshot_insert_locks"

_PLATFORM_CHECK = ", ".join(f"'{p}'" for p in PLATFORMS)

# handle은 COLLATE NOCASE: 대소문자만 다른 handle은 같은 계정이다.
SCHEMA_STATEMENTS: list[str] = [
    f"""CREATE TABLE IF NOT EXISTS {SNAPSHOTS_TABLE} (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  handle TEXT NOT NULL COLLATE NOCASE,
  platform TEXT NOT NULL CHECK (platform IN ({_PLATFORM_CHECK})),
  marketing_rep TEXT,
  followers INTEGER NOT NULL DEFAULT 0,
  likes INTEGER NOT NULL DEFAULT 0,
  posts INTEGER NOT NULL DEFAULT 0,
  videos INTEGER NOT NULL DEFAULT 0,
  scraped_at TEXT NOT NULL,
  CONSTRAINT unique_snapshot UNIQUE (handle, platform, scraped_at)
)""",
    f"CREATE INDEX IF NOT EXISTS idx_snapshots_handle_platform ON {SNAPSHOTS_TABLE}(handle, platform)",
    (
        f"CREATE INDEX IF NOT EXISTS idx_snapshots_handle_platform_time_desc "
        f"ON {SNAPSHOTS_TABLE}(handle, platform, scraped_at DESC)"
    ),
    f"CREATE INDEX IF NOT EXISTS idx_snapshots_scraped_at ON {SNAPSHOTS_TABLE}(scraped_at DESC)",
    f"CREATE INDEX IF NOT EXISTS idx_snapshots_platform_time ON {SNAPSHOTS_TABLE}(platform, scraped_at DESC)",
    f"CREATE INDEX IF NOT EXISTS idx_snapshots_marketing_rep ON {SNAPSHOTS_TABLE}(marketing_rep)",
    f"""CREATE TABLE IF NOT EXISTS {ARCHIVE_TABLE} (
  id INTEGER PRIMARY KEY,
  handle TEXT NOT NULL COLLATE NOCASE,
  platform TEXT NOT NULL,
  marketing_rep TEXT,
  followers INTEGER NOT NULL DEFAULT 0,
  likes INTEGER NOT NULL DEFAULT 0,
  posts INTEGER NOT NULL DEFAULT 0,
  videos INTEGER NOT NULL DEFAULT 0,
  scraped_at TEXT NOT NULL,
  archived_at TEXT NOT NULL
)""",
    f"CREATE INDEX IF NOT EXISTS idx_archive_scraped_at ON {ARCHIVE_TABLE}(scraped_at)",
    f"""CREATE TABLE IF NOT EXISTS {LOCKS_TABLE} (
  lock_key INTEGER PRIMARY KEY,
  owner TEXT NOT NULL,
  acquired_at TEXT NOT NULL,
  expires_at TEXT NOT NULL
)""",
]


def _validate_d1_auth(config: D1Config) -> None:
    """D1 인증 설정을 검증한다."""
    missing = []
    if not config.account_id:
        missing.append("account_id")
    if not config.database_id:
        missing.append("database_id")
    if not config.api_token:
        missing.append("api_token")
    if missing:
        raise RuntimeError(f"D1 auth config missing: {', '.join(missing)}")


def _d1_query(sql: str, params: list[Any], config: D1Config) -> dict[str, Any]:
    """D1 HTTP API에 쿼리를 1회 실행한다.

    HTTP 오류는 httpx.HTTPStatusError, D1 레벨 실패(success=false)는 RuntimeError.
    """
    url = f"{_D1_API_BASE}/{config.account_id}/d1/database/{config.database_id}/query"
    headers = {
        "Authorization": f"Bearer {config.api_token}",
        "Content-Type": "application/json",
    }
    body = {"sql": sql, "params": params}

    with httpx.Client(timeout=config.timeout_sec) as client:
        resp = client.post(url, headers=headers, json=body)
        resp.raise_for_status()
        payload: dict[str, Any] = resp.json()

    if not payload.get("success", False):
        errors = payload.get("errors") or []
        detail = "; ".join(str(e.get("message", e)) if isinstance(e, dict) else str(e) for e in errors)
        raise RuntimeError(f"D1 query failed: {detail or 'unknown error'}")

    return payload


def query_rows(sql: str, params: list[Any], config: D1Config) -> list[dict[str, Any]]:
    """D1에서 SELECT(또는 RETURNING) 결과를 dict 리스트로 반환한다."""
    resp = _d1_query(sql, params, config)
    try:
        results = resp["result"][0]["results"]
        return results if isinstance(results, list) else []
    except (KeyError, IndexError, TypeError):
        return []


def init_schema(config: D1Config) -> int:
    """테이블/인덱스를 생성한다 (IF NOT EXISTS, 멱등). 실행한 문장 수를 반환."""
    _validate_d1_auth(config)
    for statement in SCHEMA_STATEMENTS:
        _d1_query(statement, [], config)
    logger.info(
        "Schema initialized: %d statements",
        len(SCHEMA_STATEMENTS),
        extra={"event_code": "SCHEMA_INIT"},
    )
    return len(SCHEMA_STATEMENTS)


def is_database_configured(config: D1Config) -> bool:
    """D1 연결 가능 여부를 SELECT 1로 확인한다."""
    try:
        _validate_d1_auth(config)
        query_rows("SELECT 1 AS ok", [], config)
    except (RuntimeError, httpx.HTTPError) as e:
        logger.warning("D1 connectivity check failed: %s", e)
        return False
    return True
