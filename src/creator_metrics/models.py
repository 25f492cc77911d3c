"""측정값/스냅샷 데이터 모델 (Pydantic)."""

from __future__ import annotations

import math
import string
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Platform = Literal["tiktok", "instagram", "twitter"]
PLATFORMS: tuple[str, ...] = ("tiktok", "instagram", "twitter")

COUNTER_FIELDS: tuple[str, ...] = ("followers", "likes", "posts", "videos")

# SQLite INTEGER 상한 (부호 있는 64비트)
MAX_COUNTER = 2**63 - 1

# SQLite NOCASE는 ASCII 대소문자만 같게 본다
_ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


def _coerce_counter(value: Any) -> int:
    """카운터 값을 0 이상 MAX_COUNTER 이하의 정수로 보정한다 (거부하지 않음)."""
    if value is None:
        return 0
    if isinstance(value, int):
        return min(MAX_COUNTER, max(0, value))
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return min(MAX_COUNTER, max(0, math.floor(number)))


class Measurement(BaseModel):
    """수집 작업이 전달하는 1회 측정값.

    - 값 범위 오류는 거부하지 않고 보정한다 (음수 → 0, 실수 → 내림)
    - handle은 앞뒤 공백 제거, platform은 소문자로 정규화
    """

    handle: str
    platform: str
    marketing_rep: str | None = None
    followers: int = 0
    likes: int = 0
    posts: int = 0
    videos: int = 0

    @field_validator("handle", mode="before")
    @classmethod
    def strip_handle(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()

    @field_validator("platform", mode="before")
    @classmethod
    def normalize_platform(cls, v: Any) -> str:
        return "" if v is None else str(v).strip().lower()

    @field_validator("marketing_rep", mode="before")
    @classmethod
    def blank_rep_to_none(cls, v: Any) -> str | None:
        if v is None:
            return None
        rep = str(v).strip()
        return rep or None

    @field_validator(*COUNTER_FIELDS, mode="before")
    @classmethod
    def clamp_counter(cls, v: Any) -> int:
        return _coerce_counter(v)

    @property
    def key(self) -> tuple[str, str]:
        """(handle, platform) 자연 키. handle은 대소문자 무시."""
        return snapshot_key(self.handle, self.platform)


class MetricSnapshot(BaseModel):
    """metrics_snapshots 테이블의 불변 행."""

    id: int
    handle: str
    platform: str
    marketing_rep: str | None = None
    followers: int = 0
    likes: int = 0
    posts: int = 0
    videos: int = 0
    scraped_at: datetime = Field(..., description="스토어가 적재 시점에 부여 (UTC)")

    @field_validator("scraped_at", mode="before")
    @classmethod
    def parse_scraped_at(cls, v: Any) -> Any:
        if isinstance(v, str):
            return parse_timestamp(v)
        return v


def snapshot_key(handle: str, platform: str) -> tuple[str, str]:
    """D1 컬럼 collation(NOCASE)과 같은 규칙의 비교 키. ASCII 문자만 소문자로 접는다."""
    return handle.strip().translate(_ASCII_LOWER), platform.strip().translate(_ASCII_LOWER)


# ── 타임스탬프 ─────────────────────────────────────────
# D1(SQLite)에는 TEXT로 저장한다. 밀리초 고정 포맷이므로 문자열 정렬 == 시간 정렬.
# SQLite strftime('%Y-%m-%dT%H:%M:%fZ', ...) 결과와 동일한 포맷이다.


def format_timestamp(value: datetime) -> str:
    """datetime → 'YYYY-MM-DDTHH:MM:SS.mmmZ' (UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    """저장된 타임스탬프 문자열을 aware datetime(UTC)으로 변환한다."""
    text = value.strip().replace(" ", "T")
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def utcnow() -> datetime:
    return datetime.now(tz=UTC)
