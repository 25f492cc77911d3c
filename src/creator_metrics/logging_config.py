"""JSON 구조화 로깅 설정."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

# JSON 라인에 병합하는 extra 키
EXTRA_KEYS: tuple[str, ...] = (
    "event_code",
    "handle",
    "platform",
    "metric",
    "severity",
    "counts",
    "duration_ms",
    "status",
)


class JsonFormatter(logging.Formatter):
    """JSON 형태로 로그 레코드를 포매팅한다."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in EXTRA_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(*, json_format: bool = True, level: int = logging.INFO) -> None:
    """creator_metrics 로거에 핸들러를 설정한다.

    Args:
        json_format: True이면 JSON 포맷, False이면 기본 포맷
        level: 로그 레벨
    """
    root = logging.getLogger("creator_metrics")
    root.setLevel(level)

    # 기존 핸들러 제거 (중복 방지)
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)

    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    root.addHandler(handler)
