"""Slack 알림 모듈.

Slack Incoming Webhook으로 수집 결과/이상 탐지/신선도 상태를 알린다.
- 재시도 없음: 1회 전송, 실패 시 False 반환 + 로그 기록
- 알림 실패가 수집 파이프라인을 막거나 예외로 번지지 않는다
- Airflow 3.0+ BaseNotifier 서브클래스 지원
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

import httpx

from creator_metrics.models import format_timestamp, utcnow

if TYPE_CHECKING:
    from creator_metrics.anomaly import Anomaly
    from creator_metrics.health import HealthReport

logger = logging.getLogger(__name__)

_PLATFORM_LABELS = {"tiktok": "TikTok", "instagram": "Instagram", "twitter": "Twitter/X"}


def platform_label(platform: str) -> str:
    return _PLATFORM_LABELS.get(platform, platform)


def _post_webhook(payload: dict[str, Any], webhook_url: str, *, timeout: float = 10.0) -> bool:
    """webhook에 1회 POST. 네트워크/HTTP 오류는 로그 후 False."""
    if not webhook_url:
        logger.warning("Slack webhook URL not configured, alert not sent")
        return False

    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(webhook_url, json=payload)
            resp.raise_for_status()
    except httpx.HTTPStatusError as e:
        logger.error("Slack webhook returned non-OK: %d", e.response.status_code)
        return False
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        logger.error("Failed to send Slack alert: %s", e)
        return False
    return True


# ── 일반 알림 ────────────────────────────────────────────


@dataclass
class AlertMessage:
    """알림 메시지."""

    level: Literal["INFO", "WARN", "ERROR"]
    title: str
    text: str
    context: dict[str, Any] = field(default_factory=dict)


_LEVEL_EMOJI = {"INFO": ":information_source:", "WARN": ":warning:", "ERROR": ":rotating_light:"}


def send_slack_webhook(message: AlertMessage, webhook_url: str, *, timeout: float = 10.0) -> bool:
    """Slack Incoming Webhook으로 텍스트 메시지 전송."""
    emoji = _LEVEL_EMOJI.get(message.level, "")
    payload: dict[str, Any] = {
        "text": f"{emoji} *[{message.level}] {message.title}*\n{message.text}",
    }
    return _post_webhook(payload, webhook_url, timeout=timeout)


def build_health_alert(report: HealthReport) -> AlertMessage:
    """HealthReport → AlertMessage (healthy=INFO, degraded=WARN, stale=ERROR)."""
    level: Literal["INFO", "WARN", "ERROR"]
    if report.status == "stale":
        level = "ERROR"
    elif report.status == "degraded":
        level = "WARN"
    else:
        level = "INFO"

    lines = [f"Status: {report.status.upper()}"]
    if report.latest_snapshot_at is not None:
        lines.append(
            f"Latest snapshot: {format_timestamp(report.latest_snapshot_at)} "
            f"({report.hours_since_latest_snapshot}h ago, threshold {report.stale_threshold_hours:g}h)"
        )
    for p in report.platforms:
        age = "never" if p.hours_since_latest_snapshot is None else f"{p.hours_since_latest_snapshot}h ago"
        lines.append(
            f"  - {platform_label(p.platform)}: {p.status} ({age}, "
            f"{p.snapshots_last_24h} snapshots / {p.handles_last_24h} handles in 24h)"
        )
    if report.issues:
        lines.append(f"Issues ({len(report.issues)}):")
        lines.extend(f"  - {issue}" for issue in report.issues)

    return AlertMessage(
        level=level,
        title="Scrape Health Check",
        text="\n".join(lines),
        context={"status": report.status, "action_required": report.action_required},
    )


# ── 수집 결과 알림 (Block Kit) ───────────────────────────


@dataclass
class PlatformStat:
    """플랫폼별 수집 성공/실패 현황."""

    attempted: int = 0
    succeeded: int = 0
    failed: list[str] = field(default_factory=list)
    success_ratio: float | None = None


@dataclass
class DatabaseCounts:
    inserted: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class ScrapeAlertPayload:
    reasons: list[str]
    platform_stats: dict[str, PlatformStat]
    database: DatabaseCounts
    anomalies: list[Anomaly] | None = None
    duration_ms: float | None = None
    timestamp: str = field(default_factory=lambda: format_timestamp(utcnow()))


def build_slack_blocks(payload: ScrapeAlertPayload) -> list[dict[str, Any]]:
    """요약 → 플랫폼별 성공률 → 실패 handle → 이상 탐지 → 타임스탬프 순서의 Block Kit 블록."""
    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": "Creator Metrics Scrape Alert", "emoji": True},
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": "*Alert Reasons:*\n" + "\n".join(f"- {r}" for r in payload.reasons),
            },
        },
    ]

    platform_lines = []
    for platform, stat in payload.platform_stats.items():
        ratio = f" ({round(stat.success_ratio * 100)}%)" if stat.success_ratio is not None else ""
        platform_lines.append(
            f"*{platform_label(platform)}:* {stat.succeeded}/{stat.attempted} succeeded{ratio}"
        )
    db = payload.database
    blocks.append(
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"*Scrape Summary:*\n{chr(10).join(platform_lines)}\n\n"
                    f"*Database:* {db.inserted} inserted, {db.skipped} skipped, {db.failed} failed"
                ),
            },
        }
    )

    failed_handles = [
        f"*{platform_label(platform)}:* {', '.join(stat.failed)}"
        for platform, stat in payload.platform_stats.items()
        if stat.failed
    ]
    if failed_handles:
        blocks.append(
            {
                "type": "section",
                "text": {"type": "mrkdwn", "text": "*Failed Handles:*\n" + "\n".join(failed_handles)},
            }
        )

    if payload.anomalies:
        anomaly_lines = []
        for a in payload.anomalies:
            severity = "LIKELY ERROR" if a.severity == "likely_error" else "SUSPICIOUS"
            anomaly_lines.append(
                f"[{severity}] *{a.handle}* ({platform_label(a.platform)}): {a.metric} dropped "
                f"{round(a.drop_percent)}% ({a.previous_value:,} -> {a.new_value:,})"
            )
        blocks.append(
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": f"*Anomalies Detected ({len(payload.anomalies)}):*\n" + "\n".join(anomaly_lines),
                },
            }
        )

    footer = f"Timestamp: {payload.timestamp}"
    if payload.duration_ms:
        footer += f" | Duration: {payload.duration_ms / 1000:.1f}s"
    blocks.append({"type": "context", "elements": [{"type": "mrkdwn", "text": footer}]})

    return blocks


def send_scrape_alert(payload: ScrapeAlertPayload, webhook_url: str, *, timeout: float = 10.0) -> bool:
    """수집 결과 알림을 Block Kit 포맷으로 전송한다. 실패해도 예외를 던지지 않는다."""
    body = {
        "text": f"Scrape Alert: {', '.join(payload.reasons)}",
        "blocks": build_slack_blocks(payload),
    }
    return _post_webhook(body, webhook_url, timeout=timeout)


# Airflow 3.0+ BaseNotifier 지원
try:
    from airflow.sdk.bases.notifier import BaseNotifier
except ImportError:
    try:
        from airflow.notifications.basenotifier import BaseNotifier
    except ImportError:
        BaseNotifier = None  # type: ignore[assignment, misc]

if BaseNotifier is not None:

    class SlackWebhookNotifier(BaseNotifier):  # type: ignore[misc]
        """Airflow 3.0+ on_failure_callback용 Slack 알림 노티파이어."""

        template_fields = ("message",)

        def __init__(self, webhook_url: str, message: str = "") -> None:
            super().__init__()
            self.webhook_url = webhook_url
            self.message = message

        def notify(self, context: dict[str, Any]) -> None:
            """context에서 task_id, dag_id, log_url 추출 후 Slack 전송."""
            task_instance = context.get("task_instance")
            dag_id = "unknown"
            task_id = "unknown"
            log_url = ""

            if task_instance is not None:
                dag_id = getattr(task_instance, "dag_id", "unknown")
                task_id = getattr(task_instance, "task_id", "unknown")
                log_url = getattr(task_instance, "log_url", "")

            text = self.message or f"Task failed: {dag_id}.{task_id}"
            if log_url:
                text += f"\n<{log_url}|View Log>"

            alert = AlertMessage(
                level="ERROR",
                title=f"Airflow Task Failed: {dag_id}.{task_id}",
                text=text,
                context={"dag_id": dag_id, "task_id": task_id},
            )
            send_slack_webhook(alert, self.webhook_url)
