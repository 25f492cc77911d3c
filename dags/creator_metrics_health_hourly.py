"""크리에이터 지표 수집 신선도 시간별 점검 DAG.

매시 20분에 스냅샷 신선도를 점검하고, 조치가 필요하면 Slack 알림 후 task를 실패 처리한다.

Task 흐름:
  health_check
"""

from __future__ import annotations

import os
from pathlib import Path

import pendulum
from airflow.providers.standard.operators.bash import BashOperator
from airflow.sdk import dag


# ─── 상수 ───────────────────────────────────────────────
_project_root = os.environ.get("CREATOR_METRICS_ROOT")
PROJECT_ROOT = Path(_project_root) if _project_root else Path(__file__).resolve().parent.parent
CONFIG_PATH = PROJECT_ROOT / "config.yaml"

# ─── Slack 실패 알림 ──────────────────────────────────
_slack_url = os.environ.get("SLACK_WEBHOOK_URL", "")

try:
    from creator_metrics.notify import SlackWebhookNotifier

    _failure_notifier = SlackWebhookNotifier(webhook_url=_slack_url) if _slack_url else None
except ImportError:
    _failure_notifier = None


# ─── DAG 정의 ───────────────────────────────────────────

# 조치 필요 상태면 task 실패 (재시도 없음)
DEFAULT_ARGS = {
    "owner": "creator-metrics",
    "retries": 0,
    **({"on_failure_callback": _failure_notifier} if _failure_notifier else {}),
}


@dag(
    dag_id="creator_metrics_health_hourly",
    description="크리에이터 지표 스냅샷 신선도 시간별 점검",
    schedule="20 * * * *",
    start_date=pendulum.datetime(2025, 1, 1, tz="UTC"),
    catchup=False,
    max_active_runs=1,
    tags=["creator-metrics", "health", "hourly"],
    default_args=DEFAULT_ARGS,
)
def creator_metrics_health_hourly():
    BashOperator(
        task_id="health_check",
        bash_command=f"creator-metrics health-check --alert --config {CONFIG_PATH} --json-log",
    )


# DAG 인스턴스 생성
creator_metrics_health_hourly()
