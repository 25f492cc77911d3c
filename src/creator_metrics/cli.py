"""click CLI 엔트리포인트.

creator-metrics 명령으로 스냅샷 적재, 델타 조회, 신선도 점검, 아카이브를 실행합니다.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path

import click
import orjson

from creator_metrics.config import AppConfig, load_config
from creator_metrics.d1 import _validate_d1_auth, init_schema
from creator_metrics.deltas import get_metrics_history_with_deltas, get_metrics_with_deltas, get_rep_stats
from creator_metrics.health import get_scrape_health_report
from creator_metrics.ingest import run_ingestion
from creator_metrics.logging_config import setup_logging
from creator_metrics.models import Measurement
from creator_metrics.notify import build_health_alert, send_slack_webhook
from creator_metrics.retention import archive_old_snapshots, get_archive_stats
from creator_metrics.store import get_creator_history

logger = logging.getLogger(__name__)

_config_option = click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="설정 파일 경로 (기본: 프로젝트 루트 config.yaml)",
)
_json_log_option = click.option("--json-log/--no-json-log", default=True, help="JSON 로그 포맷 (기본: 활성)")


def _dump(data: object) -> str:
    return orjson.dumps(data, option=orjson.OPT_INDENT_2).decode()


def _load_jsonl(path: Path) -> tuple[list[Measurement], int]:
    """JSONL 파일을 읽어 Measurement 리스트로 변환한다.

    Returns:
        (measurements, error_count) 튜플
    """
    measurements: list[Measurement] = []
    errors = 0
    with open(path, "rb") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                measurements.append(Measurement.model_validate(orjson.loads(line)))
            except ValueError as exc:
                errors += 1
                logger.warning("Parse error at %s line %d: %s", path.name, line_no, exc)
    return measurements, errors


def _load_checked_config(config_path: Path | None) -> AppConfig:
    """설정 로딩 + D1 인증 검증. 누락 시 종료 코드 1."""
    config = load_config(config_path)
    try:
        _validate_d1_auth(config.d1)
    except RuntimeError as exc:
        click.echo(f"D1 auth error: {exc}", err=True)
        raise SystemExit(1) from exc
    return config


@click.group()
@click.version_option(version="0.1.0", prog_name="creator-metrics")
def main() -> None:
    """Creator Metrics - 크리에이터 소셜 지표 스냅샷을 관리합니다."""


@main.command("init-db")
@_config_option
@_json_log_option
def init_db(config_path: Path | None, json_log: bool) -> None:
    """D1에 테이블/인덱스를 생성합니다 (멱등)."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    count = init_schema(config.d1)
    click.echo(f"[init-db] {count} statements applied")


@main.command()
@click.option(
    "--input-jsonl",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="측정값 JSONL 파일 (1줄 = 1 측정값)",
)
@click.option("--alert/--no-alert", default=True, help="알림 사유가 있으면 Slack 전송 (기본: 활성)")
@_config_option
@_json_log_option
def ingest(input_jsonl: Path, alert: bool, config_path: Path | None, json_log: bool) -> None:
    """측정값 배치를 이상 탐지 후 스냅샷으로 적재합니다."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    measurements, parse_errors = _load_jsonl(input_jsonl)
    click.echo(f"[ingest] loaded {len(measurements)} measurements from {input_jsonl.name}")
    if parse_errors:
        click.echo(f"  parse errors: {parse_errors}", err=True)

    report = run_ingestion(measurements, config, alert=alert)
    result = report.insert

    click.echo(
        f"[ingest] inserted={result.inserted}, skipped={result.skipped}, failed={result.failed}, "
        f"anomalies={len(report.anomalies)}"
    )
    for reason in report.reasons:
        click.echo(f"  alert reason: {reason}")
    if report.reasons and alert:
        click.echo(f"  alert sent: {report.alert_sent}")

    if result.failed:
        click.echo(f"ERROR: {result.failed} snapshot insert(s) failed", err=True)
        raise SystemExit(1)


@main.command()
@click.option(
    "--history-days",
    default=None,
    type=click.IntRange(min=1),
    help="지정 시 최근 N일의 모든 스냅샷 델타 (기본: 계정별 최신 스냅샷만)",
)
@_config_option
@_json_log_option
def deltas(history_days: int | None, config_path: Path | None, json_log: bool) -> None:
    """1일/7일 델타를 JSON으로 출력합니다."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    if history_days is None:
        rows = get_metrics_with_deltas(config)
    else:
        rows = get_metrics_history_with_deltas(config, days=history_days)
    click.echo(_dump([row.model_dump(mode="json") for row in rows]))


@main.command()
@click.option("--handle", required=True, help="계정 handle (대소문자 무시)")
@click.option("--platform", required=True, help="플랫폼 (tiktok, instagram, twitter)")
@click.option("--days", default=30, type=click.IntRange(min=1), help="조회 기간 (기본: 30일)")
@_config_option
@_json_log_option
def history(handle: str, platform: str, days: int, config_path: Path | None, json_log: bool) -> None:
    """특정 계정의 스냅샷 이력을 출력합니다."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    rows = get_creator_history(handle, platform, config, days=days)
    click.echo(_dump([row.model_dump(mode="json") for row in rows]))


@main.command("health-check")
@click.option("--cadence-hours", default=None, type=float, help="기대 수집 주기 (기본: 설정값)")
@click.option("--stale-threshold-hours", default=None, type=float, help="stale 판정 임계치 (기본: 설정값)")
@click.option("--alert", is_flag=True, default=False, help="조치가 필요하면 Slack 알림 전송")
@_config_option
@_json_log_option
def health_check(
    cadence_hours: float | None,
    stale_threshold_hours: float | None,
    alert: bool,
    config_path: Path | None,
    json_log: bool,
) -> None:
    """스냅샷 신선도를 점검합니다. 조치가 필요하면 종료 코드 1."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    report = get_scrape_health_report(
        config,
        cadence_hours=cadence_hours,
        stale_threshold_hours=stale_threshold_hours,
    )
    click.echo(_dump(asdict(report)))

    if alert and report.action_required:
        sent = send_slack_webhook(
            build_health_alert(report),
            config.alerts.webhook_url,
            timeout=config.alerts.timeout_sec,
        )
        click.echo(f"[health-check] alert sent: {sent}")

    if report.action_required:
        click.echo(f"[health-check] {report.status.upper()}: {len(report.issues)} issue(s)", err=True)
        raise SystemExit(1)
    click.echo("[health-check] HEALTHY")


@main.command("rep-stats")
@_config_option
@_json_log_option
def rep_stats(config_path: Path | None, json_log: bool) -> None:
    """담당자별 팔로워/성장 집계를 출력합니다."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    click.echo(_dump([asdict(s) for s in get_rep_stats(config)]))


@main.command()
@click.option("--retention-days", default=90, type=click.IntRange(min=1), help="보존 기간 (기본: 90일)")
@_config_option
@_json_log_option
def archive(retention_days: int, config_path: Path | None, json_log: bool) -> None:
    """보존 기간이 지난 스냅샷을 아카이브 테이블로 옮깁니다."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    result = archive_old_snapshots(config, retention_days=retention_days)
    click.echo(f"[archive] archived={result.archived}, deleted={result.deleted} (cutoff {result.cutoff.isoformat()})")


@main.command("archive-stats")
@_config_option
@_json_log_option
def archive_stats(config_path: Path | None, json_log: bool) -> None:
    """원본/아카이브 테이블 현황을 출력합니다."""
    setup_logging(json_format=json_log)
    config = _load_checked_config(config_path)

    click.echo(_dump([asdict(s) for s in get_archive_stats(config)]))
