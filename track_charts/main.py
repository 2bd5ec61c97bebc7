"""트랙 차트 엔진 - CLI 엔트리포인트.

예시:
    # 스케줄러 실행 (집계 15분, 차트 갱신 15분 + 5분 오프셋, 일/주 단위 정리)
    python -m track_charts.main run-scheduler --config config.yaml

    # 단일 작업 수동 실행
    python -m track_charts.main trigger dailyRecalc

    # 글로벌 / 국가 차트 조회
    python -m track_charts.main chart --limit 20
    python -m track_charts.main chart --type country --country US
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import List

from .config import GLOBAL_SCOPE, build_config, load_config
from .demo import create_demo_data
from .engine import ChartEngine
from .models import ChartEntry
from .scheduler import JOB_NAMES, PIPELINE_STAGES, ChartScheduler
from .utils import setup_logging

logger = logging.getLogger(__name__)


def _parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Track Chart Engine')
    parser.add_argument('--config', default=None,
                        help='Path to config file (default: built-in defaults)')

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('run-scheduler', help='스케줄러를 실행한다 (Ctrl+C로 종료)')

    trigger = sub.add_parser('trigger', help='작업 하나를 즉시 실행')
    trigger.add_argument('job', choices=JOB_NAMES)

    pipeline = sub.add_parser('pipeline', help='파이프라인 단계를 수동 실행')
    pipeline.add_argument('stage', choices=PIPELINE_STAGES)

    chart = sub.add_parser('chart', help='최신 차트 조회')
    chart.add_argument('--type', dest='chart_type', default='global', choices=['global', 'country'])
    chart.add_argument('--country', default=None, help='국가 코드 (country 차트일 때 필수)')
    chart.add_argument('--limit', type=int, default=50)

    trending = sub.add_parser('trending', help='상승/신규 진입 트랙 조회')
    trending.add_argument('--scope', default=GLOBAL_SCOPE)
    trending.add_argument('--limit', type=int, default=20)

    history = sub.add_parser('history', help='트랙 차트 이력 조회')
    history.add_argument('track_id')
    history.add_argument('--scope', default=GLOBAL_SCOPE)
    history.add_argument('--days', type=int, default=30)

    sub.add_parser('stats', help='파이프라인 상태 요약')

    cache_info = sub.add_parser('cache-info', help='차트 캐시 진단 (관리용)')
    cache_info.add_argument('--type', dest='chart_type', default=None, choices=['global', 'country'])
    cache_info.add_argument('--country', default=None)
    cache_info.add_argument('--limit', type=int, default=10)

    clear_cache = sub.add_parser('clear-cache', help='차트 캐시 삭제 (관리용)')
    clear_cache.add_argument('--type', dest='chart_type', default=None, choices=['global', 'country'])
    clear_cache.add_argument('--country', default=None)

    seed = sub.add_parser('seed-demo', help='데모 트랙/청취 데이터 생성')
    seed.add_argument('--tracks', type=int, default=10)
    seed.add_argument('--days', type=int, default=5)
    seed.add_argument('--seed', type=int, default=None)

    return parser.parse_args(argv)


def _print_json(data) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _print_entries(title: str, entries: List[ChartEntry]) -> None:
    print("\n" + "="*50)
    print(title)
    print("="*50)
    if not entries:
        print("(no chart data yet)")
    for entry in entries:
        change = f"{entry.rank_change:+d}" if entry.previous_rank is not None else "NEW"
        print(
            f"{entry.rank:>3}. {entry.track.name or entry.track_id} - {entry.track.artist_name or '-'} "
            f"[{entry.chart_score:.2f}] {entry.trend} ({change}), peak {entry.peak_position}"
        )
    print("="*50)


def _run_scheduler(engine: ChartEngine) -> None:
    scheduler = ChartScheduler(engine)
    scheduler.start()
    try:
        print("Scheduler started. Press Ctrl+C to stop.")
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping scheduler...")
        scheduler.stop()


def main(argv=None) -> int:
    """Main CLI entrypoint."""
    setup_logging()
    args = _parse_args(argv)

    if args.config:
        if not Path(args.config).exists():
            logger.error(f"Config file not found: {args.config}")
            return 1
        config = load_config(args.config)
    else:
        config = build_config()

    engine = ChartEngine(config)
    try:
        if args.command == 'run-scheduler':
            _run_scheduler(engine)
        elif args.command == 'trigger':
            _print_json(ChartScheduler(engine).trigger_job(args.job))
        elif args.command == 'pipeline':
            _print_json(ChartScheduler(engine).trigger_pipeline_stage(args.stage))
        elif args.command == 'chart':
            entries = engine.queries.get_chart(args.chart_type, args.country, limit=args.limit)
            scope = args.country.upper() if args.country else GLOBAL_SCOPE
            _print_entries(f"{args.chart_type.title()} Chart ({scope})", entries)
        elif args.command == 'trending':
            entries = engine.queries.get_trending_tracks(args.scope, limit=args.limit)
            _print_entries(f"Trending ({args.scope.upper()})", entries)
        elif args.command == 'history':
            points = engine.queries.get_track_history(args.track_id, args.scope, days=args.days)
            _print_json([vars(point) for point in points])
        elif args.command == 'stats':
            _print_json(engine.queries.get_stats())
        elif args.command == 'cache-info':
            diagnostics = engine.queries.get_cache_diagnostics(args.chart_type, args.country, limit=args.limit)
            diagnostics['entries'] = [entry.to_dict() for entry in diagnostics['entries']]
            _print_json(diagnostics)
        elif args.command == 'clear-cache':
            deleted = engine.queries.clear_cache(args.chart_type, args.country)
            print(f"Deleted {deleted} chart cache rows")
        elif args.command == 'seed-demo':
            _print_json(create_demo_data(engine, track_count=args.tracks, days=args.days, seed=args.seed))
    except ValueError as e:
        logger.error(str(e))
        return 2
    finally:
        engine.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
