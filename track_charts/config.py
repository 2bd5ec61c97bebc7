"""YAML 설정 로드 및 기본값 병합."""

import copy
import logging
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = "GLOBAL"

DEFAULT_CONFIG = {
    'timezone': 'UTC',
    'database': {
        'url': 'sqlite:///data/charts.db',
    },
    'aggregation': {
        'window_hours': 24,
        'event_retention_minutes': 60,  # 집계 후 무조건 삭제하는 원시 이벤트 보존 기간
    },
    'scoring': {
        # (일자 오프셋, 가중치) 순서 목록: 오늘=1.0, 어제=0.7, ...
        'decay': [[0, 1.0], [1, 0.7], [2, 0.5], [3, 0.3], [4, 0.1]],
        'lookback_days': None,  # None이면 decay 길이
        'max_candidates': 200,
    },
    'chart': {
        'page_size': 50,
        'trend_dead_zone': 5,
        'max_limit': 100,
        'max_trending_limit': 50,
        'max_history_days': 90,
    },
    'countries': {
        'lookback_days': 7,
        'min_valid_listens': 100,
        'min_unique_tracks': 10,
        'max_countries': 20,
    },
    'retention': {
        'listen_event_hours': 24,
        'snapshot_days': 7,
        'daily_stats_days': 90,
    },
    'health': {
        'max_pending_events': 10000,
        'min_active_countries': 5,
    },
    'alerts': {
        'enabled': False,
        'webhook_url': None,
        'timeout_sec': 10,
    },
    'schedule': {
        'enabled': True,
        'run_on_start': True,
        'jobs': {
            'aggregation': '*/15 * * * *',
            'chartUpdate': '5,20,35,50 * * * *',  # 집계 5분 뒤
            'dailyRecalc': '30 0 * * *',
            'cleanup': '0 2 * * sun',
            'healthCheck': '0 * * * *',
        },
    },
}


def merge_config(base: dict, override: Optional[dict]) -> dict:
    """override의 값을 base 위에 재귀적으로 덮어쓴 새 딕셔너리를 반환한다."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_config(overrides: Optional[dict] = None) -> dict:
    """기본 설정에 overrides를 병합한 설정 딕셔너리를 만든다."""
    return merge_config(DEFAULT_CONFIG, overrides)


def load_config(config_path: str) -> dict:
    """YAML 설정 파일을 로드해 기본값과 병합한다."""
    with open(config_path, 'r', encoding='utf-8') as f:
        loaded = yaml.safe_load(f) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config root must be a mapping: {config_path}")
    logger.info(f"Loaded config from {config_path}")
    return build_config(loaded)
