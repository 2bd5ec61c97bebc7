"""청취 이벤트 기록 (외부 재생 추적기와 같은 규칙으로 이벤트를 append)."""

import logging
from datetime import datetime
from typing import Optional

from .catalog import TrackCatalog
from .db import Database, ListenEvent
from .scopes import normalize_country
from .utils import utc_now

logger = logging.getLogger(__name__)

MIN_VALID_LISTEN_SECONDS = 30
MIN_VALID_LISTEN_RATIO = 0.25


def min_listen_seconds(track_duration: int) -> float:
    """유효 청취로 인정되는 최소 재생 시간: max(30초, 트랙 길이의 25%)."""
    return max(MIN_VALID_LISTEN_SECONDS, (track_duration or 0) * MIN_VALID_LISTEN_RATIO)


def is_valid_listen(listen_duration: float, track_duration: int) -> bool:
    return listen_duration >= min_listen_seconds(track_duration)


def record_listen(
    database: Database,
    catalog: TrackCatalog,
    track_id: str,
    listen_duration: float,
    session_id: str,
    user_id: Optional[str] = None,
    country: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Optional[int]:
    """
    청취 이벤트 하나를 기록한다.

    Args:
        track_id: 재생된 트랙 ID
        listen_duration: 재생 시간(초)
        session_id: 익명 청취자 식별용 세션 ID
        user_id: 로그인 사용자 ID (익명이면 None)
        country: ISO 국가 코드 (불명이면 None → GLOBAL)
        timestamp: 이벤트 시각 (naive UTC, 기본: 현재)

    Returns:
        생성된 이벤트 ID, 트랙이 없거나 차트 대상이 아니면 None
    """
    if not session_id:
        raise ValueError("session_id is required")
    if listen_duration is None or listen_duration < 0:
        raise ValueError(f"listen_duration must be non-negative, got {listen_duration!r}")

    track = catalog.get_track(track_id)
    if track is None or not track.chart_eligible:
        logger.debug(f"Skipping listen for {track_id}: track missing or not chart eligible")
        return None

    valid = is_valid_listen(listen_duration, track.duration)
    with database.session() as session:
        event = ListenEvent(
            track_id=track_id,
            user_id=user_id,
            session_id=session_id,
            country=normalize_country(country),
            listen_duration=int(listen_duration),
            is_valid=valid,
            timestamp=timestamp or utc_now(),
        )
        session.add(event)
        session.flush()
        event_id = event.id

    catalog.increment_listen_counts(track_id, valid)
    return event_id
