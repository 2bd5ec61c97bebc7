"""청취 이벤트를 (트랙, 국가, 날짜) 단위 일별 통계로 누적 집계하는 모듈."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

import pandas as pd
from sqlalchemy import delete, select

from .catalog import TrackCatalog
from .db import DailyTrackStat, Database, ListenEvent
from .models import PipelineCounters, TrackInfo
from .utils import elapsed_ms, get_timezone, utc_now

logger = logging.getLogger(__name__)

EVENT_COLUMNS = [
    "id",
    "track_id",
    "user_id",
    "session_id",
    "country",
    "listen_duration",
    "is_valid",
    "timestamp",
]

GROUP_KEYS = ["track_id", "country", "date"]

_DELETE_CHUNK = 500


def summarize_events(df: pd.DataFrame, tz) -> pd.DataFrame:
    """
    이벤트 DataFrame을 (track_id, country, date) 그룹 통계로 요약한다.

    추가/산출 컬럼:
        - date (이벤트 시각의 tz 기준 날짜)
        - listen_count
        - valid_listen_count
        - total_listen_duration
        - unique_listeners (user_id, 없으면 session_id 기준 고유 수)
        - event_ids (그룹에 속한 이벤트 ID 목록)
    """
    if df.empty:
        return pd.DataFrame(
            columns=GROUP_KEYS + [
                "listen_count",
                "valid_listen_count",
                "total_listen_duration",
                "unique_listeners",
                "event_ids",
            ]
        )

    df = df.copy()

    # 로그인 사용자는 user_id, 익명은 session_id 로 식별
    df["listener"] = df["user_id"].where(df["user_id"].notna(), df["session_id"])
    df["timestamp"] = pd.to_datetime(df["timestamp"])
    df["date"] = (
        df["timestamp"].dt.tz_localize("UTC").dt.tz_convert(tz).dt.strftime("%Y-%m-%d")
    )
    df["is_valid"] = df["is_valid"].astype(bool)
    df["listen_duration"] = (
        pd.to_numeric(df["listen_duration"], errors="coerce").fillna(0).astype(int)
    )

    grouped = df.groupby(GROUP_KEYS, as_index=False).agg(
        listen_count=("id", "size"),
        valid_listen_count=("is_valid", "sum"),
        total_listen_duration=("listen_duration", "sum"),
        unique_listeners=("listener", "nunique"),
        event_ids=("id", list),
    )
    return grouped.sort_values(["date", "track_id", "country"]).reset_index(drop=True)


class DailyAggregator:
    """ListenEvent → DailyTrackStat 누적 집계기."""

    def __init__(
        self,
        database: Database,
        catalog: TrackCatalog,
        config: dict,
        counters: Optional[PipelineCounters] = None,
    ):
        """
        Args:
            database: DB 관리자
            catalog: 트랙 메타데이터/차트 대상 여부 조회용 카탈로그
            config: 설정 딕셔너리 (aggregation, timezone 사용)
            counters: 스킵/실패 그룹 수를 누적할 카운터
        """
        agg_config = config.get('aggregation', {})
        self.database = database
        self.catalog = catalog
        self.counters = counters or PipelineCounters()
        self.tz = get_timezone(config.get('timezone', 'UTC'))
        self.window = timedelta(hours=agg_config.get('window_hours', 24))
        self.retention = timedelta(minutes=agg_config.get('event_retention_minutes', 60))

    def aggregate(
        self,
        window_start: Optional[datetime] = None,
        window_end: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        [window_start, window_end) 구간의 이벤트를 일별 통계에 병합한다.

        Returns:
            병합에 성공한 그룹 수

        Raises:
            ValueError: 구간이 비어 있거나 뒤집힌 경우
            Exception: 이벤트 원천 읽기 실패 (호출자에게 전파)
        """
        window_end = window_end or now or utc_now()
        window_start = window_start or (window_end - self.window)
        if window_start >= window_end:
            raise ValueError(f"Empty aggregation window: {window_start} >= {window_end}")

        started = time.monotonic()
        try:
            df_events = self._load_events(window_start, window_end)
            groups = summarize_events(df_events, self.tz)
            tracks = self.catalog.get_tracks(groups["track_id"].unique()) if not groups.empty else {}
        except Exception as e:
            logger.error(f"Failed to read listen events for {window_start}..{window_end}: {e}")
            raise

        merged = 0
        skipped = 0
        failed = 0
        for group in groups.itertuples(index=False):
            track = tracks.get(group.track_id)
            if track is None or not track.chart_eligible:
                skipped += 1
                self._consume_skipped(group)
                continue
            try:
                self._merge_group(group, track)
                merged += 1
            except Exception as e:
                failed += 1
                logger.error(
                    f"Failed to merge stats for {group.track_id}/{group.country}/{group.date}: {e}"
                )

        pruned = self._prune_events(window_end - self.retention)

        self.counters.increment('merged_groups', merged)
        self.counters.increment('dropped_ineligible_groups', skipped)
        self.counters.increment('failed_groups', failed)

        logger.info(
            f"Aggregated {len(df_events)} events into {merged} groups "
            f"(skipped={skipped}, failed={failed}, pruned={pruned}) in {elapsed_ms(started)}ms"
        )
        return merged

    def _load_events(self, window_start: datetime, window_end: datetime) -> pd.DataFrame:
        stmt = (
            select(*[getattr(ListenEvent, col) for col in EVENT_COLUMNS])
            .where(ListenEvent.timestamp >= window_start)
            .where(ListenEvent.timestamp < window_end)
        )
        with self.database.connection() as conn:
            return pd.read_sql(stmt, conn)

    def _merge_group(self, group, track: TrackInfo) -> None:
        """그룹 하나를 통계 행에 누적하고 해당 이벤트를 소비한다. 하나의 트랜잭션."""
        with self.database.session() as session:
            stat = session.execute(
                select(DailyTrackStat)
                .where(DailyTrackStat.track_id == group.track_id)
                .where(DailyTrackStat.date == group.date)
                .where(DailyTrackStat.country == group.country)
            ).scalar_one_or_none()

            if stat is None:
                stat = DailyTrackStat(
                    track_id=group.track_id,
                    date=group.date,
                    country=group.country,
                    listen_count=0,
                    valid_listen_count=0,
                    unique_listeners=0,
                    total_listen_duration=0,
                )
                session.add(stat)

            stat.listen_count += int(group.listen_count)
            stat.valid_listen_count += int(group.valid_listen_count)
            stat.total_listen_duration += int(group.total_listen_duration)
            # 고유 청취자는 실행 간 합산이 불가능하므로 max 로 병합 (근사치)
            stat.unique_listeners = max(stat.unique_listeners or 0, int(group.unique_listeners))
            stat.average_listen_duration = (
                stat.total_listen_duration / stat.listen_count if stat.listen_count else 0.0
            )

            # 표시용 스냅샷은 매 집계마다 카탈로그 최신 값으로 갱신
            stat.snapshot_name = track.name
            stat.snapshot_artist_id = track.artist_id
            stat.snapshot_artist_name = track.artist_name
            stat.snapshot_genre = track.genre
            stat.snapshot_duration = track.duration

            self._delete_events(session, group.event_ids)

    def _consume_skipped(self, group) -> None:
        try:
            with self.database.session() as session:
                self._delete_events(session, group.event_ids)
        except Exception as e:
            logger.warning(f"Failed to discard events of skipped track {group.track_id}: {e}")

    @staticmethod
    def _delete_events(session, event_ids: Iterable[int]) -> int:
        ids: List[int] = [int(i) for i in event_ids]
        deleted = 0
        for start in range(0, len(ids), _DELETE_CHUNK):
            chunk = ids[start:start + _DELETE_CHUNK]
            result = session.execute(delete(ListenEvent).where(ListenEvent.id.in_(chunk)))
            deleted += result.rowcount or 0
        return deleted

    def _prune_events(self, horizon: datetime) -> int:
        """보존 기간보다 오래된 이벤트는 집계 여부와 관계없이 삭제한다."""
        with self.database.session() as session:
            result = session.execute(delete(ListenEvent).where(ListenEvent.timestamp < horizon))
            return result.rowcount or 0
