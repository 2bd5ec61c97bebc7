"""캐시된 차트 스냅샷을 표시 계층에 제공하는 읽기 전용 조회 모듈."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pandas as pd
from sqlalchemy import delete, func, select

from .catalog import TrackCatalog
from .config import GLOBAL_SCOPE
from .db import ChartSnapshot, DailyTrackStat, Database, ListenEvent, snapshot_columns
from .models import (
    CHART_TYPES,
    TREND_NEW,
    TREND_UP,
    ChartEntry,
    DisplaySnapshot,
    HistoryPoint,
    PipelineCounters,
)
from .scopes import chart_type_for_scope, normalize_chart_scope, normalize_scope, validate_limit
from .utils import date_str, days_before, get_timezone, local_date, utc_now

logger = logging.getLogger(__name__)

MAX_PERFORMANCE_DAYS = 30


def to_entry(row: ChartSnapshot) -> ChartEntry:
    """ChartSnapshot 행을 조회용 ChartEntry 로 변환한다."""
    return ChartEntry(
        chart_type=row.chart_type,
        country=row.country,
        chart_date=row.chart_date,
        rank=row.rank,
        track_id=row.track_id,
        chart_score=row.chart_score,
        trend=row.trend,
        previous_rank=row.previous_rank,
        rank_change=row.rank_change,
        days_in_chart=row.days_in_chart,
        peak_position=row.peak_position,
        track=DisplaySnapshot(**snapshot_columns(row)),
        generated_at=row.generated_at,
    )


class ChartQueries:
    """차트 조회 파사드."""

    def __init__(
        self,
        database: Database,
        catalog: TrackCatalog,
        config: dict,
        counters: Optional[PipelineCounters] = None,
    ):
        chart_config = config.get('chart', {})
        self.database = database
        self.catalog = catalog
        self.counters = counters or PipelineCounters()
        self.tz = get_timezone(config.get('timezone', 'UTC'))
        self.max_limit = chart_config.get('max_limit', 100)
        self.max_trending_limit = chart_config.get('max_trending_limit', 50)
        self.max_history_days = chart_config.get('max_history_days', 90)

    def _latest_chart_date(self, session, chart_type: str, scope: str) -> Optional[str]:
        return session.execute(
            select(func.max(ChartSnapshot.chart_date))
            .where(ChartSnapshot.chart_type == chart_type)
            .where(ChartSnapshot.country == scope)
        ).scalar()

    def get_chart(self, chart_type: str = "global", scope: Optional[str] = None, limit: int = 50) -> List[ChartEntry]:
        """
        최신 게시 차트 페이지를 순위순으로 반환한다.

        Returns:
            ChartEntry 목록. 아직 빌드되지 않았으면 빈 목록 (오류 아님)

        Raises:
            ValueError: 차트 타입/스코프/limit 가 잘못된 경우
        """
        chart_type, scope = normalize_chart_scope(chart_type, scope)
        limit = validate_limit(limit, self.max_limit)

        with self.database.session() as session:
            latest = self._latest_chart_date(session, chart_type, scope)
            if latest is None:
                return []
            rows = session.execute(
                select(ChartSnapshot)
                .where(ChartSnapshot.chart_type == chart_type)
                .where(ChartSnapshot.country == scope)
                .where(ChartSnapshot.chart_date == latest)
                .order_by(ChartSnapshot.rank)
                .limit(limit)
            ).scalars().all()
            return [to_entry(row) for row in rows]

    def get_trending_tracks(self, scope: str = GLOBAL_SCOPE, limit: int = 20) -> List[ChartEntry]:
        """최신 페이지에서 trend 가 up/new 인 항목을 순위 변동 폭, 점수 순으로 반환한다."""
        scope = normalize_scope(scope)
        limit = validate_limit(limit, self.max_trending_limit)
        chart_type = chart_type_for_scope(scope)

        with self.database.session() as session:
            latest = self._latest_chart_date(session, chart_type, scope)
            if latest is None:
                return []
            rows = session.execute(
                select(ChartSnapshot)
                .where(ChartSnapshot.chart_type == chart_type)
                .where(ChartSnapshot.country == scope)
                .where(ChartSnapshot.chart_date == latest)
                .where(ChartSnapshot.trend.in_([TREND_UP, TREND_NEW]))
                .order_by(
                    ChartSnapshot.rank_change.desc(),
                    ChartSnapshot.chart_score.desc(),
                    ChartSnapshot.rank,
                )
                .limit(limit)
            ).scalars().all()
            return [to_entry(row) for row in rows]

    def get_top_movers(self, scope: str = GLOBAL_SCOPE, limit: int = 20, direction: str = "up") -> List[ChartEntry]:
        """최신 페이지에서 순위가 가장 크게 오르거나(up) 내린(down) 항목."""
        if direction not in ("up", "down"):
            raise ValueError(f"direction must be 'up' or 'down', got {direction!r}")
        scope = normalize_scope(scope)
        limit = validate_limit(limit, self.max_trending_limit)
        chart_type = chart_type_for_scope(scope)

        with self.database.session() as session:
            latest = self._latest_chart_date(session, chart_type, scope)
            if latest is None:
                return []
            stmt = (
                select(ChartSnapshot)
                .where(ChartSnapshot.chart_type == chart_type)
                .where(ChartSnapshot.country == scope)
                .where(ChartSnapshot.chart_date == latest)
            )
            if direction == "up":
                stmt = stmt.where(ChartSnapshot.rank_change > 0).order_by(ChartSnapshot.rank_change.desc())
            else:
                stmt = stmt.where(ChartSnapshot.rank_change < 0).order_by(ChartSnapshot.rank_change)
            rows = session.execute(stmt.order_by(ChartSnapshot.rank).limit(limit)).scalars().all()
            return [to_entry(row) for row in rows]

    def get_track_history(
        self,
        track_id: str,
        scope: str = GLOBAL_SCOPE,
        days: int = 30,
        now: Optional[datetime] = None,
    ) -> List[HistoryPoint]:
        """오늘을 포함한 최근 days 일간 트랙의 일자별 순위 이력을 오래된 순으로 반환한다."""
        if not track_id:
            raise ValueError("track_id is required")
        scope = normalize_scope(scope)
        days = validate_limit(days, self.max_history_days, name="days")
        today = local_date(now or utc_now(), self.tz)

        with self.database.session() as session:
            rows = session.execute(
                select(ChartSnapshot)
                .where(ChartSnapshot.track_id == track_id)
                .where(ChartSnapshot.chart_type == chart_type_for_scope(scope))
                .where(ChartSnapshot.country == scope)
                .where(ChartSnapshot.chart_date >= days_before(today, days - 1))
                .order_by(ChartSnapshot.chart_date)
            ).scalars().all()
            return [
                HistoryPoint(
                    chart_date=row.chart_date,
                    rank=row.rank,
                    chart_score=row.chart_score,
                    trend=row.trend,
                    generated_at=row.generated_at,
                )
                for row in rows
            ]

    def get_stats(self, now: Optional[datetime] = None) -> dict:
        """파이프라인 상태 요약 지표."""
        now = now or utc_now()
        today = date_str(local_date(now, self.tz))

        with self.database.session() as session:
            charts_generated = session.execute(
                select(func.count()).select_from(ChartSnapshot).where(ChartSnapshot.chart_date == today)
            ).scalar_one()
            active_countries = session.execute(
                select(func.count(func.distinct(ChartSnapshot.country)))
                .where(ChartSnapshot.chart_date == today)
                .where(ChartSnapshot.chart_type == "country")
            ).scalar_one()
            daily_stats_records = session.execute(
                select(func.count()).select_from(DailyTrackStat).where(DailyTrackStat.date == today)
            ).scalar_one()
            pending_listen_events = session.execute(
                select(func.count()).select_from(ListenEvent)
            ).scalar_one()
            last_update = session.execute(select(func.max(ChartSnapshot.generated_at))).scalar()

        return {
            'charts_generated': charts_generated,
            'active_countries': active_countries,
            'daily_stats_records': daily_stats_records,
            'pending_listen_events': pending_listen_events,
            'chart_eligible_tracks': self.catalog.count_chart_eligible(),
            'counters': self.counters.as_dict(),
            'last_update': last_update,
            'generated_at': now,
        }

    def get_available_countries(self) -> List[dict]:
        """국가 차트가 존재하는 국가 목록 (항목 수 내림차순)."""
        with self.database.session() as session:
            rows = session.execute(
                select(
                    ChartSnapshot.country,
                    func.count().label('track_count'),
                    func.max(ChartSnapshot.generated_at).label('last_updated'),
                )
                .where(ChartSnapshot.chart_type == "country")
                .group_by(ChartSnapshot.country)
                .order_by(func.count().desc(), ChartSnapshot.country)
            ).all()
        return [
            {'country': row.country, 'track_count': row.track_count, 'last_updated': row.last_updated}
            for row in rows
        ]

    def get_performance(self, days: int = 7, now: Optional[datetime] = None) -> Dict[str, List[dict]]:
        """
        최근 days 일의 차트 생성량과 청취 처리량을 일자별로 요약한다.

        Returns:
            {'chart_generation': [...], 'listen_processing': [...]}
        """
        days = validate_limit(days, MAX_PERFORMANCE_DAYS, name="days")
        now = now or utc_now()
        since = now - timedelta(days=days)

        with self.database.connection() as conn:
            df_charts = pd.read_sql(
                select(
                    ChartSnapshot.country,
                    ChartSnapshot.chart_score,
                    ChartSnapshot.generated_at,
                ).where(ChartSnapshot.generated_at >= since),
                conn,
            )
            df_stats = pd.read_sql(
                select(
                    DailyTrackStat.date,
                    DailyTrackStat.track_id,
                    DailyTrackStat.country,
                    DailyTrackStat.listen_count,
                    DailyTrackStat.valid_listen_count,
                ).where(DailyTrackStat.date >= days_before(local_date(now, self.tz), days)),
                conn,
            )

        return {
            'chart_generation': summarize_chart_generation(df_charts),
            'listen_processing': summarize_listen_processing(df_stats),
        }

    def get_cache_diagnostics(
        self,
        chart_type: Optional[str] = None,
        country: Optional[str] = None,
        limit: int = 10,
    ) -> dict:
        """관리용: 필터에 맞는 스냅샷 행과 (타입, 국가)별 집계."""
        filters = self._cache_filters(chart_type, country)
        limit = validate_limit(limit, self.max_limit)

        with self.database.session() as session:
            entry_stmt = select(ChartSnapshot)
            stats_stmt = select(
                ChartSnapshot.chart_type,
                ChartSnapshot.country,
                func.count().label('count'),
                func.max(ChartSnapshot.generated_at).label('last_updated'),
                func.avg(ChartSnapshot.chart_score).label('avg_score'),
            )
            for clause in filters:
                entry_stmt = entry_stmt.where(clause)
                stats_stmt = stats_stmt.where(clause)

            rows = session.execute(
                entry_stmt.order_by(ChartSnapshot.generated_at.desc(), ChartSnapshot.rank).limit(limit)
            ).scalars().all()
            entries = [to_entry(row) for row in rows]
            stats = [
                {
                    'chart_type': row.chart_type,
                    'country': row.country,
                    'count': row.count,
                    'last_updated': row.last_updated,
                    'avg_score': float(row.avg_score) if row.avg_score is not None else None,
                }
                for row in session.execute(
                    stats_stmt.group_by(ChartSnapshot.chart_type, ChartSnapshot.country)
                    .order_by(ChartSnapshot.chart_type, ChartSnapshot.country)
                ).all()
            ]

        return {
            'entries': entries,
            'stats': stats,
            'query': {'chart_type': chart_type, 'country': country},
            'total_found': len(entries),
        }

    def clear_cache(self, chart_type: Optional[str] = None, country: Optional[str] = None) -> int:
        """관리용: 필터에 맞는 스냅샷 행을 삭제하고 삭제 수를 반환한다. 필터가 없으면 전체 삭제."""
        filters = self._cache_filters(chart_type, country)
        with self.database.session() as session:
            stmt = delete(ChartSnapshot)
            for clause in filters:
                stmt = stmt.where(clause)
            deleted = session.execute(stmt).rowcount or 0
        logger.warning(f"Chart cache cleared: {deleted} rows (chart_type={chart_type}, country={country})")
        return deleted

    @staticmethod
    def _cache_filters(chart_type: Optional[str], country: Optional[str]) -> Tuple:
        filters = []
        if chart_type:
            chart_type = chart_type.strip().lower()
            if chart_type not in CHART_TYPES:
                raise ValueError(f"Unsupported chart type: {chart_type!r}. Supported: {list(CHART_TYPES)}")
            filters.append(ChartSnapshot.chart_type == chart_type)
        if country:
            filters.append(ChartSnapshot.country == normalize_scope(country))
        return tuple(filters)


def summarize_chart_generation(df: pd.DataFrame) -> List[dict]:
    """생성 일자별 차트 행 수, 평균 점수, 국가 수."""
    if df.empty:
        return []
    df = df.copy()
    df["day"] = pd.to_datetime(df["generated_at"]).dt.strftime("%Y-%m-%d")
    summary = (
        df.groupby("day", as_index=False)
        .agg(
            charts_generated=("chart_score", "size"),
            avg_score=("chart_score", "mean"),
            country_count=("country", "nunique"),
        )
        .sort_values("day")
    )
    return summary.to_dict(orient="records")


def summarize_listen_processing(df: pd.DataFrame) -> List[dict]:
    """통계 날짜별 청취 합계, 유효 청취 비율, 트랙/국가 수."""
    if df.empty:
        return []
    summary = (
        df.groupby("date", as_index=False)
        .agg(
            total_listens=("listen_count", "sum"),
            valid_listens=("valid_listen_count", "sum"),
            track_count=("track_id", "nunique"),
            country_count=("country", "nunique"),
        )
        .sort_values("date")
    )
    summary["validity_rate"] = (
        summary["valid_listens"] / summary["total_listens"].where(summary["total_listens"] > 0)
    ).fillna(0.0)
    return summary.to_dict(orient="records")
