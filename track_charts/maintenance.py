"""보존 기간 정리, 고아 행 정리, 최고 순위 재계산, 헬스 체크."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import delete, select, update

from .builder import derive_movement
from .catalog import TrackCatalog
from .db import ChartSnapshot, DailyTrackStat, Database, ListenEvent
from .queries import ChartQueries
from .utils import days_before, get_timezone, local_date, utc_now

logger = logging.getLogger(__name__)

_CHUNK = 500


class ChartMaintenance:
    """dailyRecalc / cleanup / healthCheck 작업의 본체."""

    def __init__(self, database: Database, catalog: TrackCatalog, queries: ChartQueries, config: dict):
        retention = config.get('retention', {})
        health = config.get('health', {})
        self.database = database
        self.catalog = catalog
        self.queries = queries
        self.tz = get_timezone(config.get('timezone', 'UTC'))
        self.event_retention = timedelta(hours=retention.get('listen_event_hours', 24))
        self.snapshot_retention = timedelta(days=retention.get('snapshot_days', 7))
        self.stats_retention_days = retention.get('daily_stats_days', 90)
        self.max_pending_events = health.get('max_pending_events', 10000)
        self.min_active_countries = health.get('min_active_countries', 5)
        self.dead_zone = config.get('chart', {}).get('trend_dead_zone', 5)

    def prune_orphaned_snapshots(self) -> int:
        """
        트랙이 삭제되었거나 차트 대상이 아닌 스냅샷 행을 삭제한다.

        행이 빠진 페이지(chart_type, country, chart_date)는 같은 트랜잭션 안에서
        남은 행을 기존 순위 순서대로 1..K 로 다시 매긴다.
        """
        with self.database.session() as session:
            track_ids = session.execute(select(ChartSnapshot.track_id).distinct()).scalars().all()
        if not track_ids:
            return 0

        tracks = self.catalog.get_tracks(track_ids)
        orphaned = [
            track_id for track_id in track_ids
            if track_id not in tracks or not tracks[track_id].chart_eligible
        ]
        if not orphaned:
            return 0

        deleted = 0
        pages = set()
        with self.database.session() as session:
            for start in range(0, len(orphaned), _CHUNK):
                chunk = orphaned[start:start + _CHUNK]
                pages.update(
                    tuple(page) for page in session.execute(
                        select(ChartSnapshot.chart_type, ChartSnapshot.country, ChartSnapshot.chart_date)
                        .where(ChartSnapshot.track_id.in_(chunk))
                        .distinct()
                    )
                )
                deleted += session.execute(
                    delete(ChartSnapshot).where(ChartSnapshot.track_id.in_(chunk))
                ).rowcount or 0
            for chart_type, country, chart_date in sorted(pages):
                self._renumber_page(session, chart_type, country, chart_date)

        logger.info(f"Cleaned up {deleted} orphaned chart entries across {len(pages)} pages")
        return deleted

    def prune_orphaned_stats(self) -> int:
        """카탈로그에 존재하지 않는 트랙의 일별 통계를 삭제한다."""
        with self.database.session() as session:
            track_ids = session.execute(select(DailyTrackStat.track_id).distinct()).scalars().all()
        if not track_ids:
            return 0

        existing = self.catalog.existing_track_ids(track_ids)
        orphaned = [track_id for track_id in track_ids if track_id not in existing]
        return self._delete_by_track(DailyTrackStat, orphaned)

    def recompute_peak_positions(self, limit: int = 100, now: Optional[datetime] = None) -> int:
        """최신 글로벌 차트 상위 limit 개의 순위로 카탈로그 최고 순위를 보정한다."""
        now = now or utc_now()
        entries = self.queries.get_chart("global", limit=limit)
        updated = 0
        for entry in entries:
            try:
                if self.catalog.update_peak_position(entry.track_id, "global", entry.rank, now):
                    updated += 1
            except Exception as e:
                logger.warning(f"Failed to update peak position of {entry.track_id}: {e}")
        return updated

    def cleanup(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        보존 기간이 지난 데이터를 정리한다.

        - 보존 기간보다 엄격히 오래된 청취 이벤트
        - 생성 후 snapshot_days 가 지난 차트 스냅샷
        - 존재하지 않는 트랙의 일별 통계
        - daily_stats_days 보다 오래된 일별 통계
        """
        now = now or utc_now()
        results = {}
        with self.database.session() as session:
            results['old_listen_events'] = session.execute(
                delete(ListenEvent).where(ListenEvent.timestamp < now - self.event_retention)
            ).rowcount or 0
            results['old_chart_snapshots'] = session.execute(
                delete(ChartSnapshot).where(ChartSnapshot.generated_at < now - self.snapshot_retention)
            ).rowcount or 0
            results['expired_stats'] = session.execute(
                delete(DailyTrackStat).where(
                    DailyTrackStat.date < days_before(local_date(now, self.tz), self.stats_retention_days)
                )
            ).rowcount or 0
        results['orphaned_stats'] = self.prune_orphaned_stats()

        logger.info(
            f"Cleaned: {results['old_listen_events']} events, {results['old_chart_snapshots']} cache entries, "
            f"{results['orphaned_stats']} orphaned stats, {results['expired_stats']} expired stats"
        )
        return results

    def health_check(self, now: Optional[datetime] = None) -> dict:
        """
        파이프라인 요약 지표를 계산한다.

        issues(알림 대상): 처리 대기 이벤트 적체, 오늘 생성된 차트 없음
        warnings(로그만): 활성 국가 수 부족
        """
        stats = self.queries.get_stats(now=now)
        issues: List[str] = []
        warnings: List[str] = []

        if stats['pending_listen_events'] > self.max_pending_events:
            issues.append(f"High pending listen events: {stats['pending_listen_events']}")
        if stats['charts_generated'] == 0:
            issues.append("No charts generated today")
        if stats['active_countries'] < self.min_active_countries:
            warnings.append(f"Low active countries: {stats['active_countries']}")

        if issues or warnings:
            logger.warning("Chart system issues detected: %s", "; ".join(issues + warnings))
        else:
            logger.info(
                "Chart system healthy: %d charts, %d countries, %d pending events",
                stats['charts_generated'], stats['active_countries'], stats['pending_listen_events'],
            )
        return {'healthy': not issues, 'issues': issues, 'warnings': warnings, 'stats': stats}

    def _renumber_page(self, session, chart_type: str, country: str, chart_date: str) -> int:
        """페이지의 순위를 빈틈없이 당기고 trend/rank_change/peak_position 을 다시 계산한다."""
        rows = session.execute(
            select(
                ChartSnapshot.id,
                ChartSnapshot.rank,
                ChartSnapshot.previous_rank,
                ChartSnapshot.peak_position,
            )
            .where(ChartSnapshot.chart_type == chart_type)
            .where(ChartSnapshot.country == country)
            .where(ChartSnapshot.chart_date == chart_date)
            .order_by(ChartSnapshot.rank)
        ).all()

        moved = 0
        # 순위 오름차순으로 한 행씩 옮기면 새 순위 자리는 항상 비어 있다
        for new_rank, row in enumerate(rows, start=1):
            if row.rank == new_rank:
                continue
            trend, rank_change, peak_position = derive_movement(
                new_rank, row.previous_rank, previous_peak=row.peak_position, dead_zone=self.dead_zone,
            )
            session.execute(
                update(ChartSnapshot)
                .where(ChartSnapshot.id == row.id)
                .values(rank=new_rank, trend=trend, rank_change=rank_change, peak_position=peak_position)
            )
            moved += 1
        return moved

    def _delete_by_track(self, model, track_ids: List[str]) -> int:
        deleted = 0
        with self.database.session() as session:
            for start in range(0, len(track_ids), _CHUNK):
                chunk = track_ids[start:start + _CHUNK]
                deleted += session.execute(
                    delete(model).where(model.track_id.in_(chunk))
                ).rowcount or 0
        return deleted
