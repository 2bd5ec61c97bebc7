"""점수 후보로 순위를 매기고 이전 차트와 비교해 추세를 계산한 뒤 스냅샷을 교체하는 모듈."""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select

from .catalog import TrackCatalog
from .config import GLOBAL_SCOPE
from .countries import ActiveCountrySelector
from .db import ChartSnapshot, Database
from .models import (
    TREND_DOWN,
    TREND_NEW,
    TREND_STABLE,
    TREND_UP,
    PipelineCounters,
    ScoredCandidate,
    TrackInfo,
)
from .scopes import normalize_chart_scope, position_key
from .scoring import ScoreCalculator
from .utils import date_str, elapsed_ms, get_timezone, local_date, utc_now

logger = logging.getLogger(__name__)

PreviousRanks = Dict[str, Tuple[int, Optional[int]]]  # track_id → (rank, peak_position)


def derive_movement(
    rank: int,
    previous_rank: Optional[int],
    previous_peak: Optional[int] = None,
    lifetime_peak: Optional[int] = None,
    dead_zone: int = 5,
) -> Tuple[str, int, int]:
    """
    이전 순위와 비교해 (trend, rank_change, peak_position)을 계산한다.

    - 이전 차트에 없으면 trend=new, rank_change=0
    - rank_change = previous_rank - rank (양수 = 상승)
    - |rank_change| <= dead_zone 이면 stable
    - peak_position 은 이전 값들과 현재 순위 중 최솟값 (숫자가 작을수록 좋음)
    """
    peaks = [rank]
    peaks.extend(p for p in (previous_rank, previous_peak, lifetime_peak) if p is not None)
    peak_position = min(peaks)

    if previous_rank is None:
        return TREND_NEW, 0, peak_position

    rank_change = previous_rank - rank
    if rank_change > dead_zone:
        trend = TREND_UP
    elif rank_change < -dead_zone:
        trend = TREND_DOWN
    else:
        trend = TREND_STABLE
    return trend, rank_change, peak_position


class ChartBuilder:
    """글로벌/국가 차트 빌드. 두 타입 모두 같은 알고리즘을 스코프만 바꿔 사용한다."""

    def __init__(
        self,
        database: Database,
        catalog: TrackCatalog,
        calculator: ScoreCalculator,
        selector: ActiveCountrySelector,
        config: dict,
        counters: Optional[PipelineCounters] = None,
    ):
        chart_config = config.get('chart', {})
        self.database = database
        self.catalog = catalog
        self.calculator = calculator
        self.selector = selector
        self.counters = counters or PipelineCounters()
        self.page_size = chart_config.get('page_size', 50)
        self.dead_zone = chart_config.get('trend_dead_zone', 5)
        self.tz = get_timezone(config.get('timezone', 'UTC'))

    def build_chart(
        self,
        chart_type: str,
        scope: Optional[str] = None,
        page_size: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        한 스코프의 오늘 차트를 다시 계산해 게시한다.

        Args:
            chart_type: 'global' 또는 'country'
            scope: 국가 코드 (global 이면 생략)
            page_size: 게시할 최대 순위 수
            now: 기준 시각 (naive UTC)

        Returns:
            기록된 차트 항목 수
        """
        chart_type, scope = normalize_chart_scope(chart_type, scope)
        page_size = page_size or self.page_size
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        now = now or utc_now()
        chart_date = local_date(now, self.tz)

        started = time.monotonic()
        candidates = self.calculator.score_tracks(scope, as_of=chart_date)
        previous = self._load_previous(chart_type, scope)
        rows = self._rank(candidates, previous, page_size, chart_type, scope, date_str(chart_date), now)

        replaced = self._replace(chart_type, scope, date_str(chart_date), rows)
        self._push_positions(rows, position_key(chart_type, scope), now)

        logger.info(
            f"Built {chart_type} chart for {scope} ({date_str(chart_date)}): "
            f"{len(rows)} entries, replaced {replaced}, in {elapsed_ms(started)}ms"
        )
        return len(rows)

    def update_all_charts(self, now: Optional[datetime] = None) -> dict:
        """글로벌 차트와 활성 국가 차트를 모두 갱신한다. 국가 하나의 실패는 전체를 중단하지 않는다."""
        now = now or utc_now()
        global_updated = self.build_chart("global", GLOBAL_SCOPE, now=now)

        countries = self.selector.select_active_countries(as_of=local_date(now, self.tz))
        total_updated = global_updated
        built: List[str] = []
        failed: List[str] = []
        for country in countries:
            try:
                total_updated += self.build_chart("country", country, now=now)
                built.append(country)
            except Exception as e:
                failed.append(country)
                logger.error(f"Failed to update {country} chart: {e}")

        return {
            'total_updated': total_updated,
            'global_updated': global_updated,
            'countries_updated': len(built),
            'countries': built,
            'failed_countries': failed,
        }

    def _load_previous(self, chart_type: str, scope: str) -> PreviousRanks:
        """가장 최근 chart_date 의 게시 페이지를 track_id → (rank, peak) 로 읽는다."""
        with self.database.session() as session:
            latest = session.execute(
                select(func.max(ChartSnapshot.chart_date))
                .where(ChartSnapshot.chart_type == chart_type)
                .where(ChartSnapshot.country == scope)
            ).scalar()
            if latest is None:
                return {}
            rows = session.execute(
                select(ChartSnapshot.track_id, ChartSnapshot.rank, ChartSnapshot.peak_position)
                .where(ChartSnapshot.chart_type == chart_type)
                .where(ChartSnapshot.country == scope)
                .where(ChartSnapshot.chart_date == latest)
            ).all()
        return {row.track_id: (row.rank, row.peak_position) for row in rows}

    def _rank(
        self,
        candidates: List[ScoredCandidate],
        previous: PreviousRanks,
        page_size: int,
        chart_type: str,
        scope: str,
        chart_date: str,
        now: datetime,
    ) -> List[ChartSnapshot]:
        tracks = self.catalog.get_tracks(c.track_id for c in candidates) if candidates else {}
        key = position_key(chart_type, scope)

        rows: List[ChartSnapshot] = []
        dropped = 0
        for candidate in candidates:
            if len(rows) >= page_size:
                break
            track = tracks.get(candidate.track_id)
            if track is None or not track.chart_eligible:
                # 점수 계산 이후 삭제/비대상이 된 트랙은 이번 주기에서 조용히 제외
                dropped += 1
                continue

            rank = len(rows) + 1
            previous_rank, previous_peak = previous.get(candidate.track_id, (None, None))
            trend, rank_change, peak_position = derive_movement(
                rank,
                previous_rank,
                previous_peak,
                track.peak_positions.get(key),
                self.dead_zone,
            )
            rows.append(self._snapshot_row(
                chart_type, scope, chart_date, rank, candidate, track,
                trend, previous_rank, rank_change, peak_position, now,
            ))

        if dropped:
            self.counters.increment('dropped_unresolved_candidates', dropped)
            logger.info(f"Dropped {dropped} unresolved candidates from {chart_type}/{scope}")
        return rows

    @staticmethod
    def _snapshot_row(
        chart_type: str,
        scope: str,
        chart_date: str,
        rank: int,
        candidate: ScoredCandidate,
        track: TrackInfo,
        trend: str,
        previous_rank: Optional[int],
        rank_change: int,
        peak_position: int,
        now: datetime,
    ) -> ChartSnapshot:
        return ChartSnapshot(
            chart_type=chart_type,
            country=scope,
            track_id=candidate.track_id,
            chart_date=chart_date,
            rank=rank,
            chart_score=round(candidate.chart_score, 2),
            trend=trend,
            previous_rank=previous_rank,
            rank_change=rank_change,
            days_in_chart=candidate.days_in_chart,
            peak_position=peak_position,
            snapshot_name=track.name,
            snapshot_artist_id=track.artist_id,
            snapshot_artist_name=track.artist_name,
            snapshot_genre=track.genre,
            snapshot_cover_url=track.cover_url,
            snapshot_duration=track.duration,
            snapshot_valid_listen_count=track.valid_listen_count,
            generated_at=now,
        )

    def _replace(self, chart_type: str, scope: str, chart_date: str, rows: List[ChartSnapshot]) -> int:
        """기존 페이지 삭제와 새 페이지 삽입을 하나의 트랜잭션으로 처리한다."""
        with self.database.session() as session:
            result = session.execute(
                delete(ChartSnapshot)
                .where(ChartSnapshot.chart_type == chart_type)
                .where(ChartSnapshot.country == scope)
                .where(ChartSnapshot.chart_date == chart_date)
            )
            session.add_all(rows)
            return result.rowcount or 0

    def _push_positions(self, rows: List[ChartSnapshot], key: str, now: datetime) -> None:
        for row in rows:
            try:
                self.catalog.update_chart_position(row.track_id, key, row.rank, now)
            except Exception as e:
                self.counters.increment('failed_position_updates')
                logger.warning(f"Failed to update chart position of {row.track_id}: {e}")
