"""최근성 가중 감쇠(decay) 방식으로 트랙 차트 점수를 계산하는 모듈."""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd
from sqlalchemy import select

from .config import GLOBAL_SCOPE
from .db import DailyTrackStat, Database
from .models import DisplaySnapshot, ScoredCandidate
from .scopes import normalize_scope
from .utils import date_str, get_timezone, local_date, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DECAY: Tuple[Tuple[int, float], ...] = ((0, 1.0), (1, 0.7), (2, 0.5), (3, 0.3), (4, 0.1))

SNAPSHOT_FIELDS = ["name", "artist_id", "artist_name", "genre", "duration"]


class DecaySchedule:
    """(일자 오프셋, 가중치) 순서 목록. 목록에 없는 오프셋의 가중치는 0."""

    def __init__(self, pairs: Iterable[Sequence] = DEFAULT_DECAY):
        weights: Dict[int, float] = {}
        for pair in pairs:
            if len(pair) != 2:
                raise ValueError(f"Invalid decay pair: {pair!r}. Expected [day_offset, weight]")
            offset, weight = int(pair[0]), float(pair[1])
            if offset < 0:
                raise ValueError(f"Decay day offset must be >= 0, got {offset}")
            if weight < 0:
                raise ValueError(f"Decay weight must be >= 0, got {weight}")
            if offset in weights:
                raise ValueError(f"Duplicate decay day offset: {offset}")
            weights[offset] = weight
        if not weights:
            raise ValueError("Decay schedule must not be empty")
        self._weights = dict(sorted(weights.items()))

    @classmethod
    def from_config(cls, config: dict) -> "DecaySchedule":
        return cls(config.get('scoring', {}).get('decay') or DEFAULT_DECAY)

    def weight(self, day_offset: int) -> float:
        return self._weights.get(day_offset, 0.0)

    @property
    def length(self) -> int:
        """가중치가 정의된 가장 먼 오프셋 + 1 (기본 조회 일수)."""
        return max(self._weights) + 1

    def pairs(self) -> List[Tuple[int, float]]:
        return list(self._weights.items())


def compute_scores(df: pd.DataFrame, as_of: date, schedule: DecaySchedule) -> pd.DataFrame:
    """
    일별 통계 DataFrame에 감쇠 가중치를 적용해 트랙별 점수를 계산한다.

    입력 컬럼: track_id, date, valid_listen_count, snapshot_* 컬럼
    산출 컬럼:
        - chart_score = Σ valid_listen_count × weight(day_offset)
        - days_in_chart (유효 청취가 있는 날짜 수)
        - total_valid_listens
        - snapshot_* (가장 최근 날짜의 값)

    Returns:
        점수 내림차순, track_id 오름차순으로 정렬된 DataFrame (점수 0 제외)
    """
    if not df.empty:
        df = df[df["valid_listen_count"] > 0]
    if df.empty:
        return pd.DataFrame(
            columns=["track_id", "chart_score", "days_in_chart", "total_valid_listens"]
            + [f"snapshot_{name}" for name in SNAPSHOT_FIELDS]
        )

    # 국가 합산(GLOBAL) 시 같은 트랙/날짜 행이 여러 개일 수 있으므로 먼저 일자별로 합친다
    df = df.sort_values(["track_id", "date"])
    daily = df.groupby(["track_id", "date"], as_index=False).agg(
        valid_listen_count=("valid_listen_count", "sum"),
        **{f"snapshot_{name}": (f"snapshot_{name}", "last") for name in SNAPSHOT_FIELDS},
    )

    as_of_ts = pd.Timestamp(as_of)
    daily["day_offset"] = (as_of_ts - pd.to_datetime(daily["date"])).dt.days
    daily["weight"] = daily["day_offset"].map(schedule.weight).astype(float)
    daily["weighted"] = daily["valid_listen_count"] * daily["weight"]

    # 최신 날짜가 마지막 행이 되도록 정렬 후 last 로 스냅샷 선택
    daily = daily.sort_values(["track_id", "date"])
    scored = daily.groupby("track_id", as_index=False).agg(
        chart_score=("weighted", "sum"),
        days_in_chart=("date", "nunique"),
        total_valid_listens=("valid_listen_count", "sum"),
        **{f"snapshot_{name}": (f"snapshot_{name}", "last") for name in SNAPSHOT_FIELDS},
    )

    scored = scored[scored["chart_score"] > 0]
    return scored.sort_values(
        ["chart_score", "track_id"], ascending=[False, True]
    ).reset_index(drop=True)


def _clean(value):
    return None if pd.isna(value) else value


class ScoreCalculator:
    """DailyTrackStat 으로부터 스코프별 후보 순위를 만든다."""

    def __init__(self, database: Database, config: dict, schedule: Optional[DecaySchedule] = None):
        scoring_config = config.get('scoring', {})
        self.database = database
        self.schedule = schedule or DecaySchedule.from_config(config)
        self.default_lookback = scoring_config.get('lookback_days') or self.schedule.length
        self.default_max_candidates = scoring_config.get('max_candidates', 200)
        self.tz = get_timezone(config.get('timezone', 'UTC'))

    def score_tracks(
        self,
        scope: str = GLOBAL_SCOPE,
        lookback_days: Optional[int] = None,
        max_candidates: Optional[int] = None,
        as_of: Optional[date] = None,
    ) -> List[ScoredCandidate]:
        """
        스코프의 최근 lookback_days 일 통계로 후보를 점수순 정렬해 반환한다.

        Args:
            scope: 'GLOBAL' (모든 국가 합산) 또는 국가 코드
            lookback_days: 조회 일수 (기본: decay 길이)
            max_candidates: 반환 최대 개수 (게시 페이지보다 넉넉하게)
            as_of: 기준 날짜 (오늘 = 오프셋 0)

        Returns:
            ScoredCandidate 목록
        """
        scope = normalize_scope(scope)
        lookback_days = lookback_days or self.default_lookback
        max_candidates = max_candidates or self.default_max_candidates
        if lookback_days < 1:
            raise ValueError(f"lookback_days must be >= 1, got {lookback_days}")
        if max_candidates < 1:
            raise ValueError(f"max_candidates must be >= 1, got {max_candidates}")

        as_of = as_of or local_date(utc_now(), self.tz)
        dates = [date_str(as_of - timedelta(days=offset)) for offset in range(lookback_days)]

        df = self._load_stats(scope, dates)
        scored = compute_scores(df, as_of, self.schedule).head(max_candidates)

        candidates = [
            ScoredCandidate(
                track_id=row.track_id,
                chart_score=float(row.chart_score),
                days_in_chart=int(row.days_in_chart),
                total_valid_listens=int(row.total_valid_listens),
                snapshot=DisplaySnapshot(
                    name=_clean(row.snapshot_name),
                    artist_id=_clean(row.snapshot_artist_id),
                    artist_name=_clean(row.snapshot_artist_name),
                    genre=_clean(row.snapshot_genre),
                    duration=None if pd.isna(row.snapshot_duration) else int(row.snapshot_duration),
                ),
            )
            for row in scored.itertuples(index=False)
        ]
        logger.info(f"Scored {len(candidates)} candidates for {scope} as of {as_of}")
        return candidates

    def _load_stats(self, scope: str, dates: List[str]) -> pd.DataFrame:
        stmt = select(
            DailyTrackStat.track_id,
            DailyTrackStat.date,
            DailyTrackStat.country,
            DailyTrackStat.valid_listen_count,
            *[getattr(DailyTrackStat, f"snapshot_{name}") for name in SNAPSHOT_FIELDS],
        ).where(
            DailyTrackStat.date.in_(dates),
            DailyTrackStat.valid_listen_count > 0,
        )
        if scope != GLOBAL_SCOPE:
            stmt = stmt.where(DailyTrackStat.country == scope)
        with self.database.connection() as conn:
            return pd.read_sql(stmt, conn)
