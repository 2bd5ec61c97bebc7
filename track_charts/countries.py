"""이번 주기에 국가별 차트를 만들 만큼 신호가 있는 국가를 고르는 모듈."""

from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

import pandas as pd
from sqlalchemy import select

from .config import GLOBAL_SCOPE
from .db import DailyTrackStat, Database
from .utils import days_before, get_timezone, local_date, utc_now

logger = logging.getLogger(__name__)


def rank_countries(
    df: pd.DataFrame,
    min_valid_listens: int,
    min_unique_tracks: int,
    max_countries: int,
) -> pd.DataFrame:
    """
    국가별 유효 청취 합계/고유 트랙 수를 계산해 기준을 넘는 국가를 거래량 순으로 반환한다.

    입력 컬럼: country, track_id, valid_listen_count
    산출 컬럼: country, total_listens, track_count
    """
    if df.empty:
        return pd.DataFrame(columns=["country", "total_listens", "track_count"])

    summary = df.groupby("country", as_index=False).agg(
        total_listens=("valid_listen_count", "sum"),
        track_count=("track_id", "nunique"),
    )
    qualified = summary[
        (summary["total_listens"] >= min_valid_listens)
        & (summary["track_count"] >= min_unique_tracks)
    ]
    return (
        qualified.sort_values(["total_listens", "country"], ascending=[False, True])
        .head(max_countries)
        .reset_index(drop=True)
    )


class ActiveCountrySelector:
    """최근 통계로 활성 국가 목록을 선정한다."""

    def __init__(self, database: Database, config: dict):
        self.database = database
        self.defaults = config.get('countries', {})
        self.tz = get_timezone(config.get('timezone', 'UTC'))

    def select_active_countries(
        self,
        lookback_days: Optional[int] = None,
        min_valid_listens: Optional[int] = None,
        min_unique_tracks: Optional[int] = None,
        max_countries: Optional[int] = None,
        as_of: Optional[date] = None,
    ) -> List[str]:
        """
        활성 국가 코드를 유효 청취 합계 내림차순으로 반환한다.

        Args:
            lookback_days: 기준일로부터 조회할 일수 (기준일 - lookback_days 이후 날짜 포함)
            min_valid_listens: 국가별 최소 유효 청취 합계
            min_unique_tracks: 국가별 최소 고유 트랙 수
            max_countries: 최대 국가 수
            as_of: 기준 날짜
        """
        lookback_days = self._pick(lookback_days, 'lookback_days', 7)
        min_valid_listens = self._pick(min_valid_listens, 'min_valid_listens', 100)
        min_unique_tracks = self._pick(min_unique_tracks, 'min_unique_tracks', 10)
        max_countries = self._pick(max_countries, 'max_countries', 20)
        as_of = as_of or local_date(utc_now(), self.tz)

        stmt = select(
            DailyTrackStat.country,
            DailyTrackStat.track_id,
            DailyTrackStat.valid_listen_count,
        ).where(
            DailyTrackStat.date >= days_before(as_of, lookback_days),
            DailyTrackStat.date <= as_of.isoformat(),
            DailyTrackStat.country != GLOBAL_SCOPE,
            DailyTrackStat.valid_listen_count > 0,
        )
        with self.database.connection() as conn:
            df = pd.read_sql(stmt, conn)

        ranked = rank_countries(df, min_valid_listens, min_unique_tracks, max_countries)
        countries = ranked["country"].tolist()
        logger.info(f"Selected {len(countries)} active countries: {countries}")
        return countries

    def _pick(self, value, key: str, fallback: int) -> int:
        return value if value is not None else self.defaults.get(key, fallback)
