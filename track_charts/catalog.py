"""트랙 카탈로그(외부 CRUD 협력자) 인터페이스와 SQL 구현."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, Optional, Set

from sqlalchemy import func, select

from .db import Database, Track
from .models import TrackInfo

logger = logging.getLogger(__name__)


class TrackCatalog(ABC):
    """차트 엔진이 트랙 소유 서비스에 요구하는 읽기/쓰기 계약."""

    @abstractmethod
    def get_tracks(self, track_ids: Iterable[str]) -> Dict[str, TrackInfo]:
        """
        여러 트랙을 한 번에 조회한다.

        Args:
            track_ids: 조회할 트랙 ID 목록

        Returns:
            존재하는 트랙만 담은 track_id → TrackInfo 딕셔너리
        """
        pass

    @abstractmethod
    def count_chart_eligible(self) -> int:
        """차트 대상 트랙 수를 반환한다."""
        pass

    @abstractmethod
    def update_chart_position(self, track_id: str, scope: str, rank: int, at: datetime) -> None:
        """
        차트 빌드 결과를 트랙에 반영한다 (현재 순위, 개선된 경우 최고 순위, 갱신 시각).

        Args:
            track_id: 트랙 ID
            scope: 'global' 또는 국가 코드
            rank: 이번 빌드 순위
            at: 반영 시각
        """
        pass

    @abstractmethod
    def update_peak_position(self, track_id: str, scope: str, rank: int, at: datetime) -> bool:
        """rank가 기존 최고 순위보다 좋으면 갱신하고 True를 반환한다."""
        pass

    def get_track(self, track_id: str) -> Optional[TrackInfo]:
        """단일 트랙을 조회한다. 없으면 None."""
        return self.get_tracks([track_id]).get(track_id)

    def existing_track_ids(self, track_ids: Iterable[str]) -> Set[str]:
        """주어진 ID 중 카탈로그에 존재하는 ID 집합."""
        return set(self.get_tracks(track_ids).keys())

    def increment_listen_counts(self, track_id: str, valid: bool) -> None:
        """실시간 청취 카운터 갱신. 카운터를 따로 관리하지 않는 카탈로그는 무시한다."""
        pass


class SqlTrackCatalog(TrackCatalog):
    """같은 DB의 tracks 테이블을 사용하는 카탈로그 구현."""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_info(row: Track) -> TrackInfo:
        return TrackInfo(
            track_id=row.id,
            name=row.name,
            artist_id=row.artist_id,
            artist_name=row.artist_name,
            genre=row.genre,
            duration=row.duration or 0,
            cover_url=row.cover_url,
            chart_eligible=bool(row.chart_eligible),
            valid_listen_count=row.valid_listen_count or 0,
            peak_positions=dict(row.peak_chart_position or {}),
        )

    def get_tracks(self, track_ids: Iterable[str]) -> Dict[str, TrackInfo]:
        ids = list({str(t) for t in track_ids})
        if not ids:
            return {}
        result: Dict[str, TrackInfo] = {}
        with self.database.session() as session:
            # SQLite 바인드 변수 한도를 넘지 않도록 나눠서 조회
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                rows = session.execute(select(Track).where(Track.id.in_(chunk))).scalars()
                for row in rows:
                    result[row.id] = self._to_info(row)
        return result

    def count_chart_eligible(self) -> int:
        with self.database.session() as session:
            return session.execute(
                select(func.count()).select_from(Track).where(Track.chart_eligible.is_(True))
            ).scalar_one()

    def update_chart_position(self, track_id: str, scope: str, rank: int, at: datetime) -> None:
        with self.database.session() as session:
            track = session.get(Track, track_id)
            if track is None:
                logger.debug(f"Track {track_id} disappeared before position update")
                return
            current = dict(track.current_chart_position or {})
            current[scope] = rank
            track.current_chart_position = current

            self._record_peak(track, scope, rank, at)
            track.last_chart_update = at

    def update_peak_position(self, track_id: str, scope: str, rank: int, at: datetime) -> bool:
        with self.database.session() as session:
            track = session.get(Track, track_id)
            if track is None:
                return False
            return self._record_peak(track, scope, rank, at)

    @staticmethod
    def _record_peak(track: Track, scope: str, rank: int, at: datetime) -> bool:
        peaks = dict(track.peak_chart_position or {})
        if scope in peaks and peaks[scope] <= rank:
            return False
        peaks[scope] = rank
        dates = dict(track.peak_chart_date or {})
        dates[scope] = at.isoformat()
        track.peak_chart_position = peaks
        track.peak_chart_date = dates
        return True

    def upsert_track(
        self,
        track_id: str,
        name: str,
        duration: int,
        artist_id: Optional[str] = None,
        artist_name: Optional[str] = None,
        genre: Optional[str] = None,
        cover_url: Optional[str] = None,
        chart_eligible: bool = True,
    ) -> None:
        """시드/테스트용으로 트랙을 생성하거나 갱신한다."""
        with self.database.session() as session:
            track = session.get(Track, track_id)
            if track is None:
                track = Track(id=track_id)
                session.add(track)
            track.name = name
            track.duration = duration
            track.artist_id = artist_id
            track.artist_name = artist_name
            track.genre = genre
            track.cover_url = cover_url
            track.chart_eligible = chart_eligible

    def delete_track(self, track_id: str) -> None:
        with self.database.session() as session:
            track = session.get(Track, track_id)
            if track is not None:
                session.delete(track)

    def increment_listen_counts(self, track_id: str, valid: bool) -> None:
        """실시간 누적 유효 청취 수를 올린다 (이벤트 기록 시)."""
        if not valid:
            return
        with self.database.session() as session:
            track = session.get(Track, track_id)
            if track is not None:
                track.valid_listen_count = (track.valid_listen_count or 0) + 1
