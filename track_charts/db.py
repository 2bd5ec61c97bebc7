"""SQLAlchemy 모델과 DB 연결/세션 관리."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import GLOBAL_SCOPE
from .utils import ensure_dir, utc_now

logger = logging.getLogger(__name__)

Base = declarative_base()


class ListenEvent(Base):
    """재생 시도 원본 이벤트. 외부 생산자가 append 하고 집계기가 소비/삭제한다."""
    __tablename__ = 'listen_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    track_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=True)  # 익명 청취는 None
    session_id = Column(String(128), nullable=False)
    country = Column(String(16), nullable=False, default=GLOBAL_SCOPE)
    listen_duration = Column(Integer, nullable=False)
    is_valid = Column(Boolean, nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utc_now, index=True)

    __table_args__ = (
        Index('ix_listen_events_track_timestamp', 'track_id', 'timestamp'),
    )


class DailyTrackStat(Base):
    """(track_id, country, date) 단위 일별 통계. 같은 날짜 안에서는 누적 갱신된다."""
    __tablename__ = 'daily_track_stats'

    id = Column(Integer, primary_key=True, autoincrement=True)
    track_id = Column(String(64), nullable=False)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD
    country = Column(String(16), nullable=False, default=GLOBAL_SCOPE)
    listen_count = Column(Integer, nullable=False, default=0)
    valid_listen_count = Column(Integer, nullable=False, default=0)
    unique_listeners = Column(Integer, nullable=False, default=0)  # 근사치, max 병합
    total_listen_duration = Column(Integer, nullable=False, default=0)
    average_listen_duration = Column(Float, nullable=False, default=0.0)

    snapshot_name = Column(String(256))
    snapshot_artist_id = Column(String(64))
    snapshot_artist_name = Column(String(256))
    snapshot_genre = Column(String(64))
    snapshot_duration = Column(Integer)

    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('track_id', 'date', 'country', name='uq_daily_track_stats_key'),
        Index('ix_daily_track_stats_date_country', 'date', 'country'),
    )


class ChartSnapshot(Base):
    """(chart_type, country, chart_date) 단위로 통째로 교체되는 차트 캐시 행."""
    __tablename__ = 'chart_snapshots'

    id = Column(Integer, primary_key=True, autoincrement=True)
    chart_type = Column(String(16), nullable=False)
    country = Column(String(16), nullable=False)
    track_id = Column(String(64), nullable=False)
    chart_date = Column(String(10), nullable=False)
    rank = Column(Integer, nullable=False)
    chart_score = Column(Float, nullable=False)
    trend = Column(String(16), nullable=False)
    previous_rank = Column(Integer, nullable=True)
    rank_change = Column(Integer, nullable=False, default=0)
    days_in_chart = Column(Integer, nullable=False, default=1)
    peak_position = Column(Integer, nullable=False)

    snapshot_name = Column(String(256))
    snapshot_artist_id = Column(String(64))
    snapshot_artist_name = Column(String(256))
    snapshot_genre = Column(String(64))
    snapshot_cover_url = Column(String(512))
    snapshot_duration = Column(Integer)
    snapshot_valid_listen_count = Column(Integer)

    generated_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        UniqueConstraint('chart_type', 'country', 'chart_date', 'rank', name='uq_chart_snapshots_rank'),
        UniqueConstraint('chart_type', 'country', 'chart_date', 'track_id', name='uq_chart_snapshots_track'),
        Index('ix_chart_snapshots_track_country', 'track_id', 'country'),
    )


class Track(Base):
    """SQL 기반 트랙 카탈로그 테이블. 엔진은 차트 관련 필드만 읽고 쓴다."""
    __tablename__ = 'tracks'

    id = Column(String(64), primary_key=True)
    name = Column(String(256), nullable=False)
    artist_id = Column(String(64))
    artist_name = Column(String(256))
    genre = Column(String(64))
    duration = Column(Integer, nullable=False, default=0)
    cover_url = Column(String(512))
    chart_eligible = Column(Boolean, nullable=False, default=True)
    valid_listen_count = Column(Integer, nullable=False, default=0)
    current_chart_position = Column(JSON, nullable=True)  # {"global": 3, "US": 7}
    peak_chart_position = Column(JSON, nullable=True)  # {"global": 1, "US": 4}
    peak_chart_date = Column(JSON, nullable=True)  # 스코프 → 최고 순위 달성 시각(ISO)
    last_chart_update = Column(DateTime, nullable=True)


class Database:
    """엔진/세션 팩토리를 보관하는 DB 관리자."""

    def __init__(self, url: str):
        self.url = url
        self._engine = None
        self._SessionLocal = None

    def init(self) -> None:
        """DB 연결을 만들고 테이블을 생성한다."""
        try:
            parsed = make_url(self.url)
            if parsed.get_backend_name() == 'sqlite' and parsed.database and parsed.database != ':memory:':
                ensure_dir(Path(parsed.database).parent)
            self._engine = create_engine(self.url)
            Base.metadata.create_all(self._engine)
            self._SessionLocal = sessionmaker(bind=self._engine, expire_on_commit=False)
            logger.info(f"Database initialized: {parsed.render_as_string(hide_password=True)}")
        except SQLAlchemyError as e:
            logger.error(f"Database initialization failed: {e}")
            raise

    @property
    def engine(self):
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """커밋/롤백을 보장하는 트랜잭션 범위를 제공한다."""
        if not self._SessionLocal:
            raise RuntimeError("Database not initialized. Call init() first.")

        session = self._SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def connection(self):
        """pandas.read_sql 용 읽기 커넥션."""
        with self.engine.connect() as conn:
            yield conn

    def dispose(self) -> None:
        """커넥션 풀을 정리한다."""
        if self._engine:
            self._engine.dispose()
            self._engine = None
            self._SessionLocal = None


def snapshot_columns(row, prefix: str = 'snapshot_') -> dict:
    """모델 행에서 snapshot_* 컬럼을 접두어 없는 딕셔너리로 꺼낸다."""
    result = {}
    for column in row.__table__.columns:
        if column.name.startswith(prefix):
            result[column.name[len(prefix):]] = getattr(row, column.name)
    return result


def get_database(url: Optional[str]) -> Database:
    """URL로 Database를 만들고 초기화한다."""
    database = Database(url or 'sqlite:///data/charts.db')
    database.init()
    return database
