"""차트 엔진에서 주고받는 데이터 모델 정의."""

import threading
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Dict, Optional

CHART_TYPES = ("global", "country")

TREND_NEW = "new"
TREND_UP = "up"
TREND_DOWN = "down"
TREND_STABLE = "stable"


@dataclass
class TrackInfo:
    """카탈로그(외부 CRUD 협력자)에서 읽어온 트랙 정보."""
    track_id: str
    name: str
    artist_id: Optional[str] = None
    artist_name: Optional[str] = None
    genre: Optional[str] = None
    duration: int = 0  # 초
    cover_url: Optional[str] = None
    chart_eligible: bool = True
    valid_listen_count: int = 0
    peak_positions: Dict[str, int] = field(default_factory=dict)  # 스코프 → 최고 순위


@dataclass
class DisplaySnapshot:
    """집계 시점에 복사해 두는 표시용 트랙 정보."""
    name: Optional[str] = None
    artist_id: Optional[str] = None
    artist_name: Optional[str] = None
    genre: Optional[str] = None
    duration: Optional[int] = None
    cover_url: Optional[str] = None
    valid_listen_count: Optional[int] = None


@dataclass
class ScoredCandidate:
    """점수 계산 결과 (순위 확정 전 후보)."""
    track_id: str
    chart_score: float
    days_in_chart: int
    total_valid_listens: int
    snapshot: DisplaySnapshot


@dataclass
class ChartEntry:
    """조회용으로 비정규화된 차트 항목."""
    chart_type: str
    country: str
    chart_date: str
    rank: int
    track_id: str
    chart_score: float
    trend: str
    previous_rank: Optional[int]
    rank_change: int
    days_in_chart: int
    peak_position: int
    track: DisplaySnapshot
    generated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HistoryPoint:
    """트랙 차트 이력(스파크라인) 한 점."""
    chart_date: str
    rank: int
    chart_score: float
    trend: str
    generated_at: Optional[datetime] = None


@dataclass
class PipelineCounters:
    """조용히 버려지는 항목 수를 관측 가능하게 하는 누적 카운터."""
    merged_groups: int = 0
    dropped_ineligible_groups: int = 0
    failed_groups: int = 0
    dropped_unresolved_candidates: int = 0
    failed_position_updates: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return {
                'merged_groups': self.merged_groups,
                'dropped_ineligible_groups': self.dropped_ineligible_groups,
                'failed_groups': self.failed_groups,
                'dropped_unresolved_candidates': self.dropped_unresolved_candidates,
                'failed_position_updates': self.failed_position_updates,
            }
