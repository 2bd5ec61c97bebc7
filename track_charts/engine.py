"""설정 하나로 차트 파이프라인 구성 요소를 조립하는 모듈."""

import logging
from typing import Optional

from .aggregator import DailyAggregator
from .alerts import AlertSender
from .builder import ChartBuilder
from .catalog import SqlTrackCatalog, TrackCatalog
from .config import build_config
from .countries import ActiveCountrySelector
from .db import Database, get_database
from .maintenance import ChartMaintenance
from .models import PipelineCounters
from .queries import ChartQueries
from .scoring import ScoreCalculator

logger = logging.getLogger(__name__)


class ChartEngine:
    """차트 파이프라인 구성 요소 묶음."""

    def __init__(
        self,
        config: Optional[dict] = None,
        database: Optional[Database] = None,
        catalog: Optional[TrackCatalog] = None,
    ):
        """
        Args:
            config: 설정 딕셔너리 (기본값과 병합된 것, 없으면 기본 설정)
            database: 이미 초기화된 DB (기본: config의 database.url)
            catalog: 트랙 카탈로그 (기본: 같은 DB의 tracks 테이블)
        """
        self.config = config or build_config()
        self.database = database or get_database(self.config.get('database', {}).get('url'))
        self.catalog = catalog or SqlTrackCatalog(self.database)
        self.counters = PipelineCounters()

        self.aggregator = DailyAggregator(self.database, self.catalog, self.config, self.counters)
        self.calculator = ScoreCalculator(self.database, self.config)
        self.selector = ActiveCountrySelector(self.database, self.config)
        self.builder = ChartBuilder(
            self.database, self.catalog, self.calculator, self.selector, self.config, self.counters
        )
        self.queries = ChartQueries(self.database, self.catalog, self.config, self.counters)
        self.maintenance = ChartMaintenance(self.database, self.catalog, self.queries, self.config)
        self.alerts = AlertSender(self.config)

    def close(self) -> None:
        self.database.dispose()
