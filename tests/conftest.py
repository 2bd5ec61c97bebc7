import pytest

from track_charts.config import build_config
from track_charts.db import DailyTrackStat
from track_charts.engine import ChartEngine


@pytest.fixture
def config(tmp_path):
    return build_config({
        'database': {'url': f"sqlite:///{tmp_path / 'charts.db'}"},
        'schedule': {'run_on_start': False},
    })


@pytest.fixture
def engine(config):
    engine = ChartEngine(config)
    yield engine
    engine.close()


@pytest.fixture
def add_track(engine):
    def _add(track_id, duration=200, eligible=True, **kwargs):
        engine.catalog.upsert_track(
            track_id,
            name=kwargs.pop('name', f"Track {track_id}"),
            duration=duration,
            chart_eligible=eligible,
            artist_name=kwargs.pop('artist_name', f"Artist {track_id}"),
            **kwargs,
        )
    return _add


@pytest.fixture
def add_stat(engine):
    def _add(track_id, date, valid, country="GLOBAL", listens=None):
        with engine.database.session() as session:
            session.add(DailyTrackStat(
                track_id=track_id,
                date=date,
                country=country,
                listen_count=listens if listens is not None else valid,
                valid_listen_count=valid,
                unique_listeners=valid,
                total_listen_duration=0,
                average_listen_duration=0.0,
                snapshot_name=f"Track {track_id}",
                snapshot_duration=200,
            ))
    return _add
