from datetime import datetime, timedelta

import pandas as pd
import pytest
import pytz
from sqlalchemy import func, select

from track_charts.aggregator import summarize_events
from track_charts.config import merge_config
from track_charts.db import DailyTrackStat, ListenEvent
from track_charts.engine import ChartEngine
from track_charts.events import is_valid_listen, min_listen_seconds, record_listen

NOW = datetime(2025, 12, 17, 12, 0, 0)


def _listen(engine, track_id, duration=120, user_id=None, session_id="s1", country="US", minutes_ago=10):
    return record_listen(
        engine.database,
        engine.catalog,
        track_id,
        duration,
        session_id,
        user_id=user_id,
        country=country,
        timestamp=NOW - timedelta(minutes=minutes_ago),
    )


def _stat(engine, track_id, country="US", day="2025-12-17"):
    with engine.database.session() as session:
        return session.execute(
            select(DailyTrackStat)
            .where(DailyTrackStat.track_id == track_id)
            .where(DailyTrackStat.country == country)
            .where(DailyTrackStat.date == day)
        ).scalar_one_or_none()


def _pending(engine):
    with engine.database.session() as session:
        return session.execute(select(func.count()).select_from(ListenEvent)).scalar_one()


def test_valid_listen_threshold():
    assert min_listen_seconds(60) == 30
    assert min_listen_seconds(400) == 100
    assert is_valid_listen(30, 100)
    assert not is_valid_listen(29, 100)
    assert not is_valid_listen(90, 400)


def test_record_listen_rules(engine, add_track):
    add_track("t1", duration=200)
    add_track("off", eligible=False)

    assert _listen(engine, "t1", country="us") is not None
    assert _listen(engine, "off") is None
    assert _listen(engine, "missing") is None
    with pytest.raises(ValueError):
        record_listen(engine.database, engine.catalog, "t1", 100, "")
    with pytest.raises(ValueError):
        record_listen(engine.database, engine.catalog, "t1", -1, "s1")

    with engine.database.session() as session:
        event = session.execute(select(ListenEvent)).scalar_one()
    assert event.country == "US"
    assert event.is_valid
    assert engine.catalog.get_track("t1").valid_listen_count == 1


def test_summarize_events_groups_by_local_date():
    df = pd.DataFrame([
        {"id": 1, "track_id": "a", "user_id": "u1", "session_id": "s1", "country": "KR",
         "listen_duration": 100, "is_valid": True, "timestamp": datetime(2025, 12, 17, 14, 0)},
        {"id": 2, "track_id": "a", "user_id": None, "session_id": "s2", "country": "KR",
         "listen_duration": 10, "is_valid": False, "timestamp": datetime(2025, 12, 17, 16, 0)},
    ])

    groups = summarize_events(df, pytz.timezone("Asia/Seoul"))
    # 14:00 UTC = 23:00 KST, 16:00 UTC = 다음날 01:00 KST
    assert groups["date"].tolist() == ["2025-12-17", "2025-12-18"]
    assert groups["valid_listen_count"].tolist() == [1, 0]
    assert groups["event_ids"].tolist() == [[1], [2]]


def test_aggregate_merges_counts(engine, add_track):
    add_track("t1", duration=200)
    _listen(engine, "t1", duration=120, user_id="u1")
    _listen(engine, "t1", duration=120, user_id="u1")
    _listen(engine, "t1", duration=10, user_id="u2")

    assert engine.aggregator.aggregate(window_end=NOW) == 1

    stat = _stat(engine, "t1")
    assert stat.listen_count == 3
    assert stat.valid_listen_count == 2
    assert stat.unique_listeners == 2
    assert stat.total_listen_duration == 250
    assert stat.average_listen_duration == pytest.approx(250 / 3)
    assert stat.snapshot_name == "Track t1"
    assert _pending(engine) == 0


def test_aggregate_is_additive_and_rerun_is_noop(engine, add_track):
    add_track("t1", duration=200)
    _listen(engine, "t1", user_id="u1")
    engine.aggregator.aggregate(window_end=NOW)

    _listen(engine, "t1", user_id="u2", minutes_ago=5)
    _listen(engine, "t1", user_id="u3", minutes_ago=5)
    engine.aggregator.aggregate(window_end=NOW)

    stat = _stat(engine, "t1")
    assert stat.listen_count == 3
    assert stat.valid_listen_count == 3
    # 고유 청취자는 실행 간 max 병합
    assert stat.unique_listeners == 2

    assert engine.aggregator.aggregate(window_end=NOW) == 0
    assert _stat(engine, "t1").listen_count == 3


def test_aggregate_skips_ineligible_tracks(engine, add_track):
    add_track("t1")
    add_track("t2")
    _listen(engine, "t1")
    _listen(engine, "t2")
    add_track("t2", eligible=False)

    assert engine.aggregator.aggregate(window_end=NOW) == 1
    assert _stat(engine, "t2") is None
    assert engine.counters.dropped_ineligible_groups == 1
    assert _pending(engine) == 0


def test_aggregate_isolates_group_failures(engine, add_track, monkeypatch):
    add_track("t1")
    add_track("t2")
    _listen(engine, "t1")
    _listen(engine, "t2")

    original = engine.aggregator._merge_group

    def flaky_merge(group, track):
        if group.track_id == "t1":
            raise RuntimeError("write failed")
        return original(group, track)

    monkeypatch.setattr(engine.aggregator, "_merge_group", flaky_merge)

    assert engine.aggregator.aggregate(window_end=NOW) == 1
    assert _stat(engine, "t1") is None
    assert _stat(engine, "t2").listen_count == 1
    assert engine.counters.failed_groups == 1
    # 실패한 그룹의 이벤트는 다음 실행을 위해 남는다
    assert _pending(engine) == 1

    monkeypatch.setattr(engine.aggregator, "_merge_group", original)
    assert engine.aggregator.aggregate(window_end=NOW) == 1
    assert _stat(engine, "t1").listen_count == 1


def test_aggregate_prunes_old_events(engine, add_track):
    add_track("t1")
    _listen(engine, "t1", minutes_ago=120)
    _listen(engine, "t1", minutes_ago=10)

    merged = engine.aggregator.aggregate(window_start=NOW - timedelta(minutes=30), window_end=NOW)

    assert merged == 1
    assert _stat(engine, "t1").listen_count == 1
    assert _pending(engine) == 0


def test_aggregate_rejects_empty_window(engine):
    with pytest.raises(ValueError):
        engine.aggregator.aggregate(window_start=NOW, window_end=NOW)


def test_aggregate_uses_configured_timezone(config):
    seoul = ChartEngine(merge_config(config, {'timezone': 'Asia/Seoul'}))
    try:
        seoul.catalog.upsert_track("t1", name="Track t1", duration=200)
        record_listen(seoul.database, seoul.catalog, "t1", 120, "s1", country="KR",
                      timestamp=datetime(2025, 12, 17, 16, 0))
        seoul.aggregator.aggregate(window_end=datetime(2025, 12, 17, 16, 30))
        assert _stat(seoul, "t1", country="KR", day="2025-12-18").listen_count == 1
    finally:
        seoul.close()
