from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from track_charts.builder import derive_movement
from track_charts.config import merge_config
from track_charts.db import ChartSnapshot, DailyTrackStat, Track
from track_charts.engine import ChartEngine

NOW = datetime(2025, 12, 17, 12, 0, 0)
YESTERDAY = NOW - timedelta(days=1)


@pytest.mark.parametrize(
    "rank, previous_rank, expected_trend, expected_change",
    [
        (3, None, "new", 0),
        (1, 10, "up", 9),
        (10, 1, "down", -9),
        (4, 6, "stable", 2),
        (1, 6, "stable", 5),
        (1, 7, "up", 6),
        (7, 1, "down", -6),
    ],
)
def test_derive_movement_trend(rank, previous_rank, expected_trend, expected_change):
    trend, rank_change, _ = derive_movement(rank, previous_rank)
    assert trend == expected_trend
    assert rank_change == expected_change


def test_derive_movement_peak_never_worsens():
    assert derive_movement(3, None)[2] == 3
    assert derive_movement(10, 1)[2] == 1
    assert derive_movement(5, 3, previous_peak=2)[2] == 2
    assert derive_movement(5, 3, previous_peak=2, lifetime_peak=1)[2] == 1
    assert derive_movement(1, 4, previous_peak=4)[2] == 1


def test_build_global_chart_dense_ranks(engine, add_track, add_stat):
    for track_id, valid in [("a", 100), ("b", 80), ("c", 60)]:
        add_track(track_id)
        add_stat(track_id, "2025-12-17", valid, country="US")

    assert engine.builder.build_chart("global", now=NOW) == 3

    chart = engine.queries.get_chart("global")
    assert [(e.rank, e.track_id) for e in chart] == [(1, "a"), (2, "b"), (3, "c")]
    assert all(e.trend == "new" and e.rank_change == 0 and e.previous_rank is None for e in chart)
    assert [e.peak_position for e in chart] == [1, 2, 3]
    assert chart[0].chart_date == "2025-12-17"
    assert chart[0].country == "GLOBAL"
    assert chart[0].track.name == "Track a"


def test_build_chart_compares_with_previous_day(engine, add_track, add_stat):
    for track_id in ("a", "b", "c"):
        add_track(track_id)
    add_stat("a", "2025-12-16", 100)
    add_stat("b", "2025-12-16", 50)
    engine.builder.build_chart("global", now=YESTERDAY)

    add_stat("b", "2025-12-17", 500)
    add_stat("c", "2025-12-17", 10)
    engine.builder.build_chart("global", now=NOW)

    chart = {e.track_id: e for e in engine.queries.get_chart("global")}
    assert chart["b"].rank == 1
    assert chart["b"].previous_rank == 2
    assert chart["b"].rank_change == 1
    assert chart["b"].trend == "stable"
    assert chart["a"].rank == 2
    assert chart["a"].rank_change == -1
    assert chart["a"].peak_position == 1
    assert chart["c"].trend == "new"
    assert chart["c"].rank == 3


def test_build_chart_drops_unresolved_candidates(engine, add_track, add_stat):
    add_track("a")
    add_track("hidden", eligible=False)
    add_stat("ghost", "2025-12-17", 500)
    add_stat("hidden", "2025-12-17", 400)
    add_stat("a", "2025-12-17", 10)

    assert engine.builder.build_chart("global", now=NOW) == 1
    chart = engine.queries.get_chart("global")
    assert [(e.rank, e.track_id) for e in chart] == [(1, "a")]
    assert engine.counters.dropped_unresolved_candidates == 2


def test_build_chart_page_size_and_rebuild_replaces(engine, add_track, add_stat):
    for index in range(5):
        add_track(f"t{index}")
        add_stat(f"t{index}", "2025-12-17", 10 * (index + 1))

    assert engine.builder.build_chart("global", page_size=3, now=NOW) == 3
    assert engine.builder.build_chart("global", page_size=3, now=NOW) == 3

    with engine.database.session() as session:
        count = session.execute(select(func.count()).select_from(ChartSnapshot)).scalar_one()
    assert count == 3
    assert [e.track_id for e in engine.queries.get_chart("global")] == ["t4", "t3", "t2"]


def test_build_chart_writes_positions_to_catalog(engine, add_track, add_stat):
    add_track("a")
    add_track("b")
    add_stat("a", "2025-12-17", 100, country="US")
    add_stat("b", "2025-12-17", 50, country="US")

    engine.builder.build_chart("country", "us", now=NOW)

    with engine.database.session() as session:
        track = session.get(Track, "b")
        assert track.current_chart_position == {"US": 2}
        assert track.peak_chart_position == {"US": 2}
        assert track.peak_chart_date == {"US": NOW.isoformat()}
        assert track.last_chart_update == NOW
    assert engine.catalog.get_track("a").peak_positions == {"US": 1}
    assert engine.queries.get_chart("global") == []


def test_build_chart_keeps_lifetime_peak(engine, add_track, add_stat):
    add_track("a")
    add_track("b")
    engine.catalog.update_peak_position("b", "global", 1, YESTERDAY)
    add_stat("a", "2025-12-17", 100)
    add_stat("b", "2025-12-17", 50)

    engine.builder.build_chart("global", now=NOW)

    chart = {e.track_id: e for e in engine.queries.get_chart("global")}
    assert chart["b"].rank == 2
    assert chart["b"].peak_position == 1


def test_build_chart_rejects_bad_scope(engine):
    with pytest.raises(ValueError):
        engine.builder.build_chart("country", None, now=NOW)
    with pytest.raises(ValueError):
        engine.builder.build_chart("weekly", now=NOW)
    with pytest.raises(ValueError):
        engine.builder.build_chart("global", "US", now=NOW)


def test_update_all_charts_builds_active_countries(config, monkeypatch):
    engine = ChartEngine(merge_config(config, {
        'countries': {'min_valid_listens': 10, 'min_unique_tracks': 2},
    }))
    try:
        for track_id in ("a", "b"):
            engine.catalog.upsert_track(track_id, name=f"Track {track_id}", duration=200)
        for country, valid in [("US", 30), ("GB", 20), ("DE", 2)]:
            for track_id in ("a", "b"):
                _add_stat(engine, track_id, country, valid)

        original = engine.builder.build_chart

        def failing_gb(chart_type, scope=None, **kwargs):
            if scope == "GB":
                raise RuntimeError("boom")
            return original(chart_type, scope, **kwargs)

        monkeypatch.setattr(engine.builder, "build_chart", failing_gb)
        result = engine.builder.update_all_charts(now=NOW)

        assert result['global_updated'] == 2
        assert result['countries'] == ["US"]
        assert result['failed_countries'] == ["GB"]
        assert result['countries_updated'] == 1
        assert result['total_updated'] == 4
        assert len(engine.queries.get_chart("country", "US")) == 2
    finally:
        engine.close()


def _add_stat(engine, track_id, country, valid):
    with engine.database.session() as session:
        session.add(DailyTrackStat(
            track_id=track_id,
            date="2025-12-17",
            country=country,
            listen_count=valid,
            valid_listen_count=valid,
            unique_listeners=valid,
            total_listen_duration=0,
            average_listen_duration=0.0,
        ))
