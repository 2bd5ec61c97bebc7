"""Tests for decay-weighted chart scoring."""

import unittest
from datetime import date

import pandas as pd
import pytest

from track_charts.scoring import DecaySchedule, compute_scores

AS_OF = date(2025, 12, 17)


def _frame(rows):
    return pd.DataFrame(
        [
            {
                "track_id": track_id,
                "date": day,
                "country": country,
                "valid_listen_count": valid,
                "snapshot_name": f"Track {track_id}",
                "snapshot_artist_id": None,
                "snapshot_artist_name": "Artist",
                "snapshot_genre": "pop",
                "snapshot_duration": 200,
            }
            for track_id, day, valid, country in rows
        ]
    )


class TestComputeScores(unittest.TestCase):
    """Test cases for compute_scores."""

    def setUp(self):
        self.schedule = DecaySchedule()

    def test_today_listens_full_weight(self):
        """100 valid listens today score 100."""
        scored = compute_scores(_frame([("a", "2025-12-17", 100, "US")]), AS_OF, self.schedule)
        self.assertEqual(len(scored), 1)
        self.assertAlmostEqual(scored.iloc[0]["chart_score"], 100.0)
        self.assertEqual(scored.iloc[0]["days_in_chart"], 1)

    def test_two_days_ago_half_weight(self):
        scored = compute_scores(_frame([("a", "2025-12-15", 100, "US")]), AS_OF, self.schedule)
        self.assertAlmostEqual(scored.iloc[0]["chart_score"], 50.0)

    def test_mixed_days_and_zero_day_ignored(self):
        """[40, 20, 0] over today/yesterday/two days ago → 40*1.0 + 20*0.7 = 54."""
        df = _frame([
            ("a", "2025-12-17", 40, "US"),
            ("a", "2025-12-16", 20, "US"),
            ("a", "2025-12-15", 0, "US"),
        ])
        scored = compute_scores(df, AS_OF, self.schedule)
        self.assertAlmostEqual(scored.iloc[0]["chart_score"], 54.0)
        self.assertEqual(scored.iloc[0]["days_in_chart"], 2)
        self.assertEqual(scored.iloc[0]["total_valid_listens"], 60)

    def test_outside_decay_schedule_scores_zero(self):
        scored = compute_scores(_frame([("a", "2025-12-12", 500, "US")]), AS_OF, self.schedule)
        self.assertTrue(scored.empty)

    def test_ties_broken_by_track_id(self):
        df = _frame([
            ("b", "2025-12-17", 50, "US"),
            ("a", "2025-12-17", 50, "US"),
            ("c", "2025-12-17", 80, "US"),
        ])
        scored = compute_scores(df, AS_OF, self.schedule)
        self.assertEqual(scored["track_id"].tolist(), ["c", "a", "b"])

    def test_countries_summed_per_day(self):
        """Rows of several countries for the same track and day merge into one day."""
        df = _frame([
            ("a", "2025-12-17", 30, "US"),
            ("a", "2025-12-17", 20, "GB"),
            ("a", "2025-12-16", 10, "GLOBAL"),
        ])
        scored = compute_scores(df, AS_OF, self.schedule)
        self.assertAlmostEqual(scored.iloc[0]["chart_score"], 57.0)
        self.assertEqual(scored.iloc[0]["days_in_chart"], 2)

    def test_empty_frame(self):
        scored = compute_scores(pd.DataFrame(), AS_OF, self.schedule)
        self.assertTrue(scored.empty)
        self.assertIn("chart_score", scored.columns)


class TestDecaySchedule(unittest.TestCase):
    """Test cases for DecaySchedule validation."""

    def test_default_weights(self):
        schedule = DecaySchedule()
        self.assertEqual(schedule.weight(0), 1.0)
        self.assertEqual(schedule.weight(4), 0.1)
        self.assertEqual(schedule.weight(5), 0.0)
        self.assertEqual(schedule.length, 5)

    def test_invalid_pairs(self):
        with self.assertRaises(ValueError):
            DecaySchedule([])
        with self.assertRaises(ValueError):
            DecaySchedule([[0, 1.0], [0, 0.5]])
        with self.assertRaises(ValueError):
            DecaySchedule([[0, -1.0]])
        with self.assertRaises(ValueError):
            DecaySchedule([[-1, 1.0]])
        with self.assertRaises(ValueError):
            DecaySchedule([[0, 1.0, 2]])

    def test_from_config(self):
        schedule = DecaySchedule.from_config({'scoring': {'decay': [[0, 1.0], [1, 0.5]]}})
        self.assertEqual(schedule.pairs(), [(0, 1.0), (1, 0.5)])
        self.assertEqual(schedule.length, 2)


def test_score_tracks_scopes(engine, add_stat):
    add_stat("a", "2025-12-17", 100, country="US")
    add_stat("a", "2025-12-17", 40, country="GB")
    add_stat("b", "2025-12-16", 100, country="GB")

    us = engine.calculator.score_tracks("US", as_of=AS_OF)
    assert [c.track_id for c in us] == ["a"]
    assert us[0].chart_score == pytest.approx(100.0)

    global_scores = engine.calculator.score_tracks("GLOBAL", as_of=AS_OF)
    assert [c.track_id for c in global_scores] == ["a", "b"]
    assert global_scores[0].chart_score == pytest.approx(140.0)
    assert global_scores[1].chart_score == pytest.approx(70.0)
    assert global_scores[0].snapshot.name == "Track a"


def test_score_tracks_max_candidates_and_validation(engine, add_stat):
    for index in range(5):
        add_stat(f"t{index}", "2025-12-17", 10 + index, country="US")

    top = engine.calculator.score_tracks("US", max_candidates=2, as_of=AS_OF)
    assert [c.track_id for c in top] == ["t4", "t3"]

    with pytest.raises(ValueError):
        engine.calculator.score_tracks("USA", as_of=AS_OF)


def test_score_tracks_empty(engine):
    assert engine.calculator.score_tracks("GLOBAL", as_of=AS_OF) == []
